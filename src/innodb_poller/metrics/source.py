"""
Read-only access to the monitored MySQL server.

Two server views feed the poller:

- the InnoDB metrics view (``information_schema.INNODB_METRICS``), one row
  per engine counter, each enabled or disabled individually;
- the global status view (``information_schema.GLOBAL_STATUS``), plain
  name/value pairs.

Rows from both views are turned into RawMeasurement objects here, each kind
with its own name and timestamp rule, so nothing downstream needs to know
which view a measurement came from.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from innodb_poller.errors import FailedPreconditionError, UnavailableError
from innodb_poller.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

STATUS_PREFIX = "status"
ENABLED_STATUS = "enabled"

# Measurement.value is a signed 64-bit SQLite INTEGER
MIN_VALUE = -(2**63)
MAX_VALUE = 2**63 - 1

# =============================================================================
# Data Models
# =============================================================================


class SourceKind(str, Enum):
    """Server view a measurement was read from."""

    ENGINE_METRIC = "engine_metric"
    STATUS_VARIABLE = "status_variable"


@dataclass(frozen=True)
class RawMeasurement:
    """A measurement as read from the server, before id resolution.

    Attributes:
        timestamp: When the value was observed.
        name: Derived metric name (e.g. 'lock.waits.counter').
        value: Integer value.
        kind: Which server view produced the row.
    """

    timestamp: datetime
    name: str
    value: int
    kind: SourceKind

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "name": self.name,
            "value": self.value,
        }


@dataclass(frozen=True)
class EngineMetricRow:
    """One row of the InnoDB metrics view."""

    subsystem: str
    name: str
    type: str
    count: Any
    status: str
    time_enabled: Any
    time_elapsed: Any

    @property
    def metric_name(self) -> str:
        return engine_metric_name(self.subsystem, self.name, self.type)

    def to_measurement(self) -> RawMeasurement | None:
        """Return the measurement for an enabled counter, None otherwise.

        The timestamp is the moment the counter was enabled plus the seconds
        elapsed since then.
        """
        if self.status != ENABLED_STATUS:
            return None

        value = parse_int_value(self.count)
        if value is None:
            return None

        enabled_at = parse_server_datetime(self.time_enabled)
        if enabled_at is None:
            return None

        elapsed = parse_int_value(self.time_elapsed) or 0
        return RawMeasurement(
            timestamp=enabled_at + timedelta(seconds=elapsed),
            name=self.metric_name,
            value=value,
            kind=SourceKind.ENGINE_METRIC,
        )


@dataclass(frozen=True)
class StatusVariableRow:
    """One row of the global status view."""

    variable_name: str
    variable_value: Any

    @property
    def metric_name(self) -> str:
        return status_variable_name(self.variable_name)

    def to_measurement(self, server_now: datetime) -> RawMeasurement | None:
        """Return the measurement stamped with the server clock, or None."""
        value = parse_int_value(self.variable_value)
        if value is None:
            return None

        return RawMeasurement(
            timestamp=server_now,
            name=self.metric_name,
            value=value,
            kind=SourceKind.STATUS_VARIABLE,
        )


# =============================================================================
# Name and Value Normalization
# =============================================================================


def engine_metric_name(subsystem: str, name: str, type_: str) -> str:
    """Build the dotted name of an engine counter: subsystem.name.type."""
    return ".".join((subsystem, name, type_))


def status_variable_name(variable_name: str) -> str:
    """Build the dotted name of a status variable: status.<lowercase name>."""
    return f"{STATUS_PREFIX}.{variable_name.lower()}"


def parse_int_value(raw: Any) -> int | None:
    """
    Convert a server value to an integer.

    A handful of status variables are strings ('ON', 'TLSv1.3') or floats,
    and unsigned counters can exceed the signed 64-bit range. Those are not
    supported and yield None so the caller can skip the row.

    Args:
        raw: Value as returned by the driver.

    Returns:
        The integer value, or None if the value is not an integer.
    """
    if raw is None or isinstance(raw, bool):
        return None

    value: int | None = None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, Decimal):
        if raw.is_finite() and raw == raw.to_integral_value():
            value = int(raw)
    else:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                value = int(raw.strip())
            except ValueError:
                return None

    if value is None or not MIN_VALUE <= value <= MAX_VALUE:
        return None
    return value


def parse_server_datetime(raw: Any) -> datetime | None:
    """Convert a DATETIME/TIMESTAMP value from the driver to a datetime."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw.strip())
        except ValueError:
            return None
    return None


# =============================================================================
# SourceReader Class
# =============================================================================


class SourceReader:
    """
    Reads metric names and current values from the monitored server.

    All access is read-only. Connections come from a SQLAlchemy engine, so
    any dialect whose driver is installed can be used; production runs use
    ``mysql+pymysql``.

    Example:
        >>> reader = SourceReader.from_dsn("mysql+pymysql://root@localhost/")
        >>> reader.check_connection()
        >>> measurements = reader.fetch_current()
    """

    def __init__(
        self,
        engine: Engine,
        *,
        engine_metrics_view: str = "information_schema.INNODB_METRICS",
        status_view: str = "information_schema.GLOBAL_STATUS",
    ) -> None:
        """
        Initialize the SourceReader.

        Args:
            engine: SQLAlchemy engine for the monitored server.
            engine_metrics_view: Fully qualified InnoDB metrics view.
            status_view: Fully qualified global status view.
        """
        self._engine = engine
        self.engine_metrics_view = engine_metrics_view
        self.status_view = status_view

        self._engine_metrics_sql = text(
            "SELECT SUBSYSTEM AS subsystem, NAME AS name, TYPE AS type, "
            "COUNT AS count, STATUS AS status, TIME_ENABLED AS time_enabled, "
            f"TIME_ELAPSED AS time_elapsed FROM {engine_metrics_view}"
        )
        self._status_sql = text(
            "SELECT VARIABLE_NAME AS variable_name, VARIABLE_VALUE AS variable_value "
            f"FROM {status_view}"
        )
        self._now_sql = text("SELECT CURRENT_TIMESTAMP")

    @classmethod
    def from_dsn(
        cls,
        dsn: str,
        *,
        connect_timeout_seconds: int | None = None,
        **kwargs: Any,
    ) -> SourceReader:
        """
        Create a reader from a SQLAlchemy URL.

        Raises:
            UnavailableError: If the URL cannot be parsed or its driver is missing.
        """
        connect_args: dict[str, Any] = {}
        if connect_timeout_seconds is not None and dsn.startswith("mysql"):
            connect_args["connect_timeout"] = connect_timeout_seconds

        try:
            engine = create_engine(dsn, pool_pre_ping=True, connect_args=connect_args)
        except (SQLAlchemyError, ImportError, ValueError) as e:
            raise UnavailableError(
                f"Cannot create engine for the monitored server: {e}",
                details={"dsn": mask_dsn(dsn)},
            ) from e
        return cls(engine, **kwargs)

    def dispose(self) -> None:
        """Release pooled connections."""
        self._engine.dispose()

    def check_connection(self) -> None:
        """
        Verify that the server answers a trivial query.

        Raises:
            UnavailableError: If no connection can be established.
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise UnavailableError(
                f"Cannot connect to the monitored server: {e}",
                details={"dsn": mask_dsn(str(self._engine.url))},
            ) from e

    def list_metric_names(self) -> set[str]:
        """
        Return every metric name the server currently knows.

        Engine counters are included whether they are enabled or not, so that
        enabling one later does not require a catalog change.

        Raises:
            UnavailableError: If the connection is lost.
            FailedPreconditionError: If a query fails.
        """

        def _read(conn: Connection) -> set[str]:
            names = {row.metric_name for row in self._read_engine_metrics(conn)}
            names.update(row.metric_name for row in self._read_status_variables(conn))
            return names

        return self._run("list metric names", _read)

    def fetch_current(self) -> list[RawMeasurement]:
        """
        Read the current value of every supported metric.

        Disabled engine counters are left out. Rows whose value is not a
        signed 64-bit integer, and engine counters without an enable time,
        are skipped; the rest of the batch is still returned.

        Returns:
            List of RawMeasurement objects, possibly empty.

        Raises:
            UnavailableError: If the connection is lost.
            FailedPreconditionError: If a query fails.
        """

        def _read(conn: Connection) -> list[RawMeasurement]:
            measurements: list[RawMeasurement] = []
            skipped: list[str] = []
            no_enable_time: list[str] = []

            for row in self._read_engine_metrics(conn):
                measurement = row.to_measurement()
                if measurement is not None:
                    measurements.append(measurement)
                elif row.status != ENABLED_STATUS:
                    continue
                elif parse_int_value(row.count) is None:
                    skipped.append(row.metric_name)
                else:
                    no_enable_time.append(row.metric_name)

            server_now = parse_server_datetime(conn.execute(self._now_sql).scalar_one())
            if server_now is None:
                raise FailedPreconditionError(
                    "Monitored server returned an unreadable current time"
                )

            for status_row in self._read_status_variables(conn):
                measurement = status_row.to_measurement(server_now)
                if measurement is None:
                    skipped.append(status_row.metric_name)
                else:
                    measurements.append(measurement)

            if skipped:
                logger.debug(
                    "Skipped non-integer metric values",
                    extra={"skipped_count": len(skipped), "skipped": skipped},
                )
            if no_enable_time:
                logger.debug(
                    "Skipped engine counters without an enable time",
                    extra={"skipped_count": len(no_enable_time), "skipped": no_enable_time},
                )
            return measurements

        return self._run("fetch measurements", _read)

    def _read_engine_metrics(self, conn: Connection) -> Iterator[EngineMetricRow]:
        for row in conn.execute(self._engine_metrics_sql).mappings():
            yield EngineMetricRow(
                subsystem=row["subsystem"],
                name=row["name"],
                type=row["type"],
                count=row["count"],
                status=row["status"],
                time_enabled=row["time_enabled"],
                time_elapsed=row["time_elapsed"],
            )

    def _read_status_variables(self, conn: Connection) -> Iterator[StatusVariableRow]:
        for row in conn.execute(self._status_sql).mappings():
            yield StatusVariableRow(
                variable_name=row["variable_name"],
                variable_value=row["variable_value"],
            )

    def _run(self, operation: str, func: Callable[[Connection], T]) -> T:
        """Run `func` on a fresh connection, mapping driver errors."""
        try:
            conn = self._engine.connect()
        except SQLAlchemyError as e:
            raise UnavailableError(
                f"Cannot connect to the monitored server: {e}",
                details={"operation": operation},
            ) from e

        with conn:
            try:
                return func(conn)
            except DBAPIError as e:
                if e.connection_invalidated:
                    raise UnavailableError(
                        f"Lost connection to the monitored server during {operation}: {e}",
                        details={"operation": operation},
                    ) from e
                raise FailedPreconditionError(
                    f"Failed to {operation}: {e}",
                    details={"operation": operation},
                ) from e
            except SQLAlchemyError as e:
                raise FailedPreconditionError(
                    f"Failed to {operation}: {e}",
                    details={"operation": operation},
                ) from e


def mask_dsn(dsn: str) -> str:
    """Hide the password of a connection URL for logging."""
    try:
        return make_url(dsn).render_as_string(hide_password=True)
    except (SQLAlchemyError, ValueError):
        return dsn
