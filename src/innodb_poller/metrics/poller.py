"""
Poll loop driving the source reader, catalog and measurement store.

This module implements the MetricsPoller class that:
- Bootstraps the metric catalog once at startup
- Fetches current measurements from the monitored server every cycle
- Applies the unknown-metric policy to names first seen after bootstrap
- Writes each cycle's batch atomically and optionally echoes it as JSON
- Sleeps for the configured interval before the next cycle

Cycles never overlap. Any PollerError raised by a cycle ends the loop and
is propagated to the caller; there is no retry.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TextIO

from innodb_poller.config import UNKNOWN_METRIC_POLICIES
from innodb_poller.errors import InvalidArgumentError, PollerError
from innodb_poller.logging import get_logger
from innodb_poller.metrics.catalog import MetricCatalog
from innodb_poller.metrics.source import RawMeasurement, SourceReader
from innodb_poller.metrics.storage import MetricsStorage

if TYPE_CHECKING:
    from innodb_poller.config import PollerConfig

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_POLL_INTERVAL = 1.0  # seconds

POLICY_REGISTER = "register"
POLICY_SKIP = "skip"


# =============================================================================
# Enums and Data Models
# =============================================================================


class PollerStatus(str, Enum):
    """Status of the metrics poller."""

    STOPPED = "stopped"
    BOOTSTRAPPING = "bootstrapping"
    POLLING = "polling"
    SLEEPING = "sleeping"
    FAILED = "failed"


@dataclass
class PollerState:
    """
    Current state of the metrics poller.

    Attributes:
        status: Current poller status.
        interval_seconds: Delay between cycles.
        json_output: Whether each cycle is echoed as JSON.
        unknown_metric_policy: 'register' or 'skip'.
        started_at: When the poll loop started.
        last_poll_at: When the last cycle completed.
        cycle_count: Completed cycles.
        measurement_count: Running total of measurements fetched.
        inserted_count: Measurements that were new rows in the store.
        registered_count: Names added to the catalog after bootstrap.
        dropped_count: Measurements not written because their name had no id.
        last_error: Message of the error that stopped the loop, if any.
    """

    status: PollerStatus = PollerStatus.STOPPED
    interval_seconds: float = DEFAULT_POLL_INTERVAL
    json_output: bool = False
    unknown_metric_policy: str = POLICY_REGISTER
    started_at: datetime | None = None
    last_poll_at: datetime | None = None
    cycle_count: int = 0
    measurement_count: int = 0
    inserted_count: int = 0
    registered_count: int = 0
    dropped_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "interval_seconds": self.interval_seconds,
            "json_output": self.json_output,
            "unknown_metric_policy": self.unknown_metric_policy,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_poll_at": (
                self.last_poll_at.isoformat() if self.last_poll_at else None
            ),
            "cycle_count": self.cycle_count,
            "measurement_count": self.measurement_count,
            "inserted_count": self.inserted_count,
            "registered_count": self.registered_count,
            "dropped_count": self.dropped_count,
            "last_error": self.last_error,
        }


# =============================================================================
# JSON Output
# =============================================================================


def emit_snapshot(measurements: Sequence[RawMeasurement], stream: TextIO) -> None:
    """Write one cycle's measurements as a single JSON array line."""
    stream.write(json.dumps([m.to_dict() for m in measurements]) + "\n")
    stream.flush()


# =============================================================================
# MetricsPoller Class
# =============================================================================


class MetricsPoller:
    """
    Fixed-interval poller for InnoDB metrics and global status.

    Example:
        >>> storage = MetricsStorage("./current.db")
        >>> source = SourceReader.from_dsn("mysql+pymysql://root@localhost/")
        >>> poller = MetricsPoller(source, storage, interval_seconds=5)
        >>> await poller.run()
    """

    def __init__(
        self,
        source: SourceReader,
        storage: MetricsStorage,
        config: PollerConfig | None = None,
        *,
        catalog: MetricCatalog | None = None,
        interval_seconds: float | None = None,
        json_output: bool | None = None,
        unknown_metric_policy: str | None = None,
        output: TextIO | None = None,
    ) -> None:
        """
        Initialize the MetricsPoller.

        Keyword arguments override the matching PollerConfig fields.

        Args:
            source: Reader for the monitored server.
            storage: Measurement store.
            config: Optional PollerConfig for default settings.
            catalog: Catalog to use; one is built from storage and source if omitted.
            interval_seconds: Delay between cycles.
            json_output: Echo every cycle as a JSON line on `output`.
            unknown_metric_policy: 'register' or 'skip'.
            output: Stream for JSON output (default: sys.stdout).

        Raises:
            InvalidArgumentError: If the interval or policy is invalid.
        """
        self._source = source
        self._storage = storage
        self._catalog = catalog if catalog is not None else MetricCatalog(storage, source)
        self._output = output
        self._state = PollerState()
        self._stop_event = asyncio.Event()
        self._bootstrapped = False

        if config:
            self._state.interval_seconds = config.interval_seconds
            self._state.json_output = config.json_output
            self._state.unknown_metric_policy = config.unknown_metric_policy

        if interval_seconds is not None:
            self._state.interval_seconds = interval_seconds
        if json_output is not None:
            self._state.json_output = json_output
        if unknown_metric_policy is not None:
            self._state.unknown_metric_policy = unknown_metric_policy

        if self._state.interval_seconds <= 0:
            raise InvalidArgumentError(
                "interval_seconds must be positive",
                details={"interval_seconds": self._state.interval_seconds},
            )
        if self._state.unknown_metric_policy not in UNKNOWN_METRIC_POLICIES:
            raise InvalidArgumentError(
                f"Invalid unknown metric policy: {self._state.unknown_metric_policy}",
                details={
                    "policy": self._state.unknown_metric_policy,
                    "valid": list(UNKNOWN_METRIC_POLICIES),
                },
            )

    @property
    def catalog(self) -> MetricCatalog:
        return self._catalog

    @property
    def is_running(self) -> bool:
        """Check if the poll loop is active."""
        return self._state.status in (PollerStatus.POLLING, PollerStatus.SLEEPING)

    def get_status(self) -> PollerState:
        """
        Get the current poller state.

        Returns:
            Copy of the current PollerState.
        """
        return PollerState(**vars(self._state))

    def stop(self) -> None:
        """Ask the loop to end after the current cycle, or before the first one."""
        self._stop_event.set()

    async def bootstrap(self) -> None:
        """
        Create the schema and bootstrap the metric catalog.

        Raises:
            PollerError: If the store or the catalog cannot be set up.
        """
        self._state.status = PollerStatus.BOOTSTRAPPING
        try:
            await self._storage.initialize()
            await self._catalog.bootstrap()
        except PollerError as e:
            self._fail(e)
            raise
        self._bootstrapped = True

    async def poll_once(self) -> list[RawMeasurement]:
        """
        Run one cycle: fetch, resolve, write, optionally emit.

        Returns:
            The measurements fetched in this cycle.

        Raises:
            PollerError: If fetching or writing fails.
        """
        self._state.status = PollerStatus.POLLING
        try:
            measurements = await asyncio.get_event_loop().run_in_executor(
                None, self._source.fetch_current
            )
            await self._handle_unknown_names(measurements)
            result = await self._storage.write_measurements(
                measurements, self._catalog.snapshot
            )
        except PollerError as e:
            self._fail(e)
            raise

        if self._state.json_output:
            emit_snapshot(measurements, self._output or sys.stdout)

        self._state.cycle_count += 1
        self._state.measurement_count += len(measurements)
        self._state.inserted_count += result.inserted
        self._state.dropped_count += len(result.unresolved)
        self._state.last_poll_at = datetime.now()

        logger.info(
            "Measurements: %d",
            self._state.measurement_count,
            extra={
                "cycle": self._state.cycle_count,
                "fetched": len(measurements),
                "inserted": result.inserted,
                "duplicates": result.duplicates,
            },
        )
        return measurements

    async def run(self, max_cycles: int | None = None) -> PollerState:
        """
        Bootstrap if needed, then poll until stopped.

        Args:
            max_cycles: Stop after this many cycles (default: run until stop()).

        Returns:
            Final PollerState.

        Raises:
            PollerError: On the first unrecoverable error.
        """
        if not self._bootstrapped:
            await self.bootstrap()

        self._state.started_at = datetime.now()
        logger.info(
            "Metrics poller started",
            extra={
                "interval_seconds": self._state.interval_seconds,
                "json_output": self._state.json_output,
                "unknown_metric_policy": self._state.unknown_metric_policy,
                "catalog_size": len(self._catalog),
            },
        )

        cycles = 0
        while not self._stop_event.is_set():
            await self.poll_once()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break

            self._state.status = PollerStatus.SLEEPING
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._state.interval_seconds,
                )
            except TimeoutError:
                pass

        self._state.status = PollerStatus.STOPPED
        logger.info(
            "Metrics poller stopped",
            extra={
                "cycle_count": self._state.cycle_count,
                "measurement_count": self._state.measurement_count,
            },
        )
        return self.get_status()

    async def _handle_unknown_names(self, measurements: Sequence[RawMeasurement]) -> None:
        unknown = self._catalog.missing(m.name for m in measurements)
        if not unknown:
            return

        if self._state.unknown_metric_policy == POLICY_REGISTER:
            self._state.registered_count += await self._catalog.register(unknown)
        else:
            logger.warning(
                "Skipping measurements of metrics missing from the catalog",
                extra={"names": sorted(unknown)},
            )

    def _fail(self, error: PollerError) -> None:
        self._state.status = PollerStatus.FAILED
        self._state.last_error = error.message
        logger.error(
            "Metrics poller failed",
            extra={"error_code": error.error_code, "error": error.message},
        )
