"""
SQLite storage layer for the metric catalog and measurements.

This module implements the MetricsStorage class that handles:
- SQLite database initialization with the fixed two-table schema
- Append-only registration of metric names
- Loading the name to id mapping
- Idempotent, all-or-nothing measurement batches

SQLite Schema:
    CREATE TABLE Metric (
        id INTEGER PRIMARY KEY,
        name TEXT
    );
    CREATE UNIQUE INDEX idx_metric_name ON Metric(name);
    CREATE TABLE Measurement (
        ts TEXT,                 -- server-side observation time
        id INTEGER,              -- Metric.id
        value INTEGER,
        PRIMARY KEY(ts, id)
    );
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from innodb_poller.errors import FailedPreconditionError
from innodb_poller.logging import get_logger
from innodb_poller.metrics.source import RawMeasurement

logger = get_logger(__name__)

# =============================================================================
# SQLite Schema
# =============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS Metric (
    id INTEGER PRIMARY KEY,
    name TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_metric_name ON Metric(name);

CREATE TABLE IF NOT EXISTS Measurement (
    ts TEXT,
    id INTEGER,
    value INTEGER,
    PRIMARY KEY(ts, id)
);
"""

INSERT_METRIC_SQL = "INSERT OR IGNORE INTO Metric(name) VALUES (?)"
INSERT_MEASUREMENT_SQL = "INSERT OR IGNORE INTO Measurement(ts, id, value) VALUES (?, ?, ?)"


def format_timestamp(ts: datetime) -> str:
    """Render a timestamp the way it is stored in Measurement.ts."""
    return ts.isoformat(sep=" ")


@dataclass
class WriteResult:
    """Outcome of one measurement batch.

    Attributes:
        submitted: Measurements whose name resolved to an id.
        inserted: Rows that were new; the rest already existed.
        unresolved: Names that had no id and were not written.
    """

    submitted: int = 0
    inserted: int = 0
    unresolved: list[str] = field(default_factory=list)

    @property
    def duplicates(self) -> int:
        return self.submitted - self.inserted


# =============================================================================
# MetricsStorage Class
# =============================================================================


class MetricsStorage:
    """
    SQLite-based storage for the metric catalog and measurements.

    Every operation opens its own connection and runs in the default
    executor. Multi-row writes are wrapped in a single transaction, so a
    failed batch leaves nothing behind.

    Example:
        >>> storage = MetricsStorage("./current.db")
        >>> await storage.initialize()
        >>> await storage.insert_metric_names(["status.uptime"])
        >>> name_to_id = await storage.load_metric_ids()
        >>> result = await storage.write_measurements(measurements, name_to_id)
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the MetricsStorage.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = Path(db_path)
        self._initialized = False
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection with proper settings.

        Yields:
            SQLite connection.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """
        Create the Metric and Measurement tables if they don't exist.

        Idempotent; runs on every startup.

        Raises:
            FailedPreconditionError: If the database cannot be initialized.
        """
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

                def _init_db() -> None:
                    with self._get_connection() as conn:
                        conn.executescript(SCHEMA_SQL)
                        conn.commit()

                await asyncio.get_event_loop().run_in_executor(None, _init_db)
                self._initialized = True
                logger.info(
                    "Measurement database initialized",
                    extra={"db_path": str(self.db_path)},
                )
            except (OSError, sqlite3.Error) as e:
                logger.error(
                    "Failed to initialize measurement database",
                    extra={"db_path": str(self.db_path), "error": str(e)},
                )
                raise FailedPreconditionError(
                    f"Failed to initialize measurement database: {e}",
                    details={"db_path": str(self.db_path)},
                ) from e

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def insert_metric_names(self, names: Iterable[str]) -> int:
        """
        Register metric names that are not in the catalog yet.

        Existing names keep their id. Runs as one transaction.

        Args:
            names: Metric names; duplicates are collapsed.

        Returns:
            Number of names that received a new id.

        Raises:
            FailedPreconditionError: If the write fails.
        """
        unique_names = sorted(set(names))
        if not unique_names:
            return 0

        await self._ensure_initialized()

        def _insert() -> int:
            with self._get_connection() as conn:
                before = conn.total_changes
                try:
                    conn.executemany(INSERT_METRIC_SQL, [(name,) for name in unique_names])
                    conn.commit()
                except sqlite3.Error:
                    conn.rollback()
                    raise
                return conn.total_changes - before

        try:
            added = await asyncio.get_event_loop().run_in_executor(None, _insert)
        except sqlite3.Error as e:
            logger.error(
                "Failed to register metric names",
                extra={"count": len(unique_names), "error": str(e)},
            )
            raise FailedPreconditionError(
                f"Failed to register metric names: {e}",
                details={"count": len(unique_names)},
            ) from e

        if added:
            logger.debug("Registered metric names", extra={"added": added})
        return added

    async def load_metric_ids(self) -> dict[str, int]:
        """
        Read the whole catalog.

        Returns:
            Mapping of metric name to id.

        Raises:
            FailedPreconditionError: If the query fails.
        """
        await self._ensure_initialized()

        def _load() -> dict[str, int]:
            with self._get_connection() as conn:
                rows = conn.execute("SELECT id, name FROM Metric").fetchall()
                return {name: metric_id for metric_id, name in rows}

        try:
            return await asyncio.get_event_loop().run_in_executor(None, _load)
        except sqlite3.Error as e:
            raise FailedPreconditionError(
                f"Failed to load metric catalog: {e}",
                details={"db_path": str(self.db_path)},
            ) from e

    async def write_measurements(
        self,
        measurements: Iterable[RawMeasurement],
        name_to_id: Mapping[str, int],
    ) -> WriteResult:
        """
        Write one poll cycle's measurements in a single transaction.

        Names are resolved through `name_to_id`; unresolved names are not
        written and are reported back. A (ts, id) pair that already exists
        is left untouched.

        Args:
            measurements: Measurements read from the server.
            name_to_id: Catalog snapshot.

        Returns:
            WriteResult with submitted, inserted and unresolved counts.

        Raises:
            FailedPreconditionError: If the batch cannot be committed. No row
                of the batch is visible afterwards.
        """
        rows: list[tuple[str, int, int]] = []
        unresolved: list[str] = []
        for m in measurements:
            metric_id = name_to_id.get(m.name)
            if metric_id is None:
                unresolved.append(m.name)
                continue
            rows.append((format_timestamp(m.timestamp), metric_id, m.value))

        if not rows:
            return WriteResult(submitted=0, inserted=0, unresolved=unresolved)

        await self._ensure_initialized()

        def _write_batch() -> int:
            with self._get_connection() as conn:
                before = conn.total_changes
                try:
                    conn.executemany(INSERT_MEASUREMENT_SQL, rows)
                    conn.commit()
                except (sqlite3.Error, OverflowError):
                    conn.rollback()
                    raise
                return conn.total_changes - before

        try:
            inserted = await asyncio.get_event_loop().run_in_executor(None, _write_batch)
        except (sqlite3.Error, OverflowError) as e:
            logger.error(
                "Failed to write measurement batch",
                extra={"count": len(rows), "error": str(e)},
            )
            raise FailedPreconditionError(
                f"Failed to write measurements: {e}",
                details={"count": len(rows)},
            ) from e

        logger.debug(
            "Wrote measurement batch",
            extra={"submitted": len(rows), "inserted": inserted},
        )
        return WriteResult(submitted=len(rows), inserted=inserted, unresolved=unresolved)

    async def count_measurements(self) -> int:
        """Return the number of stored measurements."""
        await self._ensure_initialized()

        def _count() -> int:
            with self._get_connection() as conn:
                return conn.execute("SELECT COUNT(*) FROM Measurement").fetchone()[0]

        try:
            return await asyncio.get_event_loop().run_in_executor(None, _count)
        except sqlite3.Error as e:
            raise FailedPreconditionError(
                f"Failed to count measurements: {e}",
                details={"db_path": str(self.db_path)},
            ) from e
