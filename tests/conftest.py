"""
Pytest configuration for the InnoDB poller tests.

The monitored MySQL server is simulated with a SQLite database attached as
``information_schema`` on every connection, so the reader's real SQL runs
against INNODB_METRICS and GLOBAL_STATUS tables filled by the tests.
"""

from __future__ import annotations

import logging
import sqlite3
import tempfile
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

from innodb_poller.metrics.source import SourceReader
from innodb_poller.metrics.storage import MetricsStorage

T0 = datetime(2026, 10, 19, 12, 0, 0)


class FakeServer:
    """SQLite stand-in for the two MySQL metadata views."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.info_path = directory / "information_schema.db"
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE INNODB_METRICS (
                    NAME TEXT,
                    SUBSYSTEM TEXT,
                    COUNT INTEGER,
                    TYPE TEXT,
                    STATUS TEXT,
                    TIME_ENABLED TEXT,
                    TIME_ELAPSED INTEGER
                );
                CREATE TABLE GLOBAL_STATUS (
                    VARIABLE_NAME TEXT,
                    VARIABLE_VALUE TEXT
                );
                """
            )

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(str(self.info_path))
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def add_engine_metric(
        self,
        subsystem: str,
        name: str,
        type_: str,
        count: Any,
        *,
        status: str = "enabled",
        enabled: datetime | None = T0,
        elapsed: int | None = 0,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO INNODB_METRICS "
                "(NAME, SUBSYSTEM, COUNT, TYPE, STATUS, TIME_ENABLED, TIME_ELAPSED) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    name,
                    subsystem,
                    count,
                    type_,
                    status,
                    enabled.isoformat(sep=" ") if enabled else None,
                    elapsed,
                ),
            )

    def update_engine_metric(self, name: str, *, count: Any, elapsed: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE INNODB_METRICS SET COUNT = ?, TIME_ELAPSED = ? WHERE NAME = ?",
                (count, elapsed, name),
            )

    def add_status_variable(self, name: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO GLOBAL_STATUS (VARIABLE_NAME, VARIABLE_VALUE) VALUES (?, ?)",
                (name, value),
            )

    def engine(self) -> Engine:
        engine = create_engine(
            f"sqlite:///{self.directory / 'server.db'}", poolclass=NullPool
        )
        info_path = str(self.info_path)

        @event.listens_for(engine, "connect")
        def _attach_information_schema(dbapi_conn: Any, _record: Any) -> None:
            dbapi_conn.execute("ATTACH DATABASE ? AS information_schema", (info_path,))

        return engine


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary measurement database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "current.db"


@pytest.fixture
async def storage(temp_db_path: Path) -> MetricsStorage:
    """Create an initialized MetricsStorage instance."""
    storage = MetricsStorage(temp_db_path)
    await storage.initialize()
    return storage


@pytest.fixture
def fake_server(tmp_path: Path) -> FakeServer:
    """Create an empty simulated MySQL server."""
    return FakeServer(tmp_path)


@pytest.fixture
def source(fake_server: FakeServer) -> Generator[SourceReader, None, None]:
    """Create a SourceReader pointed at the simulated server."""
    reader = SourceReader(fake_server.engine())
    yield reader
    reader.dispose()


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Generator[None, None, None]:
    """Drop handlers installed by setup_logging between tests."""
    yield
    logger = logging.getLogger("innodb_poller")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
