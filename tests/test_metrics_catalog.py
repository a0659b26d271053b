"""
Tests for the metric catalog.

This test module validates:
- Bootstrap registers the union of both sources
- Repeated bootstrap is idempotent
- Resolution against the in-memory snapshot
- Explicit registration of names seen after bootstrap
"""

from __future__ import annotations

import pytest
from conftest import FakeServer

from innodb_poller.errors import FailedPreconditionError, InternalError, UnavailableError
from innodb_poller.metrics.catalog import MetricCatalog
from innodb_poller.metrics.source import SourceReader
from innodb_poller.metrics.storage import MetricsStorage


@pytest.fixture
def catalog(storage: MetricsStorage, source: SourceReader) -> MetricCatalog:
    """Create a catalog over the temporary store and simulated server."""
    return MetricCatalog(storage, source)


class TestBootstrap:
    """Tests for MetricCatalog.bootstrap."""

    async def test_bootstrap_empty_catalog(
        self, fake_server: FakeServer, catalog: MetricCatalog
    ) -> None:
        """Test both namespaces land in the catalog."""
        fake_server.add_engine_metric("lock", "waits", "counter", 5)
        fake_server.add_status_variable("Threads_connected", "3")

        added = await catalog.bootstrap()

        assert added == 2
        assert set(catalog.snapshot) == {"lock.waits.counter", "status.threads_connected"}

    async def test_bootstrap_twice_assigns_no_new_ids(
        self, fake_server: FakeServer, catalog: MetricCatalog
    ) -> None:
        """Test bootstrap is safe to run on every start."""
        fake_server.add_engine_metric("lock", "waits", "counter", 5)
        fake_server.add_status_variable("Uptime", "10")
        await catalog.bootstrap()
        before = catalog.snapshot

        added = await catalog.bootstrap()

        assert added == 0
        assert catalog.snapshot == before

    async def test_bootstrap_after_restart_keeps_ids(
        self,
        fake_server: FakeServer,
        storage: MetricsStorage,
        source: SourceReader,
    ) -> None:
        """Test a fresh catalog instance sees the same ids plus new names."""
        fake_server.add_status_variable("Uptime", "10")
        first = MetricCatalog(storage, source)
        await first.bootstrap()

        fake_server.add_status_variable("Questions", "4")
        second = MetricCatalog(storage, source)
        added = await second.bootstrap()

        assert added == 1
        assert second.resolve("status.uptime") == first.resolve("status.uptime")
        assert second.resolve("status.questions") is not None

    async def test_bootstrap_includes_disabled_counters(
        self, fake_server: FakeServer, catalog: MetricCatalog
    ) -> None:
        """Test disabled engine counters are registered too."""
        fake_server.add_engine_metric("buffer", "reads", "status_counter", 0, status="disabled")

        await catalog.bootstrap()

        assert "buffer.reads.status_counter" in catalog

    async def test_bootstrap_query_failure(
        self, fake_server: FakeServer, storage: MetricsStorage
    ) -> None:
        """Test a failing source query is fatal."""
        reader = SourceReader(
            fake_server.engine(), engine_metrics_view="information_schema.MISSING"
        )

        with pytest.raises(FailedPreconditionError):
            await MetricCatalog(storage, reader).bootstrap()

    async def test_bootstrap_unreachable_server(
        self, tmp_path, storage: MetricsStorage
    ) -> None:
        """Test an unreachable server is fatal."""
        reader = SourceReader.from_dsn(f"sqlite:///{tmp_path / 'missing' / 'server.db'}")

        with pytest.raises(UnavailableError):
            await MetricCatalog(storage, reader).bootstrap()


class TestResolve:
    """Tests for MetricCatalog.resolve and register."""

    async def test_resolve_known_and_unknown(
        self, fake_server: FakeServer, catalog: MetricCatalog
    ) -> None:
        """Test unknown names resolve to None, never to a sentinel id."""
        fake_server.add_status_variable("Uptime", "10")
        await catalog.bootstrap()

        assert isinstance(catalog.resolve("status.uptime"), int)
        assert catalog.resolve("status.brand_new") is None

    async def test_resolve_uses_snapshot(
        self, fake_server: FakeServer, catalog: MetricCatalog, storage: MetricsStorage
    ) -> None:
        """Test names added to the store behind the catalog's back need reload."""
        await catalog.bootstrap()
        await storage.insert_metric_names(["status.late"])

        assert catalog.resolve("status.late") is None

        await catalog.reload()

        assert catalog.resolve("status.late") is not None

    async def test_register_new_names(self, catalog: MetricCatalog) -> None:
        """Test register adds missing names and refreshes the snapshot."""
        await catalog.bootstrap()

        added = await catalog.register(["status.late", "status.late"])

        assert added == 1
        assert catalog.resolve("status.late") is not None

    async def test_register_known_names(
        self, fake_server: FakeServer, catalog: MetricCatalog
    ) -> None:
        """Test register ignores names already known."""
        fake_server.add_status_variable("Uptime", "10")
        await catalog.bootstrap()

        assert await catalog.register(["status.uptime"]) == 0

    async def test_missing(self, fake_server: FakeServer, catalog: MetricCatalog) -> None:
        """Test missing returns names absent from the snapshot."""
        fake_server.add_status_variable("Uptime", "10")
        await catalog.bootstrap()

        assert catalog.missing(["status.uptime", "status.other"]) == {"status.other"}

    async def test_unexpected_failure_is_wrapped(
        self, storage: MetricsStorage, source: SourceReader, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test non-poller exceptions surface as InternalError."""

        def _boom() -> set[str]:
            raise RuntimeError("driver bug")

        monkeypatch.setattr(source, "list_metric_names", _boom)

        with pytest.raises(InternalError) as exc_info:
            await MetricCatalog(storage, source).bootstrap()
        assert isinstance(exc_info.value.__cause__, RuntimeError)
