"""
Metrics pipeline for the InnoDB poller.

Components:
- source: read-only queries against the monitored MySQL server
- storage: SQLite persistence for the metric catalog and measurements
- catalog: append-only metric name to id mapping
- poller: fixed-interval poll loop
"""

from innodb_poller.metrics.catalog import MetricCatalog
from innodb_poller.metrics.poller import MetricsPoller, PollerState, PollerStatus
from innodb_poller.metrics.source import RawMeasurement, SourceKind, SourceReader
from innodb_poller.metrics.storage import MetricsStorage, WriteResult

__all__ = [
    "MetricCatalog",
    "MetricsPoller",
    "MetricsStorage",
    "PollerState",
    "PollerStatus",
    "RawMeasurement",
    "SourceKind",
    "SourceReader",
    "WriteResult",
]
