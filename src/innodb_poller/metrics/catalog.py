"""
Metric catalog: the append-only mapping from metric name to integer id.

The durable copy lives in the Metric table of the measurement store. The
catalog keeps an in-memory snapshot of it for resolution during poll cycles
and only changes that snapshot through bootstrap(), register() or reload().
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from innodb_poller.errors import InternalError, PollerError
from innodb_poller.logging import get_logger
from innodb_poller.metrics.source import SourceReader
from innodb_poller.metrics.storage import MetricsStorage

logger = get_logger(__name__)


class MetricCatalog:
    """
    Name to id mapping backed by MetricsStorage.

    Example:
        >>> catalog = MetricCatalog(storage, source)
        >>> await catalog.bootstrap()
        >>> catalog.resolve("status.threads_connected")
        42
    """

    def __init__(self, storage: MetricsStorage, source: SourceReader) -> None:
        self._storage = storage
        self._source = source
        self._name_to_id: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._name_to_id)

    def __contains__(self, name: object) -> bool:
        return name in self._name_to_id

    @property
    def snapshot(self) -> dict[str, int]:
        """Copy of the current in-memory mapping."""
        return dict(self._name_to_id)

    async def bootstrap(self) -> int:
        """
        Register every metric name the server knows and load the snapshot.

        Names already in the catalog keep their id, so calling this on every
        start only ever adds rows.

        Returns:
            Number of names that received a new id.

        Raises:
            UnavailableError: If the server cannot be reached.
            FailedPreconditionError: If reading names or writing the catalog fails.
            InternalError: On any other unexpected failure.
        """
        try:
            names = await asyncio.get_event_loop().run_in_executor(
                None, self._source.list_metric_names
            )
            added = await self._storage.insert_metric_names(names)
            await self.reload()
        except PollerError:
            raise
        except Exception as e:
            raise InternalError(
                f"Metric catalog bootstrap failed: {e}",
            ) from e

        logger.info(
            "Metric catalog bootstrapped",
            extra={"known": len(names), "added": added, "total": len(self)},
        )
        return added

    async def reload(self) -> None:
        """Replace the snapshot with the current contents of the store."""
        self._name_to_id = await self._storage.load_metric_ids()

    async def register(self, names: Iterable[str]) -> int:
        """
        Add names first seen after bootstrap and refresh the snapshot.

        Args:
            names: Metric names; names already known are ignored.

        Returns:
            Number of names that received a new id.
        """
        missing = self.missing(names)
        if not missing:
            return 0

        added = await self._storage.insert_metric_names(missing)
        await self.reload()
        logger.info(
            "Registered new metric names",
            extra={"added": added, "names": sorted(missing)},
        )
        return added

    def resolve(self, name: str) -> int | None:
        """Return the id of `name`, or None if it is not in the snapshot."""
        return self._name_to_id.get(name)

    def missing(self, names: Iterable[str]) -> set[str]:
        """Return the subset of `names` absent from the snapshot."""
        return {name for name in names if name not in self._name_to_id}
