"""Fetch-once cache of per-field option lists for filter and edit dropdowns."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from datagrid.client.store import TableStore, set_facets
from datagrid.client.transport import Transport
from datagrid.models.table_state import ColumnConfig, Option

logger = logging.getLogger(__name__)

FacetFetcher = Callable[[str, Optional[ColumnConfig]], Awaitable[Any]]


def normalize_options(raw: Any) -> List[Option]:
    """Turn raw scalars or ``{label, value}`` objects into options."""
    if not isinstance(raw, (list, tuple)):
        raise ValueError(f"Expected a list of options, got {type(raw).__name__}")

    options = []
    for item in raw:
        if isinstance(item, Option):
            options.append(item)
        elif isinstance(item, dict):
            value = item.get("value", item.get("label"))
            label = item.get("label")
            options.append(Option(label=str(value) if label is None else str(label), value=value))
        else:
            options.append(Option(label=str(item), value=item))
    return options


class FacetCache:
    """Resolves and memoizes facet options into the table state.

    Lookup order for a missing field: static column options, the injected
    facet fetcher, then the facet endpoint (column ``facet_url`` or the
    transport's derived one).
    """

    def __init__(
        self,
        store: TableStore,
        columns: Sequence[ColumnConfig] = (),
        transport: Optional[Transport] = None,
        facet_fetcher: Optional[FacetFetcher] = None,
    ):
        self._store = store
        self._columns: Dict[str, ColumnConfig] = {c.key: c for c in columns}
        self._transport = transport
        self._facet_fetcher = facet_fetcher
        self._pending: Dict[str, asyncio.Task] = {}
        # Bumped on every invalidation; a fetch started under an older
        # generation must not write into the cache
        self._generations: Dict[str, int] = {}

    def get(self, field: str) -> Optional[List[Option]]:
        return self._store.state.facet_cache.get(field)

    async def ensure(self, field: str) -> Optional[List[Option]]:
        """Load options for ``field`` unless already cached.

        Returns the cached options, or None when they could not be loaded.
        Concurrent calls for the same field share one fetch.
        """
        cached = self._store.state.facet_cache.get(field)
        if cached is not None:
            return cached

        task = self._pending.get(field)
        if task is None:
            generation = self._generations.get(field, 0)
            task = asyncio.get_running_loop().create_task(self._load(field, generation))
            self._pending[field] = task
            task.add_done_callback(lambda done: self._forget(field, done))
        return await asyncio.shield(task)

    def _forget(self, field: str, task: asyncio.Task) -> None:
        if self._pending.get(field) is task:
            del self._pending[field]

    async def _load(self, field: str, generation: int) -> Optional[List[Option]]:
        column = self._columns.get(field)

        if column is not None and column.options is not None:
            options = normalize_options(column.options)
            self._store.dispatch(set_facets(field, options))
            return options

        try:
            if self._facet_fetcher is not None:
                raw = await self._facet_fetcher(field, column)
            elif self._transport is not None:
                raw = await self._transport.fetch_facets(
                    field, column.facet_url if column is not None else None
                )
            else:
                logger.debug(f"No facet source configured for [{field}]")
                return None
            options = normalize_options(raw)
        except Exception as e:
            logger.warning(f"Facet lookup failed for [{field}]: {e}")
            return None

        if self._generations.get(field, 0) != generation:
            logger.debug(f"Discarding options for [{field}] fetched before an edit")
            return options

        self._store.dispatch(set_facets(field, options))
        return options

    def invalidate(self, field: str) -> None:
        """Drop cached options so the next ``ensure`` fetches fresh values."""
        self._generations[field] = self._generations.get(field, 0) + 1
        self._pending.pop(field, None)
        self._store.dispatch(set_facets(field, None))
