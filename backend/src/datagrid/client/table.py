"""DataTable: one table instance wiring store, fetch, edits, facets and persistence."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from datagrid.client.edit_controller import EditController, RowUpdater
from datagrid.client.facet_cache import FacetCache, FacetFetcher
from datagrid.client.fetch_orchestrator import (
    Fetcher,
    FetchOrchestrator,
    RequestMapper,
    ResponseMapper,
)
from datagrid.client.persistence import (
    FileStorage,
    Location,
    MemoryStorage,
    PersistenceBridge,
    RecentSearches,
    Storage,
)
from datagrid.client.store import (
    TableStore,
    clear_filters,
    collapse_all,
    expand_all,
    set_filters,
    set_search_tokens,
    toggle_column,
    toggle_row_expansion,
    update_params,
)
from datagrid.client.transport import HttpxTransport, Transport
from datagrid.core.config import ClientSettings
from datagrid.models.filters import Filter
from datagrid.models.table_state import ColumnConfig, Option, SortConfig, TableState

logger = logging.getLogger(__name__)


class DataTable:
    """Client-side controller for a remote (or in-memory) record table.

    Create it inside a running event loop, ``await start()`` to issue the
    first fetch, and ``await close()`` when the table goes away.
    """

    def __init__(
        self,
        columns: Sequence[ColumnConfig] = (),
        transport: Optional[Transport] = None,
        *,
        settings: Optional[ClientSettings] = None,
        static_data: Optional[Sequence[Dict[str, Any]]] = None,
        fetcher: Optional[Fetcher] = None,
        request_mapper: Optional[RequestMapper] = None,
        response_mapper: Optional[ResponseMapper] = None,
        row_updater: Optional[RowUpdater] = None,
        facet_fetcher: Optional[FacetFetcher] = None,
        location: Optional[Location] = None,
        local_storage: Optional[Storage] = None,
        session_storage: Optional[Storage] = None,
        initial_page_size: Optional[int] = None,
        id_key: str = "id",
        accordion_mode: bool = False,
        disable_url_sync: bool = False,
        disable_expansion_sync: bool = False,
    ):
        self.settings = settings or ClientSettings()
        self.columns = list(columns)
        self.transport = transport
        page_size = initial_page_size or self.settings.default_page_size

        if local_storage is None:
            if self.settings.local_storage_path:
                local_storage = FileStorage(self.settings.local_storage_path)
            else:
                local_storage = MemoryStorage()
        if session_storage is None:
            session_storage = MemoryStorage()

        defaults = TableState(page_size=page_size, id_key=id_key, accordion_mode=accordion_mode)
        self.store = TableStore(defaults)

        self.persistence: Optional[PersistenceBridge] = None
        if not disable_url_sync:
            self.persistence = PersistenceBridge(
                location=location,
                local_storage=local_storage,
                session_storage=session_storage,
                default_page_size=page_size,
                write_debounce_ms=self.settings.url_write_debounce_ms,
                expanded_url_limit=self.settings.url_expanded_limit,
                disable_expansion_sync=disable_expansion_sync,
            )
            self.store = TableStore(self.persistence.hydrate(defaults))

        self.recent_searches = RecentSearches(local_storage, limit=self.settings.recent_search_limit)

        self.fetcher = FetchOrchestrator(
            self.store,
            transport=transport,
            static_data=static_data,
            fetcher=fetcher,
            request_mapper=request_mapper,
            response_mapper=response_mapper,
            search_debounce_ms=self.settings.search_debounce_ms,
        )
        self.facets = FacetCache(
            self.store,
            columns=self.columns,
            transport=transport,
            facet_fetcher=facet_fetcher,
        )
        self.editor = EditController(
            self.store,
            transport=transport,
            columns=self.columns,
            row_updater=row_updater,
            facet_cache=self.facets,
        )

    @classmethod
    def from_settings(cls, columns: Sequence[ColumnConfig], settings: ClientSettings, **kwargs: Any) -> "DataTable":
        """Build a table that talks to ``settings.api_url`` over HTTP."""
        return cls(columns, HttpxTransport.from_settings(settings), settings=settings, **kwargs)

    @property
    def state(self) -> TableState:
        return self.store.state

    # --- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Attach the subscribers and run the first fetch.

        Raises
        ------
        MisconfigurationError
            If no transport, fetcher or static data was supplied.
        """
        self.fetcher.attach()
        if self.persistence is not None:
            self.persistence.attach(self.store)
        await self.fetcher.fetch_data()

    async def refresh(self) -> None:
        """Re-run the current query, e.g. to retry after an error."""
        await self.fetcher.fetch_data()

    async def close(self) -> None:
        await self.fetcher.close()
        if self.persistence is not None:
            self.persistence.close()
        if self.transport is not None:
            await self.transport.aclose()

    # --- sorting, searching, paging ------------------------------------------

    def sort(self, key: str) -> None:
        """Cycle the sort on ``key``: ascending, descending, off."""
        current = self.state.sort_config
        next_key: Optional[str] = key
        direction = "asc"
        if current.key == key:
            if current.direction == "asc":
                direction = "desc"
            else:
                next_key = None
        self.store.dispatch(update_params(sort_config=SortConfig(key=next_key, direction=direction)))

    def search(self, tokens: Sequence[str]) -> None:
        """Replace the global search tokens; the fetch follows after the debounce."""
        tokens = [t.strip() for t in tokens if t and t.strip()]
        for token in tokens:
            if token not in self.state.search_tokens:
                self.recent_searches.add(token)
        self.store.dispatch(set_search_tokens(tokens))

    def set_filters(self, filters: Sequence[Any]) -> None:
        self.store.dispatch(set_filters(filters))

    def add_filter(self, filter_: Filter) -> None:
        self.set_filters([*self.state.active_filters, filter_])

    def remove_filter(self, index: int) -> None:
        filters = list(self.state.active_filters)
        if 0 <= index < len(filters):
            filters.pop(index)
            self.set_filters(filters)

    def clear_filters(self) -> None:
        self.store.dispatch(clear_filters())

    def change_page(self, page: int) -> None:
        self.store.dispatch(update_params(current_page=int(page)))

    def change_page_size(self, size: int) -> None:
        self.store.dispatch(update_params(page_size=int(size)))

    # --- columns & rows ------------------------------------------------------

    def toggle_column(self, key: str) -> None:
        self.store.dispatch(toggle_column(key))

    def visible_columns(self) -> List[ColumnConfig]:
        hidden = set(self.state.hidden_columns)
        return [c for c in self.columns if c.key not in hidden]

    def toggle_row_expansion(self, row_id: Any) -> None:
        self.store.dispatch(toggle_row_expansion(row_id))

    def expand_all(self) -> None:
        self.store.dispatch(expand_all())

    def collapse_all(self) -> None:
        self.store.dispatch(collapse_all())

    def is_expanded(self, row_id: Any) -> bool:
        return self.state.is_row_expanded(row_id)

    # --- editing -------------------------------------------------------------

    def start_edit(self, row_id: Any, field_key: str) -> Any:
        return self.editor.start_edit(row_id, field_key)

    def cancel_edit(self) -> None:
        self.editor.cancel_edit()

    async def commit_edit(self, row_id: Any, field_key: str, value: Any) -> Optional[Dict[str, Any]]:
        return await self.editor.commit_edit(row_id, field_key, value)

    async def load_facets(self, field: str) -> Optional[List[Option]]:
        return await self.facets.ensure(field)
