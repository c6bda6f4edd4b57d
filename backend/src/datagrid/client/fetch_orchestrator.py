"""Keeps table data in step with the record source.

Two cooperative processes run per table instance:

1. Search debouncing: ``search_tokens`` changes are joined and committed to
   ``debounced_search_term`` after a quiet period. Each new change cancels
   the pending timer.
2. Request execution: any change to the query fields issues a new request.
   The previous request's cancellation token is cancelled first, and a
   response whose token was cancelled is dropped (last issued wins).
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from datagrid.client.store import (
    TableStore,
    fetch_error,
    fetch_success,
    start_fetch,
    sync_debounced_search,
)
from datagrid.client.transport import CancellationToken, Transport
from datagrid.core.errors import CancelledRequest, MisconfigurationError
from datagrid.models.table_state import TableState
from datagrid.schemas.table_api import RequestParams, ResponseEnvelope
from datagrid.services.query_engine import QueryEngine

logger = logging.getLogger(__name__)

RequestMapper = Callable[[TableState], RequestParams]
ResponseMapper = Callable[[Any], Any]
Fetcher = Callable[[RequestParams, CancellationToken], Awaitable[Any]]


def default_request_mapper(state: TableState) -> RequestParams:
    """Build list endpoint parameters from the table state."""
    return RequestParams(
        page=state.current_page,
        limit=state.page_size,
        sort_by=state.sort_config.key or "",
        sort_order=state.sort_config.direction,
        search=state.debounced_search_term,
        filters=(
            json.dumps([f.to_wire() for f in state.active_filters])
            if state.active_filters
            else None
        ),
    )


def default_response_mapper(raw: Any) -> Dict[str, Any]:
    """Map ``{data, meta: {total, totalPages}}`` to the envelope fields."""
    raw = raw if isinstance(raw, dict) else {}
    meta = raw.get("meta") if isinstance(raw.get("meta"), dict) else {}
    return {
        "data": raw.get("data"),
        "total": meta.get("total"),
        "total_pages": meta.get("totalPages"),
    }


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    return number if number >= 0 else None


def normalize_envelope(mapped: Any) -> ResponseEnvelope:
    """Guarantee a list of records and non-negative counts."""
    if isinstance(mapped, ResponseEnvelope):
        mapped = mapped.model_dump()
    if not isinstance(mapped, dict):
        mapped = {}

    data = mapped.get("data")
    total = _as_int(mapped.get("total"))
    total_pages = _as_int(mapped.get("total_pages", mapped.get("totalPages")))

    return ResponseEnvelope(
        data=[row for row in data if isinstance(row, dict)] if isinstance(data, list) else [],
        total=total or 0,
        total_pages=total_pages or 1,
    )


class FetchOrchestrator:
    """Debounces search input and executes cancellable fetches."""

    def __init__(
        self,
        store: TableStore,
        transport: Optional[Transport] = None,
        static_data: Optional[Sequence[Dict[str, Any]]] = None,
        fetcher: Optional[Fetcher] = None,
        request_mapper: Optional[RequestMapper] = None,
        response_mapper: Optional[ResponseMapper] = None,
        search_debounce_ms: int = 500,
    ):
        self._store = store
        self._transport = transport
        self._static_data: Optional[List[Dict[str, Any]]] = (
            list(static_data) if static_data is not None else None
        )
        self._fetcher = fetcher
        self._request_mapper = request_mapper or default_request_mapper
        self._response_mapper = response_mapper or default_response_mapper
        self._search_debounce = search_debounce_ms / 1000

        self._token: Optional[CancellationToken] = None
        self._generation = 0
        self._fetch_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def configured(self) -> bool:
        return (
            self._fetcher is not None
            or self._static_data is not None
            or self._transport is not None
        )

    def attach(self) -> None:
        """Start reacting to store transitions."""
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._on_state_change)

    def _on_state_change(self, previous: TableState, current: TableState) -> None:
        if current.search_tokens != previous.search_tokens:
            self.schedule_search_sync()
        if current.query_key() != previous.query_key():
            self.request_fetch()

    # --- search debouncing -------------------------------------------------

    def schedule_search_sync(self) -> None:
        """(Re)start the quiet-period timer for the current search tokens."""
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None

        state = self._store.state
        term = " ".join(state.search_tokens)
        if term == state.debounced_search_term:
            return

        self._debounce_task = asyncio.get_running_loop().create_task(self._sync_after_quiet(term))

    async def _sync_after_quiet(self, term: str) -> None:
        await asyncio.sleep(self._search_debounce)
        if " ".join(self._store.state.search_tokens) != term:
            return
        self._debounce_task = None
        self._store.dispatch(sync_debounced_search(term))

    # --- request execution -------------------------------------------------

    def request_fetch(self) -> asyncio.Task:
        """Supersede any in-flight request and schedule a new fetch."""
        if self._token is not None:
            self._token.cancel()
        self._generation += 1
        self._fetch_task = asyncio.get_running_loop().create_task(
            self._fetch_if_latest(self._generation)
        )
        return self._fetch_task

    async def _fetch_if_latest(self, generation: int) -> None:
        # Bursts of changes scheduled before the loop ran collapse to one request
        if generation != self._generation:
            return
        await self.fetch_data()

    async def fetch_data(self) -> None:
        """Fetch the page described by the current state and commit it.

        Raises
        ------
        MisconfigurationError
            If there is neither a transport, a fetcher nor static data.
        """
        if not self.configured:
            raise MisconfigurationError(
                "Misconfiguration: provide a transport, a fetcher or static data."
            )

        if self._token is not None:
            self._token.cancel()
        token = CancellationToken()
        self._token = token

        state = self._store.state
        params = self._request_mapper(state)
        self._store.dispatch(start_fetch())

        try:
            raw = await self._execute(params, token, state)
            envelope = normalize_envelope(self._response_mapper(raw))
        except CancelledRequest:
            logger.debug(f"Discarded superseded request for page {params.page}")
            return
        except Exception as e:
            if token.cancelled:
                logger.debug(f"Ignoring failure of superseded request: {e}")
                return
            logger.error(f"Error fetching table data: {e}")
            self._store.dispatch(fetch_error(str(e)))
            return

        if token.cancelled:
            logger.debug(f"Discarded stale response for page {params.page}")
            return

        self._store.dispatch(fetch_success(envelope.data, envelope.total, envelope.total_pages))

    async def _execute(self, params: RequestParams, token: CancellationToken, state: TableState) -> Any:
        if self._fetcher is not None:
            return await token.guard(self._fetcher(params, token))
        if self._static_data is not None:
            return self._evaluate_static(state)
        return await self._transport.fetch_page(params, token)

    def _evaluate_static(self, state: TableState) -> Dict[str, Any]:
        """Local search and sort over the in-memory collection, one page."""
        matched = QueryEngine.search_all_fields(self._static_data, state.debounced_search_term)
        ordered = QueryEngine.sort(matched, state.sort_config.key, state.sort_config.direction)
        return {
            "data": ordered,
            "meta": {
                "total": len(ordered),
                "page": 1,
                "limit": len(ordered),
                "totalPages": 1,
            },
        }

    async def close(self) -> None:
        """Stop listening and cancel pending timers and requests."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._token is not None:
            self._token.cancel()

        pending = [t for t in (self._debounce_task, self._fetch_task) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._debounce_task = None
        self._fetch_task = None
