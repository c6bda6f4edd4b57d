"""Table store: a pure reducer plus a small observable holder.

``table_reducer(state, action) -> state`` has no side effects. Unknown
actions return the very same state object, so subscribers are only
notified for real transitions.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel

from datagrid.models.filters import Filter
from datagrid.models.table_state import EditingCell, Option, SortConfig, TableState
from datagrid.schemas.table_api import ResponseEnvelope

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Actions understood by the table reducer."""

    # Data lifecycle
    START_FETCH = "start_fetch"
    FETCH_SUCCESS = "fetch_success"
    FETCH_ERROR = "fetch_error"

    # Search & filtering
    SET_SEARCH_TOKENS = "set_search_tokens"
    SET_FILTERS = "set_filters"
    CLEAR_FILTERS = "clear_filters"
    SYNC_DEBOUNCED_SEARCH = "sync_debounced_search"

    # Parameters & columns
    UPDATE_PARAMS = "update_params"
    TOGGLE_COLUMN = "toggle_column"

    # Inline editing
    SET_EDIT_CELL = "set_edit_cell"
    UPDATE_ROW = "update_row"
    SET_FACETS = "set_facets"

    # Row expansion
    TOGGLE_ROW_EXPANSION = "toggle_row_expansion"
    EXPAND_ALL = "expand_all"
    COLLAPSE_ALL = "collapse_all"


class Action(BaseModel):
    """A state transition request."""

    type: str
    payload: Any = None


# ---------------------------------------------------------------------------
# Action creators
# ---------------------------------------------------------------------------


def start_fetch() -> Action:
    return Action(type=ActionType.START_FETCH)


def fetch_success(data: List[Dict[str, Any]], total: int, total_pages: int) -> Action:
    return Action(
        type=ActionType.FETCH_SUCCESS,
        payload=ResponseEnvelope(data=data, total=total, total_pages=total_pages),
    )


def fetch_error(message: str) -> Action:
    return Action(type=ActionType.FETCH_ERROR, payload=message)


def set_search_tokens(tokens: Sequence[str]) -> Action:
    return Action(type=ActionType.SET_SEARCH_TOKENS, payload=list(tokens))


def set_filters(filters: Sequence[Any]) -> Action:
    return Action(
        type=ActionType.SET_FILTERS,
        payload=[f if isinstance(f, Filter) else Filter.model_validate(f) for f in filters],
    )


def clear_filters() -> Action:
    return Action(type=ActionType.CLEAR_FILTERS)


def sync_debounced_search(term: str) -> Action:
    return Action(type=ActionType.SYNC_DEBOUNCED_SEARCH, payload=term)


def update_params(**partial: Any) -> Action:
    """Partial update of ``current_page``, ``page_size`` and ``sort_config``."""
    return Action(type=ActionType.UPDATE_PARAMS, payload=partial)


def toggle_column(key: str) -> Action:
    return Action(type=ActionType.TOGGLE_COLUMN, payload=key)


def set_edit_cell(cell: Optional[EditingCell]) -> Action:
    return Action(type=ActionType.SET_EDIT_CELL, payload=cell)


def update_row(record: Dict[str, Any]) -> Action:
    return Action(type=ActionType.UPDATE_ROW, payload=record)


def set_facets(field: str, options: Optional[Sequence[Option]]) -> Action:
    return Action(
        type=ActionType.SET_FACETS,
        payload={"field": field, "options": None if options is None else list(options)},
    )


def toggle_row_expansion(row_id: Any) -> Action:
    return Action(type=ActionType.TOGGLE_ROW_EXPANSION, payload=row_id)


def expand_all() -> Action:
    return Action(type=ActionType.EXPAND_ALL)


def collapse_all() -> Action:
    return Action(type=ActionType.COLLAPSE_ALL)


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def clamp_page(page: int, total_pages: int) -> int:
    return min(max(1, page), max(total_pages, 1))


def table_reducer(state: TableState, action: Action) -> TableState:
    """Apply one action. Pure; never mutates ``state``."""
    handler = _HANDLERS.get(action.type)
    if handler is None:
        return state
    return handler(state, action.payload)


def _start_fetch(state: TableState, payload: Any) -> TableState:
    return state.model_copy(update={"loading": True, "error": None})


def _fetch_success(state: TableState, payload: ResponseEnvelope) -> TableState:
    return state.model_copy(
        update={
            "loading": False,
            "data": payload.data,
            "total_rows": payload.total,
            "total_pages": payload.total_pages,
            "current_page": clamp_page(state.current_page, payload.total_pages),
        }
    )


def _fetch_error(state: TableState, payload: str) -> TableState:
    # Prior data stays visible
    return state.model_copy(update={"loading": False, "error": payload})


def _set_search_tokens(state: TableState, payload: List[str]) -> TableState:
    return state.model_copy(update={"search_tokens": list(payload)})


def _set_filters(state: TableState, payload: List[Filter]) -> TableState:
    return state.model_copy(update={"active_filters": list(payload), "current_page": 1})


def _clear_filters(state: TableState, payload: Any) -> TableState:
    return state.model_copy(
        update={
            "active_filters": [],
            "search_tokens": [],
            "debounced_search_term": "",
            "current_page": 1,
            "all_expanded": False,
            "expanded_rows": [],
        }
    )


def _sync_debounced_search(state: TableState, payload: str) -> TableState:
    if payload == state.debounced_search_term:
        return state
    return state.model_copy(update={"debounced_search_term": payload, "current_page": 1})


def _update_params(state: TableState, payload: Dict[str, Any]) -> TableState:
    update: Dict[str, Any] = {"current_page": int(payload.get("current_page", 1))}
    if "page_size" in payload:
        page_size = int(payload["page_size"])
        if page_size >= 1:
            update["page_size"] = page_size
        else:
            logger.warning(f"Ignoring page size {page_size}; keeping {state.page_size}")
    if "sort_config" in payload:
        sort_config = payload["sort_config"]
        update["sort_config"] = (
            sort_config if isinstance(sort_config, SortConfig) else SortConfig.model_validate(sort_config)
        )
    update["current_page"] = max(1, update["current_page"])
    return state.model_copy(update=update)


def _toggle_column(state: TableState, payload: str) -> TableState:
    if payload in state.hidden_columns:
        hidden = [key for key in state.hidden_columns if key != payload]
    else:
        hidden = [*state.hidden_columns, payload]
    return state.model_copy(update={"hidden_columns": hidden})


def _set_edit_cell(state: TableState, payload: Optional[Any]) -> TableState:
    if payload is not None and not isinstance(payload, EditingCell):
        payload = EditingCell.model_validate(payload)
    return state.model_copy(update={"editing_cell": payload})


def _update_row(state: TableState, payload: Dict[str, Any]) -> TableState:
    row_id = payload.get(state.id_key)
    data = [
        {**row, **payload} if row.get(state.id_key) == row_id else row
        for row in state.data
    ]
    return state.model_copy(update={"data": data})


def _set_facets(state: TableState, payload: Dict[str, Any]) -> TableState:
    facet_cache = dict(state.facet_cache)
    if payload["options"] is None:
        if payload["field"] not in facet_cache:
            return state
        facet_cache.pop(payload["field"])
    else:
        facet_cache[payload["field"]] = payload["options"]
    return state.model_copy(update={"facet_cache": facet_cache})


def _toggle_row_expansion(state: TableState, payload: Any) -> TableState:
    is_expanded = any(str(row_id) == str(payload) for row_id in state.expanded_rows)

    if state.accordion_mode:
        expanded = [] if is_expanded else [payload]
    elif is_expanded:
        expanded = [row_id for row_id in state.expanded_rows if str(row_id) != str(payload)]
    else:
        expanded = [*state.expanded_rows, payload]

    return state.model_copy(update={"all_expanded": False, "expanded_rows": expanded})


def _expand_all(state: TableState, payload: Any) -> TableState:
    # Individual overrides are meaningless while everything is expanded
    return state.model_copy(update={"all_expanded": True, "expanded_rows": []})


def _collapse_all(state: TableState, payload: Any) -> TableState:
    return state.model_copy(update={"all_expanded": False, "expanded_rows": []})


_HANDLERS: Dict[str, Callable[[TableState, Any], TableState]] = {
    ActionType.START_FETCH: _start_fetch,
    ActionType.FETCH_SUCCESS: _fetch_success,
    ActionType.FETCH_ERROR: _fetch_error,
    ActionType.SET_SEARCH_TOKENS: _set_search_tokens,
    ActionType.SET_FILTERS: _set_filters,
    ActionType.CLEAR_FILTERS: _clear_filters,
    ActionType.SYNC_DEBOUNCED_SEARCH: _sync_debounced_search,
    ActionType.UPDATE_PARAMS: _update_params,
    ActionType.TOGGLE_COLUMN: _toggle_column,
    ActionType.SET_EDIT_CELL: _set_edit_cell,
    ActionType.UPDATE_ROW: _update_row,
    ActionType.SET_FACETS: _set_facets,
    ActionType.TOGGLE_ROW_EXPANSION: _toggle_row_expansion,
    ActionType.EXPAND_ALL: _expand_all,
    ActionType.COLLAPSE_ALL: _collapse_all,
}


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

Listener = Callable[[TableState, TableState], None]


class TableStore:
    """Holds the current state and publishes transitions to subscribers.

    Actions dispatched from inside a listener are queued and applied after
    the current notification round, so reducer applications never interleave.
    A failing listener is logged and does not stop the others.
    """

    def __init__(self, initial_state: Optional[TableState] = None, reducer=table_reducer):
        self._state = initial_state if initial_state is not None else TableState()
        self._reducer = reducer
        self._listeners: List[Listener] = []
        self._queue: List[Action] = []
        self._dispatching = False

    @property
    def state(self) -> TableState:
        return self._state

    def dispatch(self, action: Action) -> TableState:
        self._queue.append(action)
        if self._dispatching:
            return self._state

        self._dispatching = True
        try:
            while self._queue:
                current = self._queue.pop(0)
                previous = self._state
                next_state = self._reducer(previous, current)
                if next_state is previous:
                    continue
                self._state = next_state
                for listener in list(self._listeners):
                    try:
                        listener(previous, next_state)
                    except Exception as e:
                        logger.error(f"Listener {listener!r} failed on {current.type}: {e}", exc_info=True)
        except Exception:
            # A reducer error abandons the rest of the batch
            self._queue.clear()
            raise
        finally:
            self._dispatching = False
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
