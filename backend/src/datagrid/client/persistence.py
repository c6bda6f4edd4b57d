"""URL and storage persistence for table state.

Strategy:
- URL: shareable state (pagination, search, sort, filters, hidden columns,
  a bounded prefix of expanded rows).
- Local storage: user preferences that outlive a session (hidden columns,
  recent searches).
- Session storage: navigation state that may be large (expanded rows).

Storage failures never surface; persistence degrades to URL-only.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlencode, urlsplit

from pydantic import TypeAdapter, ValidationError

from datagrid.client.store import TableStore
from datagrid.core.errors import PersistenceError
from datagrid.models.filters import Filter
from datagrid.models.table_state import SortConfig, TableState

logger = logging.getLogger(__name__)

HIDDEN_COLUMNS_KEY = "dt_hidden_columns"
EXPANDED_STATE_KEY = "dt_expanded_state"
RECENT_SEARCHES_KEY = "dt_recent_searches"

_FILTER_LIST = TypeAdapter(List[Filter])


class Storage(ABC):
    """Minimal string key/value storage, shaped like Web Storage."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        pass


class MemoryStorage(Storage):
    """Process-local storage; used as session storage."""

    def __init__(self, items: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(items or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage(Storage):
    """JSON-file backed storage; used as local storage across sessions."""

    def __init__(self, path: str):
        self.path = path

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                items = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read storage file {self.path}: {e}") from e
        return items if isinstance(items, dict) else {}

    def _save(self, items: Dict[str, str]) -> None:
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(items, f)
        except OSError as e:
            raise PersistenceError(f"Cannot write storage file {self.path}: {e}") from e

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._save(items)

    def remove_item(self, key: str) -> None:
        items = self._load()
        if key in items:
            items.pop(key)
            self._save(items)


class Location:
    """The page address whose query string mirrors the table state."""

    def __init__(self, url: str = "/"):
        parts = urlsplit(url)
        self.path = parts.path or "/"
        self.query = parts.query
        self.replacements = 0

    @property
    def url(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    def replace(self, query: str) -> None:
        """Swap the query string in place, without adding history."""
        self.query = query
        self.replacements += 1


def _read_json(storage: Optional[Storage], key: str) -> Any:
    if storage is None:
        return None
    try:
        raw = storage.get_item(key)
        return json.loads(raw) if raw else None
    except (PersistenceError, ValueError) as e:
        logger.debug(f"Ignoring unreadable storage key {key}: {e}")
        return None


def _unique(items: Sequence[Any]) -> List[Any]:
    seen: List[Any] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def _split(value: str) -> List[str]:
    return [part for part in value.split(",") if part]


class RecentSearches:
    """Most recent global search terms, newest first."""

    def __init__(self, storage: Optional[Storage], limit: int = 5):
        self._storage = storage
        self._limit = limit
        saved = _read_json(storage, RECENT_SEARCHES_KEY)
        self._items: List[str] = [s for s in saved if isinstance(s, str)][:limit] if isinstance(saved, list) else []

    def items(self) -> List[str]:
        return list(self._items)

    def add(self, term: str) -> List[str]:
        trimmed = (term or "").strip()
        if not trimmed:
            return self.items()
        rest = [s for s in self._items if s.lower() != trimmed.lower()]
        self._items = [trimmed, *rest][: self._limit]
        if self._storage is not None:
            try:
                self._storage.set_item(RECENT_SEARCHES_KEY, json.dumps(self._items))
            except PersistenceError as e:
                logger.debug(f"Recent searches kept in memory only: {e}")
        return self.items()


class PersistenceBridge:
    """Maps table state to the URL and storage, and back at start-up."""

    def __init__(
        self,
        location: Optional[Location] = None,
        local_storage: Optional[Storage] = None,
        session_storage: Optional[Storage] = None,
        default_page_size: int = 10,
        write_debounce_ms: int = 300,
        expanded_url_limit: int = 10,
        disable_expansion_sync: bool = False,
    ):
        self._store: Optional[TableStore] = None
        self.location = location or Location()
        self._local = local_storage
        self._session = session_storage
        self._default_page_size = default_page_size
        self._write_debounce = write_debounce_ms / 1000
        self._expanded_url_limit = expanded_url_limit
        self._disable_expansion_sync = disable_expansion_sync
        self._write_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # --- reading -------------------------------------------------------------

    def hydrate(self, defaults: TableState) -> TableState:
        """Rebuild the initial state from the URL and storage."""
        params = {key: values[0] for key, values in parse_qs(self.location.query).items()}
        update: Dict[str, Any] = {}

        page = self._positive_int(params.get("page"))
        if page is not None:
            update["current_page"] = page
        limit = self._positive_int(params.get("limit"))
        if limit is not None:
            update["page_size"] = limit

        if "search" in params:
            tokens = _split(params["search"])
            update["search_tokens"] = tokens
            update["debounced_search_term"] = " ".join(tokens)

        if params.get("sortBy"):
            direction = params.get("sortOrder")
            update["sort_config"] = SortConfig(
                key=params["sortBy"],
                direction=direction if direction in ("asc", "desc") else "asc",
            )

        if "filters" in params:
            try:
                update["active_filters"] = _FILTER_LIST.validate_json(params["filters"])
            except (ValidationError, ValueError) as e:
                logger.warning(f"Invalid filter JSON in URL: {e}")

        # Hidden columns: URL entries first, then remembered ones
        url_hidden = _split(params.get("hide", ""))
        local_hidden = _read_json(self._local, HIDDEN_COLUMNS_KEY)
        local_hidden = local_hidden if isinstance(local_hidden, list) else []
        update["hidden_columns"] = _unique([*url_hidden, *local_hidden])

        all_expanded, expanded = self._read_expansion(params.get("expanded"))
        update["all_expanded"] = all_expanded
        update["expanded_rows"] = expanded

        return defaults.model_copy(update=update)

    def _read_expansion(self, url_value: Optional[str]) -> Tuple[bool, List[Any]]:
        if url_value == "all":
            return True, []

        session = _read_json(self._session, EXPANDED_STATE_KEY)
        session = session if isinstance(session, list) else []
        if url_value is None:
            return False, _unique(session)

        url_ids = _split(url_value)
        # The URL only carries a prefix; extend it when the session agrees
        session_prefix = [str(row_id) for row_id in session[: len(url_ids)]]
        if session_prefix == url_ids:
            return False, _unique([*session])
        return False, _unique(url_ids)

    @staticmethod
    def _positive_int(value: Optional[str]) -> Optional[int]:
        if value is None:
            return None
        try:
            number = int(value)
        except ValueError:
            logger.warning(f"Ignoring non-numeric URL value: {value}")
            return None
        return number if number >= 1 else None

    # --- writing -------------------------------------------------------------

    def build_query(self, state: TableState) -> str:
        """Query string holding only the non-default parts of ``state``."""
        params: List[Tuple[str, str]] = []

        if state.current_page > 1:
            params.append(("page", str(state.current_page)))
        if state.page_size != self._default_page_size:
            params.append(("limit", str(state.page_size)))
        if state.search_tokens:
            params.append(("search", ",".join(state.search_tokens)))
        if state.sort_config.key:
            params.append(("sortBy", state.sort_config.key))
            params.append(("sortOrder", state.sort_config.direction))
        if state.active_filters:
            params.append(("filters", json.dumps([f.to_wire() for f in state.active_filters])))
        if state.hidden_columns:
            params.append(("hide", ",".join(state.hidden_columns)))

        if not self._disable_expansion_sync:
            if state.all_expanded:
                params.append(("expanded", "all"))
            elif state.expanded_rows:
                shareable = state.expanded_rows[: self._expanded_url_limit]
                params.append(("expanded", ",".join(str(row_id) for row_id in shareable)))

        return urlencode(params)

    def write_now(self, state: Optional[TableState] = None) -> None:
        """Write ``state`` (default: current) to the URL and storage immediately."""
        if state is None:
            state = self._store.state
        self.location.replace(self.build_query(state))

        if state.hidden_columns:
            self._safely(self._local, "set_item", HIDDEN_COLUMNS_KEY, json.dumps(state.hidden_columns))
        else:
            self._safely(self._local, "remove_item", HIDDEN_COLUMNS_KEY)

        if self._disable_expansion_sync:
            return
        if state.expanded_rows and not state.all_expanded:
            self._safely(self._session, "set_item", EXPANDED_STATE_KEY, json.dumps(state.expanded_rows))
        else:
            self._safely(self._session, "remove_item", EXPANDED_STATE_KEY)

    @staticmethod
    def _safely(storage: Optional[Storage], method: str, *args: str) -> None:
        if storage is None:
            return
        try:
            getattr(storage, method)(*args)
        except PersistenceError as e:
            logger.debug(f"Storage unavailable, skipping {method}({args[0]}): {e}")

    # --- scheduling ----------------------------------------------------------

    @staticmethod
    def persisted_key(state: TableState) -> tuple:
        return (
            state.current_page,
            state.page_size,
            tuple(state.search_tokens),
            state.sort_config,
            tuple(state.active_filters),
            tuple(state.hidden_columns),
            tuple(state.expanded_rows),
            state.all_expanded,
        )

    def attach(self, store: TableStore) -> None:
        """Persist transitions of ``store`` from now on."""
        if self._unsubscribe is None:
            self._store = store
            self._unsubscribe = store.subscribe(self._on_state_change)

    def _on_state_change(self, previous: TableState, current: TableState) -> None:
        if self.persisted_key(previous) != self.persisted_key(current):
            self.schedule_write()

    def schedule_write(self) -> None:
        if self._write_task is not None:
            self._write_task.cancel()
        self._write_task = asyncio.get_running_loop().create_task(self._write_after_quiet())

    async def _write_after_quiet(self) -> None:
        await asyncio.sleep(self._write_debounce)
        self._write_task = None
        self.write_now()

    @property
    def write_pending(self) -> bool:
        return self._write_task is not None and not self._write_task.done()

    def close(self) -> None:
        """Stop listening; flush a pending write without waiting for the timer."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.write_pending:
            self._write_task.cancel()
            self._write_task = None
            self.write_now()
