"""Per-cell inline edit lifecycle.

Viewing -> Editing -> Saving -> Committed | Reverted -> Viewing

A commit whose value equals the baseline captured at edit start is
treated as Reverted without touching the network. A failed save clears
the edit and re-raises to the caller; the table-level ``error`` is never
set by an edit.
"""

import copy
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Set, Tuple

from datagrid.client.facet_cache import FacetCache
from datagrid.client.store import TableStore, set_edit_cell, set_facets, update_row
from datagrid.client.transport import Transport
from datagrid.core.errors import MisconfigurationError, TransportError
from datagrid.models.filters import FieldType
from datagrid.models.table_state import ColumnConfig, EditingCell
from datagrid.services.query_engine import get_nested_value, stringify, to_number

logger = logging.getLogger(__name__)

RowUpdater = Callable[[Any, Dict[str, Any]], Awaitable[Dict[str, Any]]]
CellKey = Tuple[Any, str]

_MISSING = object()


def values_equal(left: Any, right: Any) -> bool:
    """Structural equality that keeps booleans distinct from numbers."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(values_equal(left[k], right[k]) for k in left)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, (dict, list, tuple)) or isinstance(right, (dict, list, tuple)):
        return False
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def coerce_value(column: Optional[ColumnConfig], value: Any) -> Any:
    """Cast an edited value to the column's declared type."""
    if column is None:
        return value
    if column.filter_type == FieldType.NUMBER:
        if value is None or value == "":
            return value
        number = to_number(value)
        if number is None:
            raise ValueError(f"'{value}' is not a number")
        return int(number) if number.is_integer() else number
    if column.filter_type == FieldType.BOOLEAN:
        return stringify(value) == "true"
    return value


class EditController:
    """Starts, commits and reverts inline cell edits."""

    def __init__(
        self,
        store: TableStore,
        transport: Optional[Transport] = None,
        columns: Sequence[ColumnConfig] = (),
        row_updater: Optional[RowUpdater] = None,
        facet_cache: Optional[FacetCache] = None,
    ):
        self._store = store
        self._transport = transport
        self._columns: Dict[str, ColumnConfig] = {c.key: c for c in columns}
        self._row_updater = row_updater
        self._facet_cache = facet_cache
        self._baselines: Dict[CellKey, Any] = {}
        self._saving: Set[CellKey] = set()

    def start_edit(self, row_id: Any, field_key: str) -> Any:
        """Enter edit mode for a cell and capture its current value as baseline."""
        row = self._store.state.find_row(row_id)
        baseline = get_nested_value(row, field_key) if row is not None else None
        self._baselines[(row_id, field_key)] = copy.deepcopy(baseline)
        self._store.dispatch(set_edit_cell(EditingCell(row_id=row_id, field_key=field_key)))
        return baseline

    def cancel_edit(self) -> None:
        cell = self._store.state.editing_cell
        if cell is not None:
            self._baselines.pop((cell.row_id, cell.field_key), None)
        self._store.dispatch(set_edit_cell(None))

    def is_saving(self, row_id: Any, field_key: str) -> bool:
        return (row_id, field_key) in self._saving

    async def commit_edit(self, row_id: Any, field_key: str, value: Any) -> Optional[Dict[str, Any]]:
        """Persist a cell value.

        Returns the updated record, or None when nothing was saved (unchanged
        value, or a save for this cell is already running).

        Raises
        ------
        Exception
            Whatever the updater raised; the edit is reverted first.
        """
        key: CellKey = (row_id, field_key)
        cell = EditingCell(row_id=row_id, field_key=field_key)

        if key in self._saving:
            logger.debug(f"Save already running for {field_key} on row {row_id}")
            return None

        baseline = self._baselines.get(key, _MISSING)
        if baseline is _MISSING:
            row = self._store.state.find_row(row_id)
            baseline = get_nested_value(row, field_key) if row is not None else None

        if values_equal(value, baseline):
            self._baselines.pop(key, None)
            self._clear(cell)
            return None

        self._saving.add(key)
        try:
            casted = coerce_value(self._columns.get(field_key), value)
            record = await self.save_row(row_id, {field_key: casted})
        except Exception as e:
            logger.warning(f"Save failed for {field_key} on row {row_id}: {e}")
            self._clear(cell)
            raise
        finally:
            self._saving.discard(key)
            self._baselines.pop(key, None)

        self._clear(cell)
        return record

    async def save_row(self, row_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Send a patch, merge the returned record and invalidate touched facets."""
        if self._row_updater is not None:
            record = await self._row_updater(row_id, updates)
        elif self._transport is not None:
            record = await self._transport.update_record(row_id, updates)
        else:
            raise MisconfigurationError("Misconfiguration: provide a transport or a row updater.")

        if not isinstance(record, dict):
            raise TransportError(f"Update of row {row_id} returned no record")

        id_key = self._store.state.id_key
        self._store.dispatch(update_row({id_key: row_id, **record}))

        for field in updates:
            if self._facet_cache is not None:
                self._facet_cache.invalidate(field)
            else:
                self._store.dispatch(set_facets(field, None))

        return record

    def _clear(self, cell: EditingCell) -> None:
        # Leave a newer edit on another cell untouched
        if self._store.state.editing_cell == cell:
            self._store.dispatch(set_edit_cell(None))
