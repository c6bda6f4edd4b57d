"""Tests for the inline edit lifecycle."""

import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock

from datagrid.client.edit_controller import EditController, coerce_value, values_equal
from datagrid.client.facet_cache import FacetCache
from datagrid.client.store import TableStore, set_facets
from datagrid.client.transport import HttpxTransport
from datagrid.core.errors import CommitValidationError, MisconfigurationError, TransportError
from datagrid.models.filters import FieldType
from datagrid.models.table_state import ColumnConfig, EditingCell, Option, TableState


@pytest.fixture
def columns():
    return [
        ColumnConfig(key="work.department", label="Department", editable=True, dynamic_options=True),
        ColumnConfig(key="finance.salary", label="Salary", editable=True, filter_type=FieldType.NUMBER),
        ColumnConfig(key="active", label="Active", editable=True, filter_type=FieldType.BOOLEAN),
    ]


@pytest.fixture
def store():
    return TableStore(
        TableState(
            data=[
                {"id": 1, "work": {"department": "Sales"}, "finance": {"salary": 100}, "active": True},
                {"id": 2, "work": {"department": "IT"}, "finance": {"salary": 200}, "active": False},
            ],
            loading=False,
        )
    )


@pytest.fixture
def transport():
    transport = AsyncMock()
    transport.update_record.return_value = {"id": 1, "work": {"department": "Marketing"}}
    return transport


@pytest.fixture
def editor(store, transport, columns):
    facets = FacetCache(store, columns=columns, transport=transport)
    return EditController(store, transport=transport, columns=columns, facet_cache=facets)


def test_values_equal_is_structural():
    assert values_equal({"a": [1, 2]}, {"a": [1, 2]})
    assert values_equal(1, 1.0)
    assert not values_equal(True, 1)
    assert not values_equal("1", 1)
    assert not values_equal([1], [1, 2])


def test_coerce_value(columns):
    salary, active = columns[1], columns[2]
    assert coerce_value(salary, "42") == 42
    assert coerce_value(salary, "4.5") == 4.5
    assert coerce_value(salary, "") == ""
    assert coerce_value(active, "true") is True
    assert coerce_value(active, False) is False
    assert coerce_value(None, "x") == "x"
    with pytest.raises(ValueError):
        coerce_value(salary, "abc")


def test_start_edit_sets_single_editing_cell(editor, store):
    assert editor.start_edit(1, "work.department") == "Sales"
    editor.start_edit(2, "finance.salary")
    assert store.state.editing_cell == EditingCell(row_id=2, field_key="finance.salary")

    editor.cancel_edit()
    assert store.state.editing_cell is None


@pytest.mark.asyncio
async def test_unchanged_commit_does_not_save(editor, store, transport):
    editor.start_edit(1, "work.department")
    result = await editor.commit_edit(1, "work.department", "Sales")

    assert result is None
    transport.update_record.assert_not_called()
    assert store.state.editing_cell is None


@pytest.mark.asyncio
async def test_commit_merges_row_and_invalidates_facet(editor, store, transport):
    store.dispatch(set_facets("work.department", [Option(label="Sales", value="Sales")]))
    store.dispatch(set_facets("work.title", [Option(label="Dev", value="Dev")]))

    editor.start_edit(1, "work.department")
    result = await editor.commit_edit(1, "work.department", "Marketing")

    transport.update_record.assert_awaited_once_with(1, {"work.department": "Marketing"})
    assert result == {"id": 1, "work": {"department": "Marketing"}}
    assert store.state.data[0]["work"]["department"] == "Marketing"
    assert store.state.data[0]["finance"] == {"salary": 100}
    assert "work.department" not in store.state.facet_cache
    assert "work.title" in store.state.facet_cache
    assert store.state.editing_cell is None
    assert editor.is_saving(1, "work.department") is False


@pytest.mark.asyncio
async def test_commit_casts_to_column_type(editor, transport):
    transport.update_record.return_value = {"id": 1, "finance": {"salary": 42}}
    editor.start_edit(1, "finance.salary")
    await editor.commit_edit(1, "finance.salary", "42")

    transport.update_record.assert_awaited_once_with(1, {"finance.salary": 42})


@pytest.mark.asyncio
async def test_rejected_commit_reverts_and_reraises(editor, store, transport):
    transport.update_record.side_effect = CommitValidationError("Update rejected: bad value", 422)
    editor.start_edit(1, "work.department")

    with pytest.raises(CommitValidationError):
        await editor.commit_edit(1, "work.department", "???")

    assert store.state.data[0]["work"]["department"] == "Sales"
    assert store.state.editing_cell is None
    assert store.state.error is None


@pytest.mark.asyncio
async def test_failure_leaves_newer_edit_alone(editor, store, transport):
    async def fail_after_new_edit(row_id, updates):
        editor.start_edit(2, "work.department")
        raise TransportError("Network error")

    transport.update_record.side_effect = fail_after_new_edit
    editor.start_edit(1, "work.department")

    with pytest.raises(TransportError):
        await editor.commit_edit(1, "work.department", "HR")

    assert store.state.editing_cell == EditingCell(row_id=2, field_key="work.department")


@pytest.mark.asyncio
async def test_non_record_response_is_an_error(editor, transport):
    transport.update_record.return_value = None
    editor.start_edit(1, "work.department")

    with pytest.raises(TransportError):
        await editor.commit_edit(1, "work.department", "HR")


@pytest.mark.asyncio
async def test_row_updater_takes_precedence(store, transport, columns):
    row_updater = AsyncMock(return_value={"id": 2, "active": True})
    editor = EditController(store, transport=transport, columns=columns, row_updater=row_updater)
    store.dispatch(set_facets("active", [Option(label="true", value=True)]))

    editor.start_edit(2, "active")
    await editor.commit_edit(2, "active", "true")

    row_updater.assert_awaited_once_with(2, {"active": True})
    transport.update_record.assert_not_called()
    assert store.state.data[1]["active"] is True
    assert "active" not in store.state.facet_cache


@pytest.mark.asyncio
async def test_save_without_backend_is_a_misconfiguration(store, columns):
    editor = EditController(store, columns=columns)
    editor.start_edit(1, "work.department")

    with pytest.raises(MisconfigurationError):
        await editor.commit_edit(1, "work.department", "HR")
    assert store.state.editing_cell is None


@pytest.mark.asyncio
async def test_second_commit_on_a_saving_cell_is_ignored(editor, store, transport):
    gate = asyncio.Event()

    async def slow_update(row_id, updates):
        await gate.wait()
        return {"id": row_id, "work": {"department": updates["work.department"]}}

    transport.update_record.side_effect = slow_update
    editor.start_edit(1, "work.department")

    first = asyncio.create_task(editor.commit_edit(1, "work.department", "HR"))
    await asyncio.sleep(0)
    assert editor.is_saving(1, "work.department")

    assert await editor.commit_edit(1, "work.department", "Ops") is None

    gate.set()
    assert await first == {"id": 1, "work": {"department": "HR"}}
    assert transport.update_record.await_count == 1
    assert store.state.data[0]["work"]["department"] == "HR"


@pytest.mark.asyncio
async def test_distinct_cells_save_concurrently(editor, store, transport):
    gates = {1: asyncio.Event(), 2: asyncio.Event()}
    started = []

    async def gated_update(row_id, updates):
        started.append(row_id)
        await gates[row_id].wait()
        return {"id": row_id, **{key.split(".")[-1]: value for key, value in updates.items()}}

    transport.update_record.side_effect = gated_update

    both = asyncio.gather(
        editor.commit_edit(1, "work.department", "HR"),
        editor.commit_edit(2, "active", "true"),
    )
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert sorted(started) == [1, 2]
    assert editor.is_saving(1, "work.department")
    assert editor.is_saving(2, "active")

    gates[2].set()
    gates[1].set()
    first, second = await both

    assert first == {"id": 1, "department": "HR"}
    assert second == {"id": 2, "active": True}
    assert store.state.data[1]["active"] is True
    assert transport.update_record.await_count == 2


@pytest.mark.asyncio
async def test_timed_out_save_reverts(store, columns):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = HttpxTransport("http://test/api/v1/records", client=client)
    editor = EditController(store, transport=transport, columns=columns)
    editor.start_edit(1, "work.department")

    with pytest.raises(TransportError, match="timed out"):
        await editor.commit_edit(1, "work.department", "HR")

    assert store.state.editing_cell is None
    assert store.state.data[0]["work"]["department"] == "Sales"
    assert editor.is_saving(1, "work.department") is False
    await client.aclose()
