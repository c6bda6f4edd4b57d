"""Tests for the DataTable facade wiring all client components together."""

import asyncio
from urllib.parse import parse_qs

import pytest
from unittest.mock import AsyncMock

from datagrid.client.persistence import RECENT_SEARCHES_KEY, FileStorage, Location, MemoryStorage
from datagrid.client.table import DataTable
from datagrid.core.config import ClientSettings
from datagrid.core.errors import MisconfigurationError, TransportError
from datagrid.models.filters import FieldType, Filter
from datagrid.models.table_state import ColumnConfig, SortConfig

ROWS = [
    {"id": 1, "name": "Zoe", "team": "red", "score": 7},
    {"id": 2, "name": "Adam", "team": "blue", "score": 9},
    {"id": 3, "name": "Mia", "team": "red", "score": None},
]


@pytest.fixture
def settings():
    return ClientSettings(search_debounce_ms=10, url_write_debounce_ms=10, local_storage_path=None)


@pytest.fixture
def columns():
    return [
        ColumnConfig(key="name", label="Name", editable=True),
        ColumnConfig(key="team", label="Team", editable=True, options=["red", "blue"]),
        ColumnConfig(key="score", label="Score", filter_type=FieldType.NUMBER),
    ]


def make_table(settings, columns, url="/", **kwargs):
    kwargs.setdefault("static_data", ROWS)
    return DataTable(
        columns,
        settings=settings,
        location=Location(url),
        local_storage=kwargs.pop("local_storage", MemoryStorage()),
        session_storage=MemoryStorage(),
        **kwargs,
    )


def query_of(table):
    return {key: values[0] for key, values in parse_qs(table.persistence.location.query).items()}


@pytest.mark.asyncio
async def test_start_loads_static_rows(settings, columns):
    table = make_table(settings, columns)
    await table.start()

    assert table.state.loading is False
    assert [row["id"] for row in table.state.data] == [1, 2, 3]
    assert table.state.total_rows == 3
    await table.close()


@pytest.mark.asyncio
async def test_default_local_storage_lives_in_the_home_directory(columns, monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    settings = ClientSettings()

    assert settings.local_storage_path == str(tmp_path / ".datagrid" / "local_storage.json")
    table = DataTable(columns, settings=settings, static_data=ROWS)
    assert isinstance(table.recent_searches._storage, FileStorage)
    await table.close()


@pytest.mark.asyncio
async def test_local_storage_can_be_kept_in_memory(columns):
    table = DataTable(columns, settings=ClientSettings(local_storage_path=None), static_data=ROWS)
    assert isinstance(table.recent_searches._storage, MemoryStorage)
    await table.close()


@pytest.mark.asyncio
async def test_start_without_source_fails(settings, columns):
    table = make_table(settings, columns, static_data=None)

    with pytest.raises(MisconfigurationError):
        await table.start()
    await table.close()


@pytest.mark.asyncio
async def test_sort_cycles_ascending_descending_off(settings, columns):
    table = make_table(settings, columns)
    await table.start()

    table.sort("score")
    await asyncio.sleep(0.02)
    assert table.state.sort_config == SortConfig(key="score", direction="asc")
    assert [row["id"] for row in table.state.data] == [1, 2, 3]

    table.sort("score")
    await asyncio.sleep(0.02)
    assert table.state.sort_config == SortConfig(key="score", direction="desc")
    assert [row["id"] for row in table.state.data] == [2, 1, 3]

    table.sort("score")
    await asyncio.sleep(0.02)
    assert table.state.sort_config.key is None
    await table.close()


@pytest.mark.asyncio
async def test_search_is_debounced_and_remembered(settings, columns):
    local = MemoryStorage()
    table = make_table(settings, columns, local_storage=local)
    await table.start()

    table.search(["red", " "])
    assert table.state.search_tokens == ["red"]
    await asyncio.sleep(0.05)

    assert table.state.debounced_search_term == "red"
    assert [row["id"] for row in table.state.data] == [1, 3]
    assert table.recent_searches.items() == ["red"]
    assert local.get_item(RECENT_SEARCHES_KEY) == '["red"]'
    assert query_of(table)["search"] == "red"
    await table.close()


@pytest.mark.asyncio
async def test_state_is_restored_from_the_url(settings, columns):
    table = make_table(settings, columns, url="/?sortBy=name&sortOrder=asc&hide=score&expanded=2")
    await table.start()

    assert [row["name"] for row in table.state.data] == ["Adam", "Mia", "Zoe"]
    assert [c.key for c in table.visible_columns()] == ["name", "team"]
    assert table.is_expanded("2")
    await table.close()


@pytest.mark.asyncio
async def test_shared_expanded_rows_match_numeric_ids(settings, columns):
    table = make_table(settings, columns, url="/?expanded=3,1")
    await table.start()

    assert table.is_expanded(3)
    table.toggle_row_expansion(3)

    assert not table.is_expanded(3)
    assert table.state.expanded_rows == ["1"]
    await table.close()


@pytest.mark.asyncio
async def test_close_flushes_url_changes(settings, columns):
    table = make_table(settings, columns)
    await table.start()

    table.toggle_column("team")
    table.expand_all()
    await table.close()

    assert query_of(table) == {"hide": "team", "expanded": "all"}
    assert table.is_expanded(3)


@pytest.mark.asyncio
async def test_url_sync_can_be_disabled(settings, columns):
    table = make_table(settings, columns, disable_url_sync=True)
    await table.start()

    table.toggle_column("team")
    assert table.persistence is None
    assert table.state.hidden_columns == ["team"]
    await table.close()


@pytest.mark.asyncio
async def test_remote_paging_and_filters(settings, columns):
    transport = AsyncMock()
    transport.fetch_page.return_value = {"data": [{"id": 1}], "meta": {"total": 30, "totalPages": 3}}
    table = make_table(settings, columns, static_data=None, transport=transport)
    await table.start()

    table.change_page(3)
    await asyncio.sleep(0.02)
    assert transport.fetch_page.await_args.args[0].page == 3

    table.add_filter(Filter(field="team", operator="is", value="red"))
    await asyncio.sleep(0.02)
    assert table.state.current_page == 1
    assert transport.fetch_page.await_args.args[0].filters is not None

    table.remove_filter(0)
    table.change_page_size(25)
    await asyncio.sleep(0.02)
    params = transport.fetch_page.await_args.args[0]
    assert params.limit == 25
    assert params.filters is None

    table.clear_filters()
    await table.close()
    transport.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_inline_edit_updates_row(settings, columns):
    row_updater = AsyncMock(return_value={"id": 2, "name": "Adrian"})
    table = make_table(settings, columns, row_updater=row_updater)
    await table.start()

    assert table.start_edit(2, "name") == "Adam"
    record = await table.commit_edit(2, "name", "Adrian")

    assert record == {"id": 2, "name": "Adrian"}
    assert table.state.data[1]["name"] == "Adrian"
    assert table.state.editing_cell is None
    await table.close()


@pytest.mark.asyncio
async def test_static_column_options_load_as_facets(settings, columns):
    table = make_table(settings, columns)

    options = await table.load_facets("team")

    assert [o.value for o in options] == ["red", "blue"]
    await table.close()


@pytest.mark.asyncio
async def test_accordion_rows(settings, columns):
    table = make_table(settings, columns, accordion_mode=True)
    await table.start()

    table.toggle_row_expansion(1)
    table.toggle_row_expansion(2)

    assert table.state.expanded_rows == [2]
    table.collapse_all()
    assert table.state.expanded_rows == []
    await table.close()


@pytest.mark.asyncio
async def test_refresh_retries_after_error(settings, columns):
    transport = AsyncMock()
    transport.fetch_page.side_effect = TransportError("Network error")
    table = make_table(settings, columns, static_data=None, transport=transport)
    await table.start()
    assert table.state.error == "Network error"

    transport.fetch_page.side_effect = None
    transport.fetch_page.return_value = {"data": [{"id": 1}], "meta": {"total": 1, "totalPages": 1}}
    await table.refresh()

    assert table.state.error is None
    assert table.state.data == [{"id": 1}]
    await table.close()
