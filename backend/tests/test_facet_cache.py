"""Tests for the fetch-once facet cache."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from datagrid.client.facet_cache import FacetCache, normalize_options
from datagrid.client.store import TableStore
from datagrid.core.errors import TransportError
from datagrid.models.table_state import ColumnConfig, Option, TableState


@pytest.fixture
def store():
    return TableStore(TableState())


@pytest.fixture
def transport():
    transport = AsyncMock()
    transport.fetch_facets.return_value = ["Engineering", "Sales"]
    return transport


def test_normalize_options():
    options = normalize_options(["IT", 3, {"label": "Human Resources", "value": "HR"}, {"value": "Ops"}])
    assert options == [
        Option(label="IT", value="IT"),
        Option(label="3", value=3),
        Option(label="Human Resources", value="HR"),
        Option(label="Ops", value="Ops"),
    ]
    with pytest.raises(ValueError):
        normalize_options({"not": "a list"})


@pytest.mark.asyncio
async def test_options_are_fetched_once(store, transport):
    cache = FacetCache(store, transport=transport)

    first = await cache.ensure("work.department")
    second = await cache.ensure("work.department")

    assert first == second == [Option(label="Engineering", value="Engineering"), Option(label="Sales", value="Sales")]
    transport.fetch_facets.assert_awaited_once_with("work.department", None)
    assert cache.get("work.department") == first


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_fetch(store, transport):
    cache = FacetCache(store, transport=transport)

    results = await asyncio.gather(cache.ensure("work.title"), cache.ensure("work.title"))

    assert results[0] == results[1]
    assert transport.fetch_facets.await_count == 1


@pytest.mark.asyncio
async def test_invalidation_triggers_exactly_one_refetch(store, transport):
    cache = FacetCache(store, transport=transport)
    await cache.ensure("work.department")

    cache.invalidate("work.department")
    assert cache.get("work.department") is None

    transport.fetch_facets.return_value = ["Engineering", "Marketing", "Sales"]
    await cache.ensure("work.department")
    await cache.ensure("work.department")

    assert transport.fetch_facets.await_count == 2
    assert [o.value for o in cache.get("work.department")] == ["Engineering", "Marketing", "Sales"]


@pytest.mark.asyncio
async def test_fetch_in_flight_during_invalidation_is_not_cached(store):
    gate = asyncio.Event()
    values = [["Engineering"], ["Engineering", "Marketing"]]
    calls = []

    async def fetch_facets(field, url=None):
        calls.append(field)
        if len(calls) == 1:
            await gate.wait()
        return values[len(calls) - 1]

    transport = AsyncMock()
    transport.fetch_facets.side_effect = fetch_facets
    cache = FacetCache(store, transport=transport)

    stale = asyncio.create_task(cache.ensure("work.department"))
    await asyncio.sleep(0)
    cache.invalidate("work.department")
    gate.set()
    await stale

    assert cache.get("work.department") is None

    fresh = await cache.ensure("work.department")
    assert [o.value for o in fresh] == ["Engineering", "Marketing"]
    assert cache.get("work.department") == fresh
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_static_options_skip_the_network(store, transport):
    column = ColumnConfig(key="status", options=["active", "inactive"])
    cache = FacetCache(store, columns=[column], transport=transport)

    options = await cache.ensure("status")

    assert [o.value for o in options] == ["active", "inactive"]
    transport.fetch_facets.assert_not_called()


@pytest.mark.asyncio
async def test_column_facet_url_is_used(store, transport):
    column = ColumnConfig(key="work.company", facet_url="http://example.com/companies")
    cache = FacetCache(store, columns=[column], transport=transport)

    await cache.ensure("work.company")

    transport.fetch_facets.assert_awaited_once_with("work.company", "http://example.com/companies")


@pytest.mark.asyncio
async def test_facet_fetcher_takes_precedence(store, transport):
    facet_fetcher = AsyncMock(return_value=[{"label": "Yes", "value": True}])
    cache = FacetCache(store, transport=transport, facet_fetcher=facet_fetcher)

    options = await cache.ensure("active")

    assert options == [Option(label="Yes", value=True)]
    facet_fetcher.assert_awaited_once_with("active", None)
    transport.fetch_facets.assert_not_called()


@pytest.mark.asyncio
async def test_failed_lookup_is_not_cached(store, transport):
    transport.fetch_facets.side_effect = TransportError("API Error: 500")
    cache = FacetCache(store, transport=transport)

    assert await cache.ensure("work.title") is None
    assert "work.title" not in store.state.facet_cache

    transport.fetch_facets.side_effect = None
    transport.fetch_facets.return_value = ["Dev"]
    assert await cache.ensure("work.title") == [Option(label="Dev", value="Dev")]
