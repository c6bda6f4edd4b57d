"""Service for querying and editing the record collection kept in a JSON file."""

import asyncio
import copy
import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

from datagrid.core.config import Settings
from datagrid.core.errors import PersistenceError
from datagrid.models.filters import Filter
from datagrid.schemas.table_api import RecordPage
from datagrid.services.query_engine import (
    QueryEngine,
    get_nested_value,
    is_number,
    set_nested_value,
)

logger = logging.getLogger(__name__)


def distinct_values(records: Sequence[Dict[str, Any]], field: str) -> List[Any]:
    """Sorted distinct truthy values of ``field``, with list values flattened."""
    seen: Dict[str, Any] = {}
    for record in records:
        value = get_nested_value(record, field)
        for item in value if isinstance(value, list) else [value]:
            if not item:
                continue
            seen.setdefault(json.dumps(item, sort_keys=True, default=str), item)

    def order(item: Any):
        if is_number(item):
            return (0, item, "")
        return (1, 0, str(item))

    return sorted(seen.values(), key=order)


class RecordService:
    """Owns the in-memory record collection and its facet map.

    Updates are written back to ``settings.data_path``. Facet recomputation
    and writes are serialized by a lock, which holds for a single process.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.data_path = settings.data_path
        self.id_key = settings.id_key
        self.records: List[Dict[str, Any]] = []
        self.facets: Dict[str, List[Any]] = {}
        self._lock = asyncio.Lock()

    def load(self) -> "RecordService":
        """Read the data file and precompute the configured facets."""
        logger.info(f"Loading records from {self.data_path}")
        try:
            with open(self.data_path, "r", encoding="utf-8") as f:
                records = json.load(f)
        except FileNotFoundError:
            logger.error(f"Data file not found: {self.data_path}")
            records = []
        except (OSError, ValueError) as e:
            logger.error(f"Error loading data file {self.data_path}: {e}")
            records = []

        if not isinstance(records, list):
            logger.error(f"Data file {self.data_path} does not hold a list of records")
            records = []

        self.records = [r for r in records if isinstance(r, dict)]
        logger.info(f"Loaded {len(self.records)} records")

        self.facets = {field: distinct_values(self.records, field) for field in self.settings.facet_fields}
        logger.info(f"Precomputed facets for {len(self.facets)} fields")
        return self

    async def _simulate_latency(self) -> None:
        if self.settings.simulated_latency_ms > 0:
            await asyncio.sleep(self.settings.simulated_latency_ms / 1000)

    async def list_records(
        self,
        page: int = 1,
        limit: int = 10,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = "asc",
        search: Optional[str] = None,
        filters: Optional[Sequence[Filter]] = None,
    ) -> RecordPage:
        """Filter, search, sort and paginate the collection."""
        result = QueryEngine.run(
            self.records,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
            search=search,
            filters=filters,
        )
        await self._simulate_latency()
        return result

    def find_record(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Find a record whose ``id`` (or ``_id``) matches, compared as strings."""
        for record in self.records:
            for key in (self.id_key, "_id"):
                if key in record and str(record[key]) == str(record_id):
                    return record
        return None

    async def update_record(self, record_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply a dot-path patch to one record and persist the collection.

        Returns:
            The full updated record, or None when no record matches.

        Raises:
            PersistenceError: If the data file cannot be written.
        """
        async with self._lock:
            record = self.find_record(record_id)
            if record is None:
                return None

            updated = copy.deepcopy(record)
            for key, value in updates.items():
                if "." in key:
                    set_nested_value(updated, key, value)
                else:
                    updated[key] = value

            # Memory only changes once the file write has gone through
            records = [updated if r is record else r for r in self.records]
            self._save(records)
            self.records = records

            for key in updates:
                self.facets[key] = distinct_values(self.records, key)

            result = copy.deepcopy(updated)

        await self._simulate_latency()
        return result

    async def get_facets(self, field: str) -> List[Any]:
        """Distinct values of ``field``; precomputed when available."""
        cached = self.facets.get(field)
        if cached is None:
            cached = distinct_values(self.records, field)
        return list(cached)

    def _save(self, records: List[Dict[str, Any]]) -> None:
        try:
            directory = os.path.dirname(self.data_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.data_path, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
        except OSError as e:
            logger.error(f"Error writing data file {self.data_path}: {e}")
            raise PersistenceError(f"Cannot write data file {self.data_path}: {e}") from e
