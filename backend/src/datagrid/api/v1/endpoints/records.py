"""API endpoints for listing and editing records."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, status
from pydantic import TypeAdapter, ValidationError

from datagrid.core.dependencies import get_record_service
from datagrid.core.errors import PersistenceError
from datagrid.models.filters import Filter
from datagrid.schemas.table_api import ErrorResponse, RecordPage
from datagrid.services.record_service import RecordService

logger = logging.getLogger(__name__)

router = APIRouter()

_FILTER_LIST = TypeAdapter(List[Filter])


def parse_filters(raw: Optional[str]) -> List[Filter]:
    """Decode the ``filters`` query parameter (a JSON array)."""
    if not raw:
        return []
    try:
        return _FILTER_LIST.validate_json(raw)
    except ValidationError as e:
        logger.warning(f"Rejected filters parameter: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid filters: {e.errors(include_url=False)}",
        )


@router.get(
    "",
    response_model=RecordPage,
    status_code=status.HTTP_200_OK,
    responses={400: {"model": ErrorResponse}},
    summary="List records",
    description="Filter, search, sort and paginate the record collection.",
)
async def list_records(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query("asc", alias="sortOrder"),
    search: Optional[str] = Query(None),
    filters: Optional[str] = Query(None, description="JSON array of filters"),
    service: RecordService = Depends(get_record_service),
) -> RecordPage:
    """List one page of records."""
    parsed = parse_filters(filters)
    try:
        return await service.list_records(
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
            search=search,
            filters=parsed,
        )
    except Exception as e:
        logger.error(f"Error processing record query: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server error processing request",
        )


@router.put(
    "/{record_id}",
    response_model=Dict[str, Any],
    status_code=status.HTTP_200_OK,
    responses={404: {"model": ErrorResponse}},
    summary="Update a record",
    description="Apply a partial update; keys may be dot-paths into nested fields.",
)
async def update_record(
    updates: Dict[str, Any] = Body(...),
    record_id: str = Path(..., description="The id (or _id) of the record to update"),
    service: RecordService = Depends(get_record_service),
) -> Dict[str, Any]:
    """Update a record by ID and return it in full."""
    try:
        record = await service.update_record(record_id, updates)
    except PersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update record: {e}",
        )

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Record with ID {record_id} not found",
        )
    return record
