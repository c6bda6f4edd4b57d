"""API endpoint for facet (distinct value) lookups."""

import logging
from typing import Any, List

from fastapi import APIRouter, Depends, HTTPException, Path, status

from datagrid.core.dependencies import get_record_service
from datagrid.services.record_service import RecordService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/{field}",
    response_model=List[Any],
    status_code=status.HTTP_200_OK,
    summary="Distinct values of a field",
)
async def get_facets(
    field: str = Path(..., description="Dot-path of the field, e.g. work.department"),
    service: RecordService = Depends(get_record_service),
) -> List[Any]:
    try:
        return await service.get_facets(field)
    except Exception as e:
        logger.error(f"Error computing facets for {field}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch facets",
        )
