"""API for the data grid."""

from fastapi import APIRouter

from datagrid.api.v1.endpoints import facets, records

api_router = APIRouter()
api_router.include_router(records.router, prefix="/records", tags=["records"])
api_router.include_router(facets.router, prefix="/facets", tags=["facets"])
