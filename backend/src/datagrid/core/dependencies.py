"""Dependencies for the application using FastAPI app state for singletons."""

import logging

from fastapi import Depends, Request

from datagrid.core.config import Settings, get_settings
from datagrid.services.record_service import RecordService

logger = logging.getLogger(__name__)


def get_record_service(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> RecordService:
    """Get the record service from application state."""
    if not hasattr(request.app.state, "record_service"):
        raise ValueError("Record service not initialized in application state")

    return request.app.state.record_service
