"""API schemas for record list, update and facet operations."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PageMeta(BaseModel):
    """Pagination metadata of a list response."""

    model_config = ConfigDict(populate_by_name=True)

    total: int
    page: int
    limit: int
    total_pages: int = Field(alias="totalPages")


class RecordPage(BaseModel):
    """Schema for the record list response."""

    model_config = ConfigDict(populate_by_name=True)

    data: List[Dict[str, Any]]
    meta: PageMeta


class RequestParams(BaseModel):
    """Query parameters the client sends to the list endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    page: int = 1
    limit: int = 10
    sort_by: str = Field(default="", alias="sortBy")
    sort_order: str = Field(default="asc", alias="sortOrder")
    search: str = ""
    filters: Optional[str] = None  # JSON array of filters, omitted when empty

    def to_query(self) -> Dict[str, Any]:
        """Query-string parameters, dropping unset values."""
        return {
            key: value
            for key, value in self.model_dump(by_alias=True).items()
            if value is not None
        }


class ResponseEnvelope(BaseModel):
    """Normalized list result committed into the table state."""

    data: List[Dict[str, Any]] = []
    total: int = 0
    total_pages: int = 1


class ErrorResponse(BaseModel):
    detail: str
