"""Table state model held by the data table store."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from datagrid.models.filters import FieldType, Filter

SortDirection = Literal["asc", "desc"]


class SortConfig(BaseModel):
    """Active sort column and direction."""

    model_config = ConfigDict(frozen=True)

    key: Optional[str] = None
    direction: SortDirection = "asc"


class EditingCell(BaseModel):
    """The single cell currently being edited."""

    model_config = ConfigDict(frozen=True)

    row_id: Any
    field_key: str


class Option(BaseModel):
    """Normalized choice for facet and editor dropdowns."""

    model_config = ConfigDict(frozen=True)

    label: str
    value: Any = None


class ColumnConfig(BaseModel):
    """Column behaviour relevant to filtering, editing and facets."""

    key: str
    label: str = ""
    filter_key: Optional[str] = None  # Comma-joined dot-paths for multi-field filters
    filter_type: FieldType = FieldType.TEXT
    editable: bool = False
    sortable: bool = True
    dynamic_options: bool = False
    options: Optional[List[Any]] = None  # Static facet options
    facet_url: Optional[str] = None


class TableState(BaseModel):
    """Complete state of one data table instance.

    Instances are never mutated; the reducer returns copies.
    ``hidden_columns`` and ``expanded_rows`` are ordered and duplicate-free.
    A field missing from ``facet_cache`` has not been loaded yet.
    """

    model_config = ConfigDict(frozen=True)

    # Query
    current_page: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, gt=0)
    sort_config: SortConfig = Field(default_factory=SortConfig)
    search_tokens: List[str] = Field(default_factory=list)
    debounced_search_term: str = ""
    active_filters: List[Filter] = Field(default_factory=list)

    # Data lifecycle
    data: List[Dict[str, Any]] = Field(default_factory=list)
    total_rows: int = Field(default=0, ge=0)
    total_pages: int = Field(default=0, ge=0)
    loading: bool = True
    error: Optional[str] = None

    # Editing
    editing_cell: Optional[EditingCell] = None
    facet_cache: Dict[str, List[Option]] = Field(default_factory=dict)

    # Presentation
    hidden_columns: List[str] = Field(default_factory=list)
    expanded_rows: List[Any] = Field(default_factory=list)
    all_expanded: bool = False

    # Instance options
    id_key: str = "id"
    accordion_mode: bool = False

    def query_key(self) -> tuple:
        """The fields whose change requires a new fetch."""
        return (
            self.current_page,
            self.page_size,
            self.sort_config,
            self.debounced_search_term,
            tuple(self.active_filters),
        )

    def is_row_expanded(self, row_id: Any) -> bool:
        """Ids restored from a URL are strings, so compare as strings."""
        if self.all_expanded:
            return True
        return any(str(expanded) == str(row_id) for expanded in self.expanded_rows)

    def find_row(self, row_id: Any) -> Optional[Dict[str, Any]]:
        for row in self.data:
            if row.get(self.id_key) == row_id:
                return row
        return None
