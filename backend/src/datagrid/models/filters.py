"""Filter model shared by the query engine and the data table client."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class FieldType(str, Enum):
    """Declared type of a filterable column."""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


class Operator(str, Enum):
    """Filter operators understood by the query engine."""

    CONTAINS = "contains"
    IS = "is"
    NEQ = "neq"
    STARTS = "starts"
    ENDS = "ends"
    GT = "gt"
    LT = "lt"
    BETWEEN = "between"


TYPE_OPERATORS: Dict[FieldType, List[Operator]] = {
    FieldType.TEXT: [
        Operator.CONTAINS,
        Operator.IS,
        Operator.NEQ,
        Operator.STARTS,
        Operator.ENDS,
    ],
    FieldType.NUMBER: [
        Operator.IS,
        Operator.NEQ,
        Operator.GT,
        Operator.LT,
        Operator.BETWEEN,
    ],
    FieldType.DATE: [
        Operator.BETWEEN,
        Operator.GT,
        Operator.LT,
        Operator.IS,
        Operator.NEQ,
    ],
    FieldType.BOOLEAN: [Operator.IS, Operator.NEQ],
}


class Filter(BaseModel):
    """A single column filter.

    ``field`` may hold several dot-paths joined by ``","``; they are OR'd.
    When ``type`` is declared the operator must belong to that type's
    operator table. Filters without a type (e.g. from older shared links)
    fall back to operator-driven evaluation.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    field: str
    operator: Operator = Operator.CONTAINS
    value: str = ""
    label: str = ""
    type: Optional[FieldType] = None

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> str:
        """Filter values travel as strings; booleans use lowercase."""
        if v is None:
            return ""
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)

    @field_validator("field")
    @classmethod
    def require_field(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Filter field must not be empty")
        return v

    @model_validator(mode="after")
    def check_operator_for_type(self) -> "Filter":
        if self.type is not None and self.operator not in TYPE_OPERATORS[self.type]:
            raise ValueError(
                f"Operator '{self.operator.value}' is not valid for {self.type.value} fields"
            )
        return self

    @property
    def paths(self) -> List[str]:
        """The dot-paths this filter reads, in declaration order."""
        return [p.strip() for p in self.field.split(",") if p.strip()]

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the JSON shape used in URLs and request parameters."""
        payload: Dict[str, Any] = {
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
            "label": self.label,
        }
        if self.type is not None:
            payload["type"] = self.type.value
        return payload
