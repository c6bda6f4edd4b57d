"""Stateless query engine: filters, tokenized search, typed sort and pagination."""

import functools
import json
import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from datagrid.models.filters import FieldType, Filter, Operator
from datagrid.schemas.table_api import PageMeta, RecordPage

logger = logging.getLogger(__name__)

Record = dict


def get_nested_value(obj: Any, path: str) -> Any:
    """Resolve a dot-path such as ``work.department``; missing segments give None."""
    if obj is None or not path:
        return None
    current = obj
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
        if current is None:
            return None
    return current


def set_nested_value(obj: dict, path: str, value: Any) -> None:
    """Assign ``value`` at a dot-path, creating intermediate objects."""
    if obj is None or not path:
        return
    keys = path.split(".")
    target = obj
    for key in keys[:-1]:
        child = target.get(key)
        if not isinstance(child, dict):
            child = {}
            target[key] = child
        target = child
    target[keys[-1]] = value


def stringify(value: Any) -> str:
    """Render a leaf value the way it appears in search text and filter tokens."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_number(value: Any) -> Optional[float]:
    """Numeric reading of a value, or None when it is not numeric."""
    if is_number(value):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a date-like string (must contain ``-``) into an aware datetime."""
    if not isinstance(value, str) or "-" not in value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(text), datetime.min.time())
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _comparable(value: Any) -> Optional[float]:
    """Timestamp for date-like values, else the numeric reading."""
    parsed = parse_date(value)
    if parsed is not None:
        return parsed.timestamp()
    return to_number(value)


def _flatten(values: Iterable[Any]) -> List[Any]:
    flat: List[Any] = []
    for value in values:
        if isinstance(value, list):
            flat.extend(v for v in value if v is not None)
        elif value is not None:
            flat.append(value)
    return flat


def _parse_range(value: str, parse) -> Optional[Tuple[Any, Any]]:
    parts = value.split(",")
    if len(parts) != 2:
        return None
    start, end = parse(parts[0].strip()), parse(parts[1].strip())
    if start is None or end is None:
        return None
    return start, end


def _date_key(value: Any) -> Tuple[int, Any]:
    """Key used by date-typed filters: timestamps, then numbers, then plain strings."""
    parsed = parse_date(value)
    if parsed is not None:
        return 0, parsed.timestamp()
    number = to_number(value)
    if number is not None:
        return 1, number
    return 2, stringify(value).lower()


def _same_day(a: Any, b: Any) -> bool:
    left, right = parse_date(a), parse_date(b)
    if left is not None and right is not None:
        return left.astimezone(timezone.utc).date() == right.astimezone(timezone.utc).date()
    return stringify(a).lower() == stringify(b).lower()


class QueryEngine:
    """Filter, search, sort and paginate a record collection. No I/O."""

    SEARCH_PATHS: Sequence[str] = (
        "profile.firstName",
        "profile.lastName",
        "username",
        "contact.primaryEmail",
        "work.company",
        "work.title",
        "work.department",
        "contact.address.city",
        "profile.nationality",
        "work.contractType",
    )

    @staticmethod
    def process(
        records: Sequence[Record],
        search: Optional[str] = None,
        filters: Optional[Sequence[Filter]] = None,
    ) -> List[Record]:
        """Apply column filters, then the tokenized global search."""
        result = list(records)

        if filters:
            result = [
                record
                for record in result
                if all(QueryEngine.matches_filter(record, f) for f in filters)
            ]

        tokens = QueryEngine.search_tokens(search)
        if tokens:
            result = [
                record
                for record in result
                if QueryEngine._matches_tokens(QueryEngine.searchable_text(record), tokens)
            ]

        return result

    @staticmethod
    def search_tokens(search: Optional[str]) -> List[str]:
        if not search or not search.strip():
            return []
        return search.lower().split()

    @staticmethod
    def searchable_text(record: Record) -> str:
        """Lowercased concatenation of the fixed searchable fields."""
        pieces: List[Any] = [get_nested_value(record, path) for path in QueryEngine.SEARCH_PATHS]

        # Zero salaries and scores are not searchable
        pieces.append(get_nested_value(record, "finance.salary") or "")
        pieces.append(get_nested_value(record, "finance.creditScore") or "")

        skills = get_nested_value(record, "work.skills")
        if isinstance(skills, list):
            pieces.extend(skills)

        return " ".join(stringify(p).lower() for p in pieces if p is not None)

    @staticmethod
    def _matches_tokens(text: str, tokens: Sequence[str]) -> bool:
        return all(token in text for token in tokens)

    @staticmethod
    def search_all_fields(records: Sequence[Record], search: Optional[str]) -> List[Record]:
        """Tokenized substring search across every leaf value of each record."""
        tokens = QueryEngine.search_tokens(search)
        if not tokens:
            return list(records)

        def leaves(value: Any) -> Iterable[str]:
            if isinstance(value, dict):
                for child in value.values():
                    yield from leaves(child)
            elif isinstance(value, list):
                for child in value:
                    yield from leaves(child)
            elif value is not None:
                yield stringify(value).lower()

        return [
            record
            for record in records
            if QueryEngine._matches_tokens(" ".join(leaves(record)), tokens)
        ]

    @staticmethod
    def matches_filter(record: Record, filter_: Filter) -> bool:
        """Evaluate one filter against one record."""
        values = _flatten(get_nested_value(record, path) for path in filter_.paths)
        if not values:
            return False

        if filter_.type == FieldType.NUMBER:
            return QueryEngine._match_number(values, filter_.operator, filter_.value)
        if filter_.type == FieldType.DATE:
            return QueryEngine._match_date(values, filter_.operator, filter_.value)
        return QueryEngine._match_text(values, filter_.operator, filter_.value)

    @staticmethod
    def _match_text(values: List[Any], operator: Operator, value: str) -> bool:
        tokens = [stringify(v).lower() for v in values]
        target = value.lower()

        if operator == Operator.IS:
            return any(t == target for t in tokens)
        if operator == Operator.NEQ:
            return not any(t == target for t in tokens)
        if operator == Operator.STARTS:
            return any(t.startswith(target) for t in tokens)
        if operator == Operator.ENDS:
            return any(t.endswith(target) for t in tokens)
        if operator in (Operator.GT, Operator.LT):
            bound = _comparable(value)
            if bound is None:
                return False
            for v in values:
                current = _comparable(v)
                if current is None:
                    continue
                if operator == Operator.GT and current > bound:
                    return True
                if operator == Operator.LT and current < bound:
                    return True
            return False
        if operator == Operator.BETWEEN:
            bounds = _parse_range(value, _comparable)
            if bounds is None:
                return False
            start, end = bounds
            return any(
                c is not None and start <= c <= end for c in (_comparable(v) for v in values)
            )
        return target in " ".join(tokens)

    @staticmethod
    def _match_number(values: List[Any], operator: Operator, value: str) -> bool:
        numbers = [n for n in (to_number(v) for v in values) if n is not None]
        if not numbers:
            return False

        if operator == Operator.BETWEEN:
            bounds = _parse_range(value, to_number)
            if bounds is None:
                return False
            start, end = bounds
            return any(start <= n <= end for n in numbers)

        target = to_number(value)
        if target is None:
            return False
        if operator == Operator.IS:
            return any(n == target for n in numbers)
        if operator == Operator.NEQ:
            return not any(n == target for n in numbers)
        if operator == Operator.GT:
            return any(n > target for n in numbers)
        if operator == Operator.LT:
            return any(n < target for n in numbers)
        return False

    @staticmethod
    def _match_date(values: List[Any], operator: Operator, value: str) -> bool:
        if operator == Operator.IS:
            return any(_same_day(v, value) for v in values)
        if operator == Operator.NEQ:
            return not any(_same_day(v, value) for v in values)

        if operator == Operator.BETWEEN:
            parts = value.split(",")
            if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
                return False
            start, end = _date_key(parts[0].strip()), _date_key(parts[1].strip())
            if start[0] != end[0]:
                return False
            for v in values:
                key = _date_key(v)
                if key[0] == start[0] and start[1] <= key[1] <= end[1]:
                    return True
            return False

        bound = _date_key(value)
        for v in values:
            key = _date_key(v)
            if key[0] != bound[0]:
                continue
            if operator == Operator.GT and key[1] > bound[1]:
                return True
            if operator == Operator.LT and key[1] < bound[1]:
                return True
        return False

    @staticmethod
    def sort(records: Sequence[Record], key: Optional[str], order: Optional[str] = "asc") -> List[Record]:
        """Stable single-key sort; missing values always go last."""
        if not key:
            return list(records)
        descending = order == "desc"

        def compare(a: Record, b: Record) -> int:
            left, right = get_nested_value(a, key), get_nested_value(b, key)
            if left is None and right is None:
                return 0
            if left is None:
                return 1
            if right is None:
                return -1
            if left == right and type(left) is type(right):
                return 0

            left_date, right_date = parse_date(left), parse_date(right)
            if left_date is not None and right_date is not None:
                diff = left_date.timestamp() - right_date.timestamp()
            elif is_number(left) and is_number(right):
                diff = left - right
            else:
                left_key = (stringify(left).casefold(), stringify(left))
                right_key = (stringify(right).casefold(), stringify(right))
                diff = (left_key > right_key) - (left_key < right_key)

            comparison = (diff > 0) - (diff < 0)
            return -comparison if descending else comparison

        return sorted(records, key=functools.cmp_to_key(compare))

    @staticmethod
    def paginate(records: Sequence[Record], page: int, limit: int) -> RecordPage:
        start = (page - 1) * limit
        total = len(records)
        return RecordPage(
            data=list(records[start:start + limit]),
            meta=PageMeta(
                total=total,
                page=page,
                limit=limit,
                total_pages=math.ceil(total / limit) if limit else 0,
            ),
        )

    @staticmethod
    def run(
        records: Sequence[Record],
        page: int = 1,
        limit: int = 10,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = "asc",
        search: Optional[str] = None,
        filters: Optional[Sequence[Filter]] = None,
    ) -> RecordPage:
        """Full pipeline: process, sort, paginate."""
        matched = QueryEngine.process(records, search=search, filters=filters)
        ordered = QueryEngine.sort(matched, sort_by, sort_order)
        logger.debug(f"Query matched {len(matched)} of {len(records)} records")
        return QueryEngine.paginate(ordered, page, limit)
