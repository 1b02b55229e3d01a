"""
Types for the query descriptor of a subscribed collection.

A descriptor selects columns, orders rows by one column and narrows them with
equality/range filters. The same descriptor drives the backend query and the
client-side checks applied to change events.
"""
import operator
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import List, Dict, Any, Optional, Union

from realtime_table.errors import ValidationError


ID_COLUMN = "id"

# Symbolic aliases accepted alongside the PostgREST operator names
OPERATOR_ALIASES = {
    "=": "eq",
    "==": "eq",
    "!=": "neq",
    "<>": "neq",
    "<": "lt",
    "<=": "lte",
    ">": "gt",
    ">=": "gte",
}

OPERATORS = {"eq", "neq", "gt", "gte", "lt", "lte", "in", "is", "like", "ilike"}


COMPARATORS = {
    "eq": operator.eq,
    "neq": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}


def _parse_timestamp(text: str) -> datetime:
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _align_timezone(value: datetime, like: datetime) -> datetime:
    if value.tzinfo is None and like.tzinfo is not None:
        return value.replace(tzinfo=timezone.utc)
    if value.tzinfo is not None and like.tzinfo is None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def coerce_like(value: Any, like: Any) -> Any:
    """Cast a filter operand to the type of the row value it is compared with.

    Filters arrive from JSON, so timestamps are ISO strings and numbers may be
    text; the remote store casts them to the column type, and so do we.
    Values that cannot be cast are returned unchanged.
    """
    if value is None or like is None or type(value) is type(like) or isinstance(like, bool):
        return value
    try:
        if isinstance(like, datetime):
            if isinstance(value, str):
                value = _parse_timestamp(value)
            elif isinstance(value, date) and not isinstance(value, datetime):
                value = datetime.combine(value, time())
            return _align_timezone(value, like) if isinstance(value, datetime) else value
        if isinstance(like, date):
            if isinstance(value, str):
                return _parse_timestamp(value).date()
            return value.date() if isinstance(value, datetime) else value
        if isinstance(like, Decimal):
            if isinstance(value, (int, float, str)) and not isinstance(value, bool):
                return Decimal(str(value).strip())
            return value
        if isinstance(like, (int, float)):
            if isinstance(value, str):
                return float(value)
            return float(value) if isinstance(value, Decimal) else value
        if isinstance(like, str) and isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            return str(value)
    except (ValueError, ArithmeticError):
        return value
    return value


def _compare(op, actual: Any, value: Any) -> bool:
    try:
        return bool(op(actual, value))
    except TypeError:
        # Still mismatched after coercion; compare the text forms as a cast would
        return bool(op(str(actual), str(value)))


def _like_to_regex(pattern: str, ignore_case: bool) -> "re.Pattern":
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    flags = re.DOTALL | (re.IGNORECASE if ignore_case else 0)
    return re.compile("^" + "".join(parts) + "$", flags)


@dataclass
class Filter:
    column: str
    op: str = "eq"
    value: Any = None

    def __post_init__(self):
        op = (self.op or "eq").strip().lower()
        op = OPERATOR_ALIASES.get(op, op)
        if op not in OPERATORS:
            raise ValidationError(f"unsupported filter operator '{self.op}' on column '{self.column}'")
        if op == "in" and not isinstance(self.value, (list, tuple, set)):
            self.value = [self.value]
        if op == "is" and isinstance(self.value, str):
            literals = {"null": None, "true": True, "false": False}
            if self.value.lower() not in literals:
                raise ValidationError(f"'is' filter on '{self.column}' expects null, true or false")
            self.value = literals[self.value.lower()]
        self.op = op

    def matches(self, row: Dict[str, Any]) -> bool:
        """Evaluate the filter against a row the way the remote store would."""
        actual = row.get(self.column)
        op = self.op

        if op == "is" or (op == "eq" and self.value is None):
            return actual is self.value or (actual is not None and actual == self.value)
        if op == "neq" and self.value is None:
            return actual is not None
        if actual is None:
            # SQL semantics: NULL never satisfies a comparison
            return False

        if op in COMPARATORS:
            return _compare(COMPARATORS[op], actual, coerce_like(self.value, actual))
        if op == "in":
            return any(_compare(operator.eq, actual, coerce_like(v, actual)) for v in self.value)
        if op in ("like", "ilike"):
            return bool(_like_to_regex(str(self.value), op == "ilike").match(str(actual)))
        return False

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.value) if isinstance(self.value, (tuple, set)) else self.value
        return {"column": self.column, "op": self.op, "value": value}


@dataclass
class OrderBy:
    column: str
    ascending: bool = False

    def sort_key(self, row: Dict[str, Any]):
        value = row.get(self.column)
        # Nulls sort last ascending and first descending, as PostgreSQL does
        return (value is None, value if value is not None else 0)


@dataclass
class QueryDescriptor:
    select: Union[str, List[str]] = "*"
    order_by: Optional[OrderBy] = None
    filters: List[Filter] = field(default_factory=list)
    limit: Optional[int] = None

    def __post_init__(self):
        if isinstance(self.order_by, dict):
            self.order_by = OrderBy(**self.order_by)
        self.filters = [Filter(**f) if isinstance(f, dict) else f for f in (self.filters or [])]
        if self.limit is not None and self.limit <= 0:
            raise ValidationError("limit must be positive")

    @staticmethod
    def from_dict(d: Optional[dict]) -> "QueryDescriptor":
        d = d or {}
        order_by = d.get("order_by") or d.get("orderBy")
        if isinstance(order_by, dict):
            order_by = OrderBy(column=order_by["column"], ascending=bool(order_by.get("ascending", False)))
        filters = d.get("filters") or []
        if d.get("filter"):
            filters = list(filters) + [d["filter"]]
        normalized = []
        for f in filters:
            if isinstance(f, dict):
                normalized.append(Filter(
                    column=f.get("column") or f.get("field"),
                    op=f.get("op") or f.get("operator") or "eq",
                    value=f.get("value"),
                ))
            else:
                normalized.append(f)
        return QueryDescriptor(
            select=d.get("select", "*"),
            order_by=order_by,
            filters=normalized,
            limit=d.get("limit"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "select": self.select,
            "order_by": self.order_by.__dict__.copy() if self.order_by else None,
            "filters": [f.to_dict() for f in self.filters],
            "limit": self.limit,
        }

    def columns(self) -> Optional[List[str]]:
        """Selected column names, or None when every column is selected.

        The id column is always kept: rows are reconciled by identity.
        """
        if isinstance(self.select, str):
            names = [c.strip() for c in self.select.split(",") if c.strip()]
        else:
            names = [c.strip() for c in self.select if c and c.strip()]
        if not names or "*" in names:
            return None
        if ID_COLUMN not in names:
            names.insert(0, ID_COLUMN)
        return names

    def matches(self, row: Dict[str, Any]) -> bool:
        return all(f.matches(row) for f in self.filters)

    def project(self, row: Dict[str, Any]) -> Dict[str, Any]:
        cols = self.columns()
        if cols is None:
            return dict(row)
        return {c: row.get(c) for c in cols if c in row}

    def sort_rows(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Stable sort by the order-by column; rows keep arrival order on ties."""
        if not self.order_by:
            return rows
        try:
            rows.sort(key=self.order_by.sort_key, reverse=not self.order_by.ascending)
        except TypeError:
            # Mixed value types in the order column; fall back to text ordering
            rows.sort(key=lambda r: (r.get(self.order_by.column) is None, str(r.get(self.order_by.column))),
                      reverse=not self.order_by.ascending)
        return rows

    def describe(self) -> str:
        parts = [f"select={self.select if isinstance(self.select, str) else ','.join(self.select)}"]
        for f in self.filters:
            parts.append(f"{f.column}={f.op}.{f.value}")
        if self.order_by:
            parts.append(f"order={self.order_by.column}.{'asc' if self.order_by.ascending else 'desc'}")
        if self.limit:
            parts.append(f"limit={self.limit}")
        return "&".join(parts)
