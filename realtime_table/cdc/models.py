"""
Data models for change events delivered by a change stream
"""
from dataclasses import dataclass
from typing import Dict, Any, Mapping, Optional, Union

from realtime_table.errors import ValidationError


@dataclass
class Inserted:
    """A row was created"""
    table: str
    row: Dict[str, Any]

    @property
    def row_id(self):
        return self.row.get("id")

    def to_payload(self) -> Dict[str, Any]:
        return {"op": "insert", "table": self.table, "row": self.row}


@dataclass
class Updated:
    """A row was replaced; `row` carries every field after the write"""
    table: str
    row: Dict[str, Any]
    old_row: Optional[Dict[str, Any]] = None

    @property
    def row_id(self):
        return self.row.get("id")

    def to_payload(self) -> Dict[str, Any]:
        return {"op": "update", "table": self.table, "row": self.row, "old_row": self.old_row}


@dataclass
class Deleted:
    """A row was removed"""
    table: str
    id: Any
    old_row: Optional[Dict[str, Any]] = None

    @property
    def row_id(self):
        return self.id

    def to_payload(self) -> Dict[str, Any]:
        return {"op": "delete", "table": self.table, "id": self.id, "old_row": self.old_row}


ChangeEvent = Union[Inserted, Updated, Deleted]

_OPS = {
    "insert": "insert", "inserted": "insert",
    "update": "update", "updated": "update",
    "delete": "delete", "deleted": "delete",
}


def parse_change(payload: Dict[str, Any], table: Optional[str] = None) -> ChangeEvent:
    """Wrap a loosely shaped change payload in a ChangeEvent.

    Accepts `{op, row|id}`, Supabase realtime `{eventType, new, old}` and the
    `{type, new_row, old_row}` shape.
    """
    if not isinstance(payload, dict):
        raise ValidationError(f"change payload must be an object, got {type(payload).__name__}")

    raw_op = payload.get("op") or payload.get("eventType") or payload.get("type")
    op = _OPS.get(str(raw_op).lower()) if raw_op else None
    if op is None:
        raise ValidationError(f"unknown change operation: {raw_op!r}")

    table = payload.get("table") or table
    if not table:
        raise ValidationError("change payload does not name a table")

    new_row = payload.get("row") or payload.get("new") or payload.get("new_row")
    old_row = payload.get("old_row") or payload.get("old") or None
    for name, value in (("new row", new_row), ("old row", old_row)):
        if value is not None and not isinstance(value, Mapping):
            raise ValidationError(f"{name} must be an object, got {type(value).__name__}")

    if op == "insert":
        if not new_row or new_row.get("id") is None:
            raise ValidationError("insert event carries no row id")
        return Inserted(table=table, row=dict(new_row))

    if op == "update":
        if not new_row or new_row.get("id") is None:
            raise ValidationError("update event carries no row id")
        return Updated(table=table, row=dict(new_row), old_row=dict(old_row) if old_row else None)

    row_id = payload.get("id")
    if row_id is None and old_row:
        row_id = old_row.get("id")
    if row_id is None:
        raise ValidationError("delete event carries no row id")
    return Deleted(table=table, id=row_id, old_row=dict(old_row) if old_row else None)
