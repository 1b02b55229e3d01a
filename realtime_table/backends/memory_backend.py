"""
In-memory table backend.

Tables are dicts keyed by row id. Useful for local development, demos and
tests; every value handed out is a copy.
"""
import copy
from typing import Any, Dict, Iterable, List, Optional

from realtime_table.backends.base import TableBackend, new_row_id, stamp_insert, stamp_update
from realtime_table.cdc.change_feed import ChangeFeed
from realtime_table.cdc.models import Inserted, Updated, Deleted
from realtime_table.errors import NotFoundError, ValidationError
from realtime_table.types.query_descriptor import QueryDescriptor


class MemoryTableBackend(TableBackend):

    def __init__(self, change_feed: Optional[ChangeFeed] = None):
        super().__init__(change_feed)
        self._tables: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self._columns: Dict[str, Optional[List[str]]] = {}

    def create_table(self, name: str, columns: Optional[Iterable[str]] = None,
                     rows: Optional[Iterable[Dict[str, Any]]] = None):
        """Create (or replace) a table. `columns=None` accepts any field."""
        cols = None
        if columns is not None:
            cols = list(columns)
            if "id" not in cols:
                cols.insert(0, "id")
        self._columns[name] = cols
        self._tables[name] = {}
        for row in rows or []:
            row = dict(row)
            row.setdefault("id", new_row_id())
            self._check_columns(name, row)
            self._tables[name][row["id"]] = row

    def list_tables(self) -> List[str]:
        return list(self._tables)

    def _table(self, name: str) -> Dict[Any, Dict[str, Any]]:
        if name not in self._tables:
            raise NotFoundError(f"table '{name}' does not exist", table=name)
        return self._tables[name]

    def _check_columns(self, table: str, values: Dict[str, Any]):
        cols = self._columns.get(table)
        if cols is None:
            return
        unknown = sorted(set(values) - set(cols))
        if unknown:
            raise ValidationError(f"unknown column(s) for '{table}': {', '.join(unknown)}", table=table)

    def _known_columns(self, table: str) -> List[str]:
        cols = self._columns.get(table)
        if cols is not None:
            return cols
        seen = set()
        for row in self._tables[table].values():
            seen.update(row)
        return list(seen)

    async def select(self, table: str, descriptor: QueryDescriptor) -> List[Dict[str, Any]]:
        rows = [copy.deepcopy(r) for r in self._table(table).values() if descriptor.matches(r)]
        descriptor.sort_rows(rows)
        if descriptor.limit:
            rows = rows[:descriptor.limit]
        return [descriptor.project(r) for r in rows]

    async def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._table(table)
        row = copy.deepcopy(dict(values))
        if row.get("id") is None:
            row["id"] = new_row_id()
        if row["id"] in rows:
            raise ValidationError(f"duplicate id '{row['id']}'", table=table, row_id=row["id"])
        self._check_columns(table, row)
        stamp_insert(row, self._columns.get(table) or ("created_at", "updated_at"))
        rows[row["id"]] = row
        committed = copy.deepcopy(row)
        await self._publish(Inserted(table=table, row=copy.deepcopy(row)))
        return committed

    async def update(self, table: str, row_id: Any, values: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._table(table)
        if row_id not in rows:
            raise NotFoundError(f"row '{row_id}' does not exist in '{table}'", table=table, row_id=row_id)
        changes = copy.deepcopy(dict(values))
        changes.pop("id", None)
        self._check_columns(table, changes)
        stamp_update(changes, self._known_columns(table))
        old = copy.deepcopy(rows[row_id])
        rows[row_id] = {**rows[row_id], **changes}
        committed = copy.deepcopy(rows[row_id])
        await self._publish(Updated(table=table, row=copy.deepcopy(rows[row_id]), old_row=old))
        return committed

    async def delete(self, table: str, row_id: Any) -> Dict[str, Any]:
        rows = self._table(table)
        if row_id not in rows:
            raise NotFoundError(f"row '{row_id}' does not exist in '{table}'", table=table, row_id=row_id)
        old = rows.pop(row_id)
        await self._publish(Deleted(table=table, id=row_id, old_row=copy.deepcopy(old)))
        return old
