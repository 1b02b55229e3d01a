"""
IbisTableBackend - relational backend built on Ibis.

Features:
- Reads compiled from the query descriptor as Ibis expressions
- Parameterized INSERT/UPDATE/DELETE ... RETURNING for writes
- Identifiers checked against the table schema before they reach SQL
- JSON columns serialized on write and decoded on read
- Blocking driver calls run in the default executor, one at a time
"""
import asyncio
import functools
import json
import logging
import sqlite3
import threading
import time
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

import duckdb
import ibis
import pyarrow as pa
from ibis.expr.api import Table as IbisTable, Expr as IbisExpr

from realtime_table.backends.base import TableBackend, new_row_id, stamp_insert, stamp_update
from realtime_table.cdc.change_feed import ChangeFeed
from realtime_table.cdc.models import Inserted, Updated, Deleted
from realtime_table.errors import (
    AuthError, NetworkError, NotFoundError, RealtimeTableError, ValidationError,
)
from realtime_table.types.query_descriptor import Filter, QueryDescriptor, coerce_like

logger = logging.getLogger(__name__)


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def translate_driver_error(exc: Exception, table: Optional[str] = None, row_id: Any = None) -> RealtimeTableError:
    """Map DuckDB / SQLite driver exceptions onto the error taxonomy."""
    message = str(exc)
    if isinstance(exc, RealtimeTableError):
        return exc
    if isinstance(exc, duckdb.PermissionException):
        return AuthError(message, table=table, row_id=row_id)
    if isinstance(exc, duckdb.CatalogException):
        return NotFoundError(message, table=table, row_id=row_id)
    if isinstance(exc, (duckdb.IOException, duckdb.ConnectionException)):
        return NetworkError(message, table=table, row_id=row_id)
    if isinstance(exc, (duckdb.ConstraintException, duckdb.ConversionException,
                        duckdb.BinderException, duckdb.InvalidInputException,
                        duckdb.TypeMismatchException)):
        return ValidationError(message, table=table, row_id=row_id)
    if isinstance(exc, (sqlite3.IntegrityError, sqlite3.DataError)):
        return ValidationError(message, table=table, row_id=row_id)
    if isinstance(exc, sqlite3.OperationalError):
        if "no such table" in message:
            return NotFoundError(message, table=table, row_id=row_id)
        if "readonly" in message or "not authorized" in message:
            return AuthError(message, table=table, row_id=row_id)
        return NetworkError(message, table=table, row_id=row_id)
    return RealtimeTableError(message, table=table, row_id=row_id)


class IbisTableBackend(TableBackend):
    """
    Table backend over an Ibis connection (DuckDB by default, SQLite supported).
    """

    def __init__(
        self,
        connection: Optional[Any] = None,
        connection_uri: Optional[str] = None,
        change_feed: Optional[ChangeFeed] = None,
    ):
        """
        Initialize Ibis backend.

        Args:
            connection: An existing Ibis connection
            connection_uri: URI string for connecting to the database
            change_feed: Feed that receives committed changes (in-process push by default)
        """
        super().__init__(change_feed)
        self.con = connection
        if self.con is None:
            self.con = self._connect(connection_uri or ":memory:")

        self._lock = threading.Lock()

        # Track query stats
        self._query_count = 0
        self._total_time = 0.0

    @staticmethod
    def _connect(connection_uri: str):
        if connection_uri.startswith("sqlite://"):
            return ibis.sqlite.connect(connection_uri.replace("sqlite://", ""))
        if connection_uri.startswith("duckdb://"):
            return ibis.duckdb.connect(connection_uri.replace("duckdb://", ""))
        # Default to DuckDB
        return ibis.duckdb.connect(connection_uri)

    # -- plumbing -----------------------------------------------------------

    def _locked(self, fn: Callable, *args):
        start_time = time.time()
        with self._lock:
            try:
                return fn(*args)
            finally:
                self._query_count += 1
                self._total_time += (time.time() - start_time)

    async def _run(self, fn: Callable, *args):
        """Run a blocking driver call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self._locked, fn, *args))

    def list_tables(self) -> List[str]:
        return list(self.con.list_tables())

    def _schema(self, table: str) -> Dict[str, Any]:
        if table not in self.con.list_tables():
            raise NotFoundError(f"table '{table}' does not exist", table=table)
        return dict(self.con.table(table).schema().items())

    @staticmethod
    def _encode(dtype, value):
        if value is not None and dtype.is_json() and not isinstance(value, str):
            return json.dumps(value, default=str)
        return value

    @staticmethod
    def _decode_row(row: Dict[str, Any], json_columns: List[str]) -> Dict[str, Any]:
        for name in json_columns:
            value = row.get(name)
            if isinstance(value, str):
                try:
                    row[name] = json.loads(value)
                except ValueError:
                    pass
        return row

    def _execute(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        if self.con.name == "duckdb":
            cursor = self.con.raw_sql(sql, parameters=params)
        else:
            # DB-API connection with qmark parameters (sqlite)
            cursor = self.con.con.execute(sql, params)
        names = [d[0] for d in cursor.description] if cursor.description else []
        rows = [dict(zip(names, values)) for values in cursor.fetchall()]
        if self.con.name != "duckdb" and getattr(self.con.con, "in_transaction", False):
            self.con.con.commit()
        return rows

    # -- reads --------------------------------------------------------------

    @staticmethod
    def _operand(col, op: str, value: Any) -> Any:
        # ISO strings against temporal columns compare as timestamps
        dtype = col.type()
        if op in ("like", "ilike") or not (dtype.is_timestamp() or dtype.is_date()):
            return value
        like = datetime.min if dtype.is_timestamp() else date.min
        if op == "in":
            return [coerce_like(v, like) for v in value]
        return coerce_like(value, like)

    def build_filter_expression(self, table: IbisTable, filters: List[Filter]) -> Optional[IbisExpr]:
        """Converts descriptor filters into an Ibis boolean expression."""
        if not filters:
            return None

        ibis_filters = []
        for f in filters:
            if f.column not in table.columns:
                raise ValidationError(f"unknown filter column '{f.column}'")

            col = table[f.column]
            op, value = f.op, self._operand(col, f.op, f.value)

            if op == "eq":
                ibis_filters.append(col.isnull() if value is None else col == value)
            elif op == "neq":
                ibis_filters.append(col.notnull() if value is None else col != value)
            elif op == "lt":
                ibis_filters.append(col < value)
            elif op == "lte":
                ibis_filters.append(col <= value)
            elif op == "gt":
                ibis_filters.append(col > value)
            elif op == "gte":
                ibis_filters.append(col >= value)
            elif op == "in":
                ibis_filters.append(col.isin(list(value)))
            elif op == "is":
                ibis_filters.append(col.isnull() if value is None else col == value)
            elif op == "like":
                ibis_filters.append(col.like(value))
            elif op == "ilike":
                ibis_filters.append(col.ilike(value))

        combined_filter = ibis_filters[0]
        for f_expr in ibis_filters[1:]:
            combined_filter &= f_expr
        return combined_filter

    def _select_sync(self, table: str, descriptor: QueryDescriptor) -> List[Dict[str, Any]]:
        schema = self._schema(table)
        t = self.con.table(table)
        expr = t

        predicate = self.build_filter_expression(t, descriptor.filters)
        if predicate is not None:
            expr = expr.filter(predicate)

        cols = descriptor.columns()
        if cols is not None:
            unknown = [c for c in cols if c not in schema]
            if unknown:
                raise ValidationError(f"unknown column(s) for '{table}': {', '.join(unknown)}", table=table)

        order = descriptor.order_by
        if order and order.column not in schema:
            raise ValidationError(f"unknown order column '{order.column}'", table=table)

        # Sort last when the order column survives the projection
        if cols is not None and (order is None or order.column in cols):
            expr = expr.select(*cols)
        if order:
            col = expr[order.column]
            # PostgreSQL null placement: last ascending, first descending
            expr = expr.order_by(col.asc(nulls_first=False) if order.ascending else col.desc(nulls_first=True))
        if cols is not None and order is not None and order.column not in cols:
            expr = expr.select(*cols)
        if descriptor.limit:
            expr = expr.limit(descriptor.limit)

        result: pa.Table = expr.to_pyarrow()
        json_columns = [name for name, dtype in schema.items() if dtype.is_json()]
        return [self._decode_row(row, json_columns) for row in result.to_pylist()]

    async def select(self, table: str, descriptor: QueryDescriptor) -> List[Dict[str, Any]]:
        try:
            return await self._run(self._select_sync, table, descriptor)
        except (duckdb.Error, sqlite3.Error) as e:
            raise translate_driver_error(e, table=table) from e

    # -- writes -------------------------------------------------------------

    def _insert_sync(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        schema = self._schema(table)
        values = dict(values)
        if values.get("id") is None and "id" in schema and schema["id"].is_string():
            values["id"] = new_row_id()
        stamp_insert(values, schema)

        unknown = sorted(set(values) - set(schema))
        if unknown:
            raise ValidationError(f"unknown column(s) for '{table}': {', '.join(unknown)}", table=table)

        cols = list(values)
        sql = (
            f"INSERT INTO {quote_identifier(table)} ({', '.join(quote_identifier(c) for c in cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)}) RETURNING *"
        )
        rows = self._execute(sql, [self._encode(schema[c], values[c]) for c in cols])
        json_columns = [name for name, dtype in schema.items() if dtype.is_json()]
        return self._decode_row(rows[0], json_columns)

    def _update_sync(self, table: str, row_id: Any, values: Dict[str, Any]):
        schema = self._schema(table)
        changes = {k: v for k, v in values.items() if k != "id"}
        stamp_update(changes, schema)

        unknown = sorted(set(changes) - set(schema))
        if unknown:
            raise ValidationError(f"unknown column(s) for '{table}': {', '.join(unknown)}", table=table, row_id=row_id)

        json_columns = [name for name, dtype in schema.items() if dtype.is_json()]
        old_rows = self._execute(f"SELECT * FROM {quote_identifier(table)} WHERE \"id\" = ?", [row_id])
        if not old_rows:
            raise NotFoundError(f"row '{row_id}' does not exist in '{table}'", table=table, row_id=row_id)

        assignments = ", ".join(f"{quote_identifier(c)} = ?" for c in changes)
        sql = f"UPDATE {quote_identifier(table)} SET {assignments} WHERE \"id\" = ? RETURNING *"
        params = [self._encode(schema[c], changes[c]) for c in changes] + [row_id]
        rows = self._execute(sql, params)
        if not rows:
            raise NotFoundError(f"row '{row_id}' does not exist in '{table}'", table=table, row_id=row_id)
        return self._decode_row(rows[0], json_columns), self._decode_row(old_rows[0], json_columns)

    def _delete_sync(self, table: str, row_id: Any) -> Dict[str, Any]:
        schema = self._schema(table)
        rows = self._execute(f"DELETE FROM {quote_identifier(table)} WHERE \"id\" = ? RETURNING *", [row_id])
        if not rows:
            raise NotFoundError(f"row '{row_id}' does not exist in '{table}'", table=table, row_id=row_id)
        json_columns = [name for name, dtype in schema.items() if dtype.is_json()]
        return self._decode_row(rows[0], json_columns)

    async def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        try:
            row = await self._run(self._insert_sync, table, values)
        except (duckdb.Error, sqlite3.Error) as e:
            raise translate_driver_error(e, table=table) from e
        await self._publish(Inserted(table=table, row=dict(row)))
        return row

    async def update(self, table: str, row_id: Any, values: Dict[str, Any]) -> Dict[str, Any]:
        try:
            row, old_row = await self._run(self._update_sync, table, row_id, values)
        except (duckdb.Error, sqlite3.Error) as e:
            raise translate_driver_error(e, table=table, row_id=row_id) from e
        await self._publish(Updated(table=table, row=dict(row), old_row=old_row))
        return row

    async def delete(self, table: str, row_id: Any) -> Dict[str, Any]:
        try:
            old_row = await self._run(self._delete_sync, table, row_id)
        except (duckdb.Error, sqlite3.Error) as e:
            raise translate_driver_error(e, table=table, row_id=row_id) from e
        await self._publish(Deleted(table=table, id=row_id, old_row=dict(old_row)))
        return old_row

    # -- seeding and housekeeping -------------------------------------------

    def create_table(self, name: str, schema: Optional[Dict[str, str]] = None,
                     obj: Optional[pa.Table] = None, overwrite: bool = True):
        """Create a table from an Ibis schema mapping and/or an Arrow table."""
        ibis_schema = ibis.schema(schema) if schema is not None else None
        with self._lock:
            self.con.create_table(name, obj=obj, schema=ibis_schema, overwrite=overwrite)

    def load_arrow(self, name: str, arrow_table: pa.Table):
        """Append Arrow rows to an existing table."""
        with self._lock:
            self.con.insert(name, arrow_table)

    def get_stats(self) -> Dict[str, Any]:
        avg_time = self._total_time / self._query_count if self._query_count > 0 else 0
        return {
            "query_count": self._query_count,
            "total_time": self._total_time,
            "avg_query_time": avg_time,
            "backend_type": getattr(self.con, 'name', 'unknown') if self.con else 'disconnected'
        }

    async def close(self):
        await super().close()
        if self.con is not None and hasattr(self.con, 'disconnect'):
            self.con.disconnect()
        self.con = None
