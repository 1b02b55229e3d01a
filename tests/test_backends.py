"""
Tests for the in-memory and Ibis (DuckDB) table backends
"""
import sqlite3
from datetime import datetime

import duckdb
import pytest

from realtime_table.backends.ibis_backend import IbisTableBackend, quote_identifier, translate_driver_error
from realtime_table.backends.memory_backend import MemoryTableBackend
from realtime_table.cdc.models import Inserted, Updated, Deleted
from realtime_table.errors import AuthError, NetworkError, NotFoundError, ValidationError
from realtime_table.types.query_descriptor import QueryDescriptor

SALES_SCHEMA = {
    "id": "string",
    "customer_name": "string",
    "total_amount": "float64",
    "status": "string",
    "quality_specifications": "json",
    "created_at": "timestamp",
    "updated_at": "timestamp",
}


# -- memory backend ---------------------------------------------------------


@pytest.fixture
def memory_backend():
    backend = MemoryTableBackend()
    backend.create_table("stock", columns=["item_name", "quantity"], rows=[
        {"id": 1, "item_name": "Excavator teeth", "quantity": 4},
        {"id": 2, "item_name": "Diesel filter", "quantity": 12},
    ])
    return backend


@pytest.mark.asyncio
async def test_memory_select_orders_and_limits(memory_backend):
    descriptor = QueryDescriptor.from_dict({"order_by": {"column": "item_name", "ascending": True}, "limit": 1})
    assert await memory_backend.select("stock", descriptor) == [
        {"id": 2, "item_name": "Diesel filter", "quantity": 12},
    ]


@pytest.mark.asyncio
async def test_memory_writes_publish_events(memory_backend):
    subscription = await memory_backend.subscribe("stock")

    row = await memory_backend.insert("stock", {"item_name": "Hydraulic hose", "quantity": 2})
    assert isinstance(row["id"], str)
    updated = await memory_backend.update("stock", 1, {"quantity": 3})
    assert updated == {"id": 1, "item_name": "Excavator teeth", "quantity": 3}
    old = await memory_backend.delete("stock", 2)
    assert old["item_name"] == "Diesel filter"

    assert await subscription.__anext__() == Inserted("stock", row)
    assert await subscription.__anext__() == Updated(
        "stock", updated, {"id": 1, "item_name": "Excavator teeth", "quantity": 4})
    assert await subscription.__anext__() == Deleted("stock", 2, old)


@pytest.mark.asyncio
async def test_memory_returns_copies(memory_backend):
    rows = await memory_backend.select("stock", QueryDescriptor())
    rows[0]["quantity"] = 999
    again = await memory_backend.select("stock", QueryDescriptor())
    assert 999 not in [r["quantity"] for r in again]


@pytest.mark.asyncio
async def test_memory_errors(memory_backend):
    with pytest.raises(NotFoundError):
        await memory_backend.select("nope", QueryDescriptor())
    with pytest.raises(NotFoundError):
        await memory_backend.update("stock", 42, {"quantity": 1})
    with pytest.raises(NotFoundError):
        await memory_backend.delete("stock", 42)
    with pytest.raises(ValidationError):
        await memory_backend.insert("stock", {"id": 1, "item_name": "dup"})
    with pytest.raises(ValidationError):
        await memory_backend.insert("stock", {"colour": "red"})


@pytest.mark.asyncio
async def test_memory_stamps_timestamps():
    backend = MemoryTableBackend()
    backend.create_table("expenses")
    row = await backend.insert("expenses", {"amount": 10})
    assert isinstance(row["created_at"], datetime)
    assert row["created_at"] == row["updated_at"]
    updated = await backend.update("expenses", row["id"], {"amount": 11})
    assert updated["updated_at"] >= row["updated_at"]
    assert updated["created_at"] == row["created_at"]


# -- ibis backend -----------------------------------------------------------


@pytest.fixture
def ibis_backend():
    backend = IbisTableBackend(connection_uri=":memory:")
    backend.create_table("sales", schema=SALES_SCHEMA)
    return backend


async def seed(backend):
    rows = [
        {"id": "s1", "customer_name": "PT Antam", "total_amount": 1200.0, "status": "paid",
         "created_at": datetime(2024, 3, 1)},
        {"id": "s2", "customer_name": "PT Vale", "total_amount": None, "status": "pending",
         "created_at": datetime(2024, 3, 2)},
        {"id": "s3", "customer_name": "Harita", "total_amount": 450.0, "status": "pending",
         "created_at": datetime(2024, 3, 3)},
    ]
    for row in rows:
        await backend.insert("sales", row)


@pytest.mark.asyncio
async def test_ibis_select_with_descriptor(ibis_backend):
    await seed(ibis_backend)
    descriptor = QueryDescriptor.from_dict({
        "select": "customer_name",
        "order_by": {"column": "created_at", "ascending": False},
        "filters": [{"column": "status", "op": "eq", "value": "pending"}],
    })
    rows = await ibis_backend.select("sales", descriptor)
    assert rows == [{"id": "s3", "customer_name": "Harita"}, {"id": "s2", "customer_name": "PT Vale"}]


@pytest.mark.asyncio
async def test_ibis_null_ordering(ibis_backend):
    await seed(ibis_backend)
    desc = QueryDescriptor.from_dict({"order_by": {"column": "total_amount", "ascending": False}})
    asc = QueryDescriptor.from_dict({"order_by": {"column": "total_amount", "ascending": True}})
    assert [r["id"] for r in await ibis_backend.select("sales", desc)] == ["s2", "s1", "s3"]
    assert [r["id"] for r in await ibis_backend.select("sales", asc)] == ["s3", "s1", "s2"]


@pytest.mark.asyncio
async def test_ibis_insert_assigns_id_and_decodes_json(ibis_backend):
    subscription = await ibis_backend.subscribe("sales")
    row = await ibis_backend.insert("sales", {
        "customer_name": "PT Smelter",
        "quality_specifications": {"ni_content": 1.8, "size": "0-50mm"},
    })
    assert len(row["id"]) == 36
    assert row["quality_specifications"] == {"ni_content": 1.8, "size": "0-50mm"}
    assert isinstance(row["created_at"], datetime)
    assert await subscription.__anext__() == Inserted("sales", row)

    [read] = await ibis_backend.select("sales", QueryDescriptor())
    assert read["quality_specifications"] == {"ni_content": 1.8, "size": "0-50mm"}


@pytest.mark.asyncio
async def test_ibis_update_and_delete(ibis_backend):
    await seed(ibis_backend)
    subscription = await ibis_backend.subscribe("sales")

    row = await ibis_backend.update("sales", "s2", {"total_amount": 800.0})
    assert row["total_amount"] == 800.0
    assert row["customer_name"] == "PT Vale"
    assert row["updated_at"] is not None

    old = await ibis_backend.delete("sales", "s1")
    assert old["customer_name"] == "PT Antam"

    event = await subscription.__anext__()
    assert isinstance(event, Updated)
    assert event.old_row["total_amount"] is None
    assert await subscription.__anext__() == Deleted("sales", "s1", old)

    remaining = await ibis_backend.select("sales", QueryDescriptor())
    assert sorted(r["id"] for r in remaining) == ["s2", "s3"]


@pytest.mark.asyncio
async def test_ibis_errors(ibis_backend):
    with pytest.raises(NotFoundError):
        await ibis_backend.select("nope", QueryDescriptor())
    with pytest.raises(NotFoundError):
        await ibis_backend.update("sales", "missing", {"status": "paid"})
    with pytest.raises(NotFoundError):
        await ibis_backend.delete("sales", "missing")
    with pytest.raises(ValidationError):
        await ibis_backend.insert("sales", {"colour": "red"})
    with pytest.raises(ValidationError):
        await ibis_backend.select("sales", QueryDescriptor.from_dict({"filters": [{"column": "colour", "value": 1}]}))
    with pytest.raises(ValidationError):
        await ibis_backend.select("sales", QueryDescriptor.from_dict({"order_by": {"column": "colour"}}))


@pytest.mark.asyncio
async def test_ibis_constraint_errors_are_validation_errors():
    backend = IbisTableBackend(connection_uri="duckdb://:memory:")
    backend.con.raw_sql("CREATE TABLE departments (id INTEGER PRIMARY KEY, name VARCHAR NOT NULL)")

    await backend.insert("departments", {"id": 1, "name": "Geology"})
    with pytest.raises(ValidationError):
        await backend.insert("departments", {"id": 1, "name": "Finance"})
    with pytest.raises(ValidationError):
        await backend.insert("departments", {"id": 2, "name": None})
    with pytest.raises(ValidationError):
        await backend.insert("departments", {"id": "two", "name": "HR"})

    assert backend.get_stats()["query_count"] >= 4
    await backend.close()
    assert backend.con is None


def test_translate_driver_error():
    assert isinstance(translate_driver_error(duckdb.CatalogException("no table")), NotFoundError)
    assert isinstance(translate_driver_error(duckdb.PermissionException("read only")), AuthError)
    assert isinstance(translate_driver_error(duckdb.IOException("disk")), NetworkError)
    assert isinstance(translate_driver_error(duckdb.ConstraintException("dup")), ValidationError)
    assert isinstance(translate_driver_error(sqlite3.IntegrityError("dup")), ValidationError)
    assert isinstance(translate_driver_error(sqlite3.OperationalError("no such table: x")), NotFoundError)
    assert isinstance(translate_driver_error(sqlite3.OperationalError("attempt to write a readonly database")),
                      AuthError)


def test_quote_identifier():
    assert quote_identifier("total_amount") == '"total_amount"'
    assert quote_identifier('we"ird') == '"we""ird"'
