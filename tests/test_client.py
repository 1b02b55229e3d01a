"""
Tests for the client entry point, backend construction and page presets
"""
import pytest

from realtime_table.backends.memory_backend import MemoryTableBackend
from realtime_table.cdc.change_feed import PushChangeFeed
from realtime_table.cdc.polling_feed import PollingChangeFeed
from realtime_table.cdc.redis_feed import RedisChangeFeed
from realtime_table.client import RealtimeTableClient, create_backend
from realtime_table.config import RealtimeTableConfig
from realtime_table.presets import TABLE_PRESETS, get_preset


def test_create_backend_variants():
    assert isinstance(create_backend(RealtimeTableConfig()).change_feed, PushChangeFeed)

    polling = create_backend(RealtimeTableConfig(change_feed="polling", poll_interval=0.5))
    assert isinstance(polling.change_feed, PollingChangeFeed)
    assert polling.change_feed.poll_interval == 0.5

    redis_backed = create_backend(RealtimeTableConfig(change_feed="redis", redis_config={"host": "cache", "port": 6380}))
    assert isinstance(redis_backed.change_feed, RedisChangeFeed)


def test_create_ibis_backend():
    from realtime_table.backends.ibis_backend import IbisTableBackend
    backend = create_backend(RealtimeTableConfig(backend_type="ibis", backend_uri="duckdb://:memory:"))
    assert isinstance(backend, IbisTableBackend)
    assert backend.get_stats()["backend_type"] == "duckdb"


def test_from_config_validates():
    with pytest.raises(ValueError):
        RealtimeTableClient.from_config(RealtimeTableConfig(change_feed="carrier-pigeon"))


@pytest.mark.asyncio
async def test_open_and_close_all(backend, config):
    client = RealtimeTableClient(backend, config)
    sales = await client.open("sales", select="id, customer_name",
                              order_by={"column": "created_at", "ascending": True})
    pending = await client.open("sales", filters=[{"column": "status", "value": "pending"}])

    assert [r["id"] for r in sales.data] == ["s1", "s2", "s3"]
    assert set(sales.data[0]) == {"id", "customer_name"}
    assert len(pending) == 2
    assert client.collections == [sales, pending]

    await client.close()
    assert sales.closed and pending.closed
    assert backend.change_feed.subscriber_count("sales") == 0
    assert client.collections == []


@pytest.mark.asyncio
async def test_closed_collections_are_released_by_the_client(backend, config):
    client = RealtimeTableClient(backend, config)
    for _ in range(50):
        async with client.collection("sales"):
            pass
    kept = await client.open("sales")
    assert client.collections == [kept]

    await kept.close()
    await kept.close()
    assert client.collections == []
    await client.close()


@pytest.mark.asyncio
async def test_open_preset(config):
    backend = MemoryTableBackend()
    backend.create_table("stock", rows=[
        {"id": 1, "item_name": "Excavator teeth"},
        {"id": 2, "item_name": "Diesel filter"},
    ])
    async with RealtimeTableClient(backend, config) as client:
        stock = await client.open_preset("stock")
        assert [r["item_name"] for r in stock.data] == ["Diesel filter", "Excavator teeth"]
        with pytest.raises(KeyError):
            await client.open_preset("weather")
    assert stock.closed


@pytest.mark.asyncio
async def test_unopened_collection_opens_in_context(backend, config):
    client = RealtimeTableClient(backend, config)
    async with client.collection("sales") as sales:
        assert len(sales) == 3
    assert sales.closed
    await client.close()


def test_presets():
    sales = get_preset("sales")
    assert sales.columns() == ["id", "total_amount", "customer_name", "product", "created_at"]
    assert sales.order_by.column == "created_at" and not sales.order_by.ascending
    assert get_preset("attendance_records").order_by.column == "date"
    assert get_preset("departments").order_by.ascending
    # a fresh descriptor each time
    assert get_preset("sales") is not sales
    assert len(TABLE_PRESETS) >= 20


def test_config_defaults_and_validation():
    config = RealtimeTableConfig()
    assert config.backend_type == "memory"
    assert config.change_feed == "push"
    config.validate()

    with pytest.raises(ValueError, match="reconnect_max_attempts"):
        RealtimeTableConfig(reconnect_max_attempts=-1).validate()
    with pytest.raises(ValueError, match="backend_type"):
        RealtimeTableConfig(backend_type="postgres").validate()


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("REALTIME_BACKEND_TYPE", "ibis")
    monkeypatch.setenv("REALTIME_CHANGE_FEED", "redis")
    monkeypatch.setenv("REDIS_HOST", "redis.internal")
    monkeypatch.setenv("REALTIME_RECONNECT_ATTEMPTS", "2")
    monkeypatch.setenv("REALTIME_API_PORT", "9000")

    config = RealtimeTableConfig().from_env()
    assert config.backend_type == "ibis"
    assert config.redis_config["host"] == "redis.internal"
    assert config.redis_config["port"] == 6379
    assert config.reconnect_max_attempts == 2
    assert config.api_port == 9000


def test_config_manager():
    from realtime_table.config import ConfigManager
    manager = ConfigManager()
    config = manager.get_config()
    assert manager.get_config() is config
