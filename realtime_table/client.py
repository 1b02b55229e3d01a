"""
RealtimeTableClient - opens live collections over a table backend.

    client = RealtimeTableClient.from_config(get_config())
    sales = await client.open("sales", order_by={"column": "created_at", "ascending": False})
    result = await sales.insert({"customer_name": "PT Vale", "total_amount": 1200})
    ...
    await client.close()
"""
import logging
from typing import Any, Dict, List, Optional, Union

from realtime_table.backends.base import TableBackend
from realtime_table.backends.memory_backend import MemoryTableBackend
from realtime_table.cdc.change_feed import ChangeFeed, PushChangeFeed
from realtime_table.cdc.polling_feed import PollingChangeFeed
from realtime_table.collection import TableCollection
from realtime_table.config import RealtimeTableConfig, get_config
from realtime_table.presets import get_preset
from realtime_table.types.query_descriptor import Filter, OrderBy, QueryDescriptor

logger = logging.getLogger(__name__)


def create_backend(config: RealtimeTableConfig) -> TableBackend:
    """Build the backend and change feed named by the configuration."""
    if config.backend_type == "ibis":
        from realtime_table.backends.ibis_backend import IbisTableBackend
        backend: TableBackend = IbisTableBackend(connection_uri=config.backend_uri)
    else:
        backend = MemoryTableBackend()

    feed: ChangeFeed
    if config.change_feed == "polling":
        feed = PollingChangeFeed(backend.select, poll_interval=config.poll_interval)
    elif config.change_feed == "redis":
        from realtime_table.cdc.redis_feed import RedisChangeFeed
        feed = RedisChangeFeed.from_config(config.redis_config)
    else:
        feed = PushChangeFeed()
    backend.change_feed = feed
    return backend


class RealtimeTableClient:
    """Entry point for consumers: one client, many live collections"""

    def __init__(self, backend: TableBackend, config: Optional[RealtimeTableConfig] = None):
        self.backend = backend
        self.config = config or get_config()
        self._collections: List[TableCollection] = []

    @classmethod
    def from_config(cls, config: Optional[RealtimeTableConfig] = None) -> "RealtimeTableClient":
        config = config or get_config()
        config.validate()
        return cls(create_backend(config), config)

    def collection(self, table: str, select: Union[str, List[str]] = "*",
                   order_by: Optional[Union[OrderBy, Dict[str, Any]]] = None,
                   filters: Optional[List[Union[Filter, Dict[str, Any]]]] = None,
                   descriptor: Optional[QueryDescriptor] = None) -> TableCollection:
        """Create an unopened collection (open it with `async with`)."""
        if descriptor is None:
            descriptor = QueryDescriptor.from_dict({
                "select": select,
                "order_by": order_by.__dict__ if isinstance(order_by, OrderBy) else order_by,
                "filters": [f.to_dict() if isinstance(f, Filter) else f for f in (filters or [])],
            })
        collection = TableCollection(self.backend, table, descriptor, self.config, on_close=self._forget)
        self._collections.append(collection)
        return collection

    def _forget(self, collection: TableCollection):
        self._collections = [c for c in self._collections if c is not collection]

    async def open(self, table: str, select: Union[str, List[str]] = "*",
                   order_by: Optional[Union[OrderBy, Dict[str, Any]]] = None,
                   filters: Optional[List[Union[Filter, Dict[str, Any]]]] = None,
                   descriptor: Optional[QueryDescriptor] = None) -> TableCollection:
        """Open a live collection; returns once the initial fetch settled."""
        collection = self.collection(table, select=select, order_by=order_by,
                                     filters=filters, descriptor=descriptor)
        return await collection.open()

    async def open_preset(self, name: str) -> TableCollection:
        """Open a collection with the descriptor a back-office page uses."""
        return await self.open(name, descriptor=get_preset(name))

    @property
    def collections(self) -> List[TableCollection]:
        return list(self._collections)

    async def close(self):
        """Close every collection handed out, then the backend."""
        for collection in list(self._collections):
            await collection.close()
        self._collections.clear()
        await self.backend.close()
        logger.debug("Realtime table client closed")

    async def __aenter__(self) -> "RealtimeTableClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
