"""
TableBackend - the backend-as-a-service contract the client is written against.

    Query(table, descriptor)          -> rows
    Subscribe(table, [filters])       -> Subscription of ChangeEvents
    Insert/Update/Delete(table, ...)  -> committed row | typed error
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from realtime_table.cdc.change_feed import ChangeFeed, PushChangeFeed, Subscription
from realtime_table.cdc.models import ChangeEvent
from realtime_table.types.query_descriptor import QueryDescriptor

logger = logging.getLogger(__name__)


def new_row_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form TIMESTAMP columns store"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def stamp_insert(values: Dict[str, Any], columns: Iterable[str]) -> Dict[str, Any]:
    columns = set(columns)
    now = utcnow()
    for name in ("created_at", "updated_at"):
        if name in columns and values.get(name) is None:
            values[name] = now
    return values


def stamp_update(values: Dict[str, Any], columns: Iterable[str]) -> Dict[str, Any]:
    if "updated_at" in set(columns) and "updated_at" not in values:
        values["updated_at"] = utcnow()
    return values


class TableBackend(ABC):
    """Abstract base class for table backends"""

    def __init__(self, change_feed: Optional[ChangeFeed] = None):
        self.change_feed: ChangeFeed = change_feed or PushChangeFeed()

    @abstractmethod
    def list_tables(self) -> List[str]:
        pass

    @abstractmethod
    async def select(self, table: str, descriptor: QueryDescriptor) -> List[Dict[str, Any]]:
        """Run a read and return the rows in descriptor order"""
        pass

    @abstractmethod
    async def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Create a row; the backend assigns the id when absent"""
        pass

    @abstractmethod
    async def update(self, table: str, row_id: Any, values: Dict[str, Any]) -> Dict[str, Any]:
        """Change the given fields of a row and return the full committed row"""
        pass

    @abstractmethod
    async def delete(self, table: str, row_id: Any) -> Dict[str, Any]:
        """Remove a row and return it as it was"""
        pass

    async def subscribe(self, table: str, descriptor: Optional[QueryDescriptor] = None) -> Subscription:
        filters = descriptor.filters if descriptor is not None and self.change_feed.supports_filters else None
        return await self.change_feed.subscribe(table, filters)

    async def _publish(self, event: ChangeEvent):
        # The write is already committed; a failed announcement must not fail it
        try:
            await self.change_feed.publish(event)
        except Exception as e:
            logger.warning("Could not publish %s on %s: %s", type(event).__name__, event.table, e)

    async def close(self):
        await self.change_feed.close()
