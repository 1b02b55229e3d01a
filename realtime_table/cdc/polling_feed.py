"""
Polling change feed for backends that cannot push.

Each subscription snapshots its table keyed by row id and diffs consecutive
snapshots into change events.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from realtime_table.cdc.change_feed import ChangeFeed, Subscription
from realtime_table.cdc.models import ChangeEvent, Inserted, Updated, Deleted
from realtime_table.errors import SubscriptionLostError, classify_error
from realtime_table.types.query_descriptor import Filter, QueryDescriptor

logger = logging.getLogger(__name__)

Fetch = Callable[[str, QueryDescriptor], Awaitable[List[Dict[str, Any]]]]


def diff_snapshots(table: str, previous: Dict[Any, Dict[str, Any]],
                   current: Dict[Any, Dict[str, Any]]) -> List[ChangeEvent]:
    """Changes that turn `previous` into `current` (both keyed by id)."""
    changes: List[ChangeEvent] = []
    for row_id, row in current.items():
        old = previous.get(row_id)
        if old is None:
            changes.append(Inserted(table=table, row=row))
        elif old != row:
            changes.append(Updated(table=table, row=row, old_row=old))
    for row_id, old in previous.items():
        if row_id not in current:
            changes.append(Deleted(table=table, id=row_id, old_row=old))
    return changes


class PollingChangeFeed(ChangeFeed):
    """Detects changes by re-reading the table every `poll_interval` seconds."""

    supports_filters = True

    def __init__(self, fetch: Fetch, poll_interval: float = 1.0):
        self.fetch = fetch
        self.poll_interval = poll_interval
        self._tasks: Dict[Subscription, asyncio.Task] = {}

    async def _snapshot(self, table: str, filters: List[Filter]) -> Dict[Any, Dict[str, Any]]:
        rows = await self.fetch(table, QueryDescriptor(filters=list(filters)))
        return {row["id"]: row for row in rows if row.get("id") is not None}

    async def subscribe(self, table: str, filters: Optional[List[Filter]] = None) -> Subscription:
        subscription = Subscription(table, filters, on_release=self._release)
        try:
            baseline = await self._snapshot(table, subscription.filters)
        except Exception as e:
            raise SubscriptionLostError(f"initial poll failed: {classify_error(e)}", table=table) from e
        self._tasks[subscription] = asyncio.create_task(self._poll(subscription, baseline))
        logger.debug("Polling feed: tracking %s every %ss", table, self.poll_interval)
        return subscription

    async def _poll(self, subscription: Subscription, snapshot: Dict[Any, Dict[str, Any]]):
        while subscription.active:
            await asyncio.sleep(self.poll_interval)
            try:
                current = await self._snapshot(subscription.table, subscription.filters)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Polling feed: poll of %s failed: %s", subscription.table, e)
                subscription.fail(SubscriptionLostError(str(classify_error(e)), table=subscription.table))
                return
            for change in diff_snapshots(subscription.table, snapshot, current):
                subscription.deliver(change)
            snapshot = current

    def _release(self, subscription: Subscription):
        task = self._tasks.pop(subscription, None)
        if task is not None:
            task.cancel()

    async def publish(self, event: ChangeEvent):
        # Writes are picked up by the next poll
        pass

    async def close(self):
        for subscription in list(self._tasks):
            subscription.end()
            self._release(subscription)

    def subscriber_count(self, table: str) -> int:
        return sum(1 for s in self._tasks if s.table == table)
