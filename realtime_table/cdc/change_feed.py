"""
Change feeds - long-lived push channels of row-level change events.

A feed hands out one Subscription per subscriber. Subscriptions are async
iterables over ChangeEvents; a lost connection surfaces as
SubscriptionLostError raised from the iterator.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from realtime_table.cdc.models import ChangeEvent, Inserted
from realtime_table.errors import SubscriptionLostError
from realtime_table.types.query_descriptor import Filter

logger = logging.getLogger(__name__)

_END = object()


class Subscription:
    """One subscriber's view of a table's change stream"""

    def __init__(self, table: str, filters: Optional[List[Filter]] = None,
                 on_release: Optional[Callable[["Subscription"], None]] = None):
        self.table = table
        self.filters = list(filters or [])
        self._on_release = on_release
        self._queue: asyncio.Queue = asyncio.Queue()
        self._released = False
        self._finished = False

    @property
    def active(self) -> bool:
        return not self._released and not self._finished

    def accepts(self, event: ChangeEvent) -> bool:
        """Server-side filtering: only inserts are narrowed.

        Updates and deletes always go through so that a client can drop a row
        that has left its filter scope.
        """
        if event.table != self.table:
            return False
        if isinstance(event, Inserted) and self.filters:
            return all(f.matches(event.row) for f in self.filters)
        return True

    def deliver(self, event: ChangeEvent):
        if self.active:
            self._queue.put_nowait(event)

    def fail(self, exc: BaseException):
        if self.active:
            self._finished = True
            self._queue.put_nowait(exc)

    def end(self):
        if self.active:
            self._finished = True
            self._queue.put_nowait(_END)

    def unsubscribe(self):
        """Release the subscription. Safe to call any number of times."""
        if self._released:
            return
        self._released = True
        self._queue.put_nowait(_END)
        if self._on_release is not None:
            self._on_release(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._released and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class ChangeFeed(ABC):
    """Abstract base class for change feeds"""

    # Whether subscriptions narrow events with the caller's filters
    supports_filters = False

    @abstractmethod
    async def subscribe(self, table: str, filters: Optional[List[Filter]] = None) -> Subscription:
        """Open a subscription on a table"""
        pass

    @abstractmethod
    async def publish(self, event: ChangeEvent):
        """Announce a committed change to subscribers"""
        pass

    @abstractmethod
    async def close(self):
        """End every subscription and release resources"""
        pass

    def subscriber_count(self, table: str) -> int:
        return 0


class PushChangeFeed(ChangeFeed):
    """
    In-process feed: backends push committed changes, subscribers receive them
    through their own queues.
    """

    supports_filters = True

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}

    async def subscribe(self, table: str, filters: Optional[List[Filter]] = None) -> Subscription:
        subscription = Subscription(table, filters, on_release=self._release)
        self._subscriptions.setdefault(table, []).append(subscription)
        logger.debug("Push feed: subscribed to %s (%d listeners)", table, len(self._subscriptions[table]))
        return subscription

    def _release(self, subscription: Subscription):
        subs = self._subscriptions.get(subscription.table, [])
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            self._subscriptions.pop(subscription.table, None)

    async def publish(self, event: ChangeEvent):
        for subscription in list(self._subscriptions.get(event.table, [])):
            if subscription.accepts(event):
                subscription.deliver(event)

    def disconnect(self, table: Optional[str] = None, reason: str = "change stream disconnected"):
        """Drop live subscriptions as a network failure would."""
        tables = [table] if table is not None else list(self._subscriptions)
        for name in tables:
            for subscription in self._subscriptions.pop(name, []):
                logger.warning("Push feed: dropping subscription on %s: %s", name, reason)
                subscription.fail(SubscriptionLostError(reason, table=name))

    async def close(self):
        for subs in list(self._subscriptions.values()):
            for subscription in subs:
                subscription.end()
        self._subscriptions.clear()

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions.get(table, []))
