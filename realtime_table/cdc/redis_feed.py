"""
Redis pub/sub change feed, for fan-out across processes.

Events are published as JSON on the channel `realtime:<table>`. Values that
JSON cannot carry (datetimes, dates, decimals) are tagged so rows compare and
sort the same after the round trip.
"""
import asyncio
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import redis
import redis.asyncio as aioredis

from realtime_table.cdc.change_feed import ChangeFeed, Subscription
from realtime_table.cdc.models import ChangeEvent, parse_change
from realtime_table.errors import SubscriptionLostError, ValidationError

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "realtime:"


def _encode(value: Any):
    if isinstance(value, datetime):
        return {"__datetime__": value.isoformat()}
    if isinstance(value, date):
        return {"__date__": value.isoformat()}
    if isinstance(value, Decimal):
        return {"__decimal__": str(value)}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode(obj: Dict[str, Any]):
    if len(obj) == 1:
        if "__datetime__" in obj:
            return datetime.fromisoformat(obj["__datetime__"])
        if "__date__" in obj:
            return date.fromisoformat(obj["__date__"])
        if "__decimal__" in obj:
            return Decimal(obj["__decimal__"])
    return obj


def dumps_event(event: ChangeEvent) -> str:
    return json.dumps(event.to_payload(), default=_encode)


def loads_event(data, table: Optional[str] = None) -> ChangeEvent:
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    return parse_change(json.loads(data, object_hook=_decode), table=table)


class RedisChangeFeed(ChangeFeed):
    """Change feed over Redis pub/sub"""

    supports_filters = True

    def __init__(self, client: "aioredis.Redis"):
        self.client = client
        self._tasks: Dict[Subscription, asyncio.Task] = {}

    @classmethod
    def from_config(cls, redis_config: Dict[str, Any]) -> "RedisChangeFeed":
        client = aioredis.Redis(
            host=redis_config.get("host", "localhost"),
            port=redis_config.get("port", 6379),
            db=redis_config.get("db", 0),
            password=redis_config.get("password"),
        )
        return cls(client)

    @staticmethod
    def channel(table: str) -> str:
        return f"{CHANNEL_PREFIX}{table}"

    async def subscribe(self, table: str, filters=None) -> Subscription:
        subscription = Subscription(table, filters, on_release=self._release)
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(self.channel(table))
        except (redis.exceptions.ConnectionError, OSError) as e:
            await pubsub.aclose()
            raise SubscriptionLostError(f"could not subscribe to {self.channel(table)}: {e}", table=table) from e
        self._tasks[subscription] = asyncio.create_task(self._listen(subscription, pubsub))
        return subscription

    async def _listen(self, subscription: Subscription, pubsub):
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = loads_event(message["data"], table=subscription.table)
                except (ValueError, ValidationError) as e:
                    logger.warning("Redis feed: dropping malformed message on %s: %s", subscription.table, e)
                    continue
                if subscription.accepts(event):
                    subscription.deliver(event)
            subscription.fail(SubscriptionLostError("pubsub stream ended", table=subscription.table))
        except (redis.exceptions.ConnectionError, OSError) as e:
            logger.warning("Redis feed: connection lost on %s: %s", subscription.table, e)
            subscription.fail(SubscriptionLostError(str(e), table=subscription.table))
        except Exception as e:
            logger.exception("Redis feed: listener for %s failed", subscription.table)
            subscription.fail(SubscriptionLostError(f"listener failed: {e}", table=subscription.table))
        finally:
            try:
                await pubsub.unsubscribe(self.channel(subscription.table))
                await pubsub.aclose()
            except (redis.exceptions.ConnectionError, OSError):
                pass

    def _release(self, subscription: Subscription):
        task = self._tasks.pop(subscription, None)
        if task is not None:
            task.cancel()

    async def publish(self, event: ChangeEvent):
        await self.client.publish(self.channel(event.table), dumps_event(event))

    async def close(self):
        for subscription in list(self._tasks):
            subscription.end()
            self._release(subscription)
        await self.client.aclose()

    def subscriber_count(self, table: str) -> int:
        return sum(1 for s in self._tasks if s.table == table)
