"""
Shared fixtures: a deterministic fake backend over the in-memory backend.

The fake can hold change events back and release them in any order, fail
the next call of an operation, and gate an operation on an asyncio.Event
(before the write happens, or after it committed but before it returns).
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from realtime_table.backends.memory_backend import MemoryTableBackend
from realtime_table.cdc.change_feed import PushChangeFeed
from realtime_table.config import RealtimeTableConfig


class CountingFeed(PushChangeFeed):
    """Push feed that counts subscribe and release calls"""

    def __init__(self):
        super().__init__()
        self.subscribe_calls = 0
        self.release_calls = 0

    async def subscribe(self, table, filters=None):
        self.subscribe_calls += 1
        return await super().subscribe(table, filters)

    def _release(self, subscription):
        self.release_calls += 1
        super()._release(subscription)


class FakeBackend(MemoryTableBackend):

    def __init__(self):
        super().__init__(CountingFeed())
        self.hold_events = False
        self.held: List[Any] = []
        self.calls: List[str] = []
        self._failures: Dict[str, List[BaseException]] = {}
        self._gates: Dict[str, asyncio.Event] = {}
        self._after_gates: Dict[str, asyncio.Event] = {}

    def fail(self, op: str, exc: BaseException, times: int = 1):
        self._failures.setdefault(op, []).extend([exc] * times)

    def clear_failures(self):
        self._failures.clear()

    def gate(self, op: str) -> asyncio.Event:
        """Block `op` before it touches the table until the event is set."""
        self._gates[op] = asyncio.Event()
        return self._gates[op]

    def gate_after(self, op: str) -> asyncio.Event:
        """Block `op` after it committed (and published) until the event is set."""
        self._after_gates[op] = asyncio.Event()
        return self._after_gates[op]

    async def _enter(self, op: str):
        self.calls.append(op)
        gate = self._gates.pop(op, None)
        if gate is not None:
            await gate.wait()
        failures = self._failures.get(op)
        if failures:
            raise failures.pop(0)

    async def _leave(self, op: str):
        gate = self._after_gates.pop(op, None)
        if gate is not None:
            await gate.wait()

    async def _publish(self, event):
        if self.hold_events:
            self.held.append(event)
            return
        await super()._publish(event)

    async def release(self, order: Optional[List[int]] = None):
        """Deliver held events, in arrival order or in the given index order."""
        events, self.held = self.held, []
        if order is not None:
            events = [events[i] for i in order]
        for event in events:
            await self.change_feed.publish(event)

    async def emit(self, event):
        """Push an arbitrary event straight onto the change stream."""
        await self.change_feed.publish(event)

    async def subscribe(self, table, descriptor=None):
        await self._enter("subscribe")
        return await super().subscribe(table, descriptor)

    async def select(self, table, descriptor):
        await self._enter("select")
        rows = await super().select(table, descriptor)
        await self._leave("select")
        return rows

    async def insert(self, table, values):
        await self._enter("insert")
        row = await super().insert(table, values)
        await self._leave("insert")
        return row

    async def update(self, table, row_id, values):
        await self._enter("update")
        row = await super().update(table, row_id, values)
        await self._leave("update")
        return row

    async def delete(self, table, row_id):
        await self._enter("delete")
        row = await super().delete(table, row_id)
        await self._leave("delete")
        return row


SALES_ROWS = [
    {"id": "s1", "customer_name": "PT Antam", "product": "Nickel Ore", "total_amount": 1200.0,
     "status": "paid", "created_at": datetime(2024, 3, 1, 9, 0)},
    {"id": "s2", "customer_name": "PT Vale", "product": "Nickel Ore", "total_amount": 800.0,
     "status": "pending", "created_at": datetime(2024, 3, 2, 9, 0)},
    {"id": "s3", "customer_name": "Harita", "product": "Limonite", "total_amount": 450.0,
     "status": "pending", "created_at": datetime(2024, 3, 3, 9, 0)},
]


@pytest.fixture
def config():
    """Fast timeouts, no backoff sleep"""
    return RealtimeTableConfig(fetch_timeout=1.0, mutation_timeout=1.0,
                               reconnect_max_attempts=3, reconnect_backoff=0.0)


@pytest.fixture
def backend():
    backend = FakeBackend()
    backend.create_table("sales", rows=SALES_ROWS)
    return backend


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)
    return _wait_until


@pytest.fixture
def settle():
    async def _settle(turns: int = 20):
        for _ in range(turns):
            await asyncio.sleep(0)
    return _settle
