"""
TableCollection - a live, ordered mirror of one remote table slice.

The collection holds either the snapshot of the last full fetch, or that
snapshot plus the change events received since. Everything is keyed by row
id:

- Inserted for an id already present is a no-op (already applied).
- Updated / Deleted for an unknown id is a no-op. On a filtered collection
  an Updated row that now matches the filters enters the collection, unless
  the id was deleted here (tombstoned).
- Updated rows that no longer match the filters leave the collection.

Writes return MutationResult and never raise. A confirmed write is applied
locally when it resolves, unless a stream event for the same id was applied
while the call was in flight (the stream wins) or the collection was
re-fetched or closed in the meantime.
"""
import asyncio
import contextlib
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from realtime_table.backends.base import TableBackend
from realtime_table.cdc.change_feed import Subscription
from realtime_table.cdc.models import ChangeEvent, Inserted, Updated, Deleted
from realtime_table.config import RealtimeTableConfig, get_config
from realtime_table.errors import RealtimeTableError, SubscriptionLostError, classify_error
from realtime_table.types.mutation_result import MutationResult
from realtime_table.types.query_descriptor import QueryDescriptor
from realtime_table.types.records import validate_payload

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]

TOMBSTONE_LIMIT = 1000


class TableCollection:
    """Subscribed collection handle for one table and query descriptor"""

    def __init__(self, backend: TableBackend, table: str,
                 descriptor: Optional[QueryDescriptor] = None,
                 config: Optional[RealtimeTableConfig] = None,
                 on_close: Optional[Callable[["TableCollection"], None]] = None):
        self.backend = backend
        self.table = table
        self.descriptor = descriptor or QueryDescriptor()
        self.config = config or get_config()
        self._on_close = on_close

        self.loading = True
        self.error: Optional[str] = None
        self.stale = False

        self._rows: List[Dict[str, Any]] = []
        self._closed = False
        self._opened = False
        self._subscription: Optional[Subscription] = None
        self._listener: Optional[asyncio.Task] = None

        # Bumped on every snapshot install; in-flight writes started in an
        # older epoch are not applied locally.
        self._epoch = 0
        # Ids touched by stream events, one set per write in flight
        self._watches: List[Set[Any]] = []
        # Ids removed here since the last snapshot, oldest first
        self._tombstones: "OrderedDict[Any, None]" = OrderedDict()
        self._callbacks: List[Listener] = []

    # -- state ----------------------------------------------------------------

    @property
    def data(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._rows]

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> Dict[str, Any]:
        return {"data": self.data, "loading": self.loading, "error": self.error, "stale": self.stale}

    def get(self, row_id: Any) -> Optional[Dict[str, Any]]:
        idx = self._index_of(row_id)
        return dict(self._rows[idx]) if idx is not None else None

    def __len__(self) -> int:
        return len(self._rows)

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Call `callback(snapshot)` after every state change. Returns a remover."""
        self._callbacks.append(callback)

        def remove():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def _notify(self):
        if not self._callbacks:
            return
        state = self.snapshot()
        for callback in list(self._callbacks):
            try:
                callback(state)
            except Exception:
                logger.exception("Listener for %s failed", self.table)

    # -- lifecycle ------------------------------------------------------------

    async def open(self) -> "TableCollection":
        self._opened = True
        await self.refetch()
        return self

    async def refetch(self):
        """Full resynchronization: new subscription, then a full fetch.

        Also the retry for a failed initial fetch or an exhausted reconnect.
        """
        if self._closed:
            return
        self._opened = True
        self._epoch += 1
        epoch = self._epoch
        await self._stop_listener()

        self.loading = True
        self.error = None
        self._notify()

        try:
            subscription, rows = await self._connect()
        except Exception as e:
            if self._closed or epoch != self._epoch:
                return
            err = classify_error(e)
            logger.warning("Initial fetch of %s failed: %s", self.table, err)
            self._rows = []
            self.loading = False
            self.stale = False
            self.error = str(err)
            self._notify()
            return

        if self._closed or epoch != self._epoch:
            subscription.unsubscribe()
            return

        self._subscription = subscription
        self._install_snapshot(rows)
        self.loading = False
        self.error = None
        self.stale = False
        self._listener = asyncio.create_task(self._listen(subscription))
        logger.debug("Opened %s (%s) with %d rows", self.table, self.descriptor.describe(), len(self._rows))
        self._notify()

    async def _connect(self) -> Tuple[Subscription, List[Dict[str, Any]]]:
        # Subscribe before fetching: events racing the fetch queue up on the
        # subscription and are applied on top of the snapshot.
        subscription = await asyncio.wait_for(
            self.backend.subscribe(self.table, self.descriptor), timeout=self.config.fetch_timeout)
        try:
            rows = await asyncio.wait_for(
                self.backend.select(self.table, self.descriptor), timeout=self.config.fetch_timeout)
        except BaseException:
            subscription.unsubscribe()
            raise
        return subscription, rows

    def _install_snapshot(self, rows: List[Dict[str, Any]]):
        self._epoch += 1
        self._tombstones.clear()
        projected = [self.descriptor.project(r) for r in rows if r.get("id") is not None]
        self._rows = self.descriptor.sort_rows(projected)

    async def close(self):
        """Release the change stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._stop_listener()
        self._callbacks.clear()
        if self._on_close is not None:
            self._on_close(self)
        logger.debug("Closed collection on %s", self.table)

    async def _stop_listener(self):
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.unsubscribe()
        task, self._listener = self._listener, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> "TableCollection":
        if not self._opened:
            await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -- change stream ----------------------------------------------------------

    async def _listen(self, subscription: Subscription):
        while subscription is not None:
            try:
                async for event in subscription:
                    if self._closed:
                        return
                    try:
                        changed = self._apply(event)
                    except Exception as e:
                        logger.exception("Could not apply %s on %s", type(event).__name__, self.table)
                        raise SubscriptionLostError(f"unapplicable change event: {e}", table=self.table) from e
                    if changed:
                        self._notify()
                if self._closed or subscription is not self._subscription:
                    return
                raise SubscriptionLostError("change stream ended", table=self.table)
            except SubscriptionLostError as e:
                if self._closed:
                    return
                subscription = await self._recover(e)

    async def _recover(self, exc: SubscriptionLostError) -> Optional[Subscription]:
        """Reconnect with backoff; each attempt re-subscribes and re-fetches."""
        logger.warning("Change stream for %s lost: %s", self.table, exc.message)
        lost, self._subscription = self._subscription, None
        if lost is not None:
            lost.unsubscribe()
        self.stale = True
        self._notify()

        attempts = self.config.reconnect_max_attempts
        last_error: RealtimeTableError = exc
        for attempt in range(attempts):
            delay = self.config.reconnect_backoff * (2 ** attempt)
            if delay:
                await asyncio.sleep(delay)
            if self._closed:
                return None
            try:
                subscription, rows = await self._connect()
            except Exception as e:
                last_error = classify_error(e)
                logger.warning("Reconnect %d/%d for %s failed: %s", attempt + 1, attempts, self.table, last_error)
                continue
            if self._closed:
                subscription.unsubscribe()
                return None
            self._subscription = subscription
            self._install_snapshot(rows)
            self.stale = False
            self.error = None
            logger.info("Change stream for %s restored after %d attempt(s)", self.table, attempt + 1)
            self._notify()
            return subscription

        self.stale = True
        self.error = str(SubscriptionLostError(
            f"could not reconnect after {attempts} attempt(s): {last_error.message}", table=self.table))
        logger.warning("Giving up on change stream for %s; data may be stale", self.table)
        self._notify()
        return None

    def _apply(self, event: ChangeEvent) -> bool:
        """Apply one change event; returns whether the collection changed."""
        row_id = event.row_id
        for seen in self._watches:
            seen.add(row_id)

        if isinstance(event, Inserted):
            if row_id in self._tombstones or self._index_of(row_id) is not None:
                return False
            if not self.descriptor.matches(event.row):
                return False
            self._insert_row(event.row)
            return True

        if isinstance(event, Updated):
            return self._merge_row(event.row)

        if isinstance(event, Deleted):
            return self._remove_row(row_id)

        return False

    # -- row bookkeeping --------------------------------------------------------

    def _index_of(self, row_id: Any) -> Optional[int]:
        for idx, row in enumerate(self._rows):
            if row.get("id") == row_id:
                return idx
        return None

    def _insert_row(self, row: Dict[str, Any]):
        self._rows.append(self.descriptor.project(row))
        self.descriptor.sort_rows(self._rows)
        if self.descriptor.limit and len(self._rows) > self.descriptor.limit:
            del self._rows[self.descriptor.limit:]

    def _merge_row(self, row: Dict[str, Any]) -> bool:
        row_id = row.get("id")
        idx = self._index_of(row_id)
        if idx is None:
            if row_id in self._tombstones:
                return False
            if self.descriptor.filters and self.descriptor.matches(row):
                self._insert_row(row)
                return True
            return False
        if not self.descriptor.matches(row):
            del self._rows[idx]
            return True
        self._rows[idx] = self.descriptor.project(row)
        self.descriptor.sort_rows(self._rows)
        return True

    def _remove_row(self, row_id: Any) -> bool:
        idx = self._index_of(row_id)
        if idx is None:
            return False
        del self._rows[idx]
        self._tombstones[row_id] = None
        self._tombstones.move_to_end(row_id)
        while len(self._tombstones) > TOMBSTONE_LIMIT:
            self._tombstones.popitem(last=False)
        return True

    @contextlib.contextmanager
    def _watch(self) -> Iterator[Set[Any]]:
        """Collect the ids of stream events applied while a write is in flight."""
        seen: Set[Any] = set()
        self._watches.append(seen)
        try:
            yield seen
        finally:
            self._watches = [s for s in self._watches if s is not seen]

    def _accepts_result(self, epoch: int) -> bool:
        # A confirmed write only lands on the snapshot it was issued against,
        # and only while that snapshot is being kept live
        return not self._closed and epoch == self._epoch and self._subscription is not None

    # -- mutations ----------------------------------------------------------------

    async def insert(self, values: Dict[str, Any]) -> MutationResult:
        """Create a row; the committed row is added at its order-by position."""
        if self._closed:
            return MutationResult.failure(RealtimeTableError("collection is closed", table=self.table))
        epoch = self._epoch
        with self._watch() as seen:
            try:
                payload = validate_payload(self.table, values)
                row = await asyncio.wait_for(self.backend.insert(self.table, payload),
                                             timeout=self.config.mutation_timeout)
            except Exception as e:
                logger.warning("Insert into %s failed: %s", self.table, classify_error(e))
                return MutationResult.failure(e)

        row_id = row.get("id")
        if row_id is None:
            return MutationResult.success(row)
        if (self._accepts_result(epoch) and row_id not in seen
                and self._index_of(row_id) is None and row_id not in self._tombstones
                and self.descriptor.matches(row)):
            self._insert_row(row)
            self._notify()
        return MutationResult.success(self.descriptor.project(row))

    async def update(self, row_id: Any, values: Dict[str, Any]) -> MutationResult:
        """Change only the given fields of a row."""
        if self._closed:
            return MutationResult.failure(RealtimeTableError("collection is closed", table=self.table))
        epoch = self._epoch
        with self._watch() as seen:
            try:
                payload = validate_payload(self.table, values, partial=True, row_id=row_id)
                row = await asyncio.wait_for(self.backend.update(self.table, row_id, payload),
                                             timeout=self.config.mutation_timeout)
            except Exception as e:
                logger.warning("Update of %s/%s failed: %s", self.table, row_id, classify_error(e))
                return MutationResult.failure(e)

        # The stream is authoritative for rows it touched during the call
        if self._accepts_result(epoch) and row.get("id") not in seen and self._merge_row(row):
            self._notify()
        return MutationResult.success(self.descriptor.project(row))

    async def remove(self, row_id: Any) -> MutationResult:
        """Delete a row."""
        if self._closed:
            return MutationResult.failure(RealtimeTableError("collection is closed", table=self.table))
        epoch = self._epoch
        try:
            await asyncio.wait_for(self.backend.delete(self.table, row_id),
                                   timeout=self.config.mutation_timeout)
        except Exception as e:
            logger.warning("Delete of %s/%s failed: %s", self.table, row_id, classify_error(e))
            return MutationResult.failure(e)

        if self._accepts_result(epoch) and self._remove_row(row_id):
            self._notify()
        return MutationResult.success(None)
