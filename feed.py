import asyncio
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from errors import ProcessingError, classify_database_error
from realtime import DatabaseError, RealtimeDatabase, expenses_path
from schemas import ExpenseRecord, FeedState, is_valid_epoch_ms, now_ms

logger = logging.getLogger(__name__)

PROCESSING_FAILED = "Failed to process expense data"


class FeedStatus(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SYNCED = "synced"
    ERROR = "error"


@dataclass
class SnapshotResult:
    expenses: list[ExpenseRecord] = field(default_factory=list)
    error: Optional[ProcessingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _to_amount(value) -> float:
    if value is None or isinstance(value, (dict, list)):
        return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(amount) else amount


def _text(value) -> str:
    return str(value) if value else ""


def normalize_entry(key: str, raw: dict[str, Any]) -> ExpenseRecord:
    if is_valid_epoch_ms(raw.get("date")):
        expense_date = int(raw["date"])
    elif is_valid_epoch_ms(raw.get("createdAt")):
        expense_date = int(raw["createdAt"])
    else:
        expense_date = now_ms()

    created_at = raw.get("createdAt")
    return ExpenseRecord(
        id=key,
        description=_text(raw.get("description")),
        amount=_to_amount(raw.get("amount")),
        date=expense_date,
        created_at=int(created_at) if is_valid_epoch_ms(created_at) else expense_date,
        note=_text(raw.get("note")),
        user_id=_text(raw.get("userId")),
    )


def decode_snapshot(snapshot: Optional[Any]) -> SnapshotResult:
    """Turn a raw collection snapshot into records sorted newest first."""
    if snapshot is None:
        return SnapshotResult()
    if not isinstance(snapshot, dict):
        return SnapshotResult(error=ProcessingError(PROCESSING_FAILED))

    expenses = []
    for key, raw in snapshot.items():
        if not isinstance(raw, dict):
            logger.warning("Expense %s is not an object: %r", key, raw)
            return SnapshotResult(error=ProcessingError(PROCESSING_FAILED))
        expenses.append(normalize_entry(str(key), raw))

    expenses.sort(key=lambda expense: expense.date, reverse=True)
    return SnapshotResult(expenses=expenses)


class ExpenseFeed:
    def __init__(self, database: RealtimeDatabase):
        self._database = database
        self._lock = threading.RLock()
        self._subscription = None
        self._watchers: list[Callable[[FeedState], None]] = []
        self._close_callbacks: list[Callable[[], None]] = []
        self._closed = False
        self.user_id: Optional[str] = None
        self.status = FeedStatus.UNSUBSCRIBED
        self.expenses: list[ExpenseRecord] = []
        self.loading = True
        self.error: Optional[str] = None
        self.last_sync_time: Optional[datetime] = None

    def state(self) -> FeedState:
        with self._lock:
            return FeedState(
                status=self.status.value,
                expenses=list(self.expenses),
                loading=self.loading,
                error=self.error,
                last_sync_time=self.last_sync_time,
            )

    def watch(self, callback: Callable[[FeedState], None]) -> Callable[[], None]:
        """Call `callback` with the new state after every change. Returns the unwatch handle."""
        with self._lock:
            self._watchers.append(callback)

        def unwatch():
            with self._lock:
                if callback in self._watchers:
                    self._watchers.remove(callback)

        return unwatch

    def set_user(self, user_id: Optional[str]):
        with self._lock:
            if self._closed:
                raise RuntimeError("Feed is closed")
            if user_id == self.user_id and self.status != FeedStatus.UNSUBSCRIBED:
                return
            self._teardown()
            self.user_id = user_id

            if not user_id:
                logger.info("No user is logged in")
                self.status = FeedStatus.UNSUBSCRIBED
                self.loading = False
                self.expenses = []
                self._publish()
                return

            self.status = FeedStatus.SUBSCRIBING
            self.loading = True
            self.error = None
            self._publish()

            logger.info(
                "Setting up real-time expense subscription for user: %s", user_id
            )
            # the first snapshot arrives inside subscribe(), before the handle is returned
            subscription = _PendingSubscription()
            self._subscription = subscription

        # subscribe without holding the feed lock: the store delivers under its own lock
        subscription.attach(
            self._database.subscribe(
                expenses_path(user_id),
                lambda snapshot: self._on_snapshot(subscription, snapshot),
                lambda error: self._on_error(subscription, error),
                auth_uid=user_id,
            )
        )

    def on_close(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Call `callback` once when the feed is closed. Returns the cancel handle."""
        with self._lock:
            if self._closed:
                callback()
                return lambda: None
            self._close_callbacks.append(callback)

        def cancel():
            with self._lock:
                if callback in self._close_callbacks:
                    self._close_callbacks.remove(callback)

        return cancel

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._teardown()
            self._closed = True
            self.status = FeedStatus.UNSUBSCRIBED
            self.loading = False
            self._watchers.clear()
            callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()

    def _teardown(self):
        if self._subscription is not None:
            logger.info("Cleaning up expense subscription")
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_snapshot(self, subscription, snapshot):
        with self._lock:
            if self._closed or subscription is not self._subscription:
                return
            logger.info("Received real-time update")
            result = decode_snapshot(snapshot)
            if result.ok:
                logger.info("Processed %d expenses", len(result.expenses))
                self.expenses = result.expenses
                self.last_sync_time = datetime.now()
                self.error = None
                self.status = FeedStatus.SYNCED
            else:
                logger.error("Error processing expenses: %s", result.error.message)
                self.error = result.error.message
                self.status = FeedStatus.ERROR
            self.loading = False
            self._publish()

    def _on_error(self, subscription, error: DatabaseError):
        with self._lock:
            if self._closed or subscription is not self._subscription:
                return
            self.error = classify_database_error(error).message
            logger.error("Subscription error: %s", self.error)
            self.status = FeedStatus.ERROR
            self.loading = False
            self._publish()

    def _publish(self):
        state = self.state()
        for callback in list(self._watchers):
            callback(state)


class _PendingSubscription:
    """Stands in for the store's handle until subscribe() has returned."""

    def __init__(self):
        self._inner = None
        self._cancelled = False

    def attach(self, inner):
        self._inner = inner
        if self._cancelled:
            inner.unsubscribe()

    def unsubscribe(self):
        self._cancelled = True
        if self._inner is not None:
            self._inner.unsubscribe()


class FeedChannel:
    """Delivers feed states to a coroutine through an asyncio.Queue.

    get() returns None once the feed has been closed.
    """

    def __init__(self, feed: ExpenseFeed, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._unwatch = feed.watch(self._push)
        self._cancel_close = feed.on_close(lambda: self._push(None))

    def _push(self, state: Optional[FeedState]):
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, state)

    async def get(self) -> Optional[FeedState]:
        return await self._queue.get()

    def close(self):
        self._unwatch()
        self._cancel_close()


class FeedRegistry:
    """One live feed per signed-in user."""

    def __init__(self, database: RealtimeDatabase):
        self._database = database
        self._lock = threading.Lock()
        self._feeds: dict[str, ExpenseFeed] = {}

    def acquire(self, user_id: str) -> ExpenseFeed:
        with self._lock:
            feed = self._feeds.get(user_id)
            if feed is None:
                feed = ExpenseFeed(self._database)
                self._feeds[user_id] = feed
                feed.set_user(user_id)
            return feed

    def get(self, user_id: str) -> Optional[ExpenseFeed]:
        with self._lock:
            return self._feeds.get(user_id)

    def release(self, user_id: str):
        with self._lock:
            feed = self._feeds.pop(user_id, None)
        if feed is not None:
            feed.set_user(None)
            feed.close()

    def close_all(self):
        with self._lock:
            feeds = list(self._feeds.values())
            self._feeds.clear()
        for feed in feeds:
            feed.close()
