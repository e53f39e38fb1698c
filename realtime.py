import logging
import re
import secrets
import threading
import time
from typing import Any, Callable, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from database import ExpenseNode

logger = logging.getLogger(__name__)

PATH_PATTERN = re.compile(r"^users/(?P<uid>[^/]+)/expenses(?:/(?P<key>[^/]+))?$")


class DatabaseError(Exception):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNAVAILABLE = "UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


def expenses_path(uid: str, key: Optional[str] = None) -> str:
    path = f"users/{uid}/expenses"
    return f"{path}/{key}" if key else path


def generate_push_id() -> str:
    """Opaque child key; keys generated later sort after earlier ones."""
    return f"{time.time_ns():016x}{secrets.token_hex(4)}"


class Subscription:
    def __init__(self, database, collection, on_snapshot, on_error):
        self._database = database
        self.collection = collection
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True

    def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        if self._database is not None:
            self._database._detach(self)


class RealtimeDatabase:
    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._lock = threading.RLock()
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._delivery_locks: dict[str, threading.RLock] = {}

    def _resolve(self, path: str, auth_uid: Optional[str]):
        match = PATH_PATTERN.match(path)
        if not match:
            raise DatabaseError(DatabaseError.UNKNOWN, f"Invalid path: {path}")
        if not auth_uid or match.group("uid") != auth_uid:
            raise DatabaseError(DatabaseError.PERMISSION_DENIED, "Permission denied")
        return expenses_path(match.group("uid")), match.group("key")

    def _run(self, operation: Callable):
        try:
            with self._session_factory() as db:
                result = operation(db)
                db.commit()
                return result
        except OperationalError as exc:
            raise DatabaseError(DatabaseError.UNAVAILABLE, str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise DatabaseError(DatabaseError.UNKNOWN, str(exc)) from exc

    def _read(self, collection: str) -> Optional[dict[str, Any]]:
        def query(db):
            nodes = (
                db.query(ExpenseNode)
                .filter(ExpenseNode.collection == collection)
                .order_by(ExpenseNode.key)
                .all()
            )
            return {node.key: node.payload for node in nodes}

        return self._run(query) or None

    def get(self, path: str, auth_uid: Optional[str]):
        collection, key = self._resolve(path, auth_uid)
        snapshot = self._read(collection) or {}
        if key is None:
            return snapshot or None
        return snapshot.get(key)

    def push(self, path: str, record: dict, auth_uid: Optional[str]) -> str:
        collection, key = self._resolve(path, auth_uid)
        if key is not None:
            raise DatabaseError(DatabaseError.UNKNOWN, f"Cannot push to child {path}")
        key = generate_push_id()
        self._run(
            lambda db: db.add(
                ExpenseNode(collection=collection, key=key, payload=dict(record))
            )
        )
        self._notify(collection)
        return key

    def set(self, path: str, value: Any, auth_uid: Optional[str]):
        """Write `value` as-is at a child path. Setting None removes the child."""
        collection, key = self._resolve(path, auth_uid)
        if key is None:
            raise DatabaseError(DatabaseError.UNKNOWN, f"Cannot set collection {path}")
        if value is None:
            self.remove(path, auth_uid)
            return

        def write(db):
            node = (
                db.query(ExpenseNode)
                .filter(ExpenseNode.collection == collection, ExpenseNode.key == key)
                .first()
            )
            if node:
                node.payload = value
            else:
                db.add(ExpenseNode(collection=collection, key=key, payload=value))

        self._run(write)
        self._notify(collection)

    def remove(self, path: str, auth_uid: Optional[str]) -> bool:
        collection, key = self._resolve(path, auth_uid)

        def delete(db):
            query = db.query(ExpenseNode).filter(ExpenseNode.collection == collection)
            if key is not None:
                query = query.filter(ExpenseNode.key == key)
            return query.delete(synchronize_session=False)

        removed = self._run(delete)
        if removed:
            self._notify(collection)
        return bool(removed)

    def subscribe(
        self,
        path: str,
        on_snapshot: Callable[[Optional[dict]], None],
        on_error: Callable[[DatabaseError], None],
        auth_uid: Optional[str],
    ) -> Subscription:
        """
        Listen to a collection. `on_snapshot` receives the whole collection
        (None when empty) right away and after every change to it.
        """
        try:
            collection, key = self._resolve(path, auth_uid)
            if key is not None:
                raise DatabaseError(
                    DatabaseError.UNKNOWN, f"Cannot subscribe to child {path}"
                )
        except DatabaseError as exc:
            subscription = Subscription(None, path, on_snapshot, on_error)
            self._dispatch(subscription, on_error, exc)
            return subscription

        subscription = Subscription(self, collection, on_snapshot, on_error)
        with self._lock:
            self._subscriptions.setdefault(collection, []).append(subscription)
        self._deliver([subscription], collection)
        return subscription

    def _detach(self, subscription: Subscription):
        with self._lock:
            listeners = self._subscriptions.get(subscription.collection, [])
            if subscription in listeners:
                listeners.remove(subscription)
            if not listeners:
                self._subscriptions.pop(subscription.collection, None)

    def subscriber_count(self, path: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(path, []))

    def _delivery_lock(self, collection: str) -> threading.RLock:
        with self._lock:
            return self._delivery_locks.setdefault(collection, threading.RLock())

    def _notify(self, collection: str):
        with self._lock:
            listeners = list(self._subscriptions.get(collection, []))
        if listeners:
            self._deliver(listeners, collection)

    def _deliver(self, listeners: list[Subscription], collection: str):
        # snapshots for one collection are read and handed out one at a time
        with self._delivery_lock(collection):
            try:
                snapshot = self._read(collection)
            except DatabaseError as exc:
                logger.error("Failed to read %s: %s", collection, exc)
                for subscription in listeners:
                    self._dispatch(subscription, subscription.on_error, exc)
                return
            for subscription in listeners:
                self._dispatch(subscription, subscription.on_snapshot, snapshot)

    def _dispatch(self, subscription: Subscription, callback: Callable, value):
        if not subscription.active:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Listener on %s failed", subscription.collection)
