"""
Database helpers

MongoDB access for the storefront. Collections are addressed by name
("product", "order", "review", "user", "account", "favorite") and every
document is returned with its ``_id`` stringified into ``id``.

Writes issued through these helpers re-deliver the affected collection to its
local subscribers right away; changes made by other processes reach them
through the background watcher of each subscription.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import BSONError
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

import settings

logger = logging.getLogger(__name__)

# Unauthorized, AuthenticationFailed
PERMISSION_CODES = {13, 18}

# encoding failures (e.g. ints wider than 8 bytes) surface outside PyMongoError
DRIVER_ERRORS = (PyMongoError, BSONError, OverflowError)


class StoreError(Exception):
    """A failed store call, categorised for the user-facing message."""

    PERMISSION_DENIED = "permission-denied"
    UNAVAILABLE = "unavailable"
    RESOURCE_EXHAUSTED = "resource-exhausted"
    UNKNOWN = "unknown"

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def classify_error(exc: Exception) -> StoreError:
    message = str(exc)
    if isinstance(exc, ConnectionFailure):
        return StoreError(StoreError.UNAVAILABLE, message)
    if isinstance(exc, OperationFailure):
        if exc.code in PERMISSION_CODES:
            return StoreError(StoreError.PERMISSION_DENIED, message)
        if "quota" in message.lower():
            return StoreError(StoreError.RESOURCE_EXHAUSTED, message)
    return StoreError(StoreError.UNKNOWN, message)


def utc_now_iso(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string, accepting the JavaScript-style "Z" suffix."""
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    if value[-1] in "zZ":
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def connect():
    if not settings.backend_configured():
        logger.warning(settings.NO_BACKEND_WARNING)
        return None
    client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000)
    return client[settings.DATABASE_NAME]


db = connect()


def _collection(collection_name: str):
    if db is None:
        raise StoreError(StoreError.UNAVAILABLE, "Database not available")
    return db[collection_name]


def _doc_key(doc_id: str) -> Union[ObjectId, str]:
    # profiles are keyed by auth uid, everything else by ObjectId
    return ObjectId(doc_id) if ObjectId.is_valid(doc_id) else doc_id


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(collection_name: str, data: Union[BaseModel, dict], doc_id: Optional[str] = None) -> str:
    """Insert a document and return its id as a string."""
    data_dict = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    data_dict.pop("id", None)
    now = utc_now_iso()
    if not data_dict.get("created_at"):
        data_dict["created_at"] = now
    data_dict["updated_at"] = now
    if doc_id is not None:
        data_dict["_id"] = _doc_key(doc_id)
    try:
        result = _collection(collection_name).insert_one(data_dict)
    except DRIVER_ERRORS as exc:
        raise classify_error(exc) from exc
    notify(collection_name)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> List[dict]:
    try:
        cursor = _collection(collection_name).find(filter_dict or {})
        if limit:
            cursor = cursor.limit(limit)
        return [serialize(doc) for doc in cursor]
    except DRIVER_ERRORS as exc:
        raise classify_error(exc) from exc


def get_document(collection_name: str, doc_id: str) -> Optional[dict]:
    try:
        return serialize(_collection(collection_name).find_one({"_id": _doc_key(doc_id)}))
    except DRIVER_ERRORS as exc:
        raise classify_error(exc) from exc


def update_document(collection_name: str, doc_id: str, fields: Dict[str, Any]) -> bool:
    """$set the given fields; returns False when no document matched."""
    fields = {k: v for k, v in fields.items() if k not in ("id", "_id")}
    fields["updated_at"] = utc_now_iso()
    try:
        result = _collection(collection_name).update_one({"_id": _doc_key(doc_id)}, {"$set": fields})
    except DRIVER_ERRORS as exc:
        raise classify_error(exc) from exc
    notify(collection_name)
    return result.matched_count > 0


def delete_document(collection_name: str, doc_id: str) -> bool:
    try:
        result = _collection(collection_name).delete_one({"_id": _doc_key(doc_id)})
    except DRIVER_ERRORS as exc:
        raise classify_error(exc) from exc
    notify(collection_name)
    return result.deleted_count == 1


def delete_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
    try:
        result = _collection(collection_name).delete_many(filter_dict or {})
    except DRIVER_ERRORS as exc:
        raise classify_error(exc) from exc
    notify(collection_name)
    return result.deleted_count


# ---------- Live subscriptions ----------

_subscriptions: Dict[str, List["Subscription"]] = {}
_registry_lock = threading.Lock()


def notify(collection_name: str) -> None:
    """Re-deliver a collection to every local subscriber."""
    with _registry_lock:
        subscribers = list(_subscriptions.get(collection_name, []))
    for subscription in subscribers:
        subscription.deliver()


class Subscription:
    """
    Live query over a single collection.

    ``on_data`` always receives the full matching document set. Deliveries
    for one subscription are serialized; nothing is ordered across
    collections.
    """

    def __init__(self, collection_name: str, query: Optional[Dict[str, Any]],
                 on_data: Callable[[List[dict]], None],
                 on_error: Optional[Callable[[StoreError], None]] = None,
                 poll_interval: Optional[float] = None):
        self.collection_name = collection_name
        self.query = dict(query or {})
        self.on_data = on_data
        self.on_error = on_error
        self.poll_interval = settings.SUBSCRIPTION_POLL_SECONDS if poll_interval is None else poll_interval
        self._stopped = threading.Event()
        self._lock = threading.RLock()
        self._last: Optional[List[dict]] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()

    def start(self) -> Callable[[], None]:
        with _registry_lock:
            _subscriptions.setdefault(self.collection_name, []).append(self)
        self.deliver()
        if self.poll_interval > 0 and db is not None:
            self._thread = threading.Thread(
                target=self._watch, name=f"subscription-{self.collection_name}", daemon=True
            )
            self._thread.start()
        return self.cancel

    def cancel(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        with _registry_lock:
            subscribers = _subscriptions.get(self.collection_name, [])
            if self in subscribers:
                subscribers.remove(self)

    def deliver(self, only_changes: bool = False) -> None:
        with self._lock:
            if self._stopped.is_set():
                return
            try:
                docs = get_documents(self.collection_name, self.query)
            except StoreError as exc:
                logger.warning("Subscription to %s failed: %s", self.collection_name, exc.message)
                if self.on_error is not None:
                    self.on_error(exc)
                return
            if only_changes and docs == self._last:
                return
            self._last = docs
            self.on_data(docs)

    def _watch(self) -> None:
        try:
            with _collection(self.collection_name).watch(
                max_await_time_ms=int(self.poll_interval * 1000)
            ) as stream:
                while stream.alive and not self._stopped.is_set():
                    if stream.try_next() is not None:
                        self.deliver()
        except (PyMongoError, StoreError) as exc:
            if self._stopped.is_set():
                return
            logger.info("Change stream unavailable for %s (%s), polling every %ss",
                        self.collection_name, exc, self.poll_interval)
        while not self._stopped.wait(self.poll_interval):
            self.deliver(only_changes=True)


def subscribe(collection_name: str, query: Optional[Dict[str, Any]],
              on_data: Callable[[List[dict]], None],
              on_error: Optional[Callable[[StoreError], None]] = None) -> Callable[[], None]:
    """Start a live query and return the function that tears it down."""
    return Subscription(collection_name, query, on_data, on_error).start()
