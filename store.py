"""
Document store contract and the in-process implementation.

A store holds collections of documents addressed by a collection path
("restaurants" or "restaurants/{id}/ratings") and a document id. Documents come
back as plain dicts carrying their id under "id".

MemoryDocumentStore gives the same transactional guarantees as the MongoDB
store: reads inside a transaction record the version they saw, the commit
re-checks those versions under a lock, and a mismatch retries the whole
transaction function.
"""
import abc
import copy
import logging
import queue
import random
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import config
from errors import NotFound, TransientStoreFailure
from queries import QueryDescription

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


# Placeholder value replaced with the commit time when a write is applied
SERVER_TIMESTAMP = _ServerTimestamp()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_server_values(data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in data.items()}


def backoff_delay(attempt: int, base: float) -> float:
    """Exponential backoff with jitter for the given 1-based attempt."""
    if base <= 0:
        return 0.0
    return base * (2 ** (attempt - 1)) + random.uniform(0, base)


class TransactionConflict(Exception):
    """A document read by the transaction changed before it could commit."""


_CANCELLED = object()


class Subscription:
    """
    Handle on a live query.

    Iterating yields result snapshots (lists of documents) as they change and
    ends once cancel() is called. Cancelling only releases the subscription;
    store state and other subscriptions are unaffected.
    """

    def __init__(self, description: QueryDescription,
                 on_cancel: Optional[Callable[["Subscription"], None]] = None):
        self.description = description
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._cancelled = threading.Event()
        # push and cancel hold this so nothing lands behind the end marker
        self._state_lock = threading.Lock()
        self._on_cancel = on_cancel

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def push(self, snapshot: List[Dict[str, Any]]):
        with self._state_lock:
            if not self.cancelled:
                self._queue.put(snapshot)

    def poll(self, timeout: Optional[float] = None) -> Optional[List[Dict[str, Any]]]:
        """Next snapshot, or None on timeout or after cancellation."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CANCELLED:
            self._queue.put(_CANCELLED)
            return None
        return item

    def __iter__(self):
        while True:
            item = self._queue.get()
            if item is _CANCELLED:
                self._queue.put(_CANCELLED)
                return
            yield item

    def cancel(self):
        with self._state_lock:
            if self.cancelled:
                return
            self._cancelled.set()
            # drop undelivered snapshots
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
            self._queue.put(_CANCELLED)
        if self._on_cancel is not None:
            self._on_cancel(self)


class Transaction(abc.ABC):
    """Reads and buffered writes scoped to one transaction attempt."""

    @abc.abstractmethod
    def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    def set(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        ...


class DocumentStore(abc.ABC):

    @abc.abstractmethod
    def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    def fetch(self, description: QueryDescription) -> List[Dict[str, Any]]:
        """Run a query once."""

    @abc.abstractmethod
    def query(self, description: QueryDescription) -> Subscription:
        """Subscribe to a live query. The first snapshot is delivered right away."""

    @abc.abstractmethod
    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        ...

    @abc.abstractmethod
    def new_document_id(self, collection: str) -> str:
        ...

    @abc.abstractmethod
    def add(self, collection: str, data: Dict[str, Any]) -> str:
        ...

    @abc.abstractmethod
    def list_collections(self) -> List[str]:
        ...


class _Record:
    __slots__ = ("data", "version")

    def __init__(self, data: Dict[str, Any], version: int):
        self.data = data
        self.version = version


def _as_document(document_id: str, record: _Record) -> Dict[str, Any]:
    doc = copy.deepcopy(record.data)
    doc["id"] = document_id
    return doc


class MemoryTransaction(Transaction):

    def __init__(self, store: "MemoryDocumentStore"):
        self._store = store
        self.reads: Dict[Tuple[str, str], Optional[int]] = {}
        self.writes: List[Tuple[str, str, str, Dict[str, Any]]] = []

    def get(self, collection, document_id):
        if self.writes:
            raise RuntimeError("Transactions require all reads before any writes")
        with self._store._lock:
            record = self._store._collection(collection).get(document_id)
            self.reads[(collection, document_id)] = record.version if record else None
            return _as_document(document_id, record) if record else None

    def set(self, collection, document_id, data):
        self.writes.append(("set", collection, document_id, dict(data)))

    def update(self, collection, document_id, fields):
        self.writes.append(("update", collection, document_id, dict(fields)))


class MemoryDocumentStore(DocumentStore):
    """Thread-safe in-process store with optimistic transactions and live queries."""

    def __init__(self, max_attempts: int = None, backoff: float = None):
        self.max_attempts = config.TRANSACTION_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.backoff = config.TRANSACTION_BACKOFF_SECONDS if backoff is None else backoff
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, _Record]] = {}
        self._version = 0
        self._last_commit_time = None
        self._subscriptions: List[Subscription] = []
        self._last_snapshots: Dict[int, List[Dict[str, Any]]] = {}

    def _collection(self, collection: str) -> Dict[str, _Record]:
        return self._data.setdefault(collection, {})

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _commit_time(self) -> datetime:
        # strictly increasing so timestamp ordering follows commit order
        now = utcnow()
        if self._last_commit_time is not None and now <= self._last_commit_time:
            now = self._last_commit_time + timedelta(microseconds=1)
        self._last_commit_time = now
        return now

    def get(self, collection, document_id):
        with self._lock:
            record = self._collection(collection).get(document_id)
            return _as_document(document_id, record) if record else None

    def fetch(self, description):
        with self._lock:
            docs = [_as_document(doc_id, rec)
                    for doc_id, rec in self._collection(description.collection).items()]
        return description.apply(docs)

    def query(self, description):
        sub = Subscription(description, on_cancel=self._unsubscribe)
        with self._lock:
            snapshot = self.fetch(description)
            self._subscriptions.append(sub)
            self._last_snapshots[id(sub)] = snapshot
            sub.push(snapshot)
        return sub

    def _unsubscribe(self, sub: Subscription):
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
            self._last_snapshots.pop(id(sub), None)

    def _notify(self, collections):
        # caller holds the lock
        for sub in list(self._subscriptions):
            if sub.description.collection not in collections:
                continue
            snapshot = self.fetch(sub.description)
            if snapshot != self._last_snapshots.get(id(sub)):
                self._last_snapshots[id(sub)] = snapshot
                sub.push(snapshot)

    def new_document_id(self, collection):
        return uuid.uuid4().hex[:20]

    def add(self, collection, data):
        document_id = self.new_document_id(collection)
        with self._lock:
            data = resolve_server_values(data, self._commit_time())
            self._collection(collection)[document_id] = _Record(dict(data), self._next_version())
            self._notify({collection})
        return document_id

    def list_collections(self):
        with self._lock:
            return [name for name, docs in self._data.items() if docs]

    def _commit(self, txn: MemoryTransaction):
        with self._lock:
            for (collection, document_id), seen in txn.reads.items():
                record = self._collection(collection).get(document_id)
                current = record.version if record else None
                if current != seen:
                    raise TransactionConflict(f"{collection}/{document_id} changed since read")

            now = self._commit_time()
            staged = {}
            for op, collection, document_id, data in txn.writes:
                key = (collection, document_id)
                if key in staged:
                    base = staged[key]
                else:
                    record = self._collection(collection).get(document_id)
                    base = dict(record.data) if record else None
                data = resolve_server_values(data, now)
                if op == "update":
                    if base is None:
                        raise NotFound(f"No document to update at {collection}/{document_id}")
                    base.update(data)
                    staged[key] = base
                else:
                    staged[key] = data

            for (collection, document_id), data in staged.items():
                self._collection(collection)[document_id] = _Record(data, self._next_version())
            self._notify({collection for collection, _ in staged})

    def run_transaction(self, fn):
        for attempt in range(1, self.max_attempts + 1):
            txn = MemoryTransaction(self)
            result = fn(txn)
            try:
                self._commit(txn)
                return result
            except TransactionConflict as exc:
                logger.debug(f"Transaction attempt {attempt} conflicted: {exc}")
                if attempt < self.max_attempts:
                    time.sleep(backoff_delay(attempt, self.backoff))
        logger.warning(f"Transaction gave up after {self.max_attempts} attempts")
        raise TransientStoreFailure(
            f"Transaction failed after {self.max_attempts} attempts due to contention",
            hint="Safe to resubmit")
