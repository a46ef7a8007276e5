"""
MongoDB document store and the process-wide store handle.

Collection paths map onto MongoDB like this:
    restaurants               -> collection "restaurants"
    restaurants/{id}/ratings  -> collection "ratings", scoped by _parent="restaurants/{id}"

Transactions and change streams need MongoDB running as a replica set.
"""
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import ConnectionFailure, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

import config
from errors import NotFound, TransientStoreFailure
from queries import QueryDescription
from store import (
    SERVER_TIMESTAMP,
    DocumentStore,
    MemoryDocumentStore,
    Subscription,
    Transaction,
    backoff_delay,
)

logger = logging.getLogger(__name__)

PARENT_FIELD = "_parent"


def transform(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc["id"] = str(doc.pop("_id"))
    doc.pop(PARENT_FIELD, None)
    return doc


def split_server_values(data: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, bool]]:
    """Separate plain values from fields the server should stamp with $currentDate."""
    values = {k: v for k, v in data.items() if v is not SERVER_TIMESTAMP}
    stamps = {k: True for k, v in data.items() if v is SERVER_TIMESTAMP}
    return values, stamps


def _is_transient(exc: PyMongoError) -> bool:
    return isinstance(exc, ConnectionFailure) or exc.has_error_label("TransientTransactionError")


def _outcome_unknown(exc: PyMongoError) -> bool:
    """A commit error after which the transaction may or may not have been applied."""
    if exc.has_error_label("UnknownTransactionCommitResult"):
        return True
    return isinstance(exc, ConnectionFailure) and not exc.has_error_label("TransientTransactionError")


class MongoTransaction(Transaction):

    def __init__(self, store: "MongoDocumentStore", session):
        self._store = store
        self._session = session

    def get(self, collection, document_id):
        coll, scope = self._store.target(collection)
        return transform(coll.find_one({"_id": document_id, **scope}, session=self._session))

    def set(self, collection, document_id, data):
        coll, scope = self._store.target(collection)
        values, stamps = split_server_values(data)
        coll.replace_one({"_id": document_id}, {**values, **scope},
                         upsert=True, session=self._session)
        if stamps:
            coll.update_one({"_id": document_id}, {"$currentDate": stamps},
                            session=self._session)

    def update(self, collection, document_id, fields):
        coll, scope = self._store.target(collection)
        values, stamps = split_server_values(fields)
        change: Dict[str, Any] = {"$set": values}
        if stamps:
            change["$currentDate"] = stamps
        result = coll.update_one({"_id": document_id, **scope}, change, session=self._session)
        if result.matched_count == 0:
            raise NotFound(f"No document to update at {collection}/{document_id}")


class MongoDocumentStore(DocumentStore):

    def __init__(self, client: MongoClient, db, max_attempts: int = None, backoff: float = None):
        self.client = client
        self.db = db
        self.max_attempts = config.TRANSACTION_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.backoff = config.TRANSACTION_BACKOFF_SECONDS if backoff is None else backoff

    def target(self, path: str) -> Tuple[Collection, Dict[str, Any]]:
        parts = path.split("/")
        if len(parts) % 2 == 0:
            raise ValueError(f"Not a collection path: {path}")
        if len(parts) == 1:
            return self.db[path], {}
        return self.db[parts[-1]], {PARENT_FIELD: "/".join(parts[:-1])}

    def get(self, collection, document_id):
        coll, scope = self.target(collection)
        return transform(coll.find_one({"_id": document_id, **scope}))

    def fetch(self, description: QueryDescription):
        coll, scope = self.target(description.collection)
        filt, sort, limit = description.to_mongo()
        filt = {**scope, **filt, description.order_by.field: {"$exists": True}}
        return [transform(d) for d in coll.find(filt).sort(sort).limit(limit)]

    def query(self, description):
        coll, _ = self.target(description.collection)
        # open the stream before the first read so no change slips between them
        stream = coll.watch(max_await_time_ms=500)
        sub = Subscription(description)
        try:
            snapshot = self.fetch(description)
        except BaseException:
            stream.close()
            raise
        sub.push(snapshot)
        thread = threading.Thread(target=self._watch, args=(sub, stream, snapshot),
                                  name=f"watch-{description.collection}", daemon=True)
        thread.start()
        return sub

    def _watch(self, sub: Subscription, stream, last):
        try:
            with stream:
                while not sub.cancelled and stream.alive:
                    if stream.try_next() is None:
                        continue
                    snapshot = self.fetch(sub.description)
                    if snapshot != last:
                        last = snapshot
                        sub.push(snapshot)
        except PyMongoError as exc:
            logger.warning(f"Live query on {sub.description.collection} stopped: {exc}")
            sub.cancel()

    def new_document_id(self, collection):
        return str(ObjectId())

    def add(self, collection, data):
        coll, scope = self.target(collection)
        document_id = self.new_document_id(collection)
        values, stamps = split_server_values(data)
        coll.insert_one({"_id": document_id, **values, **scope})
        if stamps:
            coll.update_one({"_id": document_id}, {"$currentDate": stamps})
        return document_id

    def list_collections(self):
        return self.db.list_collection_names()

    def _commit(self, session):
        """
        Commit, retrying only the commit while its outcome is unknown.

        Once a commit attempt may have been applied the transaction function
        must not run again, so an unresolved outcome ends as
        TransientStoreFailure instead of a full retry.
        """
        unknown = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                session.commit_transaction()
                return
            except PyMongoError as exc:
                if _outcome_unknown(exc):
                    unknown = exc
                    logger.debug(f"Commit result unknown, retrying commit ({attempt})")
                    continue
                if unknown is not None:
                    raise TransientStoreFailure(
                        f"Commit outcome unknown: {exc}",
                        hint="The write may have been applied; check before resubmitting") from exc
                raise
        logger.warning(f"Commit outcome still unknown after {self.max_attempts} attempts: {unknown}")
        raise TransientStoreFailure(
            f"Commit outcome unknown after {self.max_attempts} attempts: {unknown}",
            hint="The write may have been applied; check before resubmitting") from unknown

    def run_transaction(self, fn):
        last_error = None
        try:
            session = self.client.start_session()
        except ConnectionFailure as exc:
            raise TransientStoreFailure(f"Document store unreachable: {exc}") from exc

        with session:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    session.start_transaction(
                        read_concern=ReadConcern("snapshot"),
                        write_concern=WriteConcern("majority"),
                    )
                    try:
                        result = fn(MongoTransaction(self, session))
                    except BaseException:
                        if session.in_transaction:
                            session.abort_transaction()
                        raise
                except PyMongoError as exc:
                    # nothing was committed yet, so the whole function can run again
                    if not _is_transient(exc):
                        raise
                    last_error = exc
                else:
                    try:
                        self._commit(session)
                        return result
                    except PyMongoError as exc:
                        if not exc.has_error_label("TransientTransactionError"):
                            raise
                        last_error = exc

                logger.debug(f"Transaction attempt {attempt} failed: {last_error}")
                if attempt < self.max_attempts:
                    time.sleep(backoff_delay(attempt, self.backoff))

        logger.warning(f"Transaction gave up after {self.max_attempts} attempts: {last_error}")
        raise TransientStoreFailure(
            f"Transaction failed after {self.max_attempts} attempts: {last_error}",
            hint="Safe to resubmit") from last_error


def _connect() -> DocumentStore:
    if config.DOCUMENT_STORE == "memory":
        logger.info("Using in-memory document store")
        return MemoryDocumentStore()
    client = MongoClient(config.DATABASE_URL, tz_aware=True)
    logger.info(f"Using MongoDB document store: {config.DATABASE_NAME}")
    return MongoDocumentStore(client, client[config.DATABASE_NAME])


store = _connect()


def get_store() -> DocumentStore:
    """FastAPI dependency; tests override it with their own store."""
    return store
