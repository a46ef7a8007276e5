"""Tests for the in-memory document store: transactions and live queries"""
import threading
import time
from datetime import datetime

import pytest

import config
from errors import NotFound, TransientStoreFailure
from queries import compose_restaurant_query
from schemas import RESTAURANTS, Filters
from store import SERVER_TIMESTAMP, MemoryDocumentStore, Subscription, backoff_delay


def test_add_and_get(store):
    rid = store.add(RESTAURANTS, {"name": "Foo Cafe", "avg_rating": 3.0})

    doc = store.get(RESTAURANTS, rid)
    assert doc == {"id": rid, "name": "Foo Cafe", "avg_rating": 3.0}
    assert store.get(RESTAURANTS, "nope") is None


def test_documents_are_copies(store):
    rid = store.add(RESTAURANTS, {"name": "Foo Cafe", "avg_rating": 3.0})

    store.get(RESTAURANTS, rid)["name"] = "changed"
    assert store.get(RESTAURANTS, rid)["name"] == "Foo Cafe"


def test_new_document_ids_are_unique(store):
    ids = {store.new_document_id(RESTAURANTS) for _ in range(100)}
    assert len(ids) == 100


def test_server_timestamp_resolved_on_commit(store):
    store.run_transaction(lambda txn: txn.set("things", "t1", {"at": SERVER_TIMESTAMP}))

    assert isinstance(store.get("things", "t1")["at"], datetime)


def test_transaction_commits_all_writes(store):
    def write(txn):
        txn.set("a", "1", {"v": 1})
        txn.set("b", "2", {"v": 2})
        return "done"

    assert store.run_transaction(write) == "done"
    assert store.get("a", "1")["v"] == 1
    assert store.get("b", "2")["v"] == 2


def test_failed_transaction_writes_nothing(store):
    def write(txn):
        txn.set("a", "1", {"v": 1})
        raise NotFound("gone")

    with pytest.raises(NotFound):
        store.run_transaction(write)
    assert store.get("a", "1") is None


def test_update_of_missing_document_fails(store):
    with pytest.raises(NotFound):
        store.run_transaction(lambda txn: txn.update("a", "missing", {"v": 1}))


def test_update_merges_fields(store):
    rid = store.add(RESTAURANTS, {"name": "Bar Diner", "num_ratings": 1})

    store.run_transaction(lambda txn: txn.update(RESTAURANTS, rid, {"num_ratings": 2}))

    assert store.get(RESTAURANTS, rid) == {"id": rid, "name": "Bar Diner", "num_ratings": 2}


def test_reads_must_come_before_writes(store):
    def write_then_read(txn):
        txn.set("a", "1", {"v": 1})
        txn.get("a", "1")

    with pytest.raises(RuntimeError):
        store.run_transaction(write_then_read)


def test_conflicting_write_retries_whole_transaction(store):
    rid = store.add(RESTAURANTS, {"name": "Fire Spot", "num_ratings": 0})
    seen = []

    def concurrent_bump(txn):
        txn.get(RESTAURANTS, rid)
        txn.update(RESTAURANTS, rid, {"num_ratings": 10})

    def bump(txn):
        doc = txn.get(RESTAURANTS, rid)
        seen.append(doc["num_ratings"])
        if len(seen) == 1:
            store.run_transaction(concurrent_bump)
        txn.update(RESTAURANTS, rid, {"num_ratings": doc["num_ratings"] + 1})

    store.run_transaction(bump)

    assert seen == [0, 10]
    assert store.get(RESTAURANTS, rid)["num_ratings"] == 11


def test_reading_missing_document_conflicts_when_it_appears(store):
    seen = []

    def create_if_missing(txn):
        doc = txn.get("a", "1")
        seen.append(doc)
        if len(seen) == 1:
            store.run_transaction(lambda other: other.set("a", "1", {"v": "other"}))
        if doc is None:
            txn.set("a", "1", {"v": "mine"})

    store.run_transaction(create_if_missing)

    assert seen[0] is None
    assert seen[1]["v"] == "other"
    assert store.get("a", "1")["v"] == "other"


def test_retry_budget_exhausted():
    store = MemoryDocumentStore(max_attempts=3, backoff=0)
    rid = store.add(RESTAURANTS, {"num_ratings": 0})
    calls = []

    def always_conflicts(txn):
        calls.append(1)
        txn.get(RESTAURANTS, rid)
        store.run_transaction(lambda other: other.update(RESTAURANTS, rid, {"num_ratings": len(calls)}))
        txn.update(RESTAURANTS, rid, {"num_ratings": -1})

    with pytest.raises(TransientStoreFailure):
        store.run_transaction(always_conflicts)

    assert len(calls) == 3
    assert store.get(RESTAURANTS, rid)["num_ratings"] == 3


def test_backoff_delay():
    assert backoff_delay(1, 0) == 0.0
    assert 0.1 <= backoff_delay(1, 0.1) <= 0.21
    assert 0.4 <= backoff_delay(3, 0.1) <= 0.51


def test_max_attempts_zero_is_kept():
    assert MemoryDocumentStore(max_attempts=0).max_attempts == 0
    assert MemoryDocumentStore().max_attempts == config.TRANSACTION_MAX_ATTEMPTS


def test_fetch_runs_description(store):
    store.add(RESTAURANTS, {"name": "A", "category": "Indian", "price": 2, "avg_rating": 3.0})
    store.add(RESTAURANTS, {"name": "B", "category": "Indian", "price": 1, "avg_rating": 4.5})
    store.add(RESTAURANTS, {"name": "C", "category": "Ramen", "price": 1, "avg_rating": 5.0})

    names = [d["name"] for d in store.fetch(compose_restaurant_query(Filters(category="Indian")))]
    assert names == ["B", "A"]


class TestSubscriptions:

    def test_first_snapshot_delivered_immediately(self, store):
        store.add(RESTAURANTS, {"name": "A", "avg_rating": 3.0})

        sub = store.query(compose_restaurant_query())

        snapshot = sub.poll(timeout=1)
        assert [d["name"] for d in snapshot] == ["A"]

    def test_changes_are_delivered(self, store):
        sub = store.query(compose_restaurant_query())
        assert sub.poll(timeout=1) == []

        store.add(RESTAURANTS, {"name": "A", "avg_rating": 3.0})

        snapshot = sub.poll(timeout=1)
        assert [d["name"] for d in snapshot] == ["A"]

    def test_irrelevant_writes_are_not_delivered(self, store):
        sub = store.query(compose_restaurant_query(Filters(category="Indian")))
        sub.poll(timeout=1)

        store.add(RESTAURANTS, {"name": "A", "category": "Pizza", "avg_rating": 3.0})
        store.add("other", {"name": "x"})

        assert sub.poll(timeout=0.05) is None

    def test_iteration(self, store):
        sub = store.query(compose_restaurant_query())
        it = iter(sub)
        assert next(it) == []

        store.add(RESTAURANTS, {"name": "A", "avg_rating": 3.0})
        assert len(next(it)) == 1

        sub.cancel()
        assert list(it) == []

    def test_cancel_stops_only_that_subscription(self, store):
        first = store.query(compose_restaurant_query())
        second = store.query(compose_restaurant_query())
        first.poll(timeout=1)
        second.poll(timeout=1)

        first.cancel()
        rid = store.add(RESTAURANTS, {"name": "A", "avg_rating": 3.0})

        assert first.cancelled
        assert first.poll(timeout=0.05) is None
        assert list(first) == []
        assert [d["id"] for d in second.poll(timeout=1)] == [rid]
        assert store.get(RESTAURANTS, rid)["name"] == "A"

    def test_cancel_drops_pending_snapshots(self, store):
        sub = store.query(compose_restaurant_query())
        store.add(RESTAURANTS, {"name": "A", "avg_rating": 3.0})

        sub.cancel()
        sub.cancel()

        assert sub.poll(timeout=0.05) is None

    def test_resubscribe_restarts_from_current_state(self, store):
        sub = store.query(compose_restaurant_query())
        sub.cancel()
        store.add(RESTAURANTS, {"name": "A", "avg_rating": 3.0})

        again = store.query(compose_restaurant_query())
        assert [d["name"] for d in again.poll(timeout=1)] == ["A"]

    def test_transaction_commit_notifies(self, store):
        rid = store.add(RESTAURANTS, {"name": "A", "avg_rating": 3.0})
        sub = store.query(compose_restaurant_query())
        sub.poll(timeout=1)

        store.run_transaction(lambda txn: txn.update(RESTAURANTS, rid, {"avg_rating": 4.0}))

        assert sub.poll(timeout=1)[0]["avg_rating"] == 4.0

    def test_push_after_cancel_is_dropped(self):
        sub = Subscription(compose_restaurant_query())
        sub.cancel()

        sub.push([{"id": "a"}])

        assert sub.poll(timeout=0) is None
        assert list(sub) == []

    def test_cancel_while_pushing(self):
        sub = Subscription(compose_restaurant_query())
        stop = threading.Event()

        def pusher():
            while not stop.is_set():
                sub.push([{"id": "a"}])

        threads = [threading.Thread(target=pusher) for _ in range(4)]
        for thread in threads:
            thread.start()
        time.sleep(0.01)
        sub.cancel()
        stop.set()
        for thread in threads:
            thread.join()

        assert [sub.poll(timeout=0) for _ in range(3)] == [None, None, None]
        assert list(sub) == []
