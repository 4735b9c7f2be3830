"""Unit tests for the document store: versions, batches, and live listeners."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import os
import sys
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_dispatch"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DISPATCH_DB_PATH"] = str(TMP / "dispatch.db")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from taxi_dispatch.core.errors import ConflictError  # noqa: E402
from taxi_dispatch.services.dispatch_store import DispatchStore, status_in  # noqa: E402


@pytest.fixture()
def store(tmp_path):
    return DispatchStore(str(tmp_path / "dispatch.db"))


def _ride(status: str = "pending") -> dict:
    return {"status": status, "pickup": {"name": "Depot"}, "passengerCount": 1}


def test_put_stamps_version_and_timestamps(store):
    doc = store.put("t1", "rides", "ride-1", _ride())
    assert doc["id"] == "ride-1"
    assert doc["version"] == 1
    assert doc["createdAt"] == doc["updatedAt"]

    updated = store.update("t1", "rides", "ride-1", {"status": "assigned", "driverId": "driver-1"})
    assert updated["version"] == 2
    assert updated["createdAt"] == doc["createdAt"]
    assert updated["pickup"] == {"name": "Depot"}
    assert store.get("t1", "rides", "ride-1")["driverId"] == "driver-1"


def test_tenants_are_isolated(store):
    store.put("t1", "rides", "ride-1", _ride())
    assert store.get("t2", "rides", "ride-1") is None
    assert store.list("t2", "rides") == []


def test_stale_expected_version_is_rejected(store):
    store.put("t1", "rides", "ride-1", _ride())
    store.update("t1", "rides", "ride-1", {"status": "assigned"}, expected_version=1)
    with pytest.raises(ConflictError):
        store.update("t1", "rides", "ride-1", {"status": "cancelled"}, expected_version=1)
    assert store.get("t1", "rides", "ride-1")["status"] == "assigned"


def test_update_of_missing_document_raises_key_error(store):
    with pytest.raises(KeyError):
        store.update("t1", "rides", "ride-404", {"status": "cancelled"})


def test_failed_batch_leaves_no_partial_writes(store):
    store.put("t1", "rides", "ride-1", _ride())
    batch = (
        store.batch("t1")
        .update("rides", "ride-1", {"status": "assigned", "driverId": "driver-1"})
        .event("ride", "ride-1", "ride_updated", "tester")
        .update("rides", "ride-1", {"status": "completed"}, expected_version=1)
    )
    with pytest.raises(ConflictError):
        store.commit(batch)

    ride = store.get("t1", "rides", "ride-1")
    assert ride["status"] == "pending"
    assert "driverId" not in ride
    assert ride["version"] == 1
    assert store.list_timeline("t1") == []


def test_batch_commits_document_and_event_together(store):
    store.put("t1", "rides", "ride-1", _ride())
    results = store.commit(
        store.batch("t1")
        .update("rides", "ride-1", {"status": "cancelled"})
        .event("ride", "ride-1", "ride_updated", "tester", {"source": "test"})
    )
    assert results[0]["status"] == "cancelled"
    assert results[1]["event_id"].startswith("EVT-")

    events = store.list_timeline("t1", entity_id="ride-1")
    assert len(events) == 1
    assert events[0]["details"] == {"source": "test"}


@pytest.mark.parametrize("collection", ["passengers", "vehicles", "maintenance-tickets"])
def test_unknown_collection_is_rejected(store, collection):
    with pytest.raises(ValueError):
        store.put("t1", collection, "x-1", {"name": "x"})


def test_subscription_gets_initial_and_filtered_snapshots(store):
    store.put("t1", "rides", "ride-1", _ride("pending"))
    store.put("t1", "rides", "ride-2", _ride("completed"))
    snapshots = []

    subscription = store.subscribe("t1", "rides", snapshots.append, status_in("pending", "assigned"))
    assert [doc["id"] for doc in snapshots[0]] == ["ride-1"]

    store.update("t1", "rides", "ride-1", {"status": "assigned"})
    store.put("t1", "drivers", "driver-1", {"name": "Alex"})
    store.put("t2", "rides", "ride-9", _ride())
    assert len(snapshots) == 2
    assert snapshots[1][0]["status"] == "assigned"

    subscription.close()
    store.update("t1", "rides", "ride-1", {"status": "in-progress"})
    assert len(snapshots) == 2
    assert store.subscriber_count("t1", "rides") == 0


def test_subscription_context_manager_releases_listener(store):
    with store.subscribe("t1", "drivers", lambda docs: None) as subscription:
        assert store.subscriber_count("t1", "drivers") == 1
    assert subscription.closed
    assert store.subscriber_count("t1", "drivers") == 0


def test_failing_listener_does_not_block_commit(store):
    def _boom(docs):
        if docs:
            raise RuntimeError("listener exploded")

    store.subscribe("t1", "rides", _boom)
    doc = store.put("t1", "rides", "ride-1", _ride())
    assert doc["version"] == 1
    assert store.get("t1", "rides", "ride-1") is not None


def test_generated_ids_are_sequential_per_tenant(store):
    assert store.generate_id("t1", "ride") == "ride-1"
    assert store.generate_id("t1", "ride") == "ride-2"
    assert store.generate_id("t1", "driver") == "driver-1"
    assert store.generate_id("t2", "ride") == "ride-1"


def test_concurrent_sequence_generation_is_unique(store):
    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(lambda _: store.generate_id("t1", "ride"), range(40)))
    assert len(set(ids)) == 40


def test_idempotency_round_trip(store):
    assert store.get_idempotent("t1", "create_ride:abc") is None
    store.set_idempotent("t1", "create_ride:abc", {"id": "ride-1"})
    assert store.get_idempotent("t1", "create_ride:abc") == {"id": "ride-1"}


def test_listener_failing_on_first_snapshot_is_not_registered(store):
    calls = []

    def _reject_first(docs):
        calls.append(docs)
        raise RuntimeError("cannot render initial view")

    with pytest.raises(RuntimeError):
        store.subscribe("t1", "rides", _reject_first)
    assert store.subscriber_count("t1", "rides") == 0

    store.put("t1", "rides", "ride-1", _ride())
    assert len(calls) == 1


def test_stores_on_same_file_share_listeners(tmp_path):
    path = str(tmp_path / "shared.db")
    reader = DispatchStore(path)
    writer = DispatchStore(path)
    snapshots = []

    with reader.subscribe("t1", "rides", snapshots.append):
        assert writer.subscriber_count("t1", "rides") == 1
        writer.put("t1", "rides", "ride-1", _ride())
        assert [doc["id"] for doc in snapshots[-1]] == ["ride-1"]
    assert writer.subscriber_count("t1", "rides") == 0
