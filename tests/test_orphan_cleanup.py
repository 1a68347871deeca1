from __future__ import annotations

from concierge.deletion_guard import DeletionGuard
from concierge.document_store import InMemoryDocumentStore
from concierge.orphan_cleanup import OrphanCleanup


def _seed(store: InMemoryDocumentStore) -> None:
    store.set("jobs/job_live", {"job_id": "job_live", "status": "collecting"})
    store.set("jobs/job_live/messages/m1", {"body": "kept"})
    store.set("jobs/job_gone/messages/m1", {"body": "orphan 1"})
    store.set("jobs/job_gone/messages/m2", {"body": "orphan 2"})
    store.set("listings/lst_gone/reviews/r1", {"stars": 5})


def _find(results, parent_id, subcollection):
    return [r for r in results if r["parent_id"] == parent_id and r["subcollection"] == subcollection]


def _find_all(results, subcollection):
    return [r for r in results if r["subcollection"] == subcollection]


def test_dry_run_reports_without_deleting():
    store = InMemoryDocumentStore()
    _seed(store)
    cleanup = OrphanCleanup(store=store, deletion_guard=DeletionGuard({"ALLOW_DESTRUCTIVE_OPS": "true"}))

    results = cleanup.run(dry_run=True, trace_id="trace_orphan")

    gone = _find(results, "job_gone", "messages")
    assert gone == [
        {
            "parent_collection": "jobs",
            "parent_id": "job_gone",
            "subcollection": "messages",
            "orphan_count": 2,
            "status": "detected",
        }
    ]
    assert _find(results, "job_live", "messages") == []
    assert _find(results, "lst_gone", "reviews")[0]["status"] == "detected"
    assert store.get("jobs/job_gone/messages/m1") is not None
    assert store.query("orphan_cleanup_log") == []


def test_live_run_deletes_orphans_and_logs():
    store = InMemoryDocumentStore()
    _seed(store)
    cleanup = OrphanCleanup(store=store, deletion_guard=DeletionGuard({"ALLOW_DESTRUCTIVE_OPS": "true"}))

    results = cleanup.run(dry_run=False)

    gone = _find(results, "job_gone", "messages")[0]
    assert gone["status"] == "deleted"
    assert gone["orphan_count"] == 2
    assert store.query("jobs/job_gone/messages") == []
    assert store.get("jobs/job_live/messages/m1") is not None
    log_entries = store.query("orphan_cleanup_log")
    assert {entry.data["parent_id"] for entry in log_entries} == {"job_gone", "lst_gone"}


def test_live_run_without_switch_is_skipped():
    store = InMemoryDocumentStore()
    _seed(store)
    cleanup = OrphanCleanup(store=store, deletion_guard=DeletionGuard({}))

    results = cleanup.run(dry_run=False)

    gone = _find(results, "job_gone", "messages")[0]
    assert gone["status"] == "skipped"
    assert "ALLOW_DESTRUCTIVE_OPS" in gone["error"]
    assert store.get("jobs/job_gone/messages/m2") is not None


def test_scan_failure_is_reported_per_relationship():
    class BrokenGroupStore(InMemoryDocumentStore):
        def collection_group(self, name, *, limit=None):
            if name == "reviews":
                raise RuntimeError("collection group index missing")
            return super().collection_group(name, limit=limit)

    store = BrokenGroupStore()
    _seed(store)
    cleanup = OrphanCleanup(store=store, deletion_guard=DeletionGuard({}))

    results = cleanup.run(dry_run=True)

    errors = [r for r in results if r["status"] == "error"]
    assert len(errors) == 1
    assert errors[0]["subcollection"] == "reviews"
    assert _find(results, "job_gone", "messages")[0]["status"] == "detected"


def test_sample_size_bounds_the_scan():
    store = InMemoryDocumentStore()
    for idx in range(5):
        store.set(f"jobs/job_{idx}/messages/m", {"body": "x"})
    cleanup = OrphanCleanup(store=store, deletion_guard=DeletionGuard({}), sample_size=2)

    results = cleanup.run(dry_run=True)

    assert len(_find_all(results, "messages")) == 2
