from __future__ import annotations

from dataclasses import replace

from concierge.config import GuardSettings
from concierge.deadlock import DeadlockReleaser
from concierge.deletion_guard import DeletionGuard
from concierge.document_store import InMemoryDocumentStore
from concierge.gateways import MockCompletionClient, MockMessagingGateway, build_outbox_executors
from concierge.jobs import JobsRepository
from concierge.orphan_cleanup import OrphanCleanup
from concierge.outbox import OutboxProcessor, OutboxService
from concierge.sweeps import SweepRunner


def _runner(monotonic, clock, *, settings: GuardSettings | None = None, rng=lambda: 0.0, destructive: bool = False):
    store = InMemoryDocumentStore()
    jobs = JobsRepository(store, clock=clock)
    outbox = OutboxService(store, clock=clock)
    guard = DeletionGuard({"ALLOW_DESTRUCTIVE_OPS": "true"} if destructive else {})
    runner = SweepRunner(
        outbox_processor=OutboxProcessor(
            outbox=outbox,
            jobs=jobs,
            executors=build_outbox_executors(messaging=MockMessagingGateway(), completion=MockCompletionClient()),
        ),
        deadlock_releaser=DeadlockReleaser(store=store, jobs=jobs, clock=clock),
        orphan_cleanup=OrphanCleanup(store=store, deletion_guard=guard),
        settings=settings or GuardSettings(),
        clock=monotonic,
        rng=rng,
    )
    return runner, store, jobs, outbox


def test_run_once_runs_every_sweep_first_time(monotonic, clock):
    runner, _, _, _ = _runner(monotonic, clock)
    summary = runner.run_once()
    assert set(summary) == {"outbox", "deadlock", "orphans"}
    assert summary["orphans"]["skipped_reason"] == "disabled"


def test_interval_sweeps_wait_for_their_interval(monotonic, clock):
    runner, _, _, _ = _runner(monotonic, clock)
    runner.run_once()
    monotonic.advance(60)
    assert set(runner.run_once()) == {"outbox"}
    monotonic.advance(900)
    assert set(runner.run_once()) == {"outbox", "deadlock"}
    monotonic.advance(3600)
    assert set(runner.run_once()) == {"outbox", "deadlock", "orphans"}


def test_outbox_sweep_drains_pending_entries(monotonic, clock):
    runner, _, jobs, outbox = _runner(monotonic, clock)
    jobs.create(job_type="food_order", job_id="job_1")
    outbox_id = outbox.enqueue(job_id="job_1", entry_type="message_send", payload={"to": "+905551112233", "body": "hi"})
    stats = runner.run_outbox_sweep(trace_id="trace_sw")
    assert stats["completed"] == 1
    assert outbox.get(outbox_id)["status"] == "completed"


def test_deadlock_sweep_releases_stuck_jobs(monotonic, clock):
    runner, _, jobs, _ = _runner(monotonic, clock)
    jobs.create(job_type="food_order", job_id="job_stuck", status="dispatched")
    clock.advance(hours=2)
    result = runner.run_deadlock_sweep()
    assert result["released_job_ids"] == ["job_stuck"]


def test_orphan_sweep_respects_rollout(monotonic, clock):
    settings = replace(GuardSettings(), orphan_cleanup_enabled=True, orphan_cleanup_rollout_pct=25.0)
    skipped, _, _, _ = _runner(monotonic, clock, settings=settings, rng=lambda: 0.5)
    ran, _, _, _ = _runner(monotonic, clock, settings=settings, rng=lambda: 0.1)
    assert skipped.run_orphan_sweep()["skipped_reason"] == "rollout"
    result = ran.run_orphan_sweep()
    assert result["ran"] is True
    assert result["dry_run"] is True
    assert result["error_rate"] == 0.0


def test_forced_orphan_sweep_applies_deletes_when_allowed(monotonic, clock):
    runner, store, _, _ = _runner(monotonic, clock, destructive=True)
    store.set("jobs/job_gone/messages/m1", {"body": "x"})
    result = runner.run_orphan_sweep(dry_run=False, force=True)
    assert result["ran"] is True
    assert result["dry_run"] is False
    assert result["results"][0]["status"] == "deleted"
    assert store.query("jobs/job_gone/messages") == []


def test_run_forever_stops_after_iterations(monotonic, clock):
    runner, _, jobs, outbox = _runner(monotonic, clock)
    jobs.create(job_type="food_order", job_id="job_1")
    outbox.enqueue(job_id="job_1", entry_type="message_send", payload={"to": "+905551112233", "body": "hi"})
    totals = runner.run_forever(stop_after_iterations=1)
    assert totals == {"iterations": 1, "outbox_processed": 1, "jobs_released": 0, "orphan_runs": 0}
