from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable
from typing import Any

from concierge.config import GuardSettings
from concierge.deadlock import DeadlockReleaser
from concierge.logging_utils import log_event
from concierge.orphan_cleanup import OrphanCleanup
from concierge.outbox import OutboxProcessor

logger = logging.getLogger(__name__)


def _new_trace_id(kind: str) -> str:
    return f"sweep_{kind}_{uuid.uuid4().hex[:12]}"


class SweepRunner:
    """Resident scheduler for the outbox, deadlock and orphan sweeps.

    The outbox sweep runs every iteration. The deadlock and orphan sweeps run
    when their interval has elapsed since their previous run.
    """

    def __init__(
        self,
        *,
        outbox_processor: OutboxProcessor,
        deadlock_releaser: DeadlockReleaser,
        orphan_cleanup: OrphanCleanup,
        settings: GuardSettings,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.outbox_processor = outbox_processor
        self.deadlock_releaser = deadlock_releaser
        self.orphan_cleanup = orphan_cleanup
        self.settings = settings
        self._clock = clock
        self._rng = rng
        self._last_run: dict[str, float | None] = {"deadlock": None, "orphans": None}

    def _due(self, name: str, interval_s: int) -> bool:
        last = self._last_run.get(name)
        return last is None or self._clock() - last >= interval_s

    def run_outbox_sweep(self, *, trace_id: str | None = None) -> dict[str, int]:
        return self.outbox_processor.run_once(trace_id=trace_id or _new_trace_id("outbox"))

    def run_deadlock_sweep(self, *, trace_id: str | None = None) -> dict[str, Any]:
        self._last_run["deadlock"] = self._clock()
        return self.deadlock_releaser.release_stuck_jobs(trace_id=trace_id or _new_trace_id("deadlock"))

    def run_orphan_sweep(
        self,
        *,
        trace_id: str | None = None,
        dry_run: bool | None = None,
        force: bool = False,
    ) -> dict[str, Any]:
        trace_id = trace_id or _new_trace_id("orphans")
        effective_dry_run = self.settings.orphan_cleanup_dry_run if dry_run is None else dry_run
        self._last_run["orphans"] = self._clock()
        if not force and not self.settings.orphan_cleanup_enabled:
            return {"ran": False, "skipped_reason": "disabled", "dry_run": effective_dry_run, "results": []}
        if not force and self._rng() * 100.0 >= self.settings.orphan_cleanup_rollout_pct:
            return {"ran": False, "skipped_reason": "rollout", "dry_run": effective_dry_run, "results": []}

        results = self.orphan_cleanup.run(dry_run=effective_dry_run, trace_id=trace_id)
        errors = sum(1 for item in results if item.get("status") == "error")
        error_rate = errors / len(results) if results else 0.0
        log_event(
            logger,
            "orphan_sweep_completed",
            level=logging.WARNING if errors else logging.INFO,
            component="sweeps",
            trace_id=trace_id,
            dry_run=effective_dry_run,
            results=len(results),
            errors=errors,
            error_rate=round(error_rate, 4),
        )
        return {
            "ran": True,
            "skipped_reason": None,
            "dry_run": effective_dry_run,
            "results": results,
            "error_rate": error_rate,
        }

    def run_once(self) -> dict[str, Any]:
        summary: dict[str, Any] = {"outbox": self.run_outbox_sweep()}
        if self._due("deadlock", self.settings.deadlock_interval_s):
            summary["deadlock"] = self.run_deadlock_sweep()
        if self._due("orphans", self.settings.orphan_cleanup_interval_s):
            summary["orphans"] = self.run_orphan_sweep()
        return summary

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, Any]:
        iterations = 0
        totals = {"outbox_processed": 0, "jobs_released": 0, "orphan_runs": 0}
        while True:
            summary = self.run_once()
            totals["outbox_processed"] += int(summary["outbox"]["processed"])
            if "deadlock" in summary:
                totals["jobs_released"] += int(summary["deadlock"]["jobs_released"])
            if summary.get("orphans", {}).get("ran"):
                totals["orphan_runs"] += 1
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(summary["outbox"]["processed"]) == 0:
                time.sleep(self.settings.outbox_poll_interval_ms / 1000.0)
        return {"iterations": iterations, **totals}
