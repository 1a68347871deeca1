from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from concierge.document_store import parse_iso, utc_iso
from concierge.jobs import JOBS_COLLECTION, NON_TERMINAL_STATUSES, JobsRepository, is_terminal
from concierge.logging_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_STUCK_THRESHOLD_S = 3600
DEFAULT_BATCH_SIZE = 100


@dataclass
class DeadlockReleaseResult:
    jobs_checked: int = 0
    jobs_released: int = 0
    released_job_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "jobs_checked": self.jobs_checked,
            "jobs_released": self.jobs_released,
            "released_job_ids": list(self.released_job_ids),
            "errors": list(self.errors),
        }


def _describe_threshold(threshold_s: int) -> str:
    if threshold_s % 3600 == 0:
        hours = threshold_s // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    minutes = max(1, threshold_s // 60)
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


class DeadlockReleaser:
    """Moves jobs that sat in a non-terminal status too long into timeout-review.

    The release is the only status change this sweep makes. A human decides
    what happens to the job next.
    """

    def __init__(
        self,
        *,
        store: Any,
        jobs: JobsRepository,
        stuck_threshold_s: int = DEFAULT_STUCK_THRESHOLD_S,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.jobs = jobs
        self.stuck_threshold_s = max(1, int(stuck_threshold_s))
        self.batch_size = max(1, int(batch_size))
        self._clock = clock or (lambda: datetime.now(UTC))

    def _cutoff(self) -> datetime:
        return self._clock() - timedelta(seconds=self.stuck_threshold_s)

    def release_stuck_jobs(self, *, trace_id: str | None = None) -> dict[str, Any]:
        result = DeadlockReleaseResult()
        cutoff_iso = utc_iso(self._cutoff())
        threshold_text = _describe_threshold(self.stuck_threshold_s)

        for status in NON_TERMINAL_STATUSES:
            try:
                docs = self.store.query(
                    JOBS_COLLECTION,
                    filters=[("status", "==", status), ("updated_at", "<", cutoff_iso)],
                    order_by="updated_at",
                    limit=self.batch_size,
                )
            except Exception as exc:
                # A failing status query must not stop the other statuses.
                result.errors.append(f"query status={status}: {exc}")
                logger.exception("deadlock_query_failed status=%s trace_id=%s", status, trace_id)
                continue

            for doc in docs:
                result.jobs_checked += 1
                job_id = str(doc.data.get("job_id") or doc.id)
                reason = f"Auto-released: stuck in '{status}' for > {threshold_text}"
                try:
                    released = self.jobs.release_to_review(
                        job_id,
                        expected_status=status,
                        cutoff_iso=cutoff_iso,
                        reason=reason,
                        trace_id=trace_id,
                    )
                except Exception as exc:
                    result.errors.append(f"job {job_id}: {exc}")
                    logger.exception("deadlock_release_failed job_id=%s trace_id=%s", job_id, trace_id)
                    continue
                if not released:
                    continue
                result.jobs_released += 1
                result.released_job_ids.append(job_id)
                log_event(
                    logger,
                    "deadlock_job_released",
                    level=logging.WARNING,
                    component="deadlock",
                    trace_id=trace_id,
                    job_id=job_id,
                    previous_status=status,
                    last_updated_at=doc.data.get("updated_at"),
                    reason=reason,
                )

        log_event(
            logger,
            "deadlock_sweep_completed",
            level=logging.ERROR if result.errors else logging.INFO,
            component="deadlock",
            trace_id=trace_id,
            **result.as_dict(),
        )
        return result.as_dict()

    def is_job_stuck(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None:
            return False
        if is_terminal(job.get("status")):
            return False
        updated_at = parse_iso(job.get("updated_at"))
        # The sweep selects on updated_at, so a job without one is never released.
        if updated_at is None:
            return False
        return updated_at < self._cutoff()

    def stuck_job_count(self) -> int:
        cutoff_iso = utc_iso(self._cutoff())
        total = 0
        for status in NON_TERMINAL_STATUSES:
            total += len(
                self.store.query(
                    JOBS_COLLECTION,
                    filters=[("status", "==", status), ("updated_at", "<", cutoff_iso)],
                )
            )
        return total
