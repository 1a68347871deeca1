from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from concierge.document_store import Transaction, utc_iso
from concierge.errors import ApiError
from concierge.logging_utils import log_event

logger = logging.getLogger(__name__)

JOBS_COLLECTION = "jobs"

NON_TERMINAL_STATUSES = ("collecting", "confirming", "dispatching", "dispatched", "processing")
TERMINAL_STATUSES = ("completed", "cancelled", "failed", "timeout-review")
TIMEOUT_REVIEW_STATUS = "timeout-review"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "collecting": {"confirming", "cancelled"},
    "confirming": {"dispatching", "cancelled", "failed"},
    "dispatching": {"dispatched", "cancelled", "failed"},
    "dispatched": {"processing", "completed", "cancelled", "failed"},
    "processing": {"completed", "failed", "cancelled"},
}


def job_path(job_id: str) -> str:
    return f"{JOBS_COLLECTION}/{job_id}"


def is_terminal(status: str | None) -> bool:
    return status in TERMINAL_STATUSES


class JobsRepository:
    """Job documents and their status state machine."""

    def __init__(self, store: Any, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    def now_iso(self) -> str:
        return utc_iso(self._clock())

    def _in_transaction(self, transaction: Transaction | None, fn: Callable[[Transaction], Any]) -> Any:
        if transaction is not None:
            return fn(transaction)
        return self._store.run_transaction(fn)

    def create(
        self,
        *,
        job_type: str,
        payload: Mapping[str, Any] | None = None,
        trace_id: str | None = None,
        customer_phone: str | None = None,
        vendor_phone: str | None = None,
        status: str = "collecting",
        job_id: str | None = None,
        transaction: Transaction | None = None,
    ) -> dict[str, Any]:
        if status not in NON_TERMINAL_STATUSES:
            raise ApiError(
                code="JOB_STATUS_INVALID",
                message=f"jobs must start in a non-terminal status, got {status}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        now = self.now_iso()
        job = {
            "job_id": job_id or f"job_{uuid.uuid4().hex[:12]}",
            "job_type": job_type,
            "status": status,
            "created_at": now,
            "updated_at": now,
            "trace_id": trace_id,
            "payload": dict(payload or {}),
            "customer_phone": customer_phone,
            "vendor_phone": vendor_phone,
        }

        def _write(txn: Transaction) -> dict[str, Any]:
            txn.set(job_path(job["job_id"]), job)
            return job

        return self._in_transaction(transaction, _write)

    def get(self, job_id: str) -> dict[str, Any] | None:
        doc = self._store.get(job_path(job_id))
        return None if doc is None else doc.data

    def find_oldest_for_vendor(self, vendor_phone: str, *, status: str = "confirming") -> dict[str, Any] | None:
        docs = self._store.query(
            JOBS_COLLECTION,
            filters=[("vendor_phone", "==", vendor_phone), ("status", "==", status)],
            order_by="created_at",
            limit=1,
        )
        return docs[0].data if docs else None

    def transition(
        self,
        job_id: str,
        *,
        new_status: str,
        trace_id: str | None = None,
        changes: Mapping[str, Any] | None = None,
        transaction: Transaction | None = None,
    ) -> dict[str, Any]:
        def _write(txn: Transaction) -> dict[str, Any]:
            doc = txn.get(job_path(job_id))
            if doc is None:
                raise ApiError(
                    code="JOB_NOT_FOUND",
                    message="job not found",
                    error_class="validation",
                    retryable=False,
                    http_status=404,
                )
            job = doc.data
            current_status = str(job.get("status", ""))
            if is_terminal(current_status):
                raise ApiError(
                    code="JOB_TERMINAL_STATE",
                    message=f"job is terminal: {current_status}",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            if new_status == current_status:
                return job
            if new_status not in ALLOWED_TRANSITIONS.get(current_status, set()):
                raise ApiError(
                    code="WF_STATE_TRANSITION_INVALID",
                    message=f"invalid transition: {current_status} -> {new_status}",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            now = self.now_iso()
            update = dict(changes or {})
            update.update({"status": new_status, "previous_status": current_status, "updated_at": now})
            txn.update(doc.path, update)
            txn.set(
                f"{doc.path}/status_history/{uuid.uuid4().hex[:20]}",
                {"from": current_status, "to": new_status, "at": now, "trace_id": trace_id},
            )
            return txn.get(doc.path).data  # type: ignore[union-attr]

        job = self._in_transaction(transaction, _write)
        logger.info("job_transition job_id=%s status=%s trace_id=%s", job_id, new_status, trace_id)
        return job

    def release_to_review(
        self,
        job_id: str,
        *,
        expected_status: str,
        cutoff_iso: str,
        reason: str,
        trace_id: str | None = None,
    ) -> bool:
        """Move a stuck job to timeout-review unless it changed since it was selected."""

        def _write(txn: Transaction) -> bool:
            doc = txn.get(job_path(job_id))
            if doc is None:
                return False
            job = doc.data
            if job.get("status") != expected_status or is_terminal(expected_status):
                return False
            updated_at = job.get("updated_at")
            if isinstance(updated_at, str) and updated_at >= cutoff_iso:
                return False
            now = self.now_iso()
            txn.update(
                doc.path,
                {
                    "status": TIMEOUT_REVIEW_STATUS,
                    "previous_status": expected_status,
                    "timeout_at": now,
                    "timeout_reason": reason,
                    "updated_at": now,
                },
            )
            txn.set(
                f"{doc.path}/status_history/{uuid.uuid4().hex[:20]}",
                {"from": expected_status, "to": TIMEOUT_REVIEW_STATUS, "at": now, "trace_id": trace_id},
            )
            return True

        return bool(self._store.run_transaction(_write))

    def record_outbox_outcome(
        self,
        job_id: str,
        *,
        outbox_id: str,
        outcome: Mapping[str, Any],
        trace_id: str | None = None,
    ) -> bool:
        def _write(txn: Transaction) -> bool:
            doc = txn.get(job_path(job_id))
            if doc is None:
                return False
            txn.update(doc.path, {f"outbox_results.{outbox_id}": dict(outcome)})
            return True

        recorded = bool(self._store.run_transaction(_write))
        if not recorded:
            log_event(
                logger,
                "job_outbox_outcome_orphaned",
                level=logging.WARNING,
                component="jobs",
                trace_id=trace_id,
                job_id=job_id,
                outbox_id=outbox_id,
            )
        return recorded

    def append_message(
        self,
        job_id: str,
        message: Mapping[str, Any],
        *,
        transaction: Transaction | None = None,
    ) -> str:
        path = f"{job_path(job_id)}/messages/{uuid.uuid4().hex[:20]}"

        def _write(txn: Transaction) -> str:
            txn.set(path, {**dict(message), "created_at": self.now_iso()})
            return path

        return self._in_transaction(transaction, _write)
