from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import jsonschema

from concierge.document_store import Transaction, utc_iso
from concierge.errors import ApiError
from concierge.logging_utils import log_event

logger = logging.getLogger(__name__)

OUTBOX_COLLECTION = "outbox"
DEFAULT_MAX_ATTEMPTS = 3
MAX_ATTEMPTS_EXCEEDED = "max attempts exceeded"

OUTBOX_PAYLOAD_SCHEMAS: dict[str, dict[str, Any]] = {
    "message_send": {
        "type": "object",
        "required": ["to", "body"],
        "properties": {
            "to": {"type": "string", "minLength": 3},
            "body": {"type": "string", "minLength": 1},
        },
        "additionalProperties": True,
    },
    "llm_request": {
        "type": "object",
        "required": ["prompt"],
        "properties": {
            "prompt": {"type": "string", "minLength": 1},
            "model": {"type": "string"},
            "response_format": {"type": "string", "enum": ["text", "json"]},
        },
        "additionalProperties": True,
    },
    "webhook_call": {
        "type": "object",
        "required": ["url"],
        "properties": {
            "url": {"type": "string", "pattern": "^https?://"},
            "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"]},
            "body": {},
        },
        "additionalProperties": True,
    },
}

OutboxExecutor = Callable[[dict[str, Any]], Mapping[str, Any]]


def outbox_path(outbox_id: str) -> str:
    return f"{OUTBOX_COLLECTION}/{outbox_id}"


class OutboxService:
    """Durable queue of external calls, claimed one attempt at a time."""

    def __init__(
        self,
        store: Any,
        *,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._default_max_attempts = max(1, int(default_max_attempts))
        self._clock = clock or (lambda: datetime.now(UTC))

    def _now(self) -> str:
        return utc_iso(self._clock())

    @staticmethod
    def validate_payload(entry_type: str, payload: Mapping[str, Any]) -> None:
        schema = OUTBOX_PAYLOAD_SCHEMAS.get(entry_type)
        if schema is None:
            raise ApiError(
                code="OUTBOX_TYPE_UNSUPPORTED",
                message=f"unsupported outbox entry type: {entry_type}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        try:
            jsonschema.validate(instance=dict(payload), schema=schema)
        except jsonschema.ValidationError as exc:
            raise ApiError(
                code="OUTBOX_PAYLOAD_INVALID",
                message=f"invalid {entry_type} payload: {exc.message}",
                error_class="validation",
                retryable=False,
                http_status=400,
            ) from exc

    def enqueue(
        self,
        *,
        job_id: str,
        entry_type: str,
        payload: Mapping[str, Any],
        trace_id: str | None = None,
        max_attempts: int | None = None,
        transaction: Transaction | None = None,
    ) -> str:
        self.validate_payload(entry_type, payload)
        outbox_id = f"obx_{uuid.uuid4().hex[:16]}"
        now = self._now()
        entry = {
            "outbox_id": outbox_id,
            "job_id": job_id,
            "trace_id": trace_id,
            "type": entry_type,
            "payload": dict(payload),
            "status": "pending",
            "attempts": 0,
            "max_attempts": max(1, int(max_attempts or self._default_max_attempts)),
            "last_attempt_id": None,
            "last_error": None,
            "evidence": None,
            "created_at": now,
            "updated_at": now,
            "processed_at": None,
        }
        if transaction is not None:
            transaction.set(outbox_path(outbox_id), entry)
        else:
            self._store.set(outbox_path(outbox_id), entry)
        log_event(
            logger,
            "outbox_enqueued",
            component="outbox",
            trace_id=trace_id,
            outbox_id=outbox_id,
            job_id=job_id,
            type=entry_type,
            in_transaction=transaction is not None,
        )
        return outbox_id

    def get(self, outbox_id: str) -> dict[str, Any] | None:
        doc = self._store.get(outbox_path(outbox_id))
        return None if doc is None else doc.data

    def list_pending(self, *, limit: int = 10) -> list[dict[str, Any]]:
        docs = self._store.query(
            OUTBOX_COLLECTION,
            filters=[("status", "==", "pending")],
            order_by="created_at",
            limit=max(1, int(limit)),
        )
        return [doc.data for doc in docs]

    def claim(self, outbox_id: str, *, attempt_id: str, trace_id: str | None = None) -> dict[str, Any] | None:
        """Claim one attempt; returns None when there is nothing to do for this attempt id."""

        def _claim(txn: Transaction) -> tuple[str, dict[str, Any] | None]:
            doc = txn.get(outbox_path(outbox_id))
            if doc is None:
                return "missing", None
            entry = doc.data
            status = entry.get("status")
            if status in {"completed", "failed"}:
                return f"already_{status}", None
            if entry.get("last_attempt_id") == attempt_id:
                return "duplicate_attempt", None
            attempts = int(entry.get("attempts", 0))
            max_attempts = int(entry.get("max_attempts", self._default_max_attempts))
            now = self._now()
            if attempts >= max_attempts:
                txn.update(
                    doc.path,
                    {
                        "status": "failed",
                        "last_error": MAX_ATTEMPTS_EXCEEDED,
                        "updated_at": now,
                        "processed_at": now,
                    },
                )
                return "max_attempts_exceeded", None
            txn.update(
                doc.path,
                {
                    "status": "processing",
                    "attempts": attempts + 1,
                    "last_attempt_id": attempt_id,
                    "updated_at": now,
                },
            )
            return "claimed", txn.get(doc.path).data  # type: ignore[union-attr]

        outcome, entry = self._store.run_transaction(_claim)
        level = logging.INFO
        if outcome == "missing":
            level = logging.WARNING
        elif outcome == "max_attempts_exceeded":
            level = logging.ERROR
        log_event(
            logger,
            "outbox_claim",
            level=level,
            component="outbox",
            trace_id=trace_id,
            outbox_id=outbox_id,
            attempt_id=attempt_id,
            outcome=outcome,
            attempts=entry.get("attempts") if entry else None,
        )
        return entry

    def complete(
        self,
        outbox_id: str,
        *,
        evidence: Mapping[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any] | None:
        def _complete(txn: Transaction) -> dict[str, Any] | None:
            doc = txn.get(outbox_path(outbox_id))
            if doc is None or doc.data.get("status") != "processing":
                return None
            now = self._now()
            txn.update(
                doc.path,
                {
                    "status": "completed",
                    "evidence": dict(evidence or {}),
                    "last_error": None,
                    "updated_at": now,
                    "processed_at": now,
                },
            )
            return txn.get(doc.path).data  # type: ignore[union-attr]

        entry = self._store.run_transaction(_complete)
        log_event(
            logger,
            "outbox_complete",
            level=logging.INFO if entry is not None else logging.WARNING,
            component="outbox",
            trace_id=trace_id,
            outbox_id=outbox_id,
            applied=entry is not None,
        )
        return entry

    def fail(self, outbox_id: str, *, error: str, trace_id: str | None = None) -> dict[str, Any] | None:
        """Record a failed attempt; the entry returns to pending until attempts run out."""

        def _fail(txn: Transaction) -> dict[str, Any] | None:
            doc = txn.get(outbox_path(outbox_id))
            if doc is None or doc.data.get("status") != "processing":
                return None
            attempts = int(doc.data.get("attempts", 0))
            max_attempts = int(doc.data.get("max_attempts", self._default_max_attempts))
            is_final = attempts >= max_attempts
            now = self._now()
            txn.update(
                doc.path,
                {
                    "status": "failed" if is_final else "pending",
                    "last_error": error,
                    "updated_at": now,
                    "processed_at": now if is_final else None,
                },
            )
            return txn.get(doc.path).data  # type: ignore[union-attr]

        entry = self._store.run_transaction(_fail)
        terminal = entry is not None and entry.get("status") == "failed"
        log_event(
            logger,
            "outbox_fail",
            level=logging.ERROR if terminal else logging.WARNING,
            component="outbox",
            trace_id=trace_id,
            outbox_id=outbox_id,
            error=error,
            applied=entry is not None,
            terminal=terminal,
        )
        return entry


@dataclass
class OutboxRunStats:
    processed: int = 0
    claimed: int = 0
    skipped: int = 0
    completed: int = 0
    retrying: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "claimed": self.claimed,
            "skipped": self.skipped,
            "completed": self.completed,
            "retrying": self.retrying,
            "failed": self.failed,
        }


class OutboxProcessor:
    """Sweep that drains pending outbox entries through registered executors."""

    def __init__(
        self,
        *,
        outbox: OutboxService,
        jobs: Any,
        executors: Mapping[str, OutboxExecutor],
        batch_size: int = 10,
        poll_interval_ms: int = 1000,
    ) -> None:
        self.outbox = outbox
        self.jobs = jobs
        self.executors = dict(executors)
        self.batch_size = max(1, int(batch_size))
        self.poll_interval_ms = max(1, int(poll_interval_ms))

    def _record(self, entry: Mapping[str, Any], *, trace_id: str | None) -> None:
        job_id = str(entry.get("job_id") or "")
        if not job_id:
            return
        self.jobs.record_outbox_outcome(
            job_id,
            outbox_id=str(entry["outbox_id"]),
            outcome={
                "type": entry.get("type"),
                "status": entry.get("status"),
                "attempts": entry.get("attempts"),
                "last_error": entry.get("last_error"),
                "processed_at": entry.get("processed_at"),
            },
            trace_id=trace_id,
        )

    def _process_entry(self, entry: dict[str, Any], *, trace_id: str | None, stats: OutboxRunStats) -> None:
        stats.processed += 1
        outbox_id = str(entry["outbox_id"])
        entry_trace_id = trace_id or entry.get("trace_id")
        claimed = self.outbox.claim(
            outbox_id,
            attempt_id=f"att_{uuid.uuid4().hex[:16]}",
            trace_id=entry_trace_id,
        )
        if claimed is None:
            stats.skipped += 1
            latest = self.outbox.get(outbox_id)
            if latest is not None and latest.get("status") == "failed":
                stats.failed += 1
                self._record(latest, trace_id=entry_trace_id)
            return
        stats.claimed += 1

        executor = self.executors.get(str(claimed.get("type")))
        error: str | None = None
        evidence: Mapping[str, Any] | None = None
        if executor is None:
            error = f"no executor registered for type {claimed.get('type')}"
        else:
            try:
                evidence = executor(claimed)
            except Exception as exc:
                # Any executor failure is a failed attempt; the sweep keeps going.
                error = f"{type(exc).__name__}: {exc}"

        if error is None:
            updated = self.outbox.complete(outbox_id, evidence=evidence, trace_id=entry_trace_id)
            if updated is not None:
                stats.completed += 1
                self._record(updated, trace_id=entry_trace_id)
            return

        updated = self.outbox.fail(outbox_id, error=error, trace_id=entry_trace_id)
        if updated is None:
            return
        if updated.get("status") == "failed":
            stats.failed += 1
        else:
            stats.retrying += 1
        self._record(updated, trace_id=entry_trace_id)

    def run_once(self, *, trace_id: str | None = None) -> dict[str, int]:
        stats = OutboxRunStats()
        for entry in self.outbox.list_pending(limit=self.batch_size):
            self._process_entry(entry, trace_id=trace_id, stats=stats)
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = OutboxRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            for key, value in current.items():
                setattr(aggregate, key, getattr(aggregate, key) + int(value))
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()
