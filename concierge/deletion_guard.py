from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from concierge.document_store import utc_iso
from concierge.errors import ApiError
from concierge.logging_utils import log_event

logger = logging.getLogger(__name__)

DESTRUCTIVE_OPS_ENV = "ALLOW_DESTRUCTIVE_OPS"
PROTECTED_COLLECTIONS = frozenset({"users", "jobs", "listings", "businesses", "orders", "payments"})
DELETION_AUDIT_COLLECTION = "deletion_audit_log"


@dataclass(frozen=True)
class DeletionContext:
    collection: str
    caller: str
    reason: str
    document_id: str | None = None
    trace_id: str | None = None


@dataclass(frozen=True)
class DeletionDecision:
    authorized: bool
    reason: str


class DeletionGuard:
    """Fail-closed gate for bulk and irreversible deletes.

    The environment switch is read on every decision so that turning it off
    takes effect without a restart.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ

    def destructive_ops_enabled(self) -> bool:
        env = os.environ if self._environ is None else self._environ
        return env.get(DESTRUCTIVE_OPS_ENV, "") == "true"

    @staticmethod
    def is_protected(collection: str) -> bool:
        return collection in PROTECTED_COLLECTIONS

    def _evaluate(self, context: DeletionContext) -> DeletionDecision:
        if not self.destructive_ops_enabled():
            return DeletionDecision(
                authorized=False,
                reason=f'{DESTRUCTIVE_OPS_ENV} environment variable is not set to "true".',
            )
        if not context.caller.strip():
            return DeletionDecision(authorized=False, reason="Caller must be identified for deletion operations.")
        if not context.reason.strip():
            return DeletionDecision(authorized=False, reason="A reason must be provided for deletion operations.")
        return DeletionDecision(authorized=True, reason="Deletion authorized.")

    def _log_decision(self, context: DeletionContext, decision: DeletionDecision, *, confirmed: bool | None) -> None:
        log_event(
            logger,
            "deletion_guard_decision",
            level=logging.INFO if decision.authorized else logging.WARNING,
            component="deletion_guard",
            trace_id=context.trace_id,
            collection=context.collection,
            document_id=context.document_id,
            caller=context.caller,
            reason=context.reason,
            confirmed=confirmed,
            authorized=decision.authorized,
            decision_reason=decision.reason,
        )

    def authorize(self, context: DeletionContext) -> DeletionDecision:
        decision = self._evaluate(context)
        self._log_decision(context, decision, confirmed=None)
        return decision

    def authorize_protected(self, context: DeletionContext, *, confirmed: bool) -> DeletionDecision:
        decision = self._evaluate(context)
        if decision.authorized and self.is_protected(context.collection) and not confirmed:
            decision = DeletionDecision(
                authorized=False,
                reason=f'Collection "{context.collection}" is protected. Explicit confirmation required.',
            )
        self._log_decision(context, decision, confirmed=confirmed)
        return decision

    def assert_authorized(self, context: DeletionContext, *, confirmed: bool = False) -> DeletionDecision:
        decision = self.authorize_protected(context, confirmed=confirmed)
        if not decision.authorized:
            raise ApiError(
                code="DELETION_DENIED",
                message=f"Deletion denied: {decision.reason}",
                error_class="security_sensitive",
                retryable=False,
                http_status=403,
                details={"collection": context.collection},
            )
        return decision


def purge_documents(
    store: Any,
    guard: DeletionGuard,
    *,
    collection: str,
    caller: str,
    reason: str,
    confirmed: bool = False,
    document_ids: Iterable[str] | None = None,
    filters: Iterable[tuple[str, str, Any]] | None = None,
    limit: int = 500,
    trace_id: str | None = None,
) -> dict[str, Any]:
    """Delete documents of one collection after the guard allows it, then audit."""
    collection = collection.strip("/")
    ids = [str(doc_id) for doc_id in (document_ids or []) if str(doc_id).strip()]
    context = DeletionContext(
        collection=collection,
        caller=caller,
        reason=reason,
        document_id=ids[0] if len(ids) == 1 else None,
        trace_id=trace_id,
    )
    guard.assert_authorized(context, confirmed=confirmed)

    if ids:
        paths = [f"{collection}/{doc_id}" for doc_id in ids]
    else:
        paths = [doc.path for doc in store.query(collection, filters=filters, limit=max(1, int(limit)))]
    deleted = store.batch_delete(paths)

    audit_path = store.new_document_path(DELETION_AUDIT_COLLECTION)
    store.set(
        audit_path,
        {
            "collection": collection,
            "caller": caller,
            "reason": reason,
            "confirmed": confirmed,
            "requested_count": len(paths),
            "deleted_count": deleted,
            "trace_id": trace_id,
            "deleted_at": utc_iso(),
        },
    )
    log_event(
        logger,
        "deletion_purge_completed",
        level=logging.WARNING,
        component="deletion_guard",
        trace_id=trace_id,
        collection=collection,
        caller=caller,
        deleted_count=deleted,
    )
    return {
        "collection": collection,
        "requested_count": len(paths),
        "deleted_count": deleted,
        "audit_id": audit_path.rsplit("/", 1)[-1],
    }
