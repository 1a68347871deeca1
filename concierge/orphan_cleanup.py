from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from concierge.deletion_guard import DeletionContext, DeletionGuard
from concierge.document_store import utc_iso
from concierge.logging_utils import log_event

logger = logging.getLogger(__name__)

ORPHAN_CLEANUP_LOG_COLLECTION = "orphan_cleanup_log"
ORPHAN_CLEANUP_CALLER = "orphan_cleanup"

# (parent collection, child subcollection)
PARENT_CHILD_RELATIONSHIPS: tuple[tuple[str, str], ...] = (
    ("jobs", "messages"),
    ("jobs", "status_history"),
    ("listings", "reviews"),
    ("listings", "menu_items"),
    ("users", "preferences"),
    ("businesses", "staff"),
)


@dataclass
class OrphanResult:
    parent_collection: str
    parent_id: str
    subcollection: str
    orphan_count: int
    status: str
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "parent_collection": self.parent_collection,
            "parent_id": self.parent_id,
            "subcollection": self.subcollection,
            "orphan_count": self.orphan_count,
            "status": self.status,
        }
        if self.error:
            data["error"] = self.error
        return data


class OrphanCleanup:
    def __init__(
        self,
        *,
        store: Any,
        deletion_guard: DeletionGuard,
        sample_size: int = 100,
        batch_size: int = 100,
        relationships: tuple[tuple[str, str], ...] = PARENT_CHILD_RELATIONSHIPS,
    ) -> None:
        self.store = store
        self.deletion_guard = deletion_guard
        self.sample_size = max(1, int(sample_size))
        self.batch_size = max(1, int(batch_size))
        self.relationships = relationships

    @staticmethod
    def _parent_id(path: str, parent_collection: str) -> str | None:
        parts = path.split("/")
        if len(parts) >= 4 and parts[0] == parent_collection:
            return parts[1]
        return None

    def _sample_parent_ids(self, parent_collection: str, subcollection: str) -> list[str]:
        seen: list[str] = []
        for doc in self.store.collection_group(subcollection, limit=self.sample_size):
            parent_id = self._parent_id(doc.path, parent_collection)
            if parent_id and parent_id not in seen:
                seen.append(parent_id)
        return seen

    def _delete_children(
        self,
        *,
        parent_collection: str,
        parent_id: str,
        subcollection: str,
        trace_id: str | None,
    ) -> OrphanResult:
        children_collection = f"{parent_collection}/{parent_id}/{subcollection}"
        context = DeletionContext(
            collection=children_collection,
            caller=ORPHAN_CLEANUP_CALLER,
            reason=f"parent {parent_collection}/{parent_id} no longer exists",
            trace_id=trace_id,
        )
        decision = self.deletion_guard.authorize_protected(context, confirmed=False)
        children = self.store.query(children_collection, limit=self.batch_size)
        if not decision.authorized:
            return OrphanResult(
                parent_collection=parent_collection,
                parent_id=parent_id,
                subcollection=subcollection,
                orphan_count=len(children),
                status="skipped",
                error=decision.reason,
            )
        deleted = self.store.batch_delete([doc.path for doc in children])
        self.store.set(
            self.store.new_document_path(ORPHAN_CLEANUP_LOG_COLLECTION),
            {
                "parent_collection": parent_collection,
                "parent_id": parent_id,
                "subcollection": subcollection,
                "deleted_count": deleted,
                "trace_id": trace_id,
                "deleted_at": utc_iso(),
            },
        )
        return OrphanResult(
            parent_collection=parent_collection,
            parent_id=parent_id,
            subcollection=subcollection,
            orphan_count=deleted,
            status="deleted",
        )

    def run(self, *, dry_run: bool = True, trace_id: str | None = None) -> list[dict[str, Any]]:
        results: list[OrphanResult] = []
        for parent_collection, subcollection in self.relationships:
            try:
                parent_ids = self._sample_parent_ids(parent_collection, subcollection)
            except Exception as exc:
                logger.exception(
                    "orphan_scan_failed parent=%s sub=%s trace_id=%s", parent_collection, subcollection, trace_id
                )
                results.append(
                    OrphanResult(
                        parent_collection=parent_collection,
                        parent_id="",
                        subcollection=subcollection,
                        orphan_count=0,
                        status="error",
                        error=str(exc),
                    )
                )
                continue

            for parent_id in parent_ids:
                try:
                    if self.store.get(f"{parent_collection}/{parent_id}") is not None:
                        continue
                    if dry_run:
                        children = self.store.query(
                            f"{parent_collection}/{parent_id}/{subcollection}",
                            limit=self.batch_size,
                        )
                        result = OrphanResult(
                            parent_collection=parent_collection,
                            parent_id=parent_id,
                            subcollection=subcollection,
                            orphan_count=len(children),
                            status="detected",
                        )
                    else:
                        result = self._delete_children(
                            parent_collection=parent_collection,
                            parent_id=parent_id,
                            subcollection=subcollection,
                            trace_id=trace_id,
                        )
                except Exception as exc:
                    logger.exception(
                        "orphan_cleanup_failed parent=%s/%s sub=%s trace_id=%s",
                        parent_collection,
                        parent_id,
                        subcollection,
                        trace_id,
                    )
                    result = OrphanResult(
                        parent_collection=parent_collection,
                        parent_id=parent_id,
                        subcollection=subcollection,
                        orphan_count=0,
                        status="error",
                        error=str(exc),
                    )
                results.append(result)
                log_event(
                    logger,
                    "orphan_cleanup_result",
                    level=logging.WARNING if result.status in {"deleted", "error"} else logging.INFO,
                    component="orphan_cleanup",
                    trace_id=trace_id,
                    dry_run=dry_run,
                    **result.as_dict(),
                )

        log_event(
            logger,
            "orphan_cleanup_completed",
            component="orphan_cleanup",
            trace_id=trace_id,
            dry_run=dry_run,
            orphaned_parents=len(results),
            deleted=sum(r.orphan_count for r in results if r.status == "deleted"),
            errors=sum(1 for r in results if r.status == "error"),
        )
        return [r.as_dict() for r in results]
