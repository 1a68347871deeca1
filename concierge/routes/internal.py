from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from concierge.container import container
from concierge.deletion_guard import purge_documents
from concierge.errors import ApiError
from concierge.routes._deps import trace_id_from_request
from concierge.schemas import OrphanSweepRequest, PurgeRequest, success_envelope
from concierge.security import require_internal_token

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/sweeps/outbox")
def run_outbox_sweep(
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    require_internal_token(x_internal_token)
    trace_id = trace_id_from_request(request)
    return success_envelope(container.sweeps.run_outbox_sweep(trace_id=trace_id), trace_id)


@router.post("/sweeps/deadlock")
def run_deadlock_sweep(
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    require_internal_token(x_internal_token)
    trace_id = trace_id_from_request(request)
    return success_envelope(container.sweeps.run_deadlock_sweep(trace_id=trace_id), trace_id)


@router.post("/sweeps/orphans")
def run_orphan_sweep(
    request: Request,
    payload: OrphanSweepRequest | None = None,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    require_internal_token(x_internal_token)
    trace_id = trace_id_from_request(request)
    dry_run = payload.dry_run if payload is not None else True
    data = container.sweeps.run_orphan_sweep(trace_id=trace_id, dry_run=dry_run, force=True)
    return success_envelope(data, trace_id)


@router.get("/jobs/{job_id}/stuck")
def job_stuck(
    job_id: str,
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    require_internal_token(x_internal_token)
    job = container.jobs.get(job_id)
    if job is None:
        raise ApiError(
            code="JOB_NOT_FOUND",
            message="job not found",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
    data = {
        "job_id": job_id,
        "status": job.get("status"),
        "updated_at": job.get("updated_at"),
        "stuck": container.deadlock.is_job_stuck(job_id),
    }
    return success_envelope(data, trace_id_from_request(request))


@router.get("/outbox")
def list_pending_outbox(
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
):
    require_internal_token(x_internal_token)
    items = container.outbox.list_pending(limit=limit)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/collections/{collection}/purge")
def purge_collection(
    collection: str,
    payload: PurgeRequest,
    request: Request,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
    x_caller_id: str | None = Header(default=None, alias="x-caller-id"),
):
    require_internal_token(x_internal_token)
    trace_id = trace_id_from_request(request)
    data = purge_documents(
        container.store,
        container.deletion_guard,
        collection=collection,
        caller=(x_caller_id or "").strip(),
        reason=payload.reason,
        confirmed=payload.confirmed,
        document_ids=payload.document_ids or None,
        limit=payload.limit,
        trace_id=trace_id,
    )
    return success_envelope(data, trace_id)
