from __future__ import annotations

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from concierge.container import container
from concierge.document_store import utc_iso
from concierge.schemas import error_envelope
from concierge.security import redact_sensitive

logger = logging.getLogger(__name__)

SECURITY_AUDIT_COLLECTION = "security_audit_log"


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def client_ip_from_request(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else "unknown"


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def append_security_audit_log(
    *,
    request: Request,
    action: str,
    code: str,
    detail: str,
) -> None:
    security_cfg = request.app.state.security_cfg
    headers_obj = dict(request.headers.items())
    headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
    try:
        container.store.set(
            container.store.new_document_path(SECURITY_AUDIT_COLLECTION),
            {
                "action": action,
                "error_code": code,
                "detail": detail,
                "path": request.url.path,
                "trace_id": trace_id_from_request(request),
                "headers": headers_payload,
                "occurred_at": utc_iso(),
            },
        )
    except Exception:
        # Audit failures must not change the response.
        logger.exception("security_audit_write_failed code=%s", code)
