from __future__ import annotations

import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from concierge.errors import ApiError
from concierge.routes import internal, search, webhooks
from concierge.routes._deps import (
    append_security_audit_log,
    error_response,
    request_id_from_request,
    trace_id_from_request,
)
from concierge.schemas import success_envelope
from concierge.security import JwtSecurityConfig, parse_and_validate_bearer_token

_SECURITY_CODES = {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "DELETION_DENIED"}
_UNAUTHENTICATED_PREFIXES = ("/api/v1/internal/", "/api/v1/webhooks/")


def _requires_bearer(path: str) -> bool:
    if not path.startswith("/api/v1/") or path == "/api/v1/health":
        return False
    return not path.startswith(_UNAUTHENTICATED_PREFIXES)


def create_app() -> FastAPI:
    app = FastAPI(title="Concierge Reliability API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = None
        if (
            security_cfg.trace_id_strict_required
            and request.url.path.startswith("/api/v1/")
            and request.url.path != "/api/v1/health"
            and not incoming_trace_id
        ):
            response = error_response(
                request,
                code="TRACE_ID_REQUIRED",
                message="x-trace-id header is required",
                error_class="validation",
                retryable=False,
                status_code=400,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        try:
            if security_cfg.enabled and _requires_bearer(request.url.path):
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.auth_subject = auth_ctx.subject
            response = await call_next(request)
        except ApiError as exc:
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_CODES:
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(search.router)
    app.include_router(webhooks.router)
    app.include_router(internal.router)
    return app


app = create_app()
