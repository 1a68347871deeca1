from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class SearchFilterModel(BaseModel):
    field: str = Field(min_length=1)
    op: Literal["==", "!=", "<", "<=", ">", ">=", "in"] = "=="
    value: Any = None


class SearchRequest(BaseModel):
    collection: str = Field(min_length=1)
    filters: list[SearchFilterModel] = Field(default_factory=list)
    order_by: str | None = None
    order_direction: Literal["asc", "desc"] = "asc"
    limit: int | None = Field(default=None, ge=1)
    page_token: str | None = None


class InboundMessageRequest(BaseModel):
    event_id: str = Field(min_length=1)
    from_phone: str = Field(min_length=3)
    body: str = ""


class OrphanSweepRequest(BaseModel):
    dry_run: bool = True


class PurgeRequest(BaseModel):
    reason: str = ""
    confirmed: bool = False
    document_ids: list[str] = Field(default_factory=list)
    limit: int = Field(default=500, ge=1, le=5000)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
