from __future__ import annotations

from fastapi import APIRouter, Header, Request

from concierge.container import container
from concierge.errors import ApiError
from concierge.routes._deps import trace_id_from_request
from concierge.schemas import InboundMessageRequest, success_envelope
from concierge.security import verify_webhook_signature

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/messaging")
async def inbound_message(
    request: Request,
    x_webhook_signature: str | None = Header(default=None, alias="x-webhook-signature"),
):
    body = await request.body()
    verify_webhook_signature(body, x_webhook_signature)
    try:
        payload = InboundMessageRequest.model_validate_json(body)
    except ValueError as exc:
        raise ApiError(
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            http_status=400,
        ) from exc
    trace_id = trace_id_from_request(request)
    outcome = container.vendor_replies.handle_inbound(
        event_id=payload.event_id,
        from_phone=payload.from_phone,
        body=payload.body,
        trace_id=trace_id,
    )
    return success_envelope(outcome, trace_id)
