from __future__ import annotations

from fastapi import APIRouter, Request

from concierge.container import container
from concierge.routes._deps import client_ip_from_request, trace_id_from_request
from concierge.schemas import SearchRequest, success_envelope
from concierge.search_broker import SearchFilter, SearchOptions

router = APIRouter(prefix="/api/v1", tags=["search"])


@router.post("/search")
def search(payload: SearchRequest, request: Request):
    trace_id = trace_id_from_request(request)
    options = SearchOptions(
        collection=payload.collection,
        filters=[SearchFilter(field=f.field, op=f.op, value=f.value) for f in payload.filters],
        order_by=payload.order_by,
        order_direction=payload.order_direction,
        limit=payload.limit,
        page_token=payload.page_token,
        user_id=getattr(request.state, "auth_subject", None),
        ip_address=client_ip_from_request(request),
        trace_id=trace_id,
    )
    result = container.search_broker.execute(options)
    return success_envelope(result.as_dict(), trace_id)
