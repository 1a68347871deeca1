from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any

import jsonschema

from concierge.errors import ApiError, pagination_limit_error, rate_limit_error
from concierge.guard_state import InMemoryGuardStateStore
from concierge.logging_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_MAX_DOCS = 50
DEFAULT_MAX_PAGES = 10
DEFAULT_MAX_RUNTIME_MS = 10_000
DEFAULT_RATE_WINDOW_S = 60
DEFAULT_MAX_REQUESTS_PER_USER = 100
DEFAULT_MAX_REQUESTS_PER_IP = 200

FLAG_TOKEN_INVALID = "pagination_token_invalid"
FLAG_CURSOR_FAILED = "pagination_cursor_failed"
FLAG_QUERY_TIMEOUT = "query_timeout"

SEARCH_FILTER_WHITELIST: dict[str, set[str]] = {
    "jobs": {"status", "job_type", "vendor_phone", "customer_phone", "created_at", "updated_at"},
    "listings": {"category", "city", "business_id", "status", "rating", "price_level", "created_at"},
    "outbox": {"status", "type", "job_id", "created_at", "updated_at"},
}

_PAGE_TOKEN_SCHEMA = {
    "type": "object",
    "required": ["docId", "page"],
    "properties": {
        "docId": {"type": "string", "minLength": 1},
        "page": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}


@dataclass(frozen=True)
class SearchFilter:
    field: str
    op: str
    value: Any

    def describe(self) -> str:
        return f"{self.field} {self.op} {self.value}"


@dataclass
class SearchOptions:
    collection: str
    filters: list[SearchFilter] = field(default_factory=list)
    order_by: str | None = None
    order_direction: str = "asc"
    limit: int | None = None
    page_token: str | None = None
    user_id: str | None = None
    ip_address: str | None = None
    trace_id: str | None = None


@dataclass
class SearchResponse:
    results: list[dict[str, Any]]
    total_count: int
    query_plan: dict[str, Any]
    partial_outage_flags: list[str]
    execution_time_ms: int
    next_page_token: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "results": self.results,
            "total_count": self.total_count,
            "next_page_token": self.next_page_token,
            "query_plan": self.query_plan,
            "partial_outage_flags": list(self.partial_outage_flags),
            "execution_time_ms": self.execution_time_ms,
        }


def encode_page_token(doc_id: str, page: int) -> str:
    raw = json.dumps({"docId": doc_id, "page": int(page)}, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_page_token(token: str) -> dict[str, Any] | None:
    """Decode an opaque page token; anything malformed yields None."""
    try:
        # Standard and URL-safe alphabets are both accepted.
        cleaned = token.strip().replace("-", "+").replace("_", "/")
        padded = cleaned + "=" * (-len(cleaned) % 4)
        data = json.loads(base64.b64decode(padded.encode("ascii")).decode("utf-8"))
        jsonschema.validate(instance=data, schema=_PAGE_TOKEN_SCHEMA)
    except (binascii.Error, UnicodeError, ValueError, jsonschema.ValidationError):
        return None
    return data


class FixedWindowRateLimiter:
    """Counts requests per identifier in fixed windows kept in the guard state store."""

    def __init__(
        self,
        state_store: Any,
        *,
        scope: str,
        max_requests: int,
        window_s: int = DEFAULT_RATE_WINDOW_S,
        clock: Callable[[], float] = time.time,
        max_cas_attempts: int = 5,
    ) -> None:
        self._state = state_store
        self.scope = scope
        self.max_requests = max(1, int(max_requests))
        self.window_s = max(1, int(window_s))
        self._clock = clock
        self._max_cas_attempts = max(1, int(max_cas_attempts))

    def allow(self, identifier: str) -> bool:
        key = f"ratelimit:{self.scope}:{identifier}"
        for _ in range(self._max_cas_attempts):
            current = self._state.get(key)
            now = self._clock()
            if not isinstance(current, dict) or now - float(current.get("window_start", 0)) > self.window_s:
                new = {"window_start": now, "count": 1}
                expected = current if isinstance(current, dict) else None
            elif int(current.get("count", 0)) >= self.max_requests:
                return False
            else:
                new = {"window_start": current["window_start"], "count": int(current["count"]) + 1}
                expected = current
            if self._state.compare_and_swap(key, expected=expected, new=new, ttl_s=self.window_s * 2):
                return True
        logger.warning("rate_limiter_contention scope=%s identifier=%s", self.scope, identifier)
        return True


class SearchBroker:
    """Single entry point for paginated reads with hard caps."""

    def __init__(
        self,
        *,
        store: Any,
        state_store: Any | None = None,
        max_docs: int = DEFAULT_MAX_DOCS,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_runtime_ms: int = DEFAULT_MAX_RUNTIME_MS,
        rate_window_s: int = DEFAULT_RATE_WINDOW_S,
        max_requests_per_user: int = DEFAULT_MAX_REQUESTS_PER_USER,
        max_requests_per_ip: int = DEFAULT_MAX_REQUESTS_PER_IP,
        filter_whitelist: dict[str, set[str]] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        state = state_store if state_store is not None else InMemoryGuardStateStore()
        self.max_docs = max(1, int(max_docs))
        self.max_pages = max(1, int(max_pages))
        self.max_runtime_ms = max(1, int(max_runtime_ms))
        self.filter_whitelist = filter_whitelist if filter_whitelist is not None else SEARCH_FILTER_WHITELIST
        self.user_limiter = FixedWindowRateLimiter(
            state,
            scope="user",
            max_requests=max_requests_per_user,
            window_s=rate_window_s,
            clock=clock,
        )
        self.ip_limiter = FixedWindowRateLimiter(
            state,
            scope="ip",
            max_requests=max_requests_per_ip,
            window_s=rate_window_s,
            clock=clock,
        )
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="search-query")

    def _check_rate_limits(self, options: SearchOptions) -> None:
        checks = (
            ("user", options.user_id, self.user_limiter),
            ("ip", options.ip_address, self.ip_limiter),
        )
        for scope, identifier, limiter in checks:
            if not identifier:
                continue
            if not limiter.allow(identifier):
                log_event(
                    logger,
                    "search_rate_limited",
                    level=logging.WARNING,
                    component="search_broker",
                    trace_id=options.trace_id,
                    scope=scope,
                    identifier=identifier,
                )
                raise rate_limit_error(scope=scope, limit=limiter.max_requests, window_s=limiter.window_s)

    def _check_query_shape(self, options: SearchOptions) -> None:
        allowed = self.filter_whitelist.get(options.collection)
        if allowed is None:
            raise ApiError(
                code="SEARCH_COLLECTION_NOT_ALLOWED",
                message=f"collection is not searchable: {options.collection}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        fields = [item.field for item in options.filters]
        if options.order_by:
            fields.append(options.order_by)
        rejected = sorted({name for name in fields if name not in allowed})
        if rejected:
            raise ApiError(
                code="SEARCH_FILTER_NOT_ALLOWED",
                message=f"fields not allowed for {options.collection}: {', '.join(rejected)}",
                error_class="validation",
                retryable=False,
                http_status=400,
                details={"fields": rejected},
            )
        if options.order_direction.lower() not in {"asc", "desc"}:
            raise ApiError(
                code="SEARCH_FILTER_NOT_ALLOWED",
                message=f"unsupported order direction: {options.order_direction}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )

    def execute(self, options: SearchOptions) -> SearchResponse:
        started = time.monotonic()
        flags: list[str] = []

        self._check_rate_limits(options)
        self._check_query_shape(options)

        requested_limit = int(options.limit) if options.limit is not None else self.max_docs
        limit = min(max(1, requested_limit), self.max_docs)

        page = 1
        cursor = None
        if options.page_token:
            decoded = decode_page_token(options.page_token)
            if decoded is None:
                flags.append(FLAG_TOKEN_INVALID)
            else:
                page = int(decoded["page"])
                if page > self.max_pages:
                    log_event(
                        logger,
                        "search_pagination_limit",
                        level=logging.WARNING,
                        component="search_broker",
                        trace_id=options.trace_id,
                        page=page,
                        max_pages=self.max_pages,
                    )
                    raise pagination_limit_error(page=page, max_pages=self.max_pages)
                try:
                    cursor = self.store.get(f"{options.collection}/{decoded['docId']}")
                except Exception:
                    logger.exception("search_cursor_fetch_failed trace_id=%s", options.trace_id)
                    cursor = None
                if cursor is None:
                    flags.append(FLAG_CURSOR_FAILED)
                    page = 1

        direction = options.order_direction.lower()
        query_plan = {
            "collection": options.collection,
            "filters": [item.describe() for item in options.filters],
            "order_by": f"{options.order_by} {direction}" if options.order_by else None,
            "limit": limit,
            "requested_limit": requested_limit,
            "limit_clamped": requested_limit > self.max_docs,
            "start_after": cursor.id if cursor is not None else None,
            "page": page,
        }

        future = self._executor.submit(
            self.store.query,
            options.collection,
            filters=[(item.field, item.op, item.value) for item in options.filters],
            order_by=options.order_by,
            direction=direction,
            start_after=cursor,
            limit=limit + 1,
        )
        try:
            rows = future.result(timeout=self.max_runtime_ms / 1000.0)
        except FutureTimeoutError as exc:
            flags.append(FLAG_QUERY_TIMEOUT)
            log_event(
                logger,
                "search_query_timeout",
                level=logging.ERROR,
                component="search_broker",
                trace_id=options.trace_id,
                query_plan=query_plan,
                max_runtime_ms=self.max_runtime_ms,
            )
            raise ApiError(
                code="SEARCH_QUERY_TIMEOUT",
                message=f"query exceeded {self.max_runtime_ms}ms",
                error_class="transient",
                retryable=True,
                http_status=504,
                details={"partial_outage_flags": flags, "query_plan": query_plan},
            ) from exc

        has_more = len(rows) > limit
        page_rows = rows[:limit]
        next_token = encode_page_token(page_rows[-1].id, page + 1) if has_more and page_rows else None
        elapsed_ms = int((time.monotonic() - started) * 1000)
        log_event(
            logger,
            "search_executed",
            component="search_broker",
            trace_id=options.trace_id,
            collection=options.collection,
            returned=len(page_rows),
            page=page,
            limit_clamped=query_plan["limit_clamped"],
            flags=flags,
            execution_time_ms=elapsed_ms,
        )
        return SearchResponse(
            results=[{"id": doc.id, **doc.data} for doc in page_rows],
            total_count=len(page_rows),
            next_page_token=next_token,
            query_plan=query_plan,
            partial_outage_flags=flags,
            execution_time_ms=elapsed_ms,
        )
