from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


def rate_limit_error(*, scope: str, limit: int, window_s: int) -> ApiError:
    return ApiError(
        code="RATE_LIMIT_EXCEEDED",
        message=f"rate limit exceeded for {scope}: {limit} requests per {window_s}s",
        error_class="resource_exhausted",
        retryable=False,
        http_status=429,
        details={"scope": scope, "limit": limit, "window_s": window_s},
    )


def pagination_limit_error(*, page: int, max_pages: int) -> ApiError:
    return ApiError(
        code="SEARCH_PAGINATION_LIMIT",
        message=f"maximum pagination limit reached: page {page} > {max_pages}",
        error_class="resource_exhausted",
        retryable=False,
        http_status=400,
        details={"page": page, "max_pages": max_pages},
    )
