from __future__ import annotations

import functools
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from concierge.errors import ApiError
from concierge.guard_state import InMemoryGuardStateStore
from concierge.logging_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 2
DEFAULT_TTL_S = 60.0
DEFAULT_SWEEP_PROBABILITY = 0.1


@dataclass(frozen=True)
class RecursionCheckResult:
    halt: bool
    depth: int
    reason: str | None = None


@dataclass
class TriggerEvent:
    """A document-change or inbound-message event as delivered to a handler."""

    event_id: str
    document_path: str
    data: dict[str, Any] = field(default_factory=dict)


class RecursionGuard:
    """Tracks how many times one platform event id has re-entered the handlers.

    Depth 1 is the first observation; every re-observation within the TTL adds
    one. Anything above `max_depth` is halted. State that cannot be read or
    written consistently counts as a fresh start, so the guard never blocks
    first-time work.
    """

    def __init__(
        self,
        state_store: Any | None = None,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        ttl_s: float = DEFAULT_TTL_S,
        sweep_probability: float = DEFAULT_SWEEP_PROBABILITY,
        rng: Callable[[], float] = random.random,
        max_cas_attempts: int = 5,
    ) -> None:
        self._state = state_store if state_store is not None else InMemoryGuardStateStore()
        self._max_cas_attempts = max(1, int(max_cas_attempts))
        self._max_depth = max(1, int(max_depth))
        self._ttl_s = float(ttl_s)
        self._sweep_probability = float(sweep_probability)
        self._rng = rng

    @property
    def max_depth(self) -> int:
        return self._max_depth

    @staticmethod
    def _key(event_id: str) -> str:
        return f"recursion:{event_id}"

    def _record_observation(self, key: str, *, trace_id: str | None) -> int:
        for _ in range(self._max_cas_attempts):
            current = self._state.get(key)
            depth = 1
            if isinstance(current, dict):
                depth = int(current.get("depth", 0)) + 1
            else:
                current = None
            entry = {"depth": depth, "last_seen": time.time()}
            if self._state.compare_and_swap(key, expected=current, new=entry, ttl_s=self._ttl_s):
                return depth
        # Contended past every retry: treat as a fresh start and leave the stored depth alone.
        log_event(
            logger,
            "recursion_guard_contended",
            level=logging.WARNING,
            component="recursion_guard",
            trace_id=trace_id,
            key=key,
            attempts=self._max_cas_attempts,
        )
        return 1

    def check(
        self,
        event_id: str,
        *,
        trigger_name: str,
        document_path: str,
        trace_id: str | None = None,
    ) -> RecursionCheckResult:
        if self._rng() < self._sweep_probability:
            swept = self._state.sweep_expired()
            if swept:
                logger.debug("recursion_guard_sweep removed=%s", swept)

        if not event_id:
            log_event(
                logger,
                "recursion_guard_missing_event_id",
                level=logging.WARNING,
                component="recursion_guard",
                trace_id=trace_id,
                trigger=trigger_name,
                document_path=document_path,
            )
            return RecursionCheckResult(halt=False, depth=1)

        depth = self._record_observation(self._key(event_id), trace_id=trace_id)

        if depth > self._max_depth:
            reason = f"Recursion depth {depth} exceeds maximum {self._max_depth}"
            log_event(
                logger,
                "recursion_guard_halt",
                level=logging.ERROR,
                component="recursion_guard",
                trace_id=trace_id,
                event_id=event_id,
                trigger=trigger_name,
                document_path=document_path,
                depth=depth,
                max_depth=self._max_depth,
            )
            return RecursionCheckResult(halt=True, depth=depth, reason=reason)

        log_event(
            logger,
            "recursion_guard_allow",
            level=logging.DEBUG,
            component="recursion_guard",
            trace_id=trace_id,
            event_id=event_id,
            trigger=trigger_name,
            document_path=document_path,
            depth=depth,
        )
        return RecursionCheckResult(halt=False, depth=depth)

    def assert_safe(
        self,
        event_id: str,
        *,
        trigger_name: str,
        document_path: str,
        trace_id: str | None = None,
    ) -> RecursionCheckResult:
        result = self.check(
            event_id,
            trigger_name=trigger_name,
            document_path=document_path,
            trace_id=trace_id,
        )
        if result.halt:
            raise ApiError(
                code="RECURSION_LIMIT_EXCEEDED",
                message=result.reason or "recursion limit exceeded",
                error_class="business_rule",
                retryable=False,
                http_status=409,
                details={"event_id": event_id, "depth": result.depth, "trigger": trigger_name},
            )
        return result

    def guarded(self, trigger_name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Wrap a trigger handler so a halted cascade skips it and returns None."""

        def decorator(handler: Callable[..., Any]) -> Callable[..., Any]:
            @functools.wraps(handler)
            def wrapper(event: TriggerEvent, *args: Any, **kwargs: Any) -> Any:
                result = self.check(
                    event.event_id,
                    trigger_name=trigger_name,
                    document_path=event.document_path,
                    trace_id=kwargs.get("trace_id"),
                )
                if result.halt:
                    return None
                return handler(event, *args, **kwargs)

            return wrapper

        return decorator

    def cache_size(self) -> int:
        return self._state.size()

    def reset(self) -> None:
        self._state.reset()
