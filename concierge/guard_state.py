from __future__ import annotations

import copy
import json
import math
import os
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any


class InMemoryGuardStateStore:
    """Process-local TTL key/value store for guard bookkeeping.

    Correct for a single instance. Several instances each keep their own view,
    which makes the recursion guard and rate limiter best-effort across a fleet.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def _live(self, key: str) -> tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return False, None
        return True, value

    def get(self, key: str) -> Any | None:
        with self._lock:
            present, value = self._live(key)
            return copy.deepcopy(value) if present else None

    def set(self, key: str, value: Any, *, ttl_s: float) -> None:
        with self._lock:
            self._entries[key] = (copy.deepcopy(value), self._clock() + max(0.0, float(ttl_s)))

    def compare_and_swap(self, key: str, *, expected: Any | None, new: Any, ttl_s: float) -> bool:
        """Write `new` only if the live value equals `expected` (None means absent)."""
        with self._lock:
            present, current = self._live(key)
            if expected is None:
                if present:
                    return False
            elif not present or current != expected:
                return False
            self._entries[key] = (copy.deepcopy(new), self._clock() + max(0.0, float(ttl_s)))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                self._entries.pop(key, None)
            return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError(
            "redis is required for CONCIERGE_GUARD_STATE_BACKEND=redis; install redis>=5"
        ) from exc
    return redis


class RedisGuardStateStore:
    """Shared guard state; expiry is native, compare-and-swap uses WATCH/MULTI."""

    def __init__(self, *, dsn: str, namespace: str = "concierge") -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis guard state backend")
        self._namespace = namespace.strip() or "concierge"
        self._redis = _import_redis()
        self._client = self._redis.Redis.from_url(dsn.strip(), decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:guard:{key}"

    @staticmethod
    def _dumps(value: Any) -> str:
        return json.dumps(value, sort_keys=True, ensure_ascii=True, separators=(",", ":"))

    @staticmethod
    def _loads(raw: Any) -> Any | None:
        if not isinstance(raw, str) or not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    @staticmethod
    def _ttl(ttl_s: float) -> int:
        return max(1, math.ceil(float(ttl_s)))

    def get(self, key: str) -> Any | None:
        return self._loads(self._client.get(self._key(key)))

    def set(self, key: str, value: Any, *, ttl_s: float) -> None:
        self._client.set(self._key(key), self._dumps(value), ex=self._ttl(ttl_s))

    def compare_and_swap(self, key: str, *, expected: Any | None, new: Any, ttl_s: float) -> bool:
        redis_key = self._key(key)
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(redis_key)
                current = self._loads(pipe.get(redis_key))
                if current != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(redis_key, self._dumps(new), ex=self._ttl(ttl_s))
                pipe.execute()
                return True
            except self._redis.exceptions.WatchError:
                return False

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def sweep_expired(self) -> int:
        return 0

    def size(self) -> int:
        return sum(1 for _ in self._client.scan_iter(match=self._key("*")))

    def reset(self) -> None:
        keys = list(self._client.scan_iter(match=self._key("*")))
        if keys:
            self._client.delete(*keys)


GuardStateStore = InMemoryGuardStateStore | RedisGuardStateStore


def create_guard_state_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    scope: str = "default",
) -> InMemoryGuardStateStore | RedisGuardStateStore:
    env = os.environ if environ is None else environ
    backend = env.get("CONCIERGE_GUARD_STATE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryGuardStateStore()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when CONCIERGE_GUARD_STATE_BACKEND=redis")
        prefix = env.get("CONCIERGE_REDIS_KEY_PREFIX", "concierge").strip() or "concierge"
        return RedisGuardStateStore(dsn=dsn, namespace=f"{prefix}:{scope}")
    raise RuntimeError(f"unsupported guard state backend: {backend}")
