from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(
    env: Mapping[str, str],
    name: str,
    *,
    default: float,
    minimum: float = 0.0,
    maximum: float | None = None,
) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class GuardSettings:
    max_recursion_depth: int = 2
    recursion_cache_ttl_s: float = 60.0
    recursion_sweep_probability: float = 0.1
    stuck_threshold_s: int = 3600
    stuck_batch_size: int = 100
    deadlock_interval_s: int = 900
    outbox_max_attempts: int = 3
    outbox_batch_size: int = 10
    outbox_poll_interval_ms: int = 1000
    search_max_docs: int = 50
    search_max_pages: int = 10
    search_max_runtime_ms: int = 10_000
    search_rate_window_s: int = 60
    search_max_requests_per_user: int = 100
    search_max_requests_per_ip: int = 200
    orphan_cleanup_enabled: bool = False
    orphan_cleanup_dry_run: bool = True
    orphan_cleanup_rollout_pct: float = 100.0
    orphan_cleanup_interval_s: int = 3600
    orphan_sample_size: int = 100
    orphan_batch_size: int = 100
    docstore_backend: str = "memory"
    docstore_sqlite_path: str = ".runtime/concierge_docs.sqlite3"
    guard_state_backend: str = "memory"
    redis_dsn: str = ""
    redis_key_prefix: str = "concierge"
    require_true_stack: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GuardSettings":
        env = os.environ if environ is None else environ
        return cls(
            max_recursion_depth=_env_int(env, "RECURSION_MAX_DEPTH", default=2, minimum=1),
            recursion_cache_ttl_s=_env_float(env, "RECURSION_CACHE_TTL_S", default=60.0, minimum=1.0),
            recursion_sweep_probability=_env_float(
                env,
                "RECURSION_SWEEP_PROBABILITY",
                default=0.1,
                minimum=0.0,
                maximum=1.0,
            ),
            stuck_threshold_s=_env_int(env, "DEADLOCK_STUCK_THRESHOLD_S", default=3600, minimum=60),
            stuck_batch_size=_env_int(env, "DEADLOCK_BATCH_SIZE", default=100, minimum=1),
            deadlock_interval_s=_env_int(env, "DEADLOCK_INTERVAL_S", default=900, minimum=1),
            outbox_max_attempts=_env_int(env, "OUTBOX_MAX_ATTEMPTS", default=3, minimum=1),
            outbox_batch_size=_env_int(env, "OUTBOX_BATCH_SIZE", default=10, minimum=1),
            outbox_poll_interval_ms=_env_int(env, "OUTBOX_POLL_INTERVAL_MS", default=1000, minimum=1),
            search_max_docs=_env_int(env, "SEARCH_MAX_DOCS", default=50, minimum=1),
            search_max_pages=_env_int(env, "SEARCH_MAX_PAGES", default=10, minimum=1),
            search_max_runtime_ms=_env_int(env, "SEARCH_MAX_RUNTIME_MS", default=10_000, minimum=1),
            search_rate_window_s=_env_int(env, "SEARCH_RATE_WINDOW_S", default=60, minimum=1),
            search_max_requests_per_user=_env_int(env, "SEARCH_MAX_REQUESTS_PER_USER", default=100, minimum=1),
            search_max_requests_per_ip=_env_int(env, "SEARCH_MAX_REQUESTS_PER_IP", default=200, minimum=1),
            orphan_cleanup_enabled=_env_bool(env, "ORPHAN_CLEANUP_ENABLED", default=False),
            orphan_cleanup_dry_run=_env_bool(env, "ORPHAN_CLEANUP_DRY_RUN", default=True),
            orphan_cleanup_rollout_pct=_env_float(
                env,
                "ORPHAN_CLEANUP_ROLLOUT_PCT",
                default=100.0,
                minimum=0.0,
                maximum=100.0,
            ),
            orphan_cleanup_interval_s=_env_int(env, "ORPHAN_CLEANUP_INTERVAL_S", default=3600, minimum=1),
            orphan_sample_size=_env_int(env, "ORPHAN_SAMPLE_SIZE", default=100, minimum=1),
            orphan_batch_size=_env_int(env, "ORPHAN_BATCH_SIZE", default=100, minimum=1),
            docstore_backend=str(env.get("CONCIERGE_DOCSTORE_BACKEND", "memory")).strip().lower() or "memory",
            docstore_sqlite_path=str(
                env.get("CONCIERGE_DOCSTORE_SQLITE_PATH", ".runtime/concierge_docs.sqlite3")
            ).strip()
            or ".runtime/concierge_docs.sqlite3",
            guard_state_backend=str(env.get("CONCIERGE_GUARD_STATE_BACKEND", "memory")).strip().lower()
            or "memory",
            redis_dsn=str(env.get("REDIS_DSN", "")).strip(),
            redis_key_prefix=str(env.get("CONCIERGE_REDIS_KEY_PREFIX", "concierge")).strip() or "concierge",
            require_true_stack=_env_bool(env, "CONCIERGE_REQUIRE_TRUESTACK", default=False),
        )
