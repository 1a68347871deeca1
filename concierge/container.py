from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from concierge.config import GuardSettings
from concierge.deadlock import DeadlockReleaser
from concierge.deletion_guard import DeletionGuard
from concierge.document_store import InMemoryDocumentStore, create_document_store_from_env
from concierge.gateways import (
    MockCompletionClient,
    MockMessagingGateway,
    build_outbox_executors,
    create_completion_client_from_env,
    create_messaging_gateway_from_env,
)
from concierge.guard_state import InMemoryGuardStateStore, create_guard_state_from_env
from concierge.jobs import JobsRepository
from concierge.orphan_cleanup import OrphanCleanup
from concierge.outbox import OutboxProcessor, OutboxService
from concierge.recursion_guard import RecursionGuard
from concierge.search_broker import SearchBroker
from concierge.sweeps import SweepRunner
from concierge.vendor_replies import VendorReplyWorkflow

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: GuardSettings
    store: Any
    recursion_state: Any
    rate_limit_state: Any
    messaging: Any
    completion: Any
    jobs: JobsRepository
    outbox: OutboxService
    outbox_processor: OutboxProcessor
    recursion_guard: RecursionGuard
    deletion_guard: DeletionGuard
    deadlock: DeadlockReleaser
    orphan_cleanup: OrphanCleanup
    search_broker: SearchBroker
    vendor_replies: VendorReplyWorkflow
    sweeps: SweepRunner

    def reset(self) -> None:
        self.store.reset()
        self.recursion_state.reset()
        self.rate_limit_state.reset()
        if isinstance(self.messaging, MockMessagingGateway):
            self.messaging.sent.clear()


def _with_fallback(
    name: str,
    factory: Callable[[], Any],
    fallback: Callable[[], Any],
    require_true_stack: bool,
) -> Any:
    try:
        return factory()
    except (RuntimeError, ValueError) as exc:
        if require_true_stack:
            raise
        logger.warning("backend_fallback component=%s error=%s", name, exc)
        return fallback()


def build_container(environ: Mapping[str, str] | None = None) -> ServiceContainer:
    env = os.environ if environ is None else environ
    settings = GuardSettings.from_env(env)

    store = _with_fallback(
        "document_store",
        lambda: create_document_store_from_env(env),
        InMemoryDocumentStore,
        settings.require_true_stack,
    )
    recursion_state = _with_fallback(
        "recursion_state",
        lambda: create_guard_state_from_env(env, scope="recursion"),
        InMemoryGuardStateStore,
        settings.require_true_stack,
    )
    rate_limit_state = _with_fallback(
        "rate_limit_state",
        lambda: create_guard_state_from_env(env, scope="ratelimit"),
        InMemoryGuardStateStore,
        settings.require_true_stack,
    )
    messaging = _with_fallback(
        "messaging",
        lambda: create_messaging_gateway_from_env(env),
        MockMessagingGateway,
        settings.require_true_stack,
    )
    completion = _with_fallback(
        "completion",
        lambda: create_completion_client_from_env(env),
        MockCompletionClient,
        settings.require_true_stack,
    )

    jobs = JobsRepository(store)
    outbox = OutboxService(store, default_max_attempts=settings.outbox_max_attempts)
    outbox_processor = OutboxProcessor(
        outbox=outbox,
        jobs=jobs,
        executors=build_outbox_executors(messaging=messaging, completion=completion),
        batch_size=settings.outbox_batch_size,
        poll_interval_ms=settings.outbox_poll_interval_ms,
    )
    recursion_guard = RecursionGuard(
        recursion_state,
        max_depth=settings.max_recursion_depth,
        ttl_s=settings.recursion_cache_ttl_s,
        sweep_probability=settings.recursion_sweep_probability,
    )
    deletion_guard = DeletionGuard(environ)
    deadlock = DeadlockReleaser(
        store=store,
        jobs=jobs,
        stuck_threshold_s=settings.stuck_threshold_s,
        batch_size=settings.stuck_batch_size,
    )
    orphan_cleanup = OrphanCleanup(
        store=store,
        deletion_guard=deletion_guard,
        sample_size=settings.orphan_sample_size,
        batch_size=settings.orphan_batch_size,
    )
    search_broker = SearchBroker(
        store=store,
        state_store=rate_limit_state,
        max_docs=settings.search_max_docs,
        max_pages=settings.search_max_pages,
        max_runtime_ms=settings.search_max_runtime_ms,
        rate_window_s=settings.search_rate_window_s,
        max_requests_per_user=settings.search_max_requests_per_user,
        max_requests_per_ip=settings.search_max_requests_per_ip,
    )
    vendor_replies = VendorReplyWorkflow(
        jobs=jobs,
        outbox=outbox,
        recursion_guard=recursion_guard,
        store=store,
    )
    sweeps = SweepRunner(
        outbox_processor=outbox_processor,
        deadlock_releaser=deadlock,
        orphan_cleanup=orphan_cleanup,
        settings=settings,
    )
    return ServiceContainer(
        settings=settings,
        store=store,
        recursion_state=recursion_state,
        rate_limit_state=rate_limit_state,
        messaging=messaging,
        completion=completion,
        jobs=jobs,
        outbox=outbox,
        outbox_processor=outbox_processor,
        recursion_guard=recursion_guard,
        deletion_guard=deletion_guard,
        deadlock=deadlock,
        orphan_cleanup=orphan_cleanup,
        search_broker=search_broker,
        vendor_replies=vendor_replies,
        sweeps=sweeps,
    )


container = build_container()
