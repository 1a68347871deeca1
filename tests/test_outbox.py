from __future__ import annotations

import pytest

from concierge.document_store import InMemoryDocumentStore
from concierge.errors import ApiError
from concierge.gateways import MockCompletionClient, MockMessagingGateway, build_outbox_executors
from concierge.jobs import JobsRepository
from concierge.outbox import OutboxProcessor, OutboxService


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def outbox(store) -> OutboxService:
    return OutboxService(store)


def _enqueue(outbox: OutboxService, **kwargs) -> str:
    return outbox.enqueue(
        job_id=kwargs.pop("job_id", "job_1"),
        entry_type="message_send",
        payload={"to": "+905551112233", "body": "New order #12"},
        trace_id="trace_obx",
        **kwargs,
    )


def test_enqueue_defaults(outbox):
    entry = outbox.get(_enqueue(outbox))
    assert entry["status"] == "pending"
    assert entry["attempts"] == 0
    assert entry["max_attempts"] == 3
    assert entry["last_attempt_id"] is None


def test_enqueue_validates_payload_schema(outbox):
    with pytest.raises(ApiError) as exc_info:
        outbox.enqueue(job_id="job_1", entry_type="message_send", payload={"to": "+90555"})
    assert exc_info.value.code == "OUTBOX_PAYLOAD_INVALID"
    with pytest.raises(ApiError) as exc_info:
        outbox.enqueue(job_id="job_1", entry_type="fax_send", payload={})
    assert exc_info.value.code == "OUTBOX_TYPE_UNSUPPORTED"


def test_claim_with_same_attempt_id_is_a_noop(outbox):
    outbox_id = _enqueue(outbox)
    first = outbox.claim(outbox_id, attempt_id="att_1", trace_id="t")
    duplicate = outbox.claim(outbox_id, attempt_id="att_1", trace_id="t")
    assert first is not None
    assert first["status"] == "processing"
    assert first["attempts"] == 1
    assert duplicate is None
    assert outbox.get(outbox_id)["attempts"] == 1


def test_claim_missing_or_finished_entry_returns_none(outbox):
    assert outbox.claim("obx_missing", attempt_id="att_1") is None
    outbox_id = _enqueue(outbox)
    outbox.claim(outbox_id, attempt_id="att_1")
    outbox.complete(outbox_id, evidence={"message_id": "m1"})
    assert outbox.claim(outbox_id, attempt_id="att_2") is None
    assert outbox.get(outbox_id)["status"] == "completed"


def test_fail_returns_to_pending_until_attempts_run_out(outbox):
    outbox_id = _enqueue(outbox)
    for attempt in range(1, 4):
        claimed = outbox.claim(outbox_id, attempt_id=f"att_{attempt}")
        assert claimed is not None
        assert claimed["attempts"] == attempt
        failed = outbox.fail(outbox_id, error="gateway 503")
        expected = "failed" if attempt == 3 else "pending"
        assert failed["status"] == expected
    entry = outbox.get(outbox_id)
    assert entry["attempts"] == 3
    assert entry["processed_at"] is not None
    assert outbox.claim(outbox_id, attempt_id="att_4") is None
    assert outbox.get(outbox_id)["attempts"] == 3


def test_claim_at_max_attempts_marks_failed(store, outbox):
    outbox_id = _enqueue(outbox, max_attempts=1)
    outbox.claim(outbox_id, attempt_id="att_1")
    store.update(f"outbox/{outbox_id}", {"status": "pending"})

    assert outbox.claim(outbox_id, attempt_id="att_2") is None
    entry = outbox.get(outbox_id)
    assert entry["status"] == "failed"
    assert entry["last_error"] == "max attempts exceeded"
    assert entry["attempts"] == 1


def test_enqueue_inside_transaction_is_atomic_with_job_write(store, outbox):
    jobs = JobsRepository(store)

    def _write(txn):
        jobs.create(job_type="food_order", job_id="job_tx", transaction=txn)
        _enqueue(outbox, job_id="job_tx", transaction=txn)
        raise RuntimeError("handler crashed before commit")

    with pytest.raises(RuntimeError):
        store.run_transaction(_write)
    assert jobs.get("job_tx") is None
    assert outbox.list_pending() == []


def test_list_pending_is_oldest_first(store, clock):
    outbox = OutboxService(store, clock=clock)
    first = _enqueue(outbox)
    clock.advance(seconds=1)
    second = _enqueue(outbox)
    assert [e["outbox_id"] for e in outbox.list_pending(limit=10)] == [first, second]


def test_processor_completes_and_records_outcome_on_job(store, outbox):
    jobs = JobsRepository(store)
    jobs.create(job_type="food_order", job_id="job_ok")
    gateway = MockMessagingGateway()
    processor = OutboxProcessor(
        outbox=outbox,
        jobs=jobs,
        executors=build_outbox_executors(messaging=gateway, completion=MockCompletionClient()),
    )
    outbox_id = _enqueue(outbox, job_id="job_ok")

    stats = processor.run_once()

    assert stats["completed"] == 1
    assert outbox.get(outbox_id)["status"] == "completed"
    assert outbox.get(outbox_id)["evidence"]["message_id"] == "mock_msg_1"
    assert jobs.get("job_ok")["outbox_results"][outbox_id]["status"] == "completed"
    assert gateway.sent[0]["to"] == "+905551112233"


def test_processor_retries_transient_failures(store, outbox):
    jobs = JobsRepository(store)
    jobs.create(job_type="food_order", job_id="job_retry")
    processor = OutboxProcessor(
        outbox=outbox,
        jobs=jobs,
        executors=build_outbox_executors(
            messaging=MockMessagingGateway(fail_times=1),
            completion=MockCompletionClient(),
        ),
    )
    outbox_id = _enqueue(outbox, job_id="job_retry")

    first = processor.run_once()
    assert first["retrying"] == 1
    assert outbox.get(outbox_id)["status"] == "pending"
    assert "mock messaging gateway failure" in outbox.get(outbox_id)["last_error"]

    second = processor.run_once()
    assert second["completed"] == 1
    assert outbox.get(outbox_id)["attempts"] == 2


def test_processor_marks_exhausted_entries_failed(store, outbox):
    jobs = JobsRepository(store)
    processor = OutboxProcessor(
        outbox=outbox,
        jobs=jobs,
        executors=build_outbox_executors(
            messaging=MockMessagingGateway(fail_times=10),
            completion=MockCompletionClient(),
        ),
    )
    outbox_id = _enqueue(outbox)
    totals = [processor.run_once() for _ in range(4)]
    assert sum(t["failed"] for t in totals) == 1
    assert outbox.get(outbox_id)["status"] == "failed"
    assert outbox.get(outbox_id)["attempts"] == 3


def test_llm_request_runs_through_completion_client(store, outbox):
    jobs = JobsRepository(store)
    processor = OutboxProcessor(
        outbox=outbox,
        jobs=jobs,
        executors=build_outbox_executors(messaging=MockMessagingGateway(), completion=MockCompletionClient()),
    )
    outbox_id = outbox.enqueue(
        job_id="job_llm",
        entry_type="llm_request",
        payload={"prompt": "Summarise the order", "response_format": "json"},
    )
    processor.run_once()
    entry = outbox.get(outbox_id)
    assert entry["status"] == "completed"
    assert entry["evidence"]["json"] == {"echo": "Summarise the order"}
