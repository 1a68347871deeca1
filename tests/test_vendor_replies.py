from __future__ import annotations

import pytest

from concierge.document_store import InMemoryDocumentStore
from concierge.errors import ApiError
from concierge.guard_state import InMemoryGuardStateStore
from concierge.jobs import JobsRepository
from concierge.outbox import OutboxService
from concierge.recursion_guard import RecursionGuard
from concierge.vendor_replies import VendorReplyWorkflow

VENDOR = "+905551110000"
CUSTOMER = "+905559990000"


@pytest.fixture
def workflow(clock) -> VendorReplyWorkflow:
    store = InMemoryDocumentStore()
    return VendorReplyWorkflow(
        jobs=JobsRepository(store, clock=clock),
        outbox=OutboxService(store, clock=clock),
        recursion_guard=RecursionGuard(InMemoryGuardStateStore(), rng=lambda: 0.99),
        store=store,
    )


def _confirming_job(workflow: VendorReplyWorkflow, job_id: str = "job_1", customer_phone: str | None = CUSTOMER):
    workflow.jobs.create(job_type="food_order", job_id=job_id, customer_phone=customer_phone)
    return workflow.request_vendor_confirmation(
        job_id,
        vendor_phone=VENDOR,
        message="Can you prepare order #12 for 19:00?",
        trace_id="trace_req",
    )


def test_request_confirmation_moves_job_and_enqueues_message(workflow):
    result = _confirming_job(workflow)
    assert result["job"]["status"] == "confirming"
    assert result["job"]["vendor_phone"] == VENDOR
    entry = workflow.outbox.get(result["outbox_id"])
    assert entry["type"] == "message_send"
    assert entry["payload"] == {"to": VENDOR, "body": "Can you prepare order #12 for 19:00?"}
    assert entry["job_id"] == "job_1"


def test_request_confirmation_rolls_back_on_invalid_transition(workflow):
    workflow.jobs.create(job_type="food_order", job_id="job_done", status="processing")
    with pytest.raises(ApiError) as exc_info:
        workflow.request_vendor_confirmation("job_done", vendor_phone=VENDOR, message="hello")
    assert exc_info.value.code == "WF_STATE_TRANSITION_INVALID"
    assert workflow.outbox.list_pending() == []


def test_confirm_reply_dispatches_and_notifies_customer(workflow):
    _confirming_job(workflow)
    outcome = workflow.handle_inbound(event_id="evt_1", from_phone=VENDOR, body="Tamam!", trace_id="trace_in")

    assert outcome["status"] == "applied"
    assert outcome["intent"] == "confirm"
    job = workflow.jobs.get("job_1")
    assert job["status"] == "dispatching"
    notify = workflow.outbox.get(outcome["outbox_id"])
    assert notify["payload"]["to"] == CUSTOMER
    messages = workflow.store.query("jobs/job_1/messages")
    assert messages[0].data["intent"] == "confirm"
    assert messages[0].data["event_id"] == "evt_1"


def test_reject_reply_cancels_job(workflow):
    _confirming_job(workflow, customer_phone=None)
    outcome = workflow.handle_inbound(event_id="evt_2", from_phone=VENDOR, body="hayır")
    assert outcome["intent"] == "reject"
    assert outcome["outbox_id"] is None
    assert workflow.jobs.get("job_1")["status"] == "cancelled"


def test_unclear_reply_escalates_without_touching_status(workflow, clock):
    _confirming_job(workflow)
    before = workflow.jobs.get("job_1")["updated_at"]
    clock.advance(minutes=5)

    outcome = workflow.handle_inbound(event_id="evt_3", from_phone=VENDOR, body="maybe later")

    job = workflow.jobs.get("job_1")
    assert outcome["status"] == "escalated"
    assert job["status"] == "confirming"
    assert job["updated_at"] == before
    assert job["escalation"]["intent"] == "requires_human"
    assert job["escalation"]["raw_input"] == "maybe later"


def test_reply_from_unknown_number_has_no_job(workflow):
    outcome = workflow.handle_inbound(event_id="evt_4", from_phone="+900000000000", body="yes")
    assert outcome == {"status": "no_matching_job"}


def test_oldest_confirming_job_gets_the_reply(workflow, clock):
    _confirming_job(workflow, job_id="job_old")
    clock.advance(minutes=1)
    _confirming_job(workflow, job_id="job_new")
    workflow.handle_inbound(event_id="evt_5", from_phone=VENDOR, body="yes")
    assert workflow.jobs.get("job_old")["status"] == "dispatching"
    assert workflow.jobs.get("job_new")["status"] == "confirming"


def test_redelivered_event_is_applied_once(workflow, clock):
    _confirming_job(workflow, job_id="job_a")
    clock.advance(minutes=1)
    _confirming_job(workflow, job_id="job_b")
    first = workflow.handle_inbound(event_id="evt_loop", from_phone=VENDOR, body="ok")
    second = workflow.handle_inbound(event_id="evt_loop", from_phone=VENDOR, body="ok")
    third = workflow.handle_inbound(event_id="evt_loop", from_phone=VENDOR, body="ok")
    assert first["status"] == "applied"
    assert first["job_id"] == "job_a"
    assert second == {"status": "duplicate", "event_id": "evt_loop"}
    assert third["status"] == "halted"
    assert third["reason"] == "Recursion depth 3 exceeds maximum 2"
    assert workflow.jobs.get("job_a")["status"] == "dispatching"
    assert workflow.jobs.get("job_b")["status"] == "confirming"
    receipt = workflow.store.get("inbound_receipts/evt_loop")
    assert receipt.data["job_id"] == "job_a"


def test_redelivered_reject_does_not_cancel_next_job(workflow, clock):
    _confirming_job(workflow, job_id="job_a")
    clock.advance(minutes=1)
    _confirming_job(workflow, job_id="job_b")
    workflow.handle_inbound(event_id="evt_no", from_phone=VENDOR, body="hayır")
    again = workflow.handle_inbound(event_id="evt_no", from_phone=VENDOR, body="hayır")
    assert again["status"] == "duplicate"
    assert workflow.jobs.get("job_a")["status"] == "cancelled"
    assert workflow.jobs.get("job_b")["status"] == "confirming"
