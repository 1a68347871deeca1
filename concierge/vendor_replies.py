from __future__ import annotations

import logging
from typing import Any

from concierge.document_store import Transaction
from concierge.jobs import JobsRepository, job_path
from concierge.logging_utils import log_event
from concierge.outbox import OutboxService
from concierge.recursion_guard import RecursionGuard
from concierge.reply_parser import (
    INTENT_CONFIRM,
    INTENT_REJECT,
    parse_merchant_reply,
)

logger = logging.getLogger(__name__)

INBOUND_TRIGGER = "messaging.inbound"
INBOUND_RECEIPTS_COLLECTION = "inbound_receipts"

CUSTOMER_CONFIRMED_TEXT = "Good news: the vendor confirmed your request."
CUSTOMER_REJECTED_TEXT = "Sorry, the vendor could not take your request."


class VendorReplyWorkflow:
    """Applies classified vendor replies to the job they answer."""

    def __init__(
        self,
        *,
        jobs: JobsRepository,
        outbox: OutboxService,
        recursion_guard: RecursionGuard,
        store: Any,
    ) -> None:
        self.jobs = jobs
        self.outbox = outbox
        self.recursion_guard = recursion_guard
        self.store = store

    def request_vendor_confirmation(
        self,
        job_id: str,
        *,
        vendor_phone: str,
        message: str,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        def _write(txn: Transaction) -> dict[str, Any]:
            job = self.jobs.transition(
                job_id,
                new_status="confirming",
                trace_id=trace_id,
                changes={"vendor_phone": vendor_phone},
                transaction=txn,
            )
            outbox_id = self.outbox.enqueue(
                job_id=job_id,
                entry_type="message_send",
                payload={"to": vendor_phone, "body": message},
                trace_id=trace_id,
                transaction=txn,
            )
            return {"job": job, "outbox_id": outbox_id}

        return self.store.run_transaction(_write)

    def _notify_customer(self, job: dict[str, Any], text: str, *, txn: Transaction, trace_id: str | None) -> str | None:
        customer_phone = job.get("customer_phone")
        if not customer_phone:
            return None
        return self.outbox.enqueue(
            job_id=str(job["job_id"]),
            entry_type="message_send",
            payload={"to": customer_phone, "body": text},
            trace_id=trace_id,
            transaction=txn,
        )

    def handle_inbound(
        self,
        *,
        event_id: str,
        from_phone: str,
        body: str,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        guard = self.recursion_guard.check(
            event_id,
            trigger_name=INBOUND_TRIGGER,
            document_path=f"inbound/{from_phone}",
            trace_id=trace_id,
        )
        if guard.halt:
            return {"status": "halted", "reason": guard.reason, "depth": guard.depth}

        receipt_path = f"{INBOUND_RECEIPTS_COLLECTION}/{event_id.replace('/', '_')}"
        if self.store.get(receipt_path) is not None:
            logger.info("vendor_reply_duplicate event_id=%s trace_id=%s", event_id, trace_id)
            return {"status": "duplicate", "event_id": event_id}

        job = self.jobs.find_oldest_for_vendor(from_phone)
        if job is None:
            logger.info("vendor_reply_unmatched event_id=%s trace_id=%s", event_id, trace_id)
            return {"status": "no_matching_job"}

        parsed = parse_merchant_reply(body, trace_id=trace_id)
        job_id = str(job["job_id"])

        def _apply(txn: Transaction) -> dict[str, Any]:
            # A redelivery that raced past the first check still lands here.
            if txn.get(receipt_path) is not None:
                return {"status": "duplicate", "event_id": event_id}
            txn.set(
                receipt_path,
                {"event_id": event_id, "from": from_phone, "job_id": job_id, "received_at": self.jobs.now_iso()},
            )
            self.jobs.append_message(
                job_id,
                {
                    "direction": "inbound",
                    "from": from_phone,
                    "body": body,
                    "event_id": event_id,
                    "intent": parsed.intent,
                    "confidence": parsed.confidence,
                },
                transaction=txn,
            )
            outcome: dict[str, Any] = {"status": "applied", "job_id": job_id, "intent": parsed.intent}
            if parsed.intent == INTENT_CONFIRM:
                updated = self.jobs.transition(job_id, new_status="dispatching", trace_id=trace_id, transaction=txn)
                outcome["outbox_id"] = self._notify_customer(
                    updated, CUSTOMER_CONFIRMED_TEXT, txn=txn, trace_id=trace_id
                )
            elif parsed.intent == INTENT_REJECT:
                updated = self.jobs.transition(job_id, new_status="cancelled", trace_id=trace_id, transaction=txn)
                outcome["outbox_id"] = self._notify_customer(
                    updated, CUSTOMER_REJECTED_TEXT, txn=txn, trace_id=trace_id
                )
            else:
                txn.update(
                    job_path(job_id),
                    {
                        "escalation": {
                            "intent": parsed.intent,
                            "confidence": parsed.confidence,
                            "raw_input": parsed.raw_input,
                            "event_id": event_id,
                            "at": self.jobs.now_iso(),
                        }
                    },
                )
                outcome["status"] = "escalated"
            return outcome

        outcome = self.store.run_transaction(_apply)
        if outcome["status"] == "duplicate":
            return outcome
        log_event(
            logger,
            "vendor_reply_applied",
            component="vendor_replies",
            trace_id=trace_id,
            event_id=event_id,
            job_id=job_id,
            intent=parsed.intent,
            status=outcome["status"],
        )
        return outcome
