"""Delivery receipt and inbound reply reconciliation.

Receipts only move a Message forward: once it is `delivered` or `failed` a
late or duplicate receipt is rejected and the row is left untouched.
"""

from pydantic import BaseModel
from sqlalchemy import select, update

from smsflow.common.db import utcnow
from smsflow.common.errors import InvalidStatusTransition
from smsflow.common.logging import logger
from smsflow.common.metrics import PipelineMetrics
from smsflow.common.state_machine import validate_transition
from smsflow.services.delivery.models import Contact, Message
from smsflow.services.receipts.models import InboundMessage

DELIVERED_STATUSES = ("DELIV", "DELIVERED")
FAILED_STATUSES = ("FAILED", "UNDELIV", "UNDELIVERED", "EXPIRED", "REJECTED", "REJECTD")
STOP_KEYWORDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE"})
HELP_KEYWORDS = frozenset({"HELP", "INFO"})
HELP_REPLY = "Reply STOP to unsubscribe. Msg&data rates may apply."


def map_receipt_status(raw_status: str) -> str:
    """Provider DLR status -> Message status."""

    status = (raw_status or "").strip().upper()
    if status.startswith("DELIV") or status in DELIVERED_STATUSES:
        return "delivered"
    if status in FAILED_STATUSES:
        return "failed"
    return "sent"


class ReceiptResult(BaseModel):
    result: str
    message_id: str | None = None
    status: str | None = None


class InboundResult(BaseModel):
    action: str
    matched_contacts: int = 0
    reply: str | None = None


class ReceiptService:
    def __init__(self, session_factory, metrics: PipelineMetrics | None = None) -> None:
        self.session_factory = session_factory
        self.metrics = metrics or PipelineMetrics()

    def _count(self, result: ReceiptResult) -> ReceiptResult:
        self.metrics.dlr_updates_total.labels(result=result.result).inc()
        return result

    def apply_receipt(
        self,
        provider_message_id: str,
        status: str,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> ReceiptResult:
        """Apply one DLR; returns `updated`, `message_not_found` or `invalid_status_transition`."""

        new_status = map_receipt_status(status)
        with self.session_factory() as db:
            message = db.execute(
                select(Message).where(Message.provider_message_id == provider_message_id)
            ).scalar_one_or_none()
            if message is None:
                logger.warning("dlr for unknown message provider_message_id=%s", provider_message_id)
                return self._count(ReceiptResult(result="message_not_found"))

            current = message.status
            try:
                validate_transition(current, new_status)
            except InvalidStatusTransition:
                logger.info(
                    "dlr rejected message_id=%s current=%s new=%s",
                    message.id,
                    current,
                    new_status,
                )
                return self._count(
                    ReceiptResult(result="invalid_status_transition", message_id=message.id, status=current)
                )

            now = utcnow()
            values: dict = {"status": new_status, "updated_at": now}
            if new_status == "delivered":
                values["delivered_at"] = now
            elif new_status == "failed":
                values.update(failed_at=now, error_code=error_code or "dlr_failed", error_message=error_message)
            result = db.execute(
                update(Message)
                .where(Message.id == message.id, Message.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return self._count(
                    ReceiptResult(result="invalid_status_transition", message_id=message.id, status=current)
                )
            db.commit()
        logger.info("dlr applied message_id=%s status=%s", message.id, new_status)
        return self._count(ReceiptResult(result="updated", message_id=message.id, status=new_status))

    def handle_inbound(self, from_phone: str, text: str, timestamp: str | None = None) -> InboundResult:
        """STOP opts out every contact with this phone across shops; HELP returns a static reply."""

        keyword = (text or "").strip().upper()
        if keyword in STOP_KEYWORDS:
            action = "stop"
        elif keyword in HELP_KEYWORDS:
            action = "help"
        else:
            action = "received"

        with self.session_factory() as db:
            matched = 0
            if action == "stop":
                now = utcnow()
                result = db.execute(
                    update(Contact)
                    .where(Contact.phone_e164 == from_phone)
                    .values(
                        opted_out=True,
                        sms_consent_state="opted_out",
                        sms_consent_source="inbound_stop",
                        unsubscribed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                matched = result.rowcount
            db.add(
                InboundMessage(
                    from_phone=from_phone,
                    text=text or "",
                    action=action,
                    matched_contacts=matched,
                    provider_timestamp=timestamp,
                )
            )
            db.commit()

        self.metrics.inbound_messages_total.labels(action=action).inc()
        logger.info("inbound message action=%s matched_contacts=%s", action, matched)
        return InboundResult(action=action, matched_contacts=matched, reply=HELP_REPLY if action == "help" else None)
