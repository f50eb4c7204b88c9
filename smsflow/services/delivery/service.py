"""Delivery processor: render -> persist -> send -> persist for one recipient.

Shared by trigger handlers and the campaign sender. The idempotency key is
checked before any Message row is created, so a retried job never produces a
second send for the same logical delivery.
"""

from datetime import timedelta
from typing import Any, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from smsflow.common.db import utcnow
from smsflow.common.errors import ProviderError
from smsflow.common.logging import logger
from smsflow.common.metrics import PipelineMetrics
from smsflow.common.state_machine import validate_transition
from smsflow.common.tracing import tracer
from smsflow.services.delivery.models import Contact, Message
from smsflow.services.delivery.provider import ProviderClient


class TemplateRenderer(Protocol):
    def render(self, template_key: str, variables: dict[str, Any]) -> str: ...


class _MissingAsBlank(dict):
    def __missing__(self, key: str) -> str:
        return ""


class FormatTemplateRenderer:
    """Minimal renderer: `str.format_map` over a dict of named templates."""

    DEFAULT_TEMPLATES = {
        "order_confirmation": "Hi {first_name}, thanks for your order {order_name} at {shop_name}!",
        "order_paid": "Hi {first_name}, payment received for order {order_name}.",
        "abandoned_checkout": "You left something in your cart at {shop_name}. Finish here: {recovery_url}",
        "fulfillment_update": "Your order {order_name} is on its way. Track it: {tracking_url}",
        "back_in_stock": "Good news {first_name}! {product_title} is back in stock at {shop_name}.",
        "campaign_default": "{shop_name}: {discount_code} {discount_url}",
    }

    def __init__(self, templates: dict[str, str] | None = None) -> None:
        self.templates = {**self.DEFAULT_TEMPLATES, **(templates or {})}

    def render(self, template_key: str, variables: dict[str, Any]) -> str:
        template = self.templates.get(template_key, template_key)
        return template.format_map(_MissingAsBlank(variables)).strip()


class DeliveryRequest(BaseModel):
    """Everything needed to deliver one SMS to one contact."""

    shop_id: str
    contact_id: str | None = None
    template_key: str | None = None
    body: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    campaign_id: str | None = None
    automation_id: str | None = None
    idempotency_key: str | None = None
    trigger_key: str | None = None
    discount_code_id: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class DeliveryOutcome(BaseModel):
    status: str
    message_id: str | None = None
    reason: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    duplicate: bool = False

    @property
    def deferred(self) -> bool:
        """Exhausted transient error: the message waits for queue-level retry."""

        return self.status == "queued"


def _outcome_for(message: Message, duplicate: bool = False) -> DeliveryOutcome:
    return DeliveryOutcome(
        status=message.status,
        message_id=message.id,
        error_code=message.error_code,
        error_message=message.error_message,
        duplicate=duplicate,
    )


class DeliveryService:
    """Owns the Message lifecycle up to provider acceptance.

    A caller must hold the send lease on a `queued` row before it calls the
    provider. The lease is taken with a guarded UPDATE, so two callers with
    the same idempotency key never both send.
    """

    def __init__(
        self,
        session_factory,
        provider: ProviderClient,
        renderer: TemplateRenderer | None = None,
        metrics: PipelineMetrics | None = None,
        callback_url: str | None = None,
        lease_seconds: int = 120,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.renderer = renderer or FormatTemplateRenderer()
        self.metrics = metrics or PipelineMetrics()
        self.callback_url = callback_url
        self.lease = timedelta(seconds=lease_seconds)

    def _find_by_key(self, db, idempotency_key: str | None) -> Message | None:
        if not idempotency_key:
            return None
        return db.execute(select(Message).where(Message.idempotency_key == idempotency_key)).scalar_one_or_none()

    def _render(self, req: DeliveryRequest, contact: Contact) -> str:
        if req.body is not None:
            return req.body
        variables = {"first_name": contact.first_name or "", **req.variables}
        return self.renderer.render(req.template_key or "campaign_default", variables)

    def _claim(self, db, message: Message, token: str) -> bool:
        """Take the send lease on a queued row unless another caller holds a live one."""

        now = utcnow()
        result = db.execute(
            update(Message)
            .where(
                Message.id == message.id,
                Message.status == "queued",
                or_(Message.lease_expires_at.is_(None), Message.lease_expires_at < now),
            )
            .values(lease_token=token, lease_expires_at=now + self.lease, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def _claim_existing(self, db, message: Message, token: str) -> tuple[DeliveryOutcome | None, Message | None]:
        if self._claim(db, message, token):
            # Left queued by an exhausted transient error; retry on the same row.
            return None, message
        logger.info(
            "delivery in flight elsewhere message_id=%s idempotency_key=%s",
            message.id,
            message.idempotency_key,
        )
        return DeliveryOutcome(status="queued", message_id=message.id, reason="in_flight", duplicate=True), None

    def _prepare_message(self, req: DeliveryRequest, token: str) -> tuple[DeliveryOutcome | None, Message | None]:
        """Return either a final outcome (duplicate/skip/in flight) or a leased Message to send."""

        with self.session_factory() as db:
            existing = self._find_by_key(db, req.idempotency_key)
            if existing is not None and existing.status != "queued":
                logger.info(
                    "delivery duplicate skipped idempotency_key=%s status=%s",
                    req.idempotency_key,
                    existing.status,
                )
                return _outcome_for(existing, duplicate=True), None

            contact = db.get(Contact, req.contact_id) if req.contact_id else None
            if contact is None or not contact.can_receive_sms:
                self.metrics.sms_send_attempts_total.labels(status="skipped").inc()
                logger.info("delivery skipped reason=no_consent contact_id=%s", req.contact_id)
                return DeliveryOutcome(status="skipped", reason="no_consent"), None

            if existing is not None:
                return self._claim_existing(db, existing, token)

            now = utcnow()
            message = Message(
                shop_id=req.shop_id,
                contact_id=contact.id,
                campaign_id=req.campaign_id,
                automation_id=req.automation_id,
                to_phone=contact.phone_e164,
                body=self._render(req, contact),
                provider=self.provider.name,
                status="queued",
                idempotency_key=req.idempotency_key,
                trigger_key=req.trigger_key,
                discount_code_id=req.discount_code_id,
                meta=req.meta,
                lease_token=token,
                lease_expires_at=now + self.lease,
            )
            db.add(message)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self._find_by_key(db, req.idempotency_key)
                if existing is None:
                    raise
                if existing.status != "queued":
                    return _outcome_for(existing, duplicate=True), None
                return self._claim_existing(db, existing, token)
            return None, message

    def _finish(self, message_id: str, token: str, new_status: str, **values) -> bool:
        """Guarded `queued -> new_status` write; False when the lease was lost."""

        validate_transition("queued", new_status)
        with self.session_factory() as db:
            result = db.execute(
                update(Message)
                .where(Message.id == message_id, Message.status == "queued", Message.lease_token == token)
                .values(status=new_status, updated_at=utcnow(), lease_token=None, lease_expires_at=None, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True

    def _lease_lost(self, message_id: str, attempted: str, provider_message_id: str | None) -> DeliveryOutcome:
        with self.session_factory() as db:
            current = db.get(Message, message_id)
        logger.error(
            "delivery lease lost message_id=%s attempted_status=%s provider_message_id=%s current_status=%s",
            message_id,
            attempted,
            provider_message_id,
            current.status if current is not None else None,
        )
        if current is None:
            return DeliveryOutcome(status="queued", message_id=message_id, reason="lease_lost", duplicate=True)
        return _outcome_for(current, duplicate=True).model_copy(update={"reason": "lease_lost"})

    async def deliver(self, req: DeliveryRequest) -> DeliveryOutcome:
        """Deliver one SMS; provider failures are classified, never raised."""

        with tracer.start_as_current_span("sms.deliver") as span:
            span.set_attribute("sms.shop_id", req.shop_id)
            token = str(uuid4())
            outcome, message = self._prepare_message(req, token)
            if outcome is not None:
                span.set_attribute("sms.outcome", outcome.status)
                return outcome

            meta = {"messageId": message.id, **(message.meta or {})}
            provider_message_id = None
            try:
                response = await self.provider.send(message.to_phone, message.body, meta, self.callback_url)
            except ProviderError as error:
                if error.is_transient:
                    new_status = "queued"
                    values = {"error_code": error.error_code, "error_message": error.message}
                    logger.warning("delivery deferred message_id=%s error_code=%s", message.id, error.error_code)
                else:
                    new_status = "failed"
                    values = {"error_code": error.error_code, "error_message": error.message, "failed_at": utcnow()}
                    logger.warning("delivery failed message_id=%s error_code=%s", message.id, error.error_code)
                outcome = DeliveryOutcome(
                    status=new_status,
                    message_id=message.id,
                    error_code=error.error_code,
                    error_message=error.message,
                )
            else:
                new_status = "sent"
                provider_message_id = response.provider_message_id
                values = {
                    "provider_message_id": provider_message_id,
                    "sent_at": utcnow(),
                    "error_code": None,
                    "error_message": None,
                }
                outcome = DeliveryOutcome(status="sent", message_id=message.id)

            if not self._finish(message.id, token, new_status, **values):
                outcome = self._lease_lost(message.id, new_status, provider_message_id)

            self.metrics.sms_send_attempts_total.labels(status=outcome.status).inc()
            span.set_attribute("sms.outcome", outcome.status)
            return outcome
