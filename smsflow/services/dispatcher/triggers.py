"""Trigger handlers: one per subscribed commerce topic.

Each handler resolves the contact, builds render variables and hands a
`DeliveryRequest` to the delivery processor with the idempotency key
`<trigger>:<object id>:<contact id>`.
"""

from typing import Any

from sqlalchemy import select, update

from smsflow.common.db import utcnow
from smsflow.common.errors import DeliveryDeferred
from smsflow.common.jobs import Job, JobOptions, QueueBackend
from smsflow.common.logging import logger
from smsflow.services.delivery.models import Contact
from smsflow.services.delivery.service import DeliveryOutcome, DeliveryRequest, DeliveryService
from smsflow.services.dispatcher.models import BackInStockInterest
from smsflow.services.dispatcher.registry import EventContext, TopicRegistry
from smsflow.services.ingestor.models import Shop


def abandoned_job_id(shop_id: str, checkout_id: str) -> str:
    return f"abandoned:{shop_id}:{checkout_id}"


def _customer(payload: dict[str, Any]) -> dict[str, Any]:
    customer = payload.get("customer")
    return customer if isinstance(customer, dict) else {}


class TriggerHandlers:
    def __init__(
        self,
        session_factory,
        delivery: DeliveryService,
        queue: QueueBackend,
        abandoned_checkout_delay_minutes: int = 30,
    ) -> None:
        self.session_factory = session_factory
        self.delivery = delivery
        self.queue = queue
        self.abandoned_delay_seconds = abandoned_checkout_delay_minutes * 60

    def register_all(self, registry: TopicRegistry) -> TopicRegistry:
        registry.register("orders/create", self.on_order_created)
        registry.register("orders/paid", self.on_order_paid)
        registry.register("checkouts/update", self.on_checkout_updated)
        registry.register("fulfillments/update", self.on_fulfillment_updated)
        registry.register("inventory_levels/update", self.on_inventory_updated)
        return registry

    def _resolve_contact(self, shop_id: str, payload: dict[str, Any]) -> Contact | None:
        """Match by customer id first, then by phone."""

        customer = _customer(payload)
        with self.session_factory() as db:
            customer_id = customer.get("id")
            if customer_id is not None:
                contact = db.execute(
                    select(Contact).where(Contact.shop_id == shop_id, Contact.customer_id == str(customer_id))
                ).scalars().first()
                if contact is not None:
                    return contact
            destination = payload.get("destination") if isinstance(payload.get("destination"), dict) else {}
            phone = customer.get("phone") or payload.get("phone") or destination.get("phone")
            if not phone:
                return None
            return db.execute(
                select(Contact).where(Contact.shop_id == shop_id, Contact.phone_e164 == phone)
            ).scalar_one_or_none()

    def _shop_name(self, shop_id: str) -> str:
        with self.session_factory() as db:
            shop = db.get(Shop, shop_id)
        if shop is None:
            return ""
        return shop.name or shop.domain

    async def _deliver(
        self,
        trigger: str,
        object_id: str,
        shop_id: str,
        contact: Contact,
        template_key: str,
        variables: dict[str, Any],
    ) -> DeliveryOutcome:
        outcome = await self.delivery.deliver(
            DeliveryRequest(
                shop_id=shop_id,
                contact_id=contact.id,
                template_key=template_key,
                variables={"shop_name": self._shop_name(shop_id), **variables},
                automation_id=trigger,
                trigger_key=trigger,
                idempotency_key=f"{trigger}:{object_id}:{contact.id}",
                meta={"trigger": trigger, "objectId": object_id},
            )
        )
        if outcome.deferred:
            raise DeliveryDeferred(f"{trigger} delivery deferred: {outcome.error_code}")
        return outcome

    async def _cancel_abandoned(self, shop_id: str, checkout_id: Any) -> None:
        if checkout_id in (None, ""):
            return
        if await self.queue.cancel("automations", abandoned_job_id(shop_id, str(checkout_id))):
            logger.info("abandoned checkout reminder cancelled shop_id=%s checkout_id=%s", shop_id, checkout_id)

    async def _on_order(self, ctx: EventContext, trigger: str, template_key: str) -> None:
        payload = ctx.payload
        await self._cancel_abandoned(ctx.shop_id, payload.get("checkout_id") or payload.get("checkout_token"))
        contact = self._resolve_contact(ctx.shop_id, payload)
        if contact is None:
            logger.info("%s skipped: no contact event_id=%s", trigger, ctx.event_id)
            return
        await self._deliver(
            trigger,
            str(payload.get("id", ctx.event_id)),
            ctx.shop_id,
            contact,
            template_key,
            {
                "first_name": _customer(payload).get("first_name") or contact.first_name or "",
                "order_name": payload.get("name") or payload.get("order_number") or "",
                "order_total": payload.get("total_price") or "",
                "currency": payload.get("currency") or "",
            },
        )

    async def on_order_created(self, ctx: EventContext) -> None:
        await self._on_order(ctx, "order_confirmation", "order_confirmation")

    async def on_order_paid(self, ctx: EventContext) -> None:
        await self._on_order(ctx, "order_paid", "order_paid")

    async def on_checkout_updated(self, ctx: EventContext) -> None:
        """Schedule (or cancel) the delayed abandoned-checkout reminder."""

        payload = ctx.payload
        checkout_id = payload.get("id") or payload.get("token")
        if checkout_id in (None, ""):
            logger.warning("checkout update without id event_id=%s", ctx.event_id)
            return
        if payload.get("completed_at"):
            await self._cancel_abandoned(ctx.shop_id, checkout_id)
            return
        contact = self._resolve_contact(ctx.shop_id, payload)
        if contact is None:
            return
        handle = await self.queue.enqueue(
            "automations",
            "abandoned_checkout",
            {
                "shopId": ctx.shop_id,
                "contactId": contact.id,
                "checkoutId": str(checkout_id),
                "recoveryUrl": payload.get("abandoned_checkout_url") or "",
            },
            JobOptions(
                job_id=abandoned_job_id(ctx.shop_id, str(checkout_id)),
                delay_seconds=self.abandoned_delay_seconds,
            ),
        )
        logger.info(
            "abandoned checkout reminder scheduled checkout_id=%s job_id=%s duplicate=%s",
            checkout_id,
            handle.id,
            handle.duplicate,
        )

    async def on_fulfillment_updated(self, ctx: EventContext) -> None:
        payload = ctx.payload
        contact = self._resolve_contact(ctx.shop_id, payload)
        if contact is None:
            return
        tracking_urls = payload.get("tracking_urls") or []
        await self._deliver(
            "fulfillment_update",
            str(payload.get("id", ctx.event_id)),
            ctx.shop_id,
            contact,
            "fulfillment_update",
            {
                "order_name": payload.get("name") or payload.get("order_id") or "",
                "tracking_number": payload.get("tracking_number") or "",
                "tracking_url": payload.get("tracking_url") or (tracking_urls[0] if tracking_urls else ""),
            },
        )

    async def on_inventory_updated(self, ctx: EventContext) -> None:
        """Notify every waiting contact once the item is back in stock."""

        payload = ctx.payload
        item_id = payload.get("inventory_item_id")
        try:
            available = int(payload.get("available") or 0)
        except (TypeError, ValueError):
            logger.warning(
                "inventory update with non-numeric available=%r event_id=%s", payload.get("available"), ctx.event_id
            )
            available = 0
        if item_id is None or available <= 0:
            return
        with self.session_factory() as db:
            interests = (
                db.execute(
                    select(BackInStockInterest).where(
                        BackInStockInterest.shop_id == ctx.shop_id,
                        BackInStockInterest.inventory_item_id == str(item_id),
                        BackInStockInterest.notified_at.is_(None),
                    )
                )
                .scalars()
                .all()
            )
            contacts = {
                contact.id: contact
                for contact in db.execute(
                    select(Contact).where(Contact.id.in_([interest.contact_id for interest in interests]))
                ).scalars()
            }

        deferred = 0
        for interest in interests:
            contact = contacts.get(interest.contact_id)
            if contact is None:
                continue
            try:
                await self._deliver(
                    "back_in_stock",
                    str(item_id),
                    ctx.shop_id,
                    contact,
                    "back_in_stock",
                    {"product_title": interest.product_title or ""},
                )
            except DeliveryDeferred:
                deferred += 1
                continue
            with self.session_factory() as db:
                db.execute(
                    update(BackInStockInterest)
                    .where(BackInStockInterest.id == interest.id)
                    .values(notified_at=utcnow())
                )
                db.commit()
        if deferred:
            raise DeliveryDeferred(f"back_in_stock: {deferred} deliveries deferred")

    async def handle_automation_job(self, job: Job) -> None:
        """Consumer for the `automations` queue (delayed trigger sends)."""

        if job.name != "abandoned_checkout":
            raise ValueError(f"unknown automation job {job.name}")
        payload = job.payload
        with self.session_factory() as db:
            contact = db.get(Contact, payload["contactId"])
        if contact is None:
            logger.info("abandoned checkout skipped: contact gone contact_id=%s", payload["contactId"])
            return
        await self._deliver(
            "abandoned_checkout",
            payload["checkoutId"],
            payload["shopId"],
            contact,
            "abandoned_checkout",
            {"recovery_url": payload.get("recoveryUrl") or ""},
        )
