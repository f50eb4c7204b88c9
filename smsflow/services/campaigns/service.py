"""Campaign preparation and the throttled batch sender.

The sender pages through `pending` recipients oldest-first. Sends within a
page are sequential; between pages it sleeps `throttle_ms`. Every send uses
the idempotency key `campaignId:contactId`, so re-running a campaign job
never produces a second Message for a recipient.
"""

import asyncio
from typing import Awaitable, Callable

from pydantic import BaseModel
from sqlalchemy import func, select, update

from smsflow.common.errors import DeliveryDeferred, NotFound, ReservationExpired, StorageConflict
from smsflow.common.jobs import Job, JobHandle, JobOptions, QueueBackend
from smsflow.common.logging import logger
from smsflow.common.metrics import PipelineMetrics
from smsflow.services.allocator.models import DiscountCode, DiscountCodePool, DiscountCodeReservation
from smsflow.services.allocator.service import AllocatorService
from smsflow.services.campaigns.links import Shortener, build_apply_url
from smsflow.services.campaigns.models import Campaign, CampaignRecipient, Discount
from smsflow.services.delivery.models import Contact
from smsflow.services.delivery.service import DeliveryRequest, DeliveryService
from smsflow.services.ingestor.models import Shop


class SendSummary(BaseModel):
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0


def campaign_job_id(campaign_id: str) -> str:
    return f"campaign:{campaign_id}"


class CampaignService:
    def __init__(
        self,
        session_factory,
        delivery: DeliveryService,
        allocator: AllocatorService,
        queue: QueueBackend,
        metrics: PipelineMetrics | None = None,
        batch_size: int = 500,
        throttle_ms: int = 1000,
        shortener: Shortener | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.delivery = delivery
        self.allocator = allocator
        self.queue = queue
        self.metrics = metrics or PipelineMetrics()
        self.batch_size = max(1, batch_size)
        self.throttle_seconds = throttle_ms / 1000.0
        self.shortener = shortener
        self._sleep = sleep

    def _load_campaign(self, db, shop_id: str, campaign_id: str) -> Campaign:
        campaign = db.get(Campaign, campaign_id)
        if campaign is None or campaign.shop_id != shop_id:
            raise NotFound(f"campaign {campaign_id} not found")
        return campaign

    def snapshot_audience(self, shop_id: str, campaign_id: str) -> int:
        """Create a pending recipient for every opted-in contact not yet in the audience."""

        with self.session_factory() as db:
            self._load_campaign(db, shop_id, campaign_id)
            existing = set(
                db.execute(
                    select(CampaignRecipient.contact_id).where(CampaignRecipient.campaign_id == campaign_id)
                ).scalars()
            )
            contacts = db.execute(
                select(Contact.id)
                .where(
                    Contact.shop_id == shop_id,
                    Contact.sms_consent_state == "opted_in",
                    Contact.opted_out.is_(False),
                )
                .order_by(Contact.created_at, Contact.id)
            ).scalars()
            added = 0
            for contact_id in contacts:
                if contact_id in existing:
                    continue
                db.add(CampaignRecipient(campaign_id=campaign_id, contact_id=contact_id, status="pending"))
                added += 1
            db.commit()
        logger.info("audience snapshot campaign_id=%s recipients_added=%s", campaign_id, added)
        return added

    def count_pending(self, campaign_id: str) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count())
                .select_from(CampaignRecipient)
                .where(CampaignRecipient.campaign_id == campaign_id, CampaignRecipient.status == "pending")
            ).scalar_one()

    def prepare(self, shop_id: str, campaign_id: str) -> DiscountCodeReservation | None:
        """Reserve one pooled code per pending recipient; `PoolExhausted` propagates."""

        with self.session_factory() as db:
            campaign = self._load_campaign(db, shop_id, campaign_id)
            if not campaign.discount_id:
                return None
            pool = db.execute(
                select(DiscountCodePool)
                .where(DiscountCodePool.shop_id == shop_id, DiscountCodePool.discount_id == campaign.discount_id)
                .order_by(DiscountCodePool.created_at)
                .limit(1)
            ).scalar_one_or_none()
            needed = db.execute(
                select(func.count())
                .select_from(CampaignRecipient)
                .where(
                    CampaignRecipient.campaign_id == campaign_id,
                    CampaignRecipient.status == "pending",
                    CampaignRecipient.discount_code_id.is_(None),
                )
            ).scalar_one()
        if pool is None or needed == 0:
            return None
        existing = self.allocator.active_reservation_for(campaign_id)
        if existing is None:
            try:
                return self.allocator.reserve(pool.id, campaign_id, needed)
            except StorageConflict:
                existing = self.allocator.active_reservation_for(campaign_id)
                if existing is None:
                    raise
        logger.info("campaign already prepared campaign_id=%s reservation_id=%s", campaign_id, existing.id)
        return existing

    async def enqueue_send(self, shop_id: str, campaign_id: str) -> JobHandle:
        with self.session_factory() as db:
            self._load_campaign(db, shop_id, campaign_id)
            db.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id, Campaign.status.in_(("draft", "scheduled", "failed")))
                .values(status="scheduled")
            )
            db.commit()
        return await self.queue.enqueue(
            "campaigns",
            "send",
            {"campaignId": campaign_id, "shopId": shop_id},
            JobOptions(job_id=campaign_job_id(campaign_id)),
        )

    async def handle_job(self, job: Job) -> None:
        summary = await self.send(job.payload["shopId"], job.payload["campaignId"])
        logger.info("campaign job done job_id=%s summary=%s", job.id, summary.model_dump())

    def _set_campaign_status(self, campaign_id: str, status: str) -> None:
        with self.session_factory() as db:
            db.execute(update(Campaign).where(Campaign.id == campaign_id).values(status=status))
            db.commit()

    def _record(self, recipient_id: str, status: str, **values) -> None:
        with self.session_factory() as db:
            db.execute(
                update(CampaignRecipient)
                .where(CampaignRecipient.id == recipient_id, CampaignRecipient.status == "pending")
                .values(status=status, **values)
            )
            db.commit()
        self.metrics.campaign_recipients_total.labels(status=status).inc()

    def _claim_code(self, recipient: CampaignRecipient, reservation: DiscountCodeReservation | None) -> str | None:
        """Pooled code for this recipient, reusing one assigned by an earlier attempt."""

        if recipient.discount_code_id:
            with self.session_factory() as db:
                code = db.get(DiscountCode, recipient.discount_code_id)
            return code.code if code is not None else None
        if reservation is None:
            return None
        code = self.allocator.next_reserved_code(reservation.id)
        if code is None:
            logger.warning("reservation has no codes left reservation_id=%s", reservation.id)
            return None
        try:
            self.allocator.assign(code.id, recipient.id)
        except ReservationExpired:
            logger.warning("reservation expired mid-send reservation_id=%s", reservation.id)
            return None
        with self.session_factory() as db:
            db.execute(
                update(CampaignRecipient)
                .where(CampaignRecipient.id == recipient.id)
                .values(discount_code_id=code.id)
            )
            db.commit()
        recipient.discount_code_id = code.id
        return code.code

    async def _send_one(
        self,
        shop: Shop,
        campaign: Campaign,
        recipient: CampaignRecipient,
        discount: Discount | None,
        reservation: DiscountCodeReservation | None,
    ) -> str:
        with self.session_factory() as db:
            contact = db.get(Contact, recipient.contact_id)
        if contact is None or not contact.can_receive_sms:
            self._record(recipient.id, "skipped", reason="no_consent")
            return "skipped"

        variables = {"shop_name": shop.name or shop.domain, "first_name": contact.first_name or ""}
        if discount is not None:
            code = self._claim_code(recipient, reservation) or discount.code
            url = build_apply_url(shop.domain, code, campaign.id, campaign.utm)
            if self.shortener is not None:
                url = await self.shortener.shorten(url)
            variables.update(discount_code=code, discount_url=url)

        outcome = await self.delivery.deliver(
            DeliveryRequest(
                shop_id=shop.id,
                contact_id=contact.id,
                template_key=campaign.body or campaign.template_key,
                variables=variables,
                campaign_id=campaign.id,
                idempotency_key=f"{campaign.id}:{contact.id}",
                discount_code_id=recipient.discount_code_id,
                meta={"campaignId": campaign.id},
            )
        )
        if outcome.deferred:
            return "deferred"
        if outcome.status == "skipped":
            self._record(recipient.id, "skipped", reason=outcome.reason)
            return "skipped"
        if outcome.status == "failed":
            self._record(
                recipient.id,
                "failed",
                reason=outcome.error_message or outcome.error_code,
                message_id=outcome.message_id,
            )
            return "failed"
        self._record(recipient.id, "sent", message_id=outcome.message_id, reason=None)
        return "sent"

    async def send(self, shop_id: str, campaign_id: str) -> SendSummary:
        """Send to every pending recipient; raise `DeliveryDeferred` if any were deferred."""

        with self.session_factory() as db:
            campaign = self._load_campaign(db, shop_id, campaign_id)
            shop = db.get(Shop, shop_id)
            discount = db.get(Discount, campaign.discount_id) if campaign.discount_id else None
        if shop is None:
            raise NotFound(f"shop {shop_id} not found")
        reservation = self.allocator.active_reservation_for(campaign_id) if discount is not None else None
        self._set_campaign_status(campaign_id, "sending")

        summary = SendSummary()
        deferred_ids: set[str] = set()
        page = 0
        while True:
            with self.session_factory() as db:
                query = (
                    select(CampaignRecipient)
                    .where(CampaignRecipient.campaign_id == campaign_id, CampaignRecipient.status == "pending")
                    .order_by(CampaignRecipient.created_at, CampaignRecipient.id)
                    .limit(self.batch_size)
                )
                if deferred_ids:
                    query = query.where(CampaignRecipient.id.not_in(deferred_ids))
                recipients = db.execute(query).scalars().all()
            if not recipients:
                break
            page += 1
            for recipient in recipients:
                result = await self._send_one(shop, campaign, recipient, discount, reservation)
                if result == "deferred":
                    deferred_ids.add(recipient.id)
                setattr(summary, result, getattr(summary, result) + 1)
            logger.info(
                "campaign page done campaign_id=%s page=%s size=%s summary=%s",
                campaign_id,
                page,
                len(recipients),
                summary.model_dump(),
            )
            if len(recipients) < self.batch_size:
                break
            await self._sleep(self.throttle_seconds)

        if summary.deferred:
            raise DeliveryDeferred(f"campaign {campaign_id}: {summary.deferred} recipients deferred")
        self._set_campaign_status(campaign_id, "sent")
        return summary
