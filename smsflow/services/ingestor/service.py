"""Webhook ingestion: dedupe, persist, enqueue.

The `events.dedupe_key` unique constraint is the dedupe mechanism: a
conflicting insert means the webhook was already accepted, so the request
succeeds without a second dispatch job.
"""

from typing import Any

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from smsflow.common.errors import DuplicateEvent
from smsflow.common.jobs import JobOptions, QueueBackend
from smsflow.common.logging import logger, shop_id_ctx
from smsflow.common.metrics import PipelineMetrics
from smsflow.services.ingestor.models import Event, Shop


class IngestResult(BaseModel):
    status: str
    event_id: str
    dedupe_key: str
    job_id: str | None = None


def normalize_topic(topic: str) -> str:
    return topic.strip().strip("/").lower()


def extract_object_id(payload: dict[str, Any]) -> str:
    """Payload `id`, then the provider graph id, then `"unknown"`."""

    for field in ("id", "admin_graphql_api_id"):
        value = payload.get(field)
        if value not in (None, ""):
            return str(value)
    return "unknown"


def build_dedupe_key(shop_id: str, topic: str, object_id: str) -> str:
    return f"{shop_id}:{topic}:{object_id}"


class IngestorService:
    """Turns verified webhook payloads into Events and dispatch jobs."""

    def __init__(self, session_factory, queue: QueueBackend, metrics: PipelineMetrics | None = None) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.metrics = metrics or PipelineMetrics()

    def upsert_shop(self, domain: str) -> Shop:
        """Return the shop for `domain`, creating it on first contact."""

        domain = domain.strip().lower()
        with self.session_factory() as db:
            shop = db.execute(select(Shop).where(Shop.domain == domain)).scalar_one_or_none()
            if shop is not None:
                return shop
            shop = Shop(domain=domain, name=domain.split(".")[0])
            db.add(shop)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                shop = db.execute(select(Shop).where(Shop.domain == domain)).scalar_one()
            return shop

    def _persist_event(self, event: Event) -> None:
        with self.session_factory() as db:
            db.add(event)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                existing = db.execute(
                    select(Event.id).where(Event.dedupe_key == event.dedupe_key)
                ).scalar_one_or_none()
                if existing is None:
                    raise
                event.id = existing
                raise DuplicateEvent(event.dedupe_key) from exc

    async def ingest(self, source: str, topic: str, shop_domain: str, payload: dict[str, Any]) -> IngestResult:
        """Persist once per dedupe key; enqueue `events`/`dispatch` for new events."""

        topic = normalize_topic(topic)
        shop = self.upsert_shop(shop_domain)
        shop_id_ctx.set(shop.id)
        object_id = extract_object_id(payload)
        dedupe_key = build_dedupe_key(shop.id, topic, object_id)
        event = Event(
            shop_id=shop.id,
            source=source,
            topic=topic,
            object_id=object_id,
            payload=payload,
            dedupe_key=dedupe_key,
        )
        try:
            self._persist_event(event)
        except DuplicateEvent:
            self.metrics.duplicate_events_skipped_total.labels(topic=topic).inc()
            logger.info("duplicate event skipped topic=%s dedupe_key=%s", topic, dedupe_key)
            return IngestResult(status="duplicate", event_id=event.id, dedupe_key=dedupe_key)

        try:
            handle = await self.queue.enqueue(
                "events",
                "dispatch",
                {"eventId": event.id, "shopId": shop.id, "topic": topic, "payload": payload},
                JobOptions(job_id=dedupe_key),
            )
        except Exception:
            # Drop the row so the sender's retry is not mistaken for a duplicate.
            with self.session_factory() as db:
                db.execute(delete(Event).where(Event.id == event.id))
                db.commit()
            logger.exception("event enqueue failed topic=%s dedupe_key=%s", topic, dedupe_key)
            raise

        self.metrics.events_ingested_total.labels(topic=topic).inc()
        logger.info("event accepted topic=%s event_id=%s job_id=%s", topic, event.id, handle.id)
        return IngestResult(status="accepted", event_id=event.id, dedupe_key=dedupe_key, job_id=handle.id)
