"""Event dispatcher: consumes `events` jobs and routes them by topic."""

from sqlalchemy import update

from smsflow.common.db import utcnow
from smsflow.common.jobs import Job
from smsflow.common.logging import logger
from smsflow.services.dispatcher.registry import EventContext, TopicRegistry
from smsflow.services.ingestor.models import Event


class DispatcherService:
    """Marks each Event processed on success, or records the error and re-raises."""

    def __init__(self, session_factory, registry: TopicRegistry) -> None:
        self.session_factory = session_factory
        self.registry = registry

    def _mark(self, event_id: str, **values) -> None:
        with self.session_factory() as db:
            db.execute(update(Event).where(Event.id == event_id).values(**values))
            db.commit()

    async def handle_job(self, job: Job) -> None:
        payload = job.payload
        event_id = payload["eventId"]
        with self.session_factory() as db:
            event = db.get(Event, event_id)
        if event is None:
            logger.warning("event missing for dispatch job_id=%s event_id=%s", job.id, event_id)
            return
        if event.processed_at is not None:
            logger.info("event already processed event_id=%s", event_id)
            return

        ctx = EventContext(
            event_id=event_id,
            shop_id=payload.get("shopId") or event.shop_id,
            topic=payload.get("topic") or event.topic,
            payload=payload.get("payload") or event.payload or {},
        )
        try:
            handler = self.registry.handler_for(ctx.topic)
            await handler(ctx)
        except Exception as exc:
            self._mark(event_id, error=f"{exc.__class__.__name__}: {exc}")
            logger.error("event dispatch failed event_id=%s topic=%s error=%s", event_id, ctx.topic, exc)
            raise
        self._mark(event_id, processed_at=utcnow(), error=None)
        logger.info("event processed event_id=%s topic=%s", event_id, ctx.topic)
