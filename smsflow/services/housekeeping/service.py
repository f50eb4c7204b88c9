"""Scheduled maintenance jobs on the `jobs` queue, keyed by `{key}`."""

from datetime import timedelta

from sqlalchemy import delete

from smsflow.common.db import utcnow
from smsflow.common.jobs import Job, JobHandle, JobOptions, QueueBackend
from smsflow.common.logging import logger
from smsflow.services.allocator.service import AllocatorService
from smsflow.services.delivery.models import Message
from smsflow.services.ingestor.models import Event

HOUSEKEEPING_KEYS = ("sweep_expired_reservations", "cleanup_events", "cleanup_messages")


class HousekeepingService:
    def __init__(
        self,
        session_factory,
        allocator: AllocatorService,
        queue: QueueBackend,
        event_retention_days: int = 30,
        message_retention_days: int = 90,
    ) -> None:
        self.session_factory = session_factory
        self.allocator = allocator
        self.queue = queue
        self.event_retention = timedelta(days=event_retention_days)
        self.message_retention = timedelta(days=message_retention_days)

    async def schedule(self, key: str) -> JobHandle:
        """Enqueue one run; a run already waiting for the same key absorbs it."""

        if key not in HOUSEKEEPING_KEYS:
            raise ValueError(f"unknown housekeeping key {key}")
        return await self.queue.enqueue(
            "jobs",
            key,
            {"key": key},
            JobOptions(job_id=f"{key}:{utcnow().strftime('%Y%m%d%H%M')}", attempts=3),
        )

    def cleanup_events(self) -> int:
        cutoff = utcnow() - self.event_retention
        with self.session_factory() as db:
            removed = db.execute(
                delete(Event).where(Event.received_at < cutoff, Event.processed_at.is_not(None))
            ).rowcount
            db.commit()
        return removed

    def cleanup_messages(self) -> int:
        cutoff = utcnow() - self.message_retention
        with self.session_factory() as db:
            removed = db.execute(
                delete(Message).where(Message.created_at < cutoff, Message.status.in_(("delivered", "failed")))
            ).rowcount
            db.commit()
        return removed

    def run(self, key: str) -> int:
        if key == "sweep_expired_reservations":
            count = self.allocator.sweep_expired()
        elif key == "cleanup_events":
            count = self.cleanup_events()
        elif key == "cleanup_messages":
            count = self.cleanup_messages()
        else:
            raise ValueError(f"unknown housekeeping key {key}")
        logger.info("housekeeping done key=%s affected=%s", key, count)
        return count

    async def handle_job(self, job: Job) -> None:
        self.run(job.payload["key"])
