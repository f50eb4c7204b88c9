"""Database-backed job queue built on transactional-outbox claim helpers.

Jobs are rows in `queue_jobs`. Workers claim due rows with
`FOR UPDATE SKIP LOCKED` plus a status compare-and-swap, so several worker
processes can share one queue without double-claiming. A running job
refreshes `started_at` on a heartbeat, so only rows whose worker stopped
heartbeating for longer than the processing timeout are reclaimed.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, Float, Integer, String, Text, and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from smsflow.common.db import Base, JSONType, utcnow
from smsflow.common.jobs import Job, JobHandle, JobOptions, JobStatus, QueueBackend, backoff_delay
from smsflow.common.logging import logger
from smsflow.common.metrics import PipelineMetrics


class QueueJob(Base):
    """One persisted job and its retry bookkeeping."""

    __tablename__ = "queue_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    queue: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="waiting", index=True)
    attempts_made: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    backoff_seconds: Mapped[float] = mapped_column(Float, default=2.0)
    remove_on_complete: Mapped[int] = mapped_column(Integer, default=1000)
    remove_on_fail: Mapped[int] = mapped_column(Integer, default=1000)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _to_job(row: QueueJob) -> Job:
    return Job(
        id=row.id,
        queue=row.queue,
        name=row.name,
        payload=row.payload or {},
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        backoff_seconds=row.backoff_seconds,
        remove_on_complete=row.remove_on_complete,
        remove_on_fail=row.remove_on_fail,
    )


def claim_due_jobs(db, queue_name: str, limit: int, processing_timeout_seconds: int) -> list[Job]:
    """Atomically claim up to `limit` due or stale jobs for one queue."""

    now = utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claimable = or_(
        and_(QueueJob.status == "waiting", QueueJob.run_at <= now),
        and_(QueueJob.status == "active", QueueJob.started_at < stale_before),
    )
    candidate_ids = (
        db.execute(
            select(QueueJob.id)
            .where(QueueJob.queue == queue_name, claimable)
            .order_by(QueueJob.run_at, QueueJob.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    claimed: list[str] = []
    for job_id in candidate_ids:
        result = db.execute(
            update(QueueJob)
            .where(QueueJob.id == job_id, claimable)
            .values(status="active", started_at=now, attempts_made=QueueJob.attempts_made + 1)
        )
        if result.rowcount == 1:
            claimed.append(job_id)
    if not claimed:
        return []
    rows = db.execute(select(QueueJob).where(QueueJob.id.in_(claimed))).scalars().all()
    by_id = {row.id: row for row in rows}
    return [_to_job(by_id[job_id]) for job_id in claimed if job_id in by_id]


def mark_job_completed(db, job_id: str) -> None:
    """Mark one claimed job as done."""

    db.execute(
        update(QueueJob)
        .where(QueueJob.id == job_id, QueueJob.status == "active")
        .values(status="completed", finished_at=utcnow(), last_error=None)
    )


def touch_active_job(db, job_id: str) -> bool:
    """Refresh the claim on a job that is still running."""

    result = db.execute(
        update(QueueJob).where(QueueJob.id == job_id, QueueJob.status == "active").values(started_at=utcnow())
    )
    return result.rowcount == 1


def requeue_or_fail_job(db, job: Job, error: str) -> str:
    """Return a failed attempt to `waiting` with backoff, or mark it `failed`."""

    now = utcnow()
    if job.attempts_made < job.max_attempts:
        delay = backoff_delay(job.backoff_seconds, job.attempts_made)
        db.execute(
            update(QueueJob)
            .where(QueueJob.id == job.id, QueueJob.status == "active")
            .values(status="waiting", run_at=now + timedelta(seconds=delay), last_error=error)
        )
        logger.warning(
            "job_retry_scheduled queue=%s job_id=%s attempt=%s backoff_s=%s",
            job.queue,
            job.id,
            job.attempts_made,
            delay,
        )
        return "retried"
    db.execute(
        update(QueueJob)
        .where(QueueJob.id == job.id, QueueJob.status == "active")
        .values(status="failed", finished_at=now, last_error=error)
    )
    return "failed"


def prune_finished_jobs(db, queue_name: str, status: str, keep: int) -> int:
    """Delete all but the newest `keep` rows in a terminal status."""

    stale_ids = (
        db.execute(
            select(QueueJob.id)
            .where(QueueJob.queue == queue_name, QueueJob.status == status)
            .order_by(QueueJob.finished_at.desc(), QueueJob.id)
            .offset(keep)
        )
        .scalars()
        .all()
    )
    if not stale_ids:
        return 0
    db.execute(delete(QueueJob).where(QueueJob.id.in_(stale_ids)))
    return len(stale_ids)


def update_queue_backlog_metrics(db, metrics: PipelineMetrics, queue_name: str) -> None:
    """Update the per-queue gauge for waiting + active jobs."""

    pending = db.execute(
        select(func.count())
        .select_from(QueueJob)
        .where(QueueJob.queue == queue_name, QueueJob.status.in_(("waiting", "active")))
    ).scalar_one()
    metrics.queue_pending_total.labels(queue=queue_name).set(float(pending))


class PersistedQueue(QueueBackend):
    """Durable backend: jobs survive restarts and are shared by worker processes."""

    def __init__(
        self,
        session_factory,
        metrics: PipelineMetrics | None = None,
        poll_interval_seconds: float = 0.5,
        processing_timeout_seconds: float = 300,
        heartbeat_interval_seconds: float | None = None,
    ) -> None:
        super().__init__(metrics)
        self.session_factory = session_factory
        self.poll_interval_seconds = poll_interval_seconds
        self.processing_timeout_seconds = processing_timeout_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds or processing_timeout_seconds / 3
        self._workers: list[asyncio.Task] = []

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> JobHandle:
        options = options or JobOptions()
        job_id = options.job_id or str(uuid4())
        now = utcnow()
        with self.session_factory() as db:
            db.add(
                QueueJob(
                    id=job_id,
                    queue=queue_name,
                    name=job_name,
                    payload=payload,
                    status="waiting",
                    max_attempts=options.attempts,
                    backoff_seconds=options.backoff_seconds,
                    remove_on_complete=options.remove_on_complete,
                    remove_on_fail=options.remove_on_fail,
                    run_at=now + timedelta(seconds=options.delay_seconds),
                    created_at=now,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("job_duplicate_collapsed queue=%s name=%s job_id=%s", queue_name, job_name, job_id)
                return JobHandle(id=job_id, queue=queue_name, name=job_name, duplicate=True)
        return JobHandle(id=job_id, queue=queue_name, name=job_name)

    async def cancel(self, queue_name: str, job_id: str) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                delete(QueueJob).where(
                    QueueJob.id == job_id,
                    QueueJob.queue == queue_name,
                    QueueJob.status == "waiting",
                )
            )
            db.commit()
        if result.rowcount:
            logger.info("job_cancelled queue=%s job_id=%s", queue_name, job_id)
        return bool(result.rowcount)

    async def get_job(self, queue_name: str, job_id: str) -> JobStatus | None:
        with self.session_factory() as db:
            row = db.get(QueueJob, job_id)
            if row is None or row.queue != queue_name:
                return None
            return JobStatus(
                id=row.id,
                queue=row.queue,
                name=row.name,
                status=row.status,
                attempts_made=row.attempts_made,
                last_error=row.last_error,
            )

    async def process_due(self, queue_name: str, limit: int | None = None) -> int:
        """Claim and run one batch of due jobs; return how many ran."""

        _, concurrency = self._handlers[queue_name]
        with self.session_factory() as db:
            jobs = claim_due_jobs(db, queue_name, limit or concurrency, self.processing_timeout_seconds)
            db.commit()
        if jobs:
            await asyncio.gather(*(self._execute(job) for job in jobs))
        return len(jobs)

    async def start(self) -> None:
        for queue_name in self._handlers:
            self._workers.append(asyncio.create_task(self._worker_loop(queue_name)))
        logger.info("queue_workers_started queues=%s", ",".join(self._handlers))

    async def drain(self) -> None:
        while True:
            ran = 0
            for queue_name in list(self._handlers):
                ran += await self.process_due(queue_name)
            if ran == 0:
                return

    async def close(self) -> None:
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

    async def _worker_loop(self, queue_name: str) -> None:
        """Keep up to `concurrency` jobs of one queue in flight."""

        _, concurrency = self._handlers[queue_name]
        inflight: set[asyncio.Task] = set()
        while True:
            try:
                free = concurrency - len(inflight)
                jobs: list[Job] = []
                if free > 0:
                    with self.session_factory() as db:
                        jobs = claim_due_jobs(db, queue_name, free, self.processing_timeout_seconds)
                        update_queue_backlog_metrics(db, self.metrics, queue_name)
                        db.commit()
                for job in jobs:
                    inflight.add(asyncio.create_task(self._execute(job)))
                if inflight:
                    done, inflight = await asyncio.wait(
                        inflight,
                        timeout=self.poll_interval_seconds,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    del done
                else:
                    await asyncio.sleep(self.poll_interval_seconds)
            except asyncio.CancelledError:
                for task in inflight:
                    task.cancel()
                raise
            except Exception as exc:
                logger.error("queue_worker_loop_error queue=%s error=%s", queue_name, exc)
                await asyncio.sleep(2)

    async def _heartbeat(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_seconds)
            try:
                with self.session_factory() as db:
                    touched = touch_active_job(db, job.id)
                    db.commit()
            except Exception as exc:
                logger.error("job_heartbeat_failed queue=%s job_id=%s error=%s", job.queue, job.id, exc)
                continue
            if not touched:
                logger.warning("job_heartbeat_lost queue=%s job_id=%s", job.queue, job.id)
                return

    async def _execute(self, job: Job) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(job))
        error: str | None = None
        try:
            await self._run_handler(job)
        except Exception as exc:
            error = str(exc)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
        if error is not None:
            with self.session_factory() as db:
                outcome = requeue_or_fail_job(db, job, error)
                if outcome == "failed":
                    prune_finished_jobs(db, job.queue, "failed", job.remove_on_fail)
                db.commit()
            self._record_outcome(job.queue, outcome)
            return
        with self.session_factory() as db:
            mark_job_completed(db, job.id)
            prune_finished_jobs(db, job.queue, "completed", job.remove_on_complete)
            db.commit()
        self._record_outcome(job.queue, "completed")
