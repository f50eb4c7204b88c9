"""Queue fabric contract plus the in-process backend.

Both backends share one job envelope and one retry contract: a handler that
raises is retried with exponential backoff until `attempts` is spent, and a
caller-supplied `job_id` collapses duplicate enqueues into one job.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from time import perf_counter
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import BaseModel, Field

from smsflow.common.logging import job_id_ctx, logger, shop_id_ctx, trace_id_ctx
from smsflow.common.metrics import PipelineMetrics


class JobOptions(BaseModel):
    """Per-enqueue retry and retention policy."""

    job_id: str | None = None
    attempts: int = Field(default=5, ge=1)
    backoff_seconds: float = Field(default=2.0, ge=0)
    delay_seconds: float = Field(default=0.0, ge=0)
    remove_on_complete: int = 1000
    remove_on_fail: int = 1000


class Job(BaseModel):
    """Envelope handed to queue handlers."""

    id: str
    queue: str
    name: str
    payload: dict[str, Any]
    attempts_made: int = 0
    max_attempts: int = 5
    backoff_seconds: float = 2.0
    remove_on_complete: int = 1000
    remove_on_fail: int = 1000


class JobHandle(BaseModel):
    id: str
    queue: str
    name: str
    duplicate: bool = False


class JobStatus(BaseModel):
    id: str
    queue: str
    name: str
    status: str
    attempts_made: int
    last_error: str | None = None


JobHandler = Callable[[Job], Awaitable[None]]


def backoff_delay(backoff_seconds: float, attempt: int) -> float:
    """Exponential schedule: backoff, 2x backoff, 4x backoff, ..."""

    return backoff_seconds * (2 ** max(0, attempt - 1))


class QueueBackend(ABC):
    """`enqueue(queue, job, payload, options) -> JobHandle` plus worker lifecycle."""

    def __init__(self, metrics: PipelineMetrics | None = None) -> None:
        self.metrics = metrics or PipelineMetrics()
        self._handlers: dict[str, tuple[JobHandler, int]] = {}

    def register(self, queue_name: str, handler: JobHandler, concurrency: int = 1) -> None:
        """Attach the consumer for one queue with its own concurrency limit."""

        self._handlers[queue_name] = (handler, max(1, concurrency))

    @property
    def queue_names(self) -> list[str]:
        return list(self._handlers)

    @abstractmethod
    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> JobHandle:
        raise NotImplementedError

    @abstractmethod
    async def cancel(self, queue_name: str, job_id: str) -> bool:
        """Drop a job that has not started yet."""

    @abstractmethod
    async def get_job(self, queue_name: str, job_id: str) -> JobStatus | None:
        raise NotImplementedError

    @abstractmethod
    async def start(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def drain(self) -> None:
        """Run until no due work remains."""

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    async def _run_handler(self, job: Job) -> None:
        """Invoke the registered handler with job context bound to logs."""

        handler, _ = self._handlers[job.queue]
        job_token = job_id_ctx.set(job.id)
        shop_token = shop_id_ctx.set(str(job.payload.get("shopId") or ""))
        trace_token = trace_id_ctx.set(str(job.payload.get("requestId") or job.id))
        start = perf_counter()
        try:
            logger.info(
                "job_started queue=%s name=%s job_id=%s attempt=%s/%s",
                job.queue,
                job.name,
                job.id,
                job.attempts_made,
                job.max_attempts,
            )
            await handler(job)
        except Exception as exc:
            logger.error(
                "job_failed queue=%s name=%s job_id=%s attempt=%s/%s error=%s",
                job.queue,
                job.name,
                job.id,
                job.attempts_made,
                job.max_attempts,
                exc,
            )
            raise
        finally:
            self.metrics.job_duration_seconds.labels(queue=job.queue).observe(max(0.0, perf_counter() - start))
            job_id_ctx.reset(job_token)
            shop_id_ctx.reset(shop_token)
            trace_id_ctx.reset(trace_token)

    def _record_outcome(self, queue_name: str, outcome: str) -> None:
        self.metrics.jobs_processed_total.labels(queue=queue_name, outcome=outcome).inc()


class InProcessQueue(QueueBackend):
    """Fallback backend: jobs run as asyncio tasks in the enqueuing process.

    Nothing survives a restart. The Event row is already durable when a
    dispatch job is lost, so a later sweep can still find it.
    """

    def __init__(self, metrics: PipelineMetrics | None = None) -> None:
        super().__init__(metrics)
        self._jobs: dict[str, Job] = {}
        self._finished: OrderedDict[str, JobStatus] = OrderedDict()
        self._last_errors: dict[str, str] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._active: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> JobHandle:
        options = options or JobOptions()
        job_id = options.job_id or str(uuid4())
        if job_id in self._jobs or job_id in self._finished:
            logger.info("job_duplicate_collapsed queue=%s name=%s job_id=%s", queue_name, job_name, job_id)
            return JobHandle(id=job_id, queue=queue_name, name=job_name, duplicate=True)

        job = Job(
            id=job_id,
            queue=queue_name,
            name=job_name,
            payload=payload,
            max_attempts=options.attempts,
            backoff_seconds=options.backoff_seconds,
            remove_on_complete=options.remove_on_complete,
            remove_on_fail=options.remove_on_fail,
        )
        self._jobs[job_id] = job
        self._schedule(job, options.delay_seconds)
        return JobHandle(id=job_id, queue=queue_name, name=job_name)

    async def cancel(self, queue_name: str, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.queue != queue_name or job_id in self._active:
            return False
        timer = self._timers.pop(job_id, None)
        if timer is None:
            # Already handed to a task that has not started; let it run.
            return False
        timer.cancel()
        del self._jobs[job_id]
        logger.info("job_cancelled queue=%s job_id=%s", queue_name, job_id)
        return True

    async def get_job(self, queue_name: str, job_id: str) -> JobStatus | None:
        job = self._jobs.get(job_id)
        if job is not None and job.queue == queue_name:
            status = "active" if job_id in self._active else "waiting"
            return JobStatus(
                id=job.id,
                queue=job.queue,
                name=job.name,
                status=status,
                attempts_made=job.attempts_made,
                last_error=self._last_errors.get(job_id),
            )
        finished = self._finished.get(job_id)
        if finished is not None and finished.queue == queue_name:
            return finished
        return None

    async def start(self) -> None:
        # Jobs are scheduled on enqueue; there is no separate worker pool.
        return None

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*tuple(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in tuple(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*tuple(self._tasks), return_exceptions=True)

    def _schedule(self, job: Job, delay_seconds: float) -> None:
        loop = asyncio.get_running_loop()
        if delay_seconds > 0:
            self._timers[job.id] = loop.call_later(delay_seconds, self._spawn, job)
        else:
            self._spawn(job)

    def _spawn(self, job: Job) -> None:
        self._timers.pop(job.id, None)
        task = asyncio.get_running_loop().create_task(self._execute(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _semaphore(self, queue_name: str) -> asyncio.Semaphore:
        if queue_name not in self._semaphores:
            _, concurrency = self._handlers[queue_name]
            self._semaphores[queue_name] = asyncio.Semaphore(concurrency)
        return self._semaphores[queue_name]

    async def _execute(self, job: Job) -> None:
        if job.queue not in self._handlers:
            logger.error("job_unroutable queue=%s name=%s job_id=%s", job.queue, job.name, job.id)
            self._finish(job, "failed", "no handler registered")
            return

        async with self._semaphore(job.queue):
            job.attempts_made += 1
            self._active.add(job.id)
            try:
                await self._run_handler(job)
            except Exception as exc:
                self._last_errors[job.id] = str(exc)
                if job.attempts_made < job.max_attempts:
                    delay = backoff_delay(job.backoff_seconds, job.attempts_made)
                    logger.warning(
                        "job_retry_scheduled queue=%s job_id=%s attempt=%s backoff_s=%s",
                        job.queue,
                        job.id,
                        job.attempts_made,
                        delay,
                    )
                    self._record_outcome(job.queue, "retried")
                    self._schedule(job, delay)
                    return
                self._finish(job, "failed", str(exc))
                return
            finally:
                self._active.discard(job.id)
            self._finish(job, "completed")

    def _finish(self, job: Job, status: str, error: str | None = None) -> None:
        self._jobs.pop(job.id, None)
        self._last_errors.pop(job.id, None)
        self._finished[job.id] = JobStatus(
            id=job.id,
            queue=job.queue,
            name=job.name,
            status=status,
            attempts_made=job.attempts_made,
            last_error=error,
        )
        self._record_outcome(job.queue, status)
        keep = job.remove_on_complete if status == "completed" else job.remove_on_fail
        same = [key for key, value in self._finished.items() if value.queue == job.queue and value.status == status]
        for key in same[: max(0, len(same) - keep)]:
            del self._finished[key]
