"""Worker process: runs persisted queue consumers and schedules housekeeping.

Run with `python -m smsflow.services.worker.main`.
"""

import asyncio
import signal

from smsflow.common.config import settings
from smsflow.common.db import SessionLocal
from smsflow.common.logging import configure_logging, logger
from smsflow.common.startup import log_startup_config
from smsflow.common.tracing import setup_tracing
from smsflow.services.housekeeping.service import HOUSEKEEPING_KEYS
from smsflow.services.pipeline import Pipeline, build_pipeline


async def housekeeping_scheduler(pipeline: Pipeline, interval_seconds: int) -> None:
    """Enqueue every housekeeping key once per interval."""

    while True:
        for key in HOUSEKEEPING_KEYS:
            try:
                await pipeline.housekeeping.schedule(key)
            except Exception as exc:
                logger.error("housekeeping schedule failed key=%s error=%s", key, exc)
        await asyncio.sleep(interval_seconds)


async def shutdown(pipeline: Pipeline, scheduler_task: asyncio.Task) -> None:
    """Stop the scheduler and wait for it to exit before closing the pipeline."""

    scheduler_task.cancel()
    await asyncio.gather(scheduler_task, return_exceptions=True)
    await pipeline.close()


async def run_worker() -> None:
    configure_logging()
    setup_tracing(f"{settings.service_name}-worker")
    log_startup_config(
        settings.service_name,
        ["SERVICE_NAME", "POSTGRES_DSN", "QUEUE_BACKEND", "PROVIDER_API_URL", "PROVIDER_API_KEY"],
    )
    if settings.queue_backend != "database":
        raise SystemExit("worker requires QUEUE_BACKEND=database")

    pipeline = build_pipeline(settings, SessionLocal)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await pipeline.queue.start()
    scheduler_task = asyncio.create_task(
        housekeeping_scheduler(pipeline, settings.housekeeping_interval_seconds)
    )
    logger.info("worker started queues=%s", ",".join(pipeline.queue.queue_names))
    await stop.wait()
    await shutdown(pipeline, scheduler_task)
    logger.info("worker stopped")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
