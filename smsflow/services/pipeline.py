"""Composition root: builds one process's pipeline from settings.

Metrics, the provider client and the queue backend are constructed here and
injected into each service, so tests can swap any of them.
"""

from dataclasses import dataclass

from smsflow.common.config import CommonSettings
from smsflow.common.jobs import InProcessQueue, QueueBackend
from smsflow.common.metrics import PipelineMetrics
from smsflow.common.outbox import PersistedQueue
from smsflow.services.allocator.service import AllocatorService
from smsflow.services.campaigns.links import HttpShortener, Shortener
from smsflow.services.campaigns.service import CampaignService
from smsflow.services.delivery.provider import ProviderClient
from smsflow.services.delivery.service import DeliveryService, TemplateRenderer
from smsflow.services.dispatcher.registry import TopicRegistry
from smsflow.services.dispatcher.service import DispatcherService
from smsflow.services.dispatcher.triggers import TriggerHandlers
from smsflow.services.housekeeping.service import HousekeepingService
from smsflow.services.ingestor.service import IngestorService
from smsflow.services.receipts.service import ReceiptService


def build_queue(settings: CommonSettings, session_factory, metrics: PipelineMetrics) -> QueueBackend:
    """`QUEUE_BACKEND=database` selects the persisted queue; anything else runs in-process."""

    if settings.queue_backend == "database":
        return PersistedQueue(
            session_factory,
            metrics,
            poll_interval_seconds=settings.queue_poll_interval_seconds,
            processing_timeout_seconds=settings.queue_processing_timeout_seconds,
        )
    if settings.queue_backend != "memory":
        raise ValueError(f"unknown QUEUE_BACKEND {settings.queue_backend}")
    return InProcessQueue(metrics)


@dataclass
class Pipeline:
    settings: CommonSettings
    metrics: PipelineMetrics
    queue: QueueBackend
    provider: ProviderClient
    delivery: DeliveryService
    allocator: AllocatorService
    ingestor: IngestorService
    registry: TopicRegistry
    dispatcher: DispatcherService
    triggers: TriggerHandlers
    campaigns: CampaignService
    receipts: ReceiptService
    housekeeping: HousekeepingService
    shortener: Shortener | None = None

    async def close(self) -> None:
        await self.queue.close()
        await self.provider.aclose()
        if isinstance(self.shortener, HttpShortener):
            await self.shortener.aclose()


def build_pipeline(
    settings: CommonSettings,
    session_factory,
    queue: QueueBackend | None = None,
    provider: ProviderClient | None = None,
    renderer: TemplateRenderer | None = None,
    metrics: PipelineMetrics | None = None,
    shortener: Shortener | None = None,
    sleep=None,
) -> Pipeline:
    """Wire every service and register the queue consumers."""

    metrics = metrics or PipelineMetrics()
    queue = queue or build_queue(settings, session_factory, metrics)
    provider = provider or ProviderClient.from_settings(settings, metrics=metrics)
    if shortener is None and settings.shortlinks_enabled and settings.shortlink_base_url:
        shortener = HttpShortener(settings.shortlink_base_url)

    delivery = DeliveryService(
        session_factory,
        provider,
        renderer=renderer,
        metrics=metrics,
        callback_url=settings.provider_callback_url,
        lease_seconds=settings.send_lease_seconds,
    )
    allocator = AllocatorService(session_factory, metrics, reservation_ttl_seconds=settings.reservation_ttl_seconds)
    ingestor = IngestorService(session_factory, queue, metrics)
    triggers = TriggerHandlers(
        session_factory,
        delivery,
        queue,
        abandoned_checkout_delay_minutes=settings.abandoned_checkout_delay_minutes,
    )
    registry = triggers.register_all(TopicRegistry())
    registry.validate(settings.subscribed_topics)
    dispatcher = DispatcherService(session_factory, registry)
    campaign_kwargs = {"sleep": sleep} if sleep is not None else {}
    campaigns = CampaignService(
        session_factory,
        delivery,
        allocator,
        queue,
        metrics,
        batch_size=settings.campaign_batch_size,
        throttle_ms=settings.campaign_throttle_ms,
        shortener=shortener,
        **campaign_kwargs,
    )
    receipts = ReceiptService(session_factory, metrics)
    housekeeping = HousekeepingService(
        session_factory,
        allocator,
        queue,
        event_retention_days=settings.event_retention_days,
        message_retention_days=settings.message_retention_days,
    )

    queue.register("events", dispatcher.handle_job, settings.queue_concurrency("events"))
    queue.register("automations", triggers.handle_automation_job, settings.queue_concurrency("automations"))
    queue.register("campaigns", campaigns.handle_job, settings.queue_concurrency("campaigns"))
    queue.register("jobs", housekeeping.handle_job, settings.queue_concurrency("jobs"))

    return Pipeline(
        settings=settings,
        metrics=metrics,
        queue=queue,
        provider=provider,
        delivery=delivery,
        allocator=allocator,
        ingestor=ingestor,
        registry=registry,
        dispatcher=dispatcher,
        triggers=triggers,
        campaigns=campaigns,
        receipts=receipts,
        housekeeping=housekeeping,
        shortener=shortener,
    )
