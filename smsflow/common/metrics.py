"""Prometheus metric definitions for the pipeline.

Metrics live on an explicitly constructed `PipelineMetrics` bound to its own
registry, so each process (and each test) owns its collectors.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


class PipelineMetrics:
    """Counters/histograms shared by the pipeline services of one process."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.http_requests_total = Counter(
            "http_requests_total",
            "HTTP requests",
            ["route", "method", "status_code"],
            registry=self.registry,
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration seconds",
            ["route", "method"],
            registry=self.registry,
        )
        self.events_ingested_total = Counter(
            "events_ingested_total",
            "Webhook events persisted and enqueued",
            ["topic"],
            registry=self.registry,
        )
        self.duplicate_events_skipped_total = Counter(
            "duplicate_events_skipped_total",
            "Duplicate webhook deliveries skipped by dedupe key",
            ["topic"],
            registry=self.registry,
        )
        self.jobs_processed_total = Counter(
            "jobs_processed_total",
            "Queue jobs processed by outcome",
            ["queue", "outcome"],
            registry=self.registry,
        )
        self.job_duration_seconds = Histogram(
            "job_duration_seconds",
            "Queue job handler duration seconds",
            ["queue"],
            registry=self.registry,
        )
        self.queue_pending_total = Gauge(
            "queue_pending_total",
            "Jobs waiting or active per queue",
            ["queue"],
            registry=self.registry,
        )
        self.sms_send_attempts_total = Counter(
            "sms_send_attempts_total",
            "SMS send attempts by resulting message status",
            ["status"],
            registry=self.registry,
        )
        self.sms_send_errors_total = Counter(
            "sms_send_errors_total",
            "SMS send errors by classification",
            ["classification"],
            registry=self.registry,
        )
        self.retries_total = Counter(
            "retries_total",
            "Retry count",
            ["dependency"],
            registry=self.registry,
        )
        self.provider_latency_seconds = Histogram(
            "provider_latency_seconds",
            "Provider send call latency seconds",
            registry=self.registry,
        )
        self.discount_codes_reserved_total = Counter(
            "discount_codes_reserved_total",
            "Discount codes reserved for campaigns",
            registry=self.registry,
        )
        self.pool_exhausted_total = Counter(
            "pool_exhausted_total",
            "Reservations rejected because the pool had too few codes",
            registry=self.registry,
        )
        self.campaign_recipients_total = Counter(
            "campaign_recipients_total",
            "Campaign recipients processed by outcome",
            ["status"],
            registry=self.registry,
        )
        self.dlr_updates_total = Counter(
            "dlr_updates_total",
            "Delivery receipts processed by result",
            ["result"],
            registry=self.registry,
        )
        self.inbound_messages_total = Counter(
            "inbound_messages_total",
            "Inbound SMS replies by action",
            ["action"],
            registry=self.registry,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)


def metrics_response(metrics: PipelineMetrics) -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=metrics.render(), media_type="text/plain")
