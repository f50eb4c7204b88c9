"""Public HTTP surface: webhooks, provider callbacks and campaign operations.

Queue consumers run inside this process when the in-process backend is
selected, or when `RUN_WORKERS_IN_API` is set for the persisted backend.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, select

from smsflow.common.config import settings
from smsflow.common.db import SessionLocal
from smsflow.common.errors import (
    InvalidStatusTransition,
    NotFound,
    PoolExhausted,
    QueryTimeout,
    StorageConflict,
)
from smsflow.common.jobs import InProcessQueue
from smsflow.common.logging import configure_logging, logger, trace_id_ctx
from smsflow.common.metrics import metrics_response
from smsflow.common.startup import log_startup_config
from smsflow.common.timeouts import run_with_timeout
from smsflow.common.tracing import instrument_app, setup_tracing
from smsflow.services.campaigns.models import CampaignRecipient
from smsflow.services.delivery.models import Contact
from smsflow.services.gateway.schemas import DeliveryReceiptRequest, InboundMessageRequest
from smsflow.services.gateway.security import HmacSignatureVerifier, SignatureVerifier
from smsflow.services.ingestor.models import Shop
from smsflow.services.pipeline import Pipeline, build_pipeline

configure_logging()
setup_tracing(settings.service_name)

AUDIENCE_PREVIEW_TIMEOUT_SECONDS = 5.0


def create_app(
    pipeline: Pipeline | None = None,
    session_factory=None,
    verifier: SignatureVerifier | None = None,
) -> FastAPI:
    session_factory = session_factory or SessionLocal
    pipeline = pipeline or build_pipeline(settings, session_factory)
    verifier = verifier or HmacSignatureVerifier(settings.webhook_secret)
    run_workers = isinstance(pipeline.queue, InProcessQueue) or settings.run_workers_in_api

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Start queue consumers with the app lifecycle."""

        log_startup_config(
            settings.service_name,
            ["SERVICE_NAME", "POSTGRES_DSN", "QUEUE_BACKEND", "PROVIDER_API_URL", "PROVIDER_API_KEY", "WEBHOOK_SECRET"],
        )
        if run_workers:
            await pipeline.queue.start()
        yield
        await pipeline.close()

    app = FastAPI(title="smsflow gateway", lifespan=lifespan)
    app.state.pipeline = pipeline
    instrument_app(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_id_ctx.set(request.headers.get("x-request-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            pipeline.metrics.http_request_duration_seconds.labels(route=route, method=method).observe(elapsed)
            pipeline.metrics.http_requests_total.labels(
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    def shop_for(domain: str) -> Shop:
        with session_factory() as db:
            shop = db.execute(select(Shop).where(Shop.domain == domain.strip().lower())).scalar_one_or_none()
        if shop is None:
            raise HTTPException(status_code=404, detail="unknown shop")
        return shop

    @app.post("/webhooks/provider/dlr")
    async def provider_dlr(req: DeliveryReceiptRequest):
        """Delivery receipt callback from the SMS provider."""

        result = pipeline.receipts.apply_receipt(req.message_id, req.status, req.error_code, req.error_message)
        return {"ok": result.result == "updated", "result": result.result}

    @app.post("/webhooks/provider/inbound")
    async def provider_inbound(req: InboundMessageRequest):
        """Inbound reply (STOP/HELP/other) from the SMS provider."""

        result = pipeline.receipts.handle_inbound(req.from_phone, req.text, req.timestamp)
        body = {"ok": True, "action": result.action}
        if result.reply:
            body["reply"] = result.reply
        return body

    @app.post("/webhooks/{source}/{topic:path}")
    async def ingest_webhook(
        source: str,
        topic: str,
        request: Request,
        x_shop_domain: str | None = Header(default=None),
        x_shopify_shop_domain: str | None = Header(default=None),
        x_webhook_hmac_sha256: str | None = Header(default=None),
    ):
        """Verify, dedupe, persist and enqueue one commerce webhook."""

        body = await request.body()
        if not verifier.verify(body, x_webhook_hmac_sha256):
            raise HTTPException(status_code=401, detail="invalid signature")
        shop_domain = x_shop_domain or x_shopify_shop_domain
        if not shop_domain:
            raise HTTPException(status_code=400, detail="missing shop domain header")
        try:
            payload = json.loads(body or b"{}")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="invalid JSON body") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="JSON object expected")

        try:
            result = await pipeline.ingestor.ingest(source, topic, shop_domain, payload)
        except Exception as exc:
            logger.exception("webhook ingestion failed source=%s topic=%s: %s", source, topic, exc)
            raise HTTPException(status_code=503, detail="ingestion failed, retry later") from exc
        return {"ok": True, "status": result.status, "event_id": result.event_id}

    @app.post("/campaigns/{campaign_id}/snapshot")
    async def snapshot_campaign(campaign_id: str, shop: str = Query(...)):
        """Freeze the consenting audience into pending campaign recipients."""

        shop_row = shop_for(shop)
        try:
            added = pipeline.campaigns.snapshot_audience(shop_row.id, campaign_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"ok": True, "recipients_added": added, "pending": pipeline.campaigns.count_pending(campaign_id)}

    @app.post("/campaigns/{campaign_id}/prepare")
    async def prepare_campaign(campaign_id: str, shop: str = Query(...)):
        """Reserve discount codes for the campaign's pending audience."""

        shop_row = shop_for(shop)
        try:
            reservation = pipeline.campaigns.prepare(shop_row.id, campaign_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except PoolExhausted as exc:
            return JSONResponse(
                status_code=409,
                content={
                    "error": "insufficient_discount_codes",
                    "needed": exc.needed,
                    "available": exc.available,
                },
            )
        if reservation is None:
            return {"ok": True, "reservation_id": None}
        return {
            "ok": True,
            "reservation_id": reservation.id,
            "quantity": reservation.quantity,
            "expires_at": reservation.expires_at.isoformat(),
        }

    @app.post("/campaigns/{campaign_id}/send")
    async def send_campaign(campaign_id: str, shop: str = Query(...)):
        """Enqueue the batch sender for a campaign."""

        shop_row = shop_for(shop)
        try:
            handle = await pipeline.campaigns.enqueue_send(shop_row.id, campaign_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"ok": True, "job_id": handle.id, "duplicate": handle.duplicate}

    @app.get("/campaigns/{campaign_id}/audience")
    async def audience_preview(campaign_id: str, shop: str = Query(...)):
        """Read-only audience counts, bounded by a query timeout."""

        shop_row = shop_for(shop)

        def count() -> dict:
            with session_factory() as db:
                pending = db.execute(
                    select(func.count())
                    .select_from(CampaignRecipient)
                    .where(CampaignRecipient.campaign_id == campaign_id, CampaignRecipient.status == "pending")
                ).scalar_one()
                eligible = db.execute(
                    select(func.count())
                    .select_from(Contact)
                    .where(
                        Contact.shop_id == shop_row.id,
                        Contact.sms_consent_state == "opted_in",
                        Contact.opted_out.is_(False),
                    )
                ).scalar_one()
            return {"pending": pending, "eligible": eligible}

        try:
            counts = await run_with_timeout(
                lambda: asyncio.to_thread(count),
                AUDIENCE_PREVIEW_TIMEOUT_SECONDS,
                "audience preview",
            )
        except QueryTimeout as exc:
            raise HTTPException(status_code=504, detail=str(exc)) from exc
        return {"campaign_id": campaign_id, **counts}

    @app.post("/reservations/{reservation_id}/release")
    async def release_reservation(reservation_id: str, reason: str = Query(default="released")):
        """Return a reservation's unused codes to its pool."""

        try:
            released = pipeline.allocator.release(reservation_id, reason=reason)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (InvalidStatusTransition, StorageConflict) as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"ok": True, "released": released}

    @app.get("/pools/{pool_id}")
    async def pool_status(pool_id: str):
        try:
            return pipeline.allocator.pool_status(pool_id).model_dump()
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response(pipeline.metrics)

    return app


app = create_app()
