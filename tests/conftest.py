"""Shared fixtures: SQLite in-memory database, mock provider API, both queue backends."""

import json
import os

os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ["TRACING_ENABLED"] = "false"
os.environ["WEBHOOK_SECRET"] = "test-secret"
os.environ["QUEUE_BACKEND"] = "memory"

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from smsflow.common.config import CommonSettings
from smsflow.common.db import Base
from smsflow.common.jobs import InProcessQueue
from smsflow.common.metrics import PipelineMetrics
from smsflow.common.outbox import PersistedQueue
from smsflow.services.campaigns.models import Campaign, CampaignRecipient, Discount
from smsflow.services.delivery.models import Contact
from smsflow.services.delivery.provider import ProviderClient
from smsflow.services.ingestor.models import Shop
from smsflow.services.pipeline import build_pipeline


async def no_sleep(_: float) -> None:
    return None


class FakeProviderAPI:
    """Scripted stand-in for `POST {url}/send`.

    Queue entries are `(status_code, json_body)` tuples or exceptions to raise;
    once the script runs out every call succeeds with a fresh id.
    """

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.script: list = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            status_code, body = item
            return httpx.Response(status_code, json=body)
        return httpx.Response(200, json={"id": f"prov-{len(self.requests)}", "status": "sent"})


class Seed:
    """Row factories for the entities the pipeline reads but never creates."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _add(self, row):
        with self.session_factory() as db:
            db.add(row)
            db.commit()
            return row

    def shop(self, domain: str = "demo.myshopify.com") -> Shop:
        return self._add(Shop(domain=domain, name="demo"))

    def contact(
        self,
        shop_id: str,
        phone: str = "+15550000001",
        consent: str = "opted_in",
        customer_id: str | None = None,
        first_name: str = "Ana",
        opted_out: bool = False,
    ) -> Contact:
        return self._add(
            Contact(
                shop_id=shop_id,
                phone_e164=phone,
                customer_id=customer_id,
                first_name=first_name,
                sms_consent_state=consent,
                opted_out=opted_out,
            )
        )

    def discount(self, shop_id: str, code: str = "SHARED10") -> Discount:
        return self._add(Discount(shop_id=shop_id, code=code))

    def campaign(self, shop_id: str, discount_id: str | None = None, body: str | None = None) -> Campaign:
        return self._add(
            Campaign(
                shop_id=shop_id,
                name="spring sale",
                discount_id=discount_id,
                body=body or "Hi {first_name}, use {discount_code}: {discount_url}",
                utm={},
            )
        )

    def recipient(self, campaign_id: str, contact_id: str) -> CampaignRecipient:
        return self._add(CampaignRecipient(campaign_id=campaign_id, contact_id=contact_id, status="pending"))


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def seed(session_factory) -> Seed:
    return Seed(session_factory)


@pytest.fixture
def metrics() -> PipelineMetrics:
    return PipelineMetrics()


@pytest.fixture
def test_settings() -> CommonSettings:
    return CommonSettings(
        postgres_dsn="sqlite://",
        provider_api_url="https://provider.test",
        provider_api_key="test-key",
        webhook_secret="test-secret",
        campaign_batch_size=2,
        campaign_throttle_ms=0,
        tracing_enabled=False,
    )


@pytest.fixture
def provider_api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest.fixture
def provider(provider_api, metrics) -> ProviderClient:
    return ProviderClient(
        api_url="https://provider.test",
        api_key="test-key",
        retry_delays=(0.0, 0.0, 0.0),
        metrics=metrics,
        transport=httpx.MockTransport(provider_api.handler),
        sleep=no_sleep,
    )


@pytest.fixture(params=["memory", "database"])
async def queue(request, session_factory, metrics):
    if request.param == "memory":
        backend = InProcessQueue(metrics)
    else:
        backend = PersistedQueue(session_factory, metrics, poll_interval_seconds=0.01)
    yield backend
    await backend.close()


@pytest.fixture
async def pipeline(test_settings, session_factory, queue, provider, metrics):
    built = build_pipeline(
        test_settings,
        session_factory,
        queue=queue,
        provider=provider,
        metrics=metrics,
        sleep=no_sleep,
    )
    yield built
    await built.provider.aclose()
