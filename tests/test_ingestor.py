"""Webhook ingestion: dedupe, persist, enqueue."""

import pytest
from sqlalchemy import func, select

from smsflow.common.jobs import InProcessQueue
from smsflow.services.ingestor.models import Event, Shop
from smsflow.services.ingestor.service import IngestorService, build_dedupe_key, extract_object_id, normalize_topic


class BrokenQueue(InProcessQueue):
    async def enqueue(self, queue_name, job_name, payload, options=None):
        raise ConnectionError("queue unavailable")


async def _noop(job):
    return None


def _event_count(session_factory) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(Event)).scalar_one()


def test_object_id_falls_back_to_graph_id_then_unknown():
    assert extract_object_id({"id": 1001}) == "1001"
    assert extract_object_id({"admin_graphql_api_id": "gid://shopify/Order/7"}) == "gid://shopify/Order/7"
    assert extract_object_id({"id": ""}) == "unknown"


def test_topic_is_normalized():
    assert normalize_topic(" /Orders/Create/ ") == "orders/create"
    assert build_dedupe_key("s1", "orders/create", "9") == "s1:orders/create:9"


async def test_same_webhook_twice_persists_one_event_and_one_job(queue, session_factory, metrics):
    dispatched = []

    async def handler(job):
        dispatched.append(job.payload["eventId"])

    queue.register("events", handler)
    ingestor = IngestorService(session_factory, queue, metrics)
    payload = {"id": 1001, "name": "#1001"}

    first = await ingestor.ingest("shopify", "orders/create", "Demo.myshopify.com", payload)
    second = await ingestor.ingest("shopify", "orders/create", "demo.myshopify.com", payload)
    await queue.drain()

    assert first.status == "accepted"
    assert second.status == "duplicate"
    assert second.event_id == first.event_id
    assert first.job_id == first.dedupe_key
    assert dispatched == [first.event_id]
    assert _event_count(session_factory) == 1
    assert metrics.duplicate_events_skipped_total.labels(topic="orders/create")._value.get() == 1
    with session_factory() as db:
        shops = db.execute(select(Shop)).scalars().all()
    assert [shop.domain for shop in shops] == ["demo.myshopify.com"]


async def test_different_topics_for_same_object_are_distinct(queue, session_factory, metrics):
    queue.register("events", _noop)
    ingestor = IngestorService(session_factory, queue, metrics)

    await ingestor.ingest("shopify", "orders/create", "demo.myshopify.com", {"id": 5})
    await ingestor.ingest("shopify", "orders/paid", "demo.myshopify.com", {"id": 5})
    await queue.drain()

    assert _event_count(session_factory) == 2


async def test_enqueue_failure_removes_event_so_retry_is_accepted(session_factory, metrics):
    ingestor = IngestorService(session_factory, BrokenQueue(metrics), metrics)

    with pytest.raises(ConnectionError):
        await ingestor.ingest("shopify", "orders/create", "demo.myshopify.com", {"id": 1})

    assert _event_count(session_factory) == 0

    retry_queue = InProcessQueue(metrics)
    retry_queue.register("events", _noop)
    result = await IngestorService(session_factory, retry_queue, metrics).ingest(
        "shopify", "orders/create", "demo.myshopify.com", {"id": 1}
    )
    await retry_queue.drain()

    assert result.status == "accepted"
    assert _event_count(session_factory) == 1
