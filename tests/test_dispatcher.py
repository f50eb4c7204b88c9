"""Topic routing and the trigger handlers, end to end through the queue."""

import pytest
from sqlalchemy import select

from smsflow.common.errors import UnknownTopicError
from smsflow.common.jobs import Job
from smsflow.services.delivery.models import Message
from smsflow.services.dispatcher.models import BackInStockInterest
from smsflow.services.dispatcher.registry import TopicRegistry
from smsflow.services.dispatcher.service import DispatcherService
from smsflow.services.dispatcher.triggers import abandoned_job_id
from smsflow.services.ingestor.models import Event

SHOP = "demo.myshopify.com"


async def _noop(ctx):
    return None


def _event(session_factory, event_id: str) -> Event:
    with session_factory() as db:
        return db.get(Event, event_id)


def _store_event(session_factory, topic: str) -> Event:
    event = Event(shop_id="shop-1", source="shopify", topic=topic, object_id="1", payload={}, dedupe_key=f"k:{topic}")
    with session_factory() as db:
        db.add(event)
        db.commit()
    return event


def test_registry_rejects_duplicates_and_unknown_topics():
    registry = TopicRegistry()
    registry.register("Orders/Create", _noop)

    with pytest.raises(ValueError):
        registry.register("orders/create", _noop)
    with pytest.raises(UnknownTopicError):
        registry.handler_for("orders/paid")
    with pytest.raises(UnknownTopicError):
        registry.validate(["orders/create", "orders/paid"])
    registry.validate(["orders/create"])
    assert registry.topics == ["orders/create"]


async def test_order_created_sends_confirmation(pipeline, seed, session_factory, provider_api):
    shop = seed.shop(SHOP)
    contact = seed.contact(shop.id, customer_id="77", first_name="Ana")
    payload = {"id": 1001, "name": "#1001", "customer": {"id": 77, "first_name": "Ana"}}

    result = await pipeline.ingestor.ingest("shopify", "orders/create", SHOP, payload)
    await pipeline.queue.drain()

    assert [request["text"] for request in provider_api.requests] == ["Hi Ana, thanks for your order #1001 at demo!"]
    event = _event(session_factory, result.event_id)
    assert event.processed_at is not None
    assert event.error is None
    with session_factory() as db:
        message = db.execute(select(Message)).scalar_one()
    assert message.idempotency_key == f"order_confirmation:1001:{contact.id}"
    assert message.status == "sent"


async def test_order_without_known_contact_is_processed_without_send(pipeline, seed, session_factory, provider_api):
    seed.shop(SHOP)

    result = await pipeline.ingestor.ingest("shopify", "orders/paid", SHOP, {"id": 5, "phone": "+19998887777"})
    await pipeline.queue.drain()

    assert provider_api.requests == []
    assert _event(session_factory, result.event_id).processed_at is not None


async def test_completed_order_cancels_abandoned_checkout_reminder(pipeline, seed, provider_api):
    shop = seed.shop(SHOP)
    seed.contact(shop.id, customer_id="77")
    checkout = {"id": 55, "customer": {"id": 77}, "abandoned_checkout_url": "https://demo/recover/55"}

    await pipeline.ingestor.ingest("shopify", "checkouts/update", SHOP, checkout)
    await pipeline.queue.drain()

    job_id = abandoned_job_id(shop.id, "55")
    reminder = await pipeline.queue.get_job("automations", job_id)
    assert reminder.status == "waiting"
    assert provider_api.requests == []

    order = {"id": 1002, "checkout_id": 55, "customer": {"id": 77}}
    await pipeline.ingestor.ingest("shopify", "orders/create", SHOP, order)
    await pipeline.queue.drain()

    assert await pipeline.queue.get_job("automations", job_id) is None
    assert len(provider_api.requests) == 1


async def test_abandoned_checkout_job_sends_recovery_link(pipeline, seed, provider_api):
    shop = seed.shop(SHOP)
    contact = seed.contact(shop.id)
    job = Job(
        id=abandoned_job_id(shop.id, "55"),
        queue="automations",
        name="abandoned_checkout",
        payload={"shopId": shop.id, "contactId": contact.id, "checkoutId": "55", "recoveryUrl": "https://demo/r/55"},
    )

    await pipeline.triggers.handle_automation_job(job)
    await pipeline.triggers.handle_automation_job(job)

    assert len(provider_api.requests) == 1
    assert provider_api.requests[0]["text"].endswith("https://demo/r/55")


async def test_back_in_stock_notifies_each_waiting_contact_once(pipeline, seed, session_factory, provider_api):
    shop = seed.shop(SHOP)
    first = seed.contact(shop.id, phone="+15550000001", first_name="Ana")
    second = seed.contact(shop.id, phone="+15550000002", first_name="Ben")
    with session_factory() as db:
        for contact in (first, second):
            db.add(
                BackInStockInterest(
                    shop_id=shop.id,
                    contact_id=contact.id,
                    inventory_item_id="9",
                    product_title="Blue Mug",
                )
            )
        db.commit()

    await pipeline.ingestor.ingest("shopify", "inventory_levels/update", SHOP, {"inventory_item_id": 9, "available": 3})
    await pipeline.queue.drain()

    texts = sorted(request["text"] for request in provider_api.requests)
    assert texts == [
        "Good news Ana! Blue Mug is back in stock at demo.",
        "Good news Ben! Blue Mug is back in stock at demo.",
    ]
    with session_factory() as db:
        interests = db.execute(select(BackInStockInterest)).scalars().all()
    assert all(interest.notified_at is not None for interest in interests)


async def test_handler_failure_is_recorded_and_reraised(session_factory):
    async def explode(ctx):
        raise RuntimeError("template missing")

    registry = TopicRegistry()
    registry.register("orders/create", explode)
    dispatcher = DispatcherService(session_factory, registry)
    event = _store_event(session_factory, "orders/create")
    job = Job(id="j1", queue="events", name="dispatch", payload={"eventId": event.id})

    with pytest.raises(RuntimeError):
        await dispatcher.handle_job(job)

    stored = _event(session_factory, event.id)
    assert stored.processed_at is None
    assert stored.error == "RuntimeError: template missing"


async def test_unknown_topic_fails_the_job(session_factory):
    dispatcher = DispatcherService(session_factory, TopicRegistry())
    event = _store_event(session_factory, "products/create")

    with pytest.raises(UnknownTopicError):
        await dispatcher.handle_job(Job(id="j2", queue="events", name="dispatch", payload={"eventId": event.id}))

    assert _event(session_factory, event.id).error.startswith("UnknownTopicError")


async def test_processed_event_is_not_dispatched_again(session_factory):
    calls = []

    async def record(ctx):
        calls.append(ctx.event_id)

    registry = TopicRegistry()
    registry.register("orders/create", record)
    dispatcher = DispatcherService(session_factory, registry)
    event = _store_event(session_factory, "orders/create")
    job = Job(id="j3", queue="events", name="dispatch", payload={"eventId": event.id})

    await dispatcher.handle_job(job)
    await dispatcher.handle_job(job)

    assert calls == [event.id]


async def test_non_numeric_stock_level_is_treated_as_out_of_stock(pipeline, seed, session_factory, provider_api):
    shop = seed.shop(SHOP)
    contact = seed.contact(shop.id)
    with session_factory() as db:
        db.add(BackInStockInterest(shop_id=shop.id, contact_id=contact.id, inventory_item_id="9", product_title="Mug"))
        db.commit()

    result = await pipeline.ingestor.ingest(
        "shopify", "inventory_levels/update", SHOP, {"inventory_item_id": 9, "available": "lots"}
    )
    await pipeline.queue.drain()

    assert provider_api.requests == []
    event = _event(session_factory, result.event_id)
    assert event.processed_at is not None
    assert event.error is None
    job = await pipeline.queue.get_job("events", event.dedupe_key)
    assert job is None or job.attempts_made == 1
