"""Campaign preparation and the throttled batch sender."""

import httpx
import pytest
from sqlalchemy import func, select, update

from smsflow.common.errors import DeliveryDeferred, PoolExhausted
from smsflow.services.campaigns.links import HttpShortener, build_apply_url
from smsflow.services.campaigns.models import Campaign, CampaignRecipient
from smsflow.services.campaigns.service import CampaignService, campaign_job_id
from smsflow.services.delivery.models import Message


def _recipients(session_factory, campaign_id):
    with session_factory() as db:
        return {
            row.contact_id: row
            for row in db.execute(
                select(CampaignRecipient).where(CampaignRecipient.campaign_id == campaign_id)
            ).scalars()
        }


def _messages(session_factory):
    with session_factory() as db:
        return db.execute(select(Message)).scalars().all()


def test_apply_url_carries_redirect_and_utm():
    url = build_apply_url("demo.myshopify.com", "SAVE 10", "camp-1", {"content": "hero"})

    parsed = httpx.URL(url)
    assert parsed.host == "demo.myshopify.com"
    assert "/discount/SAVE" in url
    assert parsed.params["redirect"] == "/checkout"
    assert parsed.params["utm_source"] == "sms"
    assert parsed.params["utm_campaign"] == "camp-1"
    assert parsed.params["utm_content"] == "hero"


async def test_shortener_falls_back_to_long_url():
    def failing(request):
        return httpx.Response(500)

    shortener = HttpShortener("https://sho.rt", transport=httpx.MockTransport(failing))
    assert await shortener.shorten("https://long.example/x") == "https://long.example/x"
    await shortener.aclose()


async def test_snapshot_includes_only_consenting_contacts(pipeline, seed, session_factory):
    shop = seed.shop()
    yes = seed.contact(shop.id, phone="+15550000001")
    seed.contact(shop.id, phone="+15550000002", consent="unknown")
    seed.contact(shop.id, phone="+15550000003", opted_out=True)
    campaign = seed.campaign(shop.id)

    assert pipeline.campaigns.snapshot_audience(shop.id, campaign.id) == 1
    assert pipeline.campaigns.snapshot_audience(shop.id, campaign.id) == 0
    assert list(_recipients(session_factory, campaign.id)) == [yes.id]


async def test_send_skips_contacts_without_consent(pipeline, seed, session_factory, provider_api):
    shop = seed.shop()
    opted_out = seed.contact(shop.id, phone="+15550000001", opted_out=True)
    campaign = seed.campaign(shop.id)
    seed.recipient(campaign.id, opted_out.id)
    seed.recipient(campaign.id, "deleted-contact")

    summary = await pipeline.campaigns.send(shop.id, campaign.id)

    assert summary.skipped == 2
    assert provider_api.requests == []
    assert _messages(session_factory) == []
    for row in _recipients(session_factory, campaign.id).values():
        assert (row.status, row.reason) == ("skipped", "no_consent")


async def test_pooled_codes_are_assigned_per_recipient(pipeline, seed, session_factory, provider_api):
    shop = seed.shop()
    discount = seed.discount(shop.id)
    pool = pipeline.allocator.create_pool(shop.id, discount.id, ["UNIQ1", "UNIQ2"])
    first = seed.contact(shop.id, phone="+15550000001", first_name="Ana")
    second = seed.contact(shop.id, phone="+15550000002", first_name="Ben")
    campaign = seed.campaign(shop.id, discount_id=discount.id)
    pipeline.campaigns.snapshot_audience(shop.id, campaign.id)

    reservation = pipeline.campaigns.prepare(shop.id, campaign.id)
    assert reservation.quantity == 2
    assert pipeline.campaigns.prepare(shop.id, campaign.id).id == reservation.id

    summary = await pipeline.campaigns.send(shop.id, campaign.id)

    assert summary.sent == 2
    bodies = sorted(request["text"] for request in provider_api.requests)
    assert len(bodies) == 2
    assert {"UNIQ1", "UNIQ2"} == {body.split("use ")[1].split(":")[0] for body in bodies}
    for body in bodies:
        assert "/discount/UNIQ" in body
        assert f"utm_campaign={campaign.id}" in body
    recipients = _recipients(session_factory, campaign.id)
    assert {recipients[first.id].status, recipients[second.id].status} == {"sent"}
    assert all(row.discount_code_id for row in recipients.values())
    status = pipeline.allocator.pool_status(pool.id)
    assert (status.reserved, status.used, status.available) == (0, 2, 0)
    with session_factory() as db:
        assert db.get(Campaign, campaign.id).status == "sent"


async def test_shared_code_is_used_without_a_pool(pipeline, seed, provider_api):
    shop = seed.shop()
    discount = seed.discount(shop.id, code="SHARED10")
    contact = seed.contact(shop.id)
    campaign = seed.campaign(shop.id, discount_id=discount.id)
    seed.recipient(campaign.id, contact.id)

    assert pipeline.campaigns.prepare(shop.id, campaign.id) is None
    await pipeline.campaigns.send(shop.id, campaign.id)

    assert "use SHARED10:" in provider_api.requests[0]["text"]


async def test_prepare_fails_when_pool_is_too_small(pipeline, seed):
    shop = seed.shop()
    discount = seed.discount(shop.id)
    pipeline.allocator.create_pool(shop.id, discount.id, ["ONLY1"])
    seed.contact(shop.id, phone="+15550000001")
    seed.contact(shop.id, phone="+15550000002")
    campaign = seed.campaign(shop.id, discount_id=discount.id)
    pipeline.campaigns.snapshot_audience(shop.id, campaign.id)

    with pytest.raises(PoolExhausted) as exc_info:
        pipeline.campaigns.prepare(shop.id, campaign.id)

    assert (exc_info.value.available, exc_info.value.needed) == (1, 2)


async def test_rerun_never_sends_a_second_message(pipeline, seed, session_factory, provider_api):
    shop = seed.shop()
    contact = seed.contact(shop.id)
    campaign = seed.campaign(shop.id, body="Flash sale today")
    seed.recipient(campaign.id, contact.id)

    await pipeline.campaigns.send(shop.id, campaign.id)
    # Simulate a crash between the send and the recipient update.
    with session_factory() as db:
        db.execute(update(CampaignRecipient).values(status="pending", message_id=None))
        db.commit()
    summary = await pipeline.campaigns.send(shop.id, campaign.id)

    assert summary.sent == 1
    assert len(provider_api.requests) == 1
    assert len(_messages(session_factory)) == 1
    assert _recipients(session_factory, campaign.id)[contact.id].message_id == _messages(session_factory)[0].id


async def test_deferred_recipient_stays_pending_and_job_retries(pipeline, seed, session_factory, provider_api):
    shop = seed.shop()
    contact = seed.contact(shop.id)
    campaign = seed.campaign(shop.id, body="Flash sale today")
    seed.recipient(campaign.id, contact.id)
    provider_api.script = [httpx.ConnectError("down")] * 3

    with pytest.raises(DeliveryDeferred):
        await pipeline.campaigns.send(shop.id, campaign.id)

    assert _recipients(session_factory, campaign.id)[contact.id].status == "pending"
    with session_factory() as db:
        assert db.get(Campaign, campaign.id).status == "sending"

    summary = await pipeline.campaigns.send(shop.id, campaign.id)

    assert summary.sent == 1
    assert len(_messages(session_factory)) == 1


async def test_pages_are_throttled(pipeline, seed, session_factory, metrics):
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    shop = seed.shop()
    campaign = seed.campaign(shop.id, body="Flash sale today")
    for n in range(5):
        contact = seed.contact(shop.id, phone=f"+1555000000{n}")
        seed.recipient(campaign.id, contact.id)
    sender = CampaignService(
        session_factory,
        pipeline.delivery,
        pipeline.allocator,
        pipeline.queue,
        metrics,
        batch_size=2,
        throttle_ms=250,
        sleep=record_sleep,
    )

    summary = await sender.send(shop.id, campaign.id)

    assert summary.sent == 5
    assert sleeps == [0.25, 0.25]


async def test_enqueue_send_collapses_duplicate_requests(pipeline, seed, session_factory, provider_api):
    shop = seed.shop()
    contact = seed.contact(shop.id)
    campaign = seed.campaign(shop.id, body="Flash sale today")
    seed.recipient(campaign.id, contact.id)

    first = await pipeline.campaigns.enqueue_send(shop.id, campaign.id)
    second = await pipeline.campaigns.enqueue_send(shop.id, campaign.id)
    await pipeline.queue.drain()

    assert first.id == campaign_job_id(campaign.id)
    assert second.duplicate is True
    assert len(provider_api.requests) == 1
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(Message)).scalar_one() == 1


async def test_racing_prepare_keeps_a_single_reservation(pipeline, seed, monkeypatch):
    shop = seed.shop()
    discount = seed.discount(shop.id)
    pool = pipeline.allocator.create_pool(shop.id, discount.id, ["R1", "R2", "R3", "R4"])
    seed.contact(shop.id, phone="+15550000001")
    seed.contact(shop.id, phone="+15550000002")
    campaign = seed.campaign(shop.id, discount_id=discount.id)
    pipeline.campaigns.snapshot_audience(shop.id, campaign.id)
    first = pipeline.campaigns.prepare(shop.id, campaign.id)

    lookups = []
    real_lookup = pipeline.allocator.active_reservation_for

    def lookup_before_first_commit(campaign_id):
        lookups.append(campaign_id)
        return None if len(lookups) == 1 else real_lookup(campaign_id)

    monkeypatch.setattr(pipeline.allocator, "active_reservation_for", lookup_before_first_commit)
    second = pipeline.campaigns.prepare(shop.id, campaign.id)

    assert second.id == first.id
    assert len(lookups) == 2
    status = pipeline.allocator.pool_status(pool.id)
    assert (status.reserved, status.available) == (2, 2)
