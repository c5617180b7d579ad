"""Dispatch dedupe: claim-before-send on the dispatch log identity.

Covers concurrent dispatch of the same sale, retry after failure, test-mode
isolation, and destination selection (inactive pixels, Kwai without a
click id, UTMify order events).
"""

import asyncio
from decimal import Decimal

import pytest

from utmrelay.exceptions import SaleNotFoundError
from utmrelay.models import ConversionDispatch
from utmrelay.security import sha256_hex
from utmrelay.services.click_store import save_click
from utmrelay.services.conversion_dispatcher import ConversionDispatcher
from utmrelay.services.pixel_registry import deactivate_pixel
from utmrelay.services.sale_store import get_sale_by_code, upsert_sale

META_HOST = "graph.facebook.com"
TIKTOK_HOST = "business-api.tiktok.com"
KWAI_HOST = "www.adsnebula.com"
UTMIFY_HOST = "api.utmify.com.br"


@pytest.fixture
def approved_sale(db):
    save_click(db, {"click_id": "abc123", "ttclid": "tt-1", "fbclid": "IwAR", "landing_page": "https://example.com/vip"})
    return upsert_sale(db, {
        "sale_code": "S1",
        "status": "approved",
        "click_id": "abc123",
        "customer_email": " Maria@Example.com",
        "plan_value": Decimal("49.90"),
        "currency": "BRL",
    }).sale


def _by_platform(results):
    return {r.platform: r for r in results}


@pytest.mark.asyncio
async def test_concurrent_dispatches_send_exactly_once(context, approved_sale, add_pixel, platform_api):
    add_pixel("facebook", "PX1")
    dispatcher = ConversionDispatcher(context)

    runs = await asyncio.gather(*(dispatcher.dispatch("S1") for _ in range(5)))
    statuses = [results[0].status for results in runs]

    assert len(platform_api.calls_to(META_HOST)) == 1
    assert statuses.count("sent") == 1
    assert statuses.count("in_flight") == 4

    with context.session() as db:
        rows = db.query(ConversionDispatch).all()
        assert len(rows) == 1
        assert rows[0].status == "sent"
        assert get_sale_by_code(db, "S1").facebook_sent is True


@pytest.mark.asyncio
async def test_sent_destination_is_not_resent(context, approved_sale, add_pixel, platform_api):
    add_pixel("facebook", "PX1")
    dispatcher = ConversionDispatcher(context)

    await dispatcher.dispatch("S1")
    again = await dispatcher.dispatch("S1")

    assert again[0].status == "already_sent"
    assert again[0].success is True
    assert len(platform_api.calls_to(META_HOST)) == 1


@pytest.mark.asyncio
async def test_failed_destination_is_retried_and_others_are_unaffected(context, approved_sale, add_pixel, platform_api):
    add_pixel("facebook", "PX1")
    add_pixel("tiktok", "TT1")
    platform_api.fail(META_HOST)
    dispatcher = ConversionDispatcher(context)

    first = _by_platform(await dispatcher.dispatch("S1"))
    assert first["facebook"].status == "failed"
    assert "boom" in first["facebook"].error
    assert first["tiktok"].status == "sent"

    with context.session() as db:
        sale = get_sale_by_code(db, "S1")
        assert sale.facebook_sent is False
        assert sale.tiktok_sent is True

    platform_api.failing_hosts.clear()
    second = _by_platform(await dispatcher.dispatch("S1"))
    assert second["facebook"].status == "sent"
    assert second["tiktok"].status == "already_sent"

    with context.session() as db:
        row = db.query(ConversionDispatch).filter(ConversionDispatch.platform == "facebook").one()
        assert row.attempts == 2
        assert row.last_error is None
    assert len(platform_api.calls_to(META_HOST)) == 2
    assert len(platform_api.calls_to(TIKTOK_HOST)) == 1


@pytest.mark.asyncio
async def test_inactive_pixel_is_never_called(context, approved_sale, add_pixel, platform_api):
    add_pixel("facebook", "PX1")
    add_pixel("facebook", "PX2")
    with context.session() as db:
        deactivate_pixel(db, "facebook", "PX2")

    results = await ConversionDispatcher(context).dispatch("S1")

    assert [r.destination for r in results] == ["PX1"]
    urls = [str(r.url) for r in platform_api.calls_to(META_HOST)]
    assert len(urls) == 1
    assert "/PX1/events" in urls[0]


@pytest.mark.asyncio
async def test_production_dispatch_never_carries_the_test_marker(context, approved_sale, add_pixel, platform_api):
    add_pixel("facebook", "PX1", test_event_code="TEST123")
    add_pixel("tiktok", "TT1", test_event_code="TEST456")

    await ConversionDispatcher(context).dispatch("S1")

    meta_body = platform_api.bodies_to(META_HOST)[0]
    tiktok_body = platform_api.bodies_to(TIKTOK_HOST)[0]
    assert "test_event_code" not in meta_body
    assert "test_event_code" not in tiktok_body


@pytest.mark.asyncio
async def test_test_mode_uses_its_own_slot(context, approved_sale, add_pixel, platform_api):
    add_pixel("facebook", "PX1", test_event_code="TEST123")
    dispatcher = ConversionDispatcher(context)

    test_results = await dispatcher.dispatch("S1", test_mode=True)
    assert test_results[0].status == "sent"
    assert platform_api.bodies_to(META_HOST)[0]["test_event_code"] == "TEST123"

    with context.session() as db:
        # A test send is not a production send
        assert get_sale_by_code(db, "S1").facebook_sent is False

    live_results = await dispatcher.dispatch("S1")
    assert live_results[0].status == "sent"
    assert "test_event_code" not in platform_api.bodies_to(META_HOST)[1]

    with context.session() as db:
        keys = sorted(row.attribution_key for row in db.query(ConversionDispatch).all())
        assert keys == ["S1", "S1:test"]


@pytest.mark.asyncio
async def test_meta_payload_uses_sale_and_click_data(context, approved_sale, add_pixel, platform_api):
    add_pixel("facebook", "PX1")

    await ConversionDispatcher(context).dispatch("S1")

    request = platform_api.calls_to(META_HOST)[0]
    body = platform_api.bodies_to(META_HOST)[0]
    event = body["data"][0]
    assert body["access_token"] == "token-PX1"
    assert request.url.path == "/v19.0/PX1/events"
    assert event["event_id"] == "S1"
    assert event["custom_data"] == {"value": 49.9, "currency": "BRL"}
    assert event["user_data"]["em"] == [sha256_hex("maria@example.com")]
    assert event["user_data"]["fbc"].startswith("fb.1.")
    assert event["user_data"]["fbc"].endswith(".IwAR")
    assert event["event_source_url"] == "https://example.com/vip"


@pytest.mark.asyncio
async def test_tiktok_payload_carries_the_ttclid(context, approved_sale, add_pixel, platform_api):
    add_pixel("tiktok", "TT1")

    await ConversionDispatcher(context).dispatch("S1")

    request = platform_api.calls_to(TIKTOK_HOST)[0]
    body = platform_api.bodies_to(TIKTOK_HOST)[0]
    assert request.headers["Access-Token"] == "token-TT1"
    assert body["pixel_code"] == "TT1"
    assert body["event"] == "CompletePayment"
    assert body["context"]["ad"] == {"callback": "tt-1"}
    assert body["properties"]["value"] == 49.9


@pytest.mark.asyncio
async def test_kwai_without_click_id_is_skipped(context, approved_sale, add_pixel, platform_api):
    add_pixel("kwai", "KW1")

    results = await ConversionDispatcher(context).dispatch("S1")

    assert results[0].status == "skipped"
    assert platform_api.calls_to(KWAI_HOST) == []


@pytest.mark.asyncio
async def test_kwai_with_click_id(context, db, add_pixel, platform_api):
    upsert_sale(db, {"sale_code": "S2", "status": "paid", "kwai_click_id": "kw-9", "plan_value": Decimal("10.00")})
    add_pixel("kwai", "KW1")

    results = await ConversionDispatcher(context).dispatch("S2")

    assert results[0].status == "sent"
    body = platform_api.bodies_to(KWAI_HOST)[0]
    assert body["clickid"] == "kw-9"
    assert body["pixelId"] == "KW1"
    assert "trackFlag" not in body


@pytest.mark.asyncio
async def test_utmify_receives_non_purchase_statuses(context, db, add_pixel, platform_api):
    context.settings.UTMIFY_API_KEY = "utmify-key"
    add_pixel("facebook", "PX1")
    upsert_sale(db, {"sale_code": "S3", "status": "created", "plan_value": Decimal("49.90")})

    results = await ConversionDispatcher(context).dispatch("S3")

    # Ad platforms only hear about purchases
    assert [r.platform for r in results] == ["utmify"]
    assert platform_api.calls_to(META_HOST) == []
    order = platform_api.bodies_to(UTMIFY_HOST)[0]
    assert order["status"] == "waiting_payment"
    assert order["commission"]["totalPriceInCents"] == 4990
    assert order["isTest"] is False
    assert platform_api.calls_to(UTMIFY_HOST)[0].headers["x-api-token"] == "utmify-key"


@pytest.mark.asyncio
async def test_unknown_sale(context):
    with pytest.raises(SaleNotFoundError):
        await ConversionDispatcher(context).dispatch("nope")


@pytest.mark.asyncio
async def test_large_stored_value_is_sent_unchanged(context, db, add_pixel, platform_api):
    add_pixel("facebook", "PX1")
    upsert_sale(db, {"sale_code": "S7", "status": "approved", "plan_value": Decimal("15000.00"), "currency": "BRL"})

    await ConversionDispatcher(context).dispatch("S7")

    event = platform_api.bodies_to(META_HOST)[0]["data"][0]
    assert event["custom_data"]["value"] == 15000.0
