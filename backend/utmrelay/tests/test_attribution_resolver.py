"""Attribution fallback chain: each step on its own, then the ordering between them."""

from datetime import timedelta

from utmrelay.models import utcnow
from utmrelay.services.attribution_resolver import AttributionQuery, AttributionResolver
from utmrelay.services.click_store import save_click
from utmrelay.services.sale_store import upsert_sale


def _resolve(db, **query):
    return AttributionResolver().resolve(db, AttributionQuery(**query))


def test_candidate_tokens_are_deduplicated_in_priority_order():
    query = AttributionQuery(sale_code="S1", click_id="abc", utm_id="abc", existing_click_id="old", chat_id="42")
    assert query.candidate_tokens() == ["abc", "old", "42", "S1"]


def test_exact_click_id(db):
    save_click(db, {"click_id": "abc123"})

    resolved = _resolve(db, sale_code="S1", utm_id="abc123")

    assert resolved.click.click_id == "abc123"
    assert resolved.step == "click_id"
    assert resolved.token == "abc123"


def test_click_with_ttclid_is_reported_by_its_own_step(db):
    save_click(db, {"click_id": "abc123", "ttclid": "tt-1"})

    resolved = _resolve(db, click_id="abc123")

    assert resolved.step == "click_id_with_ttclid"


def test_facebook_cookies_beat_an_older_click_id_match(db):
    now = utcnow()
    save_click(db, {"click_id": "abc123"}, received_at=now - timedelta(days=2))
    save_click(db, {"click_id": "fb-click", "fbc": "fb.1.1718.IwAR"}, received_at=now - timedelta(minutes=5))

    resolved = _resolve(db, click_id="abc123", fbc="fb.1.1718.IwAR")

    assert resolved.click.click_id == "fb-click"
    assert resolved.step == "facebook_cookies"


def test_sale_code_used_as_click_id(db):
    save_click(db, {"click_id": "S1"})

    resolved = _resolve(db, sale_code="S1", click_id="unknown")

    assert resolved.click.click_id == "S1"
    assert resolved.step in ("click_id", "sale_code")


def test_truncated_token_matches_by_substring(db):
    save_click(db, {"click_id": "lp_abcdef123456"})

    resolved = _resolve(db, click_id="abcdef123")

    assert resolved.click.click_id == "lp_abcdef123456"
    assert resolved.step == "substring"


def test_short_tokens_never_match_by_substring(db):
    save_click(db, {"click_id": "lp_abcdef123456"})

    assert _resolve(db, click_id="abc") is None


def test_truncated_token_matches_utm_content(db):
    save_click(db, {"click_id": "c-1", "utm_content": "ad_creative_987654"})

    resolved = _resolve(db, click_id="creative_987654")

    assert resolved.click.click_id == "c-1"
    assert resolved.step == "substring"


def test_prior_sale_with_same_customer(db):
    save_click(db, {"click_id": "abc123"})
    upsert_sale(db, {"sale_code": "S0", "status": "approved", "click_id": "abc123", "customer_email": "maria@example.com"})

    resolved = _resolve(db, sale_code="S2", customer_email="Maria@Example.com ")

    assert resolved.click.click_id == "abc123"
    assert resolved.step == "prior_sale"


def test_prior_sale_code_echoed_as_tracking_token(db):
    save_click(db, {"click_id": "abc123"})
    upsert_sale(db, {"sale_code": "S0", "status": "approved", "click_id": "abc123"})

    resolved = _resolve(db, sale_code="S2", utm_id="S0")

    assert resolved.click.click_id == "abc123"
    assert resolved.step == "prior_sale"


def test_ip_window_prefers_clicks_with_ttclid(db):
    now = utcnow()
    save_click(db, {"click_id": "plain", "ip": "203.0.113.7"}, received_at=now - timedelta(minutes=5))
    save_click(db, {"click_id": "tiktok", "ip": "203.0.113.7", "ttclid": "tt"}, received_at=now - timedelta(minutes=20))
    save_click(db, {"click_id": "stale", "ip": "203.0.113.7", "ttclid": "tt"}, received_at=now - timedelta(hours=3))

    resolved = _resolve(db, sale_code="S9", ip="203.0.113.7", occurred_at=now)

    assert resolved.click.click_id == "tiktok"
    assert resolved.step == "ip_window"


def test_ip_window_prefers_facebook_cookies_over_a_newer_plain_click(db):
    now = utcnow()
    save_click(db, {"click_id": "plain", "ip": "203.0.113.7"}, received_at=now - timedelta(minutes=5))
    save_click(db, {"click_id": "meta", "ip": "203.0.113.7", "fbp": "fb.1.1.42"}, received_at=now - timedelta(minutes=30))

    resolved = _resolve(db, sale_code="S9", ip="203.0.113.7", occurred_at=now)

    assert resolved.click.click_id == "meta"
    assert resolved.step == "ip_window"


def test_ip_window_ignores_clicks_after_the_sale(db):
    now = utcnow()
    save_click(db, {"click_id": "later", "ip": "203.0.113.7"}, received_at=now + timedelta(minutes=5))

    assert _resolve(db, sale_code="S9", ip="203.0.113.7", occurred_at=now) is None


def test_no_identifiers_means_no_attribution(db):
    save_click(db, {"click_id": "abc123"})

    assert _resolve(db, sale_code="S404") is None
