from urllib.parse import parse_qs, urlparse

from utmrelay.routers.tracking import TRANSPARENT_GIF, telegram_destination
from utmrelay.services.click_store import get_click


def test_track_click(client, context):
    payload = {
        "click_id": "abc123",
        "timestamp": 1718000000000,
        "utm_source": "facebook",
        "fbclid": "IwAR",
        "something_else": "ignored",
    }

    first = client.post("/api/track", json=payload, headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.1", "User-Agent": "Mozilla/5.0"})
    second = client.post("/api/track", json=dict(payload, utm_source="tiktok"))

    assert first.status_code == 200
    assert first.json() == {"success": True, "click_id": "abc123", "saved": True}
    assert second.json()["saved"] is False

    with context.session() as db:
        click = get_click(db, "abc123")
        assert click.ip == "198.51.100.1"
        assert click.user_agent == "Mozilla/5.0"
        assert click.timestamp_ms == 1718000000000
        assert click.utm_source == "facebook"


def test_track_click_requires_click_id(client):
    response = client.post("/api/track", json={"utm_source": "facebook"})
    assert response.status_code == 400


def test_pixel_returns_gif_and_saves_click(client, context):
    response = client.get("/pixel.gif?click_id=px1&us=facebook&uc=launch&kwai_clickid=kw-1")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/gif"
    assert "no-store" in response.headers["cache-control"]
    assert response.content == TRANSPARENT_GIF

    with context.session() as db:
        click = get_click(db, "px1")
        assert click.utm_source == "facebook"
        assert click.utm_campaign == "launch"
        assert click.kwai_click_id == "kw-1"


def test_pixel_without_click_id_still_answers(client):
    response = client.get("/pixel.gif")
    assert response.status_code == 200
    assert response.content == TRANSPARENT_GIF


def test_redirect_to_telegram_carries_click_id(client, context):
    response = client.get(
        "/redirect",
        params={"url": "https://t.me/vip_bot?start=old", "click_id": "abc123", "utm_source": "kwai"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.netloc == "t.me"
    assert parse_qs(location.query) == {"start": ["abc123"]}

    with context.session() as db:
        assert get_click(db, "abc123").utm_source == "kwai"


def test_redirect_falls_back_to_configured_bot(client, context):
    context.settings.TELEGRAM_BOT_URL = "https://t.me/vip_bot"

    response = client.get("/redirect?click_id=c9", follow_redirects=False)

    assert response.headers["location"] == "https://t.me/vip_bot?start=c9"


def test_redirect_without_destination(client):
    assert client.get("/redirect?click_id=c9", follow_redirects=False).status_code == 400


def test_non_telegram_destination_is_untouched():
    assert telegram_destination("https://example.com/a?b=1", "abc") == "https://example.com/a?b=1"
    assert telegram_destination("https://t.me/bot", None) == "https://t.me/bot"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
