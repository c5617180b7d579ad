"""HTTP tests for /api/webhook/apex and /api/webhook/chat.

The end-to-end case: a landing click `abc123`, a Meta pixel, and an
approved gateway webhook for sale `S1` that echoes the click id as utm_id.
"""

import hashlib
import hmac
import json
from decimal import Decimal

from utmrelay.models import ConversionDispatch, ProcessedMessage, Sale
from utmrelay.services.sale_store import get_sale_by_code

META_HOST = "graph.facebook.com"

CHAT_SALE = "✅ Venda aprovada\nID da Transação: TX-991\nValor Líquido: R$ 49,90\nE-mail: maria@example.com"


def _apex(event="payment_approved", **transaction):
    transaction.setdefault("sale_code", "S1")
    transaction.setdefault("plan_value", 4990)
    return {
        "event": event,
        "timestamp": "2024-06-10T12:00:00Z",
        "transaction": transaction,
        "customer": {"full_name": "Maria Silva", "email": "maria@example.com"},
        "tracking": {"utm_source": "facebook", "utm_id": "abc123"},
        "origin": {"ip": "203.0.113.7", "user_agent": "Mozilla/5.0"},
    }


def _setup_click_and_pixel(client, admin_headers):
    response = client.post("/api/track", json={"click_id": "abc123", "utm_source": "facebook", "utm_campaign": "launch"})
    assert response.status_code == 200
    response = client.post(
        "/admin/pixels",
        headers=admin_headers,
        json={"name": "Main", "platform": "facebook", "pixel_id": "PX1", "access_token": "EAAB"},
    )
    assert response.status_code == 201


# ============================================================================
# Apex gateway
# ============================================================================

def test_approved_webhook_is_attributed_and_dispatched_once(client, admin_headers, context, platform_api):
    _setup_click_and_pixel(client, admin_headers)

    response = client.post("/api/webhook/apex", json=_apex())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["sale_code"] == "S1"
    assert body["outcome"] == "created"
    assert body["click_id"] == "abc123"
    assert body["attribution_step"] == "click_id"

    # Background dispatch has run by the time TestClient returns
    assert len(platform_api.calls_to(META_HOST)) == 1
    with context.session() as db:
        sale = get_sale_by_code(db, "S1")
        assert sale.status == "approved"
        assert sale.plan_value == Decimal("49.90")
        assert sale.utm_campaign == "launch"
        assert sale.facebook_sent is True


def test_duplicate_webhook_merges_and_does_not_resend(client, admin_headers, context, platform_api):
    _setup_click_and_pixel(client, admin_headers)

    client.post("/api/webhook/apex", json=_apex())
    response = client.post("/api/webhook/apex", json=_apex())

    assert response.status_code == 200
    assert response.json()["outcome"] == "merged"
    assert len(platform_api.calls_to(META_HOST)) == 1
    with context.session() as db:
        assert db.query(Sale).count() == 1
        assert db.query(ConversionDispatch).count() == 1


def test_transaction_id_is_enough(client, context):
    response = client.post("/api/webhook/apex", json=_apex(sale_code=None, transaction_id="TX-5"))

    assert response.status_code == 200
    assert response.json()["sale_code"] == "TX-5"


def test_missing_sale_identity_is_rejected(client, context):
    response = client.post("/api/webhook/apex", json=_apex(sale_code=None))

    assert response.status_code == 400
    with context.session() as db:
        assert db.query(Sale).count() == 0


def test_malformed_bodies_are_rejected(client):
    assert client.post("/api/webhook/apex", content=b"{not json", headers={"Content-Type": "application/json"}).status_code == 400
    assert client.post("/api/webhook/apex", json={"transaction": {"sale_code": "S1"}}).status_code == 400
    assert client.post("/api/webhook/apex", json=_apex(plan_value="lots")).status_code == 400


def test_unknown_event_is_acknowledged_and_ignored(client, context):
    response = client.post("/api/webhook/apex", json=_apex(event="subscription_renewed"))

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["sale_code"] is None
    with context.session() as db:
        assert db.query(Sale).count() == 0


def test_signature_is_checked_when_secret_is_set(client, context):
    context.settings.WEBHOOK_SECRET = "shh"
    body = json.dumps(_apex()).encode("utf-8")
    signature = hmac.new(b"shh", body, hashlib.sha256).hexdigest()
    headers = {"Content-Type": "application/json"}

    rejected = client.post("/api/webhook/apex", content=body, headers=dict(headers, **{"X-Webhook-Signature": "sha256=bad"}))
    missing = client.post("/api/webhook/apex", content=body, headers=headers)
    accepted = client.post("/api/webhook/apex", content=body, headers=dict(headers, **{"X-Webhook-Signature": f"sha256={signature}"}))

    assert rejected.status_code == 401
    assert missing.status_code == 401
    assert accepted.status_code == 200


def test_storage_failure_is_still_acknowledged(client, monkeypatch):
    from utmrelay.services.sale_pipeline import SalePipeline

    def explode(self, event):
        raise RuntimeError("database is gone")

    monkeypatch.setattr(SalePipeline, "record_sale", explode)

    response = client.post("/api/webhook/apex", json=_apex())

    assert response.status_code == 200
    assert response.json()["success"] is False


def test_endpoint_check(client):
    response = client.get("/api/webhook/apex")
    assert response.status_code == 200
    assert response.json()["success"] is True


# ============================================================================
# Chat notifications
# ============================================================================

def test_telegram_sale_message_is_recorded_once(client, context):
    update = {"update_id": 1, "channel_post": {"chat": {"id": -100123}, "text": CHAT_SALE}}

    first = client.post("/api/webhook/chat", json=update)
    second = client.post("/api/webhook/chat", json=update)

    assert first.json()["outcome"] == "created"
    assert first.json()["sale_code"] == "TX-991"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    with context.session() as db:
        assert db.query(Sale).count() == 1
        assert db.query(ProcessedMessage).count() == 1
        assert get_sale_by_code(db, "TX-991").source == "chat"


def test_plain_text_body_is_accepted(client, context):
    response = client.post("/api/webhook/chat", json={"text": CHAT_SALE})
    assert response.json()["outcome"] == "created"


def test_chat_message_without_amount_is_not_a_sale(client, context):
    text = "ID da Transação: TX-992\nE-mail: maria@example.com"

    response = client.post("/api/webhook/chat", json={"message": {"chat": {"id": 7}, "text": text}})

    assert response.status_code == 200
    assert response.json()["message"] == "Not a sale notification"
    with context.session() as db:
        assert db.query(Sale).count() == 0
        assert db.query(ProcessedMessage).count() == 0


def test_chat_secret_token(client, context):
    context.settings.TELEGRAM_SECRET_TOKEN = "tg-secret"

    rejected = client.post("/api/webhook/chat", json={"text": CHAT_SALE})
    accepted = client.post(
        "/api/webhook/chat",
        json={"text": CHAT_SALE},
        headers={"X-Telegram-Bot-Api-Secret-Token": "tg-secret"},
    )

    assert rejected.status_code == 401
    assert accepted.status_code == 200


def test_chat_body_must_be_an_object(client):
    assert client.post("/api/webhook/chat", json=["text"]).status_code == 400
