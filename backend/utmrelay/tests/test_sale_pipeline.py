from decimal import Decimal

import pytest

from utmrelay.models import ProcessedMessage, Sale, utcnow
from utmrelay.services import sale_pipeline
from utmrelay.services.click_store import save_click
from utmrelay.services.event_ingestion import SaleEvent, parse_sale_message
from utmrelay.services.sale_pipeline import SalePipeline
from utmrelay.services.sale_store import get_sale_by_code


def _event(**values):
    values.setdefault("sale_code", "S1")
    values.setdefault("status", "approved")
    return SaleEvent(**values)


def test_click_fills_attribution_gaps(context, db):
    save_click(db, {"click_id": "abc123", "utm_source": "facebook", "utm_campaign": "launch", "fbp": "fb.1.1.99"})

    outcome = SalePipeline(context).record_sale(_event(utm_id="abc123", utm_campaign="from-gateway"))

    assert outcome.outcome == "created"
    assert outcome.click_id == "abc123"
    assert outcome.attribution_step == "click_id"

    sale = get_sale_by_code(db, "S1")
    assert sale.click_id == "abc123"
    assert sale.utm_source == "facebook"
    assert sale.fbp == "fb.1.1.99"
    # Values the event carried win over the click's
    assert sale.utm_campaign == "from-gateway"


def test_unmatched_identifier_is_never_stored_as_click_id(context, db):
    outcome = SalePipeline(context).record_sale(_event(click_id="ghost"))

    assert outcome.click_id is None
    assert outcome.attribution_step is None
    assert get_sale_by_code(db, "S1").click_id is None


def test_later_event_keeps_the_attributed_click(context, db):
    save_click(db, {"click_id": "abc123"})
    pipeline = SalePipeline(context)
    pipeline.record_sale(_event(status="created", click_id="abc123"))

    outcome = pipeline.record_sale(_event(plan_value=Decimal("49.90")))

    assert outcome.outcome == "merged"
    assert outcome.click_id == "abc123"
    assert db.query(Sale).count() == 1


def test_same_chat_message_is_processed_once(context, db):
    text = "ID da Transação: TX-1\nValor Líquido: R$ 49,90"
    pipeline = SalePipeline(context)

    first = pipeline.record_sale(parse_sale_message(text))
    second = pipeline.record_sale(parse_sale_message(text))

    assert first.outcome == "created"
    assert second.is_duplicate
    assert db.query(ProcessedMessage).count() == 1
    assert db.query(Sale).count() == 1


@pytest.mark.asyncio
async def test_process_event_dispatches_once(context, add_pixel, platform_api):
    add_pixel("facebook", "PX1")
    pipeline = SalePipeline(context)

    results = await pipeline.process_event(_event(plan_value=Decimal("49.90")))
    again = await pipeline.process_event(_event())

    assert [r.status for r in results] == ["sent"]
    assert [r.status for r in again] == ["already_sent"]
    assert len(platform_api.calls_to("graph.facebook.com")) == 1


def test_failed_chat_message_is_processed_on_redelivery(context, db, monkeypatch):
    text = "ID da Transação: TX-9\nValor Líquido: R$ 49,90"
    pipeline = SalePipeline(context)

    def failing_upsert(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(sale_pipeline, "upsert_sale", failing_upsert)
    with pytest.raises(RuntimeError):
        pipeline.record_sale(parse_sale_message(text))
    monkeypatch.undo()

    assert db.query(ProcessedMessage).count() == 0

    retry = pipeline.record_sale(parse_sale_message(text))

    assert retry.outcome == "created"
    assert db.query(Sale).count() == 1
    assert db.query(ProcessedMessage).count() == 1


def test_claim_left_without_a_sale_is_resumed(context, db):
    event = parse_sale_message("ID da Transação: TX-10\nValor Líquido: R$ 49,90")
    # A previous run claimed the message and died before storing the sale
    db.add(ProcessedMessage(hash=event.dedupe_hash, transaction_id=event.transaction_id, sale_code=event.sale_code, received_at=utcnow()))
    db.commit()

    outcome = SalePipeline(context).record_sale(event)

    assert outcome.outcome == "created"
    assert get_sale_by_code(db, event.sale_code) is not None
    assert SalePipeline(context).record_sale(event).is_duplicate
