"""Sale Pipeline.

WHAT:
    ingest -> resolve -> upsert -> dispatch, for one SaleEvent.

WHY:
    Webhooks, chat messages, background tasks and ARQ jobs all run the same
    steps; every step is idempotent so the pipeline can be re-run safely
    after an interruption.

HOW:
    record_sale (synchronous, done before acknowledging the sender):
        1. Chat events claim their transaction hash (ProcessedMessage);
           a second copy of the message is a `duplicate` once its sale is
           stored. A failure in the later steps releases the claim, and a
           claim left without a sale (crash) is resumed by the next copy
        2. Look up the existing sale to reuse the click it already has
        3. Resolve the click (AttributionResolver)
        4. Event values win; the click fills the gaps (UTMs, fbc/fbp, ttclid, ...)
        5. Upsert (coalesce merge, status guard)
    dispatch_sale (async, after the acknowledgement):
        ConversionDispatcher.dispatch
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.orm import Session

from ..database import insert_ignoring_conflicts
from ..models import ProcessedMessage, SaleSourceEnum, utcnow
from ..telemetry import capture_message
from .attribution_resolver import AttributionQuery, AttributionResolver, ResolvedClick
from .conversion_dispatcher import ConversionDispatcher, DispatchResult
from .event_ingestion import SaleEvent
from .sale_store import UpsertResult, get_sale_by_code, upsert_sale

logger = logging.getLogger(__name__)

# Click columns copied onto the sale when the event does not carry them
CLICK_ATTRIBUTION_FIELDS = (
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term", "utm_id",
    "fbc", "fbp", "ttclid", "kwai_click_id", "ip", "user_agent",
)

OUTCOME_CREATED = "created"
OUTCOME_MERGED = "merged"
OUTCOME_DUPLICATE = "duplicate"


@dataclass
class PipelineOutcome:
    sale_code: str
    outcome: str
    click_id: Optional[str] = None
    attribution_step: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.outcome == OUTCOME_DUPLICATE


class SalePipeline:
    """Runs a SaleEvent through attribution, storage and dispatch.

    Usage:
        pipeline = SalePipeline(context)
        outcome = pipeline.record_sale(event)
        results = await pipeline.dispatch_sale(outcome.sale_code)
    """

    def __init__(self, context, resolver: Optional[AttributionResolver] = None, dispatcher: Optional[ConversionDispatcher] = None):
        self.context = context
        self.resolver = resolver or AttributionResolver.from_settings(context.settings)
        self.dispatcher = dispatcher or ConversionDispatcher(context)

    def record_sale(self, event: SaleEvent) -> PipelineOutcome:
        """Attribute and persist a sale event (no outbound calls)."""
        with self.context.session() as db:
            claimed = False
            if event.source == SaleSourceEnum.chat.value:
                claimed = insert_ignoring_conflicts(
                    db,
                    ProcessedMessage,
                    {
                        "hash": event.dedupe_hash,
                        "transaction_id": event.transaction_id,
                        "sale_code": event.sale_code,
                        "received_at": utcnow(),
                    },
                    ["hash"],
                )
                if not claimed:
                    existing = get_sale_by_code(db, event.sale_code)
                    if existing is not None:
                        logger.info(f"[PIPELINE] Chat message already processed: {event.dedupe_key}")
                        return PipelineOutcome(
                            sale_code=event.sale_code,
                            outcome=OUTCOME_DUPLICATE,
                            click_id=existing.click_id,
                        )
                    # Claimed by a run that never stored the sale
                    logger.warning(f"[PIPELINE] Resuming interrupted chat message: {event.dedupe_key}")

            try:
                result, resolved = self._attribute_and_store(db, event)
            except Exception:
                if claimed:
                    self._release_claim(db, event)
                raise

        if not result.status_applied:
            capture_message(
                "Out-of-order sale status ignored",
                level="warning",
                extra={"sale_code": result.sale.sale_code, "stored": result.sale.status, "incoming": event.status},
            )

        outcome = PipelineOutcome(
            sale_code=result.sale.sale_code,
            outcome=OUTCOME_CREATED if result.created else OUTCOME_MERGED,
            click_id=result.sale.click_id,
            attribution_step=resolved.step if resolved else None,
        )
        logger.info(
            f"[PIPELINE] Sale {outcome.sale_code} {outcome.outcome}",
            extra={"click_id": outcome.click_id, "step": outcome.attribution_step, "status": result.sale.status},
        )
        return outcome

    def _attribute_and_store(self, db: Session, event: SaleEvent) -> Tuple[UpsertResult, Optional[ResolvedClick]]:
        existing = get_sale_by_code(db, event.sale_code)
        query = AttributionQuery.from_event(event, existing_click_id=existing.click_id if existing else None)
        resolved = self.resolver.resolve(db, query)

        values = event.to_sale_values()
        if resolved:
            click = resolved.click
            values["click_id"] = click.click_id
            for field in CLICK_ATTRIBUTION_FIELDS:
                if not values.get(field):
                    values[field] = getattr(click, field)
        else:
            # Never store an identifier that did not match a click
            values["click_id"] = existing.click_id if existing else None

        result = upsert_sale(db, values, enforce_status_order=self.context.settings.ENFORCE_STATUS_ORDER)
        return result, resolved

    @staticmethod
    def _release_claim(db: Session, event: SaleEvent) -> None:
        """Drop the message claim so a redelivery of the same message is processed."""
        db.rollback()
        db.execute(delete(ProcessedMessage).where(ProcessedMessage.hash == event.dedupe_hash))
        db.commit()
        logger.warning(
            f"[PIPELINE] Released claim for chat message {event.dedupe_key} after a failure",
            extra={"sale_code": event.sale_code},
        )

    async def dispatch_sale(self, sale_code: str, test_mode: bool = False) -> List[DispatchResult]:
        return await self.dispatcher.dispatch(sale_code, test_mode=test_mode)

    async def process_event(self, event: SaleEvent) -> List[DispatchResult]:
        """record_sale + dispatch_sale; duplicates are not dispatched again."""
        outcome = self.record_sale(event)
        if outcome.is_duplicate:
            return []
        return await self.dispatch_sale(outcome.sale_code)
