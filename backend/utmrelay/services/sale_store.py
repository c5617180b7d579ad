"""Sale Store.

WHAT:
    Upserts sales keyed by sale_code with coalesce semantics and tracks the
    per-destination send flags.

WHY:
    The same sale arrives several times (created -> approved, gateway retry,
    webhook + chat message). Each event may know different things, so the
    merge keeps every non-empty value ever seen:

        stored = incoming if incoming is non-empty else existing

    `status` / `approved_at` follow the incoming event, except that with
    `enforce_status_order` a late event can never move a sale backwards
    (approved -> pending). The guard is evaluated inside the UPDATE so two
    racing events cannot both win.

HOW:
    1. INSERT ... ON CONFLICT DO NOTHING (the unique sale_code arbitrates)
    2. Loser of the insert runs a single UPDATE carrying only non-empty fields
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import case, literal, update
from sqlalchemy.orm import Session

from ..database import insert_ignoring_conflicts
from ..exceptions import ValidationError
from ..models import Sale, SALE_STATUS_RANK, SaleStatusEnum, PlatformEnum, utcnow

logger = logging.getLogger(__name__)

# Fields merged with coalesce semantics
MERGE_FIELDS = (
    "transaction_id", "click_id", "source",
    "customer_name", "customer_email", "customer_phone", "customer_document",
    "plan_name", "plan_value", "currency", "payment_platform", "payment_method",
    "ip", "user_agent",
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term", "utm_id",
    "fbc", "fbp", "ttclid", "kwai_click_id",
)

SENT_FLAG_COLUMNS = {
    PlatformEnum.facebook.value: "facebook_sent",
    PlatformEnum.tiktok.value: "tiktok_sent",
    PlatformEnum.kwai.value: "kwai_sent",
    PlatformEnum.utmify.value: "utmify_sent",
}

_STRING_LIMITS = {
    column.name: column.type.length
    for column in Sale.__table__.columns
    if getattr(column.type, "length", None)
}


@dataclass
class UpsertResult:
    """Outcome of upsert_sale.

    created: this call inserted the row
    status_applied: the stored status equals the incoming status afterwards
    """
    sale: Sale
    created: bool
    status_applied: bool


def _clean(field: str, value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        limit = _STRING_LIMITS.get(field)
        if limit:
            value = value[:limit]
        return value or None
    return value


def upsert_sale(
    db: Session,
    data: Dict[str, Any],
    enforce_status_order: bool = True,
) -> UpsertResult:
    """Insert or merge a sale keyed by sale_code.

    Args:
        db: Session (committed)
        data: Sale attributes (sale_code required; status defaults to pending)
        enforce_status_order: Reject backwards status transitions

    Returns:
        UpsertResult with the stored sale

    Raises:
        ValidationError: Missing sale_code or unknown status
    """
    sale_code = _clean("sale_code", data.get("sale_code"))
    if not sale_code:
        raise ValidationError("sale_code is required")

    status = data.get("status") or SaleStatusEnum.pending.value
    if isinstance(status, SaleStatusEnum):
        status = status.value
    if status not in SALE_STATUS_RANK:
        raise ValidationError(f"Unknown sale status: {status}")
    approved_at: Optional[datetime] = data.get("approved_at")

    incoming = {}
    for field in MERGE_FIELDS:
        value = _clean(field, data.get(field))
        if value is not None:
            incoming[field] = value

    now = utcnow()
    created = insert_ignoring_conflicts(
        db,
        Sale,
        dict(incoming, sale_code=sale_code, status=status, approved_at=approved_at, created_at=now, updated_at=now),
        ["sale_code"],
    )

    if created:
        sale = get_sale_by_code(db, sale_code)
        logger.info(
            "[SALE_STORE] Sale created",
            extra={"sale_code": sale_code, "status": status, "click_id": incoming.get("click_id")},
        )
        return UpsertResult(sale=sale, created=True, status_applied=True)

    merge: Dict[str, Any] = dict(incoming, updated_at=now)
    if enforce_status_order:
        current_rank = case(SALE_STATUS_RANK, value=Sale.status, else_=-1)
        advances = current_rank <= SALE_STATUS_RANK[status]
        merge["status"] = case((advances, literal(status, Sale.__table__.c.status.type)), else_=Sale.status)
        if approved_at is not None:
            merge["approved_at"] = case(
                (advances, literal(approved_at, Sale.__table__.c.approved_at.type)),
                else_=Sale.approved_at,
            )
    else:
        merge["status"] = status
        merge["approved_at"] = approved_at

    db.execute(
        update(Sale)
        .where(Sale.sale_code == sale_code)
        .values(**merge)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    sale = get_sale_by_code(db, sale_code)
    db.refresh(sale)
    status_applied = sale.status == status
    if not status_applied:
        logger.warning(
            "[SALE_STORE] Ignored status regression %s -> %s for %s",
            sale.status, status, sale_code,
        )
    logger.info(
        "[SALE_STORE] Sale merged",
        extra={"sale_code": sale_code, "fields": sorted(incoming), "status": sale.status},
    )
    return UpsertResult(sale=sale, created=False, status_applied=status_applied)


def get_sale_by_code(db: Session, sale_code: Optional[str]) -> Optional[Sale]:
    """Exact lookup by sale_code."""
    if not sale_code:
        return None
    return db.query(Sale).filter(Sale.sale_code == sale_code).first()


def mark_platform_sent(db: Session, sale_code: str, platform: str) -> None:
    """Set the send flag for a destination (no-op for unknown platforms)."""
    column = SENT_FLAG_COLUMNS.get(platform)
    if not column:
        return
    db.execute(
        update(Sale)
        .where(Sale.sale_code == sale_code)
        .values({column: True, "updated_at": utcnow()})
        .execution_options(synchronize_session=False)
    )
    db.commit()
