"""Click Store.

WHAT:
    Persists landing clicks keyed by the client-generated click_id and
    looks them up exactly or through the attribution fallback chain.

WHY:
    - Clicks are immutable: the first write wins, later duplicates are
      silent no-ops (beacons and redirects routinely fire twice)
    - Retention is configurable; expired clicks are purged on a timer

REFERENCES:
    - utmrelay/services/attribution_resolver.py (fallback chain)
    - utmrelay/workers/click_cleanup.py (retention timer)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from ..database import insert_ignoring_conflicts
from ..exceptions import ValidationError
from ..models import Click, utcnow

logger = logging.getLogger(__name__)

# Columns a caller may set; anything else in the payload is ignored
CLICK_FIELDS = (
    "click_id", "session_id", "timestamp_ms",
    "ip", "user_agent", "referrer", "landing_page",
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term", "utm_id",
    "fbclid", "fbc", "fbp", "ttclid", "gclid", "msclkid", "kwai_click_id",
)

# String columns and their lengths (values are truncated, never rejected)
_STRING_LIMITS = {
    column.name: column.type.length
    for column in Click.__table__.columns
    if getattr(column.type, "length", None)
}


def _clean_click_values(data: Dict[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for field in CLICK_FIELDS:
        value = data.get(field)
        if value is not None and field != "timestamp_ms" and not isinstance(value, str):
            value = str(value)
        if isinstance(value, str):
            value = value.strip()
            limit = _STRING_LIMITS.get(field)
            if limit:
                value = value[:limit]
        if value is None or value == "":
            continue
        values[field] = value
    return values


def save_click(db: Session, data: Dict[str, Any], received_at: Optional[datetime] = None) -> bool:
    """Insert a click unless its click_id already exists.

    Args:
        db: Session (committed)
        data: Click attributes; unknown keys are ignored
        received_at: Server receive time (defaults to now)

    Returns:
        True if a new row was created, False for a duplicate click_id

    Raises:
        ValidationError: If click_id is missing
    """
    values = _clean_click_values(data)
    if not values.get("click_id"):
        raise ValidationError("click_id is required")

    if values.get("timestamp_ms") is not None:
        try:
            values["timestamp_ms"] = int(values["timestamp_ms"])
        except (TypeError, ValueError):
            values.pop("timestamp_ms")
    values["received_at"] = received_at or utcnow()

    created = insert_ignoring_conflicts(db, Click, values, ["click_id"])
    if created:
        logger.info(
            "[CLICK_STORE] Click saved",
            extra={"click_id": values["click_id"], "utm_source": values.get("utm_source")},
        )
    else:
        logger.debug("[CLICK_STORE] Duplicate click ignored: %s", values["click_id"])
    return created


def get_click(db: Session, click_id: Optional[str]) -> Optional[Click]:
    """Exact lookup by click_id."""
    if not click_id:
        return None
    return db.query(Click).filter(Click.click_id == click_id).first()


def find_click_by_criteria(db: Session, query, resolver=None) -> Optional[Click]:
    """Best click for an attribution query, via the resolver's fallback chain.

    Args:
        db: Session
        query: AttributionQuery (or a SaleEvent, converted on the fly)
        resolver: Optional configured AttributionResolver

    Returns:
        Matched Click or None
    """
    from .attribution_resolver import AttributionQuery, AttributionResolver

    if not isinstance(query, AttributionQuery):
        query = AttributionQuery.from_event(query)
    resolver = resolver or AttributionResolver()
    resolved = resolver.resolve(db, query)
    return resolved.click if resolved else None


def purge_expired_clicks(
    db: Session,
    retention_hours: Optional[int],
    now: Optional[datetime] = None,
) -> int:
    """Delete clicks received before the retention window.

    Args:
        db: Session (committed)
        retention_hours: Window size; None or <= 0 keeps clicks forever
        now: Reference time (defaults to current UTC)

    Returns:
        Number of deleted clicks
    """
    if not retention_hours or retention_hours <= 0:
        return 0

    cutoff = (now or utcnow()) - timedelta(hours=retention_hours)
    result = db.execute(delete(Click).where(Click.received_at < cutoff))
    db.commit()

    deleted = result.rowcount or 0
    if deleted:
        logger.info("[CLICK_STORE] Purged %d click(s) older than %s", deleted, cutoff.isoformat())
    return deleted
