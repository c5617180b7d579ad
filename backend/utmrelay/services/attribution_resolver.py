"""Attribution Resolver.

WHAT:
    Finds the click that produced a sale, given whatever identifiers the
    purchase event carried (click id, utm_id, chat id, sale code, Facebook
    cookies, buyer IP, customer email/phone).

WHY:
    Identifiers get lost or mangled on the way from ad to payment: messaging
    apps truncate deep-link payloads, gateways echo the click id as utm_id or
    as the sale code, cookies survive where query params don't. Each
    heuristic below recovers one of those cases. No match means no
    attribution; a click id is never invented.

HOW:
    Ordered candidate steps, first match wins:

        1. fbc / fbp pair                       (token independent, most recent)
        2. click_id == token AND ttclid present
        3. click_id == token
        4. click_id == sale_code                (token independent)
        5. token is a substring of click_id / utm_content (most recent)
        6. click referenced by a prior sale with the same token or customer
        7. same IP within the window before the sale
           (ttclid > fbc/fbp > most recent)

    Candidate tokens, deduplicated in order: click_id, utm_id, click id
    already stored on the sale, chat_id, sale_code. Each token runs through
    steps 1-4 (token-independent steps are evaluated once) before the
    fallbacks 5-7 are tried.

    Every step is a plain function of the session and the query (or a
    single token) returning a Click or None, testable on its own.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, or_
from sqlalchemy.orm import Session

from ..models import Click, Sale, utcnow

logger = logging.getLogger(__name__)

DEFAULT_IP_WINDOW = timedelta(hours=1)
DEFAULT_MIN_SUBSTRING_LENGTH = 6


# =============================================================================
# QUERY / RESULT TYPES
# =============================================================================

@dataclass
class AttributionQuery:
    """Identifiers available for matching a sale to a click."""
    sale_code: Optional[str] = None
    click_id: Optional[str] = None
    utm_id: Optional[str] = None
    existing_click_id: Optional[str] = None
    chat_id: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    ip: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_event(cls, event, existing_click_id: Optional[str] = None) -> "AttributionQuery":
        """Build a query from a SaleEvent (or any object with the same attributes)."""
        return cls(
            sale_code=getattr(event, "sale_code", None),
            click_id=getattr(event, "click_id", None),
            utm_id=getattr(event, "utm_id", None),
            existing_click_id=existing_click_id,
            chat_id=getattr(event, "chat_id", None),
            fbc=getattr(event, "fbc", None),
            fbp=getattr(event, "fbp", None),
            ip=getattr(event, "ip", None),
            customer_email=getattr(event, "customer_email", None),
            customer_phone=getattr(event, "customer_phone", None),
            occurred_at=getattr(event, "occurred_at", None) or utcnow(),
        )

    def candidate_tokens(self) -> List[str]:
        """Identifiers worth trying as a click id, deduplicated, in priority order."""
        tokens: List[str] = []
        for value in (self.click_id, self.utm_id, self.existing_click_id, self.chat_id, self.sale_code):
            token = str(value).strip() if value is not None else ""
            if token and token not in tokens:
                tokens.append(token)
        return tokens


@dataclass
class ResolvedClick:
    click: Click
    step: str
    token: Optional[str] = None


@dataclass
class ResolverConfig:
    ip_window: timedelta = DEFAULT_IP_WINDOW
    min_substring_length: int = DEFAULT_MIN_SUBSTRING_LENGTH


def _non_empty(column):
    return and_(column.isnot(None), column != "")


# =============================================================================
# STEPS 1-4: EXACT MATCHES
# =============================================================================

def match_facebook_cookies(db: Session, query: AttributionQuery) -> Optional[Click]:
    """Step 1: click with the sale's fbc or fbp, most recent first."""
    conditions = []
    if query.fbc:
        conditions.append(Click.fbc == query.fbc)
    if query.fbp:
        conditions.append(Click.fbp == query.fbp)
    if not conditions:
        return None
    return (
        db.query(Click)
        .filter(or_(*conditions))
        .order_by(Click.received_at.desc())
        .first()
    )


def match_click_id_with_ttclid(db: Session, token: str) -> Optional[Click]:
    """Step 2: exact click_id that also carries a TikTok click id."""
    return (
        db.query(Click)
        .filter(Click.click_id == token, _non_empty(Click.ttclid))
        .first()
    )


def match_click_id(db: Session, token: str) -> Optional[Click]:
    """Step 3: exact click_id."""
    return db.query(Click).filter(Click.click_id == token).first()


def match_sale_code(db: Session, query: AttributionQuery) -> Optional[Click]:
    """Step 4: click_id equal to the sale code (sale code used as click id end to end)."""
    if not query.sale_code:
        return None
    return db.query(Click).filter(Click.click_id == query.sale_code).first()


# =============================================================================
# STEPS 5-7: FALLBACKS
# =============================================================================

def match_substring(db: Session, query: AttributionQuery, config: ResolverConfig) -> Optional[Click]:
    """Step 5: token contained in click_id or utm_content (truncated payloads)."""
    for token in query.candidate_tokens():
        if len(token) < config.min_substring_length:
            continue
        click = (
            db.query(Click)
            .filter(or_(
                Click.click_id.contains(token, autoescape=True),
                Click.utm_content.contains(token, autoescape=True),
            ))
            .order_by(Click.received_at.desc())
            .first()
        )
        if click:
            return click
    return None


def match_prior_sale(db: Session, query: AttributionQuery, config: ResolverConfig) -> Optional[Click]:
    """Step 6: click already attributed to another sale sharing a token or the customer."""
    conditions = []
    tokens = query.candidate_tokens()
    if tokens:
        conditions.append(Sale.sale_code.in_(tokens))
        conditions.append(Sale.transaction_id.in_(tokens))
    if query.customer_email:
        conditions.append(Sale.customer_email == query.customer_email.strip().lower())
        conditions.append(Sale.customer_email == query.customer_email.strip())
    if query.customer_phone:
        conditions.append(Sale.customer_phone == query.customer_phone.strip())
    if not conditions:
        return None
    return (
        db.query(Click)
        .join(Sale, Sale.click_id == Click.click_id)
        .filter(_non_empty(Sale.click_id), or_(*conditions))
        .order_by(Sale.updated_at.desc(), Click.received_at.desc())
        .first()
    )


def match_ip_window(db: Session, query: AttributionQuery, config: ResolverConfig) -> Optional[Click]:
    """Step 7: same IP shortly before the sale; ttclid > fbc/fbp > most recent."""
    if not query.ip:
        return None
    window_start = query.occurred_at - config.ip_window
    signal_rank = case(
        (_non_empty(Click.ttclid), 0),
        (or_(_non_empty(Click.fbc), _non_empty(Click.fbp)), 1),
        else_=2,
    )
    return (
        db.query(Click)
        .filter(
            Click.ip == query.ip,
            Click.received_at >= window_start,
            Click.received_at <= query.occurred_at,
        )
        .order_by(signal_rank, Click.received_at.desc())
        .first()
    )


FallbackStep = Callable[[Session, AttributionQuery, ResolverConfig], Optional[Click]]

# Steps 1-4, in order. Token-independent steps are marked False.
EXACT_STEPS: Tuple[Tuple[str, Callable, bool], ...] = (
    ("facebook_cookies", match_facebook_cookies, False),
    ("click_id_with_ttclid", match_click_id_with_ttclid, True),
    ("click_id", match_click_id, True),
    ("sale_code", match_sale_code, False),
)

FALLBACK_STEPS: Tuple[Tuple[str, FallbackStep], ...] = (
    ("substring", match_substring),
    ("prior_sale", match_prior_sale),
    ("ip_window", match_ip_window),
)


# =============================================================================
# RESOLVER
# =============================================================================

class AttributionResolver:
    """Runs the ordered steps and stops at the first match.

    Usage:
        resolver = AttributionResolver(ip_window=timedelta(minutes=60))
        resolved = resolver.resolve(db, AttributionQuery.from_event(event))
        if resolved:
            logger.info("matched %s via %s", resolved.click.click_id, resolved.step)
    """

    def __init__(
        self,
        ip_window: timedelta = DEFAULT_IP_WINDOW,
        min_substring_length: int = DEFAULT_MIN_SUBSTRING_LENGTH,
    ):
        self.config = ResolverConfig(ip_window=ip_window, min_substring_length=min_substring_length)

    @classmethod
    def from_settings(cls, settings) -> "AttributionResolver":
        return cls(
            ip_window=timedelta(minutes=settings.ATTRIBUTION_IP_WINDOW_MINUTES),
            min_substring_length=settings.ATTRIBUTION_MIN_SUBSTRING_LENGTH,
        )

    def resolve(self, db: Session, query: AttributionQuery) -> Optional[ResolvedClick]:
        """Return the best click for the query, or None."""
        tokens = query.candidate_tokens()
        evaluated: Dict[str, Optional[Click]] = {}

        # A query without tokens still gets the token-independent exact steps
        for token in tokens or [None]:
            for name, step, uses_token in EXACT_STEPS:
                if uses_token:
                    if token is None:
                        continue
                    click = step(db, token)
                else:
                    if name in evaluated:
                        continue
                    click = evaluated[name] = step(db, query)
                if click:
                    return self._matched(click, name, token if uses_token else None, query)

        for name, step in FALLBACK_STEPS:
            click = step(db, query, self.config)
            if click:
                return self._matched(click, name, None, query)

        logger.info(
            "[ATTRIBUTION] No click found",
            extra={"sale_code": query.sale_code, "tokens": tokens, "has_ip": bool(query.ip)},
        )
        return None

    @staticmethod
    def _matched(click: Click, step: str, token: Optional[str], query: AttributionQuery) -> ResolvedClick:
        logger.info(
            f"[ATTRIBUTION] Matched click {click.click_id} via {step}",
            extra={"sale_code": query.sale_code, "token": token, "step": step},
        )
        return ResolvedClick(click=click, step=step, token=token)
