"""Conversion Dispatcher.

WHAT:
    Sends a sale to every configured destination (active Meta / TikTok /
    Kwai pixels and the UTMify aggregator) and reports one result per
    destination.

WHY:
    Webhooks are retried, chat notifications duplicate webhooks and
    operators re-dispatch by hand, yet each ad platform must see a
    conversion once. At-most-once-successful dispatch is enforced by the
    unique identity of the dispatch log, not by locks:

        (attribution_key, platform, destination, event_name)

HOW:
    Per destination:
        1. Claim: INSERT a pending log row (ON CONFLICT DO NOTHING).
           Loser: atomically retake the row if it is `failed` or a stale
           `pending`; otherwise report `already_sent` / `in_flight`.
        2. Build the platform payload: value in the unit the destination
           wants, hashed PII for ad platforms, test marker only when the
           caller passed test_mode=True.
        3. Send with the relay's bounded timeout.
        4. Success -> row `sent` + sale flag. Failure -> row `failed` with
           the error, sale flag untouched, logged and sent to Sentry.

    Destinations run concurrently; one failing never affects another.

REFERENCES:
    - utmrelay/models.py (ConversionDispatch)
    - utmrelay/services/meta_capi_service.py, tiktok_events_service.py,
      kwai_events_service.py, utmify_service.py
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from ..database import insert_ignoring_conflicts
from ..exceptions import ConversionAPIError, SaleNotFoundError
from ..models import (
    Click,
    ConversionDispatch,
    DispatchStatusEnum,
    PixelConfig,
    PlatformEnum,
    PURCHASE_STATUSES,
    Sale,
    utcnow,
)
from ..telemetry import capture_exception
from .click_store import get_click
from .kwai_events_service import KWAI_PURCHASE_EVENT, KwaiEventsService
from .meta_capi_service import MetaCAPIService
from .money import AmountUnit, normalize_amount
from .pixel_registry import active_pixels, decrypt_access_token
from .sale_store import get_sale_by_code, mark_platform_sent
from .tiktok_events_service import TikTokEventsService
from .utmify_service import UTMIFY_DESTINATION, UtmifyService, build_order, utmify_status

logger = logging.getLogger(__name__)

PURCHASE_EVENT_NAMES = {
    PlatformEnum.facebook.value: "Purchase",
    PlatformEnum.tiktok.value: "CompletePayment",
    PlatformEnum.kwai.value: KWAI_PURCHASE_EVENT,
}

# Result statuses
SENT = "sent"
ALREADY_SENT = "already_sent"
IN_FLIGHT = "in_flight"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class DispatchTarget:
    platform: str
    destination: str
    event_name: str
    pixel: Optional[PixelConfig] = None


@dataclass
class DispatchResult:
    platform: str
    destination: str
    success: bool
    status: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _first(*values):
    for value in values:
        if value:
            return value
    return None


def attribution_key(sale: Sale, test_mode: bool) -> str:
    """Dedupe key of a sale; test dispatches never consume the production slot."""
    return f"{sale.sale_code}:test" if test_mode else sale.sale_code


class ConversionDispatcher:
    """Dispatches sales to all destinations with claim-before-send dedupe.

    Usage:
        dispatcher = ConversionDispatcher(context)
        results = await dispatcher.dispatch("S1")
        failed = [r for r in results if not r.success]
    """

    def __init__(self, context):
        self.context = context
        self.settings = context.settings

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def dispatch(self, sale_code: str, test_mode: bool = False) -> List[DispatchResult]:
        """Send a stored sale to every eligible destination.

        Args:
            sale_code: Sale to dispatch
            test_mode: Attach each platform's test marker (never set for production traffic)

        Returns:
            One DispatchResult per destination (skipped ones included)

        Raises:
            SaleNotFoundError: Unknown sale_code
        """
        with self.context.session() as db:
            sale = get_sale_by_code(db, sale_code)
            if sale is None:
                raise SaleNotFoundError(sale_code)
            click = get_click(db, sale.click_id)
            targets, skipped = self.select_targets(db, sale, click)

        # Stored values are already canonical major units (ingestion decides the
        # unit), so no minor-unit guess here: a R$ 15000.00 sale stays 15000.00
        value = normalize_amount(sale.plan_value, AmountUnit.MAJOR)
        results = await asyncio.gather(
            *(self._dispatch_one(target, sale, click, value, test_mode) for target in targets)
        )
        results = skipped + list(results)

        logger.info(
            f"[DISPATCH] Sale {sale_code}: " + ", ".join(f"{r.platform}={r.status}" for r in results),
            extra={"sale_code": sale_code, "test_mode": test_mode},
        )
        return results

    def select_targets(
        self,
        db: Session,
        sale: Sale,
        click: Optional[Click],
    ) -> Tuple[List[DispatchTarget], List[DispatchResult]]:
        """Destinations for a sale; inactive pixels are never selected."""
        targets: List[DispatchTarget] = []
        skipped: List[DispatchResult] = []

        if sale.status in PURCHASE_STATUSES:
            for pixel in active_pixels(db):
                event_name = PURCHASE_EVENT_NAMES.get(pixel.platform)
                if event_name is None:
                    continue
                if pixel.platform == PlatformEnum.kwai.value and not _kwai_click_id(sale, click):
                    skipped.append(DispatchResult(
                        platform=pixel.platform,
                        destination=pixel.pixel_id,
                        success=False,
                        status=SKIPPED,
                        error="No Kwai click id for this sale",
                    ))
                    continue
                targets.append(DispatchTarget(pixel.platform, pixel.pixel_id, event_name, pixel))

        if self.settings.UTMIFY_API_KEY:
            targets.append(DispatchTarget(
                PlatformEnum.utmify.value,
                UTMIFY_DESTINATION,
                f"order_{utmify_status(sale.status)}",
            ))
        return targets, skipped

    # =========================================================================
    # CLAIM / RECORD
    # =========================================================================

    def _identity(self, target: DispatchTarget, sale: Sale, test_mode: bool):
        return and_(
            ConversionDispatch.attribution_key == attribution_key(sale, test_mode),
            ConversionDispatch.platform == target.platform,
            ConversionDispatch.destination == target.destination,
            ConversionDispatch.event_name == target.event_name,
        )

    def claim(self, db: Session, target: DispatchTarget, sale: Sale, test_mode: bool) -> Optional[str]:
        """Take the dispatch slot.

        Returns:
            None when this caller owns the send, otherwise the status to report
            (`already_sent` or `in_flight`)
        """
        now = utcnow()
        created = insert_ignoring_conflicts(
            db,
            ConversionDispatch,
            {
                "attribution_key": attribution_key(sale, test_mode),
                "platform": target.platform,
                "destination": target.destination,
                "event_name": target.event_name,
                "sale_code": sale.sale_code,
                "click_id": sale.click_id,
                "status": DispatchStatusEnum.pending.value,
                "attempts": 1,
                "test_mode": test_mode,
                "claimed_at": now,
            },
            ["attribution_key", "platform", "destination", "event_name"],
        )
        if created:
            return None

        stale_before = now - timedelta(seconds=self.settings.DISPATCH_CLAIM_STALE_SECONDS)
        result = db.execute(
            update(ConversionDispatch)
            .where(
                self._identity(target, sale, test_mode),
                or_(
                    ConversionDispatch.status == DispatchStatusEnum.failed.value,
                    and_(
                        ConversionDispatch.status == DispatchStatusEnum.pending.value,
                        ConversionDispatch.claimed_at < stale_before,
                    ),
                ),
            )
            .values(
                status=DispatchStatusEnum.pending.value,
                attempts=ConversionDispatch.attempts + 1,
                claimed_at=now,
                click_id=sale.click_id,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            logger.info(f"[DISPATCH] Retrying {target.platform}:{target.destination} for {sale.sale_code}")
            return None

        row = db.query(ConversionDispatch).filter(self._identity(target, sale, test_mode)).first()
        if row is not None and row.status == DispatchStatusEnum.sent.value:
            return ALREADY_SENT
        return IN_FLIGHT

    def _record(self, target: DispatchTarget, sale: Sale, test_mode: bool, **values) -> None:
        with self.context.session() as db:
            db.execute(
                update(ConversionDispatch)
                .where(self._identity(target, sale, test_mode))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    # =========================================================================
    # SEND
    # =========================================================================

    async def _dispatch_one(
        self,
        target: DispatchTarget,
        sale: Sale,
        click: Optional[Click],
        value: Optional[Decimal],
        test_mode: bool,
    ) -> DispatchResult:
        with self.context.session() as db:
            blocked = self.claim(db, target, sale, test_mode)
        if blocked:
            logger.info(f"[DISPATCH] {target.platform}:{target.destination} {blocked} for {sale.sale_code}")
            return DispatchResult(
                target.platform, target.destination, success=(blocked == ALREADY_SENT), status=blocked
            )

        try:
            response = await self._send(target, sale, click, value, test_mode)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            self._record(
                target, sale, test_mode,
                status=DispatchStatusEnum.failed.value,
                last_error=message[:2000],
            )
            logger.error(
                f"[DISPATCH] {target.platform}:{target.destination} failed for {sale.sale_code}: {message}",
                exc_info=not isinstance(e, ConversionAPIError),
                extra={
                    "sale_code": sale.sale_code,
                    "platform": target.platform,
                    "status_code": getattr(e, "status_code", None),
                },
            )
            capture_exception(e, extra={
                "sale_code": sale.sale_code,
                "platform": target.platform,
                "destination": target.destination,
            })
            return DispatchResult(target.platform, target.destination, success=False, status=FAILED, error=message)

        self._record(
            target, sale, test_mode,
            status=DispatchStatusEnum.sent.value,
            sent_at=utcnow(),
            response_excerpt=json.dumps(response, default=str)[:1000] if response else None,
        )
        if not test_mode:
            with self.context.session() as db:
                mark_platform_sent(db, sale.sale_code, target.platform)
        return DispatchResult(target.platform, target.destination, success=True, status=SENT)

    async def _send(
        self,
        target: DispatchTarget,
        sale: Sale,
        click: Optional[Click],
        value: Optional[Decimal],
        test_mode: bool,
    ) -> Dict[str, Any]:
        client = self.context.http_client
        timeout = self.settings.DISPATCH_TIMEOUT_SECONDS
        currency = sale.currency or self.settings.DEFAULT_CURRENCY
        content_name = sale.plan_name or self.settings.DEFAULT_PLAN_NAME
        event_time = sale.approved_at or sale.created_at

        if target.platform == PlatformEnum.utmify.value:
            service = UtmifyService(self.settings.UTMIFY_API_KEY, client, timeout)
            order = build_order(
                sale, click, value=value,
                default_plan_name=self.settings.DEFAULT_PLAN_NAME,
                test_mode=test_mode,
            )
            return await service.send_order(order)

        pixel = target.pixel
        access_token = decrypt_access_token(self.context.cipher, pixel)
        test_event_code = _test_event_code(pixel, test_mode)

        if target.platform == PlatformEnum.facebook.value:
            service = MetaCAPIService(
                pixel.pixel_id, access_token, client,
                api_version=self.settings.META_GRAPH_API_VERSION,
                timeout=timeout,
            )
            return await service.send_purchase_event(
                event_id=sale.sale_code,
                value=value,
                currency=currency,
                email=sale.customer_email,
                phone=sale.customer_phone,
                document=sale.customer_document,
                client_ip=_first(sale.ip, click and click.ip),
                client_user_agent=_first(sale.user_agent, click and click.user_agent),
                fbclid=click.fbclid if click else None,
                fbc=_first(sale.fbc, click and click.fbc),
                fbp=_first(sale.fbp, click and click.fbp),
                event_source_url=click.landing_page if click else None,
                event_time=event_time,
                test_event_code=test_event_code,
            )

        if target.platform == PlatformEnum.tiktok.value:
            service = TikTokEventsService(pixel.pixel_id, access_token, client, timeout)
            return await service.send_purchase_event(
                event_id=sale.sale_code,
                value=value,
                currency=currency,
                content_name=content_name,
                email=sale.customer_email,
                phone=sale.customer_phone,
                client_ip=_first(sale.ip, click and click.ip),
                client_user_agent=_first(sale.user_agent, click and click.user_agent),
                ttclid=_first(sale.ttclid, click and click.ttclid),
                page_url=click.landing_page if click else None,
                event_time=event_time,
                test_event_code=test_event_code,
            )

        if target.platform == PlatformEnum.kwai.value:
            service = KwaiEventsService(pixel.pixel_id, access_token, client, timeout)
            return await service.send_purchase_event(
                click_id=_kwai_click_id(sale, click),
                value=value,
                currency=currency,
                content_name=content_name,
                event_time=event_time,
                test_mode=test_mode,
            )

        raise ConversionAPIError(target.platform, f"Unsupported platform: {target.platform}")


def _kwai_click_id(sale: Sale, click: Optional[Click]) -> Optional[str]:
    return _first(sale.kwai_click_id, click and click.kwai_click_id)


def _test_event_code(pixel: PixelConfig, test_mode: bool) -> Optional[str]:
    """A pixel's test code is attached only to explicit test dispatches."""
    if not test_mode:
        return None
    return pixel.test_event_code
