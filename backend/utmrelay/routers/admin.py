"""Admin API (X-Admin-Key header).

WHAT:
    Pixel registry management, sale inspection, manual re-dispatch and
    counters for the operator.

WHY:
    Failed dispatches are never retried automatically; the operator looks
    at a sale's dispatch log and re-dispatches it (optionally as a test,
    which is the only way a platform test code is ever sent).
"""

import logging
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from utmrelay.database import get_db
from utmrelay.deps import get_pipeline, get_relay_context, require_admin_key
from utmrelay.exceptions import SaleNotFoundError, ValidationError
from utmrelay.models import Click, ConversionDispatch, PixelConfig, PURCHASE_STATUSES, Sale
from utmrelay.schemas import (
    DispatchLogEntry,
    DispatchResultResponse,
    PixelConfigRequest,
    PixelConfigResponse,
    SaleResponse,
    StatsResponse,
)
from utmrelay.services.pixel_registry import deactivate_pixel, list_pixels, register_pixel
from utmrelay.services.sale_store import get_sale_by_code

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin_key)])


# =============================================================================
# PIXELS
# =============================================================================

@router.get("/pixels", response_model=List[PixelConfigResponse])
def get_pixels(include_inactive: bool = False, db: Session = Depends(get_db)):
    return list_pixels(db, include_inactive=include_inactive)


@router.post("/pixels", response_model=PixelConfigResponse, status_code=status.HTTP_201_CREATED)
def create_pixel(
    payload: PixelConfigRequest,
    db: Session = Depends(get_db),
    context=Depends(get_relay_context),
):
    """Register a pixel, or update and reactivate an existing (platform, pixel_id)."""
    try:
        return register_pixel(
            db,
            context.cipher,
            name=payload.name,
            platform=payload.platform.value,
            pixel_id=payload.pixel_id,
            access_token=payload.access_token,
            event_source_id=payload.event_source_id,
            test_event_code=payload.test_event_code,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/pixels/{platform}/{pixel_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_pixel(platform: str, pixel_id: str, db: Session = Depends(get_db)):
    """Soft delete (is_active=false); dispatch history keeps referencing the pixel."""
    if not deactivate_pixel(db, platform, pixel_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pixel not found")


# =============================================================================
# SALES
# =============================================================================

@router.get("/sales/{sale_code}", response_model=SaleResponse)
def get_sale(sale_code: str, db: Session = Depends(get_db)):
    sale = get_sale_by_code(db, sale_code)
    if sale is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sale not found")

    dispatches = (
        db.query(ConversionDispatch)
        .filter(ConversionDispatch.sale_code == sale_code)
        .order_by(ConversionDispatch.claimed_at)
        .all()
    )
    response = SaleResponse.model_validate(sale)
    response.dispatches = [DispatchLogEntry.model_validate(row) for row in dispatches]
    return response


@router.post("/sales/{sale_code}/dispatch", response_model=List[DispatchResultResponse])
async def redispatch_sale(sale_code: str, test_mode: bool = False, pipeline=Depends(get_pipeline)):
    """Dispatch now and return per-destination results (already-sent destinations are not resent)."""
    try:
        results = await pipeline.dispatch_sale(sale_code, test_mode=test_mode)
    except SaleNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sale not found")
    logger.info(f"[ADMIN] Manual dispatch of {sale_code} (test_mode={test_mode})")
    return [DispatchResultResponse(**r.to_dict()) for r in results]


# =============================================================================
# STATS
# =============================================================================

@router.get("/stats", response_model=StatsResponse)
def get_stats(db: Session = Depends(get_db), context=Depends(get_relay_context)):
    purchases = db.query(Sale).filter(Sale.status.in_(PURCHASE_STATUSES))
    revenue = purchases.with_entities(func.coalesce(func.sum(Sale.plan_value), 0)).scalar()
    return StatsResponse(
        clicks=db.query(func.count(Click.id)).scalar() or 0,
        approved_sales=purchases.count(),
        revenue=Decimal(str(revenue or 0)).quantize(Decimal("0.01")),
        active_pixels=db.query(func.count(PixelConfig.id)).filter(PixelConfig.is_active.is_(True)).scalar() or 0,
        utmify_configured=bool(context.settings.UTMIFY_API_KEY),
    )
