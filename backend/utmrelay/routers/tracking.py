"""Click capture endpoints.

WHAT:
    - POST /api/track: JSON beacon from the landing page script
    - GET /pixel.gif: 1x1 image beacon (query string carries the click)
    - GET /redirect: tracked link that records the click and bounces to the
      bot (Telegram deep links get start=<click_id>)

WHY:
    The pixel and the redirect answer immediately and persist the click in
    a background task; the GIF is returned even if persisting fails.

REFERENCES:
    - utmrelay/services/click_store.py
    - utmrelay/workers/background.py (run_guarded)
"""

import base64
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from utmrelay.database import get_db
from utmrelay.deps import get_relay_context
from utmrelay.exceptions import ValidationError
from utmrelay.schemas import TrackClickRequest, TrackClickResponse
from utmrelay.services.click_store import save_click
from utmrelay.workers.background import run_guarded

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Tracking"])

TRANSPARENT_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
NO_CACHE = "no-store, no-cache, must-revalidate, max-age=0"
TELEGRAM_HOSTS = ("t.me", "telegram.me")

# Query parameter -> click column; short aliases come from compact tracking links
QUERY_ALIASES = {
    "utm_source": ("utm_source", "us"),
    "utm_medium": ("utm_medium", "um"),
    "utm_campaign": ("utm_campaign", "uc"),
    "utm_content": ("utm_content", "uco"),
    "utm_term": ("utm_term", "ut"),
    "utm_id": ("utm_id",),
    "session_id": ("session_id", "sid"),
    "landing_page": ("landing_page", "lp"),
    "fbclid": ("fbclid",),
    "fbc": ("fbc",),
    "fbp": ("fbp",),
    "ttclid": ("ttclid",),
    "gclid": ("gclid",),
    "msclkid": ("msclkid",),
    "kwai_click_id": ("kwai_click_id", "kwai_clickid"),
}


# =============================================================================
# HELPERS
# =============================================================================

def client_ip(request: Request) -> Optional[str]:
    """Client IP (first X-Forwarded-For hop, else the socket peer)."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def click_from_query(request: Request, click_id: str) -> Dict[str, Any]:
    params = request.query_params
    data: Dict[str, Any] = {
        "click_id": click_id,
        "timestamp_ms": int(time.time() * 1000),
        "ip": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "referrer": request.headers.get("referer"),
    }
    for column, names in QUERY_ALIASES.items():
        data[column] = next((params[name] for name in names if params.get(name)), None)
    return data


def persist_click(context, data: Dict[str, Any]) -> bool:
    with context.session() as db:
        return save_click(db, data)


def telegram_destination(destination: str, click_id: Optional[str]) -> str:
    """Set start=<click_id> on t.me / telegram.me links."""
    if not click_id:
        return destination
    parsed = urlparse(destination)
    if (parsed.hostname or "").lower() not in TELEGRAM_HOSTS:
        return destination
    query = [(key, value) for key, value in parse_qsl(parsed.query, keep_blank_values=True) if key != "start"]
    query.append(("start", click_id))
    return urlunparse(parsed._replace(query=urlencode(query)))


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post(
    "/api/track",
    response_model=TrackClickResponse,
    summary="Record a landing click",
)
def track_click(
    payload: TrackClickRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    data = payload.model_dump()
    data["timestamp_ms"] = payload.timestamp_ms or payload.timestamp
    data["ip"] = client_ip(request)
    data["user_agent"] = payload.user_agent or request.headers.get("user-agent")
    data["referrer"] = payload.referrer or request.headers.get("referer")

    try:
        saved = save_click(db, data)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return TrackClickResponse(success=True, click_id=payload.click_id.strip(), saved=saved)


@router.get("/pixel.gif", summary="Tracking pixel", include_in_schema=False)
def tracking_pixel(
    request: Request,
    background_tasks: BackgroundTasks,
    context=Depends(get_relay_context),
):
    try:
        click_id = request.query_params.get("click_id") or f"pixel_{int(time.time() * 1000)}"
        background_tasks.add_task(run_guarded, "save_click", persist_click, context, click_from_query(request, click_id))
    except Exception as e:
        logger.exception(f"[TRACKING] Pixel click not scheduled: {e}")

    return Response(
        content=TRANSPARENT_GIF,
        media_type="image/gif",
        headers={"Cache-Control": NO_CACHE},
    )


@router.get("/redirect", summary="Tracked redirect", include_in_schema=False)
def tracked_redirect(
    request: Request,
    background_tasks: BackgroundTasks,
    url: Optional[str] = None,
    click_id: Optional[str] = None,
    context=Depends(get_relay_context),
):
    destination = url or context.settings.TELEGRAM_BOT_URL
    if not destination:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No redirect destination")

    if click_id:
        background_tasks.add_task(run_guarded, "save_click", persist_click, context, click_from_query(request, click_id))

    return RedirectResponse(telegram_destination(destination, click_id), status_code=status.HTTP_302_FOUND)
