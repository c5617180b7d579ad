"""Pixel registry: encrypted ad-platform credentials.

WHAT:
    Registers, lists and deactivates PixelConfig rows and hands decrypted
    access tokens to the dispatcher.

WHY:
    - Pixels are soft-deleted (is_active=false) so the dispatch history
      keeps pointing at a known (platform, pixel_id)
    - Re-registering a known pair updates and reactivates it
    - Tokens are encrypted at rest and never returned by the API

REFERENCES:
    - utmrelay/security.py (TokenCipher)
    - utmrelay/routers/admin.py (admin endpoints)
"""

import logging
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..database import insert_ignoring_conflicts
from ..exceptions import ValidationError
from ..models import PixelConfig, PlatformEnum, utcnow
from ..security import TokenCipher

logger = logging.getLogger(__name__)

# Platforms configured through pixels (UTMify uses UTMIFY_API_KEY)
PIXEL_PLATFORMS = (PlatformEnum.facebook.value, PlatformEnum.tiktok.value, PlatformEnum.kwai.value)


def _label(platform: str, pixel_id: str) -> str:
    return f"{platform}:{pixel_id}"


def register_pixel(
    db: Session,
    cipher: TokenCipher,
    *,
    name: str,
    platform: str,
    pixel_id: str,
    access_token: str,
    event_source_id: Optional[str] = None,
    test_event_code: Optional[str] = None,
) -> PixelConfig:
    """Create or update (and reactivate) a pixel.

    Raises:
        ValidationError: Unknown platform or missing fields
    """
    platform = getattr(platform, "value", platform)
    if platform not in PIXEL_PLATFORMS:
        raise ValidationError(f"Unsupported pixel platform: {platform}")
    name, pixel_id, access_token = (name or "").strip(), (pixel_id or "").strip(), (access_token or "").strip()
    if not (name and pixel_id and access_token):
        raise ValidationError("name, platform, pixel_id and access_token are required")

    values = {
        "name": name,
        "access_token_enc": cipher.encrypt(access_token, context=_label(platform, pixel_id)),
        "event_source_id": event_source_id or None,
        "test_event_code": test_event_code or None,
        "is_active": True,
        "updated_at": utcnow(),
    }
    created = insert_ignoring_conflicts(
        db,
        PixelConfig,
        dict(values, platform=platform, pixel_id=pixel_id, created_at=values["updated_at"]),
        ["platform", "pixel_id"],
    )
    if not created:
        db.execute(
            update(PixelConfig)
            .where(PixelConfig.platform == platform, PixelConfig.pixel_id == pixel_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    pixel = get_pixel(db, platform, pixel_id)
    db.refresh(pixel)
    logger.info(
        f"[PIXELS] Pixel {'registered' if created else 'updated'}: {_label(platform, pixel_id)}",
        extra={"pixel_name": name},
    )
    return pixel


def get_pixel(db: Session, platform: str, pixel_id: str) -> Optional[PixelConfig]:
    return (
        db.query(PixelConfig)
        .filter(PixelConfig.platform == platform, PixelConfig.pixel_id == pixel_id)
        .first()
    )


def deactivate_pixel(db: Session, platform: str, pixel_id: str) -> bool:
    """Soft-delete a pixel. Returns False when it does not exist."""
    result = db.execute(
        update(PixelConfig)
        .where(PixelConfig.platform == platform, PixelConfig.pixel_id == pixel_id)
        .values(is_active=False, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info(f"[PIXELS] Pixel deactivated: {_label(platform, pixel_id)}")
    return bool(result.rowcount)


def list_pixels(db: Session, include_inactive: bool = True) -> List[PixelConfig]:
    query = db.query(PixelConfig)
    if not include_inactive:
        query = query.filter(PixelConfig.is_active.is_(True))
    return query.order_by(PixelConfig.platform, PixelConfig.created_at).all()


def active_pixels(db: Session) -> List[PixelConfig]:
    """Pixels eligible for dispatch; inactive configs are never selected."""
    return list_pixels(db, include_inactive=False)


def decrypt_access_token(cipher: TokenCipher, pixel: PixelConfig) -> str:
    return cipher.decrypt(pixel.access_token_enc, context=_label(pixel.platform, pixel.pixel_id))
