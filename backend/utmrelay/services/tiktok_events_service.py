"""TikTok Events API Service.

WHAT:
    Sends CompletePayment events to a TikTok pixel.

WHY:
    The ttclid captured on landing is echoed back as the ad callback so
    TikTok can credit the campaign that produced the click.

HOW:
    POST https://business-api.tiktok.com/open_api/v1.3/pixel/track/
    Header `Access-Token`; the pixel is identified by `pixel_code` in the
    body. TikTok answers HTTP 200 with `code != 0` on rejected events.

REFERENCES:
    - https://business-api.tiktok.com/portal/docs?id=1771101303285761
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..exceptions import ConversionAPIError
from ..models import PlatformEnum, utcnow
from ..security import hash_email, hash_phone

logger = logging.getLogger(__name__)

TIKTOK_TRACK_URL = "https://business-api.tiktok.com/open_api/v1.3/pixel/track/"


class TikTokEventsError(ConversionAPIError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(PlatformEnum.tiktok.value, message, status_code)


class TikTokEventsService:
    """Client for the TikTok pixel track endpoint.

    Usage:
        service = TikTokEventsService(pixel_code="C123", access_token="token", client=client)
        await service.send_purchase_event(event_id="S1", value=Decimal("49.90"), currency="BRL")
    """

    def __init__(self, pixel_code: str, access_token: str, client: httpx.AsyncClient, timeout: float = 15.0):
        self.pixel_code = pixel_code
        self.access_token = access_token
        self.client = client
        self.timeout = timeout

    async def send_purchase_event(
        self,
        event_id: str,
        value: Decimal,
        currency: str,
        content_name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        client_ip: Optional[str] = None,
        client_user_agent: Optional[str] = None,
        ttclid: Optional[str] = None,
        page_url: Optional[str] = None,
        event_time: Optional[datetime] = None,
        test_event_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send a CompletePayment event.

        Raises:
            TikTokEventsError: Transport failure, non-2xx, or code != 0
        """
        payload = self.build_purchase_event(
            pixel_code=self.pixel_code,
            event_id=event_id,
            value=value,
            currency=currency,
            content_name=content_name,
            email=email,
            phone=phone,
            client_ip=client_ip,
            client_user_agent=client_user_agent,
            ttclid=ttclid,
            page_url=page_url,
            event_time=event_time,
        )
        if test_event_code:
            payload["test_event_code"] = test_event_code

        logger.info(
            f"[TIKTOK_EVENTS] Sending CompletePayment to pixel {self.pixel_code}",
            extra={"event_id": event_id, "test_mode": bool(test_event_code), "has_ttclid": bool(ttclid)},
        )

        try:
            response = await self.client.post(
                TIKTOK_TRACK_URL,
                json=payload,
                headers={"Access-Token": self.access_token},
                timeout=self.timeout,
            )
        except httpx.RequestError as e:
            logger.error(f"[TIKTOK_EVENTS] Network error: {e}")
            raise TikTokEventsError(f"Network error sending to TikTok: {e}") from e

        if response.status_code >= 300:
            logger.error(f"[TIKTOK_EVENTS] API error: {response.status_code} - {response.text[:300]}")
            raise TikTokEventsError(f"TikTok HTTP {response.status_code}", status_code=response.status_code)

        try:
            result = response.json()
        except ValueError as e:
            raise TikTokEventsError("TikTok returned a non-JSON body", status_code=response.status_code) from e

        if result.get("code") != 0:
            message = result.get("message") or "unknown error"
            logger.error(f"[TIKTOK_EVENTS] Event rejected: {result.get('code')} - {message}")
            raise TikTokEventsError(f"TikTok error {result.get('code')}: {message}", status_code=response.status_code)

        logger.info("[TIKTOK_EVENTS] Success", extra={"request_id": result.get("request_id")})
        return result

    @staticmethod
    def build_purchase_event(
        pixel_code: str,
        event_id: str,
        value: Optional[Decimal],
        currency: str,
        content_name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        client_ip: Optional[str] = None,
        client_user_agent: Optional[str] = None,
        ttclid: Optional[str] = None,
        page_url: Optional[str] = None,
        event_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Body for /pixel/track/ (PII hashed, empty context blocks dropped)."""
        price = float(value) if value is not None else 0.0

        user = {
            "ip": client_ip,
            "user_agent": client_user_agent,
            "email": hash_email(email),
            "phone_number": hash_phone(phone),
        }
        context: Dict[str, Any] = {"user": {key: val for key, val in user.items() if val}}
        if ttclid:
            context["ad"] = {"callback": ttclid}
        if page_url:
            context["page"] = {"url": page_url}

        return {
            "pixel_code": pixel_code,
            "event": "CompletePayment",
            "event_id": event_id,
            "timestamp": (event_time or utcnow()).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "context": context,
            "properties": {
                "value": price,
                "currency": currency,
                "contents": [
                    {
                        "content_id": "vip_access",
                        "content_name": content_name,
                        "price": price,
                        "quantity": 1,
                    }
                ],
            },
        }
