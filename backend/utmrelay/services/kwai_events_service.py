"""Kwai Ads event API client.

Purchase events are keyed by the Kwai click id captured on landing; a sale
without one cannot be reported to Kwai. `trackFlag` marks an event as a
test and is only present for explicit test dispatches.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..exceptions import ConversionAPIError
from ..models import PlatformEnum, utcnow

logger = logging.getLogger(__name__)

KWAI_EVENTS_URL = "https://www.adsnebula.com/log/common/api"
KWAI_PURCHASE_EVENT = "EVENT_PURCHASE"


class KwaiEventsError(ConversionAPIError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(PlatformEnum.kwai.value, message, status_code)


class KwaiEventsService:
    def __init__(self, pixel_id: str, access_token: str, client: httpx.AsyncClient, timeout: float = 15.0):
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.client = client
        self.timeout = timeout

    async def send_purchase_event(
        self,
        click_id: str,
        value: Optional[Decimal],
        currency: str,
        content_name: Optional[str] = None,
        event_time: Optional[datetime] = None,
        test_mode: bool = False,
    ) -> Dict[str, Any]:
        """Report a purchase for a Kwai click.

        Raises:
            KwaiEventsError: Transport failure, non-2xx, or result != 1
        """
        payload = self.build_purchase_event(
            pixel_id=self.pixel_id,
            access_token=self.access_token,
            click_id=click_id,
            value=value,
            currency=currency,
            content_name=content_name,
            event_time=event_time,
        )
        if test_mode:
            payload["trackFlag"] = True

        logger.info(
            f"[KWAI_EVENTS] Sending {KWAI_PURCHASE_EVENT} to pixel {self.pixel_id}",
            extra={"test_mode": test_mode},
        )

        try:
            response = await self.client.post(KWAI_EVENTS_URL, json=payload, timeout=self.timeout)
        except httpx.RequestError as e:
            logger.error(f"[KWAI_EVENTS] Network error: {e}")
            raise KwaiEventsError(f"Network error sending to Kwai: {e}") from e

        if response.status_code >= 300:
            logger.error(f"[KWAI_EVENTS] API error: {response.status_code} - {response.text[:300]}")
            raise KwaiEventsError(f"Kwai HTTP {response.status_code}", status_code=response.status_code)

        try:
            result = response.json()
        except ValueError as e:
            raise KwaiEventsError("Kwai returned a non-JSON body", status_code=response.status_code) from e

        if result.get("result") != 1:
            message = result.get("error_msg") or result.get("message") or "event rejected"
            logger.error(f"[KWAI_EVENTS] Event rejected: {message}")
            raise KwaiEventsError(f"Kwai error: {message}", status_code=response.status_code)

        return result

    @staticmethod
    def build_purchase_event(
        pixel_id: str,
        access_token: str,
        click_id: str,
        value: Optional[Decimal],
        currency: str,
        content_name: Optional[str] = None,
        event_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        event_time = event_time or utcnow()
        properties = {
            "price": float(value) if value is not None else 0.0,
            "quantity": 1,
            "currency": currency,
            "content_type": "product",
            "content_name": content_name,
            "event_timestamp": int((event_time - datetime(1970, 1, 1)).total_seconds() * 1000),
        }
        return {
            "access_token": access_token,
            "clickid": click_id,
            "event_name": KWAI_PURCHASE_EVENT,
            "pixelId": pixel_id,
            "is_attributed": 1,
            "mmpcode": "PL",
            "pixelSdkVersion": "9.9.9",
            # Kwai expects properties as a JSON-encoded string
            "properties": json.dumps(properties),
            "testFlag": False,
        }
