"""Meta Conversions API (CAPI) Service.

WHAT:
    Sends server-side Purchase events to a Meta pixel for every approved
    sale that the relay attributes.

WHY:
    - Server-side events survive ad blockers and iOS tracking limits
    - fbc/fbp captured on the landing page let Meta match the buyer
    - Deduplication with the browser pixel via event_id (the sale code)

HOW:
    Uses Meta's Conversions API endpoint:
    POST https://graph.facebook.com/{version}/{pixel_id}/events

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - utmrelay/services/conversion_dispatcher.py (caller)
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

import httpx

from ..exceptions import ConversionAPIError
from ..models import PlatformEnum, utcnow
from ..security import hash_document, hash_email, hash_phone

logger = logging.getLogger(__name__)

META_GRAPH_BASE_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v19.0"


class MetaCAPIError(ConversionAPIError):
    """Meta rejected the event or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(PlatformEnum.facebook.value, message, status_code)


class MetaCAPIService:
    """Service for sending server-side events to Meta Conversions API.

    Usage:
        ```python
        service = MetaCAPIService(pixel_id="123456", access_token="token", client=context.http_client)
        await service.send_purchase_event(
            event_id="S1",
            value=Decimal("49.90"),
            currency="BRL",
            email="customer@example.com",
        )
        ```
    """

    def __init__(
        self,
        pixel_id: str,
        access_token: str,
        client: httpx.AsyncClient,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 15.0,
    ):
        """Initialize CAPI service with pixel credentials.

        Args:
            pixel_id: Meta Pixel ID (from Meta Business Manager)
            access_token: Conversions API access token (decrypted)
            client: Shared HTTP client from the relay context
            api_version: Graph API version
            timeout: Request timeout in seconds
        """
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.client = client
        self.timeout = timeout
        self.events_url = f"{META_GRAPH_BASE_URL}/{api_version}/{pixel_id}/events"

    async def send_purchase_event(
        self,
        event_id: str,
        value: Decimal,
        currency: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        document: Optional[str] = None,
        client_ip: Optional[str] = None,
        client_user_agent: Optional[str] = None,
        fbclid: Optional[str] = None,
        fbc: Optional[str] = None,
        fbp: Optional[str] = None,
        event_source_url: Optional[str] = None,
        event_time: Optional[datetime] = None,
        test_event_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send a Purchase conversion event to Meta.

        IMPORTANT - Deduplication:
            The event_id MUST match the browser pixel's event_id to prevent
            double-counting. The relay uses the sale code.

        Args:
            event_id: Unique ID for deduplication (sale code)
            value: Purchase value in major currency units
            currency: ISO currency code (e.g., "BRL")
            email: Customer email (will be hashed)
            phone: Customer phone (will be hashed)
            document: Customer tax document (hashed as external_id)
            client_ip: Buyer IP address
            client_user_agent: Buyer browser user agent
            fbclid: Facebook click ID from the landing URL
            fbc: Facebook click cookie
            fbp: Facebook browser cookie
            event_source_url: Landing page URL
            event_time: When the purchase happened (naive UTC)
            test_event_code: Routes the event to Test Events; only set for test dispatches

        Returns:
            Dict with events_received count and fbtrace_id

        Raises:
            MetaCAPIError: If the API request fails
        """
        event_data = self.build_purchase_event(
            event_id=event_id,
            value=value,
            currency=currency,
            email=email,
            phone=phone,
            document=document,
            client_ip=client_ip,
            client_user_agent=client_user_agent,
            fbclid=fbclid,
            fbc=fbc,
            fbp=fbp,
            event_source_url=event_source_url,
            event_time=event_time,
        )

        return await self._send_events([event_data], test_event_code)

    @staticmethod
    def build_purchase_event(
        event_id: str,
        value: Optional[Decimal] = None,
        currency: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        document: Optional[str] = None,
        client_ip: Optional[str] = None,
        client_user_agent: Optional[str] = None,
        fbclid: Optional[str] = None,
        fbc: Optional[str] = None,
        fbp: Optional[str] = None,
        event_source_url: Optional[str] = None,
        event_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Build a single Purchase event payload.

        WHAT: Constructs the event object with user data hashing
        WHY: Meta requires SHA256-hashed PII; raw PII is never sent

        Returns:
            Event dictionary ready for API submission (empty fields removed)
        """
        event_time = event_time or utcnow()
        event_timestamp = int((event_time - datetime(1970, 1, 1)).total_seconds())

        if not fbc and fbclid:
            # fbc format: fb.1.{creation_time_ms}.{fbclid}
            fbc = f"fb.1.{event_timestamp * 1000}.{fbclid}"

        hashed_email = hash_email(email)
        hashed_phone = hash_phone(phone)
        hashed_document = hash_document(document)
        user_data = {
            "client_ip_address": client_ip,
            "client_user_agent": client_user_agent,
            "fbc": fbc,
            "fbp": fbp,
            "em": [hashed_email] if hashed_email else None,
            "ph": [hashed_phone] if hashed_phone else None,
            "external_id": [hashed_document] if hashed_document else None,
        }
        user_data = {key: val for key, val in user_data.items() if val}

        custom_data: Dict[str, Any] = {}
        if value is not None:
            custom_data["value"] = float(value)
        if currency:
            custom_data["currency"] = currency

        event = {
            "event_name": "Purchase",
            "event_time": event_timestamp,
            "event_id": event_id,  # CRITICAL for deduplication
            "action_source": "website",
            "user_data": user_data,
        }

        if custom_data:
            event["custom_data"] = custom_data

        if event_source_url:
            event["event_source_url"] = event_source_url

        return event

    async def _send_events(
        self,
        events: List[Dict[str, Any]],
        test_event_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """POST events to Meta's graph API.

        Raises:
            MetaCAPIError: If the request fails
        """
        payload: Dict[str, Any] = {
            "data": events,
            "access_token": self.access_token,
        }

        if test_event_code:
            payload["test_event_code"] = test_event_code

        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {self.pixel_id}",
            extra={
                "event_ids": [e["event_id"] for e in events],
                "test_mode": bool(test_event_code),
            }
        )

        try:
            response = await self.client.post(self.events_url, json=payload, timeout=self.timeout)
        except httpx.RequestError as e:
            logger.error(f"[META_CAPI] Network error: {e}")
            raise MetaCAPIError(f"Network error sending to Meta CAPI: {e}") from e

        if response.status_code != 200:
            try:
                error_data = response.json() if response.text else {}
            except ValueError:
                error_data = {}
            error_message = error_data.get("error", {}).get("message", response.text)
            logger.error(
                f"[META_CAPI] API error: {response.status_code} - {error_message}",
                extra={"pixel_id": self.pixel_id}
            )
            raise MetaCAPIError(f"Meta CAPI error: {error_message}", status_code=response.status_code)

        result = response.json()
        logger.info(
            f"[META_CAPI] Success: {result.get('events_received', 0)} event(s) received",
            extra={"fbtrace_id": result.get("fbtrace_id", "")}
        )
        return result
