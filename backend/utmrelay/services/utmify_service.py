"""UTMify order forwarding.

WHAT:
    Posts every sale status change to the UTMify aggregator as an order.

WHY:
    UTMify is the operator's sales dashboard: it needs the raw customer
    record, the UTM parameters and the commission breakdown in cents.
    Unlike the ad platforms it receives unhashed customer data.

HOW:
    POST https://api.utmify.com.br/api-credentials/orders
    Header `x-api-token`. Status is "waiting_payment" until the sale is
    approved, then "paid". `isTest` is only true for explicit test dispatches.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..exceptions import ConversionAPIError
from ..models import PURCHASE_STATUSES, PlatformEnum
from .money import to_minor_units

logger = logging.getLogger(__name__)

UTMIFY_ORDERS_URL = "https://api.utmify.com.br/api-credentials/orders"
UTMIFY_DESTINATION = "utmify"
UTMIFY_PLATFORM_NAME = "unknown"

PLACEHOLDER_NAME = "Cliente"
PLACEHOLDER_EMAIL = "naoinformado@utmify.com"
PLACEHOLDER_IP = "0.0.0.0"

_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class UtmifyError(ConversionAPIError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(PlatformEnum.utmify.value, message, status_code)


def utmify_status(sale_status: str) -> str:
    """Sale status -> UTMify order status."""
    return "paid" if sale_status in PURCHASE_STATUSES else "waiting_payment"


def _format_date(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(_DATE_FORMAT) if value else None


def build_order(sale, click=None, value: Optional[Decimal] = None, default_plan_name: str = "Acesso VIP", test_mode: bool = False) -> Dict[str, Any]:
    """Order payload for a sale (click fills UTM gaps).

    Args:
        sale: Sale row
        click: Attributed Click row, if any
        value: Amount in major units (defaults to sale.plan_value)
        default_plan_name: Product name when the sale has none
        test_mode: Mark the order as a test
    """
    status = utmify_status(sale.status)
    total_cents = to_minor_units(value if value is not None else sale.plan_value)

    def tracking(field: str) -> Optional[str]:
        return getattr(sale, field, None) or (getattr(click, field, None) if click is not None else None)

    return {
        "orderId": sale.sale_code,
        "platform": sale.payment_platform or UTMIFY_PLATFORM_NAME,
        "paymentMethod": sale.payment_method or "unknown",
        "status": status,
        "createdAt": _format_date(sale.created_at),
        "approvedDate": _format_date(sale.approved_at or sale.updated_at) if status == "paid" else None,
        "refundedAt": None,
        "customer": {
            "name": sale.customer_name or PLACEHOLDER_NAME,
            "email": sale.customer_email or PLACEHOLDER_EMAIL,
            "phone": sale.customer_phone,
            "document": sale.customer_document,
            "country": "BR",
            "ip": sale.ip or (click.ip if click is not None else None) or PLACEHOLDER_IP,
        },
        "products": [
            {
                "id": "acesso-vip",
                "name": sale.plan_name or default_plan_name,
                "planId": None,
                "planName": None,
                "quantity": 1,
                "priceInCents": total_cents,
            }
        ],
        "trackingParameters": {
            "src": None,
            "sck": None,
            "utm_source": tracking("utm_source"),
            "utm_medium": tracking("utm_medium"),
            "utm_campaign": tracking("utm_campaign"),
            "utm_content": tracking("utm_content"),
            "utm_term": tracking("utm_term"),
        },
        "commission": {
            "totalPriceInCents": total_cents,
            "gatewayFeeInCents": 0,
            "userCommissionInCents": total_cents,
            "currency": sale.currency or "BRL",
        },
        "isTest": bool(test_mode),
    }


class UtmifyService:
    def __init__(self, api_token: str, client: httpx.AsyncClient, timeout: float = 15.0):
        self.api_token = api_token
        self.client = client
        self.timeout = timeout

    async def send_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """POST an order.

        Raises:
            UtmifyError: Transport failure or non-2xx answer
        """
        logger.info(
            f"[UTMIFY] Sending order {order['orderId']} ({order['status']})",
            extra={"is_test": order.get("isTest", False)},
        )
        try:
            response = await self.client.post(
                UTMIFY_ORDERS_URL,
                json=order,
                headers={"x-api-token": self.api_token},
                timeout=self.timeout,
            )
        except httpx.RequestError as e:
            logger.error(f"[UTMIFY] Network error: {e}")
            raise UtmifyError(f"Network error sending to UTMify: {e}") from e

        if response.status_code >= 300:
            logger.error(f"[UTMIFY] API error: {response.status_code} - {response.text[:300]}")
            raise UtmifyError(f"UTMify HTTP {response.status_code}: {response.text[:200]}", status_code=response.status_code)

        try:
            return response.json()
        except ValueError:
            return {"status_code": response.status_code}
