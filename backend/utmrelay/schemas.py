"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Union

from pydantic import BaseModel, ConfigDict, Field

from .models import PlatformEnum


# =============================================================================
# CLICK TRACKING
# =============================================================================

class TrackClickRequest(BaseModel):
    """Click beacon sent by the landing page script."""

    click_id: Optional[str] = Field(default=None, description="Client-generated click identifier")
    session_id: Optional[str] = None
    timestamp: Optional[int] = Field(default=None, description="Client clock, ms since epoch")
    timestamp_ms: Optional[int] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    landing_page: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    utm_id: Optional[str] = None
    fbclid: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    ttclid: Optional[str] = None
    gclid: Optional[str] = None
    msclkid: Optional[str] = None
    kwai_click_id: Optional[str] = Field(default=None, description="Kwai click id (click_id param on Kwai ads)")

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "click_id": "abc123",
                "session_id": "sess_9f2",
                "timestamp": 1718000000000,
                "landing_page": "https://example.com/vip?utm_source=facebook",
                "utm_source": "facebook",
                "utm_campaign": "launch",
                "fbclid": "IwAR0...",
            }
        },
    )


class TrackClickResponse(BaseModel):
    success: bool
    click_id: str
    saved: bool


# =============================================================================
# GATEWAY WEBHOOK (Apex)
# =============================================================================

class ApexCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: Optional[str] = None
    profile_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tax_id: Optional[str] = None


class ApexTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sale_code: Optional[str] = None
    transaction_id: Optional[str] = None
    plan_name: Optional[str] = None
    # Cents as sent by the gateway
    plan_value: Optional[Union[int, float, str]] = None
    currency: Optional[str] = None
    payment_platform: Optional[str] = None
    payment_method: Optional[str] = None


class ApexTracking(BaseModel):
    model_config = ConfigDict(extra="ignore")

    click_id: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    utm_id: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    ttclid: Optional[str] = None
    kwai_click_id: Optional[str] = None


class ApexOrigin(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ip: Optional[str] = None
    user_agent: Optional[str] = None


class ApexWebhookPayload(BaseModel):
    """Purchase notification from the Apex payment gateway."""

    event: str = Field(description="payment_approved, payment_created, ...")
    timestamp: Optional[str] = Field(default=None, description="ISO 8601 event time")
    transaction: ApexTransaction = Field(default_factory=ApexTransaction)
    customer: ApexCustomer = Field(default_factory=ApexCustomer)
    tracking: ApexTracking = Field(default_factory=ApexTracking)
    origin: ApexOrigin = Field(default_factory=ApexOrigin)

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "event": "payment_approved",
                "timestamp": "2024-06-10T12:00:00Z",
                "transaction": {"sale_code": "S1", "plan_name": "Acesso VIP", "plan_value": 4990},
                "customer": {"full_name": "Maria Silva", "email": "maria@example.com", "phone": "+55 11 99999-0000"},
                "tracking": {"utm_source": "facebook", "utm_id": "abc123"},
                "origin": {"ip": "203.0.113.7", "user_agent": "Mozilla/5.0"},
            }
        },
    )


class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook senders (always 2xx)."""

    success: bool
    message: str
    sale_code: Optional[str] = None
    outcome: Optional[str] = None
    click_id: Optional[str] = None
    attribution_step: Optional[str] = None


# =============================================================================
# DISPATCH
# =============================================================================

class DispatchResultResponse(BaseModel):
    platform: str
    destination: str
    success: bool
    status: str
    error: Optional[str] = None


class DispatchLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    platform: str
    destination: str
    event_name: str
    status: str
    attempts: int
    test_mode: bool
    claimed_at: datetime
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None


class SaleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sale_code: str
    transaction_id: Optional[str] = None
    click_id: Optional[str] = None
    status: str
    plan_name: Optional[str] = None
    plan_value: Optional[Decimal] = None
    currency: str
    payment_platform: Optional[str] = None
    payment_method: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    created_at: datetime
    approved_at: Optional[datetime] = None
    facebook_sent: bool
    tiktok_sent: bool
    kwai_sent: bool
    utmify_sent: bool
    dispatches: List[DispatchLogEntry] = Field(default_factory=list)


# =============================================================================
# ADMIN
# =============================================================================

class PixelConfigRequest(BaseModel):
    """Register (or reactivate) a pixel."""

    name: str = Field(min_length=1)
    platform: PlatformEnum
    pixel_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1, description="Stored encrypted; never returned")
    event_source_id: Optional[str] = None
    test_event_code: Optional[str] = Field(default=None, description="Only used for explicit test dispatches")


class PixelConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    platform: str
    pixel_id: str
    event_source_id: Optional[str] = None
    test_event_code: Optional[str] = None
    is_active: bool
    created_at: datetime


class StatsResponse(BaseModel):
    clicks: int
    approved_sales: int
    revenue: Decimal
    active_pixels: int
    utmify_configured: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }
