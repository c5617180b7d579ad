"""SQLAlchemy ORM models and enums.

This module defines the relay schema: clicks captured at landing time,
sales built from gateway webhooks and chat messages, the pixel registry,
and the dispatch log that keeps conversion sends at most once per
destination. Every table that participates in a race carries a unique
constraint; the stores rely on it instead of application locks.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import BigInteger, Column, String, DateTime, Integer, Numeric, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are stored without tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums ---------------------------------------------------------

class SaleStatusEnum(str, enum.Enum):
    pending = "pending"
    created = "created"
    approved = "approved"
    paid = "paid"


# Forward-only progression used by the status guard on upsert
SALE_STATUS_RANK = {
    SaleStatusEnum.pending.value: 0,
    SaleStatusEnum.created.value: 1,
    SaleStatusEnum.approved.value: 2,
    SaleStatusEnum.paid.value: 3,
}

# Statuses that count as a purchase for ad platforms
PURCHASE_STATUSES = (SaleStatusEnum.approved.value, SaleStatusEnum.paid.value)


class PlatformEnum(str, enum.Enum):
    facebook = "facebook"
    tiktok = "tiktok"
    kwai = "kwai"
    utmify = "utmify"  # Sales aggregator, configured by API key rather than pixel


class DispatchStatusEnum(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class SaleSourceEnum(str, enum.Enum):
    webhook = "webhook"
    chat = "chat"


# Models --------------------------------------------------------

class Click(Base):
    """Ad click captured on landing.

    WHAT: One row per client-generated click_id with UTMs and platform click ids
    WHY: Source of truth for attribution; first write wins, never updated
    """
    __tablename__ = "clicks"
    __table_args__ = (
        Index("ix_clicks_ip_received_at", "ip", "received_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    click_id = Column(String(255), nullable=False, unique=True, index=True)
    session_id = Column(String(255), nullable=True)

    # Client clock (ms since epoch) and server clock
    timestamp_ms = Column(BigInteger, nullable=True)
    received_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    # Request context
    ip = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    landing_page = Column(Text, nullable=True)

    # Campaign tagging
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    utm_content = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    utm_id = Column(String(255), nullable=True)

    # Platform click ids
    fbclid = Column(String(512), nullable=True)
    fbc = Column(String(512), nullable=True, index=True)
    fbp = Column(String(255), nullable=True, index=True)
    ttclid = Column(String(512), nullable=True, index=True)
    gclid = Column(String(512), nullable=True)
    msclkid = Column(String(512), nullable=True)
    kwai_click_id = Column(String(512), nullable=True)

    def __str__(self):
        return f"{self.click_id} - {self.utm_source or 'direct'} - {self.received_at}"


class Sale(Base):
    """Purchase keyed by sale_code.

    WHAT: Canonical sale merged from every event that references the same sale_code
    WHY: Upserts coalesce incoming values so attribution learned earlier is never lost
    """
    __tablename__ = "sales"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sale_code = Column(String(255), nullable=False, unique=True, index=True)
    transaction_id = Column(String(255), nullable=True, index=True)
    click_id = Column(String(255), nullable=True, index=True)
    source = Column(String(20), nullable=True)

    # Customer
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True, index=True)
    customer_phone = Column(String(64), nullable=True, index=True)
    customer_document = Column(String(64), nullable=True)

    # Order (plan_value is always major currency units)
    plan_name = Column(String(255), nullable=True)
    plan_value = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(8), nullable=False, default="BRL")
    payment_platform = Column(String(100), nullable=True)
    payment_method = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=SaleStatusEnum.pending.value)

    # Buyer context
    ip = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    # Attribution copied from the matched click or the event itself
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    utm_content = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    utm_id = Column(String(255), nullable=True)
    fbc = Column(String(512), nullable=True)
    fbp = Column(String(255), nullable=True)
    ttclid = Column(String(512), nullable=True)
    kwai_click_id = Column(String(512), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    approved_at = Column(DateTime, nullable=True)

    # Per-destination send flags (mirrors the dispatch log)
    facebook_sent = Column(Boolean, nullable=False, default=False)
    tiktok_sent = Column(Boolean, nullable=False, default=False)
    kwai_sent = Column(Boolean, nullable=False, default=False)
    utmify_sent = Column(Boolean, nullable=False, default=False)

    def __str__(self):
        return f"{self.sale_code} - {self.status} - {self.plan_value} {self.currency}"


class PixelConfig(Base):
    """Ad platform pixel credentials.

    WHAT: One row per (platform, pixel_id); access token stored Fernet-encrypted
    WHY: Soft-deleted via is_active so the dispatch history stays consistent
    """
    __tablename__ = "pixels"
    __table_args__ = (
        UniqueConstraint("platform", "pixel_id", name="uq_pixels_platform_pixel"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    platform = Column(String(20), nullable=False)
    pixel_id = Column(String(255), nullable=False)
    access_token_enc = Column(Text, nullable=False)
    event_source_id = Column(String(255), nullable=True)
    test_event_code = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def __str__(self):
        return f"{self.platform}:{self.pixel_id} ({self.name})"


class ConversionDispatch(Base):
    """Dedupe log for outbound conversion events.

    WHAT: One row per (attribution_key, platform, destination, event_name)
    WHY: The unique constraint is the claim primitive; a row reaches `sent`
         at most once, so the same conversion is never reported twice
    """
    __tablename__ = "conversion_dispatches"
    __table_args__ = (
        UniqueConstraint(
            "attribution_key", "platform", "destination", "event_name",
            name="uq_conversion_dispatch_identity",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    attribution_key = Column(String(255), nullable=False)
    platform = Column(String(20), nullable=False)
    destination = Column(String(255), nullable=False)
    event_name = Column(String(100), nullable=False)

    sale_code = Column(String(255), nullable=True, index=True)
    click_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=DispatchStatusEnum.pending.value)
    attempts = Column(Integer, nullable=False, default=1)
    test_mode = Column(Boolean, nullable=False, default=False)

    claimed_at = Column(DateTime, nullable=False, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    response_excerpt = Column(Text, nullable=True)

    def __str__(self):
        return f"{self.platform}:{self.destination} {self.event_name} {self.attribution_key} [{self.status}]"


class ProcessedMessage(Base):
    """Chat messages already turned into sale events (keyed by transaction hash)."""
    __tablename__ = "processed_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    hash = Column(String(64), nullable=False, unique=True)
    transaction_id = Column(String(255), nullable=True)
    sale_code = Column(String(255), nullable=True)
    received_at = Column(DateTime, nullable=False, default=utcnow)
