"""Event Ingestion.

WHAT:
    Turns the two inbound purchase shapes into one canonical SaleEvent:
    - Apex gateway webhook JSON (direct field mapping)
    - Free-text sale notifications posted to a chat channel

WHY:
    Everything downstream (resolver, sale store, dispatcher) works on a
    single shape with a guaranteed identity: sale_code falls back to the
    transaction id, and the transaction id hash is the reprocessing guard
    for chat messages.

HOW (chat):
    A declarative table of fields, each with its label variants, a
    normalizer and a required flag. Each line of the message is split into
    "label" and "value" at the first separator (":", " - "); labels are
    compared after dropping accents, case, bullets and emphasis. A message
    missing a required field is not a sale (None, not an error).

REFERENCES:
    - utmrelay/schemas.py (ApexWebhookPayload)
    - utmrelay/services/money.py (amount normalization)
    - utmrelay/services/sale_pipeline.py (consumer)
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from ..exceptions import ValidationError
from ..models import PURCHASE_STATUSES, SaleSourceEnum, SaleStatusEnum, utcnow
from ..schemas import ApexWebhookPayload
from ..security import sha256_hex
from .money import AmountUnit, normalize_amount, parse_brl_amount

logger = logging.getLogger(__name__)


# Gateway event name -> sale status
WEBHOOK_EVENT_STATUS = {
    "payment_created": SaleStatusEnum.created.value,
    "pix_generated": SaleStatusEnum.created.value,
    "payment_pending": SaleStatusEnum.pending.value,
    "waiting_payment": SaleStatusEnum.pending.value,
    "payment_approved": SaleStatusEnum.approved.value,
    "payment_paid": SaleStatusEnum.paid.value,
    "paid": SaleStatusEnum.paid.value,
}


# =============================================================================
# CANONICAL EVENT
# =============================================================================

@dataclass
class SaleEvent:
    """Canonical purchase event consumed by the sale pipeline."""
    sale_code: Optional[str] = None
    transaction_id: Optional[str] = None
    status: str = SaleStatusEnum.pending.value
    source: str = SaleSourceEnum.webhook.value
    occurred_at: datetime = field(default_factory=utcnow)
    approved_at: Optional[datetime] = None

    # Attribution hints
    click_id: Optional[str] = None
    chat_id: Optional[str] = None
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
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    # Customer / order
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_document: Optional[str] = None
    plan_name: Optional[str] = None
    plan_value: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_platform: Optional[str] = None
    payment_method: Optional[str] = None

    def __post_init__(self):
        self.sale_code = _clean(self.sale_code) or _clean(self.transaction_id)
        self.transaction_id = _clean(self.transaction_id)
        if not self.sale_code:
            raise ValidationError("A sale event needs a sale_code or a transaction_id")

    @property
    def dedupe_key(self) -> str:
        """Identity used to guard against reprocessing the same source message."""
        return self.transaction_id or self.sale_code

    @property
    def dedupe_hash(self) -> str:
        return sha256_hex(self.dedupe_key)

    @property
    def is_purchase(self) -> bool:
        return self.status in PURCHASE_STATUSES

    def to_sale_values(self) -> Dict[str, Any]:
        """Column values for the sale store (attribution hints included)."""
        skip = {"occurred_at", "chat_id"}
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name not in skip}


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO 8601 -> naive UTC. Unparseable input is logged and ignored."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("[INGESTION] Ignoring unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# =============================================================================
# WEBHOOK
# =============================================================================

def event_from_webhook(payload: ApexWebhookPayload) -> Optional[SaleEvent]:
    """Map an Apex webhook to a SaleEvent.

    Returns:
        SaleEvent, or None for event types that do not describe a sale

    Raises:
        ValidationError: Missing sale_code/transaction_id or invalid plan_value
    """
    status = WEBHOOK_EVENT_STATUS.get((payload.event or "").strip().lower())
    if status is None:
        logger.info("[INGESTION] Ignoring webhook event %r", payload.event)
        return None

    transaction = payload.transaction
    customer = payload.customer
    tracking = payload.tracking
    occurred_at = _parse_timestamp(payload.timestamp) or utcnow()

    event = SaleEvent(
        sale_code=transaction.sale_code,
        transaction_id=transaction.transaction_id,
        status=status,
        source=SaleSourceEnum.webhook.value,
        occurred_at=occurred_at,
        approved_at=occurred_at if status in PURCHASE_STATUSES else None,
        click_id=_clean(tracking.click_id),
        utm_source=_clean(tracking.utm_source),
        utm_medium=_clean(tracking.utm_medium),
        utm_campaign=_clean(tracking.utm_campaign),
        utm_content=_clean(tracking.utm_content),
        utm_term=_clean(tracking.utm_term),
        utm_id=_clean(tracking.utm_id),
        fbc=_clean(tracking.fbc),
        fbp=_clean(tracking.fbp),
        ttclid=_clean(tracking.ttclid),
        kwai_click_id=_clean(tracking.kwai_click_id),
        ip=_clean(payload.origin.ip),
        user_agent=_clean(payload.origin.user_agent),
        customer_name=_clean(customer.full_name) or _clean(customer.profile_name),
        customer_email=_clean(customer.email),
        customer_phone=_clean(customer.phone),
        customer_document=_clean(customer.tax_id),
        plan_name=_clean(transaction.plan_name),
        # The gateway reports cents
        plan_value=normalize_amount(transaction.plan_value, AmountUnit.MINOR),
        currency=(_clean(transaction.currency) or "").upper() or None,
        payment_platform=_clean(transaction.payment_platform),
        payment_method=_clean(transaction.payment_method),
    )
    logger.info(
        "[INGESTION] Webhook event normalized",
        extra={"sale_code": event.sale_code, "status": status, "event": payload.event},
    )
    return event


# =============================================================================
# CHAT MESSAGES
# =============================================================================

@dataclass(frozen=True)
class ChatField:
    name: str
    labels: Tuple[str, ...]
    normalizer: Callable[[str], Any]
    required: bool = False


def _normalize_label(label: str) -> str:
    decomposed = unicodedata.normalize("NFKD", label)
    return "".join(ch for ch in decomposed if ch.isalnum()).lower()


def _text(value: str) -> Optional[str]:
    return _clean(value)


def _email(value: str) -> Optional[str]:
    value = _clean(value)
    return value.lower() if value and "@" in value else None


def _identifier(value: str) -> Optional[str]:
    value = _clean(value)
    return value.split()[0] if value else None


CHAT_FIELDS: Tuple[ChatField, ...] = (
    ChatField("transaction_id", ("ID da Transação", "ID Transação", "Transação", "Transaction ID"), _identifier, required=True),
    ChatField("plan_value", ("Valor Líquido", "Valor Liquido"), parse_brl_amount, required=True),
    ChatField("customer_name", ("Nome", "Cliente", "Nome do Cliente"), _text),
    ChatField("customer_email", ("Email", "E-mail"), _email),
    ChatField("customer_phone", ("Telefone", "Celular", "WhatsApp"), _text),
    ChatField("sale_code", ("Código de Venda", "Código da Venda", "Código"), _identifier),
    ChatField("payment_platform", ("Plataforma", "Plataforma de Pagamento", "Gateway"), _text),
    ChatField("payment_method", ("Método de Pagamento", "Forma de Pagamento", "Método"), _text),
    ChatField("plan_name", ("Plano", "Produto"), _text),
    ChatField("click_id", ("Click ID", "ID do Clique"), _identifier),
    ChatField("utm_id", ("UTM ID",), _identifier),
)

_LABEL_INDEX: Dict[str, ChatField] = {
    _normalize_label(label): chat_field
    for chat_field in CHAT_FIELDS
    for label in chat_field.labels
}

_SEPARATOR_RE = re.compile(r"\s*[:：]\s*|\s+[-–—]\s+")
_EMPHASIS = "*_`~ \t"


def _split_line(line: str) -> Optional[Tuple[str, str]]:
    match = _SEPARATOR_RE.search(line)
    if not match:
        return None
    return line[:match.start()], line[match.end():]


def extract_chat_fields(text: str) -> Dict[str, Any]:
    """Apply the field table to every line; first occurrence of a field wins."""
    found: Dict[str, Any] = {}
    for raw_line in text.splitlines():
        parts = _split_line(raw_line.strip())
        if not parts:
            continue
        label, value = parts
        chat_field = _LABEL_INDEX.get(_normalize_label(label))
        if chat_field is None or chat_field.name in found:
            continue
        normalized = chat_field.normalizer(value.strip(_EMPHASIS))
        if normalized is not None:
            found[chat_field.name] = normalized
    return found


def parse_sale_message(text: Optional[str], chat_id: Optional[str] = None) -> Optional[SaleEvent]:
    """Extract an approved sale from a chat notification.

    Args:
        text: Message body
        chat_id: Chat/user identifier, used as an extra attribution token

    Returns:
        SaleEvent, or None if the message is not a sale notification
    """
    if not text:
        return None

    values = extract_chat_fields(text)
    missing = [f.name for f in CHAT_FIELDS if f.required and f.name not in values]
    if missing:
        logger.debug("[INGESTION] Chat message ignored, missing %s", ", ".join(missing))
        return None

    now = utcnow()
    event = SaleEvent(
        status=SaleStatusEnum.approved.value,
        source=SaleSourceEnum.chat.value,
        occurred_at=now,
        approved_at=now,
        chat_id=_clean(chat_id),
        **values,
    )
    logger.info(
        "[INGESTION] Chat sale parsed",
        extra={"sale_code": event.sale_code, "transaction_id": event.transaction_id},
    )
    return event
