"""Security utilities: pixel token encryption, PII hashing, request auth.

WHAT:
    - Symmetric encryption for ad-platform access tokens (Fernet)
    - One-way normalization + SHA-256 of customer PII for ad platforms
    - HMAC verification for inbound gateway webhooks
    - Constant-time admin key comparison

WHY:
    - Pixel tokens must not land in the database or logs in plaintext
    - Ad platforms only ever receive hashed identifiers
    - Webhook and admin endpoints are reachable from the internet

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/customer-information-parameters
    - https://cryptography.io/en/latest/fernet/
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


# =============================================================================
# TOKEN ENCRYPTION
# =============================================================================

class TokenCipher:
    """Fernet wrapper for pixel access tokens.

    Usage:
        cipher = TokenCipher(settings.TOKEN_ENCRYPTION_KEY)
        stored = cipher.encrypt("EAAB...", context="facebook:123")
        token = cipher.decrypt(stored, context="facebook:123")
    """

    def __init__(self, key: Optional[str]):
        if not key:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
                "or add it to backend/.env."
            )
        try:
            # Validate key length by decoding without storing plaintext material.
            base64.urlsafe_b64decode(key.encode("utf-8"))
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
                "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            ) from exc

    def encrypt(self, plaintext: str, *, context: str) -> str:
        """Encrypt a secret before persisting.

        Args:
            plaintext: Raw secret (pixel access token)
            context:   Friendly label for logs (platform/pixel)

        Returns:
            URL-safe base64 ciphertext suitable for DB storage.
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty secret.")

        ciphertext = self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")
        logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
        return ciphertext

    def decrypt(self, ciphertext: str, *, context: str) -> str:
        """Decrypt a stored secret for an outbound API call.

        Raises:
            ValueError: If the stored value cannot be decrypted.
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty secret.")

        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
            logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s", context)
            return plaintext
        except InvalidToken as exc:
            logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
            raise ValueError("Unable to decrypt stored token.") from exc


# =============================================================================
# PII HASHING
# =============================================================================

def sha256_hex(value: str) -> str:
    """Lowercase hexadecimal SHA-256 of a UTF-8 string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _digits(value: str) -> str:
    return "".join(filter(str.isdigit, value))


def hash_email(email: Optional[str]) -> Optional[str]:
    """Normalize (trim + lowercase) and hash an email. Empty input -> None."""
    if not email:
        return None
    normalized = email.strip().lower()
    return sha256_hex(normalized) if normalized else None


def hash_phone(phone: Optional[str]) -> Optional[str]:
    """Hash the digits of a phone number. No digits -> None."""
    if not phone:
        return None
    digits = _digits(phone)
    return sha256_hex(digits) if digits else None


def hash_document(document: Optional[str]) -> Optional[str]:
    """Hash the digits of a tax document (CPF/CNPJ). No digits -> None."""
    if not document:
        return None
    digits = _digits(document)
    return sha256_hex(digits) if digits else None


# =============================================================================
# REQUEST AUTHENTICATION
# =============================================================================

def verify_webhook_signature(secret: str, request_body: bytes, signature_header: Optional[str]) -> bool:
    """Verify an HMAC-SHA256 signature over the raw webhook body.

    Accepts a hex digest, optionally prefixed with `sha256=`, or a base64 digest.

    Args:
        secret: Shared webhook secret
        request_body: Raw request body bytes
        signature_header: X-Webhook-Signature header value

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature_header:
        logger.warning("[WEBHOOK] Missing signature header")
        return False

    signature = signature_header.strip()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    digest = hmac.new(secret.encode("utf-8"), request_body, hashlib.sha256).digest()
    candidates = (digest.hex(), base64.b64encode(digest).decode("utf-8"))

    # Constant-time comparison to prevent timing attacks
    is_valid = any(hmac.compare_digest(candidate, signature) for candidate in candidates)
    if not is_valid:
        logger.warning("[WEBHOOK] Invalid HMAC signature")
    return is_valid


def admin_key_matches(expected: Optional[str], provided: Optional[str]) -> bool:
    """Constant-time comparison for the admin API key."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
