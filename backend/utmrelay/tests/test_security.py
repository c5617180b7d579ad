import base64
import hashlib
import hmac

import pytest
from cryptography.fernet import Fernet

from utmrelay.security import (
    TokenCipher,
    admin_key_matches,
    hash_email,
    hash_phone,
    sha256_hex,
    verify_webhook_signature,
)


def test_cipher_round_trip_and_bad_key():
    cipher = TokenCipher(Fernet.generate_key().decode())
    stored = cipher.encrypt("EAAB", context="facebook:PX1")

    assert stored != "EAAB"
    assert cipher.decrypt(stored, context="facebook:PX1") == "EAAB"

    other = TokenCipher(Fernet.generate_key().decode())
    with pytest.raises(ValueError):
        other.decrypt(stored, context="facebook:PX1")

    with pytest.raises(RuntimeError):
        TokenCipher(None)
    with pytest.raises(RuntimeError):
        TokenCipher("not-a-key")


def test_pii_hashing_normalizes_first():
    assert hash_email("  Maria@Example.COM ") == sha256_hex("maria@example.com")
    assert hash_phone("+55 (11) 99999-0000") == sha256_hex("5511999990000")
    assert hash_email("") is None
    assert hash_phone("n/a") is None


def test_webhook_signature_formats():
    body = b'{"event":"payment_approved"}'
    digest = hmac.new(b"secret", body, hashlib.sha256).digest()

    assert verify_webhook_signature("secret", body, digest.hex())
    assert verify_webhook_signature("secret", body, "sha256=" + digest.hex())
    assert verify_webhook_signature("secret", body, base64.b64encode(digest).decode())
    assert not verify_webhook_signature("secret", body + b" ", digest.hex())
    assert not verify_webhook_signature("secret", body, None)


def test_admin_key_matches():
    assert admin_key_matches("k", "k")
    assert not admin_key_matches("k", "K")
    assert not admin_key_matches(None, None)
