"""Security utilities for webhook verification and stored secret encryption.

WHAT:
    - Verifies storefront order webhook signatures (RSA-SHA256 public key,
      HMAC-SHA256 shared secret as fallback).
    - Symmetric encryption for per-brand Market!N API keys.

WHY:
    - Webhooks trigger paid conversions, so unsigned calls must be rejected.
    - Brand API keys must never land in the database in plaintext.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-wix-signature"
HMAC_SIGNATURE_HEADERS = (
    "x-wix-signature",
    "x-wix-signature-sha256",
    "x-wix-signature-hmac",
    "x-wix-hmac",
)
TEST_WEBHOOK_HEADER = "x-wix-webhook-test"


# =============================================================================
# SECRET ENCRYPTION
# =============================================================================

def _get_cipher() -> Fernet:
    key = os.getenv("TOKEN_ENCRYPTION_KEY", "")
    if not key:
        from orderbridge.utils.env import load_env_file
        load_env_file()
        key = os.getenv("TOKEN_ENCRYPTION_KEY", "")

    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. Generate a Fernet key and export it "
            "or add it to backend/.env."
        )

    try:
        base64.urlsafe_b64decode(key.encode("utf-8"))
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
            "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a secret (e.g. a brand's Market!N API key) before persisting.

    Args:
        plaintext: Raw secret to encrypt.
        context:   Friendly label for logs (site/brand).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _get_cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[SECRET_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Reverse `encrypt_secret`.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        return _get_cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[SECRET_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored secret.") from exc


# =============================================================================
# WEBHOOK SIGNATURES
# =============================================================================

@dataclass
class SignatureCheck:
    valid: bool
    reason: str


def normalize_public_key(raw_key: Optional[str]) -> Optional[str]:
    """Turn an env-provided public key into PEM text.

    Accepts a PEM (optionally wrapped in quotes, with literal "\\n" sequences or
    CRLF line endings) or the base64 encoding of a PEM.
    """
    if not raw_key:
        return None

    key = raw_key.strip()
    if len(key) >= 2 and key[0] == key[-1] and key[0] in ("'", '"'):
        key = key[1:-1]
    if "\\n" in key:
        key = key.replace("\\n", "\n")
    key = key.replace("\r\n", "\n")

    if "-----BEGIN" in key:
        return key

    try:
        decoded = base64.b64decode(key, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return key
    return decoded if "-----BEGIN" in decoded else key


def verify_rsa_signature(body: bytes, headers: Mapping[str, str], public_key: str) -> SignatureCheck:
    """Verify an RSA-SHA256 signature (base64, `x-wix-signature` header)."""
    signature = headers.get(SIGNATURE_HEADER)
    if not signature:
        return SignatureCheck(False, "no_signature_header")

    try:
        key = serialization.load_pem_public_key(public_key.encode("utf-8"))
        key.verify(base64.b64decode(signature), body, padding.PKCS1v15(), hashes.SHA256())
        return SignatureCheck(True, "public_key_verified")
    except InvalidSignature:
        return SignatureCheck(False, "signature_mismatch")
    except (ValueError, TypeError, binascii.Error) as e:
        logger.error("[WEBHOOK_SIGNATURE] RSA verification error: %s", e)
        return SignatureCheck(False, "verification_error")


def verify_hmac_signature(body: bytes, headers: Mapping[str, str], secret: str) -> SignatureCheck:
    """Verify a hex HMAC-SHA256 signature, optionally prefixed with `sha256=`."""
    signature = next((headers.get(name) for name in HMAC_SIGNATURE_HEADERS if headers.get(name)), None)
    if not signature:
        return SignatureCheck(False, "no_signature_header")

    received = signature.strip()
    if received.lower().startswith("sha256="):
        received = received[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    if hmac.compare_digest(received.lower(), expected):
        return SignatureCheck(True, "hmac_verified")
    return SignatureCheck(False, "hmac_mismatch")


def verify_webhook_signature(
    body: bytes,
    headers: Mapping[str, str],
    public_key: Optional[str],
    hmac_secret: Optional[str],
    allow_test_bypass: bool = False,
) -> bool:
    """Unified webhook verification.

    Order of checks:
        1. Test webhooks (`x-wix-webhook-test: true`) when the bypass is allowed
        2. Nothing configured: accept (development installs)
        3. RSA public key
        4. HMAC secret

    `headers` must use lower-case keys (Starlette's Headers already match
    case-insensitively).
    """
    if allow_test_bypass and headers.get(TEST_WEBHOOK_HEADER) == "true":
        logger.warning("[WEBHOOK_SIGNATURE] Test webhook - bypassing signature verification")
        return True

    pem = normalize_public_key(public_key)
    if not pem and not hmac_secret:
        logger.info("[WEBHOOK_SIGNATURE] No webhook verification configured - accepting webhook")
        return True

    if pem:
        result = verify_rsa_signature(body, headers, pem)
        if result.valid:
            return True
        logger.info("[WEBHOOK_SIGNATURE] RSA verification failed: %s", result.reason)

    if hmac_secret:
        result = verify_hmac_signature(body, headers, hmac_secret)
        if result.valid:
            return True
        logger.info("[WEBHOOK_SIGNATURE] HMAC verification failed: %s", result.reason)

    return False
