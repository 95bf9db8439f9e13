"""
HMAC-SHA256 verification of inbound gateway webhooks.

The gateway signs the raw request body with the shared webhook secret and
sends the lower-case hex digest, optionally prefixed (``sha256=...``).
Verification never raises: callers always get a ``SignatureCheck`` back.
"""

import hashlib
import hmac
import re
from typing import Optional

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

ALGORITHM = "hmac-sha256"

_PREFIX = re.compile(r"^(sha256=|sha1=|hmac-sha256=)")
_HEX = re.compile(r"^[a-fA-F0-9]+$")


class SignatureCheck(BaseModel):
    is_valid: bool
    reason: str
    algorithm: str = ALGORITHM


class WebhookSignatureValidator:
    def __init__(
        self,
        secret: Optional[str],
        allow_unsigned: bool = False,
        production: bool = True,
    ):
        self.secret = secret
        self.allow_unsigned = allow_unsigned
        self.production = production

    def validate(self, raw_body: bytes, signature: Optional[str]) -> SignatureCheck:
        if not self.secret:
            if self.allow_unsigned and not self.production:
                logger.warning("webhook_signature_skipped", reason="unsigned webhooks allowed outside production")
                return SignatureCheck(
                    is_valid=True,
                    reason="Development mode - signature validation skipped",
                    algorithm="none",
                )
            logger.warning("webhook_secret_missing")
            return SignatureCheck(is_valid=False, reason="Webhook secret not configured")

        provided = normalize_signature(signature)
        if provided is None:
            return SignatureCheck(is_valid=False, reason="Invalid signature format")

        expected = compute_signature(self.secret, raw_body)
        if not _secure_compare(provided, expected):
            logger.warning(
                "webhook_signature_mismatch",
                provided_prefix=provided[:10],
                body_length=len(raw_body),
            )
            return SignatureCheck(is_valid=False, reason="Signature mismatch")

        return SignatureCheck(is_valid=True, reason="Signature valid")

    def sign(self, raw_body: bytes) -> str:
        if not self.secret:
            raise ValueError("Webhook secret not configured")
        return "sha256=" + compute_signature(self.secret, raw_body)


def normalize_signature(signature: Optional[str]) -> Optional[str]:
    if not signature or not isinstance(signature, str):
        return None
    cleaned = _PREFIX.sub("", signature.strip(), count=1)
    if not _HEX.match(cleaned):
        return None
    return cleaned.lower()


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest().lower()


def _secure_compare(provided: str, expected: str) -> bool:
    try:
        provided_bytes = bytes.fromhex(provided)
        expected_bytes = bytes.fromhex(expected)
    except ValueError:
        # odd-length hex
        return False
    if len(provided_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(provided_bytes, expected_bytes)
