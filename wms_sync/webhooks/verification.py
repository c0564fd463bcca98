import base64
import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "X-Hmac-Sha256"


def compute_signature(raw_body: bytes, secret: str) -> str:
    """base64(HMAC-SHA256(raw_body, secret)), as sent by the WMS."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Constant-time check of a webhook signature against the raw request body.

    Fails closed: no configured secret or no signature means not verified.
    """
    if not secret or not signature:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, signature.strip())
