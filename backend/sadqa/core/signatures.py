"""HMAC signature checks for gateway webhooks and checkout callbacks"""
import hashlib
import hmac
from typing import Optional, Union


def _hex_hmac(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str]
) -> bool:
    """Check a webhook signature computed over the exact raw request body.

    The body must be the bytes as received, before any JSON parsing.
    Returns False for a missing header, a missing secret or a mismatch.
    """
    if not signature_header or not secret:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    expected = _hex_hmac(secret, raw_body)
    return hmac.compare_digest(expected.encode("utf-8"), signature_header.strip().encode("utf-8"))


def verify_payment_signature(
    order_id: str,
    payment_id: str,
    signature: Optional[str],
    key_secret: Optional[str]
) -> bool:
    """Check the checkout callback signature over "<order_id>|<payment_id>"."""
    if not signature or not key_secret or not order_id or not payment_id:
        return False
    expected = _hex_hmac(key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


def sign_payload(payload: Union[bytes, str], secret: str) -> str:
    """Compute the hex signature the gateway would send for a payload"""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return _hex_hmac(secret, payload)
