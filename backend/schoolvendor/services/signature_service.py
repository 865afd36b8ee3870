"""
Signature Service for Download Links and Webhook Keys

Implements HMAC-SHA256 signing of digital download links and the canonical
payload hash used to deduplicate provider webhooks.
"""
import calendar
import hmac
import hashlib
import json
from datetime import datetime, timedelta
from typing import Dict, Any, Optional
from urllib.parse import urlencode

from ..config import settings
from ..models.common import utcnow


def create_canonical_json(data: Dict[str, Any]) -> str:
    """
    Create canonical JSON representation for hashing.

    Ensures consistent serialization:
    - Sorted keys
    - No whitespace
    - UTF-8 encoding
    """
    return json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)


def _epoch(value: datetime) -> int:
    """Seconds since epoch for a naive UTC datetime."""
    return calendar.timegm(value.timetuple())


def _download_signature(order_id: str, product_id: str, expires: int, secret_key: str) -> str:
    message = f"{order_id}|{product_id}|{expires}"
    return hmac.new(
        secret_key.encode('utf-8'),
        message.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()


def build_download_link(
    order_id: str,
    product_id: str,
    now: Optional[datetime] = None,
    secret_key: Optional[str] = None
) -> str:
    """
    Build a signed, expiring download URL for one digital order item.

    Args:
        order_id: Order identifier
        product_id: Product identifier of the digital item
        now: Reference time (defaults to current UTC)
        secret_key: HMAC secret (defaults to settings.download_link_secret)

    Returns:
        Absolute URL under settings.api_url carrying expires and signature
    """
    now = now or utcnow()
    expires = _epoch(now + timedelta(hours=settings.download_link_ttl_hours))
    signature = _download_signature(
        order_id, product_id, expires, secret_key or settings.download_link_secret
    )
    query = urlencode({"expires": expires, "signature": signature})
    return f"{settings.api_url}/api/orders/{order_id}/download/{product_id}?{query}"


def verify_download_signature(
    order_id: str,
    product_id: str,
    expires: int,
    signature: str,
    now: Optional[datetime] = None,
    secret_key: Optional[str] = None
) -> bool:
    """
    Verify a download link using constant-time comparison.

    Returns:
        True if the signature matches and the link has not expired
    """
    now = now or utcnow()
    if _epoch(now) > expires:
        return False

    expected = _download_signature(
        order_id, product_id, expires, secret_key or settings.download_link_secret
    )
    return hmac.compare_digest(expected, signature or "")


def webhook_idempotency_key(provider: str, payload: Dict[str, Any]) -> str:
    """
    Key identifying one provider event.

    The provider's own event id wins; otherwise the SHA-256 of the canonical
    payload is used so identical redeliveries collide.
    """
    event_id = payload.get("eventId") or payload.get("event_id")
    if event_id:
        return f"{provider}:{event_id}"

    digest = hashlib.sha256(create_canonical_json(payload).encode('utf-8')).hexdigest()
    return f"{provider}:sha256:{digest}"
