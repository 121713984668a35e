"""Synthetic course-platform webhooks for exercising the ingestion endpoint.

The payload is signed with HMAC-SHA256 over its exact JSON body (with an
empty `signature` field) and the hex digest travels in the
`x-kajabi-signature` header, matching what the platform's receiver
verifies.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..errors import UpstreamError, ValidationError
from .dates import isoformat, utcnow

logger = logging.getLogger("emdr_api.webhooks")

SIGNATURE_HEADER = "x-kajabi-signature"
AVAILABLE_EVENTS = ("course.completed", "user.created", "user.updated", "product.purchased")


def default_test_data() -> Dict[str, Any]:
    return {
        "user": {
            "id": "test-user-123",
            "email": "test@example.com",
            "first_name": "Test",
            "last_name": "User",
            "phone": "+1234567890",
        },
        "course": {
            "id": "test-course-456",
            "name": "EMDR Basic Training",
            "completion_date": isoformat(utcnow()),
        },
    }


def sign_payload(body: bytes, secret: Optional[str] = None) -> str:
    """Return the hex HMAC-SHA256 of `body`."""
    key = (secret or settings.WEBHOOK_SECRET).encode("utf-8")
    return hmac.new(key, body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


def build_test_payload(event: str, test_data: Optional[Dict[str, Any]] = None, secret: Optional[str] = None):
    """Build a signed webhook for `event`.

    Returns `(body, signature, payload)`. `body` holds the exact bytes
    that were signed and must be sent unchanged.
    """
    if event not in AVAILABLE_EVENTS:
        raise ValidationError(f"unknown event {event!r}; expected one of {', '.join(AVAILABLE_EVENTS)}", field="event")
    payload = {
        "event": event,
        "data": test_data or default_test_data(),
        "timestamp": int(time.time() * 1000),
        "signature": "",
    }
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    signature = sign_payload(body, secret)
    return body, signature, {**payload, "signature": signature}


def send_test_webhook(
    event: str,
    test_data: Optional[Dict[str, Any]] = None,
    url: Optional[str] = None,
    secret: Optional[str] = None,
    timeout: float = 10.0,
) -> Dict[str, Any]:
    """POST a signed synthetic webhook and report what the receiver said.

    Connection failures raise `UpstreamError`; any HTTP status from the
    receiver is reported back rather than raised.
    """
    target = url or settings.WEBHOOK_TARGET_URL
    body, signature, _ = build_test_payload(event, test_data, secret)
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(
                target,
                content=body,
                headers={"Content-Type": "application/json", SIGNATURE_HEADER: signature},
            )
    except httpx.HTTPError as e:
        logger.warning("test_webhook_failed url=%s error=%s", target, e)
        raise UpstreamError(f"could not deliver webhook to {target}")
    try:
        result = response.json()
    except ValueError:
        result = response.text
    logger.info("test_webhook_sent event=%s url=%s status=%s", event, target, response.status_code)
    return {
        "message": "Test webhook sent successfully",
        "event": event,
        "webhookResponse": result,
        "status": response.status_code,
    }


def usage() -> Dict[str, Any]:
    """Describe the test endpoint for `GET /test/webhook`."""
    return {
        "message": "Kajabi Webhook Test Endpoint",
        "availableEvents": list(AVAILABLE_EVENTS),
        "usage": {
            "method": "POST",
            "body": {"event": "course.completed", "testData": default_test_data()},
        },
    }
