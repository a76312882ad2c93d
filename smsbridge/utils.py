"""
Utility functions for the SMS bridge.
"""

import base64
import hashlib
import hmac
import logging
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl

logger = logging.getLogger(__name__)

# E.164: '+', first digit 1-9, 7 to 15 digits in total
E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def compute_twilio_signature(url: str, params: list[tuple[str, str]], secret: str) -> str:
    """
    Compute the provider signature for a request.

    The signed string is the full URL followed by every form parameter,
    sorted by name, written as name+value with no separators. The result is
    base64(HMAC-SHA1(secret, signed_string)).
    """
    signed = url + "".join(key + value for key, value in sorted(params))
    digest = hmac.new(
        secret.encode("utf-8"),
        signed.encode("utf-8"),
        hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(
    url: str,
    body: bytes,
    signature: Optional[str],
    secret: str
) -> bool:
    """
    Verify an inbound webhook signature.

    Args:
        url: Exact URL the provider invoked (including query string)
        body: Raw form-encoded request body
        signature: Value of the X-Twilio-Signature header
        secret: Provider auth token

    Returns:
        True if signature is valid, False otherwise
    """
    logger.info("Verifying webhook signature")

    if not signature or not secret:
        logger.warning("Missing signature header or secret")
        return False

    try:
        params = parse_qsl(
            body.decode("utf-8"),
            keep_blank_values=True,
            strict_parsing=True
        )
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Unparseable webhook body: {e}")
        return False

    expected_signature = compute_twilio_signature(url, params, secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(
        expected_signature.encode("ascii"),
        signature.encode("utf-8")
    )
    logger.info(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def is_valid_phone_number(phone: Optional[str]) -> bool:
    """Check a phone number is E.164 (+ then 7-15 digits, no leading zero)."""
    if not phone:
        return False
    return E164_PATTERN.match(phone) is not None


def mask_phone(phone: Optional[str]) -> str:
    """Shorten a phone number for logs: +14125551234 -> +141***34."""
    if not phone:
        return "<none>"
    if len(phone) <= 6:
        return "***"
    return phone[:4] + "***" + phone[-2:]


def truncate_preview(text: str, limit: int = 100) -> str:
    """Cap text at `limit` characters, appending '...' when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Server timestamp as ISO-8601 UTC with microseconds and Z suffix."""
    return utc_now().strftime(ISO_FORMAT)


def format_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_iso(value: str) -> datetime:
    """Parse a stored ISO-8601 timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
