"""
Outbound SMS transport.

Sends messages through the Twilio REST API. A send either returns a result
with ok=True or reports why it failed; it never raises for provider or
network errors so callers can carry on with other recipients.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from smsbridge.utils import mask_phone

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    ok: bool
    sid: Optional[str] = None
    error: Optional[str] = None


class SmsTransport(Protocol):
    def send(self, to: str, body: str) -> SendResult:
        ...


class TwilioSmsTransport:
    """Twilio Messages API client."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base: str = "https://api.twilio.com",
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.account_sid = account_sid
        self.from_number = from_number
        self.url = f"{api_base.rstrip('/')}/2010-04-01/Accounts/{account_sid}/Messages.json"
        self._client = client or httpx.Client(
            auth=(account_sid, auth_token),
            timeout=timeout,
        )

    def send(self, to: str, body: str) -> SendResult:
        logger.info(f"Sending SMS to {mask_phone(to)}")
        try:
            response = self._client.post(
                self.url,
                data={"To": to, "From": self.from_number, "Body": body},
            )
        except httpx.HTTPError as e:
            logger.error(f"SMS send to {mask_phone(to)} failed: {e.__class__.__name__}")
            return SendResult(ok=False, error=f"transport error: {e.__class__.__name__}")

        if not response.is_success:
            logger.error(f"SMS send to {mask_phone(to)} rejected: HTTP {response.status_code}")
            return SendResult(ok=False, error=f"provider status {response.status_code}")

        try:
            sid = response.json().get("sid")
        except ValueError:
            sid = None
        logger.info(f"SMS sent to {mask_phone(to)}")
        return SendResult(ok=True, sid=sid)

    def close(self) -> None:
        self._client.close()
