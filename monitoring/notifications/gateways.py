"""
Email and SMS Gateways.

============================================================
PURPOSE
============================================================
Deliver escalation notifications over HTTP APIs.

PRINCIPLES:
- At most one HTTP call per send; no retries here (the next
  escalation sweep is the retry)
- Every failure raises GatewayError with the API's reason
- A successful send returns the provider's delivery id

============================================================
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from core.config import EmailConfig, SmsConfig
from core.exceptions import GatewayError


logger = logging.getLogger(__name__)


# ============================================================
# GATEWAY INTERFACES
# ============================================================

class EmailGateway(ABC):
    """Sends one email, returns a delivery id or raises GatewayError."""

    @abstractmethod
    async def send_email(self, to: str, subject: str, html: str, text: str) -> str:
        pass

    async def close(self) -> None:
        pass


class SmsGateway(ABC):
    """Sends one SMS, returns a delivery id or raises GatewayError."""

    @abstractmethod
    async def send_sms(self, to: str, body: str) -> str:
        pass

    async def close(self) -> None:
        pass


# ============================================================
# SHARED HTTP CLIENT
# ============================================================

class _HttpGateway:
    """Lazily created aiohttp session shared by one gateway."""

    def __init__(self, timeout_seconds: float):
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


# ============================================================
# HTTP EMAIL GATEWAY
# ============================================================

class HttpEmailGateway(_HttpGateway, EmailGateway):
    """
    Posts a JSON message to a transactional email API.

    Request body: {from, to, subject, html, text}
    Response body: {"id": "..."} (also accepts "message_id")
    """

    def __init__(self, config: EmailConfig, timeout_seconds: float = 15.0):
        super().__init__(timeout_seconds)
        self._config = config
        if not config.enabled:
            logger.warning("HttpEmailGateway NOT configured - check EMAIL_API_URL and EMAIL_API_KEY")

    async def send_email(self, to: str, subject: str, html: str, text: str) -> str:
        if not self._config.enabled:
            raise GatewayError("Email gateway not configured", channel="email")

        payload = {
            "from": self._config.from_address,
            "to": to,
            "subject": subject,
            "html": html,
            "text": text,
        }
        headers = {"Authorization": f"Bearer {self._config.api_key}"}

        try:
            session = await self._get_session()
            async with session.post(self._config.api_url, json=payload, headers=headers) as response:
                if response.status >= 300:
                    body = await response.text()
                    raise GatewayError(
                        f"Email API error: {response.status} - {body[:200]}",
                        channel="email",
                        status_code=response.status,
                    )
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise GatewayError(f"Email API unreachable: {e}", channel="email", cause=e) from e

        delivery_id = (data or {}).get("id") or (data or {}).get("message_id")
        return str(delivery_id) if delivery_id else ""


# ============================================================
# TWILIO SMS GATEWAY
# ============================================================

class TwilioSmsGateway(_HttpGateway, SmsGateway):
    """Sends SMS through the Twilio Messages REST API."""

    def __init__(self, config: SmsConfig, timeout_seconds: float = 15.0):
        super().__init__(timeout_seconds)
        self._config = config
        if not config.enabled:
            logger.warning("TwilioSmsGateway NOT configured - check TWILIO_* settings")

    async def send_sms(self, to: str, body: str) -> str:
        if not self._config.enabled:
            raise GatewayError("SMS gateway not configured", channel="sms")

        url = f"{self._config.api_base}/Accounts/{self._config.account_sid}/Messages.json"
        form = {"To": to, "From": self._config.from_number, "Body": body}
        headers = {
            "Authorization": aiohttp.BasicAuth(self._config.account_sid, self._config.auth_token).encode()
        }

        try:
            session = await self._get_session()
            async with session.post(url, data=form, headers=headers) as response:
                data = await response.json(content_type=None)
                if response.status >= 300:
                    message = (data or {}).get("message", "unknown error")
                    raise GatewayError(
                        f"Twilio API error: {response.status} - {message}",
                        channel="sms",
                        status_code=response.status,
                    )
        except aiohttp.ClientError as e:
            raise GatewayError(f"Twilio API unreachable: {e}", channel="sms", cause=e) from e

        return str((data or {}).get("sid", ""))


__all__ = [
    "EmailGateway",
    "SmsGateway",
    "HttpEmailGateway",
    "TwilioSmsGateway",
]
