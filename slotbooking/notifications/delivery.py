"""
E-mail delivery through the SendGrid v3 REST API.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class DeliveryError(Exception):
    """The provider did not accept the message."""


class MailerNotConfigured(DeliveryError):
    """No API key configured."""


@dataclass
class EmailMessage:
    to: list[str]
    from_email: str
    subject: str
    text: str
    html: str
    categories: list[str] = field(default_factory=list)


class Mailer:
    """Asynchronous SendGrid client."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _payload(self, message: EmailMessage) -> dict:
        payload = {
            "personalizations": [
                {"to": [{"email": address} for address in message.to]}
            ],
            "from": {"email": message.from_email},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text},
                {"type": "text/html", "value": message.html},
            ],
        }
        if message.categories:
            payload["categories"] = message.categories
        return payload

    async def send(self, message: EmailMessage) -> None:
        """Send one message to all of its recipients. Raises DeliveryError on failure."""
        if not self.api_key:
            raise MailerNotConfigured("SendGrid API key not configured")
        if not message.to:
            raise DeliveryError("Message without recipients")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.post(
                    SENDGRID_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=self._payload(message),
                )
            except httpx.HTTPError as e:
                raise DeliveryError(f"SendGrid request failed: {e}") from e

        if resp.status_code >= 400:
            raise DeliveryError(f"SendGrid error {resp.status_code}: {resp.text[:200]}")

        logger.info(f"E-mail sent to {len(message.to)} recipient(s): {message.subject}")
