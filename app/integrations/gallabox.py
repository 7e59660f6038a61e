"""WhatsApp delivery through the Gallabox API."""

import re

import httpx
import structlog

from app.integrations.base import (
    ChannelClient,
    IntegrationError,
    NotificationChannel,
    NotificationMessage,
)
from app.repositories.base import Contact

logger = structlog.get_logger()

PROVIDER = "GALLABOX"


def format_phone_number(phone: str, country_code: str = "91") -> str:
    """
    Normalise a phone number to digits with country code.

    A bare 10-digit number, or one with a leading trunk ``0``, gets
    ``country_code`` prepended; anything else is returned as digits only.
    """
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits.startswith("0"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"{country_code}{digits}"
    return digits


class GallaboxWhatsAppClient(ChannelClient):
    """Sends plain-text WhatsApp messages."""

    channel = NotificationChannel.WHATSAPP

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_secret: str,
        channel_id: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.channel_id = channel_id
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_secret and self.channel_id)

    def address_for(self, contact: Contact) -> str | None:
        if not contact.phone:
            return None
        return format_phone_number(contact.phone)

    async def deliver(self, address: str, message: NotificationMessage) -> str | None:
        if not self.is_configured:
            raise IntegrationError("Gallabox is not configured", provider=PROVIDER, retryable=False)

        payload = {
            "channelId": self.channel_id,
            "channelType": "whatsapp",
            "recipient": {"name": "User", "phone": address},
            "whatsapp": {
                "type": "text",
                "text": {"body": f"*{message.title}*\n\n{message.body}"},
            },
        }
        headers = {
            "apiKey": self.api_key,
            "apiSecret": self.api_secret,
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/messages/whatsapp",
                    json=payload,
                    headers=headers,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(
                    "whatsapp_send_failed",
                    status_code=e.response.status_code,
                    response=e.response.text[:500],
                )
                raise IntegrationError(
                    f"Gallabox returned {e.response.status_code}",
                    provider=PROVIDER,
                    retryable=e.response.status_code >= 500 or e.response.status_code == 429,
                ) from e
            except httpx.HTTPError as e:
                logger.error("whatsapp_send_failed", error=str(e))
                raise IntegrationError(f"Gallabox request failed: {e}", provider=PROVIDER) from e

        data = response.json() if response.content else {}
        message_id = data.get("messageId") or data.get("id")
        logger.info("whatsapp_message_sent", message_id=message_id)
        return message_id
