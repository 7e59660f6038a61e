"""Routes notifications to the client for each channel."""

import structlog

from app.integrations.base import (
    ChannelClient,
    DeliveryResult,
    IntegrationError,
    NotificationChannel,
    NotificationMessage,
    NotificationSender,
)
from app.repositories.base import Contact

logger = structlog.get_logger()


class MultiChannelNotifier(NotificationSender):
    """Notification sender that never raises; failures come back as results."""

    def __init__(self, clients: list[ChannelClient]):
        self.clients = {client.channel: client for client in clients}

    def channels_for(self, recipient: Contact) -> list[NotificationChannel]:
        return [
            channel
            for channel, client in self.clients.items()
            if client.is_configured and client.address_for(recipient)
        ]

    async def send(
        self,
        channel: NotificationChannel,
        recipient: Contact,
        message: NotificationMessage,
    ) -> DeliveryResult:
        recipient_id = str(recipient.user_id)
        client = self.clients.get(channel)
        if client is None or not client.is_configured:
            return DeliveryResult(
                channel=channel.value,
                recipient=recipient_id,
                delivered=False,
                error=f"{channel.value} is not configured",
            )

        address = client.address_for(recipient)
        if not address:
            return DeliveryResult(
                channel=channel.value,
                recipient=recipient_id,
                delivered=False,
                error=f"No {channel.value} address",
            )

        try:
            message_id = await client.deliver(address, message)
        except IntegrationError as e:
            logger.warning(
                "notification_failed",
                channel=channel.value,
                user_id=recipient.user_id,
                error=e.message,
            )
            return DeliveryResult(
                channel=channel.value,
                recipient=recipient_id,
                delivered=False,
                error=e.message,
            )

        return DeliveryResult(
            channel=channel.value,
            recipient=recipient_id,
            delivered=True,
            message_id=message_id,
        )
