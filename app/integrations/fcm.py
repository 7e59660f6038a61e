"""Push notifications through Firebase Cloud Messaging."""

import asyncio

import structlog
from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from app.core.firebase import is_firebase_initialized
from app.integrations.base import (
    ChannelClient,
    IntegrationError,
    NotificationChannel,
    NotificationMessage,
)
from app.repositories.base import Contact

logger = structlog.get_logger(__name__)

PROVIDER = "FCM"


def build_message(token: str, message: NotificationMessage) -> messaging.Message:
    """Build a high-priority FCM message for one device token."""
    return messaging.Message(
        notification=messaging.Notification(
            title=message.title,
            body=message.body,
        ),
        data=message.data,
        token=token,
        apns=messaging.APNSConfig(
            payload=messaging.APNSPayload(
                aps=messaging.Aps(
                    sound="default",
                    badge=1,
                ),
            ),
        ),
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(
                sound="default",
                priority="high",
            ),
        ),
    )


class FirebasePushClient(ChannelClient):
    """Sends a push notification to the device token stored on a user."""

    channel = NotificationChannel.PUSH

    @property
    def is_configured(self) -> bool:
        return is_firebase_initialized()

    def address_for(self, contact: Contact) -> str | None:
        return contact.push_token or None

    async def deliver(self, address: str, message: NotificationMessage) -> str | None:
        if not self.is_configured:
            raise IntegrationError(
                "Firebase is not initialized",
                provider=PROVIDER,
                retryable=False,
            )

        loop = asyncio.get_running_loop()
        try:
            message_id = await loop.run_in_executor(
                None, messaging.send, build_message(address, message)
            )
        except messaging.UnregisteredError as e:
            logger.warning("push_token_unregistered", error=str(e))
            raise IntegrationError(
                "Device token is no longer registered",
                provider=PROVIDER,
                retryable=False,
            ) from e
        except firebase_exceptions.FirebaseError as e:
            logger.error("push_notification_failed", error=str(e), title=message.title)
            raise IntegrationError(f"FCM error: {e}", provider=PROVIDER) from e

        logger.info("push_notification_sent", title=message.title, message_id=message_id)
        return message_id
