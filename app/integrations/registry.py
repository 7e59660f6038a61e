"""Builds the integration clients from settings."""

from dataclasses import dataclass
from functools import lru_cache

from app.config import Settings, settings
from app.integrations.base import NotificationSender, PaymentLinkProvider, VideoLinkProvider
from app.integrations.fcm import FirebasePushClient
from app.integrations.gallabox import GallaboxWhatsAppClient
from app.integrations.google_meet import GoogleMeetProvider
from app.integrations.notifier import MultiChannelNotifier
from app.integrations.razorpay import RazorpayPaymentLinkProvider


@dataclass(frozen=True)
class Integrations:
    video: VideoLinkProvider
    notifier: NotificationSender
    payments: PaymentLinkProvider


def build_integrations(config: Settings) -> Integrations:
    """Wire concrete clients; missing credentials leave a client unconfigured."""
    whatsapp = GallaboxWhatsAppClient(
        base_url=config.gallabox_base_url,
        api_key=config.gallabox_api_key,
        api_secret=config.gallabox_api_secret,
        channel_id=config.gallabox_channel_id,
        timeout=config.integration_timeout_seconds,
    )
    return Integrations(
        video=GoogleMeetProvider(
            service_account_file=config.google_service_account_file,
            calendar_id=config.google_calendar_id,
        ),
        notifier=MultiChannelNotifier([whatsapp, FirebasePushClient()]),
        payments=RazorpayPaymentLinkProvider(
            base_url=config.razorpay_base_url,
            key_id=config.razorpay_key_id,
            key_secret=config.razorpay_key_secret,
            currency=config.payment_currency,
            callback_url=config.payment_callback_url,
            messenger=whatsapp,
            timeout=config.integration_timeout_seconds,
        ),
    )


@lru_cache
def get_integrations() -> Integrations:
    """Process-wide integration clients."""
    return build_integrations(settings)
