"""Razorpay payment links."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx
import structlog

from app.integrations.base import (
    ChannelClient,
    IntegrationError,
    NotificationMessage,
    PaymentLink,
    PaymentLinkProvider,
)
from app.repositories.base import Contact

logger = structlog.get_logger()

PROVIDER = "RAZORPAY"

# Links that can no longer be paid; a retry must not hand these out again
DEAD_LINK_STATUSES = {"cancelled", "expired"}


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def reference_for(appointment_id: int) -> str:
    return f"appointment-{appointment_id}"


def error_description(response: httpx.Response) -> str:
    """Razorpay's error description, or the status code for non-JSON bodies."""
    try:
        error = response.json().get("error") or {}
    except ValueError:
        error = {}
    return error.get("description") or str(response.status_code)


def payment_message(name: str, link: str, amount: Decimal, currency: str) -> NotificationMessage:
    return NotificationMessage(
        title="Complete your consultation payment",
        body=(
            f"Hello {name}, thank you for booking your consultation.\n"
            f"Amount: {currency} {amount:,.2f}\n"
            f"Pay securely here: {link}\n"
            "Please complete the payment within 24 hours to confirm your appointment."
        ),
        data={"type": "payment_link", "link": link},
    )


class RazorpayPaymentLinkProvider(PaymentLinkProvider):
    """
    Creates a Razorpay payment link and sends it to the patient on WhatsApp.

    Razorpay's own SMS/email notifications are switched off. A failed
    WhatsApp send does not invalidate the link.

    Each link carries the appointment as ``reference_id``, which Razorpay
    keeps unique. When a retry is rejected because a link for the appointment
    already exists, that link is fetched and sent instead of a new one.
    """

    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        currency: str = "INR",
        callback_url: str | None = None,
        messenger: ChannelClient | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.currency = currency
        self.callback_url = callback_url
        self.messenger = messenger
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_and_send(
        self,
        appointment_id: int,
        patient: Contact,
        amount: Decimal,
        description: str | None = None,
    ) -> PaymentLink:
        if not self.is_configured:
            raise IntegrationError("Razorpay is not configured", provider=PROVIDER, retryable=False)
        if amount <= 0:
            raise IntegrationError(
                "Payment amount must be positive",
                provider=PROVIDER,
                retryable=False,
            )

        customer = {"name": patient.full_name}
        if patient.phone:
            customer["contact"] = patient.phone
        if patient.email:
            customer["email"] = patient.email

        payload = {
            "amount": to_minor_units(amount),
            "currency": self.currency,
            "description": description or "Consultation fee",
            "customer": customer,
            "notify": {"sms": False, "email": False},
            "reminder_enable": True,
            "reference_id": reference_for(appointment_id),
            "notes": {"appointment_id": str(appointment_id)},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url
            payload["callback_method"] = "get"

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/payment_links",
                    json=payload,
                    auth=(self.key_id, self.key_secret),
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                description = error_description(e.response)
                existing = None
                if status_code == 400:
                    existing = await self._find_existing(client, appointment_id)
                if existing is None:
                    logger.error(
                        "payment_link_creation_failed",
                        appointment_id=appointment_id,
                        status_code=status_code,
                        description=description,
                    )
                    raise IntegrationError(
                        f"Razorpay error: {description}",
                        provider=PROVIDER,
                        retryable=status_code >= 500 or status_code == 429,
                    ) from e
                logger.info("payment_link_reused", appointment_id=appointment_id)
                data = existing
            except httpx.HTTPError as e:
                raise IntegrationError(f"Razorpay request failed: {e}", provider=PROVIDER) from e
            else:
                data = response.json()

        link = PaymentLink(
            link=data["short_url"],
            amount=amount,
            currency=self.currency,
            reference=data.get("id"),
        )
        logger.info(
            "payment_link_created",
            appointment_id=appointment_id,
            reference=link.reference,
        )

        await self._send(appointment_id, patient, link)
        return link

    async def _find_existing(
        self, client: httpx.AsyncClient, appointment_id: int
    ) -> dict[str, Any] | None:
        """A still payable link already created for this appointment, if any."""
        try:
            response = await client.get(
                f"{self.base_url}/payment_links",
                params={"reference_id": reference_for(appointment_id)},
                auth=(self.key_id, self.key_secret),
            )
            response.raise_for_status()
            links = response.json().get("payment_links", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "payment_link_lookup_failed",
                appointment_id=appointment_id,
                error=str(e),
            )
            return None
        for link in links:
            if link.get("status") not in DEAD_LINK_STATUSES and link.get("short_url"):
                return link
        return None

    async def _send(self, appointment_id: int, patient: Contact, link: PaymentLink) -> None:
        if self.messenger is None or not self.messenger.is_configured:
            logger.warning(
                "payment_link_not_sent",
                appointment_id=appointment_id,
                reason="no_channel",
            )
            return
        address = self.messenger.address_for(patient)
        if not address:
            logger.warning(
                "payment_link_not_sent",
                appointment_id=appointment_id,
                reason="no_address",
            )
            return
        try:
            await self.messenger.deliver(
                address,
                payment_message(patient.full_name, link.link, link.amount, link.currency),
            )
        except IntegrationError as e:
            logger.warning("payment_link_not_sent", appointment_id=appointment_id, error=e.message)
