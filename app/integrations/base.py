"""Contracts for the external services a booking fans out to."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from app.repositories.base import Contact


class IntegrationError(Exception):
    """
    A downstream provider call failed.

    ``retryable`` is False when repeating the call cannot help, for example
    missing credentials or a rejected request.
    """

    def __init__(self, message: str, provider: str | None = None, retryable: bool = True):
        self.message = message
        self.provider = provider
        self.retryable = retryable
        super().__init__(message)


class NotificationChannel(str, Enum):
    WHATSAPP = "WHATSAPP"
    PUSH = "PUSH"


@dataclass(frozen=True)
class VideoLinkRequest:
    """What the video provider needs to schedule a meeting."""

    appointment_id: int
    title: str
    start: datetime
    end: datetime
    timezone: str
    description: str = ""
    attendee_emails: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class VideoLink:
    url: str
    calendar_event_id: str | None = None
    provider: str = "GOOGLE_MEET"


@dataclass(frozen=True)
class NotificationMessage:
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryResult:
    channel: str
    recipient: str
    delivered: bool
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PaymentLink:
    link: str
    amount: Decimal
    currency: str
    reference: str | None = None


class VideoLinkProvider(ABC):
    """Creates a meeting URL for an online appointment."""

    @property
    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    async def create_link(self, request: VideoLinkRequest) -> VideoLink:
        """
        Create a meeting.

        Raises:
            IntegrationError: If the provider is unconfigured or the call fails
        """


class ChannelClient(ABC):
    """Delivers a message to one address on a single channel."""

    channel: NotificationChannel

    @property
    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    def address_for(self, contact: Contact) -> str | None:
        """Channel address of a contact, or None if they cannot be reached here."""

    @abstractmethod
    async def deliver(self, address: str, message: NotificationMessage) -> str | None:
        """
        Send a message and return the provider's message id.

        Raises:
            IntegrationError: If delivery fails
        """


class NotificationSender(ABC):
    """Sends a message to a person over a named channel without raising."""

    @abstractmethod
    async def send(
        self,
        channel: NotificationChannel,
        recipient: Contact,
        message: NotificationMessage,
    ) -> DeliveryResult: ...

    @abstractmethod
    def channels_for(self, recipient: Contact) -> list[NotificationChannel]:
        """Configured channels on which the recipient has an address."""


class PaymentLinkProvider(ABC):
    """Creates a payment link and hands it to the patient."""

    @property
    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    async def create_and_send(
        self,
        appointment_id: int,
        patient: Contact,
        amount: Decimal,
        description: str | None = None,
    ) -> PaymentLink:
        """
        Create the link and send it to the patient.

        Raises:
            IntegrationError: If the link cannot be created
        """
