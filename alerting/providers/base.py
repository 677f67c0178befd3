"""Delivery and billing provider contracts.

The alerting engine never talks to mail servers, telephony APIs, web
push services or payment processors directly. Each of those is reached
through one of the protocols below, bundled into a
:class:`ProviderRegistry` that every workflow receives explicitly.
"""

import enum
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from alerting.models.alert import AlertChannel
    from alerting.models.project import Project


class ProviderError(Exception):
    """Error communicating with a delivery or billing provider."""


class MessageTemplate(str, enum.Enum):
    """Template a mail or SMS provider renders the message with."""

    INCIDENT_CREATED = "incident_created"
    INCIDENT_ACKNOWLEDGED = "incident_acknowledged"
    INCIDENT_RESOLVED = "incident_resolved"
    SUBSCRIBER_INCIDENT_CREATED = "subscriber_incident_created"
    SUBSCRIBER_INCIDENT_ACKNOWLEDGED = "subscriber_incident_acknowledged"
    SUBSCRIBER_INCIDENT_RESOLVED = "subscriber_incident_resolved"
    SUBSCRIBER_INVESTIGATION_NOTE = "subscriber_investigation_note"
    SUBSCRIBER_MAINTENANCE_CREATED = "subscriber_maintenance_created"
    SUBSCRIBER_MAINTENANCE_RESOLVED = "subscriber_maintenance_resolved"
    SUBSCRIBER_MAINTENANCE_CANCELLED = "subscriber_maintenance_cancelled"
    SUBSCRIBER_MAINTENANCE_NOTE = "subscriber_maintenance_note"
    SLA_ABOUT_TO_BREACH = "sla_about_to_breach"
    SLA_BREACHED = "sla_breached"
    UNPAID_SUBSCRIPTION = "unpaid_subscription"
    PROJECT_DELETED_UNPAID = "project_deleted_unpaid"


@dataclass
class OutboundMessage:
    """A rendered-on-the-provider-side message to one recipient."""

    template: MessageTemplate
    recipient: str
    project_id: uuid.UUID
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResult:
    """Outcome reported by the SMS/voice provider.

    ``code == 400`` is a non-retryable rejection. ``body`` carries the
    text actually sent, used to count SMS segments.
    """

    code: int | None = None
    message: str | None = None
    body: str | None = None
    sid: str | None = None

    @property
    def rejected(self) -> bool:
        return self.code == 400


@dataclass
class BillingStatus:
    """Result of the pre-send balance check."""

    success: bool
    message: str = ""


@dataclass
class ChargeResult:
    """Result of debiting the project balance after a send."""

    error: bool
    charge_amount: float = 0.0
    closing_balance: float = 0.0
    message: str = ""


@dataclass
class CallDetails:
    """Call detail record fetched after a call completes.

    Telephony providers report the price as a (usually negative) decimal
    string, e.g. ``"-0.0130"``.
    """

    price: str | None
    duration: int | None = None
    status: str | None = None


class MailProvider(Protocol):
    async def has_custom_settings(self, project_id: uuid.UUID) -> bool:
        """Whether the project brings its own SMTP credentials."""
        ...

    async def send(self, message: OutboundMessage) -> None:
        """Send a mail. Raises on failure."""
        ...


class SmsVoiceProvider(Protocol):
    async def has_custom_settings(self, project_id: uuid.UUID) -> bool:
        """Whether the project brings its own telephony credentials."""
        ...

    async def send_sms(self, message: OutboundMessage) -> ProviderResult: ...

    async def place_call(self, message: OutboundMessage) -> ProviderResult: ...

    async def buy_phone_number(
        self, project_id: uuid.UUID, phone_number: str
    ) -> ProviderResult: ...

    async def release_phone_number(self, project_id: uuid.UUID, sid: str) -> None: ...

    async def get_call_details(
        self, project_id: uuid.UUID, call_sid: str
    ) -> CallDetails | None: ...


class PushProvider(Protocol):
    async def send(self, subscription: dict[str, Any], payload: dict[str, Any]) -> None:
        """Deliver to one web push subscription. Raises on failure."""
        ...


class WebhookDispatcher(Protocol):
    async def send_subscriber_notification(
        self, url: str, payload: dict[str, Any]
    ) -> bool: ...

    async def send_integration_notification(
        self, url: str, payload: dict[str, Any]
    ) -> bool: ...


class BillingProvider(Protocol):
    async def check_and_recharge(
        self,
        project: "Project",
        user_id: uuid.UUID | None,
        phone_number: str,
        channel: "AlertChannel",
    ) -> BillingStatus: ...

    async def charge_alert(
        self,
        project: "Project",
        user_id: uuid.UUID | None,
        channel: "AlertChannel",
        phone_number: str,
        segments: int = 1,
    ) -> ChargeResult: ...

    async def charge_amount(
        self,
        project: "Project",
        user_id: uuid.UUID | None,
        amount: float,
    ) -> ChargeResult: ...

    async def create_subscription(
        self, user_id: uuid.UUID | None, price: float
    ) -> str | None:
        """Open a recurring subscription; returns its id or None."""
        ...

    async def cancel_subscription(self, subscription_id: str) -> None: ...


@dataclass
class ProviderRegistry:
    """All external collaborators of the alerting engine."""

    mail: MailProvider
    sms_voice: SmsVoiceProvider
    push: PushProvider
    webhook: WebhookDispatcher
    billing: BillingProvider
