"""Public status-page subscribers and their notification log."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from alerting.models.alert import AlertChannel
from alerting.models.base import Base, TimestampMixin, utcnow


class SubscriberAlertStatus(str, enum.Enum):
    """Lifecycle of a subscriber notification. NULL means it failed."""

    PENDING = "Pending"
    SENT = "Sent"
    NOT_SENT = "Not Sent"
    SUCCESS = "Success"
    DISABLED = "Disabled"


class StatusPage(Base, TimestampMixin):
    """Public status page subscribers can sign up through."""

    __tablename__ = "status_pages"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_subscriber_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    # First verified custom domain, if any
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)


class Subscriber(Base, TimestampMixin):
    """A member of the public subscribed to a monitor."""

    __tablename__ = "subscribers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    monitor_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("monitors.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    status_page_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("status_pages.id", ondelete="SET NULL"),
        nullable=True,
    )

    alert_via: Mapped[AlertChannel] = mapped_column(
        Enum(
            AlertChannel,
            name="alertchannel",
            native_enum=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # Dialing prefix such as "+49"; prepended to contact_phone when set
    country_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    contact_webhook: Mapped[str | None] = mapped_column(Text, nullable=True)

    subscribed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    @property
    def full_phone(self) -> str | None:
        if not self.contact_phone:
            return None
        if self.country_code:
            return f"{self.country_code}{self.contact_phone}"
        return self.contact_phone

    def __repr__(self) -> str:
        return f"<Subscriber(alert_via={self.alert_via.value})>"


class SubscriberAlert(Base):
    """Notification to one subscriber, created Pending and updated in place."""

    __tablename__ = "subscriber_alerts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    incident_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    scheduled_event_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    channel: Mapped[AlertChannel] = mapped_column(
        Enum(
            AlertChannel,
            name="alertchannel",
            native_enum=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    status: Mapped[SubscriberAlertStatus | None] = mapped_column(
        Enum(
            SubscriberAlertStatus,
            name="subscriberalertstatus",
            native_enum=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=True,
    )

    # Free-form: "identified", "acknowledged", "Investigation note created", ...
    event_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    error: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_subscribers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Groups all rows produced by one fan-out
    batch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<SubscriberAlert(channel={self.channel.value}, status={self.status})>"
