"""On-call alert audit log and billing charges.

Every delivery attempt to a team member produces exactly one ``Alert``
row. Rows are never updated after creation, except for soft-delete.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, Float, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from alerting.models.base import Base, utcnow


class AlertChannel(str, enum.Enum):
    """Delivery channel."""

    CALL = "call"
    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"
    WEBHOOK = "webhook"


class AlertStatus(str, enum.Enum):
    """Outcome of an on-call delivery attempt. NULL means the attempt was gated."""

    SUCCESS = "Success"
    NOT_ON_DUTY = "Not on Duty"
    CANNOT_SEND = "Cannot Send"


class AlertEventType(str, enum.Enum):
    """Incident lifecycle event that caused the attempt."""

    IDENTIFIED = "identified"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


def _enum_values(e: type[enum.Enum]) -> list[str]:
    return [member.value for member in e]


class Alert(Base):
    """One delivery attempt to an on-call team member."""

    __tablename__ = "alerts"

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

    monitor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    incident_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    schedule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    escalation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    oncall_status_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    channel: Mapped[AlertChannel] = mapped_column(
        Enum(
            AlertChannel,
            name="alertchannel",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    status: Mapped[AlertStatus | None] = mapped_column(
        Enum(
            AlertStatus,
            name="alertstatus",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=True,
    )

    event_type: Mapped[AlertEventType] = mapped_column(
        Enum(
            AlertEventType,
            name="alerteventtype",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=AlertEventType.IDENTIFIED,
    )

    error: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Reminder snapshot, "current/total"; NULL on the first reminder
    alert_progress: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
    )

    deleted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Alert(channel={self.channel.value}, status={self.status}, "
            f"error_message={self.error_message!r})>"
        )


class AlertCharge(Base):
    """Immutable billing record for a metered delivery."""

    __tablename__ = "alert_charges"

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

    alert_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("alerts.id", ondelete="SET NULL"),
        nullable=True,
    )

    subscriber_alert_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("subscriber_alerts.id", ondelete="SET NULL"),
        nullable=True,
    )

    monitor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    incident_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    sent_to: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
    )

    charge_amount: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )

    closing_account_balance: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<AlertCharge(amount={self.charge_amount}, "
            f"closing_balance={self.closing_account_balance})>"
        )
