"""Escalation progress for an (incident, schedule) pair.

``OnCallScheduleStatus`` is the only mutable record the escalation
stepper owns. Its ``escalations`` list is append-only: advancing to the
next policy adds a zeroed :class:`EscalationStatus` row at the next
position, and only the last row's counters are ever incremented.

``version`` is bumped on every progress write and guarded by a
compare-and-swap update so that two concurrent ticks cannot both
persist a read-modify-write of the same progress.
"""

import uuid

from sqlalchemy import Boolean, ForeignKey, Integer, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from alerting.models.base import Base, TimestampMixin

CHANNEL_COUNTERS = {
    "call": "call_reminders_sent",
    "sms": "sms_reminders_sent",
    "email": "email_reminders_sent",
    "push": "push_reminders_sent",
}


class OnCallScheduleStatus(Base, TimestampMixin):
    """Per (incident, schedule) escalation progress.

    A row with ``schedule_id`` NULL is the placeholder written when no
    schedule applies to the incident.
    """

    __tablename__ = "oncall_schedule_statuses"
    __table_args__ = (
        UniqueConstraint(
            "incident_id",
            "schedule_id",
            name="uq_oncall_status_incident_schedule",
        ),
    )

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

    incident_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    schedule_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("schedules.id", ondelete="SET NULL"),
        nullable=True,
    )

    active_escalation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
    )

    incident_acknowledged: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    is_on_duty: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    alerted_everyone: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    escalations: Mapped[list["EscalationStatus"]] = relationship(
        back_populates="oncall_status",
        order_by="EscalationStatus.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def current(self) -> "EscalationStatus | None":
        """The mutable tail of the escalation list."""
        return self.escalations[-1] if self.escalations else None

    @property
    def is_terminal(self) -> bool:
        return self.incident_acknowledged or self.alerted_everyone

    def __repr__(self) -> str:
        return (
            f"<OnCallScheduleStatus(incident_id={self.incident_id}, "
            f"schedule_id={self.schedule_id}, escalations={len(self.escalations)})>"
        )


class EscalationStatus(Base):
    """Reminder counters for one activated escalation policy."""

    __tablename__ = "escalation_statuses"
    __table_args__ = (
        UniqueConstraint(
            "oncall_status_id",
            "position",
            name="uq_escalation_status_position",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    oncall_status_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("oncall_schedule_statuses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    escalation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
    )

    call_reminders_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sms_reminders_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    email_reminders_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    push_reminders_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    oncall_status: Mapped[OnCallScheduleStatus] = relationship(
        back_populates="escalations",
    )

    @classmethod
    def start(cls, position: int, escalation_id: uuid.UUID) -> "EscalationStatus":
        """A fresh entry with every counter at zero."""
        counters = {counter: 0 for counter in CHANNEL_COUNTERS.values()}
        return cls(position=position, escalation_id=escalation_id, **counters)

    def sent(self, channel: str) -> int:
        return getattr(self, CHANNEL_COUNTERS[channel]) or 0

    def __repr__(self) -> str:
        return (
            f"<EscalationStatus(position={self.position}, call={self.call_reminders_sent}, "
            f"sms={self.sms_reminders_sent}, email={self.email_reminders_sent}, "
            f"push={self.push_reminders_sent})>"
        )
