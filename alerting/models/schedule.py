"""On-call schedule and escalation policy models.

A schedule owns an ordered chain of escalation policies. Each policy
names the team to alert and how many reminders each channel may send
before the chain moves on to the next policy.
"""

import uuid
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from alerting.models.base import Base, TimestampMixin


class Schedule(Base, TimestampMixin):
    """Named on-call rotation.

    ``escalation_ids`` is the ordered policy chain (UUID strings);
    ``monitor_ids`` binds the schedule to monitors.
    """

    __tablename__ = "schedules"

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

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )

    escalation_ids: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    monitor_ids: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    is_default: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    def __repr__(self) -> str:
        return f"<Schedule(name={self.name!r}, policies={len(self.escalation_ids or [])})>"


class EscalationPolicy(Base, TimestampMixin):
    """One link of a schedule's notification chain.

    ``team_members`` is an ordered list of::

        {
            "user_id": "<uuid>",
            "start_time": "09:00" | null,
            "end_time": "17:00" | null,
            "group_user_ids": ["<uuid>", ...]
        }

    validated through :class:`alerting.schemas.oncall.TeamMemberSchema`.
    """

    __tablename__ = "escalation_policies"

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

    schedule_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("schedules.id", ondelete="SET NULL"),
        nullable=True,
    )

    team_members: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    # Channel switches
    call: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    push: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Reminder quotas per channel
    call_reminders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sms_reminders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    email_reminders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    push_reminders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<EscalationPolicy(call={self.call_reminders}, sms={self.sms_reminders}, "
            f"email={self.email_reminders}, push={self.push_reminders})>"
        )
