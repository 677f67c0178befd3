"""Monitor, incident and scheduled maintenance records.

Read-only inputs for the alerting engine: the incident lifecycle handler
owns these rows and invokes the engine with them.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from alerting.models.base import Base, TimestampMixin


class Monitor(Base, TimestampMixin):
    """A monitored resource.

    ``last_matched_criterion`` is the criterion that most recently fired,
    stored as ``{"name": str, "schedule_ids": [uuid-str, ...]}``.
    """

    __tablename__ = "monitors"

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
    )

    component_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )

    url: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    method: Mapped[str | None] = mapped_column(
        String(16),
        nullable=True,
    )

    last_matched_criterion: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
    )

    custom_fields: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    def __repr__(self) -> str:
        return f"<Monitor(name={self.name!r})>"


class Incident(Base, TimestampMixin):
    """An incident raised against a monitor."""

    __tablename__ = "incidents"

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
        ForeignKey("monitors.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Human-facing sequence number ("Incident #12")
    id_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    incident_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="offline",
    )

    reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    manually_created: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    criterion_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    acknowledged: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    acknowledged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    resolved: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    custom_fields: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    @property
    def is_open(self) -> bool:
        return not self.acknowledged and not self.resolved

    def __repr__(self) -> str:
        return f"<Incident(id_number={self.id_number}, type={self.incident_type!r})>"


class ScheduledEvent(Base, TimestampMixin):
    """A scheduled maintenance window announced to subscribers."""

    __tablename__ = "scheduled_events"

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
    )

    description: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )

    monitor_ids: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ScheduledEvent(name={self.name!r})>"
