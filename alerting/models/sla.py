"""Incident communication SLA model."""

import uuid

from sqlalchemy import Boolean, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from alerting.models.base import Base, TimestampMixin


class IncidentCommunicationSla(Base, TimestampMixin):
    """How long a project may leave an incident without a public update.

    ``duration`` is the SLA in minutes. ``alert_time`` is how many minutes
    before the breach the team is warned.
    """

    __tablename__ = "incident_communication_slas"

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

    duration: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=60,
    )

    alert_time: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=30,
    )

    is_default: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    def __repr__(self) -> str:
        return f"<IncidentCommunicationSla(name={self.name!r}, duration={self.duration})>"
