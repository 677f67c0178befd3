"""Inbound call routing: purchased numbers and per-call dial logs."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from alerting.models.base import Base, TimestampMixin, utcnow


class CallRouting(Base, TimestampMixin):
    """A provider phone number bought for a project.

    ``routing_schema`` is validated through
    :class:`alerting.schemas.oncall.RoutingSchema`.
    """

    __tablename__ = "call_routings"

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

    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    country_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Provider number sid, needed to release it
    sid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    routing_schema: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    def __repr__(self) -> str:
        return f"<CallRouting(phone_number={self.phone_number!r})>"


class CallRoutingLog(Base):
    """Dial attempts for one inbound call, keyed by provider call sid.

    ``dial_to`` entries: ``{"call_sid", "user_id", "schedule_id",
    "phone_number", "status"}``.
    """

    __tablename__ = "call_routing_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    call_routing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("call_routings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    call_sid: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    called_from: Mapped[str | None] = mapped_column(String(32), nullable=True)
    called_to: Mapped[str | None] = mapped_column(String(32), nullable=True)

    dial_to: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    # Settled once, after the call completes
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<CallRoutingLog(call_sid={self.call_sid!r}, dials={len(self.dial_to or [])})>"
