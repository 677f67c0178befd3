"""User model as seen by the alerting engine."""

import uuid
from typing import Any

from sqlalchemy import JSON, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from alerting.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """Team member who can be alerted.

    Attributes:
        id: Unique user identifier (UUID)
        name: Display name
        email: Email address used for email alerts
        alert_phone_number: E.164 number for call/SMS alerts
        timezone: IANA timezone name, used for duty windows when configured
        push_subscriptions: Web push subscriptions registered by the user
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )
    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    alert_phone_number: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
    )
    timezone: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    push_subscriptions: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    def __repr__(self) -> str:
        return f"<User(email={self.email!r})>"
