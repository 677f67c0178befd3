"""Project and global configuration records.

The alerting engine only reads these: billing balance, phone alert
options, per-notification toggles and the admin-level provider settings.
"""

import uuid
from typing import Any

from sqlalchemy import JSON, Boolean, Float, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from alerting.models.base import Base, TimestampMixin


class Project(Base, TimestampMixin):
    """Tenant project owning monitors, schedules and a prepaid balance.

    ``alert_options`` holds the phone alert policy::

        {
            "billingUS": true,
            "billingNonUSCountries": false,
            "billingRiskCountries": false,
            "minimumBalance": 20
        }

    ``notification_toggles`` holds subscriber notification switches keyed
    by setting name (e.g. ``send_created_incident_notification_email``);
    absent keys fall back to the defaults in
    :mod:`alerting.services.global_config`.
    """

    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    slug: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Prepaid balance used for call/SMS charges (USD)
    balance: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
    )

    # Phone (call/SMS) alerting switch for hosted projects
    alert_enable: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    alert_options: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    # Max successful call/SMS alerts per 24h; null uses the global limit
    alert_limit: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    alert_limit_reached: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    notification_toggles: Mapped[dict[str, bool]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    owner_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
    )

    reply_address: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Project team: [{"user_id": "...", "role": "Administrator"}, ...]
    members: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    # Subscription plan, quoted in unpaid-subscription notices
    billing_plan_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    # Outbound integration webhooks notified of status page notes
    integration_webhook_urls: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    def __repr__(self) -> str:
        return f"<Project(name={self.name!r}, balance={self.balance})>"


class GlobalConfig(Base, TimestampMixin):
    """Admin dashboard setting row, looked up by name.

    Known rows: ``smtp`` (``{"email-enabled": bool}``) and ``twilio``
    (``{"call-enabled": bool, "sms-enabled": bool, "alert-limit": int}``).
    """

    __tablename__ = "global_configs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
    )

    value: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    def __repr__(self) -> str:
        return f"<GlobalConfig(name={self.name!r})>"
