"""Create on-call alerting tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ALERT_CHANNELS = ("call", "sms", "email", "push", "webhook")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def _channel_column() -> sa.Column:
    return sa.Column(
        "channel",
        sa.Enum(*ALERT_CHANNELS, name="alertchannel", native_enum=False),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("alert_enable", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("alert_options", sa.JSON(), nullable=False),
        sa.Column("alert_limit", sa.Integer(), nullable=True),
        sa.Column("alert_limit_reached", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("notification_toggles", sa.JSON(), nullable=False),
        sa.Column("owner_user_id", sa.Uuid(), nullable=True),
        sa.Column("reply_address", sa.String(length=255), nullable=True),
        sa.Column("integration_webhook_urls", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "global_configs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("value", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_global_configs_name"), "global_configs", ["name"], unique=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("alert_phone_number", sa.String(length=32), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("push_subscriptions", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"])

    op.create_table(
        "monitors",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("component_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("method", sa.String(length=16), nullable=True),
        sa.Column("last_matched_criterion", sa.JSON(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_monitors_project_id"), "monitors", ["project_id"])

    op.create_table(
        "incidents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("monitor_id", sa.Uuid(), nullable=True),
        sa.Column("id_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("incident_type", sa.String(length=32), nullable=False, server_default="offline"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("manually_created", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("criterion_name", sa.String(length=255), nullable=True),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["monitor_id"], ["monitors.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_incidents_project_id"), "incidents", ["project_id"])
    op.create_index(op.f("ix_incidents_monitor_id"), "incidents", ["monitor_id"])

    op.create_table(
        "scheduled_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("monitor_ids", sa.JSON(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_scheduled_events_project_id"), "scheduled_events", ["project_id"])

    op.create_table(
        "schedules",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("escalation_ids", sa.JSON(), nullable=False),
        sa.Column("monitor_ids", sa.JSON(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="false"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_schedules_project_id"), "schedules", ["project_id"])

    op.create_table(
        "escalation_policies",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("schedule_id", sa.Uuid(), nullable=True),
        sa.Column("team_members", sa.JSON(), nullable=False),
        sa.Column("call", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("sms", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("email", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("push", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("call_reminders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sms_reminders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("email_reminders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("push_reminders", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["schedule_id"], ["schedules.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_escalation_policies_project_id"), "escalation_policies", ["project_id"])

    op.create_table(
        "oncall_schedule_statuses",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("incident_id", sa.Uuid(), nullable=False),
        sa.Column("schedule_id", sa.Uuid(), nullable=True),
        sa.Column("active_escalation_id", sa.Uuid(), nullable=True),
        sa.Column("incident_acknowledged", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_on_duty", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("alerted_everyone", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["schedule_id"], ["schedules.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "incident_id", "schedule_id", name="uq_oncall_status_incident_schedule"
        ),
    )
    op.create_index(
        op.f("ix_oncall_schedule_statuses_project_id"), "oncall_schedule_statuses", ["project_id"]
    )
    op.create_index(
        op.f("ix_oncall_schedule_statuses_incident_id"), "oncall_schedule_statuses", ["incident_id"]
    )

    op.create_table(
        "escalation_statuses",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("oncall_status_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("escalation_id", sa.Uuid(), nullable=False),
        sa.Column("call_reminders_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sms_reminders_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("email_reminders_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("push_reminders_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(
            ["oncall_status_id"], ["oncall_schedule_statuses.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("oncall_status_id", "position", name="uq_escalation_status_position"),
    )
    op.create_index(
        op.f("ix_escalation_statuses_oncall_status_id"), "escalation_statuses", ["oncall_status_id"]
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("monitor_id", sa.Uuid(), nullable=True),
        sa.Column("incident_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("schedule_id", sa.Uuid(), nullable=True),
        sa.Column("escalation_id", sa.Uuid(), nullable=True),
        sa.Column("oncall_status_id", sa.Uuid(), nullable=True),
        _channel_column(),
        sa.Column(
            "status",
            sa.Enum("Success", "Not on Duty", "Cannot Send", name="alertstatus", native_enum=False),
            nullable=True,
        ),
        sa.Column(
            "event_type",
            sa.Enum(
                "identified", "acknowledged", "resolved", name="alerteventtype", native_enum=False
            ),
            nullable=False,
        ),
        sa.Column("error", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("alert_progress", sa.String(length=32), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_alerts_project_id"), "alerts", ["project_id"])
    op.create_index(op.f("ix_alerts_incident_id"), "alerts", ["incident_id"])
    op.create_index(op.f("ix_alerts_user_id"), "alerts", ["user_id"])
    op.create_index(op.f("ix_alerts_created_at"), "alerts", ["created_at"])

    op.create_table(
        "status_pages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("is_subscriber_enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("domain", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_status_pages_project_id"), "status_pages", ["project_id"])

    op.create_table(
        "subscribers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("monitor_id", sa.Uuid(), nullable=True),
        sa.Column("status_page_id", sa.Uuid(), nullable=True),
        sa.Column(
            "alert_via",
            sa.Enum(*ALERT_CHANNELS, name="alertchannel", native_enum=False),
            nullable=False,
        ),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("contact_phone", sa.String(length=32), nullable=True),
        sa.Column("country_code", sa.String(length=8), nullable=True),
        sa.Column("contact_webhook", sa.Text(), nullable=True),
        sa.Column("subscribed", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["monitor_id"], ["monitors.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["status_page_id"], ["status_pages.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_subscribers_project_id"), "subscribers", ["project_id"])
    op.create_index(op.f("ix_subscribers_monitor_id"), "subscribers", ["monitor_id"])

    op.create_table(
        "subscriber_alerts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("subscriber_id", sa.Uuid(), nullable=False),
        sa.Column("incident_id", sa.Uuid(), nullable=True),
        sa.Column("scheduled_event_id", sa.Uuid(), nullable=True),
        _channel_column(),
        sa.Column(
            "status",
            sa.Enum(
                "Pending",
                "Sent",
                "Not Sent",
                "Success",
                "Disabled",
                name="subscriberalertstatus",
                native_enum=False,
            ),
            nullable=True,
        ),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("error", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("total_subscribers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("batch_id", sa.Uuid(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscriber_id"], ["subscribers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_subscriber_alerts_project_id"), "subscriber_alerts", ["project_id"])
    op.create_index(
        op.f("ix_subscriber_alerts_subscriber_id"), "subscriber_alerts", ["subscriber_id"]
    )

    op.create_table(
        "alert_charges",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("alert_id", sa.Uuid(), nullable=True),
        sa.Column("subscriber_alert_id", sa.Uuid(), nullable=True),
        sa.Column("monitor_id", sa.Uuid(), nullable=True),
        sa.Column("incident_id", sa.Uuid(), nullable=True),
        sa.Column("sent_to", sa.String(length=32), nullable=True),
        sa.Column("charge_amount", sa.Float(), nullable=False),
        sa.Column("closing_account_balance", sa.Float(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["alert_id"], ["alerts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["subscriber_alert_id"], ["subscriber_alerts.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_alert_charges_project_id"), "alert_charges", ["project_id"])

    op.create_table(
        "call_routings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("phone_number", sa.String(length=32), nullable=False),
        sa.Column("country_code", sa.String(length=8), nullable=True),
        sa.Column("price", sa.Float(), nullable=False, server_default="0"),
        sa.Column("sid", sa.String(length=64), nullable=True),
        sa.Column("subscription_id", sa.String(length=128), nullable=True),
        sa.Column("routing_schema", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_call_routings_project_id"), "call_routings", ["project_id"])

    op.create_table(
        "call_routing_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("call_routing_id", sa.Uuid(), nullable=False),
        sa.Column("call_sid", sa.String(length=64), nullable=False),
        sa.Column("called_from", sa.String(length=32), nullable=True),
        sa.Column("called_to", sa.String(length=32), nullable=True),
        sa.Column("dial_to", sa.JSON(), nullable=False),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["call_routing_id"], ["call_routings.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("call_sid"),
    )
    op.create_index(
        op.f("ix_call_routing_logs_call_routing_id"), "call_routing_logs", ["call_routing_id"]
    )


def downgrade() -> None:
    op.drop_table("call_routing_logs")
    op.drop_table("call_routings")
    op.drop_table("alert_charges")
    op.drop_table("subscriber_alerts")
    op.drop_table("subscribers")
    op.drop_table("status_pages")
    op.drop_table("alerts")
    op.drop_table("escalation_statuses")
    op.drop_table("oncall_schedule_statuses")
    op.drop_table("escalation_policies")
    op.drop_table("schedules")
    op.drop_table("scheduled_events")
    op.drop_table("incidents")
    op.drop_table("monitors")
    op.drop_table("users")
    op.drop_table("global_configs")
    op.drop_table("projects")
