"""Admin-level provider settings and project notification toggles."""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerting.config import settings
from alerting.models.alert import AlertChannel
from alerting.models.project import GlobalConfig, Project
from alerting.providers.base import ProviderRegistry

SMTP_CONFIG = "smtp"
TWILIO_CONFIG = "twilio"

# channel -> (config row, enabled flag, provider label)
CHANNEL_SETTINGS: dict[AlertChannel, tuple[str, str, str]] = {
    AlertChannel.EMAIL: (SMTP_CONFIG, "email-enabled", "SMTP"),
    AlertChannel.SMS: (TWILIO_CONFIG, "sms-enabled", "Twilio"),
    AlertChannel.CALL: (TWILIO_CONFIG, "call-enabled", "Twilio"),
}

METERED_CHANNELS = frozenset({AlertChannel.CALL, AlertChannel.SMS})

NOTIFICATION_TOGGLE_DEFAULTS: dict[str, bool] = {
    "send_created_incident_notification_email": True,
    "send_created_incident_notification_sms": True,
    "send_acknowledged_incident_notification_email": True,
    "send_acknowledged_incident_notification_sms": True,
    "send_resolved_incident_notification_email": True,
    "send_resolved_incident_notification_sms": True,
    "enable_investigation_note_notification_email": True,
    "enable_investigation_note_notification_sms": True,
    "enable_investigation_note_notification_webhook": True,
    "send_new_scheduled_event_notification_email": True,
    "send_new_scheduled_event_notification_sms": True,
    "send_scheduled_event_resolved_notification_email": True,
    "send_scheduled_event_resolved_notification_sms": True,
    "send_scheduled_event_cancelled_notification_email": True,
    "send_scheduled_event_cancelled_notification_sms": True,
    "send_scheduled_event_note_notification_email": True,
    "send_scheduled_event_note_notification_sms": True,
}


@dataclass
class ChannelGate:
    """Outcome of the configuration gates for one channel.

    ``custom_settings`` is True when the project brings its own provider
    credentials, which exempts it from hosted-mode compliance and billing.
    """

    allowed: bool
    custom_settings: bool
    message: str | None = None


async def get_global_config(db: AsyncSession, name: str) -> GlobalConfig | None:
    result = await db.execute(select(GlobalConfig).where(GlobalConfig.name == name))
    return result.scalar_one_or_none()


async def get_global_alert_limit(db: AsyncSession) -> int | None:
    """Daily call/SMS limit configured on the admin dashboard."""
    config = await get_global_config(db, TWILIO_CONFIG)
    if config is None or not config.value:
        return None
    limit = config.value.get("alert-limit")
    if limit is None or limit == "":
        return None
    return int(limit)


def project_toggle(project: Project, name: str) -> bool:
    """Read a subscriber notification switch, falling back to its default."""
    toggles = project.notification_toggles or {}
    if name in toggles:
        return bool(toggles[name])
    return NOTIFICATION_TOGGLE_DEFAULTS.get(name, True)


async def has_custom_settings(
    providers: ProviderRegistry,
    project: Project,
    channel: AlertChannel,
) -> bool:
    if channel == AlertChannel.EMAIL:
        return await providers.mail.has_custom_settings(project.id)
    return await providers.sms_voice.has_custom_settings(project.id)


async def check_channel_configuration(
    db: AsyncSession,
    providers: ProviderRegistry,
    project: Project,
    channel: AlertChannel,
) -> ChannelGate:
    """Apply the provider/admin/project configuration gates, in order.

    1. the provider is configured on the admin dashboard (or the project
       has custom credentials);
    2. the channel is enabled on the admin dashboard;
    3. for call/SMS in hosted mode without custom credentials, the
       project has phone alerts enabled.

    Args:
        db: Database session.
        providers: Provider registry, used to look up custom credentials.
        project: Project the alert is sent for.
        channel: Email, SMS or call.

    Returns:
        ChannelGate with the first failing gate's message, if any.
    """
    config_name, enabled_flag, label = CHANNEL_SETTINGS[channel]
    custom = await has_custom_settings(providers, project, channel)
    if custom:
        return ChannelGate(allowed=True, custom_settings=True)

    config = await get_global_config(db, config_name)
    enabled_globally = bool(config is not None and config.value and config.value.get(enabled_flag))

    if config is None:
        return ChannelGate(
            allowed=False,
            custom_settings=False,
            message=f"{label} Settings not found on Admin Dashboard",
        )
    if not enabled_globally:
        return ChannelGate(
            allowed=False,
            custom_settings=False,
            message="Alert Disabled on Admin Dashboard",
        )
    if channel in METERED_CHANNELS and settings.is_saas_service and not project.alert_enable:
        return ChannelGate(
            allowed=False,
            custom_settings=False,
            message="Alert Disabled for this project",
        )
    return ChannelGate(allowed=True, custom_settings=False)
