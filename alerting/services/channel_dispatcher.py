"""Channel dispatcher: one delivery attempt through one channel.

Every attempt runs the eligibility gates in a fixed order and ends with
exactly one ``Alert`` audit row, whether it was gated, failed at the
provider, or delivered:

1. provider configured on the admin dashboard (or custom credentials)
2. channel enabled on the admin dashboard
3. call/SMS, hosted mode: phone alerts enabled for the project
4. call/SMS: recipient has a phone number
5. call/SMS, hosted mode: high-risk country policy
6. call/SMS, hosted mode: daily allowance and balance check
7. provider send

Dispatch is split in two halves. :func:`prepare_alert` runs the gates
and starts the provider call as an asyncio task; :func:`complete_alert`
awaits it and writes the audit row (and the charge for metered
channels). Callers await SMS and calls in place through
:func:`send_alert`, and start email and push first so they run while
the phone channels are busy. The provider task never touches the
database session, so only one coroutine uses the session at a time.
"""

import asyncio
import zoneinfo
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from alerting.config import settings
from alerting.logging_config import get_logger
from alerting.models.alert import Alert, AlertChannel, AlertEventType, AlertStatus
from alerting.models.monitor import Incident, Monitor
from alerting.models.oncall_status import OnCallScheduleStatus
from alerting.models.project import Project
from alerting.models.schedule import EscalationPolicy, Schedule
from alerting.models.user import User
from alerting.providers.base import MessageTemplate, OutboundMessage, ProviderRegistry
from alerting.services.alert_log import record_alert
from alerting.services.billing import billing_precheck, calc_sms_segments, charge_alert
from alerting.services.global_config import METERED_CHANNELS, check_channel_configuration
from alerting.services.phone_compliance import (
    complies_with_high_risk_config,
    compliance_error_message,
)

logger = get_logger(__name__)

NO_PHONE_NUMBER = "No phone number"
PUSH_NOT_ALLOWED = "Push Notification not allowed in the user dashboard"

TEAM_TEMPLATES: dict[AlertEventType, MessageTemplate] = {
    AlertEventType.IDENTIFIED: MessageTemplate.INCIDENT_CREATED,
    AlertEventType.ACKNOWLEDGED: MessageTemplate.INCIDENT_ACKNOWLEDGED,
    AlertEventType.RESOLVED: MessageTemplate.INCIDENT_RESOLVED,
}

PUSH_TITLES: dict[AlertEventType, str] = {
    AlertEventType.IDENTIFIED: "is created",
    AlertEventType.ACKNOWLEDGED: "is acknowledged",
    AlertEventType.RESOLVED: "is resolved",
}


@dataclass
class AlertContext:
    """Everything needed to alert one team member about one incident."""

    incident: Incident
    monitor: Monitor
    project: Project
    user: User
    schedule: Schedule | None = None
    escalation: EscalationPolicy | None = None
    oncall_status: OnCallScheduleStatus | None = None
    event_type: AlertEventType = AlertEventType.IDENTIFIED
    # "current/total" reminder snapshot; None on the first reminder
    progress: str | None = None


@dataclass
class DeliveryOutcome:
    """What the provider task reported."""

    success: bool
    message: str | None = None
    body: str | None = None


@dataclass
class DispatchHandle:
    """An attempt that has passed (or failed) its gates.

    A handle without a task was gated: completing it records
    ``gated_status`` and ``gated_message``. Completing a handle twice
    returns the first audit row.
    """

    channel: AlertChannel
    ctx: AlertContext
    task: asyncio.Task | None = None
    gated_status: AlertStatus | None = None
    gated_message: str | None = None
    phone_number: str | None = None
    billable: bool = False
    alert: Alert | None = field(default=None, repr=False)

    @property
    def gated(self) -> bool:
        return self.task is None


def _incident_time(incident: Incident, user: User) -> str:
    created = incident.created_at
    if created is None:
        return ""
    if user.timezone:
        try:
            created = created.astimezone(zoneinfo.ZoneInfo(user.timezone))
        except (KeyError, ValueError, zoneinfo.ZoneInfoNotFoundError):
            pass
    return created.strftime("%A, %B %d, %Y %I:%M %p")


def build_message_context(ctx: AlertContext) -> dict[str, Any]:
    """Template variables for team member notifications."""
    incident, monitor, project = ctx.incident, ctx.monitor, ctx.project
    created_by = "the monitoring system" if not incident.manually_created else "a team member"
    reason = (
        incident.reason.split("\n")
        if incident.reason
        else [f"This incident was created by {created_by}"]
    )
    return {
        "incident_time": _incident_time(incident, ctx.user),
        "incident_id": f"#{incident.id_number}",
        "incident_type": incident.incident_type,
        "reason": reason,
        "criterion_name": incident.criterion_name if not incident.manually_created else "",
        "monitor_name": monitor.name,
        "monitor_url": monitor.url,
        "method": (monitor.method or "GET").upper() if monitor.url else None,
        "component_name": monitor.component_name,
        "project_name": project.name,
        "first_name": (ctx.user.name or "").split(" ")[0],
        "view_url": (
            f"{settings.dashboard_host}/project/{project.slug}/incidents/{incident.id_number}"
        ),
        "acknowledge_url": (
            f"{settings.api_host}/incident/{project.id}/acknowledge/{incident.id}"
        ),
        "resolve_url": f"{settings.api_host}/incident/{project.id}/resolve/{incident.id}",
        "progress": ctx.progress,
    }


def build_push_payload(ctx: AlertContext) -> dict[str, str]:
    prefix = f"Reminder {ctx.progress}: " if ctx.progress else ""
    action = PUSH_TITLES[ctx.event_type]
    return {
        "title": f"{prefix}Incident #{ctx.incident.id_number} {action}",
        "body": "Please acknowledge or resolve this incident on the dashboard.",
    }


async def _deliver_push(
    providers: ProviderRegistry,
    subscriptions: list[dict[str, Any]],
    payload: dict[str, Any],
) -> DeliveryOutcome:
    results = await asyncio.gather(
        *(providers.push.send(sub, payload) for sub in subscriptions),
        return_exceptions=True,
    )
    failures = [r for r in results if isinstance(r, BaseException)]
    if len(failures) < len(results):
        if failures:
            logger.warning(
                "Some push subscriptions failed",
                failed=len(failures),
                total=len(results),
            )
        return DeliveryOutcome(success=True)
    return DeliveryOutcome(success=False, message=str(failures[0]) or type(failures[0]).__name__)


async def _deliver(
    providers: ProviderRegistry,
    channel: AlertChannel,
    message: OutboundMessage,
    subscriptions: list[dict[str, Any]] | None = None,
) -> DeliveryOutcome:
    """Provider half of an attempt. Never raises and never uses the session."""
    try:
        if channel == AlertChannel.EMAIL:
            await providers.mail.send(message)
            return DeliveryOutcome(success=True)

        if channel == AlertChannel.PUSH:
            return await _deliver_push(providers, subscriptions or [], message.context)

        if channel == AlertChannel.SMS:
            result = await providers.sms_voice.send_sms(message)
        else:
            result = await providers.sms_voice.place_call(message)

        if result.rejected:
            return DeliveryOutcome(success=False, message=result.message)
        return DeliveryOutcome(success=True, body=result.body)
    except Exception as e:
        logger.warning(
            "Provider send failed",
            channel=channel.value,
            recipient=message.recipient,
            error=str(e),
        )
        return DeliveryOutcome(success=False, message=str(e) or type(e).__name__)


def _gated(
    channel: AlertChannel,
    ctx: AlertContext,
    message: str,
    status: AlertStatus | None = None,
) -> DispatchHandle:
    return DispatchHandle(
        channel=channel,
        ctx=ctx,
        gated_status=status,
        gated_message=message,
    )


async def prepare_alert(
    db: AsyncSession,
    providers: ProviderRegistry,
    channel: AlertChannel,
    ctx: AlertContext,
) -> DispatchHandle:
    """Run the gates and start the provider send.

    Args:
        db: Database session.
        providers: Provider registry.
        channel: Channel to send through.
        ctx: Alert context.

    Returns:
        A DispatchHandle to pass to :func:`complete_alert`.
    """
    template = TEAM_TEMPLATES[ctx.event_type]

    if channel == AlertChannel.PUSH:
        subscriptions = list(ctx.user.push_subscriptions or [])
        if not subscriptions:
            return _gated(channel, ctx, PUSH_NOT_ALLOWED, AlertStatus.CANNOT_SEND)
        message = OutboundMessage(
            template=template,
            recipient=str(ctx.user.id),
            project_id=ctx.project.id,
            context=build_push_payload(ctx),
        )
        task = asyncio.create_task(_deliver(providers, channel, message, subscriptions))
        return DispatchHandle(channel=channel, ctx=ctx, task=task)

    gate = await check_channel_configuration(db, providers, ctx.project, channel)
    if not gate.allowed:
        return _gated(channel, ctx, gate.message)

    recipient = ctx.user.email
    billable = False
    if channel in METERED_CHANNELS:
        recipient = ctx.user.alert_phone_number
        if not recipient:
            return _gated(channel, ctx, NO_PHONE_NUMBER)

        billable = settings.is_saas_service and not gate.custom_settings
        if billable:
            if not complies_with_high_risk_config(ctx.project, recipient):
                return _gated(channel, ctx, compliance_error_message(channel, recipient))
            status = await billing_precheck(
                db, providers, ctx.project, ctx.user.id, recipient, channel
            )
            if not status.success:
                return _gated(channel, ctx, status.message)

    message = OutboundMessage(
        template=template,
        recipient=recipient,
        project_id=ctx.project.id,
        context=build_message_context(ctx),
    )
    task = asyncio.create_task(_deliver(providers, channel, message))
    return DispatchHandle(
        channel=channel,
        ctx=ctx,
        task=task,
        phone_number=recipient if channel in METERED_CHANNELS else None,
        billable=billable,
    )


async def _record(
    db: AsyncSession,
    handle: DispatchHandle,
    status: AlertStatus | None,
    error: bool = False,
    error_message: str | None = None,
) -> Alert:
    ctx = handle.ctx
    return await record_alert(
        db,
        project_id=ctx.project.id,
        incident_id=ctx.incident.id,
        user_id=ctx.user.id,
        monitor_id=ctx.monitor.id,
        schedule_id=ctx.schedule.id if ctx.schedule else None,
        escalation_id=ctx.escalation.id if ctx.escalation else None,
        oncall_status_id=ctx.oncall_status.id if ctx.oncall_status else None,
        channel=handle.channel,
        status=status,
        event_type=ctx.event_type,
        error=error,
        error_message=error_message,
        alert_progress=ctx.progress,
    )


async def complete_alert(
    db: AsyncSession,
    providers: ProviderRegistry,
    handle: DispatchHandle,
) -> Alert:
    """Await the provider send and write the audit row.

    Successful metered sends in hosted mode are charged afterwards; a
    failed charge is logged and does not change the recorded outcome.

    Returns:
        The audit row for this attempt.
    """
    if handle.alert is not None:
        return handle.alert

    if handle.gated:
        handle.alert = await _record(
            db,
            handle,
            handle.gated_status,
            error=True,
            error_message=handle.gated_message,
        )
        return handle.alert

    outcome = await handle.task
    if not outcome.success:
        handle.alert = await _record(
            db,
            handle,
            AlertStatus.CANNOT_SEND,
            error=True,
            error_message=outcome.message,
        )
        return handle.alert

    handle.alert = await _record(db, handle, AlertStatus.SUCCESS)

    if handle.billable and handle.phone_number:
        segments = calc_sms_segments(outcome.body) if handle.channel == AlertChannel.SMS else 1
        await charge_alert(
            db,
            providers.billing,
            handle.ctx.project,
            handle.ctx.user.id,
            handle.channel,
            handle.phone_number,
            segments=segments,
            alert_id=handle.alert.id,
            monitor_id=handle.ctx.monitor.id,
            incident_id=handle.ctx.incident.id,
        )

    return handle.alert


async def send_alert(
    db: AsyncSession,
    providers: ProviderRegistry,
    channel: AlertChannel,
    ctx: AlertContext,
) -> Alert:
    """Send one alert and wait for its outcome."""
    handle = await prepare_alert(db, providers, channel, ctx)
    return await complete_alert(db, providers, handle)


async def record_not_on_duty(
    db: AsyncSession,
    channel: AlertChannel,
    ctx: AlertContext,
) -> Alert:
    """Audit a skipped attempt for an off-duty member."""
    handle = DispatchHandle(channel=channel, ctx=ctx)
    return await _record(db, handle, AlertStatus.NOT_ON_DUTY)
