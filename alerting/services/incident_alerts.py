"""Incident lifecycle workflows for on-call teams.

Entry points called when an incident is created, acknowledged or
resolved, the periodic reminder tick, and the communication SLA warnings
sent to the project team. Each invocation gets its own
correlation id so the audit rows and log lines of one run can be traced.
"""

import uuid
from datetime import datetime, time

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from alerting.config import settings
from alerting.database import restore_session
from alerting.logging_config import get_logger, new_correlation_id
from alerting.models.alert import AlertChannel, AlertEventType
from alerting.models.monitor import Incident, Monitor
from alerting.models.oncall_status import OnCallScheduleStatus
from alerting.models.project import Project
from alerting.models.schedule import Schedule
from alerting.models.sla import IncidentCommunicationSla
from alerting.models.user import User
from alerting.providers.base import MessageTemplate, OutboundMessage, ProviderRegistry
from alerting.schemas.oncall import ProjectMemberSchema
from alerting.services.channel_dispatcher import (
    AlertContext,
    record_not_on_duty,
    send_alert,
)
from alerting.services.duty import is_on_duty
from alerting.services.escalation_engine import (
    EscalationError,
    EscalationStep,
    advance,
    get_policy,
    resolve_team,
)
from alerting.services.global_config import check_channel_configuration
from alerting.services.schedule_selector import (
    create_placeholder_status,
    get_schedules_for_alerts,
)

logger = get_logger(__name__)


async def _load_incident_refs(
    db: AsyncSession,
    incident: Incident,
) -> tuple[Monitor, Project]:
    if incident.monitor_id is None:
        raise EscalationError(f"Incident {incident.id} has no monitor")
    monitor = await db.get(Monitor, incident.monitor_id)
    if monitor is None:
        raise EscalationError(f"Monitor {incident.monitor_id} not found")
    project = await db.get(Project, incident.project_id)
    if project is None:
        raise EscalationError(f"Project {incident.project_id} not found")
    return monitor, project


async def send_created_incident(
    db: AsyncSession,
    providers: ProviderRegistry,
    incident: Incident,
    now: time | datetime | None = None,
) -> list[EscalationStep]:
    """Start on-call alerting for a new incident.

    Runs the first escalation tick on every schedule that applies. When
    no schedule applies, a placeholder progress record marks the
    incident as having no one to notify. A failing schedule is logged and
    the remaining schedules still run.

    Args:
        db: Database session.
        providers: Provider registry.
        incident: The newly created incident.
        now: Time of day for duty checks; defaults to the duty clock.

    Returns:
        One EscalationStep per schedule that ran.

    Raises:
        EscalationError: If the incident's monitor or project is missing.
    """
    correlation_id = new_correlation_id()
    try:
        monitor, _ = await _load_incident_refs(db, incident)
        schedules = await get_schedules_for_alerts(db, incident, monitor)

        logger.info(
            "Alerting on-call teams for new incident",
            incident_id=str(incident.id),
            schedule_count=len(schedules),
            correlation_id=correlation_id,
        )

        if not schedules:
            await create_placeholder_status(db, incident)
            return []

        steps: list[EscalationStep] = []
        for schedule in schedules:
            try:
                steps.append(await advance(db, providers, incident, schedule, monitor, now=now))
            except Exception:
                logger.exception(
                    "Escalation failed for schedule",
                    incident_id=str(incident.id),
                    schedule_id=str(schedule.id),
                )
                await restore_session(db)
        return steps
    except Exception:
        logger.exception(
            "Failed to alert on-call teams for new incident",
            incident_id=str(incident.id),
        )
        raise


async def _mark_statuses_acknowledged(db: AsyncSession, incident_id: uuid.UUID) -> None:
    await db.execute(
        update(OnCallScheduleStatus)
        .where(OnCallScheduleStatus.incident_id == incident_id)
        .values(incident_acknowledged=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _notify_active_teams(
    db: AsyncSession,
    providers: ProviderRegistry,
    incident: Incident,
    event_type: AlertEventType,
    now: time | datetime | None = None,
) -> int:
    """Email the active policy's team on every schedule of the incident.

    Returns:
        Number of team members emailed.
    """
    monitor, project = await _load_incident_refs(db, incident)
    await _mark_statuses_acknowledged(db, incident.id)

    result = await db.execute(
        select(OnCallScheduleStatus)
        .where(
            OnCallScheduleStatus.incident_id == incident.id,
            OnCallScheduleStatus.schedule_id.is_not(None),
        )
        .execution_options(populate_existing=True)
    )
    statuses = list(result.scalars().all())

    emailed = 0
    for status in statuses:
        schedule = await db.get(Schedule, status.schedule_id)
        policy = await get_policy(db, status.active_escalation_id)
        if schedule is None or policy is None:
            continue

        for entry in await resolve_team(db, policy):
            ctx = AlertContext(
                incident=incident,
                monitor=monitor,
                project=project,
                user=entry.user,
                schedule=schedule,
                escalation=policy,
                oncall_status=status,
                event_type=event_type,
            )
            try:
                on_duty = is_on_duty(
                    entry.start_time,
                    entry.end_time,
                    now=now,
                    user_timezone=entry.user.timezone,
                )
                if not on_duty:
                    await record_not_on_duty(db, AlertChannel.EMAIL, ctx)
                    continue
                await send_alert(db, providers, AlertChannel.EMAIL, ctx)
                emailed += 1
            except Exception:
                logger.exception(
                    "Failed to notify team member",
                    user_id=str(entry.user.id),
                    incident_id=str(incident.id),
                    event_type=event_type.value,
                )
                await restore_session(db)
    return emailed


async def send_acknowledged_incident(
    db: AsyncSession,
    providers: ProviderRegistry,
    incident: Incident,
    now: time | datetime | None = None,
) -> int:
    """Stop escalation and tell the active teams the incident was acknowledged."""
    correlation_id = new_correlation_id()
    try:
        emailed = await _notify_active_teams(
            db, providers, incident, AlertEventType.ACKNOWLEDGED, now=now
        )
        logger.info(
            "Incident acknowledged, teams notified",
            incident_id=str(incident.id),
            emailed=emailed,
            correlation_id=correlation_id,
        )
        return emailed
    except Exception:
        logger.exception(
            "Failed to notify teams of acknowledged incident",
            incident_id=str(incident.id),
        )
        raise


async def send_resolved_incident(
    db: AsyncSession,
    providers: ProviderRegistry,
    incident: Incident,
    now: time | datetime | None = None,
) -> int:
    """Stop escalation and tell the active teams the incident was resolved."""
    correlation_id = new_correlation_id()
    try:
        emailed = await _notify_active_teams(
            db, providers, incident, AlertEventType.RESOLVED, now=now
        )
        logger.info(
            "Incident resolved, teams notified",
            incident_id=str(incident.id),
            emailed=emailed,
            correlation_id=correlation_id,
        )
        return emailed
    except Exception:
        logger.exception(
            "Failed to notify teams of resolved incident",
            incident_id=str(incident.id),
        )
        raise


async def process_pending_reminders(
    db: AsyncSession,
    providers: ProviderRegistry,
    now: time | datetime | None = None,
) -> int:
    """Run one reminder tick for every open escalation.

    Only progress records that are neither acknowledged nor exhausted,
    belong to a schedule, and whose incident is still open are ticked.

    Returns:
        Number of escalations ticked without error.
    """
    new_correlation_id()
    result = await db.execute(
        select(OnCallScheduleStatus.incident_id, OnCallScheduleStatus.schedule_id)
        .join(Incident, Incident.id == OnCallScheduleStatus.incident_id)
        .where(
            OnCallScheduleStatus.schedule_id.is_not(None),
            OnCallScheduleStatus.incident_acknowledged.is_(False),
            OnCallScheduleStatus.alerted_everyone.is_(False),
            Incident.acknowledged.is_(False),
            Incident.resolved.is_(False),
        )
    )
    pending = list(result.all())

    ticked = 0
    for incident_id, schedule_id in pending:
        try:
            incident = await db.get(Incident, incident_id)
            schedule = await db.get(Schedule, schedule_id)
            if incident is None or schedule is None or incident.monitor_id is None:
                continue
            monitor = await db.get(Monitor, incident.monitor_id)
            if monitor is None:
                continue
            await advance(db, providers, incident, schedule, monitor, now=now)
            ticked += 1
        except Exception:
            logger.exception(
                "Reminder tick failed",
                incident_id=str(incident_id),
                schedule_id=str(schedule_id),
            )
            await restore_session(db)

    if pending:
        logger.info(
            "Reminder tick completed",
            pending=len(pending),
            ticked=ticked,
        )
    return ticked


def format_duration(seconds: int | float) -> str:
    """``3725`` -> ``"1 hour, 2 minutes, 5 seconds"``."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    for amount, unit in ((hours, "hour"), (minutes, "minute"), (secs, "second")):
        if amount:
            parts.append(f"{amount} {unit}{'s' if amount != 1 else ''}")
    return ", ".join(parts) or "0 seconds"


async def project_team(db: AsyncSession, project: Project) -> list[User]:
    """Users listed in ``project.members``, in order; unknown ids are skipped."""
    user_ids: list[uuid.UUID] = []
    for raw in project.members or []:
        try:
            member = ProjectMemberSchema.model_validate(raw)
        except ValidationError:
            logger.warning("Skipping malformed project member", project_id=str(project.id))
            continue
        if member.user_id not in user_ids:
            user_ids.append(member.user_id)
    if not user_ids:
        return []

    result = await db.execute(select(User).where(User.id.in_(user_ids)))
    users = {user.id: user for user in result.scalars().all()}
    return [users[user_id] for user_id in user_ids if user_id in users]


async def send_sla_notification(
    db: AsyncSession,
    providers: ProviderRegistry,
    incident: Incident,
    sla: IncidentCommunicationSla,
    alert_time: int,
    breached: bool = False,
) -> int:
    """Email the project team that a communication SLA is close to, or past, breach.

    Nothing is sent unless email is enabled on the admin dashboard or the
    project has its own SMTP settings. No audit rows are written.

    Args:
        db: Database session.
        providers: Provider registry.
        incident: The incident the SLA applies to.
        sla: The SLA being tracked.
        alert_time: Seconds left before the breach (ignored once breached).
        breached: Whether the SLA has already been breached.

    Returns:
        Number of team members emailed.
    """
    new_correlation_id()
    try:
        project = await db.get(Project, incident.project_id)
        if project is None:
            raise EscalationError(f"Project {incident.project_id} not found")

        team = await project_team(db, project)
        if not team:
            return 0

        gate = await check_channel_configuration(db, providers, project, AlertChannel.EMAIL)
        if not gate.allowed:
            logger.info(
                "SLA notification skipped",
                incident_id=str(incident.id),
                reason=gate.message,
            )
            return 0

        context = {
            "incident_sla": sla.name,
            "project_name": project.name,
            "incident_id": f"#{incident.id_number}",
            "reason": incident.reason,
            "incident_url": (
                f"{settings.dashboard_host}/project/{project.slug}/incidents/{incident.id_number}"
            ),
            "incident_sla_timeline": format_duration(sla.duration * 60),
        }
        template = MessageTemplate.SLA_BREACHED
        if not breached:
            template = MessageTemplate.SLA_ABOUT_TO_BREACH
            context["incident_sla_remaining"] = format_duration(alert_time)

        for user in team:
            await providers.mail.send(
                OutboundMessage(
                    template=template,
                    recipient=user.email,
                    project_id=project.id,
                    context={**context, "name": user.name},
                )
            )

        logger.info(
            "SLA notification sent",
            incident_id=str(incident.id),
            breached=breached,
            emailed=len(team),
        )
        return len(team)
    except Exception:
        logger.exception(
            "Failed to send SLA notification",
            incident_id=str(incident.id),
        )
        raise
