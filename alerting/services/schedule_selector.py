"""Resolve which on-call schedules apply to an incident."""

import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from alerting.logging_config import get_logger
from alerting.models.monitor import Incident, Monitor
from alerting.models.oncall_status import OnCallScheduleStatus
from alerting.models.schedule import Schedule

logger = get_logger(__name__)


def _criterion_schedule_ids(monitor: Monitor) -> list[uuid.UUID]:
    criterion = monitor.last_matched_criterion or {}
    ids = []
    for raw in criterion.get("schedule_ids") or []:
        try:
            ids.append(uuid.UUID(str(raw)))
        except ValueError:
            logger.warning(
                "Ignoring malformed schedule id on matched criterion",
                monitor_id=str(monitor.id),
                schedule_id=str(raw),
            )
    return ids


async def get_schedules_for_alerts(
    db: AsyncSession,
    incident: Incident,
    monitor: Monitor,
) -> list[Schedule]:
    """Get the schedules to alert for an incident.

    First non-empty source wins:

    1. the matched criterion's ``schedule_ids``, unless the incident
       was created manually;
    2. schedules bound to the monitor;
    3. the project's default schedules.

    Args:
        db: Database session.
        incident: The incident being alerted.
        monitor: The monitor the incident belongs to.

    Returns:
        Schedules in a stable order (criterion order for source 1).
    """
    criterion_ids = _criterion_schedule_ids(monitor)
    if not incident.manually_created and criterion_ids:
        result = await db.execute(select(Schedule).where(Schedule.id.in_(criterion_ids)))
        by_id = {schedule.id: schedule for schedule in result.scalars().all()}
        return [by_id[sid] for sid in criterion_ids if sid in by_id]

    result = await db.execute(
        select(Schedule)
        .where(Schedule.project_id == monitor.project_id)
        .order_by(Schedule.created_at)
    )
    project_schedules = list(result.scalars().all())

    monitor_key = str(monitor.id)
    bound = [s for s in project_schedules if monitor_key in (s.monitor_ids or [])]
    if bound:
        return bound

    return [s for s in project_schedules if s.is_default]


async def create_placeholder_status(
    db: AsyncSession,
    incident: Incident,
) -> OnCallScheduleStatus | None:
    """Record that no schedule applies to an incident.

    Creates an ``OnCallScheduleStatus`` with no schedule so the incident
    is visibly marked as having no one to notify.

    Returns:
        The placeholder, or None if one already exists.
    """
    existing = await db.execute(
        select(OnCallScheduleStatus).where(
            OnCallScheduleStatus.incident_id == incident.id,
            OnCallScheduleStatus.schedule_id.is_(None),
        )
    )
    if existing.scalars().first() is not None:
        return None

    placeholder = OnCallScheduleStatus(
        project_id=incident.project_id,
        incident_id=incident.id,
        schedule_id=None,
        active_escalation_id=None,
        incident_acknowledged=False,
        is_on_duty=False,
        escalations=[],
    )
    db.add(placeholder)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return None

    logger.info(
        "No schedule applies to incident",
        incident_id=str(incident.id),
        project_id=str(incident.project_id),
    )
    return placeholder
