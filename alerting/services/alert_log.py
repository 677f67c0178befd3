"""Append-only audit log of on-call delivery attempts."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from alerting.logging_config import get_logger
from alerting.models.alert import Alert, AlertChannel, AlertEventType, AlertStatus

logger = get_logger(__name__)


async def record_alert(
    db: AsyncSession,
    *,
    project_id: uuid.UUID,
    incident_id: uuid.UUID,
    user_id: uuid.UUID,
    channel: AlertChannel,
    status: AlertStatus | None,
    event_type: AlertEventType = AlertEventType.IDENTIFIED,
    monitor_id: uuid.UUID | None = None,
    schedule_id: uuid.UUID | None = None,
    escalation_id: uuid.UUID | None = None,
    oncall_status_id: uuid.UUID | None = None,
    error: bool = False,
    error_message: str | None = None,
    alert_progress: str | None = None,
) -> Alert:
    """Write one audit row and commit it.

    Returns:
        The persisted Alert.
    """
    alert = Alert(
        project_id=project_id,
        incident_id=incident_id,
        user_id=user_id,
        monitor_id=monitor_id,
        schedule_id=schedule_id,
        escalation_id=escalation_id,
        oncall_status_id=oncall_status_id,
        channel=channel,
        status=status,
        event_type=event_type,
        error=error,
        error_message=error_message,
        alert_progress=alert_progress,
    )
    db.add(alert)
    await db.commit()

    logger.info(
        "Alert recorded",
        alert_id=str(alert.id),
        incident_id=str(incident_id),
        user_id=str(user_id),
        channel=channel.value,
        status=status.value if status else None,
        error_message=error_message,
    )
    return alert


async def soft_delete_alerts(db: AsyncSession, incident_id: uuid.UUID) -> int:
    """Mark every audit row of an incident as deleted.

    Returns:
        Number of rows marked.
    """
    result = await db.execute(
        update(Alert)
        .where(Alert.incident_id == incident_id, Alert.deleted.is_(False))
        .values(deleted=True, deleted_at=datetime.now(UTC))
    )
    await db.commit()
    return result.rowcount or 0


async def restore_alerts(db: AsyncSession, incident_id: uuid.UUID) -> int:
    """Undo :func:`soft_delete_alerts` for an incident.

    Returns:
        Number of rows restored.
    """
    result = await db.execute(
        update(Alert)
        .where(Alert.incident_id == incident_id, Alert.deleted.is_(True))
        .values(deleted=False, deleted_at=None)
    )
    await db.commit()
    restored = result.rowcount or 0
    if restored:
        logger.info("Alerts restored", incident_id=str(incident_id), count=restored)
    return restored
