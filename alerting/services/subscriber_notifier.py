"""Notify public status-page subscribers of incidents and maintenance.

Every event kind is described by one :class:`EventRoute` in
:data:`EVENT_ROUTES`: its audit label, the templates the providers render,
and the project switches that control each channel. Per subscriber the
channels run in a fixed order:

1. webhook subscribers get a webhook; a webhook that is not delivered
   falls back to email;
2. email subscribers get an email;
3. SMS subscribers get an SMS, through the same configuration,
   compliance and billing gates as on-call alerts (billed to the project
   owner).

Rows are created ``Pending`` and updated in place once the provider
answers. Failures are recorded on the row and never stop the fan-out.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerting.config import settings
from alerting.database import restore_session
from alerting.logging_config import get_logger, new_correlation_id
from alerting.models.alert import AlertChannel
from alerting.models.monitor import Incident, Monitor, ScheduledEvent
from alerting.models.project import Project
from alerting.models.subscriber import (
    StatusPage,
    Subscriber,
    SubscriberAlert,
    SubscriberAlertStatus,
)
from alerting.providers.base import MessageTemplate, OutboundMessage, ProviderRegistry
from alerting.services.billing import billing_precheck, calc_sms_segments, charge_alert
from alerting.services.global_config import check_channel_configuration, project_toggle
from alerting.services.phone_compliance import (
    complies_with_high_risk_config,
    compliance_error_message,
)

logger = get_logger(__name__)


class NotificationEvent(str, enum.Enum):
    INCIDENT_CREATED = "incident_created"
    INCIDENT_ACKNOWLEDGED = "incident_acknowledged"
    INCIDENT_RESOLVED = "incident_resolved"
    INVESTIGATION_NOTE = "investigation_note"
    MAINTENANCE_CREATED = "maintenance_created"
    MAINTENANCE_RESOLVED = "maintenance_resolved"
    MAINTENANCE_CANCELLED = "maintenance_cancelled"
    MAINTENANCE_NOTE = "maintenance_note"


class ToggleMode(str, enum.Enum):
    """When a disabled project switch takes effect.

    ``BEFORE_SEND``: an error row is written instead of a Pending row.
    ``AFTER_PENDING``: the Pending row is written and then set Disabled.
    """

    BEFORE_SEND = "before_send"
    AFTER_PENDING = "after_pending"


@dataclass(frozen=True)
class EventRoute:
    """How one event kind reaches subscribers."""

    # Stored as SubscriberAlert.event_type; "{status}" is filled from the note
    audit_label: str
    mail_template: MessageTemplate
    sms_template: MessageTemplate
    email_toggle: str
    sms_toggle: str
    toggle_mode: ToggleMode
    # Prefix of "<label> Email Notification Disabled"
    disabled_label: str = ""
    webhook_toggle: str | None = None
    webhook: bool = True
    requires_enabled_status_page: bool = False
    maintenance: bool = False


EVENT_ROUTES: dict[NotificationEvent, EventRoute] = {
    NotificationEvent.INCIDENT_CREATED: EventRoute(
        audit_label="identified",
        mail_template=MessageTemplate.SUBSCRIBER_INCIDENT_CREATED,
        sms_template=MessageTemplate.SUBSCRIBER_INCIDENT_CREATED,
        email_toggle="send_created_incident_notification_email",
        sms_toggle="send_created_incident_notification_sms",
        toggle_mode=ToggleMode.AFTER_PENDING,
        requires_enabled_status_page=True,
    ),
    NotificationEvent.INCIDENT_ACKNOWLEDGED: EventRoute(
        audit_label="acknowledged",
        mail_template=MessageTemplate.SUBSCRIBER_INCIDENT_ACKNOWLEDGED,
        sms_template=MessageTemplate.SUBSCRIBER_INCIDENT_ACKNOWLEDGED,
        email_toggle="send_acknowledged_incident_notification_email",
        sms_toggle="send_acknowledged_incident_notification_sms",
        toggle_mode=ToggleMode.AFTER_PENDING,
    ),
    NotificationEvent.INCIDENT_RESOLVED: EventRoute(
        audit_label="resolved",
        mail_template=MessageTemplate.SUBSCRIBER_INCIDENT_RESOLVED,
        sms_template=MessageTemplate.SUBSCRIBER_INCIDENT_RESOLVED,
        email_toggle="send_resolved_incident_notification_email",
        sms_toggle="send_resolved_incident_notification_sms",
        toggle_mode=ToggleMode.AFTER_PENDING,
    ),
    NotificationEvent.INVESTIGATION_NOTE: EventRoute(
        audit_label="Investigation note {status}",
        mail_template=MessageTemplate.SUBSCRIBER_INVESTIGATION_NOTE,
        sms_template=MessageTemplate.SUBSCRIBER_INVESTIGATION_NOTE,
        email_toggle="enable_investigation_note_notification_email",
        sms_toggle="enable_investigation_note_notification_sms",
        webhook_toggle="enable_investigation_note_notification_webhook",
        toggle_mode=ToggleMode.BEFORE_SEND,
        disabled_label="Investigation Note",
    ),
    NotificationEvent.MAINTENANCE_CREATED: EventRoute(
        audit_label="Scheduled maintenance created",
        mail_template=MessageTemplate.SUBSCRIBER_MAINTENANCE_CREATED,
        sms_template=MessageTemplate.SUBSCRIBER_MAINTENANCE_CREATED,
        email_toggle="send_new_scheduled_event_notification_email",
        sms_toggle="send_new_scheduled_event_notification_sms",
        toggle_mode=ToggleMode.BEFORE_SEND,
        disabled_label="Subscriber Scheduled Maintenance Created",
        webhook=False,
        maintenance=True,
    ),
    NotificationEvent.MAINTENANCE_RESOLVED: EventRoute(
        audit_label="Scheduled maintenance resolved",
        mail_template=MessageTemplate.SUBSCRIBER_MAINTENANCE_RESOLVED,
        sms_template=MessageTemplate.SUBSCRIBER_MAINTENANCE_RESOLVED,
        email_toggle="send_scheduled_event_resolved_notification_email",
        sms_toggle="send_scheduled_event_resolved_notification_sms",
        toggle_mode=ToggleMode.BEFORE_SEND,
        disabled_label="Subscriber Scheduled Maintenance Resolved",
        webhook=False,
        maintenance=True,
    ),
    NotificationEvent.MAINTENANCE_CANCELLED: EventRoute(
        audit_label="Scheduled maintenance cancelled",
        mail_template=MessageTemplate.SUBSCRIBER_MAINTENANCE_CANCELLED,
        sms_template=MessageTemplate.SUBSCRIBER_MAINTENANCE_CANCELLED,
        email_toggle="send_scheduled_event_cancelled_notification_email",
        sms_toggle="send_scheduled_event_cancelled_notification_sms",
        toggle_mode=ToggleMode.BEFORE_SEND,
        disabled_label="Subscriber Scheduled Maintenance Cancelled",
        webhook=False,
        maintenance=True,
    ),
    NotificationEvent.MAINTENANCE_NOTE: EventRoute(
        audit_label="Scheduled maintenance note created",
        mail_template=MessageTemplate.SUBSCRIBER_MAINTENANCE_NOTE,
        sms_template=MessageTemplate.SUBSCRIBER_MAINTENANCE_NOTE,
        email_toggle="send_scheduled_event_note_notification_email",
        sms_toggle="send_scheduled_event_note_notification_sms",
        toggle_mode=ToggleMode.BEFORE_SEND,
        disabled_label="Scheduled Maintenance Event Note",
        webhook=False,
        maintenance=True,
    ),
}


@dataclass
class StatusNote:
    """A status-page note posted on an incident or maintenance event."""

    content: str
    incident_state: str = ""
    status: str = "created"


@dataclass
class SubscriberDelivery:
    """One subscriber's share of a fan-out."""

    route: EventRoute
    project: Project
    monitor: Monitor
    subscriber: Subscriber
    subject: Incident | ScheduledEvent
    note: StatusNote | None
    status_page: StatusPage | None
    total_subscribers: int
    batch_id: uuid.UUID

    @property
    def event_type(self) -> str:
        status = self.note.status if self.note else "created"
        return self.route.audit_label.format(status=status)


def _downtime(since: datetime | None) -> str:
    """Human readable time since ``since`` ("2 hours 5 minutes")."""
    if since is None:
        return ""
    if since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    minutes = max(0, int((datetime.now(UTC) - since).total_seconds() // 60))
    days, rest = divmod(minutes, 60 * 24)
    hours, minutes = divmod(rest, 60)
    parts = []
    if days:
        parts.append(f"{days} day{'s' if days != 1 else ''}")
    if hours:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    if minutes or not parts:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    return " ".join(parts)


def status_page_url(status_page: StatusPage | None) -> str | None:
    if status_page is None:
        return None
    if status_page.domain:
        return f"{status_page.domain}/status-page/{status_page.id}"
    return f"{settings.status_host}/status-page/{status_page.id}"


def build_subscriber_context(
    delivery: SubscriberDelivery,
    alert_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Template variables shared by subscriber mail and SMS."""
    subject, monitor, project = delivery.subject, delivery.monitor, delivery.project
    context: dict[str, Any] = {
        "project_name": project.name,
        "monitor_name": monitor.name,
        "component_name": monitor.component_name,
        "status_page_url": status_page_url(delivery.status_page),
        "unsubscribe_url": (
            f"{settings.home_host}/unsubscribe/{monitor.id}/{delivery.subscriber.id}"
        ),
        "reply_address": project.reply_address,
        "custom_fields": {"monitor": dict(monitor.custom_fields or {})},
    }
    if alert_id is not None:
        context["track_viewed_url"] = (
            f"{settings.api_host}/subscriberAlert/{project.id}/{alert_id}/viewed"
        )

    if isinstance(subject, Incident):
        context.update(
            {
                "incident_id": f"#{subject.id_number}",
                "incident_type": subject.incident_type,
                "incident_url": (
                    f"{settings.dashboard_host}/project/{project.slug}"
                    f"/incidents/{subject.id_number}"
                ),
                "length": _downtime(subject.created_at),
            }
        )
        context["custom_fields"]["incident"] = dict(subject.custom_fields or {})
    else:
        context.update(
            {
                "event_name": subject.name,
                "event_description": subject.description,
                "event_start": subject.start_date.isoformat() if subject.start_date else None,
                "event_end": subject.end_date.isoformat() if subject.end_date else None,
            }
        )

    if delivery.note is not None:
        context.update(
            {
                "note": delivery.note.content,
                "incident_state": delivery.note.incident_state,
                "note_status": delivery.note.status,
            }
        )
    return context


def build_webhook_payload(delivery: SubscriberDelivery) -> dict[str, Any]:
    incident = delivery.subject
    payload: dict[str, Any] = {
        "event": delivery.event_type,
        "project": {"id": str(delivery.project.id), "name": delivery.project.name},
        "monitor": {"id": str(delivery.monitor.id), "name": delivery.monitor.name},
        "component": delivery.monitor.component_name,
        "subscriber_id": str(delivery.subscriber.id),
        "incident": {
            "id": str(incident.id),
            "id_number": incident.id_number,
            "type": incident.incident_type,
            "acknowledged": incident.acknowledged,
            "resolved": incident.resolved,
        },
        "downtime": _downtime(incident.created_at),
    }
    if delivery.note is not None:
        payload["note"] = {
            "content": delivery.note.content,
            "incident_state": delivery.note.incident_state,
            "status": delivery.note.status,
        }
    return payload


async def _create_row(
    db: AsyncSession,
    delivery: SubscriberDelivery,
    channel: AlertChannel,
    status: SubscriberAlertStatus | None,
    error: bool = False,
    error_message: str | None = None,
) -> SubscriberAlert:
    subject = delivery.subject
    row = SubscriberAlert(
        project_id=delivery.project.id,
        subscriber_id=delivery.subscriber.id,
        incident_id=subject.id if isinstance(subject, Incident) else None,
        scheduled_event_id=subject.id if isinstance(subject, ScheduledEvent) else None,
        channel=channel,
        status=status,
        event_type=delivery.event_type,
        error=error,
        error_message=error_message,
        total_subscribers=delivery.total_subscribers,
        batch_id=delivery.batch_id,
    )
    db.add(row)
    await db.commit()
    return row


async def _finish_row(
    db: AsyncSession,
    row: SubscriberAlert,
    status: SubscriberAlertStatus | None,
    error_message: str | None = None,
) -> SubscriberAlert:
    row.status = status
    if error_message is not None:
        row.error = True
        row.error_message = error_message
    await db.commit()
    return row


def _disabled_message(route: EventRoute, channel_label: str) -> str:
    return f"{route.disabled_label} {channel_label} Notification Disabled"


async def _send_webhook(
    db: AsyncSession,
    providers: ProviderRegistry,
    delivery: SubscriberDelivery,
) -> tuple[bool, SubscriberAlert | None]:
    """Returns whether the webhook was delivered, and its row."""
    route = delivery.route
    if route.webhook_toggle and not project_toggle(delivery.project, route.webhook_toggle):
        row = await _create_row(
            db,
            delivery,
            AlertChannel.WEBHOOK,
            None,
            error=True,
            error_message=_disabled_message(route, "Webhook"),
        )
        return True, row

    url = delivery.subscriber.contact_webhook
    if not url:
        row = await _create_row(
            db, delivery, AlertChannel.WEBHOOK, None, error=True, error_message="No webhook url"
        )
        return False, row

    try:
        sent = await providers.webhook.send_subscriber_notification(
            url, build_webhook_payload(delivery)
        )
    except Exception as e:
        logger.warning(
            "Subscriber webhook failed",
            subscriber_id=str(delivery.subscriber.id),
            error=str(e),
        )
        row = await _create_row(
            db,
            delivery,
            AlertChannel.WEBHOOK,
            None,
            error=True,
            error_message=str(e) or type(e).__name__,
        )
        return False, row

    status = SubscriberAlertStatus.SENT if sent else SubscriberAlertStatus.NOT_SENT
    return sent, await _create_row(db, delivery, AlertChannel.WEBHOOK, status)


async def _send_email(
    db: AsyncSession,
    providers: ProviderRegistry,
    delivery: SubscriberDelivery,
) -> SubscriberAlert | None:
    route, project = delivery.route, delivery.project
    recipient = delivery.subscriber.contact_email
    if not recipient:
        return None

    gate = await check_channel_configuration(db, providers, project, AlertChannel.EMAIL)
    if not gate.allowed:
        return await _create_row(
            db, delivery, AlertChannel.EMAIL, None, error=True, error_message=gate.message
        )

    enabled = project_toggle(project, route.email_toggle)
    if not enabled and route.toggle_mode == ToggleMode.BEFORE_SEND:
        return await _create_row(
            db,
            delivery,
            AlertChannel.EMAIL,
            None,
            error=True,
            error_message=_disabled_message(route, "Email"),
        )

    row = await _create_row(db, delivery, AlertChannel.EMAIL, SubscriberAlertStatus.PENDING)
    if not enabled:
        return await _finish_row(db, row, SubscriberAlertStatus.DISABLED)

    message = OutboundMessage(
        template=route.mail_template,
        recipient=recipient,
        project_id=project.id,
        context=build_subscriber_context(delivery, alert_id=row.id),
    )
    try:
        await providers.mail.send(message)
    except Exception as e:
        logger.warning(
            "Subscriber email failed",
            subscriber_id=str(delivery.subscriber.id),
            error=str(e),
        )
        return await _finish_row(db, row, None, error_message=str(e) or type(e).__name__)
    return await _finish_row(db, row, SubscriberAlertStatus.SENT)


async def _send_sms(
    db: AsyncSession,
    providers: ProviderRegistry,
    delivery: SubscriberDelivery,
) -> SubscriberAlert | None:
    route, project = delivery.route, delivery.project
    phone_number = delivery.subscriber.full_phone
    if not phone_number:
        return None

    gate = await check_channel_configuration(db, providers, project, AlertChannel.SMS)
    if not gate.allowed:
        return await _create_row(
            db, delivery, AlertChannel.SMS, None, error=True, error_message=gate.message
        )

    enabled = project_toggle(project, route.sms_toggle)
    if not enabled and route.toggle_mode == ToggleMode.BEFORE_SEND:
        return await _create_row(
            db,
            delivery,
            AlertChannel.SMS,
            None,
            error=True,
            error_message=_disabled_message(route, "SMS"),
        )

    billable = settings.is_saas_service and not gate.custom_settings
    if billable:
        if not complies_with_high_risk_config(project, phone_number):
            return await _create_row(
                db,
                delivery,
                AlertChannel.SMS,
                None,
                error=True,
                error_message=compliance_error_message(AlertChannel.SMS, phone_number),
            )
        status = await billing_precheck(
            db, providers, project, project.owner_user_id, phone_number, AlertChannel.SMS
        )
        if not status.success:
            return await _create_row(
                db, delivery, AlertChannel.SMS, None, error=True, error_message=status.message
            )

    row = await _create_row(db, delivery, AlertChannel.SMS, SubscriberAlertStatus.PENDING)
    if not enabled:
        return await _finish_row(db, row, SubscriberAlertStatus.DISABLED)

    message = OutboundMessage(
        template=route.sms_template,
        recipient=phone_number,
        project_id=project.id,
        context=build_subscriber_context(delivery),
    )
    try:
        result = await providers.sms_voice.send_sms(message)
    except Exception as e:
        logger.warning(
            "Subscriber SMS failed",
            subscriber_id=str(delivery.subscriber.id),
            error=str(e),
        )
        return await _finish_row(db, row, None, error_message=str(e) or type(e).__name__)

    if result.rejected:
        return await _finish_row(db, row, None, error_message=result.message or "Rejected")

    row = await _finish_row(db, row, SubscriberAlertStatus.SUCCESS)
    if billable:
        subject = delivery.subject
        await charge_alert(
            db,
            providers.billing,
            project,
            project.owner_user_id,
            AlertChannel.SMS,
            phone_number,
            segments=calc_sms_segments(result.body),
            subscriber_alert_id=row.id,
            monitor_id=delivery.monitor.id,
            incident_id=subject.id if isinstance(subject, Incident) else None,
        )
    return row


async def notify_subscriber(
    db: AsyncSession,
    providers: ProviderRegistry,
    delivery: SubscriberDelivery,
) -> list[SubscriberAlert]:
    """Deliver one event to one subscriber on the channel they chose."""
    rows: list[SubscriberAlert] = []
    via = delivery.subscriber.alert_via

    webhook_sent = True
    if via == AlertChannel.WEBHOOK:
        if not delivery.route.webhook:
            return rows
        webhook_sent, row = await _send_webhook(db, providers, delivery)
        if row is not None:
            rows.append(row)

    if via == AlertChannel.EMAIL or not webhook_sent:
        row = await _send_email(db, providers, delivery)
        if row is not None:
            rows.append(row)
    elif via == AlertChannel.SMS:
        row = await _send_sms(db, providers, delivery)
        if row is not None:
            rows.append(row)
    return rows


async def subscribers_for_alert(db: AsyncSession, monitor_id: uuid.UUID) -> list[Subscriber]:
    result = await db.execute(
        select(Subscriber)
        .where(Subscriber.monitor_id == monitor_id, Subscriber.subscribed.is_(True))
        .order_by(Subscriber.created_at)
    )
    return list(result.scalars().all())


async def notify_subscribers(
    db: AsyncSession,
    providers: ProviderRegistry,
    event: NotificationEvent,
    subject: Incident | ScheduledEvent,
    monitor: Monitor,
    note: StatusNote | None = None,
    batch_id: uuid.UUID | None = None,
) -> list[SubscriberAlert]:
    """Fan an event out to every active subscriber of a monitor.

    Args:
        db: Database session.
        providers: Provider registry.
        event: What happened.
        subject: The incident, or the scheduled event for maintenance.
        monitor: Monitor whose subscribers are notified.
        note: Status note, for note events.
        batch_id: Groups rows across monitors of one event.

    Returns:
        SubscriberAlert rows written.
    """
    route = EVENT_ROUTES[event]
    project = await db.get(Project, monitor.project_id)
    if project is None:
        logger.warning("Project not found for subscriber fan-out", monitor_id=str(monitor.id))
        return []

    subscribers = await subscribers_for_alert(db, monitor.id)
    batch_id = batch_id or uuid.uuid4()

    rows: list[SubscriberAlert] = []
    for subscriber in subscribers:
        try:
            status_page = None
            if subscriber.status_page_id is not None:
                status_page = await db.get(StatusPage, subscriber.status_page_id)
                enabled = status_page is not None and status_page.is_subscriber_enabled
                if route.requires_enabled_status_page and not enabled:
                    continue

            delivery = SubscriberDelivery(
                route=route,
                project=project,
                monitor=monitor,
                subscriber=subscriber,
                subject=subject,
                note=note,
                status_page=status_page,
                total_subscribers=len(subscribers),
                batch_id=batch_id,
            )
            rows.extend(await notify_subscriber(db, providers, delivery))
        except Exception:
            logger.exception(
                "Failed to notify subscriber",
                subscriber_id=str(subscriber.id),
                monitor_id=str(monitor.id),
                notification_event=event.value,
            )
            await restore_session(db)

    logger.info(
        "Subscribers notified",
        monitor_id=str(monitor.id),
        notification_event=event.value,
        subscribers=len(subscribers),
        rows=len(rows),
    )
    return rows


async def notify_maintenance(
    db: AsyncSession,
    providers: ProviderRegistry,
    event: NotificationEvent,
    scheduled_event: ScheduledEvent,
    note: StatusNote | None = None,
) -> list[SubscriberAlert]:
    """Notify subscribers of every monitor a maintenance event covers."""
    if not EVENT_ROUTES[event].maintenance:
        raise ValueError(f"{event.value} is not a maintenance event")

    new_correlation_id()
    monitor_ids = []
    for raw in scheduled_event.monitor_ids or []:
        try:
            monitor_ids.append(uuid.UUID(str(raw)))
        except ValueError:
            logger.warning(
                "Ignoring malformed monitor id on scheduled event",
                scheduled_event_id=str(scheduled_event.id),
                monitor_id=str(raw),
            )
    if not monitor_ids:
        return []

    result = await db.execute(select(Monitor).where(Monitor.id.in_(monitor_ids)))
    batch_id = uuid.uuid4()
    rows: list[SubscriberAlert] = []
    for monitor in result.scalars().all():
        rows.extend(
            await notify_subscribers(
                db, providers, event, scheduled_event, monitor, note=note, batch_id=batch_id
            )
        )
    return rows


def _incident_state(incident: Incident) -> str:
    if incident.resolved:
        return "resolved"
    if incident.acknowledged:
        return "acknowledged"
    return "created"


async def notify_project_webhooks_of_note(
    db: AsyncSession,
    providers: ProviderRegistry,
    incident: Incident,
    monitor: Monitor,
    note: StatusNote,
) -> int:
    """Send an investigation note to the project's integration webhooks.

    Returns:
        Number of webhooks that accepted the notification.
    """
    project = await db.get(Project, incident.project_id)
    if project is None:
        return 0

    payload = {
        "event": "investigation_note",
        "incident_status": _incident_state(incident),
        "project": {"id": str(project.id), "name": project.name},
        "monitor": {"id": str(monitor.id), "name": monitor.name},
        "component": monitor.component_name,
        "incident": {"id": str(incident.id), "id_number": incident.id_number},
        "downtime": _downtime(incident.created_at),
        "note": {
            "content": note.content,
            "incident_state": note.incident_state,
            "status": note.status,
        },
    }

    delivered = 0
    for url in project.integration_webhook_urls or []:
        try:
            if await providers.webhook.send_integration_notification(url, payload):
                delivered += 1
        except Exception:
            logger.exception(
                "Integration webhook failed",
                project_id=str(project.id),
                incident_id=str(incident.id),
            )
    return delivered


async def notify_investigation_note(
    db: AsyncSession,
    providers: ProviderRegistry,
    incident: Incident,
    monitor: Monitor,
    note: StatusNote,
) -> list[SubscriberAlert]:
    """Post an investigation note to subscribers and integration webhooks."""
    new_correlation_id()
    await notify_project_webhooks_of_note(db, providers, incident, monitor, note)
    return await notify_subscribers(
        db, providers, NotificationEvent.INVESTIGATION_NOTE, incident, monitor, note=note
    )
