"""Billing gate for metered (call/SMS) alerts.

Hosted projects pay for phone alerts from a prepaid balance. Before a
send the balance is checked (and recharged if the project allows it);
after a successful send the project is charged and an ``AlertCharge``
row records the debit. A failed charge is logged and never undoes the
delivery.

Projects whose subscription payment fails are sent reminder and removal
notices from here as well.
"""

import math
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alerting.config import settings
from alerting.logging_config import get_logger
from alerting.models.alert import Alert, AlertChannel, AlertCharge
from alerting.models.project import Project
from alerting.models.subscriber import SubscriberAlert, SubscriberAlertStatus
from alerting.models.user import User
from alerting.providers.base import (
    BillingProvider,
    BillingStatus,
    MessageTemplate,
    OutboundMessage,
    ProviderRegistry,
)
from alerting.services.global_config import get_global_alert_limit

logger = get_logger(__name__)

SMS_SEGMENT_BYTES = 160
ALERT_LIMIT_WINDOW = timedelta(hours=24)


def calc_sms_segments(body: str | None) -> int:
    """Number of billable segments for an SMS body (at least 1)."""
    if not body:
        return 1
    return max(1, math.ceil(len(body.encode("utf-8")) / SMS_SEGMENT_BYTES))


async def check_phone_alerts_limit(
    db: AsyncSession,
    providers: ProviderRegistry,
    project: Project,
) -> bool:
    """Check the project's rolling 24h call/SMS allowance.

    Counts successful on-call call/SMS alerts plus successful subscriber
    SMS in the last 24 hours. Projects with custom telephony credentials
    are not limited. Exceeding the limit flags
    ``project.alert_limit_reached``.

    Args:
        db: Database session.
        providers: Provider registry.
        project: Project to check.

    Returns:
        True if another phone alert may be sent.
    """
    if await providers.sms_voice.has_custom_settings(project.id):
        return True

    limit = project.alert_limit or await get_global_alert_limit(db)
    if not limit:
        return True

    since = datetime.now(UTC) - ALERT_LIMIT_WINDOW
    alert_count = await db.scalar(
        select(func.count(Alert.id)).where(
            Alert.project_id == project.id,
            Alert.channel.in_([AlertChannel.CALL, AlertChannel.SMS]),
            Alert.error.is_(False),
            Alert.deleted.is_(False),
            Alert.created_at >= since,
        )
    )
    sms_count = await db.scalar(
        select(func.count(SubscriberAlert.id)).where(
            SubscriberAlert.project_id == project.id,
            SubscriberAlert.channel == AlertChannel.SMS,
            SubscriberAlert.status == SubscriberAlertStatus.SUCCESS,
            SubscriberAlert.created_at >= since,
        )
    )

    if (alert_count or 0) + (sms_count or 0) <= limit:
        return True

    if not project.alert_limit_reached:
        project.alert_limit_reached = True
        await db.commit()
    logger.warning(
        "Project reached its phone alert limit",
        project_id=str(project.id),
        limit=limit,
    )
    return False


async def check_and_recharge(
    billing: BillingProvider,
    project: Project,
    user_id: uuid.UUID | None,
    phone_number: str,
    channel: AlertChannel,
) -> BillingStatus:
    """Ask the billing provider whether the balance covers one more alert."""
    try:
        return await billing.check_and_recharge(project, user_id, phone_number, channel)
    except Exception as e:
        logger.exception(
            "Balance check failed",
            project_id=str(project.id),
            channel=channel.value,
        )
        return BillingStatus(success=False, message=str(e) or "Balance check failed")


async def billing_precheck(
    db: AsyncSession,
    providers: ProviderRegistry,
    project: Project,
    user_id: uuid.UUID | None,
    phone_number: str,
    channel: AlertChannel,
) -> BillingStatus:
    """Daily allowance check followed by the balance check."""
    if not await check_phone_alerts_limit(db, providers, project):
        return BillingStatus(
            success=False,
            message="Phone alert limit reached for this project",
        )
    return await check_and_recharge(providers.billing, project, user_id, phone_number, channel)


async def charge_alert(
    db: AsyncSession,
    billing: BillingProvider,
    project: Project,
    user_id: uuid.UUID | None,
    channel: AlertChannel,
    phone_number: str,
    segments: int = 1,
    alert_id: uuid.UUID | None = None,
    subscriber_alert_id: uuid.UUID | None = None,
    monitor_id: uuid.UUID | None = None,
    incident_id: uuid.UUID | None = None,
) -> AlertCharge | None:
    """Debit the project for a delivered alert and record the charge.

    Args:
        db: Database session.
        billing: Billing provider.
        project: Project to charge.
        user_id: User the charge is attributed to (recipient or owner).
        channel: Call or SMS.
        phone_number: Number the alert was sent to.
        segments: SMS segment count.
        alert_id: On-call alert being charged.
        subscriber_alert_id: Subscriber alert being charged.
        monitor_id: Monitor reference for the charge record.
        incident_id: Incident reference for the charge record.

    Returns:
        The AlertCharge, or None if charging failed.
    """
    try:
        result = await billing.charge_alert(project, user_id, channel, phone_number, segments)
    except Exception:
        logger.exception(
            "Charging alert failed",
            project_id=str(project.id),
            channel=channel.value,
        )
        return None

    if result.error:
        logger.warning(
            "Billing provider refused alert charge",
            project_id=str(project.id),
            channel=channel.value,
            reason=result.message,
        )
        return None

    charge = AlertCharge(
        project_id=project.id,
        alert_id=alert_id,
        subscriber_alert_id=subscriber_alert_id,
        monitor_id=monitor_id,
        incident_id=incident_id,
        sent_to=phone_number,
        charge_amount=result.charge_amount,
        closing_account_balance=result.closing_balance,
    )
    db.add(charge)
    await db.commit()

    logger.info(
        "Alert charged",
        project_id=str(project.id),
        channel=channel.value,
        segments=segments,
        charge_amount=result.charge_amount,
        closing_balance=result.closing_balance,
    )
    return charge


async def _send_unpaid_notice(
    providers: ProviderRegistry,
    template: MessageTemplate,
    project: Project,
    user: User,
    **context: Any,
) -> None:
    try:
        await providers.mail.send(
            OutboundMessage(
                template=template,
                recipient=user.email,
                project_id=project.id,
                context={
                    "name": user.name,
                    "project_name": project.name,
                    "project_plan": project.billing_plan_id,
                    **context,
                },
            )
        )
    except Exception:
        logger.exception(
            "Failed to send unpaid subscription notice",
            project_id=str(project.id),
            user_id=str(user.id),
            template=template.value,
        )
        raise


async def send_unpaid_subscription_notice(
    providers: ProviderRegistry,
    project: Project,
    user: User,
) -> None:
    """Remind a project member that the subscription payment failed."""
    await _send_unpaid_notice(
        providers,
        MessageTemplate.UNPAID_SUBSCRIPTION,
        project,
        user,
        project_url=f"{settings.dashboard_host}/project/{project.slug}",
    )


async def send_project_deleted_notice(
    providers: ProviderRegistry,
    project: Project,
    user: User,
) -> None:
    """Tell a project member the project was removed for non-payment.

    The project is gone by the time this is sent, so no link is included.
    """
    await _send_unpaid_notice(providers, MessageTemplate.PROJECT_DELETED_UNPAID, project, user)
