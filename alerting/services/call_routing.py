"""Inbound call routing (IVR forwarding).

A project can buy a phone number and forward calls to it to a fixed
number, a team member, or whoever is on duty on a schedule. The telephony
provider asks for a voice script on every call and again, with
``backup=True``, when the first dial did not connect.
"""

import uuid
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.twiml.voice_response import VoiceResponse

from alerting.config import settings
from alerting.logging_config import get_logger
from alerting.models.call_routing import CallRouting, CallRoutingLog
from alerting.models.project import Project
from alerting.models.schedule import EscalationPolicy, Schedule
from alerting.models.user import User
from alerting.providers.base import ProviderRegistry
from alerting.schemas.oncall import RoutingSchema, RoutingTarget, TeamMemberSchema
from alerting.services.duty import is_on_duty

logger = get_logger(__name__)

NO_ONE_ON_DUTY = "Sorry could not find anyone on duty"
NO_PHONE_NUMBER = "Active team have not added their phone number yet"
TEAM_UNAVAILABLE = "Active team unavailable"

CALL_PRICE_MULTIPLIER = 10


class CallRoutingError(Exception):
    """A routing number could not be reserved."""


@dataclass
class ForwardingTarget:
    """Who a call is forwarded to, or why nobody."""

    forwarding_number: str | None = None
    error: str | None = None
    user_id: uuid.UUID | None = None


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def _find_on_duty_member(db: AsyncSession, schedule_id: uuid.UUID) -> ForwardingTarget:
    schedule = await db.get(Schedule, schedule_id)
    policy = None
    if schedule is not None and schedule.escalation_ids:
        policy_id = _parse_uuid(schedule.escalation_ids[0])
        if policy_id is not None:
            policy = await db.get(EscalationPolicy, policy_id)

    members: list[TeamMemberSchema] = []
    for raw in (policy.team_members if policy else None) or []:
        try:
            members.append(TeamMemberSchema.model_validate(raw))
        except ValidationError:
            continue
    if not members:
        return ForwardingTarget(error=TEAM_UNAVAILABLE)

    result = await db.execute(select(User).where(User.id.in_([m.user_id for m in members])))
    users = {user.id: user for user in result.scalars().all()}

    for member in members:
        user = users.get(member.user_id)
        if user is None:
            continue
        if not is_on_duty(member.start_time, member.end_time, user_timezone=user.timezone):
            continue
        if user.alert_phone_number:
            return ForwardingTarget(forwarding_number=user.alert_phone_number, user_id=user.id)

    # Nobody on duty has a number: fall back to the first listed member
    first = users.get(members[0].user_id)
    if first is not None and first.alert_phone_number:
        return ForwardingTarget(forwarding_number=first.alert_phone_number, user_id=first.id)
    return ForwardingTarget(error=NO_PHONE_NUMBER, user_id=first.id if first else None)


async def find_team_member(
    db: AsyncSession,
    target_type: RoutingTarget,
    target_id: str,
) -> ForwardingTarget:
    """Resolve a team member or schedule to a phone number.

    A schedule resolves to the first on-duty member of its first
    escalation policy who has a phone number, else to the policy's first
    member.
    """
    parsed = _parse_uuid(target_id)
    if target_type == RoutingTarget.TEAM_MEMBER:
        user = await db.get(User, parsed) if parsed else None
        if user is not None and user.alert_phone_number:
            return ForwardingTarget(forwarding_number=user.alert_phone_number, user_id=user.id)
        return ForwardingTarget(error=NO_PHONE_NUMBER, user_id=user.id if user else None)

    if target_type == RoutingTarget.SCHEDULE:
        if parsed is None:
            return ForwardingTarget(error=TEAM_UNAVAILABLE)
        return await _find_on_duty_member(db, parsed)

    return ForwardingTarget()


def has_enough_balance(project: Project) -> bool:
    """Balance must exceed the service minimum and the project's own threshold."""
    balance = project.balance or 0.0
    if balance <= settings.call_routing_minimum_balance:
        return False
    threshold = (project.alert_options or {}).get("minimumBalance")
    if threshold:
        return balance > float(threshold)
    return True


async def _log_dial(
    db: AsyncSession,
    call_routing: CallRouting,
    called_number: str,
    body: dict[str, Any],
    entry: dict[str, Any],
) -> CallRoutingLog:
    call_sid = body.get("CallSid")
    dial_call_sid = body.get("DialCallSid")
    dial_call_status = body.get("DialCallStatus")
    call_status = body.get("CallStatus")

    result = await db.execute(select(CallRoutingLog).where(CallRoutingLog.call_sid == call_sid))
    log = result.scalar_one_or_none()

    if log is None:
        log = CallRoutingLog(
            call_routing_id=call_routing.id,
            call_sid=call_sid,
            called_from=body.get("From"),
            called_to=called_number,
            dial_to=[entry],
        )
        db.add(log)
    else:
        # Earlier attempts get the outcome the provider reports for them
        dial_to = []
        for previous in log.dial_to or []:
            updated = dict(previous)
            updated["call_sid"] = dial_call_sid or call_sid
            updated["status"] = dial_call_status or call_status
            dial_to.append(updated)
        dial_to.append(entry)
        log.dial_to = dial_to

    await db.commit()
    return log


async def get_call_response(
    db: AsyncSession,
    providers: ProviderRegistry,
    call_routing: CallRouting,
    called_number: str,
    body: dict[str, Any],
    backup: bool = False,
) -> VoiceResponse:
    """Build the voice script for an inbound call.

    Args:
        db: Database session.
        providers: Provider registry.
        call_routing: The number that was called.
        called_number: The dialed number as reported by the provider.
        body: Provider callback parameters (``CallSid``, ``From``,
            ``CallStatus``, ``DialCallSid``, ``DialCallStatus``).
        backup: Whether this is the callback after the primary dial.

    Returns:
        TwiML VoiceResponse to hand back to the provider.
    """
    response = VoiceResponse()

    project = await db.get(Project, call_routing.project_id)
    if project is None or not has_enough_balance(project):
        logger.warning(
            "Rejecting routed call, balance too low",
            call_routing_id=str(call_routing.id),
            project_id=str(call_routing.project_id),
        )
        response.reject()
        return response

    try:
        schema = RoutingSchema.model_validate(call_routing.routing_schema or {})
    except ValidationError:
        logger.warning("Invalid routing schema", call_routing_id=str(call_routing.id))
        schema = RoutingSchema()

    intro_text, intro_audio = schema.intro(backup)
    if intro_text:
        response.say(intro_text)
    if intro_audio:
        response.play(f"{settings.api_host}/file/{intro_audio}")

    target_type, target_id, target_phone = schema.target(backup)
    target = ForwardingTarget()
    schedule_id = None
    if target_type == RoutingTarget.PHONE_NUMBER:
        target = ForwardingTarget(forwarding_number=target_phone)
    elif target_type is not None and target_id:
        target = await find_team_member(db, target_type, target_id)
        if target_type == RoutingTarget.SCHEDULE:
            schedule_id = target_id

    if not target.forwarding_number:
        drop_text = schema.call_drop_text if schema.show_advance else None
        response.say(drop_text or NO_ONE_ON_DUTY)
        if target.error:
            response.say(target.error)
    elif backup:
        response.dial(target.forwarding_number)
    else:
        response.dial(
            target.forwarding_number,
            action=f"{settings.api_host}/callRouting/routeBackupCall",
        )

    entry = {
        "call_sid": body.get("CallSid"),
        "user_id": str(target.user_id) if target.user_id else None,
        "schedule_id": schedule_id,
        "phone_number": target.forwarding_number,
        "status": body.get("CallStatus"),
    }
    if body.get("CallSid"):
        await _log_dial(db, call_routing, called_number, body, entry)

    logger.info(
        "Routed inbound call",
        call_routing_id=str(call_routing.id),
        call_sid=body.get("CallSid"),
        backup=backup,
        forwarded=bool(target.forwarding_number),
    )
    response.say("Goodbye")
    return response


async def _lock_call_log(
    db: AsyncSession,
    call_routing: CallRouting,
    body: dict[str, Any],
) -> CallRoutingLog | None:
    """The call's log row, locked for this transaction; created if missing.

    Returns None when another worker created the row concurrently.
    """
    call_sid = body["CallSid"]
    result = await db.execute(
        select(CallRoutingLog).where(CallRoutingLog.call_sid == call_sid).with_for_update()
    )
    log = result.scalar_one_or_none()
    if log is not None:
        return log

    log = CallRoutingLog(
        call_routing_id=call_routing.id,
        call_sid=call_sid,
        called_from=body.get("From"),
        called_to=body.get("To") or call_routing.phone_number,
        dial_to=[],
    )
    db.add(log)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        return None
    return log


async def charge_routed_call(
    db: AsyncSession,
    providers: ProviderRegistry,
    call_routing: CallRouting,
    body: dict[str, Any],
) -> bool:
    """Settle the cost of a completed routed call, once per call sid.

    The call's log row is locked (or created) before the provider is
    asked for the price, and the price is stored only once the charge
    went through, so a refused charge is retried on the next callback.

    Returns:
        True if the call was settled by this invocation.
    """
    call_sid = body.get("CallSid")
    call_status = body.get("CallStatus")
    if not call_sid:
        return False

    project_id = call_routing.project_id
    log = await _lock_call_log(db, call_routing, body)
    if log is None or log.price is not None:
        await db.commit()
        return False

    details = await providers.sms_voice.get_call_details(project_id, call_sid)
    if details is None or not details.price:
        await db.commit()
        return False

    price = abs(float(details.price)) * CALL_PRICE_MULTIPLIER

    project = await db.get(Project, project_id)
    custom = await providers.sms_voice.has_custom_settings(project_id)
    if project is not None and settings.is_saas_service and not custom:
        charge = await providers.billing.charge_amount(project, project.owner_user_id, price)
        if charge.error:
            logger.warning(
                "Routed call charge refused",
                project_id=str(project_id),
                call_sid=call_sid,
                reason=charge.message,
            )
            await db.commit()
            return False

    dial_to = []
    for entry in log.dial_to or []:
        updated = dict(entry)
        if updated.get("call_sid") != call_sid and call_status:
            updated["status"] = call_status
        dial_to.append(updated)
    log.dial_to = dial_to
    log.price = price
    log.duration = details.duration
    await db.commit()

    logger.info(
        "Routed call settled",
        project_id=str(project_id),
        call_sid=call_sid,
        price=price,
        duration=details.duration,
    )
    return True


async def reserve_number(
    db: AsyncSession,
    providers: ProviderRegistry,
    project_id: uuid.UUID,
    phone_number: str,
    price: float,
    country_code: str | None = None,
    routing_schema: dict[str, Any] | None = None,
) -> CallRouting:
    """Buy a phone number for a project.

    Hosted projects without their own telephony credentials pay through a
    subscription opened for the project owner first.

    Raises:
        CallRoutingError: If the project is missing or the subscription
            could not be created.
    """
    project = await db.get(Project, project_id)
    if project is None:
        raise CallRoutingError(f"Project {project_id} not found")

    subscription_id = None
    custom = await providers.sms_voice.has_custom_settings(project_id)
    if settings.is_saas_service and not custom:
        subscription_id = await providers.billing.create_subscription(
            project.owner_user_id, price
        )
        if not subscription_id:
            raise CallRoutingError("Error Creating Subscription.")

    purchase = await providers.sms_voice.buy_phone_number(project_id, phone_number)

    call_routing = CallRouting(
        project_id=project_id,
        phone_number=phone_number,
        country_code=country_code,
        price=price,
        sid=purchase.sid if purchase else None,
        subscription_id=subscription_id,
        routing_schema=routing_schema or {},
    )
    db.add(call_routing)
    await db.commit()

    logger.info(
        "Routing number reserved",
        project_id=str(project_id),
        call_routing_id=str(call_routing.id),
    )
    return call_routing


async def release_number(
    db: AsyncSession,
    providers: ProviderRegistry,
    call_routing: CallRouting,
) -> None:
    """Release a routing number and cancel its subscription."""
    if call_routing.sid:
        await providers.sms_voice.release_phone_number(call_routing.project_id, call_routing.sid)
    if call_routing.subscription_id:
        await providers.billing.cancel_subscription(call_routing.subscription_id)

    await db.execute(
        delete(CallRoutingLog).where(CallRoutingLog.call_routing_id == call_routing.id)
    )
    await db.delete(call_routing)
    await db.commit()

    logger.info(
        "Routing number released",
        project_id=str(call_routing.project_id),
        call_routing_id=str(call_routing.id),
    )
