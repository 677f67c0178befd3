"""On-call escalation engine.

Walks a schedule's ordered chain of escalation policies for one
incident. Each call to :func:`advance` is one reminder tick:

- load (or create) the progress record for the (incident, schedule) pair;
- if the current policy still has reminders left on any enabled channel,
  count them and alert every team member (off-duty members get an
  audit row instead);
- otherwise move to the next policy in the schedule and alert its team,
  or mark the chain exhausted when there is no next policy.

Progress is reloaded from the database on every tick and written back
with a compare-and-swap on ``OnCallScheduleStatus.version``. A lost race
rolls back and repeats the whole load-decide-persist cycle. Counters are
committed before any alert is sent, so a crash mid-send can under-count
but never re-sends beyond a quota.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from alerting.config import settings
from alerting.database import restore_session
from alerting.logging_config import get_logger
from alerting.models.alert import AlertChannel
from alerting.models.monitor import Incident, Monitor
from alerting.models.oncall_status import (
    CHANNEL_COUNTERS,
    EscalationStatus,
    OnCallScheduleStatus,
)
from alerting.models.project import Project
from alerting.models.schedule import EscalationPolicy, Schedule
from alerting.models.user import User
from alerting.providers.base import ProviderRegistry
from alerting.schemas.oncall import TeamMemberSchema
from alerting.services.channel_dispatcher import (
    AlertContext,
    DispatchHandle,
    complete_alert,
    prepare_alert,
    record_not_on_duty,
    send_alert,
)
from alerting.services.duty import is_on_duty

logger = get_logger(__name__)

REMINDER_CHANNELS = (
    AlertChannel.CALL,
    AlertChannel.SMS,
    AlertChannel.EMAIL,
    AlertChannel.PUSH,
)

# Started as tasks before the phone channels and collected at the end
DETACHED_CHANNELS = (AlertChannel.EMAIL, AlertChannel.PUSH)
# Share the balance check-then-debit sequence, so never concurrent
SEQUENTIAL_CHANNELS = (AlertChannel.SMS, AlertChannel.CALL)


class EscalationError(Exception):
    """A required record for escalation is missing or malformed."""


class ProgressConflictError(Exception):
    """Another worker updated the escalation progress first."""


class StepAction(str, enum.Enum):
    """What one tick did."""

    REMINDED = "reminded"
    ESCALATED = "escalated"
    EXHAUSTED = "exhausted"
    TERMINAL = "terminal"
    SKIPPED = "skipped"


@dataclass
class ReminderPlan:
    """Which channels get a reminder this tick, with progress snapshots."""

    should_send: dict[AlertChannel, bool]
    progress: dict[AlertChannel, str | None] = field(default_factory=dict)

    @property
    def any_pending(self) -> bool:
        return any(self.should_send.values())

    def channels(self) -> list[AlertChannel]:
        return [c for c in REMINDER_CHANNELS if self.should_send.get(c)]


@dataclass
class EscalationStep:
    """Decision taken by :func:`advance`."""

    action: StepAction
    reason: str
    escalation_id: uuid.UUID | None = None
    plan: ReminderPlan | None = None


@dataclass
class TeamEntry:
    """A member to alert, with their duty window."""

    user: User
    start_time: time | None = None
    end_time: time | None = None


def _quota(policy: EscalationPolicy, channel: AlertChannel) -> int:
    return getattr(policy, f"{channel.value}_reminders") or 0


def _enabled(policy: EscalationPolicy, channel: AlertChannel) -> bool:
    return bool(getattr(policy, channel.value))


def plan_reminders(policy: EscalationPolicy, current: EscalationStatus) -> ReminderPlan:
    """Decide which channels still owe a reminder on the current policy.

    A channel owes a reminder when it is enabled on the policy and its
    counter is below the quota. Disabled channels never hold back
    escalation.

    Args:
        policy: The active escalation policy.
        current: Counters for the active policy.

    Returns:
        ReminderPlan; the progress snapshot is ``"next/quota"`` from the
        second reminder on.
    """
    should_send: dict[AlertChannel, bool] = {}
    progress: dict[AlertChannel, str | None] = {}
    for channel in REMINDER_CHANNELS:
        quota = _quota(policy, channel)
        sent = current.sent(channel.value)
        should = _enabled(policy, channel) and quota > sent
        should_send[channel] = should
        progress[channel] = f"{sent + 1}/{quota}" if should and sent > 0 else None
    return ReminderPlan(should_send=should_send, progress=progress)


def _to_uuid(value: object) -> uuid.UUID | None:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def find_next_escalation_id(
    escalation_ids: list[str],
    active_id: uuid.UUID | None,
) -> uuid.UUID | None:
    """The policy strictly after ``active_id`` in the schedule's chain.

    Returns None when the active policy is last, or is not part of the
    chain at all; both mean the chain is exhausted.
    """
    chain = [_to_uuid(raw) for raw in escalation_ids or []]
    if active_id is None or active_id not in chain:
        return None
    index = chain.index(active_id)
    for candidate in chain[index + 1 :]:
        if candidate is not None and candidate != active_id:
            return candidate
    return None


async def get_policy(
    db: AsyncSession,
    escalation_id: uuid.UUID | None,
) -> EscalationPolicy | None:
    if escalation_id is None:
        return None
    return await db.get(EscalationPolicy, escalation_id)


async def load_progress(
    db: AsyncSession,
    incident_id: uuid.UUID,
    schedule_id: uuid.UUID,
) -> OnCallScheduleStatus | None:
    """Fetch the progress record fresh from the database."""
    result = await db.execute(
        select(OnCallScheduleStatus)
        .where(
            OnCallScheduleStatus.incident_id == incident_id,
            OnCallScheduleStatus.schedule_id == schedule_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_progress(
    db: AsyncSession,
    incident: Incident,
    schedule: Schedule,
) -> OnCallScheduleStatus:
    """Load progress, seeding it with the schedule's first policy if absent.

    Raises:
        EscalationError: If the schedule's first policy id is malformed.
    """
    status = await load_progress(db, incident.id, schedule.id)
    if status is not None:
        return status

    first_id = _to_uuid(schedule.escalation_ids[0])
    if first_id is None:
        raise EscalationError(
            f"Schedule {schedule.id} has a malformed escalation id: "
            f"{schedule.escalation_ids[0]!r}"
        )

    status = OnCallScheduleStatus(
        project_id=incident.project_id,
        incident_id=incident.id,
        schedule_id=schedule.id,
        active_escalation_id=first_id,
        incident_acknowledged=False,
        is_on_duty=False,
        alerted_everyone=False,
        version=1,
        escalations=[EscalationStatus.start(0, first_id)],
    )
    db.add(status)
    try:
        await db.commit()
    except IntegrityError:
        # Another worker created it first
        await restore_session(db)
        status = await load_progress(db, incident.id, schedule.id)
        if status is None:
            raise
        return status

    logger.info(
        "Escalation progress created",
        incident_id=str(incident.id),
        schedule_id=str(schedule.id),
        escalation_id=str(first_id),
    )
    return status


async def commit_progress(db: AsyncSession, status: OnCallScheduleStatus) -> None:
    """Persist pending progress changes if nobody else wrote in between.

    Raises:
        ProgressConflictError: If the stored version no longer matches.
    """
    expected = status.version
    with db.no_autoflush:
        result = await db.execute(
            update(OnCallScheduleStatus)
            .where(
                OnCallScheduleStatus.id == status.id,
                OnCallScheduleStatus.version == expected,
            )
            .values(version=expected + 1)
            .execution_options(synchronize_session=False)
        )
    if result.rowcount != 1:
        raise ProgressConflictError(
            f"Progress {status.id} changed since version {expected}"
        )
    set_committed_value(status, "version", expected + 1)
    await db.commit()


async def resolve_team(db: AsyncSession, policy: EscalationPolicy) -> list[TeamEntry]:
    """Direct members in order, then group members not already listed.

    Group members have no duty window of their own. Entries that fail
    validation or name unknown users are skipped.
    """
    members: list[TeamMemberSchema] = []
    for raw in policy.team_members or []:
        try:
            members.append(TeamMemberSchema.model_validate(raw))
        except ValidationError:
            logger.warning(
                "Skipping malformed team member entry",
                escalation_id=str(policy.id),
            )

    direct_ids = [m.user_id for m in members]
    group_ids: list[uuid.UUID] = []
    for member in members:
        for user_id in member.group_user_ids:
            if user_id not in direct_ids and user_id not in group_ids:
                group_ids.append(user_id)

    all_ids = direct_ids + group_ids
    if not all_ids:
        return []

    result = await db.execute(select(User).where(User.id.in_(all_ids)))
    users = {user.id: user for user in result.scalars().all()}

    team: list[TeamEntry] = []
    for member in members:
        user = users.get(member.user_id)
        if user is None:
            continue
        team.append(TeamEntry(user=user, start_time=member.start_time, end_time=member.end_time))
    for user_id in group_ids:
        user = users.get(user_id)
        if user is not None:
            team.append(TeamEntry(user=user))
    return team


def _duty_roster(
    team: list[TeamEntry],
    now: time | datetime | None,
) -> list[tuple[TeamEntry, bool]]:
    return [
        (
            entry,
            is_on_duty(
                entry.start_time,
                entry.end_time,
                now=now,
                user_timezone=entry.user.timezone,
            ),
        )
        for entry in team
    ]


async def _decide(
    db: AsyncSession,
    incident: Incident,
    schedule: Schedule,
    now: time | datetime | None = None,
) -> tuple[
    EscalationStep,
    OnCallScheduleStatus | None,
    EscalationPolicy | None,
    list[tuple[TeamEntry, bool]],
]:
    """One load-decide-persist cycle. Sends nothing.

    Every pending channel is counted once per tick whoever is on duty,
    so an off-duty team never holds the chain on its policy.
    """
    status = await get_or_create_progress(db, incident, schedule)

    if status.is_terminal:
        reason = "Incident acknowledged" if status.incident_acknowledged else "Everyone alerted"
        return EscalationStep(StepAction.TERMINAL, reason), status, None, []

    current = status.current
    if current is None:
        raise EscalationError(f"Progress {status.id} has no escalation entries")

    policy = await get_policy(db, current.escalation_id)
    if policy is None:
        status.alerted_everyone = True
        await commit_progress(db, status)
        return (
            EscalationStep(
                StepAction.EXHAUSTED,
                "Active escalation policy no longer exists",
                escalation_id=current.escalation_id,
            ),
            status,
            None,
            [],
        )

    plan = plan_reminders(policy, current)
    action = StepAction.REMINDED

    if not plan.any_pending:
        active_id = status.active_escalation_id or current.escalation_id
        next_id = find_next_escalation_id(schedule.escalation_ids, active_id)
        next_policy = await get_policy(db, next_id)
        if next_policy is None:
            status.alerted_everyone = True
            await commit_progress(db, status)
            return (
                EscalationStep(
                    StepAction.EXHAUSTED,
                    "No further escalation policy in schedule",
                    escalation_id=active_id,
                ),
                status,
                None,
                [],
            )

        current = EscalationStatus.start(len(status.escalations), next_policy.id)
        status.escalations.append(current)
        status.active_escalation_id = next_policy.id
        policy = next_policy
        plan = plan_reminders(policy, current)
        action = StepAction.ESCALATED

    for channel in plan.channels():
        counter = CHANNEL_COUNTERS[channel.value]
        setattr(current, counter, getattr(current, counter) + 1)

    roster = _duty_roster(await resolve_team(db, policy), now)

    await commit_progress(db, status)

    reason = (
        f"Escalated to policy {policy.id}"
        if action == StepAction.ESCALATED
        else f"Reminders pending on {', '.join(c.value for c in plan.channels())}"
    )
    step = EscalationStep(action, reason, escalation_id=policy.id, plan=plan)
    return step, status, policy, roster


async def _mark_on_duty(db: AsyncSession, status: OnCallScheduleStatus) -> None:
    if status.is_on_duty:
        return
    await db.execute(
        update(OnCallScheduleStatus)
        .where(OnCallScheduleStatus.id == status.id)
        .values(is_on_duty=True)
        .execution_options(synchronize_session=False)
    )
    set_committed_value(status, "is_on_duty", True)
    await db.commit()


def _channel_ctx(base: AlertContext, plan: ReminderPlan, channel: AlertChannel) -> AlertContext:
    return AlertContext(
        incident=base.incident,
        monitor=base.monitor,
        project=base.project,
        user=base.user,
        schedule=base.schedule,
        escalation=base.escalation,
        oncall_status=base.oncall_status,
        event_type=base.event_type,
        progress=plan.progress.get(channel),
    )


async def alert_member(
    db: AsyncSession,
    providers: ProviderRegistry,
    base: AlertContext,
    plan: ReminderPlan,
    on_duty: bool,
) -> None:
    """Alert one team member on every channel the plan selects.

    Off-duty members get a ``Not on Duty`` audit row per channel. For
    on-duty members, email and push are started first and collected at
    the end; SMS and then call are sent one after the other. A failing
    channel is logged and does not stop the others.
    """
    channels = plan.channels()
    log = logger.bind(user_id=str(base.user.id), incident_id=str(base.incident.id))

    if not on_duty:
        for channel in channels:
            await record_not_on_duty(db, channel, _channel_ctx(base, plan, channel))
        return

    detached: list[DispatchHandle] = []
    for channel in DETACHED_CHANNELS:
        if channel not in channels:
            continue
        try:
            detached.append(
                await prepare_alert(db, providers, channel, _channel_ctx(base, plan, channel))
            )
        except Exception:
            log.exception("Failed to start alert", channel=channel.value)

    try:
        for channel in SEQUENTIAL_CHANNELS:
            if channel not in channels:
                continue
            try:
                await send_alert(db, providers, channel, _channel_ctx(base, plan, channel))
            except Exception:
                log.exception("Failed to send alert", channel=channel.value)
                await restore_session(db)
    finally:
        for handle in detached:
            try:
                await complete_alert(db, providers, handle)
            except Exception:
                log.exception("Failed to record alert", channel=handle.channel.value)
                await restore_session(db)


async def advance(
    db: AsyncSession,
    providers: ProviderRegistry,
    incident: Incident,
    schedule: Schedule,
    monitor: Monitor,
    now: time | datetime | None = None,
) -> EscalationStep:
    """Run one reminder tick for an (incident, schedule) pair.

    Repeated calls with nothing left to send only move the chain forward
    (or mark it exhausted); they never re-send beyond a quota.

    Args:
        db: Database session.
        providers: Provider registry.
        incident: The open incident.
        schedule: Schedule being walked.
        monitor: Monitor the incident belongs to.
        now: Time of day for duty checks; defaults to the duty clock.

    Returns:
        EscalationStep describing what happened.

    Raises:
        EscalationError: If the incident's project is missing.
    """
    if not schedule.escalation_ids:
        return EscalationStep(StepAction.SKIPPED, "Schedule has no escalation policies")

    project = await db.get(Project, incident.project_id)
    if project is None:
        raise EscalationError(f"Project {incident.project_id} not found")

    log = logger.bind(incident_id=str(incident.id), schedule_id=str(schedule.id))

    attempts = settings.progress_update_max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            step, status, policy, roster = await _decide(db, incident, schedule, now=now)
            break
        except ProgressConflictError:
            await restore_session(db)
            log.warning("Escalation progress conflict, retrying", attempt=attempt)
    else:
        log.error("Escalation progress update retries exhausted", attempts=attempts)
        return EscalationStep(StepAction.SKIPPED, "Progress kept changing concurrently")

    log.info("Escalation step decided", action=step.action.value, reason=step.reason)

    if policy is None or step.plan is None or not step.plan.any_pending:
        return step

    if not roster:
        log.warning("Escalation policy has no team members", escalation_id=str(policy.id))
        return step

    for entry, on_duty in roster:
        try:
            if on_duty:
                await _mark_on_duty(db, status)

            base = AlertContext(
                incident=incident,
                monitor=monitor,
                project=project,
                user=entry.user,
                schedule=schedule,
                escalation=policy,
                oncall_status=status,
            )
            await alert_member(db, providers, base, step.plan, on_duty)
        except Exception:
            log.exception("Alerting team member failed", user_id=str(entry.user.id))
            await restore_session(db)

    return step
