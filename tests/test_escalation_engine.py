"""Tests for the on-call escalation engine."""

import uuid
from datetime import time
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update

from alerting.models.alert import Alert, AlertChannel, AlertStatus
from alerting.models.oncall_status import EscalationStatus, OnCallScheduleStatus
from alerting.models.schedule import EscalationPolicy
from alerting.services import escalation_engine
from alerting.services.escalation_engine import (
    ProgressConflictError,
    StepAction,
    advance,
    commit_progress,
    find_next_escalation_id,
    get_or_create_progress,
    load_progress,
    plan_reminders,
    resolve_team,
)

NOON = time(12, 0)
EVENING = time(20, 0)


async def alerts_for(db, incident) -> list[Alert]:
    result = await db.execute(select(Alert).where(Alert.incident_id == incident.id))
    return list(result.scalars().all())


# ── Pure planning logic ──


class TestPlanReminders:
    def _policy(self, **fields) -> EscalationPolicy:
        return EscalationPolicy(project_id=uuid.uuid4(), team_members=[], **fields)

    def test_first_reminder_has_no_progress(self):
        policy = self._policy(sms=True, sms_reminders=3)
        current = EscalationStatus.start(0, uuid.uuid4())

        plan = plan_reminders(policy, current)

        assert plan.channels() == [AlertChannel.SMS]
        assert plan.progress[AlertChannel.SMS] is None

    def test_later_reminders_report_progress(self):
        policy = self._policy(sms=True, sms_reminders=3)
        current = EscalationStatus.start(0, uuid.uuid4())
        current.sms_reminders_sent = 1

        plan = plan_reminders(policy, current)

        assert plan.progress[AlertChannel.SMS] == "2/3"

    def test_quota_reached_is_not_pending(self):
        policy = self._policy(sms=True, sms_reminders=2)
        current = EscalationStatus.start(0, uuid.uuid4())
        current.sms_reminders_sent = 2

        assert plan_reminders(policy, current).any_pending is False

    def test_disabled_channel_never_pending(self):
        policy = self._policy(email=False, email_reminders=5, call=True, call_reminders=1)
        current = EscalationStatus.start(0, uuid.uuid4())

        plan = plan_reminders(policy, current)

        assert plan.channels() == [AlertChannel.CALL]
        assert plan.should_send[AlertChannel.EMAIL] is False

    def test_zero_quota_enabled_channel_is_not_pending(self):
        policy = self._policy(push=True, push_reminders=0)
        current = EscalationStatus.start(0, uuid.uuid4())

        assert plan_reminders(policy, current).any_pending is False


class TestFindNextEscalationId:
    def test_returns_successor(self):
        a, b, c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        assert find_next_escalation_id([str(a), str(b), str(c)], b) == c

    def test_last_policy_has_no_successor(self):
        a, b = uuid.uuid4(), uuid.uuid4()
        assert find_next_escalation_id([str(a), str(b)], b) is None

    def test_unknown_active_policy_has_no_successor(self):
        a = uuid.uuid4()
        assert find_next_escalation_id([str(a)], uuid.uuid4()) is None

    def test_skips_repeated_active_id(self):
        a, b = uuid.uuid4(), uuid.uuid4()
        assert find_next_escalation_id([str(a), str(a), str(b)], a) == b

    def test_no_active_policy(self):
        assert find_next_escalation_id([str(uuid.uuid4())], None) is None


# ── Progress persistence ──


class TestProgress:
    @pytest.mark.asyncio
    async def test_created_with_first_policy(
        self, db_session, world, make_policy, make_schedule
    ):
        first = await make_policy(sms=True, sms_reminders=1)
        second = await make_policy(email=True, email_reminders=1)
        schedule = await make_schedule([first, second])

        status = await get_or_create_progress(db_session, world.incident, schedule)

        assert status.active_escalation_id == first.id
        assert len(status.escalations) == 1
        assert status.escalations[0].escalation_id == first.id
        assert status.escalations[0].sms_reminders_sent == 0
        assert status.version == 1

    @pytest.mark.asyncio
    async def test_existing_progress_is_reused(
        self, db_session, world, make_policy, make_schedule
    ):
        schedule = await make_schedule([await make_policy(sms=True, sms_reminders=1)])

        first = await get_or_create_progress(db_session, world.incident, schedule)
        second = await get_or_create_progress(db_session, world.incident, schedule)

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_commit_bumps_version(self, db_session, world, make_policy, make_schedule):
        schedule = await make_schedule([await make_policy(sms=True, sms_reminders=1)])
        status = await get_or_create_progress(db_session, world.incident, schedule)

        status.escalations[0].sms_reminders_sent = 1
        await commit_progress(db_session, status)

        reloaded = await load_progress(db_session, world.incident.id, schedule.id)
        assert reloaded.version == 2
        assert reloaded.escalations[0].sms_reminders_sent == 1

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, db_session, world, make_policy, make_schedule):
        schedule = await make_schedule([await make_policy(sms=True, sms_reminders=1)])
        status = await get_or_create_progress(db_session, world.incident, schedule)

        # Another worker wrote in between
        await db_session.execute(
            update(OnCallScheduleStatus)
            .where(OnCallScheduleStatus.id == status.id)
            .values(version=5)
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

        with pytest.raises(ProgressConflictError):
            await commit_progress(db_session, status)


# ── Team resolution ──


class TestResolveTeam:
    @pytest.mark.asyncio
    async def test_direct_members_then_group_members(
        self, db_session, world, make_user, make_policy
    ):
        john = await make_user("John Roe")
        mary = await make_user("Mary Major")
        policy = await make_policy(
            team_members=[
                {
                    "user_id": str(world.user.id),
                    "start_time": "09:00",
                    "end_time": "17:00",
                    "group_user_ids": [str(john.id), str(world.user.id)],
                },
                {"user_id": str(mary.id), "group_user_ids": [str(john.id)]},
            ],
            sms=True,
            sms_reminders=1,
        )

        team = await resolve_team(db_session, policy)

        assert [entry.user.id for entry in team] == [world.user.id, mary.id, john.id]
        assert team[0].start_time == time(9, 0)
        assert team[2].start_time is None

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_members_are_skipped(
        self, db_session, world, make_policy
    ):
        policy = await make_policy(
            team_members=[
                {"user_id": str(uuid.uuid4())},
                {"user_id": "not-a-uuid"},
                {"user_id": str(world.user.id)},
            ],
        )

        team = await resolve_team(db_session, policy)

        assert [entry.user.id for entry in team] == [world.user.id]


# ── Ticks ──


class TestAdvance:
    @pytest.mark.asyncio
    async def test_walks_chain_until_exhausted(
        self, db_session, providers, world, make_policy, make_schedule
    ):
        sms_policy = await make_policy(sms=True, sms_reminders=2)
        email_policy = await make_policy(email=True, email_reminders=1)
        schedule = await make_schedule([sms_policy, email_policy])

        args = (db_session, providers, world.incident, schedule, world.monitor)

        step = await advance(*args, now=NOON)
        assert step.action == StepAction.REMINDED
        assert step.escalation_id == sms_policy.id

        step = await advance(*args, now=NOON)
        assert step.action == StepAction.REMINDED

        step = await advance(*args, now=NOON)
        assert step.action == StepAction.ESCALATED
        assert step.escalation_id == email_policy.id

        step = await advance(*args, now=NOON)
        assert step.action == StepAction.EXHAUSTED

        step = await advance(*args, now=NOON)
        assert step.action == StepAction.TERMINAL

        assert providers.sms_voice.send_sms.await_count == 2
        assert providers.mail.send.await_count == 1

        alerts = await alerts_for(db_session, world.incident)
        sms_alerts = [a for a in alerts if a.channel == AlertChannel.SMS]
        assert sorted(a.alert_progress or "" for a in sms_alerts) == ["", "2/2"]
        assert all(a.status == AlertStatus.SUCCESS for a in alerts)
        assert len(alerts) == 3

        status = await load_progress(db_session, world.incident.id, schedule.id)
        assert status.alerted_everyone is True
        assert status.is_on_duty is True
        assert status.active_escalation_id == email_policy.id
        assert [e.escalation_id for e in status.escalations] == [sms_policy.id, email_policy.id]
        assert status.escalations[0].sms_reminders_sent == 2
        assert status.escalations[1].email_reminders_sent == 1

    @pytest.mark.asyncio
    async def test_counters_never_exceed_quota(
        self, db_session, providers, world, make_policy, make_schedule
    ):
        policy = await make_policy(call=True, call_reminders=1)
        schedule = await make_schedule([policy])

        for _ in range(4):
            await advance(
                db_session, providers, world.incident, schedule, world.monitor, now=NOON
            )

        status = await load_progress(db_session, world.incident.id, schedule.id)
        assert status.escalations[0].call_reminders_sent == 1
        assert providers.sms_voice.place_call.await_count == 1

    @pytest.mark.asyncio
    async def test_off_duty_member_gets_audit_row_only(
        self, db_session, providers, world, make_policy, make_schedule
    ):
        policy = await make_policy(
            team_members=[
                {"user_id": str(world.user.id), "start_time": "09:00", "end_time": "17:00"}
            ],
            sms=True,
            sms_reminders=1,
        )
        schedule = await make_schedule([policy])

        step = await advance(
            db_session, providers, world.incident, schedule, world.monitor, now=EVENING
        )

        assert step.action == StepAction.REMINDED
        providers.sms_voice.send_sms.assert_not_called()

        alerts = await alerts_for(db_session, world.incident)
        assert len(alerts) == 1
        assert alerts[0].status == AlertStatus.NOT_ON_DUTY

        status = await load_progress(db_session, world.incident.id, schedule.id)
        assert status.escalations[0].sms_reminders_sent == 1
        assert status.is_on_duty is False

    @pytest.mark.asyncio
    async def test_off_duty_team_does_not_block_escalation(
        self, db_session, providers, world, make_user, make_policy, make_schedule
    ):
        day_shift = await make_policy(
            team_members=[
                {"user_id": str(world.user.id), "start_time": "09:00", "end_time": "17:00"}
            ],
            sms=True,
            sms_reminders=1,
        )
        backup_user = await make_user("Backup", phone="+15550177")
        backup = await make_policy(
            team_members=[{"user_id": str(backup_user.id)}], sms=True, sms_reminders=1
        )
        schedule = await make_schedule([day_shift, backup])
        args = (db_session, providers, world.incident, schedule, world.monitor)

        actions = [(await advance(*args, now=EVENING)).action for _ in range(3)]

        assert actions == [StepAction.REMINDED, StepAction.ESCALATED, StepAction.EXHAUSTED]
        providers.sms_voice.send_sms.assert_awaited_once()

        alerts = await alerts_for(db_session, world.incident)
        by_user = {a.user_id: a.status for a in alerts}
        assert by_user == {
            world.user.id: AlertStatus.NOT_ON_DUTY,
            backup_user.id: AlertStatus.SUCCESS,
        }

        status = await load_progress(db_session, world.incident.id, schedule.id)
        assert status.active_escalation_id == backup.id

    @pytest.mark.asyncio
    async def test_mixed_team_counts_once(
        self, db_session, providers, world, make_user, make_policy, make_schedule
    ):
        night_owl = await make_user("Night Owl", phone="+15550199")
        policy = await make_policy(
            team_members=[
                {"user_id": str(world.user.id)},
                {"user_id": str(night_owl.id), "start_time": "22:00", "end_time": "06:00"},
            ],
            sms=True,
            sms_reminders=3,
        )
        schedule = await make_schedule([policy])

        await advance(db_session, providers, world.incident, schedule, world.monitor, now=NOON)

        alerts = await alerts_for(db_session, world.incident)
        by_user = {a.user_id: a.status for a in alerts}
        assert by_user[world.user.id] == AlertStatus.SUCCESS
        assert by_user[night_owl.id] == AlertStatus.NOT_ON_DUTY

        status = await load_progress(db_session, world.incident.id, schedule.id)
        assert status.escalations[0].sms_reminders_sent == 1

    @pytest.mark.asyncio
    async def test_empty_team_still_escalates(
        self, db_session, providers, world, make_policy, make_schedule
    ):
        empty = await make_policy(team_members=[], sms=True, sms_reminders=1)
        backup = await make_policy(email=True, email_reminders=1)
        schedule = await make_schedule([empty, backup])
        args = (db_session, providers, world.incident, schedule, world.monitor)

        assert (await advance(*args, now=NOON)).action == StepAction.REMINDED
        assert (await advance(*args, now=NOON)).action == StepAction.ESCALATED
        providers.mail.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_phone_channels_run_sms_then_call(
        self, db_session, providers, world, make_policy, make_schedule
    ):
        policy = await make_policy(
            sms=True, sms_reminders=1, call=True, call_reminders=1, email=True, email_reminders=1
        )
        schedule = await make_schedule([policy])

        await advance(db_session, providers, world.incident, schedule, world.monitor, now=NOON)

        sends = [
            name
            for name, _, _ in providers.sms_voice.mock_calls
            if name in ("send_sms", "place_call")
        ]
        assert sends == ["send_sms", "place_call"]
        channels = sorted(a.channel.value for a in await alerts_for(db_session, world.incident))
        assert channels == ["call", "email", "sms"]

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_stop_others(
        self, db_session, providers, world, make_policy, make_schedule
    ):
        providers.sms_voice.send_sms.side_effect = RuntimeError("Twilio down")
        policy = await make_policy(sms=True, sms_reminders=1, call=True, call_reminders=1)
        schedule = await make_schedule([policy])

        await advance(db_session, providers, world.incident, schedule, world.monitor, now=NOON)

        alerts = {a.channel: a for a in await alerts_for(db_session, world.incident)}
        assert alerts[AlertChannel.SMS].status == AlertStatus.CANNOT_SEND
        assert alerts[AlertChannel.CALL].status == AlertStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_missing_policy_exhausts_chain(
        self, db_session, providers, world, make_schedule
    ):
        ghost = EscalationPolicy(id=uuid.uuid4())
        schedule = await make_schedule([ghost])

        step = await advance(
            db_session, providers, world.incident, schedule, world.monitor, now=NOON
        )

        assert step.action == StepAction.EXHAUSTED
        status = await load_progress(db_session, world.incident.id, schedule.id)
        assert status.alerted_everyone is True

    @pytest.mark.asyncio
    async def test_acknowledged_progress_is_terminal(
        self, db_session, providers, world, make_policy, make_schedule
    ):
        schedule = await make_schedule([await make_policy(sms=True, sms_reminders=5)])
        status = await get_or_create_progress(db_session, world.incident, schedule)
        status.incident_acknowledged = True
        await db_session.commit()

        step = await advance(
            db_session, providers, world.incident, schedule, world.monitor, now=NOON
        )

        assert step.action == StepAction.TERMINAL
        assert step.reason == "Incident acknowledged"
        providers.sms_voice.send_sms.assert_not_called()

    @pytest.mark.asyncio
    async def test_schedule_without_policies_is_skipped(
        self, db_session, providers, world, make_schedule
    ):
        schedule = await make_schedule([])

        step = await advance(
            db_session, providers, world.incident, schedule, world.monitor, now=NOON
        )

        assert step.action == StepAction.SKIPPED
        assert await load_progress(db_session, world.incident.id, schedule.id) is None


class TestConcurrentProgress:
    @pytest.mark.asyncio
    async def test_conflict_is_retried_without_double_counting(
        self, db_session, providers, world, make_policy, make_schedule
    ):
        schedule = await make_schedule([await make_policy(sms=True, sms_reminders=3)])
        calls = {"count": 0}

        async def flaky_commit(db, status):
            calls["count"] += 1
            if calls["count"] == 1:
                raise ProgressConflictError("changed")
            await commit_progress(db, status)

        with patch.object(escalation_engine, "commit_progress", side_effect=flaky_commit):
            step = await advance(
                db_session, providers, world.incident, schedule, world.monitor, now=NOON
            )

        assert step.action == StepAction.REMINDED
        assert calls["count"] == 2
        status = await load_progress(db_session, world.incident.id, schedule.id)
        assert status.escalations[0].sms_reminders_sent == 1
        providers.sms_voice.send_sms.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(
        self, db_session, providers, world, make_policy, make_schedule, monkeypatch
    ):
        monkeypatch.setattr(escalation_engine.settings, "progress_update_max_retries", 2)
        schedule = await make_schedule([await make_policy(sms=True, sms_reminders=3)])
        conflict = AsyncMock(side_effect=ProgressConflictError("changed"))

        with patch.object(escalation_engine, "commit_progress", conflict):
            step = await advance(
                db_session, providers, world.incident, schedule, world.monitor, now=NOON
            )

        assert step.action == StepAction.SKIPPED
        assert conflict.await_count == 3
        providers.sms_voice.send_sms.assert_not_called()
