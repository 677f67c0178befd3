"""Tests for status-page subscriber notifications."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from alerting.models.alert import AlertChannel, AlertCharge
from alerting.models.monitor import ScheduledEvent
from alerting.models.project import GlobalConfig
from alerting.models.subscriber import (
    StatusPage,
    Subscriber,
    SubscriberAlert,
    SubscriberAlertStatus,
)
from alerting.providers.base import MessageTemplate, ProviderResult
from alerting.services.subscriber_notifier import (
    NotificationEvent,
    StatusNote,
    notify_investigation_note,
    notify_maintenance,
    notify_project_webhooks_of_note,
    notify_subscribers,
    status_page_url,
)


@pytest.fixture
def make_subscriber(db_session, world):
    async def _make(
        alert_via: AlertChannel = AlertChannel.EMAIL,
        email: str | None = "subscriber@example.com",
        phone: str | None = None,
        country_code: str | None = None,
        webhook: str | None = None,
        status_page: StatusPage | None = None,
        subscribed: bool = True,
    ) -> Subscriber:
        subscriber = Subscriber(
            project_id=world.project.id,
            monitor_id=world.monitor.id,
            status_page_id=status_page.id if status_page else None,
            alert_via=alert_via,
            contact_email=email,
            contact_phone=phone,
            country_code=country_code,
            contact_webhook=webhook,
            subscribed=subscribed,
        )
        db_session.add(subscriber)
        await db_session.commit()
        return subscriber

    return _make


@pytest.fixture
def make_status_page(db_session, world):
    async def _make(enabled: bool = True, domain: str | None = None) -> StatusPage:
        page = StatusPage(
            project_id=world.project.id,
            name="Acme Status",
            is_subscriber_enabled=enabled,
            domain=domain,
        )
        db_session.add(page)
        await db_session.commit()
        return page

    return _make


async def notify(db, providers, world, event, note=None):
    return await notify_subscribers(
        db, providers, event, world.incident, world.monitor, note=note
    )


# ── Email ──


class TestEmailSubscribers:
    @pytest.mark.asyncio
    async def test_pending_then_sent(self, db_session, providers, world, make_subscriber):
        await make_subscriber()

        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_CREATED)

        assert len(rows) == 1
        assert rows[0].status == SubscriberAlertStatus.SENT
        assert rows[0].event_type == "identified"
        assert rows[0].total_subscribers == 1
        message = providers.mail.send.call_args.args[0]
        assert message.template == MessageTemplate.SUBSCRIBER_INCIDENT_CREATED
        assert message.recipient == "subscriber@example.com"
        assert message.context["track_viewed_url"].endswith(f"/{rows[0].id}/viewed")

    @pytest.mark.asyncio
    async def test_disabled_status_page_skips_created(
        self, db_session, providers, world, make_subscriber, make_status_page
    ):
        page = await make_status_page(enabled=False)
        await make_subscriber(status_page=page)

        assert await notify(db_session, providers, world, NotificationEvent.INCIDENT_CREATED) == []
        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED)
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_toggle_marks_pending_row_disabled(
        self, db_session, providers, world, make_subscriber
    ):
        world.project.notification_toggles = {
            "send_acknowledged_incident_notification_email": False
        }
        await db_session.commit()
        await make_subscriber()

        rows = await notify(
            db_session, providers, world, NotificationEvent.INCIDENT_ACKNOWLEDGED
        )

        assert rows[0].status == SubscriberAlertStatus.DISABLED
        assert rows[0].error is False
        providers.mail.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_note_toggle_writes_error_row(
        self, db_session, providers, world, make_subscriber
    ):
        world.project.notification_toggles = {
            "enable_investigation_note_notification_email": False
        }
        await db_session.commit()
        await make_subscriber()

        rows = await notify(
            db_session,
            providers,
            world,
            NotificationEvent.INVESTIGATION_NOTE,
            note=StatusNote(content="Looking into it", incident_state="investigating"),
        )

        assert rows[0].status is None
        assert rows[0].error is True
        assert rows[0].error_message == "Investigation Note Email Notification Disabled"
        assert rows[0].event_type == "Investigation note created"

    @pytest.mark.asyncio
    async def test_admin_gate_applies(self, db_session, providers, world, make_subscriber):
        config = (
            await db_session.execute(select(GlobalConfig).where(GlobalConfig.name == "smtp"))
        ).scalar_one()
        config.value = {"email-enabled": False}
        await db_session.commit()
        await make_subscriber()

        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED)

        assert rows[0].error_message == "Alert Disabled on Admin Dashboard"
        providers.mail.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_fan_out(
        self, db_session, providers, world, make_subscriber
    ):
        await make_subscriber(email="first@example.com")
        await make_subscriber(email="second@example.com")
        providers.mail.send.side_effect = [RuntimeError("Mailbox full"), None]

        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED)

        assert sorted((r.status is None, r.error_message or "") for r in rows) == [
            (False, ""),
            (True, "Mailbox full"),
        ]

    @pytest.mark.asyncio
    async def test_unsubscribed_are_skipped(self, db_session, providers, world, make_subscriber):
        await make_subscriber(subscribed=False)

        assert await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED) == []


# ── Webhook ──


class TestWebhookSubscribers:
    @pytest.mark.asyncio
    async def test_delivered(self, db_session, providers, world, make_subscriber):
        await make_subscriber(alert_via=AlertChannel.WEBHOOK, webhook="https://hooks.example.com")

        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_CREATED)

        assert [(r.channel, r.status) for r in rows] == [
            (AlertChannel.WEBHOOK, SubscriberAlertStatus.SENT)
        ]
        url, payload = providers.webhook.send_subscriber_notification.call_args.args
        assert url == "https://hooks.example.com"
        assert payload["event"] == "identified"
        assert payload["incident"]["id_number"] == 1
        providers.mail.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_delivered_falls_back_to_email(
        self, db_session, providers, world, make_subscriber
    ):
        providers.webhook.send_subscriber_notification.return_value = False
        await make_subscriber(alert_via=AlertChannel.WEBHOOK, webhook="https://hooks.example.com")

        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED)

        assert [(r.channel, r.status) for r in rows] == [
            (AlertChannel.WEBHOOK, SubscriberAlertStatus.NOT_SENT),
            (AlertChannel.EMAIL, SubscriberAlertStatus.SENT),
        ]

    @pytest.mark.asyncio
    async def test_missing_url(self, db_session, providers, world, make_subscriber):
        await make_subscriber(alert_via=AlertChannel.WEBHOOK, email=None)

        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED)

        assert len(rows) == 1
        assert rows[0].error_message == "No webhook url"
        providers.webhook.send_subscriber_notification.assert_not_called()

    @pytest.mark.asyncio
    async def test_note_webhook_toggle(self, db_session, providers, world, make_subscriber):
        world.project.notification_toggles = {
            "enable_investigation_note_notification_webhook": False
        }
        await db_session.commit()
        await make_subscriber(alert_via=AlertChannel.WEBHOOK, webhook="https://hooks.example.com")

        rows = await notify(
            db_session,
            providers,
            world,
            NotificationEvent.INVESTIGATION_NOTE,
            note=StatusNote(content="Fixed", status="updated"),
        )

        assert len(rows) == 1
        assert rows[0].error_message == "Investigation Note Webhook Notification Disabled"
        assert rows[0].event_type == "Investigation note updated"
        providers.mail.send.assert_not_called()


# ── SMS ──


class TestSmsSubscribers:
    @pytest.mark.asyncio
    async def test_sent_and_billed_to_owner(self, db_session, providers, world, make_subscriber):
        await make_subscriber(alert_via=AlertChannel.SMS, phone="5550123", country_code="+1")

        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED)

        assert rows[0].status == SubscriberAlertStatus.SUCCESS
        message = providers.sms_voice.send_sms.call_args.args[0]
        assert message.recipient == "+15550123"
        owner = providers.billing.charge_alert.call_args.args[1]
        assert owner == world.project.owner_user_id

        charge = (await db_session.execute(select(AlertCharge))).scalar_one()
        assert charge.subscriber_alert_id == rows[0].id

    @pytest.mark.asyncio
    async def test_high_risk_number(self, db_session, providers, world, make_subscriber):
        await make_subscriber(alert_via=AlertChannel.SMS, phone="+252612345678")

        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED)

        assert rows[0].status is None
        assert rows[0].error_message == "SMS to High Risk country not enabled for this project"
        providers.sms_voice.send_sms.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_by_provider(self, db_session, providers, world, make_subscriber):
        providers.sms_voice.send_sms.return_value = ProviderResult(code=400, message="Blocked")
        await make_subscriber(alert_via=AlertChannel.SMS, phone="+15550123")

        rows = await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED)

        assert rows[0].status is None
        assert rows[0].error_message == "Blocked"
        providers.billing.charge_alert.assert_not_called()


# ── Maintenance and notes ──


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_notifies_subscribers_of_covered_monitors(
        self, db_session, providers, world, make_subscriber
    ):
        await make_subscriber()
        await make_subscriber(alert_via=AlertChannel.WEBHOOK, webhook="https://hooks.example.com")
        event = ScheduledEvent(
            project_id=world.project.id,
            name="Database upgrade",
            description="Postgres 16",
            monitor_ids=[str(world.monitor.id), "garbage", str(uuid.uuid4())],
            start_date=datetime.now(UTC) + timedelta(days=1),
        )
        db_session.add(event)
        await db_session.commit()

        rows = await notify_maintenance(
            db_session, providers, NotificationEvent.MAINTENANCE_CREATED, event
        )

        assert len(rows) == 1
        assert rows[0].scheduled_event_id == event.id
        assert rows[0].incident_id is None
        assert rows[0].event_type == "Scheduled maintenance created"
        providers.webhook.send_subscriber_notification.assert_not_called()
        message = providers.mail.send.call_args.args[0]
        assert message.context["event_name"] == "Database upgrade"

    @pytest.mark.asyncio
    async def test_rejects_incident_events(self, db_session, providers, world):
        event = ScheduledEvent(project_id=world.project.id, name="x", monitor_ids=[])

        with pytest.raises(ValueError):
            await notify_maintenance(
                db_session, providers, NotificationEvent.INCIDENT_CREATED, event
            )


class TestInvestigationNotes:
    @pytest.mark.asyncio
    async def test_integration_webhooks(self, db_session, providers, world):
        world.project.integration_webhook_urls = ["https://a.example.com", "https://b.example.com"]
        await db_session.commit()
        providers.webhook.send_integration_notification.side_effect = [True, RuntimeError("x")]

        delivered = await notify_project_webhooks_of_note(
            db_session, providers, world.incident, world.monitor, StatusNote(content="Update")
        )

        assert delivered == 1
        payload = providers.webhook.send_integration_notification.call_args.args[1]
        assert payload["incident_status"] == "created"
        assert payload["note"]["content"] == "Update"

    @pytest.mark.asyncio
    async def test_note_reaches_subscribers(self, db_session, providers, world, make_subscriber):
        await make_subscriber()

        rows = await notify_investigation_note(
            db_session, providers, world.incident, world.monitor, StatusNote(content="Update")
        )

        assert rows[0].status == SubscriberAlertStatus.SENT
        message = providers.mail.send.call_args.args[0]
        assert message.context["note"] == "Update"


class TestStatusPageUrl:
    def test_custom_domain(self):
        page = StatusPage(id=uuid.uuid4(), domain="https://status.acme.com")
        assert status_page_url(page) == f"https://status.acme.com/status-page/{page.id}"

    def test_no_page(self):
        assert status_page_url(None) is None


@pytest.mark.asyncio
async def test_rows_are_grouped_by_batch(db_session, providers, world, make_subscriber):
    await make_subscriber(email="a@example.com")
    await make_subscriber(email="b@example.com")

    await notify(db_session, providers, world, NotificationEvent.INCIDENT_RESOLVED)

    rows = (await db_session.execute(select(SubscriberAlert))).scalars().all()
    assert len({row.batch_id for row in rows}) == 1
