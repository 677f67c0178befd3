"""Pytest configuration and shared fixtures.

Each test gets a fresh in-memory SQLite database, so the alerting engine
runs against real ORM sessions while every provider is an AsyncMock.
"""

import os
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set testing mode BEFORE importing settings consumers
os.environ["TESTING"] = "true"

from alerting.config import settings

# Override settings for testing
settings.testing = True
settings.database_url = "sqlite+aiosqlite://"

from alerting.models import (
    Base,
    EscalationPolicy,
    GlobalConfig,
    Incident,
    Monitor,
    Project,
    Schedule,
    User,
)
from alerting.providers.base import (
    BillingStatus,
    CallDetails,
    ChargeResult,
    ProviderRegistry,
    ProviderResult,
)


@dataclass
class World:
    """A project with one on-call user, one monitor and one open incident."""

    project: Project
    user: User
    monitor: Monitor
    incident: Incident


@pytest_asyncio.fixture
async def db_engine():
    """In-memory database shared by every connection of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for each test."""
    session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def providers() -> ProviderRegistry:
    """Provider registry where every send succeeds."""
    mail = AsyncMock()
    mail.has_custom_settings.return_value = False

    sms_voice = AsyncMock()
    sms_voice.has_custom_settings.return_value = False
    sms_voice.send_sms.return_value = ProviderResult(
        code=200, body="Incident #1 is created", sid="SM123"
    )
    sms_voice.place_call.return_value = ProviderResult(code=200, sid="CA123")
    sms_voice.buy_phone_number.return_value = ProviderResult(code=200, sid="PN123")
    sms_voice.get_call_details.return_value = CallDetails(price="-0.0130", duration=42)

    push = AsyncMock()

    webhook = AsyncMock()
    webhook.send_subscriber_notification.return_value = True
    webhook.send_integration_notification.return_value = True

    billing = AsyncMock()
    billing.check_and_recharge.return_value = BillingStatus(success=True)
    billing.charge_alert.return_value = ChargeResult(
        error=False, charge_amount=0.5, closing_balance=99.5
    )
    billing.charge_amount.return_value = ChargeResult(
        error=False, charge_amount=0.13, closing_balance=99.87
    )
    billing.create_subscription.return_value = "sub_123"

    return ProviderRegistry(
        mail=mail,
        sms_voice=sms_voice,
        push=push,
        webhook=webhook,
        billing=billing,
    )


@pytest_asyncio.fixture
async def admin_config(db_session: AsyncSession) -> None:
    """SMTP and Twilio configured and enabled on the admin dashboard."""
    db_session.add_all(
        [
            GlobalConfig(name="smtp", value={"email-enabled": True}),
            GlobalConfig(name="twilio", value={"sms-enabled": True, "call-enabled": True}),
        ]
    )
    await db_session.commit()


@pytest_asyncio.fixture
async def world(db_session: AsyncSession, admin_config) -> World:
    owner_id = uuid.uuid4()
    project = Project(
        name="Acme",
        slug="acme",
        balance=100.0,
        alert_enable=True,
        alert_options={
            "billingUS": True,
            "billingNonUSCountries": True,
            "billingRiskCountries": False,
            "minimumBalance": 20,
        },
        notification_toggles={},
        owner_user_id=owner_id,
        integration_webhook_urls=[],
    )
    db_session.add(project)
    await db_session.flush()

    user = User(
        id=owner_id,
        name="Jane Doe",
        email="jane@example.com",
        alert_phone_number="+15550100",
        push_subscriptions=[],
    )
    monitor = Monitor(
        project_id=project.id,
        name="API",
        component_name="Backend",
        url="https://api.example.com/health",
        method="get",
        custom_fields={},
    )
    db_session.add_all([user, monitor])
    await db_session.flush()

    incident = Incident(
        project_id=project.id,
        monitor_id=monitor.id,
        id_number=1,
        incident_type="offline",
        custom_fields={},
    )
    db_session.add(incident)
    await db_session.commit()
    return World(project=project, user=user, monitor=monitor, incident=incident)


@pytest.fixture
def make_user(db_session: AsyncSession):
    async def _make(
        name: str = "John Roe",
        phone: str | None = "+15550111",
        timezone: str | None = None,
    ) -> User:
        user = User(
            name=name,
            email=f"{name.split(' ')[0].lower()}_{uuid.uuid4().hex[:6]}@example.com",
            alert_phone_number=phone,
            timezone=timezone,
            push_subscriptions=[],
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def make_policy(db_session: AsyncSession, world: World):
    """Create an escalation policy; the team defaults to the world's user."""

    async def _make(team_members: list[dict] | None = None, **channels) -> EscalationPolicy:
        if team_members is None:
            team_members = [{"user_id": str(world.user.id)}]
        policy = EscalationPolicy(
            project_id=world.project.id,
            team_members=team_members,
            **channels,
        )
        db_session.add(policy)
        await db_session.commit()
        return policy

    return _make


@pytest.fixture
def make_schedule(db_session: AsyncSession, world: World):
    async def _make(
        policies: list[EscalationPolicy],
        monitor_ids: list[str] | None = None,
        is_default: bool = False,
        name: str = "Primary rotation",
    ) -> Schedule:
        schedule = Schedule(
            project_id=world.project.id,
            name=name,
            escalation_ids=[str(p.id) for p in policies],
            monitor_ids=monitor_ids if monitor_ids is not None else [str(world.monitor.id)],
            is_default=is_default,
        )
        db_session.add(schedule)
        await db_session.commit()
        return schedule

    return _make
