# Database Models
from alerting.models.alert import (
    Alert,
    AlertChannel,
    AlertCharge,
    AlertEventType,
    AlertStatus,
)
from alerting.models.base import Base, TimestampMixin
from alerting.models.call_routing import CallRouting, CallRoutingLog
from alerting.models.monitor import Incident, Monitor, ScheduledEvent
from alerting.models.oncall_status import EscalationStatus, OnCallScheduleStatus
from alerting.models.project import GlobalConfig, Project
from alerting.models.schedule import EscalationPolicy, Schedule
from alerting.models.sla import IncidentCommunicationSla
from alerting.models.subscriber import (
    StatusPage,
    Subscriber,
    SubscriberAlert,
    SubscriberAlertStatus,
)
from alerting.models.user import User

__all__ = [
    "Alert",
    "AlertChannel",
    "AlertCharge",
    "AlertEventType",
    "AlertStatus",
    "Base",
    "CallRouting",
    "CallRoutingLog",
    "EscalationPolicy",
    "EscalationStatus",
    "GlobalConfig",
    "Incident",
    "IncidentCommunicationSla",
    "Monitor",
    "OnCallScheduleStatus",
    "Project",
    "Schedule",
    "ScheduledEvent",
    "StatusPage",
    "Subscriber",
    "SubscriberAlert",
    "SubscriberAlertStatus",
    "TimestampMixin",
    "User",
]
