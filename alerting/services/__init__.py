# Alerting engine services
from alerting.services.call_routing import (
    CallRoutingError,
    charge_routed_call,
    find_team_member,
    get_call_response,
    release_number,
    reserve_number,
)
from alerting.services.channel_dispatcher import (
    AlertContext,
    complete_alert,
    prepare_alert,
    send_alert,
)
from alerting.services.escalation_engine import (
    EscalationError,
    EscalationStep,
    ProgressConflictError,
    StepAction,
    advance,
)
from alerting.services.incident_alerts import (
    process_pending_reminders,
    send_acknowledged_incident,
    send_created_incident,
    send_resolved_incident,
    send_sla_notification,
)
from alerting.services.scheduler import (
    get_scheduler,
    start_scheduler,
    stop_scheduler,
)
from alerting.services.subscriber_notifier import (
    NotificationEvent,
    StatusNote,
    notify_investigation_note,
    notify_maintenance,
    notify_subscribers,
)

__all__ = [
    "CallRoutingError",
    "charge_routed_call",
    "find_team_member",
    "get_call_response",
    "release_number",
    "reserve_number",
    "AlertContext",
    "complete_alert",
    "prepare_alert",
    "send_alert",
    "EscalationError",
    "EscalationStep",
    "ProgressConflictError",
    "StepAction",
    "advance",
    "process_pending_reminders",
    "send_acknowledged_incident",
    "send_created_incident",
    "send_resolved_incident",
    "send_sla_notification",
    "get_scheduler",
    "start_scheduler",
    "stop_scheduler",
    "NotificationEvent",
    "StatusNote",
    "notify_investigation_note",
    "notify_maintenance",
    "notify_subscribers",
]
