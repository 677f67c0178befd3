# External collaborators
from alerting.providers.base import (
    BillingProvider,
    BillingStatus,
    CallDetails,
    ChargeResult,
    MailProvider,
    MessageTemplate,
    OutboundMessage,
    ProviderError,
    ProviderRegistry,
    ProviderResult,
    PushProvider,
    SmsVoiceProvider,
    WebhookDispatcher,
)
from alerting.providers.webhook import HttpWebhookDispatcher

__all__ = [
    "BillingProvider",
    "BillingStatus",
    "CallDetails",
    "ChargeResult",
    "HttpWebhookDispatcher",
    "MailProvider",
    "MessageTemplate",
    "OutboundMessage",
    "ProviderError",
    "ProviderRegistry",
    "ProviderResult",
    "PushProvider",
    "SmsVoiceProvider",
    "WebhookDispatcher",
]
