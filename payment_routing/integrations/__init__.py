"""External integrations: provider webhooks and the notification service."""
from .notification_client import NotificationClient, NotificationError
from .signatures import WebhookError, WebhookNotConfiguredError, WebhookSignatureError
from .webhook_handler import ProviderEvent, WebhookHandler

__all__ = [
    "NotificationClient",
    "NotificationError",
    "ProviderEvent",
    "WebhookError",
    "WebhookHandler",
    "WebhookNotConfiguredError",
    "WebhookSignatureError",
]
