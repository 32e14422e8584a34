"""Notification channel abstraction layer."""

from backupwatch.notifications.channels import (
    ChannelNotConfiguredError,
    NotificationChannel,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from backupwatch.notifications.dispatcher import NotificationDispatcher, create_channel
from backupwatch.notifications.email_channel import EmailChannel
from backupwatch.notifications.models import (
    ChannelResult,
    DispatchResult,
    Notification,
    SendOutcome,
)
from backupwatch.notifications.ntfy_channel import NtfyChannel

__all__ = [
    "ChannelNotConfiguredError",
    "ChannelResult",
    "DispatchResult",
    "EmailChannel",
    "Notification",
    "NotificationChannel",
    "NotificationDispatcher",
    "NtfyChannel",
    "PermanentDeliveryError",
    "SendOutcome",
    "TransientDeliveryError",
    "create_channel",
]
