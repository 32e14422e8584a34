"""NotificationChannel protocol — interface for all notification delivery channels."""

from typing import Protocol, runtime_checkable

from backupwatch.notifications.models import Notification


class DeliveryError(Exception):
    """Base class for channel delivery failures."""


class TransientDeliveryError(DeliveryError):
    """Network-level failure worth retrying (refused, timeout, 5xx, 429)."""


class PermanentDeliveryError(DeliveryError):
    """Configuration-level failure; retrying will not help (bad topic, bad address)."""


class ChannelNotConfiguredError(DeliveryError):
    """The channel is registered but lacks the settings it needs to send."""


@runtime_checkable
class NotificationChannel(Protocol):
    """Protocol that all notification channels must satisfy.

    A channel whose send cannot be cancelled may set a class attribute
    ``bounds_own_timeout = True``; the dispatcher then leaves the
    per-attempt timeout to the channel.
    """

    @property
    def name(self) -> str:
        """Unique channel identifier (e.g. 'ntfy', 'email')."""
        ...

    @property
    def kind(self) -> str:
        """Channel capability: ``"push"`` or ``"email"``."""
        ...

    async def send(self, notification: Notification) -> None:
        """Deliver one notification.

        Returns on success; raises TransientDeliveryError,
        PermanentDeliveryError or ChannelNotConfiguredError otherwise.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
