"""Per-channel retries and fan-out across channels."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from backupwatch.notifications.channels import (
    ChannelNotConfiguredError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from backupwatch.notifications.email_channel import EmailChannel
from backupwatch.notifications.models import ChannelResult, DispatchResult, SendOutcome
from backupwatch.notifications.ntfy_channel import NtfyChannel

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from backupwatch.config import EmailChannelConfig, PushChannelConfig, Settings
    from backupwatch.notifications.channels import NotificationChannel
    from backupwatch.notifications.models import Notification

logger = logging.getLogger(__name__)


def create_channel(
    config: PushChannelConfig | EmailChannelConfig, *, timeout: float = 10.0
) -> NotificationChannel:
    """Build the channel implementation for a validated channel config."""
    if config.kind == "push":
        return NtfyChannel(config, timeout=timeout)
    if config.kind == "email":
        return EmailChannel(config, timeout=timeout)
    msg = f"Unknown channel kind: {config.kind}"
    raise ValueError(msg)


class NotificationDispatcher:
    """Delivers notifications through registered channels.

    Args:
        max_attempts: Attempts per channel per dispatch (first try included).
        backoff: Delay before the second attempt; doubles each retry.
        backoff_max: Upper bound on any single delay.
        timeout: Ceiling for one send attempt. Channels that set
            ``bounds_own_timeout`` enforce it themselves.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff: float = 1.0,
        backoff_max: float = 8.0,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._channels: dict[str, NotificationChannel] = {}
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff
        self._backoff_max = backoff_max
        self._timeout = timeout
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> NotificationDispatcher:
        """Build a dispatcher with every channel enabled in *settings* registered."""
        dispatcher = cls(
            max_attempts=settings.dispatch_max_attempts,
            backoff=settings.dispatch_backoff_seconds,
            backoff_max=settings.dispatch_backoff_max_seconds,
            timeout=settings.dispatch_timeout_seconds,
        )
        for config in settings.get_channel_configs():
            dispatcher.register_channel(
                create_channel(config, timeout=settings.dispatch_timeout_seconds)
            )
        return dispatcher

    # -- Registry ----------------------------------------------------------------

    def register_channel(self, channel: NotificationChannel) -> None:
        """Register a notification channel. Raises ValueError on duplicate name."""
        if channel.name in self._channels:
            msg = f"Channel '{channel.name}' is already registered"
            raise ValueError(msg)
        self._channels[channel.name] = channel
        logger.info("Registered %s channel '%s'", channel.kind, channel.name)

    def get_channel(self, name: str) -> NotificationChannel | None:
        return self._channels.get(name)

    def list_channels(self) -> list[str]:
        return list(self._channels.keys())

    def resolve(self, names: Iterable[str] | None = None) -> list[NotificationChannel]:
        """Channels selected by *names*, or all of them when *names* is None.

        Unknown names are logged and skipped.
        """
        if names is None:
            return list(self._channels.values())
        selected = []
        for name in names:
            channel = self._channels.get(name)
            if channel is None:
                logger.warning("Notification channel '%s' is not registered", name)
                continue
            selected.append(channel)
        return selected

    def has_channels(self, names: Iterable[str] | None = None) -> bool:
        return bool(self.resolve(names))

    # -- Delivery ----------------------------------------------------------------

    def _delay(self, attempt: int) -> float:
        return min(self._backoff * (2 ** (attempt - 1)), self._backoff_max)

    async def _attempt(self, channel: NotificationChannel, notification: Notification) -> None:
        # Cancelling a send that runs in a worker thread does not stop it.
        if getattr(channel, "bounds_own_timeout", False):
            await channel.send(notification)
        else:
            await asyncio.wait_for(channel.send(notification), timeout=self._timeout)

    async def send(self, channel: NotificationChannel, notification: Notification) -> ChannelResult:
        """Deliver through one channel, retrying transient failures with backoff."""
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._attempt(channel, notification)
            except ChannelNotConfiguredError as exc:
                logger.warning("Channel '%s' not configured: %s", channel.name, exc)
                return ChannelResult(channel.name, SendOutcome.NOT_CONFIGURED, attempt, str(exc))
            except PermanentDeliveryError as exc:
                logger.error(
                    "Permanent delivery failure on '%s' for %s: %s",
                    channel.name,
                    notification.job_id,
                    exc,
                )
                return ChannelResult(channel.name, SendOutcome.PERMANENT_FAILURE, attempt, str(exc))
            except (TransientDeliveryError, TimeoutError) as exc:
                error = str(exc) or f"timed out after {self._timeout:g}s"
                if attempt >= self._max_attempts:
                    logger.error(
                        "Giving up on '%s' for %s after %d attempt(s): %s",
                        channel.name,
                        notification.job_id,
                        attempt,
                        error,
                    )
                    return ChannelResult(
                        channel.name, SendOutcome.TRANSIENT_FAILURE, attempt, error
                    )
                delay = self._delay(attempt)
                logger.warning(
                    "Transient delivery failure on '%s' (attempt %d/%d), retrying in %.1fs: %s",
                    channel.name,
                    attempt,
                    self._max_attempts,
                    delay,
                    error,
                )
                await self._sleep(delay)
            except Exception as exc:
                logger.exception("Channel '%s' raised unexpectedly", channel.name)
                return ChannelResult(
                    channel.name, SendOutcome.PERMANENT_FAILURE, attempt, f"unexpected: {exc!r}"
                )
            else:
                return ChannelResult(channel.name, SendOutcome.SENT, attempt)
        return ChannelResult(channel.name, SendOutcome.TRANSIENT_FAILURE, self._max_attempts)

    async def dispatch(
        self,
        notification: Notification,
        channels: Iterable[str] | None = None,
    ) -> DispatchResult:
        """Send to every selected channel concurrently.

        Overall success when at least one channel delivered; each channel's
        failure is kept in the result rather than raised.
        """
        targets = self.resolve(channels)
        if not targets:
            logger.warning("No notification channels for %s", notification.job_id or "dispatch")
            return DispatchResult()
        results = await asyncio.gather(*(self.send(ch, notification) for ch in targets))
        result = DispatchResult(tuple(results))
        if result.ok and not all(r.ok for r in results):
            logger.warning("Partial delivery for %s: %s", notification.job_id, result.summary())
        return result

    async def close(self) -> None:
        for channel in self._channels.values():
            try:
                await channel.close()
            except Exception:
                logger.exception("Failed to close channel '%s'", channel.name)
