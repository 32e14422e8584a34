"""ntfy push implementation of the NotificationChannel protocol."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import aiohttp

from backupwatch.notifications.channels import (
    ChannelNotConfiguredError,
    PermanentDeliveryError,
    TransientDeliveryError,
)

if TYPE_CHECKING:
    from backupwatch.config import PushChannelConfig
    from backupwatch.notifications.models import Notification

logger = logging.getLogger(__name__)

# ntfy rejects bodies above 4096 bytes unless attachments are enabled.
MAX_MESSAGE_BYTES = 4096


class NtfyChannel:
    """Publishes notifications to an ntfy topic over HTTP."""

    def __init__(self, config: PushChannelConfig, *, timeout: float = 10.0) -> None:
        self._config = config
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def kind(self) -> str:
        return "push"

    @property
    def url(self) -> str:
        return f"{self._config.server_url}/{self._config.topic}"

    def _get_session(self) -> aiohttp.ClientSession:
        """Return (and lazily create) this channel's aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {}
            if self._config.access_token:
                headers["Authorization"] = f"Bearer {self._config.access_token}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self._session

    async def send(self, notification: Notification) -> None:
        """POST the notification to ``<server>/<topic>``."""
        if not self._config.topic:
            raise ChannelNotConfiguredError("ntfy topic not set")

        body = notification.message.encode("utf-8")
        if len(body) > MAX_MESSAGE_BYTES:
            # Cut on a character boundary so the body stays valid UTF-8.
            head = body[: MAX_MESSAGE_BYTES - 3].decode("utf-8", "ignore")
            body = head.encode("utf-8") + b"..."

        priority = notification.priority
        if priority is None:
            priority = self._config.priority
        tags = list(notification.tags) or self._config.tags
        headers = {
            "Title": notification.title,
            "Priority": str(priority),
        }
        if tags:
            headers["Tags"] = ",".join(tags)

        session = self._get_session()
        try:
            async with session.post(self.url, data=body, headers=headers) as resp:
                if 200 <= resp.status < 300:
                    logger.info(
                        "ntfy notification sent to %s (%s, %d bytes)",
                        self._config.topic,
                        notification.kind,
                        len(body),
                    )
                    return
                text = await resp.text()
                detail = f"HTTP {resp.status}: {text[:200]}"
        except (aiohttp.ClientConnectionError, TimeoutError) as exc:
            raise TransientDeliveryError(f"ntfy unreachable: {exc!r}") from exc
        except aiohttp.ClientError as exc:
            raise PermanentDeliveryError(f"ntfy request failed: {exc!r}") from exc

        if resp.status == 429 or resp.status >= 500:
            raise TransientDeliveryError(detail)
        raise PermanentDeliveryError(detail)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
