"""SMTP email implementation of the NotificationChannel protocol.

smtplib is blocking, so each send runs in a worker thread via
``asyncio.to_thread``. A worker thread cannot be cancelled, so the channel
bounds the whole SMTP exchange with its own deadline. The message is handed
to the server only while time remains, and a handed-over send is never
abandoned.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import time
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import TYPE_CHECKING

from backupwatch.notifications.channels import (
    ChannelNotConfiguredError,
    PermanentDeliveryError,
    TransientDeliveryError,
)

if TYPE_CHECKING:
    from backupwatch.config import EmailChannelConfig
    from backupwatch.notifications.models import Notification

logger = logging.getLogger(__name__)


class EmailChannel:
    """Sends notifications as plain-text email."""

    # The dispatcher must not wrap send() in wait_for; see module docstring.
    bounds_own_timeout = True

    def __init__(self, config: EmailChannelConfig, *, timeout: float = 10.0) -> None:
        self._config = config
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def kind(self) -> str:
        return "email"

    def build_message(self, notification: Notification) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._config.sender
        message["To"] = ", ".join(self._config.recipients)
        message["Subject"] = notification.title
        message["Date"] = formatdate(localtime=False)
        message["Message-ID"] = make_msgid(domain=self._config.sender.rsplit("@", 1)[-1])
        if notification.job_id:
            message["X-Backup-Job"] = notification.job_id
        message["X-Notification-Kind"] = notification.kind
        message.set_content(notification.message)
        return message

    async def send(self, notification: Notification) -> None:
        if not self._config.host or not self._config.recipients:
            raise ChannelNotConfiguredError("SMTP host or recipients not set")
        message = self.build_message(notification)
        await asyncio.to_thread(self._deliver, message, time.monotonic() + self._timeout)
        logger.info(
            "Email notification sent to %d recipient(s) (%s)",
            len(self._config.recipients),
            notification.kind,
        )

    def _remaining(self, client: smtplib.SMTP, deadline: float, step: str) -> None:
        """Shrink the socket timeout to what is left, or give up before *step*."""
        left = deadline - time.monotonic()
        if left <= 0:
            msg = f"SMTP exchange exceeded {self._timeout:g}s before {step}"
            raise TransientDeliveryError(msg)
        if client.sock is not None:
            client.sock.settimeout(left)

    def _deliver(self, message: EmailMessage, deadline: float) -> None:
        """Blocking SMTP exchange. Maps smtplib errors to delivery errors."""
        cfg = self._config
        try:
            if cfg.security == "ssl":
                client = smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=self._timeout)
            else:
                client = smtplib.SMTP(cfg.host, cfg.port, timeout=self._timeout)
            with client:
                if cfg.security == "starttls":
                    self._remaining(client, deadline, "STARTTLS")
                    client.starttls()
                if cfg.username:
                    self._remaining(client, deadline, "login")
                    client.login(cfg.username, cfg.password)
                self._remaining(client, deadline, "sending")
                client.send_message(message)
        except (smtplib.SMTPAuthenticationError, smtplib.SMTPRecipientsRefused) as exc:
            raise PermanentDeliveryError(f"SMTP rejected: {exc}") from exc
        except smtplib.SMTPNotSupportedError as exc:
            raise PermanentDeliveryError(f"SMTP server lacks a required feature: {exc}") from exc
        except smtplib.SMTPResponseException as exc:
            # 4xx replies are temporary by definition, 5xx are not.
            if 400 <= exc.smtp_code < 500:
                raise TransientDeliveryError(f"SMTP {exc.smtp_code}: {exc.smtp_error!r}") from exc
            raise PermanentDeliveryError(f"SMTP {exc.smtp_code}: {exc.smtp_error!r}") from exc
        except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError) as exc:
            raise TransientDeliveryError(f"SMTP connection failed: {exc}") from exc
        except smtplib.SMTPException as exc:
            raise PermanentDeliveryError(f"SMTP error: {exc}") from exc
        except OSError as exc:
            # Connection refused, DNS failure, socket timeout.
            raise TransientDeliveryError(f"SMTP unreachable: {exc!r}") from exc

    async def close(self) -> None:
        """Nothing to release; a connection is opened per message."""
