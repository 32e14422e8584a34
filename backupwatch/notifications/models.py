"""Notification payloads and delivery outcomes."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

KIND_OVERDUE = "overdue"
KIND_ESCALATION = "escalation"
KIND_RECOVERED = "recovered"


@dataclass(frozen=True)
class Notification:
    """Channel-agnostic alert content. Each channel renders it its own way.

    Attributes:
        kind: ``"overdue"``, ``"escalation"`` or ``"recovered"``.
        title: Short subject line.
        message: Body text.
        job_id: Backup job the alert concerns.
        priority: 1 (min) to 5 (urgent), ntfy semantics. None leaves it to
            the channel's configured priority.
        tags: Short labels for ntfy. Empty uses the channel's configured tags.
    """

    kind: str
    title: str
    message: str
    job_id: str = ""
    priority: int | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)


class SendOutcome(enum.Enum):
    SENT = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class ChannelResult:
    """Result of delivering one notification through one channel."""

    channel: str
    outcome: SendOutcome
    attempts: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is SendOutcome.SENT


@dataclass(frozen=True)
class DispatchResult:
    """Fan-out result across every selected channel.

    Succeeds when at least one channel delivered. With no channel selected the
    outcome is ``NOT_CONFIGURED``.
    """

    results: tuple[ChannelResult, ...] = ()

    @property
    def ok(self) -> bool:
        return any(r.ok for r in self.results)

    @property
    def outcome(self) -> SendOutcome:
        if not self.results:
            return SendOutcome.NOT_CONFIGURED
        if self.ok:
            return SendOutcome.SENT
        outcomes = {r.outcome for r in self.results}
        if SendOutcome.TRANSIENT_FAILURE in outcomes:
            return SendOutcome.TRANSIENT_FAILURE
        if SendOutcome.PERMANENT_FAILURE in outcomes:
            return SendOutcome.PERMANENT_FAILURE
        return SendOutcome.NOT_CONFIGURED

    def summary(self) -> str:
        """``"ntfy=success, email=permanent_failure (550 ...)"``"""
        if not self.results:
            return "no channels configured"
        parts = []
        for r in self.results:
            part = f"{r.channel}={r.outcome.value}"
            if r.error:
                part += f" ({r.error})"
            parts.append(part)
        return ", ".join(parts)
