# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Notifier - deliver one terminal summary per run.

Delivery failures are logged and recorded as run warnings; they never
change a run's pass/fail status.
"""

import json
import logging
from typing import Any, Dict, Optional

from conveyor.errors import DeliveryError, ValidationError
from conveyor.schemas import NotifyResult, RunState, RunSummary
from conveyor_jobs import email, webhook

logger = logging.getLogger(__name__)


def build_summary(state: RunState) -> RunSummary:
    """Snapshot a finished RunState into a RunSummary."""
    finished = state.finished_at or state.started_at
    stages = tuple(
        {
            "stage_id": r.stage_id,
            "status": r.status.value,
            "attempts": r.attempts,
            "error": r.error,
            "blocked_by": r.blocked_by,
        }
        for r in state.ordered_results()
    )
    return RunSummary(
        run_id=state.run_id,
        pipeline_id=state.pipeline_id,
        status=state.status,
        commit_sha=state.commit_sha,
        actor=state.actor,
        stages=stages,
        warnings=tuple(state.warnings),
        duration_s=(finished - state.started_at).total_seconds(),
    )


class Channel:
    """A summary delivery channel. send() raises DeliveryError on failure."""

    name = "base"

    def send(self, summary: RunSummary) -> None:
        raise NotImplementedError


class LogChannel(Channel):
    """Writes the summary to the log."""

    name = "log"

    def send(self, summary: RunSummary) -> None:
        logger.info(f"{summary.subject}: {json.dumps(summary.to_dict(), default=str)}")


class EmailChannel(Channel):
    """Sends the summary by email through conveyor_jobs.email."""

    name = "email"

    def __init__(self, to, sender: str, smtp_host: str, **options: Any):
        self.to = to
        self.sender = sender
        self.smtp_host = smtp_host
        self.options = options

    def send(self, summary: RunSummary) -> None:
        result = email.send(
            summary.to_dict(),
            to=self.to,
            sender=self.sender,
            smtp_host=self.smtp_host,
            **self.options,
        )
        if not result["sent"]:
            raise DeliveryError(f"Email delivery failed: {result['error']}")


class WebhookChannel(Channel):
    """POSTs the summary as JSON through conveyor_jobs.webhook."""

    name = "webhook"

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, timeout_s: float = 10):
        self.url = url
        self.headers = headers or {}
        self.timeout_s = timeout_s

    def send(self, summary: RunSummary) -> None:
        result = webhook.post(self.url, summary.to_dict(), headers=self.headers, timeout_s=self.timeout_s)
        if not result["sent"]:
            raise DeliveryError(f"Webhook delivery failed: {result['error']}")


def build_channel(notify_config: Optional[Dict[str, Any]]) -> Channel:
    """
    Build a channel from the `notify:` config block.

    Examples:
        {"channel": "log"}
        {"channel": "email", "to": ["ops@example.com"], "sender": "ci@example.com",
         "smtp_host": "localhost", "smtp_port": 25}
        {"channel": "webhook", "url": "https://hooks.example.com/ci"}
    """
    notify_config = dict(notify_config or {"channel": "log"})
    kind = notify_config.pop("channel", "log")

    if kind == "log":
        return LogChannel()
    if kind == "email":
        missing = [k for k in ("to", "sender", "smtp_host") if not notify_config.get(k)]
        if missing:
            raise ValidationError(f"Email notify config missing: {', '.join(missing)}")
        return EmailChannel(**notify_config)
    if kind == "webhook":
        if not notify_config.get("url"):
            raise ValidationError("Webhook notify config missing: url")
        return WebhookChannel(**notify_config)
    raise ValidationError(f"Unknown notify channel: {kind}")


class Notifier:
    """Delivers a RunSummary to one channel."""

    def __init__(self, channel: Optional[Channel] = None):
        self.channel = channel or LogChannel()

    def notify(self, state: RunState) -> NotifyResult:
        """Send the run summary. Never raises for delivery problems."""
        summary = build_summary(state)
        try:
            self.channel.send(summary)
        except Exception as e:
            message = f"Notification via {self.channel.name} failed: {e}"
            logger.warning(message, extra={"run_id": state.run_id})
            state.warnings.append(message)
            return NotifyResult(delivered=False, channel=self.channel.name, error=str(e))

        logger.info(f"Notification sent via {self.channel.name}", extra={"run_id": state.run_id})
        return NotifyResult(delivered=True, channel=self.channel.name)
