"""Notification channel senders.

One sender per channel type, selected through ``SENDERS``:
- EmailSender: SMTP via stdlib ``smtplib``
- WebhookSender: JSON POST/PUT via stdlib ``urllib.request``
- SlackSender: Slack incoming webhook

Every sender raises ``NotificationError`` on failure and nothing else.
"""

from __future__ import annotations

import json
import smtplib
import urllib.error
import urllib.request
from datetime import UTC, datetime
from email.message import EmailMessage
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from secwatch.errors import NotificationError
from secwatch.models import Alert, AlertRule, ChannelType, NotificationChannel, Severity
from secwatch.templates import render_template

_SLACK_ICONS = {
    Severity.INFO: ":information_source:",
    Severity.LOW: ":large_blue_circle:",
    Severity.MEDIUM: ":warning:",
    Severity.HIGH: ":rotating_light:",
    Severity.CRITICAL: ":fire:",
}


class AlertMessage(BaseModel):
    """Channel-neutral rendering of an alert."""

    alert: Alert
    rule_name: str
    subject: str
    text: str

    def context(self) -> dict[str, Any]:
        return {
            **self.alert.model_dump(mode="json"),
            "rule_name": self.rule_name,
            "alert_id": self.alert.id,
        }


def build_message(alert: Alert, rule: AlertRule | None = None) -> AlertMessage:
    rule_name = rule.name if rule is not None else alert.rule_id
    subject = f"[{alert.severity.upper()}] {alert.title}"
    text = (
        f"{alert.title}\n"
        f"Severity: {alert.severity}\n"
        f"Rule: {rule_name}\n"
        f"Group: {alert.group_key}\n"
        f"Events: {alert.triggering_event_count}\n"
        f"First seen: {alert.first_triggered_at.isoformat()}\n"
        f"Last seen: {alert.last_triggered_at.isoformat()}\n"
        f"Status: {alert.status}\n\n"
        f"{alert.description}"
    )
    return AlertMessage(alert=alert, rule_name=rule_name, subject=subject, text=text)


@runtime_checkable
class ChannelSender(Protocol):
    """Anything that can deliver an ``AlertMessage`` to a channel."""

    def send(self, message: AlertMessage, channel: NotificationChannel) -> None: ...


def _post_json(
    url: str,
    payload: dict[str, Any],
    method: str = "POST",
    headers: dict[str, str] | None = None,
    timeout: float = 10.0,
) -> None:
    body = json.dumps(payload, sort_keys=True).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json", **(headers or {})},
        method=method,
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout):  # noqa: S310
            pass
    except (urllib.error.URLError, OSError, ValueError) as exc:
        raise NotificationError(f"{method} {url} failed: {exc}") from exc


class WebhookSender:
    """POST (or PUT) the alert as a JSON envelope."""

    def send(self, message: AlertMessage, channel: NotificationChannel) -> None:
        cfg = channel.configuration
        method = str(cfg.get("method", "POST")).upper()
        if method not in ("POST", "PUT"):
            raise NotificationError(f"Unsupported webhook method '{method}'")
        envelope = {
            "type": "alert",
            "channel_id": channel.id,
            "rule_name": message.rule_name,
            "alert": message.alert.model_dump(mode="json"),
            "notified_at": datetime.now(tz=UTC).isoformat(),
        }
        _post_json(
            cfg["url"],
            envelope,
            method=method,
            headers=cfg.get("headers"),
            timeout=float(cfg.get("timeout", 10.0)),
        )


class SlackSender:
    """Send the alert to Slack via incoming webhook."""

    def send(self, message: AlertMessage, channel: NotificationChannel) -> None:
        cfg = channel.configuration
        alert = message.alert
        icon = _SLACK_ICONS.get(alert.severity, ":warning:")
        text = (
            f"{icon} *{alert.title}*\n"
            f"*Severity:* `{alert.severity}`\n"
            f"*Rule:* {message.rule_name}\n"
            f"*Group:* `{alert.group_key}`\n"
            f"*Events:* {alert.triggering_event_count}\n"
            f"*Last seen:* {alert.last_triggered_at.isoformat()}\n"
            f"*Alert ID:* `{alert.id}`"
        )
        payload: dict[str, Any] = {"text": text, "channel": cfg["channel"]}
        _post_json(cfg["webhook_url"], payload, timeout=float(cfg.get("timeout", 10.0)))


class EmailSender:
    """Send the alert as a plain-text email over SMTP.

    Configuration keys: ``recipients``, ``subject_template`` (required);
    ``smtp_host``, ``smtp_port``, ``sender``, ``username``, ``password``,
    ``use_tls`` (optional).
    """

    def send(self, message: AlertMessage, channel: NotificationChannel) -> None:
        cfg = channel.configuration
        recipients = cfg.get("recipients") or []
        if not recipients:
            raise NotificationError(f"Email channel {channel.id} has no recipients")

        email = EmailMessage()
        email["Subject"] = render_template(
            cfg.get("subject_template") or message.subject, message.context(),
        )
        email["From"] = cfg.get("sender", "secwatch@localhost")
        email["To"] = ", ".join(recipients)
        email.set_content(message.text)

        try:
            with smtplib.SMTP(
                cfg.get("smtp_host", "localhost"),
                int(cfg.get("smtp_port", 25)),
                timeout=float(cfg.get("timeout", 10.0)),
            ) as smtp:
                if cfg.get("use_tls"):
                    smtp.starttls()
                if cfg.get("username"):
                    smtp.login(cfg["username"], cfg.get("password", ""))
                smtp.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"SMTP delivery for {channel.id} failed: {exc}") from exc


SENDERS: dict[ChannelType, ChannelSender] = {
    ChannelType.EMAIL: EmailSender(),
    ChannelType.WEBHOOK: WebhookSender(),
    ChannelType.SLACK: SlackSender(),
}
