"""Alert delivery through the channels configured in an operator's settings.

Supported channels:
    - discord: webhook POST with a markdown message
    - smtp: plain-text email (implicit TLS on port 465, STARTTLS otherwise)

Templates may use the placeholders {title}, {message}, {timestamp},
{previousIp} and {currentIp}.
"""

from __future__ import annotations

import logging
import re
import smtplib
from abc import ABC, abstractmethod
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Dict, Optional

import requests

from flarewatcher.errors import AlertDeliveryError
from flarewatcher.models import AlertPayload, Settings
from flarewatcher.stores import SettingsStore

logger = logging.getLogger(__name__)

TABLE_HEADER_LINE = "| Attribute | Details |"
TABLE_DIVIDER_LINE = "| --- | --- |"

TABLE_HEADER_RE = re.compile(
    r"^\s*\|\s*(?:\*\*)?\s*Attribute\s*(?:\*\*)?\s*\|\s*(?:\*\*)?\s*Details\s*(?:\*\*)?\s*\|\s*$",
    re.IGNORECASE,
)
TABLE_DIVIDER_RE = re.compile(r"^\s*\|\s*:?-{3,}:?\s*\|\s*:?-{3,}:?\s*\|\s*$")
CODE_FENCE_RE = re.compile(r"^\s*```(?:text|markdown)?\s*$", re.IGNORECASE)

DEFAULT_DISCORD_TEMPLATE = (
    "\U0001F310 **Network Alert: IP Address Change Detected**\n\n"
    "**Status Update**\n"
    "The monitoring system has detected a change in your external network configuration. "
    "Your connection has been updated successfully.\n\n"
    f"{TABLE_HEADER_LINE}\n"
    f"{TABLE_DIVIDER_LINE}\n"
    "| Status | \U0001F7E2 Active / Updated |\n"
    "| Previous IP | {previousIp} |\n"
    "| Current IP | {currentIp} |\n"
    "| Detection Time | {timestamp} |"
)

DEFAULT_SMTP_TEMPLATE = (
    "{title}\n\n{message}\n\nPrevious IP: {previousIp}\nCurrent IP: {currentIp}\nTimestamp: {timestamp}"
)

TEST_ALERT_TITLE = "Flarewatcher test alert"
TEST_ALERT_BODY = "This is a test alert from Flarewatcher."
TEST_PREVIOUS_IP = "203.0.113.10"
TEST_CURRENT_IP = "203.0.113.11"


# =============================================================================
# Templates
# =============================================================================


def normalize_discord_template(template: str) -> str:
    """Repair the markdown table in a Discord template.

    Code fences are stripped and a missing divider under the
    ``| Attribute | Details |`` header is inserted. Templates without that
    header are returned untouched.
    """
    lines = template.replace("\r\n", "\n").split("\n")
    if not any(TABLE_HEADER_RE.match(line) for line in lines):
        return template

    lines = [line for line in lines if not CODE_FENCE_RE.match(line)]
    header_index = next(i for i, line in enumerate(lines) if TABLE_HEADER_RE.match(line))
    lines[header_index] = TABLE_HEADER_LINE
    next_line = lines[header_index + 1] if header_index + 1 < len(lines) else ""
    if not TABLE_DIVIDER_RE.match(next_line):
        lines.insert(header_index + 1, TABLE_DIVIDER_LINE)

    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def render_template(
    template: str,
    payload: AlertPayload,
    timestamp: Optional[datetime] = None,
) -> str:
    stamp = (timestamp or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return (
        template.replace("{title}", payload.title)
        .replace("{message}", payload.body)
        .replace("{timestamp}", stamp)
        .replace("{previousIp}", payload.previous_ip or "N/A")
        .replace("{currentIp}", payload.current_ip or "N/A")
    )


# =============================================================================
# Dispatcher Interface and Implementations
# =============================================================================


class AlertDispatcher(ABC):
    """Abstract base class for alert delivery."""

    @abstractmethod
    def notify(self, operator_id: str, payload: AlertPayload) -> None:
        """Deliver ``payload`` on every enabled channel. Never raises."""
        pass


class ChannelAlertDispatcher(AlertDispatcher):
    """Delivers alerts over Discord webhooks and SMTP."""

    def __init__(self, settings_store: SettingsStore, timeout_seconds: float = 10.0):
        self._settings_store = settings_store
        self._timeout = timeout_seconds
        self._session = requests.Session()

    def notify(self, operator_id: str, payload: AlertPayload) -> None:
        try:
            settings = self._settings_store.get(operator_id)
        except Exception as e:
            logger.warning(f"Skipping alert '{payload.title}': settings unavailable: {e}")
            return
        if settings is None:
            return

        if settings.smtp_enabled and _smtp_ready(settings):
            try:
                self._send_smtp(settings, payload)
            except (smtplib.SMTPException, OSError) as e:
                logger.warning(f"SMTP alert for operator '{operator_id}' failed: {e}")

        if settings.discord_enabled and settings.discord_webhook_url:
            try:
                self._send_discord(settings.discord_webhook_url, settings.discord_markdown, payload)
            except requests.exceptions.RequestException as e:
                logger.warning(f"Discord alert for operator '{operator_id}' failed: {e}")

    def send_test_alert(
        self,
        operator_id: str,
        channel: str,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send a sample alert on one channel, raising AlertDeliveryError on failure."""
        settings = self._settings_store.get(operator_id)
        if settings is None:
            raise AlertDeliveryError("No settings found.")
        if overrides:
            settings = settings.merged(overrides)

        payload = AlertPayload(
            title=TEST_ALERT_TITLE,
            body=TEST_ALERT_BODY,
            previous_ip=TEST_PREVIOUS_IP,
            current_ip=TEST_CURRENT_IP,
        )

        if channel == "discord":
            if not settings.discord_webhook_url:
                raise AlertDeliveryError("Discord webhook is missing.")
            try:
                response = self._send_discord(
                    settings.discord_webhook_url, settings.discord_markdown, payload
                )
            except requests.exceptions.RequestException as e:
                raise AlertDeliveryError(f"Discord test failed: {e}") from e
            if not response.ok:
                raise AlertDeliveryError(
                    f"Discord test failed: {response.status_code} {response.text}".strip()
                )
            return

        if channel != "smtp":
            raise AlertDeliveryError(f"Unsupported alert channel: '{channel}'")
        if not settings.smtp_to:
            raise AlertDeliveryError("SMTP to address is missing.")
        if not _smtp_ready(settings):
            raise AlertDeliveryError("SMTP configuration is missing.")
        try:
            self._send_smtp(settings, payload)
        except (smtplib.SMTPException, OSError) as e:
            raise AlertDeliveryError(f"SMTP test failed: {e}") from e

    def _send_discord(
        self, webhook_url: str, template: Optional[str], payload: AlertPayload
    ) -> requests.Response:
        message = render_template(
            normalize_discord_template(template or DEFAULT_DISCORD_TEMPLATE), payload
        )
        response = self._session.post(
            webhook_url, json={"content": message}, timeout=self._timeout
        )
        if not response.ok:
            logger.warning(f"Discord webhook answered HTTP {response.status_code}")
        return response

    def _send_smtp(self, settings: Settings, payload: AlertPayload) -> None:
        message = EmailMessage()
        message["Subject"] = payload.title
        message["From"] = settings.smtp_from
        message["To"] = settings.smtp_to
        message.set_content(render_template(settings.smtp_message or DEFAULT_SMTP_TEMPLATE, payload))

        if settings.smtp_port == 465:
            client = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=self._timeout)
        else:
            client = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=self._timeout)
        with client:
            if settings.smtp_port != 465:
                client.ehlo()
                if client.has_extn("starttls"):
                    client.starttls()
                    client.ehlo()
            client.login(settings.smtp_user, settings.smtp_pass)
            client.send_message(message)
        logger.info(f"Sent alert '{payload.title}' to {settings.smtp_to}")


def _smtp_ready(settings: Settings) -> bool:
    return all(
        (
            settings.smtp_to,
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_pass,
            settings.smtp_from,
        )
    )
