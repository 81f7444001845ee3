from __future__ import annotations

import logging
import mimetypes
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import List, Optional

import requests

from .config import ProjectConfig

LOG = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
REQUEST_TIMEOUT = 30


class Notifier:
    """A single delivery channel for status notifications."""

    name = "notifier"

    def send(self, subject: str, body: str, attachment: Optional[Path] = None) -> None:
        raise NotImplementedError


class EmailNotifier(Notifier):
    name = "email"

    def __init__(self, recipient: str, host: str = "localhost", port: int = 25, sender: Optional[str] = None) -> None:
        self._recipient = recipient
        self._host = host
        self._port = port
        self._sender = sender or "wp-backup@localhost"

    def send(self, subject: str, body: str, attachment: Optional[Path] = None) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._sender
        message["To"] = self._recipient
        message.set_content(body)

        if attachment is not None and attachment.is_file():
            ctype, _ = mimetypes.guess_type(attachment.name)
            maintype, subtype = (ctype or "application/octet-stream").split("/", 1)
            message.add_attachment(
                attachment.read_bytes(),
                maintype=maintype,
                subtype=subtype,
                filename=attachment.name,
            )

        with smtplib.SMTP(self._host, self._port, timeout=REQUEST_TIMEOUT) as smtp:
            smtp.send_message(message)


class SlackNotifier(Notifier):
    name = "slack"

    def __init__(self, webhook_url: str) -> None:
        self._webhook_url = webhook_url

    def send(self, subject: str, body: str, attachment: Optional[Path] = None) -> None:
        text = f"*{subject}*\n{body}"
        if attachment is not None:
            text = f"{text}\n(log file: {attachment})"
        response = requests.post(self._webhook_url, json={"text": text}, timeout=REQUEST_TIMEOUT)
        if response.status_code >= 400:
            LOG.error("Slack webhook failed: %s %s", response.status_code, response.text)
            response.raise_for_status()


class TelegramNotifier(Notifier):
    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str, base_url: str = TELEGRAM_API_URL) -> None:
        self._chat_id = chat_id
        self._base_url = f"{base_url.rstrip('/')}/bot{bot_token}"

    def send(self, subject: str, body: str, attachment: Optional[Path] = None) -> None:
        response = requests.post(
            f"{self._base_url}/sendMessage",
            data={"chat_id": self._chat_id, "text": f"{subject}\n\n{body}"},
            timeout=REQUEST_TIMEOUT,
        )
        self._check(response, "sendMessage")

        if attachment is not None and attachment.is_file():
            with attachment.open("rb") as fh:
                response = requests.post(
                    f"{self._base_url}/sendDocument",
                    data={"chat_id": self._chat_id},
                    files={"document": (attachment.name, fh)},
                    timeout=REQUEST_TIMEOUT,
                )
            self._check(response, "sendDocument")

    @staticmethod
    def _check(response: requests.Response, method: str) -> None:
        if response.status_code >= 400:
            LOG.error("Telegram %s failed: %s %s", method, response.status_code, response.text)
            response.raise_for_status()


def build_notifiers(config: ProjectConfig) -> List[Notifier]:
    notifiers: List[Notifier] = []
    for method in config.notify_method:
        if method == "email":
            if not config.notify_email:
                LOG.warning("Email notifications enabled but NOTIFY_EMAIL is not set")
                continue
            notifiers.append(
                EmailNotifier(config.notify_email, config.smtp_host, config.smtp_port, config.smtp_sender)
            )
        elif method == "slack":
            if not config.slack_webhook_url:
                LOG.warning("Slack notifications enabled but SLACK_WEBHOOK_URL is not set")
                continue
            notifiers.append(SlackNotifier(config.slack_webhook_url))
        elif method == "telegram":
            if not (config.telegram_bot_token and config.telegram_chat_id):
                LOG.warning("Telegram notifications enabled but TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID are not set")
                continue
            notifiers.append(TelegramNotifier(config.telegram_bot_token, config.telegram_chat_id))
        else:
            LOG.warning("Unknown notification method '%s'", method)
    return notifiers
