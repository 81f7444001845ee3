from __future__ import annotations

import json
import logging
import smtplib
import socket
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

import requests

from .notifiers import Notifier

LOG = logging.getLogger(__name__)


class Phase(str, Enum):
    STARTED = "STARTED"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass
class StatusRecord:
    operation: str
    phase: str
    message: str
    timestamp: str


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class StatusReporter:
    """Records progress of one operation and fans notifications out to every channel.

    The status file holds a single JSON record that is replaced at every
    milestone, so monitoring only ever sees the latest phase. Notification
    channels fail independently: an unreachable webhook is logged and the
    remaining channels are still tried.
    """

    def __init__(
        self,
        operation: str,
        status_file: Path,
        notifiers: Sequence[Notifier] = (),
        logger: Optional[logging.Logger] = None,
        hostname: Optional[str] = None,
        log_file: Optional[Path] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.operation = operation
        self.status_file = status_file
        self._notifiers = list(notifiers)
        self._log = logger or LOG
        self._hostname = hostname or socket.gethostname()
        self.log_file = log_file
        self._clock = clock

    def log(self, level: int, message: str) -> None:
        self._log.log(level, message)

    def update_status(self, phase: Phase, message: str) -> StatusRecord:
        record = StatusRecord(
            operation=self.operation,
            phase=Phase(phase).value,
            message=message,
            timestamp=self._clock().isoformat(timespec="seconds"),
        )
        self.status_file.parent.mkdir(parents=True, exist_ok=True)
        self.status_file.write_text(json.dumps(asdict(record)) + "\n", encoding="utf-8")
        self._log.debug("Status for %s set to %s: %s", self.operation, record.phase, message)
        return record

    def read_status(self) -> Optional[StatusRecord]:
        if not self.status_file.exists():
            return None
        try:
            data = json.loads(self.status_file.read_text(encoding="utf-8"))
            return StatusRecord(**data)
        except (ValueError, TypeError) as exc:
            self._log.warning("Ignoring unreadable status file %s: %s", self.status_file, exc)
            return None

    def notify(
        self,
        outcome: Phase,
        message: str,
        operation: Optional[str] = None,
        attachment: Optional[Path] = None,
    ) -> int:
        """Send ``message`` to every channel and return how many deliveries succeeded."""
        operation = operation or self.operation
        outcome = Phase(outcome).value
        timestamp = self._clock().strftime("%Y-%m-%d %H:%M:%S")
        subject = f"[{outcome}] {operation} Process on {self._hostname}"
        body = f"{subject} at {timestamp}\n\n{message}"

        delivered = 0
        for notifier in self._notifiers:
            try:
                notifier.send(subject, body, attachment)
            except (requests.RequestException, smtplib.SMTPException, OSError) as exc:
                self._log.error("Failed to send %s notification: %s", notifier.name, exc)
                continue
            delivered += 1
            self._log.debug("Sent %s notification for %s", notifier.name, operation)
        return delivered

    def check_status(self, exit_code: int, step: str, operation: Optional[str] = None) -> None:
        """Abort the operation with ``SystemExit`` when ``exit_code`` is non-zero."""
        operation = operation or self.operation
        if exit_code == 0:
            self._log.debug("%s completed successfully", step)
            return
        message = f"{operation} failed during {step}"
        self._log.error(message)
        self.update_status(Phase.FAILURE, message)
        self.notify(Phase.FAILURE, message, operation, attachment=self.log_file)
        raise SystemExit(exit_code)
