from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from .config import ProjectConfig, write_config
from .errors import InvalidConfig
from .status import Phase, StatusReporter
from .storage import Workspace

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class Question:
    key: str
    label: str
    default: Optional[str] = None
    required: bool = False
    when: Optional[Callable[[Dict[str, str]], bool]] = None


def _notify_via(method: str) -> Callable[[Dict[str, str]], bool]:
    return lambda answers: method in answers.get("NOTIFY_METHOD", "").lower()


def _is_remote(answers: Dict[str, str]) -> bool:
    return answers.get("BACKUP_LOCATION", "both").lower() in ("remote", "both")


def build_questions(workspace: Workspace) -> List[Question]:
    backups = str(workspace.default_backup_dir)
    return [
        Question("wpPath", "WordPress path (absolute)", required=True),
        Question("BACKUP_LOCATION", "Backup storage location [local/remote/both]", "both"),
        Question("destinationPort", "SSH port", "22", when=_is_remote),
        Question("destinationUser", "SSH username", required=True, when=_is_remote),
        Question("destinationIP", "SSH server IP", required=True, when=_is_remote),
        Question("destinationDbBackupPath", "Remote DB backup path", required=True, when=_is_remote),
        Question("destinationFilesBackupPath", "Remote files backup path", required=True, when=_is_remote),
        Question("privateKeyPath", "SSH private key path", "~/.ssh/id_rsa", when=_is_remote),
        Question("maxSize", "Max file size for backup", "50m"),
        Question("LOCAL_BACKUP_DIR", "Local backup directory", backups),
        Question("COMPRESSION_FORMAT", "Compression format [zip, tar.gz, tar]", "tar.gz"),
        Question("EXCLUDE_PATTERNS", "Exclude patterns (comma-separated)", ""),
        Question("fullPath", "Main path for backup removal", backups),
        Question("BACKUP_RETAIN_DURATION", "Retention in days", "30"),
        Question("MAX_LOG_SIZE", "Log file max size for deletion in MB", "200"),
        Question("SAFE_PATHS", "Safe paths (comma-separated)", f"{backups},/var/backups,/home/backup"),
        Question("NICE_LEVEL", "Nice level (0-19)", "19"),
        Question("NOTIFY_METHOD", "Notification methods (comma-separated: email,slack,telegram)", ""),
        Question("NOTIFY_EMAIL", "Email address for notifications", required=True, when=_notify_via("email")),
        Question("SLACK_WEBHOOK_URL", "Slack webhook URL", required=True, when=_notify_via("slack")),
        Question("TELEGRAM_BOT_TOKEN", "Telegram bot token", required=True, when=_notify_via("telegram")),
        Question("TELEGRAM_CHAT_ID", "Telegram chat ID", required=True, when=_notify_via("telegram")),
    ]


class SetupWizard:
    """Interactively builds a project configuration and stores it with mode 0600."""

    def __init__(
        self,
        workspace: Workspace,
        reporter: StatusReporter,
        prompt: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
    ) -> None:
        self._workspace = workspace
        self._reporter = reporter
        self._prompt = prompt
        self._output = output

    def ask(self, question: Question) -> str:
        suffix = f" (default: {question.default})" if question.default else ""
        while True:
            answer = self._prompt(f"{question.label}{suffix}: ").strip()
            if answer:
                return answer
            if question.default is not None:
                return question.default
            if not question.required:
                return ""
            self._output(f"{question.label} is required.")

    def confirm(self, message: str) -> bool:
        return self._prompt(f"{message} (y/n): ").strip().lower() in ("y", "yes")

    def run(self, name: Optional[str] = None, force: bool = False) -> Path:
        self._reporter.update_status(Phase.STARTED, "Setup started")
        name = name or self.ask(Question("name", "Project name", required=True))
        path = self._workspace.configs_dir / f"{name}.conf"

        overwrite = force
        if path.exists() and not force:
            if not self.confirm(f"Configuration {path.name} already exists. Do you want to overwrite it?"):
                LOG.info("Keeping existing configuration %s", path)
                self._reporter.update_status(Phase.SUCCESS, f"Setup cancelled; {path.name} left unchanged")
                return path
            overwrite = True

        answers: Dict[str, str] = {}
        for question in build_questions(self._workspace):
            if question.when is not None and not question.when(answers):
                continue
            answers[question.key] = self.ask(question)

        if answers.get("MAX_LOG_SIZE", "").isdigit():
            answers["MAX_LOG_SIZE"] = f"{answers['MAX_LOG_SIZE']}m"

        raw = {key: value for key, value in answers.items() if value != ""}
        try:
            config = ProjectConfig.model_validate({"name": name, **raw})
        except ValidationError as exc:
            LOG.error("Invalid setup answers: %s", exc)
            self._reporter.check_status(1, "validating answers", "Setup")

        try:
            write_config(config, path, overwrite=overwrite)
        except (InvalidConfig, OSError) as exc:
            LOG.error("Could not write %s: %s", path, exc)
            self._reporter.check_status(1, f"writing {path.name}", "Setup")

        self._output(f"Configuration saved to {path}")
        self._reporter.update_status(Phase.SUCCESS, f"Configuration {path.name} created")
        return path
