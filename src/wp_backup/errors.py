from __future__ import annotations

import shlex
from typing import Optional, Sequence


class WPBackupError(Exception):
    """Base class for controlled backup/restore failures."""

    exit_code = 1


class MissingConfig(WPBackupError):
    """Raised when a configuration file does not exist."""


class InvalidConfig(WPBackupError):
    """Raised when a configuration cannot be parsed or lacks required settings."""


class NoConfigSelected(WPBackupError):
    """Raised when interactive configuration selection does not yield a file."""


class InvalidSelection(WPBackupError):
    """Raised when a backup source cannot be resolved to artifacts."""


class UnsupportedFormat(WPBackupError):
    """Raised for archive extensions we cannot create or extract."""


class CorruptArchive(WPBackupError):
    """Raised when an extracted archive does not have the expected layout."""


class AmbiguousArchive(WPBackupError):
    """Raised when an archive holds more than one candidate database dump."""


class ArchiveFailure(WPBackupError):
    """Raised when an archive cannot be written or read."""


class ToolFailure(WPBackupError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.command = [str(part) for part in command]
        self.returncode = returncode
        self.stderr = stderr
        message = f"{self.program} exited with status {returncode}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)

    @property
    def program(self) -> str:
        return self.command[0] if self.command else "command"

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)


class TransferFailure(WPBackupError):
    """Raised when an artifact cannot be copied to the remote destination."""

    def __init__(self, message: str, cause: Optional[ToolFailure] = None) -> None:
        super().__init__(message)
        self.cause = cause
