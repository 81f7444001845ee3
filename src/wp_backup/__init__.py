"""WordPress backup, restore and retention tooling."""

from __future__ import annotations

from .config import load_config, ProjectConfig  # noqa: F401
from .orchestrator import BackupOrchestrator, BatchBackup  # noqa: F401
from .restore import RestoreOrchestrator  # noqa: F401
from .status import StatusReporter  # noqa: F401
