from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List

from .artifacts import Artifact, ArtifactKind, find_artifacts, format_timestamp


@dataclass
class RunPaths:
    root: Path
    db_dir: Path

    def artifact(self, kind: ArtifactKind, started_at: datetime, extension: str) -> Artifact:
        return Artifact.build(kind, started_at, self.root, extension)


@dataclass
class LocalStorage:
    """Stores backup runs as timestamped directories under the local backup dir."""

    base_path: Path

    def run_paths(self, started_at: datetime) -> RunPaths:
        run_dir = self.base_path / format_timestamp(started_at)
        return RunPaths(root=run_dir, db_dir=run_dir / "DB")

    def prepare_run(self, started_at: datetime) -> RunPaths:
        paths = self.run_paths(started_at)
        paths.root.mkdir(parents=True, exist_ok=True)
        return paths

    def list_artifacts(self) -> List[Artifact]:
        artifacts = find_artifacts(self.base_path, ArtifactKind.DB) + find_artifacts(
            self.base_path, ArtifactKind.FILES
        )
        return sorted(artifacts, key=lambda artifact: (artifact.stamp, artifact.kind.value), reverse=True)


@dataclass
class Workspace:
    """Layout of the tool's home directory: configs, logs and restore snapshots."""

    home: Path

    @property
    def configs_dir(self) -> Path:
        return self.home / "configs"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def default_backup_dir(self) -> Path:
        return self.home / "backups"

    def log_file(self, operation: str) -> Path:
        return self.logs_dir / f"{operation}.log"

    def status_file(self, operation: str) -> Path:
        return self.logs_dir / f"{operation}_status.log"

    def snapshot_dir(self, stamp: str) -> Path:
        return self.home / f"current_files_backup_{stamp}"

    def ensure(self) -> "Workspace":
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self
