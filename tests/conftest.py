from __future__ import annotations

import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from wp_backup.config import ProjectConfig
from wp_backup.errors import ToolFailure
from wp_backup.status import StatusReporter
from wp_backup.storage import Workspace

FIXED_TIME = datetime(2024, 1, 1, 0, 0, 0)


class FakeRunner:
    """Stands in for ``run_command``: records commands and imitates ``wp db export``."""

    def __init__(self, fail_on: Optional[str] = None, sql: str = "-- dump\nCREATE TABLE wp_posts (id int);\n") -> None:
        self.calls: List[List[str]] = []
        self.fail_on = fail_on
        self.sql = sql

    def __call__(self, args: Sequence[str], *, cwd=None, env=None) -> subprocess.CompletedProcess:
        cmd = [str(part) for part in args]
        self.calls.append(cmd)
        if self.fail_on and self.fail_on in cmd:
            raise ToolFailure(cmd, 1, f"{self.fail_on} failed")
        if "export" in cmd:
            Path(cmd[cmd.index("export") + 1]).write_text(self.sql, encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def called(self, word: str) -> List[List[str]]:
        return [cmd for cmd in self.calls if word in cmd]


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def workspace(home: Path) -> Workspace:
    return Workspace(home).ensure()


@pytest.fixture
def site(tmp_path: Path) -> Path:
    root = tmp_path / "site"
    (root / "wp-content" / "uploads").mkdir(parents=True)
    (root / "wp-content" / "cache").mkdir()
    (root / "wp-config.php").write_text("<?php define('DB_NAME', 'wp');\n")
    (root / "index.php").write_text("<?php require 'wp-blog-header.php';\n")
    (root / "wp-content" / "uploads" / "photo.jpg").write_bytes(b"\xff\xd8" * 64)
    (root / "wp-content" / "cache" / "page.html").write_text("cached")
    (root / "debug.log").write_text("noise\n")
    return root


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def make_config(site: Path, backup_dir: Path):
    def factory(**overrides) -> ProjectConfig:
        values = dict(
            name="blog",
            wp_path=site,
            local_backup_dir=backup_dir,
            backup_location="local",
            compression_format="tar.gz",
            nice_level=None,
        )
        values.update(overrides)
        return ProjectConfig(**values)

    return factory


@pytest.fixture
def reporter(workspace: Workspace) -> StatusReporter:
    return StatusReporter("Backup", workspace.status_file("backup"), hostname="test-host", clock=lambda: FIXED_TIME)


def write_conf(path: Path, **values: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f'{key}="{value}"\n' for key, value in values.items()), encoding="utf-8")
    return path
