from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .errors import ToolFailure

LOG = logging.getLogger(__name__)

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]


def run_command(
    args: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
) -> "subprocess.CompletedProcess[str]":
    """Run an external tool to completion, raising ``ToolFailure`` on a non-zero exit."""
    cmd = [str(part) for part in args]
    LOG.debug("Running %s", shlex.join(cmd))
    try:
        return subprocess.run(cmd, cwd=cwd, env=env, check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        LOG.error("Command not found: %s", cmd[0])
        raise ToolFailure(cmd, 127, f"command not found: {cmd[0]}") from exc
    except subprocess.CalledProcessError as exc:
        failure = ToolFailure(cmd, exc.returncode, (exc.stderr or "").strip())
        LOG.error("Command failed: %s (%s)", failure.command_line, failure)
        raise failure from exc


def nice_prefix(level: Optional[int]) -> List[str]:
    if level is None or shutil.which("nice") is None:
        return []
    return ["nice", "-n", str(level)]


def running_as_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


class WPCli:
    """Database export/import through WP-CLI for one WordPress installation."""

    def __init__(
        self,
        wp_path: Path,
        runner: CommandRunner = run_command,
        nice_level: Optional[int] = None,
        binary: str = "wp",
    ) -> None:
        self._wp_path = wp_path
        self._runner = runner
        self._nice_level = nice_level
        self._binary = binary

    def command(self, *args: str) -> List[str]:
        cmd = [*nice_prefix(self._nice_level), self._binary, *args, f"--path={self._wp_path}"]
        if running_as_root():
            cmd.append("--allow-root")
        return cmd

    def export_database(self, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        LOG.info("Exporting database of %s to %s", self._wp_path, destination)
        self._runner(self.command("db", "export", str(destination), "--add-drop-table"), cwd=destination.parent)
        return destination

    def import_database(self, sql_file: Path) -> None:
        LOG.info("Importing database dump %s into %s", sql_file.name, self._wp_path)
        self._runner(self.command("db", "import", str(sql_file)), cwd=sql_file.parent)
