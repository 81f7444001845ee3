from __future__ import annotations

import logging
import shlex
from typing import List

from .artifacts import Artifact
from .config import ProjectConfig
from .errors import ToolFailure, TransferFailure
from .tools import CommandRunner, nice_prefix, run_command

LOG = logging.getLogger(__name__)

SSH_CONNECT_TIMEOUT = 10


class Transport:
    """Copies artifacts to the configured remote host with rsync over SSH."""

    def __init__(self, config: ProjectConfig, runner: CommandRunner = run_command) -> None:
        self._config = config
        self._runner = runner

    def _ssh_options(self) -> List[str]:
        return ["-p", str(self._config.destination_port), "-i", str(self._config.private_key_path)]

    def validate_connection(self) -> None:
        cmd = [
            "ssh",
            "-o",
            f"ConnectTimeout={SSH_CONNECT_TIMEOUT}",
            "-o",
            "BatchMode=yes",
            *self._ssh_options(),
            self._config.remote_target,
            "echo ok",
        ]
        LOG.info("Validating SSH connection to %s:%s", self._config.remote_target, self._config.destination_port)
        try:
            self._runner(cmd)
        except ToolFailure as exc:
            raise TransferFailure(f"SSH connection to {self._config.remote_target} failed: {exc}", exc) from exc

    def upload_command(self, artifact: Artifact, remote_dir: str, remove_source: bool = False) -> List[str]:
        cmd = [*nice_prefix(self._config.nice_level), "rsync", "-az", "--partial"]
        if self._config.bandwidth_limit:
            cmd.append(f"--bwlimit={self._config.bandwidth_limit}")
        if remove_source:
            cmd.append("--remove-source-files")
        cmd.extend(["-e", shlex.join(["ssh", *self._ssh_options()])])
        cmd.append(str(artifact.path))
        cmd.append(f"{self._config.remote_target}:{remote_dir.rstrip('/')}/")
        return cmd

    def upload(self, artifact: Artifact, remote_dir: str, remove_source: bool = False) -> None:
        LOG.info("Uploading %s to %s:%s", artifact.name, self._config.remote_target, remote_dir)
        try:
            self._runner(self.upload_command(artifact, remote_dir, remove_source))
        except ToolFailure as exc:
            raise TransferFailure(f"Transfer of {artifact.name} failed: {exc}", exc) from exc
