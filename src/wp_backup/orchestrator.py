from __future__ import annotations

import logging
import shlex
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from .archive import create_archive
from .artifacts import Artifact, ArtifactKind
from .config import ProjectConfig, list_config_files, load_config, project_name
from .errors import ArchiveFailure, InvalidConfig, NoConfigSelected, WPBackupError
from .retention import DiskFree, RetentionReport, disk_free_gb, enforce_retention, ensure_safe_path
from .status import Phase, StatusReporter, format_duration
from .storage import LocalStorage, RunPaths
from .tools import CommandRunner, WPCli, run_command
from .transport import Transport

LOG = logging.getLogger(__name__)

BACKUP_TYPES = ("full", "db", "files")

ReporterFactory = Callable[[ProjectConfig], StatusReporter]


class BackupPhase(str, Enum):
    VALIDATE = "Validating configuration"
    DATABASE = "Database export"
    FILES = "Files archive"
    TRANSPORT = "Transport"
    RETENTION = "Retention"


@dataclass
class BackupOptions:
    include_db: bool = True
    include_files: bool = True
    dry_run: bool = False

    @classmethod
    def for_type(cls, backup_type: str = "full", dry_run: bool = False) -> "BackupOptions":
        if backup_type not in BACKUP_TYPES:
            raise InvalidConfig(f"Invalid backup type '{backup_type}'. Must be one of: {', '.join(BACKUP_TYPES)}")
        return cls(
            include_db=backup_type in ("full", "db"),
            include_files=backup_type in ("full", "files"),
            dry_run=dry_run,
        )


@dataclass
class BackupResult:
    project: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    artifacts: List[Artifact] = field(default_factory=list)
    uploaded: List[Artifact] = field(default_factory=list)
    retention: Optional[RetentionReport] = None
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == "success"


class BackupOrchestrator:
    """Runs one project backup: database export, files archive, transport, retention."""

    def __init__(
        self,
        config: ProjectConfig,
        reporter: StatusReporter,
        *,
        options: Optional[BackupOptions] = None,
        runner: CommandRunner = run_command,
        clock: Callable[[], datetime] = datetime.now,
        disk_free: DiskFree = disk_free_gb,
    ) -> None:
        self._config = config
        self._reporter = reporter
        self._options = options or BackupOptions()
        self._runner = runner
        self._clock = clock
        self._disk_free = disk_free
        self._storage = LocalStorage(config.backup_dir)

    def run(self) -> BackupResult:
        """Run every enabled phase; a failing phase ends the run through ``check_status``."""
        config = self._config
        started_at = self._clock()
        result = BackupResult(project=config.name, status="running", started_at=started_at)
        mode = " (dry run)" if self._options.dry_run else ""
        LOG.info("Starting backup of %s%s", config.name, mode)
        self._reporter.update_status(Phase.STARTED, f"Backup of {config.name} started{mode}")

        phase = self._enter(BackupPhase.VALIDATE)
        try:
            self._validate()
            paths = self._prepare_run(started_at)

            if self._options.include_db:
                phase = self._enter(BackupPhase.DATABASE)
                result.artifacts.append(self._backup_database(paths, started_at))

            if self._options.include_files:
                phase = self._enter(BackupPhase.FILES)
                result.artifacts.append(self._backup_files(paths, started_at))

            if config.transfers_enabled and result.artifacts:
                phase = self._enter(BackupPhase.TRANSPORT)
                result.uploaded.extend(self._transfer(result.artifacts))
        except (WPBackupError, OSError) as exc:
            result.status = "failed"
            result.errors.append(str(exc))
            LOG.error("%s failed for %s: %s", phase.value, config.name, exc)
            self._reporter.check_status(getattr(exc, "exit_code", 1), f"{phase.value}: {exc}", "Backup")

        self._enter(BackupPhase.RETENTION)
        try:
            result.retention = self._apply_retention()
        except OSError as exc:
            LOG.warning("Retention for %s skipped: %s", config.name, exc)

        result.status = "success"
        result.completed_at = self._clock()
        duration = format_duration((result.completed_at - started_at).total_seconds())
        names = ", ".join(artifact.name for artifact in result.artifacts) or "no artifacts"
        message = f"Backup of {config.name} completed in {duration}{mode}: {names}"
        LOG.info(message)
        self._reporter.update_status(Phase.SUCCESS, message)
        self._reporter.notify(Phase.SUCCESS, message, "Backup")
        return result

    # Phases -----------------------------------------------------------------
    def _enter(self, phase: BackupPhase) -> BackupPhase:
        LOG.debug("Backup phase %s", phase.value)
        self._reporter.update_status(Phase.STARTED, f"{phase.value} for {self._config.name}")
        return phase

    def _validate(self) -> None:
        config = self._config
        config.require("wp_path")
        if not config.wp_path.is_dir():
            raise InvalidConfig(f"WordPress path {config.wp_path} does not exist or is not a directory")

        if config.transfers_enabled:
            required = ["destination_user", "destination_ip"]
            if self._options.include_db:
                required.append("destination_db_backup_path")
            if self._options.include_files:
                required.append("destination_files_backup_path")
            config.require(*required)

        ensure_safe_path(config.retention_root, config.allowed_retention_roots)

    def _prepare_run(self, started_at: datetime) -> RunPaths:
        if self._options.dry_run:
            paths = self._storage.run_paths(started_at)
            LOG.info("Dry run: would create backup directory %s", paths.root)
            return paths
        return self._storage.prepare_run(started_at)

    def _backup_database(self, paths: RunPaths, started_at: datetime) -> Artifact:
        config = self._config
        artifact = paths.artifact(ArtifactKind.DB, started_at, "zip")
        dump = paths.db_dir / f"{config.name}.sql"
        wp = WPCli(config.wp_path, runner=self._runner, nice_level=config.nice_level)

        if self._options.dry_run:
            LOG.info("Dry run: would run %s", shlex.join(wp.command("db", "export", str(dump), "--add-drop-table")))
            LOG.info("Dry run: would archive %s into %s", paths.db_dir, artifact.path)
            return artifact

        wp.export_database(dump)
        if not dump.is_file():
            raise ArchiveFailure(f"Database export did not produce {dump}")
        create_archive(paths.db_dir, artifact.path, "zip", arcname="DB")
        shutil.rmtree(paths.db_dir)
        LOG.info("Database backup stored in %s", artifact.path)
        return artifact

    def _backup_files(self, paths: RunPaths, started_at: datetime) -> Artifact:
        config = self._config
        artifact = paths.artifact(ArtifactKind.FILES, started_at, config.compression_format)

        if self._options.dry_run:
            LOG.info(
                "Dry run: would archive %s into %s (excluding %s)",
                config.wp_path,
                artifact.path,
                ", ".join(config.exclude_patterns) or "nothing",
            )
            return artifact

        create_archive(
            config.wp_path,
            artifact.path,
            config.compression_format,
            arcname="Files",
            exclude=config.exclude_patterns,
            max_size=config.max_size,
        )
        LOG.info("Files backup stored in %s", artifact.path)
        return artifact

    def _transfer(self, artifacts: Sequence[Artifact]) -> List[Artifact]:
        config = self._config
        transport = Transport(config, runner=self._runner)
        remove_source = not config.keeps_local_copy

        if self._options.dry_run:
            for artifact in artifacts:
                cmd = transport.upload_command(artifact, self._remote_dir(artifact), remove_source)
                LOG.info("Dry run: would run %s", shlex.join(cmd))
            return []

        transport.validate_connection()
        uploaded = []
        for artifact in artifacts:
            transport.upload(artifact, self._remote_dir(artifact), remove_source)
            uploaded.append(artifact)
        return uploaded

    def _remote_dir(self, artifact: Artifact) -> str:
        if artifact.kind is ArtifactKind.DB:
            return self._config.destination_db_backup_path
        return self._config.destination_files_backup_path

    def _apply_retention(self) -> RetentionReport:
        config = self._config
        report = enforce_retention(
            config.retention_root,
            config.retain_days,
            mode=config.cleanup_mode,
            min_free_gb=config.disk_min_free_gb,
            max_log_size=config.max_log_size,
            dry_run=self._options.dry_run,
            disk_free=self._disk_free,
        )
        for failure in report.failures:
            LOG.warning("Retention could not remove %s", failure)
        return report


@dataclass
class BatchSummary:
    started_at: datetime
    completed_at: Optional[datetime] = None
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


class BatchBackup:
    """Backs up every project configured in a directory, one after another."""

    def __init__(
        self,
        config_dir: Path,
        reporter: StatusReporter,
        reporter_factory: ReporterFactory,
        *,
        home: Optional[Path] = None,
        options: Optional[BackupOptions] = None,
        runner: CommandRunner = run_command,
        clock: Callable[[], datetime] = datetime.now,
        disk_free: DiskFree = disk_free_gb,
    ) -> None:
        self._config_dir = config_dir
        self._reporter = reporter
        self._reporter_factory = reporter_factory
        self._home = home
        self._options = options or BackupOptions()
        self._runner = runner
        self._clock = clock
        self._disk_free = disk_free

    def run(self, project_names: Optional[Sequence[str]] = None) -> BatchSummary:
        summary = BatchSummary(started_at=self._clock())
        self._reporter.update_status(Phase.STARTED, f"Backup process for all projects in {self._config_dir}")
        if not self._config_dir.is_dir():
            self._reporter.check_status(1, f"reading config directory {self._config_dir}", "Backup All")

        configs = list(self._select_configs(project_names))
        if not configs:
            message = f"No projects to backup in {self._config_dir}"
            LOG.info(message)
            summary.completed_at = self._clock()
            self._reporter.update_status(Phase.SUCCESS, message)
            self._reporter.notify(Phase.SUCCESS, message, "Backup All")
            return summary

        LOG.info("Found %d configuration file(s) in %s", len(configs), self._config_dir)
        for path in configs:
            name = project_name(path)
            LOG.info("Backing up project %s with config %s", name, path)
            if self._backup_project(path):
                summary.succeeded.append(name)
                LOG.info("Backup for %s completed successfully", name)
            else:
                summary.failed.append(name)
                self._reporter.notify(Phase.FAILURE, f"Backup for {name} failed", "Backup All")

        summary.completed_at = self._clock()
        duration = format_duration((summary.completed_at - summary.started_at).total_seconds())
        message = (
            f"Backup process completed: {len(summary.succeeded)} successful, "
            f"{len(summary.failed)} failed in {duration}"
        )
        LOG.info(message)
        self._reporter.update_status(Phase.SUCCESS if summary.success else Phase.FAILURE, message)
        self._reporter.notify(Phase.SUCCESS if summary.success else Phase.FAILURE, message, "Backup All")
        return summary

    def _backup_project(self, path: Path) -> bool:
        try:
            config = load_config(path, home=self._home)
        except WPBackupError as exc:
            LOG.error("Skipping %s: %s", path.name, exc)
            return False

        orchestrator = BackupOrchestrator(
            config,
            self._reporter_factory(config),
            options=self._options,
            runner=self._runner,
            clock=self._clock,
            disk_free=self._disk_free,
        )
        try:
            orchestrator.run()
        except SystemExit as exc:
            LOG.error("Backup for %s failed with exit status %s", config.name, exc.code)
            return False
        return True

    def _select_configs(self, project_names: Optional[Sequence[str]]) -> Iterable[Path]:
        configs = list_config_files(self._config_dir)
        if project_names:
            name_set = set(project_names)
            missing = name_set - {project_name(path) for path in configs}
            if missing:
                raise NoConfigSelected(f"Unknown project(s) requested: {', '.join(sorted(missing))}")
            for path in configs:
                if project_name(path) in name_set:
                    yield path
        else:
            yield from configs
