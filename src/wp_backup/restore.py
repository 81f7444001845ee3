from __future__ import annotations

import contextlib
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from .archive import detect_format, extract_archive
from .artifacts import Artifact, ArtifactKind, find_artifacts, format_timestamp, latest_artifact
from .config import ProjectConfig
from .errors import AmbiguousArchive, ArchiveFailure, CorruptArchive, InvalidSelection, WPBackupError
from .mirror import mirror_tree, snapshot_tree
from .status import Phase, StatusReporter, format_duration
from .storage import Workspace
from .tools import CommandRunner, WPCli, run_command

LOG = logging.getLogger(__name__)


class RestorePhase(str, Enum):
    SELECT_SOURCE = "SELECT_SOURCE"
    EXTRACT = "EXTRACT"
    RESTORE_DB = "RESTORE_DB"
    RESTORE_FILES = "RESTORE_FILES"
    CLEANUP = "CLEANUP"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class RestoreOptions:
    source: Optional[Path] = None
    dry_run: bool = False
    files_only: bool = False
    restore_db: bool = True
    restore_files: bool = True

    def __post_init__(self) -> None:
        if self.files_only:
            self.restore_db = False


@dataclass
class RestoreSession:
    """What one restore run works on; the temporary directory never outlives the run."""

    stamp: str
    dry_run: bool
    restore_db: bool
    restore_files: bool
    db_artifact: Optional[Artifact] = None
    files_artifact: Optional[Artifact] = None
    temp_dir: Optional[Path] = None
    sql_file: Optional[Path] = None
    files_root: Optional[Path] = None

    @property
    def wants_db(self) -> bool:
        return self.restore_db and self.db_artifact is not None

    @property
    def wants_files(self) -> bool:
        return self.restore_files and self.files_artifact is not None

    @contextlib.contextmanager
    def scratch(self, parent: Path) -> Iterator[Optional[Path]]:
        if self.dry_run:
            yield None
            return
        parent.mkdir(parents=True, exist_ok=True)
        self.temp_dir = Path(tempfile.mkdtemp(prefix=f"temp_restore_{self.stamp}_", dir=parent))
        LOG.debug("Created restore workspace %s", self.temp_dir)
        try:
            yield self.temp_dir
        finally:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            LOG.debug("Removed restore workspace %s", self.temp_dir)


@dataclass
class RestoreResult:
    project: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    phase: RestorePhase = RestorePhase.SELECT_SOURCE
    db_artifact: Optional[Artifact] = None
    files_artifact: Optional[Artifact] = None
    restored: List[ArtifactKind] = field(default_factory=list)
    snapshot_dir: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.status == "success"


class RestoreOrchestrator:
    """Restores a database and/or site files from local backup artifacts.

    Runs ``SELECT_SOURCE -> EXTRACT -> RESTORE_DB -> RESTORE_FILES -> CLEANUP
    -> DONE``. Any controlled failure moves the run to ``FAILED`` and ends it
    through :meth:`StatusReporter.check_status`; the scratch directory is
    removed on every path, including interrupts.
    """

    def __init__(
        self,
        config: ProjectConfig,
        reporter: StatusReporter,
        workspace: Workspace,
        *,
        options: Optional[RestoreOptions] = None,
        runner: CommandRunner = run_command,
        clock: Callable[[], datetime] = datetime.now,
        prompt: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
    ) -> None:
        self._config = config
        self._reporter = reporter
        self._workspace = workspace
        self._options = options or RestoreOptions()
        self._runner = runner
        self._clock = clock
        self._prompt = prompt
        self._output = output
        self.phase = RestorePhase.SELECT_SOURCE

    def run(self) -> RestoreResult:
        config = self._config
        started_at = self._clock()
        stamp = format_timestamp(started_at)
        result = RestoreResult(project=config.name, status="running", started_at=started_at)
        mode = " (dry run)" if self._options.dry_run else ""
        session = RestoreSession(
            stamp=stamp,
            dry_run=self._options.dry_run,
            restore_db=self._options.restore_db,
            restore_files=self._options.restore_files,
        )

        LOG.info("Starting restore process for %s%s", config.name, mode)
        self._reporter.update_status(Phase.STARTED, f"Restore process for {config.name} started{mode}")

        try:
            with session.scratch(self._workspace.home) as scratch:
                try:
                    self._enter(RestorePhase.SELECT_SOURCE)
                    config.require("wp_path")
                    session.db_artifact, session.files_artifact = self.select_source(session)
                    result.db_artifact, result.files_artifact = session.db_artifact, session.files_artifact

                    self._enter(RestorePhase.EXTRACT)
                    self._extract(session, scratch)

                    if session.wants_db:
                        self._enter(RestorePhase.RESTORE_DB)
                        self._restore_database(session)
                        result.restored.append(ArtifactKind.DB)

                    if session.wants_files:
                        self._enter(RestorePhase.RESTORE_FILES)
                        result.snapshot_dir = self._restore_files(session)
                        result.restored.append(ArtifactKind.FILES)

                    self._enter(RestorePhase.CLEANUP)
                except WPBackupError as exc:
                    failed_phase = self.phase
                    self.phase = RestorePhase.FAILED
                    result.phase = self.phase
                    result.status = "failed"
                    LOG.error("Restore failed in %s: %s", failed_phase.value, exc)
                    self._reporter.check_status(exc.exit_code, f"{failed_phase.value}: {exc}", "Restore")
        except KeyboardInterrupt:
            self.phase = RestorePhase.FAILED
            LOG.error("Restore of %s interrupted", config.name)
            message = f"Restore of {config.name} interrupted"
            self._reporter.update_status(Phase.FAILURE, message)
            self._reporter.notify(Phase.FAILURE, message, "Restore")
            raise

        self._enter(RestorePhase.DONE)
        result.phase = self.phase
        result.status = "success"
        result.completed_at = self._clock()
        duration = format_duration((result.completed_at - started_at).total_seconds())
        if result.restored or self._options.dry_run:
            message = f"Restore process for {config.name} completed in {duration}{mode}"
        else:
            message = f"Nothing to restore for {config.name}"
        LOG.info(message)
        self._reporter.update_status(Phase.SUCCESS, message)
        self._reporter.notify(Phase.SUCCESS, message, "Restore")
        return result

    def _enter(self, phase: RestorePhase) -> None:
        LOG.debug("Restore phase %s", phase.value)
        self.phase = phase

    # Source selection ----------------------------------------------------------
    def select_source(self, session: RestoreSession) -> Tuple[Optional[Artifact], Optional[Artifact]]:
        source = self._options.source
        if source is None:
            return self._select_interactively(session)

        source = Path(source).expanduser()
        if not source.exists():
            raise InvalidSelection(f"Backup source {source} not found")

        if source.is_file():
            artifact = Artifact.from_path(source)
            LOG.info("Using %s backup %s", artifact.kind.value, artifact.name)
            if artifact.kind is ArtifactKind.DB:
                session.restore_files = False
                return artifact, None
            session.restore_db = False
            return None, artifact

        db_artifact = latest_artifact(source, ArtifactKind.DB)
        files_artifact = latest_artifact(source, ArtifactKind.FILES)
        if db_artifact is None and files_artifact is None:
            raise InvalidSelection(f"No backups found in {source}")
        for artifact in (db_artifact, files_artifact):
            if artifact is not None:
                LOG.info("Latest %s backup in %s: %s", artifact.kind.value, source, artifact.name)
        return db_artifact, files_artifact

    def _select_interactively(self, session: RestoreSession) -> Tuple[Optional[Artifact], Optional[Artifact]]:
        backup_dir = self._config.backup_dir
        if not backup_dir.is_dir():
            raise InvalidSelection(f"Local backup directory {backup_dir} not found")

        db_artifacts = find_artifacts(backup_dir, ArtifactKind.DB)
        files_artifacts = find_artifacts(backup_dir, ArtifactKind.FILES)
        if not db_artifacts and not files_artifacts:
            raise InvalidSelection(f"No backups found in {backup_dir}")

        self._output("Available local backups:")
        for index, artifact in enumerate(db_artifacts):
            self._output(f"[{index}] DB: {artifact.name}")
        offset = len(db_artifacts)
        for index, artifact in enumerate(files_artifacts, start=offset):
            self._output(f"[{index}] Files: {artifact.name}")

        db_artifact = None
        if session.restore_db and db_artifacts:
            db_artifact = self._pick(db_artifacts, 0, "database")
        files_artifact = None
        if session.restore_files and files_artifacts:
            files_artifact = self._pick(files_artifacts, offset, "files")
        return db_artifact, files_artifact

    def _pick(self, artifacts: List[Artifact], offset: int, label: str) -> Optional[Artifact]:
        answer = self._prompt(f"Select a {label} backup by number (or leave empty to skip): ").strip()
        if not answer:
            LOG.info("Skipping %s restore", label)
            return None
        if not (answer.isascii() and answer.isdigit()):
            raise InvalidSelection(f"Invalid {label} backup selection: '{answer}'")
        index = int(answer) - offset
        if not 0 <= index < len(artifacts):
            raise InvalidSelection(f"Invalid {label} backup selection: '{answer}'")
        LOG.info("Selected %s backup %s", label, artifacts[index].name)
        return artifacts[index]

    # Extraction and restore ----------------------------------------------------
    def _extract(self, session: RestoreSession, scratch: Optional[Path]) -> None:
        for artifact in (session.db_artifact, session.files_artifact):
            if artifact is not None:
                detect_format(artifact.path)

        if session.dry_run:
            for artifact in (session.db_artifact, session.files_artifact):
                if artifact is not None:
                    LOG.info("Dry run: would extract %s", artifact.name)
            return

        if session.wants_db:
            db_dir = extract_archive(session.db_artifact.path, scratch / "db")
            session.sql_file = self._find_dump(db_dir, session.db_artifact)

        if session.wants_files:
            files_dir = extract_archive(session.files_artifact.path, scratch / "files")
            files_root = files_dir / "Files"
            if not files_root.is_dir():
                raise CorruptArchive(f"Files directory not found in {session.files_artifact.name}")
            session.files_root = files_root

    @staticmethod
    def _find_dump(db_dir: Path, artifact: Artifact) -> Path:
        dumps = sorted(path for path in db_dir.rglob("*.sql") if path.is_file())
        if not dumps:
            raise CorruptArchive(f"No SQL file found in {artifact.name}")
        if len(dumps) > 1:
            names = ", ".join(path.name for path in dumps)
            raise AmbiguousArchive(f"{artifact.name} contains more than one SQL file: {names}")
        return dumps[0]

    def _restore_database(self, session: RestoreSession) -> None:
        wp = WPCli(self._config.wp_path, runner=self._runner, nice_level=self._config.nice_level)
        if session.dry_run:
            LOG.info("Dry run: would import the database from %s", session.db_artifact.name)
            return
        LOG.info("Restoring database from %s", session.db_artifact.name)
        wp.import_database(session.sql_file)
        LOG.info("Database restored successfully")

    def _restore_files(self, session: RestoreSession) -> Optional[Path]:
        wp_path = self._config.wp_path
        snapshot = self._workspace.snapshot_dir(session.stamp)
        if session.dry_run:
            LOG.info("Dry run: would save current files to %s", snapshot)
            LOG.info("Dry run: would replace %s with the contents of %s", wp_path, session.files_artifact.name)
            return None

        LOG.info("Restoring files from %s", session.files_artifact.name)
        try:
            if wp_path.exists():
                snapshot_tree(wp_path, snapshot)
            else:
                snapshot = None
            mirror_tree(session.files_root, wp_path)
        except OSError as exc:
            raise ArchiveFailure(f"Failed to restore files into {wp_path}: {exc}") from exc
        LOG.info("Files restored successfully")
        if snapshot is not None:
            LOG.info("Backup of previous files saved to %s", snapshot)
        return snapshot
