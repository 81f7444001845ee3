from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

from croniter import croniter
from pydantic import ValidationError
from zoneinfo import ZoneInfo

from .config import (
    DEFAULT_HOME,
    ProjectConfig,
    SchedulerConfig,
    config_from_environment,
    load_config,
    select_config_file,
)
from .errors import InvalidConfig, MissingConfig, NoConfigSelected, WPBackupError
from .logger import configure_logging, normalize_level
from .notifiers import build_notifiers
from .orchestrator import BACKUP_TYPES, BackupOptions, BackupOrchestrator, BatchBackup
from .restore import RestoreOptions, RestoreOrchestrator
from .retention import enforce_retention, ensure_safe_path
from .status import Phase, StatusReporter
from .storage import LocalStorage, Workspace
from .tools import run_command
from .wizard import SetupWizard


def _log_level(value: str) -> str:
    try:
        return normalize_level(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="wp-backup", description="WordPress backup, restore and cleanup.")
    parser.add_argument(
        "--home",
        default=os.getenv("WP_BACKUP_HOME", DEFAULT_HOME),
        help="Directory holding configs/, logs/ and backups/ (default %(default)s).",
    )
    parser.add_argument(
        "--log-level",
        type=_log_level,
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default INFO); LOG_LEVEL in a project config takes precedence.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    restore = commands.add_parser("restore", help="Restore a database and/or files backup.")
    restore.add_argument("-c", "--config", help="Configuration file (prompted for when omitted).")
    restore.add_argument("-b", "--backup", help="Backup file or directory to restore from.")
    restore.add_argument("-d", "--dry-run", action="store_true", help="Dry run (no actual changes).")
    restore.add_argument("-f", "--files-only", action="store_true", help="Restore files only (skip database).")
    restore.add_argument("-v", "--verbose", action="store_true", help="Verbose output.")
    restore.set_defaults(handler=run_restore)

    backup = commands.add_parser("backup", help="Back up one project.")
    backup.add_argument("-c", "--config", help="Configuration file (prompted for when omitted).")
    backup.add_argument("-t", "--type", dest="backup_type", choices=BACKUP_TYPES, default="full")
    backup.add_argument("-d", "--dry-run", action="store_true", help="Dry run (log only).")
    backup.add_argument("-n", "--no-notify", action="store_true", help="Disable notifications.")
    backup.add_argument("-v", "--verbose", action="store_true", help="Verbose output.")
    backup.set_defaults(handler=run_backup)

    backup_all = commands.add_parser("backup-all", help="Back up every project in a config directory.")
    backup_all.add_argument("config_dir", nargs="?", help="Directory of configuration files (default <home>/configs).")
    backup_all.add_argument("-t", "--type", dest="backup_type", choices=BACKUP_TYPES, default="full")
    backup_all.add_argument("-d", "--dry-run", action="store_true", help="Dry run (log only).")
    backup_all.add_argument("-n", "--no-notify", action="store_true", help="Disable notifications.")
    backup_all.add_argument("-v", "--verbose", action="store_true", help="Verbose output.")
    backup_all.set_defaults(handler=run_backup_all)

    cleanup = commands.add_parser("cleanup", help="Prune old local backups.")
    cleanup.add_argument("-c", "--config", help="Configuration file (prompted for when omitted).")
    cleanup.add_argument("-d", "--dry-run", action="store_true", help="Report what would be removed.")
    cleanup.add_argument("-v", "--verbose", action="store_true", help="Verbose output.")
    cleanup.set_defaults(handler=run_cleanup)

    listing = commands.add_parser("list", help="List local backups, newest first.")
    listing.add_argument("-c", "--config", help="Configuration file (prompted for when omitted).")
    listing.set_defaults(handler=run_list, verbose=False)

    setup = commands.add_parser("setup", help="Create a project configuration interactively.")
    setup.add_argument("--name", help="Project name (prompted for when omitted).")
    setup.add_argument("--force", action="store_true", help="Overwrite an existing configuration.")
    setup.set_defaults(handler=run_setup, verbose=False)

    schedule = commands.add_parser("schedule", help="Run backup-all on a cron schedule.")
    schedule.add_argument("--cron", required=True, help="Cron expression, e.g. '0 2 * * *'.")
    schedule.add_argument("--timezone", default="UTC", help="Timezone for the cron expression.")
    schedule.add_argument("--no-run-on-startup", action="store_true", help="Wait for the first cron slot.")
    schedule.add_argument("-t", "--type", dest="backup_type", choices=BACKUP_TYPES, default="full")
    schedule.add_argument("-n", "--no-notify", action="store_true", help="Disable notifications.")
    schedule.set_defaults(handler=run_schedule, verbose=False, dry_run=False, config_dir=None)

    return parser.parse_args(argv)


# --- Shared helpers -------------------------------------------------------------


def load_configuration(path: Path, *, home: Path, exit_on_error: bool = True) -> ProjectConfig:
    try:
        return load_config(path, home=home)
    except (MissingConfig, InvalidConfig) as exc:
        if exit_on_error:
            raise SystemExit(f"Configuration error: {exc}") from exc
        raise


def resolve_config_path(args: argparse.Namespace, workspace: Workspace) -> Path:
    if args.config:
        return Path(args.config).expanduser()
    print("No configuration file specified.")
    try:
        return select_config_file(workspace.configs_dir)
    except NoConfigSelected as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc


def effective_level(args: argparse.Namespace, config: Optional[ProjectConfig] = None) -> str:
    if getattr(args, "verbose", False):
        return "DEBUG"
    if config is not None and "log_level" in config.model_fields_set:
        return config.log_level
    return args.log_level


def build_reporter(
    operation: str,
    status_name: str,
    workspace: Workspace,
    config: Optional[ProjectConfig],
    *,
    notify: bool = True,
) -> StatusReporter:
    notifiers = build_notifiers(config) if (config is not None and notify) else []
    return StatusReporter(
        operation,
        workspace.status_file(status_name),
        notifiers=notifiers,
        log_file=workspace.log_file(status_name),
    )


def _load_project(args: argparse.Namespace, workspace: Workspace, operation: str) -> ProjectConfig:
    config_path = resolve_config_path(args, workspace)
    config = load_configuration(config_path, home=workspace.home)
    configure_logging(effective_level(args, config), workspace.log_file(operation))
    logging.info("Using configuration file %s", config_path.name)
    return config


# --- Commands ---------------------------------------------------------------------


def run_backup(args: argparse.Namespace, workspace: Workspace) -> int:
    config = _load_project(args, workspace, "backup")
    reporter = build_reporter("Backup", "backup", workspace, config, notify=not args.no_notify)
    options = BackupOptions.for_type(args.backup_type, dry_run=args.dry_run)
    result = BackupOrchestrator(config, reporter, options=options, runner=run_command).run()
    for artifact in result.artifacts:
        logging.info("Created %s", artifact.path)
    return 0


def run_backup_all(args: argparse.Namespace, workspace: Workspace) -> int:
    configure_logging(effective_level(args), workspace.log_file("backup_all"))
    notify = not args.no_notify
    config_dir = Path(args.config_dir).expanduser() if args.config_dir else workspace.configs_dir
    reporter = build_reporter("Backup All", "backup_all", workspace, config_from_environment(), notify=notify)

    def project_reporter(config: ProjectConfig) -> StatusReporter:
        return build_reporter("Backup", "backup", workspace, config, notify=notify)

    batch = BatchBackup(
        config_dir,
        reporter,
        project_reporter,
        home=workspace.home,
        options=BackupOptions.for_type(args.backup_type, dry_run=args.dry_run),
        runner=run_command,
    )
    try:
        summary = batch.run()
    except NoConfigSelected as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc
    return 0 if summary.success else 1


def run_restore(args: argparse.Namespace, workspace: Workspace) -> int:
    config = _load_project(args, workspace, "restore")
    reporter = build_reporter("Restore", "restore", workspace, config)
    options = RestoreOptions(
        source=Path(args.backup) if args.backup else None,
        dry_run=args.dry_run,
        files_only=args.files_only,
    )
    orchestrator = RestoreOrchestrator(config, reporter, workspace, options=options, runner=run_command)

    def _interrupt(signum: int, _frame: Optional[object]) -> None:
        raise KeyboardInterrupt(f"signal {signum}")

    previous = signal.signal(signal.SIGTERM, _interrupt)
    try:
        orchestrator.run()
    except KeyboardInterrupt:
        logging.error("Restore interrupted")
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous)
    return 0


def run_cleanup(args: argparse.Namespace, workspace: Workspace) -> int:
    config = _load_project(args, workspace, "cleanup")
    reporter = build_reporter("Cleanup", "cleanup", workspace, config)
    reporter.update_status(Phase.STARTED, f"Cleanup of {config.retention_root} started")
    try:
        ensure_safe_path(config.retention_root, config.allowed_retention_roots)
    except WPBackupError as exc:
        logging.error("%s", exc)
        reporter.check_status(exc.exit_code, "safe path validation", "Cleanup")

    report = enforce_retention(
        config.retention_root,
        config.retain_days,
        mode=config.cleanup_mode,
        min_free_gb=config.disk_min_free_gb,
        max_log_size=config.max_log_size,
        dry_run=args.dry_run,
    )
    message = f"Cleanup removed {report.archives_removed} archive(s) and {report.logs_removed} log(s)"
    if report.dry_run:
        message = f"{message} (dry run)"
    if report.failures:
        message = f"{message}; {len(report.failures)} could not be removed"
    reporter.update_status(Phase.SUCCESS, message)
    reporter.notify(Phase.SUCCESS, message, "Cleanup")
    return 0


def run_list(args: argparse.Namespace, workspace: Workspace) -> int:
    config_path = resolve_config_path(args, workspace)
    config = load_configuration(config_path, home=workspace.home)
    artifacts = LocalStorage(config.backup_dir).list_artifacts()
    if not artifacts:
        print(f"No backups found in {config.backup_dir}")
        return 0
    for artifact in artifacts:
        print(f"{artifact.kind.value:<5} {artifact.stamp}  {artifact.path}")
    return 0


def run_setup(args: argparse.Namespace, workspace: Workspace) -> int:
    configure_logging(args.log_level, workspace.log_file("setup"))
    reporter = build_reporter("Setup", "setup", workspace, None)
    SetupWizard(workspace, reporter).run(name=args.name, force=args.force)
    return 0


def run_schedule(args: argparse.Namespace, workspace: Workspace) -> int:
    try:
        scheduler = SchedulerConfig(
            cron=args.cron,
            timezone=args.timezone,
            run_on_startup=not args.no_run_on_startup,
        )
    except ValidationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc
    configure_logging(args.log_level, workspace.log_file("scheduler"))
    return run_with_scheduler(scheduler, lambda: run_backup_all(args, workspace))


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    workspace = Workspace(Path(args.home).expanduser())
    return args.handler(args, workspace)


def run_with_scheduler(scheduler: SchedulerConfig, run_once: Callable[[], int]) -> int:
    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        logging.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    timezone = ZoneInfo(scheduler.timezone)
    next_run = datetime.now(timezone) if scheduler.run_on_startup else _next_run(scheduler.cron, datetime.now(timezone))

    if scheduler.run_on_startup:
        logging.info("Executing initial run immediately")
    else:
        logging.info("Next run scheduled for %s", next_run.isoformat())

    while not stop_event.is_set():
        now = datetime.now(timezone)
        if now >= next_run:
            try:
                exit_code = run_once()
            except SystemExit as exc:
                exit_code = exc.code if isinstance(exc.code, int) else 1
                logging.error("Scheduled run aborted: %s", exc)
            if exit_code != 0:
                logging.warning("Scheduled run completed with errors (exit code %s)", exit_code)

            next_run = _next_run(scheduler.cron, datetime.now(timezone))
            logging.info("Next run scheduled for %s", next_run.isoformat())
            continue

        sleep_for = max((next_run - now).total_seconds(), 0)
        stop_event.wait(min(sleep_for, 60))

    logging.info("Scheduler stopped")
    return 0


def _next_run(cron_expression: str, reference: datetime) -> datetime:
    return croniter(cron_expression, reference).get_next(datetime)


if __name__ == "__main__":
    sys.exit(main())
