from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from .errors import InvalidConfig

LOG = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".zip", ".tar", ".tar.gz", ".tgz", ".gz", ".bz2", ".xz", ".7z")
CLEANUP_MODES = ("time", "space", "both")
GIB = 1024**3

DiskFree = Callable[[Path], int]


def disk_free_gb(path: Path) -> int:
    return shutil.disk_usage(path).free // GIB


@dataclass
class RetentionReport:
    archives_removed: int = 0
    logs_removed: int = 0
    bytes_freed: int = 0
    removed: List[Path] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def total_removed(self) -> int:
        return self.archives_removed + self.logs_removed


def ensure_safe_path(path: Path, safe_roots: Sequence[Path]) -> None:
    resolved = path.expanduser().resolve()
    for root in safe_roots:
        root = Path(root).expanduser().resolve()
        if resolved == root or root in resolved.parents:
            return
    allowed = ", ".join(str(root) for root in safe_roots)
    raise InvalidConfig(f"Retention path {path} is not within the allowed safe paths ({allowed})")


def _is_archive(path: Path) -> bool:
    return path.name.lower().endswith(ARCHIVE_SUFFIXES)


def _mtime(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime)


def _files(base_path: Path, predicate: Callable[[Path], bool]) -> List[Path]:
    return [path for path in base_path.rglob("*") if path.is_file() and predicate(path)]


def enforce_retention(
    base_path: Path,
    retention_days: int,
    *,
    mode: str = "time",
    min_free_gb: int = 0,
    max_log_size: Optional[int] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
    disk_free: DiskFree = disk_free_gb,
) -> RetentionReport:
    """Prune old archives (and oversized old logs) below ``base_path``.

    ``time`` removes archives older than the window, ``space`` removes the
    oldest archives until ``min_free_gb`` is available, ``both`` removes old
    archives only while free space is below the threshold. Individual
    deletion failures are recorded, never raised.
    """
    report = RetentionReport(dry_run=dry_run)
    if mode not in CLEANUP_MODES:
        raise InvalidConfig(f"Unknown cleanup mode '{mode}'")
    if not base_path.exists():
        LOG.debug("Retention path %s does not exist; nothing to prune", base_path)
        return report
    if mode == "time" and retention_days <= 0:
        return report

    cutoff = (now or datetime.now()) - timedelta(days=retention_days)
    archives = sorted(_files(base_path, _is_archive), key=_mtime)

    if mode == "time":
        candidates = [path for path in archives if _mtime(path) < cutoff]
    elif mode == "space":
        candidates = archives
    else:
        candidates = [path for path in archives if _mtime(path) < cutoff]

    for path in candidates:
        if mode in ("space", "both") and disk_free(base_path) >= min_free_gb:
            LOG.info("Free space target of %d GB reached; stopping", min_free_gb)
            break
        if _remove_file(path, report, dry_run):
            report.archives_removed += 1

    if mode in ("time", "both") and max_log_size is not None:
        logs = _files(base_path, lambda p: p.suffix.lower() == ".log")
        for path in logs:
            if _mtime(path) < cutoff and path.stat().st_size > max_log_size:
                if _remove_file(path, report, dry_run):
                    report.logs_removed += 1

    if not dry_run:
        _remove_empty_dirs(base_path)

    LOG.info(
        "Retention on %s: removed %d archive(s), %d log(s), freed %s%s",
        base_path,
        report.archives_removed,
        report.logs_removed,
        human_readable_size(report.bytes_freed),
        " (dry run)" if dry_run else "",
    )
    return report


def _remove_file(path: Path, report: RetentionReport, dry_run: bool) -> bool:
    try:
        size = path.stat().st_size
        if dry_run:
            LOG.info("Dry run: would remove %s (%s)", path, human_readable_size(size))
        else:
            LOG.info("Removing expired backup %s (%s)", path, human_readable_size(size))
            path.unlink()
    except OSError as exc:
        LOG.error("Failed to remove %s: %s", path, exc)
        report.failures.append(f"{path}: {exc}")
        return False
    report.bytes_freed += size
    report.removed.append(path)
    return True


def _remove_empty_dirs(base_path: Path) -> None:
    directories: Iterable[Path] = sorted(
        (path for path in base_path.rglob("*") if path.is_dir() and not path.is_symlink()),
        key=lambda path: len(path.parts),
        reverse=True,
    )
    for directory in directories:
        try:
            next(directory.iterdir())
        except StopIteration:
            try:
                directory.rmdir()
                LOG.debug("Removed empty directory %s", directory)
            except OSError as exc:
                LOG.warning("Could not remove empty directory %s: %s", directory, exc)
        except OSError:
            continue


def human_readable_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}PB"  # pragma: no cover
