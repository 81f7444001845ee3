"""Create and extract the zip/tar archives that hold backup artifacts."""

from __future__ import annotations

import fnmatch
import logging
import os
import stat
import tarfile
import time
import zipfile
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional, Sequence, Tuple

from .errors import ArchiveFailure, CorruptArchive, UnsupportedFormat

LOG = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("zip", "tar", "tar.gz")
_TAR_MODES = {"tar": "w", "tar.gz": "w:gz"}


def detect_format(path: Path) -> str:
    name = path.name.lower()
    if name.endswith((".tar.gz", ".tgz")):
        return "tar.gz"
    if name.endswith(".tar"):
        return "tar"
    if name.endswith(".zip"):
        return "zip"
    raise UnsupportedFormat(f"Unsupported archive format for {path.name}")


def is_excluded(relative: PurePosixPath, patterns: Sequence[str]) -> bool:
    rel = relative.as_posix()
    for pattern in patterns:
        pattern = pattern.strip("/")
        if not pattern:
            continue
        if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(rel, f"{pattern}/*"):
            return True
        if any(fnmatch.fnmatch(part, pattern) for part in relative.parts):
            return True
    return False


def iter_members(
    source: Path,
    exclude: Sequence[str] = (),
    max_size: Optional[int] = None,
) -> Iterator[Tuple[Path, PurePosixPath]]:
    """Yield ``(path, relative)`` for directories and files to archive, in a stable order."""
    for dirpath, dirnames, filenames in os.walk(source):
        current = Path(dirpath)
        relative_dir = PurePosixPath(current.relative_to(source).as_posix())

        kept_dirs = []
        for dirname in sorted(dirnames):
            relative = relative_dir / dirname
            if is_excluded(relative, exclude):
                LOG.debug("Excluding directory %s", relative)
                continue
            kept_dirs.append(dirname)
            yield current / dirname, relative
        dirnames[:] = kept_dirs

        for filename in sorted(filenames):
            path = current / filename
            relative = relative_dir / filename
            if is_excluded(relative, exclude):
                LOG.debug("Excluding file %s", relative)
                continue
            if max_size is not None and not path.is_symlink() and path.stat().st_size > max_size:
                LOG.info("Skipping %s: larger than %d bytes", relative, max_size)
                continue
            yield path, relative


def create_archive(
    source: Path,
    destination: Path,
    fmt: str,
    *,
    arcname: Optional[str] = None,
    exclude: Sequence[str] = (),
    max_size: Optional[int] = None,
) -> Path:
    """Archive the tree at ``source`` under the top-level directory ``arcname``."""
    if fmt not in SUPPORTED_FORMATS:
        raise UnsupportedFormat(f"Unsupported compression format '{fmt}'")
    if not source.is_dir():
        raise ArchiveFailure(f"Archive source {source} is not a directory")

    root = PurePosixPath(arcname or source.name)
    destination.parent.mkdir(parents=True, exist_ok=True)
    LOG.info("Creating archive %s", destination)

    try:
        if fmt == "zip":
            with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
                zf.write(source, f"{root}/")
                for path, relative in iter_members(source, exclude, max_size):
                    name = (root / relative).as_posix()
                    if path.is_symlink():
                        _write_zip_link(zf, path, name)
                    elif path.is_dir():
                        zf.write(path, f"{name}/")
                    else:
                        zf.write(path, name)
        else:
            with tarfile.open(destination, _TAR_MODES[fmt]) as tar:
                tar.add(source, arcname=str(root), recursive=False)
                for path, relative in iter_members(source, exclude, max_size):
                    tar.add(path, arcname=(root / relative).as_posix(), recursive=False)
    except (OSError, tarfile.TarError, zipfile.BadZipFile) as exc:
        raise ArchiveFailure(f"Failed to create archive {destination}: {exc}") from exc

    return destination


def _write_zip_link(archive: zipfile.ZipFile, path: Path, name: str) -> None:
    # Stored the way Info-ZIP does: link mode in the high bits, target as data.
    info = zipfile.ZipInfo(name, time.localtime(path.lstat().st_mtime)[:6])
    info.external_attr = (stat.S_IFLNK | 0o777) << 16
    info.compress_type = zipfile.ZIP_STORED
    archive.writestr(info, os.readlink(path))


def _is_zip_link(info: zipfile.ZipInfo) -> bool:
    return stat.S_ISLNK(info.external_attr >> 16)


def _check_zip_members(archive: zipfile.ZipFile, destination: Path) -> None:
    base = destination.resolve()
    for member in archive.namelist():
        target = (base / member).resolve()
        if target != base and base not in target.parents:
            raise CorruptArchive(f"Archive member escapes extraction directory: {member}")


def _extract_zip(archive: zipfile.ZipFile, destination: Path) -> None:
    links = []
    for info in archive.infolist():
        if _is_zip_link(info):
            links.append(info)
        else:
            archive.extract(info, destination)
    # Links last, so no later member is written through one.
    for info in links:
        link = destination / info.filename
        link.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(archive.read(info).decode("utf-8"), link)


def extract_archive(archive: Path, destination: Path) -> Path:
    fmt = detect_format(archive)
    if not archive.is_file():
        raise CorruptArchive(f"Backup file {archive} not found")

    destination.mkdir(parents=True, exist_ok=True)
    LOG.info("Extracting %s to %s", archive.name, destination)
    try:
        if fmt == "zip":
            with zipfile.ZipFile(archive) as zf:
                _check_zip_members(zf, destination)
                _extract_zip(zf, destination)
        else:
            # "tar" keeps absolute link targets, which site trees legitimately contain.
            with tarfile.open(archive, "r:*") as tar:
                tar.extractall(destination, filter="tar")
    except (tarfile.FilterError, zipfile.BadZipFile, tarfile.ReadError) as exc:
        raise CorruptArchive(f"Cannot extract {archive.name}: {exc}") from exc
    except (OSError, tarfile.TarError) as exc:
        raise ArchiveFailure(f"Extraction of {archive.name} failed: {exc}") from exc
    return destination
