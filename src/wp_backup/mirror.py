from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

LOG = logging.getLogger(__name__)


def _entry_kind(path: Path) -> str:
    if path.is_symlink():
        return "link"
    if path.is_dir():
        return "dir"
    return "file"


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def snapshot_tree(source: Path, destination: Path) -> Path:
    """Copy ``source`` into ``destination`` without deleting anything already there."""
    LOG.info("Snapshotting %s to %s", source, destination)
    shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
    return destination


def mirror_tree(source: Path, destination: Path) -> None:
    """Make ``destination`` an exact copy of ``source``.

    Entries missing from ``source`` are deleted from ``destination``, as are
    entries whose type changed. Symlinks are copied as links. Running it twice
    with the same source leaves the same tree.
    """
    destination.mkdir(parents=True, exist_ok=True)

    stale = []
    for dirpath, dirnames, filenames in os.walk(destination):
        current = Path(dirpath)
        relative = current.relative_to(destination)
        for name in dirnames + filenames:
            target = current / name
            counterpart = source / relative / name
            if not os.path.lexists(counterpart) or _entry_kind(counterpart) != _entry_kind(target):
                stale.append(target)
    for target in sorted(stale, key=lambda path: len(path.parts), reverse=True):
        if os.path.lexists(target):
            LOG.debug("Deleting %s", target)
            _remove(target)

    copied = 0
    for dirpath, dirnames, filenames in os.walk(source):
        current = Path(dirpath)
        relative = current.relative_to(source)
        target_dir = destination / relative
        target_dir.mkdir(parents=True, exist_ok=True)
        for name in dirnames:
            entry = current / name
            if entry.is_symlink():
                _copy_link(entry, target_dir / name)
            else:
                (target_dir / name).mkdir(exist_ok=True)
        for name in filenames:
            entry = current / name
            target = target_dir / name
            if entry.is_symlink():
                _copy_link(entry, target)
            else:
                shutil.copy2(entry, target, follow_symlinks=False)
            copied += 1
    LOG.info("Mirrored %d file(s) from %s to %s", copied, source, destination)


def _copy_link(link: Path, target: Path) -> None:
    if os.path.lexists(target):
        target.unlink()
    os.symlink(os.readlink(link), target)
