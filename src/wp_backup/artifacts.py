from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .errors import InvalidSelection

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

_KIND_RE = re.compile(r"(?<![A-Za-z])(?P<kind>DB|Files)-")
_STAMP_RE = re.compile(r"(?P<stamp>\d{8}-\d{6})")


class ArtifactKind(str, Enum):
    DB = "DB"
    FILES = "Files"

    @property
    def prefix(self) -> str:
        return f"{self.value}-"


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def classify(path: Path) -> Optional[ArtifactKind]:
    """Return the artifact kind encoded in a file name, if any."""
    match = _KIND_RE.search(path.name)
    if not match:
        return None
    return ArtifactKind(match.group("kind"))


@dataclass(frozen=True)
class Artifact:
    kind: ArtifactKind
    timestamp: datetime
    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def stamp(self) -> str:
        return format_timestamp(self.timestamp)

    @classmethod
    def build(cls, kind: ArtifactKind, timestamp: datetime, directory: Path, extension: str) -> "Artifact":
        filename = f"{kind.prefix}{format_timestamp(timestamp)}.{extension}"
        return cls(kind=kind, timestamp=timestamp, path=directory / filename)

    @classmethod
    def from_path(cls, path: Path) -> "Artifact":
        kind = classify(path)
        if kind is None:
            raise InvalidSelection(f"Cannot determine backup type for {path}")

        stamp = _STAMP_RE.search(path.name)
        if stamp:
            timestamp = datetime.strptime(stamp.group("stamp"), TIMESTAMP_FORMAT)
        elif path.exists():
            timestamp = datetime.fromtimestamp(path.stat().st_mtime)
        else:
            timestamp = datetime.min
        return cls(kind=kind, timestamp=timestamp, path=path)


def find_artifacts(directory: Path, kind: ArtifactKind) -> List[Artifact]:
    """List artifacts of ``kind`` below ``directory``, newest name first."""
    if not directory.is_dir():
        return []
    candidates = [
        path
        for path in directory.rglob(f"*{kind.prefix}*")
        if path.is_file() and classify(path) is kind
    ]
    candidates.sort(key=lambda path: path.name, reverse=True)
    return [Artifact.from_path(path) for path in candidates]


def latest_artifact(directory: Path, kind: ArtifactKind) -> Optional[Artifact]:
    artifacts = find_artifacts(directory, kind)
    return artifacts[0] if artifacts else None
