from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidConfig, MissingConfig, NoConfigSelected
from .logger import normalize_level

LOG = logging.getLogger(__name__)

DEFAULT_HOME = "/opt/wp-backup"
DEFAULT_SAFE_PATHS = ("/var/backups", "/home/backup")
CONFIG_SUFFIXES = (".conf", ".conf.gpg", ".yaml", ".yml")

_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SIZE_RE = re.compile(r"^(?P<number>\d+(?:\.\d+)?)\s*(?P<unit>[kmgt]?)b?$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}
_LIST_SPLIT_RE = re.compile(r"[,\s]+")


def parse_size(value: Any) -> Optional[int]:
    """Convert ``50m``-style sizes (as used by ``find -size``) to bytes."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = _SIZE_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid size '{value}' (expected e.g. 500k, 50m, 2g)")
    return int(float(match.group("number")) * _SIZE_UNITS[match.group("unit").lower()])


def _split_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item for item in _LIST_SPLIT_RE.split(value.strip()) if item]
    return [str(item) for item in value if str(item)]


class ProjectConfig(BaseModel):
    """Settings for one WordPress site, keyed by the shell-style names of the config file."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = "default"
    wp_path: Optional[Path] = Field(default=None, alias="wpPath")

    destination_user: Optional[str] = Field(default=None, alias="destinationUser")
    destination_ip: Optional[str] = Field(default=None, alias="destinationIP")
    destination_port: int = Field(default=22, alias="destinationPort")
    private_key_path: Path = Field(default=Path("~/.ssh/id_rsa"), alias="privateKeyPath", validate_default=True)
    destination_db_backup_path: Optional[str] = Field(default=None, alias="destinationDbBackupPath")
    destination_files_backup_path: Optional[str] = Field(default=None, alias="destinationFilesBackupPath")
    bandwidth_limit: Optional[int] = Field(default=None, alias="BANDWIDTH_LIMIT", description="rsync KB/s.")

    local_backup_dir: Optional[Path] = Field(default=None, alias="LOCAL_BACKUP_DIR")
    max_size: Optional[int] = Field(default=None, alias="maxSize", description="Bytes; larger files are skipped.")
    exclude_patterns: List[str] = Field(default_factory=list, alias="EXCLUDE_PATTERNS")
    compression_format: Literal["zip", "tar", "tar.gz"] = Field(default="tar.gz", alias="COMPRESSION_FORMAT")
    backup_location: Literal["local", "remote", "both"] = Field(default="both", alias="BACKUP_LOCATION")
    nice_level: Optional[int] = Field(default=19, alias="NICE_LEVEL", ge=-20, le=19)

    full_path: Optional[Path] = Field(default=None, alias="fullPath")
    retain_days: int = Field(default=30, alias="BACKUP_RETAIN_DURATION", ge=0)
    cleanup_mode: Literal["time", "space", "both"] = Field(default="time", alias="CLEANUP_MODE")
    disk_min_free_gb: int = Field(default=0, alias="DISK_MIN_FREE_GB", ge=0)
    max_log_size: int = Field(default=200 * 1024 * 1024, alias="MAX_LOG_SIZE")
    safe_paths: List[Path] = Field(default_factory=list, alias="SAFE_PATHS")

    notify_method: List[str] = Field(default_factory=list, alias="NOTIFY_METHOD")
    notify_email: Optional[str] = Field(default=None, alias="NOTIFY_EMAIL")
    smtp_host: str = Field(default="localhost", alias="SMTP_HOST")
    smtp_port: int = Field(default=25, alias="SMTP_PORT")
    smtp_sender: Optional[str] = Field(default=None, alias="SMTP_FROM")
    slack_webhook_url: Optional[str] = Field(default=None, alias="SLACK_WEBHOOK_URL")
    telegram_bot_token: Optional[str] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: Optional[str] = Field(default=None, alias="TELEGRAM_CHAT_ID")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("wp_path", "private_key_path", "local_backup_dir", "full_path")
    @classmethod
    def _expand_path(cls, value: Optional[Path]) -> Optional[Path]:
        return value.expanduser() if value is not None else None

    @field_validator("max_size", "max_log_size", mode="before")
    @classmethod
    def _parse_size(cls, value: Any) -> Optional[int]:
        return parse_size(value)

    @field_validator("exclude_patterns", "safe_paths", mode="before")
    @classmethod
    def _parse_list(cls, value: Any) -> List[str]:
        return _split_list(value)

    @field_validator("notify_method", mode="before")
    @classmethod
    def _parse_methods(cls, value: Any) -> List[str]:
        methods = [item.lower() for item in _split_list(value)]
        return [method for method in methods if method != "none"]

    @field_validator("compression_format", "backup_location", "cleanup_mode", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value == "tgz":
                return "tar.gz"
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> str:
        return normalize_level(str(value))

    # Derived settings -------------------------------------------------------
    @property
    def backup_dir(self) -> Path:
        if self.local_backup_dir is None:
            return Path(DEFAULT_HOME) / "backups"
        return self.local_backup_dir

    @property
    def retention_root(self) -> Path:
        return self.full_path or self.backup_dir

    @property
    def allowed_retention_roots(self) -> List[Path]:
        if self.safe_paths:
            return list(self.safe_paths)
        return [self.backup_dir, *(Path(path) for path in DEFAULT_SAFE_PATHS)]

    @property
    def transfers_enabled(self) -> bool:
        return self.backup_location in ("remote", "both")

    @property
    def keeps_local_copy(self) -> bool:
        return self.backup_location in ("local", "both")

    @property
    def remote_target(self) -> str:
        return f"{self.destination_user}@{self.destination_ip}"

    def require(self, *fields: str) -> "ProjectConfig":
        """Raise ``InvalidConfig`` naming every listed setting that is empty."""
        missing = [name for name in fields if getattr(self, name) in (None, "", [])]
        if missing:
            model_fields = type(self).model_fields
            labels = ", ".join(model_fields[name].alias or name for name in missing)
            raise InvalidConfig(f"Required setting(s) not set for project '{self.name}': {labels}")
        return self


# --- Loading -----------------------------------------------------------------


def project_name(path: Path) -> str:
    name = path.name
    for suffix in sorted(CONFIG_SUFFIXES, key=len, reverse=True):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return path.stem


def parse_assignments(text: str) -> Dict[str, str]:
    """Parse the ``KEY="value"`` lines of a sourced shell config."""
    values: Dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("export "):
            stripped = stripped[len("export "):].lstrip()
        key, sep, raw_value = stripped.partition("=")
        if not sep or not _KEY_RE.match(key):
            LOG.warning("Ignoring line %d of configuration: %r", lineno, line)
            continue
        try:
            tokens = shlex.split(raw_value, comments=True)
        except ValueError as exc:
            raise InvalidConfig(f"Line {lineno}: cannot parse value for {key}: {exc}") from exc
        values[key] = " ".join(tokens)
    return values


def _decrypt(path: Path) -> str:
    try:
        result = subprocess.run(
            ["gpg", "--quiet", "--decrypt", str(path)],
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise InvalidConfig(f"gpg is required to read encrypted configuration {path}") from exc
    except subprocess.CalledProcessError as exc:
        raise InvalidConfig(f"Failed to decrypt {path}: {(exc.stderr or '').strip()}") from exc
    if not result.stdout.strip():
        raise InvalidConfig(f"Decrypted configuration {path} is empty")
    return result.stdout


def _read_raw(path: Path) -> Dict[str, Any]:
    inner_name = path.name
    if inner_name.endswith(".gpg"):
        inner_name = inner_name[: -len(".gpg")]
        text = _decrypt(path)
    else:
        text = path.read_text(encoding="utf-8")

    if inner_name.endswith((".yaml", ".yml")):
        try:
            raw = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise InvalidConfig(f"{path}: invalid YAML: {exc}") from exc
        if not isinstance(raw, dict):
            raise InvalidConfig(f"{path}: expected a mapping at the top level")
        return raw
    return parse_assignments(text)


def load_config(
    path: Path,
    required: Sequence[str] = (),
    home: Optional[Path] = None,
) -> ProjectConfig:
    if not path.exists():
        raise MissingConfig(f"Configuration file not found: {path}")

    raw = {key: value for key, value in _read_raw(path).items() if value not in ("", None)}
    raw.setdefault("name", project_name(path))

    try:
        config = ProjectConfig.model_validate(raw)
    except ValidationError as exc:
        raise InvalidConfig(f"{path}: {exc}") from exc

    if config.local_backup_dir is None:
        base = Path(home) if home is not None else Path(DEFAULT_HOME)
        config = config.model_copy(update={"local_backup_dir": base / "backups"})

    config.require(*required)
    LOG.info("Loaded configuration %s for project %s", path.name, config.name)
    return config


# --- Interactive selection and persistence ------------------------------------


def list_config_files(config_dir: Path) -> List[Path]:
    if not config_dir.is_dir():
        return []
    return sorted(
        candidate
        for candidate in config_dir.iterdir()
        if candidate.is_file() and candidate.name.endswith(CONFIG_SUFFIXES)
    )


def select_config_file(
    config_dir: Path,
    prompt: Callable[[str], str] = input,
    output: Callable[[str], None] = print,
) -> Path:
    candidates = list_config_files(config_dir)
    if not candidates:
        raise NoConfigSelected(f"No configuration files found in {config_dir}")

    for index, candidate in enumerate(candidates):
        marker = " (encrypted)" if candidate.name.endswith(".gpg") else ""
        output(f"[{index}] {candidate.name}{marker}")

    selection = prompt("Select a configuration file by number: ").strip()
    if not (selection.isascii() and selection.isdigit()) or int(selection) >= len(candidates):
        raise NoConfigSelected(f"Invalid configuration selection: '{selection}'")

    chosen = candidates[int(selection)]
    LOG.info("Selected configuration file %s", chosen.name)
    return chosen


def render_config(config: ProjectConfig) -> str:
    lines = [f"# wp-backup configuration for {config.name}"]
    data = config.model_dump(by_alias=True, exclude={"name"}, exclude_none=True)
    for key, value in data.items():
        if isinstance(value, list):
            value = ",".join(str(item) for item in value)
        lines.append(f"{key}={shlex.quote(str(value))}")
    return "\n".join(lines) + "\n"


def write_config(config: ProjectConfig, path: Path, overwrite: bool = False) -> Path:
    """Persist ``config`` as a sourced-style file readable only by its owner."""
    path.parent.mkdir(parents=True, exist_ok=True)
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    if not overwrite:
        flags |= os.O_EXCL
    try:
        fd = os.open(path, flags, 0o600)
    except FileExistsError as exc:
        raise InvalidConfig(f"Configuration file already exists: {path}") from exc
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(render_config(config))
    os.chmod(path, 0o600)
    LOG.info("Configuration written to %s", path)
    return path


# --- Scheduler -----------------------------------------------------------------


class SchedulerConfig(BaseModel):
    cron: str
    timezone: str = "UTC"
    run_on_startup: bool = True

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        try:
            croniter(value, datetime.now())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


def config_from_environment(environ: Optional[Dict[str, str]] = None) -> ProjectConfig:
    """Build settings (notification channels in particular) from environment variables."""
    environ = os.environ if environ is None else environ
    aliases = {field.alias for field in ProjectConfig.model_fields.values() if field.alias}
    raw = {key: value for key, value in environ.items() if key in aliases and value != ""}
    try:
        return ProjectConfig.model_validate(raw)
    except ValidationError as exc:
        LOG.warning("Ignoring invalid settings from the environment: %s", exc)
        return ProjectConfig()
