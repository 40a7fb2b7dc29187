"""Configuration models and helpers for the remote backup subsystem."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlsplit

import yaml

CONFIG_FILENAME = "config.yaml"

DEFAULT_TIMEOUT = 15.0
DEFAULT_MAX_REDIRECTS = 5

ENV_ENCRYPT_PASSWORD = "OTP_BACKUP_ENCRYPT_PASSWORD"
ENV_PASSWORD = "OTP_BACKUP_PASSWORD"


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


# Accepted spellings for each field, first one is canonical.
_ALIASES = {
    "dir_url": ("dir_url", "dirUrl"),
    "username": ("username",),
    "password": ("password",),
    "encrypt_password": ("encrypt_password", "encryptPassword"),
    "retention": ("retention",),
    "allow_insecure": ("allow_insecure", "allowInsecure"),
    "auto_backup": ("auto_backup", "autoBackup"),
    "timeout": ("timeout",),
    "max_redirects": ("max_redirects", "maxRedirects"),
}


@dataclass
class BackupConfig:
    """Where and how backups are stored.

    The backup core only reads this object; persisting it is the job of
    :func:`save_config` or whatever settings store the host application uses.
    """

    dir_url: str = ""
    username: str = ""
    password: str = ""
    encrypt_password: str = ""
    retention: int = 0
    allow_insecure: bool = False
    auto_backup: bool = True
    timeout: float = DEFAULT_TIMEOUT
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    extra: Dict[str, object] = field(default_factory=dict)

    def is_ready(self) -> bool:
        return bool(self.dir_url.strip()) and bool(self.encrypt_password.strip())

    def normalized(self) -> "BackupConfig":
        """Return a validated copy whose directory URL ends with a slash."""

        return replace(
            self,
            dir_url=normalize_dir_url(self.dir_url),
            username=self.username or "",
            password=self.password or "",
            encrypt_password=self.encrypt_password or "",
            retention=max(0, self.retention or 0),
            allow_insecure=bool(self.allow_insecure),
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "BackupConfig":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("The 'backup' section must be a mapping.")
        values: Dict[str, object] = {}
        consumed = set()
        for name, aliases in _ALIASES.items():
            for alias in aliases:
                if alias in data:
                    values[name] = data[alias]
                    consumed.add(alias)
                    break
        extra = {key: value for key, value in data.items() if key not in consumed}
        return cls(
            dir_url=str(values.get("dir_url") or ""),
            username=str(values.get("username") or ""),
            password=str(values.get("password") or ""),
            encrypt_password=str(values.get("encrypt_password") or ""),
            retention=_safe_int(values.get("retention"), default=0),
            allow_insecure=_safe_bool(values.get("allow_insecure"), default=False),
            auto_backup=_safe_bool(values.get("auto_backup"), default=True),
            timeout=_safe_float(values.get("timeout"), default=DEFAULT_TIMEOUT),
            max_redirects=_safe_int(values.get("max_redirects"), default=DEFAULT_MAX_REDIRECTS),
            extra=extra,
        )

    def to_dict(self) -> Dict:
        result: Dict[str, object] = {
            "dir_url": self.dir_url,
            "username": self.username,
            "password": self.password,
            "encrypt_password": self.encrypt_password,
            "retention": self.retention,
            "allow_insecure": self.allow_insecure,
            "auto_backup": self.auto_backup,
            "timeout": self.timeout,
            "max_redirects": self.max_redirects,
        }
        result.update(self.extra)
        # empty secrets are left out of the YAML file
        return {key: value for key, value in result.items() if value not in (None, "")}

    def __repr__(self) -> str:
        return (
            f"BackupConfig(dir_url={self.dir_url!r}, username={self.username!r}, "
            f"retention={self.retention}, allow_insecure={self.allow_insecure}, "
            f"auto_backup={self.auto_backup})"
        )


def normalize_dir_url(dir_url: Optional[str]) -> str:
    if not dir_url or not isinstance(dir_url, str) or not dir_url.strip():
        raise ConfigError("The WebDAV directory URL must not be empty.")
    dir_url = dir_url.strip()
    try:
        parts = urlsplit(dir_url)
    except ValueError as exc:
        raise ConfigError(f"Invalid WebDAV directory URL '{dir_url}'.") from exc
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ConfigError("The WebDAV directory URL must start with http:// or https://.")
    path = parts.path if parts.path.endswith("/") else parts.path + "/"
    query = f"?{parts.query}" if parts.query else ""
    return f"{parts.scheme}://{parts.netloc}{path}{query}"


# ---------------------------------------------------------------------------
def _safe_int(value, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Value '{value}' is not an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Value '{value}' is not an integer.")


_TRUE_STRINGS = {"true", "yes", "y", "on", "1"}
_FALSE_STRINGS = {"false", "no", "n", "off", "0"}


def _safe_bool(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigError(f"Value '{value}' is not a boolean.")


def _safe_float(value, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Value '{value}' is not a number.")


def apply_environment(config: BackupConfig, environ: Optional[Dict[str, str]] = None) -> BackupConfig:
    """Let secrets come from the environment instead of the YAML file."""

    environ = os.environ if environ is None else environ
    overrides: Dict[str, object] = {}
    if environ.get(ENV_ENCRYPT_PASSWORD):
        overrides["encrypt_password"] = environ[ENV_ENCRYPT_PASSWORD]
    if environ.get(ENV_PASSWORD):
        overrides["password"] = environ[ENV_PASSWORD]
    return replace(config, **overrides) if overrides else config


# ---------------------------------------------------------------------------
def load_config(path: Path = Path(CONFIG_FILENAME)) -> BackupConfig:
    path = Path(path)
    if not path.exists():
        return apply_environment(BackupConfig())
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse '{path}': {exc}") from exc
    if not data:
        return apply_environment(BackupConfig())
    if not isinstance(data, dict) or "backup" not in data:
        raise ConfigError("The configuration file must contain a 'backup' key.")
    return apply_environment(BackupConfig.from_dict(data["backup"]))


def save_config(config: BackupConfig, path: Path = Path(CONFIG_FILENAME)) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(
            {"backup": config.to_dict()},
            fh,
            allow_unicode=True,
            sort_keys=False,
            default_flow_style=False,
        )


__all__ = [
    "BackupConfig",
    "ConfigError",
    "apply_environment",
    "load_config",
    "normalize_dir_url",
    "save_config",
]
