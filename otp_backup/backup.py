"""Create, list, restore and test remote OTP vault backups."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping

from .archive import (
    ArchiveError,
    BadPassphraseError,
    MissingPassphraseError,
    build_archive,
    extract_member,
)
from .config import BackupConfig, ConfigError
from .index import (
    ARCHIVE_FORMAT,
    SCHEMA_VERSION,
    BackupIndexEntry,
    IndexStore,
    now_ms,
)
from .links import format_listing, format_otpauth_uri
from .webdav import AuthFailedError, NotFoundError, Transport, WebDavClient, WebDavError

LOGGER = logging.getLogger(__name__)

PAYLOAD_MEMBER = "backup.json"
ACTIVE_LINKS_MEMBER = "otpauth_active.txt"
DELETED_LINKS_MEMBER = "otpauth_deleted.txt"
README_MEMBER = "README.txt"
FILENAME_PREFIX = "otp_backup_"
TEST_FILENAME_PREFIX = "otp_backup_test_"


class BackupError(Exception):
    """Raised when a backup operation fails."""


class BackupContentInvalidError(BackupError):
    """The decrypted backup does not hold a usable payload."""


USER_FACING_ERRORS = (ConfigError, WebDavError, ArchiveError, BackupError)


@dataclass
class BackupResult:
    filename: str
    created_at: int
    size: int
    pruned: List[str] = field(default_factory=list)


@dataclass
class OperationResult:
    """Outcome of a user-initiated operation, ready to show to the user."""

    success: bool
    message: str
    data: object = None


def backup_filename(created_at_ms: int) -> str:
    """Name the archive after the local wall-clock time, millisecond precision."""

    moment = datetime.fromtimestamp(created_at_ms / 1000)
    return f"{FILENAME_PREFIX}{moment:%Y%m%d_%H%M%S}_{created_at_ms % 1000:03d}.zip"


def build_readme(created_at_ms: int) -> str:
    local_time = datetime.fromtimestamp(created_at_ms / 1000)
    utc_time = datetime.fromtimestamp(created_at_ms / 1000, tz=timezone.utc)
    lines = [
        "OTP vault WebDAV backup (AES-256 encrypted ZIP)",
        "",
        f"Exported at (local): {local_time:%Y-%m-%d %H:%M:%S}",
        f"Exported at (UTC):   {utc_time.isoformat(timespec='milliseconds')}",
        "",
        "Files:",
        f"- {PAYLOAD_MEMBER}: complete data, including notes and deletion times",
        f"- {ACTIVE_LINKS_MEMBER}: otpauth:// links of the active accounts (for other OTP apps)",
        f"- {DELETED_LINKS_MEMBER}: otpauth:// links of deleted accounts (reference only)",
        "",
        "Restoring:",
        f"- Full restore: use the restore command, or feed {PAYLOAD_MEMBER} back to the vault",
        f"- Migration: import each link of {ACTIVE_LINKS_MEMBER} or turn it into a QR code",
        "",
        "Security notes:",
        "- The archive uses WinZip AES-256; some built-in unzip tools cannot open it.",
        "- File names and some metadata are not encrypted (ZIP limitation).",
        "- Use a strong password. A forgotten password cannot be recovered.",
        "- One writer per backup directory: concurrent writers overwrite each other's index.",
        "",
    ]
    return "\n".join(lines)


def validate_payload(data: object) -> Dict:
    if not isinstance(data, dict):
        raise BackupContentInvalidError("Backup content is invalid.")
    if not isinstance(data.get("activeItems"), list) or not isinstance(data.get("deletedItems"), list):
        raise BackupContentInvalidError("Backup content is missing required fields.")
    return data


@dataclass
class BackupService:
    """Orchestrates the WebDAV client, the archive codec and the index.

    The service never touches local storage: :meth:`restore_backup` hands
    the parsed payload back to the caller.
    """

    transport: Transport = field(default_factory=Transport)
    link_formatter: Callable[[Mapping], str] = format_otpauth_uri
    clock: Callable[[], int] = now_ms
    logger: logging.Logger = LOGGER

    def __post_init__(self) -> None:
        self._last_created_at = 0
        self._clock_lock = threading.Lock()

    def _client(self, config: BackupConfig) -> WebDavClient:
        client = WebDavClient(config, transport=self.transport)
        client.ensure_dir()
        return client

    def _next_timestamp(self) -> int:
        # strictly increasing so rapid backups never share a filename
        with self._clock_lock:
            created_at = max(self.clock(), self._last_created_at + 1)
            self._last_created_at = created_at
            return created_at

    # ------------------------------------------------------------------
    def create_backup(self, config: BackupConfig, payload: Mapping) -> BackupResult:
        client = self._client(config)
        cfg = client.config
        if not cfg.encrypt_password:
            raise MissingPassphraseError("Backup encryption password is not set.")

        created_at = self._next_timestamp()
        document = {
            "schemaVersion": SCHEMA_VERSION,
            "exportedAt": created_at,
            "activeItems": list(payload.get("activeItems") or []),
            "deletedItems": list(payload.get("deletedItems") or []),
        }
        archive = build_archive(
            [
                (PAYLOAD_MEMBER, json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")),
                (ACTIVE_LINKS_MEMBER, format_listing(document["activeItems"], self.link_formatter).encode("utf-8")),
                (DELETED_LINKS_MEMBER, format_listing(document["deletedItems"], self.link_formatter).encode("utf-8")),
                (README_MEMBER, build_readme(created_at).encode("utf-8")),
            ],
            cfg.encrypt_password,
        )

        filename = backup_filename(created_at)
        client.put_file(filename, archive)
        self.logger.info("Uploaded backup '%s' (%d bytes).", filename, len(archive))

        entry = BackupIndexEntry(
            filename=filename,
            created_at=created_at,
            size=len(archive),
            schema_version=SCHEMA_VERSION,
            format=ARCHIVE_FORMAT,
        )
        report = IndexStore(client).record_backup(entry, cfg.retention)
        return BackupResult(filename=filename, created_at=created_at, size=len(archive), pruned=report.removed)

    def restore_backup(self, config: BackupConfig, filename: str) -> Dict:
        client = self._client(config)
        archive = client.get_file(filename)
        raw = extract_member(archive, PAYLOAD_MEMBER, client.config.encrypt_password)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise BackupContentInvalidError(f"{PAYLOAD_MEMBER} is not valid JSON.") from exc
        self.logger.info("Downloaded and decrypted backup '%s'.", filename)
        return validate_payload(data)

    def list_backups(self, config: BackupConfig) -> List[BackupIndexEntry]:
        client = self._client(config)
        index = IndexStore(client).get_index()
        index.sort()
        return index.backups

    def test_connection(self, config: BackupConfig) -> None:
        client = self._client(config)
        probe = f"{TEST_FILENAME_PREFIX}{self.clock()}.txt"
        client.put_file(probe, b"ok", content_type="text/plain; charset=utf-8")
        client.get_file(probe)
        client.delete_file(probe)
        self.logger.info("Connection test against %s succeeded.", client.config.dir_url)

    # ------------------------------------------------------------------
    # user-initiated flows
    # ------------------------------------------------------------------
    def run_create(self, config: BackupConfig, payload: Mapping) -> OperationResult:
        try:
            result = self.create_backup(config, payload)
        except USER_FACING_ERRORS as exc:
            return self._failure("Backup failed", exc)
        return OperationResult(True, "Backup created.", result)

    def run_restore(self, config: BackupConfig, filename: str) -> OperationResult:
        try:
            data = self.restore_backup(config, filename)
        except USER_FACING_ERRORS as exc:
            return self._failure("Restore failed", exc)
        return OperationResult(True, "Backup restored.", data)

    def run_list(self, config: BackupConfig) -> OperationResult:
        try:
            entries = self.list_backups(config)
        except USER_FACING_ERRORS as exc:
            return self._failure("Listing backups failed", exc)
        return OperationResult(True, f"{len(entries)} backup(s) found.", entries)

    def run_test(self, config: BackupConfig) -> OperationResult:
        try:
            self.test_connection(config)
        except USER_FACING_ERRORS as exc:
            return self._failure("Connection test failed", exc)
        return OperationResult(True, "Connection OK (read and write permissions confirmed).")

    def _failure(self, action: str, exc: Exception) -> OperationResult:
        self.logger.error("%s: %s", action, exc)
        return OperationResult(False, f"{action}: {describe_error(exc)}")


def describe_error(exc: Exception) -> str:
    if isinstance(exc, BadPassphraseError):
        return "cannot decrypt the backup, check the encryption password."
    if isinstance(exc, MissingPassphraseError):
        return "no encryption password is configured."
    if isinstance(exc, AuthFailedError):
        return "WebDAV authentication failed (check username, password and permissions)."
    if isinstance(exc, NotFoundError):
        return "the backup file does not exist."
    return str(exc)


__all__ = [
    "BackupContentInvalidError",
    "BackupError",
    "BackupResult",
    "BackupService",
    "OperationResult",
    "backup_filename",
    "describe_error",
    "validate_payload",
]
