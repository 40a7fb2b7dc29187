"""Remote manifest listing the backups stored in the WebDAV directory."""
from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import ConfigError
from .webdav import NotFoundError, WebDavClient, WebDavError

LOGGER = logging.getLogger(__name__)

INDEX_FILENAME = "otp_backups_index.json"
INDEX_VERSION = 2
SCHEMA_VERSION = 2
ARCHIVE_FORMAT = "aes256"


def now_ms() -> int:
    return int(time.time() * 1000)


def _is_number(value: object) -> bool:
    # json.loads accepts NaN and Infinity
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


class RetentionPruneFailure(Exception):
    """A stale backup could not be deleted; never fatal for the current backup."""

    def __init__(self, filename: str, cause: Exception):
        super().__init__(f"Could not delete stale backup '{filename}': {cause}")
        self.filename = filename
        self.cause = cause


@dataclass
class BackupIndexEntry:
    filename: str
    created_at: int
    size: int = 0
    schema_version: int = SCHEMA_VERSION
    format: str = ARCHIVE_FORMAT

    @classmethod
    def from_dict(cls, data: object) -> Optional["BackupIndexEntry"]:
        if not isinstance(data, dict):
            return None
        filename = data.get("filename")
        created_at = data.get("createdAt")
        if not isinstance(filename, str) or not filename:
            return None
        if not _is_number(created_at):
            return None
        size = data.get("size")
        schema_version = data.get("schemaVersion")
        return cls(
            filename=filename,
            created_at=int(created_at),
            size=int(size) if _is_number(size) else 0,
            schema_version=int(schema_version) if isinstance(schema_version, int) else SCHEMA_VERSION,
            format=str(data.get("format") or ARCHIVE_FORMAT),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "filename": self.filename,
            "createdAt": self.created_at,
            "size": self.size,
            "schemaVersion": self.schema_version,
            "format": self.format,
        }


@dataclass
class BackupIndex:
    version: int = INDEX_VERSION
    updated_at: int = field(default_factory=now_ms)
    backups: List[BackupIndexEntry] = field(default_factory=list)

    def sort(self) -> None:
        self.backups.sort(key=lambda entry: entry.created_at, reverse=True)

    def prune(self, retention: int) -> List[BackupIndexEntry]:
        """Drop the oldest entries beyond *retention* and return them."""

        self.sort()
        if retention <= 0 or len(self.backups) <= retention:
            return []
        removed = self.backups[retention:]
        del self.backups[retention:]
        return removed

    @classmethod
    def parse(cls, raw: bytes) -> Optional["BackupIndex"]:
        """Parse manifest bytes; ``None`` when the content is unusable."""

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        if not isinstance(data, dict) or not isinstance(data.get("backups"), list):
            return None
        updated_at = data.get("updatedAt")
        if data.get("version") != INDEX_VERSION:
            return None
        if not _is_number(updated_at):
            return None
        entries = [BackupIndexEntry.from_dict(item) for item in data["backups"]]
        index = cls(
            version=INDEX_VERSION,
            updated_at=int(updated_at),
            backups=[entry for entry in entries if entry is not None],
        )
        index.sort()
        return index

    def to_dict(self) -> Dict[str, object]:
        return {
            "version": self.version,
            "updatedAt": self.updated_at,
            "backups": [entry.to_dict() for entry in self.backups],
        }


@dataclass
class PruneReport:
    removed: List[str] = field(default_factory=list)
    failures: List[RetentionPruneFailure] = field(default_factory=list)


@dataclass
class IndexStore:
    client: WebDavClient
    filename: str = INDEX_FILENAME

    def get_index(self) -> BackupIndex:
        try:
            raw = self.client.get_file(self.filename)
        except NotFoundError:
            return BackupIndex()
        index = BackupIndex.parse(raw)
        if index is None:
            LOGGER.warning("Backup index '%s' is malformed; starting with an empty index.", self.filename)
            return BackupIndex()
        return index

    def put_index(self, index: BackupIndex) -> None:
        body = json.dumps(index.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")
        self.client.put_file(self.filename, body, content_type="application/json; charset=utf-8")

    def record_backup(self, entry: BackupIndexEntry, retention: int) -> PruneReport:
        """Add *entry* to the manifest and enforce *retention*.

        The manifest is written before any stale file is deleted, so a crash
        in between leaves an orphaned archive rather than a dangling entry.
        """

        current = self.get_index()
        index = BackupIndex(updated_at=now_ms(), backups=[entry] + list(current.backups))
        removed = index.prune(retention)
        self.put_index(index)

        report = PruneReport()
        for stale in removed:
            try:
                self.client.delete_file(stale.filename)
            except (WebDavError, ConfigError) as exc:
                failure = RetentionPruneFailure(stale.filename, exc)
                LOGGER.warning("%s", failure)
                report.failures.append(failure)
            else:
                report.removed.append(stale.filename)
                LOGGER.info("Removed stale backup '%s'.", stale.filename)
        return report


__all__ = [
    "ARCHIVE_FORMAT",
    "BackupIndex",
    "BackupIndexEntry",
    "INDEX_FILENAME",
    "IndexStore",
    "PruneReport",
    "RetentionPruneFailure",
    "SCHEMA_VERSION",
]
