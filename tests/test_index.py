"""Tests for the remote backup index."""

from __future__ import annotations

import json

import pytest

from otp_backup.index import (
    INDEX_FILENAME,
    BackupIndex,
    BackupIndexEntry,
    IndexStore,
)
from otp_backup.webdav import AuthFailedError, WebDavClient


@pytest.fixture
def store(dav, config) -> IndexStore:
    return IndexStore(WebDavClient(config, transport=dav))


def _entry(name: str, created_at: int) -> BackupIndexEntry:
    return BackupIndexEntry(filename=name, created_at=created_at, size=10)


class TestGetIndex:
    def test_missing_index_is_empty(self, store) -> None:
        index = store.get_index()

        assert index.version == 2
        assert index.backups == []

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"\xff\xfe",
            b"[]",
            b'{"version": 1, "updatedAt": 1, "backups": []}',
            b'{"version": 2, "updatedAt": "yesterday", "backups": []}',
            b'{"version": 2, "updatedAt": 1, "backups": {}}',
        ],
    )
    def test_malformed_index_is_empty(self, store, dav, raw) -> None:
        dav.files[INDEX_FILENAME] = raw

        assert store.get_index().backups == []

    def test_invalid_entries_are_dropped_and_sorted(self, store, dav) -> None:
        dav.files[INDEX_FILENAME] = json.dumps({
            "version": 2,
            "updatedAt": 5,
            "backups": [
                {"filename": "old.zip", "createdAt": 1, "size": 3},
                {"filename": "", "createdAt": 2},
                {"filename": "no-time.zip"},
                "garbage",
                {"filename": "new.zip", "createdAt": 9, "size": 4, "schemaVersion": 2, "format": "aes256"},
            ],
        }).encode("utf-8")

        index = store.get_index()

        assert [entry.filename for entry in index.backups] == ["new.zip", "old.zip"]
        assert index.updated_at == 5

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_updated_at_is_empty(self, store, dav, value) -> None:
        dav.files[INDEX_FILENAME] = f'{{"version": 2, "updatedAt": {value}, "backups": []}}'.encode("utf-8")

        assert store.get_index().backups == []

    @pytest.mark.parametrize("value", ["NaN", "Infinity"])
    def test_non_finite_created_at_drops_entry(self, store, dav, value) -> None:
        dav.files[INDEX_FILENAME] = (
            '{"version": 2, "updatedAt": 1, "backups": ['
            f'{{"filename": "bad.zip", "createdAt": {value}}},'
            '{"filename": "good.zip", "createdAt": 5}]}'
        ).encode("utf-8")

        assert [entry.filename for entry in store.get_index().backups] == ["good.zip"]

    @pytest.mark.parametrize("value", ["NaN", "Infinity"])
    def test_non_finite_size_defaults_to_zero(self, store, dav, value) -> None:
        dav.files[INDEX_FILENAME] = (
            f'{{"version": 2, "updatedAt": 1, "backups": [{{"filename": "a.zip", "createdAt": 5, "size": {value}}}]}}'
        ).encode("utf-8")

        (entry,) = store.get_index().backups
        assert entry.size == 0

    def test_auth_failure_propagates(self, store, dav) -> None:
        dav.overrides[("GET", INDEX_FILENAME)] = 401

        with pytest.raises(AuthFailedError):
            store.get_index()


class TestRecordBackup:
    def test_written_as_camel_case_json(self, store, dav) -> None:
        store.record_backup(_entry("a.zip", 100), retention=0)

        data = json.loads(dav.files[INDEX_FILENAME])
        assert data["version"] == 2
        assert data["backups"] == [
            {"filename": "a.zip", "createdAt": 100, "size": 10, "schemaVersion": 2, "format": "aes256"}
        ]

    def test_retention_prunes_oldest(self, store, dav) -> None:
        for name, created_at in (("t1.zip", 1), ("t2.zip", 2), ("t3.zip", 3)):
            dav.files[name] = b"archive"
            report = store.record_backup(_entry(name, created_at), retention=2)

        assert report.removed == ["t1.zip"]
        assert [entry.filename for entry in store.get_index().backups] == ["t3.zip", "t2.zip"]
        assert "t1.zip" not in dav.files

    def test_zero_retention_keeps_everything(self, store) -> None:
        for created_at in range(5):
            store.record_backup(_entry(f"{created_at}.zip", created_at), retention=0)

        assert len(store.get_index().backups) == 5

    def test_delete_failure_is_not_fatal(self, store, dav) -> None:
        dav.files["t1.zip"] = b"archive"
        dav.overrides[("DELETE", "t1.zip")] = 500
        store.record_backup(_entry("t1.zip", 1), retention=1)

        report = store.record_backup(_entry("t2.zip", 2), retention=1)

        assert report.removed == []
        assert [failure.filename for failure in report.failures] == ["t1.zip"]
        assert [entry.filename for entry in store.get_index().backups] == ["t2.zip"]


class TestBackupIndex:
    def test_prune_returns_removed_entries(self) -> None:
        index = BackupIndex(backups=[_entry("a", 1), _entry("c", 3), _entry("b", 2)])

        removed = index.prune(1)

        assert [entry.filename for entry in index.backups] == ["c"]
        assert [entry.filename for entry in removed] == ["b", "a"]
