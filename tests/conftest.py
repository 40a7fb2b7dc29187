"""Shared test fixtures for otp_backup."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote

import pytest

from otp_backup.config import BackupConfig
from otp_backup.webdav import Response

BASE_URL = "https://dav.example.com/backups/"


class FakeWebDav:
    """In-memory WebDAV directory speaking the Transport interface."""

    def __init__(self, base_url: str = BASE_URL, dir_exists: bool = True) -> None:
        self.base_url = base_url
        self.dir_exists = dir_exists
        self.files: Dict[str, bytes] = {}
        self.calls: List[Tuple[str, str]] = []
        self.headers: List[Dict[str, str]] = []
        self.auths: List[Optional[Tuple[str, str]]] = []
        self.overrides: Dict[Tuple[str, str], int] = {}

    def request(
        self,
        url: str,
        method: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
        allow_insecure: bool = False,
        max_redirects: Optional[int] = None,
        timeout: Optional[float] = None,
        auth: Optional[Tuple[str, str]] = None,
    ) -> Response:
        name = unquote(url[len(self.base_url):]) if url.startswith(self.base_url) else url
        self.calls.append((method, name))
        self.headers.append(dict(headers or {}))
        self.auths.append(auth)

        forced = self.overrides.get((method, name))
        if forced is not None:
            return Response(status=forced, headers={})

        if name == "":
            if method == "PROPFIND":
                return Response(status=207 if self.dir_exists else 404, headers={})
            if method == "MKCOL":
                if self.dir_exists:
                    return Response(status=405, headers={})
                self.dir_exists = True
                return Response(status=201, headers={})
            return Response(status=405, headers={})

        if method == "PUT":
            created = name not in self.files
            self.files[name] = bytes(body or b"")
            return Response(status=201 if created else 204, headers={})
        if method == "GET":
            if name not in self.files:
                return Response(status=404, headers={})
            return Response(status=200, headers={}, body=self.files[name])
        if method == "DELETE":
            if self.files.pop(name, None) is None:
                return Response(status=404, headers={})
            return Response(status=204, headers={})
        return Response(status=405, headers={})

    def methods(self) -> List[str]:
        return [method for method, _ in self.calls]


@pytest.fixture
def dav() -> FakeWebDav:
    return FakeWebDav()


@pytest.fixture
def config() -> BackupConfig:
    return BackupConfig(
        dir_url="https://dav.example.com/backups",
        username="alice",
        password="s3cret",
        encrypt_password="abc123",
    )


@pytest.fixture
def sample_payload() -> Dict:
    return {
        "activeItems": [
            {"id": "1", "name": "alice@example.com", "issuer": "Example", "secret": "JBSWY3DPEHPK3PXP"},
            {"id": "2", "name": "bob", "secret": "GEZDGNBVGY3TQOJQ", "digits": 8, "period": 60},
        ],
        "deletedItems": [
            {"id": "3", "name": "old", "secret": "MFRGGZDFMZTWQ2LK", "deletedAt": 1700000000000},
        ],
    }
