"""Minimal WebDAV client used to store backups in a remote directory."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import quote, urljoin, urlsplit

import requests

from .config import DEFAULT_MAX_REDIRECTS, DEFAULT_TIMEOUT, BackupConfig, ConfigError

LOGGER = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

PROPFIND_BODY = (
    b'<?xml version="1.0" encoding="utf-8" ?>\n'
    b'<D:propfind xmlns:D="DAV:">\n'
    b"  <D:prop>\n"
    b"    <D:displayname />\n"
    b"  </D:prop>\n"
    b"</D:propfind>\n"
)


class WebDavError(Exception):
    """Raised when talking to the WebDAV server fails."""


class AuthFailedError(WebDavError):
    """The server rejected the credentials (HTTP 401/403)."""


class NotFoundError(WebDavError):
    """The requested remote file does not exist."""


class DirectoryUnavailableError(WebDavError):
    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"Backup directory is unavailable (HTTP {status}).")
        self.status = status


class TooManyRedirectsError(WebDavError):
    pass


class RequestTimeoutError(WebDavError):
    pass


class HttpStatusError(WebDavError):
    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"Unexpected HTTP status {status}.")
        self.status = status


@dataclass
class Response:
    status: int
    headers: Mapping[str, str]
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


Auth = Optional[Tuple[str, str]]


def basic_auth(username: Optional[str], password: Optional[str]) -> Auth:
    """Credentials for ``requests``' basic auth, or ``None`` when both are empty."""

    if not username and not password:
        return None
    return (username or "", password or "")


def _without_authorization(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {key: value for key, value in (headers or {}).items() if key.lower() != "authorization"}


@dataclass
class Transport:
    """Executes single HTTP requests and follows redirects by hand.

    ``requests`` is told not to follow redirects itself so that the method
    and body of WebDAV verbs survive a hop and the hop count stays bounded.
    """

    timeout: float = DEFAULT_TIMEOUT
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    session: Optional[requests.Session] = None

    def request(
        self,
        url: str,
        method: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        allow_insecure: bool = False,
        max_redirects: Optional[int] = None,
        timeout: Optional[float] = None,
        auth: Auth = None,
    ) -> Response:
        limit = self.max_redirects if max_redirects is None else max_redirects
        current = url
        for hop in range(limit + 1):
            response = self._request_once(current, method, headers, body, allow_insecure, timeout, auth)
            location = response.headers.get("Location") or response.headers.get("location")
            if response.status in REDIRECT_STATUSES and location:
                if hop >= limit:
                    break
                target = urljoin(current, location)
                if urlsplit(target).netloc != urlsplit(current).netloc:
                    # credentials never follow a redirect to another host
                    auth = None
                    headers = _without_authorization(headers)
                current = target
                LOGGER.debug("%s redirected (HTTP %s) to %s", method, response.status, current)
                continue
            return response
        raise TooManyRedirectsError(f"Too many redirects (more than {limit}) for {method} {url}.")

    def _request_once(
        self,
        url: str,
        method: str,
        headers: Optional[Mapping[str, str]],
        body: Optional[bytes],
        allow_insecure: bool,
        timeout: Optional[float],
        auth: Auth,
    ) -> Response:
        sender = self.session or requests
        try:
            raw = sender.request(
                method,
                url,
                headers=dict(headers or {}),
                auth=auth,
                data=body,
                verify=not allow_insecure,
                timeout=self.timeout if timeout is None else timeout,
                allow_redirects=False,
            )
        except requests.Timeout as exc:
            raise RequestTimeoutError(f"{method} {url} timed out.") from exc
        except requests.RequestException as exc:
            raise WebDavError(f"{method} {url} failed: {exc}") from exc
        LOGGER.debug("%s %s -> HTTP %s", method, url, raw.status_code)
        return Response(status=raw.status_code, headers=raw.headers, body=raw.content or b"")


@dataclass
class WebDavClient:
    """File operations against one configured backup directory."""

    config: BackupConfig
    transport: Transport = field(default_factory=Transport)

    def __post_init__(self) -> None:
        self.config = self.config.normalized()

    # ------------------------------------------------------------------
    def file_url(self, filename: str) -> str:
        if not filename or not isinstance(filename, str):
            raise ConfigError("Remote file name must not be empty.")
        if "/" in filename:
            raise ConfigError("Remote file name must not contain '/'.")
        return self.config.dir_url + quote(filename, safe="")

    def _send(self, url: str, method: str, headers: Optional[Dict[str, str]] = None, body: Optional[bytes] = None) -> Response:
        return self.transport.request(
            url,
            method,
            headers=dict(headers or {}),
            body=body,
            allow_insecure=self.config.allow_insecure,
            max_redirects=self.config.max_redirects,
            timeout=self.config.timeout,
            auth=basic_auth(self.config.username, self.config.password),
        )

    def _propfind(self) -> Response:
        return self._send(
            self.config.dir_url,
            "PROPFIND",
            headers={"Depth": "0", "Content-Type": "text/xml; charset=utf-8"},
            body=PROPFIND_BODY,
        )

    # ------------------------------------------------------------------
    def ensure_dir(self) -> None:
        """Make sure the backup directory exists; safe to call before every operation."""

        response = self._propfind()
        if response.status == 404:
            LOGGER.info("Backup directory %s is missing, creating it.", self.config.dir_url)
            created = self._send(self.config.dir_url, "MKCOL")
            if created.status not in {201, 405}:
                raise DirectoryUnavailableError(
                    created.status, f"Cannot create backup directory (HTTP {created.status})."
                )
            response = self._propfind()
            if response.status not in {200, 207}:
                raise DirectoryUnavailableError(response.status)
            return
        if response.status in {401, 403}:
            raise AuthFailedError("WebDAV authentication failed (check username, password and permissions).")
        if response.status not in {200, 207}:
            raise DirectoryUnavailableError(response.status)

    def put_file(self, filename: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        response = self._send(
            self.file_url(filename),
            "PUT",
            headers={"Content-Type": content_type, "Content-Length": str(len(data))},
            body=data,
        )
        if response.ok:
            LOGGER.debug("Uploaded '%s' (%d bytes).", filename, len(data))
            return
        if response.status in {401, 403}:
            raise AuthFailedError(f"WebDAV authentication failed while uploading '{filename}'.")
        raise HttpStatusError(response.status, f"Uploading '{filename}' failed (HTTP {response.status}).")

    def get_file(self, filename: str) -> bytes:
        response = self._send(self.file_url(filename), "GET")
        if response.ok:
            return response.body
        if response.status == 404:
            raise NotFoundError(f"Remote file '{filename}' does not exist.")
        if response.status in {401, 403}:
            raise AuthFailedError(f"WebDAV authentication failed while downloading '{filename}'.")
        raise HttpStatusError(response.status, f"Downloading '{filename}' failed (HTTP {response.status}).")

    def delete_file(self, filename: str) -> None:
        response = self._send(self.file_url(filename), "DELETE")
        if response.status == 404:
            return
        if not response.ok:
            raise HttpStatusError(response.status, f"Deleting '{filename}' failed (HTTP {response.status}).")
        LOGGER.debug("Deleted remote file '%s'.", filename)


__all__ = [
    "AuthFailedError",
    "DirectoryUnavailableError",
    "HttpStatusError",
    "NotFoundError",
    "RequestTimeoutError",
    "Response",
    "TooManyRedirectsError",
    "Transport",
    "WebDavClient",
    "WebDavError",
    "basic_auth",
]
