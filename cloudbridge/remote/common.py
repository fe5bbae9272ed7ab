"""Data structures and HTTP plumbing used by all remote repository implementations."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Dict, Generic, List, Optional, TypeVar

import requests

from cloudbridge.config import HttpConfig
from cloudbridge.logger import elapsed_millis, log, summarize

T = TypeVar("T")


class RemoteError(Exception):
    """Base class of errors raised while talking to a remote repository."""


class TransientNetworkError(RemoteError):
    """
    Raised when a request could not be completed, but may succeed if retried.

    This covers connection failures, timeouts, rate limiting and server errors.
    """


class UnauthorizedError(RemoteError):
    """Raised when the remote side rejects the credentials of the session."""


class NotImplementedCapabilityError(RemoteError, NotImplementedError):
    """Raised when a provider has no way of performing the requested operation."""


@dataclass
class RemoteResult(Generic[T]):
    """
    Uniform outcome of a remote operation.

    Failures reported by the remote side (e.g. a name conflict) are returned rather than
    raised, with a description of what went wrong.
    """

    success: bool
    payload: Optional[T] = None
    error: Optional[str] = None

    @staticmethod
    def ok(payload: Any = None) -> RemoteResult:
        return RemoteResult(success=True, payload=payload)

    @staticmethod
    def failed(error: str) -> RemoteResult:
        return RemoteResult(success=False, error=error)


@dataclass
class RemoteEntry:
    """Metadata of a remote file or folder, with the modification time in seconds."""

    path: str
    is_directory: bool
    size: int = 0
    modified: float = 0.0
    public_link: Optional[str] = None

    @property
    def name(self) -> str:
        return self.path.rstrip("/").rsplit("/", 1)[-1]


@dataclass
class FolderListing:
    """Folder metadata along with (a page of) its entries."""

    folder: RemoteEntry
    entries: List[RemoteEntry] = field(default_factory=list)
    total: Optional[int] = None


@dataclass
class AccountInfo:
    """Storage quota of the account."""

    total_bytes: int
    used_bytes: int

    @property
    def free_bytes(self) -> int:
        return max(0, self.total_bytes - self.used_bytes)


@dataclass
class PublicLink:
    """Public link to a shared item."""

    url: str
    kind: str = "short"


@dataclass
class ContentLocation:
    """
    Transient address from which the contents of a file can be fetched.

    These addresses expire after a while, so they must be resolved again instead of
    being kept around.
    """

    url: str
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class UploadTarget:
    """Transient address that accepts the contents of a file."""

    url: str
    method: str = "PUT"
    headers: Dict[str, str] = field(default_factory=dict)


class Transport:
    """
    HTTP requests against the API of a provider with uniform error handling.

    Connection level failures and retryable status codes raise TransientNetworkError,
    rejected credentials raise UnauthorizedError. All other responses are returned as-is
    for the provider to interpret.
    """

    TRANSIENT_STATUS_CODES = (429, 500, 502, 503, 504)

    def __init__(self, config: HttpConfig, session: Optional[requests.Session] = None):
        """Instantiate a transport with a session created from the configuration."""
        self.config = config
        self.session = session if session is not None else config.create_session()

    def url(self, relative: str) -> str:
        """Turn a path relative to the API base URL into an absolute URL."""
        if relative.startswith(("http://", "https://")):
            return relative

        return self.config.base_url.rstrip("/") + "/" + relative.lstrip("/")

    def request(self, method: str, relative: str, **kwargs: Any) -> requests.Response:
        """Perform an HTTP request and map failures onto remote errors."""
        url = self.url(relative)
        kwargs.setdefault("timeout", self.config.timeout)

        t_call = time.time()

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e

        # Explicit check before logging because summarize is relatively slow
        if log.isEnabledFor(logging.DEBUG):
            t_millis = elapsed_millis(t_call, time.time())
            params = summarize(kwargs.get("params") or kwargs.get("json"))
            log.debug(f"http::{method} {url} {params} - {response.status_code} - {t_millis} ms")

        if response.status_code in (401, 403):
            raise UnauthorizedError(f"{method} {url} rejected with {response.status_code}")
        elif response.status_code in self.TRANSIENT_STATUS_CODES:
            raise TransientNetworkError(f"{method} {url} returned {response.status_code}")

        return response

    def request_json(self, method: str, relative: str, **kwargs: Any) -> Any:
        """Perform an HTTP request and decode its JSON response body."""
        response = self.request(method, relative, **kwargs)

        try:
            return response.json()
        except ValueError as e:
            raise TransientNetworkError(f"malformed response from {relative}: {e}") from e
