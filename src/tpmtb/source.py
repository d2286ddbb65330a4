"""
Certificate source resolution.

A source is either an ``https://`` URL fetched over the network or an
absolute ``file://`` URI read from disk. Any other scheme is rejected.
"""

import logging
import os
import threading
from typing import Optional
from urllib.parse import unquote, urlsplit

import requests
from cryptography import x509

from .errors import CancelledOrTimedOut, FetchError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


def check_cancelled(cancel: Optional[threading.Event], what: str = "operation") -> None:
    """Raise CancelledOrTimedOut if the cancel event has been set."""
    if cancel is not None and cancel.is_set():
        raise CancelledOrTimedOut(f"{what} cancelled")


class HTTPSResolver:
    """Fetches certificate bytes over HTTPS."""

    def __init__(self, uri: str, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.uri = uri
        self.timeout = timeout
        self.session = session

    def fetch(self, cancel: Optional[threading.Event] = None) -> bytes:
        check_cancelled(cancel, f"download of {self.uri}")
        getter = self.session.get if self.session is not None else requests.get
        logger.debug("Fetching %s", self.uri)
        try:
            response = getter(self.uri, timeout=self.timeout)
        except requests.Timeout as e:
            raise CancelledOrTimedOut(f"timed out downloading from {self.uri}", url=self.uri) from e
        except requests.RequestException as e:
            raise FetchError(f"failed to download from {self.uri}: {e}", url=self.uri) from e
        if not 200 <= response.status_code < 300:
            raise FetchError(
                f"failed to download from {self.uri}: HTTP {response.status_code}",
                url=self.uri,
                status=response.status_code,
            )
        check_cancelled(cancel, f"download of {self.uri}")
        return response.content


class FileResolver:
    """Reads certificate bytes from an absolute ``file://`` URI."""

    def __init__(self, uri: str):
        self.uri = uri

    @property
    def path(self) -> str:
        return unquote(self.uri[len("file://"):])

    def fetch(self, cancel: Optional[threading.Event] = None) -> bytes:
        check_cancelled(cancel, f"read of {self.uri}")
        path = self.path
        if not os.path.isabs(path):
            raise FetchError(
                f"invalid file URI '{self.uri}': relative paths are not supported",
                url=self.uri,
            )
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise FetchError(f"failed to read file {path}: {e}", url=self.uri) from e


def new_resolver(uri: str, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
    """Return the resolver matching the URI scheme."""
    scheme = urlsplit(uri).scheme
    if scheme == "https":
        return HTTPSResolver(uri, timeout=timeout, session=session)
    if scheme == "file":
        return FileResolver(uri)
    raise FetchError(
        f"unsupported URI scheme '{scheme}': must be 'https' or 'file'", url=uri
    )


def parse_certificate(data: bytes) -> x509.Certificate:
    """Decode a certificate, trying DER first and PEM second."""
    try:
        return x509.load_der_x509_certificate(data)
    except ValueError:
        pass
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        raise FetchError(f"failed to parse certificate (tried DER and PEM): {e}") from e


def fetch_certificate(uri: str, timeout: float = DEFAULT_TIMEOUT,
                      session: Optional[requests.Session] = None,
                      cancel: Optional[threading.Event] = None) -> x509.Certificate:
    """Fetch and decode the certificate at uri."""
    data = new_resolver(uri, timeout=timeout, session=session).fetch(cancel)
    try:
        return parse_certificate(data)
    except FetchError as e:
        raise FetchError(f"{uri}: {e}", url=uri) from e
