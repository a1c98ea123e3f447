"""
Transfer error classes.

Provides a single taxonomy for everything that can go wrong while preparing,
uploading or downloading an object. Errors raised by httpx, pydantic and the
filesystem are mapped into this hierarchy at the module boundary so callers
only ever need to catch ``TransferError`` subclasses.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

__all__ = [
    "TransferError",
    "ValidationError",
    "HeaderValidationError",
    "ProtocolError",
    "ConcurrentModificationError",
    "ConfigurationError",
    "TransportError",
    "IntegrityError",
    "UpstreamError",
    "TransferTimeoutError",
]

# Longest response body kept on an error for diagnostics
BODY_SNIPPET_BYTES = 1024


class TransferError(Exception):
    """Base class for all transfer errors."""
    pass


class ValidationError(TransferError):
    """
    A request description or option failed validation.

    Raised when:
    - an interchange request has a bad url, method or header value
    - a descriptor or settings object violates a documented constraint

    ``field`` names the offending field when one can be identified.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class HeaderValidationError(ValidationError):
    """
    Download response metadata headers are missing or malformed.

    All header problems are collected before raising so one failure shows
    the complete picture.
    """

    def __init__(self, errors: List[str], headers: Optional[Mapping[str, str]] = None):
        super().__init__("Errors in the header values: " + ", ".join(errors))
        self.errors = list(errors)
        self.headers = dict(headers or {})


class ProtocolError(TransferError):
    """
    HTTP semantics were violated.

    Raised when:
    - a GET or HEAD request is given a body
    - a body of an unsupported type is supplied
    """
    pass


class ConcurrentModificationError(TransferError):
    """
    The source file changed while it was being digested.

    Raised when size, mtime or inode differ between the stat taken before
    reading and the one taken after, or when the bytes read disagree with
    the size reported by stat.
    """

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(message)
        self.filename = filename


class ConfigurationError(TransferError):
    """
    Options are inconsistent with each other or with protocol limits.

    Raised when:
    - the number of requests differs from the number of parts
    - single part and multipart are both forced
    - a part size or part count is outside the object store limits
    - mutually exclusive constructor options are both supplied
    """
    pass


class TransportError(TransferError):
    """
    The network exchange itself failed (connect, send, receive, hang-up).

    Carries the request that was in flight so it can be diagnosed without
    re-running with extra logging.
    """

    def __init__(self, message: str, *, method: Optional[str] = None, url: Optional[str] = None,
                 headers: Optional[Mapping[str, str]] = None):
        super().__init__(message)
        self.method = method
        self.url = url
        self.headers = dict(headers or {})


class IntegrityError(TransferError):
    """
    Downloaded bytes do not match the expected digests or sizes.

    ``errors`` lists every failed check, not just the first one.
    """

    def __init__(self, errors: List[str], *, expected: Optional[Dict[str, Any]] = None,
                 actual: Optional[Dict[str, Any]] = None):
        super().__init__("Errors in the body: " + ", ".join(errors))
        self.errors = list(errors)
        self.expected = dict(expected or {})
        self.actual = dict(actual or {})


class UpstreamError(TransferError):
    """
    The object store answered with a non-success status.

    ``details`` holds the structured error parsed from the body by the
    signer, when it was able to parse one.
    """

    def __init__(self, message: str, *, method: str, url: str, status_code: int,
                 headers: Optional[Mapping[str, str]] = None, body: bytes = b"",
                 details: Optional[Dict[str, Any]] = None):
        self.method = method
        self.url = url
        self.status_code = status_code
        self.headers = dict(headers or {})
        self.body = body
        self.details = details
        snippet = body[:BODY_SNIPPET_BYTES].decode("utf-8", errors="replace")
        full = f"{message} ({status_code})"
        if snippet:
            full += f": {snippet}"
        super().__init__(full)


class TransferTimeoutError(TransferError):
    """A whole-transfer deadline expired before the operation finished."""
    pass
