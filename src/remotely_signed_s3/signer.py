"""
Signer interface.

The signer is the trusted side: it holds credentials, talks to the object
store's control endpoints (initiate, complete, abort) and turns transfer
descriptors into pre-signed interchange requests. This module defines the
protocol workers program against plus the naming rules and metadata headers
both sides must agree on.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

from .errors import ValidationError
from .models import InterchangeRequest, PartDescriptor, TransferDescriptor

__all__ = [
    "META_PREFIX",
    "CONTENT_SHA256_HEADER",
    "CONTENT_LENGTH_HEADER",
    "TRANSFER_SHA256_HEADER",
    "TRANSFER_LENGTH_HEADER",
    "MAX_METADATA_BYTES",
    "Signer",
    "metadata_headers",
    "validate_bucket",
    "validate_key",
]

META_PREFIX = "x-amz-meta-"
CONTENT_SHA256_HEADER = META_PREFIX + "content-sha256"
CONTENT_LENGTH_HEADER = META_PREFIX + "content-length"
TRANSFER_SHA256_HEADER = META_PREFIX + "transfer-sha256"
TRANSFER_LENGTH_HEADER = META_PREFIX + "transfer-length"

# User metadata budget; prefix, key and value all count, as UTF-8 bytes
MAX_METADATA_BYTES = 2048

_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9-]{2,62}$")
MAX_KEY_LENGTH = 1024


@runtime_checkable
class Signer(Protocol):
    """Protocol for the trusted request-signing side."""

    async def sign(self, bucket: str, key: str, method: str,
                   query: Optional[Mapping[str, str]] = None,
                   headers: Optional[Mapping[str, str]] = None) -> InterchangeRequest:
        """
        Pre-sign an arbitrary request against ``bucket``/``key``.

        Returns:
            The signed request in interchange format
        """
        ...

    async def initiate_multipart_upload(self, bucket: str, key: str,
                                        descriptor: TransferDescriptor) -> str:
        """
        Start a multipart upload.

        The object's metadata headers (see metadata_headers) are attached
        here, since parts carry no metadata.

        Returns:
            The upload id
        """
        ...

    async def generate_singlepart_request(self, bucket: str, key: str,
                                          descriptor: TransferDescriptor) -> InterchangeRequest:
        """Sign a single PUT carrying the whole object and its metadata."""
        ...

    async def generate_multipart_requests(self, bucket: str, key: str, upload_id: str,
                                          parts: List[PartDescriptor]) -> List[InterchangeRequest]:
        """Sign one PUT per part, index aligned with ``parts``."""
        ...

    async def complete_multipart_upload(self, bucket: str, key: str, upload_id: str,
                                        etags: List[str]) -> str:
        """
        Commit an uploaded set of parts.

        Returns:
            ETag of the assembled object
        """
        ...

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Discard a multipart upload and any parts already stored."""
        ...

    def parse_error_response(self, body: bytes) -> Optional[Dict[str, Any]]:
        """
        Parse an object store error body into a structured dict.

        Returns:
            Parsed error (e.g. code and message) or None if unparseable
        """
        ...


def _metadata_value(value: Union[str, int]) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValidationError(
            f"Metadata values must be strings or integers, not {type(value).__name__}", field="metadata"
        )
    return str(value)


def metadata_headers(descriptor: TransferDescriptor,
                     metadata: Optional[Mapping[str, Union[str, int]]] = None) -> Dict[str, str]:
    """
    Build the object metadata headers for an upload.

    Always includes the content and transfer digests and sizes plus
    ``content-encoding``; these are the headers a download is verified
    against. Extra ``metadata`` keys are added under the ``x-amz-meta-``
    prefix and must not carry it already.

    Raises:
        ValidationError: If a key repeats, carries the prefix, has a bad value
            or the metadata exceeds MAX_METADATA_BYTES
    """
    entries: Dict[str, str] = {
        "content-sha256": descriptor.sha256,
        "content-length": str(descriptor.size),
        "transfer-sha256": descriptor.transfer_sha256,
        "transfer-length": str(descriptor.transfer_size),
    }
    for key, value in (metadata or {}).items():
        if key.lower().startswith(META_PREFIX):
            raise ValidationError(f"Metadata keys should not already have {META_PREFIX} prefix: {key}",
                                  field="metadata")
        if key.lower() in entries:
            raise ValidationError(f"Attempting to define {key} in metadata twice", field="metadata")
        entries[key.lower()] = _metadata_value(value)

    total = sum(
        len(META_PREFIX.encode("utf-8")) + len(k.encode("utf-8")) + len(v.encode("utf-8"))
        for k, v in entries.items()
    )
    if total > MAX_METADATA_BYTES:
        raise ValidationError(f"Metadata exceeds {MAX_METADATA_BYTES} byte limit ({total} bytes)",
                              field="metadata")

    headers = {META_PREFIX + k: v for k, v in entries.items()}
    headers["content-encoding"] = descriptor.content_encoding.value
    return headers


def validate_bucket(name: str) -> str:
    """
    Raises:
        ValidationError: If ``name`` is not a valid bucket name
    """
    if not isinstance(name, str) or not _BUCKET_RE.match(name):
        raise ValidationError(f"Invalid bucket name: {name!r}", field="bucket")
    return name


def validate_key(key: str) -> str:
    """
    Raises:
        ValidationError: If ``key`` is empty or longer than 1024 characters
    """
    if not isinstance(key, str) or not 1 <= len(key) <= MAX_KEY_LENGTH:
        raise ValidationError(f"Object keys must be 1 to {MAX_KEY_LENGTH} characters", field="key")
    return key
