"""
Data models for transfers.

These Pydantic models describe the values that flow between the signer, the
preparer and the executor: interchange requests, part descriptors and
transfer descriptors. They are value objects: validated once at construction
and never mutated afterwards. Field aliases follow the camelCase JSON shape
that controllers and workers exchange.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

__all__ = [
    "KB", "MB", "GB", "TB",
    "MIN_PART_SIZE", "MAX_PART_SIZE", "MAX_PARTS", "MAX_OBJECT_SIZE",
    "DEFAULT_PARTSIZE", "DEFAULT_MULTISIZE", "NO_ETAG",
    "HTTP_METHODS", "ContentEncoding",
    "InterchangeRequest", "PartDescriptor", "TransferDescriptor",
    "parse_model",
]

KB = 1024
MB = KB * 1024
GB = MB * 1024
TB = GB * 1024

# Object store limits for multipart uploads
MIN_PART_SIZE = 5 * MB
MAX_PART_SIZE = 5 * GB
MAX_PARTS = 10_000
MAX_OBJECT_SIZE = 5 * TB

DEFAULT_PARTSIZE = 25 * MB
DEFAULT_MULTISIZE = 100 * MB

# Recorded in place of a missing ETag response header
NO_ETAG = "NOETAG"

# https://developer.mozilla.org/en-US/docs/Web/HTTP/Methods
HTTP_METHODS = frozenset({
    "GET", "HEAD", "PUT", "POST", "PATCH", "DELETE", "OPTIONS", "TRACE", "CONNECT",
})

_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_URL_RE = re.compile(r"^https?:")

M = TypeVar("M", bound=BaseModel)


class ContentEncoding(str, Enum):
    """Reversible transforms applied to bytes in transit."""
    IDENTITY = "identity"
    GZIP = "gzip"
    ZSTD = "zstd"


class InterchangeRequest(BaseModel):
    """
    Language-agnostic description of one HTTP request, without its body.

    Produced by the signer and consumed by the runner. ``method`` is kept as
    given; ``normalized_method`` is the upper-cased form used on the wire.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    url: StrictStr = Field(..., description="Absolute http(s) URL")
    method: StrictStr = Field(..., description="HTTP verb, any case")
    headers: Dict[StrictStr, StrictStr] = Field(..., description="Flat header mapping")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not _URL_RE.match(v):
            raise ValueError(f"url must start with http: or https:, got {v!r}")
        return v

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if v.upper() not in HTTP_METHODS:
            raise ValueError(f"method must be one of {', '.join(sorted(HTTP_METHODS))}, got {v!r}")
        return v

    @property
    def normalized_method(self) -> str:
        return self.method.upper()

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "method": self.method, "headers": dict(self.headers)}


class PartDescriptor(BaseModel):
    """One contiguous byte range of a multipart transfer."""
    model_config = ConfigDict(frozen=True)

    sha256: str = Field(..., description="Hex SHA256 of this part's bytes")
    size: int = Field(..., ge=0, le=MAX_PART_SIZE, description="Part size in bytes")
    start: int = Field(..., ge=0, description="Byte offset within the transfer file")

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str) -> str:
        if not _SHA256_RE.match(v):
            raise ValueError("sha256 must be 64 hex chars")
        return v

    @property
    def end(self) -> int:
        """Offset one past the last byte of this part."""
        return self.start + self.size


class TransferDescriptor(BaseModel):
    """
    Everything needed to upload a prepared file and verify it remotely.

    ``sha256``/``size`` describe the logical (uncompressed) content;
    ``transfer_sha256``/``transfer_size`` describe the bytes on the wire.
    They are equal when ``content_encoding`` is identity. ``parts`` is only
    present for multipart transfers; list position + 1 is the remote part
    number.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    filename: str = Field(..., description="File holding the bytes to transfer")
    sha256: str = Field(..., description="Hex SHA256 of the logical content")
    size: int = Field(..., ge=0, le=MAX_OBJECT_SIZE, description="Logical size in bytes")
    transfer_sha256: str = Field(..., alias="transferSha256", description="Hex SHA256 on the wire")
    transfer_size: int = Field(..., ge=0, le=MAX_OBJECT_SIZE, alias="transferSize",
                               description="Size on the wire in bytes")
    content_encoding: ContentEncoding = Field(default=ContentEncoding.IDENTITY, alias="contentEncoding")
    parts: Optional[List[PartDescriptor]] = Field(default=None, description="Multipart layout")

    @field_validator("sha256", "transfer_sha256")
    @classmethod
    def validate_digest(cls, v: str) -> str:
        if not _SHA256_RE.match(v):
            raise ValueError("sha256 must be 64 hex chars")
        return v

    @model_validator(mode="after")
    def validate_transfer(self) -> TransferDescriptor:
        if self.content_encoding == ContentEncoding.IDENTITY:
            if self.transfer_sha256 != self.sha256:
                raise ValueError("transferSha256 must equal sha256 when content encoding is identity")
            if self.transfer_size != self.size:
                raise ValueError("transferSize must equal size when content encoding is identity")
        if self.parts is not None:
            check_part_layout(self.parts, self.transfer_size)
        return self

    @property
    def is_multipart(self) -> bool:
        return self.parts is not None

    def upload_parts(self) -> List[PartDescriptor]:
        """Parts to send; a single part covering the whole file when not multipart."""
        if self.parts is not None:
            return list(self.parts)
        return [PartDescriptor(sha256=self.transfer_sha256, size=self.transfer_size, start=0)]

    def to_dict(self) -> Dict[str, Any]:
        """camelCase JSON-ready form, matching what controllers expect."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def check_part_layout(parts: List[PartDescriptor], total_size: int) -> None:
    """
    Validate a multipart layout against object store rules.

    There must be 2 to MAX_PARTS parts, contiguous from offset 0. Every part
    but the last must have the same size within [MIN_PART_SIZE, MAX_PART_SIZE],
    the last part must be non-empty and no larger than the others, and the
    sizes must add up to ``total_size``.

    Raises:
        ValueError: If any rule is violated
    """
    if len(parts) < 2:
        raise ValueError(f"a multipart layout needs at least 2 parts, got {len(parts)}")
    if len(parts) > MAX_PARTS:
        raise ValueError(f"at most {MAX_PARTS} parts are allowed, got {len(parts)}")

    partsize = parts[0].size
    offset = 0
    for number, part in enumerate(parts, start=1):
        if part.start != offset:
            raise ValueError(f"part {number} starts at {part.start}, expected {offset}")
        last = number == len(parts)
        if not last:
            if part.size != partsize:
                raise ValueError(f"part {number} has size {part.size}, expected {partsize}")
            if part.size < MIN_PART_SIZE:
                raise ValueError(f"part {number}/{len(parts)} must be at least {MIN_PART_SIZE} bytes, except last")
        elif part.size == 0 or part.size > partsize:
            raise ValueError(f"final part has size {part.size}, expected 1..{partsize}")
        offset += part.size

    if offset != total_size:
        raise ValueError(f"parts cover {offset} bytes but transfer size is {total_size}")


def parse_model(model_cls: Type[M], data: Any) -> M:
    """
    Build ``model_cls`` from ``data``, mapping pydantic errors into ours.

    Instances of ``model_cls`` are returned as-is. The first pydantic error
    location becomes ``ValidationError.field`` (dotted, e.g. ``headers.etag``).

    Raises:
        ValidationError: If ``data`` does not validate
    """
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        errors = e.errors()
        field = ".".join(str(p) for p in errors[0]["loc"]) if errors and errors[0]["loc"] else None
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or model_cls.__name__}: {err['msg']}" for err in errors
        )
        raise ValidationError(f"Invalid {model_cls.__name__}: {messages}", field=field) from e
