"""
Streaming content encodings.

Async generators that compress or decompress a byte stream chunk by chunk
for the supported ``Content-Encoding`` values. gzip uses zlib with a gzip
wrapper; zstd uses zstandard. identity is a pass-through.
"""
from __future__ import annotations

import zlib
from typing import Any, AsyncIterator, Optional, Tuple, Union

import zstandard as zstd

from .digest_stream import iter_bytes
from .errors import IntegrityError, ValidationError
from .models import ContentEncoding

__all__ = [
    "GZIP_LEVEL",
    "ZSTD_LEVEL",
    "parse_encoding",
    "compress_stream",
    "decompress_stream",
]

GZIP_LEVEL = 6
ZSTD_LEVEL = 3

# wbits for zlib with a gzip header and trailer
_GZIP_WBITS = 16 + zlib.MAX_WBITS


def parse_encoding(value: Union[str, ContentEncoding, None]) -> ContentEncoding:
    """
    Normalize a Content-Encoding value.

    ``None`` and the empty string mean identity.

    Raises:
        ValidationError: If the encoding is not supported
    """
    if isinstance(value, ContentEncoding):
        return value
    if not value:
        return ContentEncoding.IDENTITY
    try:
        return ContentEncoding(value.strip().lower())
    except ValueError:
        valid = ", ".join(e.value for e in ContentEncoding)
        raise ValidationError(
            f"Unsupported content encoding: {value!r}. Expected one of: {valid}",
            field="content-encoding",
        )


def _compressor(encoding: ContentEncoding) -> Any:
    if encoding == ContentEncoding.GZIP:
        return zlib.compressobj(GZIP_LEVEL, zlib.DEFLATED, _GZIP_WBITS)
    if encoding == ContentEncoding.ZSTD:
        return zstd.ZstdCompressor(level=ZSTD_LEVEL).compressobj()
    return None


def _decompressor(encoding: ContentEncoding) -> Any:
    if encoding == ContentEncoding.GZIP:
        return zlib.decompressobj(_GZIP_WBITS)
    if encoding == ContentEncoding.ZSTD:
        return zstd.ZstdDecompressor().decompressobj()
    return None


async def compress_stream(source: Any, encoding: Union[str, ContentEncoding]) -> AsyncIterator[bytes]:
    """Yield ``source`` compressed with ``encoding``."""
    encoding = parse_encoding(encoding)
    compressor = _compressor(encoding)
    async for chunk in iter_bytes(source):
        if compressor is None:
            yield chunk
            continue
        out = compressor.compress(chunk)
        if out:
            yield out
    if compressor is not None:
        tail = compressor.flush()
        if tail:
            yield tail


def _gunzip(decompressor: Any, data: bytes) -> Tuple[Any, bytes]:
    """Decode ``data``, starting a fresh decompressor for each new gzip member."""
    out = []
    while data:
        if decompressor.eof:
            decompressor = zlib.decompressobj(_GZIP_WBITS)
        out.append(decompressor.decompress(data))
        data = decompressor.unused_data if decompressor.eof else b""
    return decompressor, b"".join(out)


async def decompress_stream(source: Any, encoding: Union[str, ContentEncoding]) -> AsyncIterator[bytes]:
    """
    Yield ``source`` decoded from ``encoding``.

    gzip input may hold several concatenated members. After a decode failure
    the rest of ``source`` is still read, so digests taken upstream finish
    before the error is raised.

    Raises:
        IntegrityError: If the compressed stream is corrupt
    """
    encoding = parse_encoding(encoding)
    decompressor = _decompressor(encoding)
    failure: Optional[Exception] = None
    async for chunk in iter_bytes(source):
        if decompressor is None:
            yield chunk
            continue
        if failure is not None:
            continue
        try:
            if encoding == ContentEncoding.GZIP:
                decompressor, out = _gunzip(decompressor, chunk)
            else:
                out = decompressor.decompress(chunk)
        except (zlib.error, zstd.ZstdError) as e:
            failure = e
            continue
        if out:
            yield out
    if failure is not None:
        raise IntegrityError([f"Invalid {encoding.value} stream: {failure}"]) from failure
    if encoding == ContentEncoding.GZIP:
        tail = decompressor.flush()
        if tail:
            yield tail
