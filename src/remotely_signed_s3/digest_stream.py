"""
Streaming digests.

``DigestStream`` is a pass-through async iterator: every chunk pulled from it
is hashed and counted, then handed on unchanged. Chains are built by
wrapping, e.g. ``DigestStream(gunzip(DigestStream(response_bytes)))``, so the
bytes before and after a transform can both be verified without ever
holding the whole stream in memory.
"""
from __future__ import annotations

import base64
import hashlib
import inspect
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Tuple, Union

import aiofiles

__all__ = ["CHUNK_SIZE", "DigestStream", "iter_bytes", "digest_file"]

CHUNK_SIZE = 1024 * 1024  # 1 MiB

_FORMATS = ("hex", "base64")


async def iter_bytes(source: Any, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    """
    Adapt any supported byte source into an async iterator of chunks.

    Accepts async iterables, objects with a ``read()`` method (plain binary
    files or aiofiles handles), and ordinary iterables of bytes. Empty chunks
    are skipped.

    Raises:
        TypeError: If ``source`` is none of the above
    """
    if hasattr(source, "__aiter__"):
        async for chunk in source:
            if chunk:
                yield bytes(chunk)
    elif hasattr(source, "read"):
        while True:
            chunk = source.read(chunk_size)
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                break
            yield bytes(chunk)
    elif hasattr(source, "__iter__") and not isinstance(source, (bytes, bytearray, str)):
        for chunk in source:
            if chunk:
                yield bytes(chunk)
    else:
        raise TypeError(f"Unsupported byte source: {type(source).__name__}")


class DigestStream:
    """
    Hash and count bytes while passing them through unchanged.

    ``hash`` and ``size`` stay ``None`` until the upstream source is
    exhausted; an upstream error propagates and leaves them unset. A
    DigestStream can only be iterated once.

    Args:
        source: Upstream bytes (see iter_bytes for accepted types)
        algorithm: Any hashlib algorithm name
        format: "hex" or "base64" encoding of the final digest
    """

    def __init__(self, source: Any, *, algorithm: str = "sha256", format: str = "hex",
                 chunk_size: int = CHUNK_SIZE) -> None:
        if format not in _FORMATS:
            raise ValueError(f"format must be one of {', '.join(_FORMATS)}, got {format!r}")
        self.algorithm = algorithm
        self.format = format
        self._source = source
        self._chunk_size = chunk_size
        self._hasher = hashlib.new(algorithm)
        self._count = 0
        self._started = False
        self.hash: Optional[str] = None
        self.size: Optional[int] = None

    @property
    def finished(self) -> bool:
        return self.hash is not None

    @property
    def bytes_seen(self) -> int:
        """Running byte count, valid before the stream finishes."""
        return self._count

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._started:
            raise RuntimeError("DigestStream can only be iterated once")
        self._started = True
        return self._pump()

    async def _pump(self) -> AsyncIterator[bytes]:
        async for chunk in iter_bytes(self._source, self._chunk_size):
            self._hasher.update(chunk)
            self._count += len(chunk)
            yield chunk
        self._finish()

    def _finish(self) -> None:
        if self.format == "hex":
            self.hash = self._hasher.hexdigest()
        else:
            self.hash = base64.b64encode(self._hasher.digest()).decode("ascii")
        self.size = self._count


async def digest_file(path: Union[str, Path], *, algorithm: str = "sha256",
                      format: str = "hex") -> Tuple[str, int]:
    """
    Digest a whole file without loading it into memory.

    Returns:
        (digest, size) tuple
    """
    async with aiofiles.open(path, "rb") as f:
        stream = DigestStream(f, algorithm=algorithm, format=format)
        async for _ in stream:
            pass
    return stream.hash, stream.size
