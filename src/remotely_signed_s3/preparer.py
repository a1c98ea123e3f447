"""
Transfer preparation.

Digests a local file (optionally compressing it first) and produces the
TransferDescriptor a signer needs to issue upload requests. Files are
streamed, never loaded whole, and the file's identity (size, mtime, inode)
is re-checked after reading so a file that changes underneath us is
reported instead of silently uploaded with a stale digest.
"""
from __future__ import annotations

import hashlib
import logging
import math
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import aiofiles
import aiofiles.os

from .digest_stream import CHUNK_SIZE, DigestStream
from .encoding import compress_stream, parse_encoding
from .errors import ConcurrentModificationError, ConfigurationError, ValidationError
from .models import (
    ContentEncoding,
    DEFAULT_MULTISIZE,
    DEFAULT_PARTSIZE,
    MAX_OBJECT_SIZE,
    MAX_PART_SIZE,
    MAX_PARTS,
    MIN_PART_SIZE,
    PartDescriptor,
    TransferDescriptor,
    parse_model,
)

__all__ = [
    "FileIdentity",
    "CompressionResult",
    "read_range",
    "prepare_singlepart",
    "prepare_multipart",
    "use_multipart",
    "compress_file",
    "prepare_upload",
]

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class FileIdentity:
    """The parts of stat() that must not change while a file is prepared."""
    size: int
    mtime_ns: int
    inode: int

    @classmethod
    def from_stat(cls, st: os.stat_result) -> FileIdentity:
        return cls(size=st.st_size, mtime_ns=st.st_mtime_ns, inode=st.st_ino)


@dataclass(frozen=True)
class CompressionResult:
    """Digests of a file before (content) and after (transfer) compression."""
    sha256: str
    size: int
    transfer_sha256: str
    transfer_size: int


async def _identity(filename: PathLike) -> FileIdentity:
    return FileIdentity.from_stat(await aiofiles.os.stat(filename))


def _check_unchanged(filename: PathLike, before: FileIdentity, after: FileIdentity, counted: int) -> None:
    if counted != before.size:
        raise ConcurrentModificationError(
            f"File has a different number of bytes than was hashed: {filename} "
            f"(stat {before.size}, read {counted})", filename=str(filename)
        )
    if after.size != before.size:
        raise ConcurrentModificationError(
            f"File changed size during preparation: {filename}", filename=str(filename)
        )
    if after.mtime_ns != before.mtime_ns:
        raise ConcurrentModificationError(
            f"File was modified during preparation: {filename}", filename=str(filename)
        )
    if after.inode != before.inode:
        raise ConcurrentModificationError(
            f"File has changed inodes: {filename}", filename=str(filename)
        )


async def read_range(filename: PathLike, start: int, size: int,
                     chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    """
    Yield at most ``size`` bytes of ``filename`` beginning at ``start``.

    Stops early at end of file; callers compare the byte count to detect
    truncation.
    """
    async with aiofiles.open(filename, "rb") as f:
        await f.seek(start)
        remaining = size
        while remaining > 0:
            chunk = await f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


async def prepare_singlepart(filename: PathLike) -> TransferDescriptor:
    """
    Digest a whole file for a single part upload.

    Raises:
        ConfigurationError: If the file is larger than one part may be
        ConcurrentModificationError: If the file changed while being read
    """
    before = await _identity(filename)
    if before.size > MAX_PART_SIZE:
        raise ConfigurationError(
            f"Single part uploads are limited to {MAX_PART_SIZE} bytes, {filename} has {before.size}"
        )
    stream = DigestStream(read_range(filename, 0, before.size))
    async for _ in stream:
        pass
    # Bytes appended after the first stat are not read; the size check catches them
    after = await _identity(filename)
    _check_unchanged(filename, before, after, stream.size)

    logger.debug(f"Prepared single part {filename}: {stream.hash} ({stream.size} bytes)")
    return parse_model(TransferDescriptor, {
        "filename": str(filename),
        "sha256": stream.hash,
        "size": stream.size,
        "transfer_sha256": stream.hash,
        "transfer_size": stream.size,
    })


def _check_partsize(partsize: int) -> None:
    if not MIN_PART_SIZE <= partsize <= MAX_PART_SIZE:
        raise ConfigurationError(
            f"partsize must be between {MIN_PART_SIZE} and {MAX_PART_SIZE} bytes, got {partsize}"
        )


async def prepare_multipart(filename: PathLike, partsize: int = DEFAULT_PARTSIZE) -> TransferDescriptor:
    """
    Digest a file part by part for a multipart upload.

    Each part is read exactly once, updating both its own digest and the
    whole-file digest.

    Raises:
        ConfigurationError: If partsize is out of range or the file would
            have fewer than 2 or more than 10,000 parts
        ConcurrentModificationError: If the file changed while being read
    """
    _check_partsize(partsize)

    before = await _identity(filename)
    part_count = math.ceil(before.size / partsize)
    if part_count < 2:
        raise ConfigurationError(
            f"Multipart upload must have at least 2 parts, {before.size} bytes at partsize {partsize} gives {part_count}"
        )
    if part_count > MAX_PARTS:
        raise ConfigurationError(
            f"Multipart upload must have at most {MAX_PARTS} parts, got {part_count}; use a larger partsize"
        )

    whole = hashlib.sha256()
    counted = 0
    parts = []
    for index in range(part_count):
        start = index * partsize
        stream = DigestStream(read_range(filename, start, partsize))
        async for chunk in stream:
            whole.update(chunk)
        counted += stream.size

        final = index == part_count - 1
        if not final and stream.size != partsize:
            raise ConcurrentModificationError(
                f"All parts before last part must be exactly requested size: part {index + 1} "
                f"of {filename} has {stream.size} bytes", filename=str(filename)
            )
        if final and not 0 < stream.size <= partsize:
            raise ConcurrentModificationError(
                f"Final part of {filename} has {stream.size} bytes, expected 1..{partsize}",
                filename=str(filename)
            )
        parts.append(PartDescriptor(sha256=stream.hash, size=stream.size, start=start))

    after = await _identity(filename)
    _check_unchanged(filename, before, after, counted)

    sha256 = whole.hexdigest()
    logger.debug(f"Prepared {part_count} parts of {filename}: {sha256} ({counted} bytes)")
    return parse_model(TransferDescriptor, {
        "filename": str(filename),
        "sha256": sha256,
        "size": counted,
        "transfer_sha256": sha256,
        "transfer_size": counted,
        "parts": parts,
    })


def use_multipart(size: int, multisize: int = DEFAULT_MULTISIZE,
                  force_mp: bool = False, force_sp: bool = False) -> bool:
    """
    Decide between single part and multipart upload.

    Raises:
        ValidationError: If size is 0 (empty files are not uploaded)
        ConfigurationError: If both modes are forced
    """
    if not size:
        raise ValidationError("You must provide a non-zero size", field="size")
    if force_mp and force_sp:
        raise ConfigurationError("Forcing singlepart and multipart is mutually exclusive")
    if force_mp:
        return True
    if force_sp:
        return False
    return size >= multisize


async def compress_file(input: PathLike, output: PathLike,
                        encoding: Union[str, ContentEncoding]) -> CompressionResult:
    """
    Compress ``input`` into ``output``, digesting both sides.

    Pipeline: file -> DigestStream (content) -> compressor -> DigestStream
    (transfer) -> output file.

    Raises:
        ConcurrentModificationError: If ``input`` changed while being read
    """
    encoding = parse_encoding(encoding)
    before = await _identity(input)
    pre = DigestStream(read_range(input, 0, before.size))
    post = DigestStream(compress_stream(pre, encoding))
    async with aiofiles.open(output, "wb") as out:
        async for chunk in post:
            await out.write(chunk)
    after = await _identity(input)
    _check_unchanged(input, before, after, pre.size)

    logger.debug(
        f"Compressed {input} with {encoding.value}: {pre.size} -> {post.size} bytes"
    )
    return CompressionResult(
        sha256=pre.hash,
        size=pre.size,
        transfer_sha256=post.hash,
        transfer_size=post.size,
    )


async def prepare_upload(filename: PathLike, *,
                         partsize: int = DEFAULT_PARTSIZE,
                         multisize: int = DEFAULT_MULTISIZE,
                         compression: Union[str, ContentEncoding] = ContentEncoding.IDENTITY,
                         force_mp: bool = False,
                         force_sp: bool = False,
                         scratch_file: Optional[PathLike] = None) -> TransferDescriptor:
    """
    Prepare a file for upload.

    Without compression the descriptor points at ``filename``. With
    compression the file is first compressed into ``scratch_file`` (a new
    temporary file when omitted; the caller removes it after uploading) and
    the descriptor points there: ``sha256``/``size`` describe the original
    content and ``transfer_*`` the compressed bytes that get uploaded.

    Args:
        filename: File to upload
        partsize: Multipart part size in bytes
        multisize: Size at which multipart is chosen automatically
        compression: identity, gzip or zstd
        force_mp: Always use multipart
        force_sp: Always use single part
        scratch_file: Where compressed bytes are written

    Returns:
        TransferDescriptor ready for a signer

    Raises:
        ValidationError: If the file is empty or the encoding unknown
        ConfigurationError: If options conflict or the part layout is impossible
        ConcurrentModificationError: If the file changed while being read
    """
    encoding = parse_encoding(compression)
    if force_mp and force_sp:
        raise ConfigurationError("Forcing singlepart and multipart is mutually exclusive")

    size = (await _identity(filename)).size
    if size > MAX_OBJECT_SIZE:
        raise ConfigurationError(f"File {filename} is {size} bytes, larger than {MAX_OBJECT_SIZE}")
    if not size:
        raise ValidationError(f"Cannot upload empty file {filename}", field="size")

    if encoding == ContentEncoding.IDENTITY:
        if use_multipart(size, multisize, force_mp, force_sp):
            return await prepare_multipart(filename, partsize)
        return await prepare_singlepart(filename)

    owns_scratch = scratch_file is None
    if owns_scratch:
        fd, scratch_file = tempfile.mkstemp(prefix=".rs3.", suffix=f".{encoding.value}")
        os.close(fd)

    try:
        compressed = await compress_file(filename, scratch_file, encoding)
        if use_multipart(compressed.transfer_size, multisize, force_mp, force_sp):
            prepared = await prepare_multipart(scratch_file, partsize)
        else:
            prepared = await prepare_singlepart(scratch_file)

        if prepared.sha256 != compressed.transfer_sha256 or prepared.size != compressed.transfer_size:
            raise ConcurrentModificationError(
                f"Scratch file {scratch_file} changed between compression and digesting",
                filename=str(scratch_file),
            )

        return parse_model(TransferDescriptor, {
            "filename": str(scratch_file),
            "sha256": compressed.sha256,
            "size": compressed.size,
            "transfer_sha256": prepared.sha256,
            "transfer_size": prepared.size,
            "content_encoding": encoding,
            "parts": prepared.parts,
        })
    except BaseException:
        if owns_scratch:
            Path(scratch_file).unlink(missing_ok=True)
        raise
