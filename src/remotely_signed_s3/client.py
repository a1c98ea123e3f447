"""
Upload and download executor.

The Client runs the pre-signed requests a signer hands out: it streams each
part of a prepared file to the object store, and streams downloads to disk
while verifying them against the digests stored in the object's metadata.
Nothing here holds credentials; every request arrives already signed.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union
from urllib.parse import quote

import aiofiles
import httpx

from .digest_stream import DigestStream
from .encoding import decompress_stream, parse_encoding
from .errors import (
    ConcurrentModificationError,
    ConfigurationError,
    HeaderValidationError,
    IntegrityError,
    TransferTimeoutError,
    UpstreamError,
    ValidationError,
)
from .interchange import RequestLike, validate, validate_all
from .models import (
    ContentEncoding,
    InterchangeRequest,
    MAX_PART_SIZE,
    MIN_PART_SIZE,
    NO_ETAG,
    PartDescriptor,
    TransferDescriptor,
    parse_model,
)
from .preparer import PathLike, prepare_upload, read_range
from .runner import RunResult, Runner
from .settings import Settings
from .signer import (
    CONTENT_LENGTH_HEADER,
    CONTENT_SHA256_HEADER,
    TRANSFER_LENGTH_HEADER,
    TRANSFER_SHA256_HEADER,
    validate_bucket,
    validate_key,
)

__all__ = ["UploadResult", "DownloadResult", "Client", "object_url", "curl_command"]

ErrorParser = Callable[[bytes], Optional[Dict[str, Any]]]
Output = Union[str, Path, Callable[[], Any]]


@dataclass(frozen=True)
class UploadResult:
    """ETags and responses of an upload, index aligned with its parts."""
    etags: List[str]
    responses: List[RunResult] = field(repr=False)


@dataclass(frozen=True)
class DownloadResult:
    """Verified digests of a completed download."""
    sha256: str
    size: int
    transfer_sha256: str
    transfer_size: int
    content_encoding: ContentEncoding
    status_code: int
    headers: httpx.Headers = field(repr=False)


@dataclass(frozen=True)
class _ExpectedBody:
    content_encoding: ContentEncoding
    content_length: int
    sha256: str
    size: int
    transfer_sha256: str
    transfer_size: int


class Client:
    """
    Execute signed uploads and verified downloads.

    Args:
        runner: Runner to send requests with (not closed by the client)
        runner_options: Keyword arguments for a client-owned Runner
        partsize: Default multipart part size (5 MiB..5 GiB)
        multisize: Default size at which multipart is chosen
        compression: Default content encoding for prepare_upload()
        settings: Defaults for everything above (built-in defaults when omitted)
        logger: Logger for transfer progress

    Raises:
        ConfigurationError: If both runner and runner_options are given
        ValidationError: If partsize is out of range
    """

    def __init__(self, runner: Optional[Runner] = None, runner_options: Optional[Mapping[str, Any]] = None,
                 partsize: Optional[int] = None, multisize: Optional[int] = None,
                 compression: Union[str, ContentEncoding, None] = None,
                 settings: Optional[Settings] = None, logger: Optional[logging.Logger] = None):
        if runner is not None and runner_options is not None:
            raise ConfigurationError("runner and runner_options are mutually exclusive")

        self.settings = settings or Settings()
        self.logger = logger if logger is not None else logging.getLogger(__name__)

        self.partsize = partsize if partsize is not None else self.settings.partsize
        if not MIN_PART_SIZE <= self.partsize <= MAX_PART_SIZE:
            raise ValidationError(
                f"partsize must be between {MIN_PART_SIZE} and {MAX_PART_SIZE} bytes, got {self.partsize}",
                field="partsize",
            )
        self.multisize = multisize if multisize is not None else self.settings.multisize
        self.compression = parse_encoding(compression or self.settings.compression)

        self._owns_runner = runner is None
        if runner is None:
            options: Dict[str, Any] = {"logger": logger} if logger is not None else {}
            options.update(runner_options or {})
            runner = Runner.from_settings(self.settings, **options)
        self.runner = runner

    async def aclose(self) -> None:
        if self._owns_runner:
            await self.runner.aclose()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _with_deadline(self, awaitable: Awaitable[Any], timeout: Optional[float], what: str) -> Any:
        limit = timeout if timeout is not None else self.settings.transfer_timeout_s
        if limit is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, limit)
        except asyncio.TimeoutError as e:
            raise TransferTimeoutError(f"{what} did not finish within {limit}s") from e

    async def prepare_upload(self, filename: PathLike, *, partsize: Optional[int] = None,
                             multisize: Optional[int] = None,
                             compression: Union[str, ContentEncoding, None] = None,
                             force_mp: bool = False, force_sp: bool = False,
                             scratch_file: Optional[PathLike] = None,
                             timeout: Optional[float] = None) -> TransferDescriptor:
        """Prepare ``filename`` for upload using this client's defaults."""
        return await self._with_deadline(
            prepare_upload(
                filename,
                partsize=partsize if partsize is not None else self.partsize,
                multisize=multisize if multisize is not None else self.multisize,
                compression=compression if compression is not None else self.compression,
                force_mp=force_mp,
                force_sp=force_sp,
                scratch_file=scratch_file,
            ),
            timeout,
            f"Preparing {filename}",
        )

    async def run_upload(self, requests: Union[RequestLike, Sequence[RequestLike]],
                         descriptor: Union[TransferDescriptor, Mapping[str, Any]], *,
                         concurrency: int = 1,
                         error_parser: Optional[ErrorParser] = None,
                         timeout: Optional[float] = None) -> UploadResult:
        """
        Upload the parts of a prepared file.

        Args:
            requests: One signed request, or one per part in part order
            descriptor: Output of prepare_upload()
            concurrency: Parts in flight at once
            error_parser: Turns an error body into structured details,
                usually Signer.parse_error_response

        Returns:
            UploadResult with one ETag (or NO_ETAG) per part

        Raises:
            ValidationError: If a request or the descriptor is invalid
            ConfigurationError: If the request count differs from the part count
            UpstreamError: If the object store rejects a part
            TransportError: If a part could not be sent
        """
        descriptor = parse_model(TransferDescriptor, descriptor)
        validated = validate_all(requests)
        parts = descriptor.upload_parts()
        if len(validated) != len(parts):
            raise ConfigurationError(
                f"Number of requests does not match number of upload parts: "
                f"{len(validated)} requests, {len(parts)} parts"
            )
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            raise ValidationError(f"concurrency must be a positive integer, got {concurrency!r}",
                                  field="concurrency")

        return await self._with_deadline(
            self._upload_parts(validated, descriptor, parts, concurrency, error_parser),
            timeout,
            f"Upload of {descriptor.filename}",
        )

    async def _upload_parts(self, requests: List[InterchangeRequest], descriptor: TransferDescriptor,
                            parts: List[PartDescriptor], concurrency: int,
                            error_parser: Optional[ErrorParser]) -> UploadResult:
        if concurrency == 1:
            results = []
            for number, (request, part) in enumerate(zip(requests, parts), start=1):
                results.append(await self._upload_part(number, request, descriptor.filename, part, error_parser))
        else:
            results = await self._upload_concurrently(requests, descriptor, parts, concurrency, error_parser)

        etags = [etag for etag, _ in results]
        responses = [response for _, response in results]
        self.logger.debug(f"Uploaded {len(parts)} part(s) of {descriptor.filename}")
        return UploadResult(etags=etags, responses=responses)

    async def _upload_concurrently(self, requests: List[InterchangeRequest], descriptor: TransferDescriptor,
                                   parts: List[PartDescriptor], concurrency: int,
                                   error_parser: Optional[ErrorParser]) -> List[Any]:
        semaphore = asyncio.Semaphore(concurrency)
        failed = asyncio.Event()

        async def upload(number: int, request: InterchangeRequest, part: PartDescriptor):
            async with semaphore:
                if failed.is_set():
                    return None
                try:
                    return await self._upload_part(number, request, descriptor.filename, part, error_parser)
                except BaseException:
                    failed.set()
                    raise

        tasks = [
            asyncio.ensure_future(upload(number, request, part))
            for number, (request, part) in enumerate(zip(requests, parts), start=1)
        ]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _upload_part(self, number: int, request: InterchangeRequest, filename: str,
                           part: PartDescriptor, error_parser: Optional[ErrorParser]):
        def body():
            return read_range(filename, part.start, part.size)

        self.logger.debug(f"Uploading part {number}: {part.size} bytes at {part.start} of {filename}")
        result = await self.runner.run(request, body)

        if result.status_code >= 300:
            raise UpstreamError(
                f"Failed to run a request {request.normalized_method} {request.url}",
                method=request.normalized_method,
                url=request.url,
                status_code=result.status_code,
                headers=request.headers,
                body=result.body or b"",
                details=self._parse_error(error_parser, result.body),
            )

        if result.request_size is not None and (
                result.request_size != part.size or result.request_hash != part.sha256):
            raise ConcurrentModificationError(
                f"Part {number} of {filename} sent {result.request_hash} ({result.request_size} bytes), "
                f"prepared {part.sha256} ({part.size} bytes)",
                filename=filename,
            )

        etag = (result.headers.get("etag") or "").strip()
        return etag or NO_ETAG, result

    def _parse_error(self, error_parser: Optional[ErrorParser], body: Optional[bytes]) -> Optional[Dict[str, Any]]:
        if error_parser is None or not body:
            return None
        try:
            return error_parser(body)
        except Exception as e:
            self.logger.debug(f"Could not parse error body: {e}")
            return None

    async def run_unverified_request(self, request: RequestLike, body: Any = None) -> RunResult:
        """Run a small buffered request without any verification."""
        return await self.runner.run(request, body, streaming_output=False)

    async def run_download(self, request: RequestLike, output: Output, *,
                           timeout: Optional[float] = None) -> DownloadResult:
        """
        Download an object and verify it against its metadata headers.

        Args:
            request: Signed GET request
            output: Path to write (atomically), or a zero-argument factory
                returning a binary writable that is closed when done

        Returns:
            DownloadResult with the verified digests

        Raises:
            UpstreamError: If the object store answers with status >= 300
            HeaderValidationError: If metadata headers are missing or invalid
            IntegrityError: If the bytes do not match the metadata
        """
        request = validate(request)
        if not isinstance(output, (str, Path)) and not callable(output):
            raise ValidationError(f"Output is not a supported format: {type(output).__name__}", field="output")
        return await self._with_deadline(self._download(request, output), timeout, f"Download of {request.url}")

    async def _download(self, request: InterchangeRequest, output: Output) -> DownloadResult:
        result = await self.runner.run(request, streaming_output=True)
        try:
            if result.status_code >= 300:
                body = b"".join([chunk async for chunk in result.body_stream])
                raise UpstreamError(
                    f"Failed to download {request.normalized_method} {request.url}",
                    method=request.normalized_method,
                    url=request.url,
                    status_code=result.status_code,
                    headers=request.headers,
                    body=body,
                )

            expected = self._expected_body(result.headers)
            pre = DigestStream(result.body_stream)
            post = DigestStream(decompress_stream(pre, expected.content_encoding))
            try:
                if isinstance(output, (str, Path)):
                    await _write_atomically(Path(output), post, lambda: self._verify(expected, pre, post))
                else:
                    await _write_to_sink(output(), post)
                    self._verify(expected, pre, post)
            except IntegrityError as e:
                # A decode failure leaves the body drained but unverified
                if post.finished or not pre.finished:
                    raise
                self._verify(expected, pre, post, e.errors)
                raise
        finally:
            await result.aclose()

        self.logger.debug(
            f"Downloaded {request.url}: {post.hash} ({post.size} bytes, {expected.content_encoding.value})"
        )
        return DownloadResult(
            sha256=post.hash,
            size=post.size,
            transfer_sha256=pre.hash,
            transfer_size=pre.size,
            content_encoding=expected.content_encoding,
            status_code=result.status_code,
            headers=result.headers,
        )

    @staticmethod
    def _expected_body(headers: httpx.Headers) -> _ExpectedBody:
        """Collect every header problem before raising."""
        errors = []

        encoding_value = (headers.get("content-encoding") or ContentEncoding.IDENTITY.value).strip().lower()
        try:
            content_encoding = ContentEncoding(encoding_value)
        except ValueError:
            content_encoding = ContentEncoding.IDENTITY
            errors.append("Content-Encoding is specified with invalid value")

        def required(name: str, label: str) -> Optional[str]:
            value = headers.get(name)
            if not value:
                errors.append(f"{label} is mandatory but absent")
            return value

        def integer(value: Optional[str], label: str) -> int:
            if not value:
                return -1
            digits = value.strip()
            if not (digits.isascii() and digits.isdigit()):
                errors.append(f"{label} is not an integer")
                return -1
            return int(digits, 10)

        content_length = required("content-length", "Content-Length")
        transfer_sha256 = required(TRANSFER_SHA256_HEADER, "Transfer-Sha256")
        sha256 = required(CONTENT_SHA256_HEADER, "Content-Sha256")
        transfer_size = required(TRANSFER_LENGTH_HEADER, "Transfer-Size")
        size = required(CONTENT_LENGTH_HEADER, "Content-Size")

        expected = _ExpectedBody(
            content_encoding=content_encoding,
            content_length=integer(content_length, "Content-Length"),
            sha256=sha256 or "",
            size=integer(size, "Content-Size"),
            transfer_sha256=transfer_sha256 or "",
            transfer_size=integer(transfer_size, "Transfer-Size"),
        )
        if errors:
            raise HeaderValidationError(errors, headers)
        return expected

    @staticmethod
    def _verify(expected: _ExpectedBody, pre: DigestStream, post: DigestStream,
                decode_errors: Sequence[str] = ()) -> None:
        errors = list(decode_errors)
        if pre.hash != expected.transfer_sha256:
            errors.append("Transfer Sha256 mismatch")
        if post.hash != expected.sha256:
            errors.append("Content Sha256 mismatch")
        if pre.size != expected.transfer_size:
            errors.append("Transfer Size mismatch")
        if post.size != expected.size:
            errors.append("Content Size mismatch")
        if pre.size != expected.content_length:
            errors.append("Content-Length header and Transfer-Size do not match")
        if errors:
            raise IntegrityError(
                errors,
                expected={
                    "sha256": expected.sha256, "size": expected.size,
                    "transfer_sha256": expected.transfer_sha256, "transfer_size": expected.transfer_size,
                    "content_length": expected.content_length,
                },
                actual={
                    "sha256": post.hash, "size": post.size,
                    "transfer_sha256": pre.hash, "transfer_size": pre.size,
                },
            )

    async def download_url(self, url: str, output: Output, *, timeout: Optional[float] = None) -> DownloadResult:
        """Download an unsigned (public or pre-signed query string) URL."""
        return await self.run_download({"url": url, "method": "GET", "headers": {}}, output, timeout=timeout)

    async def download_object(self, bucket: str, key: str, output: Output, region: Optional[str] = None, *,
                              timeout: Optional[float] = None) -> DownloadResult:
        """Download a publicly readable object by bucket and key."""
        return await self.download_url(object_url(bucket, key, region or self.settings.region), output,
                                       timeout=timeout)

    def curl_command(self, request: RequestLike,
                     descriptor: Union[TransferDescriptor, Mapping[str, Any], None] = None, *,
                     filename: Optional[PathLike] = None) -> str:
        """See curl_command()."""
        return curl_command(request, descriptor, filename=filename)


def curl_command(request: RequestLike,
                 descriptor: Union[TransferDescriptor, Mapping[str, Any], None] = None, *,
                 filename: Optional[PathLike] = None) -> str:
    """
    Approximate a request as a curl command line, for diagnostics.

    The descriptor's file (or ``filename``) is attached as ``--data-binary``.
    Every argument is shell quoted.
    """
    request = validate(request)
    command = ["curl", "-X", request.normalized_method]
    for name, value in request.headers.items():
        command += ["-H", f"{name}: {value}"]
    command.append(request.url)
    if descriptor is not None:
        filename = parse_model(TransferDescriptor, descriptor).filename
    if filename is not None:
        command += ["--data-binary", f"@{filename}"]
    return " ".join(shlex.quote(str(arg)) for arg in command)


def object_url(bucket: str, key: str, region: str = "us-east-1") -> str:
    """Virtual-hosted style URL of an object."""
    validate_bucket(bucket)
    validate_key(key)
    host = "s3" if region == "us-east-1" else f"s3-{region}"
    return f"https://{bucket}.{host}.amazonaws.com/{quote(key, safe='/')}"


async def _write_atomically(target: Path, chunks: DigestStream, verify: Callable[[], None]) -> None:
    """
    Stream chunks to a temp file beside ``target`` and rename it into place.

    ``verify`` runs after the last byte is written and before the rename;
    the temp file is removed on any failure.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=".rs3.tmp.", dir=target.parent)
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        async with aiofiles.open(temp_path, "wb") as out:
            async for chunk in chunks:
                await out.write(chunk)
            await out.flush()
            os.fsync(out.fileno())
        verify()
        os.replace(temp_path, target)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


async def _write_to_sink(sink: Any, chunks: DigestStream) -> None:
    try:
        async for chunk in chunks:
            written = sink.write(chunk)
            if inspect.isawaitable(written):
                await written
    finally:
        if hasattr(sink, "close"):
            closed = sink.close()
            if inspect.isawaitable(closed):
                await closed
