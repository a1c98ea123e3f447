"""
Operations Facade - Application service layer.

Provides a clean interface between the CLI and the transfer library,
centralizing orchestration (prepare, sign, upload, complete) and policy
decisions while keeping CLI commands thin and testable.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union

from ..client import Client, DownloadResult, UploadResult
from ..errors import ConfigurationError
from ..interchange import RequestLike
from ..models import ContentEncoding, TransferDescriptor
from ..settings import Settings
from ..signer import Signer, validate_bucket, validate_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpsConfig:
    """
    Configuration for Operations facade.

    Centralizes policy decisions like part concurrency and output
    formatting to avoid scattered configuration.
    """
    concurrency: int = 1          # Parts uploaded at once
    json_output: bool = False     # Emit JSON instead of human text
    verbose: bool = False         # Show detailed output
    keep_scratch: bool = False    # Keep compressed scratch files after upload


@dataclass(frozen=True)
class UploadOutcome:
    """Result of a complete upload_file() run."""
    bucket: str
    key: str
    descriptor: TransferDescriptor
    upload: UploadResult
    etag: str
    upload_id: Optional[str] = None


class Operations:
    """
    Application service facade for CLI operations.

    One method per CLI verb plus upload_file(), which drives a full signed
    upload through a Signer. Exceptions bubble up for central mapping in
    mappers.run_and_exit().
    """

    def __init__(self, config: OpsConfig, client: Optional[Client] = None,
                 signer: Optional[Signer] = None, settings: Optional[Settings] = None):
        """
        Initialize Operations facade.

        Args:
            config: Configuration settings
            client: Transfer client (if None, built from settings)
            signer: Trusted signer, required for upload_file()
            settings: Optional settings (if None, loaded from environment)
        """
        self.cfg = config

        if settings is None:
            from ..settings import create_settings_from_env
            settings = create_settings_from_env()
        self.settings = settings

        self._owns_client = client is None
        self.client = client if client is not None else Client(settings=settings)
        self.signer = signer

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def prepare(self, filename: str, *, partsize: Optional[int] = None,
                      multisize: Optional[int] = None,
                      compression: Union[str, ContentEncoding, None] = None,
                      force_mp: bool = False, force_sp: bool = False,
                      scratch_file: Optional[str] = None) -> TransferDescriptor:
        """Digest a file into a TransferDescriptor."""
        return await self.client.prepare_upload(
            filename,
            partsize=partsize,
            multisize=multisize,
            compression=compression,
            force_mp=force_mp,
            force_sp=force_sp,
            scratch_file=scratch_file,
        )

    async def upload(self, requests: Union[RequestLike, Sequence[RequestLike]],
                     descriptor: Union[TransferDescriptor, Mapping[str, Any]]) -> UploadResult:
        """Run already signed upload requests for a prepared file."""
        return await self.client.run_upload(requests, descriptor, concurrency=self.cfg.concurrency)

    async def upload_file(self, bucket: str, key: str, filename: str, *,
                          force_mp: bool = False, force_sp: bool = False) -> UploadOutcome:
        """
        Prepare, sign and upload a file, completing multipart uploads.

        Any failure after a multipart upload was initiated aborts it before
        the error is re-raised, so no orphaned parts are left behind.

        Args:
            bucket: Destination bucket
            key: Destination object key
            filename: Local file to upload
            force_mp: Always use multipart
            force_sp: Always use single part

        Returns:
            UploadOutcome with the descriptor, part results and final ETag

        Raises:
            ConfigurationError: If no signer is configured
        """
        if self.signer is None:
            raise ConfigurationError("A signer is required for upload_file")
        validate_bucket(bucket)
        validate_key(key)

        descriptor = await self.client.prepare_upload(filename, force_mp=force_mp, force_sp=force_sp)
        try:
            if descriptor.is_multipart:
                return await self._upload_multipart(bucket, key, descriptor)
            request = await self.signer.generate_singlepart_request(bucket, key, descriptor)
            upload = await self.client.run_upload(
                request, descriptor, error_parser=self.signer.parse_error_response
            )
            return UploadOutcome(bucket=bucket, key=key, descriptor=descriptor,
                                 upload=upload, etag=upload.etags[0])
        finally:
            self._remove_scratch(filename, descriptor)

    async def _upload_multipart(self, bucket: str, key: str,
                                descriptor: TransferDescriptor) -> UploadOutcome:
        upload_id = await self.signer.initiate_multipart_upload(bucket, key, descriptor)
        logger.debug(f"Initiated multipart upload {upload_id} for {bucket}/{key}")
        try:
            requests = await self.signer.generate_multipart_requests(bucket, key, upload_id, descriptor.parts)
            upload = await self.client.run_upload(
                requests, descriptor,
                concurrency=self.cfg.concurrency,
                error_parser=self.signer.parse_error_response,
            )
            etag = await self.signer.complete_multipart_upload(bucket, key, upload_id, upload.etags)
        except BaseException:
            logger.warning(f"Aborting multipart upload {upload_id} for {bucket}/{key}")
            try:
                await self.signer.abort_multipart_upload(bucket, key, upload_id)
            except Exception as abort_error:
                logger.error(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise
        return UploadOutcome(bucket=bucket, key=key, descriptor=descriptor,
                             upload=upload, etag=etag, upload_id=upload_id)

    def _remove_scratch(self, filename: str, descriptor: TransferDescriptor) -> None:
        if self.cfg.keep_scratch or Path(descriptor.filename) == Path(filename):
            return
        try:
            os.unlink(descriptor.filename)
        except FileNotFoundError:
            pass

    async def download(self, request_or_url: Union[str, RequestLike], output: str) -> DownloadResult:
        """
        Download and verify an object.

        Args:
            request_or_url: Signed request, or a plain URL for public objects
            output: Destination path
        """
        if isinstance(request_or_url, str):
            return await self.client.download_url(request_or_url, output)
        return await self.client.run_download(request_or_url, output)
