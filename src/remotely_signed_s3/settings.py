"""
Settings and configuration for remotely-signed-s3.

Centralizes configuration values and provides validation with fail-fast behavior.
Loads settings from environment variables when a client is constructed.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .models import (
    ContentEncoding,
    DEFAULT_MULTISIZE,
    DEFAULT_PARTSIZE,
    MAX_PART_SIZE,
    MIN_PART_SIZE,
)

__all__ = ["Settings", "create_settings_from_env"]


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for runners and clients.

    Runner Settings:
        max_retries: Attempts per request, 0-10 (0 behaves like 1)
        retry_delay_factor: Base backoff in milliseconds, at least 100
        retry_delay_jitter: Fractional jitter applied to each backoff delay
        follow_redirects: Follow 301/302/303 for GET and HEAD
        max_redirects: Most redirect hops followed for one request
        http_timeout_s: Per-request connect/read/write timeout in seconds

    Transfer Settings:
        transfer_timeout_s: Deadline for a whole upload or download (None = no deadline)
        partsize: Multipart part size in bytes
        multisize: Size at which uploads switch to multipart
        compression: Content encoding applied before upload
        region: Default region for download_object()
    """
    # Runner settings
    max_retries: int = 5
    retry_delay_factor: float = 100
    retry_delay_jitter: float = 0
    follow_redirects: bool = True
    max_redirects: int = 10
    http_timeout_s: float = 30.0

    # Transfer settings
    transfer_timeout_s: Optional[float] = None
    partsize: int = DEFAULT_PARTSIZE
    multisize: int = DEFAULT_MULTISIZE
    compression: str = ContentEncoding.IDENTITY.value
    region: str = "us-east-1"

    def __post_init__(self):
        """Validate settings on construction."""
        if not 0 <= self.max_retries <= 10:
            raise ValueError(f"max_retries must be between 0 and 10, got {self.max_retries}")

        if self.retry_delay_factor < 100:
            raise ValueError(f"retry_delay_factor must be at least 100ms, got {self.retry_delay_factor}")

        if self.retry_delay_jitter < 0:
            raise ValueError(f"retry_delay_jitter must be non-negative, got {self.retry_delay_jitter}")

        if self.max_redirects < 0:
            raise ValueError(f"max_redirects must be non-negative, got {self.max_redirects}")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        if self.transfer_timeout_s is not None and self.transfer_timeout_s <= 0:
            raise ValueError(f"transfer_timeout_s must be positive, got {self.transfer_timeout_s}")

        if not MIN_PART_SIZE <= self.partsize <= MAX_PART_SIZE:
            raise ValueError(
                f"partsize must be between {MIN_PART_SIZE} and {MAX_PART_SIZE} bytes, got {self.partsize}"
            )

        if self.multisize <= 0:
            raise ValueError(f"multisize must be positive, got {self.multisize}")

        valid = {e.value for e in ContentEncoding}
        if self.compression not in valid:
            raise ValueError(
                f"Invalid compression: {self.compression}. Expected one of: {', '.join(sorted(valid))}"
            )

        if not self.region:
            raise ValueError("region is required")


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        Runner:
        - REMOTE_S3_MAX_RETRIES (default: 5)
        - REMOTE_S3_RETRY_DELAY_FACTOR (default: 100)
        - REMOTE_S3_RETRY_DELAY_JITTER (default: 0)
        - REMOTE_S3_FOLLOW_REDIRECTS (default: true)
        - REMOTE_S3_MAX_REDIRECTS (default: 10)
        - REMOTE_S3_HTTP_TIMEOUT (default: 30.0)

        Transfers:
        - REMOTE_S3_TRANSFER_TIMEOUT (optional)
        - REMOTE_S3_PARTSIZE (default: 25 MiB)
        - REMOTE_S3_MULTISIZE (default: 100 MiB)
        - REMOTE_S3_COMPRESSION (default: identity)
        - REMOTE_S3_REGION (default: us-east-1)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
        Forcing single part or multipart is deliberately not read from the
        environment; pass it explicitly to prepare_upload().
    """
    return _load_settings_impl()


def _load_settings_impl() -> Settings:
    """Internal implementation of settings loading."""
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: Optional[float]) -> Optional[float]:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    return Settings(
        max_retries=get_int("REMOTE_S3_MAX_RETRIES", 5),
        retry_delay_factor=get_float("REMOTE_S3_RETRY_DELAY_FACTOR", 100),
        retry_delay_jitter=get_float("REMOTE_S3_RETRY_DELAY_JITTER", 0),
        follow_redirects=str_to_bool(os.getenv("REMOTE_S3_FOLLOW_REDIRECTS", "true")),
        max_redirects=get_int("REMOTE_S3_MAX_REDIRECTS", 10),
        http_timeout_s=get_float("REMOTE_S3_HTTP_TIMEOUT", 30.0),
        transfer_timeout_s=get_float("REMOTE_S3_TRANSFER_TIMEOUT", None),
        partsize=get_int("REMOTE_S3_PARTSIZE", DEFAULT_PARTSIZE),
        multisize=get_int("REMOTE_S3_MULTISIZE", DEFAULT_MULTISIZE),
        compression=os.getenv("REMOTE_S3_COMPRESSION", ContentEncoding.IDENTITY.value),
        region=os.getenv("REMOTE_S3_REGION", "us-east-1"),
    )
