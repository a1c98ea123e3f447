"""
remotely-signed-s3 - signed, resumable, integrity-checked object transfers.

A trusted signer hands out pre-signed requests in the interchange format
``{url, method, headers}``; the Client in this package executes them,
verifying every byte sent and received against SHA256 digests.
"""
from .client import Client, DownloadResult, UploadResult
from .digest_stream import DigestStream
from .errors import (
    ConcurrentModificationError,
    ConfigurationError,
    HeaderValidationError,
    IntegrityError,
    ProtocolError,
    TransferError,
    TransferTimeoutError,
    TransportError,
    UpstreamError,
    ValidationError,
)
from .interchange import validate, validate_all
from .models import ContentEncoding, InterchangeRequest, PartDescriptor, TransferDescriptor
from .runner import Runner, RunResult
from .settings import Settings, create_settings_from_env
from .signer import Signer

__version__ = "0.1.0"

__all__ = [
    "Client", "DownloadResult", "UploadResult",
    "DigestStream",
    "TransferError", "ValidationError", "HeaderValidationError", "ProtocolError",
    "ConcurrentModificationError", "ConfigurationError", "TransportError",
    "IntegrityError", "UpstreamError", "TransferTimeoutError",
    "validate", "validate_all",
    "ContentEncoding", "InterchangeRequest", "PartDescriptor", "TransferDescriptor",
    "Runner", "RunResult",
    "Settings", "create_settings_from_env",
    "Signer",
]
