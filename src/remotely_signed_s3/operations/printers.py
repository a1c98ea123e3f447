"""
Human-readable output formatting.

Centralizes all CLI output formatting: rich tables for people, JSON for
scripts, so CLI commands stay thin and focused.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..client import DownloadResult, UploadResult
from ..errors import HeaderValidationError, IntegrityError, TransferError, UpstreamError
from ..models import TransferDescriptor

_console = Console()
_err_console = Console(stderr=True)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=True))


def print_descriptor(descriptor: TransferDescriptor, json_output: bool = False, verbose: bool = False) -> None:
    """
    Print a prepared transfer.

    Args:
        descriptor: Output of prepare_upload()
        json_output: Emit the camelCase JSON descriptor signers expect
        verbose: Show every part, not only the count
    """
    if json_output:
        _echo_json(descriptor.to_dict())
        return

    _console.print(f"[bold]File:[/] {descriptor.filename}")
    _console.print(f"[bold]SHA256:[/] [dim]{descriptor.sha256}[/]")
    _console.print(f"[bold]Size:[/] {_format_bytes(descriptor.size)}")
    if descriptor.content_encoding.value != "identity":
        _console.print(f"[bold]Encoding:[/] {descriptor.content_encoding.value}")
        _console.print(f"[bold]Transfer SHA256:[/] [dim]{descriptor.transfer_sha256}[/]")
        _console.print(f"[bold]Transfer size:[/] {_format_bytes(descriptor.transfer_size)}")

    if not descriptor.is_multipart:
        _console.print("[bold]Mode:[/] single part")
        return

    _console.print(f"[bold]Mode:[/] multipart ({len(descriptor.parts)} parts)")
    if verbose:
        table = Table(title="Parts")
        table.add_column("#", style="cyan", justify="right")
        table.add_column("Start", justify="right")
        table.add_column("Size", justify="right")
        table.add_column("SHA256", style="dim", no_wrap=True)
        for number, part in enumerate(descriptor.parts, start=1):
            table.add_row(str(number), str(part.start), _format_bytes(part.size), part.sha256)
        _console.print(table)


def print_upload_result(result: UploadResult, json_output: bool = False) -> None:
    """
    Print the ETags of an upload.

    Args:
        result: Output of run_upload()
        json_output: Emit a JSON list of ETags
    """
    if json_output:
        _echo_json({"etags": result.etags})
        return

    table = Table(title=f"Uploaded {len(result.etags)} part(s)")
    table.add_column("Part", style="cyan", justify="right")
    table.add_column("Status", justify="right")
    table.add_column("ETag", style="yellow", no_wrap=True)
    for number, (etag, response) in enumerate(zip(result.etags, result.responses), start=1):
        table.add_row(str(number), str(response.status_code), etag)
    _console.print(table)


def print_download_result(result: DownloadResult, output: str, json_output: bool = False) -> None:
    """
    Print a verified download.

    Args:
        result: Output of run_download()
        output: Where the bytes were written
        json_output: Emit JSON instead of text
    """
    if json_output:
        _echo_json({
            "output": output,
            "sha256": result.sha256,
            "size": result.size,
            "transferSha256": result.transfer_sha256,
            "transferSize": result.transfer_size,
            "contentEncoding": result.content_encoding.value,
        })
        return

    _console.print(f"[green]Verified[/] {output}")
    _console.print(f"[bold]SHA256:[/] [dim]{result.sha256}[/]")
    _console.print(f"[bold]Size:[/] {_format_bytes(result.size)}")
    if result.content_encoding.value != "identity":
        _console.print(f"[bold]Encoding:[/] {result.content_encoding.value} "
                       f"({_format_bytes(result.transfer_size)} transferred)")


def print_curl(commands: List[str]) -> None:
    """Print one curl command per line, uncolored so it can be pasted."""
    for command in commands:
        typer.echo(command)


def print_error(exc: BaseException) -> None:
    """
    Print an error to stderr with whatever detail the exception carries.

    Args:
        exc: Exception raised by a command
    """
    name = type(exc).__name__ if isinstance(exc, TransferError) else "Error"
    _err_console.print(f"[bold red]{name}:[/] {escape(str(exc))}", highlight=False)

    details: Dict[str, Any] = {}
    if isinstance(exc, (HeaderValidationError, IntegrityError)):
        for error in exc.errors:
            _err_console.print(f"  - {escape(error)}", highlight=False)
    if isinstance(exc, IntegrityError):
        details = {"expected": exc.expected, "actual": exc.actual}
    if isinstance(exc, UpstreamError) and exc.details:
        details = exc.details
    for key, value in details.items():
        _err_console.print(f"  {key}: {escape(str(value))}", highlight=False)


def _format_bytes(size_bytes: int) -> str:
    """
    Format byte count as human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "1.5 MB", "42 KB")
    """
    if size_bytes == 0:
        return "0 B"
    elif size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"
