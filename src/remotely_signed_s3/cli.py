"""
remotely-signed-s3 CLI

Implements 4 CLI verbs with Operations facade integration:
- prepare: Digest a file into a transfer descriptor
- upload: Run signed upload requests for a file
- download: Download and verify an object
- curl: Show curl equivalents of signed requests
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler

from .cli_context import CLIContext
from .client import curl_command
from .errors import ValidationError
from .models import ContentEncoding, TransferDescriptor, parse_model
from .operations import OpsConfig, run_and_exit
from .operations.printers import (
    print_curl, print_descriptor, print_download_result, print_upload_result
)

app = typer.Typer(name="remote-s3", help="Signed, verified object store transfers")


def _configure_logging(verbose: bool) -> None:
    """Send library debug logs to stderr through rich when --verbose is given."""
    if not verbose:
        return
    logging.basicConfig(
        level=logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    logging.getLogger("remotely_signed_s3").setLevel(logging.DEBUG)


def _load_document(path: str) -> Any:
    """
    Load a JSON or YAML file.

    Raises:
        ValidationError: If the file cannot be parsed
    """
    try:
        with open(path, "r") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValidationError(f"Cannot parse {path}: {e}") from e


def _load_descriptor(path: str) -> TransferDescriptor:
    return parse_model(TransferDescriptor, _load_document(path))


@app.command()
def prepare(
    filename: str = typer.Argument(..., help="File to prepare"),
    partsize: Optional[int] = typer.Option(None, "--partsize", help="Multipart part size in bytes"),
    multisize: Optional[int] = typer.Option(None, "--multisize", help="Size at which multipart is used"),
    compression: Optional[str] = typer.Option(None, "--compression", help="identity, gzip or zstd"),
    force_mp: bool = typer.Option(False, "--force-mp", help="Always use multipart"),
    force_sp: bool = typer.Option(False, "--force-sp", help="Always use single part"),
    scratch: Optional[str] = typer.Option(None, "--scratch", help="Where compressed bytes are written"),
    json_output: bool = typer.Option(False, "--json", help="Print the JSON descriptor"),
    verbose: bool = typer.Option(False, "--verbose", help="Show detailed output")
) -> None:
    """Digest a file into a transfer descriptor."""
    _configure_logging(verbose)

    def _prepare() -> None:
        config = OpsConfig(json_output=json_output, verbose=verbose)
        context = CLIContext.from_env()
        descriptor = context.run(config, lambda ops: ops.prepare(
            filename,
            partsize=partsize,
            multisize=multisize,
            compression=compression,
            force_mp=force_mp,
            force_sp=force_sp,
            scratch_file=scratch,
        ))
        print_descriptor(descriptor, json_output=json_output, verbose=verbose)

    run_and_exit(_prepare)


@app.command()
def upload(
    filename: str = typer.Argument(..., help="File to upload"),
    requests_file: str = typer.Argument(..., help="JSON/YAML file with one signed request or a list"),
    descriptor_file: Optional[str] = typer.Option(
        None, "--descriptor", help="Descriptor from 'prepare --json'; compressed descriptors upload their scratch file"
    ),
    concurrency: int = typer.Option(1, "--concurrency", help="Parts uploaded at once"),
    force_mp: bool = typer.Option(False, "--force-mp", help="Prepare as multipart when no descriptor is given"),
    force_sp: bool = typer.Option(False, "--force-sp", help="Prepare as single part when no descriptor is given"),
    json_output: bool = typer.Option(False, "--json", help="Print ETags as JSON"),
    verbose: bool = typer.Option(False, "--verbose", help="Show detailed output")
) -> None:
    """Run signed upload requests for a file."""
    _configure_logging(verbose)

    def _upload() -> None:
        config = OpsConfig(concurrency=concurrency, json_output=json_output, verbose=verbose)
        requests = _load_document(requests_file)
        descriptor = _load_descriptor(descriptor_file) if descriptor_file else None

        async def action(ops):
            prepared = descriptor
            if prepared is None:
                prepared = await ops.prepare(filename, force_mp=force_mp, force_sp=force_sp)
            elif prepared.content_encoding == ContentEncoding.IDENTITY and Path(prepared.filename) != Path(filename):
                # Compressed descriptors point at their scratch file instead
                raise ValidationError(
                    f"Descriptor is for {prepared.filename}, not {filename}", field="filename"
                )
            return await ops.upload(requests, prepared)

        result = CLIContext.from_env().run(config, action)
        print_upload_result(result, json_output=json_output)

    run_and_exit(_upload)


@app.command()
def download(
    request: str = typer.Argument(..., help="URL, or JSON/YAML file with a signed GET request"),
    output: str = typer.Argument(..., help="Destination path"),
    json_output: bool = typer.Option(False, "--json", help="Print digests as JSON"),
    verbose: bool = typer.Option(False, "--verbose", help="Show detailed output")
) -> None:
    """Download an object and verify it against its metadata."""
    _configure_logging(verbose)

    def _download() -> None:
        config = OpsConfig(json_output=json_output, verbose=verbose)
        source = request if request.startswith(("http://", "https://")) else _load_document(request)
        result = CLIContext.from_env().run(config, lambda ops: ops.download(source, output))
        print_download_result(result, output, json_output=json_output)

    run_and_exit(_download)


@app.command()
def curl(
    request: str = typer.Argument(..., help="JSON/YAML file with one signed request or a list"),
    filename: Optional[str] = typer.Argument(None, help="File sent as the request body")
) -> None:
    """Show curl equivalents of signed requests."""

    def _curl() -> None:
        requests = _load_document(request)
        if not isinstance(requests, list):
            requests = [requests]
        print_curl([curl_command(r, filename=filename) for r in requests])

    run_and_exit(_curl)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
