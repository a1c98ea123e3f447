"""
Test Operations facade wiring and integration.

Validates that the Operations facade delegates to the client, applies
configuration policies, and drives complete signed uploads through a Signer.
"""
from __future__ import annotations

import os
from unittest.mock import AsyncMock, Mock

import pytest

from remotely_signed_s3.client import Client, UploadResult
from remotely_signed_s3.errors import ConfigurationError, UpstreamError, ValidationError
from remotely_signed_s3.models import MB
from remotely_signed_s3.operations import Operations, OpsConfig
from tests.fakes.fake_object_store import error_body, respond

PARTSIZE = 5 * MB


@pytest.fixture
async def mp_client(runner, settings):
    """Client splitting files into minimum-size parts."""
    client = Client(runner=runner, settings=settings, partsize=PARTSIZE)
    yield client
    await client.aclose()


class TestOperationsFacade:
    """Test Operations facade orchestration."""

    def test_facade_initialization(self, settings):
        """Test facade initializes with correct configuration."""
        config = OpsConfig(concurrency=4, json_output=True)
        client = Mock(spec=Client)

        ops = Operations(config=config, client=client, settings=settings)

        assert ops.cfg is config
        assert ops.client is client
        assert ops.settings is settings
        assert ops.signer is None

    def test_settings_loaded_from_environment(self, monkeypatch):
        """Test settings come from the environment when omitted."""
        monkeypatch.setenv("REMOTE_S3_MAX_RETRIES", "2")
        ops = Operations(config=OpsConfig(), client=Mock(spec=Client))
        assert ops.settings.max_retries == 2

    async def test_owned_client_closed(self, settings):
        """Test a facade-built client is closed by aclose()."""
        ops = Operations(config=OpsConfig(), settings=settings)
        await ops.aclose()
        assert ops.client.runner.client.is_closed

    async def test_upload_uses_configured_concurrency(self, settings):
        """Test upload passes the configured concurrency to the client."""
        client = Mock(spec=Client)
        client.run_upload = AsyncMock(return_value=UploadResult(etags=["e"], responses=[]))
        ops = Operations(config=OpsConfig(concurrency=3), client=client, settings=settings)

        result = await ops.upload({"url": "https://x/k", "method": "PUT", "headers": {}}, {"d": 1})

        client.run_upload.assert_awaited_once_with(
            {"url": "https://x/k", "method": "PUT", "headers": {}}, {"d": 1}, concurrency=3
        )
        assert result.etags == ["e"]

    async def test_prepare_delegates(self, settings):
        """Test prepare forwards every option to the client."""
        client = Mock(spec=Client)
        client.prepare_upload = AsyncMock(return_value="descriptor")
        ops = Operations(config=OpsConfig(), client=client, settings=settings)

        assert await ops.prepare("f.bin", compression="gzip", force_sp=True) == "descriptor"
        client.prepare_upload.assert_awaited_once_with(
            "f.bin", partsize=None, multisize=None, compression="gzip",
            force_mp=False, force_sp=True, scratch_file=None,
        )

    async def test_download_routes_urls_and_requests(self, settings):
        """Test strings are downloaded as URLs and mappings as signed requests."""
        client = Mock(spec=Client)
        client.download_url = AsyncMock(return_value="from-url")
        client.run_download = AsyncMock(return_value="from-request")
        ops = Operations(config=OpsConfig(), client=client, settings=settings)
        request = {"url": "https://x/k", "method": "GET", "headers": {}}

        assert await ops.download("https://x/k", "out") == "from-url"
        assert await ops.download(request, "out") == "from-request"
        client.run_download.assert_awaited_once_with(request, "out")


class TestUploadFile:
    """Test complete signed uploads."""

    async def test_requires_signer(self, client, settings, make_file):
        """Test upload_file needs a signer."""
        ops = Operations(config=OpsConfig(), client=client, settings=settings)
        with pytest.raises(ConfigurationError, match="signer is required"):
            await ops.upload_file("bucket", "key", str(make_file(b"x")))

    async def test_validates_names(self, client, signer, settings, make_file):
        """Test bucket names are validated before any work."""
        ops = Operations(config=OpsConfig(), client=client, signer=signer, settings=settings)
        with pytest.raises(ValidationError):
            await ops.upload_file("Not A Bucket", "key", str(make_file(b"x")))

    async def test_singlepart(self, client, signer, store, settings, make_file):
        """Test a small file is uploaded with one signed PUT."""
        path = make_file(b"single part object")
        ops = Operations(config=OpsConfig(), client=client, signer=signer, settings=settings)

        outcome = await ops.upload_file("bucket", "key", str(path))

        assert outcome.upload_id is None
        assert outcome.etag == outcome.upload.etags[0]
        assert store.objects[store.key_for(signer.url("bucket", "key"))].body == b"single part object"
        assert signer.initiated == []

    async def test_compressed_scratch_removed(self, signer, store, settings, make_file, runner):
        """Test the compressed scratch file is deleted after upload."""
        client = Client(runner=runner, settings=settings, compression="gzip")
        path = make_file(b"squeeze " * 1000)
        ops = Operations(config=OpsConfig(), client=client, signer=signer, settings=settings)

        outcome = await ops.upload_file("bucket", "key", str(path))

        assert outcome.descriptor.filename != str(path)
        assert not os.path.exists(outcome.descriptor.filename)
        assert path.exists()

    async def test_compressed_scratch_kept_when_configured(self, signer, store, settings, make_file, runner):
        """Test keep_scratch leaves the compressed file in place."""
        client = Client(runner=runner, settings=settings, compression="zstd")
        path = make_file(b"keep me " * 1000)
        ops = Operations(config=OpsConfig(keep_scratch=True), client=client, signer=signer, settings=settings)

        outcome = await ops.upload_file("bucket", "key", str(path))
        try:
            assert os.path.exists(outcome.descriptor.filename)
        finally:
            os.unlink(outcome.descriptor.filename)

    @pytest.mark.slow
    async def test_multipart_completed(self, mp_client, signer, store, settings, make_file):
        """Test a multipart upload is initiated, uploaded and completed."""
        path = make_file(2 * PARTSIZE + 7)
        ops = Operations(config=OpsConfig(concurrency=2), client=mp_client, signer=signer, settings=settings)

        outcome = await ops.upload_file("bucket", "key", str(path), force_mp=True)

        assert outcome.upload_id == "upload-1"
        assert signer.completed["upload-1"] == outcome.upload.etags
        assert outcome.etag == '"upload-1-3"'
        assert store.objects[store.key_for(signer.url("bucket", "key"))].body == path.read_bytes()
        assert signer.aborted == []

    @pytest.mark.slow
    async def test_multipart_aborted_on_part_failure(self, mp_client, signer, store, settings, make_file):
        """Test a rejected part aborts the multipart upload."""
        path = make_file(2 * PARTSIZE)
        ops = Operations(config=OpsConfig(), client=mp_client, signer=signer, settings=settings)
        store.script(respond(403, error_body("AccessDenied", "Access Denied")))

        with pytest.raises(UpstreamError) as exc_info:
            await ops.upload_file("bucket", "key", str(path), force_mp=True)

        assert exc_info.value.details["code"] == "AccessDenied"
        assert signer.aborted == ["upload-1"]
        assert signer.completed == {}

    @pytest.mark.slow
    async def test_multipart_aborted_on_complete_failure(self, mp_client, signer, settings, make_file):
        """Test a failed completion aborts and re-raises."""
        path = make_file(2 * PARTSIZE)
        signer.fail_complete = True
        ops = Operations(config=OpsConfig(), client=mp_client, signer=signer, settings=settings)

        with pytest.raises(RuntimeError, match="complete failed"):
            await ops.upload_file("bucket", "key", str(path), force_mp=True)

        assert signer.aborted == ["upload-1"]
