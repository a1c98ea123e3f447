"""Root pytest configuration for remotely-signed-s3 tests."""
import os
from unittest.mock import AsyncMock

import pytest

from remotely_signed_s3.client import Client
from remotely_signed_s3.runner import Runner
from remotely_signed_s3.settings import Settings

from .fakes.fake_object_store import FakeObjectStore
from .fakes.fake_signer import FakeSigner

MB = 1024 * 1024


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (writes multi-megabyte files)"
    )


# Set up test environment variables
@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Keep developer REMOTE_S3_* variables out of the tests."""
    for name in list(os.environ):
        if name.startswith("REMOTE_S3_"):
            monkeypatch.delenv(name)


# Standardized test fixtures
@pytest.fixture
def settings():
    """Standard test settings."""
    return Settings()


@pytest.fixture
def store():
    """In-memory object store behind httpx.MockTransport."""
    return FakeObjectStore()


@pytest.fixture
def signer(store):
    """Fake signer issuing requests against the fake store."""
    return FakeSigner(store)


@pytest.fixture
def sleep():
    """Backoff sleep that returns immediately and records delays."""
    return AsyncMock()


@pytest.fixture
async def runner(store, sleep):
    """Runner wired to the fake store with instant backoff."""
    runner = Runner(client_options={"transport": store.transport}, sleep=sleep)
    yield runner
    await runner.aclose()


@pytest.fixture
async def client(runner, settings):
    """Client sharing the fake-store runner."""
    client = Client(runner=runner, settings=settings)
    yield client
    await client.aclose()


@pytest.fixture
def make_file(tmp_path):
    """Write ``data`` (bytes, or a size for deterministic filler) to a temp file."""
    def _make(data, name="data.bin"):
        if isinstance(data, int):
            data = (bytes(range(251)) * (data // 251 + 1))[:data]
        path = tmp_path / name
        path.write_bytes(data)
        return path
    return _make
