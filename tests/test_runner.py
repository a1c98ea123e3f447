"""
Tests for the HTTP runner.

Covers retry/backoff policy, body shapes, redirect following, streaming
output and transport error mapping against a MockTransport-backed store.
"""
from __future__ import annotations

import hashlib
import io
import logging
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from remotely_signed_s3.errors import ConfigurationError, ProtocolError, TransportError, ValidationError
from remotely_signed_s3.runner import BytesBody, RunResult, Runner, StreamBody, normalize_body
from tests.fakes.fake_object_store import BrokenStream, respond

URL = "https://bucket.s3.amazonaws.com/key"


def _req(method="GET", url=URL, headers=None):
    return {"url": url, "method": method, "headers": headers or {}}


def _delays(sleep):
    return [c.args[0] for c in sleep.await_args_list]


def _runner(store, **kwargs):
    kwargs.setdefault("sleep", AsyncMock())
    return Runner(client_options={"transport": store.transport}, **kwargs)


class TestNormalizeBody:
    """Test body shape normalization."""

    def test_none(self):
        """Test no body stays None."""
        assert normalize_body(None) is None

    def test_str_encoded_utf8(self):
        """Test strings are UTF-8 encoded."""
        assert normalize_body("héllo") == BytesBody("héllo".encode("utf-8"))

    def test_bytes_like(self):
        """Test bytes, bytearray and memoryview become BytesBody."""
        for body in (b"abc", bytearray(b"abc"), memoryview(b"abc")):
            assert normalize_body(body) == BytesBody(b"abc")

    def test_live_stream_not_replayable(self):
        """Test a file object is a one-shot stream."""
        source = io.BytesIO(b"abc")
        body = normalize_body(source)
        assert isinstance(body, StreamBody)
        assert body.replayable is False
        assert body.factory() is source

    def test_factory_replayable(self):
        """Test a zero-argument callable is a replayable stream factory."""
        def factory():
            return io.BytesIO(b"abc")
        body = normalize_body(factory)
        assert body.replayable is True
        assert body.factory is factory

    def test_unsupported_type(self):
        """Test other types raise ProtocolError."""
        with pytest.raises(ProtocolError, match="Body must be"):
            normalize_body(42)


class TestRunnerOptions:
    """Test constructor validation."""

    @pytest.mark.parametrize("kwargs,field", [
        ({"max_retries": 11}, "max_retries"),
        ({"max_retries": -1}, "max_retries"),
        ({"max_retries": 2.5}, "max_retries"),
        ({"retry_delay_factor": 50}, "retry_delay_factor"),
        ({"retry_delay_jitter": -0.1}, "retry_delay_jitter"),
        ({"follow_redirects": "yes"}, "follow_redirects"),
        ({"max_redirects": -1}, "max_redirects"),
    ])
    def test_invalid_options(self, kwargs, field):
        """Test out-of-range options raise ValidationError naming the option."""
        with pytest.raises(ValidationError) as exc_info:
            Runner(**kwargs)
        assert exc_info.value.field == field

    def test_client_and_client_options_exclusive(self):
        """Test a shared client cannot be combined with client options."""
        with pytest.raises(ConfigurationError, match="mutually exclusive"):
            Runner(client=Mock(), client_options={"http2": False})

    async def test_shared_client_not_closed(self, store):
        """Test a caller-supplied client is left open."""
        http = store.client()
        async with Runner(client=http):
            pass
        assert not http.is_closed
        await http.aclose()

    async def test_owned_client_closed(self, store):
        """Test a runner-built client is closed with the runner."""
        async with _runner(store) as runner:
            pass
        assert runner.client.is_closed

    def test_from_settings(self, settings):
        """Test settings provide defaults and keywords override them."""
        runner = Runner.from_settings(settings, max_retries=2)
        assert runner.max_retries == 2
        assert runner.retry_delay_factor == settings.retry_delay_factor
        assert runner.max_redirects == settings.max_redirects


class TestRetries:
    """Test retry and backoff behavior."""

    async def test_server_errors_retried_until_success(self, store, runner, sleep):
        """Test four 500s then a 200 succeed on the fifth attempt."""
        store.script(*[respond(500, b"oops") for _ in range(4)], respond(200, b"done"))

        result = await runner.run(_req())

        assert result.status_code == 200
        assert result.body == b"done"
        assert len(store.requests) == 5
        assert _delays(sleep) == pytest.approx([0.1, 0.2, 0.4, 0.8])

    async def test_exhausted_retries_return_last_response(self, store, sleep):
        """Test the final 5xx response is returned, not raised."""
        store.script(*[respond(503, b"busy") for _ in range(3)])
        async with _runner(store, max_retries=3, sleep=sleep) as runner:
            result = await runner.run(_req())

        assert result.status_code == 503
        assert result.body == b"busy"
        assert len(store.requests) == 3
        assert len(sleep.await_args_list) == 2

    async def test_client_errors_not_retried(self, store, runner, sleep):
        """Test 4xx responses are returned after one attempt."""
        store.script(respond(403, b"denied"))
        result = await runner.run(_req())
        assert result.status_code == 403
        assert len(store.requests) == 1
        sleep.assert_not_awaited()

    async def test_zero_retries_means_one_attempt(self, store):
        """Test max_retries=0 still makes a single attempt."""
        store.script(respond(500))
        async with _runner(store, max_retries=0) as runner:
            result = await runner.run(_req())
        assert result.status_code == 500
        assert len(store.requests) == 1

    async def test_retry_delay_factor(self, store, sleep):
        """Test backoff doubles from the configured factor."""
        store.script(respond(500), respond(500), respond(200))
        async with _runner(store, retry_delay_factor=250, sleep=sleep) as runner:
            await runner.run(_req())
        assert _delays(sleep) == pytest.approx([0.25, 0.5])

    async def test_jitter_bounds(self, store, sleep):
        """Test jittered delays stay within the configured band."""
        store.script(respond(500), respond(500), respond(200))
        async with _runner(store, retry_delay_jitter=0.5, sleep=sleep) as runner:
            await runner.run(_req())
        first, second = _delays(sleep)
        assert 0.05 <= first <= 0.15
        assert 0.1 <= second <= 0.3

    async def test_transport_error_retried(self, store, runner):
        """Test connection failures are retried."""
        store.script(httpx.ConnectError("refused"), respond(200, b"ok"))
        result = await runner.run(_req())
        assert result.status_code == 200
        assert len(store.requests) == 2

    async def test_transport_error_raised_after_last_attempt(self, store):
        """Test the last transport failure is raised as TransportError."""
        store.script(httpx.ConnectError("refused"), httpx.ConnectError("refused"))
        async with _runner(store, max_retries=2) as runner:
            with pytest.raises(TransportError, match="refused") as exc_info:
                await runner.run(_req(headers={"x-amz-date": "now"}))
        assert exc_info.value.method == "GET"
        assert exc_info.value.url == URL
        assert exc_info.value.headers == {"x-amz-date": "now"}

    async def test_retry_is_logged(self, store, sleep):
        """Test each retry is reported through the injected logger."""
        logger = Mock(spec=logging.Logger)
        logger.isEnabledFor.return_value = False
        store.script(respond(500), respond(200))
        async with _runner(store, logger=logger, sleep=sleep) as runner:
            await runner.run(_req())
        messages = [c.args[0] for c in logger.info.call_args_list]
        assert any("Retrying GET" in m and "status 500" in m for m in messages)


class TestBodies:
    """Test request bodies."""

    async def test_bytes_body_digested(self, store, runner):
        """Test request hash and size describe the body sent."""
        store.script(respond(200))
        result = await runner.run(_req("PUT"), b"payload")
        assert result.request_hash == hashlib.sha256(b"payload").hexdigest()
        assert result.request_size == 7
        assert store.bodies == [b"payload"]

    async def test_stream_factory_digested_and_replayed(self, store, runner):
        """Test a factory is called once per attempt and the body digested."""
        calls = []

        def factory():
            calls.append(1)
            return io.BytesIO(b"streamed body")

        store.script(respond(500), respond(200))
        result = await runner.run(_req("PUT"), factory)

        assert result.status_code == 200
        assert len(calls) == 2
        assert store.bodies == [b"streamed body", b"streamed body"]
        assert result.request_hash == hashlib.sha256(b"streamed body").hexdigest()
        assert result.request_size == 13

    async def test_async_generator_factory(self, store, runner):
        """Test factories may return async iterators."""
        async def chunks():
            yield b"part one, "
            yield b"part two"

        store.script(respond(200))
        result = await runner.run(_req("PUT"), chunks)
        assert store.bodies == [b"part one, part two"]
        assert result.request_size == 18

    async def test_raw_stream_single_attempt(self, store, sleep):
        """Test a one-shot stream is never retried, even on 500."""
        logger = Mock(spec=logging.Logger)
        logger.isEnabledFor.return_value = False
        store.script(respond(500), respond(200))

        async with _runner(store, logger=logger, sleep=sleep) as runner:
            result = await runner.run(_req("PUT"), io.BytesIO(b"once"))

        assert result.status_code == 500
        assert len(store.requests) == 1
        sleep.assert_not_awaited()
        warning = logger.warning.call_args.args[0]
        assert "retries and redirects disabled" in warning

    async def test_get_with_body_rejected(self, runner, store):
        """Test GET with a body violates HTTP and is refused before sending."""
        with pytest.raises(ProtocolError, match="violation of HTTP for GET"):
            await runner.run(_req("GET"), b"data")
        assert store.requests == []

    async def test_head_with_stream_rejected(self, runner):
        """Test HEAD with a stream body is refused."""
        with pytest.raises(ProtocolError):
            await runner.run(_req("head"), lambda: io.BytesIO(b""))

    async def test_get_with_empty_body_allowed(self, store, runner):
        """Test an empty bytes body on GET is treated as no body."""
        store.script(respond(200, b"x"))
        result = await runner.run(_req("GET"), b"")
        assert result.status_code == 200
        assert result.request_hash is None

    async def test_invalid_request_rejected(self, runner):
        """Test requests are validated before any I/O."""
        with pytest.raises(ValidationError):
            await runner.run({"url": "ftp://x", "method": "GET", "headers": {}})


class TestRedirects:
    """Test redirect following."""

    async def test_follows_relative_redirect(self, store, runner):
        """Test a 302 Location is resolved against the request URL."""
        store.script(respond(302, headers={"location": "/moved"}), respond(200, b"here"))
        result = await runner.run(_req())
        assert result.status_code == 200
        assert result.body == b"here"
        assert str(store.requests[1].url) == "https://bucket.s3.amazonaws.com/moved"

    async def test_follows_absolute_redirect(self, store, runner):
        """Test absolute Location headers are followed as-is."""
        store.script(respond(301, headers={"location": "https://other.example.com/k"}), respond(200))
        await runner.run(_req())
        assert store.requests[1].url.host == "other.example.com"

    async def test_redirect_not_followed_when_disabled(self, store, runner):
        """Test follow_redirects=False returns the redirect response."""
        store.script(respond(303, headers={"location": "/moved"}))
        result = await runner.run(_req(), follow_redirects=False)
        assert result.status_code == 303
        assert len(store.requests) == 1

    async def test_put_redirect_not_followed(self, store, runner):
        """Test redirects are only followed for GET and HEAD."""
        store.script(respond(302, headers={"location": "/moved"}))
        result = await runner.run(_req("PUT"), b"data")
        assert result.status_code == 302
        assert len(store.requests) == 1

    async def test_hop_limit(self, store):
        """Test the redirect chain stops at max_redirects."""
        store.script(*[respond(302, headers={"location": f"/hop{i}"}) for i in range(5)])
        async with _runner(store, max_redirects=2) as runner:
            result = await runner.run(_req())
        assert result.status_code == 302
        assert len(store.requests) == 3

    async def test_redirect_target_retried(self, store, runner):
        """Test the redirect target gets its own retry budget."""
        store.script(respond(302, headers={"location": "/moved"}), respond(500), respond(200, b"ok"))
        result = await runner.run(_req())
        assert result.status_code == 200
        assert len(store.requests) == 3


class TestStreamingOutput:
    """Test streaming response bodies."""

    async def test_streaming_body(self, store, runner):
        """Test streaming results expose a live body and no response digest."""
        store.script(respond(200, b"streamed response"))
        result = await runner.run(_req(), streaming_output=True)
        try:
            assert result.is_streaming
            assert result.body is None
            assert result.response_hash is None
            body = b"".join([chunk async for chunk in result.body_stream])
        finally:
            await result.aclose()
        assert body == b"streamed response"

    async def test_streaming_server_error_retried(self, store, runner):
        """Test 5xx responses are drained and retried in streaming mode."""
        store.script(respond(503, b"busy"), respond(200, b"ok"))
        result = await runner.run(_req(), streaming_output=True)
        body = b"".join([chunk async for chunk in result.body_stream])
        await result.aclose()
        assert result.status_code == 200
        assert body == b"ok"

    async def test_streaming_final_server_error_replayed(self, store):
        """Test the last 5xx body is still readable from body_stream."""
        store.script(respond(500, b"broken"))
        async with _runner(store, max_retries=1) as runner:
            result = await runner.run(_req(), streaming_output=True)
        assert result.status_code == 500
        assert b"".join([chunk async for chunk in result.body_stream]) == b"broken"

    async def test_dropped_stream_raises_transport_error(self, store, runner):
        """Test a connection drop mid-body surfaces as TransportError."""
        store.script(httpx.Response(200, stream=BrokenStream(b"partial")))
        result = await runner.run(_req(), streaming_output=True)
        with pytest.raises(TransportError, match="ReadError"):
            async for _ in result.body_stream:
                pass
        await result.aclose()

    async def test_dropped_buffered_body_retried(self, store, runner):
        """Test a connection drop while buffering is retried."""
        store.script(httpx.Response(200, stream=BrokenStream(b"partial")), respond(200, b"complete"))
        result = await runner.run(_req())
        assert result.body == b"complete"
        assert result.response_hash == hashlib.sha256(b"complete").hexdigest()
        assert result.response_size == 8


class TestRunOnce:
    """Test single exchanges."""

    async def test_no_retry(self, store, runner, sleep):
        """Test run_once never retries."""
        store.script(respond(500), respond(200))
        result = await runner.run_once(_req())
        assert result.status_code == 500
        assert len(store.requests) == 1
        sleep.assert_not_awaited()

    async def test_no_redirect(self, store, runner):
        """Test run_once never follows redirects."""
        store.script(respond(302, headers={"location": "/x"}))
        result = await runner.run_once(_req())
        assert result.status_code == 302


class TestValidateOutput:
    """Test result co-occurrence rules."""

    def _result(self, **overrides):
        fields = dict(status_code=200, status_message="OK", headers=httpx.Headers(),
                      body=b"", response_hash="h", response_size=0)
        fields.update(overrides)
        return RunResult(**fields)

    def test_valid_buffered(self):
        """Test a complete buffered result passes."""
        result = self._result()
        assert Runner.validate_output(result) is result

    def test_status_out_of_range(self):
        """Test status codes outside 100..599 are rejected."""
        with pytest.raises(ValidationError, match="status_code"):
            Runner.validate_output(self._result(status_code=600))

    def test_body_and_stream_exclusive(self):
        """Test body and body_stream cannot both be set."""
        with pytest.raises(ValidationError, match="mutually exclusive"):
            Runner.validate_output(self._result(body_stream=Mock()))

    def test_buffered_needs_response_digest(self):
        """Test buffered results must carry response hash and size."""
        with pytest.raises(ValidationError, match="response_hash"):
            Runner.validate_output(self._result(response_hash=None))

    def test_streaming_must_not_carry_response_digest(self):
        """Test streaming results cannot carry a response digest."""
        with pytest.raises(ValidationError, match="streaming result"):
            Runner.validate_output(self._result(body=None, body_stream=Mock()))

    def test_request_digest_pairs(self):
        """Test request hash and size come together."""
        with pytest.raises(ValidationError, match="request_hash and request_size"):
            Runner.validate_output(self._result(request_hash="abc"))
