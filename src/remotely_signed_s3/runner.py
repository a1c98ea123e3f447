"""
HTTP Runner for interchange requests.

Executes one pre-signed request ``{url, method, headers}`` with an optional
body, retrying server errors and transport failures with exponential
backoff (tenacity) and following redirects for GET and HEAD. Every request
and response body is digested on the way through so callers can check that
the bytes actually transmitted match what was signed.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, retry_if_result, stop_after_attempt

from .digest_stream import DigestStream
from .errors import ConfigurationError, ProtocolError, TransportError, ValidationError
from .interchange import RequestLike, validate
from .settings import Settings

__all__ = [
    "RunResult",
    "RunState",
    "BytesBody",
    "StreamBody",
    "normalize_body",
    "Runner",
]

REDIRECT_STATUSES = frozenset({301, 302, 303})
BODYLESS_METHODS = frozenset({"GET", "HEAD"})

# Longest slice of an error body written to debug logs
LOG_BODY_BYTES = 1024

Sleep = Callable[[float], Awaitable[Any]]
TimeoutLike = Union[None, float, httpx.Timeout]


@dataclass(frozen=True)
class RunResult:
    """
    Outcome of one request.

    Buffered results carry ``body`` plus ``response_hash``/``response_size``.
    Streaming results carry a live ``body_stream`` of raw bytes instead and
    must be released with ``aclose()`` once consumed. ``request_hash`` and
    ``request_size`` describe the body that was sent, if any.
    """
    status_code: int
    status_message: str
    headers: httpx.Headers
    body: Optional[bytes] = None
    body_stream: Optional[AsyncIterator[bytes]] = None
    request_hash: Optional[str] = None
    request_size: Optional[int] = None
    response_hash: Optional[str] = None
    response_size: Optional[int] = None
    response: Optional[httpx.Response] = field(default=None, repr=False, compare=False)

    @property
    def is_streaming(self) -> bool:
        return self.body_stream is not None

    async def aclose(self) -> None:
        """Release the underlying connection."""
        if self.response is not None:
            await self.response.aclose()


class RunState(Enum):
    """States of the per-request execution loop."""
    ATTEMPT = "attempt"
    BACKOFF = "backoff"
    REDIRECT = "redirect"
    DONE = "done"


@dataclass(frozen=True)
class BytesBody:
    """A body fully known up front; sent in one shot."""
    data: bytes


@dataclass(frozen=True)
class StreamBody:
    """
    A streamed body.

    ``factory`` returns a fresh byte source on each call. ``replayable`` is
    False for a live stream handed in directly, which can only be read once.
    """
    factory: Callable[[], Any]
    replayable: bool


Body = Union[BytesBody, StreamBody]


def _is_stream(obj: Any) -> bool:
    return hasattr(obj, "__aiter__") or hasattr(obj, "read") or hasattr(obj, "__next__")


def normalize_body(body: Any) -> Optional[Body]:
    """
    Turn any accepted body shape into a BytesBody or StreamBody.

    Accepted: ``str`` (UTF-8 encoded), bytes-like objects, live streams
    (async iterables, iterators and generators, binary file objects) and
    zero-argument callables returning a fresh stream on every call.

    Raises:
        ProtocolError: For any other type
    """
    if body is None:
        return None
    if isinstance(body, str):
        return BytesBody(body.encode("utf-8"))
    if isinstance(body, (bytes, bytearray, memoryview)):
        return BytesBody(bytes(body))
    if _is_stream(body):
        return StreamBody(factory=lambda: body, replayable=False)
    if callable(body):
        return StreamBody(factory=body, replayable=True)
    raise ProtocolError(
        f"Body must be str, bytes, a readable stream or a stream factory, got {type(body).__name__}"
    )


@dataclass
class _Exchange:
    """Mutable bookkeeping for one run() call."""
    method: str
    url: str
    headers: Dict[str, str]
    attempts: int
    follow_redirects: bool
    state: RunState = RunState.ATTEMPT
    hops: int = 0
    attempt: int = 0


def _check_int(name: str, value: Any, low: int, high: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}", field=name)
    if value < low or (high is not None and value > high):
        bound = f"between {low} and {high}" if high is not None else f"at least {low}"
        raise ValidationError(f"{name} must be {bound}, got {value}", field=name)
    return value


def _check_number(name: str, value: Any, low: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}", field=name)
    if value < low:
        raise ValidationError(f"{name} must be at least {low}, got {value}", field=name)
    return value


class Runner:
    """
    Execute interchange requests against an object store.

    Args:
        client: Shared httpx.AsyncClient (not closed by the runner)
        client_options: Keyword arguments for a runner-owned AsyncClient
        max_retries: Attempts per request, 0-10 (0 behaves like 1)
        retry_delay_factor: Base backoff in milliseconds, at least 100
        retry_delay_jitter: Each delay is scaled by a uniform factor in
            [1 - jitter, 1 + jitter]
        follow_redirects: Follow 301/302/303 for GET and HEAD
        max_redirects: Most redirect hops followed for one request
        timeout: Default per-request timeout in seconds or an httpx.Timeout
        logger: Logger for request/response lines
        sleep: Coroutine used for backoff delays

    Raises:
        ConfigurationError: If both client and client_options are given
        ValidationError: If any option is out of range
    """

    def __init__(self, *, client: Optional[httpx.AsyncClient] = None,
                 client_options: Optional[Mapping[str, Any]] = None,
                 max_retries: int = 5,
                 retry_delay_factor: float = 100,
                 retry_delay_jitter: float = 0,
                 follow_redirects: bool = True,
                 max_redirects: int = 10,
                 timeout: TimeoutLike = 30.0,
                 logger: Optional[logging.Logger] = None,
                 sleep: Optional[Sleep] = None):
        if client is not None and client_options is not None:
            raise ConfigurationError("client and client_options are mutually exclusive")

        self.max_retries = _check_int("max_retries", max_retries, 0, 10)
        self.retry_delay_factor = _check_number("retry_delay_factor", retry_delay_factor, 100)
        self.retry_delay_jitter = _check_number("retry_delay_jitter", retry_delay_jitter, 0)
        if not isinstance(follow_redirects, bool):
            raise ValidationError(
                f"follow_redirects must be a boolean, got {follow_redirects!r}", field="follow_redirects"
            )
        self.follow_redirects = follow_redirects
        self.max_redirects = _check_int("max_redirects", max_redirects, 0)
        self.timeout = timeout if isinstance(timeout, httpx.Timeout) else httpx.Timeout(timeout)
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._sleep: Sleep = sleep or asyncio.sleep

        self._owns_client = client is None
        self.client = client if client is not None else httpx.AsyncClient(**dict(client_options or {}))

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> Runner:
        """Build a runner from Settings; keyword arguments take precedence."""
        options: Dict[str, Any] = dict(
            max_retries=settings.max_retries,
            retry_delay_factor=settings.retry_delay_factor,
            retry_delay_jitter=settings.retry_delay_jitter,
            follow_redirects=settings.follow_redirects,
            max_redirects=settings.max_redirects,
            timeout=settings.http_timeout_s,
        )
        options.update(kwargs)
        return cls(**options)

    async def aclose(self) -> None:
        """Close the HTTP client if this runner created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> Runner:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def run(self, request: RequestLike, body: Any = None, *,
                  streaming_output: bool = False,
                  follow_redirects: Optional[bool] = None,
                  timeout: TimeoutLike = None) -> RunResult:
        """
        Run a request with retries and redirects.

        Args:
            request: Interchange request (validated here)
            body: Optional request body (see normalize_body)
            streaming_output: Return the response body as a live stream
            follow_redirects: Override the runner's redirect setting
            timeout: Override the runner's per-request timeout

        Returns:
            RunResult of the final attempt. Non-2xx statuses are returned,
            not raised.

        Raises:
            ValidationError: If the request is malformed
            ProtocolError: If GET or HEAD is given a body
            TransportError: If the last allowed attempt failed in transit
        """
        request = validate(request)
        method = request.normalized_method
        payload = self._check_body(method, normalize_body(body))

        exchange = _Exchange(
            method=method,
            url=request.url,
            headers=dict(request.headers),
            attempts=max(1, self.max_retries),
            follow_redirects=self.follow_redirects if follow_redirects is None else follow_redirects,
        )
        if isinstance(payload, StreamBody) and not payload.replayable:
            if exchange.attempts > 1 or exchange.follow_redirects:
                self.logger.warning(
                    f"{method} {request.url}: body is a one-shot stream, retries and redirects disabled"
                )
            exchange.attempts = 1
            exchange.follow_redirects = False

        result: Optional[RunResult] = None
        while exchange.state is not RunState.DONE:
            if exchange.state is RunState.ATTEMPT:
                result = await self._attempt_with_retries(exchange, payload, streaming_output, timeout)
                if exchange.follow_redirects and self._is_redirect(method, result):
                    exchange.state = RunState.REDIRECT
                else:
                    exchange.state = RunState.DONE
            elif exchange.state is RunState.REDIRECT:
                if exchange.hops >= self.max_redirects:
                    self.logger.warning(
                        f"{method} {exchange.url}: stopped after {exchange.hops} redirects"
                    )
                    exchange.state = RunState.DONE
                    continue
                await result.aclose()
                location = result.headers["location"]
                target = str(httpx.URL(exchange.url).join(location))
                exchange.hops += 1
                self.logger.info(
                    f"Redirect {result.status_code} {method} {exchange.url} -> {target} (hop {exchange.hops})"
                )
                exchange.url = target
                exchange.state = RunState.ATTEMPT
            else:
                raise RuntimeError(f"Unexpected runner state {exchange.state}")

        self.validate_output(result)
        return result

    async def run_once(self, request: RequestLike, body: Any = None, *,
                       streaming_output: bool = False, timeout: TimeoutLike = None) -> RunResult:
        """Perform exactly one HTTP exchange: no retries, no redirects."""
        request = validate(request)
        method = request.normalized_method
        payload = self._check_body(method, normalize_body(body))
        result = await self._send(method, request.url, dict(request.headers), payload,
                                  streaming_output, timeout)
        self.validate_output(result)
        return result

    @staticmethod
    def validate_output(result: RunResult) -> RunResult:
        """
        Check that a result obeys the buffered/streaming co-occurrence rules.

        Raises:
            ValidationError: If the result is inconsistent
        """
        if not 100 <= result.status_code <= 599:
            raise ValidationError(f"status_code out of range: {result.status_code}", field="status_code")
        if result.body is not None and result.body_stream is not None:
            raise ValidationError("body and body_stream are mutually exclusive", field="body")
        if result.body_stream is None:
            if result.body is None:
                raise ValidationError("buffered result is missing its body", field="body")
            if result.response_hash is None or result.response_size is None:
                raise ValidationError("buffered result is missing response_hash/response_size",
                                      field="response_hash")
        elif result.response_hash is not None or result.response_size is not None:
            raise ValidationError("streaming result must not carry response_hash/response_size",
                                  field="response_hash")
        if (result.request_hash is None) != (result.request_size is None):
            raise ValidationError("request_hash and request_size must be given together",
                                  field="request_hash")
        return result

    def _check_body(self, method: str, payload: Optional[Body]) -> Optional[Body]:
        if payload is None or method not in BODYLESS_METHODS:
            return payload
        if isinstance(payload, BytesBody) and not payload.data:
            return None
        raise ProtocolError(f"It is a violation of HTTP for {method} to have a body")

    @staticmethod
    def _is_redirect(method: str, result: RunResult) -> bool:
        return (
            method in BODYLESS_METHODS
            and result.status_code in REDIRECT_STATUSES
            and "location" in result.headers
        )

    def _backoff(self, retry_state) -> float:
        """Delay before the next attempt: 2**n * factor ms, jittered."""
        n = retry_state.attempt_number - 1
        delay = (2 ** n) * self.retry_delay_factor / 1000.0
        if self.retry_delay_jitter:
            delay *= random.uniform(1 - self.retry_delay_jitter, 1 + self.retry_delay_jitter)
        return max(0.0, delay)

    async def _attempt_with_retries(self, exchange: _Exchange, payload: Optional[Body],
                                    streaming_output: bool, timeout: TimeoutLike) -> RunResult:
        def before_sleep(retry_state) -> None:
            exchange.state = RunState.BACKOFF
            outcome = retry_state.outcome
            reason = str(outcome.exception()) if outcome.failed else f"status {outcome.result().status_code}"
            self.logger.info(
                f"Retrying {exchange.method} {exchange.url} after {reason} "
                f"(attempt {retry_state.attempt_number}/{exchange.attempts}, "
                f"sleeping {retry_state.next_action.sleep:.3f}s)"
            )

        async def attempt() -> RunResult:
            exchange.state = RunState.ATTEMPT
            exchange.attempt += 1
            return await self._send(exchange.method, exchange.url, exchange.headers, payload,
                                    streaming_output, timeout)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(exchange.attempts),
            wait=self._backoff,
            retry=(retry_if_exception_type(TransportError)
                   | retry_if_result(lambda result: result.status_code >= 500)),
            sleep=self._sleep,
            before_sleep=before_sleep,
            # Out of attempts: hand back the last response, or re-raise the last error
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        return await retrying(attempt)

    async def _send(self, method: str, url: str, headers: Dict[str, str], payload: Optional[Body],
                    streaming_output: bool, timeout: TimeoutLike) -> RunResult:
        request_hash: Optional[str] = None
        request_size: Optional[int] = None
        content: Any = None
        digest: Optional[DigestStream] = None

        if isinstance(payload, BytesBody):
            content = payload.data
            request_hash = hashlib.sha256(payload.data).hexdigest()
            request_size = len(payload.data)
        elif isinstance(payload, StreamBody):
            digest = DigestStream(payload.factory())
            content = digest

        if timeout is None:
            effective_timeout = self.timeout
        elif isinstance(timeout, httpx.Timeout):
            effective_timeout = timeout
        else:
            effective_timeout = httpx.Timeout(timeout)

        self.logger.debug(f"{method} {url}")
        try:
            http_request = self.client.build_request(
                method, url, headers=headers, content=content, timeout=effective_timeout
            )
            response = await self.client.send(http_request, stream=True, follow_redirects=False)
        except httpx.TransportError as e:
            raise self._transport_error(e, method, url, headers) from e

        if digest is not None:
            request_hash, request_size = digest.hash, digest.size

        if streaming_output and response.status_code < 500:
            return RunResult(
                status_code=response.status_code,
                status_message=response.reason_phrase,
                headers=response.headers,
                body_stream=self._guarded_stream(response, method, url, headers),
                request_hash=request_hash,
                request_size=request_size,
                response=response,
            )

        try:
            received = DigestStream(response.aiter_raw())
            body = b"".join([chunk async for chunk in received])
        except httpx.TransportError as e:
            raise self._transport_error(e, method, url, headers) from e
        finally:
            await response.aclose()

        self._log_response(method, url, response, body, received, request_hash, request_size)

        if streaming_output:
            # Error bodies are drained above; hand them back as a replayed stream
            return RunResult(
                status_code=response.status_code,
                status_message=response.reason_phrase,
                headers=response.headers,
                body_stream=_replay(body),
                request_hash=request_hash,
                request_size=request_size,
            )

        return RunResult(
            status_code=response.status_code,
            status_message=response.reason_phrase,
            headers=response.headers,
            body=body,
            request_hash=request_hash,
            request_size=request_size,
            response_hash=received.hash,
            response_size=received.size,
        )

    def _log_response(self, method: str, url: str, response: httpx.Response, body: bytes,
                      received: DigestStream, request_hash: Optional[str],
                      request_size: Optional[int]) -> None:
        if not self.logger.isEnabledFor(logging.DEBUG):
            return
        outcome = "SUCCESS" if 200 <= response.status_code < 300 else "ERROR"
        req = f"{request_hash} ({request_size} bytes)" if request_size else "empty"
        res = f"{received.hash} ({received.size} bytes)" if received.size else "empty"
        self.logger.debug(
            f"{outcome}: {response.status_code} {response.reason_phrase} {method} {url} REQ: {req} RES: {res}"
        )
        if outcome == "ERROR" and body:
            snippet = body[:LOG_BODY_BYTES].decode("utf-8", errors="replace")
            self.logger.debug(f"Error body: {snippet}")

    async def _guarded_stream(self, response: httpx.Response, method: str, url: str,
                              headers: Dict[str, str]) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_raw():
                yield chunk
        except httpx.TransportError as e:
            raise self._transport_error(e, method, url, headers) from e

    def _transport_error(self, exc: httpx.TransportError, method: str, url: str,
                         headers: Dict[str, str]) -> TransportError:
        self.logger.debug(f"Transport failure {method} {url}: {type(exc).__name__}: {exc}")
        return TransportError(
            f"{method} {url} failed: {type(exc).__name__}: {exc}",
            method=method, url=url, headers=headers,
        )


async def _replay(body: bytes) -> AsyncIterator[bytes]:
    if body:
        yield body
