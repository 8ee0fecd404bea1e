"""Outbound forwarding with a per-attempt deadline and bounded retry."""

from __future__ import annotations

import asyncio
import errno
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from aiohttp import (
    ClientError,
    ClientConnectorDNSError,
    ClientConnectorError,
    ClientOSError,
    ClientPayloadError,
    ClientSession,
    ClientTimeout,
    ServerDisconnectedError,
    TCPConnector,
)
from aiohttp.abc import AbstractResolver

from webhook_balancer.config.schema import DEFAULT_FORWARD_HEADERS

DEFAULT_ATTEMPT_TIMEOUT = 2.8
DEFAULT_OVERALL_TIMEOUT = 3.0
DEFAULT_RETRY_MARGIN = 1.5
DEFAULT_MAX_ATTEMPTS = 2

# Headers never copied upstream, even when allow-listed
STRIPPED_HEADERS = {
    "connection",
    "keep-alive",
    "upgrade",
    "http2-settings",
    "transfer-encoding",
    "te",
    "trailer",
    "host",
    "content-length",
    "proxy-connection",
    "proxy-authorization",
    "proxy-authenticate",
    ":method",
    ":path",
    ":scheme",
    ":authority",
}

RESPONSE_SKIP_HEADERS = {"content-encoding", "transfer-encoding", "content-length", "connection"}

TRANSIENT_CODES = {"ECONNRESET", "ETIMEDOUT", "EPIPE", "ENOTFOUND", "ECONNABORTED"}
CONNECTION_CODES = {"ECONNRESET", "ECONNREFUSED", "EPIPE", "ECONNABORTED", "ENOTFOUND"}


@dataclass
class RelayRequest:
    """The parts of an inbound request that are forwarded."""
    method: str
    path_qs: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class ForwardResult:
    """A response received from the backend, whatever its status."""
    status: int
    body: bytes
    headers: dict[str, str]
    duration_ms: float
    attempts: int

    @property
    def content_type(self) -> Optional[str]:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return v
        return None


class ForwardError(Exception):
    """Forward failed without receiving a response."""
    status = 500
    error = "Internal Server Error"
    description = "error"

    def __init__(
        self,
        message: str,
        error_code: str,
        target: str,
        duration_ms: float,
        attempts: int,
        transient: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.target = target
        self.duration_ms = duration_ms
        self.attempts = attempts
        self.transient = transient

    @property
    def affects_health(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error,
            "message": f"Backend service {self.description} after {self.attempts} attempts",
            "target": self.target,
            "duration_ms": round(self.duration_ms),
            "error_code": self.error_code,
            "error_message": self.message,
            "attempts": self.attempts,
        }


class ForwardTimeout(ForwardError):
    status = 504
    error = "Gateway Timeout"
    description = "timed out"


class ForwardConnectionError(ForwardError):
    status = 502
    error = "Bad Gateway"
    description = "connection failed"


class UpstreamError(ForwardError):
    """Unclassified client failure; does not count against backend health."""
    status = 500
    error = "Internal Server Error"
    description = "error"

    @property
    def affects_health(self) -> bool:
        return False


class AttemptError(ClientError):
    """Transport failure of a single outbound attempt.

    Wraps disconnects and socket errors so the session does not resend
    idempotent requests on its own; ``cause`` holds the original error.
    """

    def __init__(self, cause: ClientError):
        super().__init__(str(cause))
        self.cause = cause


async def single_attempt_middleware(request, handler):
    """Client middleware: one request, one connection, no hidden resend."""
    try:
        return await handler(request)
    except ClientConnectorError:
        raise
    except (ServerDisconnectedError, ClientOSError) as e:
        raise AttemptError(e) from e


def error_code_for(exc: BaseException) -> str:
    """Map an aiohttp/asyncio exception to a socket-style error code."""
    if isinstance(exc, AttemptError):
        exc = exc.cause
    if isinstance(exc, asyncio.TimeoutError):
        return "ETIMEDOUT"
    if isinstance(exc, ServerDisconnectedError):
        return "ECONNRESET"
    if isinstance(exc, ClientPayloadError):
        return "ECONNABORTED"
    if isinstance(exc, ClientConnectorDNSError):
        return "ENOTFOUND"
    if isinstance(exc, ClientConnectorError):
        os_error = exc.os_error
        if isinstance(os_error, socket.gaierror):
            return "ENOTFOUND"
        # Multi-address connects report "Multiple exceptions" with no errno
        if isinstance(os_error, ConnectionRefusedError) or "refused" in str(os_error).lower():
            return "ECONNREFUSED"
        return errno.errorcode.get(exc.errno or 0, "EUNKNOWN")
    if isinstance(exc, ClientOSError):
        return errno.errorcode.get(exc.errno or 0, "ECONNRESET")
    return "EUNKNOWN"


def build_forward_headers(
    request: RelayRequest,
    allowed: Optional[list[str]] = None,
    default_user_agent: str = "Flush-Load-Balancer/1.0",
) -> dict[str, str]:
    """Copy allow-listed headers and add the fixed relay headers."""
    allowed_lower = {h.lower() for h in (allowed or DEFAULT_FORWARD_HEADERS)}
    headers = {}
    for name, value in request.headers.items():
        lowered = name.lower()
        if lowered in allowed_lower and lowered not in STRIPPED_HEADERS:
            headers[name] = value

    if not any(k.lower() == "user-agent" for k in headers):
        headers["User-Agent"] = default_user_agent
    headers["Connection"] = "close"
    headers["Cache-Control"] = "no-cache"
    # Skip ngrok's browser interstitial on free tunnels
    headers["ngrok-skip-browser-warning"] = "true"
    return headers


class Forwarder:
    """Send one inbound request to a backend within a fixed time budget."""

    def __init__(
        self,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
        overall_timeout: float = DEFAULT_OVERALL_TIMEOUT,
        retry_margin: float = DEFAULT_RETRY_MARGIN,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        forward_headers: Optional[list[str]] = None,
        default_user_agent: str = "Flush-Load-Balancer/1.0",
        verbose: bool = False,
        resolver: Optional[AbstractResolver] = None,
    ):
        self.attempt_timeout = attempt_timeout
        self.overall_timeout = overall_timeout
        self.retry_margin = retry_margin
        self.max_attempts = max_attempts
        self.forward_headers = forward_headers or list(DEFAULT_FORWARD_HEADERS)
        self.default_user_agent = default_user_agent
        self.verbose = verbose
        self.resolver = resolver
        self.session: Optional[ClientSession] = None

    async def start(self):
        """Open the outbound client session."""
        if self.session is None:
            # force_close disables keep-alive: every attempt gets a fresh connection
            connector = TCPConnector(
                limit=0,
                force_close=True,
                enable_cleanup_closed=True,
                resolver=self.resolver,
            )
            self.session = ClientSession(
                connector=connector,
                auto_decompress=True,
                middlewares=(single_attempt_middleware,),
            )

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def forward(
        self,
        request: RelayRequest,
        target_base_url: str,
        service_path: Optional[str] = None,
        request_id: str = "-",
    ) -> ForwardResult:
        """Forward ``request`` to ``target_base_url`` + ``service_path``.

        Returns the backend response verbatim, any status code included.

        Raises:
            ForwardTimeout: The attempt or overall deadline expired
            ForwardConnectionError: Reset, refused, broken pipe, abort or DNS failure
            UpstreamError: Any other client-side failure
        """
        await self.start()

        path = service_path if service_path is not None else request.path_qs
        url = f"{target_base_url.rstrip('/')}{path}"
        headers = build_forward_headers(request, self.forward_headers, self.default_user_agent)
        body = request.body if request.body else None

        start = time.monotonic()
        deadline = start + self.overall_timeout
        attempt = 0

        while True:
            attempt += 1
            remaining = deadline - time.monotonic()
            if self.verbose:
                print(f"[{request_id}] Attempt {attempt}/{self.max_attempts}: {url}")

            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                timeout = ClientTimeout(total=min(self.attempt_timeout, remaining))
                async with self.session.request(
                    method=request.method,
                    url=url,
                    headers=headers,
                    data=body,
                    timeout=timeout,
                    allow_redirects=False,
                ) as resp:
                    response_body = await resp.read()
                    duration_ms = (time.monotonic() - start) * 1000
                    return ForwardResult(
                        status=resp.status,
                        body=response_body,
                        headers={
                            k: v for k, v in resp.headers.items()
                            if k.lower() not in RESPONSE_SKIP_HEADERS
                        },
                        duration_ms=duration_ms,
                        attempts=attempt,
                    )

            except (asyncio.TimeoutError, ClientError) as e:
                now = time.monotonic()
                elapsed = now - start
                remaining = deadline - now
                code = error_code_for(e)
                transient = code in TRANSIENT_CODES
                if self.verbose:
                    print(f"[{request_id}] Attempt {attempt}/{self.max_attempts} failed - {code}: {e} ({elapsed * 1000:.0f}ms)")

                if transient and attempt < self.max_attempts and remaining > self.retry_margin:
                    if self.verbose:
                        print(f"[{request_id}] Quick retry ({elapsed * 1000:.0f}ms elapsed, {remaining * 1000:.0f}ms remaining)")
                    continue

                raise self._classify(e, code, transient, url, elapsed, attempt) from e

    def _classify(
        self,
        exc: BaseException,
        code: str,
        transient: bool,
        url: str,
        elapsed: float,
        attempts: int,
    ) -> ForwardError:
        message = str(exc) or type(exc).__name__
        kwargs = dict(
            error_code=code,
            target=url,
            duration_ms=elapsed * 1000,
            attempts=attempts,
            transient=transient,
        )
        if code == "ETIMEDOUT" or elapsed >= self.overall_timeout:
            return ForwardTimeout(message, **kwargs)
        if code in CONNECTION_CODES:
            return ForwardConnectionError(message, **kwargs)
        return UpstreamError(message, **kwargs)
