"""
MJPEG re-streaming proxy.

Each downstream GET /proxied-stream opens its own streaming GET to the
camera URL and pipes the raw bytes through unchanged. When the downstream
client goes away the upstream request is aborted, otherwise the camera
connection would stay open for good.
"""

import asyncio
import errno
import logging
from typing import AsyncIterator, Callable, Optional

import httpx
from fastapi import Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from .errors import UpstreamConnectError, UpstreamStreamError

logger = logging.getLogger(__name__)

MJPEG_MEDIA_TYPE = "multipart/x-mixed-replace; boundary=--jpgboundary"
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, max-age=0, must-revalidate",
    "Pragma": "no-cache",
    "Connection": "keep-alive",
}
DEFAULT_CONNECT_TIMEOUT = 10.0


def _is_connection_refused(exc: BaseException) -> bool:
    """Check whether a connect error was caused by the host refusing the connection."""
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, ConnectionRefusedError):
            return True
        if isinstance(current, OSError) and current.errno == errno.ECONNREFUSED:
            return True
        pending.append(current.__cause__)
        pending.append(current.__context__)
        pending.extend(getattr(current, "exceptions", None) or ())
    return False


class ProxySession:
    """
    One upstream camera stream feeding one downstream client.

    ``close()`` is idempotent; the upstream response and client are closed
    exactly once however many paths try to end the session.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        on_close: Optional[Callable[['ProxySession'], None]] = None,
    ):
        self.client = client
        self.response = response
        self.on_close = on_close
        self.bytes_sent = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _upstream_chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            raise UpstreamStreamError(str(e) or type(e).__name__)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield upstream bytes until the camera ends or fails."""
        try:
            async for chunk in self._upstream_chunks():
                self.bytes_sent += len(chunk)
                yield chunk
        except UpstreamStreamError as e:
            # Headers are already out, so the only option is to end the stream.
            logger.error(f"Proxy: Error in stream from IP Webcam: {e}")
            return
        logger.info("Proxy: Stream from IP Webcam ended.")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.on_close:
            self.on_close(self)
        await asyncio.shield(self._abort_upstream())

    async def _abort_upstream(self) -> None:
        try:
            await self.response.aclose()
        finally:
            await self.client.aclose()


class MJPEGStreamResponse(StreamingResponse):
    """Streaming response that always closes its proxy session when it ends."""

    def __init__(self, session: ProxySession):
        super().__init__(
            session.iter_bytes(),
            media_type=MJPEG_MEDIA_TYPE,
            headers=NO_CACHE_HEADERS,
        )
        self.session = session

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.session.close()


class MJPEGProxy:
    """
    Fan-out of the camera stream to any number of viewers.

    Every viewer gets an independent upstream connection; there is no
    shared upstream and no admission control.
    """

    def __init__(
        self,
        get_camera_url: Callable[[], Optional[str]],
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ):
        """
        Initialize the proxy.

        Args:
            get_camera_url: Returns the current camera URL, or None if unset
            connect_timeout: Seconds allowed to establish the upstream connection
                and receive its response headers
            client_factory: Builds the HTTP client for each session
        """
        self.get_camera_url = get_camera_url
        self.connect_timeout = connect_timeout
        self.client_factory = client_factory

        # Statistics
        self._active_sessions = 0
        self._total_sessions = 0
        self._upstream_failures = 0

    @property
    def active_sessions(self) -> int:
        return self._active_sessions

    async def open_session(self, url: str) -> ProxySession:
        """
        Connect to the camera and wait for its response headers.

        Raises:
            UpstreamConnectError: With 502 for a refused connection, 504 for a
                connect timeout or headers not arriving within
                ``connect_timeout``, 500 for anything else (DNS failure,
                unreachable host, bad status)
        """
        # The body is unbounded (an MJPEG stream never ends), but getting as
        # far as the response headers is not.
        client = self.client_factory(timeout=httpx.Timeout(None, connect=self.connect_timeout))
        try:
            response = await asyncio.wait_for(
                client.send(client.build_request("GET", url), stream=True),
                timeout=self.connect_timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            await client.aclose()
            raise UpstreamConnectError("Proxy: Connection to IP Webcam timed out.", 504)
        except httpx.ConnectError as e:
            await client.aclose()
            if _is_connection_refused(e):
                raise UpstreamConnectError(
                    "Proxy: Could not connect to IP Webcam (Connection Refused).", 502
                )
            logger.debug(f"Proxy: upstream connect detail: {e!r}")
            raise UpstreamConnectError("Proxy: Error connecting to IP Webcam.", 500)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            await client.aclose()
            logger.debug(f"Proxy: upstream error detail: {e!r}")
            raise UpstreamConnectError("Proxy: Error connecting to IP Webcam.", 500)

        if not response.is_success:
            status_code = response.status_code
            await response.aclose()
            await client.aclose()
            raise UpstreamConnectError(
                f"Proxy: IP Webcam responded with status {status_code}.", 500
            )

        self._active_sessions += 1
        self._total_sessions += 1
        return ProxySession(client, response, on_close=self._session_closed)

    def _session_closed(self, session: ProxySession) -> None:
        self._active_sessions -= 1
        logger.info(
            f"Proxy: Client disconnected after {session.bytes_sent} bytes. "
            f"Remaining proxy clients: {self._active_sessions}"
        )

    async def handle(self, request: Request) -> Response:
        """GET /proxied-stream"""
        url = self.get_camera_url()
        if not url:
            return PlainTextResponse("IP Webcam URL not set on server.", status_code=404)

        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Proxy: Client {client_host} connected. Requesting stream from: {url}")

        try:
            session = await self.open_session(url)
        except UpstreamConnectError as e:
            self._upstream_failures += 1
            logger.error(f"Proxy: Failed to connect to IP Webcam: {e}")
            return PlainTextResponse(str(e), status_code=e.status_code)

        return MJPEGStreamResponse(session)

    def get_stats(self) -> dict:
        """Get proxy statistics."""
        return {
            "active_sessions": self._active_sessions,
            "total_sessions": self._total_sessions,
            "upstream_failures": self._upstream_failures,
        }
