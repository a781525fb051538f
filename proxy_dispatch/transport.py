"""
Transport engine used by the dispatch layer.

Forwards plain HTTP requests with a pooled ``httpx.AsyncClient`` and
WebSocket upgrades with ``websockets``. It only moves bytes: which requests
are proxied, and where to, is decided by the caller through the
``ProxyRequest`` and the per-request ``Options`` it passes in.

Events (listeners registered with :meth:`ProxyTransport.on`):

* ``error``      ``(error, request, response)`` -- ``response`` is the client
                 WebSocket for upgrades, ``None`` for HTTP
* ``proxy_req``  ``(upstream_request, request)``
* ``proxy_res``  ``(upstream_response, request)``
* ``open``       ``(upstream_socket, request)``
* ``close``      ``(request, websocket)``
"""

import asyncio
import errno
import inspect
import logging
import socket
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import httpx
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.responses import PlainTextResponse, Response, StreamingResponse
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from proxy_dispatch.errors import ProxyError
from proxy_dispatch.options import Options
from proxy_dispatch.request import ProxyRequest
from proxy_dispatch.utils import join_url
from proxy_dispatch.utils.traced_requests import traced_proxy_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Proxy timeouts (seconds)
PROXY_TIMEOUT_TOTAL = 30.0
PROXY_TIMEOUT_CONNECT = 10.0
PROXY_TIMEOUT_POOL = 5.0

# Connection pool limits
PROXY_MAX_CONNECTIONS = 100
PROXY_MAX_KEEPALIVE = 20
PROXY_KEEPALIVE_EXPIRY = 30.0

# Hop-by-hop headers that should NOT be forwarded (RFC 7230)
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# The websockets client generates its own handshake headers
WS_HOP_BY_HOP_HEADERS = HOP_BY_HOP_HEADERS | frozenset(
    {
        "host",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
    }
)

# Body is re-framed by httpx
REQUEST_ONLY_SKIPPED_HEADERS = frozenset({"content-length"})

WS_CLOSE_INTERNAL_ERROR = 1011


def classify_error(exc: BaseException) -> Optional[str]:
    """Map a transport exception to an errno-style code, or None."""
    seen = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return "ENOTFOUND"
        if isinstance(current, OSError) and current.errno in errno.errorcode:
            return errno.errorcode[current.errno]
        current = current.__cause__ or current.__context__

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "ETIMEDOUT"
    if isinstance(exc, httpx.ConnectError):
        return "ECONNREFUSED"
    if isinstance(exc, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)):
        return "ECONNRESET"
    return None


def to_proxy_error(exc: BaseException) -> ProxyError:
    if isinstance(exc, ProxyError):
        return exc
    error = ProxyError(str(exc) or type(exc).__name__, code=classify_error(exc))
    error.__cause__ = exc
    return error


def to_websocket_url(url: str) -> str:
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


def prepare_headers(
    request: ProxyRequest,
    options: Options,
    skipped: frozenset = HOP_BY_HOP_HEADERS,
) -> Dict[str, str]:
    """
    Headers for the upstream request: hop-by-hop headers removed,
    ``Host`` replaced by the target's when ``change_origin`` is set,
    ``X-Forwarded-*`` added when ``xfwd`` is set, ``options.headers`` last.
    """
    headers = {}
    for name, value in request.headers.items():
        name_lower = name.lower()
        if name_lower in skipped or name_lower in REQUEST_ONLY_SKIPPED_HEADERS:
            continue
        if name_lower == "host" and options.change_origin:
            continue
        headers[name_lower] = value

    if options.xfwd:
        client_ip = request.client_host or "unknown"
        existing_xff = headers.get("x-forwarded-for", "")
        headers["x-forwarded-for"] = f"{existing_xff}, {client_ip}".strip(", ")
        headers["x-forwarded-host"] = request.headers.get("host", "")
        headers["x-forwarded-proto"] = request.scheme
        headers["x-forwarded-port"] = _port_of(request.headers.get("host", ""), request.scheme)

    for name, value in (options.headers or {}).items():
        headers[name.lower()] = value

    return headers


def _port_of(host: str, scheme: str) -> str:
    if ":" in host:
        return host.rsplit(":", 1)[1]
    return "443" if scheme in ("https", "wss") else "80"


class ProxyTransport:
    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Callable) -> None:
        self._listeners[event].append(listener)

    def listeners(self, event: str) -> List[Callable]:
        return list(self._listeners.get(event, ()))

    async def emit(self, event: str, *args) -> List[Any]:
        """Invoke every listener of ``event``; listener failures are logged, not raised."""
        results = []
        for listener in self.listeners(event):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    result = await result
            except Exception:
                logger.exception(f"[HPM] '{event}' listener {listener!r} failed")
                continue
            results.append(result)
        return results

    # ------------------------------------------------------------------
    # HTTP client
    # ------------------------------------------------------------------

    def get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    timeout=PROXY_TIMEOUT_TOTAL,
                    connect=PROXY_TIMEOUT_CONNECT,
                    read=PROXY_TIMEOUT_TOTAL,
                    write=PROXY_TIMEOUT_TOTAL,
                    pool=PROXY_TIMEOUT_POOL,
                ),
                limits=httpx.Limits(
                    max_connections=PROXY_MAX_CONNECTIONS,
                    max_keepalive_connections=PROXY_MAX_KEEPALIVE,
                    keepalive_expiry=PROXY_KEEPALIVE_EXPIRY,
                ),
                follow_redirects=False,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    async def forward(self, request: ProxyRequest, options: Options) -> Response:
        """Forward a plain HTTP request to ``options.target`` + ``request.url``."""
        target_url = join_url(options.target, request.url)
        headers = prepare_headers(request, options)
        timeout = {} if options.proxy_timeout is None else {"timeout": options.proxy_timeout}

        with traced_proxy_request(tracer, "proxy_request", request, target_url) as span:
            try:
                client = self.get_client()
                upstream_request = client.build_request(
                    request.method,
                    target_url,
                    headers=headers,
                    content=await request.body(),
                    **timeout,
                )
                await self.emit("proxy_req", upstream_request, request)
                upstream = await client.send(upstream_request, stream=True)
            except (httpx.HTTPError, OSError) as e:
                error = to_proxy_error(e)
                span.set_attribute("proxy.error", error.code or type(e).__name__)
                return await self._handle_error(error, request, None)

            span.set_attribute("proxy.status_code", upstream.status_code)
            await self.emit("proxy_res", upstream, request)

            response = StreamingResponse(
                upstream.aiter_raw(),
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose),
            )
            response.raw_headers = [
                (name.encode("latin-1"), value.encode("latin-1"))
                for name, value in upstream.headers.multi_items()
                if name.lower() not in HOP_BY_HOP_HEADERS
            ]
            return response

    async def forward_upgrade(
        self, request: ProxyRequest, websocket: WebSocket, options: Options
    ) -> None:
        """Open an upstream WebSocket and pipe frames both ways until either side closes."""
        target_url = to_websocket_url(join_url(options.target, request.url))
        headers = prepare_headers(request, options, WS_HOP_BY_HOP_HEADERS)
        subprotocols = [
            p.strip()
            for p in request.headers.get("sec-websocket-protocol", "").split(",")
            if p.strip()
        ]

        with traced_proxy_request(tracer, "proxy_upgrade", request, target_url) as span:
            try:
                upstream = await connect(
                    target_url,
                    additional_headers=headers,
                    subprotocols=subprotocols or None,
                    open_timeout=options.proxy_timeout or PROXY_TIMEOUT_CONNECT,
                )
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                error = to_proxy_error(e)
                span.set_attribute("proxy.error", error.code or type(e).__name__)
                await self._handle_error(error, request, websocket)
                await _close_quietly(websocket, WS_CLOSE_INTERNAL_ERROR)
                return

            try:
                await self.emit("open", upstream, request)
                await websocket.accept(subprotocol=upstream.subprotocol)
                await self._pipe(request, websocket, upstream)
            finally:
                await upstream.close()
                await self.emit("close", request, websocket)

    async def _pipe(self, request: ProxyRequest, websocket: WebSocket, upstream) -> None:
        async def client_to_upstream():
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])

        async def upstream_to_client():
            async for message in upstream:
                if isinstance(message, str):
                    await websocket.send_text(message)
                else:
                    await websocket.send_bytes(message)
            await _close_quietly(websocket, _relayable_close_code(upstream.close_code))

        tasks = [
            asyncio.ensure_future(client_to_upstream()),
            asyncio.ensure_future(upstream_to_client()),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            exc = task.exception()
            if exc is None or isinstance(exc, (ConnectionClosed, WebSocketDisconnect)):
                continue
            await self._handle_error(to_proxy_error(exc), request, websocket)
            await _close_quietly(websocket, WS_CLOSE_INTERNAL_ERROR)

    async def _handle_error(
        self, error: ProxyError, request: ProxyRequest, response: Any
    ) -> Response:
        for result in await self.emit("error", error, request, response):
            if isinstance(result, Response):
                return result
        return PlainTextResponse("Bad gateway", status_code=502)


def _relayable_close_code(code: Optional[int]) -> int:
    # 1005 and 1006 are reserved and must not be sent in a close frame
    if not code or code in (1005, 1006):
        return 1000
    return code


async def _close_quietly(websocket: WebSocket, code: int) -> None:
    if (
        websocket.application_state == WebSocketState.DISCONNECTED
        or websocket.client_state == WebSocketState.DISCONNECTED
    ):
        return
    try:
        await websocket.close(code=code)
    except RuntimeError as e:
        logger.debug(f"[HPM] WebSocket already closed: {e}")
