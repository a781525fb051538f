"""
Request dispatch for a single proxy mount.

``HttpProxyMiddleware`` decides per request whether it is proxied, to which
target and with which path, and hands it to the transport engine:

    proxy = create_proxy_middleware("/api", {"target": "http://localhost:9000"})
    app.middleware("http")(proxy)

With ``ws`` enabled the first request also subscribes the mount to the
application's upgrades. All subscribed mounts of one application share a
single catch-all WebSocket route that hands each upgrade to the first mount
whose context matches, so upgrades run through the same decision steps.
``proxy.upgrade`` is available to wire upgrades by hand instead.
"""

import inspect
import logging
import threading
from dataclasses import replace
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from starlette.requests import Request
from starlette.responses import Response
from starlette.websockets import WebSocket

from proxy_dispatch import handlers
from proxy_dispatch.config_factory import create_config
from proxy_dispatch.context_matcher import create_matcher
from proxy_dispatch.error_reporter import ErrorReporter
from proxy_dispatch.logger import get_arrow
from proxy_dispatch.options import Options
from proxy_dispatch.path_rewriter import create_path_rewriter
from proxy_dispatch.request import ProxyRequest
from proxy_dispatch.router import create_router, get_target
from proxy_dispatch.transport import ProxyTransport

CallNext = Callable[[Request], Awaitable[Response]]

UPGRADE_ROUTE_PATH = "/{path:path}"
UPGRADE_MOUNTS_STATE = "proxy_upgrade_mounts"

_upgrade_route_lock = threading.Lock()


class HttpProxyMiddleware:
    def __init__(
        self,
        context: Any,
        options: Union[Mapping[str, Any], Options, None] = None,
        transport: Optional[ProxyTransport] = None,
    ):
        self.config = create_config(context, options)
        self.proxy_options = self.config.options
        self.logger: logging.Logger = self.config.logger

        self._should_proxy = create_matcher(self.config.context)
        self._path_rewriter = create_path_rewriter(self.proxy_options.path_rewrite)
        self._router = create_router(self.proxy_options.router)

        self._ws_internal_subscribed = False
        self._ws_subscribe_lock = threading.Lock()

        self.transport = transport or ProxyTransport()
        handlers.init(self.transport, self.proxy_options)
        self.transport.on("error", ErrorReporter(self.proxy_options, self.logger))

        self.logger.info(
            f"[HPM] Proxy created: {self.config.context}  -> {self.proxy_options.target}"
        )

    @property
    def ws_internal_subscribed(self) -> bool:
        return self._ws_internal_subscribed

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        proxy_request = ProxyRequest.from_connection(request)

        if self.should_proxy(proxy_request):
            active_options = await self.prepare_proxy_request(proxy_request)
            response = await self.transport.forward(proxy_request, active_options)
        else:
            response = await call_next(request)

        if self.proxy_options.ws is True:
            # the first request gives access to the application to subscribe upgrades on
            self.catch_upgrade_request(request.scope.get("app"))

        return response

    def should_proxy(self, request: ProxyRequest) -> bool:
        path = request.original_url or request.url
        return self._should_proxy(path, request)

    async def prepare_proxy_request(self, request: ProxyRequest) -> Options:
        """
        Apply ``router`` then ``path_rewrite`` and return the per-request options.

        Order matters: the router sees the original path, never one already
        modified by ``path_rewrite``.
        """
        request.url = request.original_url or request.url

        original_path = request.url
        active_options = replace(self.proxy_options)

        active_options = await self._apply_router(request, active_options)
        await self._apply_path_rewrite(request)

        if self.logger.isEnabledFor(logging.DEBUG):
            arrow = get_arrow(
                original_path,
                request.url,
                self.proxy_options.target,
                active_options.target,
            )
            self.logger.debug(
                "[HPM] %s %s %s %s",
                request.method,
                original_path,
                arrow,
                active_options.target,
            )

        return active_options

    async def _apply_router(self, request: ProxyRequest, options: Options) -> Options:
        if self._router is None:
            return options

        new_target = await get_target(request, options, self._router)
        if new_target is None:
            return options

        self.logger.debug(
            '[HPM] Router new target: %s -> "%s"', options.target, new_target
        )
        return replace(options, target=new_target)

    async def _apply_path_rewrite(self, request: ProxyRequest) -> None:
        if self._path_rewriter is None:
            return

        path = self._path_rewriter(request.url, request)
        if inspect.isawaitable(path):
            path = await path

        if isinstance(path, str):
            request.url = path
        else:
            self.logger.info(
                "[HPM] pathRewrite: No rewritten path found. (%s)", request.url
            )

    # ------------------------------------------------------------------
    # WebSocket upgrades
    # ------------------------------------------------------------------

    def catch_upgrade_request(self, server: Any) -> bool:
        """
        Subscribe this mount to the upgrades of ``server`` once per middleware.

        Returns True only for the call that performed the subscription.
        """
        if server is None or self._ws_internal_subscribed:
            return False

        with self._ws_subscribe_lock:
            if self._ws_internal_subscribed:
                return False
            subscribe_upgrades(server, self)
            # prevents duplicate upgrade handling if an external upgrade is also wired
            self._ws_internal_subscribed = True

        self.logger.debug("[HPM] Subscribed to WebSocket upgrades")
        return True

    async def handle_upgrade(self, websocket: WebSocket) -> None:
        proxy_request = ProxyRequest.from_connection(websocket)

        if not self.should_proxy(proxy_request):
            await websocket.close()
            return

        await self.proxy_upgrade(proxy_request, websocket)

    async def proxy_upgrade(self, proxy_request: ProxyRequest, websocket: WebSocket) -> None:
        active_options = await self.prepare_proxy_request(proxy_request)
        self.logger.info("[HPM] Upgrading to WebSocket")
        await self.transport.forward_upgrade(proxy_request, websocket, active_options)

    async def upgrade(self, websocket: WebSocket) -> None:
        """External upgrade entry point, e.g. ``app.router.add_websocket_route("/ws", proxy.upgrade)``.

        Dropped once the internal subscription is active so an upgrade is
        never forwarded twice.
        """
        if self._ws_internal_subscribed:
            self.logger.warning(
                "[HPM] External upgrade for %s ignored: upgrades are already "
                "handled by the internal subscription (ws: true)",
                websocket.url.path,
            )
            await websocket.close()
            return

        await self.handle_upgrade(websocket)


def create_proxy_middleware(
    context: Any,
    options: Union[Mapping[str, Any], Options, None] = None,
    transport: Optional[ProxyTransport] = None,
) -> HttpProxyMiddleware:
    return HttpProxyMiddleware(context, options, transport)


def upgrade_mounts(server: Any) -> List[HttpProxyMiddleware]:
    """Mounts subscribed to the upgrades of ``server``, in subscription order."""
    return getattr(server.state, UPGRADE_MOUNTS_STATE, [])


def subscribe_upgrades(server: Any, proxy: HttpProxyMiddleware) -> None:
    """
    Add ``proxy`` to the upgrade dispatcher of ``server``.

    The first subscription installs a single catch-all WebSocket route; every
    later mount only joins the list that route walks through.
    """
    with _upgrade_route_lock:
        mounts = getattr(server.state, UPGRADE_MOUNTS_STATE, None)
        if mounts is None:
            mounts = []
            setattr(server.state, UPGRADE_MOUNTS_STATE, mounts)
            server.router.add_websocket_route(UPGRADE_ROUTE_PATH, _upgrade_dispatcher(mounts))
        mounts.append(proxy)


def _upgrade_dispatcher(mounts: List[HttpProxyMiddleware]):
    async def dispatch_upgrade(websocket: WebSocket) -> None:
        proxy_request = ProxyRequest.from_connection(websocket)
        for proxy in list(mounts):
            if proxy.should_proxy(proxy_request):
                await proxy.proxy_upgrade(proxy_request, websocket)
                return
        # no mount claims the upgrade and nothing else listens on this route
        await websocket.close()

    return dispatch_upgrade
