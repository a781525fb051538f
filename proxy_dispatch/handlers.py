from typing import Any, Optional

from starlette.responses import PlainTextResponse, Response

from proxy_dispatch.logger import get_instance
from proxy_dispatch.options import Options
from proxy_dispatch.request import ProxyRequest
from proxy_dispatch.transport import ProxyTransport

logger = get_instance()

GATEWAY_TIMEOUT_CODES = {"ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT"}

# option name -> transport event
OPTION_EVENTS = {
    "on_error": "error",
    "on_proxy_req": "proxy_req",
    "on_proxy_res": "proxy_res",
    "on_open": "open",
    "on_close": "close",
}


def default_error_handler(
    error: Any, request: ProxyRequest, response: Any = None
) -> Optional[Response]:
    # Upgrades have no HTTP response left to write; the transport closes the socket
    if response is not None:
        return None

    host = request.headers.get("host", "")
    status_code = 504 if getattr(error, "code", None) in GATEWAY_TIMEOUT_CODES else 500
    return PlainTextResponse(
        f"Error occurred while trying to proxy: {host}{request.url}",
        status_code=status_code,
    )


def init(transport: ProxyTransport, options: Options) -> None:
    """Attach the event callbacks configured in ``options`` to ``transport``."""
    subscribed = []
    for option_name, event in OPTION_EVENTS.items():
        handler = getattr(options, option_name)
        if handler is None and event == "error":
            handler = default_error_handler
        if handler is not None:
            transport.on(event, handler)
            subscribed.append(event)

    logger.debug(f"[HPM] Subscribed to transport events: {subscribed}")
