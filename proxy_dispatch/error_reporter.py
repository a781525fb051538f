"""
Turn transport failures into a single structured log record.

The record is emitted on the mount logger with the fields also attached as
``extra={"proxy": {...}}`` so JSON formatters can pick them up.
"""

import logging
from typing import Any, Callable, Optional, Sequence

from proxy_dispatch.options import Options
from proxy_dispatch.request import ProxyRequest

ERROR_REFERENCE = "https://www.python-httpx.org/exceptions/"

ERROR_MESSAGE = (
    "[HPM] Error occurred while trying to proxy request %s from %s to %s (%s) (%s)"
)

# Upgrade requests and plain HTTP requests do not always expose the same
# fields, so the hostname is looked up in this order.
HOSTNAME_ACCESSORS: Sequence[Callable[[Any], Optional[str]]] = (
    lambda request: request.headers.get("host"),
    lambda request: getattr(request, "hostname", None),
    lambda request: getattr(request, "host", None),
)


def _safe_str(obj) -> str:
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def get_hostname(request: Any) -> Optional[str]:
    for accessor in HOSTNAME_ACCESSORS:
        try:
            hostname = accessor(request)
        except Exception:
            continue
        if hostname:
            return hostname
    return None


def get_target_host(target: Any) -> Any:
    return getattr(target, "host", None) or target


def describe_error(error: Any) -> Any:
    """An error's ``code`` when it has one, the error itself otherwise."""
    return getattr(error, "code", None) or error


class ErrorReporter:
    """Terminal sink for transport errors of one proxy mount. Never raises."""

    def __init__(self, options: Options, logger: logging.Logger):
        self.options = options
        self.logger = logger

    def __call__(self, error: Any, request: ProxyRequest, response: Any = None) -> None:
        self.report(error, request, response)

    def report(self, error: Any, request: ProxyRequest, response: Any = None) -> None:
        try:
            path = getattr(request, "original_url", None) or getattr(request, "url", None)
            hostname = get_hostname(request)
            target = get_target_host(self.options.target)
            code = describe_error(error)

            self.logger.error(
                ERROR_MESSAGE,
                path,
                hostname,
                target,
                code if isinstance(code, str) else _safe_str(code),
                ERROR_REFERENCE,
                extra={
                    "proxy": {
                        "path": path,
                        "hostname": hostname,
                        "target": _safe_str(target),
                        "error": code,
                        "reference": ERROR_REFERENCE,
                    }
                },
            )
        except Exception:
            try:
                self.logger.error("[HPM] Error reporting failed")
            except Exception:
                pass
