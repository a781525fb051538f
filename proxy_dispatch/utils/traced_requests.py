import logging
from contextlib import contextmanager
from typing import Dict, Optional

from opentelemetry.trace import Tracer

from proxy_dispatch.request import ProxyRequest

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_proxy_request(
    tracer: Tracer,
    operation: str,
    request: ProxyRequest,
    target_url: str,
    extra_attrs: Optional[Dict] = None,
):
    """Context manager to create a span and set the common proxy attributes."""
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("proxy.method", request.method)
        span.set_attribute("proxy.path", request.original_url or request.url)
        span.set_attribute("proxy.target_url", target_url)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, v)
        logger.debug(f"[HPM] {operation}: {request.method} {request.url} -> {target_url}")
        yield span
