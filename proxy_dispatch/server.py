import logging
from contextlib import asynccontextmanager
from typing import Optional, Sequence, Set

from fastapi import FastAPI, Request
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.routing import Route

from proxy_dispatch.middleware import HttpProxyMiddleware, create_proxy_middleware
from proxy_dispatch.options import Options
from proxy_dispatch.vars import (
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    PROXY_CHANGE_ORIGIN,
    PROXY_CONTEXT,
    PROXY_LOG_LEVEL,
    PROXY_PATH_REWRITE,
    PROXY_ROUTER,
    PROXY_TARGET,
    PROXY_TIMEOUT,
    PROXY_WS,
    PROXY_XFWD,
    SERVICE_NAME,
)

logger = logging.getLogger("uvicorn.error")


# one span per relayed chunk or frame; the proxy_request / proxy_upgrade span covers them
RELAY_EVENT_TYPES = frozenset({"http.response.body", "websocket.send", "websocket.receive"})


def is_relay_event_span(span: ReadableSpan) -> bool:
    return bool(span.attributes) and span.attributes.get("asgi.event.type") in RELAY_EVENT_TYPES


class FilteringSpanExporter(SpanExporter):
    """Exports everything except the per-chunk and per-frame spans of proxied streams."""

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = [span for span in spans if not is_relay_event_span(span)]
        if not kept:
            return SpanExportResult.SUCCESS
        return self.exporter.export(kept)

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def options_from_env() -> Optional[Options]:
    """Proxy options from the PROXY_* variables, None when nothing to proxy to."""
    if not PROXY_TARGET and not PROXY_ROUTER:
        return None
    return Options(
        target=PROXY_TARGET or None,
        ws=PROXY_WS,
        path_rewrite=PROXY_PATH_REWRITE or None,
        router=PROXY_ROUTER or None,
        log_level=PROXY_LOG_LEVEL,
        change_origin=PROXY_CHANGE_ORIGIN,
        xfwd=PROXY_XFWD,
        proxy_timeout=PROXY_TIMEOUT,
    )


def configure_tracing(app: FastAPI) -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    tracer_provider = trace.get_tracer_provider()
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def build_proxy(options: Optional[Options] = None) -> Optional[HttpProxyMiddleware]:
    options = options or options_from_env()
    if options is None:
        logger.warning("[HPM] PROXY_TARGET and PROXY_ROUTER are unset, nothing is proxied")
        return None
    context = PROXY_CONTEXT[0] if len(PROXY_CONTEXT) == 1 else PROXY_CONTEXT
    return create_proxy_middleware(context, options)


def local_paths(app: FastAPI) -> Set[str]:
    """Paths of the service's own HTTP routes, never handed to the proxy."""
    return {route.path for route in app.router.routes if isinstance(route, Route)}


def create_app(proxy: Optional[HttpProxyMiddleware] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if proxy is not None:
            await proxy.transport.aclose()

    app = FastAPI(lifespan=lifespan)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    if proxy is not None:

        @app.middleware("http")
        async def proxy_requests(request: Request, call_next):
            # /health, /metrics and the docs stay local even under context "/"
            if request.url.path in local_paths(app):
                return await call_next(request)
            return await proxy(request, call_next)

        app.state.proxy = proxy

    return app


app = create_app(build_proxy())
Instrumentator().instrument(app).expose(app)
configure_tracing(app)

app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})
