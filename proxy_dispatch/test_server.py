from types import SimpleNamespace
from unittest.mock import MagicMock

from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export import SpanExportResult

from proxy_dispatch import server
from proxy_dispatch.middleware import create_proxy_middleware
from proxy_dispatch.options import Options
from proxy_dispatch.transport import ProxyTransport
from proxy_dispatch.vars import _parse_map


class TestParseMap:
    def test_ordered_pairs(self):
        assert list(_parse_map("^/api/old=/new, ^/api=/v1").items()) == [
            ("^/api/old", "/new"),
            ("^/api", "/v1"),
        ]

    def test_empty_value_allowed(self):
        assert _parse_map("^/api=") == {"^/api": ""}

    def test_ignores_malformed_entries(self):
        assert _parse_map("novalue,,=x") == {}

    def test_empty(self):
        assert _parse_map("") == {}


class TestOptionsFromEnv:
    def test_nothing_configured(self, monkeypatch):
        monkeypatch.setattr(server, "PROXY_TARGET", "")
        monkeypatch.setattr(server, "PROXY_ROUTER", {})
        assert server.options_from_env() is None

    def test_target_configured(self, monkeypatch):
        monkeypatch.setattr(server, "PROXY_TARGET", "http://localhost:9000")
        monkeypatch.setattr(server, "PROXY_PATH_REWRITE", {"^/api": ""})
        monkeypatch.setattr(server, "PROXY_WS", True)

        options = server.options_from_env()

        assert options.target == "http://localhost:9000"
        assert options.path_rewrite == {"^/api": ""}
        assert options.router is None
        assert options.ws is True

    def test_router_only(self, monkeypatch):
        monkeypatch.setattr(server, "PROXY_TARGET", "")
        monkeypatch.setattr(server, "PROXY_ROUTER", {"dev.localhost": "http://localhost:8000"})

        options = server.options_from_env()

        assert options.target is None
        assert options.router == {"dev.localhost": "http://localhost:8000"}


class TestCreateApp:
    def test_health_without_proxy(self):
        client = TestClient(server.create_app(None))
        assert client.get("/health").json() == {"status": "ok"}

    def test_proxy_mounted(self, mock_upstream):
        proxy = create_proxy_middleware(
            "/api",
            Options(target="http://localhost:9000"),
            transport=ProxyTransport(client=mock_upstream.client),
        )
        app = server.create_app(proxy)

        with TestClient(app) as client:
            assert client.get("/api/ping").text == "ok"
            assert client.get("/health").json() == {"status": "ok"}

        assert app.state.proxy is proxy
        assert [str(r.url) for r in mock_upstream.calls] == ["http://localhost:9000/api/ping"]
        assert mock_upstream.client.is_closed

    def test_own_routes_stay_local_under_root_context(self, mock_upstream):
        proxy = create_proxy_middleware(
            "/",
            Options(target="http://localhost:9000"),
            transport=ProxyTransport(client=mock_upstream.client),
        )
        app = server.create_app(proxy)

        @app.get("/metrics")
        async def metrics():
            return "metrics"

        client = TestClient(app)

        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/metrics").json() == "metrics"
        assert mock_upstream.calls == []

        assert client.get("/anything").text == "ok"
        assert [str(r.url) for r in mock_upstream.calls] == ["http://localhost:9000/anything"]

    def test_local_paths(self):
        assert {"/health", "/docs", "/openapi.json"} <= server.local_paths(server.create_app(None))

    def test_build_proxy_uses_context(self, monkeypatch):
        monkeypatch.setattr(server, "PROXY_CONTEXT", ["/api", "/ajax"])
        proxy = server.build_proxy(Options(target="http://localhost:9000"))
        assert proxy.config.context == ["/api", "/ajax"]

    def test_build_proxy_without_configuration(self, monkeypatch):
        monkeypatch.setattr(server, "PROXY_TARGET", "")
        monkeypatch.setattr(server, "PROXY_ROUTER", {})
        assert server.build_proxy() is None


class TestFilteringSpanExporter:
    def _span(self, event_type=None):
        return SimpleNamespace(attributes={"asgi.event.type": event_type} if event_type else {})

    def test_drops_relay_event_spans(self):
        inner = MagicMock()
        exporter = server.FilteringSpanExporter(inner)
        request_span = self._span("http.request")
        plain_span = self._span()

        exporter.export(
            [
                request_span,
                self._span("http.response.body"),
                self._span("websocket.send"),
                self._span("websocket.receive"),
                plain_span,
            ]
        )

        inner.export.assert_called_once_with([request_span, plain_span])

    def test_nothing_left_to_export(self):
        inner = MagicMock()
        exporter = server.FilteringSpanExporter(inner)

        result = exporter.export([self._span("http.response.body")])

        assert result == SpanExportResult.SUCCESS
        inner.export.assert_not_called()
