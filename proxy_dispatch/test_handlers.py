import pytest
from starlette.responses import PlainTextResponse

from proxy_dispatch import handlers
from proxy_dispatch.errors import ProxyError
from proxy_dispatch.options import Options
from proxy_dispatch.request import ProxyRequest
from proxy_dispatch.transport import ProxyTransport


def _request():
    return ProxyRequest(url="/api/users", headers={"host": "proxy.local"})


class TestDefaultErrorHandler:
    @pytest.mark.parametrize("code", ["ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT"])
    def test_gateway_timeout_codes(self, code):
        response = handlers.default_error_handler(ProxyError("x", code=code), _request())
        assert response.status_code == 504
        assert response.body == b"Error occurred while trying to proxy: proxy.local/api/users"

    def test_other_errors(self):
        response = handlers.default_error_handler(RuntimeError("x"), _request())
        assert response.status_code == 500

    def test_upgrade_errors_produce_no_response(self):
        assert handlers.default_error_handler(ProxyError("x"), _request(), object()) is None


class TestInit:
    def test_default_error_handler_attached(self):
        transport = ProxyTransport()
        handlers.init(transport, Options(target="http://x"))
        assert transport.listeners("error") == [handlers.default_error_handler]

    def test_custom_error_handler_replaces_default(self):
        def on_error(error, request, response):
            return PlainTextResponse("custom", status_code=418)

        transport = ProxyTransport()
        handlers.init(transport, Options(target="http://x", on_error=on_error))
        assert transport.listeners("error") == [on_error]

    def test_option_callbacks_attached(self):
        def on_proxy_req(upstream_request, request):
            pass

        def on_close(request, websocket):
            pass

        transport = ProxyTransport()
        handlers.init(
            transport,
            Options(target="http://x", on_proxy_req=on_proxy_req, on_close=on_close),
        )
        assert transport.listeners("proxy_req") == [on_proxy_req]
        assert transport.listeners("close") == [on_close]
        assert transport.listeners("proxy_res") == []
