import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import FastAPI
from starlette.requests import Request
from starlette.websockets import WebSocket


def _raw_headers(headers):
    return [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()]


@pytest.fixture
def server_app():
    """The FastAPI application a request was received by."""
    return FastAPI()


@pytest.fixture
def make_http_request(server_app):
    """Build a Starlette Request for ``path`` (query allowed)."""

    def _make(path="/", method="GET", headers=None, body=b"", app=server_app):
        path, _, query = path.partition("?")
        scope = {
            "type": "http",
            "method": method,
            "path": path,
            "root_path": "",
            "query_string": query.encode("latin-1"),
            "headers": _raw_headers(headers or {"host": "localhost:3000"}),
            "server": ("localhost", 3000),
            "client": ("192.168.1.100", 50000),
            "scheme": "http",
            "app": app,
        }

        async def receive():
            return {"type": "http.request", "body": body, "more_body": False}

        return Request(scope, receive)

    return _make


@pytest.fixture
def make_websocket(server_app):
    """Build a Starlette WebSocket in the CONNECTING state with mocked channels."""

    def _make(path="/", headers=None, app=server_app):
        path, _, query = path.partition("?")
        scope = {
            "type": "websocket",
            "path": path,
            "root_path": "",
            "query_string": query.encode("latin-1"),
            "headers": _raw_headers(headers or {"host": "localhost:3000"}),
            "server": ("localhost", 3000),
            "client": ("192.168.1.100", 50000),
            "scheme": "ws",
            "app": app,
        }
        return WebSocket(scope, receive=AsyncMock(), send=AsyncMock())

    return _make


@pytest.fixture
def mock_upstream():
    """An httpx client whose requests are answered in-process and recorded."""
    calls = []
    state = SimpleNamespace(calls=calls, error=None, status_code=200, content=b"ok", headers={})

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if state.error is not None:
            raise state.error
        # a stream body stays unread until the proxy relays it
        return httpx.Response(
            state.status_code,
            headers=state.headers,
            stream=httpx.ByteStream(state.content),
        )

    state.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return state


@pytest.fixture(autouse=True)
def propagate_proxy_logs():
    """uvicorn disables propagation on its loggers; caplog needs it back."""
    loggers = [logging.getLogger("uvicorn.error"), logging.getLogger("uvicorn.error.proxy")]
    original = [logger.propagate for logger in loggers]
    for logger in loggers:
        logger.propagate = True
    yield
    for logger, propagate in zip(loggers, original):
        logger.propagate = propagate
