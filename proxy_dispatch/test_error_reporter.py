import logging
from types import SimpleNamespace
from unittest.mock import Mock

import httpx

from proxy_dispatch.error_reporter import (
    ERROR_REFERENCE,
    ErrorReporter,
    describe_error,
    get_hostname,
    get_target_host,
)
from proxy_dispatch.errors import ProxyError
from proxy_dispatch.logger import LOGGER_NAME
from proxy_dispatch.options import Options
from proxy_dispatch.request import ProxyRequest


def _reporter(target="http://localhost:9000"):
    return ErrorReporter(Options(target=target), logging.getLogger(LOGGER_NAME))


def _last_record(caplog):
    records = [r for r in caplog.records if r.name == LOGGER_NAME]
    assert records, "no record emitted"
    return records[-1]


class TestReport:
    def test_record_uses_error_code(self, caplog):
        request = ProxyRequest(
            url="/users", original_url="/api/users", headers={"host": "proxy.local"}
        )
        error = ProxyError("connection refused", code="ECONNREFUSED")

        with caplog.at_level(logging.ERROR, logger=LOGGER_NAME):
            _reporter().report(error, request, None)

        record = _last_record(caplog)
        assert record.levelno == logging.ERROR
        assert record.proxy == {
            "path": "/api/users",
            "hostname": "proxy.local",
            "target": "http://localhost:9000",
            "error": "ECONNREFUSED",
            "reference": ERROR_REFERENCE,
        }
        assert "ECONNREFUSED" in record.getMessage()
        assert "/api/users" in record.getMessage()

    def test_record_uses_raw_error_without_code(self, caplog):
        request = ProxyRequest(url="/api/users", headers={"host": "proxy.local"})
        error = RuntimeError("upstream exploded")

        with caplog.at_level(logging.ERROR, logger=LOGGER_NAME):
            _reporter()(error, request)

        record = _last_record(caplog)
        assert record.proxy["error"] is error
        assert "upstream exploded" in record.getMessage()

    def test_target_host_is_preferred(self, caplog):
        request = ProxyRequest(url="/", headers={"host": "proxy.local"})

        with caplog.at_level(logging.ERROR, logger=LOGGER_NAME):
            _reporter(httpx.URL("http://backend.internal:9000")).report(
                ProxyError("x", code="ETIMEDOUT"), request
            )

        assert _last_record(caplog).proxy["target"] == "backend.internal"

    def test_never_raises(self):
        logger = Mock()
        logger.error.side_effect = RuntimeError("logging is broken")
        reporter = ErrorReporter(Options(target="http://x"), logger)

        reporter.report(ProxyError("x"), ProxyRequest(url="/"))

        assert logger.error.call_count == 2


class TestHostname:
    def test_host_header_first(self):
        request = SimpleNamespace(headers={"host": "header.host"}, hostname="name", host="h")
        assert get_hostname(request) == "header.host"

    def test_falls_back_to_hostname(self):
        request = SimpleNamespace(headers={}, hostname="name.host", host="h")
        assert get_hostname(request) == "name.host"

    def test_falls_back_to_host(self):
        request = SimpleNamespace(headers={}, host="plain.host")
        assert get_hostname(request) == "plain.host"

    def test_no_hostname(self):
        assert get_hostname(ProxyRequest(url="/")) is None


class TestHelpers:
    def test_target_host_of_string(self):
        assert get_target_host("http://localhost:9000") == "http://localhost:9000"

    def test_describe_error(self):
        error = ValueError("boom")
        assert describe_error(ProxyError("x", code="ECONNRESET")) == "ECONNRESET"
        assert describe_error(error) is error
