from proxy_dispatch.context_matcher import create_matcher, match
from proxy_dispatch.errors import ConfigurationError, ProxyError
from proxy_dispatch.middleware import HttpProxyMiddleware, create_proxy_middleware
from proxy_dispatch.options import Options
from proxy_dispatch.path_rewriter import create_path_rewriter
from proxy_dispatch.request import ProxyRequest
from proxy_dispatch.router import create_router, get_target
from proxy_dispatch.transport import ProxyTransport

__all__ = [
    "ConfigurationError",
    "HttpProxyMiddleware",
    "Options",
    "ProxyError",
    "ProxyRequest",
    "ProxyTransport",
    "create_matcher",
    "create_path_rewriter",
    "create_proxy_middleware",
    "create_router",
    "get_target",
    "match",
]
