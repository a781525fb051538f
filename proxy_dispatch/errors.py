from typing import Optional

ERR_CONFIG_FACTORY_TARGET_MISSING = (
    '[HPM] Missing "target" option. Example: {"target": "http://www.example.org"}'
)
ERR_CONTEXT_MATCHER_GENERIC = (
    '[HPM] Invalid context. Expecting something like: "/api" or ["/api", "/ajax"]'
)
ERR_CONTEXT_MATCHER_INVALID_ARRAY = (
    '[HPM] Invalid context. Expecting something like: ["/api", "/ajax"] '
    'or ["/api/**", "!**.html"]'
)
ERR_PATH_REWRITER_CONFIG = (
    "[HPM] Invalid pathRewrite config. "
    "Expecting a mapping with pathRewrite rules or a rewrite function"
)
ERR_ROUTER_CONFIG = (
    "[HPM] Invalid router config. "
    "Expecting a mapping of host/path to target or a router function"
)
ERR_UNKNOWN_OPTION = "[HPM] Unknown proxy option: {name}"


class ConfigurationError(ValueError):
    """Raised while building a proxy mount from an unusable configuration."""


class ProxyError(Exception):
    """A transport failure while forwarding a request to the upstream target.

    ``code`` carries an errno-style name (``ECONNREFUSED``, ``ETIMEDOUT``...)
    when the failure could be classified, otherwise ``None``.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code
