from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, Mapping, Optional, Union

from proxy_dispatch.errors import ERR_UNKNOWN_OPTION, ConfigurationError

# Original option names accepted alongside the pythonic ones
CAMEL_CASE_ALIASES = {
    "pathRewrite": "path_rewrite",
    "logLevel": "log_level",
    "logProvider": "log_provider",
    "changeOrigin": "change_origin",
    "proxyTimeout": "proxy_timeout",
    "onError": "on_error",
    "onProxyReq": "on_proxy_req",
    "onProxyRes": "on_proxy_res",
    "onOpen": "on_open",
    "onClose": "on_close",
}

LOG_LEVELS = ("debug", "info", "warn", "error", "silent")


@dataclass(frozen=True)
class Options:
    """Proxy mount configuration.

    Instances are templates: a dispatch never mutates one in place but
    derives a per-request copy with :func:`dataclasses.replace`.
    """

    target: Any = None
    ws: bool = False
    path_rewrite: Union[Mapping[Any, str], Callable, None] = None
    router: Union[Mapping[str, Any], Callable, None] = None
    log_level: str = "info"
    log_provider: Optional[Callable] = None
    change_origin: bool = False
    xfwd: bool = False
    headers: Dict[str, str] = field(default_factory=dict)
    proxy_timeout: Optional[float] = None
    on_error: Optional[Callable] = None
    on_proxy_req: Optional[Callable] = None
    on_proxy_res: Optional[Callable] = None
    on_open: Optional[Callable] = None
    on_close: Optional[Callable] = None
    context: Any = None

    def __post_init__(self):
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(
                f"[HPM] Invalid logLevel {self.log_level!r}, expected one of {LOG_LEVELS}"
            )

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "Options":
        if values is None:
            return cls()
        if isinstance(values, Options):
            return values
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in values.items():
            name = CAMEL_CASE_ALIASES.get(key, key)
            if name not in known:
                raise ConfigurationError(ERR_UNKNOWN_OPTION.format(name=key))
            kwargs[name] = value
        return cls(**kwargs)
