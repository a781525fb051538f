import inspect
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from proxy_dispatch.errors import ERR_ROUTER_CONFIG, ConfigurationError
from proxy_dispatch.logger import get_instance
from proxy_dispatch.options import Options
from proxy_dispatch.request import ProxyRequest

logger = get_instance()

Router = Callable[[ProxyRequest, Options], Union[Any, Awaitable[Any]]]


def _contains_path(key: str) -> bool:
    return "/" in key


def _get_target_from_proxy_table(request: ProxyRequest, table: Mapping[str, Any]):
    host = request.headers.get("host", "")
    host_and_path = host + request.url

    for key, target in table.items():
        if _contains_path(key):
            if key in host_and_path:
                logger.debug('[HPM] Router table match: "%s"', key)
                return target
        elif key == host:
            logger.debug('[HPM] Router table match: "%s"', host)
            return target
    return None


def _positional_arity(func: Callable) -> int:
    try:
        params = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return 1
    if any(p.kind is p.VAR_POSITIONAL for p in params):
        return 2
    return sum(
        1
        for p in params
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    )


def create_router(config: Any) -> Optional[Router]:
    """Resolve ``options.router`` into a uniform ``(request, options)`` callable."""
    if config is None:
        return None

    if isinstance(config, Mapping):
        table = dict(config)
        if not all(isinstance(key, str) for key in table):
            raise ConfigurationError(ERR_ROUTER_CONFIG)
        return lambda request, options: _get_target_from_proxy_table(request, table)

    if callable(config):
        if _positional_arity(config) >= 2:
            return config
        return lambda request, options: config(request)

    raise ConfigurationError(ERR_ROUTER_CONFIG)


async def get_target(
    request: ProxyRequest, options: Options, router: Optional[Router] = None
) -> Optional[Any]:
    """
    Resolve a per-request target override, ``None`` meaning "keep
    ``options.target``". Must be called before any path rewrite so the
    decision is based on the original path.
    """
    if router is None:
        router = create_router(options.router)
        if router is None:
            return None

    new_target = router(request, options)
    if inspect.isawaitable(new_target):
        new_target = await new_target

    return new_target or None
