import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping, Union
from urllib.parse import urlsplit

from proxy_dispatch.errors import ERR_CONFIG_FACTORY_TARGET_MISSING, ConfigurationError
from proxy_dispatch.logger import configure_logger
from proxy_dispatch.options import Options


@dataclass(frozen=True)
class Config:
    context: Any
    options: Options
    logger: logging.Logger


def _is_contextless(context: Any, options: Any) -> bool:
    return isinstance(context, (Mapping, Options)) and not options


def _is_string_shorthand(context: Any) -> bool:
    return isinstance(context, str) and bool(urlsplit(context).netloc)


def create_config(
    context: Any, options: Union[Mapping[str, Any], Options, None] = None
) -> Config:
    """
    Normalize the supported call forms into a context and an Options template.

    ``create_config({"target": "http://localhost:9000"})``
        context ``options.context`` or ``"/"``
    ``create_config("http://localhost:9000/api")``
        context ``"/api"``, target ``"http://localhost:9000"``
    ``create_config("/api", {"target": "http://localhost:9000"})``
        explicit context

    Raises ConfigurationError when neither a target nor a router is given.
    """
    if _is_contextless(context, options):
        opts = Options.from_mapping(context)
        context = opts.context or "/"

    elif _is_string_shorthand(context):
        url = urlsplit(context)
        opts = Options.from_mapping(options)
        overrides = {}
        # an explicit target option wins over the shorthand one
        if not opts.target:
            overrides["target"] = f"{url.scheme}://{url.netloc}"
        if url.scheme in ("ws", "wss"):
            overrides["ws"] = True
        opts = replace(opts, **overrides)
        context = url.path or "/"

    else:
        opts = Options.from_mapping(options)

    if not opts.target and not opts.router:
        raise ConfigurationError(ERR_CONFIG_FACTORY_TARGET_MISSING)

    return Config(context=context, options=opts, logger=configure_logger(opts))
