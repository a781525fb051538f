import logging
import re
from typing import Any, Callable, List, Mapping, Optional, Tuple

from proxy_dispatch.errors import ERR_PATH_REWRITER_CONFIG, ConfigurationError
from proxy_dispatch.logger import get_instance

logger = get_instance()

PathRewriter = Callable[..., Any]


def _check_template(regex: re.Pattern, template: str) -> None:
    # an empty match with the same groups exercises escapes and group references
    groups = {index: name for name, index in regex.groupindex.items()}
    shape = "".join(
        f"(?P<{groups[index]}>)" if index in groups else "()"
        for index in range(1, regex.groups + 1)
    )
    re.fullmatch(shape, "").expand(template)


def _parse_path_rewrite_rules(config: Mapping[Any, str]) -> List[Tuple[re.Pattern, str]]:
    rules = []
    for key, value in config.items():
        if not isinstance(value, str):
            raise ConfigurationError(ERR_PATH_REWRITER_CONFIG)
        try:
            regex = key if isinstance(key, re.Pattern) else re.compile(key)
        except (re.error, TypeError) as e:
            raise ConfigurationError(f"{ERR_PATH_REWRITER_CONFIG} ({key!r}: {e})")
        try:
            _check_template(regex, value)
        except re.error as e:
            raise ConfigurationError(f"{ERR_PATH_REWRITER_CONFIG} ({value!r}: {e})")
        rules.append((regex, value))
        logger.info('[HPM] Proxy rewrite rule created: "%s" ~> "%s"', regex.pattern, value)
    return rules


def _is_valid_rewrite_config(config: Any) -> bool:
    if callable(config):
        return True
    if isinstance(config, Mapping):
        return len(config) > 0
    if config is None:
        return False
    raise ConfigurationError(ERR_PATH_REWRITER_CONFIG)


def create_path_rewriter(config: Any) -> Optional[PathRewriter]:
    """
    Build the path rewrite step of a proxy mount.

    Returns ``None`` when nothing is configured (``None`` or an empty mapping)
    so callers skip the step entirely. A callable config is returned as is and
    called with ``(path, request)``. A mapping is compiled into ordered rules:
    the first rule whose pattern is found in the path replaces its first
    occurrence, and ``None`` is returned when no rule applies.
    """
    if not _is_valid_rewrite_config(config):
        return None

    if callable(config):
        return config

    rules = _parse_path_rewrite_rules(config)

    def rewrite_path(path: str, request=None) -> Optional[str]:
        for regex, value in rules:
            if regex.search(path):
                result = regex.sub(value, path, count=1)
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug('[HPM] Rewriting path from "%s" to "%s"', path, result)
                return result
        return None

    return rewrite_path
