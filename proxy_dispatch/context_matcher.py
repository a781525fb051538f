"""Decide whether a request path falls within the scope of a proxy mount.

A context is resolved once into a ``(uri, request) -> bool`` callable:

* ``"/api"``                      literal path prefix
* ``"/api/**"``, ``"**/*.json"``  glob (``fnmatch`` semantics, ``{a,b}`` expanded)
* ``re.compile(r"/v\\d+/.*")``    full-match regular expression
* ``["/api", "/ajax"]``           any of several prefixes
* ``["/api/**", "!**.html"]``     globs with ``!`` exclusions
* ``lambda path, req: ...``       custom predicate
"""

import re
from fnmatch import fnmatchcase
from typing import Any, Callable, List, Optional, Sequence
from urllib.parse import urlsplit

from proxy_dispatch.errors import (
    ERR_CONTEXT_MATCHER_GENERIC,
    ERR_CONTEXT_MATCHER_INVALID_ARRAY,
    ConfigurationError,
)
from proxy_dispatch.request import ProxyRequest

Matcher = Callable[[str, Optional[ProxyRequest]], bool]

_GLOB_CHARS = re.compile(r"[*?\[\]{}!]")


def is_glob(context: Any) -> bool:
    return isinstance(context, str) and bool(_GLOB_CHARS.search(context))


def is_string_path(context: Any) -> bool:
    return isinstance(context, str) and not is_glob(context)


def get_url_pathname(uri: Optional[str]) -> str:
    if not uri:
        return ""
    return urlsplit(uri).path


def _match_prefixes(prefixes: Sequence[str]) -> Matcher:
    def _match(uri, request=None):
        pathname = get_url_pathname(uri)
        return any(pathname.startswith(prefix) for prefix in prefixes)

    return _match


_BRACE_GROUP = re.compile(r"\{([^{}]*,[^{}]*)\}")


def expand_braces(pattern: str) -> List[str]:
    """Expand ``/api/{v1,v2}/*`` into one pattern per alternative; fnmatch has no braces."""
    group = _BRACE_GROUP.search(pattern)
    if group is None:
        return [pattern]
    head, tail = pattern[: group.start()], pattern[group.end() :]
    expanded = []
    for option in group.group(1).split(","):
        expanded.extend(expand_braces(head + option + tail))
    return expanded


def _match_globs(patterns: Sequence[str]) -> Matcher:
    includes = [e for p in patterns if not p.startswith("!") for e in expand_braces(p)]
    excludes = [e for p in patterns if p.startswith("!") for e in expand_braces(p[1:])]

    def _match(uri, request=None):
        pathname = get_url_pathname(uri)
        if any(fnmatchcase(pathname, pattern) for pattern in excludes):
            return False
        return any(fnmatchcase(pathname, pattern) for pattern in includes)

    return _match


def _match_regex(pattern: re.Pattern) -> Matcher:
    def _match(uri, request=None):
        return pattern.fullmatch(get_url_pathname(uri)) is not None

    return _match


def _match_predicate(predicate: Callable) -> Matcher:
    def _match(uri, request=None):
        return bool(predicate(get_url_pathname(uri), request))

    return _match


def create_matcher(context: Any) -> Matcher:
    """Compile ``context`` into a matcher; raises ConfigurationError if it can't."""
    if is_string_path(context):
        return _match_prefixes([context])

    if is_glob(context):
        return _match_globs([context])

    if isinstance(context, re.Pattern):
        return _match_regex(context)

    if isinstance(context, (list, tuple)):
        if context and all(is_string_path(c) for c in context):
            return _match_prefixes(list(context))
        if context and all(is_glob(c) for c in context):
            return _match_globs(list(context))
        raise ConfigurationError(ERR_CONTEXT_MATCHER_INVALID_ARRAY)

    if callable(context):
        return _match_predicate(context)

    raise ConfigurationError(ERR_CONTEXT_MATCHER_GENERIC)


def match(context: Any, uri: str, request: Optional[ProxyRequest] = None) -> bool:
    return create_matcher(context)(uri, request)
