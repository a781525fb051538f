from typing import Any


def join_url(target: Any, path: str) -> str:
    """Append a request path to a target base URL, keeping the target's own path."""
    base = str(target).rstrip("/")
    if not path:
        return base + "/"
    if not path.startswith("/"):
        path = "/" + path
    return base + path
