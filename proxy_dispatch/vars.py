import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "proxy-dispatch")

PROXY_CONTEXT = [c for c in os.environ.get("PROXY_CONTEXT", "/").split(",") if c]
PROXY_TARGET = os.environ.get("PROXY_TARGET", "").rstrip("/")
PROXY_WS = os.environ.get("PROXY_WS", "false").lower() == "true"
PROXY_LOG_LEVEL = os.environ.get("PROXY_LOG_LEVEL", "info").lower()
PROXY_CHANGE_ORIGIN = os.environ.get("PROXY_CHANGE_ORIGIN", "false").lower() == "true"
PROXY_XFWD = os.environ.get("PROXY_XFWD", "false").lower() == "true"
PROXY_TIMEOUT = (
    float(os.environ["PROXY_TIMEOUT"]) if os.environ.get("PROXY_TIMEOUT") else None
)

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")


def _parse_map(raw: str) -> dict:
    """Parse ``key=value,key=value`` into an insertion-ordered dict."""
    mapping: dict = {}
    if not raw:
        return mapping
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" in entry:
            key, val = entry.split("=", 1)
            key = key.strip()
            val = val.strip()
            if key:
                mapping[key] = val
    return mapping


# e.g. "^/api/old=/api/new,^/legacy="
PROXY_PATH_REWRITE = _parse_map(os.getenv("PROXY_PATH_REWRITE", ""))
# e.g. "dev.localhost=http://localhost:8000,localhost:3000/api=http://localhost:8001"
PROXY_ROUTER = _parse_map(os.getenv("PROXY_ROUTER", ""))

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
