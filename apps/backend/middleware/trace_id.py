"""trace_id запроса: берётся из X-Trace-Id клиента или генерируется, живёт в ASGI scope."""
import re
import uuid

SCOPE_KEY = "trace_id"
HEADER = b"x-trace-id"
_VALID = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


def _from_headers(scope: dict) -> str | None:
    for name, value in scope.get("headers") or ():
        if name.lower() == HEADER:
            tid = value.decode("latin-1").strip()
            return tid if _VALID.match(tid) else None
    return None


def ensure_trace_id(scope: dict) -> str:
    """Same trace_id for the whole request: error handlers and the access log agree."""
    tid = scope.get(SCOPE_KEY)
    if tid and isinstance(tid, str):
        return tid
    tid = _from_headers(scope) or uuid.uuid4().hex[:16]
    scope[SCOPE_KEY] = tid
    return tid
