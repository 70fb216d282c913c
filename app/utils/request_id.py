from __future__ import annotations

import contextvars
import re
import uuid

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"

# ASCII only, conservative charset, 1..64 chars (log/trace injection).
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$", flags=re.ASCII)


def validate_request_id(value: str | None) -> str | None:
    """Return `value` if it is a safe request id, otherwise None."""
    if not isinstance(value, str) or not 1 <= len(value) <= 64:
        return None
    if _REQUEST_ID_RE.fullmatch(value) is None:
        return None
    return value


def new_request_id() -> str:
    return uuid.uuid4().hex
