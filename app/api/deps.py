import asyncio
import time

from fastapi import Depends, Header, Request
from fastapi.security import OAuth2PasswordBearer

from app.config import settings
from app.utils.exceptions import ForbiddenException, TooManyRequestsException, UnauthorizedException
from app.utils.security import decode_token

optional_oauth2 = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


_rate_limit_lock = asyncio.Lock()
_rate_limit_counters: dict[tuple[int, str], int] = {}


async def rate_limit(request: Request) -> None:
    if not settings.RATE_LIMIT_ENABLED:
        return

    client_host = (request.client.host if request.client else None) or "unknown"
    window_seconds = max(1, int(settings.RATE_LIMIT_WINDOW_SECONDS))
    limit = max(1, int(settings.RATE_LIMIT_REQUESTS_PER_WINDOW))
    bucket = int(time.monotonic() // window_seconds)
    key = (bucket, client_host)

    async with _rate_limit_lock:
        current = _rate_limit_counters.get(key, 0) + 1
        _rate_limit_counters[key] = current

        # Best-effort cleanup of previous window for the same host
        prev_key = (bucket - 1, client_host)
        _rate_limit_counters.pop(prev_key, None)

    if current > limit:
        raise TooManyRequestsException(
            details={
                "windowSeconds": window_seconds,
                "limit": limit,
            }
        )


async def require_admin(
    token: str | None = Depends(optional_oauth2),
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> str:
    """Administrative caller: `X-Admin-Token` or a Bearer JWT with role ADMIN.

    Returns the caller identity ("admin-token" or the token subject).
    """
    if x_admin_token is not None:
        if x_admin_token != settings.ADMIN_TOKEN:
            raise ForbiddenException("Admin token required")
        return "admin-token"

    if not token:
        raise UnauthorizedException("Could not validate credentials")

    payload = decode_token(token)
    if not payload:
        raise UnauthorizedException("Could not validate credentials")

    if str(payload.get("role") or "").upper() != "ADMIN":
        raise ForbiddenException("Admin role required")

    return str(payload.get("sub"))
