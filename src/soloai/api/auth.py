"""Session-cookie authentication for billing routes."""

import logging
from typing import Optional
from urllib.parse import unquote

from aiohttp import web

from soloai.billing.errors import UnauthorizedError
from soloai.db.users import UserRecord, UserRepository

logger = logging.getLogger(__name__)

SECURE_PREFIX = "__Secure-"

users_key = web.AppKey("users", UserRepository)
cookie_name_key = web.AppKey("session_cookie_name", str)


def parse_session_token(cookie_value: Optional[str]) -> Optional[str]:
    """
    Extract the session token from a signed cookie value.

    The cookie holds ``<token>.<signature>``, possibly URL-encoded. The
    signature is checked by the auth service that issued it; here the
    token is only looked up.
    """
    if not cookie_value:
        return None
    token = unquote(cookie_value).split(".", 1)[0].strip()
    return token or None


def session_cookie(request: web.Request, cookie_name: str) -> Optional[str]:
    return request.cookies.get(cookie_name) or request.cookies.get(f"{SECURE_PREFIX}{cookie_name}")


@web.middleware
async def session_middleware(request: web.Request, handler):
    """Resolve the session user for ``/api/billing`` requests into ``request["user"]``."""
    request["user"] = None
    if request.path.startswith("/api/billing"):
        token = parse_session_token(session_cookie(request, request.app[cookie_name_key]))
        if token:
            try:
                request["user"] = await request.app[users_key].get_by_session_token(token)
            except Exception as e:
                logger.exception(f"Session lookup failed: {e}")
                return web.json_response(
                    {"error": "Session lookup failed", "code": "SESSION_ERROR"}, status=500
                )
    return await handler(request)


def require_user(request: web.Request) -> UserRecord:
    """
    Get the authenticated user.

    Raises:
        UnauthorizedError: No valid session on the request
    """
    user = request.get("user")
    if user is None:
        raise UnauthorizedError()
    return user
