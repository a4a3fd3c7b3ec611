"""Shared FastAPI dependencies."""

from fastapi import Request

from marketplace.core.exceptions import ForbiddenError, UnauthorizedError
from marketplace.core.security import load_session_cookie
from marketplace.models.user import User
from marketplace.services.gateway import PaymentGateway, get_gateway

SESSION_COOKIE_NAME = "marketplace_session"


async def get_current_user(request: Request) -> User:
    """Dependency: load session from cookie and return User."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await User.get(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    if not user.is_active:
        raise ForbiddenError("Account disabled")
    return user


async def require_provider(request: Request) -> User:
    """Dependency: current user must be able to buy leads."""
    user = await get_current_user(request)
    if user.user_type not in ("service_provider", "both"):
        raise ForbiddenError("Service providers only")
    return user


def get_payment_gateway() -> PaymentGateway:
    return get_gateway()
