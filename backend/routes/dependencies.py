from fastapi import Request

from config import settings
from services.chat_store import ChatStore
from services.rate_limiter import RateLimiter
from utils.errors import AppError, UnauthorizedError


def get_current_user(request: Request) -> str:
    """身份代理注入的用户邮箱，统一小写作为 user_id"""
    raw = request.headers.get(settings.auth_user_header, "")
    user_id = raw.strip().lower()
    if not user_id:
        raise UnauthorizedError()
    return user_id


def get_chat_store(request: Request) -> ChatStore:
    store = getattr(request.app.state, "chat_store", None)
    if store is None:
        raise AppError("Chat store is not initialized", 500, "STORE_NOT_READY")
    return store


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = RateLimiter(settings.rate_limit_window_seconds, settings.rate_limit_max)
        request.app.state.rate_limiter = limiter
    return limiter
