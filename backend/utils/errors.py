"""
统一错误类型与响应格式

路由与服务层抛出 AppError 子类，由 register_exception_handlers 注册的
处理器统一渲染为：
    {"success": false, "error": {"message": ..., "code": ...}}
成功响应使用 success() 包装为 {"success": true, "data": ...}。
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store"}


class AppError(Exception):
    """应用错误基类"""

    def __init__(self, message: str, status_code: int = 500, code: str = "INTERNAL_ERROR"):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class ValidationError(AppError):
    def __init__(self, message: str = "Validation failed"):
        super().__init__(message, 400, "VALIDATION_ERROR")


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, 401, "UNAUTHORIZED")


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, 403, "FORBIDDEN")


class NotFoundError(AppError):
    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found", 404, "NOT_FOUND")
        self.resource = resource


class RateLimitError(AppError):
    def __init__(self, message: str = "Rate limit exceeded", retry_after_seconds: int = 60):
        super().__init__(message, 429, "RATE_LIMIT_EXCEEDED")
        self.retry_after_seconds = retry_after_seconds


class PendingApprovalError(AppError):
    """未通过白名单审核的账号"""

    def __init__(self, rank: str = "not_whitelisted"):
        super().__init__(
            "Your account is pending admin approval. Please wait for an administrator to grant you access.",
            403, "PENDING_APPROVAL",
        )
        self.rank = rank


class DailyLimitError(AppError):
    def __init__(self, count: int, limit: int):
        super().__init__("Daily message limit reached", 429, "DAILY_LIMIT_REACHED")
        self.count = count
        self.limit = limit


class ModelNotFoundError(NotFoundError):
    """模型注册表未命中（仅在 unknown_model_policy=error 时出现）"""

    def __init__(self, model_id: str):
        super().__init__(f"Model '{model_id}'")
        self.code = "MODEL_NOT_FOUND"
        self.model_id = model_id


class UnsupportedModelError(AppError):
    """模型无法映射到任何供应商，在发起网络请求前失败"""

    def __init__(self, model_id: str):
        super().__init__(f"Model '{model_id}' is not supported by any provider", 400, "UNSUPPORTED_MODEL")
        self.model_id = model_id


class ProviderConfigError(AppError):
    """供应商凭证缺失"""

    def __init__(self, message: str):
        super().__init__(message, 500, "CONFIG_ERROR")


class ProviderError(AppError):
    """上游供应商返回错误（HTTP 非 2xx、传输失败或流中错误负载）"""

    def __init__(self, provider: str, message: str, status_code: int = 502, code: str = "STREAM_ERROR"):
        super().__init__(message, status_code, code)
        self.provider = provider


class StreamTimeoutError(AppError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"AI stream timed out after {int(timeout_seconds * 1000)}ms", 504, "STREAM_TIMEOUT")
        self.timeout_seconds = timeout_seconds


def success(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data}, status_code=status_code, headers=NO_STORE_HEADERS)


def error_response(message: str, status_code: int = 500, code: str = "INTERNAL_ERROR",
                   extra: Optional[dict] = None) -> JSONResponse:
    body = {"message": message, "code": code}
    if extra:
        body.update(extra)
    return JSONResponse({"success": False, "error": body}, status_code=status_code, headers=NO_STORE_HEADERS)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def _handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        extra = None
        if isinstance(exc, RateLimitError):
            extra = {"retryAfterSeconds": exc.retry_after_seconds}
        elif isinstance(exc, DailyLimitError):
            extra = {"count": exc.count, "limit": exc.limit}
        elif isinstance(exc, PendingApprovalError):
            extra = {"rank": exc.rank}
        return error_response(exc.message, exc.status_code, exc.code, extra)

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"Validation error: {field} - {first.get('msg', 'invalid')}"
        else:
            message = "Invalid request body"
        return error_response(message, 400, "VALIDATION_ERROR")
