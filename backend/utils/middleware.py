"""
供应商调用的中间件链

ChatDispatch 在发起流式请求前依次执行 before_request，在流结束（含异常）后
执行 after_response。payload/response 是普通 dict：
    provider / model   本次调用的供应商与模型
    _ts                开始时间（LoggingMiddleware 写入）
    _timeout           整条流的超时秒数（TimeoutMiddleware 写入）
    error              失败时的错误信息
"""

from typing import Any, Dict, List
import logging
import time
import os
from datetime import datetime

logger = logging.getLogger(__name__)


class BaseMiddleware:
    """中间件基类，默认原样透传"""

    async def before_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return payload

    async def after_response(self, response: Dict[str, Any]) -> Dict[str, Any]:
        return response


class LoggingMiddleware(BaseMiddleware):
    """记录每次供应商调用的去向与耗时"""

    async def before_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload["_ts"] = time.time()
        logger.info(f"-> dispatch provider={payload.get('provider')} model={payload.get('model')}")
        return payload

    async def after_response(self, response: Dict[str, Any]) -> Dict[str, Any]:
        started = response.get("_ts")
        elapsed = f" in {time.time() - started:.2f}s" if started else ""
        status = "error" if response.get("error") else "ok"
        logger.info(f"<- stream finished provider={response.get('provider')} status={status}{elapsed}")
        return response


class ErrorCaptureMiddleware(BaseMiddleware):
    """把失败的调用追加到错误日志文件"""

    def __init__(self, log_path: str = "logs/errors.log"):
        self.log_path = log_path

    async def after_response(self, response: Dict[str, Any]) -> Dict[str, Any]:
        if not response.get("error"):
            return response
        line = (
            f"{datetime.now().isoformat()} | {response.get('provider')} | "
            f"{response.get('model')} | {response['error']}\n"
        )
        try:
            parent = os.path.dirname(self.log_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.warning(f"Failed to write error log {self.log_path}: {e}")
        return response


class TimeoutMiddleware(BaseMiddleware):
    """在 payload 上标记整条流的超时（秒）"""

    def __init__(self, timeout: float):
        self.timeout = timeout

    async def before_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload["_timeout"] = self.timeout
        return payload


async def apply_middlewares_before(payload: Dict[str, Any], middlewares: List[BaseMiddleware]) -> Dict[str, Any]:
    for mw in middlewares or []:
        payload = await mw.before_request(payload)
    return payload


async def apply_middlewares_after(response: Dict[str, Any], middlewares: List[BaseMiddleware]) -> Dict[str, Any]:
    for mw in middlewares or []:
        response = await mw.after_response(response)
    return response
