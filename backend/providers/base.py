import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from utils.errors import ProviderError

DEFAULT_TIMEOUT = 120.0


@dataclass
class ProviderRequest:
    """一次流式生成请求（contents 为 Gemini 格式：[{role, parts:[{text}]}]）"""

    model: str
    contents: List[dict]
    system_prompt: str = ""
    max_output_tokens: Optional[int] = None
    temperature: Optional[float] = 0.7
    thinking_config: Optional[dict] = None
    tools: List[dict] = field(default_factory=list)
    safety_settings: Optional[List[dict]] = None
    timeout: Optional[float] = None


@dataclass
class StreamChunk:
    """供应商流中的一个增量，已归一化"""

    text: str = ""
    thought_signatures: List[str] = field(default_factory=list)
    finish_reason: Optional[str] = None
    grounding_metadata: Optional[dict] = None
    url_context_metadata: Optional[dict] = None
    safety_ratings: Optional[list] = None
    prompt_feedback: Optional[dict] = None
    usage: Optional[Dict[str, Optional[int]]] = None


class BaseProvider(ABC):
    """统一的Provider接口"""

    provider_id: str = ""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # 测试时注入 httpx.MockTransport
        self.transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or DEFAULT_TIMEOUT, transport=self.transport)

    @abstractmethod
    def stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError


def contents_to_text_messages(contents: List[dict]) -> List[dict]:
    """Gemini 格式 contents → [{role: user|assistant, content: str}]"""
    messages = []
    for item in contents or []:
        role = "assistant" if item.get("role") == "model" else item.get("role", "user")
        text = "".join(p.get("text") or "" for p in item.get("parts", []) if isinstance(p, dict))
        messages.append({"role": role, "content": text})
    return messages


def extract_api_error_message(body: str, status_code: int) -> str:
    """从错误响应体中提取可读信息，兼容 {"error": {"message": ...}} 与 [{"error": ...}]"""
    try:
        parsed = json.loads(body) if body else {}
        if isinstance(parsed, list) and parsed:
            parsed = parsed[0]
        error_obj = parsed.get("error") if isinstance(parsed, dict) else None
        if isinstance(error_obj, dict):
            msg = error_obj.get("message") or ""
            if msg:
                return msg
        elif isinstance(error_obj, str) and error_obj:
            return error_obj
    except (ValueError, AttributeError):
        pass
    if status_code == 429:
        return "Rate limit exceeded (HTTP 429), please try again later"
    if status_code in (401, 403):
        return f"Authentication failed (HTTP {status_code}), check the API key"
    return f"Upstream API returned HTTP {status_code}"


def error_code_for_status(status_code: int) -> str:
    if status_code == 429:
        return "RATE_LIMIT_EXCEEDED"
    if status_code == 413:
        return "TOKEN_LIMIT_EXCEEDED"
    return "STREAM_ERROR"


async def raise_for_status(provider_id: str, response: httpx.Response) -> None:
    if response.status_code == 200:
        return
    raw = await response.aread()
    body = raw.decode("utf-8", errors="ignore")
    raise ProviderError(
        provider_id,
        extract_api_error_message(body, response.status_code),
        status_code=response.status_code,
        code=error_code_for_status(response.status_code),
    )


def error_from_payload(provider_id: str, payload: Any) -> ProviderError:
    """流中错误负载 → ProviderError"""
    status = 502
    message = "Stream error"
    code = "STREAM_ERROR"
    if isinstance(payload, dict):
        status = payload.get("code") if isinstance(payload.get("code"), int) else status
        message = payload.get("message") or message
        if payload.get("type"):
            code = str(payload["type"])
    elif isinstance(payload, str):
        message = payload
    if status == 429:
        code = "RATE_LIMIT_EXCEEDED"
    return ProviderError(provider_id, message, status_code=status, code=code)


async def iter_sse(response: httpx.Response) -> AsyncIterator[Tuple[Optional[str], str]]:
    """逐条产出 SSE (event, data)，多行 data 以换行拼接"""
    event: Optional[str] = None
    data_lines: List[str] = []
    async for line in response.aiter_lines():
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event, data_lines = None, []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].strip())
    if data_lines:
        yield event, "\n".join(data_lines)
