import logging
import json
import math
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple

from config import settings as default_settings
from models.model_registry import (
    DEFAULT_MODEL,
    THINKING_BUDGET,
    THINKING_LEVEL,
    get_model_max_output_tokens,
    get_model_token_limit,
    get_thinking_style,
    normalize_model_for_api,
    resolve_vendor,
    vendor_model_id,
)
from models.provider_registry import get_provider_api_key
from providers.base import BaseProvider, ProviderRequest, StreamChunk
from providers.factory import ProviderFactory
from providers.provider_ids import ANTHROPIC, GEMINI, OPENROUTER
from utils.middleware import (
    BaseMiddleware,
    ErrorCaptureMiddleware,
    LoggingMiddleware,
    TimeoutMiddleware,
    apply_middlewares_after,
    apply_middlewares_before,
)

logger = logging.getLogger(__name__)

THINKING_LEVELS = ("off", "minimal", "low", "medium", "high")
DUMMY_THOUGHT_SIGNATURE = "context_engineering_is_the_way_to_go"

CONTEXT_FETCH_LIMIT = 100
CONTEXT_SAFETY_BUFFER = 4000

CHART_PROTOCOL = """

[CHART GENERATION PROTOCOL]
If the user asks to visualize data, output a JSON code block (language="json").
The JSON must follow this schema exactly:
{
  "type": "chart",
  "chartType": "bar" | "line" | "area" | "pie",
  "title": "Chart Title",
  "data": [{ "name": "Category A", "value": 100 }, ...],
  "xKey": "name",
  "yKeys": ["value"],
  "colors": ["#3b82f6", "#ef4444", ...] (optional)
}
DO NOT output the chart as an image or ASCII art. Use this JSON format ONLY when specifically asked for a chart or visualization.
"""


@dataclass
class NormalizedChatRequest:
    """一次对话请求解析后的模型参数"""

    requested_model: str
    model: str
    api_model: str
    vendor: str
    max_output_tokens: int
    token_limit: int
    thinking_config: Optional[dict]
    timeout_seconds: float
    is_default: bool


@dataclass
class MessageContext:
    context_messages: List[dict] = field(default_factory=list)
    contents: List[dict] = field(default_factory=list)
    token_count: int = 0


# ==================== 模型参数 ====================

def normalize_thinking_level(level: Optional[str]) -> str:
    value = (level or "").strip().lower()
    return value if value in THINKING_LEVELS else "off"


def build_thinking_config(model: str, thinking_level: Optional[str]) -> Optional[dict]:
    """Gemini 3 用 thinkingLevel，Gemini 2.5 用 thinkingBudget=-1（动态）"""
    level = normalize_thinking_level(thinking_level)
    if level == "off":
        return None
    style = get_thinking_style(model)
    if style == THINKING_LEVEL:
        return {"thinkingLevel": level, "includeThoughts": True}
    if style == THINKING_BUDGET:
        return {"thinkingBudget": -1, "includeThoughts": True}
    return None


def get_stream_timeout(model: str, thinking_level: Optional[str] = None, app_settings=None) -> float:
    """整条流的超时（秒）；STREAM_TIMEOUT_MS 优先"""
    app_settings = app_settings or default_settings
    override = app_settings.stream_timeout_ms
    if override and override > 0:
        return override / 1000.0
    high = normalize_thinking_level(thinking_level) == "high"
    name = (model or "").lower()
    if "pro" in name:
        return 600.0 if high else 300.0
    if "flash" in name:
        return 480.0 if high else 240.0
    return 180.0


def resolve_route(model: str, app_settings=None) -> Tuple[str, str]:
    """返回 (vendor, 供应商侧模型 id)；Claude 无直连 key 时走 OpenRouter"""
    app_settings = app_settings or default_settings
    vendor = resolve_vendor(model)
    if vendor == ANTHROPIC and not get_provider_api_key(ANTHROPIC, app_settings) \
            and get_provider_api_key(OPENROUTER, app_settings):
        vendor = OPENROUTER
    return vendor, vendor_model_id(model, vendor)


def normalize_chat_request(requested_model: Optional[str], thinking_level: Optional[str] = None,
                           app_settings=None) -> NormalizedChatRequest:
    app_settings = app_settings or default_settings
    requested = (requested_model or "").strip() or DEFAULT_MODEL
    model = normalize_model_for_api(requested, policy=app_settings.unknown_model_policy)
    vendor, api_model = resolve_route(model, app_settings)
    return NormalizedChatRequest(
        requested_model=requested,
        model=model,
        api_model=api_model,
        vendor=vendor,
        max_output_tokens=get_model_max_output_tokens(model),
        token_limit=get_model_token_limit(requested),
        thinking_config=build_thinking_config(model, thinking_level),
        timeout_seconds=get_stream_timeout(model, thinking_level, app_settings),
        is_default=model == DEFAULT_MODEL,
    )


# ==================== 上下文 ====================

_CJK = re.compile("[\u4e00-\u9fff\u3040-\u309f\u30a0-\u30ff\uac00-\ud7af]")
_VIETNAMESE = re.compile(
    r"[àáạảãâầấậẩẫăằắặẳẵèéẹẻẽêềếệểễìíịỉĩòóọỏõôồốộổỗơờớợởỡùúụủũưừứựửữỳýỵỷỹđ]",
    re.IGNORECASE,
)
_ASCII = re.compile(r"[\x20-\x7E]")


def estimate_tokens(text: Optional[str]) -> int:
    """按字符类别加权估算 token 数，并留 10% 余量"""
    if not text:
        return 0
    cjk = len(_CJK.findall(text))
    viet = len(_VIETNAMESE.findall(text))
    ascii_chars = len(_ASCII.findall(text))
    other = len(text) - cjk - viet - ascii_chars
    total = cjk / 1.5 + viet / 2.5 + ascii_chars / 4 + other / 2
    return math.ceil(total * 1.1)


def map_messages(messages: List[dict], use_fallback_signature: bool = False) -> List[dict]:
    """[{role, content, thoughtSignatures?}] → Gemini contents"""
    mapped = []
    for m in messages:
        part = {"text": m.get("content") or ""}
        if m.get("role") == "assistant":
            signatures = m.get("thoughtSignatures") or (
                [m["thoughtSignature"]] if m.get("thoughtSignature") else []
            )
            if signatures:
                # 取最近一段推理链的签名
                part["thoughtSignature"] = signatures[-1]
            elif use_fallback_signature:
                part["thoughtSignature"] = DUMMY_THOUGHT_SIGNATURE
        mapped.append({"role": "model" if m.get("role") == "assistant" else "user", "parts": [part]})
    return mapped


def build_message_context(history, content: str, sys_prompt: str, token_limit: int,
                          use_fallback_signature: bool = False) -> MessageContext:
    """从新到旧保留历史消息，直到接近 token_limit - 4000"""
    token_count = estimate_tokens(content) + estimate_tokens(sys_prompt)
    valid = [
        m for m in history or []
        if m.role in ("user", "assistant") and isinstance(m.content, str) and m.content.strip()
    ]

    kept: List[dict] = []
    for msg in reversed(valid):
        msg_tokens = estimate_tokens(msg.content)
        if token_count + msg_tokens < token_limit - CONTEXT_SAFETY_BUFFER:
            item = {"role": msg.role, "content": msg.content}
            signatures = (msg.meta or {}).get("thoughtSignatures")
            if signatures:
                item["thoughtSignatures"] = signatures
            kept.insert(0, item)
            token_count += msg_tokens
        else:
            logger.info(f"Context limit reached: {token_count} tokens used. Skipping older messages.")
            break

    # 本轮用户消息未入库时（skipSaveUserMessage）补到末尾
    if not kept or kept[-1]["role"] != "user" or kept[-1]["content"] != content:
        kept.append({"role": "user", "content": content})
    return MessageContext(
        context_messages=kept,
        contents=map_messages(kept, use_fallback_signature),
        token_count=token_count,
    )


def with_chart_protocol(sys_prompt: Optional[str]) -> str:
    return (sys_prompt or "") + CHART_PROTOCOL


# ==================== 联网搜索 / 安全设置 ====================

def strip_outer_quotes(value) -> str:
    v = str(value or "").strip()
    if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
        return v[1:-1].strip()
    return v


def get_web_search_config(cookies: Dict[str, str], app_settings=None) -> Tuple[bool, bool, str]:
    """返回 (本次是否启用, 服务端是否可用, cookie 原值 "1"/"0"/"")"""
    app_settings = app_settings or default_settings
    available = bool(app_settings.web_search_enabled)
    cookies = cookies or {}
    cookie_web = cookies.get("webSearchEnabled", cookies.get("webSearch", ""))
    if cookies.get("alwaysSearch", "") == "1":
        enabled = available
    elif cookie_web == "1":
        enabled = True
    elif cookie_web == "0":
        enabled = False
    else:
        enabled = available
    return enabled, available, cookie_web if cookie_web in ("1", "0") else ""


def setup_tools_and_safety(enable_web_search: bool, available: bool,
                           app_settings=None) -> Tuple[List[dict], Optional[List[dict]]]:
    app_settings = app_settings or default_settings
    tools = [{"googleSearch": {}}] if enable_web_search and available else []

    safety_settings = None
    raw = (app_settings.gemini_safety_settings_json or "").strip()
    if raw:
        try:
            parsed = json.loads(strip_outer_quotes(raw))
        except ValueError:
            logger.warning("GEMINI_SAFETY_SETTINGS_JSON is not valid JSON, ignored")
            parsed = None
        if isinstance(parsed, list) and parsed:
            safety_settings = parsed
    return tools, safety_settings


# ==================== 分发 ====================

def default_middlewares(timeout_seconds: float, app_settings=None) -> List[BaseMiddleware]:
    app_settings = app_settings or default_settings
    middlewares: List[BaseMiddleware] = [TimeoutMiddleware(timeout_seconds)]
    if app_settings.enable_chat_logging:
        middlewares.append(LoggingMiddleware())
    middlewares.append(ErrorCaptureMiddleware(app_settings.error_log_path))
    return middlewares


def create_chat_provider(normalized: NormalizedChatRequest, app_settings=None) -> BaseProvider:
    """凭证缺失在此抛出 ProviderConfigError，不发起任何网络请求"""
    return ProviderFactory.create(normalized.vendor, app_settings or default_settings)


class ChatDispatch:
    """一次供应商流式调用，挂载中间件链"""

    def __init__(self, provider: BaseProvider, normalized: NormalizedChatRequest, contents: List[dict],
                 system_prompt: str = "", tools: Optional[List[dict]] = None,
                 safety_settings: Optional[List[dict]] = None,
                 middlewares: Optional[List[BaseMiddleware]] = None):
        self.provider = provider
        self.normalized = normalized
        self.contents = contents
        self.system_prompt = system_prompt
        self.tools = tools or []
        self.safety_settings = safety_settings
        self.middlewares = middlewares if middlewares is not None else []

    def _build_request(self, payload: dict) -> ProviderRequest:
        gemini = self.normalized.vendor == GEMINI
        return ProviderRequest(
            model=self.normalized.api_model,
            contents=self.contents,
            system_prompt=self.system_prompt,
            max_output_tokens=self.normalized.max_output_tokens,
            # Gemini 使用默认温度，其余供应商 0.7
            temperature=None if gemini else 0.7,
            thinking_config=self.normalized.thinking_config if gemini else None,
            tools=self.tools if gemini else [],
            safety_settings=self.safety_settings if gemini else None,
            timeout=payload.get("_timeout") or self.normalized.timeout_seconds,
        )

    async def stream(self) -> AsyncIterator[StreamChunk]:
        payload = {"provider": self.normalized.vendor, "model": self.normalized.api_model}
        payload = await apply_middlewares_before(payload, self.middlewares)
        response = {"provider": payload.get("provider"), "model": payload.get("model"), "_ts": payload.get("_ts")}
        vendor_stream = self.provider.stream(self._build_request(payload))
        try:
            async for chunk in vendor_stream:
                yield chunk
        except Exception as e:
            response["error"] = getattr(e, "message", None) or str(e) or type(e).__name__
            raise
        finally:
            # 外层被 aclose 时同步关闭供应商流（释放 HTTP 响应）
            await vendor_stream.aclose()
            await apply_middlewares_after(response, self.middlewares)
