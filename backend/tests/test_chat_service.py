"""对话请求归一化、上下文构建与分发测试"""

import os

import pytest

from conftest import make_settings
from providers.base import StreamChunk
import services.chat_service as cs
from services.chat_store import MessageRecord
from utils.middleware import ErrorCaptureMiddleware
from utils.errors import ProviderError


def _msg(role, content, meta=None):
    return MessageRecord(id=f"{role}-{content}", conversation_id="c", user_id="u", role=role,
                         content=content, meta=meta or {})


# ---- 思考配置 / 超时 ----

def test_thinking_config_by_style():
    assert cs.build_thinking_config("gemini-3-pro-preview", "high") == {"thinkingLevel": "high", "includeThoughts": True}
    assert cs.build_thinking_config("gemini-2.5-flash", "low") == {"thinkingBudget": -1, "includeThoughts": True}
    assert cs.build_thinking_config("gemini-2.5-flash", "off") is None
    assert cs.build_thinking_config("gemini-2.5-flash", None) is None
    assert cs.build_thinking_config("llama-3.1-8b-instant", "high") is None


def test_stream_timeout_defaults(app_settings):
    assert cs.get_stream_timeout("gemini-2.5-pro", None, app_settings) == 300
    assert cs.get_stream_timeout("gemini-2.5-pro", "high", app_settings) == 600
    assert cs.get_stream_timeout("gemini-2.5-flash", "low", app_settings) == 240
    assert cs.get_stream_timeout("gemini-3-flash-preview", "high", app_settings) == 480
    assert cs.get_stream_timeout("llama-3.1-8b-instant", None, app_settings) == 180


def test_stream_timeout_override():
    assert cs.get_stream_timeout("gemini-2.5-pro", "high", make_settings(stream_timeout_ms=1500)) == 1.5


# ---- 请求归一化 ----

def test_normalize_chat_request_default(app_settings):
    n = cs.normalize_chat_request(None, "medium", app_settings)
    assert n.model == "gemini-2.5-flash"
    assert n.vendor == "gemini"
    assert n.api_model == "gemini-2.5-flash"
    assert n.is_default is True
    assert n.max_output_tokens == 65_536
    assert n.thinking_config == {"thinkingBudget": -1, "includeThoughts": True}


def test_normalize_chat_request_alias(app_settings):
    n = cs.normalize_chat_request("gemini-3-pro", "high", app_settings)
    assert n.model == "gemini-3-pro-preview"
    assert n.requested_model == "gemini-3-pro"
    assert n.timeout_seconds == 600
    assert n.is_default is False


def test_claude_routes_through_openrouter_without_anthropic_key(app_settings):
    n = cs.normalize_chat_request("claude-sonnet-4.5", None, app_settings)
    assert n.vendor == "openrouter"
    assert n.api_model == "anthropic/claude-sonnet-4"


def test_claude_routes_direct_with_anthropic_key():
    n = cs.normalize_chat_request("claude-haiku-4.5", None, make_settings(anthropic_api_key="ak"))
    assert n.vendor == "anthropic"
    assert n.api_model == "claude-3-5-haiku-latest"


def test_unknown_model_error_policy():
    from utils.errors import ModelNotFoundError
    with pytest.raises(ModelNotFoundError):
        cs.normalize_chat_request("mystery-model", None, make_settings(unknown_model_policy="error"))


# ---- token 估算 / 上下文 ----

def test_estimate_tokens():
    assert cs.estimate_tokens("") == 0
    assert cs.estimate_tokens(None) == 0
    # 8 个 ASCII 字符 → 2 token → ×1.1 → 3
    assert cs.estimate_tokens("abcdefgh") == 3
    # 3 个汉字 → 2 token → ×1.1 → 3
    assert cs.estimate_tokens("你好吗") == 3
    # 5 个越南语字母 → 2 token → ×1.1 → 3
    assert cs.estimate_tokens("àáạảã") == 3


def test_map_messages_signatures():
    mapped = cs.map_messages([
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "a1", "thoughtSignatures": ["s1", "s2"]},
        {"role": "assistant", "content": "a2"},
    ], use_fallback_signature=True)
    assert mapped[0] == {"role": "user", "parts": [{"text": "hi"}]}
    assert mapped[1]["role"] == "model"
    assert mapped[1]["parts"][0]["thoughtSignature"] == "s2"
    assert mapped[2]["parts"][0]["thoughtSignature"] == cs.DUMMY_THOUGHT_SIGNATURE


def test_map_messages_without_fallback():
    mapped = cs.map_messages([{"role": "assistant", "content": "a"}])
    assert "thoughtSignature" not in mapped[0]["parts"][0]


def test_build_message_context_keeps_order_and_skips_empty():
    history = [_msg("user", "one"), _msg("assistant", "  "), _msg("system", "x"),
               _msg("assistant", "two", {"thoughtSignatures": ["sig"]}), _msg("user", "three")]
    ctx = cs.build_message_context(history, "three", "", 1_000_000)
    assert [m["content"] for m in ctx.context_messages] == ["one", "two", "three"]
    assert ctx.contents[1]["parts"][0]["thoughtSignature"] == "sig"


def test_build_message_context_token_window():
    history = [_msg("user", "x" * 4000), _msg("assistant", "recent answer"), _msg("user", "now")]
    # 仅够放下最近的消息
    ctx = cs.build_message_context(history, "now", "", 4000 + 50)
    assert [m["content"] for m in ctx.context_messages] == ["recent answer", "now"]


def test_build_message_context_appends_unsaved_user_message():
    ctx = cs.build_message_context([_msg("user", "old"), _msg("assistant", "reply")], "new", "", 1_000_000)
    assert ctx.context_messages[-1] == {"role": "user", "content": "new"}


def test_chart_protocol_appended():
    prompt = cs.with_chart_protocol("Be nice.")
    assert prompt.startswith("Be nice.")
    assert "[CHART GENERATION PROTOCOL]" in prompt
    assert "[CHART GENERATION PROTOCOL]" in cs.with_chart_protocol(None)


# ---- 联网搜索 / 安全设置 ----

@pytest.mark.parametrize("cookies,available,expected", [
    ({}, True, True),
    ({}, False, False),
    ({"webSearchEnabled": "0"}, True, False),
    ({"webSearch": "1"}, False, True),
    ({"alwaysSearch": "1", "webSearchEnabled": "0"}, True, True),
    ({"alwaysSearch": "1"}, False, False),
])
def test_web_search_config(cookies, available, expected):
    enabled, avail, _cookie = cs.get_web_search_config(cookies, make_settings(web_search_enabled=available))
    assert enabled is expected
    assert avail is available


def test_tools_and_safety_settings():
    app_settings = make_settings(gemini_safety_settings_json="'[{\"category\": \"HARM_CATEGORY_HARASSMENT\", \"threshold\": \"BLOCK_NONE\"}]'")
    tools, safety = cs.setup_tools_and_safety(True, True, app_settings)
    assert tools == [{"googleSearch": {}}]
    assert safety == [{"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"}]

    tools, safety = cs.setup_tools_and_safety(True, False, make_settings(gemini_safety_settings_json="not json"))
    assert tools == []
    assert safety is None


# ---- 分发 ----

class _RecordingProvider:
    def __init__(self, chunks=None, error=None):
        self.chunks = chunks or []
        self.error = error
        self.requests = []

    async def stream(self, request):
        self.requests.append(request)
        for c in self.chunks:
            yield c
        if self.error:
            raise self.error


@pytest.mark.asyncio
async def test_dispatch_builds_gemini_request(app_settings):
    n = cs.normalize_chat_request("gemini-3-flash-preview", "low", app_settings)
    provider = _RecordingProvider([StreamChunk(text="hi")])
    dispatch = cs.ChatDispatch(provider, n, [{"role": "user", "parts": [{"text": "q"}]}], "sys",
                               tools=[{"googleSearch": {}}],
                               middlewares=cs.default_middlewares(12.0, app_settings))
    chunks = [c async for c in dispatch.stream()]
    assert [c.text for c in chunks] == ["hi"]
    req = provider.requests[0]
    assert req.model == "gemini-3-flash-preview"
    assert req.thinking_config == {"thinkingLevel": "low", "includeThoughts": True}
    assert req.tools == [{"googleSearch": {}}]
    assert req.timeout == 12.0
    assert req.temperature is None


@pytest.mark.asyncio
async def test_dispatch_strips_gemini_only_fields_for_other_vendors(app_settings):
    n = cs.normalize_chat_request("llama-3.3-70b-versatile", "high", app_settings)
    provider = _RecordingProvider()
    dispatch = cs.ChatDispatch(provider, n, [], "sys", tools=[{"googleSearch": {}}], safety_settings=[{"a": 1}])
    [c async for c in dispatch.stream()]
    req = provider.requests[0]
    assert req.tools == [] and req.safety_settings is None and req.thinking_config is None
    assert req.temperature == 0.7
    assert req.max_output_tokens == 32_768


@pytest.mark.asyncio
async def test_dispatch_error_is_logged_and_propagated(tmp_path, app_settings):
    log_path = tmp_path / "errors.log"
    n = cs.normalize_chat_request(None, None, app_settings)
    provider = _RecordingProvider([StreamChunk(text="partial")], error=ProviderError("gemini", "boom", 500))
    dispatch = cs.ChatDispatch(provider, n, [], middlewares=[ErrorCaptureMiddleware(str(log_path))])
    received = []
    with pytest.raises(ProviderError):
        async for c in dispatch.stream():
            received.append(c.text)
    assert received == ["partial"]
    assert "boom" in log_path.read_text(encoding="utf-8")
    assert os.path.exists(log_path)
