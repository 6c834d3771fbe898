"""SSE 中继测试：事件顺序、错误收尾、断开与超时"""

import asyncio
import json

import pytest

from conftest import USER
from providers.base import StreamChunk
from services.chat_service import ChatDispatch, normalize_chat_request
from services.chat_store import DEFAULT_TITLE
from services.stream_relay import (
    SAFETY_BLOCK_MESSAGE,
    RelayContext,
    classify_stream_error,
    format_sse,
    relay_chat_stream,
)
from utils.errors import AppError, ProviderError, StreamTimeoutError


def _parse(raw_events):
    parsed = []
    for raw in raw_events:
        assert raw.endswith("\n\n")
        event_line, data_line = raw.strip("\n").split("\n")
        parsed.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return parsed


def _names(events):
    return [name if name != "meta" else f"meta:{data['type']}" for name, data in events]


async def _chunks(items, error=None, delay=0.0):
    for item in items:
        if delay:
            await asyncio.sleep(delay)
        yield item
    if error is not None:
        raise error


class _TitleProvider:
    def __init__(self, title="chat about cats"):
        self.title = title
        self.calls = []

    async def generate_text(self, model, prompt, temperature=None, max_output_tokens=None):
        self.calls.append(prompt)
        return self.title


def _ctx(store, **kwargs):
    convo = store.create_conversation(USER)
    base = dict(store=store, user_id=USER, conversation=convo, content="tell me about cats",
                model="gemini-2.5-flash", is_default=True, timeout_seconds=5.0)
    base.update(kwargs)
    return RelayContext(**base)


async def _collect(agen):
    return [e async for e in agen]


def test_format_sse_keeps_unicode():
    assert format_sse("token", {"t": "chào"}) == 'event: token\ndata: {"t": "chào"}\n\n'


@pytest.mark.asyncio
async def test_full_event_order_and_persistence(store):
    title_provider = _TitleProvider()
    ctx = _ctx(store, created=True, should_generate_title=True, title_provider=title_provider,
               context_messages=[{"role": "user", "content": "tell me about cats"}])
    chunks = [
        StreamChunk(text="Cats ", thought_signatures=["sig-a"]),
        StreamChunk(text="purr.", finish_reason="STOP",
                    grounding_metadata={"groundingChunks": [{"web": {"uri": "https://cats.example", "title": "Cats"}}]},
                    usage={"promptTokenCount": 5, "candidatesTokenCount": 2, "thoughtsTokenCount": None,
                           "totalTokenCount": 7}),
    ]
    events = _parse(await _collect(relay_chat_stream(_chunks(chunks), ctx)))

    assert _names(events) == [
        "meta:conversationCreated", "meta:webSearch", "meta:gem", "meta:model", "meta:optimisticTitle",
        "token", "token", "meta:sources", "meta:finalTitle", "meta:usageMetadata", "done",
    ]
    assert events[0][1]["conversation"]["id"] == ctx.conversation.id
    assert events[4][1]["title"] == "Tell Me About Cats"
    assert events[7][1]["sources"] == [{"uri": "https://cats.example", "title": "Cats"}]
    assert events[8][1]["title"] == "Chat About Cats"
    assert events[-1][1] == {"ok": True}

    saved = store.get_recent_messages(ctx.conversation.id)
    assert [m.content for m in saved] == ["Cats purr."]
    assert saved[0].meta["thoughtSignatures"] == ["sig-a"]
    assert saved[0].meta["thoughtSignature"] == "sig-a"
    assert saved[0].meta["usageMetadata"]["totalTokenCount"] == 7
    assert store.get_conversation(ctx.conversation.id).title == "Chat About Cats"
    assert "ASSISTANT: Cats purr." in title_provider.calls[0]


@pytest.mark.asyncio
async def test_existing_conversation_skips_created_and_titles(store):
    ctx = _ctx(store)
    events = _parse(await _collect(relay_chat_stream(_chunks([StreamChunk(text="hi")]), ctx)))
    assert _names(events) == ["meta:webSearch", "meta:gem", "meta:model", "token", "done"]
    assert store.get_conversation(ctx.conversation.id).title == DEFAULT_TITLE


@pytest.mark.asyncio
async def test_provider_error_ends_with_error_then_done_false(store):
    ctx = _ctx(store)
    error = ProviderError("gemini", "You exceeded your current quota. Please retry in 7.2s.", 429,
                          "RATE_LIMIT_EXCEEDED")
    events = _parse(await _collect(relay_chat_stream(_chunks([StreamChunk(text="par")], error=error), ctx)))

    assert _names(events)[-3:] == ["token", "error", "done"]
    name, payload = events[-2]
    assert payload["isRateLimit"] is True
    assert payload["retryAfter"] == 8
    assert payload["status"] == 429
    assert events[-1][1] == {"ok": False}
    assert store.get_recent_messages(ctx.conversation.id) == []


@pytest.mark.asyncio
async def test_unexpected_error_is_generic(store):
    ctx = _ctx(store)
    events = _parse(await _collect(relay_chat_stream(_chunks([], error=RuntimeError("secret detail")), ctx)))
    assert events[-2] == ("error", {"message": "Stream error", "code": "STREAM_ERROR", "status": 500})
    assert events[-1] == ("done", {"ok": False})


@pytest.mark.asyncio
async def test_timeout_closes_stream(store):
    ctx = _ctx(store, timeout_seconds=0.05)
    events = _parse(await _collect(relay_chat_stream(_chunks([StreamChunk(text="slow")], delay=1.0), ctx)))
    name, payload = events[-2]
    assert name == "error"
    assert payload["isTimeout"] is True
    assert payload["code"] == "STREAM_TIMEOUT"
    assert events[-1] == ("done", {"ok": False})


@pytest.mark.asyncio
async def test_client_disconnect_closes_vendor_stream(store):
    ctx = _ctx(store)
    state = {"closed": False, "pulled": 0}

    async def vendor():
        try:
            for text in ["a", "b", "c"]:
                state["pulled"] += 1
                yield StreamChunk(text=text)
        finally:
            state["closed"] = True

    async def disconnected():
        return True

    events = _parse(await _collect(relay_chat_stream(vendor(), ctx, is_disconnected=disconnected)))

    assert state["closed"] is True
    assert state["pulled"] == 1
    assert "token" not in _names(events)
    assert "done" not in _names(events)
    assert store.get_recent_messages(ctx.conversation.id) == []


@pytest.mark.asyncio
async def test_client_disconnect_closes_vendor_stream_through_dispatch(store, app_settings):
    ctx = _ctx(store)
    state = {"closed": False, "pulled": 0}

    class _Vendor:
        async def stream(self, request):
            try:
                for text in ["a", "b", "c"]:
                    state["pulled"] += 1
                    yield StreamChunk(text=text)
            finally:
                state["closed"] = True

    async def disconnected():
        return True

    normalized = normalize_chat_request(None, None, app_settings)
    dispatch = ChatDispatch(_Vendor(), normalized, [], middlewares=[])
    events = _parse(await _collect(relay_chat_stream(dispatch.stream(), ctx, is_disconnected=disconnected)))

    # 中继返回时供应商流必须已经关闭，不依赖事件循环稍后回收
    assert state["closed"] is True
    assert state["pulled"] == 1
    assert "done" not in _names(events)


@pytest.mark.asyncio
async def test_safety_block_emits_notice(store):
    ctx = _ctx(store, should_generate_title=True, title_provider=_TitleProvider())
    chunks = [StreamChunk(finish_reason="SAFETY", safety_ratings=[{"category": "HARM_CATEGORY_HARASSMENT"}])]
    events = _parse(await _collect(relay_chat_stream(_chunks(chunks), ctx)))

    names = _names(events)
    assert "meta:safety" in names
    assert "meta:finalTitle" not in names
    safety = events[names.index("meta:safety")][1]
    assert safety["blocked"] is True
    assert safety["finishReason"] == "SAFETY"
    assert events[names.index("meta:safety") + 1] == ("token", {"t": SAFETY_BLOCK_MESSAGE})
    assert store.get_recent_messages(ctx.conversation.id)[0].content == SAFETY_BLOCK_MESSAGE


@pytest.mark.asyncio
async def test_url_context_meta(store):
    ctx = _ctx(store)
    chunk = StreamChunk(text="ok", url_context_metadata={"urlMetadata": [
        {"retrievedUrl": "https://a.example", "urlRetrievalStatus": "URL_RETRIEVAL_STATUS_SUCCESS"},
    ]})
    events = _parse(await _collect(relay_chat_stream(_chunks([chunk]), ctx)))
    url_meta = next(d for n, d in events if n == "meta" and d["type"] == "urlContext")
    assert url_meta["urls"] == [{"retrievedUrl": "https://a.example", "status": "URL_RETRIEVAL_STATUS_SUCCESS"}]


def test_classify_stream_error_variants():
    assert classify_stream_error(StreamTimeoutError(30))["isTimeout"] is True

    quota = classify_stream_error(AppError("RESOURCE_EXHAUSTED: quota", 500, "STREAM_ERROR"))
    assert quota["isRateLimit"] is True
    assert quota["retryAfter"] is None

    too_long = classify_stream_error(ProviderError("openai", "context too long", 413, "TOKEN_LIMIT_EXCEEDED"))
    assert too_long["isTokenLimit"] is True

    long_message = classify_stream_error(AppError("x" * 500, 502, "STREAM_ERROR"))
    assert len(long_message["message"]) == 200
