"""
流式中继：把供应商 chunk 序列按原顺序写成 SSE 事件

事件格式：event: <name>\\ndata: <json>\\n\\n
  meta   元信息（conversationCreated / webSearch / gem / model / optimisticTitle /
         safety / sources / urlContext / finalTitle / usageMetadata）
  token  {"t": 文本增量}
  error  {"message", "code", "status", ...}
  done   {"ok": bool}，总是最后一个事件
"""

import asyncio
import json
import logging
import math
import re
import sqlite3
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from providers.base import StreamChunk
from services.chat_store import ChatStore, ConversationRecord
from services.title_service import generate_final_title, generate_optimistic_title
from utils.errors import AppError, StreamTimeoutError

logger = logging.getLogger(__name__)

SAFETY_BLOCK_MESSAGE = (
    "Nội dung bị chặn bởi safety filter. Hãy thử đổi tên GEM hoặc viết lại yêu cầu theo hướng trung lập."
)
MAX_ERROR_MESSAGE_CHARS = 200

_RETRY_IN = re.compile(r"retry in\s+([\d.]+)\s*s", re.IGNORECASE)


def format_sse(event: str, data) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def classify_stream_error(exc: BaseException) -> dict:
    """异常 → error 事件负载（限流 / 超时 / 超长分别标记）"""
    if isinstance(exc, AppError):
        message = exc.message or "Stream error"
        status = exc.status_code
        code = exc.code
    else:
        message = "Stream error"
        status = 500
        code = "STREAM_ERROR"

    payload = {"message": message[:MAX_ERROR_MESSAGE_CHARS], "code": code, "status": status}
    lower = message.lower()
    if isinstance(exc, StreamTimeoutError):
        payload.update(code="STREAM_TIMEOUT", status=504, isTimeout=True)
    elif status == 429 or "exceeded your current quota" in lower or "resource_exhausted" in lower:
        match = _RETRY_IN.search(message)
        payload.update(
            code="RATE_LIMIT_EXCEEDED",
            status=429,
            isRateLimit=True,
            retryAfter=math.ceil(float(match.group(1))) if match else None,
        )
    elif status == 413 or code == "TOKEN_LIMIT_EXCEEDED":
        payload.update(code="TOKEN_LIMIT_EXCEEDED", status=413, isTokenLimit=True)
    return payload


@dataclass
class RelayContext:
    """一次对话流的上下文（路由层组装）"""

    store: ChatStore
    user_id: str
    conversation: ConversationRecord
    content: str
    model: str
    is_default: bool
    timeout_seconds: float
    created: bool = False
    should_generate_title: bool = False
    web_search_enabled: bool = False
    web_search_available: bool = False
    web_search_cookie: str = ""
    gem_id: Optional[str] = None
    system_instruction_chars: int = 0
    gem_error: str = ""
    context_messages: List[dict] = field(default_factory=list)
    # 具备 generate_text 的 Provider，用于最终标题；为空则跳过
    title_provider: Optional[object] = None


@dataclass
class _StreamState:
    full: str = ""
    signatures: List[str] = field(default_factory=list)
    grounding_metadata: Optional[dict] = None
    url_context_metadata: Optional[dict] = None
    prompt_feedback: Optional[dict] = None
    finish_reason: str = ""
    safety_ratings: Optional[list] = None
    usage: Optional[dict] = None

    def absorb(self, chunk: StreamChunk) -> None:
        if chunk.prompt_feedback:
            self.prompt_feedback = chunk.prompt_feedback
        for sig in chunk.thought_signatures:
            if sig not in self.signatures:
                self.signatures.append(sig)
        if chunk.grounding_metadata:
            self.grounding_metadata = chunk.grounding_metadata
        if chunk.url_context_metadata:
            self.url_context_metadata = chunk.url_context_metadata
        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason
        if chunk.safety_ratings:
            self.safety_ratings = chunk.safety_ratings
        if chunk.usage:
            self.usage = chunk.usage


def _opening_events(ctx: RelayContext) -> List[str]:
    events = []
    if ctx.created:
        events.append(format_sse("meta", {"type": "conversationCreated", "conversation": ctx.conversation.to_dict()}))
    events.append(format_sse("meta", {
        "type": "webSearch",
        "enabled": ctx.web_search_enabled,
        "available": ctx.web_search_available,
        "cookie": ctx.web_search_cookie,
    }))
    events.append(format_sse("meta", {
        "type": "gem",
        "gemId": ctx.gem_id,
        "hasSystemInstruction": ctx.system_instruction_chars > 0,
        "systemInstructionChars": ctx.system_instruction_chars,
        "error": ctx.gem_error,
    }))
    events.append(format_sse("meta", {"type": "model", "model": ctx.model, "isDefault": ctx.is_default}))
    return events


def _sources(grounding: Optional[dict]) -> List[dict]:
    sources = []
    for chunk in (grounding or {}).get("groundingChunks") or []:
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if isinstance(web, dict) and web.get("uri"):
            sources.append({"uri": web["uri"], "title": web.get("title") or web["uri"]})
    return sources


def _url_context(meta: dict) -> List[dict]:
    items = meta.get("urlMetadata") or meta.get("url_metadata") or []
    return [
        {
            "retrievedUrl": u.get("retrievedUrl") or u.get("retrieved_url") or "",
            "status": u.get("urlRetrievalStatus") or u.get("url_retrieval_status") or "",
        }
        for u in items if isinstance(u, dict)
    ]


async def relay_chat_stream(
    chunks: AsyncIterator[StreamChunk],
    ctx: RelayContext,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """把供应商流中继为 SSE 文本；客户端断开或超时时立即关闭供应商流"""
    for event in _opening_events(ctx):
        yield event

    if ctx.should_generate_title:
        title = generate_optimistic_title(ctx.content)
        if title:
            yield format_sse("meta", {"type": "optimisticTitle", "conversationId": ctx.conversation.id,
                                      "title": title})

    state = _StreamState()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + ctx.timeout_seconds
    iterator = chunks.__aiter__()
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise StreamTimeoutError(ctx.timeout_seconds)
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                raise StreamTimeoutError(ctx.timeout_seconds)

            if is_disconnected is not None and await is_disconnected():
                logger.info(f"Client disconnected, closing stream for conversation {ctx.conversation.id}")
                return

            state.absorb(chunk)
            if chunk.text:
                state.full += chunk.text
                yield format_sse("token", {"t": chunk.text})
    except Exception as e:
        if isinstance(e, AppError):
            logger.warning(f"Stream error for conversation {ctx.conversation.id}: {e.message}")
        else:
            logger.exception(f"Unexpected stream error for conversation {ctx.conversation.id}")
        yield format_sse("error", classify_stream_error(e))
        yield format_sse("done", {"ok": False})
        return
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    async for event in _finish(ctx, state):
        yield event


async def _finish(ctx: RelayContext, state: _StreamState) -> AsyncIterator[str]:
    block_reason = ""
    if isinstance(state.prompt_feedback, dict):
        block_reason = state.prompt_feedback.get("blockReason") or state.prompt_feedback.get("block_reason") or ""
    is_blocked = bool(block_reason) or state.finish_reason.upper() == "SAFETY"

    blocked = False
    if not state.full.strip() and is_blocked:
        blocked = True
        yield format_sse("meta", {
            "type": "safety",
            "blocked": True,
            "blockReason": block_reason,
            "finishReason": state.finish_reason,
            "safetyRatings": state.safety_ratings,
        })
        state.full = SAFETY_BLOCK_MESSAGE
        yield format_sse("token", {"t": SAFETY_BLOCK_MESSAGE})

    sources = _sources(state.grounding_metadata)
    if sources:
        yield format_sse("meta", {"type": "sources", "sources": sources})
    if state.url_context_metadata:
        yield format_sse("meta", {"type": "urlContext", "urls": _url_context(state.url_context_metadata)})

    trimmed = state.full.strip()
    if trimmed:
        meta = {}
        if state.signatures:
            meta["thoughtSignatures"] = state.signatures
            meta["thoughtSignature"] = state.signatures[-1]
        if state.usage:
            meta["usageMetadata"] = state.usage
        try:
            ctx.store.save_message(ctx.user_id, ctx.conversation.id, "assistant", trimmed, meta)
            final_title = None
            if ctx.should_generate_title and not blocked and ctx.title_provider is not None:
                messages = ctx.context_messages + [{"role": "assistant", "content": trimmed}]
                final_title = await generate_final_title(ctx.title_provider, messages)
                if final_title:
                    ctx.store.set_conversation_auto_title(ctx.user_id, ctx.conversation.id, final_title)
        except (AppError, sqlite3.Error) as e:
            logger.error(f"Post-stream processing failed for conversation {ctx.conversation.id}: {e}")
            final_title = None
        if final_title:
            yield format_sse("meta", {"type": "finalTitle", "conversationId": ctx.conversation.id,
                                      "title": final_title})

    if state.usage:
        yield format_sse("meta", {"type": "usageMetadata", "usage": state.usage})
    yield format_sse("done", {"ok": True})
