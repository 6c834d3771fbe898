import logging
import sqlite3
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from config import settings
from models.model_registry import DEFAULT_MODEL, coerce_stored_model, get_thinking_style, THINKING_LEVEL
from models.provider_registry import get_provider_api_key
from providers.gemini_provider import GeminiProvider
from providers.provider_ids import GEMINI
from routes.dependencies import get_chat_store, get_current_user, get_rate_limiter
from services.attachment_service import build_attachment_context
from services.chat_service import (
    CONTEXT_FETCH_LIMIT,
    ChatDispatch,
    build_message_context,
    create_chat_provider,
    default_middlewares,
    get_web_search_config,
    normalize_chat_request,
    setup_tools_and_safety,
    with_chart_protocol,
)
from services.chat_store import ChatStore
from services.limits_service import NOT_WHITELISTED, check_daily_message_limit, increment_daily_message_count
from services.rate_limiter import RateLimiter
from services.stream_relay import RelayContext, relay_chat_stream
from utils.errors import AppError, DailyLimitError, PendingApprovalError, RateLimitError

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ChatStreamRequest(BaseModel):
    conversationId: Optional[UUID] = None
    content: str = Field(..., min_length=1, max_length=100_000)
    regenerate: bool = False
    truncateMessageId: Optional[str] = None
    skipSaveUserMessage: bool = False
    thinkingLevel: Optional[Literal["off", "minimal", "low", "medium", "high"]] = None


def _load_owned_conversation(store: ChatStore, user_id: str, conversation_id: Optional[UUID]):
    """只读取本人会话；不存在或属于他人时返回 None，由调用方新建"""
    if not conversation_id:
        return None
    convo = store.get_conversation(str(conversation_id))
    if convo is not None and convo.user_id != user_id:
        # 其他用户的会话与不存在同等对待，不泄露存在性
        logger.warning(f"User {user_id} requested foreign conversation {conversation_id}")
        return None
    return convo


def _enforce_chat_limits(store: ChatStore, limiter: RateLimiter, user_id: str) -> None:
    status = check_daily_message_limit(store, user_id)
    if status.rank == NOT_WHITELISTED:
        logger.warning(f"Access denied - user pending approval: {user_id}")
        raise PendingApprovalError(status.rank)
    if not status.can_send:
        logger.warning(f"Daily message limit reached for user: {user_id} ({status.count}/{status.limit})")
        raise DailyLimitError(status.count, status.limit)
    rl = limiter.consume(f"chat-stream:{user_id}")
    if not rl.allowed:
        logger.warning(f"Rate limit exceeded for user: {user_id}")
        raise RateLimitError("Rate limit exceeded", rl.retry_after_seconds)


@router.post("/api/chat-stream")
async def chat_stream(
    body: ChatStreamRequest,
    request: Request,
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    _enforce_chat_limits(store, limiter, user_id)

    existing = _load_owned_conversation(store, user_id, body.conversationId)
    # 供应商/凭证在任何写入与网络请求前确定
    normalized = normalize_chat_request((existing.model if existing else None) or DEFAULT_MODEL,
                                        body.thinkingLevel)
    provider = create_chat_provider(normalized)

    created = existing is None
    convo = store.create_conversation(user_id) if created else existing

    if body.truncateMessageId:
        store.delete_messages_including_and_after(user_id, convo.id, body.truncateMessageId)
    elif body.regenerate:
        store.delete_last_assistant_message(user_id, convo.id)

    if not body.skipSaveUserMessage:
        store.save_message(user_id, convo.id, "user", body.content)

    sys_prompt = ""
    gem_error = ""
    try:
        sys_prompt = store.get_gem_instructions_for_conversation(user_id, convo.id)
    except AppError as e:
        gem_error = e.message
    if sys_prompt:
        logger.info(f"[GEM ACTIVE] Conversation {convo.id} has gem instructions ({len(sys_prompt)} chars)")

    history = store.get_recent_messages(convo.id, CONTEXT_FETCH_LIMIT)
    message_context = build_message_context(
        history, body.content, sys_prompt, normalized.token_limit,
        use_fallback_signature=get_thinking_style(normalized.model) == THINKING_LEVEL,
    )

    contents, sys_prompt_with_attachments = message_context.contents, sys_prompt
    if not created:
        contents, sys_prompt_with_attachments = build_attachment_context(
            store.list_attachments(user_id, convo.id, include_data=True),
            message_context.contents, sys_prompt, message_context.token_count, normalized.token_limit,
        )

    web_enabled, web_available, web_cookie = get_web_search_config(dict(request.cookies))
    tools, safety_settings = setup_tools_and_safety(web_enabled, web_available)

    dispatch = ChatDispatch(
        provider,
        normalized,
        contents,
        system_prompt=with_chart_protocol(sys_prompt_with_attachments),
        tools=tools,
        safety_settings=safety_settings,
        middlewares=default_middlewares(normalized.timeout_seconds),
    )

    gemini_key = get_provider_api_key(GEMINI, settings)
    ctx = RelayContext(
        store=store,
        user_id=user_id,
        conversation=convo,
        content=body.content,
        model=coerce_stored_model(normalized.requested_model),
        is_default=normalized.is_default,
        timeout_seconds=normalized.timeout_seconds,
        created=created,
        should_generate_title=(created or convo.is_untitled) and not body.regenerate,
        web_search_enabled=web_enabled,
        web_search_available=web_available,
        web_search_cookie=web_cookie,
        gem_id=convo.gem_id,
        system_instruction_chars=len(sys_prompt),
        gem_error=gem_error,
        context_messages=message_context.context_messages,
        title_provider=GeminiProvider(gemini_key) if gemini_key else None,
    )
    try:
        increment_daily_message_count(store, user_id)
    except sqlite3.Error as e:
        logger.error(f"Failed to increment message count: {e}")

    return StreamingResponse(
        relay_chat_stream(dispatch.stream(), ctx, request.is_disconnected),
        media_type="text/event-stream; charset=utf-8",
        headers=SSE_HEADERS,
    )
