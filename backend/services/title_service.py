"""会话自动标题：乐观标题（本地截取）+ 最终标题（Gemini 生成）"""

import logging
import re
from typing import List, Optional

from services.chat_store import DEFAULT_TITLE

logger = logging.getLogger(__name__)

TITLE_MODEL = "gemini-2.5-flash"
MAX_TITLE_WORDS = 6
TRANSCRIPT_LIMIT = 4000

_STRIP_CHARS = re.compile(r"[\"'.,!?`]")


def normalize_title(raw) -> str:
    """取首行、去标点、压缩空白、最多 6 个词并首字母大写；永不返回空串"""
    if raw is None:
        return DEFAULT_TITLE
    text = str(raw).split("\n")[0]
    text = _STRIP_CHARS.sub("", text)
    words = text.split()
    if not words:
        return DEFAULT_TITLE
    words = words[:MAX_TITLE_WORDS]
    return " ".join(w[:1].upper() + w[1:] for w in words) or DEFAULT_TITLE


def title_from_user_message(message) -> str:
    return normalize_title(" ".join(str(message or "").split()[:MAX_TITLE_WORDS]))


def generate_optimistic_title(content: str) -> Optional[str]:
    if not (content or "").strip():
        return None
    return title_from_user_message(content)


async def generate_final_title(provider, messages: List[dict]) -> Optional[str]:
    """根据整段对话生成标题，模型结果不可用时回退到首条用户消息"""
    transcript = "\n".join(
        f"{str(m.get('role') or '').upper()}: {m.get('content') or ''}" for m in messages or []
    )[:TRANSCRIPT_LIMIT]
    try:
        raw = await provider.generate_text(
            TITLE_MODEL,
            f"Generate a concise 3-6 word title summarizing the entire conversation.\n{transcript}",
            temperature=0.35,
            max_output_tokens=16,
        )
    except Exception as e:
        logger.warning(f"Final title generation failed: {e}")
        return None

    normalized = normalize_title(raw)
    if normalized != DEFAULT_TITLE:
        return normalized
    first_user = next(
        (m for m in messages or [] if m.get("role") == "user" and (m.get("content") or "").strip()),
        None,
    )
    fallback = title_from_user_message(first_user["content"]) if first_user else None
    return fallback if fallback and fallback != DEFAULT_TITLE else None
