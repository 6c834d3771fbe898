"""图库：从用户消息中筛出生成/上传的图片"""

from typing import List, Tuple

from models.model_registry import IMAGE_STUDIO_MODEL
from services.chat_store import ChatStore, MessageRecord

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def is_image_message(meta: dict) -> bool:
    if not meta:
        return False
    attachment = meta.get("attachment") if isinstance(meta.get("attachment"), dict) else {}
    return meta.get("type") == "image_gen" or bool(meta.get("imageUrl")) or bool(attachment.get("url"))


def to_gallery_image(message: MessageRecord) -> dict:
    meta = message.meta or {}
    attachment = meta.get("attachment") if isinstance(meta.get("attachment"), dict) else {}
    options = meta.get("originalOptions") if isinstance(meta.get("originalOptions"), dict) else {}
    return {
        "id": message.id,
        "url": meta.get("imageUrl") or attachment.get("url") or "",
        "prompt": meta.get("prompt") or message.content or "",
        "createdAt": message.created_at,
        "aspectRatio": options.get("aspectRatio"),
        "style": options.get("style"),
        "model": options.get("model"),
    }


def list_gallery_images(store: ChatStore, user_id: str, limit: int = DEFAULT_LIMIT,
                        offset: int = 0) -> Tuple[List[dict], bool]:
    """按时间倒序返回 (images, has_more)；分页在过滤之后进行，Image Studio 会话除外"""
    images = []
    for message, conversation_model in store.list_user_messages_with_model(user_id):
        if conversation_model == IMAGE_STUDIO_MODEL or not is_image_message(message.meta):
            continue
        image = to_gallery_image(message)
        if image["url"]:
            images.append(image)
    page = images[offset:offset + limit]
    return page, offset + limit < len(images)
