from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from routes.dependencies import get_chat_store, get_current_user
from services.chat_store import ChatStore
from services.gallery_service import DEFAULT_LIMIT, MAX_LIMIT, is_image_message, list_gallery_images
from services.image_service import ImageGenOptions, build_image_message_meta
from utils.errors import NotFoundError, success

router = APIRouter()


class AddGalleryImageRequest(BaseModel):
    conversationId: str = Field(..., min_length=1)
    imageUrl: str = Field(..., min_length=1)
    prompt: str = ""
    provider: str = "upload"
    mimeType: str = "image/png"
    options: Optional[ImageGenOptions] = None


@router.get("/api/gallery")
async def get_gallery(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    images, has_more = list_gallery_images(store, user_id, limit, offset)
    return success({"images": images, "hasMore": has_more})


@router.post("/api/gallery")
async def add_gallery_image(
    body: AddGalleryImageRequest,
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    convo = store.get_owned_conversation(user_id, body.conversationId)
    meta = build_image_message_meta(body.prompt, body.imageUrl, body.provider,
                                    body.options or ImageGenOptions(), body.mimeType)
    message = store.save_message(user_id, convo.id, "assistant", body.prompt or "Image", meta)
    return success({"message": message.to_dict()}, status_code=201)


@router.delete("/api/gallery/{message_id}")
async def delete_gallery_image(
    message_id: str,
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    message = store.get_message(message_id)
    # 只删除图片消息，普通消息走 /api/messages
    if message is None or not is_image_message(message.meta):
        raise NotFoundError("Image")
    store.delete_message(user_id, message_id)
    return success({"deleted": True, "id": message_id})
