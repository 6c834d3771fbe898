import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from routes.dependencies import get_chat_store, get_current_user
from services.chat_store import ChatStore
from services.image_service import (
    ImageGenOptions,
    build_image_message_meta,
    enhance_prompt,
    generate_image_action,
    select_image_provider,
)
from utils.errors import AppError, success

logger = logging.getLogger(__name__)

router = APIRouter()


class GenerateImageRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    conversationId: str = Field(..., min_length=1)
    options: Optional[ImageGenOptions] = None


@router.post("/api/generate-image")
async def generate_image(
    body: GenerateImageRequest,
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    convo = store.get_owned_conversation(user_id, body.conversationId)
    options = body.options or ImageGenOptions()

    prompt = body.prompt
    if options.enhancer:
        logger.info(f"[Enhancer] Original prompt: {prompt}")
        prompt = await enhance_prompt(prompt, options.enhancerModel)

    provider_id = select_image_provider(options.model)
    result = await generate_image_action(prompt, options, provider_id)
    if not result["success"]:
        raise AppError(result["error"], 502, "IMAGE_GENERATION_FAILED")
    if not result["data"]:
        raise AppError("No images generated", 502, "IMAGE_GENERATION_FAILED")

    image = result["data"][0]
    mime_type = (image.get("metadata") or {}).get("mimeType") or "image/png"
    meta = build_image_message_meta(prompt, image["url"], provider_id, options, mime_type)
    message = store.save_message(user_id, convo.id, "assistant", f"Generated Image: {prompt}", meta)
    logger.info(f"[Image Gen] Saved image message {message.id} for conversation {convo.id}")
    return success({
        "message": message.to_dict(),
        "imageUrl": image["url"],
        "imageUrls": [item["url"] for item in result["data"]],
    })
