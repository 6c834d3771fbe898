import logging
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field

from config import settings as default_settings
from models.provider_registry import get_provider_api_key
from providers.gemini_provider import GeminiProvider
from providers.image_providers import BaseImageProvider, GeminiImageProvider, OpenAIImageProvider
from providers.provider_ids import GEMINI, OPENAI
from utils.errors import ValidationError

logger = logging.getLogger(__name__)

ENHANCER_DEFAULT_MODEL = "gemini-2.5-flash"
ENHANCE_PROMPT_TEMPLATE = (
    "Rewrite the following image generation prompt to be more detailed, artistic, and descriptive. "
    "Keep it under 100 words. Maintain the original intent but enhance visual details, lighting, and style. "
    "Return ONLY the enhanced prompt, no intro/outro.\n\nOriginal Prompt: \"{prompt}\""
)


class ImageGenOptions(BaseModel):
    aspectRatio: Optional[Literal["1:1", "16:9", "9:16", "4:3", "3:4"]] = None
    numberOfImages: int = Field(default=1, ge=1, le=4)
    style: Optional[str] = None
    enhancer: bool = False
    enhancerModel: Optional[str] = None
    model: Optional[str] = None


class ImageGenFactory:
    """按 id 返回图片 Provider 实例；只缓存带 key 的实例，key 变化时重建"""

    _instances: Dict[str, BaseImageProvider] = {}

    @classmethod
    def get_provider(cls, provider_id: str, app_settings=None) -> BaseImageProvider:
        pid = (provider_id or "").lower()
        if pid not in (GEMINI, OPENAI):
            raise ValidationError(f"Unknown image provider: {provider_id}")
        app_settings = app_settings or default_settings
        api_key = get_provider_api_key(pid, app_settings)
        cached = cls._instances.get(pid)
        if cached is not None and getattr(cached, "api_key", api_key) == api_key:
            return cached
        if pid == GEMINI:
            provider = GeminiImageProvider(api_key)
        else:
            provider = OpenAIImageProvider(api_key)
        if api_key:
            cls._instances[pid] = provider
        else:
            cls._instances.pop(pid, None)
        return provider

    @classmethod
    def clear(cls) -> None:
        cls._instances.clear()


def select_image_provider(model: Optional[str]) -> str:
    name = (model or "").lower()
    if "dall-e" in name or "gpt" in name:
        return OPENAI
    return GEMINI


async def generate_image_action(prompt: str, options: Optional[ImageGenOptions] = None,
                                provider_id: str = GEMINI) -> dict:
    """生成图片；任何异常都转换为 {"success": False, "error": ...}，不向外抛出"""
    try:
        provider = ImageGenFactory.get_provider(provider_id)
        results = await provider.generate(prompt, options)
        return {"success": True, "data": [r.to_dict() for r in results]}
    except Exception as e:
        logger.error(f"generate_image_action failed ({provider_id}): {e}")
        message = getattr(e, "message", None) or str(e) or "Unknown error generating image"
        return {"success": False, "error": message}


async def enhance_prompt(prompt: str, enhancer_model: Optional[str] = None, app_settings=None) -> str:
    """用 Gemini 改写提示词；失败或无 key 时返回原提示词"""
    app_settings = app_settings or default_settings
    api_key = get_provider_api_key(GEMINI, app_settings)
    if not api_key:
        return prompt
    model = ENHANCER_DEFAULT_MODEL
    if enhancer_model and "gemini" in enhancer_model.lower():
        model = enhancer_model
    try:
        enhanced = await GeminiProvider(api_key).generate_text(model, ENHANCE_PROMPT_TEMPLATE.format(prompt=prompt))
    except Exception as e:
        logger.error(f"Prompt enhancement failed, using original: {e}")
        return prompt
    enhanced = (enhanced or "").strip()
    if enhanced:
        logger.info(f"[Enhancer] Enhanced prompt: {enhanced}")
    return enhanced or prompt


def build_image_message_meta(prompt: str, image_url: str, provider_id: str, options: ImageGenOptions,
                             mime_type: str = "image/png") -> dict:
    """图片消息的 meta，图库按 type/imageUrl/attachment.url 识别"""
    original_options = options.model_dump(exclude_none=True)
    return {
        "type": "image_gen",
        "prompt": prompt,
        "imageUrl": image_url,
        "originalOptions": original_options,
        "provider": provider_id,
        "attachment": {"url": image_url, "mimeType": mime_type},
    }
