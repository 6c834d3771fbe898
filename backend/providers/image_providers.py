import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from .gemini_provider import GeminiProvider
from .base import raise_for_status
from .provider_ids import GEMINI, OPENAI
from models.provider_registry import PROVIDER_CONFIG
from utils.errors import ProviderConfigError, ProviderError

logger = logging.getLogger(__name__)

GEMINI_IMAGE_MODEL = "gemini-3.1-flash-image-preview"
OPENAI_IMAGE_MODEL = "dall-e-3"


@dataclass
class ImageGenResult:
    url: str  # 远程 URL 或 data URL
    provider: str
    metadata: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"url": self.url, "provider": self.provider, "metadata": self.metadata}


class BaseImageProvider(ABC):
    """图片生成 Provider 接口"""

    provider_id: str = ""

    @abstractmethod
    async def generate(self, prompt: str, options=None) -> List[ImageGenResult]:
        raise NotImplementedError


class GeminiImageProvider(BaseImageProvider):
    """Gemini 原生图片模型（generateContent + responseModalities=Image）"""

    provider_id = GEMINI

    def __init__(self, api_key: str, model: str = GEMINI_IMAGE_MODEL,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.model = model
        self.api_key = api_key
        self.transport = transport

    async def generate(self, prompt: str, options=None) -> List[ImageGenResult]:
        if not self.api_key:
            raise ProviderConfigError("Missing Gemini API key (GEMINI_API_KEY)")
        style = getattr(options, "style", None)
        aspect_ratio = getattr(options, "aspectRatio", None) or "1:1"
        final_prompt = f"{prompt}. Style: {style}" if style and style != "none" else prompt

        client = GeminiProvider(self.api_key, transport=self.transport)
        count = image_count(options)
        results = []
        # 每次请求通常只返回一张图，按需重复请求直到凑够数量
        for _ in range(count):
            response = await client.generate_content(
                self.model,
                [{"role": "user", "parts": [{"text": final_prompt}]}],
                {"responseModalities": ["Image"], "imageConfig": {"aspectRatio": aspect_ratio}},
            )
            results.extend(self._parse_images(response, aspect_ratio))
            if len(results) >= count:
                break
        if not results:
            raise ProviderError(self.provider_id, "No images returned from Gemini")
        return results[:count]

    def _parse_images(self, response: dict, aspect_ratio: str) -> List[ImageGenResult]:
        results = []
        for candidate in response.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or part.get("inline_data")
                if not isinstance(inline, dict) or not inline.get("data"):
                    continue
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                results.append(ImageGenResult(
                    url=f"data:{mime_type};base64,{inline['data']}",
                    provider=self.provider_id,
                    metadata={"model": self.model, "mimeType": mime_type, "aspectRatio": aspect_ratio},
                ))
        return results


def image_count(options) -> int:
    return max(1, int(getattr(options, "numberOfImages", None) or 1))


def dalle_size(aspect_ratio: Optional[str]) -> str:
    """DALL·E 3 仅支持正方形 / 竖版 / 横版三种尺寸"""
    if aspect_ratio in ("9:16", "3:4"):
        return "1024x1792"
    if aspect_ratio in ("16:9", "4:3"):
        return "1792x1024"
    return "1024x1024"


class OpenAIImageProvider(BaseImageProvider):
    """OpenAI DALL·E 3"""

    provider_id = OPENAI

    def __init__(self, api_key: str, endpoint: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.endpoint = endpoint or PROVIDER_CONFIG[OPENAI]["images_endpoint"]
        self.transport = transport

    async def generate(self, prompt: str, options=None) -> List[ImageGenResult]:
        if not self.api_key:
            raise ProviderConfigError("Missing OpenAI API key (OPENAI_API_KEY)")
        style = getattr(options, "style", None)
        aspect_ratio = getattr(options, "aspectRatio", None)
        final_prompt = f"{prompt}, in the style of {style}" if style and style != "none" else prompt

        results = []
        # DALL·E 3 每次请求只允许 n=1
        async with httpx.AsyncClient(timeout=120.0, transport=self.transport) as client:
            for _ in range(image_count(options)):
                image = await self._request_one(client, final_prompt, aspect_ratio)
                url = image.get("url") or (
                    f"data:image/png;base64,{image['b64_json']}" if image.get("b64_json") else ""
                )
                if not url:
                    raise ProviderError(self.provider_id, "No image URL returned from OpenAI")
                results.append(ImageGenResult(
                    url=url,
                    provider=self.provider_id,
                    metadata={
                        "model": OPENAI_IMAGE_MODEL,
                        "aspectRatio": aspect_ratio,
                        "style": style,
                        "revisedPrompt": image.get("revised_prompt") or prompt,
                    },
                ))
        return results

    async def _request_one(self, client: httpx.AsyncClient, prompt: str, aspect_ratio: Optional[str]) -> dict:
        try:
            resp = await client.post(
                self.endpoint,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={
                    "model": OPENAI_IMAGE_MODEL,
                    "prompt": prompt,
                    "size": dalle_size(aspect_ratio),
                    "quality": "hd",
                    "n": 1,
                },
            )
        except httpx.TransportError as e:
            raise ProviderError(self.provider_id, f"OpenAI transport error: {e}", 502, "UPSTREAM_UNAVAILABLE") from e
        await raise_for_status(self.provider_id, resp)
        data = resp.json().get("data") or []
        return data[0] if data else {}
