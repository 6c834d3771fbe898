import json
import logging
from typing import AsyncIterator, List, Optional

import httpx

from .base import (
    BaseProvider,
    ProviderRequest,
    StreamChunk,
    error_from_payload,
    iter_sse,
    raise_for_status,
)
from .provider_ids import GEMINI
from utils.errors import ProviderError

logger = logging.getLogger(__name__)

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models"


def _first_candidate(chunk: dict) -> Optional[dict]:
    candidates = chunk.get("candidates") if isinstance(chunk, dict) else None
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        return candidates[0]
    return None


def _pick(obj, keys):
    if not isinstance(obj, dict):
        return None
    for key in keys:
        if obj.get(key) is not None:
            return obj[key]
    return None


def safe_text(chunk) -> str:
    """提取文本；思考内容（thought=True）包裹为 <think>...</think>"""
    if isinstance(chunk, str):
        return chunk
    candidate = _first_candidate(chunk)
    if not candidate:
        return ""
    parts = (candidate.get("content") or {}).get("parts")
    if not isinstance(parts, list):
        return ""
    result = ""
    for part in parts:
        if not isinstance(part, dict):
            continue
        thought = part.get("thought")
        text = part.get("text")
        if thought is True and isinstance(text, str):
            result += f"<think>{text}</think>"
        elif isinstance(thought, str):
            result += f"<think>{thought}</think>"
        elif isinstance(text, str):
            result += text
    return result


def extract_all_thought_signatures(chunk) -> List[str]:
    """收集 chunk 中全部 thoughtSignature（保序去重）"""
    signatures: List[str] = []
    if not isinstance(chunk, dict):
        return signatures
    direct = chunk.get("thoughtSignature")
    if isinstance(direct, str) and direct:
        signatures.append(direct)
    candidate = _first_candidate(chunk)
    parts = ((candidate or {}).get("content") or {}).get("parts")
    if isinstance(parts, list):
        for part in parts:
            sig = part.get("thoughtSignature") if isinstance(part, dict) else None
            if isinstance(sig, str) and sig and sig not in signatures:
                signatures.append(sig)
    return signatures


def parse_stream_chunk(chunk: dict) -> StreamChunk:
    candidate = _first_candidate(chunk) or {}
    usage = chunk.get("usageMetadata")
    return StreamChunk(
        text=safe_text(chunk),
        thought_signatures=extract_all_thought_signatures(chunk),
        finish_reason=_pick(candidate, ["finishReason", "finish_reason"]),
        grounding_metadata=candidate.get("groundingMetadata"),
        url_context_metadata=_pick(candidate, ["urlContextMetadata", "url_context_metadata"]),
        safety_ratings=_pick(candidate, ["safetyRatings", "safety_ratings"]),
        prompt_feedback=_pick(chunk, ["promptFeedback", "prompt_feedback"]),
        usage={
            "promptTokenCount": usage.get("promptTokenCount"),
            "candidatesTokenCount": usage.get("candidatesTokenCount"),
            "thoughtsTokenCount": usage.get("thoughtsTokenCount"),
            "totalTokenCount": usage.get("totalTokenCount"),
        } if isinstance(usage, dict) else None,
    )


class GeminiProvider(BaseProvider):
    """Google Gemini Provider（REST + SSE）"""

    provider_id = GEMINI

    def __init__(self, api_key: str, endpoint: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport)
        self.api_key = api_key
        self.endpoint = (endpoint or GEMINI_ENDPOINT).rstrip("/")

    def _headers(self) -> dict:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def build_payload(self, request: ProviderRequest) -> dict:
        generation_config = {}
        if request.max_output_tokens:
            generation_config["maxOutputTokens"] = request.max_output_tokens
        if request.thinking_config:
            generation_config["thinkingConfig"] = request.thinking_config
        payload = {"contents": request.contents}
        if request.system_prompt and request.system_prompt.strip():
            payload["systemInstruction"] = {"role": "system", "parts": [{"text": request.system_prompt}]}
        if generation_config:
            payload["generationConfig"] = generation_config
        if request.tools:
            payload["tools"] = request.tools
        if request.safety_settings:
            payload["safetySettings"] = request.safety_settings
        return payload

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        url = f"{self.endpoint}/{request.model}:streamGenerateContent?alt=sse"
        payload = self.build_payload(request)
        try:
            async with self._client(request.timeout) as client:
                async with client.stream("POST", url, headers=self._headers(), json=payload) as resp:
                    await raise_for_status(self.provider_id, resp)
                    async for _event, data in iter_sse(resp):
                        try:
                            chunk = json.loads(data)
                        except ValueError:
                            continue
                        if isinstance(chunk, dict) and chunk.get("error"):
                            raise error_from_payload(self.provider_id, chunk["error"])
                        yield parse_stream_chunk(chunk)
        except httpx.TransportError as e:
            raise ProviderError(self.provider_id, f"Gemini transport error: {e}", 502, "UPSTREAM_UNAVAILABLE") from e

    async def generate_content(self, model: str, contents: List[dict], config: Optional[dict] = None,
                               timeout: Optional[float] = None) -> dict:
        """非流式 generateContent，返回原始响应 JSON"""
        url = f"{self.endpoint}/{model}:generateContent"
        payload = {"contents": contents}
        if config:
            payload["generationConfig"] = config
        try:
            async with self._client(timeout) as client:
                resp = await client.post(url, headers=self._headers(), json=payload)
        except httpx.TransportError as e:
            raise ProviderError(self.provider_id, f"Gemini transport error: {e}", 502, "UPSTREAM_UNAVAILABLE") from e
        await raise_for_status(self.provider_id, resp)
        return resp.json()

    async def generate_text(self, model: str, prompt: str, temperature: Optional[float] = None,
                            max_output_tokens: Optional[int] = None) -> str:
        config = {}
        if temperature is not None:
            config["temperature"] = temperature
        if max_output_tokens is not None:
            config["maxOutputTokens"] = max_output_tokens
        result = await self.generate_content(model, [{"role": "user", "parts": [{"text": prompt}]}], config or None)
        return safe_text(result)
