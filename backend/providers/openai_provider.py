import json
from typing import AsyncIterator, Dict, Optional

import httpx

from .base import (
    BaseProvider,
    ProviderRequest,
    StreamChunk,
    contents_to_text_messages,
    error_from_payload,
    iter_sse,
    raise_for_status,
)
from .provider_ids import OPENAI
from utils.errors import ProviderError


class OpenAICompatibleProvider(BaseProvider):
    """OpenAI 兼容格式的 Provider（Groq、OpenRouter 及官方 openai）"""

    def __init__(self, api_key: str, endpoint: Optional[str] = None, provider_id: str = OPENAI,
                 extra_headers: Optional[Dict[str, str]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport)
        self.api_key = api_key
        self.endpoint = endpoint or "https://api.openai.com/v1/chat/completions"
        self.provider_id = provider_id
        self.extra_headers = dict(extra_headers or {})

    def _headers(self) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self.extra_headers)
        return headers

    def build_payload(self, request: ProviderRequest) -> dict:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(contents_to_text_messages(request.contents))
        payload = {
            "model": request.model,
            "messages": messages,
            "stream": True,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_output_tokens:
            payload["max_tokens"] = request.max_output_tokens
        return payload

    @staticmethod
    def parse_chunk(chunk: dict) -> StreamChunk:
        choices = chunk.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        delta = choice.get("delta") or {}
        usage = chunk.get("usage")
        return StreamChunk(
            text=delta.get("content") or "",
            finish_reason=choice.get("finish_reason"),
            usage={
                "promptTokenCount": usage.get("prompt_tokens"),
                "candidatesTokenCount": usage.get("completion_tokens"),
                "thoughtsTokenCount": None,
                "totalTokenCount": usage.get("total_tokens"),
            } if isinstance(usage, dict) else None,
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        payload = self.build_payload(request)
        try:
            async with self._client(request.timeout) as client:
                async with client.stream("POST", self.endpoint, headers=self._headers(), json=payload) as resp:
                    await raise_for_status(self.provider_id, resp)
                    async for _event, data in iter_sse(resp):
                        if data == "[DONE]":
                            return
                        try:
                            chunk = json.loads(data)
                        except ValueError:
                            continue
                        if not isinstance(chunk, dict):
                            continue
                        if chunk.get("error"):
                            raise error_from_payload(self.provider_id, chunk["error"])
                        yield self.parse_chunk(chunk)
        except httpx.TransportError as e:
            raise ProviderError(self.provider_id, f"{self.provider_id} transport error: {e}", 502,
                                "UPSTREAM_UNAVAILABLE") from e
