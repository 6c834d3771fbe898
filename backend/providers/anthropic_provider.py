import json
from typing import AsyncIterator, Optional

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
from .provider_ids import ANTHROPIC
from utils.errors import ProviderError

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192


class AnthropicProvider(BaseProvider):
    """Anthropic Claude Provider（Messages API 流式）"""

    provider_id = ANTHROPIC

    def __init__(self, api_key: str, endpoint: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport)
        self.api_key = api_key
        self.endpoint = endpoint or "https://api.anthropic.com/v1/messages"

    def build_payload(self, request: ProviderRequest) -> dict:
        # Messages API 不接受 system 角色出现在 messages 中
        messages = [m for m in contents_to_text_messages(request.contents) if m["role"] != "system"]
        payload = {
            "model": request.model,
            "max_tokens": request.max_output_tokens or DEFAULT_MAX_TOKENS,
            "messages": messages,
            "stream": True,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        input_tokens = None
        try:
            async with self._client(request.timeout) as client:
                async with client.stream("POST", self.endpoint, headers=headers,
                                         json=self.build_payload(request)) as resp:
                    await raise_for_status(self.provider_id, resp)
                    async for event, data in iter_sse(resp):
                        try:
                            payload = json.loads(data)
                        except ValueError:
                            continue
                        kind = (payload.get("type") if isinstance(payload, dict) else None) or event
                        if kind == "error":
                            raise error_from_payload(self.provider_id, payload.get("error"))
                        if kind == "message_start":
                            usage = (payload.get("message") or {}).get("usage") or {}
                            input_tokens = usage.get("input_tokens")
                        elif kind == "content_block_delta":
                            delta = payload.get("delta") or {}
                            if delta.get("type") == "text_delta" and delta.get("text"):
                                yield StreamChunk(text=delta["text"])
                        elif kind == "message_delta":
                            output_tokens = (payload.get("usage") or {}).get("output_tokens")
                            total = None
                            if input_tokens is not None and output_tokens is not None:
                                total = input_tokens + output_tokens
                            yield StreamChunk(
                                finish_reason=(payload.get("delta") or {}).get("stop_reason"),
                                usage={
                                    "promptTokenCount": input_tokens,
                                    "candidatesTokenCount": output_tokens,
                                    "thoughtsTokenCount": None,
                                    "totalTokenCount": total,
                                },
                            )
                        elif kind == "message_stop":
                            return
        except httpx.TransportError as e:
            raise ProviderError(self.provider_id, f"Anthropic transport error: {e}", 502,
                                "UPSTREAM_UNAVAILABLE") from e
