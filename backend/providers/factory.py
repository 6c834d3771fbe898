from typing import Optional

import httpx

from .base import BaseProvider
from .openai_provider import OpenAICompatibleProvider
from .anthropic_provider import AnthropicProvider
from .gemini_provider import GeminiProvider
from .provider_ids import OPENAI_LIKE, ANTHROPIC, GEMINI, OPENROUTER
from models.provider_registry import PROVIDER_CONFIG, get_provider_api_key
from utils.errors import ProviderConfigError, UnsupportedModelError


class ProviderFactory:
    """简单的 Provider 工厂：按供应商 id 创建客户端，凭证缺失时在联网前失败"""

    @staticmethod
    def create(provider_id: str, app_settings, endpoint: Optional[str] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None) -> BaseProvider:
        pid = (provider_id or "").lower()
        config = PROVIDER_CONFIG.get(pid)
        if config is None:
            raise UnsupportedModelError(f"provider:{provider_id}")
        api_key = get_provider_api_key(pid, app_settings)
        if not api_key:
            raise ProviderConfigError(f"Missing API key for provider '{pid}' ({config['key_setting'].upper()})")
        endpoint = endpoint or config["endpoint"]

        if pid == GEMINI:
            return GeminiProvider(api_key, endpoint, transport=transport)
        if pid == ANTHROPIC:
            return AnthropicProvider(api_key, endpoint, transport=transport)
        if pid in OPENAI_LIKE:
            extra_headers = None
            if pid == OPENROUTER:
                extra_headers = {
                    "HTTP-Referer": app_settings.openrouter_referer,
                    "X-Title": app_settings.openrouter_title,
                }
            return OpenAICompatibleProvider(api_key, endpoint, provider_id=pid,
                                            extra_headers=extra_headers, transport=transport)
        raise UnsupportedModelError(f"provider:{provider_id}")
