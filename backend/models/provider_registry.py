"""Provider registry: endpoints and credential settings for each vendor."""

PROVIDER_CONFIG = {
    "gemini": {
        "name": "Google Gemini",
        "endpoint": "https://generativelanguage.googleapis.com/v1beta/models",
        "type": "gemini",
        "key_setting": "gemini_api_key",
    },
    "anthropic": {
        "name": "Anthropic",
        "endpoint": "https://api.anthropic.com/v1/messages",
        "type": "anthropic",
        "key_setting": "anthropic_api_key",
    },
    "groq": {
        "name": "Groq",
        "endpoint": "https://api.groq.com/openai/v1/chat/completions",
        "type": "openai",
        "key_setting": "groq_api_key",
    },
    "openrouter": {
        "name": "OpenRouter",
        "endpoint": "https://openrouter.ai/api/v1/chat/completions",
        "type": "openai",
        "key_setting": "openrouter_api_key",
    },
    "openai": {
        "name": "OpenAI",
        "endpoint": "https://api.openai.com/v1/chat/completions",
        "images_endpoint": "https://api.openai.com/v1/images/generations",
        "type": "openai",
        "key_setting": "openai_api_key",
    },
}


def get_provider_api_key(provider_id: str, app_settings) -> str:
    """从配置读取供应商 key，去除首尾空白；未配置返回空串"""
    key_setting = PROVIDER_CONFIG.get(provider_id, {}).get("key_setting")
    if not key_setting:
        return ""
    return (getattr(app_settings, key_setting, None) or "").strip()
