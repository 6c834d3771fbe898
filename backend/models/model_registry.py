"""集中管理对话模型配置

SELECTABLE_MODELS 中的 id 是前端选择器展示、数据库中保存的 id；
发往各供应商 API 前需经过 normalize_model_for_api + vendor_model_id 转换。
注册表在导入时构建，之后只读，可在任意并发请求中安全调用。
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Optional

from providers.provider_ids import ANTHROPIC, GEMINI, GROQ, OPENROUTER
from utils.errors import ModelNotFoundError, UnsupportedModelError

DEFAULT_MODEL = "gemini-2.5-flash"
IMAGE_STUDIO_MODEL = "vikini-image-studio"

# thinking_style 取值
THINKING_LEVEL = "level"    # Gemini 3: thinkingLevel 字符串
THINKING_BUDGET = "budget"  # Gemini 2.5: thinkingBudget 数值


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    vendor: str
    name: str
    desc_key: str
    token_limit: int
    max_output_tokens: int
    supports_thinking: bool = False
    thinking_style: Optional[str] = None
    # 供应商侧 id，为空时与 id 相同
    api_id: Optional[str] = None

    @property
    def vendor_id(self) -> str:
        return self.api_id or self.id


SELECTABLE_MODELS = (
    # Gemini 2.5
    ModelDescriptor("gemini-2.5-flash", GEMINI, "Gemini 2.5 Flash", "modelDescFlash25",
                    token_limit=1_000_000, max_output_tokens=65_536,
                    supports_thinking=True, thinking_style=THINKING_BUDGET),
    ModelDescriptor("gemini-2.5-pro", GEMINI, "Gemini 2.5 Pro", "modelDescPro25",
                    token_limit=2_000_000, max_output_tokens=65_536,
                    supports_thinking=True, thinking_style=THINKING_BUDGET),
    # Gemini 3（官方 id 带 -preview 后缀）
    ModelDescriptor("gemini-3-flash-preview", GEMINI, "Gemini 3 Flash", "modelDescFlash3",
                    token_limit=1_000_000, max_output_tokens=65_536,
                    supports_thinking=True, thinking_style=THINKING_LEVEL),
    ModelDescriptor("gemini-3-pro-preview", GEMINI, "Gemini 3 Pro", "modelDescPro3",
                    token_limit=2_000_000, max_output_tokens=65_536,
                    supports_thinking=True, thinking_style=THINKING_LEVEL),
    ModelDescriptor("gemini-3-flash-thinking", GEMINI, "Gemini 3 Flash (Thinking)", "modelDescFlash3",
                    token_limit=1_000_000, max_output_tokens=65_536,
                    supports_thinking=True, thinking_style=THINKING_LEVEL),
    ModelDescriptor("gemini-3-pro-thinking", GEMINI, "Gemini 3 Pro (Thinking)", "modelDescPro3",
                    token_limit=2_000_000, max_output_tokens=65_536,
                    supports_thinking=True, thinking_style=THINKING_LEVEL),
    # Groq（Llama）
    ModelDescriptor("llama-3.3-70b-versatile", GROQ, "Llama 3.3 70B Versatile", "modelDescLlama33_70b",
                    token_limit=128_000, max_output_tokens=32_768),
    ModelDescriptor("llama-3.1-8b-instant", GROQ, "Llama 3.1 8B Instant", "modelDescLlama31_8b",
                    token_limit=128_000, max_output_tokens=8_192),
    # OpenRouter 免费模型
    ModelDescriptor("deepseek/deepseek-chat:free", OPENROUTER, "DeepSeek V3 Chat (Free)", "modelDescDeepSeekV3",
                    token_limit=128_000, max_output_tokens=8_192),
    ModelDescriptor("deepseek/deepseek-r1:free", OPENROUTER, "DeepSeek R1 Reasoning (Free)", "modelDescDeepSeekR1",
                    token_limit=64_000, max_output_tokens=8_192),
    ModelDescriptor("meta-llama/llama-4-maverick:free", OPENROUTER, "Llama 4 Maverick (Free)", "modelDescLlama4Maverick",
                    token_limit=256_000, max_output_tokens=8_192),
    ModelDescriptor("meta-llama/llama-3.3-70b-instruct:free", OPENROUTER, "Llama 3.3 70B Instruct (Free)",
                    "modelDescLlama33Instruct", token_limit=128_000, max_output_tokens=8_192),
    ModelDescriptor("google/gemma-3-27b-it:free", OPENROUTER, "Gemma 3 27B (Free)", "modelDescGemma3",
                    token_limit=96_000, max_output_tokens=8_192),
    ModelDescriptor("mistral/mistral-small-3.1-24b-instruct:free", OPENROUTER, "Mistral Small 3.1 24B (Free)",
                    "modelDescMistralSmall", token_limit=32_000, max_output_tokens=8_192),
    # Claude（Anthropic 直连；无 key 时经 OpenRouter）
    ModelDescriptor("claude-haiku-4.5", ANTHROPIC, "Claude 4.5 Haiku (Fast)", "modelDescClaudeHaiku",
                    token_limit=200_000, max_output_tokens=8_192, api_id="claude-3-5-haiku-latest"),
    ModelDescriptor("claude-sonnet-4.5", ANTHROPIC, "Claude 4.5 Sonnet", "modelDescClaudeSonnet",
                    token_limit=200_000, max_output_tokens=8_192, api_id="claude-3-5-sonnet-latest"),
)

# 可直接发给 API 但不出现在选择器里的 id
_API_ONLY_MODELS = (
    ModelDescriptor("gemini-3-pro-image-preview", GEMINI, "Gemini 3 Pro Image", "modelDescPro3",
                    token_limit=1_000_000, max_output_tokens=32_768),
)

_REGISTRY = MappingProxyType({m.id: m for m in SELECTABLE_MODELS + _API_ONLY_MODELS})
_SELECTABLE_IDS = frozenset(m.id for m in SELECTABLE_MODELS)

# 兼容旧数据中的别名与已下线模型
MODEL_ALIASES = MappingProxyType({
    "gemini-2.0-flash": DEFAULT_MODEL,
    "gemini-2.0-flash-exp": DEFAULT_MODEL,
    "gemini-1.5-pro": DEFAULT_MODEL,
    "gemini-1.5-flash": DEFAULT_MODEL,
    "gemini-3-flash": "gemini-3-flash-preview",
    "gemini-3-pro": "gemini-3-pro-preview",
    "gemini-3-pro-image": "gemini-3-pro-image-preview",
    "llama3-70b-8192": "llama-3.3-70b-versatile",
    "llama3-8b-8192": "llama-3.1-8b-instant",
    "llama-3.1-70b-versatile": "llama-3.3-70b-versatile",
    "llama-3.1-70b-specdec": "llama-3.3-70b-versatile",
})

# Claude 经 OpenRouter 时使用的 id
OPENROUTER_CLAUDE_IDS = MappingProxyType({
    "claude-sonnet-4.5": "anthropic/claude-sonnet-4",
    "claude-haiku-4.5": "anthropic/claude-haiku-4",
})


def _clean(model_id) -> str:
    return str(model_id or "").strip()


def _policy() -> str:
    from config import settings
    return (settings.unknown_model_policy or "fallback").lower()


def normalize_model_for_api(model_id, policy: Optional[str] = None) -> str:
    """规范化模型 id：别名映射 → 已注册 id → 未命中按策略回退或报错

    空输入始终返回 DEFAULT_MODEL。
    policy 默认读取配置 unknown_model_policy（"fallback" | "error"）。
    """
    raw = _clean(model_id)
    if not raw:
        return DEFAULT_MODEL
    if raw in MODEL_ALIASES:
        return MODEL_ALIASES[raw]
    if raw in _REGISTRY:
        return raw
    if (policy or _policy()) == "error":
        raise ModelNotFoundError(raw)
    return DEFAULT_MODEL


def get_model_descriptor(model_id) -> ModelDescriptor:
    """严格查找，不做别名与回退"""
    raw = _clean(model_id)
    descriptor = _REGISTRY.get(raw)
    if descriptor is None:
        raise ModelNotFoundError(raw)
    return descriptor


def _resolve_descriptor(model_id) -> ModelDescriptor:
    # 能力查询总是走回退：未知 id 使用默认模型的描述
    return _REGISTRY[normalize_model_for_api(model_id, policy="fallback")]


def get_model_max_output_tokens(model_id) -> int:
    return _resolve_descriptor(model_id).max_output_tokens


def model_supports_thinking(model_id) -> bool:
    return _resolve_descriptor(model_id).supports_thinking


def get_thinking_style(model_id) -> Optional[str]:
    return _resolve_descriptor(model_id).thinking_style


def is_selectable_model_id(model_id) -> bool:
    raw = _clean(model_id)
    return bool(raw) and raw in _SELECTABLE_IDS


def coerce_stored_model(model_id) -> str:
    """数据库/前端读取的模型 id 收敛到可选模型"""
    normalized = normalize_model_for_api(model_id, policy="fallback")
    return normalized if is_selectable_model_id(normalized) else DEFAULT_MODEL


def get_model_token_limit(model_id) -> int:
    return _REGISTRY[coerce_stored_model(model_id)].token_limit


def resolve_vendor(model_id: str) -> str:
    """根据模型 id 的前缀/命名空间判断供应商（纯函数）"""
    model = _clean(model_id)
    if "/" in model or ":free" in model:
        return OPENROUTER
    if model.startswith("claude-"):
        return ANTHROPIC
    if "llama" in model:
        return GROQ
    if model.startswith("gemini-"):
        return GEMINI
    raise UnsupportedModelError(model)


def vendor_model_id(model_id: str, vendor: str) -> str:
    """规范 id → 供应商侧 id"""
    if vendor == OPENROUTER and model_id in OPENROUTER_CLAUDE_IDS:
        return OPENROUTER_CLAUDE_IDS[model_id]
    descriptor = _REGISTRY.get(model_id)
    return descriptor.vendor_id if descriptor else model_id


def list_selectable_models() -> list:
    return [
        {
            "id": m.id,
            "name": m.name,
            "descKey": m.desc_key,
            "provider": m.vendor,
            "tokenLimit": m.token_limit,
            "contextWindow": m.token_limit,
            "maxOutputTokens": m.max_output_tokens,
            "supportsThinking": m.supports_thinking,
            "isDefault": m.id == DEFAULT_MODEL,
        }
        for m in SELECTABLE_MODELS
    ]
