from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """应用配置（Pydantic Settings，可覆盖 env）"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True)

    # 供应商凭证
    gemini_api_key: Optional[str] = Field(default=None, validation_alias=AliasChoices("GEMINI_API_KEY", "GOOGLE_API_KEY"))
    anthropic_api_key: Optional[str] = Field(default=None, validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    groq_api_key: Optional[str] = Field(default=None, validation_alias=AliasChoices("GROQ_API_KEY", "LLAMA3_API_KEY"))
    openrouter_api_key: Optional[str] = Field(default=None, validation_alias="OPENROUTER_API_KEY")
    openrouter_referer: str = Field(default="https://vikini.app", validation_alias="OPENROUTER_REFERER")
    openrouter_title: str = Field(default="Vikini", validation_alias="OPENROUTER_TITLE")

    # 流式对话
    stream_timeout_ms: Optional[int] = Field(default=None, validation_alias="STREAM_TIMEOUT_MS")
    web_search_enabled: bool = Field(default=False, validation_alias="WEB_SEARCH_ENABLED")
    gemini_safety_settings_json: Optional[str] = Field(default=None, validation_alias="GEMINI_SAFETY_SETTINGS_JSON")
    # "fallback" 未注册模型回退到默认模型；"error" 直接报 404
    unknown_model_policy: str = Field(default="fallback", validation_alias="UNKNOWN_MODEL_POLICY")

    # 对话限流：固定窗口，按用户计数
    rate_limit_window_seconds: int = Field(default=60, validation_alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max: int = Field(default=20, validation_alias="RATE_LIMIT_MAX")

    # 附件
    attachments_ttl_hours: int = Field(default=36, validation_alias=AliasChoices("ATTACHMENTS_TTL_HOURS", "ATTACH_TTL_HOURS"))
    attach_max_text_bytes: int = Field(default=2 * 1024 * 1024, validation_alias="ATTACH_MAX_TEXT_BYTES")
    attach_max_image_bytes: int = Field(default=10 * 1024 * 1024, validation_alias="ATTACH_MAX_IMAGE_BYTES")
    attach_max_doc_bytes: int = Field(default=20 * 1024 * 1024, validation_alias="ATTACH_MAX_DOC_BYTES")
    attach_max_zip_bytes: int = Field(default=20 * 1024 * 1024, validation_alias="ATTACH_MAX_ZIP_BYTES")
    attach_max_files_per_conv: int = Field(default=20, validation_alias="ATTACH_MAX_FILES_PER_CONV")
    attach_max_total_bytes_per_conv: int = Field(default=50 * 1024 * 1024,
                                                  validation_alias="ATTACH_MAX_TOTAL_BYTES_PER_CONV")

    # 中间件 / 日志
    enable_chat_logging: bool = Field(default=True, validation_alias="VIKINI_CHAT_LOGGING")
    error_log_path: str = Field(default="logs/errors.log", validation_alias="VIKINI_ERROR_LOG_PATH")
    log_level: str = Field(default="INFO", validation_alias="VIKINI_LOG_LEVEL")

    # 存储
    database_path: str = Field(default="data/vikini.db", validation_alias="VIKINI_DATABASE_PATH")

    # 认证：上游身份代理写入的用户头，以及登录跳转地址
    auth_user_header: str = Field(default="x-user-email", validation_alias="VIKINI_AUTH_USER_HEADER")
    auth_signin_url: str = Field(default="/api/auth/signin", validation_alias="VIKINI_AUTH_SIGNIN_URL")

    default_theme: str = Field(default="blueprint", validation_alias="VIKINI_DEFAULT_THEME")


settings = AppSettings()
