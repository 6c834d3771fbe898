import os
import sys

import pytest

# 将 backend 目录添加到 sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config import AppSettings  # noqa: E402
from services.chat_store import ChatStore  # noqa: E402

USER = "alice@example.com"


def make_settings(**overrides) -> AppSettings:
    """构造与环境变量隔离的配置"""
    values = dict(
        gemini_api_key="gemini-key",
        anthropic_api_key=None,
        openai_api_key="openai-key",
        groq_api_key="groq-key",
        openrouter_api_key="openrouter-key",
        stream_timeout_ms=None,
        web_search_enabled=False,
        gemini_safety_settings_json=None,
        unknown_model_policy="fallback",
        enable_chat_logging=True,
        error_log_path=os.path.join("logs", "test-errors.log"),
    )
    values.update(overrides)
    return AppSettings(_env_file=None, **values)


@pytest.fixture
def app_settings():
    return make_settings()


@pytest.fixture
def store():
    s = ChatStore(":memory:")
    yield s
    s.close()
