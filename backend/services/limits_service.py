"""
用户等级限制：每日消息数与单文件大小

等级配置优先读 rank_configs 表，缺失时使用内置默认值；
没有 profile 的用户按 basic 处理，被封禁的用户直接拒绝。
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from services.chat_store import ChatStore
from utils.errors import ForbiddenError

logger = logging.getLogger(__name__)

NOT_WHITELISTED = "not_whitelisted"
BASIC = "basic"


@dataclass
class RankConfig:
    rank: str
    daily_message_limit: int
    max_file_size_mb: int
    features: Dict[str, bool] = field(default_factory=dict)


DEFAULT_RANK_CONFIGS: Dict[str, RankConfig] = {
    NOT_WHITELISTED: RankConfig(NOT_WHITELISTED, 0, 0, {"web_search": False, "unlimited_gems": False}),
    BASIC: RankConfig(BASIC, 20, 5, {"web_search": False, "unlimited_gems": False}),
    "pro": RankConfig("pro", 100, 20, {"web_search": True, "unlimited_gems": True}),
    "admin": RankConfig("admin", 10_000, 50, {"web_search": True, "unlimited_gems": True}),
}


@dataclass
class DailyMessageStatus:
    count: int
    limit: int
    remaining: int
    can_send: bool
    rank: str


@dataclass
class FileSizeCheck:
    allowed: bool
    file_size_mb: float
    max_size_mb: int


def today_key(now: Optional[datetime] = None) -> str:
    """UTC 日期 YYYY-MM-DD"""
    return (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")


def get_rank_config(store: ChatStore, rank: str) -> RankConfig:
    row = store.get_rank_config(rank)
    if row:
        return RankConfig(row["rank"], row["daily_message_limit"], row["max_file_size_mb"], row["features"])
    if rank in DEFAULT_RANK_CONFIGS:
        return DEFAULT_RANK_CONFIGS[rank]
    # 未知等级回退到 basic
    basic = store.get_rank_config(BASIC)
    if basic:
        return RankConfig(basic["rank"], basic["daily_message_limit"], basic["max_file_size_mb"], basic["features"])
    return DEFAULT_RANK_CONFIGS[BASIC]


def get_user_limits(store: ChatStore, user_id: str) -> RankConfig:
    profile = store.get_profile(user_id)
    if profile is None:
        return get_rank_config(store, BASIC)
    if profile["is_blocked"]:
        logger.warning(f"Blocked user {user_id} rejected")
        raise ForbiddenError("User is blocked")
    return get_rank_config(store, profile["rank"])


def check_daily_message_limit(store: ChatStore, user_id: str,
                              now: Optional[datetime] = None) -> DailyMessageStatus:
    limits = get_user_limits(store, user_id)
    count = store.get_daily_message_count(user_id, today_key(now))
    return DailyMessageStatus(
        count=count,
        limit=limits.daily_message_limit,
        remaining=max(0, limits.daily_message_limit - count),
        can_send=count < limits.daily_message_limit,
        rank=limits.rank,
    )


def increment_daily_message_count(store: ChatStore, user_id: str, now: Optional[datetime] = None) -> int:
    return store.increment_daily_message_count(user_id, today_key(now))


def check_file_size(store: ChatStore, user_id: str, size_bytes: int) -> FileSizeCheck:
    limits = get_user_limits(store, user_id)
    size_mb = size_bytes / (1024 * 1024)
    return FileSizeCheck(
        allowed=size_bytes <= limits.max_file_size_mb * 1024 * 1024,
        file_size_mb=math.ceil(size_mb * 100) / 100,
        max_size_mb=limits.max_file_size_mb,
    )
