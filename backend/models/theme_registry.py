"""主题配置：theme id → CSS class，启动时加载，只读"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ThemeDefinition:
    id: str
    label_key: str
    group: str
    swatch: str
    tone: str = "dark"

    @property
    def css_class(self) -> str:
        return f"theme-{self.id}"


THEME_CONFIG = (
    # Glassmorphism
    ThemeDefinition("nebula", "nebula", "Glassmorphism", "#22d3ee"),
    ThemeDefinition("orchid", "orchid", "Glassmorphism", "#c084fc"),
    ThemeDefinition("aqua", "aqua", "Glassmorphism", "#14b8a6"),
    ThemeDefinition("holo", "holo", "Glassmorphism", "#22d3ee"),
    ThemeDefinition("sunset", "sunset", "Glassmorphism", "#f97316"),
    # Focus
    ThemeDefinition("blueprint", "blueprint", "Focus", "#3b82f6"),
    ThemeDefinition("amber", "amber", "Focus", "#d97706"),
    ThemeDefinition("indigo", "indigo", "Focus", "#6366f1"),
    ThemeDefinition("charcoal", "charcoal", "Focus", "#4b5563"),
    ThemeDefinition("gold", "gold", "Focus", "#d4af37"),
    ThemeDefinition("red", "red", "Focus", "#ef4444"),
    ThemeDefinition("rose", "rose", "Focus", "#cc8899"),
    # Red Alert 2
    ThemeDefinition("yuri", "yuri", "Red Alert 2", "#a855f7"),
    ThemeDefinition("allied", "allied", "Red Alert 2", "#38bdf8"),
    ThemeDefinition("soviet", "soviet", "Red Alert 2", "#ef4444"),
)

THEME_IDS = tuple(t.id for t in THEME_CONFIG)
DEFAULT_THEME = "blueprint"


def get_theme_by_id(theme_id: str) -> Optional[ThemeDefinition]:
    for theme in THEME_CONFIG:
        if theme.id == theme_id:
            return theme
    return None


def theme_class_name(theme_id: str, default: str = DEFAULT_THEME) -> str:
    """未知 theme id 回退到默认主题的 class"""
    theme = get_theme_by_id(theme_id) or get_theme_by_id(default) or get_theme_by_id(DEFAULT_THEME)
    return theme.css_class


def theme_class_map() -> dict:
    return {t.id: t.css_class for t in THEME_CONFIG}
