from fastapi import APIRouter

from config import settings
from models.model_registry import DEFAULT_MODEL, list_selectable_models
from models.theme_registry import THEME_CONFIG, theme_class_name
from utils.errors import success

router = APIRouter()


@router.get("/api/models")
async def get_models():
    return success({"models": list_selectable_models(), "defaultModel": DEFAULT_MODEL})


@router.get("/api/themes")
async def get_themes():
    themes = [
        {
            "id": t.id,
            "labelKey": t.label_key,
            "group": t.group,
            "swatch": t.swatch,
            "tone": t.tone,
            "className": t.css_class,
        }
        for t in THEME_CONFIG
    ]
    return success({"themes": themes, "defaultClassName": theme_class_name(settings.default_theme)})
