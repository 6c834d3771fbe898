import platform
from datetime import datetime

from fastapi import APIRouter

from models.model_registry import DEFAULT_MODEL

router = APIRouter()

APP_VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@router.get("/version")
async def get_version():
    return {"version": APP_VERSION, "defaultModel": DEFAULT_MODEL, "platform": platform.system()}
