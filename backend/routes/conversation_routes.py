from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models.model_registry import coerce_stored_model, is_selectable_model_id, IMAGE_STUDIO_MODEL
from routes.dependencies import get_chat_store, get_current_user
from services.chat_store import DEFAULT_TITLE, ChatStore
from utils.errors import NotFoundError, ValidationError, success

router = APIRouter()


class CreateConversationRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)
    model: Optional[str] = None
    gemId: Optional[str] = None


class UpdateConversationRequest(BaseModel):
    id: str = Field(..., min_length=1)
    title: Optional[str] = Field(default=None, max_length=200)
    model: Optional[str] = None
    gemId: Optional[str] = None


class CreateGemRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    instructions: str = Field(default="", max_length=50_000)


def _clean_model(model: Optional[str]) -> Optional[str]:
    if model is None:
        return None
    if model == IMAGE_STUDIO_MODEL or is_selectable_model_id(model):
        return model
    return coerce_stored_model(model)


def _check_gem(store: ChatStore, user_id: str, gem_id: Optional[str]) -> None:
    if not gem_id:
        return
    gem = store.get_gem(gem_id)
    if gem is None or gem.user_id != user_id:
        raise NotFoundError("Gem")


@router.get("/api/conversations")
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    return success({"conversations": [c.to_dict() for c in store.list_conversations(user_id, limit)]})


@router.post("/api/conversations")
async def create_conversation(
    body: CreateConversationRequest,
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    _check_gem(store, user_id, body.gemId)
    convo = store.create_conversation(
        user_id,
        title=(body.title or "").strip() or DEFAULT_TITLE,
        model=_clean_model(body.model),
        gem_id=body.gemId,
    )
    return success({"conversation": convo.to_dict()}, status_code=201)


@router.patch("/api/conversations")
async def update_conversation(
    body: UpdateConversationRequest,
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    changes = body.model_dump(exclude_unset=True)
    changes.pop("id", None)
    if not changes:
        raise ValidationError("Nothing to update")
    kwargs = {}
    if "title" in changes:
        kwargs["title"] = body.title
    if "model" in changes:
        kwargs["model"] = _clean_model(body.model)
    if "gemId" in changes:
        _check_gem(store, user_id, body.gemId)
        kwargs["gem_id"] = body.gemId
    convo = store.update_conversation(user_id, body.id, **kwargs)
    return success({"conversation": convo.to_dict()})


@router.get("/api/gems")
async def list_gems(
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    return success({"gems": [g.to_dict() for g in store.list_gems(user_id)]})


@router.post("/api/gems")
async def create_gem(
    body: CreateGemRequest,
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    gem = store.create_gem(user_id, body.name.strip(), body.instructions)
    return success({"gem": gem.to_dict()}, status_code=201)
