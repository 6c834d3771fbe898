import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from routes.dependencies import get_chat_store, get_current_user
from services.attachment_service import upload_attachment
from services.chat_store import ChatStore
from utils.errors import NotFoundError, ValidationError, success

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_owned_conversation(store: ChatStore, user_id: str, conversation_id: str) -> None:
    convo = store.get_conversation(conversation_id)
    if convo is None or convo.user_id != user_id:
        raise NotFoundError("Conversation")


@router.post("/api/attachments/upload")
async def upload(
    conversationId: UUID = Form(...),
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    """上传会话附件（multipart/form-data）"""
    _require_owned_conversation(store, user_id, str(conversationId))
    data = await file.read()
    if not data:
        raise ValidationError("Missing file")
    attachment = upload_attachment(store, user_id, str(conversationId), file.filename, file.content_type, data)
    return success({"attachment": attachment.to_dict()})


@router.get("/api/attachments")
async def list_attachments(
    conversationId: UUID = Query(...),
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    attachments = store.list_attachments(user_id, str(conversationId))
    return success({"attachments": [a.to_dict() for a in attachments]})


@router.delete("/api/attachments")
async def delete_attachments(
    id: Optional[UUID] = Query(None),
    conversationId: Optional[UUID] = Query(None),
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    """按 id 删除单个附件；只给 conversationId 时清空该会话全部附件"""
    if id is None and conversationId is not None:
        removed = store.delete_attachments_by_conversation(user_id, str(conversationId))
        logger.info(f"Removed {removed} attachments from conversation {conversationId}")
        return success({"ok": True})
    if id is None:
        raise ValidationError("Missing id or conversationId")
    store.delete_attachment(user_id, str(id))
    return success({"ok": True})
