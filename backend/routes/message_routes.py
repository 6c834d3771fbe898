from fastapi import APIRouter, Depends

from routes.dependencies import get_chat_store, get_current_user
from services.chat_store import ChatStore
from utils.errors import success

router = APIRouter()


@router.delete("/api/messages/{message_id}")
async def delete_message(
    message_id: str,
    user_id: str = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
):
    """删除单条消息；不存在 404，他人消息 403"""
    store.delete_message(user_id, message_id)
    return success({"deleted": True, "id": message_id})
