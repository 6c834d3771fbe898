"""客户端附件列表的显式状态容器（每个会话/组件一份实例，不做全局单例）"""

from typing import Iterable, List, Optional, Tuple


class AttachmentStore:
    """有序附件集合，每个附件是带唯一 id 的 dict"""

    def __init__(self, attachments: Optional[Iterable[dict]] = None):
        self._attachments: List[dict] = []
        for item in attachments or []:
            self.add_attachment(item)

    @property
    def attachments(self) -> Tuple[dict, ...]:
        return tuple(self._attachments)

    def add_attachment(self, file: dict) -> None:
        """追加附件；id 已存在时替换原条目并保持位置"""
        if not isinstance(file, dict) or not file.get("id"):
            raise ValueError("attachment must be a dict with a non-empty 'id'")
        for i, existing in enumerate(self._attachments):
            if existing["id"] == file["id"]:
                self._attachments[i] = dict(file)
                return
        self._attachments.append(dict(file))

    def remove_attachment(self, attachment_id: str) -> None:
        self._attachments = [a for a in self._attachments if a["id"] != attachment_id]

    def clear_attachments(self) -> None:
        self._attachments = []

    def __len__(self) -> int:
        return len(self._attachments)
