"""
对话 SQLite 存储层

保存会话（conversations）、消息（messages）、GEM 人设（gems）、
用户等级与每日计数（rank_configs / profiles / daily_message_counts）以及附件（attachments）。
单连接 + 线程锁，供 FastAPI 异步处理器直接调用（操作均为短事务）。
"""

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from utils.errors import ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
_UNSET = object()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _loads(raw) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


@dataclass
class ConversationRecord:
    id: str
    user_id: str
    title: str = DEFAULT_TITLE
    model: Optional[str] = None
    gem_id: Optional[str] = None
    extra: dict = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_untitled(self) -> bool:
        return (self.title or "") in (DEFAULT_TITLE, DEFAULT_TITLE.lower())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "model": self.model,
            "gemId": self.gem_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class MessageRecord:
    id: str
    conversation_id: str
    user_id: str
    role: str
    content: str
    meta: dict = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "meta": self.meta,
            "createdAt": self.created_at,
        }


@dataclass
class Gem:
    id: str
    user_id: str
    name: str
    instructions: str = ""
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "instructions": self.instructions,
            "createdAt": self.created_at,
        }


@dataclass
class AttachmentRecord:
    id: str
    conversation_id: str
    user_id: str
    filename: str
    mime_type: str
    kind: str
    size_bytes: int
    data: Optional[bytes] = None
    created_at: str = ""
    expires_at: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.expires_at:
            return False
        now = now or datetime.now(timezone.utc)
        try:
            return datetime.fromisoformat(self.expires_at) <= now
        except ValueError:
            return False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "filename": self.filename,
            "mimeType": self.mime_type,
            "kind": self.kind,
            "sizeBytes": self.size_bytes,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
        }


class ChatStore:
    """基于 SQLite 的对话存储"""

    def __init__(self, db_path: str = "data/vikini.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._db: Optional[sqlite3.Connection] = None
        self._init_database()

    def _init_database(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(self.db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                model TEXT,
                gem_id TEXT,
                extra TEXT DEFAULT '{}',
                created_at TEXT,
                updated_at TEXT
            );
            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                conversation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                meta TEXT DEFAULT '{}',
                created_at TEXT
            );
            CREATE TABLE IF NOT EXISTS gems (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                instructions TEXT DEFAULT '',
                created_at TEXT
            );
            CREATE TABLE IF NOT EXISTS rank_configs (
                rank TEXT PRIMARY KEY,
                daily_message_limit INTEGER NOT NULL,
                max_file_size_mb INTEGER NOT NULL,
                features TEXT DEFAULT '{}'
            );
            CREATE TABLE IF NOT EXISTS profiles (
                user_id TEXT PRIMARY KEY,
                rank TEXT NOT NULL DEFAULT 'basic',
                is_blocked INTEGER NOT NULL DEFAULT 0,
                created_at TEXT
            );
            CREATE TABLE IF NOT EXISTS daily_message_counts (
                user_id TEXT NOT NULL,
                date TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, date)
            );
            CREATE TABLE IF NOT EXISTS attachments (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                filename TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                kind TEXT NOT NULL,
                size_bytes INTEGER NOT NULL,
                data BLOB NOT NULL,
                created_at TEXT,
                expires_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_conv_user ON conversations(user_id, updated_at);
            CREATE INDEX IF NOT EXISTS idx_msg_conv ON messages(conversation_id, seq);
            CREATE INDEX IF NOT EXISTS idx_attach_conv ON attachments(conversation_id, user_id);
        """)
        self._db.commit()
        logger.info(f"Chat store ready at {self.db_path}")

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    # ==================== 会话 ====================

    @staticmethod
    def _row_to_conversation(row) -> ConversationRecord:
        return ConversationRecord(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            model=row["model"],
            gem_id=row["gem_id"],
            extra=_loads(row["extra"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_conversation(self, user_id: str, title: str = DEFAULT_TITLE, model: Optional[str] = None,
                            gem_id: Optional[str] = None, extra: Optional[dict] = None) -> ConversationRecord:
        now = _now()
        record = ConversationRecord(
            id=str(uuid.uuid4()), user_id=user_id, title=title or DEFAULT_TITLE,
            model=model, gem_id=gem_id, extra=dict(extra or {}), created_at=now, updated_at=now,
        )
        with self._lock:
            self._db.execute(
                "INSERT INTO conversations (id, user_id, title, model, gem_id, extra, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (record.id, user_id, record.title, model, gem_id, json.dumps(record.extra),
                 now, now),
            )
            self._db.commit()
        return record

    def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        with self._lock:
            row = self._db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return self._row_to_conversation(row) if row else None

    def get_owned_conversation(self, user_id: str, conversation_id: str) -> ConversationRecord:
        """读取会话并校验归属；不存在 404，非本人 403"""
        convo = self.get_conversation(conversation_id)
        if convo is None:
            raise NotFoundError("Conversation")
        if convo.user_id != user_id:
            raise ForbiddenError("Conversation belongs to another user")
        return convo

    def list_conversations(self, user_id: str, limit: int = 50) -> List[ConversationRecord]:
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM conversations WHERE user_id = ? ORDER BY updated_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_conversation(r) for r in rows]

    def update_conversation(self, user_id: str, conversation_id: str, title=_UNSET, model=_UNSET,
                            gem_id=_UNSET) -> ConversationRecord:
        convo = self.get_owned_conversation(user_id, conversation_id)
        if title is not _UNSET:
            convo.title = (title or "").strip() or DEFAULT_TITLE
        if model is not _UNSET:
            convo.model = model
        if gem_id is not _UNSET:
            convo.gem_id = gem_id
        convo.updated_at = _now()
        with self._lock:
            self._db.execute(
                "UPDATE conversations SET title = ?, model = ?, gem_id = ?, updated_at = ? WHERE id = ?",
                (convo.title, convo.model, convo.gem_id, convo.updated_at, convo.id),
            )
            self._db.commit()
        return convo

    def set_conversation_auto_title(self, user_id: str, conversation_id: str, title: str) -> None:
        self.update_conversation(user_id, conversation_id, title=title)

    # ==================== 消息 ====================

    @staticmethod
    def _row_to_message(row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            role=row["role"],
            content=row["content"],
            meta=_loads(row["meta"]),
            created_at=row["created_at"],
        )

    def save_message(self, user_id: str, conversation_id: str, role: str, content: str,
                     meta: Optional[dict] = None) -> MessageRecord:
        now = _now()
        record = MessageRecord(
            id=str(uuid.uuid4()), conversation_id=conversation_id, user_id=user_id,
            role=role, content=content, meta=dict(meta or {}), created_at=now,
        )
        with self._lock:
            self._db.execute(
                "INSERT INTO messages (id, conversation_id, user_id, role, content, meta, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (record.id, conversation_id, user_id, role, content, json.dumps(record.meta), now),
            )
            self._db.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))
            self._db.commit()
        return record

    def get_message(self, message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            row = self._db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return self._row_to_message(row) if row else None

    def get_recent_messages(self, conversation_id: str, limit: int = 100) -> List[MessageRecord]:
        """最近 limit 条消息，按时间正序返回"""
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq DESC LIMIT ?",
                (conversation_id, limit),
            ).fetchall()
        return [self._row_to_message(r) for r in reversed(rows)]

    def delete_last_assistant_message(self, user_id: str, conversation_id: str) -> bool:
        with self._lock:
            row = self._db.execute(
                "SELECT seq FROM messages WHERE conversation_id = ? AND user_id = ? AND role = 'assistant' "
                "ORDER BY seq DESC LIMIT 1",
                (conversation_id, user_id),
            ).fetchone()
            if not row:
                return False
            self._db.execute("DELETE FROM messages WHERE seq = ?", (row["seq"],))
            self._db.commit()
        return True

    def delete_messages_including_and_after(self, user_id: str, conversation_id: str, message_id: str) -> int:
        with self._lock:
            row = self._db.execute(
                "SELECT seq FROM messages WHERE id = ? AND conversation_id = ? AND user_id = ?",
                (message_id, conversation_id, user_id),
            ).fetchone()
            if not row:
                return 0
            cur = self._db.execute(
                "DELETE FROM messages WHERE conversation_id = ? AND seq >= ?",
                (conversation_id, row["seq"]),
            )
            self._db.commit()
        return cur.rowcount

    def delete_message(self, user_id: str, message_id: str) -> None:
        """删除单条消息；不存在 404，非本人 403"""
        message = self.get_message(message_id)
        if message is None:
            raise NotFoundError("Message")
        convo = self.get_conversation(message.conversation_id)
        owner = convo.user_id if convo else message.user_id
        if owner != user_id:
            raise ForbiddenError("Message belongs to another user")
        with self._lock:
            self._db.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            self._db.commit()

    def list_user_messages_with_model(self, user_id: str) -> List[tuple]:
        """用户全部消息及所属会话模型，按时间倒序（供图库筛选）"""
        with self._lock:
            rows = self._db.execute(
                "SELECT m.*, c.model AS conversation_model FROM messages m "
                "JOIN conversations c ON c.id = m.conversation_id "
                "WHERE m.user_id = ? ORDER BY m.seq DESC",
                (user_id,),
            ).fetchall()
        return [(self._row_to_message(r), r["conversation_model"]) for r in rows]

    # ==================== GEM ====================

    @staticmethod
    def _row_to_gem(row) -> Gem:
        return Gem(id=row["id"], user_id=row["user_id"], name=row["name"],
                   instructions=row["instructions"] or "", created_at=row["created_at"])

    def create_gem(self, user_id: str, name: str, instructions: str = "") -> Gem:
        gem = Gem(id=str(uuid.uuid4()), user_id=user_id, name=name, instructions=instructions or "",
                  created_at=_now())
        with self._lock:
            self._db.execute(
                "INSERT INTO gems (id, user_id, name, instructions, created_at) VALUES (?, ?, ?, ?, ?)",
                (gem.id, user_id, gem.name, gem.instructions, gem.created_at),
            )
            self._db.commit()
        return gem

    def get_gem(self, gem_id: str) -> Optional[Gem]:
        with self._lock:
            row = self._db.execute("SELECT * FROM gems WHERE id = ?", (gem_id,)).fetchone()
        return self._row_to_gem(row) if row else None

    def list_gems(self, user_id: str) -> List[Gem]:
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM gems WHERE user_id = ? ORDER BY created_at", (user_id,)
            ).fetchall()
        return [self._row_to_gem(r) for r in rows]

    def get_gem_instructions_for_conversation(self, user_id: str, conversation_id: str) -> str:
        convo = self.get_conversation(conversation_id)
        if convo is None or convo.user_id != user_id or not convo.gem_id:
            return ""
        gem = self.get_gem(convo.gem_id)
        if gem is None:
            raise NotFoundError("Gem")
        return gem.instructions or ""

    # ==================== 等级 / 每日计数 ====================

    def get_rank_config(self, rank: str) -> Optional[dict]:
        with self._lock:
            row = self._db.execute("SELECT * FROM rank_configs WHERE rank = ?", (rank,)).fetchone()
        if not row:
            return None
        return {
            "rank": row["rank"],
            "daily_message_limit": row["daily_message_limit"],
            "max_file_size_mb": row["max_file_size_mb"],
            "features": _loads(row["features"]),
        }

    def upsert_rank_config(self, rank: str, daily_message_limit: int, max_file_size_mb: int,
                           features: Optional[dict] = None) -> None:
        with self._lock:
            self._db.execute(
                "INSERT INTO rank_configs (rank, daily_message_limit, max_file_size_mb, features) "
                "VALUES (?, ?, ?, ?) ON CONFLICT(rank) DO UPDATE SET "
                "daily_message_limit = excluded.daily_message_limit, "
                "max_file_size_mb = excluded.max_file_size_mb, features = excluded.features",
                (rank, daily_message_limit, max_file_size_mb, json.dumps(features or {})),
            )
            self._db.commit()

    def get_profile(self, user_id: str) -> Optional[dict]:
        with self._lock:
            row = self._db.execute("SELECT * FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
        if not row:
            return None
        return {"user_id": row["user_id"], "rank": row["rank"], "is_blocked": bool(row["is_blocked"])}

    def set_profile(self, user_id: str, rank: str = "basic", is_blocked: bool = False) -> None:
        with self._lock:
            self._db.execute(
                "INSERT INTO profiles (user_id, rank, is_blocked, created_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET rank = excluded.rank, is_blocked = excluded.is_blocked",
                (user_id, rank, 1 if is_blocked else 0, _now()),
            )
            self._db.commit()

    def get_daily_message_count(self, user_id: str, date: str) -> int:
        with self._lock:
            row = self._db.execute(
                "SELECT count FROM daily_message_counts WHERE user_id = ? AND date = ?", (user_id, date)
            ).fetchone()
        return row["count"] if row else 0

    def increment_daily_message_count(self, user_id: str, date: str) -> int:
        """原子递增当天计数，返回递增后的值"""
        with self._lock:
            self._db.execute(
                "INSERT INTO daily_message_counts (user_id, date, count) VALUES (?, ?, 1) "
                "ON CONFLICT(user_id, date) DO UPDATE SET count = count + 1",
                (user_id, date),
            )
            self._db.commit()
            row = self._db.execute(
                "SELECT count FROM daily_message_counts WHERE user_id = ? AND date = ?", (user_id, date)
            ).fetchone()
        return row["count"]

    # ==================== 附件 ====================

    @staticmethod
    def _row_to_attachment(row, include_data: bool = False) -> AttachmentRecord:
        return AttachmentRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            filename=row["filename"],
            mime_type=row["mime_type"],
            kind=row["kind"],
            size_bytes=row["size_bytes"],
            data=bytes(row["data"]) if include_data else None,
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def save_attachment(self, user_id: str, conversation_id: str, filename: str, mime_type: str,
                        kind: str, data: bytes, expires_at: Optional[str] = None) -> AttachmentRecord:
        record = AttachmentRecord(
            id=str(uuid.uuid4()), conversation_id=conversation_id, user_id=user_id, filename=filename,
            mime_type=mime_type, kind=kind, size_bytes=len(data), created_at=_now(), expires_at=expires_at,
        )
        with self._lock:
            self._db.execute(
                "INSERT INTO attachments (id, conversation_id, user_id, filename, mime_type, kind, size_bytes, "
                "data, created_at, expires_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (record.id, conversation_id, user_id, filename, mime_type, kind, record.size_bytes,
                 sqlite3.Binary(data), record.created_at, expires_at),
            )
            self._db.commit()
        return record

    def list_attachments(self, user_id: str, conversation_id: str,
                         include_data: bool = False) -> List[AttachmentRecord]:
        """会话附件，最新的在前"""
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM attachments WHERE conversation_id = ? AND user_id = ? "
                "ORDER BY created_at DESC, rowid DESC",
                (conversation_id, user_id),
            ).fetchall()
        return [self._row_to_attachment(r, include_data) for r in rows]

    def get_attachment(self, user_id: str, attachment_id: str) -> AttachmentRecord:
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM attachments WHERE id = ? AND user_id = ?", (attachment_id, user_id)
            ).fetchone()
        if not row:
            raise NotFoundError("Attachment")
        return self._row_to_attachment(row, include_data=True)

    def delete_attachment(self, user_id: str, attachment_id: str) -> None:
        with self._lock:
            cur = self._db.execute(
                "DELETE FROM attachments WHERE id = ? AND user_id = ?", (attachment_id, user_id)
            )
            self._db.commit()
        if cur.rowcount == 0:
            raise NotFoundError("Attachment")

    def delete_attachments_by_conversation(self, user_id: str, conversation_id: str) -> int:
        with self._lock:
            cur = self._db.execute(
                "DELETE FROM attachments WHERE conversation_id = ? AND user_id = ?", (conversation_id, user_id)
            )
            self._db.commit()
        return cur.rowcount
