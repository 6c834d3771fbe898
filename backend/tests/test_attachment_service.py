"""
会话附件测试

- 上传校验：扩展名、MIME、图片文件头、等级大小上限
- 会话配额与过期
- 注入对话上下文的预算与格式
- /api/attachments 路由
"""

import base64
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import USER, make_settings
from app import create_app
from services.attachment_service import (
    ATTACHMENT_GUARD,
    ATTACHMENT_HEADER,
    MAX_CONTEXT_IMAGES,
    build_attachment_context,
    enforce_conversation_quotas,
    sanitize_filename,
    upload_attachment,
    validate_upload,
)
from services.chat_store import AttachmentRecord
from utils.errors import ValidationError

HEADERS = {"x-user-email": USER}
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def _record(name, mime, data, kind="text", expires_at=None):
    return AttachmentRecord(id=name, conversation_id="c", user_id=USER, filename=name, mime_type=mime,
                            kind=kind, size_bytes=len(data), data=data, expires_at=expires_at)


# ---- 校验 ----

@pytest.mark.parametrize("raw,expected", [
    ("../etc/passwd", ".._etc_passwd"),
    ("a\\b.txt", "a_b.txt"),
    ("bad\x00name\x1f.txt", "badname.txt"),
    ("   ", "file"),
    (None, "file"),
    ("x" * 300, "x" * 200),
])
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


def test_validate_text_defaults_mime(store):
    v = validate_upload(store, USER, "data.json", "application/octet-stream", b"{}")
    assert (v.kind, v.mime, v.ext) == ("text", "application/json", "json")


def test_validate_image_uses_sniffed_mime(store):
    v = validate_upload(store, USER, "photo.jpg", "image/jpeg", PNG)
    assert (v.kind, v.mime) == ("image", "image/png")


@pytest.mark.parametrize("filename,mime,data,message", [
    ("run.exe", "", b"MZ", "File type not allowed"),
    ("notes.txt", "text/html", b"hi", "Text MIME not allowed"),
    ("fake.png", "image/png", b"not really an image", "Invalid image file"),
    ("report.pdf", "text/plain", b"%PDF", "Document MIME not allowed"),
])
def test_validate_rejects(store, filename, mime, data, message):
    with pytest.raises(ValidationError) as exc:
        validate_upload(store, USER, filename, mime, data)
    assert message in exc.value.message


def test_validate_respects_rank_file_size(store):
    store.upsert_rank_config("basic", daily_message_limit=20, max_file_size_mb=1)
    with pytest.raises(ValidationError) as exc:
        validate_upload(store, USER, "big.txt", "text/plain", b"a" * (1024 * 1024 + 1))
    assert "Your limit is 1MB" in exc.value.message


def test_validate_respects_kind_cap(store):
    tight = make_settings(attach_max_text_bytes=4)
    with pytest.raises(ValidationError):
        validate_upload(store, USER, "a.txt", "text/plain", b"12345", tight)


def test_conversation_quotas(store):
    convo = store.create_conversation(USER)
    cfg = make_settings(attach_max_files_per_conv=2, attach_max_total_bytes_per_conv=10)
    store.save_attachment(USER, convo.id, "a.txt", "text/plain", "text", b"12345")

    with pytest.raises(ValidationError, match="quota"):
        enforce_conversation_quotas(store, USER, convo.id, 6, cfg)
    enforce_conversation_quotas(store, USER, convo.id, 5, cfg)

    store.save_attachment(USER, convo.id, "b.txt", "text/plain", "text", b"1")
    with pytest.raises(ValidationError, match="Too many files"):
        enforce_conversation_quotas(store, USER, convo.id, 1, cfg)


def test_expired_attachments_do_not_count(store):
    convo = store.create_conversation(USER)
    past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    store.save_attachment(USER, convo.id, "old.txt", "text/plain", "text", b"x" * 9, expires_at=past)
    enforce_conversation_quotas(store, USER, convo.id, 9,
                                make_settings(attach_max_files_per_conv=1, attach_max_total_bytes_per_conv=10))


def test_upload_sets_expiry(store):
    convo = store.create_conversation(USER)
    record = upload_attachment(store, USER, convo.id, "n.txt", "text/plain", b"hello",
                               make_settings(attachments_ttl_hours=36))
    expires = datetime.fromisoformat(record.expires_at)
    assert timedelta(hours=35) < expires - datetime.now(timezone.utc) <= timedelta(hours=36)
    assert store.get_attachment(USER, record.id).data == b"hello"


# ---- 上下文注入 ----

def test_context_without_attachments_is_unchanged():
    contents = [{"role": "user", "parts": [{"text": "q"}]}]
    assert build_attachment_context([], contents, "sys", 10, 1000) == (contents, "sys")


def test_context_wraps_text_and_appends_guard():
    contents = [{"role": "user", "parts": [{"text": "q"}]}]
    new_contents, prompt = build_attachment_context(
        [_record("a.txt", "text/plain", b"DATA")], contents, "gem rules", 0, 10_000,
    )

    assert prompt == "gem rules\n\n" + ATTACHMENT_GUARD
    parts = new_contents[0]["parts"]
    assert parts[0] == {"text": ATTACHMENT_HEADER}
    assert parts[1]["text"] == "\n[FILE: a.txt | text/plain]\n<<<ATTACHMENT_DATA_START>>>\nDATA\n<<<ATTACHMENT_DATA_END>>>\n"
    assert parts[2] == {"text": "q"}
    # 原 contents 不被修改
    assert contents[0]["parts"] == [{"text": "q"}]


def test_context_budget_truncates_then_skips():
    # 预算 (2010 - 0 - 2000) * 4 = 40 个字符
    records = [_record("big.txt", "text/plain", b"x" * 100), _record("next.txt", "text/plain", b"y")]
    new_contents, _ = build_attachment_context(records, [], "", 0, 2010)

    texts = [p["text"] for p in new_contents[0]["parts"]]
    assert new_contents[0]["role"] == "user"
    assert "x" * 40 + "\n...[truncated]...\n" in texts[1]
    assert texts[2] == "\n[TEXT SKIPPED: next.txt - context limit reached]\n"


def test_context_images_are_inlined_and_capped():
    images = [_record(f"{i}.png", "image/png", PNG, kind="image") for i in range(MAX_CONTEXT_IMAGES + 1)]
    new_contents, _ = build_attachment_context(images, [{"role": "model", "parts": [{"text": "a"}]}], "", 0, 8000)

    first = new_contents[0]
    assert first["role"] == "user"
    inline = [p for p in first["parts"] if "inlineData" in p]
    assert len(inline) == MAX_CONTEXT_IMAGES
    assert inline[0]["inlineData"] == {"data": base64.b64encode(PNG).decode("ascii"), "mimeType": "image/png"}
    assert first["parts"][-1]["text"] == f"\n[IMAGE SKIPPED: {MAX_CONTEXT_IMAGES}.png - too many images]\n"
    assert new_contents[1]["role"] == "model"


def test_context_skips_expired_and_binary():
    past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
    records = [
        _record("gone.txt", "text/plain", b"old", expires_at=past),
        _record("r.pdf", "application/pdf", b"%PDF", kind="doc"),
    ]
    new_contents, _ = build_attachment_context(records, [], "", 0, 8000)
    texts = [p["text"] for p in new_contents[0]["parts"]]
    assert not any("gone.txt" in t for t in texts)
    assert "[FILE SKIPPED: r.pdf" in texts[1]


# ---- 路由 ----

@pytest.fixture
def client(store):
    return TestClient(create_app(chat_store=store))


def test_upload_list_and_delete(client, store):
    convo = store.create_conversation(USER)
    resp = client.post("/api/attachments/upload", data={"conversationId": convo.id},
                       files={"file": ("notes.txt", b"hello", "text/plain")}, headers=HEADERS)
    assert resp.status_code == 200
    attachment = resp.json()["data"]["attachment"]
    assert attachment["filename"] == "notes.txt"
    assert attachment["sizeBytes"] == 5
    assert "data" not in attachment

    listed = client.get(f"/api/attachments?conversationId={convo.id}", headers=HEADERS).json()["data"]
    assert [a["id"] for a in listed["attachments"]] == [attachment["id"]]

    resp = client.delete(f"/api/attachments?id={attachment['id']}", headers=HEADERS)
    assert resp.json()["data"] == {"ok": True}
    assert store.list_attachments(USER, convo.id) == []


def test_delete_all_in_conversation(client, store):
    convo = store.create_conversation(USER)
    store.save_attachment(USER, convo.id, "a.txt", "text/plain", "text", b"a")
    store.save_attachment(USER, convo.id, "b.txt", "text/plain", "text", b"b")

    resp = client.delete(f"/api/attachments?conversationId={convo.id}", headers=HEADERS)
    assert resp.status_code == 200
    assert store.list_attachments(USER, convo.id) == []


def test_upload_to_foreign_conversation(client, store):
    convo = store.create_conversation("bob@example.com")
    resp = client.post("/api/attachments/upload", data={"conversationId": convo.id},
                       files={"file": ("notes.txt", b"hello", "text/plain")}, headers=HEADERS)
    assert resp.status_code == 404
    assert store.list_attachments("bob@example.com", convo.id) == []


def test_upload_rejected_type(client, store):
    convo = store.create_conversation(USER)
    resp = client.post("/api/attachments/upload", data={"conversationId": convo.id},
                       files={"file": ("run.exe", b"MZ", "application/octet-stream")}, headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "File type not allowed"


@pytest.mark.parametrize("query", ["", "?id=not-a-uuid", "?conversationId=nope"])
def test_delete_requires_valid_target(client, query):
    resp = client.delete(f"/api/attachments{query}", headers=HEADERS)
    assert resp.status_code == 400


def test_delete_other_users_attachment(client, store):
    convo = store.create_conversation("bob@example.com")
    record = store.save_attachment("bob@example.com", convo.id, "a.txt", "text/plain", "text", b"a")
    assert client.delete(f"/api/attachments?id={record.id}", headers=HEADERS).status_code == 404
    assert store.get_attachment("bob@example.com", record.id).filename == "a.txt"
