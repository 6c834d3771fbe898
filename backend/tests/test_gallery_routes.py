"""
图库路由测试

- GET /api/gallery 过滤图片消息、排除 Image Studio 会话、过滤后分页
- POST /api/gallery 登记图片
- DELETE /api/gallery/{id} 的 404 / 403，非图片消息按不存在处理
"""

import pytest
from fastapi.testclient import TestClient

from conftest import USER
from app import create_app
from models.model_registry import IMAGE_STUDIO_MODEL

HEADERS = {"x-user-email": USER}
BOB = "bob@example.com"


@pytest.fixture
def client(store):
    return TestClient(create_app(chat_store=store))


def _image(store, convo_id, n, user=USER):
    return store.save_message(user, convo_id, "assistant", f"Generated Image: p{n}", {
        "type": "image_gen", "prompt": f"p{n}", "imageUrl": f"https://img/{n}.png",
        "originalOptions": {"aspectRatio": "1:1", "style": "anime"},
    })


def test_gallery_filters_and_orders(client, store):
    convo = store.create_conversation(USER)
    studio = store.create_conversation(USER, model=IMAGE_STUDIO_MODEL)
    store.save_message(USER, convo.id, "user", "just text")
    _image(store, convo.id, 1)
    store.save_message(USER, convo.id, "user", "upload", {"attachment": {"url": "https://up/2.png"}})
    _image(store, studio.id, 3)
    _image(store, store.create_conversation(BOB).id, 4, user=BOB)

    resp = client.get("/api/gallery", headers=HEADERS)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert [img["url"] for img in data["images"]] == ["https://up/2.png", "https://img/1.png"]
    assert data["hasMore"] is False
    first_gen = data["images"][1]
    assert first_gen["prompt"] == "p1"
    assert first_gen["aspectRatio"] == "1:1"
    assert first_gen["style"] == "anime"


def test_gallery_pagination_after_filtering(client, store):
    convo = store.create_conversation(USER)
    for n in range(5):
        store.save_message(USER, convo.id, "user", f"text {n}")
        _image(store, convo.id, n)

    page = client.get("/api/gallery?limit=2&offset=0", headers=HEADERS).json()["data"]
    assert [img["prompt"] for img in page["images"]] == ["p4", "p3"]
    assert page["hasMore"] is True

    last = client.get("/api/gallery?limit=2&offset=4", headers=HEADERS).json()["data"]
    assert [img["prompt"] for img in last["images"]] == ["p0"]
    assert last["hasMore"] is False


@pytest.mark.parametrize("query", ["limit=0", "limit=101", "offset=-1", "limit=abc"])
def test_gallery_rejects_bad_paging(client, query):
    resp = client.get(f"/api/gallery?{query}", headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


def test_gallery_requires_user(client):
    assert client.get("/api/gallery").status_code == 401


def test_add_gallery_image(client, store):
    convo = store.create_conversation(USER)
    resp = client.post("/api/gallery", json={
        "conversationId": convo.id, "imageUrl": "https://up/9.png", "prompt": "my photo", "mimeType": "image/jpeg",
    }, headers=HEADERS)

    assert resp.status_code == 201
    message = resp.json()["data"]["message"]
    assert message["meta"]["attachment"] == {"url": "https://up/9.png", "mimeType": "image/jpeg"}
    images = client.get("/api/gallery", headers=HEADERS).json()["data"]["images"]
    assert images[0]["url"] == "https://up/9.png"


def test_add_gallery_image_foreign_conversation(client, store):
    convo = store.create_conversation(BOB)
    resp = client.post("/api/gallery", json={"conversationId": convo.id, "imageUrl": "https://x"}, headers=HEADERS)
    assert resp.status_code == 403


def test_delete_gallery_image(client, store):
    convo = store.create_conversation(USER)
    msg = _image(store, convo.id, 1)

    resp = client.delete(f"/api/gallery/{msg.id}", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["data"] == {"deleted": True, "id": msg.id}
    assert store.get_message(msg.id) is None


def test_delete_gallery_image_errors(client, store):
    assert client.delete("/api/gallery/missing", headers=HEADERS).status_code == 404

    bob_msg = _image(store, store.create_conversation(BOB).id, 1, user=BOB)
    resp = client.delete(f"/api/gallery/{bob_msg.id}", headers=HEADERS)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"
    assert store.get_message(bob_msg.id) is not None


def test_delete_gallery_rejects_non_image_message(client, store):
    convo = store.create_conversation(USER)
    text = store.save_message(USER, convo.id, "user", "just text")

    resp = client.delete(f"/api/gallery/{text.id}", headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json()["error"]["message"] == "Image not found"
    assert store.get_message(text.id) is not None
