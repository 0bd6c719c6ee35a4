import itertools
import json

import pytest
from fastapi.testclient import TestClient

from chatweb.config import settings
from chatweb.main import app
from chatweb.services.chat_service import NO_KEY_MESSAGE

_counter = itertools.count(1)


def register(client, name):
    resp = client.post("/api/auth/register", json={
        "username": name,
        "email": f"{name}@example.com",
        "password": "secret123",
    })
    assert resp.status_code == 201, resp.text
    resp = client.post("/api/auth/login", json={"username": name, "password": "secret123"})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as test_client:
        # first account on a fresh database is the administrator
        test_client.admin_headers = register(test_client, "root")
        yield test_client


@pytest.fixture
def headers(client):
    return register(client, f"user{next(_counter)}")


def parse_sse(body):
    events = []
    for frame in body.strip().split("\n\n"):
        name_line, data_line = frame.split("\n", 1)
        events.append((name_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_me_and_roles(client, headers):
    me = client.get("/api/auth/me", headers=headers).json()
    assert me["roles"] == ["user"]
    root = client.get("/api/auth/me", headers=client.admin_headers).json()
    assert "admin" in root["roles"]


def test_bad_login(client):
    resp = client.post("/api/auth/login", json={"username": "root", "password": "wrong"})
    assert resp.status_code == 401


def test_room_lifecycle(client, headers):
    resp = client.post("/api/rooms", json={"room_id": 1001, "title": "Trip"}, headers=headers)
    assert resp.status_code == 201, resp.text
    assert resp.json()["max_context_count"] == settings.DEFAULT_MAX_CONTEXT_COUNT
    assert resp.json()["image_upload_enabled"] is False
    assert client.post("/api/rooms", json={"room_id": 1001}, headers=headers).status_code == 400

    resp = client.put("/api/rooms/1001", json={"search_enabled": True, "max_context_count": 4},
                      headers=headers)
    assert resp.status_code == 200
    assert resp.json()["search_enabled"] is True
    assert resp.json()["max_context_count"] == 4

    rooms = client.get("/api/rooms", headers=headers).json()
    assert [room["room_id"] for room in rooms] == [1001]

    assert client.delete("/api/rooms/1001", headers=headers).status_code == 204
    assert client.get("/api/rooms", headers=headers).json() == []


def test_abort_unknown_turn_is_acknowledged(client, headers):
    resp = client.post("/api/chat/abort", json={"uuid": 424242}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "Success"
    assert resp.json()["data"]["aborted"] is False


def test_process_without_keys_streams_error_then_end(client, headers):
    client.post("/api/rooms", json={"room_id": 2002}, headers=headers)

    resp = client.post("/api/chat/process", json={"room_id": 2002, "uuid": 1, "prompt": "hello"},
                       headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(resp.text)
    assert events == [("error", {"message": NO_KEY_MESSAGE}), ("end", "[DONE]")]

    history = client.get("/api/chat/history", params={"room_id": 2002}, headers=headers).json()
    assert [item["inversion"] for item in history] == [True, False]
    assert history[0]["text"] == "hello"
    assert history[1]["text"] == NO_KEY_MESSAGE

    # hide the response side, then the prompt side
    client.post("/api/chat/delete", json={"room_id": 2002, "uuid": 1, "inversion": False},
                headers=headers)
    history = client.get("/api/chat/history", params={"room_id": 2002}, headers=headers).json()
    assert [item["inversion"] for item in history] == [True]

    client.post("/api/chat/delete", json={"room_id": 2002, "uuid": 1, "inversion": True},
                headers=headers)
    assert client.get("/api/chat/history", params={"room_id": 2002}, headers=headers).json() == []


def test_process_unknown_room(client, headers):
    resp = client.post("/api/chat/process", json={"room_id": 9, "uuid": 1, "prompt": "hi"},
                       headers=headers)
    names = [name for name, _ in parse_sse(resp.text)]
    assert names == ["error", "end"]


def test_clear_room(client, headers):
    client.post("/api/rooms", json={"room_id": 3003}, headers=headers)
    client.post("/api/chat/process", json={"room_id": 3003, "uuid": 1, "prompt": "a"}, headers=headers)
    assert client.post("/api/chat/clear", json={"room_id": 3003}, headers=headers).status_code == 200
    assert client.get("/api/chat/history", params={"room_id": 3003}, headers=headers).json() == []


def test_admin_routes_require_admin(client, headers):
    assert client.get("/api/admin/config", headers=headers).status_code == 403
    assert client.get("/api/admin/keys", headers=headers).status_code == 403


def test_admin_manages_keys_and_config(client):
    admin = client.admin_headers
    config = client.get("/api/admin/config", headers=admin).json()
    config["chat_models"] = ["model-a"]
    config["search"]["max_results"] = 5
    resp = client.put("/api/admin/config", json=config, headers=admin)
    assert resp.status_code == 200
    assert client.get("/api/admin/config", headers=admin).json()["chat_models"] == ["model-a"]

    resp = client.post("/api/admin/keys", json={
        "key": "sk-test", "key_model": "ResponsesAPI", "chat_models": ["model-a"],
    }, headers=admin)
    assert resp.status_code == 200, resp.text
    key_id = resp.json()["id"]
    assert resp.json()["key_model"] == "ResponsesAPI"

    resp = client.put(f"/api/admin/keys/{key_id}/status", json={"status": 6}, headers=admin)
    assert resp.status_code == 200
    assert resp.json()["status"] == 6

    keys = client.get("/api/admin/keys", headers=admin).json()
    assert [key["id"] for key in keys] == [key_id]
    assert client.put("/api/admin/keys/999/status", json={"status": 0}, headers=admin).status_code == 404


def png_bytes():
    from io import BytesIO

    from PIL import Image

    buffer = BytesIO()
    Image.new("RGB", (4, 3), "red").save(buffer, format="PNG")
    return buffer.getvalue()


def test_image_upload_serve_and_delete(client, headers):
    resp = client.post("/api/files/upload", files={"file": ("pic.png", png_bytes(), "image/png")},
                       headers=headers)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["metadata"]["width"] == 4
    file_key = data["file_key"]

    assert client.get(f"/api/files/{file_key}").status_code == 200
    assert client.delete(f"/api/files/{file_key}", headers=client.admin_headers).status_code == 200
    assert client.get(f"/api/files/{file_key}").status_code == 404


def test_upload_rejects_non_images(client, headers):
    resp = client.post("/api/files/upload", files={"file": ("a.txt", b"hello", "text/plain")},
                       headers=headers)
    assert resp.status_code == 400
    resp = client.post("/api/files/upload", files={"file": ("fake.png", b"not a png", "image/png")},
                       headers=headers)
    assert resp.status_code == 400


def test_refresh_token_round_trip(client):
    register(client, "refresher")
    tokens = client.post("/api/auth/login", json={"username": "refresher", "password": "secret123"}).json()

    resp = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200
    new_access = resp.json()["access_token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {new_access}"})
    assert me.json()["username"] == "refresher"

    # an access token is not accepted as a refresh token, nor the reverse
    assert client.post("/api/auth/refresh", json={"refresh_token": tokens["access_token"]}).status_code == 401
    resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert resp.status_code == 401


def test_room_mirrors_image_support_of_its_models_key(client, headers):
    resp = client.post("/api/admin/keys", json={
        "key": "sk-vision", "chat_models": ["vision-1"], "image_upload": True,
    }, headers=client.admin_headers)
    assert resp.status_code == 200, resp.text

    resp = client.post("/api/rooms", json={"room_id": 4004, "chat_model": "vision-1"}, headers=headers)
    assert resp.status_code == 201, resp.text
    assert resp.json()["image_upload_enabled"] is True
    assert resp.json()["tool_enabled"] is False

    resp = client.put("/api/rooms/4004", json={"chat_model": "text-only"}, headers=headers)
    assert resp.json()["chat_model"] == "text-only"
    assert resp.json()["image_upload_enabled"] is False
