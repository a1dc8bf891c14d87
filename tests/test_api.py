import time
from urllib.parse import unquote

import pytest
from fastapi.testclient import TestClient

from heyit.config import Config
from heyit.main import create_app
from heyit.services.errors import BusyError, RateLimitError, QUOTA_MESSAGE
from heyit.services.oss_service import InlineArtifactStore
from tests.conftest import LoopRecordingStore, make_image


HEADERS = {"X-API-Key": "test-key"}


@pytest.fixture
def client(monkeypatch, gateway, store):
    monkeypatch.setattr(Config, "API_KEYS", ["test-key"])
    monkeypatch.setattr(Config, "HEALTH_CHECK_NO_AUTH", True)
    app = create_app(gateway=gateway, store=store, artifacts=InlineArtifactStore())
    with TestClient(app) as test_client:
        yield test_client


def _wait_queue(client, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if client.get("/api/v1/queue", headers=HEADERS).json()["pending"] == 0:
            return
        time.sleep(0.02)
    raise AssertionError("队列没有在限定时间内处理完")


def _wait_batch(client, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        batch = client.get("/api/v1/batch", headers=HEADERS).json()
        if not batch["running"]:
            return batch
        time.sleep(0.02)
    raise AssertionError("批量生成没有在限定时间内结束")


def test_health_is_open(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_auth_required(client):
    assert client.get("/api/v1/gallery").status_code == 401
    assert client.get("/api/v1/gallery", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/api/v1/gallery", headers={"Authorization": "Bearer test-key"}).status_code == 200
    assert client.get("/api/v1/gallery?api_key=test-key").status_code == 200


def test_enqueue_and_complete(client, gateway):
    response = client.post("/api/v1/tasks", headers=HEADERS, json={
        "content_prompt": "a cat",
        "num_images": 2,
        "aspect_ratio": "3:2",
        "style_description": "watercolor",
    })
    assert response.status_code == 200
    body = response.json()
    assert [img["status"] for img in body["images"]] == ["queued", "queued"]

    _wait_queue(client)
    gallery = client.get("/api/v1/gallery", headers=HEADERS).json()
    images = gallery[0]["images"]
    assert [img["status"] for img in images] == ["completed", "completed"]
    assert all(img["name"] == "a cat" for img in images)
    assert gateway.calls[0]["style"] == "watercolor"


def test_enqueue_validation(client):
    response = client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "  ", "num_images": 1})
    assert response.status_code == 422
    response = client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "x", "num_images": 0})
    assert response.status_code == 422


def test_failed_task_shows_quota_message(client, gateway):
    gateway.results = [RateLimitError("429")]
    client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "a cat"})
    _wait_queue(client)

    image = client.get("/api/v1/gallery", headers=HEADERS).json()[0]["images"][0]
    assert image["status"] == "failed"
    assert image["error"] == QUOTA_MESSAGE


def test_enqueue_with_saved_style(client, gateway):
    ref = make_image("ref")
    created = client.post("/api/v1/styles", headers=HEADERS, json={
        "name": "水彩",
        "style_description": "soft watercolor",
        "reference_images": [ref.data_url],
    })
    assert created.status_code == 200
    assert created.json()["thumbnail_url"] == ref.data_url

    client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "a cat", "style_name": "水彩"})
    _wait_queue(client)
    assert gateway.calls[0]["style"] == "soft watercolor"
    assert gateway.calls[0]["reference_images"] == [ref]


def test_unknown_style_name(client):
    response = client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "x", "style_name": "missing"})
    assert response.status_code == 404


def test_gallery_trash_lifecycle(client):
    client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "a cat"})
    _wait_queue(client)

    renamed = client.patch("/api/v1/gallery/0/0", headers=HEADERS, json={"name": "小猫"})
    assert renamed.json()["name"] == "小猫"

    assert client.delete("/api/v1/gallery/0/0", headers=HEADERS).status_code == 200
    assert client.get("/api/v1/gallery", headers=HEADERS).json() == []
    trash = client.get("/api/v1/trash", headers=HEADERS).json()
    assert trash[0]["date_label"].startswith("删除于")

    assert client.post("/api/v1/trash/0/0/restore", headers=HEADERS).status_code == 200
    assert client.get("/api/v1/trash", headers=HEADERS).json() == []
    assert client.get("/api/v1/gallery", headers=HEADERS).json()[0]["images"][0]["name"] == "小猫"

    client.delete("/api/v1/gallery/0/0", headers=HEADERS)
    assert client.delete("/api/v1/trash/0/0", headers=HEADERS).status_code == 200
    assert client.delete("/api/v1/trash/0/0", headers=HEADERS).status_code == 404


def test_regenerate_keeps_style(client, gateway):
    client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "a cat", "style_description": "ink"})
    _wait_queue(client)

    response = client.post("/api/v1/gallery/0/0/regenerate", headers=HEADERS, json={"content_prompt": "a dog"})
    assert response.status_code == 200
    _wait_queue(client)
    assert gateway.calls[-1] == {
        "style": "ink", "prompt": "a dog", "count": 1,
        "aspect_ratio": gateway.calls[-1]["aspect_ratio"], "reference_images": None,
    }


def test_edit_adds_new_image(client, gateway):
    client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "a cat"})
    _wait_queue(client)

    response = client.post("/api/v1/gallery/0/0/edit", headers=HEADERS, json={
        "prompt": "make it red",
        "mask": make_image("mask").data_url,
    })
    assert response.status_code == 200
    edited = response.json()
    assert edited["id"].startswith("inpainted-")
    assert edited["name"] == "编辑: a cat"
    assert edited["content_prompt"] == "局部修改: a cat"
    assert edited["url"] == gateway.edited.data_url

    gallery = client.get("/api/v1/gallery", headers=HEADERS).json()
    assert gallery[0]["images"][0]["id"] == edited["id"]


def test_edit_saves_result_off_the_event_loop(monkeypatch, gateway, store):
    monkeypatch.setattr(Config, "API_KEYS", ["test-key"])
    artifacts = LoopRecordingStore()
    app = create_app(gateway=gateway, store=store, artifacts=artifacts)
    with TestClient(app) as client:
        client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "a cat"})
        _wait_queue(client)
        response = client.post("/api/v1/gallery/0/0/edit", headers=HEADERS, json={
            "prompt": "make it red",
            "mask": make_image("mask").data_url,
        })

    assert response.status_code == 200
    assert len(artifacts.on_loop) == 2
    assert not any(artifacts.on_loop)


def test_style_endpoints(client):
    assert client.post("/api/v1/styles", headers=HEADERS, json={"name": "空"}).status_code == 422

    created = client.post("/api/v1/styles", headers=HEADERS, json={"name": "胶片", "style_description": "film"})
    assert created.json()["thumbnail_url"].startswith("data:image/svg+xml")

    assert client.patch("/api/v1/styles/0", headers=HEADERS, json={"name": "老胶片"}).json()["name"] == "老胶片"
    updated = client.put("/api/v1/styles/0", headers=HEADERS, json={"name": "胶片2", "style_description": "grain"})
    assert updated.json()["style_description"] == "grain"
    assert [s["name"] for s in client.get("/api/v1/styles", headers=HEADERS).json()] == ["胶片2"]
    assert client.delete("/api/v1/styles/0", headers=HEADERS).status_code == 200
    assert client.delete("/api/v1/styles/0", headers=HEADERS).status_code == 404


def test_describe_style(client, gateway):
    response = client.post("/api/v1/styles/describe", headers=HEADERS, json={"image": make_image("x").data_url})
    assert response.json() == {"style_description": gateway.description}


def test_save_style_from_image(client):
    client.post("/api/v1/tasks", headers=HEADERS, json={"content_prompt": "a cat", "style_description": "ink"})
    _wait_queue(client)

    response = client.post("/api/v1/gallery/0/0/save-style", headers=HEADERS, json={"name": "水墨"})
    assert response.status_code == 200
    assert response.json()["style_description"] == "ink"


def test_batch_flow(client, gateway):
    gateway.entries = [{"name": "BG-01", "prompt": "港口"}, {"name": "BG-02", "prompt": "灯塔"}]
    gateway.translations = ["harbor", "lighthouse"]

    analyzed = client.post("/api/v1/batch/analyze", headers=HEADERS, json={"text": "文档"})
    assert [t["name"] for t in analyzed.json()["tasks"]] == ["BG-01", "BG-02"]

    translated = client.post("/api/v1/batch/translate", headers=HEADERS).json()
    assert translated["applied"] is True
    assert [t["prompt"] for t in translated["batch"]["tasks"]] == ["harbor", "lighthouse"]

    edited = client.patch("/api/v1/batch/items/1", headers=HEADERS, json={"prompt": "a stormy lighthouse"})
    assert edited.json()["prompt"] == "a stormy lighthouse"

    assert client.put("/api/v1/batch/style", headers=HEADERS, json={"style_prompt": "oil"}).status_code == 200
    assert client.post("/api/v1/batch/generate", headers=HEADERS).status_code == 200
    batch = _wait_batch(client)
    assert batch["completed"] == 2
    assert all(call["style"] == "oil" for call in gateway.calls)

    exported = client.get("/api/v1/batch/export", headers=HEADERS)
    assert exported.headers["content-type"] == "application/zip"
    assert "HeyIt-批量导出-" in unquote(exported.headers["content-disposition"])


def test_batch_errors(client, gateway):
    assert client.post("/api/v1/batch/generate", headers=HEADERS).status_code == 400
    assert client.post("/api/v1/batch/analyze", headers=HEADERS, json={"text": " "}).status_code == 400

    gateway.entries = []
    assert client.post("/api/v1/batch/analyze", headers=HEADERS, json={"text": "x"}).status_code == 422

    gateway.entries = [{"name": "A", "prompt": "a"}]
    client.post("/api/v1/batch/analyze", headers=HEADERS, json={"text": "x"})
    assert client.post("/api/v1/batch/items/7/generate", headers=HEADERS).status_code == 404
    assert client.get("/api/v1/batch/export", headers=HEADERS).status_code == 400


def test_busy_maps_to_conflict(client, gateway):
    gateway.analyze_document = _raise_busy
    response = client.post("/api/v1/batch/analyze", headers=HEADERS, json={"text": "x"})
    assert response.status_code == 409
    assert response.json()["detail"] == "busy"


async def _raise_busy(text):
    raise BusyError("busy")
