import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeBackend, FakeChat
from imagine.app import ImagineService, create_app
from imagine.app_config import ImagineConfig
from imagine.chat import BroadcastChatSession

INTERACTION = {"id": "int-1", "user_id": "user-1", "command": "imagine"}


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def build(chat=None, **overrides):
    settings = {"poll_interval_s": 0.02, "progress_tick_s": 0.01}
    settings.update(overrides)
    config = ImagineConfig(**settings)
    backend = FakeBackend()
    service = ImagineService(config, chat=chat or FakeChat(), backends={"primary": backend})
    return create_app(service=service), service, backend


@pytest.fixture
def app_parts():
    return build()


def test_health_reports_pipeline_state(app_parts):
    app, _, _ = app_parts
    with TestClient(app) as client:
        body = client.get("/health").json()
    assert body["ok"] is True
    assert body["pipelines"]["primary"] == {"state": "idle", "backend_alive": True}


def test_imagine_is_acknowledged_then_generated(app_parts):
    app, service, backend = app_parts
    with TestClient(app) as client:
        r = client.post("/api/imagine", json={"interaction": INTERACTION, "prompt": "a cat --ar 16:9", "steps": 12})
        assert r.status_code == 200
        assert r.json()["position"] == 1

        def finished():
            state = client.get("/api/queue").json()["primary"]
            return backend.requests and state["current"] is None and not state["pending"]

        assert wait_until(finished)

    chat = service.chat
    assert chat.contents()[0] == "I'm dreaming something up for you. You are next in line."
    assert chat.edits[-1][1].content == "<@user-1>"
    sent = backend.requests[0]
    assert (sent.width, sent.height, sent.steps) == (912, 512, 12)


def test_missing_interaction_is_a_bad_request(app_parts):
    app, _, _ = app_parts
    with TestClient(app) as client:
        r = client.post("/api/imagine", json={"prompt": "a cat"})
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"


def test_full_queue_is_rejected():
    app, _, _ = build(queue_capacity=1, poll_interval_s=60)
    with TestClient(app) as client:
        first = client.post("/api/imagine", json={"interaction": INTERACTION, "prompt": "one"})
        second = client.post(
            "/api/imagine",
            json={"interaction": {"id": "int-2", "user_id": "user-1"}, "prompt": "two"},
        )
    assert first.status_code == 200
    assert second.status_code == 429


def test_cancel_waiting_job():
    app, service, backend = build(poll_interval_s=60)
    with TestClient(app) as client:
        client.post("/api/imagine", json={"interaction": INTERACTION, "prompt": "one"})
        r = client.post("/api/cancel", json={"interaction_id": "int-1"})
        assert r.json() == {"cancelled": True, "interaction_id": "int-1"}
        assert client.get("/api/queue").json()["primary"]["cancelled"] == ["int-1"]
        r = client.post("/api/cancel", json={"interaction_id": "int-9"})
        assert r.json() == {"cancelled": False, "interaction_id": "int-9"}
    assert backend.requests == []


def test_interrupt_without_current_job_conflicts(app_parts):
    app, _, _ = app_parts
    with TestClient(app) as client:
        r = client.post("/api/interrupt", json={"interaction": INTERACTION})
    assert r.status_code == 409


def test_unknown_pipeline_and_bad_index(app_parts):
    app, _, _ = app_parts
    with TestClient(app) as client:
        r = client.post("/api/imagine", json={"interaction": INTERACTION, "prompt": "x", "pipeline": "secondary"})
        assert r.status_code == 400
        r = client.post("/api/variation", json={"interaction": INTERACTION, "index": 0})
        assert r.status_code == 400


def test_defaults_read_and_update(app_parts):
    app, _, _ = app_parts
    with TestClient(app) as client:
        assert client.get("/api/defaults").json()["width"] == 512
        updated = client.put("/api/defaults", json={"width": 768, "batch_count": 2}).json()
    assert (updated["width"], updated["height"], updated["batch_count"], updated["batch_size"]) == (768, 512, 2, 1)


def test_model_listing(app_parts):
    app, _, _ = app_parts
    with TestClient(app) as client:
        models = client.get("/api/models/checkpoint").json()["models"]
        assert [m["name"] for m in models][1] == "dreamshaper_8.safetensors [879db523c3]"
        assert client.post("/api/models/vae/refresh").json()["count"] == 2
        assert client.get("/api/models/upscaler").status_code == 400


def test_replies_are_broadcast_over_websocket():
    app, service, _ = build(chat=BroadcastChatSession(), poll_interval_s=60)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            assert wait_until(lambda: service.chat.clients)
            client.post("/api/imagine", json={"interaction": INTERACTION, "prompt": "a cat"})
            event = ws.receive_json()
    assert event["interaction_id"] == "int-1"
    assert event["type"] == "reply_edit"
    assert event["payload"]["reply"]["components"][0]["custom_id"] == "imagine_cancel"
