"""
Tests for the request-logging ASGI middleware.

The middleware drains the request body to log it, so it must hand the exact
same body to the endpoint, and must stay out of the way of WebSockets.
"""

from fastapi import FastAPI, Request, WebSocket
from starlette.testclient import TestClient

from imagine import http_logging_asgi
from imagine.http_logging_asgi import HTTPLoggingASGIMiddleware, _json_body


def make_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(HTTPLoggingASGIMiddleware, instance_id="t", hostname="h")
    return app


def test_replays_large_body():
    app = make_app()

    @app.post("/echo")
    async def echo(req: Request):
        b = await req.body()
        return {"n": len(b)}

    payload = b"x" * (1024 * 1024)
    r = TestClient(app).post("/echo", content=payload)
    assert r.status_code == 200
    assert r.json()["n"] == len(payload)


def test_handles_json_body():
    app = make_app()

    @app.post("/api/imagine")
    async def imagine(req: Request):
        return {"received": await req.json()}

    payload = {"prompt": "a cat --ar 16:9", "interaction": {"id": "1", "user_id": "u"}}
    r = TestClient(app).post("/api/imagine", json=payload)
    assert r.status_code == 200
    assert r.json()["received"] == payload


def test_quiet_paths_log_at_debug(monkeypatch):
    calls = []
    app = make_app()

    @app.get("/health")
    async def health():
        return {"ok": True}

    class SpyLogger:
        def debug(self, event, **kwargs):
            calls.append(("debug", event, kwargs["status_code"]))

        def http_in(self, **kwargs):
            calls.append(("info", "http_in", kwargs["status_code"]))

    monkeypatch.setattr(http_logging_asgi, "get_logger", lambda: SpyLogger())
    r = TestClient(app).get("/health")
    assert r.status_code == 200
    assert calls == [("debug", "http_in", 200)]


def test_websocket_passes_through():
    app = make_app()

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        await ws.accept()
        await ws.send_json({"type": "hello"})
        await ws.close()

    with TestClient(app).websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"type": "hello"}


def test_json_body_only_for_json_content():
    assert _json_body(b'{"a": 1}', {"content-type": "application/json"}) == {"a": 1}
    assert _json_body(b'{"a": 1}', {"content-type": "text/plain"}) is None
    assert _json_body(b"{broken", {"content-type": "application/json"}) is None
