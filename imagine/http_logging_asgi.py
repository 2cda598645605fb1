"""
ASGI request logging for the imagine HTTP surface.

Drains the request body so it can be logged, replays it downstream, and
records the response status. WebSocket traffic (``/ws`` reply events) is
passed through untouched.
"""

import json
import secrets
import time
from typing import Any, Dict, List, Optional

from starlette.types import ASGIApp, Receive, Scope, Send

from imagine.logging_utils import get_logger

# polled constantly by dashboards and probes; logged at DEBUG only
QUIET_PATHS = ("/health", "/api/queue")


def _decode_headers(raw_headers) -> Dict[str, str]:
    headers = {}
    for k, v in raw_headers or []:
        try:
            headers[k.decode()] = v.decode()
        except UnicodeDecodeError:
            headers[k.decode("latin-1")] = v.decode("latin-1")
    return headers


def _json_body(body: bytes, headers: Dict[str, str]) -> Any:
    if not body or not headers.get("content-type", "").startswith("application/json"):
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


class HTTPLoggingASGIMiddleware:
    def __init__(self, app: ASGIApp, *, instance_id: str, hostname: str):
        self.app = app
        self.instance_id = instance_id
        self.hostname = hostname
        self.logger = get_logger()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        received: List[Dict[str, Any]] = []
        body = b""
        while True:
            msg = await receive()
            received.append(msg)
            if msg.get("type") != "http.request":
                break
            body += msg.get("body", b"")
            if not msg.get("more_body", False):
                break

        async def replay_receive() -> Dict[str, Any]:
            if received:
                return received.pop(0)
            return await receive()

        t0 = time.time()
        request_id = secrets.token_hex(4)
        method = scope.get("method")
        path = scope.get("path") or ""
        client = scope.get("client")
        remote_addr = f"{client[0]}:{client[1]}" if client and len(client) >= 2 else "unknown"
        headers = _decode_headers(scope.get("headers"))

        status_code: Optional[int] = None

        async def send_wrapper(message: Dict[str, Any]) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message.get("status", 0) or 0)
            await send(message)

        try:
            await self.app(scope, replay_receive, send_wrapper)
        finally:
            dur_ms = (time.time() - t0) * 1000.0
            if path.endswith(QUIET_PATHS) and (status_code or 0) < 400:
                self.logger.debug(
                    "http_in",
                    request_id=request_id,
                    method=method,
                    path=path,
                    status_code=status_code,
                    duration_ms=dur_ms,
                )
            else:
                self.logger.http_in(
                    method=method,
                    path=path,
                    remote_addr=remote_addr,
                    request_id=request_id,
                    headers=headers,
                    body=_json_body(body, headers),
                    status_code=status_code,
                    duration_ms=dur_ms,
                )
