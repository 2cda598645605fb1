"""
Async client for an AUTOMATIC1111-style /sdapi/v1 rendering backend.

Provides:
- check_alive() -> bool                      liveness probe (GET /)
- text_to_image(request) -> TextToImageResponse
- text_to_image_raw(payload) -> TextToImageResponse
- image_to_image(request) -> TextToImageResponse
- upscale_image(request) -> UpscaleResponse
- get_config() / update_configuration(config)
- get_progress() / get_memory() / interrupt()
- list_models(kind) -> List[ModelEntry]

Every call except the probe itself fails fast with BackendUnreachable when the
probe fails, and raises BackendError (status + raw body) on non-200 responses.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from imagine.errors import BackendError, BackendUnreachable
from imagine.http_client import LoggedHTTPClient, sdapi_client
from shared.model_registry import KIND_SPECS, ModelEntry, ModelKind
from shared.schemas import (
    BackendConfig,
    ImageToImageRequest,
    MemoryResponse,
    ProgressResponse,
    TextToImageRequest,
    TextToImageResponse,
    UpscaleRequest,
    UpscaleResponse,
)

log = logging.getLogger("imagine.sdapi_backend")

# Timeout for the liveness probe and other short calls
PROBE_TIMEOUT = 5.0  # seconds


class SDAPIBackend:
    """
    Rendering backend client. Use as an async context manager:

        async with SDAPIBackend("http://127.0.0.1:7860") as api:
            await api.text_to_image(request)
    """

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 600.0,
        client: Optional[LoggedHTTPClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or sdapi_client(
            self.base_url,
            timeout=httpx.Timeout(connect=10.0, read=timeout_s, write=60.0, pool=10.0),
        )

    async def __aenter__(self) -> "SDAPIBackend":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self._client.__aexit__(exc_type, exc_val, exc_tb)

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------
    async def check_alive(self) -> bool:
        """Return True if the backend answers GET / with 200."""
        try:
            r = await self._client.get("/", timeout=PROBE_TIMEOUT)
            return r.status_code == 200
        except Exception as e:
            log.warning("Backend unreachable at %s: %s", self.base_url, e)
            return False

    async def _require_alive(self) -> None:
        if not await self.check_alive():
            raise BackendUnreachable()

    async def _call(
        self,
        method: str,
        path: str,
        body: Union[Dict[str, Any], bytes, None] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        kwargs: Dict[str, Any] = {"headers": {"Accept": "application/json"}}
        if isinstance(body, bytes):
            kwargs["content"] = body
            kwargs["headers"]["Content-Type"] = "application/json"
        elif body is not None:
            kwargs["json"] = body
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            r = await self._client.request(method, path, **kwargs)
        except httpx.ConnectError as e:
            raise BackendUnreachable(f"{BackendUnreachable().args[0]}: {e}") from e

        if r.status_code != 200:
            raise BackendError(r.status_code, r.text, r.reason_phrase)
        if not r.content:
            return None
        return r.json()

    # ------------------------------------------------------------------
    # generation
    # ------------------------------------------------------------------
    async def text_to_image(self, request: TextToImageRequest) -> TextToImageResponse:
        return await self.text_to_image_raw(request.payload())

    async def text_to_image_raw(self, payload: Union[Dict[str, Any], bytes]) -> TextToImageResponse:
        if not payload:
            raise ValueError("missing request")
        await self._require_alive()
        data = await self._call("POST", "/sdapi/v1/txt2img", payload)
        return TextToImageResponse.model_validate(data or {})

    async def image_to_image(self, request: ImageToImageRequest) -> TextToImageResponse:
        await self._require_alive()
        data = await self._call("POST", "/sdapi/v1/img2img", request.payload())
        return TextToImageResponse.model_validate(data or {})

    async def upscale_image(self, request: UpscaleRequest) -> UpscaleResponse:
        """Regenerate the source image with txt2img, then run it through the upscaler."""
        regenerate = request.text_to_image_request.model_copy(update={"n_iter": 1})
        regenerated = await self.text_to_image(regenerate)
        if not regenerated.images:
            raise BackendError(200, "no images returned from text to image request to upscale")

        data = await self._call(
            "POST",
            "/sdapi/v1/extra-single-image",
            {
                "resize_mode": request.resize_mode,
                "upscaling_resize": request.upscaling_resize,
                "upscaler_1": request.upscaler_1,
                "image": regenerated.images[0],
            },
        )
        return UpscaleResponse.model_validate(data or {})

    # ------------------------------------------------------------------
    # configuration
    # ------------------------------------------------------------------
    async def get_config(self) -> BackendConfig:
        data = await self._call("GET", "/sdapi/v1/options", timeout=30.0) or {}
        return BackendConfig(
            sd_model_checkpoint=data.get("sd_model_checkpoint"),
            sd_vae=data.get("sd_vae"),
            sd_hypernetwork=data.get("sd_hypernetwork"),
        )

    async def update_configuration(self, config: BackendConfig) -> None:
        await self._require_alive()
        log.info("Updating backend options: %s", json.dumps(config.patch()))
        await self._call("POST", "/sdapi/v1/options", config.patch())

    # ------------------------------------------------------------------
    # progress
    # ------------------------------------------------------------------
    async def get_progress(self) -> ProgressResponse:
        data = await self._call("GET", "/sdapi/v1/progress?skip_current_image=true", timeout=PROBE_TIMEOUT)
        return ProgressResponse.model_validate(data or {})

    async def get_memory(self) -> MemoryResponse:
        data = await self._call("GET", "/sdapi/v1/memory", timeout=PROBE_TIMEOUT)
        return MemoryResponse.model_validate(data or {})

    async def interrupt(self) -> None:
        await self._require_alive()
        await self._call("POST", "/sdapi/v1/interrupt", timeout=PROBE_TIMEOUT)

    # ------------------------------------------------------------------
    # inventories
    # ------------------------------------------------------------------
    async def list_models(self, kind: ModelKind) -> List[ModelEntry]:
        data = await self._call("GET", KIND_SPECS[kind].path, timeout=30.0) or []
        if kind is ModelKind.EMBEDDING:
            # {"loaded": {name: {...}}, "skipped": {...}}
            loaded = data.get("loaded", {}) if isinstance(data, dict) else {}
            return [ModelEntry(name=name) for name in loaded]
        return [ModelEntry.from_listing(kind, item) for item in data if isinstance(item, dict)]
