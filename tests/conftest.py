from __future__ import annotations

import base64
import io
import json
from typing import Dict, List, Optional

import pytest
from PIL import Image

from imagine.chat import ERROR_COLOR, ChatSession, Reply
from shared.model_registry import ModelEntry, ModelKind
from shared.schemas import (
    BackendConfig,
    Interaction,
    MemoryResponse,
    ProgressResponse,
    TextToImageResponse,
    UpscaleResponse,
)


def png_b64(width: int = 8, height: int = 8) -> str:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class FakeBackend:
    """In-process stand-in for SDAPIBackend."""

    def __init__(self, config: Optional[BackendConfig] = None, models: Optional[Dict[ModelKind, List[str]]] = None):
        self.alive = True
        self.config = config or BackendConfig(
            sd_model_checkpoint="base_v1.safetensors [aaaa]",
            sd_vae="Automatic",
            sd_hypernetwork="None",
        )
        self.models = models or {
            ModelKind.CHECKPOINT: ["base_v1.safetensors [aaaa]", "dreamshaper_8.safetensors [879db523c3]"],
            ModelKind.VAE: ["Automatic", "vae-ft-mse-840000.safetensors"],
            ModelKind.HYPERNETWORK: ["None"],
            ModelKind.LORA: [],
            ModelKind.EMBEDDING: [],
        }
        self.calls: List[str] = []
        self.updates: List[BackendConfig] = []
        self.requests: list = []
        self.progress_values: List[float] = []
        self.progress_error: Optional[Exception] = None
        self.generate_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.release = None  # optional asyncio.Event gating text_to_image
        self.images = [png_b64()]
        self.seeds = [1234]
        self.interrupted = False

    async def check_alive(self) -> bool:
        self.calls.append("check_alive")
        return self.alive

    async def list_models(self, kind: ModelKind) -> List[ModelEntry]:
        self.calls.append(f"list_models:{kind.value}")
        return [ModelEntry(name=name) for name in self.models.get(kind, [])]

    async def get_config(self) -> BackendConfig:
        self.calls.append("get_config")
        return self.config.model_copy()

    async def update_configuration(self, config: BackendConfig) -> None:
        self.calls.append("update_configuration")
        if self.update_error is not None:
            raise self.update_error
        self.updates.append(config)
        self.config = self.config.model_copy(update=config.patch())

    def _response(self) -> TextToImageResponse:
        info = {"all_seeds": self.seeds, "all_subseeds": [s + 1 for s in self.seeds]}
        return TextToImageResponse(images=list(self.images), info=json.dumps(info))

    async def text_to_image(self, request) -> TextToImageResponse:
        self.calls.append("text_to_image")
        self.requests.append(request)
        if self.release is not None:
            await self.release.wait()
        if self.generate_error is not None:
            raise self.generate_error
        return self._response()

    async def text_to_image_raw(self, payload) -> TextToImageResponse:
        self.calls.append("text_to_image_raw")
        self.requests.append(payload)
        return self._response()

    async def image_to_image(self, request) -> TextToImageResponse:
        self.calls.append("image_to_image")
        self.requests.append(request)
        return self._response()

    async def upscale_image(self, request) -> UpscaleResponse:
        self.calls.append("upscale_image")
        self.requests.append(request)
        return UpscaleResponse(image=self.images[0])

    async def get_progress(self) -> ProgressResponse:
        self.calls.append("get_progress")
        if self.progress_error is not None:
            raise self.progress_error
        value = self.progress_values.pop(0) if self.progress_values else 0.0
        return ProgressResponse(progress=value, eta_relative=1.0)

    async def get_memory(self) -> MemoryResponse:
        return MemoryResponse(
            ram={"used": 4 * 1024**3, "total": 16 * 1024**3},
            cuda={"system": {"used": 2 * 1024**3, "total": 8 * 1024**3}},
        )

    async def interrupt(self) -> None:
        self.calls.append("interrupt")
        self.interrupted = True
        if self.release is not None:
            self.release.set()


class FakeChat(ChatSession):
    """Records every reply instead of publishing it."""

    def __init__(self):
        self.edits: List[tuple] = []
        self.followups: List[tuple] = []
        self.fail_edits = False

    async def edit_reply(self, interaction: Interaction, reply: Reply) -> str:
        if self.fail_edits:
            raise RuntimeError("chat unavailable")
        self.edits.append((interaction.id, reply))
        return f"msg-{interaction.id}"

    async def followup(self, interaction: Interaction, reply: Reply) -> str:
        self.followups.append((interaction.id, reply))
        return f"followup-{len(self.followups)}"

    def errors(self) -> List[str]:
        return [
            reply.embeds[0].fields[0].value
            for _, reply in self.edits
            if reply.embeds and reply.embeds[0].color == ERROR_COLOR
        ]

    def contents(self) -> List[Optional[str]]:
        return [reply.content for _, reply in self.edits]


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def interaction():
    return Interaction(id="int-1", user_id="user-1", command="imagine")
