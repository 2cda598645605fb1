"""
imagine service: FastAPI surface over one or two generation pipelines.

Each pipeline is a rendering backend with its own model inventories,
reconciler, driver and job queue. Replies to chat interactions go out as
JSON events on ``/ws``.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backends.sdapi_backend import SDAPIBackend
from imagine import chat as chat_mod
from imagine.app_config import ImagineConfig, load_config
from imagine.chat import BroadcastChatSession, ChatSession, Reply
from imagine.defaults import DefaultSettingsService
from imagine.driver import GenerationDriver
from imagine.errors import (
    BackendUnreachable,
    CapacityExceeded,
    ImagineError,
    NoActiveJob,
    ValidationError,
)
from imagine.http_logging_asgi import HTTPLoggingASGIMiddleware
from imagine.job_queue import Job, JobQueue
from imagine.logging_utils import HOSTNAME, get_logger, init_logging
from imagine.messages import position_content
from imagine.reconciler import ModelReconciler
from imagine.repositories import (
    DefaultSettingsStore,
    GenerationRecordStore,
    InMemoryDefaultSettingsStore,
    InMemoryGenerationRecordStore,
    JSONDefaultSettingsStore,
    JSONGenerationRecordStore,
)
from imagine.startup_checks import StartupResult, run_startup_checks
from shared.model_registry import ModelInventories, ModelKind
from shared.schemas import (
    Attachment,
    Interaction,
    JobKind,
    RawPayload,
    TextToImageRequest,
)

log = logging.getLogger("imagine.app")

PRIMARY = "primary"
SECONDARY = "secondary"

ERROR_STATUS = {
    ValidationError: 400,
    NoActiveJob: 409,
    CapacityExceeded: 429,
    BackendUnreachable: 503,
}


# ---------------------------
# Request bodies
# ---------------------------
class ImagineBody(BaseModel):
    interaction: Optional[Interaction] = None
    pipeline: str = PRIMARY
    prompt: str
    negative_prompt: Optional[str] = None
    aspect_ratio: str = ""
    checkpoint: Optional[str] = None
    vae: Optional[str] = None
    hypernetwork: Optional[str] = None
    adetailer: str = ""
    hires_fix: Optional[bool] = None
    hires_scale: Optional[float] = None
    hires_steps: Optional[int] = None
    restore_faces: Optional[bool] = None
    sampler_name: Optional[str] = None
    cfg_scale: Optional[float] = None
    steps: Optional[int] = None
    seed: Optional[int] = None
    batch_count: Optional[int] = None
    batch_size: Optional[int] = None

    def text_to_image(self) -> TextToImageRequest:
        fields = {
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "enable_hr": self.hires_fix,
            "hr_scale": min(max(self.hires_scale, 1.0), 2.0) if self.hires_scale is not None else None,
            "hr_second_pass_steps": self.hires_steps,
            "restore_faces": self.restore_faces,
            "sampler_name": self.sampler_name,
            "cfg_scale": self.cfg_scale,
            "steps": self.steps,
            "seed": self.seed,
            "n_iter": self.batch_count,
            "batch_size": self.batch_size,
        }
        return TextToImageRequest(**{k: v for k, v in fields.items() if v is not None})


class Img2ImgBody(ImagineBody):
    attachments: List[Attachment] = Field(default_factory=list)
    denoising_strength: Optional[float] = None


class ButtonBody(BaseModel):
    interaction: Optional[Interaction] = None
    pipeline: str = PRIMARY
    index: int = 0
    upscale_factor: int = 2


class RawBody(BaseModel):
    interaction: Optional[Interaction] = None
    pipeline: str = PRIMARY
    blob: Dict[str, Any] = Field(default_factory=dict)
    unsafe: bool = False
    debug: bool = False


class CancelBody(BaseModel):
    interaction_id: str
    pipeline: str = PRIMARY


class InterruptBody(BaseModel):
    interaction: Interaction
    pipeline: str = PRIMARY


class DefaultsBody(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None
    batch_count: Optional[int] = None
    batch_size: Optional[int] = None


# ---------------------------
# Service wiring
# ---------------------------
@dataclass
class Pipeline:
    name: str
    backend: Any
    inventories: ModelInventories
    reconciler: ModelReconciler
    driver: GenerationDriver
    queue: JobQueue
    startup: Optional[StartupResult] = None
    task: Optional[asyncio.Task] = None


class ImagineService:
    def __init__(
        self,
        config: ImagineConfig,
        chat: Optional[ChatSession] = None,
        records: Optional[GenerationRecordStore] = None,
        settings_store: Optional[DefaultSettingsStore] = None,
        backends: Optional[Dict[str, Any]] = None,
    ):
        self.config = config
        self.chat = chat or BroadcastChatSession()
        if config.data_dir:
            data_dir = Path(config.data_dir)
            self.records = records or JSONGenerationRecordStore(data_dir)
            settings_store = settings_store or JSONDefaultSettingsStore(data_dir)
        else:
            self.records = records or InMemoryGenerationRecordStore()
            settings_store = settings_store or InMemoryDefaultSettingsStore()
        self.defaults = DefaultSettingsService(settings_store)
        self.logger = get_logger()
        self._exit_stack = contextlib.AsyncExitStack()

        self._owned_backends: List[Any] = []
        if backends is None:
            backends = {PRIMARY: self._make_backend(config.sdapi_base_url)}
            if config.secondary_base_url:
                backends[SECONDARY] = self._make_backend(config.secondary_base_url)

        capacities = {PRIMARY: config.queue_capacity, SECONDARY: config.secondary_capacity}
        self.pipelines: Dict[str, Pipeline] = {
            name: self._build_pipeline(name, backend, capacities.get(name, config.secondary_capacity))
            for name, backend in backends.items()
        }

    def _make_backend(self, base_url: str) -> SDAPIBackend:
        backend = SDAPIBackend(base_url, timeout_s=self.config.backend_timeout_s)
        self._owned_backends.append(backend)
        return backend

    def _build_pipeline(self, name: str, backend, capacity: int) -> Pipeline:
        inventories = ModelInventories()
        reconciler = ModelReconciler(backend, inventories)
        driver = GenerationDriver(backend, self.chat, reconciler, self.records, self.defaults, self.config)
        queue = JobQueue(
            driver,
            capacity=capacity,
            poll_interval=self.config.poll_interval_s,
            name=name,
            on_position=self._notify_position,
        )
        return Pipeline(name, backend, inventories, reconciler, driver, queue)

    async def start(self) -> None:
        for backend in self._owned_backends:
            await self._exit_stack.enter_async_context(backend)
        loop = asyncio.get_running_loop()
        for pipeline in self.pipelines.values():
            pipeline.startup = await run_startup_checks(
                pipeline.backend, pipeline.inventories, self.defaults, name=pipeline.name
            )
            pipeline.task = loop.create_task(pipeline.queue.run())
            self.logger.info(
                "pipeline_started",
                pipeline=pipeline.name,
                capacity=pipeline.queue.capacity,
                backend_alive=pipeline.startup.backend_alive,
            )

    async def stop(self) -> None:
        for pipeline in self.pipelines.values():
            pipeline.queue.stop()
        tasks = [p.task for p in self.pipelines.values() if p.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if isinstance(self.chat, BroadcastChatSession):
            await self.chat.close()
        await self._exit_stack.aclose()

    def pipeline(self, name: str) -> Pipeline:
        try:
            return self.pipelines[name]
        except KeyError:
            raise ValidationError(f"unknown pipeline {name!r}, expected one of {sorted(self.pipelines)}") from None

    async def _notify_position(self, job: Job) -> None:
        await self.chat.edit_reply(
            job.interaction,
            Reply(content=position_content(job.position), components=[chat_mod.BUTTONS[chat_mod.CANCEL]]),
        )

    async def submit(self, pipeline_name: str, job: Job) -> int:
        pipeline = self.pipeline(pipeline_name)
        position = pipeline.queue.enqueue(job)
        await self._notify_position(job)
        return position


# ---------------------------
# FastAPI app
# ---------------------------
def _error_status(exc: ImagineError) -> int:
    for cls, status in ERROR_STATUS.items():
        if isinstance(exc, cls):
            return status
    return 502


def create_app(config: Optional[ImagineConfig] = None, service: Optional[ImagineService] = None) -> FastAPI:
    config = config or (service.config if service else load_config())
    service = service or ImagineService(config)

    app = FastAPI(title="imagine queue")
    app.state.service = service
    app.add_middleware(HTTPLoggingASGIMiddleware, instance_id=config.instance_id, hostname=HOSTNAME)

    @app.on_event("startup")
    async def _startup():
        init_logging(instance_id=config.instance_id, secrets=[config.chat_token] if config.chat_token else None)
        await service.start()

    @app.on_event("shutdown")
    async def _shutdown():
        await service.stop()

    @app.exception_handler(ImagineError)
    async def _imagine_error(request, exc: ImagineError):
        return JSONResponse(
            status_code=_error_status(exc),
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    def _job(body, kind: JobKind, **fields) -> Job:
        return Job(interaction=body.interaction, kind=kind, **fields)

    async def _enqueue(pipeline: str, job: Job) -> Dict[str, Any]:
        position = await service.submit(pipeline, job)
        return {"job_id": job.id, "position": position, "pipeline": pipeline}

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "instance_id": config.instance_id,
            "pipelines": {
                name: {
                    "state": p.queue.state,
                    "backend_alive": p.startup.backend_alive if p.startup else None,
                }
                for name, p in service.pipelines.items()
            },
        }

    @app.post("/api/imagine")
    async def imagine(body: ImagineBody):
        job = _job(
            body,
            JobKind.NEW_IMAGE,
            request=body.text_to_image(),
            aspect_ratio=body.aspect_ratio,
            checkpoint=body.checkpoint,
            vae=body.vae,
            hypernetwork=body.hypernetwork,
            adetailer=body.adetailer,
        )
        return await _enqueue(body.pipeline, job)

    @app.post("/api/img2img")
    async def img2img(body: Img2ImgBody):
        request = body.text_to_image()
        if body.denoising_strength is not None:
            request.denoising_strength = body.denoising_strength
        job = _job(
            body,
            JobKind.IMG2IMG,
            request=request,
            checkpoint=body.checkpoint,
            vae=body.vae,
            hypernetwork=body.hypernetwork,
            adetailer=body.adetailer,
            attachments=body.attachments,
        )
        return await _enqueue(body.pipeline, job)

    @app.post("/api/reroll")
    async def reroll(body: ButtonBody):
        return await _enqueue(body.pipeline, _job(body, JobKind.REROLL, interaction_index=body.index))

    @app.post("/api/variation")
    async def variation(body: ButtonBody):
        if body.index < 1:
            raise ValidationError("variation needs the 1-based index of an image")
        return await _enqueue(body.pipeline, _job(body, JobKind.VARIATION, interaction_index=body.index))

    @app.post("/api/upscale")
    async def upscale(body: ButtonBody):
        if body.index < 1:
            raise ValidationError("upscale needs the 1-based index of an image")
        job = _job(body, JobKind.UPSCALE, interaction_index=body.index, upscale_factor=body.upscale_factor)
        return await _enqueue(body.pipeline, job)

    @app.post("/api/raw")
    async def raw(body: RawBody):
        payload = RawPayload(blob=body.blob, unsafe=body.unsafe, debug=body.debug)
        return await _enqueue(body.pipeline, _job(body, JobKind.RAW, raw=payload))

    @app.post("/api/cancel")
    async def cancel(body: CancelBody):
        cancelled = service.pipeline(body.pipeline).queue.cancel(body.interaction_id)
        return {"cancelled": cancelled, "interaction_id": body.interaction_id}

    @app.post("/api/interrupt")
    async def interrupt(body: InterruptBody):
        job = service.pipeline(body.pipeline).queue.interrupt(body.interaction)
        return {"interrupted": job.handle}

    @app.get("/api/queue")
    async def queue_state():
        return {name: p.queue.snapshot() for name, p in service.pipelines.items()}

    @app.get("/api/defaults")
    async def get_defaults():
        return (await service.defaults.get()).model_dump()

    @app.put("/api/defaults")
    async def put_defaults(body: DefaultsBody):
        current = await service.defaults.get()
        if body.width is not None or body.height is not None:
            current = await service.defaults.update_dimensions(
                body.width or current.width, body.height or current.height
            )
        if body.batch_count is not None or body.batch_size is not None:
            current = await service.defaults.update_batch(
                body.batch_count or current.batch_count, body.batch_size or current.batch_size
            )
        return current.model_dump()

    def _kind(kind: str) -> ModelKind:
        try:
            return ModelKind(kind)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"unknown model kind {kind!r}") from None

    @app.get("/api/models/{kind}")
    async def list_models(kind: str, pipeline: str = PRIMARY):
        p = service.pipeline(pipeline)
        inventory = p.inventories[_kind(kind)]
        await inventory.fetch(p.backend)
        return {"kind": kind, "models": inventory.to_api_response()}

    @app.post("/api/models/{kind}/refresh")
    async def refresh_models(kind: str, pipeline: str = PRIMARY):
        p = service.pipeline(pipeline)
        inventory = p.inventories[_kind(kind)]
        await inventory.refresh(p.backend)
        return {"kind": kind, "count": len(inventory.names())}

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        """Every connected client receives every reply event."""
        chat = service.chat
        if not isinstance(chat, BroadcastChatSession):
            await ws.close(code=1008)
            return
        await ws.accept()
        client_id = str(uuid.uuid4())
        chat.connect(client_id, ws)
        try:
            while True:
                data = await ws.receive_text()
                log.debug("WS recv from %s: %s", client_id, data)
        except WebSocketDisconnect:
            log.info("WS client disconnected: %s", client_id)
        finally:
            chat.disconnect(client_id)

    return app


def main():
    config = load_config()
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
