"""
Generation driver: runs one Current job end to end.

    build request -> liveness probe -> switch models -> initial reply
    -> pending record -> dispatch + progress poller -> finalize -> revert

Every terminal error ends in exactly one error reply and ``run`` returns
False instead of raising, so the queue always gets its ``done`` transition.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import io
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image

from imagine import chat as chat_mod
from imagine.app_config import ImagineConfig
from imagine.chat import ChatSession, Embed, EmbedField, Reply, ReplyFile
from imagine.defaults import DEFAULT_SAMPLER, DefaultSettingsService
from imagine.directives import (
    DirectiveDefaults,
    aspect_ratio_from_size,
    parse_directives,
)
from imagine.errors import (
    BackendError,
    BackendUnreachable,
    GenerationTimeout,
    ModelSwitchError,
    ValidationError,
)
from imagine.job_queue import Job
from imagine.logging_utils import get_logger
from imagine.messages import changing_models_content, imagine_message_content
from imagine.progress import PollOutcome, ProgressPoller
from imagine.reconciler import ModelReconciler, SwitchResult
from imagine.repositories import GenerationRecordStore, NotFoundError
from shared.schemas import (
    BackendConfig,
    GenerationRecord,
    ImageToImageRequest,
    JobKind,
    ProgressResponse,
    TextToImageRequest,
    TextToImageResponse,
    UpscaleRequest,
)

log = logging.getLogger("imagine.driver")

DEBUG_SUFFIX = "{DEBUG}"
VARIATION_STRENGTH = 0.15

# minimum inpaint size per ADetailer segmentation model
SEG_MODEL_DIMENSIONS = {
    "person_yolov8n-seg.pt": (768, 1152),
    "face_yolov8n.pt": (768, 768),
}


def adetailer_scripts(models: str, request: TextToImageRequest) -> Optional[Dict[str, Any]]:
    """Expand "face_yolov8n.pt, person_yolov8n-seg.pt" into alwayson_scripts."""
    names = [name for name in models.replace(",", " ").split() if name]
    if not names:
        return None
    args = []
    for name in names:
        params: Dict[str, Any] = {"ad_model": name}
        if name in SEG_MODEL_DIMENSIONS:
            min_w, min_h = SEG_MODEL_DIMENSIONS[name]
            params["ad_inpaint_width"] = max(
                min_w, request.width, request.hr_resize_x, int(request.hr_scale * request.width)
            )
            params["ad_inpaint_height"] = max(
                min_h, request.height, request.hr_resize_y, int(request.hr_scale * request.height)
            )
        if request.sampler_name:
            params["ad_use_sampler"] = True
            params["ad_sampler"] = request.sampler_name
        if request.cfg_scale:
            params["ad_cfg_scale"] = request.cfg_scale
        args.append(params)
    return {"ADetailer": {"args": args}}


def image_size(image_b64: str) -> Tuple[int, int]:
    try:
        data = base64.b64decode(image_b64, validate=False)
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (binascii.Error, OSError, ValueError) as e:
        raise ValidationError(f"could not read the attached image: {e}") from e


def decode_images(images: List[str]) -> List[bytes]:
    decoded = []
    for index, image in enumerate(images):
        try:
            decoded.append(base64.b64decode(image, validate=True))
        except (binascii.Error, ValueError) as e:
            raise BackendError(200, f"image {index} in the response is not valid base64: {e}") from e
    return decoded


def total_image_count(request: TextToImageRequest) -> int:
    return max(request.n_iter, 1) * max(request.batch_size, 1)


class GenerationDriver:
    def __init__(
        self,
        backend,
        chat: ChatSession,
        reconciler: ModelReconciler,
        records: GenerationRecordStore,
        defaults: DefaultSettingsService,
        config: Optional[ImagineConfig] = None,
    ):
        self.backend = backend
        self.chat = chat
        self.reconciler = reconciler
        self.records = records
        self.defaults = defaults
        self.config = config or ImagineConfig()
        self.logger = get_logger()

    @property
    def token(self) -> Optional[str]:
        return self.config.chat_token

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------
    async def run(self, job: Job) -> bool:
        interaction = job.interaction
        original: Optional[BackendConfig] = None
        ok = False
        with self.logger.job_context(job_id=interaction.id, job_type=job.kind.value) as ctx:
            try:
                request, models = await self.build_request(job)
                ctx.milestone("request_built", width=request.width, height=request.height, steps=request.steps)

                if not await self.backend.check_alive():
                    raise BackendUnreachable()

                try:
                    switch = await self.reconciler.switch(
                        models, on_switch=lambda live, patch: self._changing_models(job, live, patch)
                    )
                except ModelSwitchError as e:
                    original = e.original
                    raise
                original = switch.original
                if switch.switched:
                    ctx.milestone("models_switched", **switch.patch.patch())

                ok = await self._generate(job, request, switch, ctx)
            except GenerationTimeout as e:
                # the poller already replied
                ctx.error("job_timed_out", error=str(e))
            except Exception as e:
                ctx.error("job_error", error=str(e))
                await self._reply_error(job, e)
            finally:
                if original is not None:
                    await self._revert(job, original)
        return ok

    # ------------------------------------------------------------------
    # request building
    # ------------------------------------------------------------------
    async def previous_generation(self, job: Job) -> GenerationRecord:
        message_id = job.interaction.message_id or ""
        log.info("Reimagining interaction: %s, Message: %s", job.handle, message_id)
        try:
            return await self.records.get_by_message_and_sort(message_id, job.interaction_index)
        except NotFoundError as e:
            raise ValidationError(f"could not find the original generation: {e}") from e

    async def build_request(self, job: Job) -> Tuple[TextToImageRequest, BackendConfig]:
        """Final request plus the models it asks for."""
        if job.kind in (JobKind.REROLL, JobKind.VARIATION, JobKind.UPSCALE):
            prior = await self.previous_generation(job)
            request = prior.request.model_copy(deep=True)
            if job.kind is not JobKind.UPSCALE:
                request.subseed = -1
            if job.kind is JobKind.VARIATION:
                request.subseed_strength = VARIATION_STRENGTH
            models = BackendConfig(
                sd_model_checkpoint=prior.checkpoint,
                sd_vae=prior.vae,
                sd_hypernetwork=prior.hypernetwork,
            )
            return request, models

        settings = await self.defaults.get()
        request = job.request.model_copy(deep=True)
        explicit = set(job.request.model_fields_set)
        if job.kind is JobKind.RAW and job.raw is not None:
            request = TextToImageRequest.model_validate({**request.payload(), **job.raw.blob})
            explicit |= set(job.raw.blob)

        if "n_iter" not in explicit:
            request.n_iter = settings.batch_count
        if "batch_size" not in explicit:
            request.batch_size = settings.batch_size
        if not request.negative_prompt:
            request.negative_prompt = self.config.default_negative_prompt
        if not request.sampler_name:
            request.sampler_name = DEFAULT_SAMPLER

        base_width = request.width if "width" in explicit else settings.width
        base_height = request.height if "height" in explicit else settings.height
        aspect_ratio = job.aspect_ratio

        if job.kind is JobKind.IMG2IMG:
            source = self._source_image(job)
            width, height = image_size(source)
            aspect_ratio = aspect_ratio_from_size(width, height)
            request.n_iter = 1
            request.batch_size = 1

        result = parse_directives(
            request.prompt,
            DirectiveDefaults(
                width=base_width,
                height=base_height,
                steps=request.steps,
                cfg_scale=request.cfg_scale,
                seed=request.seed,
                hr_scale=request.hr_scale,
                enable_hr=request.enable_hr,
            ),
            aspect_ratio=aspect_ratio,
        )
        request.prompt = result.sanitized_prompt
        request.width, request.height = result.width, result.height
        request.steps = result.steps
        request.cfg_scale = result.cfg_scale
        request.seed = result.seed
        request.enable_hr = result.enable_hr
        request.hr_scale = result.hr_scale
        request.hr_resize_x, request.hr_resize_y = result.hr_resize_x, result.hr_resize_y

        if job.adetailer:
            scripts = adetailer_scripts(job.adetailer, request)
            if scripts:
                request.alwayson_scripts = {**(request.alwayson_scripts or {}), **scripts}
                log.info("Final scripts (ADetailer): %s", json.dumps(scripts))

        return request, job.requested_models()

    def _source_image(self, job: Job) -> str:
        for attachment in job.attachments:
            if attachment.image and attachment.content_type.startswith("image"):
                return attachment.image
        raise ValidationError("No attached images found, skipping img2img generation")

    # ------------------------------------------------------------------
    # replies
    # ------------------------------------------------------------------
    async def _changing_models(self, job: Job, live: BackendConfig, patch: BackendConfig) -> None:
        await self.chat.edit_reply(
            job.interaction,
            Reply(
                content=changing_models_content(live, patch),
                components=[chat_mod.BUTTONS[chat_mod.CANCEL_DISABLED]],
            ),
        )

    def _progress_reply(
        self,
        job: Job,
        request: TextToImageRequest,
        models: BackendConfig,
        progress: Optional[ProgressResponse] = None,
        ram: Optional[str] = None,
        vram: Optional[str] = None,
    ) -> Reply:
        content = imagine_message_content(
            request,
            job.interaction.user_id,
            progress=progress.progress if progress else 0.0,
            models=models,
            ram=ram,
            vram=vram,
            eta=progress.eta_relative if progress else None,
        )
        return Reply(content=content, components=[chat_mod.BUTTONS[chat_mod.INTERRUPT]])

    async def _reply_error(self, job: Job, error: Exception) -> None:
        try:
            await self.chat.error(job.interaction, error, token=self.token)
        except Exception as e:
            log.error("Could not deliver error reply to %s: %s", job.handle, e)

    async def _revert(self, job: Job, original: BackendConfig) -> None:
        try:
            await self.reconciler.revert(original)
        except Exception as e:
            log.warning("Error reverting models for %s: %s", job.handle, e)
            try:
                await self.chat.error_followup(job.interaction, f"Error reverting models: {e}", token=self.token)
            except Exception as reply_error:
                log.error("Could not deliver revert error to %s: %s", job.handle, reply_error)

    # ------------------------------------------------------------------
    # generation
    # ------------------------------------------------------------------
    async def _generate(self, job: Job, request: TextToImageRequest, switch: SwitchResult, ctx) -> bool:
        interaction = job.interaction
        models = switch.config

        if request.prompt.endswith(DEBUG_SUFFIX):
            request.prompt = request.prompt[: -len(DEBUG_SUFFIX)].rstrip()
            log.info("{DEBUG} TextToImageRequest: %s", json.dumps(request.payload()))

        message_id = await self.chat.edit_reply(interaction, self._progress_reply(job, request, models))
        pending = GenerationRecord(
            interaction_id=interaction.id,
            message_id=message_id,
            member_id=interaction.user_id,
            sort_order=0,
            processed=True,
            checkpoint=models.sd_model_checkpoint,
            vae=models.sd_vae,
            hypernetwork=models.sd_hypernetwork,
            request=request,
        )
        await self.records.create(pending)
        ctx.milestone("job_dispatched", message_id=message_id)

        done = asyncio.Event()
        poller = ProgressPoller(
            self.backend,
            self.chat,
            job,
            render=lambda progress, ram, vram: self._progress_reply(job, request, models, progress, ram, vram),
            tick_interval=self.config.progress_tick_s,
            timeout=self.config.progress_timeout_s,
            token=self.token,
        )
        loop = asyncio.get_running_loop()
        poll_task = loop.create_task(poller.run(done))
        gen_task = loop.create_task(self._dispatch(job, request))

        try:
            await asyncio.wait({gen_task, poll_task}, return_when=asyncio.FIRST_COMPLETED)
            if not gen_task.done() and poll_task.result() is PollOutcome.TIMED_OUT:
                raise GenerationTimeout(self.config.progress_timeout_s)
            try:
                response = await gen_task
            finally:
                done.set()
            outcome = await poll_task
        finally:
            if not gen_task.done():
                gen_task.cancel()
            if not poll_task.done():
                done.set()
                poll_task.cancel()

        interrupted = outcome is PollOutcome.INTERRUPTED
        ctx.milestone("generation_returned", outcome=outcome.value, images=len(response.images))
        await self._finalize(job, request, response, models, message_id, interrupted)
        ctx.milestone("job_finalized", images=len(response.images), interrupted=interrupted)
        return True

    async def _dispatch(self, job: Job, request: TextToImageRequest) -> TextToImageResponse:
        if job.kind in (JobKind.NEW_IMAGE, JobKind.REROLL, JobKind.VARIATION):
            return await self.backend.text_to_image(request)

        if job.kind is JobKind.RAW:
            raw = job.raw
            if raw is not None and raw.unsafe:
                return await self.backend.text_to_image_raw(json.dumps(raw.blob).encode("utf-8"))
            blob = raw.blob if raw is not None else {}
            return await self.backend.text_to_image_raw({**request.payload(), **blob})

        if job.kind is JobKind.IMG2IMG:
            img2img = ImageToImageRequest(
                **request.model_dump(),
                init_images=[self._source_image(job)],
                image_cfg_scale=request.cfg_scale,
            )
            return await self.backend.image_to_image(img2img)

        if job.kind is JobKind.UPSCALE:
            upscaled = await self.backend.upscale_image(
                UpscaleRequest(upscaling_resize=job.upscale_factor, text_to_image_request=request)
            )
            return TextToImageResponse(images=[upscaled.image] if upscaled.image else [])

        raise ValidationError(f"unknown job kind: {job.kind}")

    async def _finalize(
        self,
        job: Job,
        request: TextToImageRequest,
        response: TextToImageResponse,
        models: BackendConfig,
        message_id: str,
        interrupted: bool,
    ) -> None:
        images = decode_images(response.images)
        if not images:
            raise BackendError(200, "no images returned")

        if job.kind is not JobKind.UPSCALE:
            await self._record_seeds(job, request, response, models, message_id, interrupted)

        total = total_image_count(request)
        shown = images[:total] if job.kind is not JobKind.UPSCALE else images[:1]
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        files = [
            ReplyFile(filename=f"imagine_{stamp}_{index}.png", content=data)
            for index, data in enumerate(shown, start=1)
        ]
        thumbnails = []
        for attachment in job.attachments:
            if not (attachment.image and attachment.content_type.startswith("image")):
                log.info("Attachment is not an image: %s", attachment.filename)
                continue
            try:
                content = base64.b64decode(attachment.image)
            except (binascii.Error, ValueError) as e:
                log.warning("Error decoding attachment %s: %s", attachment.filename, e)
                continue
            files.append(ReplyFile(filename=attachment.filename, content=content, content_type=attachment.content_type))
            thumbnails.append(attachment.filename)
        # extra images beyond the batch (e.g. detection maps) become thumbnails
        for index, data in enumerate(images[len(shown):], start=len(shown) + 1):
            name = f"imagine_{stamp}_extra_{index}.png"
            files.append(ReplyFile(filename=name, content=data))
            thumbnails.append(name)

        fields = []
        if interrupted:
            fields.append(EmbedField(name="Interrupted", value="Generation was interrupted before it finished"))
        embed = Embed(
            description=imagine_message_content(request, job.interaction.user_id, progress=1.0, models=models),
            fields=fields,
            image=files[0].filename,
            thumbnails=thumbnails,
        )

        if job.kind is JobKind.UPSCALE:
            components = [chat_mod.BUTTONS[chat_mod.DELETE_GENERATION]]
        else:
            disable_variations = job.kind is JobKind.IMG2IMG or bool(job.raw and job.raw.debug)
            components = chat_mod.generation_buttons(len(shown), disable_variations)

        await self.chat.edit_reply(
            job.interaction,
            Reply(
                content=f"<@{job.interaction.user_id}>",
                embeds=[embed],
                files=files,
                components=components,
            ),
        )

    async def _record_seeds(
        self,
        job: Job,
        request: TextToImageRequest,
        response: TextToImageResponse,
        models: BackendConfig,
        message_id: str,
        interrupted: bool,
    ) -> None:
        info = response.generation_info()
        log.info("Seeds: %s Subseeds: %s", info.all_seeds, info.all_subseeds)
        for index, seed in enumerate(info.all_seeds):
            generated = request.model_copy(deep=True)
            generated.seed = seed
            if index < len(info.all_subseeds):
                generated.subseed = info.all_subseeds[index]
            record = GenerationRecord(
                interaction_id=job.interaction.id,
                message_id=message_id,
                member_id=job.interaction.user_id,
                sort_order=index + 1,
                processed=True,
                interrupted=interrupted,
                checkpoint=info.sd_model_name or models.sd_model_checkpoint,
                vae=info.sd_vae_name or models.sd_vae,
                hypernetwork=models.sd_hypernetwork,
                request=generated,
            )
            try:
                await self.records.create(record)
            except Exception as e:
                log.error("Error creating image generation record: %s", e)
