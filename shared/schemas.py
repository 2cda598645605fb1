from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ----- Chat boundary -----
class Interaction(BaseModel):
    """Opaque handle for the chat interaction a job replies to."""
    id: str
    user_id: str
    message_id: Optional[str] = None  # prior message, e.g. the one a button was pressed on
    channel_id: Optional[str] = None
    guild_id: Optional[str] = None
    command: Optional[str] = None  # slash command name or button custom id


class Attachment(BaseModel):
    filename: str
    content_type: str = "image/png"
    image: Optional[str] = None  # base64 payload


# ----- Job kinds -----
class JobKind(str, Enum):
    NEW_IMAGE = "imagine"
    REROLL = "reroll"
    VARIATION = "variation"
    IMG2IMG = "img2img"
    UPSCALE = "upscale"
    RAW = "raw"


class JobState(str, Enum):
    QUEUED = "queued"
    CURRENT = "current"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


# ----- Backend requests -----
class TextToImageRequest(BaseModel):
    prompt: str = ""
    negative_prompt: str = ""
    width: int = 512
    height: int = 512
    restore_faces: bool = False
    enable_hr: bool = False
    hr_scale: float = 1.0
    hr_upscaler: str = "R-ESRGAN 2x+"
    hr_second_pass_steps: int = 20
    hr_resize_x: int = 0
    hr_resize_y: int = 0
    denoising_strength: float = 0.7
    batch_size: int = 1
    n_iter: int = 1
    seed: int = -1
    subseed: int = -1
    subseed_strength: float = 0.0
    sampler_name: str = "Euler a"
    cfg_scale: float = 7.0
    steps: int = 20
    alwayson_scripts: Optional[Dict[str, Any]] = None

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ImageToImageRequest(TextToImageRequest):
    init_images: List[str] = Field(default_factory=list)
    image_cfg_scale: Optional[float] = None
    include_init_images: Optional[bool] = None


class UpscaleRequest(BaseModel):
    resize_mode: int = 0
    upscaling_resize: int = 2
    upscaler_1: str = "R-ESRGAN 2x+"
    text_to_image_request: TextToImageRequest


class RawPayload(BaseModel):
    """User-supplied JSON sent to txt2img as-is (unsafe) or merged over defaults."""
    blob: Dict[str, Any] = Field(default_factory=dict)
    unsafe: bool = False
    debug: bool = False


# ----- Backend responses -----
class GenerationInfo(BaseModel):
    all_seeds: List[int] = Field(default_factory=list)
    all_subseeds: List[int] = Field(default_factory=list)
    sd_model_name: Optional[str] = None
    sd_vae_name: Optional[str] = None


class TextToImageResponse(BaseModel):
    images: List[str] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    info: str = ""

    def generation_info(self) -> GenerationInfo:
        if not self.info:
            return GenerationInfo()
        try:
            return GenerationInfo.model_validate(json.loads(self.info))
        except (ValueError, TypeError):
            return GenerationInfo()


class UpscaleResponse(BaseModel):
    image: str = ""


class ProgressResponse(BaseModel):
    progress: float = 0.0
    eta_relative: float = 0.0


class MemoryResponse(BaseModel):
    ram: Dict[str, Any] = Field(default_factory=dict)
    cuda: Dict[str, Any] = Field(default_factory=dict)


class BackendConfig(BaseModel):
    """Live (or desired) model selection on the backend."""
    sd_model_checkpoint: Optional[str] = None
    sd_vae: Optional[str] = None
    sd_hypernetwork: Optional[str] = None

    def patch(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True)

    def is_empty(self) -> bool:
        return not self.patch()


# ----- Persistence -----
class GenerationRecord(BaseModel):
    interaction_id: str
    message_id: str = ""
    member_id: str = ""
    sort_order: int = 0
    processed: bool = False
    interrupted: bool = False
    checkpoint: Optional[str] = None
    vae: Optional[str] = None
    hypernetwork: Optional[str] = None
    request: TextToImageRequest
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DefaultSettings(BaseModel):
    member_id: str
    width: int = 0
    height: int = 0
    batch_count: int = 0
    batch_size: int = 0


# ----- Reply events (WebSocket) -----
class Event(BaseModel):
    interaction_id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
