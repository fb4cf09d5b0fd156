from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import datetime

from mediajobs.models import JobType


GenderType = Literal["male", "female", "non-binary"]


def _check_url(value: str) -> str:
    if not value.startswith(("http://", "https://", "data:")):
        raise ValueError("must be an http(s) or data: URL")
    return value


# ============================================================
# JOB INPUT PAYLOADS
# ============================================================

class MediaTransformInput(BaseModel):
    """Swap the face in a video with the face from an image."""

    model_config = ConfigDict(extra="forbid")

    video_url: str
    face_image_url: str
    resolution: Literal["480p", "580p", "720p"] = "720p"
    duration_seconds: float = Field(default=5.0, gt=0, le=120)
    prompt: Optional[str] = None

    @field_validator("video_url", "face_image_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _check_url(v)


class FrameSwapInput(BaseModel):
    """Swap a face into every frame of an already extracted frame sequence."""

    model_config = ConfigDict(extra="forbid")

    frame_urls: List[str] = Field(min_length=1, max_length=2000)
    face_image_url: str
    gender: GenderType = "female"
    fps: int = Field(default=16, ge=1, le=60)

    @field_validator("face_image_url")
    @classmethod
    def validate_face_url(cls, v: str) -> str:
        return _check_url(v)

    @field_validator("frame_urls")
    @classmethod
    def validate_frame_urls(cls, v: List[str]) -> List[str]:
        return [_check_url(url) for url in v]


class IdentityGenerationInput(BaseModel):
    """Analyze reference photos and generate a character identity sheet."""

    model_config = ConfigDict(extra="forbid")

    image_urls: List[str] = Field(min_length=1, max_length=50)
    character_name: str = Field(min_length=1, max_length=100)
    prompt: Optional[str] = None

    @field_validator("image_urls")
    @classmethod
    def validate_image_urls(cls, v: List[str]) -> List[str]:
        return [_check_url(url) for url in v]


class TrainingInput(BaseModel):
    """Train a LoRA from a zip of reference images."""

    model_config = ConfigDict(extra="forbid")

    images_zip_url: str
    trigger_word: str = Field(min_length=1, max_length=50)
    steps: int = Field(default=1000, ge=100, le=10000)
    is_style: bool = False

    @field_validator("images_zip_url")
    @classmethod
    def validate_zip_url(cls, v: str) -> str:
        return _check_url(v)


AspectRatio = Literal["1:1", "16:9", "9:16", "4:5", "3:4"]


class ImageGenerationInput(BaseModel):
    """
    Generate still images of a character.

    Modes:
        text-to-image: prompt through the character's LoRA
        character-diagram-swap: identity-preserving generation from a reference image
        face-swap: render a reference face from the LoRA, then generate with that identity
    """

    model_config = ConfigDict(extra="forbid")

    mode: Literal["text-to-image", "face-swap", "character-diagram-swap"] = "text-to-image"
    prompt: Optional[str] = Field(default=None, max_length=2000)
    lora_weights_url: Optional[str] = None
    lora_trigger_word: Optional[str] = Field(default=None, max_length=50)
    lora_strength: float = Field(default=0.8, ge=0, le=2)
    reference_image_url: Optional[str] = None
    aspect_ratio: AspectRatio = "1:1"
    num_images: int = Field(default=1, ge=1, le=4)

    @field_validator("lora_weights_url", "reference_image_url")
    @classmethod
    def validate_optional_url(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v) if v is not None else v

    @model_validator(mode="after")
    def check_mode_inputs(self) -> "ImageGenerationInput":
        has_lora = bool(self.lora_weights_url and self.lora_trigger_word)
        if self.mode == "character-diagram-swap" and not self.reference_image_url:
            raise ValueError("character-diagram-swap requires reference_image_url")
        if self.mode == "face-swap" and not has_lora:
            raise ValueError("face-swap requires lora_weights_url and lora_trigger_word")
        if self.mode == "text-to-image":
            if not has_lora:
                raise ValueError("text-to-image requires lora_weights_url and lora_trigger_word")
            if not self.prompt:
                raise ValueError("text-to-image requires a prompt")
        return self


class VariantInput(BaseModel):
    """Re-cut a video locally with a new audio track and/or a hook caption."""

    model_config = ConfigDict(extra="forbid")

    video_url: str
    audio_url: Optional[str] = None
    hook_text: Optional[str] = Field(default=None, max_length=200)
    hook_duration_seconds: float = Field(default=3.0, ge=0, le=60)
    hook_position: Literal["top", "center", "bottom"] = "bottom"
    batch_id: Optional[str] = Field(default=None, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    variant_index: int = Field(default=0, ge=0)

    @field_validator("video_url")
    @classmethod
    def validate_video_url(cls, v: str) -> str:
        return _check_url(v)

    @field_validator("audio_url")
    @classmethod
    def validate_audio_url(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v) if v is not None else v


JOB_INPUT_MODELS = {
    JobType.MEDIA_TRANSFORM: MediaTransformInput,
    JobType.FRAME_SWAP: FrameSwapInput,
    JobType.IDENTITY_GENERATION: IdentityGenerationInput,
    JobType.TRAINING: TrainingInput,
    JobType.IMAGE_GENERATION: ImageGenerationInput,
    JobType.VARIANT: VariantInput,
}


def validate_job_input(job_type: JobType, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a job's input payload; raises pydantic.ValidationError."""
    model = JOB_INPUT_MODELS[JobType(job_type)]
    return model.model_validate(payload).model_dump()


# ============================================================
# HTTP SCHEMAS
# ============================================================

class JobCreate(BaseModel):
    """Schema for creating a new job."""

    type: JobType
    reference_id: Optional[str] = None
    input_payload: Dict[str, Any]


class ProgressLogEntry(BaseModel):
    ts: str
    message: str


class JobResponse(BaseModel):
    """Schema for job response."""

    id: str
    type: str
    reference_id: Optional[str] = None
    status: str
    progress: int
    input_payload: Dict[str, Any]
    output_payload: Optional[Dict[str, Any]] = None
    external_request_id: Optional[str] = None
    external_status: Optional[str] = None
    error_message: Optional[str] = None
    cost_cents: int
    progress_log: List[ProgressLogEntry] = []
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "JobResponse":
        return cls.model_validate(job.to_dict())


class HealthResponse(BaseModel):
    """Schema for health check response."""

    status: str
    version: str
    queue_depths: Dict[str, int] = {}


class JobListResponse(BaseModel):
    """Schema for a page of jobs."""

    jobs: List[JobResponse]
    count: int
