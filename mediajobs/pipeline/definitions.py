"""Pipelines for each job type.

media_transform      analyze (optional) -> swap chain -> store
                     swap chain: wan_replace -> kling_motion -> passthrough
frame_swap           prepare -> swap_frames (batch, original frame on failure) -> store
identity_generation  analyze_images (batch) -> generate chain (hard required) -> store
                     generate chain: gemini_image -> fal_image -> local_image
training             train (polling) -> store
image_generation     reference -> generate chain (hard required) -> upload (failures keep engine URL)
                     generate chain: flux_pulid (with a reference) -> flux_lora (with a LoRA)
variant              download -> assemble (ffmpeg) -> store
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence
import orjson
import structlog

from mediajobs.config import settings
from mediajobs.models import JobType
from mediajobs.pipeline.context import PipelineContext, StageResult
from mediajobs.pipeline.stages import (
    BatchStage,
    EngineCallStage,
    FallbackChainStage,
    LocalStage,
    Stage,
    Strategy,
    describe_error,
    require_url,
)
from mediajobs.services import video_assembly
from mediajobs.services.errors import FatalEngineError

logger = structlog.get_logger()

VISION_MODEL = "google/gemini-flash-1.5"

FACE_ANALYSIS_PROMPT = (
    "Describe the person's face in this image for identity matching: "
    "apparent age, face shape, skin tone, eye color and shape, hair color and style, "
    "and any distinctive features. Answer in one paragraph."
)

IDENTITY_ANALYSIS_PROMPT = (
    "Describe this person's identifying physical traits for a character reference sheet: "
    "face shape, eyes, nose, lips, skin tone, hair, build and distinctive marks. "
    "Be concise and factual."
)

STORE_TIMEOUT_SECONDS = 10 * 60


@dataclass(frozen=True)
class PipelineDefinition:
    """Ordered stages plus the function that shapes the job's output payload."""

    job_type: JobType
    stages: Sequence[Stage]
    build_output: Callable[[PipelineContext], Mapping[str, Any]]


def _parse_analysis(ctx: PipelineContext, raw: Dict[str, Any], item: Any = None) -> str:
    text = raw.get("output")
    if not isinstance(text, str) or not text.strip():
        raise FatalEngineError("Vision analysis returned no text")
    return text.strip()


def _video_url(ctx: PipelineContext, raw: Dict[str, Any]) -> Dict[str, str]:
    return {"video_url": require_url(raw, "video", "url")}


def _image_url(ctx: PipelineContext, raw: Dict[str, Any]) -> Dict[str, str]:
    return {"image_url": require_url(raw, "images", "url")}


def _local_image(ctx: PipelineContext, raw: Dict[str, Any]) -> Dict[str, str]:
    images = raw.get("images") or []
    if not images or not isinstance(images[0], str):
        raise FatalEngineError("Local image engine returned no images")
    return {"image_url": f"data:image/png;base64,{images[0]}"}


async def _copy_to_storage(ctx: PipelineContext, runtime, source_url: str, key: str, content_type: str) -> str:
    """Download a result into scratch, then upload it to the output bucket."""
    data = await runtime.storage.download(source_url)
    staged = ctx.scratch_dir / key.replace("/", "_")
    staged.write_bytes(data)
    runtime.report(0.5)
    url = await runtime.storage.upload(settings.output_bucket, key, staged.read_bytes(), content_type)
    runtime.log(f"Stored output ({len(data) // 1024} KB)")
    return url


# ============================================================
# MEDIA TRANSFORM (video face swap)
# ============================================================

def _wan_usage(ctx: PipelineContext, output: Any) -> List[dict]:
    return [{
        "engine": "wan_replace",
        "resolution": ctx.input["resolution"],
        "duration_seconds": ctx.input["duration_seconds"],
    }]


async def _store_video(ctx: PipelineContext, runtime) -> Dict[str, str]:
    swapped = ctx.artifact("swap")
    url = await _copy_to_storage(
        ctx, runtime, swapped["video_url"], f"media-transform/{ctx.job_id}.mp4", "video/mp4"
    )
    return {"video_url": url}


def _media_transform_output(ctx: PipelineContext) -> Dict[str, Any]:
    return {
        "video_url": ctx.artifact("store")["video_url"],
        "source_video_url": ctx.input["video_url"],
        "face_analysis": ctx.artifact("analyze"),
    }


def media_transform_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        job_type=JobType.MEDIA_TRANSFORM,
        stages=[
            EngineCallStage(
                "analyze",
                engine="vision_analysis",
                build_request=lambda ctx: {
                    "model": VISION_MODEL,
                    "prompt": FACE_ANALYSIS_PROMPT,
                    "image_url": ctx.input["face_image_url"],
                },
                parse_result=_parse_analysis,
                lo_pct=0,
                hi_pct=10,
                timeout_seconds=120,
                soft=True,
            ),
            FallbackChainStage(
                "swap",
                strategies=[
                    Strategy(
                        "wan_replace",
                        engine="wan_replace",
                        build_request=lambda ctx: {
                            "video_url": ctx.input["video_url"],
                            "image_url": ctx.input["face_image_url"],
                            "resolution": ctx.input["resolution"],
                            "num_inference_steps": 20,
                            "video_quality": "high",
                            "video_write_mode": "balanced",
                            "use_turbo": True,
                            "enable_safety_checker": False,
                        },
                        parse_result=_video_url,
                        usage=_wan_usage,
                    ),
                    Strategy(
                        "kling_motion",
                        engine="kling_motion",
                        build_request=lambda ctx: {
                            "image_url": ctx.input["face_image_url"],
                            "video_url": ctx.input["video_url"],
                            "character_orientation": "video",
                            "keep_original_sound": False,
                            **({"prompt": ctx.input["prompt"]} if ctx.input.get("prompt") else {}),
                        },
                        parse_result=_video_url,
                    ),
                    Strategy(
                        "passthrough",
                        engine="passthrough",
                        build_request=lambda ctx: {"video_url": ctx.input["video_url"]},
                        parse_result=lambda ctx, raw: {"video_url": raw["video_url"]},
                    ),
                ],
                lo_pct=10,
                hi_pct=85,
                timeout_seconds=settings.engine_call_timeout_seconds,
            ),
            LocalStage("store", _store_video, lo_pct=85, hi_pct=100, timeout_seconds=STORE_TIMEOUT_SECONDS),
        ],
        build_output=_media_transform_output,
    )


# ============================================================
# FRAME SWAP (frame-by-frame face swap)
# ============================================================

async def _prepare_frames(ctx: PipelineContext, runtime) -> Dict[str, int]:
    count = len(ctx.input["frame_urls"])
    runtime.log(f"Swapping face into {count} frames")
    return {"frame_count": count}


async def _store_frames(ctx: PipelineContext, runtime) -> Dict[str, str]:
    details = ctx.details.get("swap_frames", {})
    manifest = {
        "job_id": ctx.job_id,
        "fps": ctx.input["fps"],
        "frames": ctx.artifact("swap_frames"),
        "fallback_indices": details.get("fallback_indices", []),
    }
    url = await runtime.storage.upload(
        settings.output_bucket,
        f"frame-swap/{ctx.job_id}/manifest.json",
        orjson.dumps(manifest),
        "application/json",
    )
    return {"manifest_url": url}


def _frame_swap_output(ctx: PipelineContext) -> Dict[str, Any]:
    details = ctx.details.get("swap_frames", {})
    return {
        "manifest_url": ctx.artifact("store")["manifest_url"],
        "frame_urls": ctx.artifact("swap_frames"),
        "frames_swapped": details.get("succeeded", 0),
        "frames_total": details.get("total", 0),
    }


def frame_swap_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        job_type=JobType.FRAME_SWAP,
        stages=[
            LocalStage("prepare", _prepare_frames, lo_pct=0, hi_pct=15),
            BatchStage(
                "swap_frames",
                engine="face_swap",
                items=lambda ctx: ctx.input["frame_urls"],
                build_request=lambda ctx, frame_url: {
                    "face_image_0": {"url": ctx.input["face_image_url"]},
                    "gender_0": ctx.input["gender"],
                    "target_image": {"url": frame_url},
                    "workflow_type": "target_hair",
                    "upscale": False,
                    "detailer": False,
                },
                parse_result=lambda ctx, raw, frame_url: require_url(raw, "image", "url"),
                fallback=lambda ctx, frame_url: frame_url,
                lo_pct=15,
                hi_pct=85,
                timeout_seconds=5 * 60,
                label="Swapping frames",
            ),
            LocalStage("store", _store_frames, lo_pct=85, hi_pct=100, timeout_seconds=STORE_TIMEOUT_SECONDS),
        ],
        build_output=_frame_swap_output,
    )


# ============================================================
# IDENTITY GENERATION (character diagram)
# ============================================================

def _identity_prompt(ctx: PipelineContext) -> str:
    name = ctx.input["character_name"]
    prompt = ctx.input.get("prompt") or (
        f"Character reference sheet of {name}: front view, three-quarter view and profile, "
        "full body and close-up portrait, neutral light grey background, consistent identity"
    )
    analyses = [a for a in (ctx.artifact("analyze_images") or []) if a]
    if analyses:
        prompt = f"{prompt}. Identity details: {' '.join(analyses)[:1500]}"
    return prompt


async def _store_identity(ctx: PipelineContext, runtime) -> Dict[str, str]:
    generated = ctx.artifact("generate")
    url = await _copy_to_storage(
        ctx, runtime, generated["image_url"], f"identity/{ctx.job_id}.png", "image/png"
    )
    return {"image_url": url}


def _identity_output(ctx: PipelineContext) -> Dict[str, Any]:
    return {
        "image_url": ctx.artifact("store")["image_url"],
        "character_name": ctx.input["character_name"],
        "analyses": ctx.artifact("analyze_images"),
    }


def identity_generation_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        job_type=JobType.IDENTITY_GENERATION,
        stages=[
            BatchStage(
                "analyze_images",
                engine="vision_analysis",
                items=lambda ctx: ctx.input["image_urls"],
                build_request=lambda ctx, image_url: {
                    "model": VISION_MODEL,
                    "prompt": IDENTITY_ANALYSIS_PROMPT,
                    "image_url": image_url,
                },
                parse_result=_parse_analysis,
                lo_pct=0,
                hi_pct=30,
                timeout_seconds=120,
                label="Analyzing images",
            ),
            FallbackChainStage(
                "generate",
                strategies=[
                    Strategy(
                        "gemini_image",
                        engine="gemini_image",
                        build_request=lambda ctx: {
                            "prompt": _identity_prompt(ctx),
                            "image_urls": list(ctx.input["image_urls"])[:4],
                            "num_images": 1,
                            "output_format": "png",
                        },
                        parse_result=_image_url,
                    ),
                    Strategy(
                        "fal_image",
                        engine="fal_image",
                        build_request=lambda ctx: {
                            "prompt": _identity_prompt(ctx),
                            "image_url": ctx.input["image_urls"][0],
                        },
                        parse_result=_image_url,
                    ),
                    Strategy(
                        "local_image",
                        engine="local_image",
                        build_request=lambda ctx: {
                            "prompt": _identity_prompt(ctx),
                            "steps": 30,
                            "width": 1024,
                            "height": 1024,
                        },
                        parse_result=_local_image,
                    ),
                ],
                lo_pct=30,
                hi_pct=85,
                timeout_seconds=10 * 60,
                hard_required=True,
            ),
            LocalStage("store", _store_identity, lo_pct=85, hi_pct=100, timeout_seconds=STORE_TIMEOUT_SECONDS),
        ],
        build_output=_identity_output,
    )


# ============================================================
# TRAINING (LoRA)
# ============================================================

def _parse_training(ctx: PipelineContext, raw: Dict[str, Any]) -> Dict[str, Any]:
    config_file = raw.get("config_file") or {}
    return {
        "lora_url": require_url(raw, "diffusers_lora_file", "url"),
        "config_url": config_file.get("url"),
    }


async def _store_training(ctx: PipelineContext, runtime) -> Dict[str, Any]:
    trained = ctx.artifact("train")
    runtime.log(f"LoRA ready for trigger word '{ctx.input['trigger_word']}'")
    return {**trained, "trigger_word": ctx.input["trigger_word"]}


def training_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        job_type=JobType.TRAINING,
        stages=[
            EngineCallStage(
                "train",
                engine="lora_training",
                build_request=lambda ctx: {
                    "images_data_url": ctx.input["images_zip_url"],
                    "trigger_word": ctx.input["trigger_word"],
                    "steps": ctx.input["steps"],
                    "is_style": ctx.input["is_style"],
                    "create_masks": not ctx.input["is_style"],
                },
                parse_result=_parse_training,
                lo_pct=0,
                hi_pct=95,
                timeout_seconds=settings.training_timeout_seconds,
            ),
            LocalStage("store", _store_training, lo_pct=95, hi_pct=100),
        ],
        build_output=lambda ctx: dict(ctx.artifact("store")),
    )


# ============================================================
# IMAGE GENERATION (LoRA / identity-preserving)
# ============================================================

PULID_IMAGE_SIZE = {
    "1:1": "square_hd",
    "16:9": "landscape_16_9",
    "9:16": "portrait_16_9",
    "4:5": "portrait_4_3",
    "3:4": "portrait_4_3",
}

LORA_IMAGE_SIZE = {
    "1:1": {"width": 1024, "height": 1024},
    "16:9": {"width": 1344, "height": 768},
    "9:16": {"width": 768, "height": 1344},
    "4:5": {"width": 896, "height": 1120},
    "3:4": {"width": 896, "height": 1152},
}

DEFAULT_PORTRAIT_PROMPT = "portrait photo, high quality, photorealistic, natural lighting"

REFERENCE_FACE_PROMPT = (
    "{trigger} portrait photo, face closeup, looking at camera, "
    "neutral expression, plain background, high quality"
)


def _has_lora(ctx: PipelineContext) -> bool:
    return bool(ctx.input.get("lora_weights_url") and ctx.input.get("lora_trigger_word"))


def _loras(ctx: PipelineContext) -> List[dict]:
    return [{"path": ctx.input["lora_weights_url"], "scale": ctx.input["lora_strength"]}]


def _lora_prompt(ctx: PipelineContext) -> str:
    trigger = ctx.input.get("lora_trigger_word") or ""
    prompt = ctx.input.get("prompt") or DEFAULT_PORTRAIT_PROMPT
    return f"{trigger} {prompt}".strip()


async def _resolve_reference(ctx: PipelineContext, runtime):
    """Identity reference for PuLID: the diagram, a LoRA-rendered face, or none."""
    mode = ctx.input["mode"]
    if mode == "character-diagram-swap":
        runtime.log("Using character diagram as identity reference")
        return ctx.input["reference_image_url"]
    if mode != "face-swap":
        return None

    raw = await runtime.call_engine(
        "flux_lora",
        {
            "prompt": REFERENCE_FACE_PROMPT.format(trigger=ctx.input["lora_trigger_word"]),
            "loras": _loras(ctx),
            "image_size": {"width": 512, "height": 512},
            "num_images": 1,
        },
    )
    url = require_url(raw, "images", "url")
    runtime.log("Reference face generated from LoRA")
    return StageResult(output=url, strategy="flux_lora", usage=({"engine": "flux_lora"},))


def _parse_images(ctx: PipelineContext, raw: Dict[str, Any]) -> List[dict]:
    images = [
        {"url": image["url"], "width": image.get("width"), "height": image.get("height")}
        for image in raw.get("images") or []
        if isinstance(image, dict) and image.get("url")
    ]
    if not images:
        raise FatalEngineError("Image generation completed but no images returned")
    return images


def _per_image_usage(engine: str):
    return lambda ctx, images: [{"engine": engine, "units": len(images)}]


async def _upload_images(ctx: PipelineContext, runtime) -> StageResult:
    """Copy generated images to storage; an image that fails keeps its engine URL."""
    images = ctx.artifact("generate")
    stored: List[dict] = list(images)
    failed: List[int] = []

    async def upload(index: int, image: dict) -> dict:
        data = await runtime.storage.download(image["url"])
        key = f"image-generation/{ctx.job_id}/image_{index}.jpg"
        url = await runtime.storage.upload(settings.output_bucket, key, data, "image/jpeg")
        return {**image, "url": url}

    group_size = settings.batch_group_size
    for start in range(0, len(images), group_size):
        group = list(range(start, min(start + group_size, len(images))))
        outcomes = await asyncio.gather(*(upload(i, images[i]) for i in group), return_exceptions=True)
        for index, outcome in zip(group, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(
                    "Image upload failed, keeping engine URL",
                    job_id=ctx.job_id,
                    index=index,
                    error=describe_error(outcome),
                )
                failed.append(index)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                stored[index] = outcome
        runtime.report((group[-1] + 1) / len(images))

    runtime.log(f"Stored {len(images) - len(failed)}/{len(images)} images")
    return StageResult(
        output=stored,
        degraded=bool(failed),
        details={"upload_failures": failed} if failed else {},
    )


def _image_generation_output(ctx: PipelineContext) -> Dict[str, Any]:
    images = ctx.artifact("upload")
    return {
        "images": images,
        "prompt": _lora_prompt(ctx) if _has_lora(ctx) else (ctx.input.get("prompt") or DEFAULT_PORTRAIT_PROMPT),
        "mode": ctx.input["mode"],
        "aspect_ratio": ctx.input["aspect_ratio"],
        "num_images": len(images),
        "reference_image_url": ctx.artifact("reference"),
    }


def image_generation_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        job_type=JobType.IMAGE_GENERATION,
        stages=[
            LocalStage("reference", _resolve_reference, lo_pct=0, hi_pct=20, timeout_seconds=10 * 60),
            FallbackChainStage(
                "generate",
                strategies=[
                    Strategy(
                        "flux_pulid",
                        engine="flux_pulid",
                        build_request=lambda ctx: {
                            "prompt": ctx.input.get("prompt") or DEFAULT_PORTRAIT_PROMPT,
                            "reference_image_url": ctx.artifact("reference"),
                            "image_size": PULID_IMAGE_SIZE[ctx.input["aspect_ratio"]],
                            "num_images": ctx.input["num_images"],
                            "id_weight": 1.0,
                            "start_step": 0,
                            "num_inference_steps": 20,
                        },
                        parse_result=_parse_images,
                        usage=_per_image_usage("flux_pulid"),
                        applies=lambda ctx: bool(ctx.artifact("reference")),
                    ),
                    Strategy(
                        "flux_lora",
                        engine="flux_lora",
                        build_request=lambda ctx: {
                            "prompt": _lora_prompt(ctx),
                            "loras": _loras(ctx),
                            "image_size": LORA_IMAGE_SIZE[ctx.input["aspect_ratio"]],
                            "num_images": ctx.input["num_images"],
                            "output_format": "jpeg",
                        },
                        parse_result=_parse_images,
                        usage=_per_image_usage("flux_lora"),
                        applies=_has_lora,
                    ),
                ],
                lo_pct=20,
                hi_pct=90,
                timeout_seconds=10 * 60,
                hard_required=True,
            ),
            LocalStage("upload", _upload_images, lo_pct=90, hi_pct=100, timeout_seconds=STORE_TIMEOUT_SECONDS),
        ],
        build_output=_image_generation_output,
    )


# ============================================================
# VARIANT (local re-cut: audio swap and hook caption)
# ============================================================

async def _download_variant_inputs(ctx: PipelineContext, runtime) -> Dict[str, str]:
    video = ctx.scratch_dir / "source.mp4"
    video.write_bytes(await runtime.storage.download(ctx.input["video_url"]))
    paths = {"video_path": str(video)}
    runtime.report(0.5)

    if ctx.input.get("audio_url"):
        audio = ctx.scratch_dir / "audio.mp3"
        audio.write_bytes(await runtime.storage.download(ctx.input["audio_url"]))
        paths["audio_path"] = str(audio)
    return paths


async def _assemble_variant(ctx: PipelineContext, runtime) -> Dict[str, Any]:
    inputs = ctx.artifact("download")
    output = ctx.scratch_dir / "variant.mp4"
    cmd = video_assembly.build_variant_command(
        inputs["video_path"],
        str(output),
        audio_path=inputs.get("audio_path"),
        hook_text=ctx.input.get("hook_text"),
        hook_position=ctx.input["hook_position"],
        hook_duration_seconds=ctx.input["hook_duration_seconds"],
    )
    await video_assembly.run_ffmpeg(cmd)
    if not output.exists() or output.stat().st_size == 0:
        raise FatalEngineError("ffmpeg produced no output", engine="ffmpeg")
    runtime.log(f"Variant assembled ({output.stat().st_size // 1024} KB)")
    return {"output_path": str(output)}


async def _store_variant(ctx: PipelineContext, runtime) -> Dict[str, Any]:
    data = Path(ctx.artifact("assemble")["output_path"]).read_bytes()
    folder = ctx.input.get("batch_id") or ctx.job_id
    key = f"variants/{folder}/variant-{ctx.input['variant_index']}-{ctx.job_id[:8]}.mp4"
    url = await runtime.storage.upload(settings.output_bucket, key, data, "video/mp4")
    return {"video_url": url, "size_bytes": len(data)}


def _variant_output(ctx: PipelineContext) -> Dict[str, Any]:
    stored = ctx.artifact("store")
    return {
        "video_url": stored["video_url"],
        "size_bytes": stored["size_bytes"],
        "source_video_url": ctx.input["video_url"],
        "batch_id": ctx.input.get("batch_id"),
        "variant_index": ctx.input["variant_index"],
    }


def variant_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        job_type=JobType.VARIANT,
        stages=[
            LocalStage("download", _download_variant_inputs, lo_pct=0, hi_pct=30, timeout_seconds=STORE_TIMEOUT_SECONDS),
            LocalStage("assemble", _assemble_variant, lo_pct=30, hi_pct=85, timeout_seconds=settings.variant_timeout_seconds),
            LocalStage("store", _store_variant, lo_pct=85, hi_pct=100, timeout_seconds=STORE_TIMEOUT_SECONDS),
        ],
        build_output=_variant_output,
    )


def default_pipelines() -> Dict[str, PipelineDefinition]:
    """Pipeline definition per job type value."""
    definitions = [
        media_transform_pipeline(),
        frame_swap_pipeline(),
        identity_generation_pipeline(),
        training_pipeline(),
        image_generation_pipeline(),
        variant_pipeline(),
    ]
    return {definition.job_type.value: definition for definition in definitions}
