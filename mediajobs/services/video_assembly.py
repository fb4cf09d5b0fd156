"""Local video assembly with FFmpeg.

A variant is the source video with an optional replacement audio track
and an optional hook caption burned in for its first seconds. FFmpeg is
blocking, so it runs in the default thread pool.

Usage:
    cmd = build_variant_command("in.mp4", "out.mp4", hook_text="Wait for it")
    await run_ffmpeg(cmd)
"""

import asyncio
import subprocess
from typing import List, Optional
import structlog

from mediajobs.config import settings
from mediajobs.services.errors import FatalEngineError

logger = structlog.get_logger()

HOOK_Y_POSITION = {
    "top": "50",
    "center": "(h-text_h)/2",
    "bottom": "h-text_h-50",
}


def escape_drawtext(text: str) -> str:
    """Escape text for use inside a drawtext filter value."""
    return (
        text.replace("\\", "\\\\")
        .replace("'", "'\\''")
        .replace(":", "\\:")
        .replace("%", "\\%")
    )


def build_hook_filter(hook_text: str, position: str = "bottom", duration_seconds: float = 0) -> str:
    """drawtext filter for a centred, outlined hook caption."""
    y = HOOK_Y_POSITION.get(position)
    if y is None:
        raise ValueError(f"Unknown hook position: {position}")

    parts = [
        f"drawtext=text='{escape_drawtext(hook_text)}'",
        "fontsize=48",
        "fontcolor=white",
        "borderw=2",
        "bordercolor=black",
        "x=(w-text_w)/2",
        f"y={y}",
    ]
    if duration_seconds and duration_seconds > 0:
        parts.append(f"enable='between(t,0,{duration_seconds:g})'")
    return ":".join(parts)


def build_variant_command(
    video_path: str,
    output_path: str,
    audio_path: Optional[str] = None,
    hook_text: Optional[str] = None,
    hook_position: str = "bottom",
    hook_duration_seconds: float = 0,
    ffmpeg_path: Optional[str] = None,
) -> List[str]:
    """Build the ffmpeg argument list for one variant."""
    cmd = [ffmpeg_path or settings.ffmpeg_path, "-y", "-i", video_path]
    if audio_path:
        cmd += ["-i", audio_path]

    if hook_text:
        cmd += ["-vf", build_hook_filter(hook_text, hook_position, hook_duration_seconds)]

    if audio_path:
        # Video from the source, audio from the new track, end with the shorter
        cmd += ["-map", "0:v", "-map", "1:a", "-shortest"]

    cmd += [
        "-c:v", "libx264",
        "-preset", "fast",
        "-crf", "23",
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", "128k",
        "-movflags", "+faststart",
        output_path,
    ]
    return cmd


async def run_ffmpeg(cmd: List[str]) -> None:
    """
    Run an ffmpeg command in the thread pool.

    Raises:
        FatalEngineError: ffmpeg is missing or exited non-zero
    """
    logger.debug("Running ffmpeg", cmd=" ".join(cmd)[:300])
    try:
        result = await asyncio.to_thread(subprocess.run, cmd, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise FatalEngineError(f"ffmpeg not found at '{cmd[0]}'", engine="ffmpeg") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip().splitlines()
        tail = stderr[-1] if stderr else f"exit code {result.returncode}"
        logger.error("ffmpeg failed", returncode=result.returncode, error=tail[:300])
        raise FatalEngineError(f"ffmpeg failed: {tail[:300]}", engine="ffmpeg")
