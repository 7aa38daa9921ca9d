"""Probe adapter: media metadata via ffprobe."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from errors import ProbeError
from toolchain import run_subprocess

DEFAULT_FPS = 30.0
MAX_FPS = 240.0


@dataclass(frozen=True)
class VideoInfo:
    path: Path
    width: int
    height: int
    pixel_format: Optional[str]
    framerate: float
    duration_seconds: float
    bitrate: Optional[int]
    video_codec: Optional[str]
    audio_codec: Optional[str]
    has_audio: bool
    sample_rate: Optional[int]
    channels: Optional[int]
    color_space: Optional[str]
    color_primaries: Optional[str]
    color_transfer: Optional[str]


def parse_framerate(value: Optional[str]) -> float:
    """Parse ffprobe framerate strings like 30000/1001 safely."""
    if not value:
        return DEFAULT_FPS

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                return DEFAULT_FPS
            framerate = float(num) / denominator
        else:
            framerate = float(value)
    except (TypeError, ValueError):
        return DEFAULT_FPS

    if framerate <= 0 or framerate > MAX_FPS:
        return DEFAULT_FPS
    return framerate


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, "", "N/A"):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def run_ffprobe(ffprobe_bin: str, path: Path) -> dict[str, Any]:
    """Run ffprobe and return its decoded JSON payload."""
    if not path.exists():
        raise ProbeError(f"Path does not exist: {path}", stage="probe", filename=path.name)

    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(path),
    ]
    result = run_subprocess(cmd, check=False, capture_output=True)
    if result.returncode != 0:
        stderr = result.stderr.strip() if result.stderr else f"exit={result.returncode}"
        raise ProbeError(f"ffprobe failed: {stderr}", stage="probe", filename=path.name)

    if not result.stdout or not result.stdout.strip():
        raise ProbeError("ffprobe returned no output", stage="probe", filename=path.name)

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ProbeError(
            f"Failed to parse ffprobe output: {exc}", stage="probe", filename=path.name
        ) from exc

    if not isinstance(payload, dict):
        raise ProbeError("Unexpected ffprobe payload", stage="probe", filename=path.name)
    return payload


def _first_stream(payload: dict[str, Any], kind: str) -> Optional[dict[str, Any]]:
    for stream in payload.get("streams", []):
        if stream.get("codec_type") == kind:
            return stream
    return None


def get_video_info(ffprobe_bin: str, input_video: Path) -> VideoInfo:
    """Read metadata with ffprobe and return parsed info."""
    payload = run_ffprobe(ffprobe_bin, input_video)

    video_stream = _first_stream(payload, "video")
    audio_stream = _first_stream(payload, "audio")
    if video_stream is None:
        raise ProbeError(
            "No video stream found in input file.", stage="probe", filename=input_video.name
        )

    width = _optional_int(video_stream.get("width"))
    height = _optional_int(video_stream.get("height"))
    if not width or not height:
        raise ProbeError(
            "Video stream reports no dimensions.", stage="probe", filename=input_video.name
        )

    format_section = payload.get("format", {})
    framerate = parse_framerate(
        video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate", "")
    )
    duration_raw = video_stream.get("duration") or format_section.get("duration") or "0"
    try:
        duration_seconds = max(float(duration_raw), 0.0)
    except (TypeError, ValueError):
        duration_seconds = 0.0

    return VideoInfo(
        path=input_video,
        width=width,
        height=height,
        pixel_format=video_stream.get("pix_fmt"),
        framerate=framerate,
        duration_seconds=duration_seconds,
        bitrate=_optional_int(video_stream.get("bit_rate") or format_section.get("bit_rate")),
        video_codec=video_stream.get("codec_name"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        has_audio=audio_stream is not None,
        sample_rate=_optional_int(audio_stream.get("sample_rate")) if audio_stream else None,
        channels=_optional_int(audio_stream.get("channels")) if audio_stream else None,
        color_space=video_stream.get("color_space"),
        color_primaries=video_stream.get("color_primaries"),
        color_transfer=video_stream.get("color_transfer"),
    )


def get_image_size(ffprobe_bin: str, image_path: Path) -> tuple[int, int]:
    """Return (width, height) of a single still image."""
    payload = run_ffprobe(ffprobe_bin, image_path)
    stream = _first_stream(payload, "video")
    if stream is None:
        raise ProbeError("No image stream found.", stage="probe", filename=image_path.name)
    width = _optional_int(stream.get("width"))
    height = _optional_int(stream.get("height"))
    if not width or not height:
        raise ProbeError("Image reports no dimensions.", stage="probe", filename=image_path.name)
    return width, height


def get_stream_kinds(ffprobe_bin: str, path: Path) -> set[str]:
    payload = run_ffprobe(ffprobe_bin, path)
    return {
        stream.get("codec_type")
        for stream in payload.get("streams", [])
        if stream.get("codec_type")
    }
