"""Preset catalog and target-resolution math."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

from errors import InvalidSelection
from probe import VideoInfo

# ── Constants ──────────────────────────────────────────────────────────────────

DEFAULT_MIN_SCALE = 1
DEFAULT_MAX_SCALE = 4

# Scale factors each bundled model has weights for.
MODEL_SCALES = {
    "realesr-animevideov3": (2, 3, 4),
    "realesrgan-x4plus": (4,),
    "realesrgan-x4plus-anime": (4,),
    "realesrnet-x4plus": (4,),
}
DEFAULT_MODEL_SCALES = (2, 3, 4)

MODE_MATCH_SOURCE = "match_source"
MODE_FIXED = "fixed"

ADVISORY_LIMITED_BENEFIT = "limited_benefit"
ADVISORY_UPSCALE_THEN_DOWNSCALE = "upscale_then_downscale"


@dataclass(frozen=True)
class Preset:
    name: str
    extension: str
    video_codec: str
    video_args: tuple[str, ...]
    audio_codec: str
    audio_args: tuple[str, ...]
    resolution: Optional[str] = None


@dataclass(frozen=True)
class TargetSpec:
    width: int
    height: int
    mode: str


@dataclass(frozen=True)
class Advisory:
    kind: str
    message: str


@dataclass(frozen=True)
class ResolutionPlan:
    target: TargetSpec
    scale: int
    prescale_width: int
    prescale_height: int
    advisories: list[Advisory] = field(default_factory=list)

    @property
    def needs_normalization(self) -> bool:
        return (self.prescale_width, self.prescale_height) != (
            self.target.width,
            self.target.height,
        )


PRESETS: dict[str, Preset] = {
    preset.name: preset
    for preset in (
        Preset(
            name="web_720p",
            extension="mp4",
            video_codec="libx264",
            video_args=("-preset", "medium", "-crf", "20", "-pix_fmt", "yuv420p"),
            audio_codec="aac",
            audio_args=("-b:a", "160k"),
            resolution="1280:720",
        ),
        Preset(
            name="youtube_1080p",
            extension="mp4",
            video_codec="libx264",
            video_args=("-preset", "slow", "-crf", "18", "-pix_fmt", "yuv420p"),
            audio_codec="aac",
            audio_args=("-b:a", "192k"),
            resolution="1920:1080",
        ),
        Preset(
            name="youtube_4k",
            extension="mp4",
            video_codec="libx264",
            video_args=("-preset", "slow", "-crf", "18", "-pix_fmt", "yuv420p"),
            audio_codec="aac",
            audio_args=("-b:a", "256k"),
            resolution="3840:2160",
        ),
        Preset(
            name="hevc_4k",
            extension="mkv",
            video_codec="libx265",
            video_args=("-preset", "slow", "-crf", "20", "-pix_fmt", "yuv420p10le"),
            audio_codec="aac",
            audio_args=("-b:a", "256k"),
            resolution="3840:2160",
        ),
        Preset(
            name="archive_ffv1",
            extension="mkv",
            video_codec="ffv1",
            video_args=("-level", "3", "-g", "1"),
            audio_codec="flac",
            audio_args=(),
            resolution=None,
        ),
        Preset(
            name="prores_hq",
            extension="mov",
            video_codec="prores_ks",
            video_args=("-profile:v", "3", "-pix_fmt", "yuv422p10le"),
            audio_codec="pcm_s16le",
            audio_args=(),
            resolution=None,
        ),
    )
}

DEFAULT_PRESET = "youtube_1080p"


# ── Functions ──────────────────────────────────────────────────────────────────


def get_preset(name: str) -> Preset:
    preset = PRESETS.get(name)
    if preset is None:
        raise InvalidSelection(
            f"Unknown preset '{name}'. Available: {', '.join(sorted(PRESETS))}"
        )
    return preset


def parse_resolution(value: str) -> tuple[int, int]:
    """Parse "W:H" (or "WxH") into a positive (width, height) pair."""
    separator = ":" if ":" in value else "x"
    parts = value.lower().split(separator)
    if len(parts) != 2:
        raise ValueError(f"Invalid resolution: {value!r}")
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise ValueError(f"Invalid resolution: {value!r}") from exc
    if width <= 0 or height <= 0:
        raise ValueError(f"Resolution must be positive: {value!r}")
    return width, height


def resolve_target(preset: Preset, info: VideoInfo) -> TargetSpec:
    if preset.resolution is None:
        return TargetSpec(width=info.width, height=info.height, mode=MODE_MATCH_SOURCE)
    width, height = parse_resolution(preset.resolution)
    return TargetSpec(width=width, height=height, mode=MODE_FIXED)


def compute_scale_factor(
    source_width: int,
    source_height: int,
    target_width: int,
    target_height: int,
    *,
    min_scale: int = DEFAULT_MIN_SCALE,
    max_scale: int = DEFAULT_MAX_SCALE,
) -> int:
    """Smallest integer factor that makes the upscaled frame cover the target.

    The result is clamped to [min_scale, max_scale]; when the upper clamp
    applies, the upscaled frame can be smaller than the target and
    normalization has to enlarge it.
    """
    if source_width <= 0 or source_height <= 0:
        raise ValueError("Source dimensions must be positive.")
    ratio = max(target_width / source_width, target_height / source_height)
    factor = math.ceil(ratio)
    return max(min_scale, min(max_scale, factor))


def supported_scales(model: str) -> tuple[int, ...]:
    return MODEL_SCALES.get(model, DEFAULT_MODEL_SCALES)


def allowed_scales(model: str, min_scale: int, max_scale: int) -> tuple[int, ...]:
    return tuple(s for s in supported_scales(model) if min_scale <= s <= max_scale)


def fit_scale_to_model(
    scale: int,
    model: str,
    *,
    min_scale: int = DEFAULT_MIN_SCALE,
    max_scale: int = DEFAULT_MAX_SCALE,
) -> int:
    """Smallest factor the model supports that is >= scale, else its largest.

    A factor raised this way overshoots the target and normalization scales
    the frames back down.
    """
    candidates = allowed_scales(model, min_scale, max_scale)
    if not candidates:
        raise InvalidSelection(
            f"Model '{model}' supports scales {supported_scales(model)}, none within "
            f"[{min_scale}, {max_scale}]."
        )
    for candidate in sorted(candidates):
        if candidate >= scale:
            return candidate
    return max(candidates)


def detect_advisories(info: VideoInfo, target: TargetSpec, scale: int) -> list[Advisory]:
    """Flag preset/source pairs where upscaling buys little or is thrown away."""
    if (info.width, info.height) == (target.width, target.height):
        return [
            Advisory(
                kind=ADVISORY_LIMITED_BENEFIT,
                message=(
                    f"Source is already {info.width}x{info.height}; upscaling to the "
                    "same resolution has limited benefit."
                ),
            )
        ]

    prescale_width = info.width * scale
    prescale_height = info.height * scale
    covers_target = prescale_width >= target.width and prescale_height >= target.height
    shrinks_source = target.width <= info.width or target.height <= info.height
    if covers_target and shrinks_source:
        return [
            Advisory(
                kind=ADVISORY_UPSCALE_THEN_DOWNSCALE,
                message=(
                    f"Frames will be upscaled to {prescale_width}x{prescale_height} and then "
                    f"reduced to {target.width}x{target.height}; most upscale work is discarded."
                ),
            )
        ]
    return []


def plan_resolution(
    preset: Preset,
    info: VideoInfo,
    *,
    min_scale: int = DEFAULT_MIN_SCALE,
    max_scale: int = DEFAULT_MAX_SCALE,
    model: Optional[str] = None,
) -> ResolutionPlan:
    target = resolve_target(preset, info)
    scale = compute_scale_factor(
        info.width,
        info.height,
        target.width,
        target.height,
        min_scale=min_scale,
        max_scale=max_scale,
    )
    if model is not None:
        scale = fit_scale_to_model(scale, model, min_scale=min_scale, max_scale=max_scale)
    return ResolutionPlan(
        target=target,
        scale=scale,
        prescale_width=info.width * scale,
        prescale_height=info.height * scale,
        advisories=detect_advisories(info, target, scale),
    )
