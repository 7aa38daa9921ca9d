"""Per-file pipeline state machine and the sequential batch loop.

    pending -> extracting -> upscaling -> normalizing -> encoding
            -> validating -> done

Any stage can end in `failed`. Failures are scoped to one file: the job
directory is kept for a later resume and the batch moves on.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from tqdm import tqdm

from cli import RunConfig
from errors import (
    FilesystemError,
    IncompleteUpscale,
    NoFramesExtracted,
    NormalizationMismatch,
    OperatorAbort,
    PipelineError,
    RunAbort,
    ToolFailed,
)
from presets import Preset, ResolutionPlan, TargetSpec, plan_resolution
from probe import VideoInfo, get_image_size, get_video_info
from reconcile import full_upscale, resume_upscale
from toolchain import format_command, progress_write, run_subprocess
from tracing import traced
from validator import require_valid_output, validate_output
from workspace import (
    FRAME_PATTERN,
    JobPaths,
    gpu_tag_for,
    list_frames,
    output_path_for,
    work_root_for,
)

STAGE_PENDING = "pending"
STAGE_EXTRACTING = "extracting"
STAGE_UPSCALING = "upscaling"
STAGE_NORMALIZING = "normalizing"
STAGE_ENCODING = "encoding"
STAGE_VALIDATING = "validating"
STAGE_DONE = "done"
STAGE_FAILED = "failed"

STATUS_DONE = "done"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"
STATUS_PLANNED = "planned"

ConfirmFn = Callable[[str], bool]


@dataclass(frozen=True)
class FileResult:
    source: Path
    status: str
    stage: str
    output: Optional[Path] = None
    error: Optional[str] = None


@dataclass
class BatchReport:
    results: list[FileResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def failed(self) -> list[FileResult]:
        return [result for result in self.results if result.status == STATUS_FAILED]


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


def run_tool(cmd: Sequence[str], *, capture_output: bool = True) -> None:
    """Run one external tool call; a non-zero exit is fatal to the current file."""
    result = run_subprocess(cmd, check=False, capture_output=capture_output)
    if result.returncode == 0:
        return
    detail = f"exit={result.returncode}"
    if capture_output and result.stderr and result.stderr.strip():
        detail = result.stderr.strip().splitlines()[-1]
    raise ToolFailed(f"{Path(str(cmd[0])).name} failed ({detail}): {format_command(cmd)}")


# ── Command builders ───────────────────────────────────────────────────────────


def build_extract_command(ffmpeg_bin: str, input_video: Path, frames_dir: Path) -> list[str]:
    return [
        ffmpeg_bin,
        "-i",
        str(input_video),
        "-fps_mode",
        "passthrough",
        "-start_number",
        "1",
        str(frames_dir / FRAME_PATTERN),
        "-y",
        "-hide_banner",
        "-loglevel",
        "warning",
    ]


def build_realesrgan_command(
    realesrgan_binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    scale_factor: int,
    model_name: str,
    gpu_id: int,
    tile_size: int,
    tta: bool,
    model_path: Optional[Path],
    jobs: Optional[str],
) -> list[str]:
    cmd = [
        str(realesrgan_binary),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        "-n",
        model_name,
        "-s",
        str(scale_factor),
        "-f",
        "png",
        "-g",
        str(gpu_id),
        "-t",
        str(tile_size),
    ]

    if model_path is not None:
        cmd.extend(["-m", str(model_path)])

    if jobs:
        cmd.extend(["-j", jobs])

    if tta:
        cmd.append("-x")

    return cmd


def get_normalize_filter(mode: str, width: int, height: int) -> str:
    """Return the ffmpeg filter that fits a frame to exactly width x height."""
    if mode == "pad":
        return (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease:flags=lanczos,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color=black,setsar=1"
        )
    if mode == "crop":
        return (
            f"scale={width}:{height}:force_original_aspect_ratio=increase:flags=lanczos,"
            f"crop={width}:{height},setsar=1"
        )
    if mode == "stretch":
        return f"scale={width}:{height}:flags=lanczos,setsar=1"
    raise ValueError(f"Unsupported normalize mode: {mode}")


def build_normalize_command(
    ffmpeg_bin: str,
    input_dir: Path,
    output_dir: Path,
    target: TargetSpec,
    mode: str,
) -> list[str]:
    return [
        ffmpeg_bin,
        "-start_number",
        "1",
        "-i",
        str(input_dir / FRAME_PATTERN),
        "-vf",
        get_normalize_filter(mode, target.width, target.height),
        "-start_number",
        "1",
        str(output_dir / FRAME_PATTERN),
        "-y",
        "-hide_banner",
        "-loglevel",
        "warning",
    ]


def build_encode_command(
    ffmpeg_bin: str,
    frames_dir: Path,
    source: Path,
    output_video: Path,
    *,
    preset: Preset,
    framerate: float,
    overwrite: bool,
) -> list[str]:
    cmd = [
        ffmpeg_bin,
        "-framerate",
        str(framerate),
        "-start_number",
        "1",
        "-i",
        str(frames_dir / FRAME_PATTERN),
        "-i",
        str(source),
        "-map",
        "0:v:0",
        # Trailing "?" keeps a source without audio from failing the encode.
        "-map",
        "1:a:0?",
        "-c:v",
        preset.video_codec,
    ]
    cmd.extend(preset.video_args)
    cmd.extend(["-c:a", preset.audio_codec])
    cmd.extend(preset.audio_args)
    cmd.extend(
        [
            "-shortest",
            str(output_video),
            "-y" if overwrite else "-n",
            "-hide_banner",
            "-loglevel",
            "warning",
        ]
    )
    return cmd


# ── Stages ─────────────────────────────────────────────────────────────────────


@traced
def stage_extract(config: RunConfig, job: JobPaths, source: Path) -> int:
    existing = list_frames(job.frames)
    if config.resume and existing:
        progress_write(f"  Reusing {len(existing)} extracted frame(s).")
        return len(existing)

    job.reset_frames()
    run_tool(build_extract_command(config.toolchain.ffmpeg, source, job.frames))
    frame_count = len(list_frames(job.frames))
    if frame_count == 0:
        raise NoFramesExtracted("Frame extraction produced zero output frames.")
    return frame_count


@traced
def stage_upscale(config: RunConfig, job: JobPaths, scale: int, gpu_index: int) -> int:
    if not list_frames(job.frames):
        raise NoFramesExtracted("No extracted frames to upscale.")

    def invoke(input_dir: Path, output_dir: Path) -> None:
        cmd = build_realesrgan_command(
            config.toolchain.realesrgan_binary,
            input_dir,
            output_dir,
            scale_factor=scale,
            model_name=config.model,
            gpu_id=gpu_index,
            tile_size=config.tile_size,
            tta=config.tta,
            model_path=config.toolchain.model_path,
            jobs=config.jobs,
        )
        # Not captured: the upscaler's own progress output stays visible.
        run_tool(cmd, capture_output=False)

    if config.resume and list_frames(job.upscaled):
        resume_upscale(job, invoke)
    else:
        full_upscale(job, invoke)

    frames, upscaled = job.frame_counts()
    if upscaled != frames:
        raise IncompleteUpscale(f"Upscaled {upscaled}/{frames} frame(s).")
    return upscaled


@traced
def stage_normalize(config: RunConfig, job: JobPaths, target: TargetSpec) -> Path:
    """Return the directory holding frames at exactly the target size."""
    ffprobe = config.toolchain.ffprobe
    upscaled = list_frames(job.upscaled)
    size = get_image_size(ffprobe, job.upscaled / upscaled[0])
    if size == (target.width, target.height):
        progress_write(f"  Upscaled frames already {size[0]}x{size[1]}; no normalization needed.")
        return job.upscaled

    progress_write(
        f"  Normalizing {size[0]}x{size[1]} -> {target.width}x{target.height} "
        f"({config.normalize_mode})"
    )
    job.reset_normalized()
    run_tool(
        build_normalize_command(
            config.toolchain.ffmpeg,
            job.upscaled,
            job.normalized,
            target,
            config.normalize_mode,
        )
    )
    normalized = list_frames(job.normalized)
    if len(normalized) != len(upscaled):
        raise NormalizationMismatch(
            f"Normalization produced {len(normalized)}/{len(upscaled)} frame(s)."
        )
    size = get_image_size(ffprobe, job.normalized / normalized[0])
    if size != (target.width, target.height):
        raise NormalizationMismatch(
            f"Normalized frame is {size[0]}x{size[1]}, expected {target.width}x{target.height}."
        )
    return job.normalized


@traced
def stage_encode(
    config: RunConfig,
    frames_dir: Path,
    info: VideoInfo,
    output_video: Path,
    *,
    overwrite: bool,
) -> None:
    output_video.parent.mkdir(parents=True, exist_ok=True)
    run_tool(
        build_encode_command(
            config.toolchain.ffmpeg,
            frames_dir,
            info.path,
            output_video,
            preset=config.preset,
            framerate=info.framerate,
            overwrite=overwrite,
        )
    )


def cleanup_job(job: JobPaths) -> None:
    try:
        job.remove()
    except OSError as exc:
        progress_write(f"Warning: Could not remove job directory {job.root}: {exc}")
        return
    try:
        job.root.parent.rmdir()
    except OSError:
        pass


def confirm_advisories(plan: ResolutionPlan, confirm: ConfirmFn) -> None:
    for advisory in plan.advisories:
        progress_write(f"Warning: {advisory.message}")
        if not confirm(f"{advisory.message} Process anyway?"):
            raise OperatorAbort(f"Declined after advisory: {advisory.kind}")


def print_plan(
    info: VideoInfo,
    plan: ResolutionPlan,
    job: JobPaths,
    output_video: Path,
) -> None:
    frames, upscaled = job.frame_counts()
    progress_write(f"  Source:  {info.width}x{info.height} @ {info.framerate:.3f} fps")
    progress_write(
        f"  Target:  {plan.target.width}x{plan.target.height} ({plan.target.mode}), "
        f"scale {plan.scale}x -> {plan.prescale_width}x{plan.prescale_height}"
    )
    progress_write(f"  Normalize: {'yes' if plan.needs_normalization else 'no'}")
    progress_write(f"  Job:     {job.root} ({upscaled}/{frames} frame(s) upscaled)")
    progress_write(f"  Output:  {output_video}")


# ── Orchestration ──────────────────────────────────────────────────────────────


@traced
def process_file(
    config: RunConfig,
    source: Path,
    *,
    gpu_index: Optional[int] = None,
    advisory_confirm: ConfirmFn = lambda message: True,
) -> FileResult:
    """Drive one source through the state machine; never raises PipelineError."""
    if gpu_index is None:
        gpu_index = config.gpu_index
    gpu_tag = gpu_tag_for(gpu_index)
    job = JobPaths.for_source(work_root_for(config.work_root, gpu_tag), source)
    stage = STAGE_PENDING
    output_video: Optional[Path] = None

    progress_write(f"\n{source.name} [{gpu_tag}]")
    try:
        info = get_video_info(config.toolchain.ffprobe, source)
        plan = plan_resolution(
            config.preset,
            info,
            min_scale=config.min_scale,
            max_scale=config.max_scale,
            model=config.model,
        )
        output_video = output_path_for(config.output_dir, job.name, config.preset, gpu_tag)

        overwrite = config.overwrite
        if output_video.exists():
            existing = validate_output(
                config.toolchain.ffprobe, output_video, expect_audio=info.has_audio
            )
            if existing.valid and not config.overwrite:
                progress_write(f"  Valid output exists, skipping: {output_video}")
                return FileResult(source, STATUS_SKIPPED, STAGE_DONE, output=output_video)
            if not existing.valid:
                progress_write(f"Warning: Existing output invalid ({existing.reason}); rebuilding.")
                overwrite = True

        confirm_advisories(plan, advisory_confirm)

        if config.dry_run:
            print_plan(info, plan, job, output_video)
            return FileResult(source, STATUS_PLANNED, STAGE_PENDING, output=output_video)

        total_start = time.time()
        job.create()

        stage = STAGE_EXTRACTING
        step_start = time.time()
        frame_count = stage_extract(config, job, source)
        progress_write(f"  Frames: {frame_count} ({format_time(time.time() - step_start)})")

        stage = STAGE_UPSCALING
        step_start = time.time()
        upscaled = stage_upscale(config, job, plan.scale, gpu_index)
        elapsed = format_time(time.time() - step_start)
        progress_write(f"  Upscaled: {upscaled} at {plan.scale}x ({elapsed})")

        stage = STAGE_NORMALIZING
        frames_dir = stage_normalize(config, job, plan.target)

        stage = STAGE_ENCODING
        step_start = time.time()
        stage_encode(config, frames_dir, info, output_video, overwrite=overwrite)
        progress_write(f"  Encoded in {format_time(time.time() - step_start)}")

        stage = STAGE_VALIDATING
        require_valid_output(config.toolchain.ffprobe, output_video, expect_audio=info.has_audio)

        stage = STAGE_DONE
        if config.keep_work:
            progress_write(f"  Job directory kept at: {job.root}")
        else:
            cleanup_job(job)
        progress_write(f"  Done in {format_time(time.time() - total_start)}: {output_video}")
        return FileResult(source, STATUS_DONE, STAGE_DONE, output=output_video)
    except RunAbort:
        raise
    except (PipelineError, OSError) as exc:
        if isinstance(exc, PipelineError):
            failure = exc
        else:
            failure = FilesystemError(f"{type(exc).__name__}: {exc}")
        failure.stage = stage
        failure.filename = source.name
        progress_write(f"Failed {failure.describe()}")
        if job.root.exists():
            progress_write(f"  Job directory kept for resume: {job.root}")
        return FileResult(source, STATUS_FAILED, stage, output=output_video, error=str(failure))


@traced
def run_batch(
    config: RunConfig,
    sources: Sequence[Path],
    *,
    gpu_index: Optional[int] = None,
    advisory_confirm: ConfirmFn = lambda message: True,
) -> BatchReport:
    """Process sources one at a time; a failed file never stops the batch."""
    report = BatchReport()
    for source in tqdm(sources, desc="Batch", unit="file"):
        report.results.append(
            process_file(
                config,
                source,
                gpu_index=gpu_index,
                advisory_confirm=advisory_confirm,
            )
        )
    return report
