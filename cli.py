"""CLI: argument parsing, runtime validation, run configuration, and prompts."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from errors import ConfigurationError, InvalidSelection
from gpu import (
    DEFAULT_ACTIVE_MEMORY_FLOOR_MB,
    DEFAULT_ACTIVE_UTILIZATION_FLOOR,
    DEFAULT_BUSY_PERCENT,
    DEFAULT_MEMORY_FLOOR_MB,
    BusyThresholds,
)
from presets import (
    DEFAULT_MAX_SCALE,
    DEFAULT_MIN_SCALE,
    DEFAULT_PRESET,
    PRESETS,
    Preset,
    allowed_scales,
    get_preset,
    supported_scales,
)
from toolchain import Toolchain
from workspace import UnfinishedJob

# ── Constants ──────────────────────────────────────────────────────────────────

NORMALIZE_MODES = ("pad", "crop", "stretch")
BUSY_POLICIES = ("abort", "continue")
DEFAULT_MODEL = "realesr-animevideov3"
OTLP_ENDPOINT_ENV = "UPSCALE_BATCH_OTLP_ENDPOINT"

ConfirmFn = Callable[[str], bool]


@dataclass(frozen=True)
class RunConfig:
    toolchain: Toolchain
    input_dir: Path
    output_dir: Path
    work_root: Path
    preset: Preset
    model: str
    tile_size: int
    jobs: Optional[str]
    tta: bool
    gpu_index: int
    resume: bool
    overwrite: bool
    keep_work: bool
    dry_run: bool
    normalize_mode: str
    min_scale: int
    max_scale: int
    thresholds: BusyThresholds
    busy_policy: str
    confirm_advisories: bool
    interactive: bool


# ── Functions ──────────────────────────────────────────────────────────────────


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Batch-upscale a directory of videos with Real-ESRGAN, resumably",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("input_dir", type=str, nargs="?", help="Directory of source videos")
    parser.add_argument(
        "-o",
        "--output-dir",
        type=str,
        default="output",
        help="Directory for finished videos",
    )
    parser.add_argument(
        "--work-root",
        type=str,
        default="work",
        help="Base name for per-GPU work directories (<work-root>_gpuN)",
    )
    parser.add_argument(
        "-p",
        "--preset",
        type=str,
        default=DEFAULT_PRESET,
        choices=sorted(PRESETS),
        help="Output preset (container, codecs, target resolution)",
    )
    parser.add_argument("--list-presets", action="store_true", help="Print presets and exit")
    parser.add_argument("-m", "--model", type=str, default=DEFAULT_MODEL, help="Upscaler model")
    parser.add_argument(
        "--realesrgan-path",
        type=str,
        default=None,
        help="Custom path to realesrgan-ncnn-vulkan binary",
    )
    parser.add_argument(
        "--model-path",
        type=str,
        default=None,
        help="Custom model directory path",
    )
    parser.add_argument("-t", "--tile-size", type=int, default=0, help="Tile size (0 = auto)")
    parser.add_argument(
        "--jobs",
        type=str,
        default=None,
        help="Real-ESRGAN thread tuple (load:proc:save), for example 2:2:2",
    )
    parser.add_argument("--tta", action="store_true", help="Enable test-time augmentation")
    parser.add_argument(
        "-g",
        "--gpu",
        type=int,
        default=None,
        help="GPU device index (default: auto-select)",
    )
    parser.add_argument("--list-gpus", action="store_true", help="Print GPU inventory and exit")
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue jobs from frames already on disk instead of restarting",
    )
    parser.add_argument(
        "--select",
        action="store_true",
        help="Interactively choose unfinished jobs to resume",
    )
    parser.add_argument(
        "--list-unfinished",
        action="store_true",
        help="Print unfinished jobs under every GPU work root and exit",
    )
    parser.add_argument("--overwrite", action="store_true", help="Rebuild valid existing outputs")
    parser.add_argument(
        "--keep-work",
        action="store_true",
        help="Keep job directories after a successful encode",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be done without running any tool",
    )
    parser.add_argument(
        "--normalize",
        dest="normalize_mode",
        type=str,
        choices=NORMALIZE_MODES,
        default="pad",
        help="How upscaled frames are fitted to the exact target size",
    )
    parser.add_argument("--min-scale", type=int, default=DEFAULT_MIN_SCALE, help="Lowest factor")
    parser.add_argument("--max-scale", type=int, default=DEFAULT_MAX_SCALE, help="Highest factor")
    parser.add_argument(
        "--busy-threshold",
        type=float,
        default=DEFAULT_BUSY_PERCENT,
        help="Utilization / memory percent at which a GPU counts as busy",
    )
    parser.add_argument(
        "--active-util-floor",
        type=float,
        default=DEFAULT_ACTIVE_UTILIZATION_FLOOR,
        help="Utilization percent below which a GPU is treated as idle",
    )
    parser.add_argument(
        "--active-memory-floor",
        type=float,
        default=DEFAULT_ACTIVE_MEMORY_FLOOR_MB,
        help="Memory MiB below which a GPU is treated as idle",
    )
    parser.add_argument(
        "--memory-floor-mb",
        type=float,
        default=DEFAULT_MEMORY_FLOOR_MB,
        help="Busy memory floor (MiB) when the GPU reports no memory limit",
    )
    parser.add_argument(
        "--busy-policy",
        type=str,
        choices=BUSY_POLICIES,
        default="abort",
        help="Answer to busy/claimed GPU prompts when running non-interactively",
    )
    parser.add_argument(
        "--confirm-advisories",
        action="store_true",
        help="Ask before processing files whose preset wastes upscale work",
    )
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Never prompt; use --busy-policy and proceed past advisories",
    )
    parser.add_argument(
        "--otlp-endpoint",
        type=str,
        default=os.environ.get(OTLP_ENDPOINT_ENV),
        help="Export tracing spans to this OTLP/HTTP endpoint",
    )

    return parser.parse_args(argv)


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.tile_size < 0:
        raise ConfigurationError("Tile size must be >= 0.")
    if args.min_scale < 1:
        raise ConfigurationError("Minimum scale must be >= 1.")
    if args.max_scale < args.min_scale:
        raise ConfigurationError("Maximum scale must be >= minimum scale.")
    if not allowed_scales(args.model, args.min_scale, args.max_scale):
        raise ConfigurationError(
            f"Model '{args.model}' supports scales {supported_scales(args.model)}; "
            f"none fall within --min-scale {args.min_scale} and --max-scale {args.max_scale}."
        )
    if not (0.0 < args.busy_threshold <= 100.0):
        raise ConfigurationError("Busy threshold must be in (0, 100].")
    if args.active_util_floor < 0 or args.active_memory_floor < 0:
        raise ConfigurationError("Activity floors must be >= 0.")
    if args.memory_floor_mb <= 0:
        raise ConfigurationError("Memory floor must be > 0.")
    if args.gpu is not None and args.gpu < 0:
        raise ConfigurationError("GPU index must be >= 0.")
    needs_input = not (args.list_presets or args.list_gpus or args.list_unfinished)
    if needs_input and not args.input_dir:
        raise ConfigurationError("An input directory is required.")


def build_thresholds(args: argparse.Namespace) -> BusyThresholds:
    return BusyThresholds(
        busy_percent=args.busy_threshold,
        active_utilization_floor=args.active_util_floor,
        active_memory_floor_mb=args.active_memory_floor,
        memory_floor_mb=args.memory_floor_mb,
    )


def build_config(
    args: argparse.Namespace,
    *,
    toolchain: Toolchain,
    gpu_index: int,
    interactive: bool,
) -> RunConfig:
    return RunConfig(
        toolchain=toolchain,
        input_dir=Path(args.input_dir).expanduser().resolve(),
        output_dir=Path(args.output_dir).expanduser().resolve(),
        work_root=Path(args.work_root).expanduser().resolve(),
        preset=get_preset(args.preset),
        model=args.model,
        tile_size=args.tile_size,
        jobs=args.jobs,
        tta=bool(args.tta),
        gpu_index=gpu_index,
        resume=bool(args.resume or args.select),
        overwrite=bool(args.overwrite),
        keep_work=bool(args.keep_work),
        dry_run=bool(args.dry_run),
        normalize_mode=args.normalize_mode,
        min_scale=args.min_scale,
        max_scale=args.max_scale,
        thresholds=build_thresholds(args),
        busy_policy=args.busy_policy,
        confirm_advisories=bool(args.confirm_advisories),
        interactive=interactive,
    )


def prompt_yes_no(
    message: str,
    *,
    default: bool = False,
    input_fn: Callable[[str], str] = input,
) -> bool:
    suffix = " [Y/n] " if default else " [y/N] "
    try:
        answer = input_fn(message + suffix).strip().lower()
    except EOFError:
        return default
    if not answer:
        return default
    return answer in ("y", "yes")


def make_busy_confirm(
    config: RunConfig,
    input_fn: Callable[[str], str] = input,
) -> ConfirmFn:
    """Continue/abort decision for busy or claimed GPUs."""
    if config.interactive:
        return lambda message: prompt_yes_no(message, default=False, input_fn=input_fn)

    policy_answer = config.busy_policy == "continue"

    def confirm(message: str) -> bool:
        print(f"{message} -> {config.busy_policy} (--busy-policy)")
        return policy_answer

    return confirm


def make_advisory_confirm(
    config: RunConfig,
    input_fn: Callable[[str], str] = input,
) -> ConfirmFn:
    """Advisories only gate when asked for and a human is there to answer."""
    if config.confirm_advisories and config.interactive:
        return lambda message: prompt_yes_no(message, default=False, input_fn=input_fn)
    return lambda message: True


def parse_selection(text: str, count: int) -> list[int]:
    """Parse "all", "2", "1,3", or "2-4" into zero-based indexes."""
    cleaned = text.strip().lower()
    if not cleaned:
        raise InvalidSelection("Empty selection.")
    if cleaned in ("all", "a", "*"):
        return list(range(count))

    chosen: list[int] = []
    for token in cleaned.split(","):
        token = token.strip()
        start_text, _, end_text = token.partition("-")
        try:
            start = int(start_text)
            end = int(end_text) if end_text else start
        except ValueError as exc:
            raise InvalidSelection(f"Not a number: {token!r}") from exc
        if start > end:
            raise InvalidSelection(f"Invalid range: {token}")
        for number in range(start, end + 1):
            if not 1 <= number <= count:
                raise InvalidSelection(f"Selection {number} is out of range 1-{count}.")
            if number - 1 not in chosen:
                chosen.append(number - 1)
    return chosen


def format_unfinished(jobs: Sequence[UnfinishedJob]) -> list[str]:
    return [
        f"{position:>3}. {job.name} [{job.gpu_tag}] {job.upscaled}/{job.frames} ({job.percent}%)"
        for position, job in enumerate(jobs, start=1)
    ]


def select_unfinished(
    jobs: Sequence[UnfinishedJob],
    input_fn: Callable[[str], str] = input,
) -> list[UnfinishedJob]:
    if not jobs:
        return []
    print("Unfinished jobs:")
    for line in format_unfinished(jobs):
        print(line)
    answer = input_fn("Resume which jobs? (e.g. 1,3 or 2-4 or all): ")
    return [jobs[index] for index in parse_selection(answer, len(jobs))]
