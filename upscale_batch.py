#!/usr/bin/env python3
"""
Batch video upscaler (Real-ESRGAN).

Extracts frames, upscales them, fits them to a preset's resolution, and
re-encodes every video in a directory. Interrupted jobs resume from the
frames already on disk.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence

from cli import (
    RunConfig,
    build_config,
    build_thresholds,
    format_unfinished,
    make_advisory_confirm,
    make_busy_confirm,
    parse_args,
    select_unfinished,
    validate_runtime_args,
)
from errors import ConfigurationError, InvalidSelection
from gpu import (
    DeviceInfoProvider,
    DeviceQueryError,
    SmiDeviceProvider,
    auto_select_device,
    check_device,
    describe_status,
    ensure_device_available,
    is_active,
    list_devices,
)
from pipeline import (
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PLANNED,
    STATUS_SKIPPED,
    BatchReport,
    run_batch,
)
from presets import PRESETS
from toolchain import find_nvidia_smi, progress_write, resolve_toolchain
from tracing import init_tracing, shutdown_tracing, traced
from workspace import (
    UnfinishedJob,
    discover_unfinished,
    find_source_videos,
    gpu_index_from_tag,
    gpu_tag_for,
    work_root_for,
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FILE_FAILURES = 2
EXIT_INTERRUPTED = 130


def print_presets() -> None:
    for name in sorted(PRESETS):
        preset = PRESETS[name]
        resolution = preset.resolution or "match source"
        print(
            f"{name:<15} .{preset.extension:<4} {preset.video_codec}/{preset.audio_codec} "
            f"{resolution}"
        )


def print_gpus(provider: DeviceInfoProvider, args: argparse.Namespace) -> None:
    thresholds = build_thresholds(args)
    try:
        devices = list_devices(provider)
    except (DeviceQueryError, OSError) as exc:
        print(f"GPU inventory unavailable: {exc}")
        return
    if not devices:
        print("No usable GPUs found.")
        return
    selected = auto_select_device(provider)
    for device in devices:
        marker = "*" if device.index == selected else " "
        state = "active" if is_active(device, thresholds) else "idle"
        memory = f"{device.memory_used_mb:.0f}"
        if device.memory_limit_mb:
            memory += f"/{device.memory_limit_mb:.0f}"
        print(
            f"{marker} [{device.index}] {device.name}: util {device.utilization:.0f}%, "
            f"memory {memory} MiB, {state}"
        )


def print_unfinished(work_root: Path) -> None:
    jobs = discover_unfinished(work_root)
    if not jobs:
        print("No unfinished jobs.")
        return
    for line in format_unfinished(jobs):
        print(line)


def group_selected_jobs(
    chosen: Sequence[UnfinishedJob],
    sources: Sequence[Path],
) -> dict[int, list[Path]]:
    """Map selected jobs back to their source files, grouped by GPU index."""
    by_stem = {source.stem: source for source in sources}
    groups: dict[int, list[Path]] = {}
    for job in chosen:
        index = gpu_index_from_tag(job.gpu_tag)
        if index is None:
            raise InvalidSelection(f"Job {job.name} has unrecognized GPU tag '{job.gpu_tag}'.")
        source = by_stem.get(job.name)
        if source is None:
            progress_write(f"Warning: No source video found for job {job.name}; skipping.")
            continue
        groups.setdefault(index, []).append(source)
    return groups


def print_banner(config: RunConfig, groups: dict[int, list[Path]]) -> None:
    print("\n" + "=" * 60)
    print("Batch Upscaler - Real-ESRGAN")
    if config.dry_run:
        print("*** DRY RUN MODE ***")
    print("=" * 60)
    print(f"Input:   {config.input_dir}")
    print(f"Output:  {config.output_dir}")
    print(f"Preset:  {config.preset.name}")
    print(f"Model:   {config.model}")
    print(f"GPU(s):  {', '.join(gpu_tag_for(index) for index in groups)}")
    print(f"Resume:  {'yes' if config.resume else 'no'}")
    print(f"Files:   {sum(len(group) for group in groups.values())}")
    print("=" * 60)


def print_summary(report: BatchReport) -> None:
    print("\n" + "=" * 60)
    print(
        f"Done: {report.count(STATUS_DONE)}  Skipped: {report.count(STATUS_SKIPPED)}  "
        f"Planned: {report.count(STATUS_PLANNED)}  Failed: {report.count(STATUS_FAILED)}"
    )
    for result in report.failed:
        print(f"  FAILED [{result.stage}] {result.source.name}: {result.error}")
    print("=" * 60 + "\n")


@traced
def run(
    args: argparse.Namespace,
    *,
    provider: Optional[DeviceInfoProvider] = None,
    input_fn: Callable[[str], str] = input,
    interactive: Optional[bool] = None,
) -> int:
    validate_runtime_args(args)
    if args.list_presets:
        print_presets()
        return EXIT_OK

    if args.list_unfinished:
        print_unfinished(Path(args.work_root).expanduser().resolve())
        return EXIT_OK

    if provider is None:
        provider = SmiDeviceProvider(find_nvidia_smi())
    if args.list_gpus:
        print_gpus(provider, args)
        return EXIT_OK

    if interactive is None:
        interactive = not args.non_interactive and sys.stdin.isatty()

    toolchain = resolve_toolchain(args.realesrgan_path, args.model_path)
    gpu_index = args.gpu if args.gpu is not None else auto_select_device(provider)
    config = build_config(args, toolchain=toolchain, gpu_index=gpu_index, interactive=interactive)
    sources = find_source_videos(config.input_dir)

    if args.select:
        if not interactive:
            raise ConfigurationError("--select needs an interactive terminal.")
        chosen = select_unfinished(discover_unfinished(config.work_root), input_fn=input_fn)
        if not chosen:
            print("No unfinished jobs to resume.")
            return EXIT_OK
        groups = group_selected_jobs(chosen, sources)
    else:
        groups = {gpu_index: list(sources)}
        if not config.resume:
            stems = {source.stem for source in sources}
            for job in discover_unfinished(config.work_root):
                if job.name in stems and job.gpu_tag == gpu_tag_for(gpu_index):
                    progress_write(
                        f"Note: {job.name} has an unfinished job ({job.percent}%); "
                        "pass --resume to continue it instead of restarting."
                    )

    print_banner(config, groups)
    busy_confirm = make_busy_confirm(config, input_fn=input_fn)
    advisory_confirm = make_advisory_confirm(config, input_fn=input_fn)

    report = BatchReport()
    for index, group_sources in groups.items():
        status = check_device(
            provider,
            index,
            work_root_for(config.work_root, gpu_tag_for(index)),
            config.thresholds,
        )
        print(f"GPU {describe_status(status)}")
        if not config.dry_run:
            ensure_device_available(status, busy_confirm, resuming=config.resume)
        group_report = run_batch(
            config,
            group_sources,
            gpu_index=index,
            advisory_confirm=advisory_confirm,
        )
        report.results.extend(group_report.results)

    print_summary(report)
    return EXIT_FILE_FAILURES if report.failed else EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parse_args(raw_argv)
    init_tracing(args.otlp_endpoint)
    try:
        return run(args)
    except KeyboardInterrupt:
        print("Interrupted by user. Job directories are kept for --resume.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    raise SystemExit(main())
