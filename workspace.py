"""Job directory layout, output naming, and unfinished-job discovery.

Layout on disk::

    <work_root>_<gpu_tag>/<job_name>/{frames,upscaled,normalized,pending}
    <output_root>/<job_name>_<preset>_<gpu_tag>.<ext>

Tagged work roots are not locked; two runs against the same tag can race.
"""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from errors import ConfigurationError
from presets import Preset

FRAME_PREFIX = "frame_"
FRAME_EXTENSION = "png"
FRAME_PATTERN = f"{FRAME_PREFIX}%06d.{FRAME_EXTENSION}"
FRAME_GLOB = f"{FRAME_PREFIX}*.{FRAME_EXTENSION}"
FRAME_NAME_RE = re.compile(rf"^{FRAME_PREFIX}\d{{6}}\.{FRAME_EXTENSION}$")

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".mov", ".avi", ".webm", ".m4v", ".wmv", ".flv", ".ts")

GPU_TAG_RE = re.compile(r"^gpu(\d+)$")


def gpu_tag_for(index: int) -> str:
    return f"gpu{index}"


def gpu_index_from_tag(tag: str) -> Optional[int]:
    match = GPU_TAG_RE.match(tag)
    return int(match.group(1)) if match else None


def work_root_for(base: Path, gpu_tag: str) -> Path:
    return base.parent / f"{base.name}_{gpu_tag}"


def output_path_for(output_root: Path, job_name: str, preset: Preset, gpu_tag: str) -> Path:
    return output_root / f"{job_name}_{preset.name}_{gpu_tag}.{preset.extension}"


def list_frames(directory: Path) -> list[str]:
    """Sorted frame filenames; anything off the fixed naming pattern is ignored."""
    if not directory.is_dir():
        return []
    return sorted(
        path.name
        for path in directory.glob(FRAME_GLOB)
        if path.is_file() and FRAME_NAME_RE.match(path.name)
    )


def _clear_dir(directory: Path) -> None:
    if directory.exists():
        shutil.rmtree(directory)
    directory.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class JobPaths:
    root: Path

    @property
    def name(self) -> str:
        return self.root.name

    @property
    def frames(self) -> Path:
        return self.root / "frames"

    @property
    def upscaled(self) -> Path:
        return self.root / "upscaled"

    @property
    def normalized(self) -> Path:
        return self.root / "normalized"

    @property
    def pending(self) -> Path:
        return self.root / "pending"

    @classmethod
    def for_source(cls, work_root: Path, source: Path) -> "JobPaths":
        return cls(work_root / source.stem)

    def create(self) -> None:
        self.frames.mkdir(parents=True, exist_ok=True)
        self.upscaled.mkdir(parents=True, exist_ok=True)

    def reset_frames(self) -> None:
        _clear_dir(self.frames)

    def reset_upscaled(self) -> None:
        _clear_dir(self.upscaled)

    def reset_normalized(self) -> None:
        _clear_dir(self.normalized)

    def reset_pending(self) -> None:
        _clear_dir(self.pending)

    def remove_pending(self) -> None:
        if self.pending.exists():
            shutil.rmtree(self.pending)

    def remove(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)

    def frame_counts(self) -> tuple[int, int]:
        """(extracted, upscaled) where upscaled only counts names also extracted."""
        extracted = set(list_frames(self.frames))
        upscaled = set(list_frames(self.upscaled))
        return len(extracted), len(extracted & upscaled)


@dataclass(frozen=True)
class UnfinishedJob:
    job: JobPaths
    gpu_tag: str
    frames: int
    upscaled: int

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def percent(self) -> int:
        if self.frames == 0:
            return 0
        return round(self.upscaled / self.frames * 100)


def tagged_work_roots(base: Path) -> list[tuple[str, Path]]:
    prefix = f"{base.name}_"
    if not base.parent.is_dir():
        return []
    roots = []
    for candidate in sorted(base.parent.glob(f"{prefix}*")):
        if candidate.is_dir():
            roots.append((candidate.name[len(prefix):], candidate))
    return roots


def discover_unfinished(base: Path) -> list[UnfinishedJob]:
    """Scan every tagged work root for jobs whose upscale stage is incomplete."""
    unfinished: list[UnfinishedJob] = []
    for gpu_tag, root in tagged_work_roots(base):
        for job_dir in sorted(path for path in root.iterdir() if path.is_dir()):
            job = JobPaths(job_dir)
            frames, upscaled = job.frame_counts()
            if frames > 0 and upscaled < frames:
                unfinished.append(
                    UnfinishedJob(job=job, gpu_tag=gpu_tag, frames=frames, upscaled=upscaled)
                )
    return unfinished


def find_source_videos(input_dir: Path) -> list[Path]:
    if not input_dir.is_dir():
        raise ConfigurationError(f"Input directory not found: {input_dir}")
    return sorted(
        path
        for path in input_dir.iterdir()
        if path.is_file() and path.suffix.lower() in VIDEO_EXTENSIONS
    )
