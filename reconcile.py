"""Frame reconciliation: bring the upscaled set level with the extracted set.

Membership is by filename only. A frame present in `upscaled/` counts as done
even if its content is damaged.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from errors import IncompleteResumeError, IncompleteUpscale
from toolchain import progress_write
from workspace import JobPaths, list_frames

UpscaleInvoker = Callable[[Path, Path], None]


@dataclass(frozen=True)
class ReconcileResult:
    total: int
    processed: int
    linked: int = 0
    copied: int = 0

    @property
    def invoked(self) -> bool:
        return self.processed > 0


def missing_frames(frames_dir: Path, upscaled_dir: Path) -> list[str]:
    """Extracted frame names with no upscaled counterpart, in sequence order."""
    done = set(list_frames(upscaled_dir))
    return [name for name in list_frames(frames_dir) if name not in done]


def _link_or_copy(source: Path, target: Path) -> bool:
    """Hard-link `source` to `target`; copy when linking is not possible.

    Returns True when a link was made.
    """
    try:
        os.link(source, target)
        return True
    except OSError:
        # Cross-volume, or a filesystem without hard links.
        shutil.copy2(source, target)
        return False


def materialize_pending(
    frames_dir: Path,
    pending_dir: Path,
    names: Iterable[str],
) -> tuple[int, int]:
    """Recreate `pending_dir` holding exactly `names`. Returns (linked, copied)."""
    if pending_dir.exists():
        shutil.rmtree(pending_dir)
    pending_dir.mkdir(parents=True)

    linked = 0
    copied = 0
    for name in names:
        if _link_or_copy(frames_dir / name, pending_dir / name):
            linked += 1
        else:
            copied += 1
    return linked, copied


def resume_upscale(job: JobPaths, invoke: UpscaleInvoker) -> ReconcileResult:
    """Upscale only the frames missing from a previously started job."""
    total = len(list_frames(job.frames))
    missing = missing_frames(job.frames, job.upscaled)
    if not missing:
        progress_write(f"  All {total} frame(s) already upscaled.")
        return ReconcileResult(total=total, processed=0)

    progress_write(f"  Resuming: {total - len(missing)}/{total} done, {len(missing)} remaining.")
    job.upscaled.mkdir(parents=True, exist_ok=True)
    linked, copied = materialize_pending(job.frames, job.pending, missing)
    if copied:
        progress_write(f"Warning: {copied} frame(s) copied into scratch (hard links unavailable).")

    invoke(job.pending, job.upscaled)

    remaining = missing_frames(job.frames, job.upscaled)
    if remaining:
        raise IncompleteResumeError(
            f"Upscaler exited cleanly but {len(remaining)} frame(s) are still missing "
            f"(first: {remaining[0]})."
        )
    job.remove_pending()
    return ReconcileResult(total=total, processed=len(missing), linked=linked, copied=copied)


def full_upscale(job: JobPaths, invoke: UpscaleInvoker) -> ReconcileResult:
    """Fresh run: clear previous output and upscale the whole extracted set once."""
    total = len(list_frames(job.frames))
    job.reset_upscaled()
    invoke(job.frames, job.upscaled)

    remaining = missing_frames(job.frames, job.upscaled)
    if remaining:
        raise IncompleteUpscale(
            f"Upscaled {total - len(remaining)}/{total} frame(s); "
            f"{len(remaining)} missing (first: {remaining[0]})."
        )
    return ReconcileResult(total=total, processed=total)
