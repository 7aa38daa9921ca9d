"""Locate ffmpeg, ffprobe, the Real-ESRGAN upscaler and nvidia-smi, and run them."""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from errors import ToolNotFound

UPSCALER_NAME = "realesrgan-ncnn-vulkan"
UPSCALER_VENDOR_DIR = "Real-ESRGAN-ncnn-vulkan"
MODELS_DIR = "models"
REQUIRED_MEDIA_TOOLS = ("ffmpeg", "ffprobe")


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    realesrgan_binary: Path
    model_path: Optional[Path]


def progress_write(message: str) -> None:
    """Write a message without breaking an active tqdm progress bar."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
) -> subprocess.CompletedProcess[str]:
    # No timeout; a long upscale blocks for hours.
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
    )


def format_command(cmd: Sequence[str]) -> str:
    return " ".join(str(part) for part in cmd)


def _on_windows() -> bool:
    return os.name == "nt"


def upscaler_executable_name() -> str:
    return f"{UPSCALER_NAME}.exe" if _on_windows() else UPSCALER_NAME


def _is_runnable(path: Path) -> bool:
    return path.is_file() and (_on_windows() or os.access(path, os.X_OK))


def find_vendored_upscaler(search_root: Path) -> Optional[Path]:
    """First runnable upscaler below `<search_root>/Real-ESRGAN-ncnn-vulkan`."""
    vendor_root = search_root / UPSCALER_VENDOR_DIR
    if not vendor_root.is_dir():
        return None
    candidates = sorted(vendor_root.rglob(upscaler_executable_name()))
    return next((path for path in candidates if _is_runnable(path)), None)


def locate_upscaler(explicit: Optional[str], search_root: Optional[Path] = None) -> Path:
    """--realesrgan-path first, then PATH, then a vendored copy."""
    if explicit:
        candidate = Path(explicit).expanduser().resolve()
        if not candidate.is_file():
            raise ToolNotFound(f"--realesrgan-path does not point to a file: {candidate}")
        return candidate

    on_path = shutil.which(UPSCALER_NAME)
    if on_path:
        return Path(on_path).resolve()

    vendored = find_vendored_upscaler(search_root or Path.cwd())
    if vendored is None:
        raise ToolNotFound(
            f"{UPSCALER_NAME} not found on PATH or under {UPSCALER_VENDOR_DIR}/; "
            "pass --realesrgan-path."
        )
    return vendored.resolve()


def locate_models(explicit: Optional[str], upscaler: Path) -> Optional[Path]:
    """Model directory for `-m`; None lets the upscaler use its built-in default."""
    if explicit:
        models = Path(explicit).expanduser().resolve()
        if not models.is_dir():
            raise ToolNotFound(f"--model-path is not a directory: {models}")
        return models

    beside = upscaler.parent / MODELS_DIR
    return beside.resolve() if beside.is_dir() else None


def find_nvidia_smi() -> Optional[str]:
    return shutil.which("nvidia-smi")


def resolve_toolchain(
    realesrgan_path: Optional[str] = None,
    model_path: Optional[str] = None,
    search_root: Optional[Path] = None,
) -> Toolchain:
    found = {name: shutil.which(name) for name in REQUIRED_MEDIA_TOOLS}
    missing = [name for name, path in found.items() if not path]
    if missing:
        raise ToolNotFound(
            f"Required tool(s) not on PATH: {', '.join(missing)}. "
            "Install ffmpeg with your system package manager."
        )

    upscaler = locate_upscaler(realesrgan_path, search_root)
    return Toolchain(
        ffmpeg=found["ffmpeg"],
        ffprobe=found["ffprobe"],
        realesrgan_binary=upscaler,
        model_path=locate_models(model_path, upscaler),
    )
