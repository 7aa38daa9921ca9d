"""Output validation: an artifact counts only if it carries the expected streams."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from errors import InvalidOutput, ProbeError
from probe import get_stream_kinds


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: str
    streams: set[str] = field(default_factory=set)


def validate_output(ffprobe_bin: str, path: Path, *, expect_audio: bool) -> ValidationResult:
    if not path.is_file():
        return ValidationResult(False, "output file missing")
    if path.stat().st_size == 0:
        return ValidationResult(False, "output file is empty")

    try:
        streams = get_stream_kinds(ffprobe_bin, path)
    except ProbeError as exc:
        return ValidationResult(False, f"probe failed: {exc}")

    if "video" not in streams:
        return ValidationResult(False, "no video stream", streams)
    if expect_audio and "audio" not in streams:
        return ValidationResult(False, "no audio stream", streams)
    return ValidationResult(True, "ok", streams)


def require_valid_output(ffprobe_bin: str, path: Path, *, expect_audio: bool) -> ValidationResult:
    result = validate_output(ffprobe_bin, path, expect_audio=expect_audio)
    if not result.valid:
        raise InvalidOutput(f"Invalid output {path.name}: {result.reason}")
    return result
