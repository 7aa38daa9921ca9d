"""Errors: run-wide aborts and file-scoped pipeline failures."""

from __future__ import annotations

from typing import Optional


class RunAbort(Exception):
    """Aborts the whole batch run."""


class ToolNotFound(RunAbort, FileNotFoundError):
    pass


class ConfigurationError(RunAbort, ValueError):
    pass


class InvalidSelection(RunAbort, ValueError):
    pass


class DeviceBusyAbort(RunAbort, RuntimeError):
    pass


class PipelineError(RuntimeError):
    """Aborts a single file; the batch moves on to the next one."""

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.filename = filename

    def describe(self) -> str:
        stage = self.stage or "unknown"
        filename = self.filename or "<unknown>"
        return f"[{stage}] {filename}: {self}"


class ProbeError(PipelineError):
    pass


class NoFramesExtracted(PipelineError):
    pass


class IncompleteUpscale(PipelineError):
    pass


class IncompleteResumeError(IncompleteUpscale):
    pass


class NormalizationMismatch(PipelineError):
    pass


class InvalidOutput(PipelineError):
    pass


class ToolFailed(PipelineError):
    pass


class FilesystemError(PipelineError):
    """An OSError while reading or writing one file's job or output paths."""


class OperatorAbort(PipelineError):
    pass
