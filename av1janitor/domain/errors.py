"""Error taxonomy for the transcoding pipeline.

Per-file errors carry the terminal status their job ends in; the orchestrator
catches them in the worker so one bad file never stops the scheduler. Only
ConfigValidationError and EncoderNotFoundError are fatal, and only at startup.
"""

from pathlib import Path
from typing import Optional
from .models import JobStatus


class JanitorError(Exception):
    """Base class for all av1janitor errors."""

    status = JobStatus.FAILED


class ProbeError(JanitorError):
    """ffprobe could not run or its report could not be parsed."""

    status = JobStatus.SKIPPED


class UnsupportedMediaError(JanitorError):
    """No usable video stream; the file is permanently skipped via a marker."""

    status = JobStatus.SKIPPED


class EncodeTimeoutError(JanitorError):
    """ffmpeg exceeded the wall-clock timeout and was killed."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Encoder timed out after {timeout_seconds:.0f}s")
        self.timeout_seconds = timeout_seconds


class EncodeProcessError(JanitorError):
    """ffmpeg could not start or exited non-zero."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr_tail: str = ""):
        detail = message
        if stderr_tail:
            detail = f"{message}\n{stderr_tail}"
        super().__init__(detail)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class SizeGateRejected(JanitorError):
    """Output was not small enough; original kept, marker written."""

    status = JobStatus.SKIPPED

    def __init__(self, ratio: float, threshold: float):
        super().__init__(
            f"Size gate failed: {ratio * 100:.1f}% of original (max: {threshold * 100:.1f}%)"
        )
        self.ratio = ratio
        self.threshold = threshold


class AtomicReplaceError(JanitorError):
    """Swapping the output into place failed; rollback was attempted."""

    def __init__(self, message: str, backup_path: Optional[Path] = None, rolled_back: bool = True):
        super().__init__(message)
        self.backup_path = backup_path
        self.rolled_back = rolled_back


class ConfigValidationError(JanitorError):
    """Configuration is invalid; raised before any scanning starts."""


class EncoderNotFoundError(JanitorError):
    """ffmpeg/ffprobe or the av1_qsv encoder is not available."""
