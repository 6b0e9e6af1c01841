import hashlib
from datetime import datetime, timezone
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def source_digest(source_path: Path) -> str:
    return hashlib.sha1(str(source_path).encode("utf-8")).hexdigest()[:16]


def make_job_id(source_path: Path, attempt: int) -> str:
    """Job ids are stable per (source path, attempt)."""
    return f"{source_digest(source_path)}-{attempt}"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.SKIPPED)


_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.SUCCESS: 2,
    JobStatus.FAILED: 2,
    JobStatus.SKIPPED: 2,
}


class JobTransitionError(ValueError):
    """Raised when a job is moved backwards or out of a terminal state."""


class QualityTier(str, Enum):
    A = "A"  # >= 1440p
    B = "B"  # 1080p
    C = "C"  # below 1080p


class SurfaceFormat(str, Enum):
    NV12 = "nv12"  # 8-bit 4:2:0
    P010 = "p010"  # 10-bit 4:2:0


def _parse_rate(value: str) -> Optional[Fraction]:
    text = (value or "").strip()
    try:
        if "/" in text:
            num, den = text.split("/", 1)
            if int(den) == 0:
                return None
            return Fraction(int(num), int(den))
        return Fraction(text)
    except (ValueError, ZeroDivisionError):
        return None


class VideoStream(BaseModel):
    model_config = ConfigDict(frozen=True)

    codec: str
    width: int = 0
    height: int = 0
    bit_depth: int = 8
    avg_frame_rate: str = "0/0"
    r_frame_rate: str = "0/0"
    is_default: bool = False
    type_index: int = 0  # position among the file's video streams (ffmpeg 0:v:N)
    attached_pic: bool = False

    @property
    def is_vfr(self) -> bool:
        avg = _parse_rate(self.avg_frame_rate)
        real = _parse_rate(self.r_frame_rate)
        if avg is None or real is None:
            return self.avg_frame_rate != self.r_frame_rate
        return avg != real

    @property
    def has_odd_dimensions(self) -> bool:
        return self.width % 2 != 0 or self.height % 2 != 0

    @property
    def resolution_label(self) -> str:
        if self.height >= 2160:
            return "4K"
        if self.height >= 1440:
            return "1440p"
        if self.height >= 1080:
            return "1080p"
        if self.height >= 720:
            return "720p"
        if self.height >= 480:
            return "480p"
        return f"{self.height}p"


class MediaStream(BaseModel):
    """Audio or subtitle stream; only what stream mapping needs."""

    model_config = ConfigDict(frozen=True)

    codec: str
    language: Optional[str] = None
    type_index: int = 0


class StreamMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    video_streams: List[VideoStream] = Field(default_factory=list)
    audio_streams: List[MediaStream] = Field(default_factory=list)
    subtitle_streams: List[MediaStream] = Field(default_factory=list)
    format_name: str = ""
    size_bytes: Optional[int] = None
    muxing_app: Optional[str] = None
    major_brand: Optional[str] = None
    compatible_brands: Optional[str] = None

    def selected_video_stream(self) -> Optional[VideoStream]:
        """First default stream, else first stream; cover art is never selected."""
        candidates = [s for s in self.video_streams if not s.attached_pic]
        for stream in candidates:
            if stream.is_default:
                return stream
        return candidates[0] if candidates else None

    def has_video(self) -> bool:
        return self.selected_video_stream() is not None


class HeuristicDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    skip: bool = False
    reason: Optional[str] = None
    quality_tier: Optional[QualityTier] = None
    quality: Optional[int] = None
    surface: Optional[SurfaceFormat] = None
    webrip_like: bool = False


class VideoFile(BaseModel):
    path: Path
    size_bytes: int
    mtime: float = 0.0


class Job(BaseModel):
    id: str
    source_path: Path
    output_path: Optional[Path] = None
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    original_bytes: Optional[int] = None
    new_bytes: Optional[int] = None
    reason: Optional[str] = None
    attempt: int = 1
    webrip_like: bool = False
    progress_frame: int = 0
    progress_speed: float = 0.0
    progress_bytes: int = 0

    @classmethod
    def create(cls, source_path: Path, attempt: int = 1, original_bytes: Optional[int] = None) -> "Job":
        return cls(
            id=make_job_id(source_path, attempt),
            source_path=source_path,
            attempt=attempt,
            original_bytes=original_bytes,
        )

    def _transition(self, status: JobStatus) -> None:
        if self.status.is_terminal:
            raise JobTransitionError(f"Job {self.id} is already {self.status.value}")
        if _STATUS_RANK[status] <= _STATUS_RANK[self.status]:
            raise JobTransitionError(f"Job {self.id}: {self.status.value} -> {status.value} is not allowed")
        self.status = status

    def start(self) -> None:
        self._transition(JobStatus.RUNNING)
        self.started_at = _utcnow()

    def finish(self, status: JobStatus, reason: Optional[str] = None, new_bytes: Optional[int] = None) -> None:
        if not status.is_terminal:
            raise JobTransitionError(f"{status.value} is not a terminal status")
        if status != JobStatus.SUCCESS and not reason:
            raise JobTransitionError(f"{status.value} requires a reason")
        self._transition(status)
        self.finished_at = _utcnow()
        self.reason = reason
        if status == JobStatus.SUCCESS:
            self.new_bytes = new_bytes

    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.finished_at or _utcnow()
        return (end - self.started_at).total_seconds()

    def size_savings_ratio(self) -> Optional[float]:
        if not self.original_bytes or self.new_bytes is None:
            return None
        return (self.original_bytes - self.new_bytes) / self.original_bytes


SKIP_MARKER_SUFFIX = ".av1skip"
EXPLANATION_SUFFIX = ".why.txt"
BACKUP_INFIX = ".bak-"


def skip_marker_path(source: Path) -> Path:
    """`movie.mkv` -> `movie.mkv.av1skip`; full name, so siblings never collide."""
    return source.with_name(f"{source.name}{SKIP_MARKER_SUFFIX}")


def explanation_path(source: Path) -> Path:
    return source.with_name(f"{source.name}{EXPLANATION_SUFFIX}")
