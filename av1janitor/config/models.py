from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator
from av1janitor.domain.errors import ConfigValidationError

GIB = 1024 ** 3

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "av1janitor"


class QualityConfig(BaseModel):
    """QSV global_quality per resolution. Lower value = higher fidelity."""
    below_1080p: int = Field(default=25, ge=1, le=51)
    at_1080p: int = Field(default=24, ge=1, le=51)
    at_1440p_and_above: int = Field(default=23, ge=1, le=51)


class GeneralConfig(BaseModel):
    watched_directories: List[str] = Field(default_factory=list)
    min_file_size_bytes: int = Field(default=2 * GIB, gt=0)
    size_gate_factor: float = Field(default=0.9, gt=0.0, le=1.0)
    media_extensions: List[str] = Field(default_factory=lambda: ["mkv", "mp4", "avi"])
    scan_interval_seconds: int = Field(default=60, ge=1)
    concurrent: int = Field(default=1, gt=0)
    once: bool = False
    encoder_timeout_seconds: int = Field(default=3600 * 4, gt=0)
    max_stderr_lines: int = Field(default=1000, ge=1)
    excluded_languages: List[str] = Field(default_factory=lambda: ["rus", "ru"])
    settle_seconds: float = Field(default=10.0, ge=0.0)
    progress_save_every_frames: int = Field(default=500, ge=1)
    dry_run: bool = False
    clean_markers: bool = False
    ffmpeg_path: Optional[str] = None
    debug: bool = False

    @field_validator("media_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [ext.lower().lstrip(".") for ext in v if ext.strip(". ")]


class PathsConfig(BaseModel):
    jobs_dir: str = str(DEFAULT_DATA_DIR / "jobs")
    logs_dir: str = str(DEFAULT_DATA_DIR / "logs")
    log_path: Optional[str] = None


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def validate_config(config: AppConfig) -> AppConfig:
    """Re-validates a config (possibly mutated by CLI overrides) before scanning.

    Raises ConfigValidationError for out-of-range values, an empty or missing
    root list, and an empty extension allow-list.
    """
    try:
        checked = AppConfig.model_validate(config.model_dump())
    except ValidationError as exc:
        raise ConfigValidationError(format_validation_error(exc)) from exc

    general = checked.general
    if not general.watched_directories:
        raise ConfigValidationError("watched_directories cannot be empty")
    for entry in general.watched_directories:
        if not Path(entry).expanduser().is_dir():
            raise ConfigValidationError(f"Watched directory does not exist: {entry}")
    if not general.media_extensions:
        raise ConfigValidationError("media_extensions cannot be empty")
    return checked
