import pytest
import yaml
from pathlib import Path
from av1janitor.config.models import AppConfig
from av1janitor.domain.models import MediaStream, StreamMetadata, VideoStream
from av1janitor.infrastructure.event_bus import EventBus

GIB = 1024 ** 3

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def library_dir(tmp_path):
    """Creates a watched media directory."""
    library = tmp_path / "library"
    library.mkdir()
    return library

@pytest.fixture
def sample_config(tmp_path, library_dir):
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={
            "watched_directories": [str(library_dir)],
            "min_file_size_bytes": 1024,
            "size_gate_factor": 0.9,
            "media_extensions": ["mkv", "mp4", "avi"],
            "concurrent": 1,
            "once": True,
            "settle_seconds": 0,
            "encoder_timeout_seconds": 60,
            "debug": False,
        },
        paths={
            "jobs_dir": str(tmp_path / "jobs"),
            "logs_dir": str(tmp_path / "logs"),
        },
    )

@pytest.fixture
def config_yaml_path(tmp_path, library_dir):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "av1janitor.yaml"

    content = {
        'general': {
            'watched_directories': [str(library_dir)],
            'min_file_size_bytes': 2147483648,
            'size_gate_factor': 0.85,
            'media_extensions': ['mkv', '.MP4'],
            'concurrent': 2,
            'excluded_languages': ['rus'],
        },
        'quality': {
            'at_1080p': 26,
        },
        'paths': {
            'jobs_dir': str(tmp_path / "jobs"),
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

# ============================================================================
# Media Fixtures
# ============================================================================

def build_metadata(
    height=1080,
    width=1920,
    codec="h264",
    bit_depth=8,
    format_name="matroska,webm",
    avg_frame_rate="24000/1001",
    r_frame_rate="24000/1001",
    extra_video=(),
    audio_languages=("eng",),
):
    video = [
        VideoStream(
            codec=codec,
            width=width,
            height=height,
            bit_depth=bit_depth,
            avg_frame_rate=avg_frame_rate,
            r_frame_rate=r_frame_rate,
            is_default=True,
            type_index=0,
        )
    ]
    for i, stream in enumerate(extra_video, start=1):
        video.append(stream.model_copy(update={"type_index": i}))
    return StreamMetadata(
        video_streams=video,
        audio_streams=[
            MediaStream(codec="aac", language=lang, type_index=i) for i, lang in enumerate(audio_languages)
        ],
        format_name=format_name,
    )

@pytest.fixture
def make_metadata():
    """Factory for StreamMetadata with one default video stream."""
    return build_metadata

def make_sparse_file(path: Path, size: int) -> Path:
    """Creates a file of `size` bytes without writing its contents."""
    with open(path, "wb") as f:
        f.truncate(size)
    return path

@pytest.fixture
def sparse_file():
    return make_sparse_file
