"""Pure decision functions over probed metadata.

Nothing here touches the filesystem or spawns processes, so every rule can be
unit-tested with hand-built StreamMetadata.

Quality values follow QSV's ``-global_quality`` scale, where a LOWER number
means HIGHER visual fidelity (and a larger file). Tier A therefore carries the
smallest number and is reserved for the tallest sources.
"""

from typing import Optional
from av1janitor.config.models import AppConfig, QualityConfig
from .models import HeuristicDecision, QualityTier, StreamMetadata, SurfaceFormat

TARGET_CODEC = "av1"

HEIGHT_1080P = 1080
HEIGHT_1440P = 1440

WEB_CONTAINER_FORMATS = frozenset({"mp4", "mov", "webm"})


def should_skip_for_size(size: int, min_size: int) -> bool:
    return size < min_size


def is_already_target_codec(meta: StreamMetadata, target: str = TARGET_CODEC) -> bool:
    stream = meta.selected_video_stream()
    if stream is None:
        return False
    return stream.codec.lower() == target.lower()


def is_webrip_like(meta: StreamMetadata) -> bool:
    """True if ANY web-distribution artifact is present.

    Web container, variable frame rate on the selected stream, or an odd
    dimension on the selected stream. Only the timestamp-handling flags of the
    encoder command depend on this.
    """
    formats = {part.strip() for part in meta.format_name.lower().split(",")}
    # ffprobe names its Matroska demuxer "matroska,webm" for every .mkv
    if "matroska" in formats:
        formats.discard("webm")
    if formats & WEB_CONTAINER_FORMATS:
        return True

    stream = meta.selected_video_stream()
    if stream is None:
        return False
    return stream.is_vfr or stream.has_odd_dimensions


def choose_tier(height: int) -> QualityTier:
    if height >= HEIGHT_1440P:
        return QualityTier.A
    if height >= HEIGHT_1080P:
        return QualityTier.B
    return QualityTier.C


def choose_quality(height: int, table: Optional[QualityConfig] = None) -> int:
    """Maps a source height to its QSV global_quality value (lower = better)."""
    table = table or QualityConfig()
    tier = choose_tier(height)
    if tier == QualityTier.A:
        return table.at_1440p_and_above
    if tier == QualityTier.B:
        return table.at_1080p
    return table.below_1080p


def choose_surface(bit_depth: int) -> SurfaceFormat:
    if bit_depth > 8:
        return SurfaceFormat.P010
    return SurfaceFormat.NV12


def decide(meta: StreamMetadata, size: int, config: AppConfig) -> HeuristicDecision:
    """Combines the rules into one decision.

    Callers reject metadata without a usable video stream before calling this.
    """
    if should_skip_for_size(size, config.general.min_file_size_bytes):
        return HeuristicDecision(skip=True, reason=f"Too small ({size} bytes)")

    stream = meta.selected_video_stream()
    if stream is None:
        raise ValueError("decide() requires metadata with a selectable video stream")

    if is_already_target_codec(meta):
        return HeuristicDecision(skip=True, reason=f"Already {TARGET_CODEC.upper()}")

    return HeuristicDecision(
        quality_tier=choose_tier(stream.height),
        quality=choose_quality(stream.height, config.quality),
        surface=choose_surface(stream.bit_depth),
        webrip_like=is_webrip_like(meta),
    )
