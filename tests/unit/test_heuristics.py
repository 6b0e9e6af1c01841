import pytest
from av1janitor.config.models import AppConfig, QualityConfig
from av1janitor.domain import heuristics
from av1janitor.domain.models import QualityTier, StreamMetadata, SurfaceFormat, VideoStream

GIB = 1024 ** 3


def test_should_skip_for_size_boundary():
    assert heuristics.should_skip_for_size(2 * GIB - 1, 2 * GIB) is True
    assert heuristics.should_skip_for_size(2 * GIB, 2 * GIB) is False
    assert heuristics.should_skip_for_size(5 * GIB, 2 * GIB) is False


@pytest.mark.parametrize("height,tier,quality", [
    (480, QualityTier.C, 25),
    (720, QualityTier.C, 25),
    (1079, QualityTier.C, 25),
    (1080, QualityTier.B, 24),
    (1439, QualityTier.B, 24),
    (1440, QualityTier.A, 23),
    (2160, QualityTier.A, 23),
])
def test_choose_quality_bands(height, tier, quality):
    assert heuristics.choose_tier(height) == tier
    assert heuristics.choose_quality(height) == quality


def test_choose_quality_is_monotonic_in_height():
    """Taller sources never get a larger (worse) quality number."""
    values = [heuristics.choose_quality(h) for h in range(240, 4400, 8)]
    assert all(later <= earlier for earlier, later in zip(values, values[1:]))


def test_choose_quality_uses_configured_table():
    table = QualityConfig(below_1080p=30, at_1080p=28, at_1440p_and_above=20)
    assert heuristics.choose_quality(720, table) == 30
    assert heuristics.choose_quality(1080, table) == 28
    assert heuristics.choose_quality(2160, table) == 20


@pytest.mark.parametrize("depth,surface", [
    (8, SurfaceFormat.NV12),
    (10, SurfaceFormat.P010),
    (12, SurfaceFormat.P010),
])
def test_choose_surface(depth, surface):
    assert heuristics.choose_surface(depth) == surface


def test_webrip_none_of_the_signals(make_metadata):
    assert heuristics.is_webrip_like(make_metadata()) is False


def test_webrip_web_container_alone(make_metadata):
    meta = make_metadata(format_name="mov,mp4,m4a,3gp,3g2,mj2")
    assert heuristics.is_webrip_like(meta) is True


def test_webrip_vfr_alone(make_metadata):
    meta = make_metadata(avg_frame_rate="2997/125", r_frame_rate="30000/1001")
    assert heuristics.is_webrip_like(meta) is True


def test_webrip_odd_dimension_alone(make_metadata):
    meta = make_metadata(width=1919, height=1080)
    assert heuristics.is_webrip_like(meta) is True


def test_webrip_equivalent_rates_are_not_vfr(make_metadata):
    meta = make_metadata(avg_frame_rate="48000/2002", r_frame_rate="24000/1001")
    assert heuristics.is_webrip_like(meta) is False


def test_matroska_demuxer_name_is_not_web(make_metadata):
    assert heuristics.is_webrip_like(make_metadata(format_name="matroska,webm")) is False
    assert heuristics.is_webrip_like(make_metadata(format_name="webm")) is True


def test_already_av1_uses_selected_stream(make_metadata):
    cover = VideoStream(codec="av1", width=600, height=600, attached_pic=True)
    meta = make_metadata(codec="h264", extra_video=[cover])
    assert heuristics.is_already_target_codec(meta) is False
    assert heuristics.is_already_target_codec(make_metadata(codec="AV1")) is True


def test_selected_stream_prefers_default():
    first = VideoStream(codec="h264", width=640, height=360, type_index=0)
    default = VideoStream(codec="hevc", width=3840, height=2160, is_default=True, type_index=1)
    meta = StreamMetadata(video_streams=[first, default])
    assert meta.selected_video_stream() == default


def test_selected_stream_none_when_only_cover_art():
    cover = VideoStream(codec="mjpeg", width=600, height=600, attached_pic=True)
    meta = StreamMetadata(video_streams=[cover])
    assert meta.selected_video_stream() is None
    assert meta.has_video() is False


def test_decide_full_decision(make_metadata, sample_config):
    meta = make_metadata(height=2160, width=3840, bit_depth=10, codec="hevc")
    decision = heuristics.decide(meta, 5 * GIB, sample_config)
    assert decision.skip is False
    assert decision.quality_tier == QualityTier.A
    assert decision.quality == 23
    assert decision.surface == SurfaceFormat.P010
    assert decision.webrip_like is False


def test_decide_skips_small_file(make_metadata):
    config = AppConfig()
    decision = heuristics.decide(make_metadata(), GIB, config)
    assert decision.skip is True
    assert "small" in decision.reason.lower()


def test_decide_skips_av1(make_metadata, sample_config):
    decision = heuristics.decide(make_metadata(codec="av1"), 5 * GIB, sample_config)
    assert decision.skip is True
    assert decision.reason == "Already AV1"


def test_decide_rejects_metadata_without_video(sample_config):
    with pytest.raises(ValueError):
        heuristics.decide(StreamMetadata(), 5 * GIB, sample_config)
