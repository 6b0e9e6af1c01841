import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock
from av1janitor.domain.errors import EncoderNotFoundError, UnsupportedMediaError
from av1janitor.domain.models import HeuristicDecision, QualityTier, StreamMetadata, SurfaceFormat, VideoStream
from av1janitor.infrastructure.ffmpeg import (
    QSV_DEVICE,
    QSV_VAAPI_DEVICE,
    TranscodeParams,
    build_command,
    detect_hw_device,
    extract_version,
    is_version_supported,
    locate_ffmpeg,
    parse_progress_line,
    temp_output_path,
)


def _decision(quality=24, surface=SurfaceFormat.NV12, webrip=False):
    return HeuristicDecision(quality_tier=QualityTier.B, quality=quality, surface=surface, webrip_like=webrip)


def _params(webrip=False, languages=("rus", "ru"), index=0, surface=SurfaceFormat.NV12):
    return TranscodeParams(
        source_path=Path("/media/Movie.mkv"),
        output_path=Path("/media/Movie.mkv.av1-tmp.mkv"),
        video_stream_index=index,
        quality=24,
        surface=surface,
        webrip_like=webrip,
        excluded_languages=languages,
    )


def test_temp_output_path_is_beside_source():
    assert temp_output_path(Path("/media/a/Movie.mp4")) == Path("/media/a/Movie.mp4.av1-tmp.mkv")


def test_temp_output_path_differs_for_same_stem_siblings():
    assert temp_output_path(Path("/media/Movie.mkv")) != temp_output_path(Path("/media/Movie.mp4"))


def test_from_metadata_uses_selected_stream():
    default = VideoStream(codec="hevc", width=1920, height=1080, is_default=True)
    meta = StreamMetadata(video_streams=[
        VideoStream(codec="mjpeg", width=600, height=600, attached_pic=True, type_index=0),
        VideoStream(codec="h264", width=640, height=360, type_index=1),
        default.model_copy(update={"type_index": 2}),
    ])
    params = TranscodeParams.from_metadata(Path("/m/x.mkv"), meta, _decision(), ["rus"])
    assert params.video_stream_index == 2
    assert params.output_path == Path("/m/x.mkv.av1-tmp.mkv")
    assert params.excluded_languages == ("rus",)


def test_from_metadata_without_video_fails_fast():
    with pytest.raises(UnsupportedMediaError):
        TranscodeParams.from_metadata(Path("/m/audio.mkv"), StreamMetadata(), _decision())


def test_build_command_exact_order_plain_source():
    cmd = build_command(_params(), QSV_DEVICE)
    assert cmd == [
        "-y", "-v", "verbose", "-stats", "-benchmark", "-benchmark_all",
        "-hwaccel", "none", "-init_hw_device", "qsv=hw", "-filter_hw_device", "hw",
        "-analyzeduration", "50M", "-probesize", "50M",
        "-i", "/media/Movie.mkv",
        "-map", "0", "-map", "-0:v", "-map", "-0:t", "-map", "0:v:0",
        "-map", "-0:a:m:language:rus", "-map", "-0:s:m:language:rus",
        "-map", "-0:a:m:language:ru", "-map", "-0:s:m:language:ru",
        "-map_chapters", "0",
        "-vf:v:0", "pad=ceil(iw/2)*2:ceil(ih/2)*2,setsar=1,format=nv12,hwupload=extra_hw_frames=64",
        "-c:v:0", "av1_qsv", "-global_quality:v:0", "24", "-preset:v:0", "medium", "-look_ahead", "1",
        "-c:a", "copy", "-c:s", "copy",
        "-max_muxing_queue_size", "2048", "-map_metadata", "0", "-f", "matroska", "-movflags", "+faststart",
        "/media/Movie.mkv.av1-tmp.mkv",
    ]


def test_build_command_webrip_flags_placement():
    cmd = build_command(_params(webrip=True, languages=()), QSV_VAAPI_DEVICE)
    i_input = cmd.index("-i")
    assert cmd[i_input - 4:i_input] == ["-fflags", "+genpts", "-copyts", "-start_at_zero"]

    i_vsync = cmd.index("-vsync")
    assert cmd[i_vsync:i_vsync + 4] == ["-vsync", "0", "-avoid_negative_ts", "make_zero"]
    assert cmd.index("-map_chapters") < i_vsync < cmd.index("-vf:v:0")
    assert cmd[cmd.index("-init_hw_device") + 1] == "qsv=hw,child_device_type=vaapi"


def test_build_command_without_webrip_has_no_timestamp_flags():
    cmd = build_command(_params(), QSV_DEVICE)
    for flag in ("-fflags", "-copyts", "-start_at_zero", "-vsync", "-avoid_negative_ts"):
        assert flag not in cmd


def test_build_command_ten_bit_surface_and_stream_index():
    cmd = build_command(_params(index=3, surface=SurfaceFormat.P010), QSV_DEVICE)
    assert "0:v:3" in cmd
    assert "format=p010" in cmd[cmd.index("-vf:v:0") + 1]


def test_build_command_never_readds_audio_or_subtitles():
    cmd = build_command(_params(), QSV_DEVICE)
    maps = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-map"]
    assert "0:a" not in maps
    assert "0:s" not in maps
    assert maps[0] == "0"


def test_detect_hw_device_with_render_node(tmp_path):
    (tmp_path / "card0").touch()
    (tmp_path / "renderD128").touch()
    assert detect_hw_device(tmp_path) == QSV_VAAPI_DEVICE


def test_detect_hw_device_without_render_node(tmp_path):
    (tmp_path / "card0").touch()
    assert detect_hw_device(tmp_path) == QSV_DEVICE
    assert detect_hw_device(tmp_path / "missing") == QSV_DEVICE


class TestProgressGrammar:
    def test_full_stats_line(self):
        line = "frame= 1234 fps= 45 q=-0.0 size=   12345kB time=00:01:23.45 bitrate=1234.5kbits/s speed=1.5x"
        progress = parse_progress_line(line)
        assert progress.frame == 1234
        assert progress.fps == 45.0
        assert progress.size_bytes == 12345 * 1024
        assert progress.time_seconds == pytest.approx(83.45)
        assert progress.speed == 1.5

    @pytest.mark.parametrize("size,expected", [
        ("512KiB", 512 * 1024),
        ("3MB", 3 * 1024 ** 2),
        ("3MiB", 3 * 1024 ** 2),
        ("2GiB", 2 * 1024 ** 3),
        ("1GB", 1024 ** 3),
    ])
    def test_size_units(self, size, expected):
        progress = parse_progress_line(f"frame=10 fps=1.0 q=20.0 size={size} time=00:00:01.00 speed=0.5x")
        assert progress.size_bytes == expected

    def test_missing_fields_default_to_zero(self):
        progress = parse_progress_line("frame=  7 fps=0.0 q=0.0 size=N/A time=N/A bitrate=N/A speed=N/A")
        assert progress.frame == 7
        assert progress.size_bytes == 0
        assert progress.time_seconds == 0.0
        assert progress.speed == 0.0

    @pytest.mark.parametrize("line", [
        "Stream #0:0: Video: h264 (High), yuv420p, 1920x1080",
        "frame=    0 fps=0.0 q=0.0 size=       0kB time=00:00:00.00 bitrate=N/A speed=   0x",
        "",
        "[matroska @ 0x55d] Starting new cluster",
    ])
    def test_non_progress_lines_are_ignored(self, line):
        assert parse_progress_line(line) is None


class TestEncoderDiscovery:
    def test_extract_version(self):
        assert extract_version("ffmpeg version n8.0 Copyright (c) 2000-2025\nbuilt with gcc") == "n8.0"
        with pytest.raises(EncoderNotFoundError):
            extract_version("garbage")

    @pytest.mark.parametrize("version,ok", [
        ("8.0", True),
        ("n8.0.1", True),
        ("9.1", True),
        ("7.1", False),
        ("n6.0", False),
        ("N-118000-gabcdef", True),
    ])
    def test_version_support(self, version, ok):
        assert is_version_supported(version) is ok

    def test_locate_explicit_binary(self, tmp_path):
        ffmpeg = tmp_path / "ffmpeg"
        ffprobe = tmp_path / "ffprobe"
        ffmpeg.touch()
        ffprobe.touch()

        def fake_run(cmd, capture_output, text):
            if cmd[1] == "-version":
                return MagicMock(returncode=0, stdout="ffmpeg version 8.0 Copyright\n")
            return MagicMock(returncode=0, stdout=" V....D av1_qsv   AV1 (Intel Quick Sync Video acceleration)\n")

        with patch("subprocess.run", side_effect=fake_run):
            installation = locate_ffmpeg(str(ffmpeg))

        assert installation.ffmpeg_path == str(ffmpeg)
        assert installation.ffprobe_path == str(ffprobe)
        assert installation.version == "8.0"
        assert installation.has_av1_qsv is True

    def test_locate_fails_without_av1_qsv(self, tmp_path):
        ffmpeg = tmp_path / "ffmpeg"
        ffmpeg.touch()

        def fake_run(cmd, capture_output, text):
            if cmd[1] == "-version":
                return MagicMock(returncode=0, stdout="ffmpeg version 8.0 Copyright\n")
            return MagicMock(returncode=0, stdout=" V....D libsvtav1   SVT-AV1\n")

        with patch("subprocess.run", side_effect=fake_run):
            with pytest.raises(EncoderNotFoundError, match="av1_qsv"):
                locate_ffmpeg(str(ffmpeg))

    def test_locate_rejects_old_version(self, tmp_path):
        ffmpeg = tmp_path / "ffmpeg"
        ffmpeg.touch()
        with patch("subprocess.run", return_value=MagicMock(returncode=0, stdout="ffmpeg version 6.1.1\n")):
            with pytest.raises(EncoderNotFoundError, match="too old"):
                locate_ffmpeg(str(ffmpeg))

    def test_locate_nothing_found(self, tmp_path):
        with pytest.raises(EncoderNotFoundError, match="no ffmpeg binary found"):
            locate_ffmpeg(str(tmp_path / "nope"))
