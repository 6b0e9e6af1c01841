import subprocess
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from av1janitor.domain.errors import ProbeError
from av1janitor.domain.models import MediaStream, StreamMetadata, VideoStream


def parse_bit_depth(pix_fmt: Optional[str], bits_per_raw_sample: Optional[str]) -> int:
    """bits_per_raw_sample first, then the pixel format name, else 8."""
    if bits_per_raw_sample:
        try:
            return int(bits_per_raw_sample)
        except ValueError:
            pass

    fmt = (pix_fmt or "").lower()
    for depth in (10, 12, 16):
        if f"{depth}le" in fmt or f"{depth}be" in fmt or f"p{depth}" in fmt:
            return depth
    return 8


class FFprobeAdapter:
    """Wrapper around ffprobe to extract stream information."""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    def _run(self, file_path: Path) -> Dict[str, Any]:
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path)
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise ProbeError(f"ffprobe could not be started for {file_path}: {e}") from e
        if result.returncode != 0:
            raise ProbeError(f"ffprobe failed for {file_path}: {result.stderr.strip()}")

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProbeError(f"ffprobe returned invalid JSON for {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ProbeError(f"ffprobe returned unexpected output for {file_path}")
        return data

    def probe(self, file_path: Path) -> StreamMetadata:
        """Executes ffprobe and parses its JSON report into StreamMetadata.

        A file with zero video streams is returned as-is; rejecting it is the
        caller's decision.
        """
        data = self._run(file_path)

        video_streams = []
        audio_streams = []
        subtitle_streams = []
        for stream in data.get("streams", []) or []:
            codec_type = stream.get("codec_type")
            tags = stream.get("tags", {}) or {}
            disposition = stream.get("disposition", {}) or {}
            if codec_type == "video":
                video_streams.append(VideoStream(
                    codec=stream.get("codec_name", "unknown"),
                    width=self._to_int(stream.get("width")) or 0,
                    height=self._to_int(stream.get("height")) or 0,
                    bit_depth=parse_bit_depth(stream.get("pix_fmt"), stream.get("bits_per_raw_sample")),
                    avg_frame_rate=stream.get("avg_frame_rate", "0/0"),
                    r_frame_rate=stream.get("r_frame_rate", "0/0"),
                    is_default=bool(disposition.get("default")),
                    type_index=len(video_streams),
                    attached_pic=bool(disposition.get("attached_pic")),
                ))
            elif codec_type == "audio":
                audio_streams.append(MediaStream(
                    codec=stream.get("codec_name", "unknown"),
                    language=tags.get("language"),
                    type_index=len(audio_streams),
                ))
            elif codec_type == "subtitle":
                subtitle_streams.append(MediaStream(
                    codec=stream.get("codec_name", "unknown"),
                    language=tags.get("language"),
                    type_index=len(subtitle_streams),
                ))

        fmt = data.get("format", {}) or {}
        fmt_tags = fmt.get("tags", {}) or {}
        metadata = StreamMetadata(
            video_streams=video_streams,
            audio_streams=audio_streams,
            subtitle_streams=subtitle_streams,
            format_name=fmt.get("format_name", ""),
            size_bytes=self._to_int(fmt.get("size")),
            muxing_app=fmt_tags.get("muxing_app") or fmt_tags.get("encoder"),
            major_brand=fmt_tags.get("major_brand"),
            compatible_brands=fmt_tags.get("compatible_brands"),
        )
        self.logger.debug(
            f"PROBE: {file_path.name} format={metadata.format_name} "
            f"video={len(video_streams)} audio={len(audio_streams)} subs={len(subtitle_streams)}"
        )
        return metadata
