import subprocess
import re
import logging
import shutil
import time
import threading
import queue
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple
from pydantic import BaseModel, ConfigDict
from av1janitor.domain.errors import EncoderNotFoundError, UnsupportedMediaError
from av1janitor.domain.models import HeuristicDecision, StreamMetadata, SurfaceFormat

# Bumped whenever the argument grammar below changes.
COMMAND_VERSION = "av1-qsv-1"

TEMP_MARKER = ".av1-tmp"
TEMP_SUFFIX = f"{TEMP_MARKER}.mkv"

QSV_DEVICE = "qsv=hw"
QSV_VAAPI_DEVICE = "qsv=hw,child_device_type=vaapi"

FFMPEG_SEARCH_PATHS = (
    "/usr/bin/ffmpeg",
    "/usr/local/bin/ffmpeg",
    "/opt/ffmpeg/bin/ffmpeg",
    "/snap/bin/ffmpeg",
)
MIN_FFMPEG_MAJOR = 8


def temp_output_path(source: Path) -> Path:
    return source.with_name(f"{source.name}{TEMP_SUFFIX}")


class TranscodeParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_path: Path
    output_path: Path
    video_stream_index: int
    quality: int
    surface: SurfaceFormat
    webrip_like: bool = False
    excluded_languages: Tuple[str, ...] = ()

    @classmethod
    def from_metadata(
        cls,
        source: Path,
        meta: StreamMetadata,
        decision: HeuristicDecision,
        excluded_languages: Sequence[str] = (),
    ) -> "TranscodeParams":
        stream = meta.selected_video_stream()
        if stream is None:
            raise UnsupportedMediaError(f"No video stream found in {source.name}")
        if decision.quality is None or decision.surface is None:
            raise ValueError(f"Decision for {source.name} carries no encode settings")
        return cls(
            source_path=source,
            output_path=temp_output_path(source),
            video_stream_index=stream.type_index,
            quality=decision.quality,
            surface=decision.surface,
            webrip_like=decision.webrip_like,
            excluded_languages=tuple(excluded_languages),
        )


def detect_hw_device(dri_dir: Path = Path("/dev/dri")) -> str:
    """QSV on top of VAAPI when a DRM render node is present, plain QSV otherwise."""
    try:
        has_render_node = any(p.name.startswith("renderD") for p in dri_dir.iterdir())
    except OSError:
        has_render_node = False
    return QSV_VAAPI_DEVICE if has_render_node else QSV_DEVICE


def build_command(params: TranscodeParams, hw_device: str) -> List[str]:
    """Constructs the ffmpeg arguments (without the binary) for one encode."""
    cmd = [
        "-y",
        "-v", "verbose",
        "-stats",
        "-benchmark",
        "-benchmark_all",
        "-hwaccel", "none",
        "-init_hw_device", hw_device,
        "-filter_hw_device", "hw",
        "-analyzeduration", "50M",
        "-probesize", "50M",
    ]
    if params.webrip_like:
        cmd.extend(["-fflags", "+genpts", "-copyts", "-start_at_zero"])

    cmd.extend(["-i", str(params.source_path)])

    # Everything except video and attachments, then the one selected video stream
    cmd.extend([
        "-map", "0",
        "-map", "-0:v",
        "-map", "-0:t",
        "-map", f"0:v:{params.video_stream_index}",
    ])
    for lang in params.excluded_languages:
        cmd.extend(["-map", f"-0:a:m:language:{lang}"])
        cmd.extend(["-map", f"-0:s:m:language:{lang}"])
    cmd.extend(["-map_chapters", "0"])

    if params.webrip_like:
        cmd.extend(["-vsync", "0", "-avoid_negative_ts", "make_zero"])

    cmd.extend([
        "-vf:v:0",
        f"pad=ceil(iw/2)*2:ceil(ih/2)*2,setsar=1,format={params.surface.value},hwupload=extra_hw_frames=64",
        "-c:v:0", "av1_qsv",
        "-global_quality:v:0", str(params.quality),
        "-preset:v:0", "medium",
        "-look_ahead", "1",
        "-c:a", "copy",
        "-c:s", "copy",
        "-max_muxing_queue_size", "2048",
        "-map_metadata", "0",
        "-f", "matroska",
        "-movflags", "+faststart",
        str(params.output_path),
    ])
    return cmd


class ProgressInfo(BaseModel):
    frame: int
    fps: float = 0.0
    size_bytes: int = 0
    time_seconds: float = 0.0
    speed: float = 0.0


_SIZE_UNITS = {
    "b": 1,
    "kb": 1024,
    "kib": 1024,
    "mb": 1024 ** 2,
    "mib": 1024 ** 2,
    "gb": 1024 ** 3,
    "gib": 1024 ** 3,
}

_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_SIZE_RE = re.compile(r"size=\s*(\d+(?:\.\d+)?)\s*([KMG]i?B|B)", re.IGNORECASE)
_TIME_RE = re.compile(r"time=\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")


def parse_progress_line(line: str) -> Optional[ProgressInfo]:
    """Parses an ffmpeg stats line (frame=... fps=... size=... time=... speed=...).

    Returns None for anything that is not a progress line with a frame number.
    Missing or N/A fields default to zero.
    """
    frame_match = _FRAME_RE.search(line)
    if not frame_match:
        return None
    frame = int(frame_match.group(1))
    if frame <= 0:
        return None

    fps = 0.0
    match = _FPS_RE.search(line)
    if match:
        try:
            fps = float(match.group(1))
        except ValueError:
            fps = 0.0

    size_bytes = 0
    match = _SIZE_RE.search(line)
    if match:
        size_bytes = int(float(match.group(1)) * _SIZE_UNITS[match.group(2).lower()])

    time_seconds = 0.0
    match = _TIME_RE.search(line)
    if match:
        h, m, s = match.groups()
        time_seconds = int(h) * 3600 + int(m) * 60 + float(s)

    speed = 0.0
    match = _SPEED_RE.search(line)
    if match:
        try:
            speed = float(match.group(1))
        except ValueError:
            speed = 0.0

    return ProgressInfo(frame=frame, fps=fps, size_bytes=size_bytes, time_seconds=time_seconds, speed=speed)


class ExecutionState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    TIMED_OUT = "TIMED_OUT"
    FAILED = "FAILED"


class ExecutionResult(BaseModel):
    state: ExecutionState
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0
    stderr_tail: str = ""
    last_progress: Optional[ProgressInfo] = None

    @property
    def exited_cleanly(self) -> bool:
        return self.state == ExecutionState.COMPLETED and self.exit_code == 0


class FFmpegAdapter:
    """Runs one ffmpeg encode with a wall-clock timeout and progress parsing."""

    def __init__(self, ffmpeg_path: str = "ffmpeg"):
        self.ffmpeg_path = ffmpeg_path
        self.logger = logging.getLogger(__name__)

    def _stop(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def run(
        self,
        args: List[str],
        timeout_seconds: float,
        max_stderr_lines: int = 1000,
        progress_callback: Optional[Callable[[ProgressInfo], None]] = None,
    ) -> ExecutionResult:
        """Executes ffmpeg and blocks until it exits or the deadline passes."""
        cmd = [self.ffmpeg_path, *args]
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        start_time = time.monotonic()
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                universal_newlines=True,
                errors="replace",
                bufsize=1
            )
        except OSError as e:
            self.logger.error(f"FFMPEG_SPAWN_FAILED: {e}")
            return ExecutionResult(state=ExecutionState.FAILED, stderr_tail=f"Failed to start ffmpeg: {e}")

        state = ExecutionState.RUNNING
        tail: "deque[str]" = deque(maxlen=max_stderr_lines)
        last_progress: Optional[ProgressInfo] = None
        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            if not process.stderr:
                output_queue.put(None)
                return
            for line in process.stderr:
                output_queue.put(line)
            output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        def _handle(line: str) -> None:
            nonlocal last_progress
            text = line.rstrip()
            if not text:
                return
            progress = parse_progress_line(text) if "frame=" in text else None
            if progress is None:
                tail.append(text)
                return
            last_progress = progress
            if progress_callback:
                try:
                    progress_callback(progress)
                except Exception as e:
                    self.logger.warning(f"Progress callback failed: {e}")

        deadline = start_time + timeout_seconds
        while True:
            if time.monotonic() >= deadline:
                self.logger.warning(f"FFMPEG_TIMEOUT: killing pid {process.pid} after {timeout_seconds:.0f}s")
                self._stop(process)
                state = ExecutionState.TIMED_OUT
                break

            try:
                line = output_queue.get(timeout=0.1)
            except queue.Empty:
                if process.poll() is not None:
                    break
                continue

            if line is None:
                break
            _handle(line)

        if state == ExecutionState.RUNNING:
            process.wait()
            reader_thread.join(timeout=1)
            state = ExecutionState.COMPLETED

        # Lines read before the process was reaped
        while True:
            try:
                line = output_queue.get_nowait()
            except queue.Empty:
                break
            if line is not None:
                _handle(line)

        duration = time.monotonic() - start_time
        exit_code = process.returncode
        self.logger.debug(f"FFMPEG_END: state={state.value} code={exit_code} elapsed={duration:.2f}s")
        return ExecutionResult(
            state=state,
            exit_code=exit_code,
            duration_seconds=duration,
            stderr_tail="\n".join(tail),
            last_progress=last_progress,
        )


class FFmpegInstallation(BaseModel):
    ffmpeg_path: str
    ffprobe_path: str
    version: str
    has_av1_qsv: bool


def extract_version(output: str) -> str:
    first_line = output.strip().splitlines()[0] if output.strip() else ""
    match = re.search(r"version\s+(\S+)", first_line)
    if not match:
        raise EncoderNotFoundError(f"Could not parse ffmpeg version from: {first_line!r}")
    return match.group(1)


def is_version_supported(version: str) -> bool:
    """Release builds must be 8.x or newer; git snapshots (N-...) are accepted."""
    match = re.match(r"n?(\d+)\.", version)
    if not match:
        return version.startswith("N-")
    return int(match.group(1)) >= MIN_FFMPEG_MAJOR


def _candidate_paths(explicit: Optional[str]) -> List[str]:
    if explicit:
        return [explicit]
    candidates = []
    found = shutil.which("ffmpeg")
    if found:
        candidates.append(found)
    candidates.extend(p for p in FFMPEG_SEARCH_PATHS if p not in candidates)
    return candidates


def _find_ffprobe(ffmpeg_path: str) -> Optional[str]:
    sibling = Path(ffmpeg_path).with_name("ffprobe")
    if sibling.exists():
        return str(sibling)
    return shutil.which("ffprobe")


def locate_ffmpeg(explicit: Optional[str] = None) -> FFmpegInstallation:
    """Finds a usable ffmpeg/ffprobe pair with the av1_qsv encoder."""
    logger = logging.getLogger(__name__)
    problems = []
    for candidate in _candidate_paths(explicit):
        if not Path(candidate).exists():
            continue
        try:
            version_res = subprocess.run([candidate, "-version"], capture_output=True, text=True)
            if version_res.returncode != 0:
                problems.append(f"{candidate}: -version exited {version_res.returncode}")
                continue
            version = extract_version(version_res.stdout)
            if not is_version_supported(version):
                problems.append(f"{candidate}: version {version} is too old (need {MIN_FFMPEG_MAJOR}.0+)")
                continue
            encoders_res = subprocess.run(
                [candidate, "-hide_banner", "-encoders"], capture_output=True, text=True
            )
        except (OSError, EncoderNotFoundError) as e:
            problems.append(f"{candidate}: {e}")
            continue

        if "av1_qsv" not in encoders_res.stdout:
            problems.append(f"{candidate}: av1_qsv encoder not available")
            continue

        ffprobe = _find_ffprobe(candidate)
        if not ffprobe:
            problems.append(f"{candidate}: no ffprobe found next to it or on PATH")
            continue

        logger.info(f"FFMPEG_FOUND: {candidate} (version {version}, ffprobe {ffprobe})")
        return FFmpegInstallation(ffmpeg_path=candidate, ffprobe_path=ffprobe, version=version, has_av1_qsv=True)

    detail = "; ".join(problems) if problems else "no ffmpeg binary found"
    raise EncoderNotFoundError(f"No usable ffmpeg with av1_qsv: {detail}")
