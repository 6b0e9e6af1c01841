import os
import time
from pathlib import Path
from typing import Generator, List, Optional, Tuple
from pydantic import BaseModel
from av1janitor.domain.models import BACKUP_INFIX, SKIP_MARKER_SUFFIX, VideoFile, skip_marker_path
from av1janitor.infrastructure.ffmpeg import TEMP_MARKER


class ScanStats(BaseModel):
    files_found: int = 0
    candidates: int = 0
    ignored_small: int = 0
    ignored_marker: int = 0
    ignored_unsettled: int = 0


class FileScanner:
    """Recursively scans for video files in a directory."""

    # Reasons returned by evaluate()
    SMALL = "small"
    MARKER = "marker"
    UNSETTLED = "unsettled"
    NOT_MEDIA = "not_media"
    MISSING = "missing"

    def __init__(self, extensions: List[str], min_size_bytes: int = 0, settle_seconds: float = 0.0):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]
        self.min_size_bytes = min_size_bytes
        self.settle_seconds = settle_seconds

    def is_media_name(self, file_name: str) -> bool:
        if TEMP_MARKER + "." in file_name or BACKUP_INFIX in file_name:
            return False
        if file_name.endswith(SKIP_MARKER_SUFFIX):
            return False
        return Path(file_name).suffix.lower() in self.extensions

    def evaluate(self, file_path: Path, now: Optional[float] = None) -> Tuple[Optional[VideoFile], Optional[str]]:
        """Checks a single path; returns (candidate, None) or (None, reason)."""
        if not self.is_media_name(file_path.name):
            return None, self.NOT_MEDIA
        try:
            st = file_path.stat()
        except OSError:
            return None, self.MISSING
        if not file_path.is_file():
            return None, self.NOT_MEDIA
        if skip_marker_path(file_path).exists():
            return None, self.MARKER
        if st.st_size < self.min_size_bytes:
            return None, self.SMALL
        now = time.time() if now is None else now
        if self.settle_seconds > 0 and now - st.st_mtime < self.settle_seconds:
            return None, self.UNSETTLED
        return VideoFile(path=file_path, size_bytes=st.st_size, mtime=st.st_mtime), None

    def scan(self, root_dir: Path, stats: Optional[ScanStats] = None) -> Generator[VideoFile, None, None]:
        """Scans the directory and yields candidate VideoFile objects.

        Temp outputs, backups and marked files are never yielded; small and
        still-changing files are counted in `stats`.
        """
        stats = stats if stats is not None else ScanStats()
        now = time.time()
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            # Ensure deterministic traversal: sort directories and files
            dirs.sort()
            files.sort()

            for file_name in files:
                if not self.is_media_name(file_name):
                    continue
                stats.files_found += 1

                video_file, reason = self.evaluate(root_path / file_name, now=now)
                if video_file is None:
                    if reason == self.SMALL:
                        stats.ignored_small += 1
                    elif reason == self.MARKER:
                        stats.ignored_marker += 1
                    elif reason == self.UNSETTLED:
                        stats.ignored_unsettled += 1
                    continue

                stats.candidates += 1
                yield video_file
