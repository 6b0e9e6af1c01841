import logging
import os
from pathlib import Path
from typing import List
from av1janitor.domain.models import BACKUP_INFIX, EXPLANATION_SUFFIX, SKIP_MARKER_SUFFIX
from av1janitor.infrastructure.ffmpeg import TEMP_SUFFIX

class HousekeepingService:
    """Startup cleanup of leftovers from earlier (possibly crashed) runs."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _remove_matching(self, directory: Path, suffixes) -> int:
        removed = 0
        for root, dirs, files in os.walk(directory):
            for file in files:
                if file.endswith(suffixes):
                    path = Path(root) / file
                    try:
                        path.unlink()
                        removed += 1
                    except OSError as e:
                        self.logger.warning(f"Could not remove {path}: {e}")
        return removed

    def cleanup_temp_files(self, directory: Path) -> int:
        """Recursively removes stale encoder temp outputs."""
        removed = self._remove_matching(directory, (TEMP_SUFFIX,))
        if removed:
            self.logger.info(f"HOUSEKEEPING: removed {removed} stale temp file(s) under {directory}")
        return removed

    def cleanup_markers(self, directory: Path) -> int:
        """Recursively removes skip markers and their explanations."""
        removed = self._remove_matching(directory, (SKIP_MARKER_SUFFIX, EXPLANATION_SUFFIX))
        if removed:
            self.logger.info(f"HOUSEKEEPING: removed {removed} marker file(s) under {directory}")
        return removed

    def find_stray_backups(self, directory: Path) -> List[Path]:
        """Backups left by an interrupted replace. Reported, never deleted."""
        found = []
        for root, dirs, files in os.walk(directory):
            for file in sorted(files):
                if BACKUP_INFIX in file:
                    path = Path(root) / file
                    self.logger.warning(f"STRAY_BACKUP: {path} (left by an interrupted replace; restore or delete manually)")
                    found.append(path)
        return found
