"""Size gate and the swap of a finished encode into place.

The gate compares the encode against the original with exact arithmetic; a
result of exactly ``factor * original`` passes. Rejected encodes leave the
original untouched and mark it so discovery never picks it up again.
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional
from pydantic import BaseModel
from av1janitor.domain.errors import AtomicReplaceError, SizeGateRejected
from av1janitor.domain.models import BACKUP_INFIX, explanation_path, skip_marker_path


class SizeGateResult(BaseModel):
    passed: bool
    original_bytes: int
    new_bytes: int
    ratio: float
    threshold: float

    @property
    def savings_ratio(self) -> float:
        return 1.0 - self.ratio


def evaluate_size_gate(original_bytes: int, new_bytes: int, factor: float) -> SizeGateResult:
    if original_bytes <= 0:
        raise ValueError(f"original size must be positive, got {original_bytes}")
    # str() keeps 0.9 as 0.9 instead of its binary expansion
    limit = Decimal(str(factor)) * Decimal(original_bytes)
    return SizeGateResult(
        passed=Decimal(new_bytes) <= limit,
        original_bytes=original_bytes,
        new_bytes=new_bytes,
        ratio=new_bytes / original_bytes,
        threshold=factor,
    )


def check_size_gate(original_path: Path, new_path: Path, factor: float) -> SizeGateResult:
    """Size gate on the files as they are on disk."""
    return evaluate_size_gate(original_path.stat().st_size, new_path.stat().st_size, factor)


def backup_path_for(source: Path) -> Path:
    return source.with_name(f"{source.name}{BACKUP_INFIX}{uuid.uuid4()}")


class PostProcessor:
    """Applies the outcome of an encode to the filesystem."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def cleanup_temp(self, temp_path: Optional[Path]) -> None:
        if temp_path is None:
            return
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove temp output {temp_path}: {e}")

    def write_marker(self, source: Path, explanation: str) -> None:
        """Writes `<name>.av1skip` and `<name>.why.txt` next to the source."""
        stamp = datetime.now(timezone.utc).isoformat()
        skip_marker_path(source).write_text(f"Created: {stamp}\n", encoding="utf-8")
        explanation_path(source).write_text(explanation.rstrip() + "\n", encoding="utf-8")
        self.logger.info(f"MARKER_WRITTEN: {source.name}")

    def reject(self, source: Path, temp_path: Path, result: SizeGateResult) -> SizeGateRejected:
        """Discards the encode, marks the source, and returns the error to record."""
        self.cleanup_temp(temp_path)
        error = SizeGateRejected(result.ratio, result.threshold)
        self.write_marker(
            source,
            f"{error}\n"
            f"Original size: {result.original_bytes} bytes\n"
            f"Encoded size: {result.new_bytes} bytes\n"
            f"Ratio: {result.ratio:.4f} (threshold {result.threshold})",
        )
        self.logger.info(f"SIZE_GATE_REJECT: {source.name} ratio={result.ratio:.4f} threshold={result.threshold}")
        return error

    def replace_atomic(self, source: Path, temp_path: Path) -> None:
        """source -> backup, temp -> source, then drop the backup.

        If the second rename fails the backup is renamed back and the temp
        output removed. The original is never left under its backup name
        without a CRITICAL log naming where it is.
        """
        backup = backup_path_for(source)
        try:
            os.rename(source, backup)
        except OSError as e:
            self.cleanup_temp(temp_path)
            raise AtomicReplaceError(f"Could not move original aside: {e}") from e

        try:
            os.rename(temp_path, source)
        except OSError as e:
            rolled_back = True
            try:
                os.rename(backup, source)
            except OSError as restore_err:
                rolled_back = False
                self.logger.critical(
                    f"ROLLBACK_FAILED: original of {source} is at {backup}: {restore_err}"
                )
            self.cleanup_temp(temp_path)
            raise AtomicReplaceError(
                f"Could not move encode into place: {e}",
                backup_path=None if rolled_back else backup,
                rolled_back=rolled_back,
            ) from e

        try:
            backup.unlink()
        except OSError as e:
            self.logger.warning(f"Failed to delete backup at {backup}: {e}")
        self.logger.info(f"REPLACED: {source.name}")
