import logging
import os
from pathlib import Path
from typing import List
from pydantic import ValidationError
from av1janitor.domain.models import Job, source_digest


class JobStore:
    """One JSON record per job id under `jobs_dir`.

    Writes go to `<id>.json.tmp` and are renamed over `<id>.json`, so a reader
    (or a crash) never sees a half-written record. Records are never deleted.
    """

    def __init__(self, jobs_dir: Path):
        self.jobs_dir = Path(jobs_dir)
        self.logger = logging.getLogger(__name__)

    def ensure_dir(self) -> None:
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def save(self, job: Job) -> Path:
        self.ensure_dir()
        target = self.path_for(job.id)
        tmp = target.with_name(f"{target.name}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(job.model_dump_json(indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
        return target

    def load(self, job_id: str) -> Job:
        return Job.model_validate_json(self.path_for(job_id).read_text(encoding="utf-8"))

    def load_all(self) -> List[Job]:
        """All readable records, newest first. Corrupt records are skipped."""
        if not self.jobs_dir.exists():
            return []
        jobs = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            try:
                jobs.append(Job.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                self.logger.warning(f"JOB_RECORD_UNREADABLE: {path.name}: {e}")
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    def next_attempt(self, source_path: Path) -> int:
        """1 + the number of records already written for this source path."""
        if not self.jobs_dir.exists():
            return 1
        return len(list(self.jobs_dir.glob(f"{source_digest(source_path)}-*.json"))) + 1
