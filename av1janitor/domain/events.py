"""Domain events for the transcoding pipeline.

Events flow through the EventBus and decouple the orchestrator from whatever
observes it (CLI summary, logging, an external dashboard reading job files).

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from pydantic import BaseModel
from .models import Job


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    pass


class JobEvent(Event):
    """Base class for events related to a specific job."""

    job: Job


class JobCreated(JobEvent):
    """Emitted when a candidate is dispatched and its PENDING record written."""

    pass


class JobStarted(JobEvent):
    """Emitted when a worker picks the job up (RUNNING)."""

    pass


class JobProgressUpdated(JobEvent):
    """Emitted for each parsed ffmpeg progress line."""

    frame: int
    speed: float = 0.0
    size_bytes: int = 0


class JobCompleted(JobEvent):
    """Emitted when the output replaced the original (SUCCESS)."""

    pass


class JobSkipped(JobEvent):
    """Emitted when a job ends SKIPPED (probe error, size gate, already AV1...)."""

    reason: str


class JobFailed(JobEvent):
    """Emitted when a job ends FAILED."""

    error_message: str


class DiscoveryStarted(Event):
    """Emitted when a watched root is about to be scanned."""

    directory: Path


class DiscoveryFinished(Event):
    """Emitted after a scan pass with summary counters."""

    files_found: int
    files_to_process: int = 0
    ignored_small: int = 0
    ignored_marker: int = 0
    ignored_unsettled: int = 0
    ignored_in_flight: int = 0


class ShutdownRequested(Event):
    """Emitted when graceful shutdown starts (no new dispatch)."""

    pass


class ProcessingFinished(Event):
    """Emitted when a single pass has drained all in-flight jobs."""

    pass
