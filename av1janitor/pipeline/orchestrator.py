"""Scheduler and per-file worker pipeline.

Coordinates discovery, de-duplication, bounded dispatch and the lifecycle of
every job: probe -> heuristics -> encode -> size gate -> replace or reject.
Publishes events on the EventBus and persists each job through the JobStore.

Key responsibilities:
- Walk the watched roots (single pass) or follow watchdog events plus
  periodic rescans (continuous mode)
- Never run two jobs for the same source (in-flight set)
- Block dispatch while all `concurrent` slots are busy (no unbounded queue)
- Turn every per-file error into a terminal job status; the dispatcher keeps
  going no matter what a single file does
- Graceful shutdown: stop dispatching, let running encodes finish
"""

import threading
import concurrent.futures
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple
from pydantic import BaseModel, Field
from av1janitor.config.models import AppConfig, validate_config
from av1janitor.domain import heuristics
from av1janitor.domain.errors import (
    ConfigValidationError,
    EncodeProcessError,
    EncodeTimeoutError,
    JanitorError,
    UnsupportedMediaError,
)
from av1janitor.domain.events import (
    DiscoveryFinished,
    DiscoveryStarted,
    JobCompleted,
    JobCreated,
    JobFailed,
    JobProgressUpdated,
    JobSkipped,
    JobStarted,
    ProcessingFinished,
    ShutdownRequested,
)
from av1janitor.domain.models import Job, JobStatus, VideoFile
from av1janitor.infrastructure.event_bus import EventBus
from av1janitor.infrastructure.ffmpeg import (
    COMMAND_VERSION,
    QSV_DEVICE,
    ExecutionState,
    FFmpegAdapter,
    ProgressInfo,
    TranscodeParams,
    build_command,
    temp_output_path,
)
from av1janitor.infrastructure.ffprobe import FFprobeAdapter
from av1janitor.infrastructure.file_scanner import FileScanner, ScanStats
from av1janitor.infrastructure.job_store import JobStore
from av1janitor.infrastructure.watcher import DirectoryWatcher
from av1janitor.pipeline.postprocess import PostProcessor, check_size_gate


class InFlightSet:
    """Lock-guarded set of source paths currently owned by a worker."""

    def __init__(self):
        self._items: Set[Path] = set()
        self._lock = threading.Lock()

    def try_add(self, key: Path) -> bool:
        with self._lock:
            if key in self._items:
                return False
            self._items.add(key)
            return True

    def discard(self, key: Path) -> None:
        with self._lock:
            self._items.discard(key)

    def __contains__(self, key: Path) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class RunSummary(BaseModel):
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    ignored_in_flight: int = 0
    ignored_known: int = 0
    bytes_saved: int = 0
    discovery: ScanStats = Field(default_factory=ScanStats)

    def record(self, job: Job) -> None:
        if job.status == JobStatus.SUCCESS:
            self.succeeded += 1
            if job.original_bytes and job.new_bytes is not None:
                self.bytes_saved += job.original_bytes - job.new_bytes
        elif job.status == JobStatus.FAILED:
            self.failed += 1
        elif job.status == JobStatus.SKIPPED:
            self.skipped += 1


class Orchestrator:
    """Transcoding scheduler.

    Args:
        config: Validated AppConfig snapshot used until the provider supplies a new one.
        event_bus: EventBus for job lifecycle events.
        file_scanner: FileScanner for discovering candidates.
        ffprobe_adapter: FFprobeAdapter for stream metadata.
        ffmpeg_adapter: FFmpegAdapter executing the encode.
        post_processor: PostProcessor for size gate outcomes.
        job_store: JobStore persisting job records.
        hw_device: `-init_hw_device` value (see detect_hw_device).
        config_provider: Optional callable returning a fresh AppConfig; consulted
            once per cycle, an invalid result keeps the previous snapshot.
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        file_scanner: FileScanner,
        ffprobe_adapter: FFprobeAdapter,
        ffmpeg_adapter: FFmpegAdapter,
        post_processor: PostProcessor,
        job_store: JobStore,
        hw_device: str = QSV_DEVICE,
        config_provider: Optional[Callable[[], AppConfig]] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.file_scanner = file_scanner
        self.ffprobe_adapter = ffprobe_adapter
        self.ffmpeg_adapter = ffmpeg_adapter
        self.post_processor = post_processor
        self.job_store = job_store
        self.hw_device = hw_device
        self.config_provider = config_provider
        self.logger = logging.getLogger(__name__)

        self.max_workers = config.general.concurrent
        self._in_flight = InFlightSet()
        self._slots = threading.BoundedSemaphore(self.max_workers)
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._futures: Set[concurrent.futures.Future] = set()
        self._futures_lock = threading.Lock()
        self._shutdown_event = threading.Event()

        # Files skipped without a marker (probe failure, already AV1, dry run);
        # not re-dispatched until their size or mtime changes.
        self._known: Dict[Path, Tuple[int, float]] = {}
        self._known_lock = threading.Lock()

        self._summary = RunSummary()
        self._summary_lock = threading.Lock()

    # -- configuration ---------------------------------------------------

    def _refresh_config(self) -> AppConfig:
        if self.config_provider is None:
            return self.config
        try:
            fresh = validate_config(self.config_provider())
        except (ConfigValidationError, OSError) as e:
            self.logger.warning(f"CONFIG_RELOAD_REJECTED: {e} (keeping previous configuration)")
            return self.config

        if fresh != self.config:
            self.logger.info("CONFIG_RELOADED")
            general = fresh.general
            self.file_scanner = FileScanner(
                general.media_extensions, general.min_file_size_bytes, general.settle_seconds
            )
            if general.concurrent != self.max_workers:
                self.logger.warning(
                    f"concurrent={general.concurrent} takes effect after restart (running with {self.max_workers})"
                )
            self.config = fresh
        return self.config

    def _roots(self, config: AppConfig) -> List[Path]:
        return [Path(d).expanduser() for d in config.general.watched_directories]

    # -- bookkeeping -----------------------------------------------------

    def _remember(self, path: Path) -> None:
        try:
            st = path.stat()
        except OSError:
            return
        with self._known_lock:
            self._known[path] = (st.st_size, st.st_mtime)

    def _is_known(self, video_file: VideoFile) -> bool:
        with self._known_lock:
            seen = self._known.get(video_file.path)
        return seen == (video_file.size_bytes, video_file.mtime)

    def _ensure_executor(self) -> concurrent.futures.ThreadPoolExecutor:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="janitor-worker"
            )
        return self._executor

    def _track(self, future: concurrent.futures.Future) -> None:
        with self._futures_lock:
            self._futures.add(future)

        def _untrack(done: concurrent.futures.Future):
            with self._futures_lock:
                self._futures.discard(done)

        future.add_done_callback(_untrack)

    @property
    def in_flight(self) -> InFlightSet:
        return self._in_flight

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def summary(self) -> RunSummary:
        with self._summary_lock:
            return self._summary.model_copy(deep=True)

    # -- dispatch --------------------------------------------------------

    def submit(self, video_file: VideoFile, config: Optional[AppConfig] = None) -> Optional[Job]:
        """Creates and dispatches a job, blocking while all slots are busy.

        Returns None when the source is already in flight or shutdown was
        requested before a slot became free.
        """
        config = config or self.config
        source = video_file.path
        if self.shutdown_requested:
            return None
        if not self._in_flight.try_add(source):
            self.logger.debug(f"DISPATCH_SKIP: {source.name} (in flight)")
            return None

        while not self._slots.acquire(timeout=0.5):
            if self.shutdown_requested:
                self._in_flight.discard(source)
                return None
        if self.shutdown_requested:
            self._slots.release()
            self._in_flight.discard(source)
            return None

        try:
            job = Job.create(source, self.job_store.next_attempt(source), original_bytes=video_file.size_bytes)
            job.output_path = temp_output_path(source)
            self.job_store.save(job)
        except OSError as e:
            self.logger.error(f"DISPATCH_FAILED: {source}: could not persist job record: {e}")
            self._slots.release()
            self._in_flight.discard(source)
            return None

        self.event_bus.publish(JobCreated(job=job))
        self.logger.info(f"DISPATCH: {source.name} job={job.id}")
        try:
            future = self._ensure_executor().submit(self._process_file, job, video_file, config)
        except RuntimeError as e:
            # Executor already shut down
            self.logger.error(f"DISPATCH_FAILED: {source}: {e}")
            self._slots.release()
            self._in_flight.discard(source)
            self._finish(job, JobStatus.FAILED, f"Could not schedule worker: {e}")
            return None
        self._track(future)
        return job

    def _dispatch(self, video_file: VideoFile, config: AppConfig) -> None:
        if self._is_known(video_file):
            with self._summary_lock:
                self._summary.ignored_known += 1
            return
        if video_file.path in self._in_flight:
            with self._summary_lock:
                self._summary.ignored_in_flight += 1
            return
        if self.submit(video_file, config) is not None:
            with self._summary_lock:
                self._summary.dispatched += 1

    def _scan_pass(self, config: AppConfig) -> ScanStats:
        stats = ScanStats()
        for root in self._roots(config):
            if self.shutdown_requested:
                break
            self.event_bus.publish(DiscoveryStarted(directory=root))
            for video_file in self.file_scanner.scan(root, stats):
                if self.shutdown_requested:
                    break
                self._dispatch(video_file, config)

        self.logger.info(
            f"Discovery finished: found={stats.files_found}, candidates={stats.candidates}, "
            f"ignored_small={stats.ignored_small}, ignored_marker={stats.ignored_marker}, "
            f"ignored_unsettled={stats.ignored_unsettled}"
        )
        with self._summary_lock:
            self._summary.discovery = stats
            ignored_in_flight = self._summary.ignored_in_flight
        self.event_bus.publish(DiscoveryFinished(
            files_found=stats.files_found,
            files_to_process=stats.candidates,
            ignored_small=stats.ignored_small,
            ignored_marker=stats.ignored_marker,
            ignored_unsettled=stats.ignored_unsettled,
            ignored_in_flight=ignored_in_flight,
        ))
        return stats

    def wait_for_idle(self) -> None:
        while True:
            with self._futures_lock:
                pending = list(self._futures)
            if not pending:
                return
            concurrent.futures.wait(pending)

    def run_once(self) -> RunSummary:
        """One pass over every root; returns after all dispatched jobs end."""
        config = self._refresh_config()
        with self._summary_lock:
            self._summary = RunSummary()
        self._scan_pass(config)
        self.wait_for_idle()
        self.event_bus.publish(ProcessingFinished())
        return self.summary()

    def _watch_scope(self, config: AppConfig) -> Tuple[Tuple[Path, ...], Tuple[str, ...]]:
        return tuple(self._roots(config)), tuple(config.general.media_extensions)

    def _new_watcher(self, config: AppConfig) -> DirectoryWatcher:
        return DirectoryWatcher(self._roots(config), self.file_scanner.is_media_name)

    def _rewatch(self, watcher: DirectoryWatcher, config: AppConfig) -> DirectoryWatcher:
        """Replaces the watcher after a reload changed its roots or extensions."""
        leftover = watcher.drain()
        watcher.stop()
        fresh = self._new_watcher(config)
        fresh.start()
        fresh.requeue(leftover)
        self.logger.info(f"WATCH_RESTART: {len(config.general.watched_directories)} root(s)")
        return fresh

    def run_forever(self, watcher: Optional[DirectoryWatcher] = None, poll_seconds: float = 1.0) -> RunSummary:
        """Initial pass, then change events and periodic rescans until shutdown.

        A watcher passed in by the caller is used as is; one built here is
        rebuilt when a config reload changes the roots or media extensions.
        """
        config = self._refresh_config()
        owns_watcher = watcher is None
        if owns_watcher:
            watcher = self._new_watcher(config)
        watch_scope = self._watch_scope(config)
        watcher.start()
        try:
            self._scan_pass(config)
            next_scan = time.monotonic() + config.general.scan_interval_seconds
            while not self.shutdown_requested:
                self._shutdown_event.wait(poll_seconds)
                if self.shutdown_requested:
                    break

                retry = []
                for path in watcher.drain():
                    video_file, reason = self.file_scanner.evaluate(path)
                    if video_file is not None:
                        self._dispatch(video_file, config)
                    elif reason == FileScanner.UNSETTLED:
                        retry.append(path)
                watcher.requeue(retry)

                if time.monotonic() >= next_scan:
                    config = self._refresh_config()
                    if owns_watcher and self._watch_scope(config) != watch_scope:
                        watcher = self._rewatch(watcher, config)
                        watch_scope = self._watch_scope(config)
                    self._scan_pass(config)
                    next_scan = time.monotonic() + config.general.scan_interval_seconds
        finally:
            watcher.stop()
            self.logger.info(f"Waiting for {len(self._in_flight)} running job(s) to finish")
            self.wait_for_idle()
        self.event_bus.publish(ProcessingFinished())
        return self.summary()

    def request_shutdown(self) -> None:
        """Stops dispatching; running encodes are allowed to finish."""
        if self._shutdown_event.is_set():
            return
        self.logger.info("SHUTDOWN_REQUESTED: no new jobs will be started")
        self._shutdown_event.set()
        self.event_bus.publish(ShutdownRequested())

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # -- worker ----------------------------------------------------------

    def _finish(self, job: Job, status: JobStatus, reason: Optional[str] = None, new_bytes: Optional[int] = None) -> None:
        job.finish(status, reason=reason, new_bytes=new_bytes)
        try:
            self.job_store.save(job)
        except OSError as e:
            self.logger.error(f"JOB_SAVE_FAILED: {job.id}: {e}")

        if status == JobStatus.SUCCESS:
            self.event_bus.publish(JobCompleted(job=job))
        elif status == JobStatus.SKIPPED:
            self.event_bus.publish(JobSkipped(job=job, reason=reason or ""))
        else:
            self.event_bus.publish(JobFailed(job=job, error_message=reason or ""))

        with self._summary_lock:
            self._summary.record(job)

    def _process_file(self, job: Job, video_file: VideoFile, config: AppConfig) -> None:
        """Runs one job to a terminal state. Never raises for per-file problems."""
        filename = video_file.path.name
        start_time = time.monotonic()
        self.logger.info(f"PROCESS_START: {filename} (thread {threading.current_thread().name})")

        status = JobStatus.FAILED
        reason: Optional[str] = None
        new_bytes: Optional[int] = None
        try:
            job.start()
            self._save_quietly(job)
            self.event_bus.publish(JobStarted(job=job))

            new_bytes, skip_reason = self._transcode(job, video_file, config)
            if skip_reason:
                status, reason = JobStatus.SKIPPED, skip_reason
            else:
                status = JobStatus.SUCCESS
        except JanitorError as e:
            status, reason = e.status, str(e)
            self.post_processor.cleanup_temp(job.output_path)
        except OSError as e:
            status, reason = JobStatus.FAILED, f"I/O error: {e}"
            self.post_processor.cleanup_temp(job.output_path)
        except Exception as e:
            # Log exception but don't crash the worker
            self.logger.exception(f"Exception processing {filename}: {e}")
            status, reason = JobStatus.FAILED, f"Unexpected error: {e}"
            self.post_processor.cleanup_temp(job.output_path)
        finally:
            try:
                self._finish(job, status, reason=reason, new_bytes=new_bytes)
            finally:
                self._in_flight.discard(video_file.path)
                self._slots.release()
                elapsed = time.monotonic() - start_time
                detail = f" reason={reason!r}" if reason else ""
                self.logger.info(f"PROCESS_END: {filename} status={status.value}{detail} elapsed={elapsed:.2f}s")

    def _save_quietly(self, job: Job) -> None:
        try:
            self.job_store.save(job)
        except OSError as e:
            self.logger.warning(f"JOB_SAVE_FAILED: {job.id}: {e}")

    def _transcode(self, job: Job, video_file: VideoFile, config: AppConfig) -> Tuple[Optional[int], Optional[str]]:
        """Returns (new_bytes, None) on success or (None, reason) for a plain skip.

        Failures and marker-writing skips are raised as JanitorError.
        """
        source = video_file.path
        general = config.general

        try:
            meta = self.ffprobe_adapter.probe(source)
        except JanitorError:
            self._remember(source)
            raise

        if not meta.has_video():
            self.post_processor.write_marker(source, "No usable video stream")
            raise UnsupportedMediaError(f"No video stream found in {source.name}")

        decision = heuristics.decide(meta, video_file.size_bytes, config)
        if decision.skip:
            self._remember(source)
            return None, decision.reason

        job.webrip_like = decision.webrip_like
        params = TranscodeParams.from_metadata(source, meta, decision, general.excluded_languages)
        args = build_command(params, self.hw_device)
        self.logger.info(
            f"ENCODE_PLAN: {source.name} {meta.selected_video_stream().resolution_label} "
            f"tier={decision.quality_tier.value} q={decision.quality} "
            f"surface={decision.surface.value} webrip={decision.webrip_like} command={COMMAND_VERSION}"
        )

        if general.dry_run:
            self.logger.info(f"DRY_RUN: {self.ffmpeg_adapter.ffmpeg_path} {' '.join(args)}")
            self._remember(source)
            return None, f"Dry run: would encode with q={decision.quality} ({decision.surface.value})"

        temp_path = params.output_path
        result = self.ffmpeg_adapter.run(
            args,
            timeout_seconds=general.encoder_timeout_seconds,
            max_stderr_lines=general.max_stderr_lines,
            progress_callback=self._progress_callback(job, general.progress_save_every_frames),
        )

        if result.state == ExecutionState.TIMED_OUT:
            raise EncodeTimeoutError(general.encoder_timeout_seconds)
        if result.state == ExecutionState.FAILED:
            raise EncodeProcessError("ffmpeg could not be started", None, result.stderr_tail)
        if not result.exited_cleanly:
            raise EncodeProcessError(
                f"ffmpeg exited with code {result.exit_code}", result.exit_code, result.stderr_tail
            )
        if not temp_path.exists() or temp_path.stat().st_size == 0:
            raise EncodeProcessError("ffmpeg exited 0 but produced no output", result.exit_code, result.stderr_tail)

        gate = check_size_gate(source, temp_path, general.size_gate_factor)
        self.logger.info(
            f"SIZE_GATE: {source.name} {gate.original_bytes} -> {gate.new_bytes} "
            f"ratio={gate.ratio:.4f} threshold={gate.threshold} passed={gate.passed}"
        )
        job.original_bytes = gate.original_bytes
        if not gate.passed:
            raise self.post_processor.reject(source, temp_path, gate)

        self.post_processor.replace_atomic(source, temp_path)
        # The replaced file shows up as a change event; it is already done
        self._remember(source)
        return gate.new_bytes, None

    def _progress_callback(self, job: Job, save_every: int) -> Callable[[ProgressInfo], None]:
        last_saved = {"frame": 0}

        def _on_progress(progress: ProgressInfo) -> None:
            job.progress_frame = progress.frame
            job.progress_speed = progress.speed
            job.progress_bytes = progress.size_bytes
            self.event_bus.publish(JobProgressUpdated(
                job=job, frame=progress.frame, speed=progress.speed, size_bytes=progress.size_bytes
            ))
            if progress.frame - last_saved["frame"] >= save_every:
                last_saved["frame"] = progress.frame
                self._save_quietly(job)

        return _on_progress
