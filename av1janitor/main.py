import signal
import typer
from pathlib import Path
from typing import List, Optional
from rich.console import Console
from rich.table import Table
from av1janitor.config.loader import load_config
from av1janitor.config.models import AppConfig, validate_config
from av1janitor.domain.errors import ConfigValidationError, EncoderNotFoundError
from av1janitor.domain.events import JobCompleted, JobFailed, JobSkipped
from av1janitor.infrastructure.logging import setup_logging
from av1janitor.infrastructure.event_bus import EventBus
from av1janitor.infrastructure.file_scanner import FileScanner
from av1janitor.infrastructure.ffprobe import FFprobeAdapter
from av1janitor.infrastructure.ffmpeg import FFmpegAdapter, detect_hw_device, locate_ffmpeg
from av1janitor.infrastructure.housekeeping import HousekeepingService
from av1janitor.infrastructure.job_store import JobStore
from av1janitor.pipeline.orchestrator import Orchestrator, RunSummary
from av1janitor.pipeline.postprocess import PostProcessor

app = typer.Typer(help="av1janitor - replace large videos with smaller AV1 (Intel QSV) encodes in place")
console = Console()


def format_size(size: float) -> str:
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(size) < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}TB"


def apply_overrides(
    config: AppConfig,
    directories: Optional[List[Path]] = None,
    once: Optional[bool] = None,
    concurrent: Optional[int] = None,
    dry_run: Optional[bool] = None,
    debug: Optional[bool] = None,
    clean_markers: Optional[bool] = None,
    log_path: Optional[Path] = None,
    jobs_dir: Optional[Path] = None,
    ffmpeg_path: Optional[str] = None,
) -> AppConfig:
    """CLI values win over the file; None means 'not given'."""
    general = config.general
    if directories:
        general.watched_directories = [str(d) for d in directories]
    if once is not None:
        general.once = once
    if concurrent is not None:
        general.concurrent = concurrent
    if dry_run:
        general.dry_run = True
    if debug:
        general.debug = True
    if clean_markers:
        general.clean_markers = True
    if ffmpeg_path:
        general.ffmpeg_path = ffmpeg_path
    if log_path:
        config.paths.log_path = str(log_path)
    if jobs_dir:
        config.paths.jobs_dir = str(jobs_dir)
    return config


def print_summary(summary: RunSummary) -> None:
    table = Table(title="av1janitor summary")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Files found", str(summary.discovery.files_found))
    table.add_row("Dispatched", str(summary.dispatched))
    table.add_row("Succeeded", str(summary.succeeded))
    table.add_row("Skipped", str(summary.skipped))
    table.add_row("Failed", str(summary.failed))
    table.add_row("Ignored (too small)", str(summary.discovery.ignored_small))
    table.add_row("Ignored (marker)", str(summary.discovery.ignored_marker))
    table.add_row("Ignored (still changing)", str(summary.discovery.ignored_unsettled))
    table.add_row("Space saved", format_size(summary.bytes_saved))
    console.print(table)


@app.command()
def run(
    directories: Optional[List[Path]] = typer.Argument(None, help="Directories to watch (override config)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    once: Optional[bool] = typer.Option(None, "--once/--daemon", help="Single pass, or keep watching"),
    concurrent: Optional[int] = typer.Option(None, "--concurrent", "-j", help="Maximum simultaneous encodes"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Probe and plan, but never encode or touch files"),
    clean_markers: bool = typer.Option(False, "--clean-markers", help="Remove .av1skip/.why.txt markers and retry"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file"),
    jobs_dir: Optional[Path] = typer.Option(None, "--jobs-dir", help="Directory for job records"),
    ffmpeg_path: Optional[str] = typer.Option(None, "--ffmpeg", help="Explicit ffmpeg binary"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Scan the watched directories and transcode eligible files."""
    overrides = dict(
        directories=directories,
        once=once,
        concurrent=concurrent,
        dry_run=dry_run,
        debug=debug,
        clean_markers=clean_markers,
        log_path=log_path,
        jobs_dir=jobs_dir,
        ffmpeg_path=ffmpeg_path,
    )

    def read_config() -> AppConfig:
        base = load_config(config_path) if config_path else AppConfig()
        return apply_overrides(base, **overrides)

    try:
        config = validate_config(read_config())
    except (ConfigValidationError, FileNotFoundError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    general = config.general
    log_path_value = Path(config.paths.log_path) if config.paths.log_path else None
    logger = setup_logging(Path(config.paths.logs_dir).expanduser(), debug=general.debug, log_path=log_path_value)
    roots = [Path(d).expanduser() for d in general.watched_directories]
    logger.info(f"av1janitor started: roots={[str(r) for r in roots]}")
    logger.info(
        f"Config: concurrent={general.concurrent}, once={general.once}, dry_run={general.dry_run}, "
        f"min_size={format_size(general.min_file_size_bytes)}, size_gate={general.size_gate_factor}, "
        f"extensions={general.media_extensions}"
    )

    try:
        installation = locate_ffmpeg(general.ffmpeg_path)
    except EncoderNotFoundError as exc:
        logger.error(f"{exc}")
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    hw_device = detect_hw_device()
    logger.info(f"Hardware device: {hw_device}")

    housekeeper = HousekeepingService()
    for root in roots:
        housekeeper.cleanup_temp_files(root)
        if general.clean_markers:
            housekeeper.cleanup_markers(root)
        housekeeper.find_stray_backups(root)

    bus = EventBus()
    bus.subscribe(JobCompleted, lambda e: console.print(
        f"[green]✓[/green] {e.job.source_path.name} "
        f"({format_size(e.job.original_bytes or 0)} → {format_size(e.job.new_bytes or 0)})"
    ))
    bus.subscribe(JobSkipped, lambda e: console.print(f"[yellow]-[/yellow] {e.job.source_path.name}: {e.reason}"))
    bus.subscribe(JobFailed, lambda e: console.print(
        f"[red]✗[/red] {e.job.source_path.name}: {e.error_message.splitlines()[0] if e.error_message else ''}"
    ))

    orchestrator = Orchestrator(
        config=config,
        event_bus=bus,
        file_scanner=FileScanner(general.media_extensions, general.min_file_size_bytes, general.settle_seconds),
        ffprobe_adapter=FFprobeAdapter(installation.ffprobe_path),
        ffmpeg_adapter=FFmpegAdapter(installation.ffmpeg_path),
        post_processor=PostProcessor(),
        job_store=JobStore(Path(config.paths.jobs_dir).expanduser()),
        hw_device=hw_device,
        config_provider=read_config if config_path else None,
    )

    def _on_signal(signum, frame):
        orchestrator.request_shutdown()
        console.print("[yellow]Shutdown requested; waiting for running encodes to finish...[/yellow]")

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        if general.once:
            summary = orchestrator.run_once()
        else:
            summary = orchestrator.run_forever()
    finally:
        orchestrator.close()

    print_summary(summary)
    logger.info(
        f"av1janitor finished: succeeded={summary.succeeded}, skipped={summary.skipped}, "
        f"failed={summary.failed}, saved={format_size(summary.bytes_saved)}"
    )


@app.command()
def jobs(
    jobs_dir: Optional[Path] = typer.Option(None, "--jobs-dir", help="Directory with job records"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of most recent jobs to show"),
):
    """Show the most recent job records."""
    if jobs_dir is None:
        try:
            config = load_config(config_path) if config_path else AppConfig()
        except (ConfigValidationError, FileNotFoundError) as exc:
            typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        jobs_dir = Path(config.paths.jobs_dir).expanduser()

    records = JobStore(jobs_dir).load_all()[:limit]
    if not records:
        typer.echo(f"No job records in {jobs_dir}")
        return

    table = Table(title=f"Jobs in {jobs_dir}")
    table.add_column("ID")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Original", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Saved", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Reason")
    for job in records:
        savings = job.size_savings_ratio()
        duration = job.duration_seconds()
        table.add_row(
            job.id,
            job.source_path.name,
            job.status.value,
            format_size(job.original_bytes) if job.original_bytes else "-",
            format_size(job.new_bytes) if job.new_bytes is not None else "-",
            f"{savings * 100:.1f}%" if savings is not None else "-",
            f"{duration:.0f}s" if duration is not None else "-",
            (job.reason or "").splitlines()[0] if job.reason else "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
