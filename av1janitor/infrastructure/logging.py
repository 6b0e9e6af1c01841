import logging
from pathlib import Path
from typing import Optional
from rich.logging import RichHandler

def setup_logging(logs_dir: Path, debug: bool = False, log_path: Optional[Path] = None, console: bool = True) -> logging.Logger:
    """
    Setup logging configuration for av1janitor.

    Creates the logs directory and av1janitor.log file, and mirrors records
    to the terminal through rich.
    Returns configured logger instance.

    Args:
        logs_dir: Directory where the log file is written
        debug: If True, enable DEBUG level logging (ffmpeg commands, probe details)
        log_path: Optional path to log file (overrides logs_dir)
        console: If False, only the file handler is installed
    """
    logs_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (logs_dir / "av1janitor.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(threadName)s - %(message)s'))
    handlers: list = [file_handler]
    if console:
        handlers.append(RichHandler(show_path=False, rich_tracebacks=True, markup=False))

    logging.basicConfig(
        level=level,
        format='%(message)s',
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
