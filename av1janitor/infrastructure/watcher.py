import logging
import threading
from pathlib import Path
from typing import Callable, List, Set
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler


class ChangeHandler(FileSystemEventHandler):
    """Records created, modified and moved-in media files."""

    def __init__(self, accept: Callable[[str], bool], record: Callable[[Path], None]):
        super().__init__()
        self.accept = accept
        self.record = record

    def _maybe_record(self, path: str):
        path_obj = Path(path)
        if self.accept(path_obj.name):
            self.record(path_obj)

    def on_created(self, event):
        if not event.is_directory:
            self._maybe_record(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self._maybe_record(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._maybe_record(event.dest_path)


class DirectoryWatcher:
    """Watches the configured roots and collects changed paths for the dispatcher.

    The watcher never dispatches anything itself; the orchestrator drains the
    collected set once per cycle and re-checks each path with the scanner.
    """

    def __init__(self, roots: List[Path], accept: Callable[[str], bool]):
        self.roots = roots
        self._pending: Set[Path] = set()
        self._lock = threading.Lock()
        self._observer = None
        self.handler = ChangeHandler(accept, self._record)
        self.logger = logging.getLogger(__name__)

    def _record(self, path: Path):
        with self._lock:
            if path not in self._pending:
                self.logger.debug(f"WATCH_EVENT: {path}")
            self._pending.add(path)

    def start(self):
        observer = Observer()
        for root in self.roots:
            observer.schedule(self.handler, str(root), recursive=True)
        observer.start()
        self._observer = observer
        self.logger.info(f"WATCH_START: {len(self.roots)} root(s)")

    def stop(self):
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        self.logger.info("WATCH_STOP")

    def requeue(self, paths):
        """Puts paths back (e.g. still being copied) for the next cycle."""
        for path in paths:
            self._record(path)

    def drain(self) -> List[Path]:
        with self._lock:
            paths = sorted(self._pending)
            self._pending.clear()
        return paths
