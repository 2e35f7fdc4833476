"""Re-index documents as they change on disk, using watchdog."""

from __future__ import annotations

import fnmatch
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from localkb.store import KnowledgeStore
from localkb.utils.files import file_extension

LOGGER = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.25

INDEX = "index"
REMOVE = "remove"


class DocumentEventHandler(FileSystemEventHandler):
    """Collapse bursts of events per path and apply the last one to the store."""

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        include: Sequence[str],
        exclude: Sequence[str] = (),
        debounce: float = DEBOUNCE_SECONDS,
    ) -> None:
        super().__init__()
        self.store = store
        self.include = {ext.lower() for ext in include}
        self.exclude = list(exclude)
        self.debounce = debounce
        self._lock = threading.Lock()
        self._pending: Dict[str, Tuple[str, threading.Timer]] = {}

    def accepts(self, path: str) -> bool:
        candidate = Path(path)
        if candidate.name.startswith("."):
            return False
        if file_extension(candidate) not in self.include:
            return False
        posix = candidate.as_posix()
        return not any(fnmatch.fnmatch(posix, pattern) for pattern in self.exclude)

    def schedule(self, path: str, action: str) -> None:
        if not self.accepts(path):
            return
        timer = threading.Timer(self.debounce, self._fire, args=(path,))
        timer.daemon = True
        with self._lock:
            previous = self._pending.get(path)
            if previous is not None:
                previous[1].cancel()
            self._pending[path] = (action, timer)
        timer.start()

    def _fire(self, path: str) -> None:
        with self._lock:
            entry = self._pending.pop(path, None)
        if entry is not None:
            self.apply(path, entry[0])

    def apply(self, path: str, action: str) -> None:
        """Run ``action`` for ``path`` under the store's writer lock."""
        try:
            with self.store.lock:
                if action == REMOVE or not Path(path).exists():
                    self.store.remove_path(path)
                else:
                    summary = self.store.index_paths([path])
                    LOGGER.info(
                        "Reindexed %s (indexed: %s, updated: %s, skipped: %s)",
                        path,
                        summary.indexed,
                        summary.updated,
                        summary.skipped,
                    )
        except Exception as e:
            LOGGER.warning("Failed to apply %s for %s: %s", action, path, e)

    def flush(self) -> None:
        """Apply every pending event now instead of waiting for its timer."""
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
        for path, (action, timer) in pending:
            timer.cancel()
            self.apply(path, action)

    def cancel(self) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for _, timer in pending:
            timer.cancel()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(str(event.src_path), INDEX)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(str(event.src_path), INDEX)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(str(event.src_path), REMOVE)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self.schedule(str(event.src_path), REMOVE)
        self.schedule(str(event.dest_path), INDEX)


class DocumentWatcher:
    """Observe the configured roots and keep the store current."""

    def __init__(
        self,
        store: KnowledgeStore,
        roots: Optional[Iterable[str | Path]] = None,
        *,
        debounce: float = DEBOUNCE_SECONDS,
    ) -> None:
        config = store.config
        self.store = store
        self.roots: List[Path] = [
            self._absolute(root) for root in (roots if roots is not None else config.roots)
        ]
        self.handler = DocumentEventHandler(
            store, include=config.include, exclude=config.exclude, debounce=debounce
        )
        self._observer: Optional[Observer] = None

    def _absolute(self, root: str | Path) -> Path:
        candidate = Path(root).expanduser()
        return candidate if candidate.is_absolute() else Path(self.store.config.base_dir) / candidate

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        for root in self.roots:
            if not root.is_dir():
                LOGGER.warning("Cannot watch %s: not a directory", root)
                continue
            observer.schedule(self.handler, str(root), recursive=True)
            LOGGER.info("Watching %s", root)
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        self.handler.cancel()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None

    def __enter__(self) -> "DocumentWatcher":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
