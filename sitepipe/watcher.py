"""Source watcher for Sitepipe.

Watches the project's source paths with watchdog. Every change triggers a
full rebuild followed by a reload of the running server.

Event handlers only record that something changed. A single build thread
waits for the burst of events to settle, then rebuilds, so builds never
overlap and changes arriving during a build are coalesced into exactly one
follow-up build.

Key classes:
- Watcher: Owns the observer and the build thread.
- _ChangeHandler: Filters file system events and forwards them.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .errors import PipelineError

logger = logging.getLogger(__name__)


class Watcher:
    """Rebuilds and reloads on source changes.

    Attributes:
        paths: Watched files or directories.
        ignored_dirs: Directories whose events are ignored (e.g. the output root).
        ignored_names: Path components whose events are ignored (e.g. ".git").
        debounce_seconds: Quiet period after the last change before building.
    """

    def __init__(
        self,
        paths: Iterable[Path],
        rebuild: Callable[[], object],
        reload: Callable[[], object],
        ignored_dirs: Iterable[Path] = (),
        ignored_names: Iterable[str] = (),
        debounce_seconds: float = 0.05,
    ):
        self.paths = [Path(p) for p in paths]
        self.ignored_dirs = [Path(p).resolve() for p in ignored_dirs]
        self.ignored_names = set(ignored_names)
        self.debounce_seconds = debounce_seconds
        self._rebuild = rebuild
        self._reload = reload
        self._changed = threading.Condition()
        self._pending = False
        self._building = False
        self._stopping = False
        self._last_change_at = 0.0
        self._worker: threading.Thread | None = None
        self._observer: Observer | None = None

    def start(self) -> None:
        self._stopping = False
        self._worker = threading.Thread(target=self._run, name="sitepipe-rebuild", daemon=True)
        self._worker.start()

        handler = _ChangeHandler(self)
        observer = Observer()
        for path in self.paths:
            if path.is_dir():
                observer.schedule(handler, str(path), recursive=True)
            elif path.exists():
                observer.schedule(handler, str(path.parent), recursive=False)
            else:
                logger.warning("Not watching %s: path does not exist", path)
        observer.start()
        self._observer = observer
        logger.info("Watching %s", ", ".join(str(p) for p in self.paths))

    def stop(self) -> None:
        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None
        with self._changed:
            self._stopping = True
            self._changed.notify_all()
        if self._worker:
            self._worker.join()
            self._worker = None

    def is_ignored(self, path: Path) -> bool:
        if self.ignored_names.intersection(path.parts):
            return True
        resolved = path.resolve()
        for ignored in self.ignored_dirs:
            if resolved == ignored or ignored in resolved.parents:
                return True
        return False

    def trigger(self) -> None:
        """Record a change. Never blocks on a build."""
        with self._changed:
            self._pending = True
            self._last_change_at = time.monotonic()
            self._changed.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no change is pending and no build is running.

        Returns:
            False if the timeout expired first.
        """
        with self._changed:
            return self._changed.wait_for(
                lambda: not (self._pending or self._building), timeout
            )

    def _run(self) -> None:
        while self._claim_change():
            try:
                self._build_once()
            except Exception:
                logger.exception("Rebuild crashed; still watching")
            finally:
                with self._changed:
                    self._building = False
                    self._changed.notify_all()

    def _claim_change(self) -> bool:
        """Wait for a change to settle and mark a build as started.

        Returns:
            False once the watcher is stopping.
        """
        with self._changed:
            while not self._stopping:
                if not self._pending:
                    self._changed.wait()
                    continue
                quiet_for = time.monotonic() - self._last_change_at
                if quiet_for < self.debounce_seconds:
                    self._changed.wait(self.debounce_seconds - quiet_for)
                    continue
                self._pending = False
                self._building = True
                return True
            return False

    def _build_once(self) -> None:
        logger.info("Change detected; rebuilding...")
        try:
            self._rebuild()
        except PipelineError as exc:
            logger.error("Rebuild failed: %s", exc)
            return
        self._reload()


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: Watcher):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event):
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        if self.watcher.is_ignored(Path(event.src_path)):
            return
        self.watcher.trigger()
