"""Watch the sync root and run passes when documents change.

This module provides:

- ``SyncNotifier``: a small state machine (``idle -> debouncing -> syncing
  -> retrying -> idle``) that coalesces change notifications and runs a
  sync callback once the debounce delay has passed, retrying failures
  with exponential delay.
- ``DocumentWatcher``: a watchdog observer feeding document file changes
  into a notifier.
- ``engine_callback``: adapts a ``SyncEngine`` to the notifier's
  synchronous callback.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from pagesync.errors import PageSyncError
from pagesync.file_handler import BACKUP_SUFFIX
from pagesync.sync.models import PassState, utcnow

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from pagesync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)


class WatchState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    SYNCING = "syncing"
    RETRYING = "retrying"


class SyncNotifier:
    """Coalesce change notifications into sync callback invocations.

    Args:
        sync: Called with the set of changed paths; raising counts as a
            failed sync.
        debounce_delay: Seconds without new changes before syncing.
        retry_attempts: Retries after a failed sync before giving up.
        retry_delay: Delay before the first retry, doubled each time.
        on_transition: Called with ``(old, new)`` on every state change.
    """

    def __init__(
        self,
        sync: Callable[[set[str]], Any],
        debounce_delay: float = 2.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        on_transition: Callable[[WatchState, WatchState], None] | None = None,
    ) -> None:
        self._sync = sync
        self.debounce_delay = debounce_delay
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.on_transition = on_transition

        self.state = WatchState.IDLE
        self.failure_count = 0
        self.last_sync_time: datetime | None = None
        self._pending: set[str] = set()
        self._retry_count = 0
        self._lock = threading.RLock()
        self._timer: threading.Timer | None = None

    def _transition(self, new: WatchState) -> None:
        old = self.state
        if old == new:
            return
        self.state = new
        logger.debug("Watch state: %s -> %s", old.value, new.value)
        if self.on_transition is not None:
            self.on_transition(old, new)

    def _schedule(self, delay: float) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = threading.Timer(delay, self.flush)
        self._timer.daemon = True
        self._timer.start()

    def notify(self, path: str) -> None:
        """Record a changed path and (re)start the debounce window."""
        with self._lock:
            self._pending.add(path)
            if self.state in (WatchState.IDLE, WatchState.DEBOUNCING):
                self._transition(WatchState.DEBOUNCING)
                self._schedule(self.debounce_delay)

    @property
    def pending(self) -> set[str]:
        with self._lock:
            return set(self._pending)

    def flush(self) -> None:
        """Run the sync callback now for everything pending."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._pending:
                self._transition(WatchState.IDLE)
                return
            paths = set(self._pending)
            self._pending.clear()
            self._transition(WatchState.SYNCING)

        try:
            self._sync(paths)
        except Exception as e:
            self._on_failure(paths, e)
            return

        with self._lock:
            self._retry_count = 0
            self.failure_count = 0
            self.last_sync_time = utcnow()
            if self._pending:
                self._transition(WatchState.DEBOUNCING)
                self._schedule(self.debounce_delay)
            else:
                self._transition(WatchState.IDLE)

    def _on_failure(self, paths: set[str], error: Exception) -> None:
        with self._lock:
            self.failure_count += 1
            self._pending |= paths
            if self._retry_count < self.retry_attempts:
                self._retry_count += 1
                delay = self.retry_delay * 2 ** (self._retry_count - 1)
                logger.warning(
                    "Sync failed: %s. Retrying (%d/%d) in %.1fs",
                    error,
                    self._retry_count,
                    self.retry_attempts,
                    delay,
                )
                self._transition(WatchState.RETRYING)
                self._schedule(delay)
                return
            logger.error(
                "Sync failed after %d retries: %s", self.retry_attempts, error
            )
            self._retry_count = 0
            self._pending.clear()
            self._transition(WatchState.IDLE)

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._transition(WatchState.IDLE)

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self.state.value,
                "pending_changes": len(self._pending),
                "failure_count": self.failure_count,
                "last_sync_time": self.last_sync_time,
            }


class _DocumentEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: DocumentWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed", "closed_no_write"):
            return
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if raw:
                self._watcher.handle_path(Path(str(raw)))


class DocumentWatcher:
    """Feed changes of document files under *root* into *notifier*.

    Backup files, temp files and anything matching *ignore* names are
    skipped.
    """

    def __init__(
        self,
        root: Path,
        notifier: SyncNotifier,
        extension: str = "md",
        ignore: tuple[str, ...] = (),
    ) -> None:
        self.root = Path(root).resolve()
        self.notifier = notifier
        self.suffix = f".{extension.lstrip('.')}"
        self.ignore = set(ignore)
        self._observer: BaseObserver | None = None

    def handle_path(self, path: Path) -> None:
        """Notify for *path* if it is a watched document file."""
        name = path.name
        if (
            name.endswith(BACKUP_SUFFIX)
            or name.endswith(".tmp")
            or name in self.ignore
            or path.suffix != self.suffix
        ):
            return
        try:
            rel = path.resolve().relative_to(self.root)
        except ValueError:
            logger.warning("Path %s is not under %s", path, self.root)
            return
        self.notifier.notify(rel.as_posix())

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(
            _DocumentEventHandler(self), str(self.root), recursive=True
        )
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s for changes", self.root)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        self.notifier.stop()
        logger.info("Stopped watching %s", self.root)

    def __enter__(self) -> DocumentWatcher:
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()


def engine_callback(engine: SyncEngine) -> Callable[[set[str]], None]:
    """Build a ``SyncNotifier`` callback running *engine* on changed paths.

    Paths are mapped to tracked documents; untracked paths are ignored.
    A failed pass raises ``PageSyncError`` so the notifier retries.
    """

    def _sync(paths: set[str]) -> None:
        engine.manifest.load()
        ids = []
        for path in sorted(paths):
            document = engine.manifest.get_by_path(path)
            if document is None:
                logger.debug("Ignoring untracked file %s", path)
                continue
            ids.append(document.id)
        if not ids:
            return
        report = asyncio.run(engine.run(document_ids=ids))
        if report.status == PassState.FAILED:
            raise PageSyncError(
                f"sync pass failed with {len(report.errors)} error(s)"
            )

    return _sync
