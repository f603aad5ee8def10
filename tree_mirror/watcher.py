"""File system watch registry for Tree Mirror.

Uses the watchdog library to watch the master tree. The platform sees a
single recursive watch on the master root; the registry keeps the set of
directories that are logically registered and only queues events whose
parent directory is in that set. Notifications delivered on the observer
thread are queued per directory; the engine drains the queues from its
own thread on each poll cycle.
"""

from __future__ import annotations

import enum
import errno
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from watchdog.events import (
    DirModifiedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


@dataclass(frozen=True)
class PendingEvent:
    """A change to one child entry of a watched directory."""
    kind: EventKind
    directory: Path
    name: str

    @property
    def path(self) -> Path:
        return self.directory / self.name


class TreeEventHandler(FileSystemEventHandler):
    """Watchdog handler for one recursive watch; keys each event by its parent directory."""

    def __init__(self, root: Path, on_event: Callable[[PendingEvent], None]):
        super().__init__()
        self.root = root
        self._on_event = on_event

    def _emit(self, kind: EventKind, raw_path: bytes | str) -> None:
        path = Path(os.fsdecode(raw_path))
        # The root's own metadata changes belong to its parent directory.
        if path == self.root or self.root not in path.parents:
            return
        self._on_event(PendingEvent(kind, path.parent, path.name))

    def on_created(self, event: FileSystemEvent) -> None:
        self._emit(EventKind.CREATE, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if isinstance(event, DirModifiedEvent) or event.is_directory:
            return
        self._emit(EventKind.MODIFY, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._emit(EventKind.DELETE, event.src_path)

    def on_moved(self, event: FileSystemMovedEvent) -> None:  # type: ignore[override]
        """A rename is a delete of the old name plus a create of the new one."""
        self._emit(EventKind.DELETE, event.src_path)
        self._emit(EventKind.CREATE, event.dest_path)


class WatchRegistry:
    """
    Owns the watchdog observer and the set of registered directories.

    The first directory registered outside every existing watch gets a
    recursive watchdog watch; directories below it only join the
    registered set. Events are queued for registered directories only.

    Usage:
        registry = WatchRegistry()
        registry.start()
        registry.register(Path("/master"))
        registry.register(Path("/master/sub"))
        for directory, events in registry.drain():
            ...
        registry.stop()
    """

    def __init__(self, observer_factory: Callable[[], Any] | None = None):
        self._observer_factory = observer_factory or Observer
        self._observer: Any | None = None
        # root directory -> scheduled recursive watch
        self._roots: dict[Path, Any] = {}
        # registered directory -> root of the watch covering it, in registration order
        self._watches: dict[Path, Path] = {}
        # directory -> queued events, in the order directories were signalled
        self._pending: dict[Path, list[PendingEvent]] = {}
        self._lock = threading.Lock()

    # ---- lifecycle ----

    def start(self) -> None:
        """Start the notification observer."""
        if self._observer is not None:
            return
        observer = self._observer_factory()
        observer.start()
        self._observer = observer
        logger.debug("Watch observer started.")

    def stop(self) -> None:
        """Stop the observer and drop every registration."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        with self._lock:
            self._roots.clear()
            self._watches.clear()
            self._pending.clear()
        logger.debug("Watch observer stopped.")

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    # ---- registrations ----

    def register(self, directory: Path) -> bool:
        """
        Begin delivering notifications for entries inside *directory*.

        Returns False when the directory is already registered. Raises
        OSError when the platform refuses the watch, or when a directory
        inside an existing watch no longer exists.
        """
        if self._observer is None:
            raise RuntimeError("Watch registry is not started.")
        directory = Path(directory)
        with self._lock:
            if directory in self._watches:
                return False
            root = self._root_for(directory)

        if root is None:
            self._schedule(directory)
            root = directory
        elif not directory.is_dir():
            raise FileNotFoundError(errno.ENOENT, "No such directory", str(directory))

        with self._lock:
            self._watches[directory] = root
        logger.debug("Watching %s", directory)
        return True

    def _root_for(self, directory: Path) -> Path | None:
        for root in self._roots:
            if root == directory or root in directory.parents:
                return root
        return None

    def _schedule(self, root: Path) -> None:
        handler = TreeEventHandler(root, self._enqueue)
        watch = self._observer.schedule(handler, str(root), recursive=True)
        with self._lock:
            # An older watch below the new root would report every event twice.
            nested = [r for r in self._roots if root in r.parents]
            replaced = [self._roots.pop(r) for r in nested]
            self._roots[root] = watch
            for d, r in self._watches.items():
                if r in nested:
                    self._watches[d] = root
        for old in replaced:
            self._unschedule(old)

    def _unschedule(self, watch: Any) -> None:
        try:
            self._observer.unschedule(watch)
        except KeyError:
            # The observer already dropped a watch whose directory vanished.
            pass

    def unregister(self, directory: Path) -> int:
        """
        Drop the registrations of *directory* and everything below it.

        Returns how many registrations were removed. Unknown directories
        are ignored.
        """
        directory = Path(directory)
        with self._lock:
            gone = [d for d in self._watches if d == directory or directory in d.parents]
            for d in gone:
                del self._watches[d]
                self._pending.pop(d, None)
            dead = [r for r in self._roots if r == directory or directory in r.parents]
            watches = [self._roots.pop(r) for r in dead]
        for watch in watches:
            self._unschedule(watch)
        for d in gone:
            logger.debug("Stopped watching %s", d)
        return len(gone)

    def is_registered(self, directory: Path) -> bool:
        with self._lock:
            return Path(directory) in self._watches

    def registered(self) -> list[Path]:
        """Return the registered directories in registration order."""
        with self._lock:
            return list(self._watches)

    def __len__(self) -> int:
        with self._lock:
            return len(self._watches)

    # ---- event queues ----

    def _enqueue(self, event: PendingEvent) -> None:
        with self._lock:
            if event.directory not in self._watches:
                return
            self._pending.setdefault(event.directory, []).append(event)

    def drain(self) -> list[tuple[Path, list[PendingEvent]]]:
        """
        Take every queued event and reset the queues.

        Events delivered while the caller processes the result are kept
        for the next drain.
        """
        with self._lock:
            pending, self._pending = self._pending, {}
        return list(pending.items())

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(len(events) for events in self._pending.values())
