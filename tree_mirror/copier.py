"""
Copy engine for Tree Mirror.

Copies files and whole directory subtrees from the master folder into a
target folder. Every write is a full-content overwrite: the source is
read in full and written over the destination in place, with no diffing
and no rename-swap. Failures never raise; each unit of work returns an
:class:`Outcome` the caller can log and count.
"""

import logging
import os
import stat
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from tree_mirror.paths import ExcludeRules

logger = logging.getLogger(__name__)

ACTION_COPY = "copy"
ACTION_MKDIR = "mkdir"
ACTION_OVERWRITE = "overwrite"
ACTION_DELETE = "delete"
ACTION_SYNC = "sync"
ACTION_REGISTER = "register"

_HISTORY_LIMIT = 1000


@dataclass
class Outcome:
    """Result of a single mirroring operation."""
    action: str
    destination: str
    source: str = ""
    size_bytes: int = 0
    started: float = 0.0
    finished: float = 0.0
    success: bool = False
    skipped: bool = False
    error: str = ""

    def describe(self) -> str:
        """One-line summary used in log messages."""
        if self.source:
            text = f"{self.action} {self.source} -> {self.destination}"
        else:
            text = f"{self.action} {self.destination}"
        if self.error:
            text += f": {self.error}"
        return text


@dataclass
class MirrorStats:
    """Aggregated mirroring statistics."""
    total_copied: int = 0
    total_deleted: int = 0
    total_failed: int = 0
    total_skipped: int = 0
    total_bytes: int = 0
    events_dispatched: int = 0
    events_coalesced: int = 0
    last_destination: str = ""
    history: list[Outcome] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, outcome: Outcome) -> None:
        with self._lock:
            self.history.append(outcome)
            if outcome.skipped:
                self.total_skipped += 1
            elif not outcome.success:
                self.total_failed += 1
            elif outcome.action == ACTION_DELETE:
                self.total_deleted += 1
            elif outcome.action in (ACTION_COPY, ACTION_OVERWRITE):
                self.total_copied += 1
                self.total_bytes += outcome.size_bytes
                self.last_destination = outcome.destination
            if len(self.history) > _HISTORY_LIMIT:
                self.history = self.history[-_HISTORY_LIMIT:]

    def record_all(self, outcomes: list[Outcome]) -> None:
        for outcome in outcomes:
            self.record(outcome)

    def record_poll(self, dispatched: int, coalesced: int) -> None:
        with self._lock:
            self.events_dispatched += dispatched
            self.events_coalesced += coalesced

    @property
    def failures(self) -> list[Outcome]:
        with self._lock:
            return [o for o in self.history if not o.success and not o.skipped]

    def summary(self) -> str:
        with self._lock:
            return (
                f"{self.total_copied} copied ({self.total_bytes:,} bytes), "
                f"{self.total_deleted} deleted, {self.total_failed} failed, "
                f"{self.events_dispatched} events dispatched, "
                f"{self.events_coalesced} coalesced"
            )


def make_writable(path: Path) -> None:
    """Add the owner-write bit to *path* if it exists."""
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if not mode & stat.S_IWUSR:
        os.chmod(path, mode | stat.S_IWUSR)


class TreeMirror:
    """
    Copies master entries into a destination directory.

    All methods are synchronous and return outcomes instead of raising;
    one failed file never stops its siblings from being copied. Entries
    whose name matches *exclude* are skipped along with their contents.
    """

    def __init__(self, exclude: ExcludeRules | None = None):
        self.exclude = exclude or ExcludeRules()

    def copy(self, destination_dir: Path, source: Path) -> list[Outcome]:
        """Copy *source* (file or directory) to ``destination_dir / source.name``."""
        destination_dir = Path(destination_dir)
        source = Path(source)
        if self.exclude.matches(source.name):
            logger.debug("Excluding %s", source)
            return [Outcome(action=ACTION_COPY, source=str(source),
                            destination=str(destination_dir / source.name),
                            skipped=True, error="excluded")]
        if source.is_dir():
            return self._copy_tree(destination_dir / source.name, source)
        return [self._copy_file(destination_dir / source.name, source)]

    def overwrite(self, destination: Path, source: Path) -> Outcome:
        """Replace the content of *destination* with the content of *source*."""
        return self._write(ACTION_OVERWRITE, Path(destination), Path(source))

    def delete(self, destination: Path) -> Outcome:
        """
        Remove a single entry: a file, a symlink or an empty directory.

        Directories are never removed recursively, so a directory that
        still holds entries is reported as a failure and left in place.
        """
        destination = Path(destination)
        rec = Outcome(action=ACTION_DELETE, destination=str(destination),
                      started=time.time())
        try:
            if destination.is_dir() and not destination.is_symlink():
                destination.rmdir()
            else:
                destination.unlink()
            rec.success = True
            logger.info("Deleted %s", destination)
        except FileNotFoundError:
            rec.error = "does not exist"
        except OSError as exc:
            rec.error = str(exc)
        rec.finished = time.time()
        return rec

    # ---- internals ----

    def _copy_tree(self, destination: Path, source: Path) -> list[Outcome]:
        rec = Outcome(action=ACTION_MKDIR, source=str(source),
                      destination=str(destination), started=time.time())
        try:
            destination.mkdir(parents=True, exist_ok=True)
            make_writable(destination)
            rec.success = True
        except OSError as exc:
            rec.error = str(exc)
            rec.finished = time.time()
            return [rec]
        rec.finished = time.time()

        outcomes = [rec]
        try:
            children = sorted(source.iterdir())
        except OSError as exc:
            outcomes.append(Outcome(
                action=ACTION_COPY, source=str(source), destination=str(destination),
                error=f"Cannot list directory: {exc}", finished=time.time(),
            ))
            return outcomes

        for child in children:
            outcomes.extend(self.copy(destination, child))
        return outcomes

    def _copy_file(self, destination: Path, source: Path) -> Outcome:
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return Outcome(action=ACTION_COPY, source=str(source),
                           destination=str(destination), error=str(exc),
                           finished=time.time())
        return self._write(ACTION_COPY, destination, source)

    def _write(self, action: str, destination: Path, source: Path) -> Outcome:
        rec = Outcome(action=action, source=str(source),
                      destination=str(destination), started=time.time())
        try:
            data = source.read_bytes()
        except OSError as exc:
            rec.error = f"Cannot read source: {exc}"
            rec.finished = time.time()
            return rec

        try:
            make_writable(destination)
            destination.write_bytes(data)
            rec.size_bytes = len(data)
            rec.success = True
            logger.debug("%s %s -> %s (%d bytes)", action, source, destination, len(data))
        except OSError as exc:
            rec.error = f"Cannot write destination: {exc}"
        rec.finished = time.time()
        return rec
