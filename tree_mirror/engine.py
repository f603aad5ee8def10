"""
Watch-and-propagate engine for Tree Mirror.

``MirrorEngine.start()`` walks the master tree once, syncing every
directory into the targets and then registering it for notifications.
After that the caller drives the engine by calling ``poll_once()`` at
whatever cadence it likes; each call drains the pending notifications
and applies them to every target on the calling thread.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from tree_mirror.copier import (
    ACTION_REGISTER,
    ACTION_SYNC,
    MirrorStats,
    Outcome,
    TreeMirror,
    make_writable,
)
from tree_mirror.handlers import (
    ChangeHandler,
    FilteringHandler,
    MirrorHandler,
    log_outcomes,
)
from tree_mirror.paths import ExcludeRules, RelativePathResolver
from tree_mirror.watcher import EventKind, PendingEvent, WatchRegistry

logger = logging.getLogger(__name__)


class ConsistencyChecker:
    """Brings the mirror of one master directory up to date in a target."""

    def __init__(self, resolver: RelativePathResolver, mirror: TreeMirror):
        self.resolver = resolver
        self.mirror = mirror

    def sync(self, master_dir: Path, target_root: Path) -> list[Outcome]:
        """
        Copy every child of *master_dir* into its mirror under *target_root*.

        Files are overwritten in full and subdirectories copied
        recursively, so running this twice on an unchanged tree leaves
        the target content unchanged.
        """
        master_dir = Path(master_dir)
        mirrored = self.resolver.target_path(master_dir, target_root)
        rec = Outcome(action=ACTION_SYNC, source=str(master_dir),
                      destination=str(mirrored), started=time.time())
        try:
            children = sorted(master_dir.iterdir())
            mirrored.mkdir(parents=True, exist_ok=True)
            make_writable(mirrored)
        except OSError as exc:
            rec.error = str(exc)
            rec.finished = time.time()
            return [rec]
        rec.success = True
        rec.finished = time.time()

        outcomes = [rec]
        for child in children:
            outcomes.extend(self.mirror.copy(mirrored, child))
        return outcomes

    def sync_all(self, master_dir: Path) -> list[Outcome]:
        """Run :meth:`sync` for *master_dir* against every target root."""
        outcomes: list[Outcome] = []
        for root in self.resolver.target_roots:
            outcomes.extend(self.sync(master_dir, root))
        return outcomes


class TreeWalker:
    """
    Startup traversal of the master tree.

    Each directory is synced before it is registered, and both happen
    before its subdirectories are visited. A change made after the sync
    of a directory is therefore either caught by its watch or happens
    in a subdirectory that is not yet synced.
    """

    def __init__(
        self,
        resolver: RelativePathResolver,
        checker: ConsistencyChecker,
        registry: WatchRegistry,
        stats: MirrorStats,
        exclude: ExcludeRules | None = None,
        sync: bool = True,
    ):
        self.resolver = resolver
        self.checker = checker
        self.registry = registry
        self.stats = stats
        self.exclude = exclude or ExcludeRules()
        self.sync = sync

    def walk(self) -> int:
        """
        Sync and register every directory under the master root.

        Returns the number of directories registered. Raises OSError if
        the master root itself cannot be listed or registered.
        """
        root = self.resolver.master_root
        registered = 0
        for dirpath, dirnames, _ in os.walk(root, topdown=True, onerror=self._on_error):
            directory = Path(dirpath)
            if self.sync:
                outcomes = self.checker.sync_all(directory)
                self.stats.record_all(outcomes)
                log_outcomes(outcomes)

            if directory == root:
                self.registry.register(directory)
                registered += 1
            elif self._register(directory):
                registered += 1

            dirnames[:] = sorted(d for d in dirnames if not self.exclude.matches(d))
        logger.info("Initial sync complete: %d directories watched.", registered)
        return registered

    def _register(self, directory: Path) -> bool:
        try:
            return self.registry.register(directory)
        except OSError as exc:
            rec = Outcome(action=ACTION_REGISTER, destination=str(directory),
                          error=str(exc), finished=time.time())
            self.stats.record(rec)
            logger.error("Cannot watch %s: %s", directory, exc)
            return False

    def _on_error(self, exc: OSError) -> None:
        if exc.filename is not None and Path(exc.filename) == self.resolver.master_root:
            raise exc
        logger.error("Cannot traverse %s: %s", exc.filename, exc)


class EventPoller:
    """One non-blocking drain of the watch registry's queues."""

    def __init__(
        self,
        registry: WatchRegistry,
        handler: ChangeHandler,
        stats: MirrorStats,
        resolver: RelativePathResolver | None = None,
        exclude: ExcludeRules | None = None,
    ):
        self.registry = registry
        self.handler = handler
        self.stats = stats
        self.resolver = resolver
        self.exclude = exclude or ExcludeRules()

    def poll_once(self) -> int:
        """
        Dispatch pending notifications and return how many were dispatched.

        When several events are queued for one directory, only the most
        recent one is dispatched and the others are dropped.
        """
        dispatched = 0
        coalesced = 0
        for _directory, events in self.registry.drain():
            if not events:
                continue
            coalesced += len(events) - 1
            self._dispatch(events[-1])
            dispatched += 1
        self.stats.record_poll(dispatched, coalesced)
        return dispatched

    def _dispatch(self, event: PendingEvent) -> None:
        path = event.path
        logger.debug("Dispatching %s %s", event.kind.value, path)
        try:
            if event.kind is EventKind.DELETE:
                self.handler.on_delete(path)
            elif event.kind is EventKind.MODIFY:
                self.handler.on_modify(path)
            else:
                self.handler.on_create(path)
        except Exception:
            logger.exception("Error handling %s event for %s", event.kind.value, path)

        if event.kind is EventKind.DELETE:
            self.registry.unregister(path)
        elif event.kind is EventKind.CREATE and path.is_dir() and not self._excluded(path):
            try:
                self.registry.register(path)
            except OSError as exc:
                logger.error("Cannot watch new directory %s: %s", path, exc)

    def _excluded(self, path: Path) -> bool:
        if not self.exclude or self.resolver is None:
            return False
        try:
            return self.exclude.excludes(self.resolver.relative(path))
        except ValueError:
            return False


class MirrorEngine:
    """
    Keeps one or more target folders identical to a master folder.

    Usage:
        engine = MirrorEngine("/data/master", ["/mnt/a", "/mnt/b"])
        engine.start()
        while running:
            engine.poll_once()
            time.sleep(0.01)
        engine.stop()

    Parameters
    ----------
    master_root : str or Path
        Folder to observe; created if missing.
    target_roots : sequence of str or Path
        Folders kept as mirrors, at least one.
    handler : ChangeHandler, optional
        Propagation policy; defaults to :class:`MirrorHandler`.
    observer_factory : callable, optional
        Builds the watchdog observer; defaults to the platform observer.
    exclude_patterns : list of str, optional
        Glob patterns of entry names that are never mirrored.
    initial_sync : bool
        Copy the existing master tree into the targets on start.
    """

    def __init__(
        self,
        master_root: str | Path,
        target_roots: Sequence[str | Path],
        handler: ChangeHandler | None = None,
        observer_factory: Callable[[], Any] | None = None,
        exclude_patterns: list[str] | None = None,
        initial_sync: bool = True,
    ):
        self._master_arg = Path(master_root)
        self._initial_sync = initial_sync
        self.resolver = RelativePathResolver(master_root, target_roots)
        self.exclude = ExcludeRules(exclude_patterns)
        self.stats = MirrorStats()
        self.mirror = TreeMirror(self.exclude)
        self.registry = WatchRegistry(observer_factory)
        self.checker = ConsistencyChecker(self.resolver, self.mirror)

        if handler is None:
            handler = MirrorHandler(self.resolver, self.mirror, self.stats)
        self._poller = EventPoller(
            self.registry, self._filtered(handler), self.stats,
            resolver=self.resolver, exclude=self.exclude,
        )

    def _filtered(self, handler: ChangeHandler) -> ChangeHandler:
        if self.exclude:
            return FilteringHandler(handler, self.resolver, self.exclude)
        return handler

    @property
    def handler(self) -> ChangeHandler:
        """The propagation policy applied to each dispatched event."""
        return self._poller.handler

    @handler.setter
    def handler(self, handler: ChangeHandler) -> None:
        self._poller.handler = self._filtered(handler)

    @property
    def master_root(self) -> Path:
        return self.resolver.master_root

    @property
    def target_roots(self) -> tuple[Path, ...]:
        return self.resolver.target_roots

    # ---- lifecycle ----

    def start(self) -> None:
        """
        Create the master folder, sync every directory and start watching.

        Raises OSError when the master folder cannot be created or the
        notification observer cannot watch it.
        """
        if self.registry.is_running:
            return
        self._master_arg.mkdir(parents=True, exist_ok=True)
        # The master root may not have existed when the resolver was built.
        self.resolver.master_root = self._master_arg.resolve()

        self.registry.start()
        try:
            TreeWalker(
                self.resolver, self.checker, self.registry, self.stats,
                exclude=self.exclude, sync=self._initial_sync,
            ).walk()
        except BaseException:
            self.registry.stop()
            raise
        logger.info(
            "Mirroring '%s' into %s",
            self.master_root,
            ", ".join(f"'{t}'" for t in self.target_roots),
        )

    def poll_once(self) -> int:
        """Apply every pending change once; never blocks waiting for events."""
        if not self.registry.is_running:
            raise RuntimeError("Mirror engine is not started.")
        return self._poller.poll_once()

    def sync(self) -> list[Outcome]:
        """Re-run the consistency sync for the master root against every target."""
        outcomes = self.checker.sync_all(self.master_root)
        self.stats.record_all(outcomes)
        log_outcomes(outcomes)
        return outcomes

    def stop(self) -> None:
        """Stop watching and release resources."""
        if not self.registry.is_running:
            return
        self.registry.stop()
        logger.info("Mirror stopped: %s", self.stats.summary())

    @property
    def is_running(self) -> bool:
        return self.registry.is_running
