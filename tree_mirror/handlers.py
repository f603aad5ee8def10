"""Change handlers for Tree Mirror.

The engine hands every dispatched event to an object implementing the
:class:`ChangeHandler` protocol. :class:`MirrorHandler` is the real
propagation policy; :class:`DryRunHandler` and :class:`FilteringHandler`
are drop-in alternates.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from tree_mirror.copier import (
    ACTION_COPY,
    ACTION_DELETE,
    ACTION_OVERWRITE,
    MirrorStats,
    Outcome,
    TreeMirror,
)
from tree_mirror.paths import ExcludeRules, RelativePathResolver

logger = logging.getLogger(__name__)


class ChangeHandler(Protocol):
    """Operations the engine dispatches for each filesystem event."""

    def on_create(self, path: Path) -> list[Outcome]:
        """A file or directory appeared at *path* in the master tree."""
        ...

    def on_modify(self, path: Path) -> list[Outcome]:
        """The content of the file at *path* changed."""
        ...

    def on_delete(self, path: Path) -> list[Outcome]:
        """The entry at *path* was removed from the master tree."""
        ...


def log_outcomes(outcomes: list[Outcome]) -> None:
    """Log every failed outcome with its path and cause."""
    for outcome in outcomes:
        if outcome.success or outcome.skipped:
            continue
        if outcome.action == ACTION_DELETE:
            logger.warning("Not deleted: %s", outcome.describe())
        else:
            logger.error("Mirroring failed: %s", outcome.describe())


class MirrorHandler:
    """
    Applies each change to every target root, in target order.

    Parameters
    ----------
    resolver : RelativePathResolver
        Maps master paths to their mirrored paths.
    mirror : TreeMirror, optional
        Copy primitives; a fresh one is created when omitted.
    stats : MirrorStats, optional
        Receives every outcome.
    """

    def __init__(
        self,
        resolver: RelativePathResolver,
        mirror: TreeMirror | None = None,
        stats: MirrorStats | None = None,
    ):
        self.resolver = resolver
        self.mirror = mirror or TreeMirror()
        self.stats = stats if stats is not None else MirrorStats()

    def on_create(self, path: Path) -> list[Outcome]:
        parent = self.resolver.relative(path).parent
        outcomes: list[Outcome] = []
        for root in self.resolver.target_roots:
            outcomes.extend(self.mirror.copy(root / parent, path))
        return self._finish(outcomes)

    def on_modify(self, path: Path) -> list[Outcome]:
        source = self.resolver.master_path(self.resolver.relative(path))
        outcomes = [
            self.mirror.overwrite(mirrored, source)
            for _, mirrored in self.resolver.targets_for(path)
        ]
        return self._finish(outcomes)

    def on_delete(self, path: Path) -> list[Outcome]:
        outcomes = [
            self.mirror.delete(mirrored)
            for _, mirrored in self.resolver.targets_for(path)
        ]
        return self._finish(outcomes)

    def _finish(self, outcomes: list[Outcome]) -> list[Outcome]:
        self.stats.record_all(outcomes)
        log_outcomes(outcomes)
        return outcomes


class DryRunHandler:
    """Logs what :class:`MirrorHandler` would do without touching any target."""

    def __init__(self, resolver: RelativePathResolver):
        self.resolver = resolver

    def _plan(self, action: str, path: Path, source: Path | None = None) -> list[Outcome]:
        outcomes = []
        for _, mirrored in self.resolver.targets_for(path):
            logger.info("[dry run] %s %s", action, mirrored)
            outcomes.append(Outcome(
                action=action,
                source=str(source or ""),
                destination=str(mirrored),
                skipped=True,
            ))
        return outcomes

    def on_create(self, path: Path) -> list[Outcome]:
        return self._plan(ACTION_COPY, path, path)

    def on_modify(self, path: Path) -> list[Outcome]:
        return self._plan(ACTION_OVERWRITE, path, path)

    def on_delete(self, path: Path) -> list[Outcome]:
        return self._plan(ACTION_DELETE, path)


class FilteringHandler:
    """Forwards events to *inner* unless the entry or an ancestor is excluded."""

    def __init__(
        self,
        inner: ChangeHandler,
        resolver: RelativePathResolver,
        exclude: ExcludeRules,
    ):
        self.inner = inner
        self.resolver = resolver
        self.exclude = exclude

    def should_ignore(self, path: Path) -> bool:
        if self.exclude.excludes(self.resolver.relative(path)):
            logger.debug("Ignoring event for excluded path %s", path)
            return True
        return False

    def on_create(self, path: Path) -> list[Outcome]:
        if self.should_ignore(path):
            return []
        return self.inner.on_create(path)

    def on_modify(self, path: Path) -> list[Outcome]:
        if self.should_ignore(path):
            return []
        return self.inner.on_modify(path)

    def on_delete(self, path: Path) -> list[Outcome]:
        if self.should_ignore(path):
            return []
        return self.inner.on_delete(path)
