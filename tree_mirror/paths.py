"""Relative-path mapping between the master root and its target roots."""

from __future__ import annotations

import fnmatch
from collections.abc import Iterator, Sequence
from pathlib import Path


class RelativePathResolver:
    """Translate paths under the master root into paths under each target.

    Every entry is addressed by its path relative to the master root, so
    ``target_path(p, t) == t / relative(p)`` for every target root ``t``.
    """

    def __init__(self, master_root: str | Path, target_roots: Sequence[str | Path]):
        if not target_roots:
            raise ValueError("At least one target folder is required.")
        self.master_root = Path(master_root).resolve()
        self.target_roots: tuple[Path, ...] = tuple(
            Path(t).resolve() for t in target_roots
        )

    def relative(self, path: str | Path) -> Path:
        """Return *path* relative to the master root (``.`` for the root)."""
        path = Path(path)
        try:
            return path.relative_to(self.master_root)
        except ValueError:
            pass
        # Callers may hand us an unresolved spelling (symlinked tmp dirs).
        try:
            return path.resolve().relative_to(self.master_root)
        except ValueError:
            raise ValueError(
                f"{path} is not inside the master folder {self.master_root}"
            ) from None

    def master_path(self, relative: str | Path) -> Path:
        return self.master_root / relative

    def target_path(self, path: str | Path, target_root: Path) -> Path:
        """Return the entry under *target_root* that mirrors *path*."""
        return target_root / self.relative(path)

    def targets_for(self, path: str | Path) -> Iterator[tuple[Path, Path]]:
        """Yield ``(target_root, mirrored_path)`` for every target, in order."""
        rel = self.relative(path)
        for root in self.target_roots:
            yield root, root / rel


class ExcludeRules:
    """Case-insensitive glob patterns matched against entry names."""

    def __init__(self, patterns: Sequence[str] | None = None):
        self.patterns = [p.strip().lower() for p in patterns or [] if p.strip()]

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def matches(self, name: str) -> bool:
        """Return True if the single entry *name* matches any pattern."""
        name = name.lower()
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.patterns)

    def excludes(self, relative: Path) -> bool:
        """Return True if any component of *relative* matches a pattern."""
        return any(self.matches(part) for part in Path(relative).parts)
