"""Shared fixtures for Tree Mirror tests."""

from pathlib import Path

import pytest
from watchdog.events import FileSystemEvent


class FakeWatch:
    def __init__(self, path: str, recursive: bool):
        self.path = path
        self.is_recursive = recursive


class FakeObserver:
    """Stands in for a watchdog observer; events are fed in by the test."""

    def __init__(self):
        self.handlers = {}
        self.started = False
        self.stopped = False
        self.refuse = set()

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass

    def schedule(self, handler, path, recursive=False):
        if Path(path) in self.refuse:
            raise OSError(28, "No space left on device", path)
        self.handlers[Path(path)] = handler
        return FakeWatch(path, recursive)

    def unschedule(self, watch):
        del self.handlers[Path(watch.path)]

    def emit(self, event: FileSystemEvent) -> None:
        """Deliver *event* once to every watch whose tree contains it."""
        paths = [Path(event.src_path)]
        if getattr(event, "dest_path", ""):
            paths.append(Path(event.dest_path))
        for root, handler in list(self.handlers.items()):
            if any(root in p.parents for p in paths):
                handler.dispatch(event)


@pytest.fixture
def fake_observer():
    return FakeObserver()


@pytest.fixture
def master(tmp_path):
    """A master tree holding a.txt and sub/b.txt."""
    root = (tmp_path / "master").resolve()
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_text("x")
    (root / "sub" / "b.txt").write_text("y")
    return root


@pytest.fixture
def targets(tmp_path):
    t1 = (tmp_path / "t1").resolve()
    t2 = (tmp_path / "t2").resolve()
    t1.mkdir()
    t2.mkdir()
    return [t1, t2]


class RecordingHandler:
    """ChangeHandler that only remembers what it was asked to do."""

    def __init__(self):
        self.calls = []

    def on_create(self, path):
        self.calls.append(("create", Path(path)))
        return []

    def on_modify(self, path):
        self.calls.append(("modify", Path(path)))
        return []

    def on_delete(self, path):
        self.calls.append(("delete", Path(path)))
        return []


@pytest.fixture
def recorder():
    return RecordingHandler()
