"""Tests for the mirror engine: startup sync, polling and propagation."""

import os
import shutil
from pathlib import Path

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from tree_mirror.engine import ConsistencyChecker, MirrorEngine
from tree_mirror.handlers import FilteringHandler, MirrorHandler


def _snapshot(root):
    return {
        str(p.relative_to(root)): (p.read_bytes() if p.is_file() else None)
        for p in sorted(root.rglob("*"))
    }


@pytest.fixture
def engine(master, targets, fake_observer):
    eng = MirrorEngine(master, targets, observer_factory=lambda: fake_observer)
    eng.start()
    yield eng
    eng.stop()


class TestStartup:

    def test_initial_sync_populates_every_target(self, engine, targets):
        for t in targets:
            assert (t / "a.txt").read_text() == "x"
            assert (t / "sub" / "b.txt").read_text() == "y"

    def test_every_directory_registered(self, engine, master):
        assert engine.registry.registered() == [master, master / "sub"]

    def test_master_root_created_when_missing(self, tmp_path, targets, fake_observer):
        master = tmp_path / "new" / "master"
        eng = MirrorEngine(master, targets, observer_factory=lambda: fake_observer)
        eng.start()
        try:
            assert master.is_dir()
            assert eng.registry.is_registered(master.resolve())
        finally:
            eng.stop()

    def test_missing_target_root_created_by_sync(self, master, tmp_path, fake_observer):
        target = tmp_path / "fresh"
        eng = MirrorEngine(master, [target], observer_factory=lambda: fake_observer)
        eng.start()
        eng.stop()
        assert (target / "sub" / "b.txt").read_text() == "y"

    def test_root_registration_failure_is_fatal(self, master, targets, fake_observer):
        fake_observer.refuse.add(master)
        eng = MirrorEngine(master, targets, observer_factory=lambda: fake_observer)
        with pytest.raises(OSError):
            eng.start()
        assert not eng.is_running
        assert fake_observer.stopped

    def test_subdirectories_share_the_root_watch(self, engine, master, fake_observer):
        assert engine.registry.registered() == [master, master / "sub"]
        assert list(fake_observer.handlers) == [master]
        assert fake_observer.handlers[master].root == master

    def test_unlistable_master_root_is_fatal(self, master, targets, fake_observer, monkeypatch):
        real_scandir = os.scandir

        def scandir(path="."):
            if Path(path) == master:
                raise PermissionError(13, "Permission denied", str(path))
            return real_scandir(path)

        monkeypatch.setattr(os, "scandir", scandir)
        eng = MirrorEngine(master, targets, observer_factory=lambda: fake_observer)

        with pytest.raises(PermissionError):
            eng.start()
        assert not eng.is_running
        assert list(targets[0].iterdir()) == []

    def test_start_twice_is_noop(self, engine):
        engine.start()
        assert len(engine.registry) == 2

    def test_poll_before_start_raises(self, master, targets, fake_observer):
        eng = MirrorEngine(master, targets, observer_factory=lambda: fake_observer)
        with pytest.raises(RuntimeError):
            eng.poll_once()

    def test_excluded_directories_not_synced_or_watched(self, master, targets, fake_observer):
        (master / "cache").mkdir()
        (master / "cache" / "c.bin").write_bytes(b"c")
        eng = MirrorEngine(master, targets, observer_factory=lambda: fake_observer,
                           exclude_patterns=["cache"])
        eng.start()
        try:
            assert not (targets[0] / "cache").exists()
            assert not eng.registry.is_registered(master / "cache")
            assert isinstance(eng.handler, FilteringHandler)
        finally:
            eng.stop()

    def test_excluded_new_directory_not_watched(self, master, targets, fake_observer):
        eng = MirrorEngine(master, targets, observer_factory=lambda: fake_observer,
                           exclude_patterns=["cache"])
        eng.start()
        try:
            (master / "cache").mkdir()
            fake_observer.emit(DirCreatedEvent(str(master / "cache")))

            eng.poll_once()

            assert not (targets[0] / "cache").exists()
            assert not eng.registry.is_registered(master / "cache")
        finally:
            eng.stop()

    def test_without_initial_sync_targets_untouched(self, master, targets, fake_observer):
        eng = MirrorEngine(master, targets, observer_factory=lambda: fake_observer,
                           initial_sync=False)
        eng.start()
        try:
            assert list(targets[0].iterdir()) == []
            assert len(eng.registry) == 2
        finally:
            eng.stop()


class TestConsistencyChecker:

    def test_sync_is_idempotent(self, engine, master, targets):
        checker = ConsistencyChecker(engine.resolver, engine.mirror)
        before = _snapshot(targets[0])

        checker.sync(master, targets[0])
        checker.sync(master, targets[0])

        assert _snapshot(targets[0]) == before

    def test_sync_reports_unlistable_directory(self, engine, master, targets):
        checker = ConsistencyChecker(engine.resolver, engine.mirror)
        outcomes = checker.sync(master / "missing", targets[0])
        assert len(outcomes) == 1
        assert not outcomes[0].success

    def test_engine_sync_repairs_drift(self, engine, targets):
        (targets[1] / "a.txt").write_text("drifted")
        (targets[1] / "sub" / "b.txt").unlink()

        engine.sync()

        assert (targets[1] / "a.txt").read_text() == "x"
        assert (targets[1] / "sub" / "b.txt").read_text() == "y"


class TestPropagation:

    def test_create_file(self, engine, master, targets, fake_observer):
        (master / "c.txt").write_text("z")
        fake_observer.emit(FileCreatedEvent(str(master / "c.txt")))

        assert engine.poll_once() == 1

        for t in targets:
            assert (t / "c.txt").read_text() == "z"

    def test_create_in_subdirectory(self, engine, master, targets, fake_observer):
        (master / "sub" / "d.txt").write_text("d")
        fake_observer.emit(FileCreatedEvent(str(master / "sub" / "d.txt")))

        engine.poll_once()

        assert (targets[0] / "sub" / "d.txt").read_text() == "d"

    def test_modify_is_full_overwrite(self, engine, master, targets, fake_observer):
        (master / "a.txt").write_text("xx")
        fake_observer.emit(FileModifiedEvent(str(master / "a.txt")))

        engine.poll_once()

        for t in targets:
            assert (t / "a.txt").read_text() == "xx"

    def test_modify_shrinks_file(self, engine, master, targets, fake_observer):
        (targets[0] / "a.txt").write_text("a long stale body")
        (master / "a.txt").write_text("s")
        fake_observer.emit(FileModifiedEvent(str(master / "a.txt")))

        engine.poll_once()

        assert (targets[0] / "a.txt").read_text() == "s"

    def test_delete_file(self, engine, master, targets, fake_observer):
        (master / "a.txt").unlink()
        fake_observer.emit(FileDeletedEvent(str(master / "a.txt")))

        engine.poll_once()

        for t in targets:
            assert not (t / "a.txt").exists()

    def test_delete_directory_after_its_children(self, engine, master, targets, fake_observer):
        shutil.rmtree(master / "sub")
        fake_observer.emit(FileDeletedEvent(str(master / "sub" / "b.txt")))
        fake_observer.emit(DirDeletedEvent(str(master / "sub")))

        assert engine.poll_once() == 2

        for t in targets:
            assert not (t / "sub").exists()

    def test_recreated_directory_is_watched_again(self, engine, master, targets, fake_observer):
        shutil.rmtree(master / "sub")
        fake_observer.emit(FileDeletedEvent(str(master / "sub" / "b.txt")))
        fake_observer.emit(DirDeletedEvent(str(master / "sub")))
        engine.poll_once()
        assert not engine.registry.is_registered(master / "sub")

        (master / "sub").mkdir()
        fake_observer.emit(DirCreatedEvent(str(master / "sub")))
        engine.poll_once()
        assert engine.registry.is_registered(master / "sub")

        (master / "sub" / "c.txt").write_text("c")
        fake_observer.emit(FileCreatedEvent(str(master / "sub" / "c.txt")))
        engine.poll_once()
        assert (targets[0] / "sub" / "c.txt").read_text() == "c"

    def test_delete_directory_is_not_recursive(self, engine, master, targets, fake_observer):
        shutil.rmtree(master / "sub")
        fake_observer.emit(DirDeletedEvent(str(master / "sub")))

        engine.poll_once()

        # Only the entry itself is removed; a non-empty mirror stays.
        assert (targets[0] / "sub" / "b.txt").exists()
        assert engine.stats.total_failed == 2

    def test_delete_missing_target_entry_is_logged(
        self, engine, master, targets, fake_observer, caplog
    ):
        (targets[0] / "a.txt").unlink()
        (master / "a.txt").unlink()
        fake_observer.emit(FileDeletedEvent(str(master / "a.txt")))

        engine.poll_once()

        assert not (targets[1] / "a.txt").exists()
        assert "Not deleted" in caplog.text

    def test_rename(self, engine, master, targets, fake_observer):
        (master / "a.txt").rename(master / "renamed.txt")
        fake_observer.emit(FileMovedEvent(str(master / "a.txt"), str(master / "renamed.txt")))

        # Both halves are queued for the same directory; only the create survives.
        engine.poll_once()

        assert (targets[0] / "renamed.txt").read_text() == "x"

    def test_new_directory_with_content_copied_and_registered(
        self, engine, master, targets, fake_observer
    ):
        (master / "newdir").mkdir()
        (master / "newdir" / "f.txt").write_text("f")
        fake_observer.emit(DirCreatedEvent(str(master / "newdir")))

        engine.poll_once()

        for t in targets:
            assert (t / "newdir" / "f.txt").read_text() == "f"
        assert engine.registry.is_registered(master / "newdir")

        (master / "newdir" / "g.txt").write_text("g")
        fake_observer.emit(FileCreatedEvent(str(master / "newdir" / "g.txt")))
        engine.poll_once()
        assert (targets[1] / "newdir" / "g.txt").read_text() == "g"

    def test_no_events_no_dispatch(self, engine):
        assert engine.poll_once() == 0


class TestCoalescing:

    def test_only_last_event_per_directory_is_applied(
        self, master, targets, fake_observer, recorder
    ):
        eng = MirrorEngine(master, targets, handler=recorder,
                           observer_factory=lambda: fake_observer)
        eng.start()
        try:
            (master / "a.txt").write_text("changed")
            (master / "a.txt").unlink()
            fake_observer.emit(FileModifiedEvent(str(master / "a.txt")))
            fake_observer.emit(FileDeletedEvent(str(master / "a.txt")))

            assert eng.poll_once() == 1

            assert recorder.calls == [("delete", master / "a.txt")]
            assert eng.stats.events_coalesced == 1
        finally:
            eng.stop()

    def test_modify_then_delete_leaves_file_deleted(self, engine, master, targets, fake_observer):
        (master / "a.txt").write_text("changed")
        (master / "a.txt").unlink()
        fake_observer.emit(FileModifiedEvent(str(master / "a.txt")))
        fake_observer.emit(FileDeletedEvent(str(master / "a.txt")))

        engine.poll_once()

        for t in targets:
            assert not (t / "a.txt").exists()

    def test_each_directory_gets_its_own_dispatch(self, master, targets, fake_observer, recorder):
        eng = MirrorEngine(master, targets, handler=recorder,
                           observer_factory=lambda: fake_observer)
        eng.start()
        try:
            fake_observer.emit(FileModifiedEvent(str(master / "a.txt")))
            fake_observer.emit(FileModifiedEvent(str(master / "sub" / "b.txt")))

            assert eng.poll_once() == 2
            assert {c[1] for c in recorder.calls} == {master / "a.txt", master / "sub" / "b.txt"}
        finally:
            eng.stop()


class TestHandlerErrors:

    def test_handler_exception_does_not_escape_poll(self, master, targets, fake_observer, caplog):
        class Exploding:
            def on_create(self, path):
                raise RuntimeError("boom")

            on_modify = on_delete = on_create

        eng = MirrorEngine(master, targets, handler=Exploding(),
                           observer_factory=lambda: fake_observer)
        eng.start()
        try:
            (master / "newdir").mkdir()
            fake_observer.emit(DirCreatedEvent(str(master / "newdir")))

            assert eng.poll_once() == 1
            assert "boom" in caplog.text
            # The new directory is still watched.
            assert eng.registry.is_registered(master / "newdir")
        finally:
            eng.stop()

    def test_default_handler_shares_engine_stats(self, engine):
        assert isinstance(engine.handler, MirrorHandler)
        assert engine.handler.stats is engine.stats
