"""
Headless runner for Tree Mirror.

Builds the engine from a :class:`~tree_mirror.config.Config`, then
drives it with a fixed-interval poll loop until SIGINT/SIGTERM:

    python -m tree_mirror /data/master /mnt/mirror-a /mnt/mirror-b
"""

from __future__ import annotations

import logging
import logging.handlers
import signal
import sys
import time
from collections.abc import Callable
from pathlib import Path

from watchdog.observers.polling import PollingObserver

from tree_mirror.config import Config, get_log_path
from tree_mirror.engine import MirrorEngine
from tree_mirror.handlers import DryRunHandler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(cfg: Config, log_path: Path | None = None) -> None:
    """Configure rotating file log and stderr handler."""
    log_path = log_path or get_log_path()
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter(LOG_FORMAT)

    # Rotating file handler
    max_bytes = cfg.max_log_size_mb * 1024 * 1024
    fh = logging.handlers.RotatingFileHandler(
        str(log_path),
        maxBytes=max_bytes,
        backupCount=cfg.log_backup_count,
        encoding="utf-8",
    )
    fh.setLevel(level)
    fh.setFormatter(fmt)
    root_logger.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)


def build_engine(cfg: Config) -> MirrorEngine:
    """Create (but do not start) the engine described by *cfg*."""
    if not cfg.is_configured():
        raise ValueError("A master folder and at least one target folder are required.")

    engine = MirrorEngine(
        cfg.master_folder,
        cfg.target_folders,
        observer_factory=PollingObserver if cfg.use_polling else None,
        exclude_patterns=cfg.exclude_patterns or None,
        initial_sync=not cfg.dry_run,
    )
    if cfg.dry_run:
        engine.handler = DryRunHandler(engine.resolver)
    return engine


def run_loop(
    engine: MirrorEngine,
    interval_ms: int,
    should_stop: Callable[[], bool],
) -> int:
    """
    Poll *engine* every *interval_ms* until *should_stop* returns True.

    Returns the number of poll cycles run.
    """
    cycles = 0
    while not should_stop():
        engine.poll_once()
        cycles += 1
        time.sleep(interval_ms / 1000.0)
    return cycles


def run_foreground(cfg: Config) -> None:
    """Start the engine and run it in the foreground until SIGINT/SIGTERM."""
    engine = build_engine(cfg)
    engine.start()
    stop = False

    def _handler(sig, frame):
        nonlocal stop
        stop = True

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    logger.info("Polling every %d ms (press Ctrl-C to stop)", cfg.poll_interval_ms)
    try:
        run_loop(engine, cfg.poll_interval_ms, lambda: stop)
    finally:
        engine.stop()
