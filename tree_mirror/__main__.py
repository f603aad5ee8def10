"""Entry point for Tree Mirror.

Usage:
    python -m tree_mirror MASTER TARGET [TARGET ...]
    python -m tree_mirror --config mirror.json
    python -m tree_mirror --dry-run --exclude "*.tmp" MASTER TARGET
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from tree_mirror import __app_name__, __version__
from tree_mirror.config import Config

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tree-mirror",
        description="Mirror a master folder into one or more target folders.",
    )
    parser.add_argument("master", nargs="?", help="Folder to watch (created if missing).")
    parser.add_argument("targets", nargs="*", help="Folders kept identical to the master.")
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON config file (default: platform config dir).")
    parser.add_argument("--interval", type=int, default=None, metavar="MS",
                        help="Delay between poll cycles in milliseconds.")
    parser.add_argument("--log-level", default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        type=str.upper)
    parser.add_argument("--exclude", action="append", default=None, metavar="PATTERN",
                        help="Glob pattern of entry names never mirrored (repeatable).")
    parser.add_argument("--polling", action="store_true",
                        help="Poll with stat() instead of native notifications.")
    parser.add_argument("--dry-run", action="store_true",
                        help="Log the changes that would be made without writing.")
    parser.add_argument("--save", action="store_true",
                        help="Write the effective settings back to the config file.")
    parser.add_argument("--version", action="version",
                        version=f"{__app_name__} {__version__}")
    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Load the config file and overlay the command-line arguments."""
    cfg = Config(args.config)
    if args.master:
        cfg.master_folder = args.master
    if args.targets:
        cfg.target_folders = args.targets
    if args.interval is not None:
        cfg.poll_interval_ms = args.interval
    if args.log_level:
        cfg.log_level = args.log_level
    if args.exclude:
        cfg.exclude_patterns = args.exclude
    if args.dry_run:
        cfg.dry_run = True
    if args.polling:
        cfg.use_polling = True
    return cfg


def main(argv: list[str] | None = None) -> None:
    """Parse arguments, then run the mirror until interrupted."""
    parser = build_parser()
    args = parser.parse_args(argv)
    cfg = load_config(args)
    if not cfg.is_configured():
        parser.error("a master folder and at least one target folder are required")
    if args.save:
        cfg.save()

    from tree_mirror.service import run_foreground, setup_logging

    setup_logging(cfg)
    logger.info("%s %s starting.", __app_name__, __version__)
    try:
        run_foreground(cfg)
    except OSError as exc:
        logger.error("Cannot start mirroring: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
