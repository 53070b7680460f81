"""Command line entry point: ``python -m bird_cam``."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

import uvicorn

from .version import APP_VERSION

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the server CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m bird_cam",
        description="BirdCam monitoring station",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("data/config.json"),
        help="Path to the JSON configuration file.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind.")
    parser.add_argument("--port", type=int, default=8080, help="TCP port to listen on.")
    parser.add_argument(
        "--recordings",
        type=Path,
        default=None,
        help="Directory for recorded clips (defaults to BIRDCAM_RECORDINGS_DIR or data/recordings).",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=("debug", "info", "warning", "error"),
        help="Logging verbosity.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from .app import create_app

    try:
        app = create_app(args.config, recordings_dir=args.recordings)
    except RuntimeError as exc:
        logger.error("Unable to start BirdCam: %s", exc)
        return 1

    logger.info("Starting BirdCam %s on %s:%d", APP_VERSION, args.host, args.port)
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        timeout_graceful_shutdown=5,
    )
    return 0


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
