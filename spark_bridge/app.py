"""spark-bridge CLI: main application entry point.

Usage:
    spark-bridge
    spark-bridge --project ~/src/my-app --port 3700
    spark-bridge --dry-run --verbose
    spark-bridge --config bridge.yaml --concurrency 2
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from spark_bridge import __version__
from spark_bridge.engine.config import BridgeConfig
from spark_bridge.engine.errors import BridgeError
from spark_bridge.engine.yaml_config import load_yaml_config
from spark_bridge.server.bridge_server import BridgeServer

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spark-bridge",
        description="Local bridge between the browser overlay and the Codex agent",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="WebSocket port (default: 3700)",
    )
    parser.add_argument(
        "--project", "-d",
        default=None,
        help="Default project root for clients that do not register (default: cwd)",
    )
    parser.add_argument(
        "--model", "-m",
        default=None,
        help="Codex model (default: gpt-5.3-codex-spark)",
    )
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=None,
        help="Maximum jobs inside the agent at once (default: 1)",
    )
    parser.add_argument(
        "--banana-model",
        default=None,
        help="Gemini model for image jobs (default: gemini-3-pro-image-preview)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate agent responses without starting codex",
    )
    parser.add_argument(
        "--require-project-root",
        action="store_true",
        help="Reject jobs from clients that never sent register",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file with a 'bridge' section",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def build_config(args: argparse.Namespace) -> BridgeConfig:
    """Layer env vars, the YAML file, then CLI flags."""
    config = BridgeConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    if args.port is not None:
        config.port = args.port
    if args.project is not None:
        config.project_root = str(Path(args.project).expanduser().resolve())
    if args.model is not None:
        config.model = args.model
    if args.concurrency is not None:
        config.concurrency = max(1, args.concurrency)
    if args.banana_model is not None:
        config.image_model = args.banana_model
    if args.dry_run:
        config.dry_run = True
    if args.require_project_root:
        config.require_project_root = True
    if args.verbose:
        config.log_level = "DEBUG"
    return config


def configure_logging(level_name: str) -> Path:
    """Send root logging to a rotating file and stderr."""
    log_dir = Path.home() / ".spark-bridge" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "bridge.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


async def run(config: BridgeConfig) -> None:
    """Run the bridge until SIGINT/SIGTERM."""
    server = BridgeServer(config)
    if not await server.start():
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops.
            pass

    logger.info("Waiting for annotations...")
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await server.stop()


def main() -> None:
    args = _build_parser().parse_args()
    try:
        config = build_config(args)
    except (BridgeError, FileNotFoundError, ValueError) as exc:
        print(f"spark-bridge: {exc}", file=sys.stderr)
        sys.exit(2)

    log_file = configure_logging(config.log_level)
    logger.info(
        "Starting spark-bridge %s cwd=%s port=%d config=%s log=%s",
        __version__, os.getcwd(), config.port, args.config or "<none>", log_file,
    )
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass
    except BridgeError as exc:
        logger.error("spark-bridge failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
