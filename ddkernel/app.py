"""ddkernel: main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from ddkernel.engine.config import KernelConfig

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(level: str, log_dir: Path | None = None) -> Path:
    """Rotating file log plus stderr. Returns the log file path."""
    log_dir = log_dir or Path.home() / ".ddkernel" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "ddkernel-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
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


def resolve_config_path(explicit: str | None) -> Path | None:
    """Explicit ``--config`` wins, else ``./ddkernel.yaml`` when present."""
    if explicit:
        path = Path(explicit)
        logger.info("Using explicit config path: %s (exists=%s)", path, path.exists())
        return path
    candidate = Path.cwd() / "ddkernel.yaml"
    logger.info(
        "Config auto-discovery candidate: %s (exists=%s)",
        candidate, candidate.exists(),
    )
    return candidate if candidate.exists() else None


def build_config(args: argparse.Namespace) -> KernelConfig:
    """Env, then YAML, then command-line flags."""
    config = KernelConfig.from_env()

    config_path = resolve_config_path(args.config)
    if config_path is not None:
        from ddkernel.engine.yaml_config import load_yaml_config
        config = load_yaml_config(config_path, base=config)

    overrides = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.output_dir is not None:
        overrides["output_dir"] = str(Path(args.output_dir).expanduser())
    if args.python is not None:
        overrides["python_executable"] = args.python
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    if overrides:
        logger.info(
            "Command-line overrides: %s",
            ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
        )
        config = replace(config, **overrides)
    return config


def reap_stale_interpreters() -> None:
    from ddkernel.shared.services.process_cleanup import cleanup_stale_interpreters

    try:
        reaped = cleanup_stale_interpreters()
        if reaped:
            logger.warning("Reaped %d stale interpreter process(es) at startup", reaped)
    except Exception:
        logger.exception("Startup stale-process cleanup failed")


async def serve(config: KernelConfig) -> None:
    from ddkernel.api.server import ExecutionServer
    from ddkernel.engine.service import ExecutionService

    server = ExecutionServer(ExecutionService(config), host=config.host, port=config.port)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, server.request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass
    await server.start()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="ddkernel",
        description="ddkernel: persistent Python execution server for Design Diary",
    )
    parser.add_argument("--host", default=None, help="Bind address (default: 127.0.0.1)")
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (default: 3001, 0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file with kernel, sweeper and server sections",
    )
    parser.add_argument(
        "--output-dir", metavar="DIR",
        help="Directory for rendered artifacts such as plots",
    )
    parser.add_argument(
        "--python", metavar="EXECUTABLE",
        help="Python interpreter used for sessions",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    log_level = "DEBUG" if args.verbose else os.getenv("DDK_LOG_LEVEL", "INFO")
    log_file = configure_logging(log_level)

    try:
        config = build_config(args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.error("Failed to load configuration: %s", exc)
        sys.exit(2)
    logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    logger.info(
        "Starting ddkernel server cwd=%s host=%s port=%s python=%s log=%s",
        Path.cwd(), config.host, config.port, config.python_executable, log_file,
    )
    reap_stale_interpreters()

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
