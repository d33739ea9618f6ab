"""flowbroker — main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _configure_logging(level_name: str) -> Path:
    """Log to ~/.flowbroker/logs/flowbroker.log and stderr."""
    log_dir = Path.home() / ".flowbroker" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "flowbroker.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="flowbroker",
        description="Local session broker between app widgets and a coding agent",
    )
    parser.add_argument(
        "--project-root", metavar="PATH",
        help="Working tree to serve (default: current directory)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: <project-root>/.flowbroker.yaml if present)",
    )
    parser.add_argument("--host", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument(
        "--port", type=int,
        help="Port to listen on (default: 3847, 0=random available port)",
    )
    parser.add_argument("--secret", help="Shared secret required as ?secret= on requests")
    parser.add_argument("--model", help="Model passed to the agent engine")
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    args = parser.parse_args(argv)

    from flowbroker.config import BrokerConfig
    from flowbroker.errors import ConfigError

    try:
        config = BrokerConfig.load(args.project_root, args.config)
    except ConfigError as exc:
        print(f"flowbroker: {exc}", file=sys.stderr)
        sys.exit(2)

    for field_name in ("host", "port", "secret", "model", "log_level"):
        value = getattr(args, field_name)
        if value is not None:
            setattr(config, field_name, value)

    log_file = _configure_logging(config.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting flowbroker root=%s host=%s port=%d secret=%s log=%s",
        config.root_path,
        config.host,
        config.port,
        "set" if config.secret else "none",
        log_file,
    )

    from flowbroker.server.server import BrokerServer

    server = BrokerServer(config)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        logger.error("Failed to start listener on %s:%d: %s", config.host, config.port, exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
