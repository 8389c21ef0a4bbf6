"""Entry point for `python -m entraid_exporter`."""

import argparse
import os
import sys

import pydantic
import structlog
import uvicorn

from . import __version__, server

GRACEFUL_SHUTDOWN_SECONDS = 5

logger = structlog.get_logger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Prometheus exporter for Microsoft Entra ID",
        prog="python -m entraid_exporter",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=os.environ.get(server.CONFIG_ENV_VAR, "/config.json"),
        help="Path to the JSON config file",
    )
    parser.add_argument("--host", help="Address to bind to (overrides config)")
    parser.add_argument("--port", type=int, help="Port to bind to (overrides config)")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Log level (overrides config)",
    )
    parser.add_argument(
        "--log-format",
        choices=["logfmt", "json"],
        help="Log format (overrides config)",
    )
    parser.add_argument("--log-file", help="Append logs to this file (overrides config)")
    parser.add_argument(
        "--log-debug",
        action="store_true",
        help=f"Enable debug logging (also enabled by {server.LOG_DEBUG_ENV_VAR}=true)",
    )
    args = parser.parse_args()

    try:
        config = server.load_config(args.config)
    except (OSError, ValueError, pydantic.ValidationError) as exc:
        # Logging is not configured yet
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        return 1

    overrides = {
        "host": args.host,
        "port": args.port,
        "log_level": args.log_level.upper() if args.log_level else None,
        "log_format": args.log_format,
        "log_file": args.log_file,
    }
    config = config.model_copy(
        update={key: value for key, value in overrides.items() if value is not None},
    )
    if args.log_debug or server.debug_requested():
        config = config.model_copy(update={"log_level": "DEBUG"})

    try:
        server.configure_logging(config.log_level, config.log_format, config.log_file)
    except OSError as exc:
        print(f"Failed to open log file: {exc}", file=sys.stderr)
        return 1
    logger.info("Starting Entra ID exporter", version=__version__)
    server.check_azure_environment()

    app = server.create_exporter(config)

    logger.info("Starting HTTP server", host=config.host, port=config.port)
    # uvicorn exits non-zero by itself if the listener cannot bind
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        timeout_graceful_shutdown=GRACEFUL_SHUTDOWN_SECONDS,
    )
    logger.info("Server gracefully stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
