"""Command line entry point.

``resumable-file-server serve`` runs the upload server;
``resumable-file-server cleanup`` deletes files older than the retention window.
"""

import argparse
import logging
import os
import sys
from dataclasses import replace

from dotenv import load_dotenv

from .config import ServerConfig
from .errors import StorageIO
from .factory import create_server
from .sweep import DAY, cleanup_old_files

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO", log_dir: str | None = None) -> None:
    """Log to the console and, with ``log_dir``, to combined and error files."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, "combined.log")))
        error_handler = logging.FileHandler(os.path.join(log_dir, "error.log"))
        error_handler.setLevel(logging.ERROR)
        handlers.append(error_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resumable-file-server",
        description="Resumable (tus) file upload server.",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="Logging level (default: LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--log-dir",
        default=os.environ.get("LOG_DIR"),
        help="Directory for combined.log and error.log (default: LOG_DIR)",
    )
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the upload server")
    serve.add_argument("--host", help="Bind address (default: HOST or 0.0.0.0)")
    serve.add_argument("--port", type=int, help="Port (default: PORT or 3000)")
    serve.add_argument("--upload-dir", help="Storage root (default: UPLOAD_DIR)")

    cleanup = subparsers.add_parser(
        "cleanup", help="Delete uploaded files older than the retention window"
    )
    cleanup.add_argument("--upload-dir", help="Storage root (default: UPLOAD_DIR)")
    cleanup.add_argument(
        "--days",
        type=float,
        help="Retention window in days (default: RETENTION_DAYS or 30)",
    )
    return parser


def _serve(config: ServerConfig) -> int:
    try:
        server = create_server(config)
        server.ensure_running()
    except (StorageIO, OSError, ValueError) as e:
        logger.error(f"Failed to start upload server: {e}")
        return 1

    try:
        server.wait()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.stop()
    return 0


def _cleanup(config: ServerConfig) -> int:
    logger.info(f"Cleaning up files older than {config.retention_days:g} days")
    try:
        result = cleanup_old_files(config.upload_dir, config.retention_days * DAY)
    except OSError as e:
        logger.error(f"Cleanup failed: {e}")
        return 1

    logger.info(
        f"Cleanup summary: {result.deleted} files deleted, "
        f"{result.freed_bytes / 1024 / 1024 / 1024:.2f}GB freed"
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_dir)

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    overrides = {}
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None) is not None:
        overrides["port"] = args.port
    if getattr(args, "upload_dir", None):
        overrides["upload_dir"] = os.path.abspath(args.upload_dir)
    if getattr(args, "days", None) is not None:
        overrides["retention_days"] = args.days
    if overrides:
        config = replace(config, **overrides)

    if args.command == "cleanup":
        return _cleanup(config)
    return _serve(config)


if __name__ == "__main__":
    sys.exit(main())
