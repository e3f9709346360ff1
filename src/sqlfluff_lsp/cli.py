"""
sqlfluff-lsp Command-Line Interface.

Usage:
    sqlfluff-lsp serve                        # stdio, for editors
    sqlfluff-lsp serve --dialect=postgres     # default dialect
    sqlfluff-lsp serve --tcp --port 2087      # TCP, for debugging
"""

import argparse
import logging
import sys
from typing import Optional

from sqlfluff_lsp import __version__
from sqlfluff_lsp.config import (
    DEFAULT_DEBOUNCE,
    DEFAULT_MAX_WORKERS,
    DEFAULT_TIMEOUT,
    OUTPUT_FORMATS,
    ServerConfig,
)
from sqlfluff_lsp.server import create_server

logger = logging.getLogger("sqlfluff-lsp")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _non_negative_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return number


def _positive_float(value: str) -> float:
    number = _non_negative_float(value)
    if number == 0:
        raise argparse.ArgumentTypeError("must be greater than zero")
    return number


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return number


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="sqlfluff-lsp",
        description="Language server for the sqlfluff SQL linter and formatter",
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the language server",
    )
    serve_parser.add_argument(
        "-d",
        "--dialect",
        help="Default SQL dialect when no sqlfluff config file sets one",
    )
    serve_parser.add_argument(
        "-s",
        "--sqlfluff-path",
        help="Path to the sqlfluff executable (default: sqlfluff on PATH)",
    )
    serve_parser.add_argument(
        "--templater",
        help="sqlfluff templater, e.g. jinja or raw",
    )
    serve_parser.add_argument(
        "--config",
        dest="config_path",
        help="Additional sqlfluff config file",
    )
    serve_parser.add_argument(
        "--debounce",
        type=_non_negative_float,
        default=DEFAULT_DEBOUNCE,
        help=f"Seconds without edits before linting (default: {DEFAULT_DEBOUNCE})",
    )
    serve_parser.add_argument(
        "--timeout",
        type=_positive_float,
        default=DEFAULT_TIMEOUT,
        help=f"Maximum duration of a sqlfluff run in seconds (default: {DEFAULT_TIMEOUT:g})",
    )
    serve_parser.add_argument(
        "--max-workers",
        type=_positive_int,
        default=DEFAULT_MAX_WORKERS,
        help=f"Maximum concurrent sqlfluff processes (default: {DEFAULT_MAX_WORKERS})",
    )
    serve_parser.add_argument(
        "--output-format",
        choices=OUTPUT_FORMATS,
        default="json",
        help="Output format requested from sqlfluff lint (default: json)",
    )
    serve_parser.add_argument(
        "--tcp",
        action="store_true",
        help="Start server in TCP mode instead of stdio",
    )
    serve_parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to in TCP mode (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=2087,
        help="Port to listen on in TCP mode (default: 2087)",
    )
    serve_parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="warning",
        help="Logging level (default: warning)",
    )

    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    """Build the server configuration from parsed ``serve`` arguments."""
    return ServerConfig(
        dialect=args.dialect,
        templater=args.templater,
        sqlfluff_path=args.sqlfluff_path,
        config_path=args.config_path,
        debounce=args.debounce,
        timeout=args.timeout,
        max_workers=args.max_workers,
        output_format=args.output_format,
    )


def configure_logging(level: str) -> None:
    """Send log records to stderr; stdout carries the protocol."""
    logging.basicConfig(stream=sys.stderr, format=LOG_FORMAT)
    logging.getLogger("sqlfluff-lsp").setLevel(getattr(logging, level.upper()))


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the language server until the client disconnects."""
    configure_logging(args.log_level)

    server = create_server(config_from_args(args))

    try:
        if args.tcp:
            logger.info(f"Starting sqlfluff LSP in TCP mode on {args.host}:{args.port}")
            server.start_tcp(args.host, args.port)
        else:
            logger.info("Starting sqlfluff LSP in stdio mode")
            server.start_io()
    except Exception:
        logger.exception("Language server stopped on a fatal error")
        logging.shutdown()
        return 1

    code = server.dispatcher.exit()
    logger.info(f"Language server stopped (exit code {code})")
    return code


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help(sys.stderr)
        return 2

    command_handlers = {
        "serve": cmd_serve,
    }

    return command_handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
