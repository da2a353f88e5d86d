#!/usr/bin/env python3
"""
SOS CLI - launch a content-addressed storage node

Usage:
  sos -c <config> [-j] [-fs [-root <guid>]]

  -c <config>    Node configuration file (YAML or JSON)
  -j             Run the REST API
  -fs            Run the WebDAV bridge and a web UI over the node filesystem
  -root <guid>   Root GUID of the filesystem (generated when omitted)

Example:
  sos -c ~/sos/config.yaml -j -fs -root SHA256_16_0000a025d7d3b2cf782da0ef24423181fdd4096091bd8cc18b18c3aab9cb00a4
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from sosnode import exit_codes
from sosnode.exceptions import ConfigurationError, SOSNodeError
from sosnode.orchestrator import FrontEndSelection, Orchestrator

logger = logging.getLogger("sos")

SEPARATOR = "\n===================================================\n\n"

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Seconds between checks for termination while the node runs
WAIT_INTERVAL = 1.0


class CLIParser(argparse.ArgumentParser):
    """ArgumentParser that raises ConfigurationError instead of exiting."""

    def error(self, message: str) -> None:
        raise ConfigurationError(f"Invalid arguments: {message}", hint="See the usage above.")


def build_parser() -> CLIParser:
    """Build the option parser."""
    parser = CLIParser(
        prog="sos",
        description="SOS - launch a content-addressed storage node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
        epilog="""
Examples:
  sos -c config.yaml
  sos -c config.yaml -j
  sos -c config.yaml -j -fs -root SHA256_16_0000a025...
"""
    )

    parser.add_argument(
        "-c",
        dest="config",
        metavar="CONFIG",
        required=True,
        help="Config file used for this SOS instance"
    )
    parser.add_argument(
        "-j",
        dest="rest",
        action="store_true",
        help="Run a RESTful service"
    )
    parser.add_argument(
        "-fs",
        dest="fs",
        action="store_true",
        help="Make a WebDAV server and a web interface"
    )
    parser.add_argument(
        "-root",
        dest="root",
        metavar="GUID",
        help="Define the root GUID for this fs"
    )

    return parser


def print_usage(parser: argparse.ArgumentParser) -> None:
    """Print the usage synopsis. Always done before arguments are acted on."""
    parser.print_help()
    print(SEPARATOR)


def parse_args(parser: argparse.ArgumentParser, argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse and validate the command line.

    Raises:
        ConfigurationError: If parsing fails, the config file is unreadable or
            the root GUID is blank.
    """
    args = parser.parse_args(argv)

    config_path = Path(args.config).expanduser()
    if not config_path.is_file():
        raise ConfigurationError(
            f"Config file not found: {config_path}",
            hint="Pass an existing configuration file with -c.",
        )
    if not os.access(config_path, os.R_OK):
        raise ConfigurationError(f"Config file is not readable: {config_path}")
    args.config = config_path

    if args.root is not None and not args.root.strip():
        raise ConfigurationError(
            "Root GUID must not be empty",
            hint="Omit -root to generate a new filesystem root.",
        )
    if args.root is not None and not args.fs:
        logger.warning("-root is ignored without -fs")

    return args


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def report_error(error: SOSNodeError) -> None:
    """Print a known error to stderr."""
    print(f"Error: {error}", file=sys.stderr)
    if error.hint:
        print(error.hint, file=sys.stderr)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    configure_logging()

    parser = build_parser()
    print_usage(parser)

    orchestrator: Optional[Orchestrator] = None
    try:
        args = parse_args(parser, argv)
        selection = FrontEndSelection(
            enable_rest=args.rest,
            enable_filesystem_bridge=args.fs,
            root_id=args.root,
        )

        orchestrator = Orchestrator(args.config, selection)
        orchestrator.start()

    except SOSNodeError as e:
        report_error(e)
        return exit_codes.GENERAL_ERROR

    except KeyboardInterrupt:
        print("\nInterrupted during startup.", file=sys.stderr)
        if orchestrator is not None and orchestrator.node is not None:
            orchestrator.node_manager.kill(graceful=False)
        return exit_codes.KEYBOARD_INTERRUPT

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return exit_codes.UNEXPECTED_ERROR

    # Runs until the shutdown handler has completed
    while not orchestrator.wait(WAIT_INTERVAL):
        pass

    return exit_codes.SUCCESS


if __name__ == "__main__":
    sys.exit(main())
