"""Command-line interface for noknok.

This module provides CLI argument parsing and configuration loading for the
gateway. It supports loading configuration from files, environment variables,
and command-line arguments with proper precedence (CLI > file > environment).
"""

import argparse
from pathlib import Path

from noknok import __version__
from noknok.config import Settings, load_settings_from_file


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="noknok",
        description="noknok - forward-auth gateway with ATProto sign-in",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Config file
    parser.add_argument(
        "--config", "-c", type=Path, help="Path to configuration file (YAML or TOML)"
    )

    parser.add_argument("--listen", help="HTTP bind address (host:port)")

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    parser.add_argument("--log-format", choices=["json", "text"], help="Log output format")

    # Database
    parser.add_argument(
        "--database-url", help="Database connection URL (overrides DB_* settings)"
    )

    parser.add_argument("--services-file", help="JSON service catalog seeded at startup")

    # Version
    parser.add_argument(
        "--version", "-v", action="version", version=f"%(prog)s {__version__}"
    )

    return parser


def load_config_from_cli(args: list[str] | None = None) -> Settings:
    """Load configuration from CLI arguments and environment.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Configured Settings instance

    Example:
        settings = load_config_from_cli()
        settings = load_config_from_cli(["--config", "noknok.yaml"])
    """
    parser = create_argument_parser()
    parsed_args = parser.parse_args(args)

    cli_overrides = {}

    if parsed_args.listen is not None:
        cli_overrides["listen_addr"] = parsed_args.listen

    if parsed_args.log_level is not None:
        cli_overrides["log_level"] = parsed_args.log_level

    if parsed_args.log_format is not None:
        cli_overrides["log_format"] = parsed_args.log_format

    if parsed_args.database_url is not None:
        cli_overrides["database_url"] = parsed_args.database_url

    if parsed_args.services_file is not None:
        cli_overrides["services_file"] = parsed_args.services_file

    if parsed_args.config:
        return load_settings_from_file(parsed_args.config, **cli_overrides)
    return Settings(**cli_overrides)
