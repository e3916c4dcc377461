"""Main entry point for noknok.

This module provides the main entry point that:
1. Loads and validates configuration
2. Sets up logging
3. Serves the HTTP application with uvicorn until SIGTERM/SIGINT
"""

import logging
import sys

import uvicorn
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from noknok import __version__
from noknok.cli import load_config_from_cli
from noknok.config import Settings, set_settings
from noknok.infra.observability import setup_logging


def sanitize_database_url(url: str) -> str:
    """Sanitize database URL by redacting password.

    Args:
        url: Database URL that may contain credentials

    Returns:
        Sanitized URL with password redacted
    """
    try:
        return make_url(url).render_as_string(hide_password=True)
    except (ArgumentError, ValueError):
        return "***REDACTED***"


def print_startup_banner(settings: Settings) -> None:
    """Log startup banner with configuration information.

    Args:
        settings: Settings instance
    """
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info(f"noknok {__version__}")
    logger.info("=" * 60)
    logger.info(f"  Listen: {settings.listen_host}:{settings.listen_port}")
    logger.info(f"  Public URL: {settings.public_url}")
    logger.info(f"  Cookie domains: {', '.join(settings.cookie_domain_list)}")
    logger.info(f"  Session TTL: {settings.session_ttl}")
    logger.info(f"  Owner DID: {settings.owner_did}")
    logger.info(f"  Database: {sanitize_database_url(settings.effective_database_url)}")
    logger.info(f"  Services file: {settings.services_file}")
    logger.info("=" * 60)
    logger.debug("Effective configuration", extra={"config": settings.to_dict()})


def main() -> int:  # pragma: no cover
    """Main entry point for noknok.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        settings = load_config_from_cli()
    except Exception as e:
        # Logging not yet configured, print to stderr
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1

    set_settings(settings)
    setup_logging(
        level=settings.log_level,
        json_format=settings.log_format == "json",
        log_file=settings.log_file,
    )
    print_startup_banner(settings)

    logger = logging.getLogger(__name__)

    # Import here so configuration errors surface before app construction
    from noknok.api.http import create_http_app

    try:
        app = create_http_app(settings)
        uvicorn.run(
            app,
            host=settings.listen_host,
            port=settings.listen_port,
            log_config=None,
            proxy_headers=True,
        )
    except KeyboardInterrupt:
        print("\nShutdown requested... exiting", file=sys.stderr)
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
