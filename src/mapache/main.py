"""
Mapache MCP Bridge - entry point.

Loads settings, configures logging and serves the HTTP API with uvicorn.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from mapache.config.settings import BridgeSettings


def setup_logging(settings: BridgeSettings) -> None:
    """Configure logging."""
    # Remove default handler
    logger.remove()

    # Console handler
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level.upper(),
        colorize=True,
    )

    # File handler
    if settings.log_file:
        log_path = Path(settings.log_file)
        if not log_path.is_absolute() and log_path.parent == Path("."):
            log_path = Path("logs") / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
        )


def main(settings: Optional[BridgeSettings] = None) -> None:
    """Main entry point."""
    settings = settings or BridgeSettings.from_env()
    setup_logging(settings)

    logger.info("=" * 50)
    logger.info(settings.agent_name)
    logger.info("=" * 50)

    from mapache.core.app import BridgeApp
    from mapache.web.server import WebServer

    try:
        WebServer(BridgeApp(settings)).run()
    except KeyboardInterrupt:
        logger.info("Shutdown requested via keyboard")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
