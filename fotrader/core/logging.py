import sys
from loguru import logger
from fotrader.core.config import settings, get_logs_path


def setup_logging():
    log_settings = settings.logging
    logger.remove()

    # Console Handler
    logger.add(
        sys.stderr,
        format=log_settings.format,
        level=log_settings.level,
        colorize=True,
    )

    if log_settings.file_enabled:
        get_logs_path()

        # Plain text file
        logger.add(
            log_settings.file_path,
            format=log_settings.format,
            rotation=log_settings.file_rotation,
            retention=log_settings.file_retention,
            level=log_settings.level,
        )

        # File Handler (JSON for structured logging)
        logger.add(
            log_settings.json_path,
            rotation=log_settings.file_rotation,
            retention=log_settings.file_retention,
            compression="zip",
            serialize=True,
            level=log_settings.level,
        )

        # Error File Handler
        logger.add(
            log_settings.error_path,
            rotation=log_settings.file_rotation,
            retention=log_settings.file_retention,
            level="ERROR",
            backtrace=True,
            diagnose=True,
        )

    logger.info("Logging initialized")
