"""
Logging setup shared by the engine, the MCP entry point and the tests.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# SDK loggers that would otherwise echo prompts and user messages at DEBUG
NOISY_LOGGERS = ('botocore', 'boto3', 'urllib3', 'opensearch')


def _default_config() -> AppConfig:
    from .config import config as default_config
    return default_config


def resolve_level(level_name: str) -> int:
    """Translate a level name from the environment, falling back to INFO."""
    level = logging.getLevelName((level_name or '').upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Configure the root logger and quiet the AWS and HTTP client loggers.

    Args:
        config: AppConfig instance, uses default if None
    """
    config = config or _default_config()
    logging.basicConfig(level=resolve_level(config.log_level),
                        format=LOG_FORMAT,
                        handlers=[logging.StreamHandler(sys.stdout)])
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Module logger at the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None
    """
    logger = logging.getLogger(name)
    logger.setLevel(resolve_level((config or _default_config()).log_level))
    return logger
