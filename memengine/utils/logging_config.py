"""
Centralized logging configuration for the memory engine.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _resolve_level(config: AppConfig) -> int:
    level = getattr(logging, config.log_level.upper(), None)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    # Configure root logger; a host that already configured logging keeps its handlers
    logging.basicConfig(level=_resolve_level(config), format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger for an engine module.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Logger set to the configured level
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(config))
    return logger
