"""
Centralized logging configuration for NostrMem.

Records go to stderr because the stdio MCP transport owns stdout. Anything that
looks like a bech32 secret key is masked before it reaches a handler.
"""

import logging
import re
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Third-party loggers that are chatty at DEBUG
QUIET_LOGGERS = ('aiohttp', 'asyncio')

_NSEC_PATTERN = re.compile(r'nsec1[02-9ac-hj-np-z]{6,}')


class SecretKeyFilter(logging.Filter):
    """Mask ``nsec`` strings in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if 'nsec1' in message:
            record.msg = _NSEC_PATTERN.sub('nsec1***', message)
            record.args = None
        return True


def _level(config: AppConfig) -> int:
    return getattr(logging, config.log_level.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(SecretKeyFilter())
    logging.basicConfig(level=_level(config), format=LOG_FORMAT, handlers=[handler])

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(_level(config), logging.WARNING))


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger at the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Logger instance
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(_level(config))
    return logger
