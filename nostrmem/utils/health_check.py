"""
Health check utilities for relay connections.
"""

from typing import Any, Dict

from .config import config
from .logging_config import get_logger
from .relay_client import ConnectionState, RelayPool

logger = get_logger(__name__)


def check_health(pool: RelayPool) -> bool:
    """Check that at least one relay connection is open.

    Args:
        pool: RelayPool to inspect

    Returns:
        True if any relay is healthy, False otherwise
    """
    health_status = get_health_status(pool)
    healthy = [url for url, status in health_status.items() if status['healthy']]

    if len(healthy) == len(health_status):
        logger.info('All relays are healthy')
    elif healthy:
        logger.warning(f'Only {len(healthy)}/{len(health_status)} relays are healthy')
    else:
        logger.error('No relay is connected')

    return bool(healthy)


def get_health_status(pool: RelayPool) -> Dict[str, Any]:
    """Get the connection status of every relay.

    Args:
        pool: RelayPool to inspect

    Returns:
        Dictionary keyed by relay URL with health flag and connection state
    """
    health_status = {}
    for url, state in pool.status().items():
        health_status[url] = {'healthy': state == ConnectionState.OPEN.value, 'service': 'Nostr relay', 'state': state}
    return health_status


def get_system_info(pool: RelayPool) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'NostrMem',
        'version': '1.0.0',
        'configuration': {
            'relays': list(pool.connections),
            'publish_timeout': config.relay.publish_timeout,
            'retry_attempts': config.relay.retry_attempts,
            'memory_expiration_days': config.memory.default_expiration_days,
        },
        'health_status': get_health_status(pool)
    }
