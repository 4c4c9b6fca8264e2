"""
Session wiring: one identity, one relay pool, and the services built on them.
"""

from typing import Optional

from ..utils.config import AppConfig
from ..utils.identity import Identity, load_identity, parse_public_key
from ..utils.logging_config import get_logger
from ..utils.relay_client import RelayPool
from .conversation import ConversationEngine
from .memory_management import MemoryStore

logger = get_logger(__name__)


class Session:
    """Owns the relay pool shared by the conversation engine and the memory store."""

    def __init__(self, identity: Identity, transport: RelayPool, app_config: AppConfig,
                 target_public_key: Optional[str] = None):
        self.identity = identity
        self.transport = transport
        self.target_public_key = target_public_key
        self.engine = ConversationEngine(identity, transport, app_config.conversation)
        self.memory = MemoryStore(self.engine, app_config.memory)

    async def __aenter__(self) -> 'Session':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        """
        Connect to the relays.

        Raises:
            ConnectFailed: If no relay can be reached
        """
        await self.transport.start()
        logger.info(f'Session started for {self.identity.npub}')

    async def close(self) -> None:
        await self.memory.stop()
        await self.transport.close()
        logger.info('Session closed')


def create_session(app_config: AppConfig) -> Session:
    """
    Build a session from configuration without touching the network.

    Keys are parsed first so an invalid key fails before any connection is made.

    Args:
        app_config: AppConfig instance

    Returns:
        Session that still has to be started

    Raises:
        InvalidKeyEncoding: If the secret key or the target public key is malformed
        ConnectFailed: If no relay URL is configured
    """
    identity = load_identity(app_config.nostr.nsec)
    target = parse_public_key(app_config.nostr.target_npub) if app_config.nostr.target_npub else None
    transport = RelayPool(app_config.nostr.relays, app_config.relay)
    return Session(identity, transport, app_config, target_public_key=target)
