"""
Configuration management for relay connections, identities and application settings.
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


@dataclass
class NostrConfig:
    """Configuration for the Nostr identity and the peer it talks to."""
    nsec: str
    target_npub: str
    relays: List[str] = field(default_factory=list)


@dataclass
class RelayConfig:
    """Configuration for relay connections."""
    connect_timeout: float = 10.0
    publish_timeout: float = 10.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    retry_jitter: float = 1.0
    reconnect_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    seen_cache_size: int = 4096
    heartbeat: float = 30.0
    resume_lookback: int = 0


@dataclass
class ConversationConfig:
    """Configuration for sending and receiving direct messages."""
    receive_timeout: float = 300.0
    reorder_window: float = 0.5
    resubscribe_delay: float = 2.0
    history_timeout: float = 10.0
    max_clock_skew: float = 300.0


@dataclass
class MemoryConfig:
    """Configuration for memory management."""
    default_limit: int = 10
    default_expiration_days: int = 0


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    nostr: NostrConfig
    relay: RelayConfig
    conversation: ConversationConfig
    memory: MemoryConfig
    mcp: MCPConfig


def _split_relays(value: str) -> List[str]:
    return [url.strip() for url in value.split(',') if url.strip()]


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Identity and peer configuration
    nostr_config = NostrConfig(nsec=os.getenv('NOSTR_NSEC', ''),
                               target_npub=os.getenv('NOSTR_TARGET_NPUB', ''),
                               relays=_split_relays(os.getenv('NOSTR_RELAYS', 'wss://relay.damus.io')))

    # Relay connection configuration
    relay_config = RelayConfig(connect_timeout=float(os.getenv('RELAY_CONNECT_TIMEOUT', '10')),
                               publish_timeout=float(os.getenv('RELAY_PUBLISH_TIMEOUT', '10')),
                               retry_attempts=int(os.getenv('RELAY_RETRY_ATTEMPTS', '3')),
                               retry_delay=float(os.getenv('RELAY_RETRY_DELAY', '1.0')),
                               retry_jitter=float(os.getenv('RELAY_RETRY_JITTER', '1.0')),
                               reconnect_delay=float(os.getenv('RELAY_RECONNECT_DELAY', '1.0')),
                               reconnect_max_delay=float(os.getenv('RELAY_RECONNECT_MAX_DELAY', '60')),
                               seen_cache_size=int(os.getenv('RELAY_SEEN_CACHE_SIZE', '4096')),
                               heartbeat=float(os.getenv('RELAY_HEARTBEAT', '30')),
                               resume_lookback=int(os.getenv('RELAY_RESUME_LOOKBACK', '0')))

    # Conversation configuration
    conversation_config = ConversationConfig(receive_timeout=float(os.getenv('CONVERSATION_RECEIVE_TIMEOUT', '300')),
                                             reorder_window=float(os.getenv('CONVERSATION_REORDER_WINDOW', '0.5')),
                                             resubscribe_delay=float(os.getenv('CONVERSATION_RESUBSCRIBE_DELAY', '2.0')),
                                             history_timeout=float(os.getenv('CONVERSATION_HISTORY_TIMEOUT', '10')),
                                             max_clock_skew=float(os.getenv('CONVERSATION_MAX_CLOCK_SKEW', '300')))

    # Memory configuration
    memory_config = MemoryConfig(default_limit=int(os.getenv('MEMORY_DEFAULT_LIMIT', '10')),
                                 default_expiration_days=int(os.getenv('MEMORY_DEFAULT_EXPIRATION_DAYS', '0')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'stdio'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     nostr=nostr_config,
                     relay=relay_config,
                     conversation=conversation_config,
                     memory=memory_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
