"""
MCP Interface Layer using fastmcp to expose private messaging and memory to agents.
"""
import asyncio
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from nostrmem.models.core import MemoryEntry, ReceivedMessage
from nostrmem.services.conversation import ConversationError
from nostrmem.services.memory_management import MemoryStoreError, entry_to_dict
from nostrmem.services.session import Session, create_session
from nostrmem.utils.config import config
from nostrmem.utils.health_check import get_system_info
from nostrmem.utils.identity import IdentityError
from nostrmem.utils.logging_config import get_logger
from nostrmem.utils.relay_client import TransportError
from nostrmem.utils.timestamp_utils import to_datetime, to_iso8601

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Nostr Memory')

_session: Optional[Session] = None
_session_lock = asyncio.Lock()


async def get_session() -> Session:
    """Return the started session, creating and connecting it on first use."""
    global _session
    async with _session_lock:
        if _session is None:
            _session = create_session(config)
        if not _session.transport.open_connections():
            await _session.start()
        return _session


def _message_to_dict(message: ReceivedMessage) -> Dict[str, Any]:
    return {
        'event_id': message.event_id,
        'sender': message.sender,
        'content': message.content,
        'created_at': to_iso8601(to_datetime(message.created_at)),
    }


def _entries_to_dicts(entries: List[MemoryEntry]) -> List[Dict[str, Any]]:
    return [entry_to_dict(entry) for entry in entries]


@mcp.tool()
async def send_message(content: str, recipient: Optional[str] = None) -> Dict[str, Any]:
    """Send an encrypted private message.

    Args:
        content: Message text
        recipient: npub or hex public key (default: configured target)

    Returns:
        Dict with the published event id and the relays that accepted it

    Raises:
        Exception: If sending fails
    """
    try:
        if not content or not content.strip():
            raise ValueError('Message content is required')

        session = await get_session()
        target = recipient or session.target_public_key
        if not target:
            raise ValueError('No recipient given and NOSTR_TARGET_NPUB is not set')

        result = await session.engine.send(target, content)
        return {'event_id': result.event_id, 'accepted_relays': result.accepted_relays, 'attempts': result.attempts}

    except (IdentityError, TransportError) as e:
        logger.error(f'Error in MCP send_message: {e}')
        raise Exception(f'Send message failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP send_message: {e}')
        raise Exception(f'Send message failed: {e}')


@mcp.tool()
async def wait_for_message(sender: Optional[str] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
    """Wait for the next private message.

    Args:
        sender: Only accept messages from this npub or hex key (default: configured target, if any)
        timeout: Seconds to wait (default: CONVERSATION_RECEIVE_TIMEOUT)

    Returns:
        Dict with event_id, sender, content and created_at

    Raises:
        Exception: If no message arrives in time or receiving fails
    """
    try:
        session = await get_session()
        message = await session.engine.receive_next(expected_sender=sender or session.target_public_key,
                                                    timeout=timeout)
        return _message_to_dict(message)

    except (ConversationError, IdentityError, TransportError) as e:
        logger.error(f'Error in MCP wait_for_message: {e}')
        raise Exception(f'Wait for message failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP wait_for_message: {e}')
        raise Exception(f'Wait for message failed: {e}')


@mcp.tool()
async def store_memory(memory_type: str,
                       content: str,
                       category: str = 'general',
                       title: str = '',
                       tags: Optional[List[str]] = None,
                       priority: Optional[str] = None,
                       expires_at: Optional[str] = None) -> Dict[str, Any]:
    """Store an encrypted memory.

    Args:
        memory_type: preference, context, fact, instruction or note
        content: Memory text
        category: personal, work, project or general (default: general)
        title: Optional short title
        tags: Optional list of tags
        priority: Optional high, medium or low
        expires_at: Optional ISO 8601 expiry

    Returns:
        The stored memory

    Raises:
        Exception: If storing fails
    """
    try:
        session = await get_session()
        entry = await session.memory.create(memory_type,
                                            content,
                                            category=category,
                                            title=title,
                                            tags=tags,
                                            priority=priority,
                                            expires_at=expires_at)
        return entry_to_dict(entry)

    except (MemoryStoreError, TransportError) as e:
        logger.error(f'Memory store error in MCP store_memory: {e}')
        raise Exception(f'Memory store failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP store_memory: {e}')
        raise Exception(f'Memory store failed: {e}')


@mcp.tool()
async def retrieve_memory(memory_type: Optional[str] = None,
                          category: Optional[str] = None,
                          tags: Optional[List[str]] = None,
                          include_expired: bool = False,
                          since: Optional[str] = None,
                          until: Optional[str] = None,
                          limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Retrieve current memories, most recent first.

    Args:
        memory_type: Optional type filter
        category: Optional category filter
        tags: Optional tags that every result must carry
        include_expired: Include expired memories (default: False)
        since: Optional ISO 8601 lower bound on last update
        until: Optional ISO 8601 upper bound on last update
        limit: Maximum number of results (default: MEMORY_DEFAULT_LIMIT)

    Returns:
        List of memories

    Raises:
        Exception: If retrieval fails
    """
    try:
        session = await get_session()
        entries = await session.memory.retrieve(memory_type=memory_type,
                                                category=category,
                                                tags=tags,
                                                include_expired=include_expired,
                                                since=since,
                                                until=until,
                                                limit=limit if limit is not None else config.memory.default_limit)
        logger.debug(f'MCP retrieve returned {len(entries)} memories')
        return _entries_to_dicts(entries)

    except (MemoryStoreError, TransportError) as e:
        logger.error(f'Memory store error in MCP retrieve_memory: {e}')
        raise Exception(f'Memory retrieve failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP retrieve_memory: {e}')
        raise Exception(f'Memory retrieve failed: {e}')


@mcp.tool()
async def search_memory(query: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Search memories by text in content, title and tags.

    Args:
        query: Case-insensitive search text
        limit: Maximum number of results (default: MEMORY_DEFAULT_LIMIT)

    Returns:
        List of matching memories

    Raises:
        Exception: If search fails
    """
    try:
        if not query or not query.strip():
            return []

        session = await get_session()
        entries = await session.memory.search(query.strip(),
                                              limit=limit if limit is not None else config.memory.default_limit)
        logger.debug(f'MCP search returned {len(entries)} memories')
        return _entries_to_dicts(entries)

    except (MemoryStoreError, TransportError) as e:
        logger.error(f'Memory store error in MCP search_memory: {e}')
        raise Exception(f'Memory search failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP search_memory: {e}')
        raise Exception(f'Memory search failed: {e}')


@mcp.tool()
async def update_memory(memory_id: str,
                        content: Optional[str] = None,
                        title: Optional[str] = None,
                        tags: Optional[List[str]] = None,
                        priority: Optional[str] = None,
                        category: Optional[str] = None,
                        expires_at: Optional[str] = None) -> Dict[str, Any]:
    """Publish a new version of a memory. Omitted fields keep their current value.

    Args:
        memory_id: Id of the memory
        content: New memory text
        title: New title
        tags: New tag list
        priority: New priority
        category: New category
        expires_at: New ISO 8601 expiry

    Returns:
        The updated memory

    Raises:
        Exception: If the memory does not exist or the update fails
    """
    try:
        changes = {
            name: value
            for name, value in (('content', content), ('title', title), ('tags', tags), ('priority', priority),
                                ('category', category), ('expires_at', expires_at)) if value is not None
        }
        session = await get_session()
        entry = await session.memory.update(memory_id, **changes)
        return entry_to_dict(entry)

    except (MemoryStoreError, TransportError) as e:
        logger.error(f'Memory store error in MCP update_memory: {e}')
        raise Exception(f'Memory update failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP update_memory: {e}')
        raise Exception(f'Memory update failed: {e}')


@mcp.tool()
async def delete_memory(memory_id: str) -> Dict[str, Any]:
    """Expire a memory. Earlier versions stay on relays but are no longer returned.

    Args:
        memory_id: Id of the memory

    Returns:
        The expired memory version

    Raises:
        Exception: If the memory does not exist or expiry fails
    """
    try:
        session = await get_session()
        entry = await session.memory.expire(memory_id)
        return entry_to_dict(entry)

    except (MemoryStoreError, TransportError) as e:
        logger.error(f'Memory store error in MCP delete_memory: {e}')
        raise Exception(f'Memory delete failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP delete_memory: {e}')
        raise Exception(f'Memory delete failed: {e}')


@mcp.tool()
async def memory_stats() -> Dict[str, Any]:
    """Summarize current memories by type and category.

    Returns:
        Dict with total_memories, by_type, by_category, oldest and newest
    """
    try:
        session = await get_session()
        stats = await session.memory.stats()
        return {
            'total_memories': stats.total_memories,
            'by_type': stats.by_type,
            'by_category': stats.by_category,
            'oldest': to_iso8601(stats.oldest) if stats.oldest else None,
            'newest': to_iso8601(stats.newest) if stats.newest else None,
        }

    except (MemoryStoreError, TransportError) as e:
        logger.error(f'Memory store error in MCP memory_stats: {e}')
        raise Exception(f'Memory stats failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP memory_stats: {e}')
        raise Exception(f'Memory stats failed: {e}')


@mcp.tool()
async def cleanup_memories() -> int:
    """Drop expired memories from the local cache. Relays are not asked to delete anything.

    Returns:
        Number of memories removed
    """
    try:
        session = await get_session()
        return await session.memory.cleanup()

    except Exception as e:
        logger.error(f'Unexpected error in MCP cleanup_memories: {e}')
        raise Exception(f'Memory cleanup failed: {e}')


@mcp.tool()
async def relay_status() -> Dict[str, Any]:
    """Service info plus the connection state of every configured relay.

    Returns:
        Dict with service name, relay configuration and per-relay health
    """
    try:
        session = await get_session()
        return get_system_info(session.transport)

    except Exception as e:
        logger.error(f'Unexpected error in MCP relay_status: {e}')
        raise Exception(f'Relay status failed: {e}')


def main() -> None:
    """Validate the configured keys, then serve the tools."""
    global _session
    # Invalid keys are fatal before any connection is attempted
    _session = create_session(config)
    logger.info(f'Starting MCP server for {_session.identity.npub} over {config.mcp.transport}')

    if config.mcp.transport == 'stdio':
        mcp.run()
    else:
        mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)


if __name__ == '__main__':
    main()
