"""
Memory Management Service: agent memory persisted as self-addressed private messages.

Nothing is stored in place. Every store, update and expiry publishes a new
record, and the current state is rebuilt by folding the relay history by
memory id, keeping the highest version of each.
"""

import asyncio
import dataclasses
import json
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from ..models.core import (MemoryCategory, MemoryEntry, MemoryPriority, MemoryStats, MemoryType,
                           ReceivedMessage)
from ..utils.config import MemoryConfig
from ..utils.logging_config import get_logger
from ..utils.nip44 import CryptoError
from ..utils.timestamp_utils import parse_iso8601, to_iso8601, utc_now
from .conversation import ConversationEngine

logger = get_logger(__name__)

MEMORY_PREFIX = 'MEMORY_ENTRY:'

UPDATABLE_FIELDS = ('memory_type', 'category', 'title', 'content', 'tags', 'priority', 'expires_at')

E = TypeVar('E', MemoryType, MemoryCategory, MemoryPriority)


class MemoryStoreError(Exception):
    """Custom exception for memory store errors."""
    pass


class SerializationFailed(MemoryStoreError):
    """Raised when a memory entry cannot be encoded or decoded."""
    pass


class EntryNotFound(MemoryStoreError):
    """Raised when no record exists for a memory id."""
    pass


class InvalidMemoryField(MemoryStoreError):
    """Raised when a memory field has an unsupported value."""
    pass


def parse_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ', '.join(member.value for member in enum_cls)
        raise InvalidMemoryField(f'Invalid {field_name} {value!r}, expected one of: {allowed}')


def _parse_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        raise InvalidMemoryField(f'Invalid {field_name} timestamp {value!r}, expected an ISO 8601 string')
    try:
        return parse_iso8601(value)
    except (TypeError, ValueError):
        raise InvalidMemoryField(f'Invalid {field_name} timestamp {value!r}')


def _parse_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(tag, str) for tag in value):
        raise InvalidMemoryField('Tags must be a list of strings')
    return [tag.strip() for tag in value if tag.strip()]


def entry_to_dict(entry: MemoryEntry) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'memory_type': entry.memory_type.value,
        'category': entry.category.value,
        'title': entry.title,
        'content': entry.content,
        'tags': list(entry.tags),
        'priority': entry.priority.value if entry.priority else None,
        'created_at': to_iso8601(entry.created_at),
        'updated_at': to_iso8601(entry.updated_at),
        'expires_at': to_iso8601(entry.expires_at) if entry.expires_at else None,
        'version': entry.version,
    }


def entry_from_dict(data: Dict[str, Any]) -> MemoryEntry:
    """Build a MemoryEntry from its JSON form.

    Raises:
        InvalidMemoryField: If a field is missing or has an unsupported value
    """
    if not isinstance(data, dict):
        raise InvalidMemoryField('Memory record must be a JSON object')
    if not isinstance(data.get('id'), str) or not data['id']:
        raise InvalidMemoryField('Memory record has no id')
    if not isinstance(data.get('content'), str):
        raise InvalidMemoryField('Memory content must be a string')
    title = data.get('title')
    if title is not None and not isinstance(title, str):
        raise InvalidMemoryField('Memory title must be a string')
    version = data.get('version', 1)
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise InvalidMemoryField(f'Invalid memory version {version!r}')

    created_at = _parse_datetime(data.get('created_at'), 'created_at')
    if created_at is None:
        raise InvalidMemoryField('Memory record has no created_at')
    priority = data.get('priority')

    return MemoryEntry(id=data['id'],
                       memory_type=parse_enum(MemoryType, data.get('memory_type'), 'memory_type'),
                       category=parse_enum(MemoryCategory, data.get('category', 'general'), 'category'),
                       content=data['content'],
                       created_at=created_at,
                       updated_at=_parse_datetime(data.get('updated_at'), 'updated_at') or created_at,
                       title=title or '',
                       tags=_parse_tags(data.get('tags')),
                       priority=parse_enum(MemoryPriority, priority, 'priority') if priority else None,
                       expires_at=_parse_datetime(data.get('expires_at'), 'expires_at'),
                       version=version)


def serialize_entry(entry: MemoryEntry) -> str:
    """Encode an entry as message content.

    Raises:
        SerializationFailed: If the entry cannot be encoded
    """
    try:
        return MEMORY_PREFIX + json.dumps(entry_to_dict(entry), ensure_ascii=False)
    except (AttributeError, TypeError, ValueError) as e:
        raise SerializationFailed(f'Failed to serialize memory {entry.id}: {e}')


def deserialize_entry(content: str) -> Optional[MemoryEntry]:
    """Decode message content into an entry, or None if it is not a memory record.

    Raises:
        SerializationFailed: If the content carries the memory prefix but is not a valid record
    """
    if not content.startswith(MEMORY_PREFIX):
        return None
    try:
        return entry_from_dict(json.loads(content[len(MEMORY_PREFIX):]))
    except json.JSONDecodeError as e:
        raise SerializationFailed(f'Memory record is not valid JSON: {e}')
    except InvalidMemoryField as e:
        raise SerializationFailed(f'Memory record is invalid: {e}')


def is_newer(candidate: MemoryEntry, current: Optional[MemoryEntry]) -> bool:
    return current is None or (candidate.version, candidate.updated_at) > (current.version, current.updated_at)


def fold_entries(entries: Iterable[MemoryEntry]) -> Dict[str, MemoryEntry]:
    """Reduce a record history to the latest version of each memory id."""
    latest: Dict[str, MemoryEntry] = {}
    for entry in entries:
        if is_newer(entry, latest.get(entry.id)):
            latest[entry.id] = entry
    return latest


class MemoryStore:
    """Encrypted agent memory over the owner's own inbox."""

    def __init__(self, engine: ConversationEngine, config: MemoryConfig):
        """
        Initialize the memory store.

        Args:
            engine: ConversationEngine of the owning identity
            config: MemoryConfig instance
        """
        self.engine = engine
        self.config = config
        self._records: Dict[str, MemoryEntry] = {}
        self._listener: Optional[asyncio.Task] = None
        logger.info('Initialized MemoryStore')

    @property
    def owner(self) -> str:
        return self.engine.identity.public_key

    def _fold(self, entry: MemoryEntry) -> bool:
        if is_newer(entry, self._records.get(entry.id)):
            self._records[entry.id] = entry
            return True
        return False

    def ingest(self, message: ReceivedMessage) -> Optional[MemoryEntry]:
        """Fold one received message into the record cache if it is one of our memory records."""
        if message.sender != self.owner:
            logger.debug(f'Ignoring message {message.event_id} from foreign sender {message.sender}')
            return None
        try:
            entry = deserialize_entry(message.content)
        except SerializationFailed as e:
            logger.warning(f'Skipping malformed memory record {message.event_id}: {e}')
            return None
        if entry is not None:
            self._fold(entry)
        return entry

    async def sync(self) -> int:
        """Backfill our self-addressed history into the record cache. Returns the number of records read."""
        messages = await self.engine.fetch_history(expected_sender=self.owner)
        count = sum(1 for message in messages if self.ingest(message) is not None)
        logger.debug(f'Synced {count} memory records ({len(self._records)} memory ids)')
        return count

    async def start(self) -> None:
        """Listen for records published by other devices of the same identity."""
        if self._listener is not None:
            return
        await self.sync()
        self._listener = asyncio.create_task(self.engine.receive_stream(self.ingest, expected_sender=self.owner))
        logger.info('Started memory listener')

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        self._listener = None
        logger.info('Stopped memory listener')

    async def store(self, entry: MemoryEntry) -> MemoryEntry:
        """
        Publish a memory record to our own inbox.

        Args:
            entry: Record to store

        Returns:
            The stored entry

        Raises:
            SerializationFailed: If the entry cannot be encoded into a message
            TransportError: If publishing fails after all retries
        """
        content = serialize_entry(entry)
        try:
            await self.engine.send(self.owner, content)
        except CryptoError as e:
            raise SerializationFailed(f'Memory {entry.id} cannot be encrypted: {e}')
        self._fold(entry)
        logger.info(f'Stored memory {entry.id} version {entry.version}')
        return entry

    async def create(self,
                     memory_type: Any,
                     content: str,
                     category: Any = MemoryCategory.GENERAL,
                     title: str = '',
                     tags: Optional[List[str]] = None,
                     priority: Any = None,
                     expires_at: Any = None) -> MemoryEntry:
        """
        Create and store a new memory.

        Args:
            memory_type: preference, context, fact, instruction or note
            content: Memory text
            category: personal, work, project or general
            title: Optional short title
            tags: Optional list of tags
            priority: Optional high, medium or low
            expires_at: Optional expiry as datetime or ISO 8601 string

        Returns:
            The stored MemoryEntry (version 1)

        Raises:
            InvalidMemoryField: If a field value is not supported
        """
        if not isinstance(content, str) or not content.strip():
            raise InvalidMemoryField('Memory content must not be empty')

        now = utc_now()
        expiry = _parse_datetime(expires_at, 'expires_at')
        if expiry is None and self.config.default_expiration_days > 0:
            expiry = now + timedelta(days=self.config.default_expiration_days)

        entry = MemoryEntry(id=str(uuid.uuid4()),
                            memory_type=parse_enum(MemoryType, memory_type, 'memory_type'),
                            category=parse_enum(MemoryCategory, category or MemoryCategory.GENERAL, 'category'),
                            content=content,
                            created_at=now,
                            updated_at=now,
                            title=title or '',
                            tags=_parse_tags(tags),
                            priority=parse_enum(MemoryPriority, priority, 'priority') if priority else None,
                            expires_at=expiry)
        return await self.store(entry)

    async def get(self, memory_id: str) -> MemoryEntry:
        """Latest version of a memory, expired or not.

        Raises:
            EntryNotFound: If the id has no records
        """
        await self.sync()
        entry = self._records.get(memory_id)
        if entry is None:
            raise EntryNotFound(f'Memory {memory_id} not found')
        return entry

    async def update(self, memory_id: str, **changes: Any) -> MemoryEntry:
        """
        Publish a new version of a memory.

        Args:
            memory_id: Id of the memory to update
            **changes: New values for memory_type, category, title, content, tags, priority or expires_at

        Returns:
            The new MemoryEntry version

        Raises:
            EntryNotFound: If the id has no records
            InvalidMemoryField: If a field name or value is not supported
        """
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidMemoryField(f'Cannot update fields: {", ".join(sorted(unknown))}')

        current = await self.get(memory_id)
        values: Dict[str, Any] = {}
        if 'memory_type' in changes:
            values['memory_type'] = parse_enum(MemoryType, changes['memory_type'], 'memory_type')
        if 'category' in changes:
            values['category'] = parse_enum(MemoryCategory, changes['category'], 'category')
        if 'title' in changes:
            values['title'] = changes['title'] or ''
        if 'content' in changes:
            if not isinstance(changes['content'], str) or not changes['content'].strip():
                raise InvalidMemoryField('Memory content must not be empty')
            values['content'] = changes['content']
        if 'tags' in changes:
            values['tags'] = _parse_tags(changes['tags'])
        if 'priority' in changes:
            priority = changes['priority']
            values['priority'] = parse_enum(MemoryPriority, priority, 'priority') if priority else None
        if 'expires_at' in changes:
            values['expires_at'] = _parse_datetime(changes['expires_at'], 'expires_at')

        updated = dataclasses.replace(current,
                                      updated_at=max(utc_now(), current.updated_at),
                                      version=current.version + 1,
                                      **values)
        return await self.store(updated)

    async def expire(self, memory_id: str) -> MemoryEntry:
        """
        Soft-delete a memory by publishing a version that expires now.

        Relays keep the earlier records; they are hidden because the newer version wins.

        Raises:
            EntryNotFound: If the id has no records
        """
        current = await self.get(memory_id)
        now = max(utc_now(), current.updated_at)
        expired = dataclasses.replace(current, updated_at=now, expires_at=now, version=current.version + 1)
        entry = await self.store(expired)
        logger.info(f'Expired memory {memory_id}')
        return entry

    async def retrieve(self,
                       memory_type: Any = None,
                       category: Any = None,
                       tags: Optional[List[str]] = None,
                       include_expired: bool = False,
                       since: Any = None,
                       until: Any = None,
                       limit: Optional[int] = None) -> List[MemoryEntry]:
        """
        Current memories, most recently updated first.

        Args:
            memory_type: Optional type filter
            category: Optional category filter
            tags: Optional tags, every one of which an entry must carry
            include_expired: Include entries whose expiry has passed
            since: Optional lower bound on updated_at (datetime or ISO 8601)
            until: Optional upper bound on updated_at (datetime or ISO 8601)
            limit: Optional maximum number of entries

        Returns:
            List of MemoryEntry objects

        Raises:
            InvalidMemoryField: If a filter value is not supported
        """
        type_filter = parse_enum(MemoryType, memory_type, 'memory_type') if memory_type else None
        category_filter = parse_enum(MemoryCategory, category, 'category') if category else None
        tag_filter = {tag.lower() for tag in _parse_tags(tags)}
        since_dt = _parse_datetime(since, 'since')
        until_dt = _parse_datetime(until, 'until')

        await self.sync()
        now = utc_now()

        results = []
        for entry in self._records.values():
            if not include_expired and entry.is_expired(now):
                continue
            if type_filter and entry.memory_type != type_filter:
                continue
            if category_filter and entry.category != category_filter:
                continue
            if tag_filter and not tag_filter <= {tag.lower() for tag in entry.tags}:
                continue
            if since_dt and entry.updated_at < since_dt:
                continue
            if until_dt and entry.updated_at > until_dt:
                continue
            results.append(entry)

        results.sort(key=lambda e: (e.updated_at, e.version), reverse=True)
        if limit is not None:
            results = results[:max(0, limit)]
        logger.debug(f'Retrieved {len(results)} memories')
        return results

    async def search(self, query: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        """Current memories whose content, title or tags contain ``query`` (case-insensitive)."""
        matches = [entry for entry in await self.retrieve() if entry.matches_query(query)]
        return matches[:limit] if limit is not None else matches

    async def cleanup(self) -> int:
        """
        Drop expired memories from the local record cache.

        No relay deletions are issued; the dropped records are hidden again by
        expiry if a later sync reads them back.

        Returns:
            Number of memories removed
        """
        now = utc_now()
        expired_ids = [memory_id for memory_id, entry in self._records.items() if entry.is_expired(now)]
        for memory_id in expired_ids:
            del self._records[memory_id]
        logger.info(f'Cleaned up {len(expired_ids)} expired memories')
        return len(expired_ids)

    async def stats(self) -> MemoryStats:
        """Counts and time range over the current, non-expired memories."""
        entries = await self.retrieve()
        return MemoryStats(total_memories=len(entries),
                           by_type=dict(Counter(entry.memory_type.value for entry in entries)),
                           by_category=dict(Counter(entry.category.value for entry in entries)),
                           oldest=min((entry.created_at for entry in entries), default=None),
                           newest=max((entry.created_at for entry in entries), default=None))
