"""
Core data models for private messaging and the memory store.

The three envelope layers are separate types so the codec cannot sign or
encrypt the wrong one.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.json_utils import event_id

KIND_SEAL = 13
KIND_PRIVATE_DIRECT_MESSAGE = 14
KIND_GIFT_WRAP = 1059


@dataclass(frozen=True)
class Rumor:
    """Innermost unsigned event carrying the user-visible content."""
    pubkey: str  # Real author
    created_at: int  # Real send time
    kind: int
    tags: List[List[str]]
    content: str

    @property
    def id(self) -> str:
        return event_id(self.pubkey, self.created_at, self.kind, self.tags, self.content)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'pubkey': self.pubkey,
            'created_at': self.created_at,
            'kind': self.kind,
            'tags': self.tags,
            'content': self.content,
        }


@dataclass(frozen=True)
class Seal:
    """Kind 13 event: the encrypted rumor, signed by the real sender."""
    id: str
    pubkey: str
    created_at: int
    content: str  # NIP-44 payload of the rumor
    sig: str

    kind = KIND_SEAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'pubkey': self.pubkey,
            'created_at': self.created_at,
            'kind': KIND_SEAL,
            'tags': [],
            'content': self.content,
            'sig': self.sig,
        }


@dataclass(frozen=True)
class GiftWrap:
    """Kind 1059 event: the encrypted seal, signed by a one-time key. The only layer relays see."""
    id: str
    pubkey: str  # Ephemeral
    created_at: int  # Tweaked into the past
    tags: List[List[str]]
    content: str  # NIP-44 payload of the seal
    sig: str

    kind = KIND_GIFT_WRAP

    @property
    def recipient(self) -> str:
        return next(tag[1] for tag in self.tags if len(tag) >= 2 and tag[0] == 'p')

    def to_event(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'pubkey': self.pubkey,
            'created_at': self.created_at,
            'kind': KIND_GIFT_WRAP,
            'tags': self.tags,
            'content': self.content,
            'sig': self.sig,
        }


@dataclass(frozen=True)
class UnwrappedGift:
    """Result of decoding a gift wrap."""
    rumor: Rumor
    sender: str  # Seal signer, verified


@dataclass(frozen=True)
class ReceivedMessage:
    """A decoded private message attributed to its verified sender."""
    event_id: str  # Gift wrap id as seen on the relay
    sender: str
    content: str
    created_at: int  # Rumor time
    kind: int = KIND_PRIVATE_DIRECT_MESSAGE
    tags: List[List[str]] = field(default_factory=list)


@dataclass(frozen=True)
class PublishResult:
    """Outcome of publishing one event."""
    event_id: str
    accepted_relays: List[str]
    rejected_relays: Dict[str, str] = field(default_factory=dict)
    attempts: int = 1


class MemoryType(str, Enum):
    PREFERENCE = 'preference'
    CONTEXT = 'context'
    FACT = 'fact'
    INSTRUCTION = 'instruction'
    NOTE = 'note'


class MemoryCategory(str, Enum):
    PERSONAL = 'personal'
    WORK = 'work'
    PROJECT = 'project'
    GENERAL = 'general'


class MemoryPriority(str, Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


@dataclass
class MemoryEntry:
    """One version of a memory record, carried as a self-addressed private message.

    Records are append-only: an update is a new record with the same id and a
    higher version.
    """
    id: str
    memory_type: MemoryType
    category: MemoryCategory
    content: str
    created_at: datetime
    updated_at: datetime
    title: str = ''
    tags: List[str] = field(default_factory=list)
    priority: Optional[MemoryPriority] = None
    expires_at: Optional[datetime] = None
    version: int = 1

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def matches_query(self, query: str) -> bool:
        """Case-insensitive substring match over content, title and tags."""
        query_lower = query.lower()
        return (query_lower in self.content.lower() or query_lower in self.title.lower()
                or any(query_lower in tag.lower() for tag in self.tags))


@dataclass
class MemoryStats:
    """Summary information about visible memories."""
    total_memories: int
    by_type: Dict[str, int]
    by_category: Dict[str, int]
    oldest: Optional[datetime]
    newest: Optional[datetime]
