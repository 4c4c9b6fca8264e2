"""
JSON utilities for Nostr event serialization.
"""

import hashlib
import json
from typing import Any, List


def compact_dumps(value: Any) -> str:
    """Serialize to compact JSON without ASCII escaping.

    This is the encoding relays and NIP-01 expect for event ids and wire messages.
    """
    return json.dumps(value, separators=(',', ':'), ensure_ascii=False)


def event_id(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> str:
    """Compute a NIP-01 event id.

    Args:
        pubkey: Author x-only public key (hex)
        created_at: Unix timestamp in seconds
        kind: Event kind
        tags: Event tag list
        content: Event content

    Returns:
        Lowercase hex sha256 of the canonical serialization
    """
    serialized = compact_dumps([0, pubkey, created_at, kind, tags, content])
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()
