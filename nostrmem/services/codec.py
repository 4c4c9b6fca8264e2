"""
Gift wrap codec: builds and opens the Rumor -> Seal -> GiftWrap envelope (NIP-59 / NIP-17).
"""

import json
from typing import Any, Dict, List, Optional

from ..models.core import (KIND_GIFT_WRAP, KIND_PRIVATE_DIRECT_MESSAGE, KIND_SEAL, GiftWrap, Rumor, Seal,
                           UnwrappedGift)
from ..utils import nip44
from ..utils.identity import Identity, IdentityError, verify_signature
from ..utils.json_utils import compact_dumps, event_id
from ..utils.logging_config import get_logger
from ..utils.nip44 import CryptoError
from ..utils.timestamp_utils import TIMESTAMP_TWEAK_RANGE, now_seconds, tweaked_timestamp

logger = get_logger(__name__)


class SignatureInvalid(CryptoError):
    """Raised when an event id or signature does not verify."""
    pass


class ProtocolError(Exception):
    """Custom exception for envelope protocol errors."""
    pass


class NotAddressedToUs(ProtocolError):
    """Raised when a gift wrap is tagged for another recipient."""
    pass


class MalformedEvent(ProtocolError):
    """Raised when an event is missing fields or has the wrong shape."""
    pass


def _require(event: Dict[str, Any], name: str, expected_type: type) -> Any:
    value = event.get(name)
    if not isinstance(value, expected_type) or isinstance(value, bool):
        raise MalformedEvent(f'Event field {name!r} missing or not {expected_type.__name__}')
    return value


def _require_tags(event: Dict[str, Any]) -> List[List[str]]:
    tags = event.get('tags')
    if not isinstance(tags, list) or not all(
            isinstance(tag, list) and all(isinstance(item, str) for item in tag) for tag in tags):
        raise MalformedEvent('Event tags must be a list of string lists')
    return tags


def parse_gift_wrap(event: Dict[str, Any]) -> GiftWrap:
    """Build a GiftWrap from a relay event.

    Raises:
        MalformedEvent: If the event is not a well-formed kind 1059 event with a ``p`` tag
    """
    if not isinstance(event, dict):
        raise MalformedEvent('Event must be a JSON object')
    if event.get('kind') != KIND_GIFT_WRAP:
        raise MalformedEvent(f'Expected kind {KIND_GIFT_WRAP}, got {event.get("kind")}')
    tags = _require_tags(event)
    if not any(len(tag) >= 2 and tag[0] == 'p' for tag in tags):
        raise MalformedEvent('Gift wrap has no recipient tag')
    return GiftWrap(id=_require(event, 'id', str),
                    pubkey=_require(event, 'pubkey', str),
                    created_at=_require(event, 'created_at', int),
                    tags=tags,
                    content=_require(event, 'content', str),
                    sig=_require(event, 'sig', str))


def parse_seal(event: Dict[str, Any]) -> Seal:
    if not isinstance(event, dict):
        raise MalformedEvent('Seal must be a JSON object')
    if event.get('kind') != KIND_SEAL:
        raise MalformedEvent(f'Expected kind {KIND_SEAL}, got {event.get("kind")}')
    if _require_tags(event):
        raise MalformedEvent('Seal must not carry tags')
    return Seal(id=_require(event, 'id', str),
                pubkey=_require(event, 'pubkey', str),
                created_at=_require(event, 'created_at', int),
                content=_require(event, 'content', str),
                sig=_require(event, 'sig', str))


def parse_rumor(event: Dict[str, Any]) -> Rumor:
    if not isinstance(event, dict):
        raise MalformedEvent('Rumor must be a JSON object')
    if 'sig' in event:
        raise MalformedEvent('Rumor must not be signed')
    return Rumor(pubkey=_require(event, 'pubkey', str),
                 created_at=_require(event, 'created_at', int),
                 kind=_require(event, 'kind', int),
                 tags=_require_tags(event),
                 content=_require(event, 'content', str))


def _verify(pubkey: str, kind: int, created_at: int, tags: List[List[str]], content: str, claimed_id: str,
            sig: str, label: str) -> None:
    computed = event_id(pubkey, created_at, kind, tags, content)
    if computed != claimed_id:
        raise SignatureInvalid(f'{label} id does not match its content')
    if not verify_signature(pubkey, bytes.fromhex(computed), sig):
        raise SignatureInvalid(f'{label} signature is invalid')


def _loads(payload: str, label: str) -> Dict[str, Any]:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedEvent(f'{label} is not valid JSON: {e}')


class GiftWrapCodec:
    """Encodes outgoing messages and decodes incoming gift wraps for one identity."""

    def __init__(self, identity: Identity, tweak_range: int = TIMESTAMP_TWEAK_RANGE):
        """
        Initialize the codec.

        Args:
            identity: Our identity, used to sign seals and open gift wraps
            tweak_range: Maximum backdating of seal and gift wrap timestamps, in seconds
        """
        self.identity = identity
        self.tweak_range = tweak_range

    def build_rumor(self,
                    recipient: str,
                    content: str,
                    kind: int = KIND_PRIVATE_DIRECT_MESSAGE,
                    created_at: Optional[int] = None,
                    extra_tags: Optional[List[List[str]]] = None) -> Rumor:
        """Build an unsigned private message addressed to ``recipient``."""
        tags = [['p', recipient]] + list(extra_tags or [])
        return Rumor(pubkey=self.identity.public_key,
                     created_at=created_at if created_at is not None else now_seconds(),
                     kind=kind,
                     tags=tags,
                     content=content)

    def seal(self, target_public_key: str, rumor: Rumor) -> Seal:
        """Encrypt the rumor to the target and sign it with our real key."""
        if rumor.pubkey != self.identity.public_key:
            raise ProtocolError('Rumor author must be the sealing identity')
        conversation_key = self.identity.conversation_key(target_public_key)
        content = nip44.encrypt(compact_dumps(rumor.to_dict()), conversation_key)
        created_at = tweaked_timestamp(tweak_range=self.tweak_range)
        seal_id = event_id(self.identity.public_key, created_at, KIND_SEAL, [], content)
        return Seal(id=seal_id,
                    pubkey=self.identity.public_key,
                    created_at=created_at,
                    content=content,
                    sig=self.identity.sign(seal_id))

    def wrap(self, target_public_key: str, seal: Seal) -> GiftWrap:
        """Encrypt the seal to the target under a fresh one-time key."""
        ephemeral = Identity.generate()
        conversation_key = ephemeral.conversation_key(target_public_key)
        content = nip44.encrypt(compact_dumps(seal.to_dict()), conversation_key)
        created_at = tweaked_timestamp(tweak_range=self.tweak_range)
        tags = [['p', target_public_key]]
        wrap_id = event_id(ephemeral.public_key, created_at, KIND_GIFT_WRAP, tags, content)
        return GiftWrap(id=wrap_id,
                        pubkey=ephemeral.public_key,
                        created_at=created_at,
                        tags=tags,
                        content=content,
                        sig=ephemeral.sign(wrap_id))

    def encode_outgoing(self, target_public_key: str, rumor: Rumor) -> GiftWrap:
        """
        Seal and gift wrap a rumor for the target.

        Args:
            target_public_key: Hex x-only public key of the recipient
            rumor: Message to deliver, authored by our identity

        Returns:
            GiftWrap ready to publish
        """
        return self.wrap(target_public_key, self.seal(target_public_key, rumor))

    def decode_incoming(self, gift_wrap: GiftWrap) -> UnwrappedGift:
        """
        Open a gift wrap addressed to our identity.

        Args:
            gift_wrap: Parsed kind 1059 event

        Returns:
            UnwrappedGift with the rumor and its verified sender

        Raises:
            NotAddressedToUs: If the recipient tag is another public key
            SignatureInvalid: If the wrap or seal id/signature is invalid, or the rumor author is not the seal signer
            DecryptionFailed: If either layer fails to decrypt
            MalformedEvent: If a decrypted layer has the wrong shape
        """
        if gift_wrap.recipient != self.identity.public_key:
            raise NotAddressedToUs(f'Gift wrap {gift_wrap.id} is addressed to {gift_wrap.recipient}')

        _verify(gift_wrap.pubkey, KIND_GIFT_WRAP, gift_wrap.created_at, gift_wrap.tags, gift_wrap.content,
                gift_wrap.id, gift_wrap.sig, 'Gift wrap')

        try:
            outer_key = self.identity.conversation_key(gift_wrap.pubkey)
        except IdentityError as e:
            raise MalformedEvent(f'Gift wrap pubkey is invalid: {e}')
        seal = parse_seal(_loads(nip44.decrypt(gift_wrap.content, outer_key), 'Seal'))

        _verify(seal.pubkey, KIND_SEAL, seal.created_at, [], seal.content, seal.id, seal.sig, 'Seal')

        try:
            inner_key = self.identity.conversation_key(seal.pubkey)
        except IdentityError as e:
            raise MalformedEvent(f'Seal pubkey is invalid: {e}')
        rumor = parse_rumor(_loads(nip44.decrypt(seal.content, inner_key), 'Rumor'))

        if rumor.pubkey != seal.pubkey:
            raise SignatureInvalid('Rumor author does not match seal signer')

        logger.debug(f'Decoded gift wrap {gift_wrap.id} from {seal.pubkey} (kind {rumor.kind})')
        return UnwrappedGift(rumor=rumor, sender=seal.pubkey)
