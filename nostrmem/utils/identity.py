"""
Nostr identity: secp256k1 keypair, NIP-19 key encoding, BIP-340 signatures and
NIP-44 conversation keys.
"""

import hmac
import hashlib
import os
from typing import Optional, Union

from bech32 import bech32_decode, bech32_encode, convertbits
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly

from .logging_config import get_logger

logger = get_logger(__name__)

NIP44_SALT = b'nip44-v2'


class IdentityError(Exception):
    """Custom exception for identity errors."""
    pass


class InvalidKeyEncoding(IdentityError):
    """Raised when a private or public key cannot be parsed."""
    pass


def _decode_bech32(value: str, expected_hrp: str) -> bytes:
    hrp, data = bech32_decode(value)
    if hrp is None or data is None:
        raise InvalidKeyEncoding(f'Invalid bech32 string for {expected_hrp}')
    if hrp != expected_hrp:
        raise InvalidKeyEncoding(f'Expected {expected_hrp} key, got {hrp}')
    decoded = convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        raise InvalidKeyEncoding(f'Invalid {expected_hrp} payload length')
    return bytes(decoded)


def _decode_hex32(value: str, label: str) -> bytes:
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise InvalidKeyEncoding(f'Invalid hex {label}')
    if len(raw) != 32:
        raise InvalidKeyEncoding(f'Invalid {label} length: expected 32 bytes, got {len(raw)}')
    return raw


def encode_npub(public_key: str) -> str:
    """Encode a hex x-only public key as ``npub1...``."""
    return bech32_encode('npub', convertbits(bytes.fromhex(public_key), 8, 5))


def parse_public_key(value: str) -> str:
    """Parse an ``npub1...`` or hex public key.

    Args:
        value: bech32 or 64-character hex public key

    Returns:
        Lowercase hex x-only public key

    Raises:
        InvalidKeyEncoding: If the value is not a valid secp256k1 x-only key
    """
    if not value or not value.strip():
        raise InvalidKeyEncoding('Empty public key')
    value = value.strip()
    if value.lower().startswith('npub1'):
        raw = _decode_bech32(value.lower(), 'npub')
    else:
        raw = _decode_hex32(value, 'public key')

    try:
        PublicKey(b'\x02' + raw)
    except ValueError:
        raise InvalidKeyEncoding('Public key is not a point on secp256k1')
    return raw.hex()


def verify_signature(public_key: str, message: bytes, signature: str) -> bool:
    """Verify a BIP-340 Schnorr signature.

    Returns:
        True if the signature is valid, False otherwise (including malformed input)
    """
    try:
        return PublicKeyXOnly(bytes.fromhex(public_key)).verify(bytes.fromhex(signature), message)
    except ValueError:
        return False


class Identity:
    """A secp256k1 keypair used for signing events and deriving conversation keys.

    The secret key is read-only after construction and never rendered by ``repr``.
    """

    def __init__(self, secret_key: bytes):
        """
        Initialize identity from a raw 32-byte secret key.

        Args:
            secret_key: Raw secret key bytes

        Raises:
            InvalidKeyEncoding: If the secret key is outside the curve order
        """
        try:
            self._private_key = PrivateKey(secret_key)
        except (ValueError, TypeError) as e:
            raise InvalidKeyEncoding(f'Invalid secret key: {e}')
        self._public_key = self._private_key.public_key.format(compressed=True)[1:].hex()

    @classmethod
    def parse(cls, value: str) -> 'Identity':
        """Parse an ``nsec1...`` or 64-character hex secret key.

        Raises:
            InvalidKeyEncoding: If the value cannot be parsed
        """
        if not value or not value.strip():
            raise InvalidKeyEncoding('Empty secret key')
        value = value.strip()
        if value.lower().startswith('nsec1'):
            return cls(_decode_bech32(value.lower(), 'nsec'))
        return cls(_decode_hex32(value, 'secret key'))

    @classmethod
    def generate(cls) -> 'Identity':
        """Create an identity with a fresh random secret key."""
        return cls(PrivateKey().secret)

    @property
    def public_key(self) -> str:
        return self._public_key

    @property
    def npub(self) -> str:
        return encode_npub(self._public_key)

    @property
    def nsec(self) -> str:
        return bech32_encode('nsec', convertbits(self._private_key.secret, 8, 5))

    def sign(self, message: Union[bytes, str]) -> str:
        """
        Sign a 32-byte message (usually an event id) with BIP-340 Schnorr.

        Args:
            message: 32 raw bytes or their 64-character hex form

        Returns:
            Signature as hex
        """
        if isinstance(message, str):
            message = bytes.fromhex(message)
        return self._private_key.sign_schnorr(message, os.urandom(32)).hex()

    def shared_secret(self, other_public_key: str) -> bytes:
        """Unhashed ECDH: x coordinate of ``secret * lift_x(other_public_key)``."""
        try:
            point = PublicKey(b'\x02' + bytes.fromhex(other_public_key))
        except ValueError:
            raise InvalidKeyEncoding('Public key is not a point on secp256k1')
        return point.multiply(self._private_key.secret).format(compressed=True)[1:]

    def conversation_key(self, other_public_key: str) -> bytes:
        """
        Derive the NIP-44 v2 conversation key shared with another public key.

        Args:
            other_public_key: Hex x-only public key of the peer

        Returns:
            32-byte conversation key (HKDF-extract over the ECDH shared x)
        """
        return hmac.new(NIP44_SALT, self.shared_secret(other_public_key), hashlib.sha256).digest()

    def __repr__(self) -> str:
        return f'Identity(public_key={self._public_key})'


def load_identity(value: Optional[str]) -> Identity:
    """Parse the configured secret key, logging the resulting public identity.

    Raises:
        InvalidKeyEncoding: If no key is configured or it cannot be parsed
    """
    if not value:
        raise InvalidKeyEncoding('No secret key configured (set NOSTR_NSEC)')
    identity = Identity.parse(value)
    logger.info(f'Loaded identity {identity.npub}')
    return identity
