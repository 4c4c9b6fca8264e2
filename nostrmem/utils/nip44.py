"""
NIP-44 version 2 payload encryption.

ChaCha20 for confidentiality, HMAC-SHA256 over ``nonce || ciphertext`` for
integrity, and length padding to power-of-two derived buckets. The byte layout
is ``0x02 || nonce(32) || ciphertext || mac(32)``, base64 encoded.
"""

import base64
import binascii
import hashlib
import hmac
import os
from typing import Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

VERSION = 2
MIN_PLAINTEXT_SIZE = 1
MAX_PLAINTEXT_SIZE = 65535
MIN_PAYLOAD_SIZE = 132
MAX_PAYLOAD_SIZE = 87472
MIN_DATA_SIZE = 99
MAX_DATA_SIZE = 65603


class CryptoError(Exception):
    """Custom exception for envelope cryptography errors."""
    pass


class DecryptionFailed(CryptoError):
    """Raised when a payload cannot be authenticated or decrypted."""
    pass


def calc_padded_len(unpadded_len: int) -> int:
    """Length of the padded plaintext for a given message length.

    Messages up to 32 bytes pad to 32. Above that, the chunk size is 32 bytes
    while the next power of two is at most 256, and one eighth of it beyond.
    """
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (unpadded_len - 1).bit_length()
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def pad(plaintext: str) -> bytes:
    unpadded = plaintext.encode('utf-8')
    unpadded_len = len(unpadded)
    if unpadded_len < MIN_PLAINTEXT_SIZE or unpadded_len > MAX_PLAINTEXT_SIZE:
        raise CryptoError(f'Plaintext length must be between {MIN_PLAINTEXT_SIZE} and {MAX_PLAINTEXT_SIZE} bytes, '
                          f'got {unpadded_len}')
    prefix = unpadded_len.to_bytes(2, 'big')
    suffix = bytes(calc_padded_len(unpadded_len) - unpadded_len)
    return prefix + unpadded + suffix


def unpad(padded: bytes) -> str:
    unpadded_len = int.from_bytes(padded[0:2], 'big')
    unpadded = padded[2:2 + unpadded_len]
    if (unpadded_len == 0 or len(unpadded) != unpadded_len or len(padded) != 2 + calc_padded_len(unpadded_len)):
        raise DecryptionFailed('Invalid padding')
    try:
        return unpadded.decode('utf-8')
    except UnicodeDecodeError:
        raise DecryptionFailed('Plaintext is not valid UTF-8')


def get_message_keys(conversation_key: bytes, nonce: bytes) -> Tuple[bytes, bytes, bytes]:
    """Expand the conversation key into (chacha_key, chacha_nonce, hmac_key)."""
    if len(conversation_key) != 32:
        raise CryptoError('Invalid conversation key length')
    if len(nonce) != 32:
        raise CryptoError('Invalid nonce length')
    keys = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conversation_key)
    return keys[0:32], keys[32:44], keys[44:76]


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography takes a 16-byte nonce: 32-bit little-endian counter, then the 96-bit nonce
    cipher = Cipher(algorithms.ChaCha20(key, b'\x00' * 4 + nonce), mode=None)
    return cipher.encryptor().update(data)


def _hmac_aad(key: bytes, message: bytes, aad: bytes) -> bytes:
    return hmac.new(key, aad + message, hashlib.sha256).digest()


def encrypt(plaintext: str, conversation_key: bytes, nonce: Optional[bytes] = None) -> str:
    """
    Encrypt a UTF-8 string into a NIP-44 v2 payload.

    Args:
        plaintext: Message to encrypt (1 to 65535 bytes once encoded)
        conversation_key: 32-byte key from ``Identity.conversation_key``
        nonce: Optional 32-byte nonce, random when omitted

    Returns:
        Base64 payload
    """
    if nonce is None:
        nonce = os.urandom(32)
    chacha_key, chacha_nonce, hmac_key = get_message_keys(conversation_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, pad(plaintext))
    mac = _hmac_aad(hmac_key, ciphertext, nonce)
    return base64.b64encode(bytes([VERSION]) + nonce + ciphertext + mac).decode('ascii')


def decode_payload(payload: str) -> Tuple[bytes, bytes, bytes]:
    """Split a base64 payload into (nonce, ciphertext, mac).

    Raises:
        DecryptionFailed: If the payload size, encoding or version is wrong
    """
    payload_len = len(payload)
    if payload_len == 0 or payload[0] == '#':
        raise DecryptionFailed('Unknown encryption version')
    if payload_len < MIN_PAYLOAD_SIZE or payload_len > MAX_PAYLOAD_SIZE:
        raise DecryptionFailed(f'Invalid payload size: {payload_len}')

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionFailed(f'Invalid base64: {e}')

    data_len = len(data)
    if data_len < MIN_DATA_SIZE or data_len > MAX_DATA_SIZE:
        raise DecryptionFailed(f'Invalid data size: {data_len}')
    if data[0] != VERSION:
        raise DecryptionFailed(f'Unknown encryption version {data[0]}')

    return data[1:33], data[33:data_len - 32], data[data_len - 32:]


def decrypt(payload: str, conversation_key: bytes) -> str:
    """
    Decrypt a NIP-44 v2 payload.

    Args:
        payload: Base64 payload produced by ``encrypt``
        conversation_key: 32-byte conversation key

    Returns:
        Decrypted UTF-8 string

    Raises:
        DecryptionFailed: If the payload is malformed, the MAC does not match or padding is invalid
    """
    nonce, ciphertext, mac = decode_payload(payload)
    chacha_key, chacha_nonce, hmac_key = get_message_keys(conversation_key, nonce)
    calculated_mac = _hmac_aad(hmac_key, ciphertext, nonce)
    if not hmac.compare_digest(calculated_mac, mac):
        raise DecryptionFailed('Invalid MAC')
    return unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))
