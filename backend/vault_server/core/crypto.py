"""
Crypto primitives for the object vault.

Envelope encryption is built from three pieces:
- AES-256-GCM seal/open with a random 12-byte nonce (nonce || ciphertext || tag)
- SHA-256 to turn passwords and random material into 32-byte keys
- A random string generator used to salt generated keys

Invariants:
    - Every AEAD key is exactly 32 bytes (a SHA-256 digest)
    - A sealed blob always starts with its nonce
    - open() never returns data whose tag did not verify

How to change safely:
    - Changing the blob layout invalidates every stored ciphertext
    - random_string() is not a key source; keys always go through sha256()
"""

from __future__ import annotations

import hashlib
import os
import secrets
import string

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import CryptoError

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

ALPHABET_LETTERS = string.ascii_letters
ALPHABET_DIGITS = string.digits
ALPHABET_PUNCTUATION = "\\|!\"@#$%&/()=?+*'`~^,;.:-_"
ALPHABET_ALPHANUMERIC = ALPHABET_LETTERS + ALPHABET_DIGITS
ALPHABET_ALL = ALPHABET_ALPHANUMERIC + ALPHABET_PUNCTUATION


def sha256(data: bytes | str) -> bytes:
    """SHA-256 digest of ``data`` (strings are UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).digest()


def hash_from_hex(hexhash: str) -> bytes:
    """Decode a hex password hash into a 32-byte key.

    Raises:
        CryptoError: If the value is not 64 hex characters
    """
    try:
        key = bytes.fromhex(hexhash.strip())
    except ValueError as e:
        raise CryptoError("Password hash is not valid hex") from e
    _check_key(key)
    return key


def is_valid_password_hash(value: str) -> bool:
    value = value.strip()
    if len(value) != KEY_SIZE * 2:
        return False
    return all(c in string.hexdigits for c in value)


def _check_key(key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise CryptoError(f"Invalid key length {len(key)}, expected {KEY_SIZE}")


def seal(key: bytes, plaintext: bytes) -> bytes:
    """Encrypt ``plaintext`` with AES-256-GCM.

    Returns:
        nonce || ciphertext || tag

    Raises:
        CryptoError: If the key is not 32 bytes
    """
    _check_key(key)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def open_sealed(key: bytes, blob: bytes) -> bytes:
    """Decrypt a blob produced by seal().

    Raises:
        CryptoError: On bad key length, truncated blob or tag mismatch
    """
    _check_key(key)
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise CryptoError("Sealed blob too short")
    try:
        return AESGCM(key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise CryptoError("Authentication tag mismatch") from e


def random_string(alphabet: str, n: int) -> str:
    """Uniform random string of length ``n`` over ``alphabet``.

    Draws 63-bit blocks and spends them a few bits at a time, rejecting
    indexes that fall outside the alphabet.
    """
    if n <= 0:
        return ""
    if not alphabet:
        raise ValueError("Empty alphabet")

    bits = max(1, (len(alphabet) - 1).bit_length())
    mask = (1 << bits) - 1
    per_block = 63 // bits

    out: list[str] = []
    block = secrets.randbits(63)
    remaining = per_block
    while len(out) < n:
        if remaining == 0:
            block = secrets.randbits(63)
            remaining = per_block
        idx = block & mask
        if idx < len(alphabet):
            out.append(alphabet[idx])
        block >>= bits
        remaining -= 1
    return "".join(out)


def random_alphanumeric(n: int) -> str:
    return random_string(ALPHABET_ALPHANUMERIC, n)


def random_alphanumeric_punctuation(n: int) -> str:
    return random_string(ALPHABET_ALL, n)
