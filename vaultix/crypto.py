from argon2.low_level import hash_secret_raw, Type
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
import os, string

from .errors import AuthFailure, InvalidKeyLength, InvalidRecoveryKey, InvalidSaltLength

KEY_SIZE = 32
SALT_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
BLOB_OVERHEAD = NONCE_SIZE + TAG_SIZE

ARGON2_PARAMS = dict(
    time_cost=1,
    memory_cost=64 * 1024,
    parallelism=4,
    hash_len=KEY_SIZE,
    type=Type.ID,
)

RECOVERY_GROUP = 8


def kdf_argon2id(password_bytes: bytes, salt: bytes) -> bytes:
    """Derive a 32-byte key from the user-supplied password using Argon2id."""
    if len(salt) != SALT_SIZE:
        raise InvalidSaltLength(len(salt), SALT_SIZE)
    try:
        return hash_secret_raw(bytes(password_bytes), bytes(salt), **ARGON2_PARAMS)
    finally:
        zero_bytes(password_bytes)


def gen_salt() -> bytes:
    return os.urandom(SALT_SIZE)


def gen_key() -> bytearray:
    """Return a random 256-bit key as a mutable buffer so it can be wiped after use."""
    return bytearray(os.urandom(KEY_SIZE))


def _cipher(key) -> AESGCM:
    if len(key) != KEY_SIZE:
        raise InvalidKeyLength(f"key must be {KEY_SIZE} bytes, got {len(key)}")
    return AESGCM(bytes(key))


def seal(plaintext: bytes, key) -> bytes:
    """Encrypt `plaintext` with AES-256-GCM under a fresh nonce; returns nonce || ciphertext || tag."""
    aead = _cipher(key)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + aead.encrypt(nonce, bytes(plaintext), None)


def open_blob(blob: bytes, key) -> bytes:
    """Decrypt a blob produced by `seal`.

    Every failure (short input, wrong key, flipped bit) raises the same
    AuthFailure so callers cannot tell them apart.
    """
    aead = _cipher(key)
    if len(blob) < NONCE_SIZE:
        raise AuthFailure()
    nonce, ct = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return aead.decrypt(nonce, ct, None)
    except InvalidTag:
        raise AuthFailure() from None


def format_recovery_key(recovery_key) -> str:
    """Hex-encode the recovery key in dash-separated groups of 8 for transcription."""
    hexkey = bytes(recovery_key).hex()
    return "-".join(hexkey[i:i + RECOVERY_GROUP] for i in range(0, len(hexkey), RECOVERY_GROUP))


def parse_recovery_key(text: str) -> bytearray:
    """Accept the grouped display form, plain hex, either case, surrounding whitespace."""
    cleaned = "".join(text.split()).replace("-", "").lower()
    if len(cleaned) != KEY_SIZE * 2 or any(c not in string.hexdigits for c in cleaned):
        raise InvalidRecoveryKey("recovery key must be 64 hexadecimal digits")
    return bytearray.fromhex(cleaned)


def zero_bytes(b):
    """Best-effort zeroization for mutable buffers that held sensitive information."""
    if isinstance(b, bytearray):
        for i in range(len(b)):
            b[i] = 0
    elif isinstance(b, memoryview) and not b.readonly:
        b[:] = b"\x00" * len(b)
