"""
Key hierarchy: one random master key encrypts all vault data, and is stored
only in two wrapped forms, one sealed under the Argon2id password key and one
sealed directly under the recovery key.

Changing the password therefore only means resealing the password wrapping;
no file object has to be re-encrypted.
"""
from dataclasses import dataclass

from .crypto import gen_key, gen_salt, kdf_argon2id, seal, open_blob, zero_bytes
from .errors import AuthFailure, InvalidPassword, InvalidRecoveryKey

PASSWORD = "password"
RECOVERY_KEY = "recovery_key"


class MasterKey:
    """In-memory master key plus the path it was unlocked through.

    The path decides which error an authentication failure is reported as
    further down (InvalidPassword vs InvalidRecoveryKey). Use as a context
    manager, or call `wipe()`, to zero the key material when done.
    """

    def __init__(self, material: bytearray, source: str = PASSWORD):
        self.material = material
        self.source = source

    def auth_error(self):
        if self.source == RECOVERY_KEY:
            return InvalidRecoveryKey()
        return InvalidPassword()

    def wipe(self):
        zero_bytes(self.material)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.wipe()
        return False

    def __eq__(self, other):
        if not isinstance(other, MasterKey):
            return NotImplemented
        return bytes(self.material) == bytes(other.material)

    __hash__ = None

    def __repr__(self):
        return f"MasterKey(source={self.source!r})"


@dataclass
class KeyHierarchy:
    """Everything produced at vault initialization. Only `salt` and the wrapped keys get persisted."""
    master_key: MasterKey
    recovery_key: bytearray
    salt: bytes
    wrapped_by_password: bytes
    wrapped_by_recovery: bytes


def create_hierarchy(password: bytes) -> KeyHierarchy:
    """Generate master key, recovery key and salt, and wrap the master key both ways."""
    master = gen_key()
    recovery = gen_key()
    salt = gen_salt()
    pwd_key = bytearray(kdf_argon2id(password, salt))
    try:
        wrapped_pw = seal(master, pwd_key)
    finally:
        zero_bytes(pwd_key)
    wrapped_rec = seal(master, recovery)
    return KeyHierarchy(
        master_key=MasterKey(master, PASSWORD),
        recovery_key=recovery,
        salt=salt,
        wrapped_by_password=wrapped_pw,
        wrapped_by_recovery=wrapped_rec,
    )


def unwrap_with_password(wrapped: bytes, password: bytes, salt: bytes) -> MasterKey:
    pwd_key = bytearray(kdf_argon2id(password, salt))
    try:
        master = bytearray(open_blob(wrapped, pwd_key))
    except AuthFailure:
        raise InvalidPassword() from None
    finally:
        zero_bytes(pwd_key)
    return MasterKey(master, PASSWORD)


def unwrap_with_recovery_key(wrapped: bytes, recovery_key) -> MasterKey:
    try:
        master = bytearray(open_blob(wrapped, recovery_key))
    except AuthFailure:
        raise InvalidRecoveryKey() from None
    return MasterKey(master, RECOVERY_KEY)
