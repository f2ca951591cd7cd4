class VaultError(Exception):
    """Base class for every error a vault operation reports to its caller."""


class VaultAlreadyExists(VaultError):
    pass


class VaultNotFound(VaultError):
    pass


class InvalidPassword(VaultError):
    """Wrong password, or the data it protects is corrupted. Deliberately indistinguishable."""

    def __init__(self, message: str = "incorrect password or corrupted vault data"):
        super().__init__(message)


class InvalidRecoveryKey(VaultError):
    """Wrong or malformed recovery key, or the data it protects is corrupted."""

    def __init__(self, message: str = "incorrect recovery key or corrupted vault data"):
        super().__init__(message)


class InvalidSaltLength(VaultError):
    def __init__(self, actual: int, expected: int = 32):
        super().__init__(f"invalid salt length ({actual} != {expected}); vault is corrupted or foreign")
        self.actual = actual
        self.expected = expected


class FileAlreadyExists(VaultError):
    def __init__(self, name: str):
        super().__init__(f"file already exists in vault: {name}")
        self.name = name


class FileNotFound(VaultError):
    def __init__(self, query: str):
        super().__init__(f"no file in vault matches: {query}")
        self.query = query


class ObjectNotFound(VaultError):
    def __init__(self, object_id: str):
        super().__init__(f"object not found: {object_id}")
        self.object_id = object_id


class StorageFailure(VaultError):
    """Underlying I/O failure, tagged with the operation and path it happened on."""

    def __init__(self, operation: str, path, cause: OSError | None = None):
        reason = cause.strerror if cause is not None and cause.strerror else str(cause or "unknown error")
        super().__init__(f"{operation} failed for {path}: {reason}")
        self.operation = operation
        self.path = path


class AuthFailure(VaultError):
    """Authenticated decryption failed: wrong key, truncated or tampered blob."""

    def __init__(self):
        super().__init__("decryption failed")


class InvalidKeyLength(ValueError):
    """A cipher key was not exactly 32 bytes long. Programmer error, not a user condition."""


class UnsupportedFileName(VaultError):
    """A file name the vault cannot record, e.g. one that is not valid UTF-8."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"cannot store file {name!r}: {reason}")
        self.name = name
