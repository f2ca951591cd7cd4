"""
On-disk object store for a vault.

Layout under ``<root>/.vaultix/``::

    salt            32 raw bytes, plaintext
    master.key      master key sealed under the password-derived key
    recovery.key    master key sealed under the recovery key
    meta            metadata index sealed under the master key
    objects/<id>.enc one sealed blob per stored file
    lock            advisory lock file

Every file is written to a temporary sibling, fsynced and renamed into place,
so an interrupted write never leaves a truncated object or metadata file
behind. Writes that span several files (object, then metadata) are *not*
transactional; the worst case is an orphaned object, which the index never
surfaces.

Secure deletion overwrites the file with random bytes before unlinking it.
This is best-effort only: copy-on-write filesystems, SSD wear-leveling,
journals and snapshots may all retain the original bytes.
"""
import os, pathlib, stat, tempfile, hashlib, time, contextlib, shutil, re, errno

try:
    import fcntl
except ImportError:  # not available on Windows; locking becomes a no-op there
    fcntl = None

from .crypto import SALT_SIZE
from .errors import (
    InvalidSaltLength,
    ObjectNotFound,
    StorageFailure,
    VaultAlreadyExists,
    VaultNotFound,
)
from .logging import get_logger

LOG = get_logger(False)

VAULT_DIR_NAME = ".vaultix"
SALT_FILE = "salt"
MASTER_KEY_FILE = "master.key"
RECOVERY_KEY_FILE = "recovery.key"
META_FILE = "meta"
LOCK_FILE = "lock"
OBJECTS_DIR = "objects"
OBJECT_SUFFIX = ".enc"
OBJECT_ID_BYTES = 8
WIPE_CHUNK = 64 * 1024

NOFOLLOW_FLAG = getattr(os, "O_NOFOLLOW", 0)
OBJECT_ID_PATTERN = re.compile(r"^[0-9a-f]{1,64}$")


@contextlib.contextmanager
def _io(operation: str, path):
    """Translate OSError into StorageFailure tagged with the operation and path."""
    try:
        yield
    except OSError as exc:
        raise StorageFailure(operation, path, exc) from exc


def ensure_not_symlink(path: pathlib.Path, label: str):
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISLNK(st.st_mode):
        raise StorageFailure("open", path, OSError(errno.ELOOP, f"{label} is a symlink, which is not allowed"))

def ensure_regular_file(path: pathlib.Path, label: str):
    st = os.lstat(path)
    if not stat.S_ISREG(st.st_mode):
        raise StorageFailure("open", path, OSError(errno.EINVAL, f"{label} is not a regular file"))
    if st.st_nlink > 1:
        raise StorageFailure("open", path, OSError(errno.EMLINK, f"{label} has unexpected hard links"))

def safe_read_bytes(path: pathlib.Path) -> bytes:
    """
    Open without following symlinks and read while holding the descriptor, preventing TOCTOU.
    """
    flags = os.O_RDONLY
    if NOFOLLOW_FLAG:
        flags |= NOFOLLOW_FLAG
    fd = os.open(path, flags)
    with os.fdopen(fd, "rb") as f:
        return f.read()

def write_secure_file(path, data: bytes, mode: int = 0o600):
    """Write atomically through a temp file + rename, with mode 0600 by default."""
    path = pathlib.Path(path)
    ensure_not_symlink(path.parent, "Parent directory")
    ensure_not_symlink(path, "Target file")
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if os.name == "posix":
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass

def _random_fill(n: int) -> bytes:
    try:
        return os.urandom(n)
    except NotImplementedError:
        return b"\x00" * n

def secure_delete(path: pathlib.Path):
    """Overwrite the whole file with random bytes (zeros if no random source), then unlink it."""
    path = pathlib.Path(path)
    flags = os.O_WRONLY
    if NOFOLLOW_FLAG:
        flags |= NOFOLLOW_FLAG
    fd = os.open(path, flags)
    with os.fdopen(fd, "wb", buffering=0) as f:
        remaining = os.fstat(f.fileno()).st_size
        while remaining > 0:
            n = min(WIPE_CHUNK, remaining)
            f.write(_random_fill(n))
            remaining -= n
        os.fsync(f.fileno())
    os.remove(path)

def list_directory_files(directory: pathlib.Path) -> list:
    """Regular, non-hidden files directly inside `directory`, sorted by name."""
    directory = pathlib.Path(directory)
    with _io("list directory", directory):
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
        return [p for p in entries if not p.name.startswith(".") and p.is_file() and not p.is_symlink()]

def read_plaintext_file(path: pathlib.Path):
    """Return (data, stat_result) for a file being added. Directories are rejected."""
    path = pathlib.Path(path)
    with _io("read file", path):
        st = os.stat(path)
        if stat.S_ISDIR(st.st_mode):
            raise IsADirectoryError(errno.EISDIR, "cannot add a directory, only files are supported", str(path))
        return path.read_bytes(), st

def write_plaintext_file(path: pathlib.Path, data: bytes, mtime: float | None = None):
    """Atomically write a decrypted file and restore its modification time."""
    path = pathlib.Path(path)
    with _io("write file", path):
        path.parent.mkdir(parents=True, exist_ok=True)
        write_secure_file(path, data)
    if mtime is not None:
        try:
            os.utime(path, (mtime, mtime))
        except OSError as exc:
            LOG.warning("restore_mtime_failed", path=str(path), error=str(exc))


class ObjectStore:
    def __init__(self, root: pathlib.Path):
        self.root = pathlib.Path(root).expanduser().resolve(strict=False)
        self.vault_dir = self.root / VAULT_DIR_NAME
        self.salt_path = self.vault_dir / SALT_FILE
        self.master_key_path = self.vault_dir / MASTER_KEY_FILE
        self.recovery_key_path = self.vault_dir / RECOVERY_KEY_FILE
        self.meta_path = self.vault_dir / META_FILE
        self.lock_path = self.vault_dir / LOCK_FILE
        self.objects_dir = self.vault_dir / OBJECTS_DIR

    def exists(self) -> bool:
        return self.vault_dir.is_dir()

    def create(self):
        """Create the marker and object directories with 0700 permissions."""
        if self.exists():
            raise VaultAlreadyExists(f"vault already exists at {self.root}")
        ensure_not_symlink(self.vault_dir, "Vault directory")
        with _io("create vault", self.vault_dir):
            self.vault_dir.mkdir(parents=True)
            self.objects_dir.mkdir()
            if os.name == "posix":
                os.chmod(self.vault_dir, 0o700)
                os.chmod(self.objects_dir, 0o700)

    def destroy(self):
        """Remove the whole marker directory. Used to undo a failed initialization."""
        with _io("remove vault", self.vault_dir):
            shutil.rmtree(self.vault_dir)

    def require(self):
        if not self.exists():
            raise VaultNotFound(f"vault not found at {self.root}")

    # singleton slots

    def _read_slot(self, path: pathlib.Path, label: str) -> bytes:
        self.require()
        try:
            ensure_regular_file(path, label)
            return safe_read_bytes(path)
        except FileNotFoundError:
            raise VaultNotFound(f"vault at {self.root} is missing its {label} file") from None
        except OSError as exc:
            raise StorageFailure(f"read {label}", path, exc) from exc

    def _write_slot(self, path: pathlib.Path, label: str, data: bytes):
        with _io(f"write {label}", path):
            write_secure_file(path, data)

    def read_salt(self) -> bytes:
        salt = self._read_slot(self.salt_path, "salt")
        if len(salt) != SALT_SIZE:
            raise InvalidSaltLength(len(salt), SALT_SIZE)
        return salt

    def write_salt(self, salt: bytes):
        if len(salt) != SALT_SIZE:
            raise InvalidSaltLength(len(salt), SALT_SIZE)
        self._write_slot(self.salt_path, "salt", salt)

    def read_password_wrapped_key(self) -> bytes:
        return self._read_slot(self.master_key_path, "master key")

    def write_password_wrapped_key(self, blob: bytes):
        self._write_slot(self.master_key_path, "master key", blob)

    def read_recovery_wrapped_key(self) -> bytes:
        return self._read_slot(self.recovery_key_path, "recovery key")

    def write_recovery_wrapped_key(self, blob: bytes):
        self._write_slot(self.recovery_key_path, "recovery key", blob)

    def read_metadata(self) -> bytes:
        return self._read_slot(self.meta_path, "metadata")

    def write_metadata(self, blob: bytes):
        self._write_slot(self.meta_path, "metadata", blob)

    # objects

    def object_path(self, object_id: str) -> pathlib.Path:
        if not OBJECT_ID_PATTERN.fullmatch(object_id):
            raise ValueError(f"invalid object id: {object_id!r}")
        return self.objects_dir / f"{object_id}{OBJECT_SUFFIX}"

    def contains(self, object_id: str) -> bool:
        return os.path.lexists(self.object_path(object_id))

    def new_object_id(self, name: str) -> str:
        """Hash of name + timestamp, truncated; regenerated while it names an existing object."""
        while True:
            digest = hashlib.sha256(f"{name}-{time.time_ns()}".encode("utf-8")).digest()
            object_id = digest[:OBJECT_ID_BYTES].hex()
            if not self.contains(object_id):
                return object_id

    def put(self, object_id: str, data: bytes):
        path = self.object_path(object_id)
        with _io("write object", path):
            ensure_not_symlink(self.objects_dir, "objects directory")
            write_secure_file(path, data)

    def get(self, object_id: str) -> bytes:
        path = self.object_path(object_id)
        try:
            ensure_regular_file(path, "object")
            return safe_read_bytes(path)
        except FileNotFoundError:
            raise ObjectNotFound(object_id) from None
        except OSError as exc:
            raise StorageFailure("read object", path, exc) from exc

    def delete(self, object_id: str):
        path = self.object_path(object_id)
        try:
            secure_delete(path)
        except FileNotFoundError:
            raise ObjectNotFound(object_id) from None
        except OSError as exc:
            raise StorageFailure("delete object", path, exc) from exc

    def list_object_ids(self) -> list:
        """Ids of every well-formed object file on disk, live or orphaned."""
        ids = []
        with _io("list objects", self.objects_dir):
            for entry in sorted(os.listdir(self.objects_dir)):
                if not entry.endswith(OBJECT_SUFFIX):
                    continue
                object_id = entry[: -len(OBJECT_SUFFIX)]
                if OBJECT_ID_PATTERN.fullmatch(object_id):
                    ids.append(object_id)
        return ids

    # locking

    @contextlib.contextmanager
    def lock(self, exclusive: bool = True):
        """Advisory flock on .vaultix/lock for the duration of one read-modify-write."""
        self.require()
        if fcntl is None:
            yield
            return
        with _io("lock vault", self.lock_path):
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT | NOFOLLOW_FLAG, 0o600)
        try:
            with _io("lock vault", self.lock_path):
                fcntl.flock(fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
