import contextlib, pathlib
from datetime import datetime, timezone
from pydantic import ValidationError

from .crypto import seal, open_blob, parse_recovery_key, zero_bytes, KEY_SIZE
from .errors import (
    AuthFailure,
    FileAlreadyExists,
    FileNotFound,
    InvalidPassword,
    InvalidRecoveryKey,
    ObjectNotFound,
    UnsupportedFileName,
    VaultAlreadyExists,
    VaultError,
)
from .keys import MasterKey, create_hierarchy, unwrap_with_password, unwrap_with_recovery_key
from .models import FileRecord, VaultMetadataIndex
from .storage import (
    ObjectStore,
    list_directory_files,
    read_plaintext_file,
    secure_delete,
    write_plaintext_file,
)
from .logging import get_logger

LOG = get_logger(False)


def _password_bytes(password) -> bytearray:
    if isinstance(password, str):
        return bytearray(password.encode("utf-8"))
    return bytearray(password)


def find_file_by_name(files, query: str):
    """Resolve a user query to one record: exact, then case-insensitive, then substring.

    The first record in index order wins within a rule; ambiguity is not reported.
    """
    for f in files:
        if f.original_name == query:
            return f
    lowered = query.lower()
    for f in files:
        if f.original_name.lower() == lowered:
            return f
    for f in files:
        if lowered in f.original_name.lower():
            return f
    return None


class Vault:
    """Encrypted directory vault rooted at `root`.

    Every mutating operation re-reads the sealed index under an exclusive
    advisory lock, changes it, and reseals it before returning.
    """

    def __init__(self, root):
        self.store = ObjectStore(pathlib.Path(root))
        self.root = self.store.root

    def exists(self) -> bool:
        return self.store.exists()

    # lifecycle

    def initialize(self, password) -> bytearray:
        """Create the vault, move every regular non-hidden file of the root into it.

        Returns the raw recovery key. It is never stored and cannot be
        recomputed, so the caller must show it to the user now.
        """
        if self.store.exists():
            raise VaultAlreadyExists(f"vault already exists at {self.root}")
        originals = list_directory_files(self.root) if self.root.is_dir() else []
        self.store.create()
        added = []
        try:
            hierarchy = create_hierarchy(_password_bytes(password))
            with hierarchy.master_key as master:
                self.store.write_salt(hierarchy.salt)
                self.store.write_password_wrapped_key(hierarchy.wrapped_by_password)
                self.store.write_recovery_wrapped_key(hierarchy.wrapped_by_recovery)
                index = VaultMetadataIndex()
                self._write_index(master, index)
                with self.store.lock():
                    for path in originals:
                        try:
                            self._add_locked(master, index, path)
                        except UnsupportedFileName as exc:
                            LOG.warning("file_skipped", vault=str(self.root), error=str(exc))
                            continue
                        added.append(path)
        except BaseException:
            LOG.error("vault_init_failed", vault=str(self.root))
            try:
                self.store.destroy()
            except VaultError as cleanup_exc:
                LOG.error("vault_init_cleanup_failed", vault=str(self.root), error=str(cleanup_exc))
            raise
        # originals go only after every one of them is safely inside the vault
        for path in added:
            self._consume_source(path)
        LOG.info("vault_initialized", vault=str(self.root), files=len(added), skipped=len(originals) - len(added))
        return hierarchy.recovery_key

    def unlock(self, password) -> MasterKey:
        self.store.require()
        salt = self.store.read_salt()
        wrapped = self.store.read_password_wrapped_key()
        try:
            return unwrap_with_password(wrapped, _password_bytes(password), salt)
        except InvalidPassword:
            LOG.warning("auth_failed", vault=str(self.root), method="password")
            raise

    def unlock_with_recovery_key(self, recovery_key) -> MasterKey:
        """Unlock with the recovery key, given as display text or as 32 raw bytes."""
        if isinstance(recovery_key, str):
            key = parse_recovery_key(recovery_key)
        else:
            key = bytearray(recovery_key)
            if len(key) != KEY_SIZE:
                raise InvalidRecoveryKey("recovery key must be 32 bytes")
        self.store.require()
        wrapped = self.store.read_recovery_wrapped_key()
        try:
            return unwrap_with_recovery_key(wrapped, key)
        except InvalidRecoveryKey:
            LOG.warning("auth_failed", vault=str(self.root), method="recovery_key")
            raise
        finally:
            zero_bytes(key)

    @contextlib.contextmanager
    def unlocked(self, password=None, recovery_key=None):
        """Yield the master key for one operation and wipe it afterwards."""
        if recovery_key is not None:
            master = self.unlock_with_recovery_key(recovery_key)
        else:
            master = self.unlock(password)
        with master:
            yield master

    # index

    def _read_index(self, master: MasterKey) -> VaultMetadataIndex:
        blob = self.store.read_metadata()
        try:
            plaintext = open_blob(blob, master.material)
        except AuthFailure:
            raise master.auth_error() from None
        try:
            return VaultMetadataIndex.model_validate_json(plaintext)
        except ValidationError as exc:
            raise VaultError(f"vault metadata at {self.store.meta_path} is malformed") from exc

    def _write_index(self, master: MasterKey, index: VaultMetadataIndex):
        self.store.write_metadata(seal(index.model_dump_json().encode("utf-8"), master.material))

    def _resolve(self, index: VaultMetadataIndex, query: str) -> FileRecord:
        record = find_file_by_name(index.files, query)
        if record is None:
            raise FileNotFound(query)
        return record

    # file operations

    def list_files(self, master: MasterKey) -> list:
        with self.store.lock(exclusive=False):
            return list(self._read_index(master).files)

    def add_file(self, master: MasterKey, path) -> FileRecord:
        """Encrypt `path` into the vault, then securely delete the plaintext source."""
        path = pathlib.Path(path)
        with self.store.lock():
            index = self._read_index(master)
            record = self._add_locked(master, index, path)
        self._consume_source(path)
        return record

    def _add_locked(self, master: MasterKey, index: VaultMetadataIndex, path: pathlib.Path) -> FileRecord:
        name = path.name
        try:
            name.encode("utf-8")
        except UnicodeEncodeError:
            raise UnsupportedFileName(name, "name is not valid UTF-8") from None
        if name in index.names():
            raise FileAlreadyExists(name)
        data, st = read_plaintext_file(path)
        object_id = self.store.new_object_id(name)
        try:
            record = FileRecord(
                object_id=object_id,
                original_name=name,
                size=len(data),
                modified_time=datetime.fromtimestamp(st.st_mtime, timezone.utc),
            )
        except ValidationError as exc:
            raise UnsupportedFileName(name, exc.errors()[0]["msg"]) from exc
        self.store.put(object_id, seal(data, master.material))
        index.files.append(record)
        try:
            self._write_index(master, index)
        except VaultError:
            index.files.pop()
            LOG.error("compensating_delete", vault=str(self.root), object_id=object_id)
            try:
                self.store.delete(object_id)
            except VaultError as exc:
                LOG.error("compensating_delete_failed", vault=str(self.root), object_id=object_id, error=str(exc))
            raise
        LOG.info("file_added", vault=str(self.root), name=name, object_id=object_id, size=record.size)
        return record

    def _consume_source(self, path: pathlib.Path):
        try:
            secure_delete(path)
        except OSError as exc:
            LOG.warning("secure_delete_failed", path=str(path), error=str(exc))

    def _extract_record(self, master: MasterKey, record: FileRecord, dest_dir: pathlib.Path) -> pathlib.Path:
        blob = self.store.get(record.object_id)
        try:
            plaintext = open_blob(blob, master.material)
        except AuthFailure:
            raise master.auth_error() from None
        target = dest_dir / record.original_name
        write_plaintext_file(target, plaintext, record.modified_time.timestamp())
        LOG.info("file_extracted", vault=str(self.root), name=record.original_name, dest=str(target))
        return target

    def _dest(self, dest_dir) -> pathlib.Path:
        if dest_dir is None:
            return self.root
        # resolved so a symlinked destination directory is accepted
        return pathlib.Path(dest_dir).expanduser().resolve()

    def extract_file(self, master: MasterKey, query: str, dest_dir=None) -> str:
        """Decrypt the record matching `query` into `dest_dir` (default: vault root). Returns its name."""
        with self.store.lock(exclusive=False):
            record = self._resolve(self._read_index(master), query)
            self._extract_record(master, record, self._dest(dest_dir))
        return record.original_name

    def extract_all(self, master: MasterKey, dest_dir=None) -> int:
        dest = self._dest(dest_dir)
        count = 0
        with self.store.lock(exclusive=False):
            for record in self._read_index(master).files:
                try:
                    self._extract_record(master, record, dest)
                except VaultError as exc:
                    LOG.error("extract_failed", vault=str(self.root), name=record.original_name, extracted=count, error=str(exc))
                    raise
                count += 1
        return count

    def _delete_object(self, record: FileRecord):
        try:
            self.store.delete(record.object_id)
        except ObjectNotFound:
            LOG.warning("object_missing", vault=str(self.root), name=record.original_name, object_id=record.object_id)

    def remove_file(self, master: MasterKey, query: str) -> str:
        """Remove the record matching `query` and shred its object. Returns the resolved name."""
        with self.store.lock():
            index = self._read_index(master)
            record = self._resolve(index, query)
            index.files = [f for f in index.files if f is not record]
            # index first: an interruption leaves an orphan, never a dangling record
            self._write_index(master, index)
            self._delete_object(record)
        LOG.info("file_removed", vault=str(self.root), name=record.original_name, object_id=record.object_id)
        return record.original_name

    def drop_file(self, master: MasterKey, query: str, dest_dir=None) -> str:
        """Extract the matching record, then remove it from the vault."""
        with self.store.lock():
            index = self._read_index(master)
            record = self._resolve(index, query)
            self._extract_record(master, record, self._dest(dest_dir))
            index.files = [f for f in index.files if f is not record]
            self._write_index(master, index)
            self._delete_object(record)
        LOG.info("file_dropped", vault=str(self.root), name=record.original_name)
        return record.original_name

    def drop_all(self, master: MasterKey, dest_dir=None) -> int:
        count = self.extract_all(master, dest_dir)
        self.clear_vault(master)
        return count

    def clear_vault(self, master: MasterKey):
        """Shred every live object and reseal an empty index. Irreversible."""
        with self.store.lock():
            index = self._read_index(master)
            for record in index.files:
                self._delete_object(record)
            removed = len(index.files)
            index.files = []
            self._write_index(master, index)
        LOG.info("vault_cleared", vault=str(self.root), removed=removed)

    def prune_orphans(self, master: MasterKey) -> list:
        """Shred objects that no record references (left behind by interrupted adds)."""
        pruned = []
        with self.store.lock():
            live = self._read_index(master).object_ids()
            for object_id in self.store.list_object_ids():
                if object_id in live:
                    continue
                self.store.delete(object_id)
                pruned.append(object_id)
                LOG.info("orphan_pruned", vault=str(self.root), object_id=object_id)
        return pruned
