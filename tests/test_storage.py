import os
import stat

import pytest

from vaultix import storage
from vaultix.errors import (
    InvalidSaltLength,
    ObjectNotFound,
    StorageFailure,
    VaultAlreadyExists,
    VaultNotFound,
)
from vaultix.storage import (
    ObjectStore,
    list_directory_files,
    read_plaintext_file,
    secure_delete,
    write_plaintext_file,
    write_secure_file,
)


@pytest.fixture
def store(tmp_path):
    s = ObjectStore(tmp_path)
    s.create()
    return s


class TestLayout:

    def test_create_builds_marker_and_objects(self, tmp_path, store):
        assert store.exists()
        assert (tmp_path / ".vaultix").is_dir()
        assert (tmp_path / ".vaultix" / "objects").is_dir()

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
    def test_directories_are_private(self, store):
        assert stat.S_IMODE(os.stat(store.vault_dir).st_mode) == 0o700
        assert stat.S_IMODE(os.stat(store.objects_dir).st_mode) == 0o700

    def test_create_twice_fails(self, store):
        with pytest.raises(VaultAlreadyExists):
            store.create()

    def test_missing_vault(self, tmp_path):
        s = ObjectStore(tmp_path / "nowhere")
        assert not s.exists()
        with pytest.raises(VaultNotFound):
            s.read_salt()

    def test_missing_singleton_is_vault_not_found(self, store):
        with pytest.raises(VaultNotFound):
            store.read_metadata()

    def test_destroy(self, store):
        store.destroy()
        assert not store.exists()


class TestSingletons:

    def test_salt_round_trip(self, store):
        salt = os.urandom(32)
        store.write_salt(salt)
        assert store.read_salt() == salt
        assert (store.vault_dir / "salt").read_bytes() == salt

    def test_salt_of_wrong_length_on_disk(self, store):
        (store.vault_dir / "salt").write_bytes(b"short")
        with pytest.raises(InvalidSaltLength):
            store.read_salt()

    def test_refuses_to_write_bad_salt(self, store):
        with pytest.raises(InvalidSaltLength):
            store.write_salt(b"x" * 16)

    def test_wrapped_keys_and_metadata(self, store):
        store.write_password_wrapped_key(b"pw-wrapped")
        store.write_recovery_wrapped_key(b"rk-wrapped")
        store.write_metadata(b"meta-blob")
        assert store.read_password_wrapped_key() == b"pw-wrapped"
        assert store.read_recovery_wrapped_key() == b"rk-wrapped"
        assert store.read_metadata() == b"meta-blob"
        assert (store.vault_dir / "master.key").read_bytes() == b"pw-wrapped"
        assert (store.vault_dir / "recovery.key").read_bytes() == b"rk-wrapped"
        assert (store.vault_dir / "meta").read_bytes() == b"meta-blob"

    @pytest.mark.skipif(os.name != "posix", reason="symlinks")
    def test_refuses_symlinked_metadata(self, tmp_path, store):
        target = tmp_path / "elsewhere"
        target.write_bytes(b"evil")
        os.symlink(target, store.meta_path)
        with pytest.raises(StorageFailure):
            store.read_metadata()


class TestObjects:

    def test_put_get_delete(self, store):
        store.put("00ff", b"sealed bytes")
        assert store.contains("00ff")
        assert store.get("00ff") == b"sealed bytes"
        assert (store.objects_dir / "00ff.enc").is_file()
        store.delete("00ff")
        assert not store.contains("00ff")

    def test_get_missing(self, store):
        with pytest.raises(ObjectNotFound):
            store.get("abcd")

    def test_delete_missing(self, store):
        with pytest.raises(ObjectNotFound):
            store.delete("abcd")

    @pytest.mark.parametrize("bad", ["", "../salt", "ABCD", "a/b", "x" * 10])
    def test_rejects_malformed_ids(self, store, bad):
        with pytest.raises(ValueError):
            store.object_path(bad)

    def test_new_object_id_shape(self, store):
        object_id = store.new_object_id("notes.txt")
        assert len(object_id) == 16
        int(object_id, 16)

    def test_new_object_id_skips_existing(self, store, monkeypatch):
        class FrozenClock:
            ticks = [1, 1, 2]

            def time_ns(self):
                return self.ticks.pop(0) if self.ticks else 3

        monkeypatch.setattr(storage, "time", FrozenClock())
        first = store.new_object_id("a.txt")
        store.put(first, b"x")
        second = store.new_object_id("a.txt")
        assert second != first

    def test_list_object_ids_ignores_strays(self, store):
        store.put("aa", b"1")
        store.put("bb", b"2")
        (store.objects_dir / ".bb.enc.123.tmp").write_bytes(b"partial")
        (store.objects_dir / "README").write_bytes(b"foreign")
        assert store.list_object_ids() == ["aa", "bb"]


class TestAtomicWrites:

    def test_no_temp_files_left(self, tmp_path):
        target = tmp_path / "file"
        write_secure_file(target, b"one")
        write_secure_file(target, b"two")
        assert target.read_bytes() == b"two"
        assert os.listdir(tmp_path) == ["file"]

    def test_failed_write_keeps_previous_content(self, tmp_path, monkeypatch):
        target = tmp_path / "file"
        write_secure_file(target, b"original")

        def broken_replace(src, dst):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(storage.os, "replace", broken_replace)
        with pytest.raises(OSError):
            write_secure_file(target, b"new content")
        assert target.read_bytes() == b"original"
        assert os.listdir(tmp_path) == ["file"]

    def test_store_wraps_os_errors(self, store, monkeypatch):
        def broken_replace(src, dst):
            raise OSError(13, "Permission denied")

        monkeypatch.setattr(storage.os, "replace", broken_replace)
        with pytest.raises(StorageFailure) as exc_info:
            store.write_metadata(b"blob")
        assert "write metadata" in str(exc_info.value)
        assert str(store.meta_path) in str(exc_info.value)


class TestSecureDelete:

    def test_overwrites_before_unlink(self, tmp_path, monkeypatch):
        target = tmp_path / "victim"
        target.write_bytes(b"A" * 1000)
        seen = {}
        real_remove = os.remove

        def spy_remove(path):
            seen["content"] = open(path, "rb").read()
            real_remove(path)

        monkeypatch.setattr(storage.os, "remove", spy_remove)
        secure_delete(target)
        assert not target.exists()
        assert len(seen["content"]) == 1000
        assert seen["content"] != b"A" * 1000

    def test_falls_back_to_zeros(self, tmp_path, monkeypatch):
        target = tmp_path / "victim"
        target.write_bytes(b"A" * 100)
        seen = {}
        real_remove = os.remove

        def no_random(n):
            raise NotImplementedError

        def spy_remove(path):
            seen["content"] = open(path, "rb").read()
            real_remove(path)

        monkeypatch.setattr(storage.os, "urandom", no_random)
        monkeypatch.setattr(storage.os, "remove", spy_remove)
        secure_delete(target)
        assert seen["content"] == b"\x00" * 100

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            secure_delete(tmp_path / "absent")


class TestPlaintextFiles:

    def test_list_directory_files_skips_hidden_and_dirs(self, tmp_path):
        (tmp_path / "b.txt").write_text("b")
        (tmp_path / "a.txt").write_text("a")
        (tmp_path / ".hidden").write_text("h")
        (tmp_path / "sub").mkdir()
        assert [p.name for p in list_directory_files(tmp_path)] == ["a.txt", "b.txt"]

    def test_read_rejects_directory(self, tmp_path):
        with pytest.raises(StorageFailure):
            read_plaintext_file(tmp_path)

    def test_read_missing(self, tmp_path):
        with pytest.raises(StorageFailure):
            read_plaintext_file(tmp_path / "absent")

    def test_write_restores_mtime(self, tmp_path):
        target = tmp_path / "out" / "notes.txt"
        write_plaintext_file(target, b"hello", 1_600_000_000.0)
        assert target.read_bytes() == b"hello"
        assert os.stat(target).st_mtime == pytest.approx(1_600_000_000.0)


@pytest.mark.skipif(storage.fcntl is None, reason="needs fcntl")
class TestLock:

    def test_lock_file_created_and_reentrant_across_calls(self, store):
        with store.lock():
            assert store.lock_path.exists()
        with store.lock(exclusive=False):
            pass

    def _try_flock(self, store, mode):
        fd = os.open(store.lock_path, os.O_RDWR)
        try:
            storage.fcntl.flock(fd, mode | storage.fcntl.LOCK_NB)
        finally:
            os.close(fd)

    def test_exclusive_lock_blocks_other_holders(self, store):
        fcntl = storage.fcntl
        with store.lock():
            with pytest.raises(BlockingIOError):
                self._try_flock(store, fcntl.LOCK_EX)
            with pytest.raises(BlockingIOError):
                self._try_flock(store, fcntl.LOCK_SH)
        self._try_flock(store, fcntl.LOCK_EX)

    def test_shared_lock_admits_readers_only(self, store):
        fcntl = storage.fcntl
        with store.lock(exclusive=False):
            with store.lock(exclusive=False):
                self._try_flock(store, fcntl.LOCK_SH)
            with pytest.raises(BlockingIOError):
                self._try_flock(store, fcntl.LOCK_EX)
        self._try_flock(store, fcntl.LOCK_EX)

    def test_lock_requires_vault(self, tmp_path):
        with pytest.raises(VaultNotFound):
            with ObjectStore(tmp_path / "none").lock():
                pass
