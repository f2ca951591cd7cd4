"""
Structural and consistency checks for a vaultix vault.

This implements:
- Permission checks (700 for directories, 600 for files)
- Ownership and symlink checks
- Singleton file presence and size sanity (salt, wrapped keys, metadata)
- Stray files in objects/ (interrupted writes, foreign files)
- With a master key: index decryption, missing objects and orphaned objects
"""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .crypto import BLOB_OVERHEAD, KEY_SIZE, SALT_SIZE, NONCE_SIZE, TAG_SIZE
from .errors import VaultError
from .keys import MasterKey
from .storage import OBJECT_SUFFIX, ObjectStore
from .vault import Vault

WRAPPED_KEY_SIZE = NONCE_SIZE + KEY_SIZE + TAG_SIZE


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class CheckResult:
    id: str
    severity: Severity
    message: str
    path: Optional[Path] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "message": self.message,
            "path": str(self.path) if self.path else None,
            "details": self.details or None,
        }


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def _mode_bits(path: Path) -> int:
    """Return the permission bits (0o000–0o777) for a path without following symlinks."""
    return stat.S_IMODE(os.lstat(path).st_mode)


def _is_owned_by_current_user(path: Path) -> bool:
    return os.lstat(path).st_uid == os.getuid()


def _expected_mode(path: Path, expected: int, kind: str) -> Optional[CheckResult]:
    actual = _mode_bits(path)
    if actual != expected:
        return CheckResult(
            id="permission_mismatch",
            severity=Severity.ERROR,
            message=f"{kind} permissions {oct(actual)} != expected {oct(expected)}",
            path=path,
            details={"expected": oct(expected), "actual": oct(actual)},
        )
    return None


# ---------------------------------------------------------------------------
# VaultDoctor
# ---------------------------------------------------------------------------

class VaultDoctor:
    def __init__(self, vault_root: Path, master_key: Optional[MasterKey] = None) -> None:
        self.vault = Vault(vault_root)
        self.store: ObjectStore = self.vault.store
        self.master_key = master_key
        self.posix = os.name == "posix"

    def run(self) -> List[CheckResult]:
        if not self.store.exists():
            return [
                CheckResult(
                    id="vault_missing",
                    severity=Severity.ERROR,
                    message="No vault marker directory found.",
                    path=self.store.vault_dir,
                )
            ]

        results: List[CheckResult] = []
        results.extend(self._check_directories())
        results.extend(self._check_singletons())
        results.extend(self._check_objects_dir())

        if self.master_key is not None:
            results.extend(self._check_index_consistency())

        if not any(r.severity != Severity.OK for r in results):
            results.append(
                CheckResult(
                    id="summary_all_good",
                    severity=Severity.OK,
                    message="Vault passed all checks.",
                    path=self.store.vault_dir,
                )
            )
        return results

    # ------------------------------------------------------------------ #
    # Individual check groups
    # ------------------------------------------------------------------ #

    def _check_directories(self) -> List[CheckResult]:
        results: List[CheckResult] = []
        for label, p in (("Vault directory", self.store.vault_dir), ("Objects directory", self.store.objects_dir)):
            try:
                st = os.lstat(p)
            except FileNotFoundError:
                results.append(CheckResult(id="dir_missing", severity=Severity.ERROR, message=f"{label} is missing.", path=p))
                continue
            if stat.S_ISLNK(st.st_mode) or not stat.S_ISDIR(st.st_mode):
                results.append(
                    CheckResult(id="dir_not_directory", severity=Severity.ERROR, message=f"{label} is not a real directory.", path=p)
                )
                continue
            if not self.posix:
                continue
            if not _is_owned_by_current_user(p):
                results.append(
                    CheckResult(id="dir_wrong_owner", severity=Severity.ERROR, message=f"{label} is not owned by the current user.", path=p)
                )
            results.append(
                _expected_mode(p, 0o700, label)
                or CheckResult(id="dir_permissions_ok", severity=Severity.OK, message=f"{label} permissions are 700.", path=p)
            )
        return results

    def _check_singletons(self) -> List[CheckResult]:
        results: List[CheckResult] = []
        expectations = [
            ("salt", self.store.salt_path, lambda n: n == SALT_SIZE, f"exactly {SALT_SIZE} bytes"),
            ("master_key", self.store.master_key_path, lambda n: n == WRAPPED_KEY_SIZE, f"exactly {WRAPPED_KEY_SIZE} bytes"),
            ("recovery_key", self.store.recovery_key_path, lambda n: n == WRAPPED_KEY_SIZE, f"exactly {WRAPPED_KEY_SIZE} bytes"),
            ("metadata", self.store.meta_path, lambda n: n >= BLOB_OVERHEAD, f"at least {BLOB_OVERHEAD} bytes"),
        ]
        for label, p, size_ok, size_text in expectations:
            try:
                st = os.lstat(p)
            except FileNotFoundError:
                results.append(CheckResult(id=f"{label}_missing", severity=Severity.ERROR, message=f"{p.name} is missing.", path=p))
                continue
            if not stat.S_ISREG(st.st_mode):
                results.append(
                    CheckResult(id=f"{label}_not_regular", severity=Severity.ERROR, message=f"{p.name} is not a regular file.", path=p)
                )
                continue
            if not size_ok(st.st_size):
                results.append(
                    CheckResult(
                        id=f"{label}_bad_size",
                        severity=Severity.ERROR,
                        message=f"{p.name} should be {size_text}.",
                        path=p,
                        details={"size": st.st_size},
                    )
                )
            else:
                results.append(CheckResult(id=f"{label}_ok", severity=Severity.OK, message=f"{p.name} present.", path=p))
            if self.posix:
                perm = _expected_mode(p, 0o600, p.name)
                if perm:
                    results.append(perm)
        return results

    def _check_objects_dir(self) -> List[CheckResult]:
        results: List[CheckResult] = []
        objects_dir = self.store.objects_dir
        if not objects_dir.is_dir():
            return results
        known = set(self.store.list_object_ids())
        for entry in sorted(objects_dir.iterdir()):
            if entry.name.endswith(OBJECT_SUFFIX) and entry.name[: -len(OBJECT_SUFFIX)] in known:
                st = os.lstat(entry)
                if stat.S_ISLNK(st.st_mode) or not stat.S_ISREG(st.st_mode):
                    results.append(
                        CheckResult(id="object_not_regular", severity=Severity.ERROR, message="Object is not a regular file.", path=entry)
                    )
                elif st.st_size < BLOB_OVERHEAD:
                    results.append(
                        CheckResult(
                            id="object_truncated",
                            severity=Severity.ERROR,
                            message="Object is shorter than nonce + tag.",
                            path=entry,
                            details={"size": st.st_size},
                        )
                    )
                elif self.posix:
                    perm = _expected_mode(entry, 0o600, "Object")
                    if perm:
                        results.append(perm)
                continue
            results.append(
                CheckResult(
                    id="stray_file",
                    severity=Severity.WARNING,
                    message="Unexpected entry in objects directory (interrupted write or foreign file).",
                    path=entry,
                )
            )
        return results

    def _check_index_consistency(self) -> List[CheckResult]:
        results: List[CheckResult] = []
        try:
            records = self.vault.list_files(self.master_key)
        except VaultError as exc:
            return [
                CheckResult(
                    id="index_unreadable",
                    severity=Severity.ERROR,
                    message=f"Failed to decrypt index: {exc}",
                    path=self.store.meta_path,
                )
            ]
        results.append(
            CheckResult(
                id="index_ok",
                severity=Severity.OK,
                message=f"Index decrypted ({len(records)} records).",
                path=self.store.meta_path,
            )
        )

        on_disk = set(self.store.list_object_ids())
        live = {r.object_id for r in records}
        for r in records:
            if r.object_id not in on_disk:
                results.append(
                    CheckResult(
                        id="object_missing",
                        severity=Severity.ERROR,
                        message="Object referenced in index is missing on disk.",
                        details={"object_id": r.object_id, "name": r.original_name},
                    )
                )
        for object_id in sorted(on_disk - live):
            results.append(
                CheckResult(
                    id="object_orphan",
                    severity=Severity.WARNING,
                    message="Object exists on disk but is not referenced in index (orphan).",
                    path=self.store.object_path(object_id),
                    details={"object_id": object_id},
                )
            )
        return results
