import os, tempfile

# must happen before vaultix opens its log file at import time
os.environ.setdefault("VAULTIX_LOG", os.path.join(tempfile.mkdtemp(prefix="vaultix-log-"), "vaultix.log"))

import pytest

from vaultix import crypto
from vaultix.vault import Vault

PASSWORD = "CorrectHorse1234"


@pytest.fixture(autouse=True)
def fast_kdf(request, monkeypatch):
    """Argon2id at 64 MiB per derivation makes the suite crawl; use 1 MiB unless asked not to."""
    if "real_kdf" in request.keywords:
        return
    monkeypatch.setitem(crypto.ARGON2_PARAMS, "memory_cost", 1024)


@pytest.fixture
def key():
    return bytes(crypto.gen_key())


@pytest.fixture
def vault_root(tmp_path):
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def vault(vault_root):
    """An initialized, empty vault plus its recovery key."""
    v = Vault(vault_root)
    recovery_key = v.initialize(PASSWORD)
    return v, bytes(recovery_key)


@pytest.fixture
def master(vault):
    v, _ = vault
    with v.unlocked(password=PASSWORD) as mk:
        yield mk
