"""Shared fixtures for folderlock tests."""

import os

import pytest

from folderlock.config import LockerConfig, reset_config
from folderlock.stealth import NullStealth

FAST_SCRYPT_N = 1 << 14


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Isolate tests from FOLDERLOCK_* settings and keep the KDF cheap."""
    for name in list(os.environ):
        if name.startswith("FOLDERLOCK_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("FOLDERLOCK_SCRYPT_N", str(FAST_SCRYPT_N))
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config():
    return LockerConfig(scrypt_n=FAST_SCRYPT_N, scrypt_r=8, scrypt_p=1, hide=False)


@pytest.fixture
def stealth():
    return NullStealth()


@pytest.fixture
def sample_tree(tmp_path):
    root = tmp_path / "reports"
    (root / "q1").mkdir(parents=True)
    (root / "q1" / "summary.txt").write_bytes(b"revenue up 12%\n")
    (root / "q1" / "empty.bin").write_bytes(b"")
    (root / "q2" / "nested" / "deep").mkdir(parents=True)
    (root / "q2" / "nested" / "deep" / "data.bin").write_bytes(os.urandom(70000))
    (root / "empty_dir").mkdir()
    (root / "README").write_text("top level\n")
    return root


def _snapshot(root):
    """Map relative path -> file bytes (None for directories)."""
    tree = {}
    for cur, dirs, files in os.walk(root):
        rel = os.path.relpath(cur, root)
        for d in dirs:
            tree[os.path.normpath(os.path.join(rel, d))] = None
        for f in files:
            with open(os.path.join(cur, f), "rb") as fh:
                tree[os.path.normpath(os.path.join(rel, f))] = fh.read()
    return tree


@pytest.fixture
def snapshot():
    return _snapshot
