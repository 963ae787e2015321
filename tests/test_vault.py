"""Tests for folderlock.vault — the lock/unlock state machine."""

import os
import stat
import sys

import pytest

from folderlock import archive, vault
from folderlock.errors import (
    AuthenticationError,
    ConcurrentAccessError,
    IntegrityError,
    PathError,
    StealthError,
    UnsupportedEntryError,
    VaultIOError,
)
from folderlock.record import header_size, read_record
from folderlock.stealth import PosixStealth, Stealth
from folderlock.vault import (
    SENTINEL_SUFFIX,
    Phase,
    inspect_vault,
    is_locked,
    lock_folder,
    resolve_paths,
    unlock_folder,
)

PASSWORD = "Tr0ub4dor"


def _phases(events):
    seen = []
    for ev in events:
        if not seen or seen[-1] != ev.phase:
            seen.append(ev.phase)
    return seen


def _stray_files(directory):
    return [
        n for n in os.listdir(str(directory))
        if n.startswith(".folderlock-") or n.endswith(SENTINEL_SUFFIX)
    ]


class FailingStealth(Stealth):
    name = "failing"

    def hide(self, path):
        raise StealthError("attribute command unavailable", path)

    def unhide(self, path):
        raise StealthError("attribute command unavailable", path)


class TestResolvePaths:
    def test_folder_path(self, tmp_path, config):
        folder, vault_path = resolve_paths(str(tmp_path / "reports"), config)
        assert folder == str(tmp_path / "reports")
        assert vault_path == str(tmp_path / "reports.vault")

    def test_vault_path(self, tmp_path, config):
        folder, vault_path = resolve_paths(str(tmp_path / "reports.vault"), config)
        assert folder == str(tmp_path / "reports")
        assert vault_path == str(tmp_path / "reports.vault")

    def test_trailing_separator(self, tmp_path, config):
        folder, _ = resolve_paths(str(tmp_path / "reports") + os.sep, config)
        assert folder == str(tmp_path / "reports")

    def test_bare_suffix_is_a_folder_name(self, tmp_path, config):
        folder, vault_path = resolve_paths(str(tmp_path / ".vault"), config)
        assert folder == str(tmp_path / ".vault")
        assert vault_path == str(tmp_path / ".vault.vault")

    def test_existing_directory_with_suffix_is_the_folder(self, tmp_path, config):
        (tmp_path / "backup.vault").mkdir()
        folder, vault_path = resolve_paths(str(tmp_path / "backup.vault"), config)
        assert folder == str(tmp_path / "backup.vault")
        assert vault_path == str(tmp_path / "backup.vault.vault")

    def test_locked_folder_named_like_an_artifact(self, tmp_path, config):
        (tmp_path / "backup.vault.vault").write_bytes(b"")
        folder, vault_path = resolve_paths(str(tmp_path / "backup.vault"), config)
        assert folder == str(tmp_path / "backup.vault")
        assert vault_path == str(tmp_path / "backup.vault.vault")


class TestLockUnlock:
    def test_round_trip(self, sample_tree, config, stealth, snapshot):
        before = snapshot(sample_tree)
        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert not sample_tree.exists()
        assert os.path.isfile(result.vault_path)
        assert result.entries == len(before)
        assert result.leftovers == []
        assert is_locked(str(sample_tree), config)

        unlocked = unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert snapshot(sample_tree) == before
        assert not os.path.exists(result.vault_path)
        assert unlocked.entries == result.entries
        assert not unlocked.replaced
        assert not is_locked(str(sample_tree), config)
        assert _stray_files(sample_tree.parent) == []

    def test_scenario_reports(self, tmp_path, config, stealth, snapshot):
        reports = tmp_path / "data" / "reports"
        reports.mkdir(parents=True)
        (reports / "annual.csv").write_text("year,total\n2025,42\n")
        (reports / "drafts").mkdir()
        (reports / "drafts" / "q4.md").write_text("# Q4\n")
        before = snapshot(reports)

        lock_folder(str(reports), "Tr0ub4dor", config=config, stealth=stealth)
        artifact = tmp_path / "data" / "reports.vault"
        assert artifact.is_file()
        assert not reports.exists()

        with pytest.raises(AuthenticationError):
            unlock_folder(str(artifact), "wrong", config=config, stealth=stealth)
        assert not reports.exists()

        unlock_folder(str(artifact), "Tr0ub4dor", config=config, stealth=stealth)
        assert snapshot(reports) == before
        assert not artifact.exists()

    def test_empty_folder(self, tmp_path, config, stealth):
        empty = tmp_path / "empty"
        empty.mkdir()
        lock_folder(str(empty), PASSWORD, config=config, stealth=stealth)
        assert not empty.exists()
        unlock_folder(str(empty), PASSWORD, config=config, stealth=stealth)
        assert empty.is_dir()
        assert os.listdir(str(empty)) == []

    def test_wrong_password_leaves_vault_unchanged(self, sample_tree, config, stealth):
        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        with open(result.vault_path, "rb") as fh:
            original = fh.read()
        with pytest.raises(AuthenticationError):
            unlock_folder(str(sample_tree), "not the password", config=config, stealth=stealth)
        with open(result.vault_path, "rb") as fh:
            assert fh.read() == original
        assert not sample_tree.exists()
        assert _stray_files(sample_tree.parent) == []

    def test_fresh_salt_nonce_per_lock(self, tmp_path, config, stealth):
        paths = []
        for name in ("alpha", "beta"):
            folder = tmp_path / name
            folder.mkdir()
            (folder / "same.txt").write_bytes(b"identical content")
            paths.append(lock_folder(str(folder), PASSWORD, config=config, stealth=stealth).vault_path)
        first, second = (read_record(p) for p in paths)
        assert first.kdf.salt != second.kdf.salt
        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext
        assert first.verifier != second.verifier

    def test_kdf_params_come_from_config(self, sample_tree, config, stealth):
        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        info = inspect_vault(result.vault_path, config)
        assert info.scrypt_n == config.scrypt_n
        assert info.scrypt_r == config.scrypt_r
        assert info.format_version == 1
        assert info.file_size == os.path.getsize(result.vault_path)

    def test_phase_order(self, sample_tree, config, stealth):
        events = []
        lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth, progress=events.append)
        assert _phases(events) == [
            Phase.SCANNING, Phase.ARCHIVING, Phase.ENCRYPTING,
            Phase.WRITING, Phase.HIDING, Phase.FINALIZING,
        ]
        archiving = [e for e in events if e.phase == Phase.ARCHIVING]
        assert archiving[-1].bytes_done == archiving[-1].bytes_total > 0

        events.clear()
        unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth, progress=events.append)
        assert _phases(events) == [
            Phase.VERIFYING, Phase.DECRYPTING, Phase.RESTORING,
            Phase.CLEANUP, Phase.FINALIZING,
        ]

    def test_failed_phase_reported(self, sample_tree, config, stealth):
        lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        events = []
        with pytest.raises(AuthenticationError):
            unlock_folder(str(sample_tree), "nope", config=config, stealth=stealth, progress=events.append)
        assert _phases(events) == [Phase.VERIFYING, Phase.FAILED]


class TestTampering:
    @pytest.fixture
    def locked(self, sample_tree, config, stealth):
        return lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)

    @pytest.mark.parametrize("where", ["ct_first", "ct_middle", "ct_last", "tag_first", "tag_last"])
    def test_bit_flip_detected(self, locked, config, stealth, where):
        with open(locked.vault_path, "rb") as fh:
            data = bytearray(fh.read())
        start = header_size(16)
        ct_len = len(data) - start - 16
        offset = {
            "ct_first": start,
            "ct_middle": start + ct_len // 2,
            "ct_last": start + ct_len - 1,
            "tag_first": len(data) - 16,
            "tag_last": len(data) - 1,
        }[where]
        data[offset] ^= 0x04
        os.chmod(locked.vault_path, 0o600)
        with open(locked.vault_path, "wb") as fh:
            fh.write(data)

        with pytest.raises(IntegrityError):
            unlock_folder(locked.vault_path, PASSWORD, config=config, stealth=stealth)
        assert not os.path.exists(locked.folder)
        with open(locked.vault_path, "rb") as fh:
            assert fh.read() == bytes(data)

    def test_tampered_salt_fails_authentication(self, locked, config, stealth):
        with open(locked.vault_path, "rb") as fh:
            data = bytearray(fh.read())
        data[14] ^= 0x01
        with open(locked.vault_path, "wb") as fh:
            fh.write(data)
        with pytest.raises(AuthenticationError):
            unlock_folder(locked.vault_path, PASSWORD, config=config, stealth=stealth)

    def test_truncated_vault(self, locked, config, stealth):
        with open(locked.vault_path, "rb") as fh:
            data = fh.read()
        with open(locked.vault_path, "wb") as fh:
            fh.write(data[:-5])
        with pytest.raises(IntegrityError):
            unlock_folder(locked.vault_path, PASSWORD, config=config, stealth=stealth)
        assert not os.path.exists(locked.folder)


class TestCrashSafety:
    def test_interrupt_before_checkpoint(self, sample_tree, config, stealth, snapshot, monkeypatch):
        before = snapshot(sample_tree)

        def failing_fsync(fd):
            raise OSError(5, "Input/output error")

        monkeypatch.setattr(vault.os, "fsync", failing_fsync)
        with pytest.raises(VaultIOError):
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()

        assert snapshot(sample_tree) == before
        assert not os.path.exists(str(sample_tree) + ".vault")
        assert _stray_files(sample_tree.parent) == []

    def test_keyboard_interrupt_before_checkpoint(self, sample_tree, config, stealth, snapshot, monkeypatch):
        before = snapshot(sample_tree)

        def interrupted(src, dst):
            raise KeyboardInterrupt

        monkeypatch.setattr(vault.os, "replace", interrupted)
        with pytest.raises(KeyboardInterrupt):
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()

        assert snapshot(sample_tree) == before
        assert not os.path.exists(str(sample_tree) + ".vault")
        assert _stray_files(sample_tree.parent) == []

    def test_interrupt_after_checkpoint_then_unlock(self, sample_tree, config, stealth, snapshot, monkeypatch):
        before = snapshot(sample_tree)

        def interrupted(root):
            raise KeyboardInterrupt

        monkeypatch.setattr(vault, "_remove_tree", interrupted)
        with pytest.raises(KeyboardInterrupt):
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()

        assert sample_tree.exists()
        assert is_locked(str(sample_tree), config)

        result = unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert result.replaced
        assert snapshot(sample_tree) == before
        assert not is_locked(str(sample_tree), config)
        assert _stray_files(sample_tree.parent) == []

    def test_interrupt_after_checkpoint_then_lock_resumes(self, sample_tree, config, stealth, snapshot, monkeypatch):
        before = snapshot(sample_tree)
        monkeypatch.setattr(vault, "_remove_tree", lambda root: [])
        lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()

        # simulate a deletion that stopped halfway
        os.remove(str(sample_tree / "q1" / "summary.txt"))

        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert result.resumed
        assert not sample_tree.exists()

        unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert snapshot(sample_tree) == before

    def test_resume_with_wrong_password(self, sample_tree, config, stealth, monkeypatch):
        monkeypatch.setattr(vault, "_remove_tree", lambda root: [])
        lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()
        with pytest.raises(AuthenticationError):
            lock_folder(str(sample_tree), "other", config=config, stealth=stealth)
        assert sample_tree.exists()

    def test_resume_refuses_changed_folder(self, sample_tree, config, stealth, monkeypatch):
        monkeypatch.setattr(vault, "_remove_tree", lambda root: [])
        lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()
        (sample_tree / "new-after-lock.txt").write_text("not in the vault")
        with pytest.raises(PathError):
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert (sample_tree / "new-after-lock.txt").exists()

    def test_unlock_refuses_different_existing_folder(self, sample_tree, config, stealth):
        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        sample_tree.mkdir()
        (sample_tree / "unrelated.txt").write_text("keep me")
        with pytest.raises(PathError):
            unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert (sample_tree / "unrelated.txt").read_text() == "keep me"
        assert os.path.exists(result.vault_path)

    def test_failed_restore_rolls_back(self, sample_tree, config, stealth, snapshot, monkeypatch):
        before = snapshot(sample_tree)
        monkeypatch.setattr(vault, "_remove_tree", lambda root: [])
        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()

        def failing_restore(contents, destination, progress=None):
            raise VaultIOError("No space left on device", destination)

        monkeypatch.setattr(vault.archive, "restore", failing_restore)
        with pytest.raises(VaultIOError):
            unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()

        assert snapshot(sample_tree) == before
        assert os.path.exists(result.vault_path)
        assert _stray_files(sample_tree.parent) == []

    def test_unreadable_readback_discards_vault(self, sample_tree, config, stealth, snapshot, monkeypatch):
        before = snapshot(sample_tree)

        def corrupt_read(path):
            raise IntegrityError("vault artifact is truncated", path)

        monkeypatch.setattr(vault, "read_record", corrupt_read)
        with pytest.raises(IntegrityError):
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()

        assert snapshot(sample_tree) == before
        assert not os.path.exists(str(sample_tree) + ".vault")

    def test_file_changed_during_lock(self, sample_tree, config, stealth, monkeypatch):
        real_scan = archive.scan

        def scan_then_modify(root):
            entries = real_scan(root)
            (sample_tree / "README").write_text("rewritten after the scan\n")
            return entries

        monkeypatch.setattr(vault.archive, "scan", scan_then_modify)
        with pytest.raises(ConcurrentAccessError):
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        monkeypatch.undo()

        assert (sample_tree / "README").read_text() == "rewritten after the scan\n"
        assert (sample_tree / "q2" / "nested" / "deep" / "data.bin").stat().st_size == 70000
        assert not os.path.exists(str(sample_tree) + ".vault")
        assert _stray_files(sample_tree.parent) == []

    def test_partial_deletion_reported(self, sample_tree, config, stealth, monkeypatch):
        leftover = str(sample_tree / "README")
        monkeypatch.setattr(vault, "_remove_tree", lambda root: [leftover])
        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert result.leftovers == [leftover]
        assert result.warnings
        assert os.path.exists(result.vault_path)


class TestPreconditions:
    def test_missing_folder(self, tmp_path, config, stealth):
        with pytest.raises(PathError) as exc:
            lock_folder(str(tmp_path / "nope"), PASSWORD, config=config, stealth=stealth)
        assert exc.value.path == str(tmp_path / "nope")

    def test_not_a_directory(self, tmp_path, config, stealth):
        f = tmp_path / "file.txt"
        f.write_text("x")
        with pytest.raises(PathError):
            lock_folder(str(f), PASSWORD, config=config, stealth=stealth)

    def test_already_locked(self, sample_tree, config, stealth):
        lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        with pytest.raises(PathError) as exc:
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert "already locked" in str(exc.value)

    def test_lock_on_vault_path_is_already_locked(self, sample_tree, config, stealth):
        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        with pytest.raises(PathError):
            lock_folder(result.vault_path, PASSWORD, config=config, stealth=stealth)

    def test_foreign_file_at_vault_path(self, sample_tree, config, stealth, snapshot):
        before = snapshot(sample_tree)
        (sample_tree.parent / "reports.vault").write_text("someone else's file")
        with pytest.raises(PathError):
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert snapshot(sample_tree) == before

    def test_unlock_not_locked(self, sample_tree, config, stealth):
        with pytest.raises(PathError):
            unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)

    def test_unlock_missing(self, tmp_path, config, stealth):
        with pytest.raises(PathError):
            unlock_folder(str(tmp_path / "ghost"), PASSWORD, config=config, stealth=stealth)

    def test_unlock_non_vault_file(self, tmp_path, config, stealth):
        (tmp_path / "notes.vault").write_text("plain text")
        with pytest.raises(PathError):
            unlock_folder(str(tmp_path / "notes.vault"), PASSWORD, config=config, stealth=stealth)

    def test_folder_named_with_suffix(self, tmp_path, config, stealth, snapshot):
        folder = tmp_path / "backup.vault"
        folder.mkdir()
        (folder / "a.txt").write_text("alpha\n")
        before = snapshot(folder)

        result = lock_folder(str(folder), PASSWORD, config=config, stealth=stealth)
        assert result.folder == str(folder)
        assert result.vault_path == str(tmp_path / "backup.vault.vault")
        assert not folder.exists()
        assert is_locked(str(folder), config)

        unlock_folder(str(folder), PASSWORD, config=config, stealth=stealth)
        assert snapshot(folder) == before
        assert not os.path.exists(result.vault_path)

        lock_folder(str(folder), PASSWORD, config=config, stealth=stealth)
        unlock_folder(result.vault_path, PASSWORD, config=config, stealth=stealth)
        assert snapshot(folder) == before

    def test_empty_password(self, sample_tree, config, stealth):
        with pytest.raises(ValueError):
            lock_folder(str(sample_tree), "", config=config, stealth=stealth)

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    def test_symlink_target_rejected(self, sample_tree, tmp_path, config, stealth):
        link = tmp_path / "link"
        os.symlink(str(sample_tree), str(link))
        with pytest.raises(PathError):
            lock_folder(str(link), PASSWORD, config=config, stealth=stealth)

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    def test_unsupported_entry_aborts(self, sample_tree, config, stealth, snapshot):
        os.symlink(str(sample_tree / "README"), str(sample_tree / "shortcut"))
        before = snapshot(sample_tree)
        with pytest.raises(UnsupportedEntryError):
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert snapshot(sample_tree) == before
        assert not os.path.exists(str(sample_tree) + ".vault")


class TestConcurrency:
    def test_live_sentinel_blocks(self, sample_tree, config, stealth, snapshot):
        sentinel = sample_tree.parent / f".reports{SENTINEL_SUFFIX}"
        sentinel.write_text(str(os.getpid()))
        before = snapshot(sample_tree)
        with pytest.raises(ConcurrentAccessError):
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert snapshot(sample_tree) == before
        assert sentinel.exists()

    def test_blocked_message_names_sentinel(self, sample_tree, config, stealth):
        sentinel = sample_tree.parent / f".reports{SENTINEL_SUFFIX}"
        sentinel.write_text(str(os.getpid()))
        with pytest.raises(ConcurrentAccessError) as exc:
            lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert str(sentinel) in str(exc.value)

    @pytest.mark.skipif(os.name == "nt", reason="liveness check is POSIX only")
    def test_stale_sentinel_taken_over(self, sample_tree, config, stealth):
        sentinel = sample_tree.parent / f".reports{SENTINEL_SUFFIX}"
        sentinel.write_text("999999999")
        lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert not sentinel.exists()
        assert not sample_tree.exists()

    def test_sentinel_released_after_failure(self, sample_tree, config, stealth):
        lock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        with pytest.raises(AuthenticationError):
            unlock_folder(str(sample_tree), "wrong", config=config, stealth=stealth)
        unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=stealth)
        assert sample_tree.exists()


class TestStealth:
    def test_stealth_failure_is_not_fatal(self, sample_tree, config, snapshot):
        before = snapshot(sample_tree)
        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=FailingStealth())
        assert not result.hidden
        assert any("unavailable" in w for w in result.warnings)
        assert not sample_tree.exists()

        unlocked = unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=FailingStealth())
        assert unlocked.warnings
        assert snapshot(sample_tree) == before

    @pytest.mark.skipif(os.name == "nt" or sys.platform == "darwin", reason="POSIX permission adapter")
    def test_posix_vault_protected_then_removed(self, sample_tree, config):
        result = lock_folder(str(sample_tree), PASSWORD, config=config, stealth=PosixStealth())
        assert result.hidden
        assert stat.S_IMODE(os.stat(result.vault_path).st_mode) == 0o400
        unlock_folder(str(sample_tree), PASSWORD, config=config, stealth=PosixStealth())
        assert sample_tree.is_dir()
        assert not os.path.exists(result.vault_path)
