import enum
import errno
import hashlib
import logging
import os
import stat
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from os.path import abspath, basename, dirname, exists, isdir, islink, join
from typing import Callable, List, Optional, Tuple

from . import archive
from .archive import Archive
from .config import LockerConfig, get_config
from .crypto import (
    KdfParams,
    _wipe,
    decrypt, derive_key, encrypt,
    make_verifier, new_nonce, new_salt, unlock_key,
)
from .errors import (
    ConcurrentAccessError,
    IntegrityError,
    LockerError,
    PathError,
    StealthError,
    VaultIOError,
)
from .record import VaultRecord, is_vault_file, read_header, read_record
from .stealth import Stealth, get_stealth

logger = logging.getLogger(__name__)

SENTINEL_SUFFIX = ".folderlock.lock"
_SENTINEL_GRACE = 5.0


class Phase(enum.Enum):
    IDLE       = "idle"
    SCANNING   = "scanning"
    ARCHIVING  = "archiving"
    ENCRYPTING = "encrypting"
    WRITING    = "writing"
    HIDING     = "hiding"
    FINALIZING = "finalizing"
    VERIFYING  = "verifying"
    DECRYPTING = "decrypting"
    RESTORING  = "restoring"
    CLEANUP    = "cleanup"
    FAILED     = "failed"


@dataclass
class ProgressEvent:
    phase:         Phase
    entries_done:  int = 0
    entries_total: int = 0
    bytes_done:    int = 0
    bytes_total:   int = 0
    path:          str = ""


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class LockResult:
    folder:     str
    vault_path: str
    entries:    int             = 0
    bytes:      int             = 0
    hidden:     bool            = False
    resumed:    bool            = False
    leftovers:  List[str]       = field(default_factory=list)
    warnings:   List[str]       = field(default_factory=list)
    elapsed:    float           = 0.0


@dataclass
class UnlockResult:
    folder:     str
    vault_path: str
    entries:    int             = 0
    bytes:      int             = 0
    replaced:   bool            = False
    leftovers:  List[str]       = field(default_factory=list)
    warnings:   List[str]       = field(default_factory=list)
    elapsed:    float           = 0.0


@dataclass
class VaultInfo:
    path:              str
    format_version:    int
    kdf:               str
    scrypt_n:          int
    scrypt_r:          int
    scrypt_p:          int
    salt_size:         int
    ciphertext_size:   int
    file_size:         int


def resolve_paths(path: str, config: Optional[LockerConfig] = None) -> Tuple[str, str]:
    """Map a folder path or an artifact path to (folder, vault artifact).

    An existing directory is always the folder, even when its name ends in
    the suffix. Otherwise the suffix is stripped unless path + suffix is
    itself an existing artifact (a locked folder named like `x.vault`).
    """
    config = config or get_config()
    path   = abspath(os.path.expanduser(path))
    suffix = config.vault_suffix
    if isdir(path) or exists(path + suffix):
        return path, path + suffix
    if path.endswith(suffix) and len(basename(path)) > len(suffix):
        return path[:-len(suffix)], path
    return path, path + suffix


def is_locked(path: str, config: Optional[LockerConfig] = None) -> bool:
    _, vault_path = resolve_paths(path, config)
    return is_vault_file(vault_path)


class _Sentinel:
    """Marker file beside the target claiming it for one process."""

    def __init__(self, folder: str):
        self.folder = folder
        self.path   = join(dirname(folder), f".{basename(folder)}{SENTINEL_SUFFIX}")
        self.held   = False

    def acquire(self):
        for attempt in (0, 1):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if attempt == 0 and self._stale():
                    logger.debug("removing stale sentinel %s", self.path)
                    try:
                        os.unlink(self.path)
                    except FileNotFoundError:
                        pass
                    except OSError as e:
                        raise VaultIOError.wrap(e, self.path) from e
                    continue
                raise ConcurrentAccessError(
                    f"another folderlock operation holds {self.path}; "
                    f"remove it if no such operation is running", self.folder,
                )
            except OSError as e:
                raise VaultIOError.wrap(e, self.path) from e
            with os.fdopen(fd, 'w', encoding='ascii') as fh:
                fh.write(str(os.getpid()))
            self.held = True
            return

    def _stale(self) -> bool:
        try:
            with open(self.path, 'r', encoding='ascii') as fh:
                raw = fh.read(32).strip()
            age = time.time() - os.path.getmtime(self.path)
        except FileNotFoundError:
            return True
        except (OSError, UnicodeDecodeError):
            return False
        if not raw.isdigit():
            return age > _SENTINEL_GRACE
        pid = int(raw)
        if pid == os.getpid():
            return False
        if os.name == 'nt':
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def release(self):
        if not self.held:
            return
        self.held = False
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("could not remove sentinel %s: %s", self.path, e)


class LockSession:
    """State of one lock or unlock invocation.

    Holds the derived key only in memory and wipes it on close. Owns the
    sentinel that keeps a second folderlock process away from the target.
    """

    def __init__(
        self,
        folder: str,
        vault_path: str,
        config: LockerConfig,
        stealth: Stealth,
        progress: Optional[ProgressCallback] = None,
    ):
        self.folder     = folder
        self.vault_path = vault_path
        self.config     = config
        self.stealth    = stealth
        self.progress   = progress
        self.phase      = Phase.IDLE
        self.history: List[Phase] = [Phase.IDLE]
        self.key: bytearray = bytearray(0)
        self._sentinel  = _Sentinel(folder)

    def close(self) -> None:
        _wipe(self.key)
        self.key = bytearray(0)
        self._sentinel.release()

    def __enter__(self):
        self._sentinel.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            logger.debug("%s failed during %s: %s", basename(self.folder), self.phase.value, exc)
            self.advance(Phase.FAILED)
        self.close()

    def __del__(self):
        try:
            _wipe(self.key)
        except Exception:
            pass

    def advance(self, phase: Phase, **counts) -> None:
        logger.debug("%s: %s -> %s", basename(self.folder), self.phase.value, phase.value)
        self.phase = phase
        self.history.append(phase)
        self.emit(**counts)

    def emit(self, **counts) -> None:
        if self.progress is not None:
            self.progress(ProgressEvent(self.phase, **counts))


def _fsync_dir(path: str) -> None:
    if os.name == 'nt':
        return
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _write_durably(path: str, data: bytes) -> None:
    out_dir = dirname(path) or '.'
    try:
        fd, tmp_path = tempfile.mkstemp(dir=out_dir, prefix='.folderlock-', suffix='.tmp')
    except OSError as e:
        raise VaultIOError.wrap(e, path) from e
    try:
        with os.fdopen(fd, 'wb') as dst:
            fd = -1
            dst.write(data)
            dst.flush()
            os.fsync(dst.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as e:
        raise VaultIOError.wrap(e, path) from e
    finally:
        if fd >= 0:
            try:
                os.close(fd)
            except OSError:
                pass
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
    _fsync_dir(out_dir)


def _remove_file(path: str) -> None:
    try:
        os.remove(path)
    except PermissionError:
        if os.name != 'nt':
            raise
        os.chmod(path, stat.S_IWRITE)
        os.remove(path)


def _remove_tree(root: str) -> List[str]:
    """Delete root bottom-up; returns the paths that could not be removed."""
    failed: List[str] = []
    for cur, dirs, files in os.walk(root, topdown=False):
        for name in files:
            p = join(cur, name)
            try:
                _remove_file(p)
            except OSError as e:
                logger.warning("could not remove %s: %s", p, e)
                failed.append(p)
        for name in dirs:
            p = join(cur, name)
            try:
                os.rmdir(p)
            except OSError as e:
                if e.errno not in (errno.ENOTEMPTY, errno.EEXIST):
                    logger.warning("could not remove %s: %s", p, e)
                    failed.append(p)
    try:
        os.rmdir(root)
    except FileNotFoundError:
        pass
    except OSError as e:
        if not failed:
            logger.warning("could not remove %s: %s", root, e)
            failed.append(root)
    return failed


def _hide(session: LockSession) -> Tuple[bool, List[str]]:
    try:
        session.stealth.hide(session.vault_path)
    except StealthError as e:
        logger.warning("vault written but could not be hidden: %s", e)
        return False, [str(e)]
    return True, []


def _seal(session: LockSession, password: str, payload: bytes) -> VaultRecord:
    config = session.config
    kdf    = KdfParams(salt=new_salt(), n=config.scrypt_n, r=config.scrypt_r, p=config.scrypt_p)
    session.key = derive_key(password, kdf)
    record = VaultRecord(kdf=kdf, verifier=make_verifier(session.key), nonce=new_nonce())
    record.ciphertext, record.tag = encrypt(
        session.key, record.nonce, payload, record.header(len(payload)),
    )
    return record


def _open(session: LockSession, record: VaultRecord) -> bytes:
    return decrypt(session.key, record.nonce, record.ciphertext, record.tag, record.header())


def _verify_committed(session: LockSession, digest: bytes) -> None:
    """Read the committed artifact back; remove it if it does not reproduce the archive."""
    try:
        record  = read_record(session.vault_path)
        payload = _open(session, record)
        if hashlib.sha256(payload).digest() != digest:
            raise IntegrityError("vault read-back does not match the archived folder")
    except LockerError:
        try:
            os.remove(session.vault_path)
        except OSError as e:
            logger.warning("could not discard unverifiable vault %s: %s", session.vault_path, e)
        raise


def _check_lock_target(folder: str, vault_path: str) -> None:
    if dirname(folder) == folder:
        raise PathError("refusing to lock a filesystem root", folder)
    if islink(folder):
        raise PathError("refusing to lock a symbolic link", folder)
    if not exists(folder):
        if exists(vault_path):
            raise PathError("folder is already locked", vault_path)
        raise PathError("folder not found", folder)
    if not isdir(folder):
        if is_vault_file(folder):
            raise PathError("path is already a vault", folder)
        raise PathError("not a directory", folder)
    if exists(vault_path) and not is_vault_file(vault_path):
        raise PathError("a non-vault file occupies the vault path", vault_path)


def lock_folder(
    folder: str,
    password: str,
    *,
    config: Optional[LockerConfig] = None,
    stealth: Optional[Stealth] = None,
    progress: Optional[ProgressCallback] = None,
) -> LockResult:
    """Replace folder with an encrypted vault artifact.

    The original tree is deleted only after the artifact has been written to
    a temp file, synced, renamed into place and read back successfully. If
    an artifact for folder already exists (an earlier run stopped after its
    commit) the run resumes: the password is checked against that artifact
    and the leftover folder is removed when the artifact covers it.
    """
    if not password:
        raise ValueError("password cannot be empty")
    config  = config or get_config()
    stealth = stealth if stealth is not None else get_stealth(config.hide, config.command_timeout)
    folder, vault_path = resolve_paths(folder, config)
    _check_lock_target(folder, vault_path)

    t0 = time.time()
    with LockSession(folder, vault_path, config, stealth, progress) as session:
        if exists(vault_path):
            return _resume_lock(session, password, t0)

        session.advance(Phase.SCANNING, path=folder)
        entries     = archive.scan(folder)
        total_bytes = sum(e.size for e in entries if not e.is_dir)
        n_entries   = len(entries)
        logger.debug("scanned %d entries, %d bytes", n_entries, total_bytes)

        session.advance(Phase.ARCHIVING, entries_total=n_entries, bytes_total=total_bytes)
        payload = archive.serialize(
            folder, entries,
            progress=lambda p, n, b: session.emit(
                entries_done=n, entries_total=n_entries,
                bytes_done=b, bytes_total=total_bytes, path=p,
            ),
        )
        digest = hashlib.sha256(payload).digest()

        session.advance(Phase.ENCRYPTING, entries_total=n_entries, bytes_total=total_bytes)
        record = _seal(session, password, payload)
        del payload

        session.advance(Phase.WRITING, path=vault_path)
        _write_durably(vault_path, record.to_bytes())
        _verify_committed(session, digest)
        logger.info("vault committed: %s", vault_path)

        session.advance(Phase.HIDING, path=vault_path)
        hidden, warnings = _hide(session)

        session.advance(Phase.FINALIZING, entries_total=n_entries, bytes_total=total_bytes)
        leftovers = _remove_tree(folder)
        if leftovers:
            warnings.append(
                f"{len(leftovers)} item(s) of the original folder could not be removed; "
                f"the vault holds a complete copy"
            )

        return LockResult(
            folder=folder, vault_path=vault_path,
            entries=n_entries, bytes=total_bytes,
            hidden=hidden, leftovers=leftovers, warnings=warnings,
            elapsed=time.time() - t0,
        )


def _resume_lock(session: LockSession, password: str, t0: float) -> LockResult:
    folder, vault_path = session.folder, session.vault_path
    logger.info("vault already exists for %s, resuming", folder)

    session.advance(Phase.VERIFYING, path=vault_path)
    record = read_record(vault_path)
    session.key = unlock_key(password, record.kdf, record.verifier)

    session.advance(Phase.DECRYPTING, path=vault_path)
    contents = archive.parse(_open(session, record))
    if not archive.covers(contents, folder):
        raise PathError("a different vault already exists for this folder", vault_path)

    session.advance(Phase.HIDING, path=vault_path)
    hidden, warnings = _hide(session)

    n_entries = len(contents.entries)
    session.advance(Phase.FINALIZING, entries_total=n_entries, bytes_total=contents.total_bytes)
    leftovers = _remove_tree(folder)
    if leftovers:
        warnings.append(f"{len(leftovers)} item(s) of the original folder could not be removed")

    return LockResult(
        folder=folder, vault_path=vault_path,
        entries=n_entries, bytes=contents.total_bytes,
        hidden=hidden, resumed=True, leftovers=leftovers, warnings=warnings,
        elapsed=time.time() - t0,
    )


def _move_aside(folder: str) -> str:
    backup = join(dirname(folder), f".folderlock-{basename(folder)}-{uuid.uuid4().hex[:8]}.old")
    try:
        os.rename(folder, backup)
    except OSError as e:
        raise VaultIOError.wrap(e, folder) from e
    return backup


def _restore(session: LockSession, contents: Archive) -> None:
    n_entries   = len(contents.entries)
    total_bytes = contents.total_bytes
    archive.restore(
        contents, session.folder,
        progress=lambda p, n, b: session.emit(
            entries_done=n, entries_total=n_entries,
            bytes_done=b, bytes_total=total_bytes, path=p,
        ),
    )


def unlock_folder(
    path: str,
    password: str,
    *,
    config: Optional[LockerConfig] = None,
    stealth: Optional[Stealth] = None,
    progress: Optional[ProgressCallback] = None,
) -> UnlockResult:
    """Restore the folder held by a vault artifact and remove the artifact.

    path may name the folder or its artifact. Nothing on disk changes until
    the password is verified and the whole artifact has authenticated.
    """
    config  = config or get_config()
    stealth = stealth if stealth is not None else get_stealth(config.hide, config.command_timeout)
    folder, vault_path = resolve_paths(path, config)

    if not exists(vault_path):
        if isdir(folder):
            raise PathError("folder is not locked", folder)
        raise PathError("no vault found", vault_path)
    if isdir(vault_path):
        raise PathError("not a folderlock vault", vault_path)

    t0 = time.time()
    with LockSession(folder, vault_path, config, stealth, progress) as session:
        session.advance(Phase.VERIFYING, path=vault_path)
        record = read_record(vault_path)
        session.key = unlock_key(password, record.kdf, record.verifier)

        session.advance(Phase.DECRYPTING, path=vault_path)
        contents    = archive.parse(_open(session, record))
        n_entries   = len(contents.entries)
        total_bytes = contents.total_bytes

        session.advance(Phase.RESTORING, entries_total=n_entries, bytes_total=total_bytes)
        replaced  = False
        leftovers: List[str] = []
        if exists(folder) or islink(folder):
            if islink(folder) or not isdir(folder) or not archive.covers(contents, folder):
                raise PathError("folder exists and differs from the vault contents", folder)
            logger.info("replacing partially locked folder %s", folder)
            backup = _move_aside(folder)
            try:
                _restore(session, contents)
            except BaseException:
                try:
                    os.rename(backup, folder)
                except OSError as e:
                    logger.error("could not move %s back to %s: %s", backup, folder, e)
                raise
            leftovers = _remove_tree(backup)
            replaced  = True
        else:
            _restore(session, contents)

        session.advance(Phase.CLEANUP, path=vault_path)
        warnings: List[str] = []
        try:
            stealth.unhide(vault_path)
        except StealthError as e:
            logger.warning("could not unhide %s: %s", vault_path, e)
            warnings.append(str(e))
        try:
            _remove_file(vault_path)
        except OSError as e:
            logger.warning("folder restored but vault could not be removed: %s", e)
            warnings.append(f"vault artifact could not be removed: {e.strerror or e}")

        session.advance(Phase.FINALIZING, entries_total=n_entries, bytes_total=total_bytes)
        return UnlockResult(
            folder=folder, vault_path=vault_path,
            entries=n_entries, bytes=total_bytes,
            replaced=replaced, leftovers=leftovers, warnings=warnings,
            elapsed=time.time() - t0,
        )


def inspect_vault(path: str, config: Optional[LockerConfig] = None) -> VaultInfo:
    _, vault_path = resolve_paths(path, config)
    if not exists(vault_path):
        raise PathError("no vault found", vault_path)
    if isdir(vault_path):
        raise PathError("not a folderlock vault", vault_path)
    record, ct_len, size = read_header(vault_path)
    return VaultInfo(
        path=vault_path,
        format_version=record.format_version,
        kdf="scrypt",
        scrypt_n=record.kdf.n,
        scrypt_r=record.kdf.r,
        scrypt_p=record.kdf.p,
        salt_size=len(record.kdf.salt),
        ciphertext_size=ct_len,
        file_size=size,
    )
