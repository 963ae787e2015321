"""
folderlock — GPL-3.0
archive codec: serializes a directory tree into one byte stream and back.

Stream layout, little-endian:

    b"FLKA" | u32 version | u32 root mode | f64 root mtime
    entry*  : u8 kind | u32 mode | f64 mtime | u32 path_len | path | u64 size | content
    trailer : u8 0xFF | u32 entry count | u64 total content bytes

Entries are ordered by path components so every directory precedes its contents.
"""

import enum
import io
import logging
import os
import shutil
import stat
import struct
import tempfile
from dataclasses import dataclass
from os.path import basename, dirname, exists, join
from typing import Callable, Dict, List, Optional

from .errors import (
    ConcurrentAccessError,
    IntegrityError,
    PathError,
    PathTraversalError,
    UnsupportedEntryError,
    VaultIOError,
)

logger = logging.getLogger(__name__)

ARCHIVE_MAGIC   = b"FLKA"
ARCHIVE_VERSION = 1
END_MARKER      = 0xFF
MAX_PATH_BYTES  = 32 * 1024

_HEAD_FMT    = "<4sIId"
_ENTRY_FMT   = "<BIdI"
_SIZE_FMT    = "<Q"
_TRAILER_FMT = "<BIQ"
_HEAD_LEN    = struct.calcsize(_HEAD_FMT)
_ENTRY_LEN   = struct.calcsize(_ENTRY_FMT)
_SIZE_LEN    = struct.calcsize(_SIZE_FMT)
_TRAILER_LEN = struct.calcsize(_TRAILER_FMT)

Progress = Callable[[str, int, int], None]


class EntryKind(enum.IntEnum):
    FILE      = 1
    DIRECTORY = 2


@dataclass
class ArchiveEntry:
    path:    str
    kind:    EntryKind
    size:    int             = 0
    mode:    int             = 0
    mtime:   float           = 0.0
    content: Optional[bytes] = None

    @property
    def is_dir(self) -> bool:
        return self.kind == EntryKind.DIRECTORY


@dataclass
class Archive:
    entries:    List[ArchiveEntry]
    root_mode:  int   = 0o755
    root_mtime: float = 0.0

    @property
    def total_bytes(self) -> int:
        return sum(e.size for e in self.entries if not e.is_dir)


def normalize_path(path: str) -> str:
    """Validate an archive-relative path; raises PathTraversalError if it could escape the root."""
    if not path or '\x00' in path:
        raise PathTraversalError("invalid archive path", path or "<empty>")
    if path.startswith('/'):
        raise PathTraversalError("absolute path in archive", path)
    for part in path.split('/'):
        if part in ('', '.', '..'):
            raise PathTraversalError("path escapes the archive root", path)
        if os.sep != '/' and os.sep in part:
            raise PathTraversalError("path escapes the archive root", path)
        if os.altsep and os.altsep != '/' and os.altsep in part:
            raise PathTraversalError("path escapes the archive root", path)
        if os.name == 'nt' and ':' in part:
            raise PathTraversalError("drive or stream reference in archive path", path)
    return path


def _sort_key(path: str):
    return path.split('/')


def scan(root: str) -> List[ArchiveEntry]:
    """List the tree under root without reading file contents."""
    entries: List[ArchiveEntry] = []

    def _walk(real_dir: str, prefix: str):
        try:
            with os.scandir(real_dir) as it:
                children = sorted(it, key=lambda d: d.name)
        except OSError as e:
            raise VaultIOError.wrap(e, real_dir) from e

        for child in children:
            rel = f"{prefix}{child.name}"
            try:
                st = child.stat(follow_symlinks=False)
            except OSError as e:
                raise VaultIOError.wrap(e, child.path) from e

            if stat.S_ISLNK(st.st_mode):
                raise UnsupportedEntryError("symbolic links cannot be locked", child.path)
            if stat.S_ISDIR(st.st_mode):
                entries.append(ArchiveEntry(
                    path=rel, kind=EntryKind.DIRECTORY,
                    mode=stat.S_IMODE(st.st_mode), mtime=st.st_mtime,
                ))
                _walk(child.path, rel + '/')
            elif stat.S_ISREG(st.st_mode):
                entries.append(ArchiveEntry(
                    path=rel, kind=EntryKind.FILE, size=st.st_size,
                    mode=stat.S_IMODE(st.st_mode), mtime=st.st_mtime,
                ))
            else:
                raise UnsupportedEntryError("special files cannot be locked", child.path)

    _walk(root, '')
    entries.sort(key=lambda e: _sort_key(e.path))
    return entries


def _read_file(real_path: str, expected: int) -> bytes:
    try:
        with open(real_path, 'rb') as fh:
            # one byte past the scanned size is enough to notice growth
            data = fh.read(expected + 1)
    except OSError as e:
        raise VaultIOError.wrap(e, real_path) from e
    if len(data) != expected:
        raise ConcurrentAccessError("file changed while it was being archived", real_path)
    return data


def serialize(
    root: str,
    entries: Optional[List[ArchiveEntry]] = None,
    progress: Optional[Progress] = None,
) -> bytes:
    if entries is None:
        entries = scan(root)
    try:
        root_st = os.stat(root)
    except OSError as e:
        raise VaultIOError.wrap(e, root) from e

    out = io.BytesIO()
    out.write(struct.pack(
        _HEAD_FMT, ARCHIVE_MAGIC, ARCHIVE_VERSION, stat.S_IMODE(root_st.st_mode), root_st.st_mtime,
    ))

    done_bytes = 0
    for i, entry in enumerate(entries, 1):
        raw_path = os.fsencode(entry.path)
        content  = b""
        if entry.kind == EntryKind.FILE:
            content = _read_file(join(root, *entry.path.split('/')), entry.size)
        out.write(struct.pack(_ENTRY_FMT, entry.kind, entry.mode, entry.mtime, len(raw_path)))
        out.write(raw_path)
        out.write(struct.pack(_SIZE_FMT, len(content)))
        out.write(content)
        done_bytes += len(content)
        if progress is not None:
            progress(entry.path, i, done_bytes)

    out.write(struct.pack(_TRAILER_FMT, END_MARKER, len(entries), done_bytes))
    return out.getvalue()


def parse(data: bytes) -> Archive:
    """Decode and validate a whole stream without touching the filesystem."""
    view = memoryview(data)
    if len(view) < _HEAD_LEN:
        raise IntegrityError("archive stream is truncated")
    magic, version, root_mode, root_mtime = struct.unpack_from(_HEAD_FMT, view, 0)
    if magic != ARCHIVE_MAGIC:
        raise IntegrityError("archive stream has a bad magic")
    if version != ARCHIVE_VERSION:
        raise IntegrityError(f"unsupported archive version {version}")

    offset  = _HEAD_LEN
    entries: List[ArchiveEntry] = []
    seen:    Dict[str, EntryKind] = {}
    total    = 0

    while True:
        if offset >= len(view):
            raise IntegrityError("archive stream ends without a trailer")
        if view[offset] == END_MARKER:
            break
        if offset + _ENTRY_LEN > len(view):
            raise IntegrityError("archive entry header is truncated")
        kind, mode, mtime, path_len = struct.unpack_from(_ENTRY_FMT, view, offset)
        offset += _ENTRY_LEN
        if path_len > MAX_PATH_BYTES or offset + path_len + _SIZE_LEN > len(view):
            raise IntegrityError("archive entry path is truncated")
        path = normalize_path(os.fsdecode(bytes(view[offset:offset + path_len])))
        offset += path_len
        (size,) = struct.unpack_from(_SIZE_FMT, view, offset)
        offset += _SIZE_LEN

        try:
            kind = EntryKind(kind)
        except ValueError:
            raise IntegrityError(f"unknown archive entry kind {kind}") from None
        if kind == EntryKind.DIRECTORY and size != 0:
            raise IntegrityError("directory entry carries content", path)
        if offset + size > len(view):
            raise IntegrityError("archive entry content is truncated", path)
        if path in seen:
            raise PathTraversalError("duplicate path in archive", path)
        parent = path.rpartition('/')[0]
        if parent and seen.get(parent) != EntryKind.DIRECTORY:
            raise IntegrityError("archive entry precedes its parent directory", path)

        content = bytes(view[offset:offset + size]) if kind == EntryKind.FILE else None
        offset += size
        total  += size
        seen[path] = kind
        entries.append(ArchiveEntry(
            path=path, kind=kind, size=size, mode=mode & 0o7777, mtime=mtime, content=content,
        ))

    if offset + _TRAILER_LEN != len(view):
        raise IntegrityError("archive trailer is malformed")
    _, count, total_bytes = struct.unpack_from(_TRAILER_FMT, view, offset)
    if count != len(entries) or total_bytes != total:
        raise IntegrityError("archive trailer does not match its entries")

    return Archive(entries=entries, root_mode=root_mode & 0o7777, root_mtime=root_mtime)


def _inside(root: str, target: str) -> bool:
    root   = os.path.realpath(root)
    target = os.path.realpath(target)
    return os.path.commonpath([root, target]) == root


def _apply_metadata(real_path: str, mode: int, mtime: float) -> None:
    try:
        os.chmod(real_path, mode)
        os.utime(real_path, (mtime, mtime))
    except OSError as e:
        logger.debug("could not restore metadata on %s: %s", real_path, e)


def deserialize(data: bytes, destination: str, progress: Optional[Progress] = None) -> Archive:
    archive = parse(data)
    restore(archive, destination, progress)
    return archive


def restore(archive: Archive, destination: str, progress: Optional[Progress] = None) -> None:
    """Recreate the archived tree at destination, all or nothing.

    The tree is materialized in a staging directory beside destination and
    renamed into place once every entry has been written.
    """
    destination = os.path.abspath(destination)
    if exists(destination) or os.path.islink(destination):
        raise PathError("restore destination already exists", destination)

    parent = dirname(destination) or '.'
    try:
        staging = tempfile.mkdtemp(dir=parent, prefix='.folderlock-')
    except OSError as e:
        raise VaultIOError.wrap(e, parent) from e

    try:
        done_bytes = 0
        for i, entry in enumerate(archive.entries, 1):
            real_path = join(staging, *entry.path.split('/'))
            if not _inside(staging, real_path):
                raise PathTraversalError("path escapes the restore root", entry.path)
            try:
                if entry.is_dir:
                    os.mkdir(real_path, 0o700)
                else:
                    with open(real_path, 'xb') as fh:
                        fh.write(entry.content or b"")
                        fh.flush()
                        os.fsync(fh.fileno())
            except OSError as e:
                raise VaultIOError.wrap(e, join(destination, entry.path)) from e
            done_bytes += entry.size
            if progress is not None:
                progress(entry.path, i, done_bytes)

        try:
            os.rename(staging, destination)
        except OSError as e:
            raise VaultIOError.wrap(e, destination) from e
        staging = None
    finally:
        if staging is not None:
            shutil.rmtree(staging, ignore_errors=True)

    for entry in archive.entries:
        if not entry.is_dir:
            _apply_metadata(join(destination, *entry.path.split('/')), entry.mode, entry.mtime)
    for entry in reversed(archive.entries):
        if entry.is_dir:
            _apply_metadata(join(destination, *entry.path.split('/')), entry.mode, entry.mtime)
    _apply_metadata(destination, archive.root_mode, archive.root_mtime)

    logger.debug("restored %d entries into %s", len(archive.entries), basename(destination))


def covers(archive: Archive, root: str) -> bool:
    """True when every entry currently under root is present in archive with identical content."""
    archived = {e.path: e for e in archive.entries}
    for entry in scan(root):
        kept = archived.get(entry.path)
        if kept is None or kept.kind != entry.kind:
            return False
        if entry.kind == EntryKind.FILE:
            if kept.size != entry.size:
                return False
            if _read_file(join(root, *entry.path.split('/')), entry.size) != kept.content:
                return False
    return True