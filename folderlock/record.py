"""
folderlock — GPL-3.0
vault artifact format.

Format version 1, all integers little-endian:

    magic          8 bytes   b"FLKVAULT"
    version        u32
    salt_len       u16
    salt           salt_len bytes
    kdf_id         u8        (1 = scrypt)
    scrypt n/r/p   u32 x 3
    verifier       32 bytes  HMAC-SHA256 password verifier
    nonce          12 bytes  AES-GCM nonce
    ct_len         u64
    ciphertext     ct_len bytes
    tag            16 bytes  AES-GCM tag

Everything from magic through ct_len is authenticated as associated data.
"""

import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, Optional, Tuple

from .crypto import GCM_NONCE_SIZE, GCM_TAG_SIZE, VERIFIER_SIZE, KdfParams
from .errors import IntegrityError, PathError, VaultIOError

VAULT_MAGIC    = b"FLKVAULT"
FORMAT_VERSION = 1

_PREFIX_FMT = "<8sIH"
_KDF_FMT    = "<BIII"
_LEN_FMT    = "<Q"
_PREFIX_LEN = struct.calcsize(_PREFIX_FMT)
_KDF_LEN    = struct.calcsize(_KDF_FMT)
_LEN_LEN    = struct.calcsize(_LEN_FMT)
_MAX_SALT   = 64


@dataclass
class VaultRecord:
    kdf:            KdfParams
    verifier:       bytes
    nonce:          bytes
    ciphertext:     bytes = b""
    tag:            bytes = b""
    format_version: int   = FORMAT_VERSION

    def header(self, ciphertext_length: Optional[int] = None) -> bytes:
        if ciphertext_length is None:
            ciphertext_length = len(self.ciphertext)
        return b"".join((
            struct.pack(_PREFIX_FMT, VAULT_MAGIC, self.format_version, len(self.kdf.salt)),
            self.kdf.salt,
            struct.pack(_KDF_FMT, self.kdf.algorithm, self.kdf.n, self.kdf.r, self.kdf.p),
            self.verifier,
            self.nonce,
            struct.pack(_LEN_FMT, ciphertext_length),
        ))

    def to_bytes(self) -> bytes:
        if len(self.verifier) != VERIFIER_SIZE:
            raise ValueError(f"verifier must be {VERIFIER_SIZE} bytes")
        if len(self.nonce) != GCM_NONCE_SIZE:
            raise ValueError(f"nonce must be {GCM_NONCE_SIZE} bytes")
        if len(self.tag) != GCM_TAG_SIZE:
            raise ValueError(f"tag must be {GCM_TAG_SIZE} bytes")
        return self.header() + self.ciphertext + self.tag

    @classmethod
    def from_bytes(cls, data: bytes, path: Optional[str] = None) -> "VaultRecord":
        record, offset, ct_len = parse_header(data, path)
        end = offset + ct_len
        if len(data) < end + GCM_TAG_SIZE:
            raise IntegrityError("vault artifact is truncated", path)
        if len(data) > end + GCM_TAG_SIZE:
            raise IntegrityError("unexpected trailing data in vault artifact", path)
        record.ciphertext = data[offset:end]
        record.tag        = data[end:end + GCM_TAG_SIZE]
        return record


def parse_header(data: bytes, path: Optional[str] = None) -> Tuple[VaultRecord, int, int]:
    """Decode the fixed header; returns (record, ciphertext offset, ciphertext length)."""
    if len(data) < len(VAULT_MAGIC) or data[:len(VAULT_MAGIC)] != VAULT_MAGIC:
        raise PathError("not a folderlock vault", path)
    if len(data) < _PREFIX_LEN:
        raise IntegrityError("vault header is truncated", path)

    _, version, salt_len = struct.unpack_from(_PREFIX_FMT, data, 0)
    if version != FORMAT_VERSION:
        raise IntegrityError(f"unsupported vault format version {version}", path)
    if salt_len == 0 or salt_len > _MAX_SALT:
        raise IntegrityError(f"invalid salt length {salt_len}", path)

    offset = _PREFIX_LEN
    fixed  = salt_len + _KDF_LEN + VERIFIER_SIZE + GCM_NONCE_SIZE + _LEN_LEN
    if len(data) < offset + fixed:
        raise IntegrityError("vault header is truncated", path)

    salt    = bytes(data[offset:offset + salt_len])
    offset += salt_len
    kdf_id, n, r, p = struct.unpack_from(_KDF_FMT, data, offset)
    offset += _KDF_LEN
    verifier = bytes(data[offset:offset + VERIFIER_SIZE])
    offset  += VERIFIER_SIZE
    nonce    = bytes(data[offset:offset + GCM_NONCE_SIZE])
    offset  += GCM_NONCE_SIZE
    (ct_len,) = struct.unpack_from(_LEN_FMT, data, offset)
    offset  += _LEN_LEN

    kdf = KdfParams(salt=salt, n=n, r=r, p=p, algorithm=kdf_id)
    try:
        kdf.validate()
    except IntegrityError as e:
        raise IntegrityError(e.message, path) from None

    record = VaultRecord(kdf=kdf, verifier=verifier, nonce=nonce, format_version=version)
    return record, offset, ct_len


def header_size(salt_len: int) -> int:
    return _PREFIX_LEN + salt_len + _KDF_LEN + VERIFIER_SIZE + GCM_NONCE_SIZE + _LEN_LEN


def _read_head(fh: BinaryIO) -> bytes:
    head = fh.read(_PREFIX_LEN)
    if len(head) == _PREFIX_LEN and head[:len(VAULT_MAGIC)] == VAULT_MAGIC:
        _, _, salt_len = struct.unpack_from(_PREFIX_FMT, head, 0)
        head += fh.read(header_size(min(salt_len, _MAX_SALT)) - _PREFIX_LEN)
    return head


def read_record(path: str) -> VaultRecord:
    try:
        with open(path, 'rb') as fh:
            data = fh.read()
    except OSError as e:
        raise VaultIOError.wrap(e, path) from e
    return VaultRecord.from_bytes(data, path)


def read_header(path: str) -> Tuple[VaultRecord, int, int]:
    """Read only the header of an artifact; returns (record, ciphertext length, file size)."""
    try:
        with open(path, 'rb') as fh:
            head = _read_head(fh)
        size = os.path.getsize(path)
    except OSError as e:
        raise VaultIOError.wrap(e, path) from e
    record, _, ct_len = parse_header(head, path)
    return record, ct_len, size


def is_vault_file(path: str) -> bool:
    try:
        with open(path, 'rb') as fh:
            return fh.read(len(VAULT_MAGIC)) == VAULT_MAGIC
    except OSError:
        return False
