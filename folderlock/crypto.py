"""
folderlock — GPL-3.0
low-level crypto: scrypt KDF, HMAC password verifier, AES-256-GCM.
"""

import ctypes
import hashlib
import hmac as _hmac
from dataclasses import dataclass
from typing import Tuple, Union

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes

from .errors import AuthenticationError, IntegrityError

KEY_SIZE        = 32
SALT_SIZE       = 16
GCM_NONCE_SIZE  = 12
GCM_TAG_SIZE    = 16
VERIFIER_SIZE   = 32

KDF_SCRYPT      = 1

SCRYPT_MIN_N    = 1 << 14
SCRYPT_MAX_N    = 1 << 22
SCRYPT_MAX_R    = 32
SCRYPT_MAX_P    = 16
SCRYPT_MAX_MEM  = 1 << 30

_VERIFIER_LABEL = b"folderlock/password-verifier/v1"

Key = Union[bytes, bytearray]


@dataclass(frozen=True)
class KdfParams:
    salt:      bytes
    n:         int = 1 << 15
    r:         int = 8
    p:         int = 1
    algorithm: int = KDF_SCRYPT

    def validate(self) -> None:
        if self.algorithm != KDF_SCRYPT:
            raise IntegrityError(f"unsupported key derivation algorithm id {self.algorithm}")
        n = self.n
        if n < SCRYPT_MIN_N or n > SCRYPT_MAX_N or (n & (n - 1)) != 0:
            raise IntegrityError(
                f"unsafe or invalid scrypt cost {n} "
                f"(must be a power of two in [{SCRYPT_MIN_N}, {SCRYPT_MAX_N}])"
            )
        if not 1 <= self.r <= SCRYPT_MAX_R:
            raise IntegrityError(f"invalid scrypt block size {self.r}")
        if not 1 <= self.p <= SCRYPT_MAX_P:
            raise IntegrityError(f"invalid scrypt parallelism {self.p}")
        if 128 * n * self.r > SCRYPT_MAX_MEM:
            raise IntegrityError(f"scrypt parameters n={n} r={self.r} exceed the memory limit")
        if not 8 <= len(self.salt) <= 64:
            raise IntegrityError(f"invalid salt length {len(self.salt)}")


def _wipe(buf: bytearray) -> None:
    n = len(buf)
    if n == 0:
        return
    try:
        arr = (ctypes.c_char * n).from_buffer(buf)
        ctypes.memset(arr, 0, n)
    except Exception:
        for i in range(n):
            buf[i] = 0


def new_salt() -> bytes:
    return get_random_bytes(SALT_SIZE)


def new_nonce() -> bytes:
    return get_random_bytes(GCM_NONCE_SIZE)


def derive_key(password: str, kdf: KdfParams) -> bytearray:
    kdf.validate()
    raw = hashlib.scrypt(
        password.encode('utf-8'),
        salt=kdf.salt,
        n=kdf.n,
        r=kdf.r,
        p=kdf.p,
        maxmem=0x7FFFFFFF,
        dklen=KEY_SIZE,
    )
    return bytearray(raw)


def make_verifier(key: Key) -> bytes:
    return _hmac.new(bytes(key), _VERIFIER_LABEL, hashlib.sha256).digest()


def verify_password(password: str, kdf: KdfParams, verifier: bytes) -> bool:
    key = derive_key(password, kdf)
    try:
        return _hmac.compare_digest(make_verifier(key), verifier)
    finally:
        _wipe(key)


def unlock_key(password: str, kdf: KdfParams, verifier: bytes) -> bytearray:
    """Derive the vault key and check it against the stored verifier.

    Raises AuthenticationError on mismatch; the derived key is wiped before
    raising so a wrong guess leaves nothing behind in memory.
    """
    key = derive_key(password, kdf)
    if not _hmac.compare_digest(make_verifier(key), verifier):
        _wipe(key)
        raise AuthenticationError()
    return key


def encrypt(key: Key, nonce: bytes, plaintext: bytes, ad: bytes) -> Tuple[bytes, bytes]:
    if len(nonce) != GCM_NONCE_SIZE:
        raise ValueError(f"nonce must be {GCM_NONCE_SIZE} bytes")
    aes = AES.new(bytes(key), AES.MODE_GCM, nonce=nonce, mac_len=GCM_TAG_SIZE)
    aes.update(ad)
    return aes.encrypt_and_digest(plaintext)


def decrypt(key: Key, nonce: bytes, ciphertext: bytes, tag: bytes, ad: bytes) -> bytes:
    if len(nonce) != GCM_NONCE_SIZE or len(tag) != GCM_TAG_SIZE:
        raise IntegrityError()
    aes = AES.new(bytes(key), AES.MODE_GCM, nonce=nonce, mac_len=GCM_TAG_SIZE)
    aes.update(ad)
    try:
        return aes.decrypt_and_verify(ciphertext, tag)
    except ValueError:
        raise IntegrityError() from None
