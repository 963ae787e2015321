"""
Runtime configuration for folderlock.

Values come from FOLDERLOCK_* environment variables with safe defaults:

    FOLDERLOCK_SUFFIX        vault artifact suffix          (".vault")
    FOLDERLOCK_SCRYPT_N      scrypt cost, power of two      (32768)
    FOLDERLOCK_SCRYPT_R      scrypt block size              (8)
    FOLDERLOCK_SCRYPT_P      scrypt parallelism             (1)
    FOLDERLOCK_HIDE          hide the artifact after lock   ("1")
    FOLDERLOCK_CMD_TIMEOUT   timeout for attribute commands (10 seconds)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .crypto import SCRYPT_MAX_MEM, SCRYPT_MAX_N, SCRYPT_MAX_P, SCRYPT_MAX_R, SCRYPT_MIN_N

_TRUE  = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class LockerConfig:
    vault_suffix:    str   = ".vault"
    scrypt_n:        int   = 1 << 15
    scrypt_r:        int   = 8
    scrypt_p:        int   = 1
    hide:            bool  = True
    command_timeout: float = 10.0

    def __post_init__(self):
        n = self.scrypt_n
        if n < SCRYPT_MIN_N or n > SCRYPT_MAX_N or (n & (n - 1)) != 0:
            raise ValueError(
                f"scrypt_n must be a power of two in [{SCRYPT_MIN_N}, {SCRYPT_MAX_N}], got {n}"
            )
        if not 1 <= self.scrypt_r <= SCRYPT_MAX_R:
            raise ValueError(f"scrypt_r must be in [1, {SCRYPT_MAX_R}], got {self.scrypt_r}")
        if not 1 <= self.scrypt_p <= SCRYPT_MAX_P:
            raise ValueError(f"scrypt_p must be in [1, {SCRYPT_MAX_P}], got {self.scrypt_p}")
        if 128 * n * self.scrypt_r > SCRYPT_MAX_MEM:
            raise ValueError("scrypt_n * scrypt_r exceeds the KDF memory limit")
        suffix = self.vault_suffix
        if not suffix.startswith(".") or len(suffix) < 2 or "/" in suffix or "\\" in suffix:
            raise ValueError(f"vault_suffix must look like '.ext', got {suffix!r}")
        if self.command_timeout <= 0:
            raise ValueError("command_timeout must be positive")

    @classmethod
    def from_env(cls) -> "LockerConfig":
        env = os.environ
        return cls(
            vault_suffix=env.get("FOLDERLOCK_SUFFIX", ".vault"),
            scrypt_n=_int_env("FOLDERLOCK_SCRYPT_N", 1 << 15),
            scrypt_r=_int_env("FOLDERLOCK_SCRYPT_R", 8),
            scrypt_p=_int_env("FOLDERLOCK_SCRYPT_P", 1),
            hide=_bool_env("FOLDERLOCK_HIDE", True),
            command_timeout=float(env.get("FOLDERLOCK_CMD_TIMEOUT", "10")),
        )


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw, 0)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


_config: Optional[LockerConfig] = None


def get_config() -> LockerConfig:
    global _config
    if _config is None:
        _config = LockerConfig.from_env()
    return _config


def reset_config() -> None:
    global _config
    _config = None
