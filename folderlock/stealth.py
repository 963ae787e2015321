"""
folderlock — GPL-3.0
stealth controller: hides and protects the vault artifact.

Visibility is cosmetic. Every adapter is idempotent and reports failure
with StealthError; callers treat that as a warning, never as data loss.
"""

import logging
import os
import stat
import subprocess
import sys
from typing import List

from .errors import StealthError

logger = logging.getLogger(__name__)

PROTECTED_MODE = 0o400
RESTORED_MODE  = 0o600


class Stealth:
    name = "none"

    def hide(self, path: str) -> None:
        raise NotImplementedError

    def unhide(self, path: str) -> None:
        raise NotImplementedError


class NullStealth(Stealth):
    name = "none"

    def hide(self, path: str) -> None:
        pass

    def unhide(self, path: str) -> None:
        pass


class PosixStealth(Stealth):
    """Marks the artifact owner-read-only; unhide restores owner read-write."""

    name = "posix"

    def _chmod(self, path: str, mode: int) -> None:
        try:
            current = stat.S_IMODE(os.stat(path).st_mode)
            if current != mode:
                os.chmod(path, mode)
        except OSError as e:
            raise StealthError(f"cannot change permissions: {e.strerror or e}", path) from e

    def hide(self, path: str) -> None:
        self._chmod(path, PROTECTED_MODE)

    def unhide(self, path: str) -> None:
        self._chmod(path, RESTORED_MODE)


class _CommandStealth(Stealth):
    hide_cmd:   List[str] = []
    unhide_cmd: List[str] = []

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def _run(self, args: List[str], path: str) -> None:
        cmd = list(args) + [path]
        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout, check=False,
            )
        except FileNotFoundError as e:
            raise StealthError(f"{args[0]} is not available", path) from e
        except subprocess.TimeoutExpired as e:
            raise StealthError(f"{args[0]} timed out after {self.timeout:.0f}s", path) from e
        except OSError as e:
            raise StealthError(f"{args[0]} failed: {e}", path) from e
        if proc.returncode != 0:
            reason = (proc.stderr or proc.stdout or "").strip() or f"exit status {proc.returncode}"
            raise StealthError(f"{args[0]} failed: {reason}", path)

    def hide(self, path: str) -> None:
        self._run(self.hide_cmd, path)

    def unhide(self, path: str) -> None:
        self._run(self.unhide_cmd, path)


class WindowsStealth(_CommandStealth):
    name       = "windows"
    hide_cmd   = ["attrib", "+H", "+S"]
    unhide_cmd = ["attrib", "-H", "-S"]


class MacStealth(_CommandStealth):
    name       = "macos"
    hide_cmd   = ["chflags", "hidden"]
    unhide_cmd = ["chflags", "nohidden"]


def get_stealth(enabled: bool = True, timeout: float = 10.0) -> Stealth:
    if not enabled:
        return NullStealth()
    if os.name == 'nt':
        return WindowsStealth(timeout)
    if sys.platform == 'darwin':
        return MacStealth(timeout)
    return PosixStealth()
