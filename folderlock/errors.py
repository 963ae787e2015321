"""
folderlock — GPL-3.0
error taxonomy shared by the codec, the crypto layer and the lock/unlock state machine.
"""

from typing import Optional


class LockerError(Exception):
    kind      = "Error"
    exit_code = 1

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.path    = path

    def __str__(self) -> str:
        if self.path:
            return f"{self.message} ({self.path})"
        return self.message


class PathError(LockerError):
    kind      = "PathError"
    exit_code = 3


class AuthenticationError(LockerError):
    kind      = "AuthenticationError"
    exit_code = 4

    def __init__(self, message: str = "authentication failed", path: Optional[str] = None):
        super().__init__(message, path)


class IntegrityError(LockerError):
    kind      = "IntegrityError"
    exit_code = 5

    def __init__(self, message: str = "authentication failed", path: Optional[str] = None):
        super().__init__(message, path)


class VaultIOError(LockerError):
    kind      = "IOError"
    exit_code = 6

    @classmethod
    def wrap(cls, exc: OSError, path: Optional[str] = None) -> "VaultIOError":
        reason = exc.strerror or str(exc)
        return cls(reason, path or exc.filename)


class UnsupportedEntryError(LockerError):
    kind      = "UnsupportedEntryError"
    exit_code = 7


class PathTraversalError(LockerError):
    kind      = "PathTraversalError"
    exit_code = 8


class ConcurrentAccessError(LockerError):
    kind      = "ConcurrentAccessError"
    exit_code = 9


class StealthError(LockerError):
    kind      = "StealthError"
    exit_code = 10
