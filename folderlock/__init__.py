__version__ = "1.0"
__author__  = "folderlock contributors"
__license__ = "GPL-3.0"

from .errors import (
    LockerError,
    PathError,
    AuthenticationError,
    IntegrityError,
    VaultIOError,
    UnsupportedEntryError,
    PathTraversalError,
    ConcurrentAccessError,
    StealthError,
)
from .vault import (
    Phase,
    ProgressEvent,
    LockResult,
    UnlockResult,
    lock_folder,
    unlock_folder,
    inspect_vault,
    is_locked,
)

__all__ = [
    "lock_folder",
    "unlock_folder",
    "inspect_vault",
    "is_locked",
    "Phase",
    "ProgressEvent",
    "LockResult",
    "UnlockResult",
    "LockerError",
    "PathError",
    "AuthenticationError",
    "IntegrityError",
    "VaultIOError",
    "UnsupportedEntryError",
    "PathTraversalError",
    "ConcurrentAccessError",
    "StealthError",
    "__version__",
]
