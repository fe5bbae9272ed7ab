"""
Modules that expose a remote namespace as a file system.

The OS/driver layer (out of scope here) translates native file system requests into
calls on a FilesystemBridge through a StatusDispatcher, which reports a single status
code per operation. The bridge answers metadata from the in-memory namespace mirror,
reads contents through range fetches and forwards modifications to the remote
repository.
"""

from .bridge import FilesystemBridge
from .dispatch import StatusDispatcher

__all__ = [
    "FilesystemBridge",
    "StatusDispatcher",
]
