"""Module that turns file system operations into status codes for the OS/driver layer."""

import traceback
from typing import Any, Callable, Tuple

from cloudbridge.filesystem.bridge import FilesystemBridge
from cloudbridge.logger import log
from cloudbridge.namespace.common import FileSystemError, ReparseError, Status
from cloudbridge.remote.common import TransientNetworkError, UnauthorizedError


class StatusDispatcher:
    """
    Boundary between the OS/driver layer and the file system bridge.

    Every operation returns exactly one status along with its result (None on failure,
    except for reparse redirections, which carry the attributes of the reparse point).
    No exception ever crosses this boundary.
    """

    def __init__(self, bridge: FilesystemBridge) -> None:
        """Instantiate a dispatcher for the given file system."""
        self.bridge = bridge

    def dispatch(self, name: str, *args: Any, **kwargs: Any) -> Tuple[Status, Any]:
        """Invoke the named file system operation and capture its outcome."""
        fn = getattr(self.bridge, name, None)

        if name.startswith("_") or not callable(fn):
            log.debug(f"fs::{name}() not implemented!")
            return Status.NOT_IMPLEMENTED, None

        return self._wrap_operation(name, fn)(*args, **kwargs)

    def _wrap_operation(self, name: str, fn: Callable) -> Callable[..., Tuple[Status, Any]]:
        """Wrap an operation to map the exceptions it raises onto status codes."""

        def wrapper(*args: Any, **kwargs: Any) -> Tuple[Status, Any]:
            try:
                return Status.SUCCESS, fn(*args, **kwargs)
            except ReparseError as e:
                return e.status, e.attributes
            except FileSystemError as e:
                log.debug(f"fs::{name}() failed with {e.status.name}: {e}")

                return e.status, None
            except TransientNetworkError as e:
                log.warning(f"fs::{name}() failed to reach the remote side: {e}")

                return Status.NETWORK_ERROR, None
            except UnauthorizedError as e:
                log.warning(f"fs::{name}() was rejected by the remote side: {e}")

                return Status.ACCESS_DENIED, None
            except NotImplementedError:
                log.debug(f"fs::{name}() not implemented!")

                return Status.NOT_IMPLEMENTED, None
            except MemoryError:
                log.warning(f"fs::{name}() ran out of memory")

                return Status.INSUFFICIENT_RESOURCES, None
            except Exception:
                log.warning(f"fs::{name}() raised an unexpected exception:")
                log.warning(traceback.format_exc())

                return Status.INTERNAL_ERROR, None

        return wrapper
