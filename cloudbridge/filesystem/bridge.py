"""Module that answers file system operations from the namespace mirror and the remote side."""

import threading
import time
from typing import Callable, List, Optional, Tuple

from cloudbridge.config import NamespaceConfig
import cloudbridge.constants as constants
from cloudbridge.logger import log
from cloudbridge.namespace.common import (
    AccessDeniedError,
    CleanupFlags,
    CollisionError,
    DirectoryEntry,
    DirectoryNotEmptyError,
    EndOfFileError,
    FileAttributes,
    FileInfo,
    INVALID_ATTRIBUTES,
    NotAReparsePointError,
    NotDirectoryError,
    NotFoundError,
    QuotaExceededError,
    ReparseError,
    ReparseTagMismatchError,
    StreamEntry,
    VolumeInfo,
)
from cloudbridge.namespace.content import ContentStore, round_up
from cloudbridge.namespace.tree import (
    join_path,
    NamespaceTree,
    Node,
    parent_path,
    ROOT_PATH,
    split_stream,
)
from cloudbridge.remote.cached import TtlCache
from cloudbridge.remote.common import AccountInfo, RemoteEntry, TransientNetworkError
from cloudbridge.remote.repository import RemoteRepository
from cloudbridge.remote.stream import RangeStream, upload

# Maximum length of a volume label
MAX_LABEL_LENGTH = 32


def reparse_tag(data: bytes) -> int:
    """Return the tag of a reparse point payload, stored in its first 4 bytes."""
    return int.from_bytes(data[:4], "little")


class FilesystemBridge:
    """
    File system that mirrors a remote namespace.

    Metadata is served from a NamespaceTree that is populated lazily: a directory is
    listed on the remote side the first time one of its entries is looked up, after
    which the mirror is authoritative for it. File contents are read through range
    fetches until the file is first modified, at which point its contents are pulled in
    completely and kept in memory until they have been uploaded again.

    Without a repository the bridge is a purely in-memory file system.

    Every operation raises a FileSystemError (or a remote error) on failure. Nodes
    returned by open() and create() act as handles for the other operations.
    """

    def __init__(
        self,
        config: NamespaceConfig,
        repository: Optional[RemoteRepository] = None,
        now: Callable[[], int] = time.time_ns,
    ) -> None:
        """Instantiate a file system with only a root directory."""
        self.config = config
        self.repository = repository
        self.volume_label = config.volume_label

        self._now = now

        self.tree = NamespaceTree(config.case_insensitive, config.max_file_nodes)
        self._listing_lock = threading.Lock()

        self._account: TtlCache[AccountInfo] = TtlCache(
            lambda previous: self._fetch_account_info(),
            lambda value: constants.ACCOUNT_CACHE_TTL,
        )

        t = self._now()
        root = Node(
            path=ROOT_PATH,
            info=FileInfo(
                attributes=FileAttributes.DIRECTORY,
                creation_time=t,
                last_access_time=t,
                last_write_time=t,
                change_time=t,
            ),
            security=config.root_security.encode(),
            remote=repository is not None,
        )
        self.tree.insert(root)

    #
    # Lookup and lazy population
    #

    def _new_content(self) -> ContentStore:
        return ContentStore(self.config.max_file_size)

    def _main(self, node: Node) -> Node:
        """Return the node that holds the shared metadata of a node."""
        if node.main_path is None:
            return node

        main = self.tree.get(node.main_path)
        return main if main is not None else node

    def _resolve(self, path: str) -> Optional[Node]:
        """Look up a node, listing its ancestors on the remote side where needed."""
        node = self.tree.get(path)

        if node is not None or self.repository is None:
            return node

        main, stream = split_stream(path)

        if stream is not None:
            self._resolve(main)
        elif main != ROOT_PATH:
            parent = self._resolve(parent_path(main))

            if parent is not None and parent.is_directory and not parent.listed:
                self._list_directory(parent)

        return self.tree.get(path)

    def _list_directory(self, directory: Node) -> None:
        """Materialize the remote entries of a directory."""
        if self.repository is None or not directory.remote:
            return

        with self._listing_lock:
            if directory.listed:
                return

            result = self.repository.list_all(directory.path)

            if not result.success:
                log.warning(f"failed to list {directory.path}: {result.error}")
                return

            for entry in result.payload.entries:
                path = join_path(directory.path, entry.name)

                if self.tree.get(path) is None:
                    self.tree.insert(self._node_from_entry(path, entry, directory))

            directory.listed = True

    def _node_from_entry(self, path: str, entry: RemoteEntry, parent: Node) -> Node:
        t = int(entry.modified * 1_000_000_000)

        attributes = FileAttributes.DIRECTORY if entry.is_directory else FileAttributes.ARCHIVE

        node = Node(
            path=path,
            info=FileInfo(
                attributes=attributes,
                creation_time=t,
                last_access_time=t,
                last_write_time=t,
                change_time=t,
            ),
            security=parent.security,
            remote=True,
        )

        if not entry.is_directory:
            node.content = self._new_content()
            node.hydrated = False
            node.remote_size = entry.size

        return node

    def _require(self, path: str) -> Node:
        """Look up a node and tell a missing node apart from a missing directory."""
        node = self._resolve(path)

        if node is None:
            # Raises PathNotFoundError if the directory itself is missing
            self.tree.get_parent(path)
            raise NotFoundError(path)

        return node

    def _has_child(self, node: Node) -> bool:
        """Check if a directory has entries, listing it on the remote side if needed."""
        if node.is_directory and not node.listed:
            self._list_directory(node)

            # Without a listing the remote side may still hold entries
            if self.repository is not None and node.remote and not node.listed:
                raise DirectoryNotEmptyError(f"unable to list {node.path} to check if it is empty")

        return self.tree.has_child(node)

    #
    # Contents synchronization
    #

    def _hydrate(self, node: Node) -> None:
        """Pull in the remote contents of a node before it is modified."""
        if node.hydrated:
            return

        content = self._new_content()
        content.set_allocation_size(round_up(node.remote_size))

        data = RangeStream(self.repository, node.path).read_all(node.remote_size)
        content.write(0, data)

        node.content = content
        node.hydrated = True

    def _upload(self, node: Node) -> None:
        """Send the contents of a modified file to the remote side."""
        if self.repository is None or not node.dirty or node.is_stream or node.is_directory:
            return

        data = node.content.getvalue()
        result = upload(self.repository, node.path, data)

        if not result.success:
            raise AccessDeniedError(f"upload of {node.path} rejected: {result.error}")

        node.dirty = False
        node.remote = True
        node.remote_size = len(data)

    def _fetch_account_info(self) -> AccountInfo:
        result = self.repository.account_info()

        if not result.success:
            raise TransientNetworkError(f"failed to retrieve account info: {result.error}")

        return result.payload

    #
    # Opening and closing
    #

    def create(
        self,
        path: str,
        directory: bool = False,
        attributes: int = 0,
        security: bytes = b"",
        allocation_size: int = 0,
    ) -> Node:
        """Create a file, directory or alternate stream and open it."""
        if self._resolve(path) is not None:
            raise CollisionError(path)

        parent = self.tree.get_parent(path)

        if self.tree.count() >= self.config.max_file_nodes:
            raise QuotaExceededError(f"node limit of {self.config.max_file_nodes} reached")

        if directory:
            allocation_size = 0
        elif allocation_size > self.config.max_file_size:
            raise QuotaExceededError(f"allocation of {allocation_size} bytes is too large")

        main, stream = split_stream(path)

        if stream is not None:
            main_node = self.tree.get_main(path)

            if main_node is None:
                raise NotFoundError(main)

            path = f"{main_node.path}:{stream}"
        else:
            path = join_path(parent.path, path.rstrip("/").rsplit("/", 1)[-1])

        if directory:
            attributes |= FileAttributes.DIRECTORY
        else:
            attributes |= FileAttributes.ARCHIVE

        t = self._now()

        node = Node(
            path=path,
            info=FileInfo(
                attributes=attributes,
                creation_time=t,
                last_access_time=t,
                last_write_time=t,
                change_time=t,
            ),
            security=security or parent.security,
        )

        if not directory:
            node.content = self._new_content()
            node.content.set_allocation_size(allocation_size)

        if self.repository is not None and stream is None:
            if directory:
                result = self.repository.create_folder(path)

                if not result.success:
                    raise AccessDeniedError(f"creation of {path} rejected: {result.error}")

                node.remote = True
                node.listed = True
            else:
                node.dirty = True

        self.tree.insert(node)
        node.acquire()

        return node

    def open(self, path: str) -> Node:
        """Open an existing file, directory or alternate stream."""
        node = self._require(path)
        node.acquire()

        return node

    def overwrite(
        self,
        node: Node,
        attributes: int = 0,
        replace_attributes: bool = False,
        allocation_size: int = 0,
    ) -> FileInfo:
        """Truncate an open file to zero length and discard its unopened streams."""
        for stream_path in self.tree.get_stream_names(node):
            stream = self.tree.get(stream_path)

            if stream is not None and stream.open_count == 0:
                self.tree.remove(stream)

        if not node.hydrated:
            node.content = self._new_content()
            node.hydrated = True

        node.content.set_allocation_size(allocation_size)

        if replace_attributes:
            node.info.attributes = attributes | FileAttributes.ARCHIVE
        else:
            node.info.attributes |= attributes | FileAttributes.ARCHIVE

        node.content.set_size(0)

        t = self._now()
        node.info.last_access_time = t
        node.info.last_write_time = t
        node.info.change_time = t

        node.dirty = True

        return node.file_info()

    def cleanup(self, node: Node, flags: int = 0) -> None:
        """
        Process the closing of the last handle to a node.

        Timestamps and the archive bit are updated on the main node as requested, dirty
        contents are uploaded and the node is deleted if requested and childless.
        """
        main = self._main(node)

        if flags & CleanupFlags.SET_ARCHIVE_BIT and not main.is_directory:
            main.info.attributes |= FileAttributes.ARCHIVE

        if flags & (
            CleanupFlags.SET_LAST_ACCESS_TIME
            | CleanupFlags.SET_LAST_WRITE_TIME
            | CleanupFlags.SET_CHANGE_TIME
        ):
            t = self._now()

            if flags & CleanupFlags.SET_LAST_ACCESS_TIME:
                main.info.last_access_time = t
            if flags & CleanupFlags.SET_LAST_WRITE_TIME:
                main.info.last_write_time = t
            if flags & CleanupFlags.SET_CHANGE_TIME:
                main.info.change_time = t

        if flags & CleanupFlags.SET_ALLOCATION_SIZE and node.content is not None:
            if node.hydrated:
                node.content.set_allocation_size(round_up(node.content.size))

        if flags & CleanupFlags.DELETE:
            if self._has_child(node):
                return

            if self.repository is not None and node.remote and not node.is_stream:
                result = self.repository.delete(node.path)

                if not result.success:
                    raise AccessDeniedError(f"delete of {node.path} rejected: {result.error}")

            self.tree.remove(node)
        else:
            self._upload(node)

    def close(self, node: Node) -> None:
        node.release()

    #
    # Contents
    #

    def read(self, node: Node, offset: int, length: int) -> bytes:
        """Read up to length bytes at the offset, from memory or the remote side."""
        size = node.size

        if offset >= size:
            raise EndOfFileError(f"read at {offset} past end of {node.path} ({size})")

        if node.hydrated:
            return node.content.read(offset, length)

        data, _ = RangeStream(self.repository, node.path).read(
            offset, min(length, size - offset)
        )

        return data

    def write(
        self,
        node: Node,
        offset: int,
        data: bytes,
        write_to_end: bool = False,
        constrained: bool = False,
    ) -> int:
        """Write data at the offset and return the number of bytes written."""
        if node.content is None:
            raise AccessDeniedError(f"cannot write to directory {node.path}")

        self._hydrate(node)

        transferred = node.content.write(offset, data, write_to_end, constrained)

        if transferred > 0:
            node.dirty = True

        return transferred

    def flush(self, node: Optional[Node]) -> None:
        """Upload the contents of a file if they were modified (no-op for the volume)."""
        if node is not None:
            self._upload(node)

    def set_file_size(self, node: Node, new_size: int, set_allocation: bool = False) -> FileInfo:
        """Change the logical or allocation size of a file."""
        if node.content is None:
            raise AccessDeniedError(f"cannot resize directory {node.path}")

        self._hydrate(node)

        if set_allocation:
            node.content.set_allocation_size(new_size)
        else:
            node.content.set_size(new_size)

        node.dirty = True

        return node.file_info()

    #
    # Metadata
    #

    def get_file_info(self, node: Node) -> FileInfo:
        return node.file_info()

    def set_basic_info(
        self,
        node: Node,
        attributes: int = INVALID_ATTRIBUTES,
        creation_time: int = 0,
        last_access_time: int = 0,
        last_write_time: int = 0,
        change_time: int = 0,
    ) -> FileInfo:
        """Change attributes and timestamps, where zero values are left unchanged."""
        main = self._main(node)

        if attributes != INVALID_ATTRIBUTES:
            # The directory bit is not something that can be changed
            attributes = int(attributes) & ~int(FileAttributes.DIRECTORY)
            attributes |= int(main.info.attributes) & int(FileAttributes.DIRECTORY)

            main.info.attributes = attributes

        if creation_time:
            main.info.creation_time = creation_time
        if last_access_time:
            main.info.last_access_time = last_access_time
        if last_write_time:
            main.info.last_write_time = last_write_time
        if change_time:
            main.info.change_time = change_time

        return main.file_info()

    def get_security(self, node: Node) -> bytes:
        return self._main(node).security

    def set_security(self, node: Node, security: bytes) -> None:
        self._main(node).security = bytes(security)

    def get_security_by_name(self, path: str) -> Tuple[int, bytes]:
        """
        Return the attributes and security descriptor of the node at the path.

        Raises ReparseError if the node does not exist but the path traverses a reparse
        point, which the OS layer resolves itself.
        """
        node = self._resolve(path)

        if node is None:
            reparse_attributes = self.tree.find_reparse_point(path)

            if reparse_attributes is not None:
                raise ReparseError(reparse_attributes)

            self.tree.get_parent(path)
            raise NotFoundError(path)

        main = self._main(node)

        return main.info.attributes, main.security

    #
    # Namespace
    #

    def can_delete(self, node: Node) -> None:
        if self._has_child(node):
            raise DirectoryNotEmptyError(node.path)

    def rename(self, node: Node, new_path: str, replace_if_exists: bool = False) -> None:
        """Move a node (and everything below it) to a new path, locally and remotely."""
        old_path = node.path
        existing = self._resolve(new_path)

        if existing is not None and existing is not node:
            if not replace_if_exists:
                raise CollisionError(new_path)
            elif existing.is_directory:
                raise AccessDeniedError(f"cannot replace directory {new_path}")

        if self._key(new_path).startswith(self._key(old_path.rstrip("/") + "/")):
            raise AccessDeniedError(f"cannot move {old_path} into itself")

        self.tree.get_parent(new_path)

        if self.repository is not None and node.remote and not node.is_stream:
            if existing is not None and existing is not node and existing.remote:
                result = self.repository.delete(existing.path)

                if not result.success:
                    raise AccessDeniedError(f"delete of {existing.path} rejected: {result.error}")

            self._rename_remote(old_path, new_path)

        self.tree.rename(node, new_path, replace_if_exists)

    def _key(self, path: str) -> str:
        return path.casefold() if self.config.case_insensitive else path

    def _rename_remote(self, old_path: str, new_path: str) -> None:
        old_parent = parent_path(old_path)
        new_parent = parent_path(new_path)

        old_name = old_path.rsplit("/", 1)[-1]
        new_name = new_path.rsplit("/", 1)[-1]

        if self._key(old_parent) == self._key(new_parent):
            result = self.repository.rename(old_path, new_name)
        else:
            result = self.repository.move(old_path, new_parent)

            if result.success and old_name != new_name:
                result = self.repository.rename(join_path(new_parent, old_name), new_name)

        if not result.success:
            raise AccessDeniedError(f"rename of {old_path} rejected: {result.error}")

    def read_directory(
        self, node: Node, marker: Optional[str] = None, limit: Optional[int] = None
    ) -> List[DirectoryEntry]:
        """
        Enumerate a directory in name order, continuing after the marker if specified.

        Directories other than the root start with the "." and ".." entries.
        """
        if not node.is_directory:
            raise NotDirectoryError(node.path)

        self._list_directory(node)

        entries: List[DirectoryEntry] = []

        if node.path != ROOT_PATH:
            parent = self.tree.get_parent(node.path)

            if marker is None:
                entries.append(DirectoryEntry(".", node.file_info()))
            if marker is None or marker == ".":
                entries.append(DirectoryEntry("..", parent.file_info()))

            if marker in (".", ".."):
                marker = None

        for child_path in self.tree.get_children_names(node, marker):
            child = self.tree.get(child_path)

            # Removed concurrently
            if child is not None:
                entries.append(DirectoryEntry(child.name, child.file_info()))

            if limit is not None and len(entries) >= limit:
                break

        return entries[:limit] if limit is not None else entries

    def get_dir_info_by_name(self, parent: Node, name: str) -> DirectoryEntry:
        node = self._resolve(join_path(parent.path, name))

        if node is None:
            raise NotFoundError(join_path(parent.path, name))

        return DirectoryEntry(node.name, node.file_info())

    def get_stream_entries(self, node: Node) -> List[StreamEntry]:
        """Enumerate the unnamed main stream of a file followed by its named streams."""
        main = self._main(node)
        entries: List[StreamEntry] = []

        if not main.is_directory:
            entries.append(StreamEntry("", main.size, main.allocation_size))

        for stream_path in self.tree.get_stream_names(main):
            stream = self.tree.get(stream_path)

            if stream is not None:
                name = stream.name.partition(":")[2]
                entries.append(StreamEntry(name, stream.size, stream.allocation_size))

        return entries

    #
    # Reparse points
    #

    def get_reparse_point(self, node: Node) -> bytes:
        main = self._main(node)

        if not main.is_reparse_point or main.reparse_data is None:
            raise NotAReparsePointError(main.path)

        return main.reparse_data

    def get_reparse_point_by_name(self, path: str) -> bytes:
        return self.get_reparse_point(self._require(path))

    def set_reparse_point(self, node: Node, data: bytes) -> None:
        """Attach a reparse point, replacing an existing one with the same tag."""
        main = self._main(node)

        if self._has_child(main):
            raise DirectoryNotEmptyError(main.path)

        if main.reparse_data is not None and reparse_tag(main.reparse_data) != reparse_tag(data):
            raise ReparseTagMismatchError(main.path)

        main.reparse_data = bytes(data)
        main.info.attributes |= FileAttributes.REPARSE_POINT
        main.info.reparse_tag = reparse_tag(data)

    def delete_reparse_point(self, node: Node, data: bytes) -> None:
        main = self._main(node)

        if main.reparse_data is None:
            raise NotAReparsePointError(main.path)
        elif reparse_tag(main.reparse_data) != reparse_tag(data):
            raise ReparseTagMismatchError(main.path)

        main.reparse_data = None
        main.info.attributes = int(main.info.attributes) & ~int(FileAttributes.REPARSE_POINT)
        main.info.reparse_tag = 0

    #
    # Volume
    #

    def get_volume_info(self) -> VolumeInfo:
        """Return the capacity of the volume: the account quota or the node limits."""
        if self.repository is not None:
            account = self._account.value
            return VolumeInfo(account.total_bytes, account.free_bytes, self.volume_label)

        max_nodes = self.config.max_file_nodes
        max_size = self.config.max_file_size

        return VolumeInfo(
            total_size=max_nodes * max_size,
            free_size=max(0, max_nodes - self.tree.count()) * max_size,
            label=self.volume_label,
        )

    def set_volume_label(self, label: str) -> VolumeInfo:
        self.volume_label = label[:MAX_LABEL_LENGTH]
        return self.get_volume_info()
