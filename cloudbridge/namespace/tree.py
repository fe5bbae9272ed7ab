"""Module that implements the in-memory mirror of the remote namespace."""

from __future__ import annotations

import bisect
import dataclasses
from dataclasses import dataclass, field
import posixpath
import threading
from typing import Dict, Iterator, List, Optional, Tuple

import fasteners

from cloudbridge.namespace.common import (
    AccessDeniedError,
    CollisionError,
    DirectoryNotEmptyError,
    FileAttributes,
    FileInfo,
    NotDirectoryError,
    NotFoundError,
    PathNotFoundError,
    QuotaExceededError,
)
from cloudbridge.namespace.content import ContentStore, round_up


ROOT_PATH = "/"


def split_stream(path: str) -> Tuple[str, Optional[str]]:
    """Split "dir/file:stream" into the main path and stream name (or None)."""
    base = posixpath.basename(path)

    if ":" not in base:
        return path, None

    main_base, _, stream = base.partition(":")

    return path[: len(path) - len(base)] + main_base, stream


def parent_path(path: str) -> str:
    """Return the path of the directory containing a file, directory or stream."""
    main, _ = split_stream(path)
    return posixpath.dirname(main) or ROOT_PATH


def join_path(parent: str, name: str) -> str:
    """Join a directory path and a single name."""
    return parent + name if parent.endswith("/") else f"{parent}/{name}"


@dataclass(eq=False)
class Node:
    """
    Entry of the namespace: a directory, a file or an alternate stream of a file.

    Nodes compare by identity. The main node of an alternate stream is never referenced
    directly; it is looked up by the main path from the tree that owns both.

    Besides the file system metadata, a node tracks how it relates to the remote side:

    * remote: the entry exists on the remote side (as opposed to being local-only).
    * listed: for directories, whether the children were materialized from a remote
    listing. A listed directory is authoritative for which children exist.
    * hydrated: whether the contents are held in the content store. If not, reads are
    served through range fetches and remote_size is the logical size.
    * dirty: the local contents have changed and need to be uploaded.
    """

    path: str
    info: FileInfo = field(default_factory=FileInfo)

    security: bytes = b""
    reparse_data: Optional[bytes] = None

    content: Optional[ContentStore] = None

    remote: bool = False
    listed: bool = False
    hydrated: bool = True
    dirty: bool = False
    remote_size: int = 0

    open_count: int = field(default=0, init=False)
    _open_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    @property
    def name(self) -> str:
        """Return the last component of the path, including any stream suffix."""
        return posixpath.basename(self.path) or ROOT_PATH

    @property
    def main_path(self) -> Optional[str]:
        """Return the path of the owning file if this is an alternate stream."""
        main, stream = split_stream(self.path)
        return main if stream is not None else None

    @property
    def is_stream(self) -> bool:
        return self.main_path is not None

    @property
    def is_directory(self) -> bool:
        return self.info.is_directory

    @property
    def is_reparse_point(self) -> bool:
        return bool(self.info.attributes & FileAttributes.REPARSE_POINT)

    @property
    def size(self) -> int:
        """Return the logical size of the contents."""
        if self.content is None:
            return 0
        elif not self.hydrated:
            return self.remote_size
        else:
            return self.content.size

    @property
    def allocation_size(self) -> int:
        """Return the allocation size of the contents."""
        if self.content is None:
            return 0
        elif not self.hydrated:
            return round_up(self.remote_size)
        else:
            return self.content.allocation_size

    def file_info(self) -> FileInfo:
        """Return a copy of the metadata with the current sizes filled in."""
        return dataclasses.replace(
            self.info, file_size=self.size, allocation_size=self.allocation_size
        )

    def acquire(self) -> int:
        """Register a new open handle and return the number of open handles."""
        with self._open_lock:
            self.open_count += 1
            return self.open_count

    def release(self) -> int:
        """Unregister an open handle and return the number of remaining handles."""
        with self._open_lock:
            self.open_count -= 1
            return self.open_count


class NamespaceTree:
    """
    Index of all nodes by path, ordered by name.

    Paths use "/" as separator and "/" as the root. Alternate streams are addressed as
    "/dir/file:stream" and are stored alongside regular entries. Keys are compared
    case-insensitively if the tree is configured to do so, while nodes keep the casing
    they were created with.

    The tree is shared by all file system threads. Lookups and enumerations take a read
    lock, while insertions, removals and the rekeying of renamed subtrees take the
    write lock. A rename is therefore never observed halfway.

    Enumerations are resumable: callers pass back the last name they received as a
    marker and continue from the next name in order, which does not require any
    iterator state to be kept between calls.
    """

    def __init__(self, case_insensitive: bool, max_file_nodes: int) -> None:
        """Instantiate an empty tree with the given limits."""
        self.case_insensitive = case_insensitive
        self.max_file_nodes = max_file_nodes

        self._nodes: Dict[str, Node] = {}
        self._keys: List[str] = []

        self._lock = fasteners.ReaderWriterLock()

    def _key(self, path: str) -> str:
        return path.casefold() if self.case_insensitive else path

    @staticmethod
    def _children_prefix(key: str) -> str:
        return key if key.endswith("/") else key + "/"

    #
    # Basic access
    #

    def count(self) -> int:
        """Return the number of nodes in the tree, including the root."""
        with self._lock.read_lock():
            return len(self._nodes)

    def get(self, path: str) -> Optional[Node]:
        """Return the node at the path, if any."""
        with self._lock.read_lock():
            return self._nodes.get(self._key(path))

    def insert(self, node: Node) -> None:
        """
        Add a node to the tree.

        Alternate streams can only be added to existing files.
        """
        with self._lock.write_lock():
            self._insert(node)

    def _insert(self, node: Node) -> None:
        key = self._key(node.path)

        if key in self._nodes:
            raise CollisionError(node.path)

        if len(self._nodes) >= self.max_file_nodes:
            raise QuotaExceededError(f"node limit of {self.max_file_nodes} reached")

        main_path = node.main_path
        if main_path is not None and self._key(main_path) not in self._nodes:
            raise NotFoundError(main_path)

        self._nodes[key] = node
        bisect.insort(self._keys, key)

    def remove(self, node: Node) -> None:
        """
        Remove a node and its alternate streams from the tree.

        Directories can only be removed once they are empty.
        """
        with self._lock.write_lock():
            key = self._key(node.path)

            if self._nodes.get(key) is not node:
                raise NotFoundError(node.path)

            if self._has_child(key):
                raise DirectoryNotEmptyError(node.path)

            for stream_key in list(self._stream_keys(key)):
                self._remove_key(stream_key)

            self._remove_key(key)

    def _remove_key(self, key: str) -> None:
        del self._nodes[key]

        index = bisect.bisect_left(self._keys, key)
        del self._keys[index]

    #
    # Relations
    #

    def get_parent(self, path: str) -> Node:
        """
        Return the directory containing the path.

        Raises PathNotFoundError if the parent does not exist, which callers use to
        distinguish a missing directory from a missing entry in an existing directory.
        """
        with self._lock.read_lock():
            return self._get_parent(path)

    def _get_parent(self, path: str) -> Node:
        if self._key(path) == self._key(ROOT_PATH):
            raise PathNotFoundError("root has no parent")

        parent = self._nodes.get(self._key(parent_path(path)))

        if parent is None:
            raise PathNotFoundError(parent_path(path))
        elif not parent.is_directory:
            raise NotDirectoryError(parent.path)

        return parent

    def get_main(self, path: str) -> Optional[Node]:
        """Return the file that owns the alternate stream at the path."""
        main_path, stream = split_stream(path)

        if stream is None:
            return None

        return self.get(main_path)

    def has_child(self, node: Node) -> bool:
        """Check if a directory has any entries."""
        with self._lock.read_lock():
            return self._has_child(self._key(node.path))

    def _has_child(self, key: str) -> bool:
        return next(self._children_keys(key, None), None) is not None

    def find_reparse_point(self, path: str) -> Optional[int]:
        """
        Find the first reparse point along the path, starting at the root.

        Returns the attributes of the reparse point, or None if there isn't one.
        """
        main, _ = split_stream(path)
        current = ROOT_PATH

        with self._lock.read_lock():
            for part in [p for p in main.split("/") if p]:
                current = join_path(current, part)
                node = self._nodes.get(self._key(current))

                if node is None:
                    return None
                elif node.is_reparse_point:
                    return node.info.attributes

        return None

    #
    # Enumeration
    #

    def get_children_names(self, node: Node, marker: Optional[str] = None) -> List[str]:
        """
        Return the paths of the entries in a directory in name order.

        If a marker (the name of an entry) is specified, only entries after it are
        returned.
        """
        with self._lock.read_lock():
            return [
                self._nodes[key].path
                for key in self._children_keys(self._key(node.path), marker)
            ]

    def _children_keys(self, key: str, marker: Optional[str]) -> Iterator[str]:
        prefix = self._children_prefix(key)

        if marker:
            start = bisect.bisect_right(self._keys, prefix + self._key(marker))
        else:
            start = bisect.bisect_left(self._keys, prefix)

        index = start

        while index < len(self._keys):
            child_key = self._keys[index]

            if not child_key.startswith(prefix):
                break

            name = child_key[len(prefix) :]

            # Jump past the entries below a child and the streams of a child, which sort
            # before the key that follows "/" ("0") and ":" (";") respectively
            if "/" in name:
                child = name[: name.index("/")]
                index = bisect.bisect_left(self._keys, prefix + child + "0", index + 1)
            elif ":" in name:
                child = name[: name.index(":")]
                index = bisect.bisect_left(self._keys, prefix + child + ";", index + 1)
            else:
                # The root itself has an empty name
                if name:
                    yield child_key

                index += 1

    def get_stream_names(self, node: Node) -> List[str]:
        """Return the paths of the alternate streams of a file in name order."""
        with self._lock.read_lock():
            return [self._nodes[key].path for key in self._stream_keys(self._key(node.path))]

    def _stream_keys(self, key: str) -> Iterator[str]:
        return self._prefixed_keys(key + ":")

    def _prefixed_keys(self, prefix: str) -> Iterator[str]:
        start = bisect.bisect_left(self._keys, prefix)

        for key in self._keys[start:]:
            if not key.startswith(prefix):
                break

            yield key

    def get_descendant_names(self, node: Node) -> List[str]:
        """
        Return the paths of a node, its streams and everything below it in name order.
        """
        with self._lock.read_lock():
            return [self._nodes[key].path for key in self._descendant_keys(node)]

    def _descendant_keys(self, node: Node) -> List[str]:
        key = self._key(node.path)

        if key == self._key(ROOT_PATH):
            return list(self._prefixed_keys(ROOT_PATH))

        keys = [key]
        keys += self._prefixed_keys(key + "/")
        keys += self._stream_keys(key)

        return keys

    #
    # Renaming
    #

    def rename(self, node: Node, new_path: str, replace_if_exists: bool = False) -> None:
        """
        Move a node and everything below it to a new path.

        An existing file at the new path is replaced if requested, but an existing
        directory never is. Every descendant is removed, given its new path (new prefix
        plus old suffix) and reinserted, all while holding the write lock.
        """
        with self._lock.write_lock():
            old_key = self._key(node.path)

            if self._nodes.get(old_key) is not node:
                raise NotFoundError(node.path)

            if self._key(new_path).startswith(self._children_prefix(old_key)):
                raise AccessDeniedError(f"cannot move {node.path} into itself")

            if self._key(new_path) != old_key:
                self._get_parent(new_path)

            existing = self._nodes.get(self._key(new_path))

            if existing is not None and existing is not node:
                if not replace_if_exists:
                    raise CollisionError(new_path)
                elif existing.is_directory:
                    raise AccessDeniedError(f"cannot replace directory {new_path}")

                for stream_key in list(self._stream_keys(self._key(existing.path))):
                    self._remove_key(stream_key)

                self._remove_key(self._key(existing.path))

            old_path = node.path
            descendants = [self._nodes[key] for key in self._descendant_keys(node)]

            for descendant in descendants:
                self._remove_key(self._key(descendant.path))

            for descendant in descendants:
                descendant.path = new_path + descendant.path[len(old_path) :]

                self._nodes[self._key(descendant.path)] = descendant
                bisect.insort(self._keys, self._key(descendant.path))
