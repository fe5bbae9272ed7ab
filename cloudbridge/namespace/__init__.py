"""
Modules that keep an in-memory mirror of the remote namespace.

The remote side is slow and only eventually consistent, so the file system answers
metadata questions from a local tree of nodes instead. Nodes are materialized lazily
from remote listings and carry the file system semantics that the remote side lacks:
allocation sizes, attributes, security descriptors, reparse points and alternate
streams.

File contents that have been read in full or written locally live in a per-node
ContentStore. Everything in this package is purely local and raises the structural
errors from 'common', which map one-to-one onto the status codes reported to the OS.
"""

from .common import FileAttributes, FileInfo, FileSystemError, Status
from .content import ContentStore
from .tree import NamespaceTree, Node

__all__ = [
    "ContentStore",
    "FileAttributes",
    "FileInfo",
    "FileSystemError",
    "NamespaceTree",
    "Node",
    "Status",
]
