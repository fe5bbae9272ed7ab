"""Data structures and errors used by multiple namespace components."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntFlag


class Status(Enum):
    """Outcome of a file system operation as reported to the OS/driver layer."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    PATH_NOT_FOUND = "path_not_found"
    NOT_A_DIRECTORY = "not_a_directory"
    NAME_COLLISION = "name_collision"
    DIRECTORY_NOT_EMPTY = "directory_not_empty"
    ACCESS_DENIED = "access_denied"
    QUOTA_EXCEEDED = "quota_exceeded"
    INSUFFICIENT_RESOURCES = "insufficient_resources"
    END_OF_FILE = "end_of_file"
    NOT_A_REPARSE_POINT = "not_a_reparse_point"
    REPARSE_TAG_MISMATCH = "reparse_tag_mismatch"
    REPARSE = "reparse"
    NETWORK_ERROR = "network_error"
    NOT_IMPLEMENTED = "not_implemented"
    INTERNAL_ERROR = "internal_error"


class FileAttributes(IntFlag):
    """File attribute bits (subset of the Windows FILE_ATTRIBUTE_* values)."""

    READONLY = 0x1
    HIDDEN = 0x2
    SYSTEM = 0x4
    DIRECTORY = 0x10
    ARCHIVE = 0x20
    NORMAL = 0x80
    REPARSE_POINT = 0x400


# Attribute value passed to set_basic_info() to leave the attributes untouched.
INVALID_ATTRIBUTES = 0xFFFFFFFF


class CleanupFlags(IntFlag):
    """Actions requested when the last user of a handle cleans up."""

    DELETE = 0x01
    SET_ALLOCATION_SIZE = 0x02
    SET_ARCHIVE_BIT = 0x10
    SET_LAST_ACCESS_TIME = 0x20
    SET_LAST_WRITE_TIME = 0x40
    SET_CHANGE_TIME = 0x80


@dataclass
class FileInfo:
    """Snapshot of the metadata of a node, with timestamps in nanoseconds."""

    attributes: int = 0
    reparse_tag: int = 0
    allocation_size: int = 0
    file_size: int = 0
    creation_time: int = 0
    last_access_time: int = 0
    last_write_time: int = 0
    change_time: int = 0

    @property
    def is_directory(self) -> bool:
        return bool(self.attributes & FileAttributes.DIRECTORY)


@dataclass
class DirectoryEntry:
    """Single result of a directory enumeration."""

    name: str
    info: FileInfo


@dataclass
class StreamEntry:
    """Single result of an alternate stream enumeration ("" is the main stream)."""

    name: str
    size: int
    allocation_size: int


@dataclass
class VolumeInfo:
    """Capacity of the mounted volume."""

    total_size: int
    free_size: int
    label: str


class FileSystemError(Exception):
    """
    Base class of structural (caller-caused) file system errors.

    Every subclass corresponds to exactly one status that is returned to the OS layer.
    """

    status = Status.INTERNAL_ERROR


class NotFoundError(FileSystemError):
    status = Status.NOT_FOUND


class PathNotFoundError(FileSystemError):
    """Raised when the parent directory of a path does not exist."""

    status = Status.PATH_NOT_FOUND


class NotDirectoryError(FileSystemError):
    status = Status.NOT_A_DIRECTORY


class CollisionError(FileSystemError):
    status = Status.NAME_COLLISION


class DirectoryNotEmptyError(FileSystemError):
    status = Status.DIRECTORY_NOT_EMPTY


class AccessDeniedError(FileSystemError):
    status = Status.ACCESS_DENIED


class QuotaExceededError(FileSystemError):
    """Raised when the node count or per-node size limit would be exceeded."""

    status = Status.QUOTA_EXCEEDED


class InsufficientResourcesError(FileSystemError):
    status = Status.INSUFFICIENT_RESOURCES


class EndOfFileError(FileSystemError):
    status = Status.END_OF_FILE


class NotAReparsePointError(FileSystemError):
    status = Status.NOT_A_REPARSE_POINT


class ReparseTagMismatchError(FileSystemError):
    status = Status.REPARSE_TAG_MISMATCH


class ReparseError(FileSystemError):
    """Raised when a path traverses a reparse point that the OS layer must resolve."""

    status = Status.REPARSE

    def __init__(self, attributes: int) -> None:
        """Remember the attributes of the reparse point that was found."""
        super().__init__(attributes)
        self.attributes = attributes
