"""Module implementing the resizable buffer that holds cached file contents."""

import cloudbridge.constants as constants
from cloudbridge.namespace.common import (
    EndOfFileError,
    InsufficientResourcesError,
    QuotaExceededError,
)


def round_up(size: int, unit: int = constants.ALLOCATION_UNIT) -> int:
    """Round a size up to a whole number of allocation units."""
    return (size + unit - 1) // unit * unit


class ContentStore:
    """
    In-memory contents of a single file or alternate stream.

    The buffer distinguishes between the logical size (the number of bytes that make up
    the file) and the allocation size (the number of bytes reserved for it). The
    allocation is always at least as large as the logical size and is grown in whole
    allocation units when writes extend the file.

    Bytes that are added to the allocation are always zeroed. Shrinking the allocation
    discards the truncated bytes, so growing it again never resurfaces old data.
    """

    def __init__(self, max_size: int) -> None:
        """Instantiate an empty buffer that may grow up to the given allocation."""
        self._data = bytearray()
        self._size = 0
        self._max_size = max_size

    @property
    def size(self) -> int:
        """Return the logical size in bytes."""
        return self._size

    @property
    def allocation_size(self) -> int:
        """Return the number of bytes currently allocated."""
        return len(self._data)

    def set_allocation_size(self, new_allocation: int) -> None:
        """
        Grow or shrink the allocation.

        The logical size is truncated along with the allocation if necessary. The buffer
        is left unchanged if the new allocation exceeds the per-file limit.
        """
        if new_allocation == len(self._data):
            return

        if new_allocation > self._max_size:
            raise QuotaExceededError(
                f"allocation of {new_allocation} bytes exceeds {self._max_size}"
            )

        try:
            if new_allocation > len(self._data):
                self._data.extend(bytes(new_allocation - len(self._data)))
            else:
                del self._data[new_allocation:]
        except MemoryError as e:
            raise InsufficientResourcesError(str(e))

        if self._size > new_allocation:
            self._size = new_allocation

    def set_size(self, new_size: int) -> None:
        """
        Change the logical size.

        The allocation is grown first if it can't hold the new size. Any bytes between
        the old and new logical size are zeroed.
        """
        if new_size == self._size:
            return

        if len(self._data) < new_size:
            self.set_allocation_size(round_up(new_size))

        if self._size < new_size:
            self._data[self._size : new_size] = bytes(new_size - self._size)

        self._size = new_size

    def read(self, offset: int, length: int) -> bytes:
        """Read up to length bytes, truncated at the end of the file."""
        if offset >= self._size:
            raise EndOfFileError(f"read at {offset} past end of file ({self._size})")

        end_offset = min(offset + length, self._size)

        return bytes(self._data[offset:end_offset])

    def write(
        self,
        offset: int,
        data: bytes,
        write_to_end: bool = False,
        constrained: bool = False,
    ) -> int:
        """
        Write data at the given offset and return the number of bytes written.

        Constrained writes never change the file size and are cut off at the current end
        of the file. Other writes extend the file first if they reach past its end.
        """
        if constrained:
            if offset >= self._size:
                return 0

            end_offset = min(offset + len(data), self._size)
        else:
            if write_to_end:
                offset = self._size

            end_offset = offset + len(data)

            if end_offset > self._size:
                self.set_size(end_offset)

        transferred = end_offset - offset
        self._data[offset:end_offset] = data[:transferred]

        return transferred

    def getvalue(self) -> bytes:
        """Return a copy of the logical contents."""
        return bytes(self._data[: self._size])
