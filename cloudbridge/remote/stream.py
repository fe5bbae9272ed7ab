"""
Module for transferring file contents directly from and to the remote side.

Contents are never addressed through the API itself. A short-lived content location is
resolved for every read and the requested span is fetched with an HTTP range request
against it. No connection or read-ahead window is kept between reads, so seeks are as
cheap as sequential reads.
"""

import logging
import time
from typing import Tuple

import requests

from cloudbridge.logger import elapsed_millis, log
from cloudbridge.remote.common import RemoteResult, TransientNetworkError
from cloudbridge.remote.repository import RemoteRepository

# Size of the chunks in which range responses are consumed
CHUNK_SIZE = 64 * 1024


class RangeStream:
    """Random access reads of the remote contents of a single file."""

    def __init__(self, repository: RemoteRepository, path: str) -> None:
        """Instantiate a stream for the file at the given path."""
        self.repository = repository
        self.path = path

    def read(self, offset: int, length: int) -> Tuple[bytes, int]:
        """
        Read up to length bytes starting at the offset.

        Returns the bytes along with the number of bytes transferred, which is smaller
        than the requested length if the server has less to offer. Reading at or past
        the end of the remote contents returns no bytes.
        """
        if length <= 0:
            return b"", 0

        location = self.repository.resolve_content_location(self.path)

        if not location.success:
            raise TransientNetworkError(
                f"failed to resolve content location of {self.path}: {location.error}"
            )

        headers = dict(location.payload.headers)
        headers["Range"] = f"bytes={offset}-{offset + length - 1}"

        t_call = time.time()

        response = self.repository.transport.request(
            "GET", location.payload.url, headers=headers, stream=True
        )

        try:
            if response.status_code == 416:
                return b"", 0
            elif response.status_code not in (200, 206):
                raise TransientNetworkError(
                    f"range fetch of {self.path} returned {response.status_code}"
                )

            data = self._consume(response, offset, length)
        finally:
            response.close()

        if log.isEnabledFor(logging.DEBUG):
            t_millis = elapsed_millis(t_call, time.time())
            log.debug(
                f"stream::read({self.path}, {offset}, {length})"
                f" - {len(data)} bytes - {t_millis} ms"
            )

        return data, len(data)

    @staticmethod
    def _consume(response: requests.Response, offset: int, length: int) -> bytes:
        # Some servers ignore the range and return the full contents
        skip = offset if response.status_code == 200 else 0

        buffer = bytearray()

        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if skip:
                    dropped = min(skip, len(chunk))
                    chunk = chunk[dropped:]
                    skip -= dropped

                buffer += chunk

                if len(buffer) >= length:
                    break
        except requests.RequestException as e:
            raise TransientNetworkError(f"range fetch interrupted: {e}") from e

        return bytes(buffer[:length])

    def read_all(self, size: int) -> bytes:
        """Read the complete contents of a file of the given size."""
        data = bytearray()

        while len(data) < size:
            chunk, transferred = self.read(len(data), size - len(data))

            if transferred == 0:
                break

            data += chunk

        return bytes(data)


def upload(repository: RemoteRepository, path: str, data: bytes) -> RemoteResult[str]:
    """
    Replace the remote contents of a file.

    The contents are sent to a freshly resolved upload target and then registered as the
    file at the path. Uploads are never retried.
    """
    target = repository.resolve_upload_target(path, len(data))

    if not target.success:
        return RemoteResult.failed(target.error)

    headers = dict(target.payload.headers)
    headers["Content-Type"] = "application/octet-stream"

    response = repository.transport.request(
        target.payload.method, target.payload.url, data=data, headers=headers
    )

    if response.status_code not in (200, 201, 204):
        return RemoteResult.failed(f"upload of {path} returned {response.status_code}")

    return repository.add_file(path, response.text, len(data))
