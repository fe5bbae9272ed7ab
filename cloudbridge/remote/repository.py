"""Module defining the capabilities every remote storage provider must offer."""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import cloudbridge.constants as constants
from cloudbridge.remote.common import (
    AccountInfo,
    ContentLocation,
    FolderListing,
    PublicLink,
    RemoteEntry,
    RemoteResult,
    Transport,
    UploadTarget,
)
from cloudbridge.remote.reconcile import is_direct_child, Reconciler


class RemoteRepository(ABC):
    """
    Interface to the namespace and contents of a remote storage provider.

    Every operation blocks until the provider has answered and returns a RemoteResult,
    regardless of how many HTTP requests the provider needs for it. Implementations must
    be safe to use from many threads at once.

    Operations that a provider cannot perform raise NotImplementedCapabilityError
    immediately. Reads are retried on transient network errors, and reads of paths that
    were recently deleted are retried until the deletion shows up in the results.
    Mutations are never retried and raise TransientNetworkError if they can't be
    completed.
    """

    # HTTP client of the provider, also used to fetch and upload contents
    transport: Transport

    # Tracker of recent deletes that reads are reconciled with
    reconciler: Reconciler

    #
    # Contents
    #

    @abstractmethod
    def resolve_content_location(self, path: str) -> RemoteResult[ContentLocation]:
        """Resolve the short-lived address to download the contents of a file from."""

    @abstractmethod
    def resolve_upload_target(self, path: str, size: int) -> RemoteResult[UploadTarget]:
        """Resolve the short-lived address to upload the contents of a file to."""

    @abstractmethod
    def add_file(self, path: str, upload_response: str, size: int) -> RemoteResult[str]:
        """Register contents uploaded to an upload target as the file at the path."""

    #
    # Namespace access
    #

    @abstractmethod
    def _fetch_page(self, path: str, offset: int, limit: int) -> RemoteResult[FolderListing]:
        """Request a page of the entries in a folder once, without any reconciliation."""

    def list_folder(
        self, path: str, offset: int = 0, limit: int = constants.LIST_PAGE_SIZE
    ) -> RemoteResult[FolderListing]:
        """List a page of the entries in a folder."""
        return self.reconciler.run(
            path,
            lambda: self._fetch_page(path, offset, limit),
            listing_contains,
            listing_without,
            listing_covers(path, offset, limit),
        )

    def list_all(self, path: str) -> RemoteResult[FolderListing]:
        """
        List all entries in a folder by requesting pages until there are no more.

        The folder is reconciled as a whole, so entries discarded as stale never cut
        the listing short.
        """
        return self.reconciler.run(
            path,
            lambda: self._fetch_pages(path),
            listing_contains,
            listing_without,
            listing_covers(path),
        )

    def _fetch_pages(self, path: str) -> RemoteResult[FolderListing]:
        offset = 0
        listing: Optional[FolderListing] = None

        while True:
            page = self._fetch_page(path, offset, constants.LIST_PAGE_SIZE)

            if not page.success:
                return page

            if listing is None:
                listing = page.payload
            else:
                listing.entries += page.payload.entries

            offset += len(page.payload.entries)

            if len(page.payload.entries) < constants.LIST_PAGE_SIZE:
                return RemoteResult.ok(listing)
            elif page.payload.total is not None and offset >= page.payload.total:
                return RemoteResult.ok(listing)

    @abstractmethod
    def get_item(self, path: str) -> RemoteResult[Optional[RemoteEntry]]:
        """Retrieve the metadata of a file or folder, or None if it doesn't exist."""

    @abstractmethod
    def account_info(self) -> RemoteResult[AccountInfo]:
        """Retrieve the storage quota of the account."""

    #
    # Namespace modification
    #

    @abstractmethod
    def create_folder(self, path: str) -> RemoteResult[str]:
        """Create a folder."""

    @abstractmethod
    def copy(self, source: str, destination_folder: str) -> RemoteResult[str]:
        """Copy a file or folder into another folder."""

    @abstractmethod
    def move(self, source: str, destination_folder: str) -> RemoteResult[str]:
        """Move a file or folder into another folder."""

    @abstractmethod
    def rename(self, path: str, new_name: str) -> RemoteResult[str]:
        """Rename a file or folder within its folder."""

    @abstractmethod
    def delete(self, path: str) -> RemoteResult[str]:
        """Delete a file or folder."""

    @abstractmethod
    def clone(self, public_link: str, destination_folder: str) -> RemoteResult[str]:
        """Copy an item shared through a public link into a folder."""

    #
    # Sharing
    #

    @abstractmethod
    def publish(self, path: str) -> RemoteResult[PublicLink]:
        """Create a public link to a file or folder."""

    @abstractmethod
    def unpublish(self, public_link: str, path: str) -> RemoteResult[str]:
        """Remove the public link to a file or folder."""

    @abstractmethod
    def get_share_links(self, path: str) -> List[PublicLink]:
        """Return the known public links of a path."""


def listing_contains(result: RemoteResult[FolderListing], deleted: str) -> bool:
    if not result.success:
        return False

    return any(entry.path == deleted for entry in result.payload.entries)


def listing_without(
    result: RemoteResult[FolderListing], deleted: str
) -> RemoteResult[FolderListing]:
    listing = result.payload
    listing.entries = [entry for entry in listing.entries if entry.path != deleted]

    return result


def listing_covers(
    path: str, offset: int = 0, limit: Optional[int] = None
) -> Callable[[RemoteResult[FolderListing], str], bool]:
    """
    Create a predicate that checks if a listing of the folder can tell a deleted path
    apart from one that still exists.

    That's only the case for entries of the folder itself, and only if the listing
    holds all of its entries. Without a limit the listing is assumed to be complete.
    """

    def covers(result: RemoteResult[FolderListing], deleted: str) -> bool:
        if not result.success or not is_direct_child(path, deleted):
            return False
        elif offset > 0:
            return False
        elif limit is None:
            return True

        entries = len(result.payload.entries)
        total = result.payload.total

        return entries < limit or (total is not None and entries >= total)

    return covers


def item_exists(result: RemoteResult[Optional[RemoteEntry]], deleted: str) -> bool:
    return result.success and result.payload is not None and result.payload.path == deleted


def item_absent(
    result: RemoteResult[Optional[RemoteEntry]], deleted: str
) -> RemoteResult[Optional[RemoteEntry]]:
    return RemoteResult.ok(None)


def item_covers(path: str) -> Callable[[RemoteResult[Optional[RemoteEntry]], str], bool]:
    """Create a predicate that checks if a lookup of the path covers a deleted path."""

    def covers(result: RemoteResult[Optional[RemoteEntry]], deleted: str) -> bool:
        return result.success and deleted.rstrip("/") == path.rstrip("/")

    return covers
