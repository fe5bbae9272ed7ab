"""
Module implementing a repository for providers with a request-per-operation API.

Every operation maps onto its own endpoint below "api/v2" and every response is wrapped
in an envelope with the status and body of the operation:

    {"status": 200, "body": ...}

Contents are not served by the API itself but by download and upload shards, whose
addresses are handed out by a dispatcher endpoint.
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import cloudbridge.constants as constants
from cloudbridge.config import HttpConfig, ReconcileConfig
from cloudbridge.remote.cached import TtlCache
from cloudbridge.remote.common import (
    AccountInfo,
    ContentLocation,
    FolderListing,
    PublicLink,
    RemoteEntry,
    RemoteResult,
    Transport,
    TransientNetworkError,
    UploadTarget,
)
from cloudbridge.remote.reconcile import Reconciler
from cloudbridge.remote.repository import item_absent, item_covers, item_exists, RemoteRepository

DEFAULT_PUBLIC_BASE_URL = "https://cloud.example.com/public/"


class RestRepository(RemoteRepository):
    """Repository that talks to a provider with one endpoint per operation."""

    def __init__(
        self,
        http: HttpConfig,
        reconcile: ReconcileConfig,
        link_ttl: float = constants.LINK_CACHE_TTL,
        public_base_url: str = DEFAULT_PUBLIC_BASE_URL,
        transport: Optional[Transport] = None,
        reconciler: Optional[Reconciler] = None,
    ) -> None:
        """Instantiate a repository with its own HTTP session."""
        self.transport = transport if transport is not None else Transport(http)
        self.reconciler = reconciler if reconciler is not None else Reconciler(reconcile)

        self._token = http.token
        self._public_base_url = public_base_url

        self._links: TtlCache[Dict[str, List[PublicLink]]] = TtlCache(
            lambda previous: self._fetch_share_list(), lambda value: link_ttl
        )

    def _call(
        self, method: str, endpoint: str, **params: Any
    ) -> Tuple[int, Any]:
        """Call an API endpoint and unwrap the status and body from its envelope."""
        if self._token:
            params["token"] = self._token

        if method == "GET":
            envelope = self.transport.request_json(method, f"api/v2/{endpoint}", params=params)
        else:
            envelope = self.transport.request_json(method, f"api/v2/{endpoint}", data=params)

        if not isinstance(envelope, dict) or "status" not in envelope:
            raise TransientNetworkError(f"malformed response from {endpoint}")

        return int(envelope["status"]), envelope.get("body")

    @staticmethod
    def _describe(endpoint: str, status: int, body: Any) -> str:
        return f"{endpoint}: {status} {body}"

    def _link_url(self, weblink: str) -> str:
        return self._public_base_url + weblink

    def _to_entry(self, data: Dict[str, Any]) -> RemoteEntry:
        weblink = data.get("weblink")

        return RemoteEntry(
            path=data["home"],
            is_directory=data.get("kind") == "folder",
            size=int(data.get("size", 0)),
            modified=float(data.get("mtime", 0)),
            public_link=self._link_url(weblink) if weblink else None,
        )

    #
    # Contents
    #

    def _shard(self, kind: str) -> str:
        status, body = self._call("GET", "dispatcher")

        if status != 200 or not body.get(kind):
            raise TransientNetworkError(f"no {kind} shard available")

        return body[kind][0]["url"]

    def resolve_content_location(self, path: str) -> RemoteResult[ContentLocation]:
        def action() -> RemoteResult[ContentLocation]:
            shard = self._shard("get")
            return RemoteResult.ok(ContentLocation(url=shard.rstrip("/") + quote(path)))

        return self.reconciler.retry_transient(f"content of {path}", action)

    def resolve_upload_target(self, path: str, size: int) -> RemoteResult[UploadTarget]:
        def action() -> RemoteResult[UploadTarget]:
            shard = self._shard("upload")
            return RemoteResult.ok(UploadTarget(url=shard))

        return self.reconciler.retry_transient(f"upload of {path}", action)

    def add_file(self, path: str, upload_response: str, size: int) -> RemoteResult[str]:
        """Commit contents by the hash that the upload shard responded with."""
        status, body = self._call(
            "POST",
            "file/add",
            home=path,
            hash=upload_response.strip(),
            size=size,
            conflict="rewrite",
        )

        if status != 200:
            return RemoteResult.failed(self._describe("file/add", status, body))

        return RemoteResult.ok(body)

    #
    # Namespace access
    #

    def _fetch_page(self, path: str, offset: int, limit: int) -> RemoteResult[FolderListing]:
        if path.startswith(self._public_base_url):
            weblink = path[len(self._public_base_url) :]
            status, body = self._call(
                "GET", "folder", weblink=weblink, offset=offset, limit=limit
            )
        else:
            status, body = self._call("GET", "folder", home=path, offset=offset, limit=limit)

        if status == 404:
            return RemoteResult.failed(f"{path} not found")
        elif status != 200:
            return RemoteResult.failed(self._describe("folder", status, body))

        count = body.get("count") or {}

        return RemoteResult.ok(
            FolderListing(
                folder=self._to_entry(body),
                entries=[self._to_entry(e) for e in body.get("list", [])],
                total=count.get("folders", 0) + count.get("files", 0),
            )
        )

    def get_item(self, path: str) -> RemoteResult[Optional[RemoteEntry]]:
        def action() -> RemoteResult[Optional[RemoteEntry]]:
            status, body = self._call("GET", "file", home=path)

            if status == 404:
                return RemoteResult.ok(None)
            elif status != 200:
                return RemoteResult.failed(self._describe("file", status, body))

            return RemoteResult.ok(self._to_entry(body))

        return self.reconciler.run(path, action, item_exists, item_absent, item_covers(path))

    def account_info(self) -> RemoteResult[AccountInfo]:
        def action() -> RemoteResult[AccountInfo]:
            status, body = self._call("GET", "user/space")

            if status != 200:
                return RemoteResult.failed(self._describe("user/space", status, body))

            return RemoteResult.ok(
                AccountInfo(
                    total_bytes=int(body.get("bytes_total", 0)),
                    used_bytes=int(body.get("bytes_used", 0)),
                )
            )

        return self.reconciler.retry_transient("account info", action)

    #
    # Namespace modification
    #

    def _mutate(self, endpoint: str, **params: Any) -> RemoteResult[str]:
        status, body = self._call("POST", endpoint, **params)

        if status != 200:
            return RemoteResult.failed(self._describe(endpoint, status, body))

        return RemoteResult.ok(body)

    def create_folder(self, path: str) -> RemoteResult[str]:
        return self._mutate("folder/add", home=path, conflict="strict")

    def copy(self, source: str, destination_folder: str) -> RemoteResult[str]:
        return self._mutate("file/copy", home=source, folder=destination_folder, conflict="strict")

    def move(self, source: str, destination_folder: str) -> RemoteResult[str]:
        result = self._mutate(
            "file/move", home=source, folder=destination_folder, conflict="strict"
        )

        if result.success:
            self.reconciler.record(source)

        return result

    def rename(self, path: str, new_name: str) -> RemoteResult[str]:
        result = self._mutate("file/rename", home=path, name=new_name, conflict="strict")

        if result.success:
            self.reconciler.record(path)

        return result

    def delete(self, path: str) -> RemoteResult[str]:
        result = self._mutate("file/remove", home=path)

        if result.success:
            self.reconciler.record(path)

        return result

    def clone(self, public_link: str, destination_folder: str) -> RemoteResult[str]:
        if public_link.startswith(self._public_base_url):
            public_link = public_link[len(self._public_base_url) :]

        return self._mutate(
            "clone", folder=destination_folder, weblink=public_link, conflict="rename"
        )

    #
    # Sharing
    #

    def publish(self, path: str) -> RemoteResult[PublicLink]:
        status, body = self._call("POST", "file/publish", home=path)

        if status != 200:
            return RemoteResult.failed(self._describe("file/publish", status, body))

        link = PublicLink(url=self._link_url(body))

        # An expired mapping includes the new link once it is fetched again
        links = self._links.peek()
        if links is not None:
            links[path] = [link]

        return RemoteResult.ok(link)

    def unpublish(self, public_link: str, path: str) -> RemoteResult[str]:
        weblink = public_link
        if weblink.startswith(self._public_base_url):
            weblink = weblink[len(self._public_base_url) :]

        result = self._mutate("file/unpublish", weblink=weblink)

        links = self._links.peek()
        if result.success and links is not None:
            links.pop(path, None)

        return result

    def get_share_links(self, path: str) -> List[PublicLink]:
        return list(self._links.value.get(path, []))

    def _fetch_share_list(self) -> Dict[str, List[PublicLink]]:
        """Retrieve all published items along with their public links."""

        def action() -> Dict[str, List[PublicLink]]:
            status, body = self._call("GET", "folder/shared/links")

            if status != 200:
                raise TransientNetworkError(self._describe("folder/shared/links", status, body))

            return {
                item["home"]: [PublicLink(url=self._link_url(item["weblink"]))]
                for item in body.get("list", [])
                if item.get("weblink")
            }

        return self.reconciler.retry_transient("shared links", action)
