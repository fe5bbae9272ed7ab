"""
Module implementing a repository for providers with a batched "models" API.

Providers of this kind expose a single endpoint that accepts a list of named models
(sub-requests) in one POST body and answers with a list of results in the same order.
Related lookups, like the metadata of a folder and its entries, are therefore combined
into a single round trip.

Paths on the wire live below a fixed root ("/disk") that is stripped from results.
"""

from typing import Any, Dict, List, Optional

import cloudbridge.constants as constants
from cloudbridge.config import HttpConfig, ReconcileConfig
from cloudbridge.logger import log
from cloudbridge.remote.cached import TtlCache
from cloudbridge.remote.common import (
    AccountInfo,
    ContentLocation,
    FolderListing,
    NotImplementedCapabilityError,
    PublicLink,
    RemoteEntry,
    RemoteResult,
    Transport,
    TransientNetworkError,
    UploadTarget,
)
from cloudbridge.remote.reconcile import Reconciler
from cloudbridge.remote.repository import item_absent, item_covers, item_exists, RemoteRepository

WIRE_ROOT = "/disk"
PUBLISHED_ROOT = "/published"


def to_wire(path: str) -> str:
    """Translate a repository path into a path on the wire."""
    return WIRE_ROOT + ("" if path == "/" else path)


def from_wire(path: str) -> str:
    """Translate a path on the wire into a repository path."""
    if path.startswith(WIRE_ROOT):
        path = path[len(WIRE_ROOT) :]

    return path or "/"


def join(folder: str, name: str) -> str:
    return folder.rstrip("/") + "/" + name


def is_link(path: str) -> bool:
    return path.startswith(("http://", "https://"))


class ModelReply:
    """Result of a single model in a batch, filled in once the batch has been sent."""

    def __init__(self, model: str) -> None:
        """Instantiate an empty reply for the named model."""
        self.model = model

        self.data: Optional[Dict[str, Any]] = None
        self.error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_id(self) -> Optional[str]:
        return None if self.error is None else self.error.get("id")

    def describe_error(self) -> str:
        """Return a readable description of the error."""
        if self.error is None:
            return ""

        return f"{self.model}: {self.error.get('id')} {self.error.get('message', '')}"


class ModelBatch:
    """
    Collection of models that is sent as a single request.

    Models are added first, each returning a reply placeholder. Sending the batch fills
    in every placeholder by matching the results to the models in order.
    """

    def __init__(self, transport: Transport) -> None:
        """Instantiate an empty batch."""
        self.transport = transport
        self._models: List[Dict[str, Any]] = []
        self._replies: List[ModelReply] = []

    def add(self, model: str, **params: Any) -> ModelReply:
        """Add a model to the batch and return the placeholder for its result."""
        reply = ModelReply(model)

        self._models.append({"model": model, "params": params})
        self._replies.append(reply)

        return reply

    def send(self) -> None:
        """Send all models in a single request and distribute the results."""
        names = ",".join(m["model"] for m in self._models)

        response = self.transport.request_json(
            "POST", f"models/?_m={names}", json={"models": self._models}
        )

        results = response.get("models") if isinstance(response, dict) else None

        if not isinstance(results, list) or len(results) != len(self._replies):
            raise TransientNetworkError(f"malformed response for models {names}")

        for reply, result in zip(self._replies, results):
            if result.get("model") != reply.model:
                raise TransientNetworkError(
                    f"expected result for {reply.model}, got {result.get('model')}"
                )

            reply.data = result.get("data") or {}
            reply.error = result.get("error")


class BatchedRepository(RemoteRepository):
    """Repository that talks to a provider with a batched models API."""

    NOT_FOUND = "HTTP_404"

    def __init__(
        self,
        http: HttpConfig,
        reconcile: ReconcileConfig,
        link_ttl: float = constants.LINK_CACHE_TTL,
        transport: Optional[Transport] = None,
        reconciler: Optional[Reconciler] = None,
    ) -> None:
        """Instantiate a repository with its own HTTP session."""
        self.transport = transport if transport is not None else Transport(http)
        self.reconciler = reconciler if reconciler is not None else Reconciler(reconcile)

        if http.token:
            self.transport.session.headers["Authorization"] = f"OAuth {http.token}"

        self._links: TtlCache[Dict[str, List[PublicLink]]] = TtlCache(
            lambda previous: self._fetch_share_list(), lambda value: link_ttl
        )

    def _batch(self) -> ModelBatch:
        return ModelBatch(self.transport)

    @staticmethod
    def _to_entry(data: Dict[str, Any]) -> RemoteEntry:
        meta = data.get("meta") or {}

        return RemoteEntry(
            path=from_wire(data["path"]),
            is_directory=data.get("type") == "dir",
            size=int(meta.get("size", 0)),
            modified=float(data.get("mtime", 0)),
            public_link=meta.get("short_url"),
        )

    #
    # Contents
    #

    def resolve_content_location(self, path: str) -> RemoteResult[ContentLocation]:
        def action() -> RemoteResult[ContentLocation]:
            batch = self._batch()
            url = batch.add("do-get-resource-url", id=to_wire(path))
            batch.send()

            if not url.ok:
                return RemoteResult.failed(url.describe_error())

            location = url.data["file"]
            if location.startswith("//"):
                location = "https:" + location

            return RemoteResult.ok(ContentLocation(url=location))

        return self.reconciler.retry_transient(f"content of {path}", action)

    def resolve_upload_target(self, path: str, size: int) -> RemoteResult[UploadTarget]:
        def action() -> RemoteResult[UploadTarget]:
            batch = self._batch()
            target = batch.add("do-resource-upload-url", dst=to_wire(path), size=size, force=1)
            batch.send()

            if not target.ok:
                return RemoteResult.failed(target.describe_error())

            return RemoteResult.ok(UploadTarget(url=target.data["upload_url"]))

        return self.reconciler.retry_transient(f"upload of {path}", action)

    def add_file(self, path: str, upload_response: str, size: int) -> RemoteResult[str]:
        # Contents uploaded to an upload target are committed by the provider itself
        return RemoteResult.ok(path)

    #
    # Namespace access
    #

    def _fetch_page(self, path: str, offset: int, limit: int) -> RemoteResult[FolderListing]:
        if is_link(path):
            raise NotImplementedCapabilityError("listing public links is not supported")

        batch = self._batch()
        item = batch.add("resource", id=to_wire(path))
        folder = batch.add(
            "resources",
            idContext=to_wire(path),
            order="1",
            sort="name",
            offset=offset,
            amount=limit,
        )
        batch.send()

        if item.error_id == self.NOT_FOUND:
            return RemoteResult.failed(f"{path} not found")
        elif not item.ok:
            return RemoteResult.failed(item.describe_error())
        elif not folder.ok:
            return RemoteResult.failed(folder.describe_error())

        return RemoteResult.ok(
            FolderListing(
                folder=self._to_entry(item.data),
                entries=[self._to_entry(r) for r in folder.data.get("resources", [])],
                total=folder.data.get("total"),
            )
        )

    def get_item(self, path: str) -> RemoteResult[Optional[RemoteEntry]]:
        def action() -> RemoteResult[Optional[RemoteEntry]]:
            batch = self._batch()
            item = batch.add("resource", id=to_wire(path))
            batch.send()

            if item.error_id == self.NOT_FOUND:
                return RemoteResult.ok(None)
            elif not item.ok:
                return RemoteResult.failed(item.describe_error())

            return RemoteResult.ok(self._to_entry(item.data))

        return self.reconciler.run(path, action, item_exists, item_absent, item_covers(path))

    def account_info(self) -> RemoteResult[AccountInfo]:
        def action() -> RemoteResult[AccountInfo]:
            batch = self._batch()
            space = batch.add("space")
            batch.send()

            if not space.ok:
                return RemoteResult.failed(space.describe_error())

            return RemoteResult.ok(
                AccountInfo(
                    total_bytes=int(space.data.get("limit", 0)),
                    used_bytes=int(space.data.get("used", 0)),
                )
            )

        return self.reconciler.retry_transient("account info", action)

    #
    # Namespace modification
    #

    def _mutate(self, model: str, **params: Any) -> ModelReply:
        batch = self._batch()
        reply = batch.add(model, **params)
        batch.send()

        if not reply.ok:
            log.debug(f"remote::{model} failed: {reply.describe_error()}")

        return reply

    def create_folder(self, path: str) -> RemoteResult[str]:
        reply = self._mutate("do-resource-create-folder", id=to_wire(path), force=0)

        if not reply.ok:
            return RemoteResult.failed(reply.describe_error())

        return RemoteResult.ok(path)

    def copy(self, source: str, destination_folder: str) -> RemoteResult[str]:
        destination = join(destination_folder, source.rstrip("/").rsplit("/", 1)[-1])

        reply = self._mutate(
            "do-resource-copy", src=to_wire(source), dst=to_wire(destination), force=0
        )

        if not reply.ok:
            return RemoteResult.failed(reply.describe_error())

        return RemoteResult.ok(destination)

    def move(self, source: str, destination_folder: str) -> RemoteResult[str]:
        destination = join(destination_folder, source.rstrip("/").rsplit("/", 1)[-1])

        return self._move(source, destination)

    def rename(self, path: str, new_name: str) -> RemoteResult[str]:
        destination = join(path.rstrip("/").rsplit("/", 1)[0] or "/", new_name)

        return self._move(path, destination)

    def _move(self, source: str, destination: str) -> RemoteResult[str]:
        reply = self._mutate(
            "do-resource-move", src=to_wire(source), dst=to_wire(destination), force=0
        )

        if not reply.ok:
            return RemoteResult.failed(reply.describe_error())

        # The source disappears from its folder asynchronously, just like a delete
        self.reconciler.record(source)

        return RemoteResult.ok(destination)

    def delete(self, path: str) -> RemoteResult[str]:
        reply = self._mutate("do-resource-delete", id=to_wire(path))

        if not reply.ok:
            return RemoteResult.failed(reply.describe_error())

        self.reconciler.record(path)

        return RemoteResult.ok(path)

    def clone(self, public_link: str, destination_folder: str) -> RemoteResult[str]:
        raise NotImplementedCapabilityError("cloning public links is not supported")

    #
    # Sharing
    #

    def publish(self, path: str) -> RemoteResult[PublicLink]:
        reply = self._mutate("do-resource-publish", id=to_wire(path), reverse=False)

        if not reply.ok:
            return RemoteResult.failed(reply.describe_error())

        link = PublicLink(url=reply.data["short_url"])

        # An expired mapping includes the new link once it is fetched again
        links = self._links.peek()
        if links is not None:
            links[path] = [link]

        return RemoteResult.ok(link)

    def unpublish(self, public_link: str, path: str) -> RemoteResult[str]:
        reply = self._mutate("do-resource-publish", id=to_wire(path), reverse=True)

        if not reply.ok:
            return RemoteResult.failed(reply.describe_error())

        links = self._links.peek()
        if links is not None:
            links.pop(path, None)

        return RemoteResult.ok(path)

    def get_share_links(self, path: str) -> List[PublicLink]:
        return list(self._links.value.get(path, []))

    def _fetch_share_list(self) -> Dict[str, List[PublicLink]]:
        """Retrieve all published items along with their public links."""

        def action() -> Dict[str, List[PublicLink]]:
            batch = self._batch()
            published = batch.add("resources", idContext=PUBLISHED_ROOT, order="1", sort="name")
            batch.send()

            if not published.ok:
                raise TransientNetworkError(published.describe_error())

            return {
                from_wire(r["path"]): [PublicLink(url=r["meta"]["short_url"])]
                for r in published.data.get("resources", [])
                if (r.get("meta") or {}).get("short_url")
            }

        return self.reconciler.retry_transient("published items", action)
