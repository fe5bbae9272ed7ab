from unittest import mock

import pytest

import cloudbridge.constants as constants
from cloudbridge.config import HttpConfig, ReconcileConfig
from cloudbridge.remote.common import TransientNetworkError
from cloudbridge.remote.reconcile import Reconciler
from cloudbridge.remote.rest import RestRepository

PUBLIC = "https://cloud.example.com/public/"


class FakeRestApi:
    """API that answers every endpoint through a handler returning (status, body)."""

    def __init__(self):
        self.handlers = {}
        self.calls = []

    def __call__(self, method, relative, params=None, data=None, **kwargs):
        assert relative.startswith("api/v2/")

        endpoint = relative[len("api/v2/") :]
        arguments = params if method == "GET" else data

        self.calls.append((method, endpoint, dict(arguments)))

        status, body = self.handlers[endpoint](arguments)

        return {"status": status, "body": body}


def item(path, kind="file", size=0, weblink=None):
    data = {
        "home": path,
        "name": path.rsplit("/", 1)[-1],
        "kind": kind,
        "size": size,
        "mtime": 1600000000,
    }

    if weblink:
        data["weblink"] = weblink

    return data


def folder(path, entries):
    body = item(path, "folder")
    body["list"] = entries
    body["count"] = {
        "folders": sum(1 for e in entries if e["kind"] == "folder"),
        "files": sum(1 for e in entries if e["kind"] == "file"),
    }

    return body


def create_repository(token="secret"):
    api = FakeRestApi()

    transport = mock.Mock()
    transport.request_json.side_effect = api

    reconciler = Reconciler(
        ReconcileConfig(), clock=mock.Mock(return_value=100.0), sleep=mock.Mock()
    )

    repository = RestRepository(
        HttpConfig(token=token),
        ReconcileConfig(),
        public_base_url=PUBLIC,
        transport=transport,
        reconciler=reconciler,
    )

    return repository, api


def test_token_is_sent_with_every_call():
    repository, api = create_repository()
    api.handlers["file"] = lambda args: (200, item("/A"))

    repository.get_item("/A")

    assert api.calls == [("GET", "file", {"home": "/A", "token": "secret"})]


def test_list_folder():
    repository, api = create_repository()
    api.handlers["folder"] = lambda args: (
        200,
        folder("/A", [item("/A/b", size=3, weblink="xyz"), item("/A/c", "folder")]),
    )

    result = repository.list_folder("/A", offset=10, limit=20)

    assert result.success
    assert result.payload.total == 2
    assert [(e.path, e.is_directory, e.size) for e in result.payload.entries] == [
        ("/A/b", False, 3),
        ("/A/c", True, 0),
    ]
    assert result.payload.entries[0].public_link == PUBLIC + "xyz"

    _, _, args = api.calls[0]
    assert args["offset"] == 10
    assert args["limit"] == 20


def test_list_public_link():
    repository, api = create_repository()
    api.handlers["folder"] = lambda args: (200, folder("/", []))

    assert repository.list_folder(PUBLIC + "abc/def").success

    _, _, args = api.calls[0]
    assert args["weblink"] == "abc/def"
    assert "home" not in args


def test_list_missing_folder():
    repository, api = create_repository()
    api.handlers["folder"] = lambda args: (404, "not_exists")

    result = repository.list_folder("/missing")

    assert not result.success
    assert "not found" in result.error


def test_get_missing_item():
    repository, api = create_repository()
    api.handlers["file"] = lambda args: (404, "not_exists")

    result = repository.get_item("/A")

    assert result.success
    assert result.payload is None


def test_get_item_after_delete_is_reconciled():
    repository, api = create_repository()
    api.handlers["file/remove"] = lambda args: (200, args["home"])

    responses = iter([(200, item("/A/b")), (404, "not_exists")])
    api.handlers["file"] = lambda args: next(responses)

    assert repository.delete("/A/b").success

    result = repository.get_item("/A/b")

    assert result.success
    assert result.payload is None
    assert len(api.calls) == 1 + 2


def test_listing_after_rename_is_reconciled():
    repository, api = create_repository()
    api.handlers["file/rename"] = lambda args: (200, "/A/" + args["name"])

    listings = iter(
        [
            folder("/A", [item("/A/b"), item("/A/c")]),
            folder("/A", [item("/A/c")]),
        ]
    )
    api.handlers["folder"] = lambda args: (200, next(listings))

    assert repository.rename("/A/b", "c").success

    result = repository.list_folder("/A")

    assert [e.path for e in result.payload.entries] == ["/A/c"]


def test_malformed_envelope_is_transient():
    repository, api = create_repository()
    repository.transport.request_json.side_effect = None
    repository.transport.request_json.return_value = ["unexpected"]

    with pytest.raises(TransientNetworkError):
        repository.account_info()

    assert repository.transport.request_json.call_count == 5


def test_account_info():
    repository, api = create_repository()
    api.handlers["user/space"] = lambda args: (200, {"bytes_total": 100, "bytes_used": 30})

    info = repository.account_info().payload

    assert info.total_bytes == 100
    assert info.used_bytes == 30


def test_mutations():
    repository, api = create_repository()

    for endpoint in ["folder/add", "file/copy", "file/move", "file/remove"]:
        api.handlers[endpoint] = lambda args: (200, "ok")

    assert repository.create_folder("/A").success
    assert repository.copy("/A/b", "/B").success
    assert repository.move("/A/b", "/B").success
    assert repository.delete("/A/c").success

    assert [(method, endpoint) for method, endpoint, _ in api.calls] == [
        ("POST", "folder/add"),
        ("POST", "file/copy"),
        ("POST", "file/move"),
        ("POST", "file/remove"),
    ]
    assert api.calls[2][2]["folder"] == "/B"


def test_rejected_mutation():
    repository, api = create_repository()
    api.handlers["folder/add"] = lambda args: (400, {"home": {"error": "exists"}})

    result = repository.create_folder("/A")

    assert not result.success
    assert "400" in result.error


def test_clone():
    repository, api = create_repository()
    api.handlers["clone"] = lambda args: (200, "/A/shared")

    result = repository.clone(PUBLIC + "abc/def", "/A")

    assert result.success
    assert api.calls[0][2]["weblink"] == "abc/def"
    assert api.calls[0][2]["conflict"] == "rename"


def test_content_location_from_dispatcher():
    repository, api = create_repository()
    api.handlers["dispatcher"] = lambda args: (
        200,
        {"get": [{"url": "https://shard-1/get/"}], "upload": [{"url": "https://shard-2/upload/"}]},
    )

    location = repository.resolve_content_location("/A/my file")
    target = repository.resolve_upload_target("/A/my file", 10)

    assert location.payload.url == "https://shard-1/get/A/my%20file"
    assert target.payload.url == "https://shard-2/upload/"


def test_missing_shard_is_retried():
    repository, api = create_repository()
    api.handlers["dispatcher"] = lambda args: (200, {"get": []})

    with pytest.raises(TransientNetworkError):
        repository.resolve_content_location("/A")

    assert len(api.calls) == 5


def test_add_file_commits_hash():
    repository, api = create_repository()
    api.handlers["file/add"] = lambda args: (200, args["home"])

    assert repository.add_file("/A/b", "ABCDEF\n", 6).success

    _, _, args = api.calls[0]
    assert args["hash"] == "ABCDEF"
    assert args["size"] == 6
    assert args["conflict"] == "rewrite"


def test_share_links():
    repository, api = create_repository()
    api.handlers["folder/shared/links"] = lambda args: (
        200,
        {"list": [item("/shared", weblink="s1")]},
    )
    api.handlers["file/publish"] = lambda args: (200, "p2")
    api.handlers["file/unpublish"] = lambda args: (200, args["weblink"])

    assert repository.get_share_links("/shared")[0].url == PUBLIC + "s1"
    assert repository.publish("/A").payload.url == PUBLIC + "p2"
    assert repository.get_share_links("/A")[0].url == PUBLIC + "p2"

    assert repository.unpublish(PUBLIC + "p2", "/A").success
    assert repository.get_share_links("/A") == []

    assert api.calls[-1][2]["weblink"] == "p2"
    assert [c[1] for c in api.calls].count("folder/shared/links") == 1


def paged_folder(path, entries):
    """Handler that serves a folder listing in pages."""

    def handler(args):
        offset, limit = int(args["offset"]), int(args["limit"])
        body = folder(path, entries)
        body["list"] = entries[offset : offset + limit]
        return 200, body

    return handler


def test_ancestor_reads_keep_delete_pending():
    repository, api = create_repository()
    api.handlers["file/remove"] = lambda args: (200, args["home"])
    api.handlers["file"] = lambda args: (200, item("/A", "folder"))

    assert repository.delete("/A/b/c").success

    api.handlers["folder"] = lambda args: (200, folder("/A", [item("/A/b", "folder")]))
    assert repository.list_folder("/A").success
    assert repository.get_item("/A").success

    assert repository.reconciler.pending_under("/A/b") == ["/A/b/c"]

    listings = iter([folder("/A/b", [item("/A/b/c")]), folder("/A/b", [])])
    api.handlers["folder"] = lambda args: (200, next(listings))

    result = repository.list_folder("/A/b")

    assert result.payload.entries == []
    assert repository.reconciler.pending_under("/A/b") == []


def test_single_page_keeps_delete_pending():
    repository, api = create_repository()
    api.handlers["file/remove"] = lambda args: (200, args["home"])
    api.handlers["folder"] = paged_folder("/A", [item("/A/b"), item("/A/c"), item("/A/d")])

    assert repository.delete("/A/d").success

    result = repository.list_folder("/A", offset=0, limit=2)

    assert [e.path for e in result.payload.entries] == ["/A/b", "/A/c"]
    assert repository.reconciler.pending_under("/A") == ["/A/d"]


def test_list_all_reconciles_whole_folder(monkeypatch):
    monkeypatch.setattr(constants, "LIST_PAGE_SIZE", 2)

    repository, api = create_repository()
    api.handlers["file/remove"] = lambda args: (200, args["home"])

    assert repository.delete("/A/c").success

    # The delete never shows up, so the entry is discarded from a full first page
    entries = [item("/A/b"), item("/A/c"), item("/A/d"), item("/A/e")]
    api.handlers["folder"] = paged_folder("/A", entries)

    result = repository.list_all("/A")

    assert [e.path for e in result.payload.entries] == ["/A/b", "/A/d", "/A/e"]
    assert result.payload.total == 4


def test_list_all_confirms_complete_listing(monkeypatch):
    monkeypatch.setattr(constants, "LIST_PAGE_SIZE", 2)

    repository, api = create_repository()
    api.handlers["file/remove"] = lambda args: (200, args["home"])

    assert repository.delete("/A/x").success

    entries = [item("/A/b"), item("/A/c"), item("/A/d")]
    api.handlers["folder"] = paged_folder("/A", entries)

    result = repository.list_all("/A")

    assert [e.path for e in result.payload.entries] == ["/A/b", "/A/c", "/A/d"]
    assert [c[2]["offset"] for c in api.calls if c[1] == "folder"] == [0, 2]
    assert repository.reconciler.pending_under("/A") == []


def test_failed_unpublish_keeps_link():
    repository, api = create_repository()
    api.handlers["folder/shared/links"] = lambda args: (
        200,
        {"list": [item("/shared", weblink="s1")]},
    )
    api.handlers["file/unpublish"] = lambda args: (400, "denied")

    assert repository.get_share_links("/shared")[0].url == PUBLIC + "s1"
    assert not repository.unpublish(PUBLIC + "s1", "/shared").success
    assert repository.get_share_links("/shared")[0].url == PUBLIC + "s1"


def test_publish_does_not_fetch_share_list():
    repository, api = create_repository()
    api.handlers["file/publish"] = lambda args: (200, "p1")

    def unavailable(args):
        raise AssertionError("share list fetched")

    api.handlers["folder/shared/links"] = unavailable

    assert repository.publish("/A").payload.url == PUBLIC + "p1"
    assert [c[1] for c in api.calls] == ["file/publish"]
