import threading

import pytest

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
from cloudbridge.namespace.content import ContentStore
from cloudbridge.namespace.tree import (
    join_path,
    NamespaceTree,
    Node,
    parent_path,
    split_stream,
)


def directory(path):
    return Node(path, FileInfo(attributes=FileAttributes.DIRECTORY))


def file(path, contents=b""):
    node = Node(path, FileInfo(attributes=FileAttributes.ARCHIVE), content=ContentStore(4096))
    node.content.write(0, contents)
    return node


def create_tree(*nodes, case_insensitive=False, max_file_nodes=1024):
    tree = NamespaceTree(case_insensitive, max_file_nodes)
    tree.insert(directory("/"))

    for node in nodes:
        tree.insert(node)

    return tree


def test_path_helpers():
    assert split_stream("/a/b:s") == ("/a/b", "s")
    assert split_stream("/a/b") == ("/a/b", None)
    assert parent_path("/a/b") == "/a"
    assert parent_path("/a/b:s") == "/a"
    assert parent_path("/a") == "/"
    assert join_path("/", "a") == "/a"
    assert join_path("/a", "b") == "/a/b"


def test_node_relations():
    assert file("/a/b:s").main_path == "/a/b"
    assert file("/a/b:s").is_stream
    assert file("/a/b").main_path is None
    assert file("/a/b:s").name == "b:s"
    assert directory("/").name == "/"


def test_insert_get_remove():
    node = file("/a")
    tree = create_tree(node)

    assert tree.get("/a") is node

    tree.remove(node)
    assert tree.get("/a") is None


def test_insert_collision():
    tree = create_tree(file("/a"))

    with pytest.raises(CollisionError):
        tree.insert(file("/a"))


def test_case_insensitive_keys():
    node = file("/Readme.TXT")
    tree = create_tree(node, case_insensitive=True)

    assert tree.get("/readme.txt") is node
    assert tree.get("/README.txt").path == "/Readme.TXT"

    with pytest.raises(CollisionError):
        tree.insert(file("/README.TXT"))


def test_case_sensitive_keys():
    tree = create_tree(file("/a"))

    assert tree.get("/A") is None
    tree.insert(file("/A"))
    assert tree.count() == 3


def test_node_quota():
    tree = create_tree(max_file_nodes=2)

    tree.insert(file("/a"))

    with pytest.raises(QuotaExceededError):
        tree.insert(file("/b"))

    assert tree.get("/b") is None


def test_remove_nonempty_directory():
    d = directory("/d")
    tree = create_tree(d, file("/d/x"))

    with pytest.raises(DirectoryNotEmptyError):
        tree.remove(d)

    assert tree.get("/d") is d


def test_remove_foreign_node():
    tree = create_tree(file("/a"))

    with pytest.raises(NotFoundError):
        tree.remove(file("/a"))


def test_remove_takes_streams_along():
    f = file("/a")
    tree = create_tree(f, file("/a:s1"), file("/a:s2"))

    tree.remove(f)

    assert tree.count() == 1
    assert tree.get("/a:s1") is None


def test_stream_requires_main():
    tree = create_tree()

    with pytest.raises(NotFoundError):
        tree.insert(file("/a:s"))


def test_get_parent():
    d = directory("/d")
    tree = create_tree(d, file("/d/f"))

    assert tree.get_parent("/d/x") is d
    assert tree.get_parent("/d/f:s") is d

    with pytest.raises(PathNotFoundError):
        tree.get_parent("/missing/x")

    with pytest.raises(PathNotFoundError):
        tree.get_parent("/")

    with pytest.raises(NotDirectoryError):
        tree.get_parent("/d/f/x")


def test_get_main():
    f = file("/a")
    tree = create_tree(f, file("/a:s"))

    assert tree.get_main("/a:s") is f
    assert tree.get_main("/a") is None


def test_has_child():
    d = directory("/d")
    e = directory("/e")
    tree = create_tree(d, e, file("/d/x"), file("/dx"))

    assert tree.has_child(d)
    assert not tree.has_child(e)
    assert tree.has_child(tree.get("/"))


def test_find_reparse_point():
    link = directory("/d/link")
    link.info.attributes |= FileAttributes.REPARSE_POINT

    tree = create_tree(directory("/d"), link)

    assert tree.find_reparse_point("/d/link/x/y") == link.info.attributes
    assert tree.find_reparse_point("/d/other") is None
    assert tree.find_reparse_point("/d") is None


def test_children_names_skip_nested_entries_and_streams():
    tree = create_tree(
        directory("/d"),
        file("/d/b"),
        file("/d/a"),
        file("/d/a:s"),
        directory("/d/c"),
        file("/d/c/x"),
        file("/dd"),
    )

    assert tree.get_children_names(tree.get("/d")) == ["/d/a", "/d/b", "/d/c"]
    assert tree.get_children_names(tree.get("/")) == ["/d", "/dd"]


@pytest.mark.parametrize("count", [0, 1, 7])
def test_children_names_resume_with_marker(count):
    d = directory("/d")
    tree = create_tree(d, *[file(f"/d/f{i:02}") for i in range(count)])

    everything = tree.get_children_names(d)
    assert len(everything) == count

    page_size = 3
    first_page = everything[:page_size]

    marker = first_page[-1].rsplit("/", 1)[-1] if first_page else None
    rest = tree.get_children_names(d, marker)

    assert first_page + rest == everything


def test_children_names_marker_case_insensitive():
    d = directory("/d")
    tree = create_tree(d, file("/d/Alpha"), file("/d/beta"), case_insensitive=True)

    assert tree.get_children_names(d, "ALPHA") == ["/d/beta"]


def test_stream_names():
    f = file("/a")
    tree = create_tree(f, file("/a:y"), file("/a:x"), file("/ab"))

    assert tree.get_stream_names(f) == ["/a:x", "/a:y"]


def test_descendant_names():
    d = directory("/d")
    tree = create_tree(d, file("/d/a"), file("/d/a:s"), directory("/d/b"), file("/d/b/c"))

    assert tree.get_descendant_names(d) == ["/d", "/d/a", "/d/a:s", "/d/b", "/d/b/c"]


def test_rename_file():
    f = file("/a", b"data")
    tree = create_tree(f, file("/a:s"))

    tree.rename(f, "/b")

    assert tree.get("/a") is None
    assert tree.get("/a:s") is None
    assert tree.get("/b") is f
    assert tree.get("/b:s").path == "/b:s"
    assert f.content.getvalue() == b"data"


def test_rename_directory_rekeys_descendants():
    d = directory("/d")
    x = file("/d/x", b"x")
    y = file("/d/sub/y", b"y")

    tree = create_tree(d, x, directory("/d/sub"), y, file("/d/x:s"))

    tree.rename(d, "/e")

    for old, new in [("/d/x", "/e/x"), ("/d/sub/y", "/e/sub/y"), ("/d/x:s", "/e/x:s")]:
        assert tree.get(old) is None
        assert tree.get(new) is not None

    assert tree.get("/e/x") is x
    assert tree.get("/e/sub/y").content.getvalue() == b"y"
    assert tree.get_children_names(tree.get("/e")) == ["/e/sub", "/e/x"]


def test_rename_collision():
    a = file("/a")
    tree = create_tree(a, file("/b"))

    with pytest.raises(CollisionError):
        tree.rename(a, "/b")

    assert tree.get("/a") is a


def test_rename_replace_file():
    a = file("/a", b"new")
    tree = create_tree(a, file("/b", b"old"), file("/b:s"))

    tree.rename(a, "/b", replace_if_exists=True)

    assert tree.get("/b") is a
    assert tree.get("/b:s") is None
    assert tree.count() == 2


def test_rename_never_replaces_directory():
    a = file("/a")
    tree = create_tree(a, directory("/b"))

    with pytest.raises(AccessDeniedError):
        tree.rename(a, "/b", replace_if_exists=True)


def test_rename_into_itself():
    d = directory("/d")
    tree = create_tree(d)

    with pytest.raises(AccessDeniedError):
        tree.rename(d, "/d/e")


def test_rename_missing_parent():
    a = file("/a")
    tree = create_tree(a)

    with pytest.raises(PathNotFoundError):
        tree.rename(a, "/missing/a")

    assert tree.get("/a") is a


def test_rename_case_only():
    a = file("/readme")
    tree = create_tree(a, case_insensitive=True)

    tree.rename(a, "/README")

    assert tree.get("/readme") is a
    assert a.path == "/README"


def test_open_count():
    f = file("/a")

    assert f.acquire() == 1
    assert f.acquire() == 2
    assert f.release() == 1


@pytest.mark.slow
def test_concurrent_insert_and_rename():
    d = directory("/d")
    tree = create_tree(d, max_file_nodes=100000)

    def insert_files(prefix):
        for i in range(500):
            tree.insert(file(f"/{prefix}{i}"))

    threads = [threading.Thread(target=insert_files, args=(p,)) for p in "wxyz"]

    for t in threads:
        t.start()

    for i in range(200):
        tree.rename(d, f"/d{i}")

    for t in threads:
        t.join()

    assert tree.count() == 2 + 4 * 500
    assert tree.get("/d199") is d


def test_children_skip_nested_entries_and_streams():
    tree = create_tree(
        directory("/a"),
        file("/a.txt"),
        file("/a/x"),
        directory("/a/y"),
        file("/a/y/z"),
        file("/a0"),
        file("/b"),
        file("/b:s"),
        file("/b.txt"),
        file("/b0"),
    )
    root = tree.get("/")

    assert tree.get_children_names(root) == ["/a", "/a.txt", "/a0", "/b", "/b.txt", "/b0"]
    assert tree.get_children_names(root, marker="a") == ["/a.txt", "/a0", "/b", "/b.txt", "/b0"]
    assert tree.get_children_names(tree.get("/a")) == ["/a/x", "/a/y"]

    assert tree.has_child(tree.get("/a/y"))
    assert not tree.has_child(directory("/a0"))


def test_has_child_after_large_subtree():
    nodes = [directory("/big")] + [file(f"/big/{i}") for i in range(2000)]
    tree = create_tree(*nodes, file("/c"), max_file_nodes=4096)

    assert tree.get_children_names(tree.get("/")) == ["/big", "/c"]


def test_rename_is_never_seen_half_done():
    d = directory("/d")
    tree = create_tree(d, file("/d/a"), file("/d/b"), file("/d/b:s"))
    done = threading.Event()
    snapshots = []

    def observe():
        while True:
            snapshots.append((tree.count(), tree.get_descendant_names(d)))

            if done.is_set():
                break

    observer = threading.Thread(target=observe)
    observer.start()

    for i in range(200):
        tree.rename(d, "/e" if i % 2 == 0 else "/d")

    done.set()
    observer.join()

    assert snapshots
    for count, names in snapshots:
        top = names[0]

        assert count == 5
        assert top in ("/d", "/e")
        assert names == [top, top + "/a", top + "/b", top + "/b:s"]
