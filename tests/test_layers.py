import io
import os
import tarfile
import threading

import pytest

from imagefs.layers import (
    Layer,
    WalkTimeoutError,
    delete_filesystem,
    get_fs_from_layers,
    get_fs_info_map,
    walk_fs,
)
from imagefs.paths import IgnoreList, IgnoreListEntry, default_ignore_list

OCI_LAYER = "application/vnd.oci.image.layer.v1.tar"
CONTENT = b"Hello World\n"


def make_tar(names, content=CONTENT):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name in names:
            info = tarfile.TarInfo(name)
            info.mode = 0o644
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def layer_of(root, paths):
    names = [str(p)[len(str(root)):].lstrip("/") for p in paths]
    return Layer.from_bytes(make_tar(names), OCI_LAYER)


@pytest.fixture
def mountinfo(tmp_path_factory):
    path = tmp_path_factory.mktemp("proc") / "mountinfo"
    path.write_text("228 122 0:90 / / rw,relatime - aufs none rw\n")
    return str(path)


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, root, member, data):
        self.calls.append((member.name, data.read() if data is not None else None))


def test_get_fs_from_layers(tmp_path, mountinfo):
    root = str(tmp_path)
    expected = [os.path.join(root, "foobar")]
    recorder = Recorder()
    actual = get_fs_from_layers(
        root, [layer_of(root, expected)], recorder, mountinfo_path=mountinfo
    )
    assert actual == expected
    assert recorder.calls == [("foobar", CONTENT)]


def test_whiteouts_included(tmp_path, mountinfo):
    root = str(tmp_path)
    (tmp_path / "foobar").write_bytes(CONTENT)
    first = [os.path.join(root, "foobar")]
    second = [os.path.join(root, ".wh.foobar")]
    actual = get_fs_from_layers(
        root,
        [layer_of(root, first), layer_of(root, second)],
        Recorder(),
        include_whiteout=True,
        mountinfo_path=mountinfo,
    )
    assert actual == first + second
    assert not os.path.lexists(os.path.join(root, "foobar"))


def test_whiteouts_excluded(tmp_path, mountinfo):
    root = str(tmp_path)
    (tmp_path / "foobar").write_bytes(CONTENT)
    first = [os.path.join(root, "foobar")]
    second = [os.path.join(root, ".wh.foobar")]
    recorder = Recorder()
    actual = get_fs_from_layers(
        root,
        [layer_of(root, first), layer_of(root, second)],
        recorder,
        mountinfo_path=mountinfo,
    )
    assert actual == first
    assert [name for name, _ in recorder.calls] == ["foobar"]
    assert not os.path.lexists(os.path.join(root, "foobar"))


def test_whiteouts_respect_ignore_list(tmp_path, mountinfo):
    root = str(tmp_path)
    testdir = tmp_path / "testdir"
    testdir.mkdir()
    files = [
        os.path.join(root, ".wh.testdir"),
        os.path.join(root, "testdir", "file"),
        os.path.join(root, "other-file"),
    ]
    actual = get_fs_from_layers(
        root,
        [layer_of(root, files)],
        Recorder(),
        include_whiteout=True,
        mountinfo_path=mountinfo,
    )
    assert actual == files
    assert not os.path.lexists(str(testdir))

    testdir.mkdir()
    ignore_list = IgnoreList(default_ignore_list() + [IgnoreListEntry(str(testdir))])
    layer_files = [os.path.join(root, ".wh.testdir"), os.path.join(root, "other-file")]
    actual = get_fs_from_layers(
        root,
        [layer_of(root, layer_files)],
        Recorder(),
        include_whiteout=True,
        ignore_list=ignore_list,
        mountinfo_path=mountinfo,
    )
    assert actual == [os.path.join(root, "other-file")]
    assert testdir.is_dir()


def test_missing_extract_function(tmp_path, mountinfo):
    with pytest.raises(ValueError, match="extract function"):
        get_fs_from_layers(str(tmp_path), [], None, mountinfo_path=mountinfo)


def test_empty_layer(tmp_path, mountinfo):
    recorder = Recorder()
    empty = Layer.from_bytes(make_tar([]))
    assert get_fs_from_layers(str(tmp_path), [empty], recorder, mountinfo_path=mountinfo) == []
    assert recorder.calls == []


def test_ignore_list_reset_with_mounts(tmp_path):
    info = tmp_path / "mountinfo"
    info.write_text(
        "1 0 0:1 / / rw - ext4 none rw\n2 1 0:2 / /mnt/data rw - ext4 none rw\n"
    )
    ignore_list = IgnoreList()
    ignore_list.add(IgnoreListEntry("/leftover"))
    ignore_list.add_volume("/vol")
    get_fs_from_layers(
        str(tmp_path), [], Recorder(), ignore_list=ignore_list, mountinfo_path=str(info)
    )
    assert ignore_list.is_ignored("/mnt/data/file")
    assert not ignore_list.is_ignored("/leftover")
    assert ignore_list.volumes == []


def test_delete_filesystem(tmp_path):
    root = str(tmp_path)
    (tmp_path / "keep").mkdir()
    (tmp_path / "keep" / "inner").write_text("x")
    (tmp_path / "a" / "b").mkdir(parents=True)
    (tmp_path / "c").write_text("x")
    (tmp_path / "parent" / "child").mkdir(parents=True)
    (tmp_path / "parent" / "other").write_text("x")
    ignore_list = IgnoreList(
        [
            IgnoreListEntry(os.path.join(root, "keep")),
            IgnoreListEntry(os.path.join(root, "parent", "child")),
        ]
    )
    delete_filesystem(root, ignore_list)
    assert sorted(os.listdir(root)) == ["keep", "parent"]
    assert (tmp_path / "keep" / "inner").exists()
    assert sorted(os.listdir(tmp_path / "parent")) == ["child"]


@pytest.fixture
def tree(tmp_path):
    (tmp_path / "foo").write_text("foo")
    (tmp_path / "bar").mkdir()
    (tmp_path / "bar" / "bat").write_text("bat")
    (tmp_path / "skip").mkdir()
    (tmp_path / "skip" / "hidden").write_text("hidden")
    return str(tmp_path)


def test_walk_fs_changes_and_deletes(tree):
    existing = {os.path.join(tree, "foo"), os.path.join(tree, "gone")}
    found, deleted = walk_fs(tree, existing, lambda path: True, IgnoreList(), timeout=30)
    assert sorted(found) == sorted(
        [
            tree,
            os.path.join(tree, "foo"),
            os.path.join(tree, "bar"),
            os.path.join(tree, "bar", "bat"),
            os.path.join(tree, "skip"),
            os.path.join(tree, "skip", "hidden"),
        ]
    )
    assert deleted == {os.path.join(tree, "gone")}


def test_walk_fs_skips_ignored_directory(tree):
    ignore_list = IgnoreList([IgnoreListEntry(os.path.join(tree, "skip"))])
    existing = {os.path.join(tree, "skip", "hidden")}
    found, deleted = walk_fs(
        tree, existing, lambda path: path.endswith("bat"), ignore_list, timeout=30
    )
    assert found == [os.path.join(tree, "bar", "bat")]
    assert deleted == existing


def test_walk_fs_timeout(tree):
    release = threading.Event()

    def slow(path):
        release.wait(5)
        return True

    try:
        with pytest.raises(WalkTimeoutError):
            walk_fs(tree, set(), slow, IgnoreList(), timeout=0.05)
    finally:
        release.set()


def test_walk_fs_bad_timeout_env(tree, monkeypatch):
    monkeypatch.setenv("SNAPSHOT_TIMEOUT_DURATION", "bogus")
    with pytest.raises(ValueError, match="bogus"):
        walk_fs(tree, set(), lambda path: True, IgnoreList())


def test_walk_fs_env_timeout(tree, monkeypatch):
    monkeypatch.setenv("SNAPSHOT_TIMEOUT_DURATION", "1h30m")
    found, deleted = walk_fs(tree, {tree}, lambda path: False, IgnoreList())
    assert found == []
    assert deleted == set()


def test_walk_fs_stops_on_error(tree):
    def failing(path):
        raise OSError("cannot hash")

    found, deleted = walk_fs(
        tree, {tree, os.path.join(tree, "foo")}, failing, IgnoreList(), timeout=30
    )
    assert found == []
    assert deleted == {os.path.join(tree, "foo")}


def test_get_fs_info_map(tree):
    ignore_list = IgnoreList([IgnoreListEntry(os.path.join(tree, "skip"))])
    first_map, first_found = get_fs_info_map(tree, {}, ignore_list)
    assert sorted(first_found) == sorted(
        [
            tree,
            os.path.join(tree, "foo"),
            os.path.join(tree, "bar"),
            os.path.join(tree, "bar", "bat"),
        ]
    )
    assert set(first_map) == set(first_found)

    second_map, second_found = get_fs_info_map(tree, first_map, ignore_list)
    assert second_found == []
    assert second_map == {}

    with open(os.path.join(tree, "bar", "bat"), "a") as handle:
        handle.write("more")
    third_map, third_found = get_fs_info_map(tree, first_map, ignore_list)
    assert third_found == [os.path.join(tree, "bar", "bat")]
    assert third_map[os.path.join(tree, "bar", "bat")].st_size == len("batmore")