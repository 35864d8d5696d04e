"""Tests for the recursive folder mirror."""

import os

import pytest

from archive_libraries import MirrorResult, local_path_for, mirror_folder
from fakes import FakeFolder

WEB = "/sites/hr"
LIB = "/sites/hr/Shared Documents"


@pytest.fixture
def root():
    return FakeFolder(LIB)


def local(tmp_path, *parts):
    return tmp_path.joinpath("Shared Documents", *parts)


def test_local_path_strips_site_prefix(tmp_path):
    path = local_path_for(f"{LIB}/Reports/2024", WEB, str(tmp_path))
    assert path == os.path.join(str(tmp_path), "Shared Documents", "Reports", "2024")


def test_local_path_decodes_escapes_and_handles_root_site(tmp_path):
    path = local_path_for("/Shared%20Documents/A", "", str(tmp_path))
    assert path == os.path.join(str(tmp_path), "Shared Documents", "A")


def test_local_path_ignores_case_and_escapes_of_site_prefix(tmp_path):
    path = local_path_for("/sites/hr/Docs/A", "/Sites/HR", str(tmp_path))
    assert path == os.path.join(str(tmp_path), "Docs", "A")

    path = local_path_for("/sites/HR Team/Docs", "/sites/HR%20Team", str(tmp_path))
    assert path == os.path.join(str(tmp_path), "Docs")


def test_mirror_result_addition():
    total = MirrorResult(1, 2, 3) + MirrorResult(downloaded=4, skipped=1)
    assert total == MirrorResult(downloaded=5, created=2, skipped=4)


def test_missing_file_is_downloaded(root, tmp_path):
    f = root.add_file("a.txt", b"hello")

    result = mirror_folder(root, WEB, str(tmp_path))

    assert result == MirrorResult(downloaded=1, created=1, skipped=0)
    assert local(tmp_path, "a.txt").read_bytes() == b"hello"
    assert f.downloads == 1


def test_same_size_file_is_skipped(root, tmp_path):
    f = root.add_file("a.txt", b"hello")
    local(tmp_path).mkdir()
    local(tmp_path, "a.txt").write_bytes(b"HELLO")

    result = mirror_folder(root, WEB, str(tmp_path))

    assert result == MirrorResult(downloaded=0, created=0, skipped=1)
    assert f.downloads == 0
    # Same size is taken as identical, content is not compared.
    assert local(tmp_path, "a.txt").read_bytes() == b"HELLO"


def test_size_mismatch_is_overwritten(root, tmp_path):
    root.add_file("a.txt", b"new content")
    local(tmp_path).mkdir()
    local(tmp_path, "a.txt").write_bytes(b"old")

    result = mirror_folder(root, WEB, str(tmp_path))

    assert result == MirrorResult(downloaded=1, created=0, skipped=0)
    assert local(tmp_path, "a.txt").read_bytes() == b"new content"


def test_forms_folder_is_never_descended(root, tmp_path):
    deep = root.add_folder("A").add_folder("B")
    forms = deep.add_folder("Forms")
    forms.add_file("AllItems.aspx", b"x")
    top_forms = root.add_folder("Forms")

    mirror_folder(root, WEB, str(tmp_path))

    assert forms.folders.listed == 0
    assert top_forms.folders.listed == 0
    assert forms.file("AllItems.aspx").downloads == 0
    assert not local(tmp_path, "A", "B", "Forms").exists()
    assert not local(tmp_path, "Forms").exists()


def test_depth_three_tree(root, tmp_path):
    root.add_file("same.txt", b"1234")
    sub1 = root.add_folder("Sub1")
    changed = sub1.add_file("changed.txt", b"longer than before")
    sub1.add_folder("Sub2")
    forms = root.add_folder("Forms")
    forms.add_file("form.aspx", b"<form/>")

    local(tmp_path, "Sub1").mkdir(parents=True)
    local(tmp_path, "same.txt").write_bytes(b"abcd")
    local(tmp_path, "Sub1", "changed.txt").write_bytes(b"short")

    result = mirror_folder(root, WEB, str(tmp_path))

    assert result.downloaded == 1
    assert result.skipped == 1
    assert result.created == 1
    assert changed.downloads == 1
    assert forms.file("form.aspx").downloads == 0
    assert local(tmp_path, "Sub1", "Sub2").is_dir()


def test_created_counts_every_new_directory(root, tmp_path):
    root.add_folder("A").add_folder("B")
    root.add_folder("C")

    result = mirror_folder(root, WEB, str(tmp_path))

    assert result.created == 4
    assert local(tmp_path, "A", "B").is_dir()
    assert local(tmp_path, "C").is_dir()


def test_download_failure_propagates(root, tmp_path):
    f = root.add_file("a.txt", b"data")

    def broken(fh):
        raise IOError("connection reset")

    f.download = broken

    with pytest.raises(IOError):
        mirror_folder(root, WEB, str(tmp_path))


def test_failed_download_keeps_previous_local_copy(root, tmp_path):
    f = root.add_file("a.txt", b"new content")
    local(tmp_path).mkdir()
    local(tmp_path, "a.txt").write_bytes(b"old")

    def interrupted(fh):
        fh.write(b"new")
        raise IOError("connection reset")

    f.download = interrupted

    with pytest.raises(IOError):
        mirror_folder(root, WEB, str(tmp_path))

    assert local(tmp_path, "a.txt").read_bytes() == b"old"
    assert sorted(p.name for p in local(tmp_path).iterdir()) == ["a.txt"]
