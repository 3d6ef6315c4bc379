"""Tests for blob hashing, file classification and tree composition."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tests.conftest import write_files
from treepush.github.schemas import TreeEntry, TreeItem
from treepush.services.diff_service import (
    FileState,
    RemoteEntry,
    build_remote_index,
    classify_file,
    classify_remote_only,
    compose_tree,
    compute_preview,
    git_blob_sha,
    matches_remote,
    uploaded_item,
)

if TYPE_CHECKING:
    from pathlib import Path


class TestGitBlobSha:
    def test_known_values(self) -> None:
        # `git hash-object` of "hello\n" and of the empty blob
        assert git_blob_sha(b"hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"
        assert git_blob_sha(b"") == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"

    def test_differs_with_content(self) -> None:
        assert git_blob_sha(b"a") != git_blob_sha(b"b")


class TestBuildRemoteIndex:
    def test_keeps_blobs_and_submodules(self) -> None:
        entries = [
            TreeEntry(path="wp-content", mode="040000", type="tree", sha="t" * 40),
            TreeEntry(path="wp-content/a.php", mode="100644", type="blob", sha="a" * 40),
            TreeEntry(path="vendor/lib", mode="160000", type="commit", sha="c" * 40),
            TreeEntry(path="bin/run", mode="100755", type="blob", sha="b" * 40),
        ]
        index = build_remote_index(entries)
        assert index == {
            "wp-content/a.php": RemoteEntry(sha="a" * 40, mode="100644"),
            "vendor/lib": RemoteEntry(sha="c" * 40, mode="160000", type="commit"),
            "bin/run": RemoteEntry(sha="b" * 40, mode="100755"),
        }


class TestClassifyFile:
    def test_empty_file(self) -> None:
        result = classify_file("a.txt", b"", {})
        assert result.state == FileState.EMPTY

    def test_new_file(self) -> None:
        result = classify_file("a.txt", b"x", {})
        assert result.state == FileState.NEW
        assert result.local_sha == git_blob_sha(b"x")

    def test_unchanged_file_reuses_remote_entry(self) -> None:
        index = {"a.sh": RemoteEntry(sha=git_blob_sha(b"x"), mode="100755")}
        result = classify_file("a.sh", b"x", index)
        assert result.state == FileState.UNCHANGED
        assert result.reused_item() == TreeItem(path="a.sh", mode="100755", sha=git_blob_sha(b"x"))

    def test_changed_file(self) -> None:
        index = {"a.txt": RemoteEntry(sha=git_blob_sha(b"old"), mode="100644")}
        result = classify_file("a.txt", b"new", index)
        assert result.state == FileState.CHANGED

    def test_reused_item_rejects_changed(self) -> None:
        with pytest.raises(ValueError, match="nothing to reuse"):
            classify_file("a.txt", b"x", {}).reused_item()


class TestUploadedItem:
    def test_default_mode(self) -> None:
        item = uploaded_item(classify_file("a.txt", b"x", {}), "f" * 40)
        assert item == TreeItem(path="a.txt", mode="100644", sha="f" * 40)

    def test_keeps_executable_bit(self) -> None:
        index = {"run.sh": RemoteEntry(sha=git_blob_sha(b"old"), mode="100755")}
        item = uploaded_item(classify_file("run.sh", b"new", index), "f" * 40)
        assert item.mode == "100755"


class TestRemoteOnly:
    def test_managed_deleted_unmanaged_preserved(self) -> None:
        index = {
            "wp-content/plugins/gone.php": RemoteEntry(sha="1" * 40, mode="100644"),
            "wp-content/plugins/kept.php": RemoteEntry(sha="2" * 40, mode="100644"),
            "README.md": RemoteEntry(sha="3" * 40, mode="100644"),
        }
        plan = classify_remote_only(index, ["wp-content/plugins/kept.php"], ["wp-content/plugins"])
        assert plan.deleted == ["wp-content/plugins/gone.php"]
        assert [item.path for item in plan.preserved] == ["README.md"]

    def test_unmanaged_submodule_is_preserved(self) -> None:
        index = {
            "vendor/lib": RemoteEntry(sha="c" * 40, mode="160000", type="commit"),
            "wp-content/plugins/lib": RemoteEntry(sha="d" * 40, mode="160000", type="commit"),
        }
        plan = classify_remote_only(index, [], ["wp-content/plugins"])
        assert plan.deleted == ["wp-content/plugins/lib"]
        assert plan.preserved == [
            TreeItem(path="vendor/lib", mode="160000", type="commit", sha="c" * 40)
        ]


class TestComposeTree:
    def test_combines_pending_and_preserved_sorted(self) -> None:
        index = {
            "z-notes.txt": RemoteEntry(sha="3" * 40, mode="100644"),
            "p/old.php": RemoteEntry(sha="4" * 40, mode="100644"),
        }
        pending = [
            TreeItem(path="p/b.php", sha="b" * 40),
            TreeItem(path="p/a.php", sha="a" * 40),
        ]
        items, plan = compose_tree(pending, index, ["p/a.php", "p/b.php"], ["p"])
        assert [i.path for i in items] == ["p/a.php", "p/b.php", "z-notes.txt"]
        assert plan.deleted == ["p/old.php"]

    def test_failed_file_keeps_remote_entry(self) -> None:
        index = {"p/a.php": RemoteEntry(sha="1" * 40, mode="100644")}
        items, plan = compose_tree([], index, ["p/a.php"], ["p"], failed_paths=["p/a.php"])
        assert items == [TreeItem(path="p/a.php", sha="1" * 40)]
        assert plan.deleted == []

    def test_emptied_file_drops_out(self) -> None:
        index = {"p/a.php": RemoteEntry(sha="1" * 40, mode="100644")}
        items, plan = compose_tree([], index, ["p/a.php"], ["p"])
        assert items == []
        assert plan.deleted == []


class TestMatchesRemote:
    def test_identical(self) -> None:
        index = {"a": RemoteEntry(sha="1" * 40, mode="100644")}
        assert matches_remote([TreeItem(path="a", sha="1" * 40)], index)

    def test_mode_change_is_a_difference(self) -> None:
        index = {"a": RemoteEntry(sha="1" * 40, mode="100755")}
        assert not matches_remote([TreeItem(path="a", sha="1" * 40)], index)

    def test_preserved_submodule_matches(self) -> None:
        index = {"vendor/lib": RemoteEntry(sha="c" * 40, mode="160000", type="commit")}
        items, _ = compose_tree([], index, [], ["p"])
        assert matches_remote(items, index)

    def test_deletion_is_a_difference(self) -> None:
        index = {
            "a": RemoteEntry(sha="1" * 40, mode="100644"),
            "b": RemoteEntry(sha="2" * 40, mode="100644"),
        }
        assert not matches_remote([TreeItem(path="a", sha="1" * 40)], index)


class TestComputePreview:
    def test_classifies_every_bucket(self, site_root: Path) -> None:
        write_files(
            site_root,
            {"p/new.php": "new", "p/same.php": "same", "p/edit.php": "v2", "p/empty.php": ""},
        )
        rels = ["p/new.php", "p/same.php", "p/edit.php", "p/empty.php"]
        files = {rel: site_root / rel for rel in rels}
        index = {
            "p/same.php": RemoteEntry(sha=git_blob_sha(b"same"), mode="100644"),
            "p/edit.php": RemoteEntry(sha=git_blob_sha(b"v1"), mode="100644"),
            "p/removed.php": RemoteEntry(sha="9" * 40, mode="100644"),
            "other/keep.txt": RemoteEntry(sha="8" * 40, mode="100644"),
        }
        preview = compute_preview(files, index, ["p"])
        assert preview.new == ["p/new.php"]
        assert preview.changed == ["p/edit.php"]
        assert preview.unchanged == ["p/same.php"]
        assert preview.empty == ["p/empty.php"]
        assert preview.deleted == ["p/removed.php"]
        assert preview.preserved == ["other/keep.txt"]

    def test_unreadable_file(self, site_root: Path) -> None:
        preview = compute_preview({"p/missing.php": site_root / "p/missing.php"}, {}, ["p"])
        assert preview.unreadable == ["p/missing.php"]
