"""Tests for TOML persistence of the tag index."""

import threading
import tomllib

import pytest

from tag_fuse.index import TagIndex
from tag_fuse.tag_store import TagStore


def _populated():
    index = TagIndex()
    clip = index.add_file("clip.mp4")
    clip2 = index.add_file("clip2.mp4")
    index.add_file("notes.txt")
    index.add_tag(clip, "movie")
    index.add_tag(clip2, "movie")
    index.add_tag(clip, "funny")
    index.create_tag("pending")
    return index


class TestTagStore:
    """Tests for TagStore load/save."""

    def test_missing_file_gives_empty_index(self, tmp_path):
        index = TagStore(tmp_path / "tags.toml").load()
        assert index.all_files() == set()
        assert index.all_tags() == set()

    def test_save_then_load(self, tmp_path):
        store = TagStore(tmp_path / "tags.toml")
        index = _populated()
        store.save(index.snapshot())
        loaded = store.load()
        assert loaded == index
        assert loaded.has_tag("pending")

    def test_saved_document_layout(self, tmp_path):
        path = tmp_path / "tags.toml"
        TagStore(path).save(_populated().snapshot())
        with open(path, "rb") as f:
            data = tomllib.load(f)
        assert data["files"]["1"] == "clip.mp4"
        assert data["tags"]["movie"] == [1, 2]
        assert data["tags"]["pending"] == []
        assert data["next_file_id"] == 4

    def test_save_creates_parent_dirs(self, tmp_path):
        path = tmp_path / "mounts" / "abc" / "tags.toml"
        TagStore(path).save(_populated().snapshot())
        assert path.exists()
        assert list(path.parent.glob("*.tmp")) == []

    def test_save_replaces_previous(self, tmp_path):
        store = TagStore(tmp_path / "tags.toml")
        index = _populated()
        store.save(index.snapshot())
        index.delete_tag("funny")
        store.save(index.snapshot())
        assert not store.load().has_tag("funny")

    def test_loaded_index_does_not_reuse_ids(self, tmp_path):
        store = TagStore(tmp_path / "tags.toml")
        index = _populated()
        index.omit_file(index.file_id("notes.txt"))
        store.save(index.snapshot())
        assert store.load().add_file("new.txt") == 4

    def test_corrupt_file_is_moved_aside(self, tmp_path):
        path = tmp_path / "tags.toml"
        path.write_text("this is [not toml")
        index = TagStore(path).load()
        assert index.all_files() == set()
        assert not path.exists()
        assert (tmp_path / "tags.toml.corrupt").read_text() == "this is [not toml"

    def test_wrong_types_count_as_corrupt(self, tmp_path):
        path = tmp_path / "tags.toml"
        path.write_text('[files]\nabc = "clip.mp4"\n')
        index = TagStore(path).load()
        assert index.all_files() == set()
        assert (tmp_path / "tags.toml.corrupt").exists()

    def test_wrong_structure_counts_as_corrupt(self, tmp_path):
        path = tmp_path / "tags.toml"
        path.write_text('tags = "oops"\n')
        index = TagStore(path).load()
        assert index.all_tags() == set()
        assert (tmp_path / "tags.toml.corrupt").exists()

    def test_tag_members_must_be_a_list(self, tmp_path):
        path = tmp_path / "tags.toml"
        path.write_text('[files]\n1 = "clip.mp4"\n\n[tags]\nmovie = 1\n')
        index = TagStore(path).load()
        assert index.all_files() == set()
        assert (tmp_path / "tags.toml.corrupt").exists()

    def test_failed_save_leaves_no_temp_file(self, tmp_path):
        store = TagStore(tmp_path / "tags.toml")
        snapshot = _populated().snapshot()
        snapshot.files[1] = object()
        with pytest.raises(TypeError):
            store.save(snapshot)
        assert list(tmp_path.iterdir()) == []

    def test_concurrent_saves_use_separate_temp_files(self, tmp_path):
        store = TagStore(tmp_path / "tags.toml")
        snapshot = _populated().snapshot()
        errors = []

        def writer():
            try:
                for _ in range(20):
                    store.save(snapshot)
            except OSError as e:
                errors.append(e)

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert errors == []
        assert store.load() == _populated()
        assert list(tmp_path.glob("*.tmp")) == []
