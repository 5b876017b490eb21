"""Tests for the FUSE adapter: lookup, readdir, file I/O and tag mutations."""

import errno
import os
import stat
import threading
from unittest.mock import MagicMock, patch

import pytest

import pyfuse3

from tag_fuse.config import MountConfig, PersistConfig, WriteProtectConfig
from tag_fuse.index import TagIndex
from tag_fuse.storage import SourceDirectory


# --- Helpers to build a TagFS over a temporary source directory ---

def _make_fs(tmp_path, store=None, mount_config=None):
    """clip.mp4 {movie, funny}, clip2.mp4 {movie}, notes.txt {}."""
    from tag_fuse.filesystem import TagFS

    source_dir = tmp_path / "src"
    source_dir.mkdir()
    (source_dir / "clip.mp4").write_bytes(b"0123456789")
    (source_dir / "clip2.mp4").write_bytes(b"abc")
    (source_dir / "notes.txt").write_text("hello")

    source = SourceDirectory(source_dir)
    index = TagIndex()
    index.reconcile(source.enumerate())
    index.add_tag(index.file_id("clip.mp4"), "movie")
    index.add_tag(index.file_id("clip.mp4"), "funny")
    index.add_tag(index.file_id("clip2.mp4"), "movie")
    return TagFS(index, source, store=store, mount_config=mount_config)


def _mock_ctx():
    """Create a mock pyfuse3.RequestContext."""
    ctx = MagicMock(spec=pyfuse3.RequestContext)
    ctx.uid = 1000
    ctx.gid = 1000
    ctx.pid = 12345
    return ctx


async def _listing(fs, inode, start_id=0):
    """Names readdir hands to the kernel for a directory inode."""
    names = []

    def reply(token, name, attr, next_id):
        names.append(name.decode("utf-8"))
        return True

    fh = await fs.opendir(inode, _mock_ctx())
    with patch("pyfuse3.readdir_reply", side_effect=reply):
        await fs.readdir(fh, start_id, MagicMock())
    return names


async def _ino(fs, parent, name):
    return (await fs.lookup(parent, name.encode("utf-8"), _mock_ctx())).st_ino


class TestLookup:
    """Tests for lookup and getattr."""

    @pytest.mark.anyio
    async def test_lookup_file_passes_source_attributes(self, tmp_path):
        fs = _make_fs(tmp_path)
        attr = await fs.lookup(fs.ROOT_INODE, b"clip.mp4", _mock_ctx())
        assert attr.st_size == 10
        assert stat.S_ISREG(attr.st_mode)
        assert attr.entry_timeout == 0

    @pytest.mark.anyio
    async def test_lookup_tag_is_directory(self, tmp_path):
        fs = _make_fs(tmp_path)
        attr = await fs.lookup(fs.ROOT_INODE, b"__movie__", _mock_ctx())
        assert stat.S_ISDIR(attr.st_mode)

    @pytest.mark.anyio
    async def test_lookup_missing(self, tmp_path):
        fs = _make_fs(tmp_path)
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.lookup(fs.ROOT_INODE, b"nope", _mock_ctx())
        assert exc_info.value.errno == errno.ENOENT

    @pytest.mark.anyio
    async def test_lookup_repeated_tag(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.lookup(movie, b"__movie__", _mock_ctx())
        assert exc_info.value.errno == errno.ENOENT

    @pytest.mark.anyio
    async def test_lookup_is_stable(self, tmp_path):
        fs = _make_fs(tmp_path)
        first = await _ino(fs, fs.ROOT_INODE, "__movie__")
        second = await _ino(fs, fs.ROOT_INODE, "__movie__")
        assert first == second

    @pytest.mark.anyio
    async def test_same_file_in_two_directories_gets_two_inodes(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        at_root = await _ino(fs, fs.ROOT_INODE, "clip.mp4")
        in_movie = await _ino(fs, movie, "clip.mp4")
        assert at_root != in_movie

    @pytest.mark.anyio
    async def test_lookup_under_file_is_enotdir(self, tmp_path):
        fs = _make_fs(tmp_path)
        clip = await _ino(fs, fs.ROOT_INODE, "clip.mp4")
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.lookup(clip, b"x", _mock_ctx())
        assert exc_info.value.errno == errno.ENOTDIR

    @pytest.mark.anyio
    async def test_getattr_stats_off_the_event_loop(self, tmp_path):
        fs = _make_fs(tmp_path)
        clip = await _ino(fs, fs.ROOT_INODE, "clip.mp4")
        real_stat = fs._storage.stat
        threads = []

        def stat_recording(name):
            threads.append(threading.get_ident())
            return real_stat(name)

        fs._storage.stat = stat_recording
        await fs.getattr(clip, _mock_ctx())
        assert threads and threading.get_ident() not in threads

    @pytest.mark.anyio
    async def test_vanished_source_file(self, tmp_path):
        fs = _make_fs(tmp_path)
        clip = await _ino(fs, fs.ROOT_INODE, "clip.mp4")
        os.unlink(tmp_path / "src" / "clip.mp4")
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.getattr(clip, _mock_ctx())
        assert exc_info.value.errno == errno.ENOENT


class TestReaddir:
    """Tests for directory listings."""

    @pytest.mark.anyio
    async def test_root_listing(self, tmp_path):
        fs = _make_fs(tmp_path)
        names = await _listing(fs, fs.ROOT_INODE)
        assert names == ["clip.mp4", "clip2.mp4", "notes.txt", "__funny__", "__movie__", "@all"]

    @pytest.mark.anyio
    async def test_movie_listing(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        assert await _listing(fs, movie) == ["clip.mp4", "clip2.mp4", "__funny__"]

    @pytest.mark.anyio
    async def test_movie_funny_listing(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        both = await _ino(fs, movie, "__funny__")
        assert await _listing(fs, both) == ["clip.mp4"]

    @pytest.mark.anyio
    async def test_alias_listing_has_no_alias(self, tmp_path):
        fs = _make_fs(tmp_path)
        alias = await _ino(fs, fs.ROOT_INODE, "@all")
        assert await _listing(fs, alias) == ["clip.mp4", "clip2.mp4", "notes.txt", "__funny__", "__movie__"]

    @pytest.mark.anyio
    async def test_resume_from_offset(self, tmp_path):
        fs = _make_fs(tmp_path)
        assert await _listing(fs, fs.ROOT_INODE, start_id=3) == ["__funny__", "__movie__", "@all"]

    @pytest.mark.anyio
    async def test_vanished_source_file_is_skipped(self, tmp_path):
        fs = _make_fs(tmp_path)
        os.unlink(tmp_path / "src" / "notes.txt")
        assert "notes.txt" not in await _listing(fs, fs.ROOT_INODE)

    @pytest.mark.anyio
    async def test_opendir_on_file(self, tmp_path):
        fs = _make_fs(tmp_path)
        clip = await _ino(fs, fs.ROOT_INODE, "clip.mp4")
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.opendir(clip, _mock_ctx())
        assert exc_info.value.errno == errno.ENOTDIR


class TestFileIO:
    """Tests for open/read/write/setattr pass-through."""

    @pytest.mark.anyio
    async def test_read_through_tag_directory(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        clip = await _ino(fs, movie, "clip.mp4")
        fi = await fs.open(clip, os.O_RDONLY, _mock_ctx())
        try:
            assert await fs.read(fi.fh, 2, 3) == b"234"
        finally:
            await fs.release(fi.fh)

    @pytest.mark.anyio
    async def test_write_reaches_source(self, tmp_path):
        fs = _make_fs(tmp_path)
        notes = await _ino(fs, fs.ROOT_INODE, "notes.txt")
        fi = await fs.open(notes, os.O_RDWR, _mock_ctx())
        try:
            assert await fs.write(fi.fh, 0, b"J") == 1
        finally:
            await fs.release(fi.fh)
        assert (tmp_path / "src" / "notes.txt").read_text() == "Jello"

    @pytest.mark.anyio
    async def test_open_directory_is_eisdir(self, tmp_path):
        fs = _make_fs(tmp_path)
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.open(fs.ROOT_INODE, os.O_RDONLY, _mock_ctx())
        assert exc_info.value.errno == errno.EISDIR

    @pytest.mark.anyio
    async def test_truncate(self, tmp_path):
        fs = _make_fs(tmp_path)
        clip = await _ino(fs, fs.ROOT_INODE, "clip.mp4")
        attr = pyfuse3.EntryAttributes()
        attr.st_size = 4
        fields = MagicMock(spec=pyfuse3.SetattrFields)
        fields.update_size = True
        result = await fs.setattr(clip, attr, fields, None, _mock_ctx())
        assert result.st_size == 4

    @pytest.mark.anyio
    async def test_create_not_supported(self, tmp_path):
        fs = _make_fs(tmp_path)
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.create(fs.ROOT_INODE, b"new.txt", 0o644, os.O_WRONLY, _mock_ctx())
        assert exc_info.value.errno == errno.ENOTSUP


class TestMutations:
    """Tests for rename/link/unlink/mkdir/rmdir through the adapter."""

    @pytest.mark.anyio
    async def test_rename_moves_file_between_tags(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        funny = await _ino(fs, fs.ROOT_INODE, "__funny__")
        clip2 = await _ino(fs, movie, "clip2.mp4")

        await fs.rename(movie, b"clip2.mp4", funny, b"clip2.mp4", 0, _mock_ctx())

        assert fs.index.tags_on(fs.index.file_id("clip2.mp4")) == {"funny"}
        assert await _ino(fs, funny, "clip2.mp4") == clip2
        assert "clip2.mp4" not in await _listing(fs, movie)

    @pytest.mark.anyio
    async def test_rename_tag_directory(self, tmp_path):
        fs = _make_fs(tmp_path)
        funny = await _ino(fs, fs.ROOT_INODE, "__funny__")
        await fs.rename(fs.ROOT_INODE, b"__funny__", fs.ROOT_INODE, b"__comedy__", 0, _mock_ctx())
        assert "__comedy__" in await _listing(fs, fs.ROOT_INODE)
        assert await _listing(fs, funny) == ["clip.mp4", "__movie__"]

    @pytest.mark.anyio
    async def test_rename_tag_updates_cached_subdirectories(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        movie_funny = await _ino(fs, movie, "__funny__")
        funny = await _ino(fs, fs.ROOT_INODE, "__funny__")
        funny_movie = await _ino(fs, funny, "__movie__")

        await fs.rename(fs.ROOT_INODE, b"__movie__", fs.ROOT_INODE, b"__film__", 0, _mock_ctx())

        assert await _listing(fs, movie_funny) == ["clip.mp4"]
        assert await fs.getxattr(movie_funny, fs.XATTR_FILTER, _mock_ctx()) == b"film\nfunny"
        assert await _listing(fs, funny_movie) == ["clip.mp4"]
        assert await _ino(fs, funny, "__film__") == funny_movie
        with pytest.raises(pyfuse3.FUSEError):
            await fs.lookup(funny, b"__movie__", _mock_ctx())

    @pytest.mark.anyio
    async def test_rename_exchange_not_supported(self, tmp_path):
        fs = _make_fs(tmp_path)
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.rename(fs.ROOT_INODE, b"__movie__", fs.ROOT_INODE, b"__funny__", 2, _mock_ctx())
        assert exc_info.value.errno == errno.ENOTSUP

    @pytest.mark.anyio
    async def test_rename_multi_tag_directory_is_einval(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.rename(movie, b"__funny__", fs.ROOT_INODE, b"__comedy__", 0, _mock_ctx())
        assert exc_info.value.errno == errno.EINVAL

    @pytest.mark.anyio
    async def test_link_adds_tags(self, tmp_path):
        fs = _make_fs(tmp_path)
        funny = await _ino(fs, fs.ROOT_INODE, "__funny__")
        notes = await _ino(fs, fs.ROOT_INODE, "notes.txt")
        attr = await fs.link(notes, funny, b"notes.txt", _mock_ctx())
        assert stat.S_ISREG(attr.st_mode)
        assert fs.index.tags_on(fs.index.file_id("notes.txt")) == {"funny"}

    @pytest.mark.anyio
    async def test_link_directory_is_eperm(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.link(movie, fs.ROOT_INODE, b"x", _mock_ctx())
        assert exc_info.value.errno == errno.EPERM

    @pytest.mark.anyio
    async def test_unlink_untags(self, tmp_path):
        fs = _make_fs(tmp_path)
        funny = await _ino(fs, fs.ROOT_INODE, "__funny__")
        await fs.unlink(funny, b"clip.mp4", _mock_ctx())
        assert fs.index.tags_on(fs.index.file_id("clip.mp4")) == {"movie"}
        assert (tmp_path / "src" / "clip.mp4").exists()

    @pytest.mark.anyio
    async def test_unlink_at_root_not_supported(self, tmp_path):
        fs = _make_fs(tmp_path)
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.unlink(fs.ROOT_INODE, b"clip.mp4", _mock_ctx())
        assert exc_info.value.errno == errno.ENOTSUP
        assert (tmp_path / "src" / "clip.mp4").exists()

    @pytest.mark.anyio
    async def test_mkdir_creates_pending_tag(self, tmp_path):
        fs = _make_fs(tmp_path)
        attr = await fs.mkdir(fs.ROOT_INODE, b"__todo__", 0o755, _mock_ctx())
        assert stat.S_ISDIR(attr.st_mode)
        assert "__todo__" in await _listing(fs, fs.ROOT_INODE)
        assert await _listing(fs, attr.st_ino) == []

    @pytest.mark.anyio
    async def test_mkdir_existing_is_eexist(self, tmp_path):
        fs = _make_fs(tmp_path)
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.mkdir(fs.ROOT_INODE, b"__movie__", 0o755, _mock_ctx())
        assert exc_info.value.errno == errno.EEXIST

    @pytest.mark.anyio
    async def test_rmdir_nonempty_not_supported(self, tmp_path):
        fs = _make_fs(tmp_path)
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.rmdir(fs.ROOT_INODE, b"__movie__", _mock_ctx())
        assert exc_info.value.errno == errno.ENOTSUP

    @pytest.mark.anyio
    async def test_rmdir_allowed_by_write_protect(self, tmp_path):
        config = MountConfig(path="", write_protect=WriteProtectConfig(allow_tag_delete=True))
        fs = _make_fs(tmp_path, mount_config=config)
        await fs.rmdir(fs.ROOT_INODE, b"__funny__", _mock_ctx())
        assert not fs.index.has_tag("funny")

    @pytest.mark.anyio
    async def test_failed_save_is_eio(self, tmp_path):
        store = MagicMock()
        store.save.side_effect = OSError(errno.EROFS, "Read-only file system")
        fs = _make_fs(tmp_path, store=store)
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.mkdir(fs.ROOT_INODE, b"__todo__", 0o755, _mock_ctx())
        assert exc_info.value.errno == errno.EIO
        assert fs.index.has_tag("todo")


class TestXattrs:
    """Tests for the tag extended attributes."""

    @pytest.mark.anyio
    async def test_file_tags(self, tmp_path):
        fs = _make_fs(tmp_path)
        clip = await _ino(fs, fs.ROOT_INODE, "clip.mp4")
        assert await fs.getxattr(clip, fs.XATTR_TAGS, _mock_ctx()) == b"funny\nmovie"
        assert await fs.listxattrs(clip, _mock_ctx()) == [fs.XATTR_TAGS]

    @pytest.mark.anyio
    async def test_directory_filter(self, tmp_path):
        fs = _make_fs(tmp_path)
        funny = await _ino(fs, fs.ROOT_INODE, "__funny__")
        both = await _ino(fs, funny, "__movie__")
        assert await fs.getxattr(both, fs.XATTR_FILTER, _mock_ctx()) == b"funny\nmovie"

    @pytest.mark.anyio
    async def test_unknown_attribute(self, tmp_path):
        fs = _make_fs(tmp_path)
        with pytest.raises(pyfuse3.FUSEError) as exc_info:
            await fs.getxattr(fs.ROOT_INODE, b"user.other", _mock_ctx())
        assert exc_info.value.errno == errno.ENODATA


class TestLifecycle:
    """Tests for forget, config reload and destroy."""

    @pytest.mark.anyio
    async def test_forget_drops_inode(self, tmp_path):
        fs = _make_fs(tmp_path)
        movie = await _ino(fs, fs.ROOT_INODE, "__movie__")
        await fs.forget([(movie, 1)])
        assert movie not in fs._inodes
        assert await _ino(fs, fs.ROOT_INODE, "__movie__") != movie

    def test_reload_config_updates_policies(self, tmp_path):
        fs = _make_fs(tmp_path, mount_config=MountConfig(path="/mnt/tags"))
        fuse_data = {"mounts": {"/mnt/tags": {
            "tags": {"show_empty_tags": True, "merge_on_rename": False},
            "write_protect": {"allow_tag_delete": True},
        }}}
        with patch("tag_fuse.filesystem.base.read_fuse_config", return_value=fuse_data):
            fs._reload_config()
        assert fs.resolver.show_empty_tags is True
        assert fs.translator.merge_on_rename is False
        assert fs.translator.allow_tag_delete is True

    @pytest.mark.anyio
    async def test_destroy_flushes_batched_edits(self, tmp_path):
        store = MagicMock()
        config = MountConfig(path="", persist=PersistConfig(save_delay=30))
        fs = _make_fs(tmp_path, store=store, mount_config=config)
        await fs.mkdir(fs.ROOT_INODE, b"__todo__", 0o755, _mock_ctx())
        store.save.assert_not_called()
        await fs.destroy()
        store.save.assert_called_once()
