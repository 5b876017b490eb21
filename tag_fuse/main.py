#!/usr/bin/env python3
"""
Tag FUSE Driver

Mounts a directory of files as a browsable tag hierarchy.

Usage:
    tag-fuse /mnt/tags --source ~/Videos
"""

import argparse
import logging
import sys

import pyfuse3
import trio

from .config import MountConfig, add_mount_to_config, load_mount_config
from .errors import StorageFailure
from .filesystem import TagFS
from .storage import SourceDirectory
from .tag_store import TagStore

log = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Mount a directory of files as a tag filesystem"
    )
    parser.add_argument(
        "mountpoint",
        help="Directory to mount the filesystem",
    )
    parser.add_argument(
        "--source", "-s",
        help="Directory holding the real files (default: from fuse.json)",
    )
    parser.add_argument(
        "--index-file",
        help="Tag index location (default: per-mount data directory)",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help="Remember source and index location in fuse.json for this mountpoint",
    )
    parser.add_argument(
        "--allow-other",
        action="store_true",
        help="Let other users access the mount (needs user_allow_other)",
    )
    parser.add_argument(
        "--no-unmount",
        action="store_true",
        help="Don't unmount when the process exits",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def build_filesystem(config: MountConfig) -> TagFS:
    """Load the tag index, reconcile it with the source directory, and wrap it."""
    index_path = config.resolved_index_path()
    store = TagStore(index_path)
    index = store.load()

    source = SourceDirectory(config.source, exclude={index_path.name})
    with index.lock.write():
        index.reconcile(source.enumerate())
        snapshot = index.snapshot()
    try:
        store.save(snapshot)
    except OSError as e:
        log.error(f"Could not save reconciled tag index to {index_path}: {e}")

    return TagFS(index, source, store=store, mount_config=config)


def main() -> None:
    args = parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_mount_config(args.mountpoint, cli_source=args.source,
                               cli_index_path=args.index_file)
    if not config.source:
        log.error("No source directory: pass --source or configure it in fuse.json")
        sys.exit(2)
    if args.save:
        add_mount_to_config(args.mountpoint, config)

    try:
        fs = build_filesystem(config)
    except StorageFailure as e:
        log.error(f"Cannot read source directory {config.source}: {e}")
        sys.exit(1)

    fuse_options = set(pyfuse3.default_options)
    fuse_options.add("fsname=tag-fuse")
    if args.allow_other:
        fuse_options.add("allow_other")
    if args.debug:
        fuse_options.add("debug")

    log.info(f"Mounting tags of {config.source} at {args.mountpoint}")
    log.info(f"Tag index: {config.resolved_index_path()}")

    pyfuse3.init(fs, args.mountpoint, fuse_options)

    async def _run():
        try:
            async with trio.open_nursery() as nursery:
                fs.set_nursery(nursery)
                await pyfuse3.main()
                nursery.cancel_scope.cancel()
        finally:
            await fs.destroy()

    try:
        trio.run(_run)
    except KeyboardInterrupt:
        log.info("Interrupted, unmounting...")
    finally:
        pyfuse3.close(unmount=not args.no_unmount)
        log.info("Unmounted" if not args.no_unmount else "Left mounted")


if __name__ == "__main__":
    main()
