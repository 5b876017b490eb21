"""
Configuration management for tag-fuse.

~/.config/tag-fuse/fuse.json holds one section per mountpoint:

    {
      "mounts": {
        "/mnt/tags": {
          "source": "/srv/media",
          "index_path": "",
          "tags": {"prefix": "__", "suffix": "__", "all_alias": "@all",
                   "show_empty_tags": false, "merge_on_rename": true},
          "write_protect": {"allow_tag_delete": false},
          "persist": {"save_delay": 0.0}
        }
      }
    }

Resolution (highest → lowest):
  1. CLI flags (--source, --index-file)
  2. fuse.json mount section
  3. Defaults
"""

import fcntl
import hashlib
import json
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)


# --- Data classes ---

@dataclass
class TagsConfig:
    """How tags are presented and renamed."""
    prefix: str = "__"
    suffix: str = "__"
    all_alias: str = "@all"
    show_empty_tags: bool = False
    merge_on_rename: bool = True

@dataclass
class WriteProtectConfig:
    """Protection against destructive tag operations.

    allow_tag_delete defaults to False: rmdir only removes tags that no file
    carries. When True, rmdir strips the tag from every file.
    """
    allow_tag_delete: bool = False

@dataclass
class PersistConfig:
    """When the tag index is written to disk.

    save_delay 0 saves after every mutation; a positive value batches saves
    and flushes them every save_delay seconds.
    """
    save_delay: float = 0.0

@dataclass
class MountConfig:
    """Configuration for a single FUSE mount point."""
    path: str
    source: str = ""
    index_path: str = ""
    tags: TagsConfig = field(default_factory=TagsConfig)
    write_protect: WriteProtectConfig = field(default_factory=WriteProtectConfig)
    persist: PersistConfig = field(default_factory=PersistConfig)

    def resolved_index_path(self) -> Path:
        """Index file location, defaulting to the per-mount data dir."""
        if self.index_path:
            return Path(self.index_path).expanduser()
        return get_mount_data_dir(self.path) / "tags.toml"


# --- Path helpers ---

def get_config_dir() -> Path:
    """Get tag-fuse config directory (~/.config/tag-fuse/)."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(xdg_config) / "tag-fuse"

def get_fuse_config_path() -> Path:
    """Get path to tag-fuse's config file."""
    return get_config_dir() / "fuse.json"

def get_fuse_data_dir() -> Path:
    """Get XDG data directory for tag-fuse state."""
    xdg_data = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(xdg_data) / "tag-fuse"

def get_mount_id(mountpoint: str) -> str:
    """Stable short hash of mountpoint path for per-mount data dirs."""
    return hashlib.sha256(mountpoint.encode()).hexdigest()[:12]

def get_mount_data_dir(mountpoint: str) -> Path:
    """Get per-mount data directory for the tag index."""
    return get_fuse_data_dir() / "mounts" / get_mount_id(mountpoint)


# --- Read/write fuse.json ---

def read_fuse_config() -> Optional[dict]:
    """Read fuse.json. Returns None if not found."""
    path = get_fuse_config_path()
    if not path.exists():
        return None
    try:
        with open(path, "r") as f:
            fcntl.flock(f, fcntl.LOCK_SH)
            try:
                return json.load(f)
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)
    except (json.JSONDecodeError, OSError) as e:
        log.warning(f"Could not read fuse config at {path}: {e}")
        return None

def write_fuse_config(data: dict) -> None:
    """Atomic write to fuse.json with file locking.

    Writes to a temp file, validates the roundtrip, then renames atomically.
    The flock is held through the rename so concurrent writers never see a
    partially-written state. Enforces 600 permissions.
    """
    path = get_fuse_config_path()
    tmp_path = path.with_suffix(".tmp")

    path.parent.mkdir(parents=True, exist_ok=True)

    content = json.dumps(data, indent=2) + "\n"
    roundtrip = json.loads(content)
    if roundtrip != data:
        raise ValueError("JSON roundtrip validation failed, refusing to write")

    with open(tmp_path, "w") as f:
        fcntl.flock(f, fcntl.LOCK_EX)
        try:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
            os.rename(tmp_path, path)
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)  # 600
        finally:
            fcntl.flock(f, fcntl.LOCK_UN)


# --- Mount sections ---

def mount_config_from_dict(mountpoint: str, data: dict) -> MountConfig:
    """Build a MountConfig from a fuse.json mount section."""
    tags = data.get("tags", {})
    wp = data.get("write_protect", {})
    persist = data.get("persist", {})
    return MountConfig(
        path=mountpoint,
        source=data.get("source", ""),
        index_path=data.get("index_path", ""),
        tags=TagsConfig(
            prefix=tags.get("prefix", "__"),
            suffix=tags.get("suffix", "__"),
            all_alias=tags.get("all_alias", "@all"),
            show_empty_tags=tags.get("show_empty_tags", False),
            merge_on_rename=tags.get("merge_on_rename", True),
        ),
        write_protect=WriteProtectConfig(
            allow_tag_delete=wp.get("allow_tag_delete", False),
        ),
        persist=PersistConfig(
            save_delay=float(persist.get("save_delay", 0.0)),
        ),
    )

def _mount_config_to_dict(mc: MountConfig) -> dict:
    """Serialize a MountConfig to a JSON-safe dict. Single source of truth."""
    return {
        "source": mc.source,
        "index_path": mc.index_path,
        "tags": {
            "prefix": mc.tags.prefix,
            "suffix": mc.tags.suffix,
            "all_alias": mc.tags.all_alias,
            "show_empty_tags": mc.tags.show_empty_tags,
            "merge_on_rename": mc.tags.merge_on_rename,
        },
        "write_protect": {"allow_tag_delete": mc.write_protect.allow_tag_delete},
        "persist": {"save_delay": mc.persist.save_delay},
    }


def normalize_fuse_config() -> bool:
    """Backfill missing config sections with defaults. Returns True if file was updated."""
    fuse_data = read_fuse_config()
    if not fuse_data or "mounts" not in fuse_data:
        return False

    changed = False
    default_dict = _mount_config_to_dict(MountConfig(path=""))

    for mount_data in fuse_data["mounts"].values():
        for section_key, section_defaults in default_dict.items():
            if section_key not in mount_data:
                mount_data[section_key] = section_defaults
                changed = True
            elif isinstance(section_defaults, dict):
                for k, v in section_defaults.items():
                    if k not in mount_data[section_key]:
                        mount_data[section_key][k] = v
                        changed = True

    if changed:
        write_fuse_config(fuse_data)
        log.info("Backfilled missing config sections with defaults")
    return changed


def load_mount_config(
    mountpoint: str,
    cli_source: Optional[str] = None,
    cli_index_path: Optional[str] = None,
) -> MountConfig:
    """Load the config for one mount, CLI flags taking priority."""
    normalize_fuse_config()
    fuse_data = read_fuse_config() or {}
    mount_data = fuse_data.get("mounts", {}).get(mountpoint)

    if mount_data is not None:
        config = mount_config_from_dict(mountpoint, mount_data)
    else:
        config = MountConfig(path=mountpoint)

    if cli_source:
        config.source = cli_source
    if cli_index_path:
        config.index_path = cli_index_path
    return config


def add_mount_to_config(mountpoint: str, mount_config: Optional[MountConfig] = None) -> None:
    """Add or replace a mount in fuse.json. Creates the file if it doesn't exist."""
    fuse_data = read_fuse_config() or {}
    fuse_data.setdefault("mounts", {})

    mc = mount_config or MountConfig(path=mountpoint)
    fuse_data["mounts"][mountpoint] = _mount_config_to_dict(mc)
    write_fuse_config(fuse_data)
