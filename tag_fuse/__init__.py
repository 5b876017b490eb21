"""tag-fuse: browse and edit file tags through any file manager."""
