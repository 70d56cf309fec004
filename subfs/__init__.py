"""Read-only FUSE file system for browsing and streaming a Subsonic media library."""
