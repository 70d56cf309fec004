"""Module defining various global constants."""

# subfs version
VERSION = "1.0.0"

# Subsonic REST API version that subfs speaks.
# The server must report the same major version and at least this minor version.
API_VERSION = "1.8.0"

# Client name reported to the Subsonic server with every request.
CLIENT_NAME = "subfs"

# Exit code for fatal connect, mount and unmount failures.
SUBFS_ERROR_CODE = 1

# Name of the FUSE file system
FILESYSTEM_NAME = "subfs"
