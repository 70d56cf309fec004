"""
Modules that expose a Subsonic catalog as a read-only local file system.

Subsonic servers organize a music library as a tree of artists, albums and tracks that
is navigated through a REST API. This tree maps naturally onto directories, which lets
media players, file managers and command line tools browse and play the library as if it
were stored locally, without making a copy of it first.

The file system is made up of three layers:

* The namespace (namespace.py) turns API responses into directories and files, with
names that are valid path segments and sizes that are known (or estimated) upfront.
* The stream cache ('caching' submodule) fetches the contents of files, making sure
that the same contents are never streamed more than once at a time, and keeps fetched
contents on the local disk, first come first served within a fixed budget.
* The FUSE file system (filesystem.py) ties these together and answers the calls of the
kernel, using the bindings in the 'fuse' submodule.

Nothing about the library is persisted. Directories are listed from the server every
time, and the disk cache is purged when the file system is unmounted.
"""

from .filesystem import SubsonicFileSystem
from .namespace import NameTables, Namespace

__all__ = [
    "NameTables",
    "Namespace",
    "SubsonicFileSystem",
]
