"""
Modules that fetch file contents from the server and cache them on the local disk.

Reading a file from subfs means reading a stream from the Subsonic server, which is by
far the most expensive operation of the file system. Two mechanisms keep the number of
streams down.

The first is deduplication of concurrent fetches. Media players, file managers and
thumbnailers tend to open the same file at roughly the same time, and every read of a
file maps onto a fetch of its entire contents. Only the first reader actually opens a
stream. Every other reader of the same contents waits for that fetch to complete and
receives the very same bytes.

The second is a disk cache with a fixed budget. Fetched contents are written to
temporary files as long as they fit within the budget and are not excessively large
(large videos would exhaust the budget in one go). There is no LRU or similar
reclamation: the cache is meant to speed up repeated access to the same files within a
session, not to be a persistent mirror. It's purged when the file system is unmounted.
"""

from .cache import StreamCache
from .common import CancellationToken

__all__ = [
    "CancellationToken",
    "StreamCache",
]
