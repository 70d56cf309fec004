"""
Module that builds the virtual namespace of directories and files from the catalog.

Nothing about the namespace is stored permanently. Every time a directory is listed, its
contents are retrieved from the Subsonic server and the name table of that directory is
rebuilt from scratch. Looking up a name therefore requires that its parent directory
has been listed before, which is always the case for paths that the kernel resolves
after a readdir() and for paths that a user navigates to one component at a time.
"""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from enum import auto, Enum
import threading
from typing import Dict, List, NamedTuple, Optional, Tuple, Union

import fasteners

from subfs.config import StreamConfig
from subfs.filesystem.common import NotFound
from subfs.logger import log
import subfs.subsonic as subsonic

# Characters that can't be part of a single path segment.
BAD_CHARACTERS = ("/", "\\")


class ContentKind(Enum):
    """Kind of contents of a file, which determines how it's streamed."""

    LOSSLESS = auto()
    TRANSCODED = auto()
    VIDEO = auto()
    COVER_ART = auto()


@dataclass(frozen=True)
class Directory:
    """
    Directory in the namespace.

    The root directory has no remote ID. All other directories are either artists from
    the indexes or directories from a music directory listing.
    """

    id: Optional[str]
    path: str = ""

    @property
    def is_root(self) -> bool:
        """Return whether this is the root of the namespace."""
        return self.id is None


@dataclass(frozen=True)
class File:
    """
    File in the namespace.

    The size is the size reported by the server, or an estimate if the server doesn't
    know it upfront (transcodes, videos) or at all (cover art). Estimated sizes are only
    replaced by the actual size once the contents have been fetched.
    """

    id: str
    name: str
    size: int
    created: float
    kind: ContentKind
    estimated: bool = False

    @property
    def key(self) -> Tuple[ContentKind, str]:
        """
        Return the key that identifies the contents of this file.

        The kind is part of the key because the raw and transcoded variants of a track
        share the same ID, and cover art IDs may overlap with media IDs.
        """
        return (self.kind, self.id)


Node = Union[Directory, File]

ROOT = Directory(id=None, path="")


class DirectoryEntry(NamedTuple):
    """Named node as returned by a directory listing."""

    name: str
    node: Node


def sanitize(name: str) -> str:
    """Replace characters in a name that would make it an invalid path segment."""
    for c in BAD_CHARACTERS:
        name = name.replace(c, "_")

    return name


def estimate_transcoded_size(duration: int, bitrate: int = 320) -> int:
    """
    Estimate the size in bytes of a transcode with the given duration in seconds.

    The estimate assumes constant bitrate encoding at the given bitrate in kbps.
    """
    return duration * bitrate * 1024 // 8


def parse_created(value: Optional[str]) -> float:
    """Convert a Subsonic creation timestamp to a UNIX timestamp."""
    if not value:
        return 0.0

    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"

        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        log.debug(f"unparseable creation timestamp {value}")
        return 0.0


class NameTables:
    """
    Collection of the name -> node tables of all listed directories.

    The tables are shared by all file system threads. Lookups vastly outnumber listings,
    so they're protected by a reader-writer lock.
    """

    def __init__(self) -> None:
        """Instantiate empty name tables."""
        self._tables: Dict[Optional[str], Dict[str, Node]] = {}
        self._lock = fasteners.ReaderWriterLock()

    def replace(self, directory: Directory, table: Dict[str, Node]) -> None:
        """Replace the name table of a directory with the table of a new listing."""
        with self._lock.write_lock():
            self._tables[directory.id] = table

    def get(self, directory: Directory, name: str) -> Optional[Node]:
        """Find a node by name in the current table of a directory."""
        with self._lock.read_lock():
            table = self._tables.get(directory.id)

            if table is None:
                return None

            return table.get(name)

    def __len__(self) -> int:
        with self._lock.read_lock():
            return len(self._tables)


class Namespace:
    """
    Builder of the virtual directory tree.

    The root lists all artists from the indexes of the server. Every other directory
    lists the contents of its music directory:

    * Sub-directories (typically albums)
    * Tracks, once in their original format and once in their transcoded format if the
    server has a transcoding configured for it
    * Videos, transcoded to a fixed resolution
    * One file per distinct cover art referenced by the above
    """

    def __init__(
        self,
        client: subsonic.SubsonicClient,
        tables: NameTables,
        config: Optional[StreamConfig] = None,
    ) -> None:
        """Instantiate the namespace for the given server."""
        self._client = client
        self._tables = tables
        self._config = config or StreamConfig()

        self._prefetch: Optional[Future] = None
        self._prefetch_lock = threading.Lock()

    def prefetch_indexes(self) -> None:
        """
        Start retrieving the indexes in the background.

        The first listing of the root directory will use the result instead of making its
        own request. This hides the latency of the (typically slowest) indexes call when
        a file system is browsed right after mounting.
        """
        future: Future = Future()

        def fetch() -> None:
            try:
                future.set_result(self._client.get_indexes())
            except Exception as e:
                future.set_exception(e)

        with self._prefetch_lock:
            self._prefetch = future

        threading.Thread(target=fetch, daemon=True).start()

    def list_directory(self, directory: Directory) -> List[DirectoryEntry]:
        """List the contents of a directory and make them available for lookup."""
        if directory.is_root:
            return self.list_root()

        try:
            contents = self._client.get_music_directory(directory.id)
        except subsonic.UpstreamUnavailable as e:
            log.error(f"failed to retrieve directory {directory.id}: {e}")
            raise NotFound(directory.path)

        table: Dict[str, Node] = {}
        cover_art: List[str] = []

        def add_cover_art(id: Optional[str]) -> None:
            if id and id != "0" and id not in cover_art:
                cover_art.append(id)

        for child in contents.directories:
            name = sanitize(child.title)
            table[name] = Directory(id=child.id, path=f"{directory.path}{name}/")

            add_cover_art(child.cover_art)

        for child in contents.audio:
            for name, node in self._audio_files(child):
                table[name] = node

            add_cover_art(child.cover_art)

        for child in contents.videos:
            name = sanitize(f"{child.title}.{child.suffix}")
            table[name] = File(
                id=child.id,
                name=name,
                size=child.size,
                created=parse_created(child.created),
                kind=ContentKind.VIDEO,
                estimated=True,
            )

            add_cover_art(child.cover_art)

        for id in cover_art:
            name = sanitize(f"{id}.jpg")
            table[name] = File(
                id=id,
                name=name,
                size=0,
                created=0.0,
                kind=ContentKind.COVER_ART,
                estimated=True,
            )

        self._tables.replace(directory, table)

        return [DirectoryEntry(name, node) for name, node in table.items()]

    def _audio_files(self, child: subsonic.Child) -> List[Tuple[str, File]]:
        """
        Create the files for a track.

        The original is always available with the size reported by the server. The
        transcoded variant only exists if the server reports a transcoded suffix and its
        size has to be estimated.
        """
        variants = [
            (child.suffix, child.size, ContentKind.LOSSLESS),
            (child.transcoded_suffix, 0, ContentKind.TRANSCODED),
        ]

        created = parse_created(child.created)
        files = []

        for suffix, size, kind in variants:
            if not suffix:
                continue

            estimated = size == 0

            if estimated:
                size = estimate_transcoded_size(
                    child.duration, self._config.estimate_bitrate
                )

            name = sanitize(
                f"{child.track:02d} - {child.artist} - {child.title}.{suffix}"
            )

            node = File(
                id=child.id,
                name=name,
                size=size,
                created=created,
                kind=kind,
                estimated=estimated,
            )
            files.append((name, node))

        return files

    def list_root(self) -> List[DirectoryEntry]:
        """List the artists of all indexes, in the order returned by the server."""
        indexes = self._take_prefetched_indexes()

        if indexes is None:
            try:
                indexes = self._client.get_indexes()
            except subsonic.UpstreamUnavailable as e:
                log.error(f"failed to retrieve indexes: {e}")
                raise NotFound("/")

        table: Dict[str, Node] = {}

        for index in indexes:
            for artist in index.artist:
                name = sanitize(artist.name)
                table[name] = Directory(id=artist.id, path=f"{name}/")

        self._tables.replace(ROOT, table)

        return [DirectoryEntry(name, node) for name, node in table.items()]

    def _take_prefetched_indexes(self) -> Optional[List[subsonic.Index]]:
        """Wait for and consume the result of prefetch_indexes(), if there is one."""
        with self._prefetch_lock:
            prefetch, self._prefetch = self._prefetch, None

        if prefetch is None:
            return None

        try:
            return prefetch.result()
        except subsonic.UpstreamUnavailable as e:
            log.warning(f"failed to prefetch indexes: {e}")
            return None

    def lookup(self, directory: Directory, name: str) -> Node:
        """Find a node by name in the current listing of a directory."""
        node = self._tables.get(directory, name)

        if node is None:
            raise NotFound(name)

        return node

    def resolve(self, path: str) -> Node:
        """Find the node for an absolute path within the namespace."""
        node: Node = ROOT

        for name in path.split("/"):
            if not name:
                continue

            if not isinstance(node, Directory):
                raise NotFound(path)

            node = self.lookup(node, name)

        return node
