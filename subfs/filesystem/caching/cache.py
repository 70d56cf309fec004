"""Module that implements fetching and caching of file contents."""

from __future__ import annotations

from concurrent.futures import Future, TimeoutError as FutureTimeoutError
import os
import tempfile
import threading
import time
from typing import Dict, Optional, Set, Tuple

from subfs.config import CacheConfig, StreamConfig
from subfs.filesystem.caching.common import (
    CacheEntry,
    CancellationToken,
    InFlightFetch,
)
from subfs.filesystem.common import CacheIOError, Interrupted, NotFound
from subfs.filesystem.namespace import ContentKind, File
from subfs.logger import log, megabytes
import subfs.subsonic as subsonic

Key = Tuple[ContentKind, str]

# Interval in seconds at which waiting readers check their cancellation token.
POLL_INTERVAL = 0.1

# Minimum interval in seconds between download progress messages.
PROGRESS_INTERVAL = 1.0


class StreamCache:
    """
    Class that fetches file contents from the server and caches them on disk.

    Contents are always fetched in their entirety, because media players tend to read
    a file from start to end and the streaming endpoints don't support ranges for
    transcodes anyway.

    Every fetch is deduplicated: while contents are being fetched, all other readers of
    the same contents wait for that fetch instead of starting their own. The fetch runs
    in a background thread so that it completes (and the cache benefits from it) even if
    the reader that started it is interrupted.

    Fetched contents are admitted to the disk cache if they fit within the total budget
    and are not larger than the per-item limit. Admitted contents are never evicted to
    make room for others. They're only dropped when their temporary file turns out to
    be missing, or when the cache is purged on shutdown.
    """

    def __init__(
        self,
        client: subsonic.SubsonicClient,
        max_size: int,
        config: Optional[CacheConfig] = None,
        stream_config: Optional[StreamConfig] = None,
        temp_dir: Optional[str] = None,
    ) -> None:
        """Instantiate an empty cache with the given budget in bytes."""
        self._client = client
        self._max_size = max_size
        self._config = config or CacheConfig()
        self._stream_config = stream_config or StreamConfig()
        self._temp_dir = temp_dir

        # Temporary files are scoped to this process to avoid clashing with other
        # instances using the same temporary directory.
        self._prefix = f"{self._config.prefix}-{os.getpid()}-"

        # Everything below is protected by the lock.
        self._lock = threading.Lock()
        self._entries: Dict[Key, CacheEntry] = {}
        self._in_flight: Dict[Key, InFlightFetch] = {}
        self._realized: Dict[Key, int] = {}
        self._usage = 0
        self._tasks: Set[threading.Thread] = set()
        self._closed = False

    @property
    def max_size(self) -> int:
        """Return the cache budget in bytes."""
        return self._max_size

    @property
    def usage(self) -> int:
        """Return the total number of bytes of contents being cached."""
        with self._lock:
            return self._usage

    def count(self) -> int:
        """Return the number of cached entries."""
        with self._lock:
            return len(self._entries)

    def in_flight(self) -> int:
        """Return the number of fetches that are currently running."""
        with self._lock:
            return len(self._in_flight)

    def storage_paths(self) -> Set[str]:
        """Return the paths of all temporary files with cached contents."""
        with self._lock:
            return {entry.storage for entry in self._entries.values()}

    def size_of(self, file: File) -> int:
        """
        Return the size of a file.

        This is the size of the contents once they have been fetched and the size
        declared by the namespace (possibly an estimate) before that.
        """
        with self._lock:
            return self._realized.get(file.key, file.size)

    def fetch_content(
        self, file: File, token: Optional[CancellationToken] = None
    ) -> bytes:
        """
        Retrieve the contents of a file from the disk cache or the server.

        Raises Interrupted if the token is cancelled while waiting for a fetch, and
        NotFound if the contents could not be fetched from the server.
        """
        token = token or CancellationToken()

        while True:
            data = self._read_cached(file)

            if data is not None:
                return data

            future = self._join_or_start(file)

            # Contents were admitted in the meanwhile
            if future is None:
                continue

            try:
                data = self._wait(file, future, token)
            except subsonic.UpstreamUnavailable as e:
                raise NotFound(file.name) from e

            if data is not None:
                return data

            log.debug(f"still waiting for fetch: [{file.id}] {file.name}")

    def _read_cached(self, file: File) -> Optional[bytes]:
        """
        Read contents from the disk cache.

        If the temporary file has disappeared (or can't be read for another reason) then
        the entry is evicted and the contents need to be fetched again.
        """
        with self._lock:
            entry = self._entries.get(file.key)

        if entry is None:
            return None

        try:
            with open(entry.storage, "rb") as f:
                return f.read()
        except OSError as e:
            log.warning(f"cache missing: [{file.id}] {file.name} ({e})")
            self._evict(file.key, entry)
            return None

    def _evict(self, key: Key, entry: CacheEntry) -> None:
        """Drop a cache entry and its temporary file, if it still exists."""
        with self._lock:
            # Another reader may have evicted it already
            if self._entries.get(key) is not entry:
                return

            del self._entries[key]
            self._usage -= entry.size
            usage = self._usage

        try:
            os.remove(entry.storage)
        except FileNotFoundError:
            # Most likely the reason for evicting it in the first place
            pass
        except OSError as e:
            log.error(f"failed to remove {entry.storage}: {e}")

        log.info(
            f"cache use: {megabytes(usage):0.3f} / {megabytes(self._max_size):0.3f} MB"
            f" (-{megabytes(entry.size):0.3f} MB)"
        )

    def _join_or_start(self, file: File) -> Optional[Future]:
        """
        Join the fetch of a file's contents or start it if there is none.

        Returns None if the contents have been admitted to the cache in the meanwhile.
        """
        with self._lock:
            if file.key in self._entries:
                return None

            in_flight = self._in_flight.get(file.key)

            if in_flight is not None:
                log.debug(f"joining fetch: [{file.id}] {file.name}")
                return in_flight.future

            if self._closed:
                raise NotFound(file.name)

            future: Future = Future()
            self._in_flight[file.key] = InFlightFetch(future)

            t = threading.Thread(
                target=self._run_fetch, args=(file, future), daemon=True
            )
            self._tasks.add(t)

        t.start()

        return future

    def _wait(
        self, file: File, future: Future, token: CancellationToken
    ) -> Optional[bytes]:
        """
        Wait for a fetch to complete within the fan-out window.

        Returns None if the window has passed without the fetch completing, in which case
        the caller should start over.
        """
        deadline = time.monotonic() + self._config.fanout_timeout

        while True:
            if token.cancelled:
                log.debug(f"interrupted while waiting: [{file.id}] {file.name}")
                raise Interrupted(file.name)

            remaining = deadline - time.monotonic()

            if remaining <= 0:
                return None

            try:
                return future.result(timeout=min(POLL_INTERVAL, remaining))
            except FutureTimeoutError:
                continue

    def _run_fetch(self, file: File, future: Future) -> None:
        """Fetch contents in a background thread and make them available."""
        try:
            self._fetch(file, future)
        finally:
            with self._lock:
                self._tasks.discard(threading.current_thread())

    def _fetch(self, file: File, future: Future) -> None:
        """
        Fetch contents, broadcast them to all waiting readers and try to cache them.

        The fetch stays registered until the contents have been admitted (or refused),
        so that readers arriving in the meanwhile join the completed fetch rather than
        starting another one.
        """
        try:
            data = self._download(file)
        except Exception as e:
            log.error(f"failed to fetch [{file.id}] {file.name}: {e}")

            with self._lock:
                del self._in_flight[file.key]

            future.set_exception(e)
            return

        with self._lock:
            self._realized[file.key] = len(data)

        future.set_result(data)

        try:
            self._admit(file, data)
        finally:
            with self._lock:
                del self._in_flight[file.key]

    def _download(self, file: File) -> bytes:
        """Read the entire stream of a file's contents into memory."""
        with self._open_stream(file) as stream:
            chunks = []
            total = 0
            last_report = time.monotonic()

            # The announced length is exact, unlike the estimated size of transcodes.
            expected = stream.length or file.size

            for chunk in stream.chunks():
                chunks.append(chunk)
                total += len(chunk)

                now = time.monotonic()

                if now - last_report >= PROGRESS_INTERVAL:
                    last_report = now
                    log.debug(self._progress(file, total, expected))

        log.info(f"closing stream: [{file.id}] {file.name}")

        return b"".join(chunks)

    @staticmethod
    def _progress(file: File, total: int, expected: int) -> str:
        """Describe the progress of a download."""
        if expected > 0:
            percent = min(100, total * 100 // expected)
            return (
                f"[{file.id}] [{percent:03d}%] {megabytes(total):0.3f} / "
                f"{megabytes(expected):0.3f} MB"
            )
        else:
            return f"[{file.id}] {megabytes(total):0.3f} MB"

    def _open_stream(self, file: File) -> subsonic.Stream:
        """
        Open the stream for a file depending on the kind of contents.

        Lossless audio is downloaded in its original form if the user is permitted to
        download files, and falls back to the (transcoded) stream otherwise.
        """
        if file.kind == ContentKind.COVER_ART:
            log.info(f"opening art stream: [{file.id}] {file.name}")
            return self._client.get_cover_art(file.id)
        elif file.kind == ContentKind.LOSSLESS:
            try:
                stream = self._client.download(file.id)
            except subsonic.NotAuthorized:
                log.info(f"opening transcoded audio stream: [{file.id}] {file.name}")
                return self._client.stream(file.id)

            log.info(f"opening audio stream: [{file.id}] {file.name}")
            return stream
        elif file.kind == ContentKind.VIDEO:
            size = self._stream_config.video_size
            log.info(f"opening video stream: [{file.id}] {file.name} [{size}]")
            return self._client.stream(file.id, size)
        else:
            log.info(f"opening transcoded audio stream: [{file.id}] {file.name}")
            return self._client.stream(file.id)

    def _refusal(self, size: int) -> Optional[str]:
        """
        Check if contents of the given size may be admitted to the cache.

        Returns the reason for refusing them, or None if they may be admitted. Must be
        called with the lock held.
        """
        if self._closed:
            return "cache closed"
        elif self._usage >= self._max_size:
            return f"cache full ({megabytes(self._max_size):0.0f} MB)"
        elif self._usage + size > self._max_size:
            return f"file will overflow cache ({megabytes(size):0.3f} MB)"
        elif size > self._config.max_item_size:
            return (
                f"file too large ({megabytes(size):0.3f} > "
                f"{megabytes(self._config.max_item_size):0.0f} MB)"
            )
        else:
            return None

    def _admit(self, file: File, data: bytes) -> bool:
        """
        Write contents to the disk cache if the admission rules allow it.

        The rules are checked again after writing because other contents may have been
        admitted in the meanwhile. Refused contents leave no file behind.
        """
        size = len(data)

        with self._lock:
            reason = self._refusal(size)

        if reason:
            log.info(f"{reason}, skipping local cache: [{file.id}] {file.name}")
            return False

        try:
            storage = self._write(data)
        except CacheIOError as e:
            log.error(f"failed to cache [{file.id}] {file.name}: {e}")
            return False

        with self._lock:
            reason = self._refusal(size)

            if reason is None and file.key not in self._entries:
                self._entries[file.key] = CacheEntry(storage=storage, size=size)
                self._usage += size
                usage = self._usage
            elif reason is None:
                reason = "already cached"

        if reason:
            log.info(f"{reason}, skipping local cache: [{file.id}] {file.name}")
            self._remove(storage)
            return False

        log.info(f"caching file: [{file.id}] {file.name}")
        log.info(
            f"cache use: {megabytes(usage):0.3f} / {megabytes(self._max_size):0.3f} MB"
            f" (+{megabytes(size):0.3f} MB)"
        )

        return True

    def _write(self, data: bytes) -> str:
        """Save contents to a new temporary file."""
        try:
            fd, storage = tempfile.mkstemp(prefix=self._prefix, dir=self._temp_dir)
        except OSError as e:
            raise CacheIOError(f"failed to create temporary file: {e}")

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        except OSError as e:
            self._remove(storage)
            raise CacheIOError(f"failed to write {storage}: {e}")

        return storage

    @staticmethod
    def _remove(storage: str) -> bool:
        """Remove a temporary file, logging rather than raising failures."""
        try:
            os.remove(storage)
            return True
        except OSError as e:
            log.error(f"failed to remove {storage}: {e}")
            return False

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Stop fetching and admitting new contents.

        Running fetches are waited upon for at most the given number of seconds and are
        abandoned after that. Contents of abandoned fetches are no longer admitted.
        """
        with self._lock:
            self._closed = True
            tasks = list(self._tasks)

        deadline = None if timeout is None else time.monotonic() + timeout

        for t in tasks:
            if deadline is None:
                t.join()
            else:
                t.join(max(0.0, deadline - time.monotonic()))

        abandoned = sum(1 for t in tasks if t.is_alive())

        if abandoned:
            log.warning(f"abandoning {abandoned} unfinished fetch(es)")

    def purge(self) -> int:
        """
        Remove all cached contents from the disk.

        Failures to remove individual files are logged and skipped. Returns the number of
        removed files.
        """
        with self._lock:
            entries = list(self._entries.values())

            self._entries.clear()
            self._usage = 0

        removed = sum(1 for entry in entries if self._remove(entry.storage))

        log.info(f"removed {removed} cached file(s)")

        return removed
