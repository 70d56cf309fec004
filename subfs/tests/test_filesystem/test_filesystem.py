import ctypes
import errno
import os
import stat
import threading
import time
from unittest import mock

import pytest

from subfs.filesystem import NameTables, Namespace, SubsonicFileSystem
from subfs.filesystem.caching import StreamCache
from subfs.filesystem.filesystem import InterruptToken
from subfs.filesystem.fuse import FUSE, FuseConfig
from subfs.filesystem.fuse.fuse import fuse_file_info
from subfs.subsonic import Index, MusicDirectory
from subfs.subsonic.models import decode

TRACK = {
    "id": "100",
    "title": "Song",
    "artist": "Band",
    "track": 1,
    "suffix": "flac",
    "transcodedSuffix": "mp3",
    "size": 11,
    "duration": 60,
    "coverArt": "500",
    "created": "2020-01-01T00:00:00Z",
}

TRACK_PATH = "/Band/01 - Band - Song.flac"


class FakeStream:
    def __init__(self, data, gate=None):
        self._data = data
        self._gate = gate
        self.length = len(data)

    def chunks(self):
        if self._gate is not None:
            assert self._gate.wait(10)

        yield self._data

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        pass


@pytest.fixture
def client():
    client = mock.Mock()
    client.get_indexes.return_value = [
        decode(Index, {"name": "B", "artist": [{"id": "1", "name": "Band"}]})
    ]
    client.get_music_directory.return_value = decode(
        MusicDirectory,
        {"id": "1", "child": [{"id": "2", "title": "Album", "isDir": True}, TRACK]},
    )
    client.download.side_effect = lambda id: FakeStream(b"hello world")
    client.stream.side_effect = lambda id: FakeStream(b"transcoded")
    client.get_cover_art.side_effect = lambda id: FakeStream(b"jpeg")
    return client


@pytest.fixture
def cache(client, tmp_path):
    cache = StreamCache(client, 1024, temp_dir=str(tmp_path))
    yield cache
    cache.close()
    cache.purge()


@pytest.fixture
def fs(client, cache):
    namespace = Namespace(client, NameTables())
    fs = SubsonicFileSystem(namespace, cache, interrupt_check=lambda: False)

    fs.readdir("/")
    fs.readdir("/Band")

    return fs


def test_init_calls_mount_callback(client, cache):
    callback = mock.Mock()
    fs = SubsonicFileSystem(Namespace(client, NameTables()), cache, callback)

    fs.init()

    callback.assert_called_once()


def test_readdir_root(fs):
    assert fs.readdir("/") == [".", "..", "Band"]


def test_readdir(fs):
    assert fs.readdir("/Band") == [
        ".",
        "..",
        "Album",
        "01 - Band - Song.flac",
        "01 - Band - Song.mp3",
        "500.jpg",
    ]


def test_readdir_not_found(fs):
    with pytest.raises(FileNotFoundError) as e:
        fs.readdir("/Nobody")

    assert e.value.errno == errno.ENOENT


def test_readdir_file(fs):
    with pytest.raises(NotADirectoryError):
        fs.readdir(TRACK_PATH)


def test_lookup_requires_listing(client, cache):
    fs = SubsonicFileSystem(Namespace(client, NameTables()), cache)

    with pytest.raises(FileNotFoundError):
        fs.getattr("/Band", None)

    fs.readdir("/")

    assert stat.S_ISDIR(fs.getattr("/Band", None)["st_mode"])


def test_getattr_directory(fs):
    attr = fs.getattr("/", None)

    assert stat.S_ISDIR(attr["st_mode"])
    assert stat.S_IMODE(attr["st_mode"]) == 0o555


def test_getattr_file(fs):
    attr = fs.getattr(TRACK_PATH, None)

    assert stat.S_ISREG(attr["st_mode"])
    assert stat.S_IMODE(attr["st_mode"]) == 0o444
    assert attr["st_size"] == 11
    assert attr["st_mtime_ns"] == 1577836800 * 10 ** 9


def test_getattr_estimated_size(fs):
    attr = fs.getattr("/Band/01 - Band - Song.mp3", None)

    assert attr["st_size"] == 60 * 320 * 1024 // 8


def test_getattr_realized_size(fs):
    assert fs.getattr("/Band/500.jpg", None)["st_size"] == 0

    fh = fs.open("/Band/500.jpg", os.O_RDONLY)
    assert fs.read("/Band/500.jpg", fh, 0, 1024) == b"jpeg"
    fs.release("/Band/500.jpg", fh)

    assert fs.getattr("/Band/500.jpg", None)["st_size"] == 4


def test_read(fs):
    fh = fs.open(TRACK_PATH, os.O_RDONLY)

    assert fs.read(TRACK_PATH, fh, 0, 5) == b"hello"
    assert fs.read(TRACK_PATH, fh, 6, 100) == b"world"
    assert fs.read(TRACK_PATH, fh, 100, 10) == b""

    fs.release(TRACK_PATH, fh)


def test_read_fetches_once_per_handle(fs, client):
    fh = fs.open(TRACK_PATH, os.O_RDONLY)

    for offset in range(11):
        fs.read(TRACK_PATH, fh, offset, 1)

    fs.release(TRACK_PATH, fh)

    assert client.download.call_count == 1


def test_concurrent_reads(fs, client):
    handles = [fs.open(TRACK_PATH, os.O_RDONLY) for _ in range(5)]
    results = []

    def read(fh):
        results.append(fs.read(TRACK_PATH, fh, 0, 100))

    threads = [threading.Thread(target=read, args=(fh,)) for fh in handles]

    for t in threads:
        t.start()

    for t in threads:
        t.join()

    assert results == [b"hello world"] * 5
    assert client.download.call_count == 1


def test_read_interrupted(client, cache):
    client.download.side_effect = lambda id: FakeStream(b"unused")

    fs = SubsonicFileSystem(
        Namespace(client, NameTables()), cache, interrupt_check=lambda: True
    )
    fs.readdir("/")
    fs.readdir("/Band")

    fh = fs.open(TRACK_PATH, os.O_RDONLY)

    with pytest.raises(InterruptedError) as e:
        fs.read(TRACK_PATH, fh, 0, 10)

    assert e.value.errno == errno.EINTR


def test_read_waiting_on_handle_interrupted(client, cache):
    gate = threading.Event()
    interrupt = threading.Event()

    client.download.side_effect = lambda id: FakeStream(b"hello world", gate)

    def interrupt_check():
        return threading.current_thread().name == "waiter" and interrupt.is_set()

    fs = SubsonicFileSystem(
        Namespace(client, NameTables()), cache, interrupt_check=interrupt_check
    )
    fs.readdir("/")
    fs.readdir("/Band")

    fh = fs.open(TRACK_PATH, os.O_RDONLY)
    results = {}

    def read():
        name = threading.current_thread().name

        try:
            results[name] = fs.read(TRACK_PATH, fh, 0, 100)
        except InterruptedError as e:
            results[name] = e

    fetcher = threading.Thread(target=read, name="fetcher")
    fetcher.start()

    deadline = time.monotonic() + 5.0
    while not client.download.called:
        assert time.monotonic() < deadline
        time.sleep(0.01)

    # Second read of the same handle waits for the first one
    waiter = threading.Thread(target=read, name="waiter")
    waiter.start()

    time.sleep(0.2)
    assert waiter.is_alive()

    interrupt.set()
    waiter.join(timeout=2.0)

    assert not waiter.is_alive()
    assert results["waiter"].errno == errno.EINTR

    gate.set()
    fetcher.join(timeout=5.0)

    assert results["fetcher"] == b"hello world"
    assert client.download.call_count == 1

    # The handle can be read normally afterwards
    assert fs.read(TRACK_PATH, fh, 0, 5) == b"hello"


def open_through_fuse(fs, path):
    instance = FUSE(fs, FuseConfig())
    fi = fuse_file_info()

    instance._op_open(path.encode(), ctypes.pointer(fi))

    return fi


@pytest.mark.parametrize(
    "path,direct_io",
    [
        (TRACK_PATH, 0),
        ("/Band/01 - Band - Song.mp3", 1),
        ("/Band/500.jpg", 1),
    ],
)
def test_open_direct_io(fs, path, direct_io):
    fi = open_through_fuse(fs, path)

    assert fi.fh > 0
    assert fi.direct_io == direct_io
    assert fs.direct_io(path, fi.fh) == bool(direct_io)


def test_cover_art_readable_before_size_known(fs):
    # Without direct I/O the kernel would never read beyond the reported size of 0
    assert fs.getattr("/Band/500.jpg", None)["st_size"] == 0

    fi = open_through_fuse(fs, "/Band/500.jpg")
    assert fi.direct_io == 1

    assert fs.read("/Band/500.jpg", fi.fh, 0, 4096) == b"jpeg"
    assert fs.getattr("/Band/500.jpg", None)["st_size"] == 4


def test_read_unknown_handle(fs):
    with pytest.raises(OSError) as e:
        fs.read(TRACK_PATH, 1234, 0, 10)

    assert e.value.errno == errno.EBADF


def test_open_directory(fs):
    with pytest.raises(IsADirectoryError):
        fs.open("/Band", os.O_RDONLY)


@pytest.mark.parametrize("flags", [os.O_WRONLY, os.O_RDWR, os.O_WRONLY | os.O_APPEND])
def test_open_for_writing(fs, flags):
    with pytest.raises(OSError) as e:
        fs.open(TRACK_PATH, flags)

    assert e.value.errno == errno.EROFS


def test_release(fs):
    fh = fs.open(TRACK_PATH, os.O_RDONLY)
    assert fs.open_handles == 1

    fs.release(TRACK_PATH, fh)
    assert fs.open_handles == 0

    with pytest.raises(OSError) as e:
        fs.release(TRACK_PATH, fh)

    assert e.value.errno == errno.EBADF


def test_unique_handles(fs):
    handles = {fs.open(TRACK_PATH, os.O_RDONLY) for _ in range(10)}

    assert len(handles) == 10


@pytest.mark.parametrize(
    "operation", ["mkdir", "unlink", "rename", "write", "create", "setxattr"]
)
def test_mutate(fs, operation):
    with pytest.raises(OSError) as e:
        fs.mutate(operation, TRACK_PATH)

    assert e.value.errno == errno.EROFS


def test_statfs(fs, cache):
    st = fs.statfs("/")

    assert st["f_blocks"] * st["f_bsize"] == 0
    assert st["f_namemax"] == 255


def test_statfs_reports_cache(client, tmp_path):
    cache = StreamCache(client, 1024 * 1024, temp_dir=str(tmp_path))
    fs = SubsonicFileSystem(Namespace(client, NameTables()), cache)

    st = fs.statfs("/")

    assert st["f_blocks"] == 256
    assert st["f_bfree"] == 256
    assert st["f_files"] == 0

    cache.purge()


def test_destroy_discards_handles(fs):
    fs.open(TRACK_PATH, os.O_RDONLY)
    fs.destroy()

    assert fs.open_handles == 0


def test_interrupt_token():
    interrupted = mock.Mock(return_value=False)
    token = InterruptToken(interrupted)

    assert not token.cancelled

    interrupted.return_value = True
    assert token.cancelled

    # Stays cancelled even if libfuse no longer reports it
    interrupted.return_value = False
    assert token.cancelled


def test_interrupt_token_cancel():
    token = InterruptToken(lambda: False)
    token.cancel()

    assert token.cancelled
