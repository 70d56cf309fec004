import threading
from unittest import mock

import pytest

from subfs.config import StreamConfig
from subfs.filesystem.common import NotFound
from subfs.filesystem.namespace import (
    ContentKind,
    Directory,
    estimate_transcoded_size,
    File,
    NameTables,
    Namespace,
    parse_created,
    ROOT,
    sanitize,
)
from subfs.subsonic import Index, MusicDirectory, UpstreamUnavailable
from subfs.subsonic.models import decode


def indexes(*artists):
    return [decode(Index, {"name": "A", "artist": list(artists)})]


def music_directory(*children, id="10"):
    return decode(MusicDirectory, {"id": id, "child": list(children)})


TRACK = {
    "id": "100",
    "title": "Song",
    "artist": "Band",
    "track": 3,
    "suffix": "flac",
    "transcodedSuffix": "mp3",
    "size": 30000000,
    "duration": 180,
    "coverArt": "500",
    "created": "2020-01-01T00:00:00.000Z",
}


@pytest.fixture
def client():
    client = mock.Mock()
    client.get_indexes.return_value = indexes({"id": 1, "name": "A"})
    return client


@pytest.fixture
def namespace(client):
    return Namespace(client, NameTables())


def test_sanitize():
    assert sanitize("AC/DC") == "AC_DC"
    assert sanitize("a\\b/c") == "a_b_c"
    assert sanitize("plain") == "plain"


def test_estimate_transcoded_size():
    assert estimate_transcoded_size(180) == 7372800
    assert estimate_transcoded_size(0) == 0
    assert estimate_transcoded_size(10, bitrate=128) == 163840


def test_parse_created():
    assert parse_created("1970-01-01T00:00:10.000Z") == 10.0
    assert parse_created("1970-01-01T00:01:00+00:00") == 60.0
    assert parse_created(None) == 0.0
    assert parse_created("not a date") == 0.0


def test_file_key_includes_kind():
    raw = File("1", "a.flac", 1, 0.0, ContentKind.LOSSLESS)
    transcoded = File("1", "a.mp3", 1, 0.0, ContentKind.TRANSCODED)

    assert raw.key != transcoded.key


def test_list_root(namespace):
    entries = namespace.list_root()

    assert [entry.name for entry in entries] == ["A"]

    node = namespace.lookup(ROOT, "A")

    assert isinstance(node, Directory)
    assert node.id == "1"
    assert node.path == "A/"


def test_list_root_catalog_order(client, namespace):
    client.get_indexes.return_value = [
        decode(Index, {"name": "Z", "artist": [{"id": 1, "name": "Zappa"}]}),
        decode(Index, {"name": "A", "artist": [{"id": 2, "name": "ABBA"}]}),
    ]

    entries = namespace.list_root()

    assert [entry.name for entry in entries] == ["Zappa", "ABBA"]


def test_list_root_sanitized(client, namespace):
    client.get_indexes.return_value = indexes({"id": 1, "name": "AC/DC"})

    entries = namespace.list_root()

    assert [entry.name for entry in entries] == ["AC_DC"]
    assert namespace.lookup(ROOT, "AC_DC").id == "1"


def test_list_root_upstream_unavailable(client, namespace):
    client.get_indexes.side_effect = UpstreamUnavailable("down")

    with pytest.raises(NotFound):
        namespace.list_root()


def test_list_directory_delegates_root(namespace):
    assert [entry.name for entry in namespace.list_directory(ROOT)] == ["A"]


def test_list_directory(client, namespace):
    client.get_music_directory.return_value = music_directory(
        {"id": "11", "title": "Album", "isDir": True, "coverArt": "500"},
        TRACK,
        {
            "id": "200",
            "title": "Clip",
            "isVideo": True,
            "suffix": "mp4",
            "size": 1000,
            "coverArt": "600",
        },
    )

    directory = Directory(id="10", path="A/")
    names = [entry.name for entry in namespace.list_directory(directory)]

    assert names == [
        "Album",
        "03 - Band - Song.flac",
        "03 - Band - Song.mp3",
        "Clip.mp4",
        "500.jpg",
        "600.jpg",
    ]

    album = namespace.lookup(directory, "Album")
    assert album == Directory(id="11", path="A/Album/")

    raw = namespace.lookup(directory, "03 - Band - Song.flac")
    assert raw.kind == ContentKind.LOSSLESS
    assert raw.size == 30000000
    assert not raw.estimated
    assert raw.created == parse_created(TRACK["created"])

    transcoded = namespace.lookup(directory, "03 - Band - Song.mp3")
    assert transcoded.kind == ContentKind.TRANSCODED
    assert transcoded.size == 7372800
    assert transcoded.estimated

    video = namespace.lookup(directory, "Clip.mp4")
    assert video.kind == ContentKind.VIDEO
    assert video.size == 1000
    assert video.estimated

    art = namespace.lookup(directory, "500.jpg")
    assert art.kind == ContentKind.COVER_ART
    assert art.id == "500"
    assert art.size == 0
    assert art.estimated


def test_list_directory_without_transcoding(client, namespace):
    track = {**TRACK, "transcodedSuffix": ""}
    client.get_music_directory.return_value = music_directory(track)

    entries = namespace.list_directory(Directory(id="10"))

    assert [entry.name for entry in entries] == ["03 - Band - Song.flac", "500.jpg"]


def test_list_directory_estimates_unknown_size(client, namespace):
    track = {**TRACK, "size": 0, "transcodedSuffix": ""}
    client.get_music_directory.return_value = music_directory(track)

    namespace.list_directory(Directory(id="10"))

    node = namespace.lookup(Directory(id="10"), "03 - Band - Song.flac")
    assert node.size == 7372800
    assert node.estimated


def test_list_directory_estimate_bitrate(client):
    namespace = Namespace(client, NameTables(), StreamConfig(estimate_bitrate=128))
    client.get_music_directory.return_value = music_directory(TRACK)

    namespace.list_directory(Directory(id="10"))

    node = namespace.lookup(Directory(id="10"), "03 - Band - Song.mp3")
    assert node.size == estimate_transcoded_size(180, 128)


def test_list_directory_sanitized(client, namespace):
    track = {**TRACK, "title": "Either/Or", "artist": "A\\B", "coverArt": None}
    client.get_music_directory.return_value = music_directory(
        {"id": "11", "title": "1/2", "isDir": True}, track
    )

    entries = namespace.list_directory(Directory(id="10"))

    for entry in entries:
        assert "/" not in entry.name
        assert "\\" not in entry.name

    assert namespace.lookup(Directory(id="10"), "1_2").path == "1_2/"


def test_list_directory_skips_empty_cover_art(client, namespace):
    client.get_music_directory.return_value = music_directory(
        {"id": "11", "title": "A", "isDir": True, "coverArt": ""},
        {"id": "12", "title": "B", "isDir": True, "coverArt": "0"},
        {"id": "13", "title": "C", "isDir": True},
        {"id": "14", "title": "D", "isDir": True, "coverArt": "7"},
        {"id": "15", "title": "E", "isDir": True, "coverArt": "7"},
    )

    entries = namespace.list_directory(Directory(id="10"))

    assert [entry.name for entry in entries] == ["A", "B", "C", "D", "E", "7.jpg"]


def test_list_directory_duplicate_names(client, namespace):
    client.get_music_directory.return_value = music_directory(
        {"id": "11", "title": "Same", "isDir": True},
        {"id": "12", "title": "Same", "isDir": True},
    )

    entries = namespace.list_directory(Directory(id="10"))

    assert len(entries) == 1
    assert namespace.lookup(Directory(id="10"), "Same").id == "12"


def test_list_directory_replaces_table(client, namespace):
    directory = Directory(id="10")

    client.get_music_directory.return_value = music_directory(
        {"id": "11", "title": "Old", "isDir": True}
    )
    namespace.list_directory(directory)

    client.get_music_directory.return_value = music_directory(
        {"id": "12", "title": "New", "isDir": True}
    )
    namespace.list_directory(directory)

    assert namespace.lookup(directory, "New").id == "12"

    with pytest.raises(NotFound):
        namespace.lookup(directory, "Old")


def test_list_directory_upstream_unavailable(client, namespace):
    client.get_music_directory.side_effect = UpstreamUnavailable("down")

    with pytest.raises(NotFound):
        namespace.list_directory(Directory(id="10", path="A/"))


def test_lookup_requires_listing(namespace):
    with pytest.raises(NotFound):
        namespace.lookup(ROOT, "A")

    namespace.list_root()

    assert namespace.lookup(ROOT, "A").id == "1"

    with pytest.raises(NotFound):
        namespace.lookup(ROOT, "B")


def test_resolve(client, namespace):
    client.get_music_directory.return_value = music_directory(TRACK)

    assert namespace.resolve("/") == ROOT

    namespace.list_root()
    artist = namespace.resolve("/A")
    assert artist.id == "1"

    namespace.list_directory(artist)
    track = namespace.resolve("/A/03 - Band - Song.flac")
    assert track.kind == ContentKind.LOSSLESS

    with pytest.raises(NotFound):
        namespace.resolve("/A/03 - Band - Song.flac/child")

    with pytest.raises(NotFound):
        namespace.resolve("/B/anything")


def test_prefetch_indexes(client, namespace):
    namespace.prefetch_indexes()

    namespace.list_root()
    assert client.get_indexes.call_count == 1

    # Only the first listing uses the prefetched indexes
    namespace.list_root()
    assert client.get_indexes.call_count == 2


def test_prefetch_indexes_waits(client, namespace):
    release = threading.Event()

    def slow_indexes():
        release.wait()
        return indexes({"id": 2, "name": "Slow"})

    client.get_indexes.side_effect = slow_indexes
    namespace.prefetch_indexes()

    release.set()

    assert [entry.name for entry in namespace.list_root()] == ["Slow"]
    assert client.get_indexes.call_count == 1


def test_prefetch_indexes_failure(client, namespace):
    client.get_indexes.side_effect = [
        UpstreamUnavailable("down"),
        indexes({"id": 1, "name": "A"}),
    ]

    namespace.prefetch_indexes()

    assert [entry.name for entry in namespace.list_root()] == ["A"]
    assert client.get_indexes.call_count == 2


def test_name_tables():
    tables = NameTables()
    directory = Directory(id="1")

    assert tables.get(directory, "a") is None
    assert len(tables) == 0

    tables.replace(directory, {"a": ROOT})

    assert tables.get(directory, "a") == ROOT
    assert tables.get(directory, "b") is None
    assert len(tables) == 1
