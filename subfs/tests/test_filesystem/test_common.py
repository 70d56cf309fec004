import errno
import os
import stat

from subfs.filesystem.common import (
    Attributes,
    Interrupted,
    NotFound,
    ReadOnlyViolation,
)


def test_errors_have_errno():
    assert NotFound("a").errno == errno.ENOENT
    assert ReadOnlyViolation("a").errno == errno.EROFS
    assert Interrupted("a").errno == errno.EINTR


def test_errors_are_builtin_os_errors():
    assert isinstance(NotFound(), FileNotFoundError)
    assert isinstance(Interrupted(), InterruptedError)
    assert isinstance(ReadOnlyViolation(), OSError)


def test_error_filename():
    assert NotFound("song.flac").filename == "song.flac"


def test_directory_attributes():
    attr = Attributes.for_directory()

    assert stat.S_ISDIR(attr.st_mode)
    assert stat.S_IMODE(attr.st_mode) == 0o555
    assert attr.st_uid == os.getuid()
    assert attr.st_gid == os.getgid()


def test_file_attributes():
    attr = Attributes.for_file(1234, 1600000000.5)

    assert stat.S_ISREG(attr.st_mode)
    assert stat.S_IMODE(attr.st_mode) == 0o444
    assert attr.st_size == 1234
    assert attr.st_nlink == 1
    assert attr.st_mtime_ns == 1600000000500000000


def test_attributes_not_writable():
    for attr in [Attributes.for_directory(), Attributes.for_file(0, 0)]:
        assert attr.st_mode & (stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH) == 0
