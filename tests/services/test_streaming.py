from __future__ import annotations

import pytest

from mediavault.errors import ForbiddenPath, InvalidArgument, NotFound, RangeNotSatisfiable
from mediavault.services.streaming import (
    ByteRange,
    check_regular_file,
    content_type_for,
    parse_range,
    resolve_library_path,
)


@pytest.mark.parametrize(
    "header, expected",
    [
        (None, None),
        ("", None),
        ("bytes=0-99", ByteRange(0, 99)),
        ("bytes=100-", ByteRange(100, 999)),
        ("bytes=900-5000", ByteRange(900, 999)),
        ("bytes=-100", ByteRange(900, 999)),
        ("bytes=-5000", ByteRange(0, 999)),
        ("BYTES=0-0", ByteRange(0, 0)),
    ],
)
def test_parse_range(header, expected):
    assert parse_range(header, 1000) == expected


@pytest.mark.parametrize(
    "header",
    ["bytes=1000-", "bytes=5-1", "bytes=0-1,5-6", "items=0-1", "bytes=abc", "bytes=-0", "bytes=x-1"],
)
def test_unsatisfiable_ranges_carry_the_size(header):
    with pytest.raises(RangeNotSatisfiable) as info:
        parse_range(header, 1000)
    assert info.value.size == 1000


def test_byte_range_helpers():
    byte_range = ByteRange(10, 19)
    assert byte_range.length == 10
    assert byte_range.content_range(100) == "bytes 10-19/100"


def test_resolve_stays_inside_the_library(tmp_path):
    (tmp_path / "shows").mkdir()
    assert resolve_library_path(tmp_path, "shows/ep1.mp4") == (tmp_path / "shows" / "ep1.mp4").resolve()

    with pytest.raises(ForbiddenPath):
        resolve_library_path(tmp_path, "../etc/passwd")
    with pytest.raises(ForbiddenPath):
        resolve_library_path(tmp_path, "shows\\..\\..\\secret")
    with pytest.raises(ForbiddenPath):
        resolve_library_path(tmp_path / "shows", str(tmp_path / "elsewhere.mp4"))
    with pytest.raises(InvalidArgument):
        resolve_library_path(tmp_path, "  ")


def test_resolve_refuses_symlinks_leaving_the_library(tmp_path):
    library = tmp_path / "library"
    library.mkdir()
    outside = tmp_path / "outside.mp4"
    outside.write_bytes(b"x")
    (library / "link.mp4").symlink_to(outside)
    with pytest.raises(ForbiddenPath):
        resolve_library_path(library, "link.mp4")


def test_check_regular_file(tmp_path):
    video = tmp_path / "clip.mp4"
    video.write_bytes(b"0123456789")
    assert check_regular_file(video) == 10
    with pytest.raises(NotFound):
        check_regular_file(tmp_path / "missing.mp4")
    with pytest.raises(InvalidArgument):
        check_regular_file(tmp_path)


def test_content_type_for():
    assert content_type_for("a/b/Clip.WEBM") == "video/webm"
    assert content_type_for("clip.unknown") == "video/mp4"
