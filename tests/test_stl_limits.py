import struct

import pytest

from quote_core import TooLarge, TruncatedFile, parse_stl_bytes
from tests.helpers_stl import cube_facets, cube_stl, stl_bytes


def test_stl_triangle_limit_exceeded():
    with pytest.raises(TooLarge, match=r"STL limit exceeded: triangles=12 > 11"):
        parse_stl_bytes(cube_stl(), max_facets=11)


def test_stl_triangle_limit_at_boundary_is_accepted():
    assert len(parse_stl_bytes(cube_stl(), max_facets=12)) == 12


def test_limit_is_checked_before_reading_triangles():
    # Header claims four billion triangles, no data follows.
    data = b"limit-test".ljust(80, b"\0") + struct.pack("<I", 0xFFFFFFFF)
    with pytest.raises(TooLarge):
        parse_stl_bytes(data, max_facets=1000)


def test_limit_wins_over_truncation():
    data = stl_bytes(cube_facets()[:10], declared_count=100)
    with pytest.raises(TooLarge):
        parse_stl_bytes(data, max_facets=50)
    with pytest.raises(TruncatedFile):
        parse_stl_bytes(data)
