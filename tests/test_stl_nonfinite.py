import pytest

from quote_core import NonFiniteValue, parse_stl_bytes
from tests.helpers_stl import stl_bytes


def test_parse_rejects_nonfinite_vertex():
    nan = float("nan")
    tri = ((nan, 0.0, 0.0), (1.0, 0.0, 0.0), (0.0, 1.0, 0.0))

    with pytest.raises(NonFiniteValue, match=r"Malformed binary STL: non-finite"):
        parse_stl_bytes(stl_bytes([((0.0, 0.0, 1.0), tri)]))


def test_parse_rejects_infinite_normal():
    inf = float("inf")
    tri = ((0.0, 0.0, 0.0), (1.0, 0.0, 0.0), (0.0, 1.0, 0.0))

    with pytest.raises(NonFiniteValue) as info:
        parse_stl_bytes(stl_bytes([((0.0, inf, 1.0), tri)]))
    assert info.value.kind == "non_finite_value"
