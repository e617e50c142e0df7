import math

import pytest

from row_match import NdRange, extend_bounds


def test_from_tuples_ignores_non_finite_values():
    rng = NdRange.from_tuples([(1.0, 5.0), (math.nan, -2.0), (3.0, None), (-1.0, 4.0)], 2)
    assert rng.mins == (-1.0, -2.0)
    assert rng.maxs == (3.0, 5.0)
    assert rng.is_bounded()


def test_from_tuples_leaves_non_numeric_dimension_unbounded():
    rng = NdRange.from_tuples([(1.0, "a"), (2.0, "b")], 2)
    assert rng.mins == (1.0, None)
    assert rng.maxs == (2.0, None)
    assert not rng.is_bounded()


def test_contains_skips_unbounded_and_missing_values():
    rng = NdRange((0.0, None), (1.0, None))
    assert rng.contains((0.5, 1e9))
    assert rng.contains((1.0, 0.0))
    assert not rng.contains((1.5, 0.0))
    assert rng.contains((math.nan, 0.0))


def test_intersection_and_union():
    a = NdRange((0.0, 0.0), (2.0, 2.0))
    b = NdRange((1.0, None), (3.0, 1.0))
    both = a.intersection(b)
    assert both == NdRange((1.0, 0.0), (2.0, 1.0))
    assert a.union(b) == NdRange((0.0, None), (3.0, 2.0))

    far = NdRange((5.0, 5.0), (6.0, 6.0))
    assert a.intersection(far) is None


def test_extend_bounds_only_widens_listed_axes():
    rng = NdRange((0.0, 10.0, -1.0), (1.0, 20.0, 1.0))
    out = extend_bounds(rng, 0.5, [1])
    assert out.mins == (None, 9.5, None)
    assert out.maxs == (None, 20.5, None)


def test_dimension_mismatch_raises():
    with pytest.raises(ValueError):
        NdRange((0.0,), (1.0, 2.0))
    with pytest.raises(ValueError):
        NdRange.unbounded(2).intersection(NdRange.unbounded(3))
