"""N-dimensional axis-aligned bounds over tuple fields.

An `NdRange` stores per-dimension minima and maxima; `None` means the range
is unbounded in that direction. Ranges are used to propagate the known
extent of the input tables into engines, which widen them by the largest
possible match radius so that rows that cannot match anything can be culled
before binning.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from numbers import Real
from typing import Iterable, Optional, Sequence, Tuple

Bound = Optional[float]


@dataclass(frozen=True)
class NdRange:
    mins: Tuple[Bound, ...]
    maxs: Tuple[Bound, ...]

    def __post_init__(self) -> None:
        if len(self.mins) != len(self.maxs):
            raise ValueError(f"mins/maxs length mismatch: {len(self.mins)} != {len(self.maxs)}")

    @property
    def ndim(self) -> int:
        return len(self.mins)

    @classmethod
    def unbounded(cls, ndim: int) -> "NdRange":
        return cls((None,) * ndim, (None,) * ndim)

    @classmethod
    def from_tuples(cls, tuples: Iterable[Sequence[object]], ndim: int) -> "NdRange":
        """Bounds of the finite numeric values seen in each dimension.

        Dimensions holding no finite number (or any non-numeric value) are
        left unbounded.
        """
        mins: list[Bound] = [None] * ndim
        maxs: list[Bound] = [None] * ndim
        numeric = [True] * ndim
        for tup in tuples:
            for i in range(ndim):
                if not numeric[i]:
                    continue
                v = tup[i]
                if v is None:
                    continue
                if isinstance(v, bool) or not isinstance(v, Real):
                    numeric[i] = False
                    mins[i] = maxs[i] = None
                    continue
                x = float(v)
                if not math.isfinite(x):
                    continue
                if mins[i] is None or x < mins[i]:
                    mins[i] = x
                if maxs[i] is None or x > maxs[i]:
                    maxs[i] = x
        return cls(tuple(mins), tuple(maxs))

    def is_bounded(self) -> bool:
        return all(v is not None for v in self.mins) and all(v is not None for v in self.maxs)

    def contains(self, tup: Sequence[object]) -> bool:
        """True if every bounded dimension of `tup` lies inside the range.

        Values that are not finite numbers are never excluded here; the
        engine decides whether such rows are matchable.
        """
        for i in range(self.ndim):
            lo, hi = self.mins[i], self.maxs[i]
            if lo is None and hi is None:
                continue
            v = tup[i]
            if v is None or isinstance(v, bool) or not isinstance(v, Real):
                continue
            x = float(v)
            if not math.isfinite(x):
                continue
            if lo is not None and x < lo:
                return False
            if hi is not None and x > hi:
                return False
        return True

    def union(self, other: "NdRange") -> "NdRange":
        _check_same_ndim(self, other)
        mins = tuple(None if a is None or b is None else min(a, b) for a, b in zip(self.mins, other.mins))
        maxs = tuple(None if a is None or b is None else max(a, b) for a, b in zip(self.maxs, other.maxs))
        return NdRange(mins, maxs)

    def intersection(self, other: "NdRange") -> Optional["NdRange"]:
        """Overlap of two ranges, or None when they are disjoint."""
        _check_same_ndim(self, other)
        mins = tuple(_pick(a, b, max) for a, b in zip(self.mins, other.mins))
        maxs = tuple(_pick(a, b, min) for a, b in zip(self.maxs, other.maxs))
        for lo, hi in zip(mins, maxs):
            if lo is not None and hi is not None and lo > hi:
                return None
        return NdRange(mins, maxs)


def extend_bounds(rng: NdRange, margin: float, axes: Iterable[int]) -> NdRange:
    """Widen `rng` by `margin` on each of `axes`; other axes become unbounded."""
    axes = set(int(a) for a in axes)
    mins: list[Bound] = [None] * rng.ndim
    maxs: list[Bound] = [None] * rng.ndim
    for i in axes:
        lo, hi = rng.mins[i], rng.maxs[i]
        mins[i] = None if lo is None else lo - margin
        maxs[i] = None if hi is None else hi + margin
    return NdRange(tuple(mins), tuple(maxs))


def _pick(a: Bound, b: Bound, fn) -> Bound:
    if a is None:
        return b
    if b is None:
        return a
    return fn(a, b)


def _check_same_ndim(a: NdRange, b: NdRange) -> None:
    if a.ndim != b.ndim:
        raise ValueError(f"Cannot combine ranges of dimension {a.ndim} and {b.ndim}.")
