"""Match engines: the policy that decides which rows may match and how well.

An engine turns a row tuple into a set of bin keys and scores pairs of
tuples. It holds configuration only and is safe to share between worker
threads.

Contract
- `get_bins(t)` must be complete: whenever `match_score(t1, t2) >= 0`,
  `set(get_bins(t1)) & set(get_bins(t2))` is non-empty. An unmatchable tuple
  (non-finite coordinate, missing error) gets no bins at all.
- `match_score` is symmetric and returns `NO_MATCH` as soon as a partial
  computation shows the pair cannot match. Distances exactly equal to the
  match radius are accepted and score `score_scale`.

The Cartesian engines cover each point by the grid cells touched by a ball
of half the match radius (or of its own error radius), so any two points
that can match share the cell holding a point between them.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from itertools import product
from typing import Hashable, List, Optional, Sequence, Tuple

from astropy.coordinates import angular_separation as _angular_separation

from .errors import MatchConfigError, MatchResourceError
from .ranges import NdRange, extend_bounds

NO_MATCH = -1.0

# A row asking for more cells than this almost certainly has a scale that is
# far too small for its radius.
MAX_BINS_PER_ROW = 100_000

BinKey = Hashable


@dataclass(frozen=True)
class TupleInfo:
    name: str
    kind: str  # "coord" | "error" | "value"
    description: str = ""


class MatchEngine(ABC):
    """Interface shared by all engines."""

    @property
    @abstractmethod
    def tuple_infos(self) -> Tuple[TupleInfo, ...]:
        ...

    @property
    def tuple_width(self) -> int:
        return len(self.tuple_infos)

    @abstractmethod
    def get_bins(self, tup: Sequence[object]) -> Tuple[BinKey, ...]:
        ...

    @abstractmethod
    def match_score(self, tup1: Sequence[object], tup2: Sequence[object]) -> float:
        ...

    @property
    def score_scale(self) -> float:
        return 1.0

    @property
    def can_bound_match(self) -> bool:
        return False

    def get_match_bounds(self, in_ranges: Sequence[NdRange], index: int) -> NdRange:
        """Range a partner of a row from table `index` must fall inside."""
        return NdRange.unbounded(self.tuple_width)


def _as_float(value: object) -> float:
    if value is None or isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _finite_coords(tup: Sequence[object], ndim: int) -> Optional[List[float]]:
    coords = [_as_float(tup[i]) for i in range(ndim)]
    if not all(math.isfinite(c) for c in coords):
        return None
    return coords


def grid_cells(
    coords: Sequence[float],
    half_widths: Sequence[float],
    cell_sizes: Sequence[float],
) -> Tuple[Tuple[int, ...], ...]:
    """Integer grid cells overlapped by the box `coords ± half_widths`."""
    spans = []
    count = 1
    for c, h, s in zip(coords, half_widths, cell_sizes):
        lo = math.floor((c - h) / s)
        hi = math.floor((c + h) / s)
        spans.append(range(lo, hi + 1))
        count *= hi - lo + 1
        if count > MAX_BINS_PER_ROW:
            raise MatchResourceError(
                f"A row covers more than {MAX_BINS_PER_ROW} bins; "
                "increase the scale or bin factor."
            )
    return tuple(product(*spans))


def _coord_infos(ndim: int) -> List[TupleInfo]:
    names = ("x", "y", "z") if ndim <= 3 else tuple(f"c{i + 1}" for i in range(ndim))
    return [TupleInfo(names[i], "coord", f"Cartesian coordinate #{i + 1}") for i in range(ndim)]


def _check_ndim(ndim: int) -> int:
    if int(ndim) != ndim or ndim < 1:
        raise MatchConfigError(f"Dimensionality must be a positive integer, got {ndim!r}.")
    return int(ndim)


def _check_positive(name: str, value: float) -> float:
    v = _as_float(value)
    if not (math.isfinite(v) and v > 0):
        raise MatchConfigError(f"{name} must be a positive finite number, got {value!r}.")
    return v


class IsotropicCartesianMatchEngine(MatchEngine):
    """Fixed-radius matching in N-dimensional Euclidean space.

    Pairs match when their distance is at most `scale`; the score is the
    distance divided by `scale`, so it lies in [0, 1].
    """

    def __init__(self, ndim: int, scale: float, bin_factor: float = 1.0):
        self.ndim = _check_ndim(ndim)
        self.scale = _check_positive("scale", scale)
        self.bin_factor = _check_positive("bin_factor", bin_factor)
        self._infos = tuple(_coord_infos(self.ndim))

    @property
    def tuple_infos(self) -> Tuple[TupleInfo, ...]:
        return self._infos

    def get_bins(self, tup: Sequence[object]) -> Tuple[BinKey, ...]:
        coords = _finite_coords(tup, self.ndim)
        if coords is None:
            return ()
        half = 0.5 * self.scale
        cell = self.scale * self.bin_factor
        return grid_cells(coords, [half] * self.ndim, [cell] * self.ndim)

    def match_score(self, tup1: Sequence[object], tup2: Sequence[object]) -> float:
        c1 = _finite_coords(tup1, self.ndim)
        c2 = _finite_coords(tup2, self.ndim)
        if c1 is None or c2 is None:
            return NO_MATCH
        r2 = self.scale * self.scale
        d2 = 0.0
        for a, b in zip(c1, c2):
            d = b - a
            d2 += d * d
            if not d2 <= r2:
                return NO_MATCH
        return math.sqrt(d2 / r2)

    @property
    def can_bound_match(self) -> bool:
        return True

    def get_match_bounds(self, in_ranges: Sequence[NdRange], index: int) -> NdRange:
        return extend_bounds(in_ranges[index], self.scale, range(self.ndim))

    def __str__(self) -> str:
        return f"{self.ndim}-d Cartesian"


class AnisotropicCartesianMatchEngine(MatchEngine):
    """Matching inside an axis-aligned error ellipsoid.

    `scales[i]` is the largest allowed separation along axis i; the score is
    the ellipsoidal norm of the separation, in [0, 1].
    """

    def __init__(self, scales: Sequence[float], bin_factor: float = 1.0):
        if len(scales) < 1:
            raise MatchConfigError("At least one axis scale is required.")
        self.scales = tuple(_check_positive(f"scale[{i}]", s) for i, s in enumerate(scales))
        self.ndim = len(self.scales)
        self.bin_factor = _check_positive("bin_factor", bin_factor)
        self._infos = tuple(_coord_infos(self.ndim))

    @property
    def tuple_infos(self) -> Tuple[TupleInfo, ...]:
        return self._infos

    def get_bins(self, tup: Sequence[object]) -> Tuple[BinKey, ...]:
        coords = _finite_coords(tup, self.ndim)
        if coords is None:
            return ()
        halves = [0.5 * s for s in self.scales]
        cells = [s * self.bin_factor for s in self.scales]
        return grid_cells(coords, halves, cells)

    def match_score(self, tup1: Sequence[object], tup2: Sequence[object]) -> float:
        c1 = _finite_coords(tup1, self.ndim)
        c2 = _finite_coords(tup2, self.ndim)
        if c1 is None or c2 is None:
            return NO_MATCH
        total = 0.0
        for a, b, s in zip(c1, c2, self.scales):
            d = (b - a) / s
            total += d * d
            if not total <= 1.0:
                return NO_MATCH
        return math.sqrt(total)

    @property
    def can_bound_match(self) -> bool:
        return True

    def get_match_bounds(self, in_ranges: Sequence[NdRange], index: int) -> NdRange:
        rng = in_ranges[index]
        mins = tuple(None if lo is None else lo - s for lo, s in zip(rng.mins, self.scales))
        maxs = tuple(None if hi is None else hi + s for hi, s in zip(rng.maxs, self.scales))
        return NdRange(mins, maxs)

    def __str__(self) -> str:
        return f"{self.ndim}-d Cartesian Anisotropic"


class ErrorCartesianMatchEngine(MatchEngine):
    """N-dimensional Cartesian matching with isotropic per-row errors.

    Tuples are `ndim` coordinates followed by an error radius; two rows match
    when their distance is no greater than the sum of their errors. The
    score is distance / (e1 + e2). `scale` is only a rough average error used
    together with `bin_factor` to size the grid.
    """

    def __init__(self, ndim: int, scale: float, bin_factor: float = 1.0):
        self.ndim = _check_ndim(ndim)
        self.scale = _check_positive("scale", scale)
        self.bin_factor = _check_positive("bin_factor", bin_factor)
        self._infos = tuple(
            _coord_infos(self.ndim) + [TupleInfo("error", "error", "Per-object error radius")]
        )

    @property
    def tuple_infos(self) -> Tuple[TupleInfo, ...]:
        return self._infos

    def _error(self, tup: Sequence[object]) -> float:
        err = _as_float(tup[self.ndim])
        if not (math.isfinite(err) and err >= 0):
            return math.nan
        return err

    def get_bins(self, tup: Sequence[object]) -> Tuple[BinKey, ...]:
        coords = _finite_coords(tup, self.ndim)
        err = self._error(tup)
        if coords is None or math.isnan(err):
            return ()
        cell = self.scale * self.bin_factor
        return grid_cells(coords, [err] * self.ndim, [cell] * self.ndim)

    def match_score(self, tup1: Sequence[object], tup2: Sequence[object]) -> float:
        c1 = _finite_coords(tup1, self.ndim)
        c2 = _finite_coords(tup2, self.ndim)
        err = self._error(tup1) + self._error(tup2)
        if c1 is None or c2 is None or math.isnan(err):
            return NO_MATCH
        err2 = err * err
        d2 = 0.0
        for a, b in zip(c1, c2):
            d = b - a
            d2 += d * d
            if not d2 <= err2:
                return NO_MATCH
        return math.sqrt(d2 / err2) if err2 > 0 else 0.0

    @property
    def can_bound_match(self) -> bool:
        return True

    def get_match_bounds(self, in_ranges: Sequence[NdRange], index: int) -> NdRange:
        max_radius = 0.0
        for rng in in_ranges:
            emax = rng.maxs[self.ndim]
            if emax is None:
                return NdRange.unbounded(self.tuple_width)
            max_radius = max(max_radius, emax)
        return extend_bounds(in_ranges[index], 2 * max_radius, range(self.ndim))

    def __str__(self) -> str:
        return f"{self.ndim}-d Cartesian with Errors"


class SkyMatchEngine(MatchEngine):
    """Fixed maximum separation on the celestial sphere.

    Tuples are (RA, Dec) in degrees and `max_sep` is in degrees. The sphere is
    cut into declination strips, each divided into RA cells roughly as wide as
    they are tall; a row covers every cell touched by the cap of radius
    `max_sep / 2` around it.
    """

    def __init__(self, max_sep: float, bin_factor: float = 1.0):
        self.max_sep = _check_positive("max_sep", max_sep)
        if self.max_sep > 180.0:
            raise MatchConfigError(f"max_sep must not exceed 180 degrees, got {max_sep!r}.")
        self.bin_factor = _check_positive("bin_factor", bin_factor)
        self._strip_height = min(self.max_sep * self.bin_factor, 180.0)
        self._n_strips = max(1, int(math.ceil(180.0 / self._strip_height)))
        self._max_sep_rad = math.radians(self.max_sep)
        self._infos = (
            TupleInfo("ra", "coord", "Right ascension in degrees"),
            TupleInfo("dec", "coord", "Declination in degrees"),
        )

    @property
    def tuple_infos(self) -> Tuple[TupleInfo, ...]:
        return self._infos

    def _strip_index(self, dec: float) -> int:
        s = int(math.floor((dec + 90.0) / self._strip_height))
        return min(max(s, 0), self._n_strips - 1)

    def _cells_in_strip(self, strip: int) -> int:
        lo = strip * self._strip_height - 90.0
        hi = min(lo + self._strip_height, 90.0)
        widest = min(max(abs(lo), abs(hi)), 90.0)
        n = int(math.floor(360.0 * math.cos(math.radians(widest)) / self._strip_height))
        return max(n, 1)

    def get_bins(self, tup: Sequence[object]) -> Tuple[BinKey, ...]:
        coords = _finite_coords(tup, 2)
        if coords is None:
            return ()
        ra, dec = coords
        if abs(dec) > 90.0:
            return ()
        r = 0.5 * self.max_sep
        s_lo = self._strip_index(max(dec - r, -90.0))
        s_hi = self._strip_index(min(dec + r, 90.0))
        polar = abs(dec) + r >= 90.0
        if not polar:
            ratio = math.sin(math.radians(r)) / math.cos(math.radians(dec))
            dra = math.degrees(math.asin(min(ratio, 1.0)))
        bins: List[BinKey] = []
        for s in range(s_lo, s_hi + 1):
            n = self._cells_in_strip(s)
            if polar or n == 1:
                bins.extend((s, c) for c in range(n))
                continue
            width = 360.0 / n
            lo = int(math.floor((ra - dra) / width))
            hi = int(math.floor((ra + dra) / width))
            if hi - lo + 1 >= n:
                bins.extend((s, c) for c in range(n))
            else:
                bins.extend((s, i % n) for i in range(lo, hi + 1))
        return tuple(bins)

    def match_score(self, tup1: Sequence[object], tup2: Sequence[object]) -> float:
        c1 = _finite_coords(tup1, 2)
        c2 = _finite_coords(tup2, 2)
        if c1 is None or c2 is None:
            return NO_MATCH
        if not abs(c2[1] - c1[1]) <= self.max_sep:
            return NO_MATCH
        sep = angular_separation(c1[0], c1[1], c2[0], c2[1])
        if not sep <= self._max_sep_rad:
            return NO_MATCH
        return sep / self._max_sep_rad

    @property
    def can_bound_match(self) -> bool:
        return True

    def get_match_bounds(self, in_ranges: Sequence[NdRange], index: int) -> NdRange:
        return extend_bounds(in_ranges[index], self.max_sep, [1])

    def __str__(self) -> str:
        return "Sky"


def angular_separation(ra1: float, dec1: float, ra2: float, dec2: float) -> float:
    """Great-circle separation in radians between two positions in degrees.

    The positions are put in a fixed order first so the result does not
    depend on which one is passed first.
    """
    (ra1, dec1), (ra2, dec2) = sorted(((ra1, dec1), (ra2, dec2)))
    return float(
        _angular_separation(math.radians(ra1), math.radians(dec1), math.radians(ra2), math.radians(dec2))
    )


class EqualsMatchEngine(MatchEngine):
    """Rows match when a single key value is exactly equal."""

    _infos = (TupleInfo("value", "value", "Matched value"),)

    @property
    def tuple_infos(self) -> Tuple[TupleInfo, ...]:
        return self._infos

    @staticmethod
    def _valid(value: object) -> bool:
        if value is None:
            return False
        if isinstance(value, float) and math.isnan(value):
            return False
        return True

    def get_bins(self, tup: Sequence[object]) -> Tuple[BinKey, ...]:
        value = tup[0]
        if not self._valid(value):
            return ()
        return (value,)

    def match_score(self, tup1: Sequence[object], tup2: Sequence[object]) -> float:
        a, b = tup1[0], tup2[0]
        if self._valid(a) and self._valid(b) and a == b:
            return 0.0
        return NO_MATCH

    def __str__(self) -> str:
        return "Exact Value"


__all__ = [
    "NO_MATCH",
    "MAX_BINS_PER_ROW",
    "TupleInfo",
    "MatchEngine",
    "IsotropicCartesianMatchEngine",
    "AnisotropicCartesianMatchEngine",
    "ErrorCartesianMatchEngine",
    "SkyMatchEngine",
    "EqualsMatchEngine",
    "angular_separation",
    "grid_cells",
]
