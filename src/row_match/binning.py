"""Bin index and candidate generation.

Every row is hashed into the bins its engine returns; rows sharing a bin are
candidates for scoring. Adjacent-bin coverage is the engine's concern, so a
row only ever looks up its own bins.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .engines import BinKey, MatchEngine
from .links import RowRef
from .ranges import NdRange
from .tables import RowTable

Shard = Dict[BinKey, List[RowRef]]


class BinIndex:
    """Multi-map from bin key to the rows placed in that bin.

    Workers fill private shards which are merged here once binning has
    finished; after that the index is only read.
    """

    def __init__(self) -> None:
        self._bins: Shard = {}
        self._row_bins: Dict[RowRef, Tuple[BinKey, ...]] = {}

    def merge(self, shard: Shard, row_bins: Dict[RowRef, Tuple[BinKey, ...]]) -> None:
        for key, refs in shard.items():
            bucket = self._bins.get(key)
            if bucket is None:
                self._bins[key] = list(refs)
            else:
                bucket.extend(refs)
        self._row_bins.update(row_bins)

    def finalize(self) -> None:
        """Sort each bucket so lookups are independent of merge order."""
        for bucket in self._bins.values():
            bucket.sort()

    def __len__(self) -> int:
        return len(self._bins)

    @property
    def n_rows(self) -> int:
        return len(self._row_bins)

    @property
    def n_entries(self) -> int:
        return sum(len(v) for v in self._bins.values())

    def get(self, key: BinKey) -> Sequence[RowRef]:
        return self._bins.get(key, ())

    def bins_for(self, ref: RowRef) -> Tuple[BinKey, ...]:
        return self._row_bins.get(ref, ())

    def __contains__(self, ref: object) -> bool:
        return ref in self._row_bins


def bin_rows(
    engine: MatchEngine,
    table: RowTable,
    table_index: int,
    rows: Iterable[int],
    *,
    bounds: Optional[NdRange] = None,
) -> Tuple[Shard, Dict[RowRef, Tuple[BinKey, ...]], List[int]]:
    """Bin a block of rows from one table.

    Returns the shard, the bins of each binned row, and the row indices that
    were skipped because the engine found them unmatchable. Rows outside
    `bounds` are dropped silently: they cannot match anything.
    """
    shard: Shard = {}
    row_bins: Dict[RowRef, Tuple[BinKey, ...]] = {}
    skipped: List[int] = []
    for row in rows:
        tup = table.get_tuple(row)
        if bounds is not None and not bounds.contains(tup):
            continue
        bins = engine.get_bins(tup)
        if not bins:
            skipped.append(row)
            continue
        ref = RowRef(table_index, row)
        row_bins[ref] = bins
        for key in bins:
            shard.setdefault(key, []).append(ref)
    return shard, row_bins, skipped


def iter_candidates(
    index: BinIndex,
    ref: RowRef,
    bins: Iterable[BinKey],
    *,
    accept: Optional[Callable[[RowRef, RowRef], bool]] = None,
) -> Iterator[RowRef]:
    """Rows sharing at least one bin with `ref`, each yielded once.

    `ref` itself is never yielded; `accept(ref, other)` filters the rest.
    """
    seen = {ref}
    for key in bins:
        for other in index.get(key):
            if other in seen:
                continue
            seen.add(other)
            if accept is None or accept(ref, other):
                yield other


__all__ = ["BinIndex", "bin_rows", "iter_candidates"]
