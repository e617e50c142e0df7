"""Row references, links, and the union-find link set builder.

Accepted pairs are unioned into disjoint sets; each set of two or more rows
becomes a `RowLink`. A `LinkSet` is always a partition: no row appears in
two links. Links are enumerated in ascending order of their smallest member
and members are sorted, so results are reproducible regardless of the order
in which pairs were found.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Set, Tuple

import numpy as np


class RowRef(NamedTuple):
    table_index: int
    row_index: int


class ScoredPair(NamedTuple):
    """An accepted pair with `ref1 < ref2`."""

    ref1: RowRef
    ref2: RowRef
    score: float


@dataclass(frozen=True)
class RowLink:
    refs: Tuple[RowRef, ...]
    score: Optional[float] = None  # best (lowest) accepted pair score in the group

    def __post_init__(self) -> None:
        refs = tuple(sorted(set(RowRef(*r) for r in self.refs)))
        if len(refs) < 2:
            raise ValueError("A RowLink needs at least two distinct rows.")
        object.__setattr__(self, "refs", refs)

    def __len__(self) -> int:
        return len(self.refs)

    def __iter__(self) -> Iterator[RowRef]:
        return iter(self.refs)

    def __contains__(self, ref: object) -> bool:
        return ref in self.refs

    @property
    def first(self) -> RowRef:
        return self.refs[0]

    def table_counts(self) -> Dict[int, int]:
        counts: Dict[int, int] = {}
        for ref in self.refs:
            counts[ref.table_index] = counts.get(ref.table_index, 0) + 1
        return counts

    def rows_in(self, table_index: int) -> List[int]:
        return [r.row_index for r in self.refs if r.table_index == table_index]


class LinkSet(Sequence[RowLink]):
    """Ordered, immutable partition of matched rows into links."""

    def __init__(self, links: Iterable[RowLink] = ()):
        ordered = sorted(links, key=lambda link: link.refs)
        owner: Dict[RowRef, int] = {}
        for i, link in enumerate(ordered):
            for ref in link.refs:
                if ref in owner:
                    raise ValueError(f"{ref} appears in more than one link.")
                owner[ref] = i
        self._links: Tuple[RowLink, ...] = tuple(ordered)
        self._owner = owner

    def __getitem__(self, i):  # type: ignore[override]
        return self._links[i]

    def __len__(self) -> int:
        return len(self._links)

    def __iter__(self) -> Iterator[RowLink]:
        return iter(self._links)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, RowLink):
            return item in self._links
        return item in self._owner

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LinkSet):
            return NotImplemented
        return [link.refs for link in self._links] == [link.refs for link in other._links]

    def __repr__(self) -> str:
        return f"LinkSet({len(self._links)} links, {len(self._owner)} rows)"

    def refs(self) -> Set[RowRef]:
        return set(self._owner)

    def link_for(self, ref: RowRef) -> Optional[RowLink]:
        i = self._owner.get(RowRef(*ref))
        return None if i is None else self._links[i]


class LinkSetBuilder:
    """Union-find over every row of the input tables.

    Rows are addressed by a global index (table offset + row index) into flat
    numpy arrays, so the structure is a pair of index arrays rather than
    linked nodes. Not thread safe: a single consumer applies all unions.
    """

    def __init__(self, table_sizes: Sequence[int]):
        sizes = [int(n) for n in table_sizes]
        self._offsets = np.concatenate([[0], np.cumsum(sizes, dtype=np.int64)]).astype(np.int64)
        total = int(self._offsets[-1])
        self._sizes = sizes
        self._parent = np.arange(total, dtype=np.int64)
        self._set_size = np.ones(total, dtype=np.int64)
        self._best = np.full(total, np.inf, dtype=float)
        self._touched: Set[int] = set()
        self._pairs: List[ScoredPair] = []

    def _index(self, ref: RowRef) -> int:
        t, r = int(ref[0]), int(ref[1])
        if not (0 <= t < len(self._sizes)) or not (0 <= r < self._sizes[t]):
            raise IndexError(f"{ref} is outside the input tables.")
        return int(self._offsets[t]) + r

    def _ref(self, idx: int) -> RowRef:
        t = int(np.searchsorted(self._offsets, idx, side="right")) - 1
        return RowRef(t, idx - int(self._offsets[t]))

    def find(self, x: int) -> int:
        parent = self._parent
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = int(parent[x])
        return x

    def add_pair(self, ref1: RowRef, ref2: RowRef, score: float) -> None:
        a, b = self._index(ref1), self._index(ref2)
        if a == b:
            raise ValueError(f"Cannot link {ref1} to itself.")
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            if self._set_size[ra] < self._set_size[rb]:
                ra, rb = rb, ra
            self._parent[rb] = ra
            self._set_size[ra] += self._set_size[rb]
            self._best[ra] = min(self._best[ra], self._best[rb])
        self._best[ra] = min(self._best[ra], float(score))
        self._touched.add(a)
        self._touched.add(b)
        lo, hi = (a, b) if a < b else (b, a)
        self._pairs.append(ScoredPair(self._ref(lo), self._ref(hi), float(score)))

    def add_pairs(self, pairs: Iterable[ScoredPair]) -> None:
        for p in pairs:
            self.add_pair(p.ref1, p.ref2, p.score)

    @property
    def n_pairs(self) -> int:
        return len(self._pairs)

    def pairs(self) -> List[ScoredPair]:
        return sorted(self._pairs, key=lambda p: (p.ref1, p.ref2))

    def build(self) -> LinkSet:
        groups: Dict[int, List[int]] = {}
        for idx in sorted(self._touched):
            groups.setdefault(self.find(idx), []).append(idx)
        links = []
        for root, members in groups.items():
            if len(members) < 2:
                continue
            best = float(self._best[root])
            links.append(
                RowLink(
                    tuple(self._ref(i) for i in members),
                    score=best if math.isfinite(best) else None,
                )
            )
        return LinkSet(links)


__all__ = ["RowRef", "ScoredPair", "RowLink", "LinkSet", "LinkSetBuilder"]
