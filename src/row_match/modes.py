"""Match-mode post-processing.

These functions decide which of the matcher's raw results to keep: which
accepted pairs in a two-table match (`PairMode`), how matched and unmatched
rows of two tables are joined (`JoinType`), which links of a multi-table
match survive (`MultiMode`), and how groups found inside a single table are
reported (`InternalAction`). They consume a finished result and never take
part in candidate search or scoring.

For pair modes, side 1 is the table with the lower index (`ScoredPair.ref1`)
and side 2 the other one.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.optimize import linear_sum_assignment

from .errors import MatchConfigError
from .links import LinkSet, RowLink, RowRef, ScoredPair


class _Mode(str, Enum):
    @classmethod
    def parse(cls, value: object):
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        for member in cls:
            if member.value == key:
                return member
        choices = ", ".join(m.value for m in cls)
        raise MatchConfigError(f"Unknown {cls.__name__} {value!r}; expected one of: {choices}.")


class PairMode(_Mode):
    ALL = "all"
    BEST = "best"
    BEST1 = "best1"
    BEST2 = "best2"
    OPTIMAL = "optimal"


class JoinType(_Mode):
    AND = "1and2"
    OR = "1or2"
    ALL1 = "all1"
    ALL2 = "all2"
    ONE_NOT_TWO = "1not2"
    TWO_NOT_ONE = "2not1"
    XOR = "1xor2"


class MultiMode(_Mode):
    ALL = "all"
    ONE_AND_ONE = "1and1"


class InternalAction(_Mode):
    IDENTIFY = "identify"
    KEEP0 = "keep0"
    KEEP1 = "keep1"
    WIDE = "wide"


def _pair_key(p: ScoredPair):
    return (p.ref1, p.ref2)


def _best_per_side(pairs: Sequence[ScoredPair], side: int) -> List[ScoredPair]:
    best: Dict[RowRef, ScoredPair] = {}
    for p in sorted(pairs, key=lambda q: (q.score, q.ref1, q.ref2)):
        ref = p.ref1 if side == 1 else p.ref2
        if ref not in best:
            best[ref] = p
    return sorted(best.values(), key=_pair_key)


def _greedy_best(pairs: Sequence[ScoredPair]) -> List[ScoredPair]:
    used1 = set()
    used2 = set()
    chosen: List[ScoredPair] = []
    for p in sorted(pairs, key=lambda q: (q.score, q.ref1, q.ref2)):
        if p.ref1 in used1 or p.ref2 in used2:
            continue
        chosen.append(p)
        used1.add(p.ref1)
        used2.add(p.ref2)
    return sorted(chosen, key=_pair_key)


def _optimal(pairs: Sequence[ScoredPair]) -> List[ScoredPair]:
    if not pairs:
        return []
    rows = sorted({p.ref1 for p in pairs})
    cols = sorted({p.ref2 for p in pairs})
    r_index = {r: i for i, r in enumerate(rows)}
    c_index = {c: j for j, c in enumerate(cols)}
    top = max(p.score for p in pairs)
    # Penalty large enough that one more real pair always beats any score saving.
    penalty = (top + 1.0) * (min(len(rows), len(cols)) + 1)
    cost = np.full((len(rows), len(cols)), penalty, dtype=float)
    lookup: Dict[tuple, ScoredPair] = {}
    for p in pairs:
        i, j = r_index[p.ref1], c_index[p.ref2]
        if p.score < cost[i, j]:
            cost[i, j] = p.score
            lookup[(i, j)] = p
    ri, cj = linear_sum_assignment(cost)
    chosen = [lookup[(a, b)] for a, b in zip(ri.tolist(), cj.tolist()) if (a, b) in lookup]
    return sorted(chosen, key=_pair_key)


def select_pairs(pairs: Iterable[ScoredPair], mode: object = PairMode.BEST) -> List[ScoredPair]:
    """Filter accepted pairs according to a `PairMode`."""
    mode = PairMode.parse(mode)
    pairs = list(pairs)
    if mode is PairMode.ALL:
        return sorted(pairs, key=_pair_key)
    if mode is PairMode.BEST:
        return _greedy_best(pairs)
    if mode is PairMode.BEST1:
        return _best_per_side(pairs, 1)
    if mode is PairMode.BEST2:
        return _best_per_side(pairs, 2)
    return _optimal(pairs)


def join_pairs(
    pairs: Iterable[ScoredPair],
    n_rows_1: int,
    n_rows_2: int,
    join: object = JoinType.AND,
) -> pd.DataFrame:
    """Row-index table for a two-table join.

    Columns `idx_1`, `idx_2` hold row indices (NA where a side is absent) and
    `score` the pair score (NaN for unmatched rows).
    """
    join = JoinType.parse(join)
    pairs = sorted(pairs, key=_pair_key)
    matched1 = {p.ref1.row_index for p in pairs}
    matched2 = {p.ref2.row_index for p in pairs}

    keep_pairs = join in {JoinType.AND, JoinType.OR, JoinType.ALL1, JoinType.ALL2}
    keep_only1 = join in {JoinType.OR, JoinType.ALL1, JoinType.ONE_NOT_TWO, JoinType.XOR}
    keep_only2 = join in {JoinType.OR, JoinType.ALL2, JoinType.TWO_NOT_ONE, JoinType.XOR}

    idx1: List[Optional[int]] = []
    idx2: List[Optional[int]] = []
    scores: List[float] = []
    if keep_pairs:
        for p in pairs:
            idx1.append(p.ref1.row_index)
            idx2.append(p.ref2.row_index)
            scores.append(p.score)
    if keep_only1:
        for i in range(int(n_rows_1)):
            if i not in matched1:
                idx1.append(i)
                idx2.append(None)
                scores.append(np.nan)
    if keep_only2:
        for j in range(int(n_rows_2)):
            if j not in matched2:
                idx1.append(None)
                idx2.append(j)
                scores.append(np.nan)

    out = pd.DataFrame(
        {
            "idx_1": pd.array(idx1, dtype="Int64"),
            "idx_2": pd.array(idx2, dtype="Int64"),
            "score": np.asarray(scores, dtype=float),
        }
    )
    if join in {JoinType.ALL1, JoinType.OR}:
        out = out.sort_values(["idx_1", "idx_2"], na_position="last", kind="mergesort")
    elif join is JoinType.ALL2:
        out = out.sort_values(["idx_2", "idx_1"], na_position="last", kind="mergesort")
    return out.reset_index(drop=True)


def select_links(links: LinkSet, mode: object = MultiMode.ALL, n_tables: Optional[int] = None) -> LinkSet:
    """Keep the links of a multi-table match allowed by a `MultiMode`."""
    mode = MultiMode.parse(mode)
    if mode is MultiMode.ALL:
        return links
    if n_tables is None:
        n_tables = 1 + max((ref.table_index for link in links for ref in link), default=-1)
    kept = []
    for link in links:
        counts = link.table_counts()
        if len(counts) == n_tables and all(c == 1 for c in counts.values()):
            kept.append(link)
    return LinkSet(kept)


def link_frame(links: LinkSet) -> pd.DataFrame:
    """Long-format membership table: one row per linked row."""
    records = []
    for gid, link in enumerate(links, start=1):
        for ref in link:
            records.append(
                {
                    "group_id": gid,
                    "group_size": len(link),
                    "table": ref.table_index,
                    "row": ref.row_index,
                    "score": np.nan if link.score is None else link.score,
                }
            )
    return pd.DataFrame(records, columns=["group_id", "group_size", "table", "row", "score"])


def apply_internal_action(
    links: LinkSet,
    n_rows: int,
    action: object = InternalAction.IDENTIFY,
    *,
    width: Optional[int] = None,
    table_index: int = 0,
) -> pd.DataFrame:
    """Report the groups found by an internal (single-table) match.

    - identify: every row, with `group_id`/`group_size` (NA when unmatched)
    - keep0: rows that belong to no group
    - keep1: unmatched rows plus the first row of each group
    - wide: one line per group, columns `idx_1..idx_k`; with `width`, groups
      larger than `width` are dropped and smaller ones padded with NA
    """
    action = InternalAction.parse(action)
    group_id = np.zeros(int(n_rows), dtype=np.int64)
    group_size = np.zeros(int(n_rows), dtype=np.int64)
    groups: List[RowLink] = []
    for gid, link in enumerate(links, start=1):
        rows = link.rows_in(table_index)
        if not rows:
            continue
        groups.append(link)
        for r in rows:
            group_id[r] = gid
            group_size[r] = len(rows)

    if action is InternalAction.WIDE:
        k = int(width) if width is not None else max((len(g) for g in groups), default=0)
        data: List[List[Optional[int]]] = []
        for g in groups:
            rows = g.rows_in(table_index)
            if len(rows) > k:
                continue
            data.append(rows + [None] * (k - len(rows)))
        return pd.DataFrame(
            {f"idx_{i + 1}": pd.array([d[i] for d in data], dtype="Int64") for i in range(k)}
        )

    unmatched = group_id == 0
    frame = pd.DataFrame(
        {
            "row": np.arange(int(n_rows), dtype=np.int64),
            "group_id": pd.array([None if u else int(g) for u, g in zip(unmatched, group_id)], dtype="Int64"),
            "group_size": pd.array([None if u else int(s) for u, s in zip(unmatched, group_size)], dtype="Int64"),
        }
    )

    if action is InternalAction.IDENTIFY:
        return frame
    if action is InternalAction.KEEP0:
        return frame.loc[unmatched, ["row"]].reset_index(drop=True)
    first_rows = {g.rows_in(table_index)[0] for g in groups}
    keep = unmatched | frame["row"].isin(first_rows).to_numpy()
    return frame.loc[keep].reset_index(drop=True)


__all__ = [
    "PairMode",
    "JoinType",
    "MultiMode",
    "InternalAction",
    "select_pairs",
    "join_pairs",
    "select_links",
    "link_frame",
    "apply_internal_action",
]
