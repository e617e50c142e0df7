"""Row matcher: drives binning, candidate scanning and link building.

A run moves through IDLE -> BINNING -> CANDIDATE_SCAN -> LINK_BUILD -> DONE,
or ends in CANCELLED when the shared cancel token is set. Every mode bins all
participating tables into one `BinIndex` first (the index is complete before
any candidate is looked up), then scans the rows of selected tables and
scores the candidates a mode-specific predicate accepts:

- internal: one table against itself, each unordered pair once
- pair: rows of table 1 against rows of table 2
- group: rows of every table against rows of every other table
- multi-pair: rows of a reference table against every other table

Work is split into row blocks of `config.chunk_size`. With
`config.n_workers > 1` the blocks run on a thread pool; each block returns
its accepted pairs and the calling thread applies all unions, so the
union-find is only ever touched by one thread. Results do not depend on the
worker count or completion order.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import closing
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .binning import BinIndex, bin_rows, iter_candidates
from .config import MatchConfig
from .engines import MatchEngine
from .errors import MatchConfigError, MatchResourceError
from .links import LinkSet, LinkSetBuilder, RowRef, ScoredPair
from .progress import CancelToken, NullProgress, ProgressSink
from .ranges import NdRange
from .tables import RowTable

logger = logging.getLogger(__name__)


class MatchPhase(str, Enum):
    IDLE = "idle"
    BINNING = "binning"
    CANDIDATE_SCAN = "candidate_scan"
    LINK_BUILD = "link_build"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class MatchResult:
    links: Optional[LinkSet]  # None when the run was cancelled
    pairs: Optional[List[ScoredPair]]
    phase: MatchPhase
    mode: str
    table_indices: Tuple[int, ...]
    n_rows: Dict[int, int] = field(default_factory=dict)
    n_skipped: Dict[int, int] = field(default_factory=dict)  # unmatchable tuples
    n_excluded: Dict[int, int] = field(default_factory=dict)  # outside match bounds
    n_candidates: int = 0
    n_accepted: int = 0
    score_scale: float = 1.0
    elapsed: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.phase is MatchPhase.CANCELLED


class _RunCancelled(Exception):
    pass


Accept = Callable[[RowRef, RowRef], bool]


class RowMatcher:
    """Finds matching rows in one or more tables using a `MatchEngine`.

    A matcher performs a single run; call `reset()` before reusing it.
    """

    def __init__(
        self,
        engine: MatchEngine,
        tables: Sequence[RowTable],
        *,
        config: Optional[MatchConfig] = None,
        progress: Optional[ProgressSink] = None,
        cancel: Optional[CancelToken] = None,
    ):
        self.engine = engine
        self.tables = list(tables)
        self.config = (config or MatchConfig()).validate()
        self.progress = progress or NullProgress()
        self.cancel = cancel or CancelToken()
        self.phase = MatchPhase.IDLE
        if not self.tables:
            raise MatchConfigError("At least one table is required.")
        width = engine.tuple_width
        for i, table in enumerate(self.tables):
            if int(table.tuple_width) != width:
                names = [info.name for info in engine.tuple_infos]
                raise MatchConfigError(
                    f"Table {i} ({table.name}) supplies {table.tuple_width} tuple fields; "
                    f"{engine} expects {width} {names}."
                )

    def reset(self) -> None:
        self.phase = MatchPhase.IDLE

    # Public operations

    def find_internal_matches(self, table_index: int = 0) -> MatchResult:
        """Groups of mutually matching rows within a single table."""
        self._check_indices([table_index])
        return self._run(
            mode="internal",
            bin_tables=[table_index],
            scan_tables=[table_index],
            accept=lambda ref, other: other > ref,
        )

    def find_pair_matches(self, index_1: int = 0, index_2: int = 1) -> MatchResult:
        """Pairs between two different tables."""
        self._check_indices([index_1, index_2])
        if index_1 == index_2:
            raise MatchConfigError("Pair matching needs two different tables; use find_internal_matches.")
        self._check_idle()
        bounds = (lambda: self._pair_bounds(index_1, index_2)) if self.config.use_bounds else None
        return self._run(
            mode="pair",
            bin_tables=[index_1, index_2],
            scan_tables=[index_1],
            accept=lambda ref, other: other.table_index == index_2,
            bounds=bounds,
        )

    def find_group_matches(self, table_indices: Optional[Sequence[int]] = None) -> MatchResult:
        """Groups linked by matches between rows of different tables."""
        indices = list(range(len(self.tables))) if table_indices is None else list(table_indices)
        self._check_indices(indices)
        if len(set(indices)) != len(indices):
            raise MatchConfigError(f"Duplicate table indices {indices}.")
        return self._run(
            mode="group",
            bin_tables=indices,
            scan_tables=indices,
            accept=lambda ref, other: other.table_index != ref.table_index and other > ref,
        )

    def find_multi_pair_matches(self, ref_index: int = 0) -> MatchResult:
        """Groups built only from matches between a reference table and each other table."""
        self._check_indices([ref_index])
        if len(self.tables) < 2:
            raise MatchConfigError("Multi-pair matching needs at least two tables.")
        return self._run(
            mode="multipair",
            bin_tables=list(range(len(self.tables))),
            scan_tables=[ref_index],
            accept=lambda ref, other: other.table_index != ref_index,
        )

    # Run machinery

    def _check_indices(self, indices: Iterable[int]) -> None:
        for i in indices:
            if not (0 <= int(i) < len(self.tables)):
                raise MatchConfigError(f"Table index {i} out of range (have {len(self.tables)} tables).")

    def _check_idle(self) -> None:
        if self.phase is not MatchPhase.IDLE:
            raise MatchConfigError(
                f"RowMatcher has already run (phase {self.phase.value}); call reset() to run again."
            )

    def _set_phase(self, phase: MatchPhase) -> None:
        self.phase = phase
        logger.debug("phase -> %s", phase.value)

    def _pair_bounds(self, index_1: int, index_2: int) -> Optional[Dict[int, Optional[NdRange]]]:
        """Common region outside which no row of either table can match."""
        if not self.engine.can_bound_match:
            return None
        width = self.engine.tuple_width
        ranges = []
        for i in (index_1, index_2):
            table = self.tables[i]
            ranges.append(NdRange.from_tuples(self._iter_tuples(table), width))
        common = self.engine.get_match_bounds(ranges, 0)
        other = self.engine.get_match_bounds(ranges, 1)
        common = common.intersection(other)
        logger.info("Match bounds: %s", common)
        return {index_1: common, index_2: common}

    def _iter_tuples(self, table: RowTable) -> Iterator[Tuple[object, ...]]:
        size = int(self.config.chunk_size)
        for r in range(int(table.row_count)):
            if r % size == 0 and self.cancel.cancelled:
                raise _RunCancelled()
            yield table.get_tuple(r)

    def _blocks(self, table_indices: Sequence[int]) -> List[Tuple[int, range]]:
        size = int(self.config.chunk_size)
        jobs = []
        for t in table_indices:
            n = int(self.tables[t].row_count)
            for start in range(0, n, size):
                jobs.append((t, range(start, min(start + size, n))))
        return jobs

    def _map(self, fn: Callable, jobs: Sequence) -> Iterator:
        """Apply `fn` to each job, yielding results as they complete."""
        if int(self.config.n_workers) <= 1 or len(jobs) <= 1:
            for job in jobs:
                if self.cancel.cancelled:
                    return
                yield fn(job)
            return
        ex = ThreadPoolExecutor(max_workers=int(self.config.n_workers))
        try:
            futures = [ex.submit(fn, job) for job in jobs]
            for fut in as_completed(futures):
                yield fut.result()
                if self.cancel.cancelled:
                    return
        finally:
            ex.shutdown(wait=True, cancel_futures=True)

    def _bin_job(self, job, bounds):
        if self.cancel.cancelled:
            return None
        t, rows = job
        table_bounds = None if bounds is None else bounds.get(t)
        if bounds is not None and table_bounds is None:
            # Disjoint match bounds: nothing in this table can match.
            return t, {}, {}, [], len(rows), len(rows)
        shard, row_bins, skipped = bin_rows(self.engine, self.tables[t], t, rows, bounds=table_bounds)
        excluded = len(rows) - len(row_bins) - len(skipped)
        return t, shard, row_bins, skipped, excluded, len(rows)

    def _scan_job(self, job, index: BinIndex, accept: Accept):
        if self.cancel.cancelled:
            return None
        t, rows = job
        table = self.tables[t]
        engine = self.engine
        accepted: List[ScoredPair] = []
        n_cand = 0
        for row in rows:
            ref = RowRef(t, row)
            bins = index.bins_for(ref)
            if not bins:
                continue
            tup = table.get_tuple(row)
            for other in iter_candidates(index, ref, bins, accept=accept):
                n_cand += 1
                score = engine.match_score(tup, self.tables[other.table_index].get_tuple(other.row_index))
                if score >= 0:
                    lo, hi = (ref, other) if ref < other else (other, ref)
                    accepted.append(ScoredPair(lo, hi, score))
        return accepted, n_cand, len(rows)

    def _run(
        self,
        *,
        mode: str,
        bin_tables: Sequence[int],
        scan_tables: Sequence[int],
        accept: Accept,
        bounds: Optional[Callable[[], Optional[Dict[int, Optional[NdRange]]]]] = None,
    ) -> MatchResult:
        self._check_idle()
        t0 = time.time()
        result = MatchResult(
            links=None,
            pairs=None,
            phase=MatchPhase.IDLE,
            mode=mode,
            table_indices=tuple(bin_tables),
            n_rows={t: int(self.tables[t].row_count) for t in bin_tables},
            n_skipped={t: 0 for t in bin_tables},
            n_excluded={t: 0 for t in bin_tables},
            score_scale=float(self.engine.score_scale),
        )
        logger.info(
            "%s match with %s over %s",
            mode,
            self.engine,
            ", ".join(f"{self.tables[t].name} ({result.n_rows[t]} rows)" for t in bin_tables),
        )
        try:
            index = self._binning(bin_tables, bounds, result)
            builder = LinkSetBuilder([int(t.row_count) for t in self.tables])
            self._candidate_scan(index, scan_tables, accept, builder, result)
            self._set_phase(MatchPhase.LINK_BUILD)
            result.links = builder.build()
            result.pairs = builder.pairs()
        except _RunCancelled:
            self._set_phase(MatchPhase.CANCELLED)
            result.phase = MatchPhase.CANCELLED
            result.elapsed = time.time() - t0
            logger.info("%s match cancelled after %.2fs", mode, result.elapsed)
            return result
        except MemoryError as exc:
            raise MatchResourceError(
                "Ran out of memory while matching; choose a scale that gives fewer rows per bin "
                "or fewer bins per row."
            ) from exc

        self._set_phase(MatchPhase.DONE)
        result.phase = MatchPhase.DONE
        result.elapsed = time.time() - t0
        for t, n in result.n_skipped.items():
            if n:
                logger.warning("%s: %d rows skipped as unmatchable", self.tables[t].name, n)
        logger.info(
            "%s match: %d links from %d accepted pairs (%d candidates scored) in %.2fs",
            mode,
            len(result.links),
            result.n_accepted,
            result.n_candidates,
            result.elapsed,
        )
        return result

    def _binning(self, bin_tables, bounds_fn, result: MatchResult) -> BinIndex:
        self._set_phase(MatchPhase.BINNING)
        bounds = bounds_fn() if bounds_fn is not None else None
        jobs = self._blocks(bin_tables)
        total = sum(len(rows) for _, rows in jobs)
        index = BinIndex()
        done = 0
        self.progress.update(MatchPhase.BINNING.value, 0, total)
        with closing(self._map(lambda job: self._bin_job(job, bounds), jobs)) as results:
            for out in results:
                if out is None:
                    break
                t, shard, row_bins, skipped, excluded, n = out
                index.merge(shard, row_bins)
                result.n_skipped[t] += len(skipped)
                result.n_excluded[t] += excluded
                if skipped:
                    logger.debug("%s: unmatchable rows %s", self.tables[t].name, skipped[:20])
                done += n
                self.progress.update(MatchPhase.BINNING.value, done, total)
        if self.cancel.cancelled:
            raise _RunCancelled()
        index.finalize()
        logger.info("Binned %d rows into %d bins", index.n_rows, len(index))
        return index

    def _candidate_scan(self, index, scan_tables, accept, builder: LinkSetBuilder, result: MatchResult) -> None:
        self._set_phase(MatchPhase.CANDIDATE_SCAN)
        jobs = self._blocks(scan_tables)
        total = sum(len(rows) for _, rows in jobs)
        done = 0
        self.progress.update(MatchPhase.CANDIDATE_SCAN.value, 0, total)
        with closing(self._map(lambda job: self._scan_job(job, index, accept), jobs)) as results:
            for out in results:
                if out is None:
                    break
                accepted, n_cand, n = out
                builder.add_pairs(accepted)
                result.n_candidates += n_cand
                result.n_accepted += len(accepted)
                done += n
                self.progress.update(MatchPhase.CANDIDATE_SCAN.value, done, total)
        if self.cancel.cancelled:
            raise _RunCancelled()


__all__ = ["MatchPhase", "MatchResult", "RowMatcher"]
