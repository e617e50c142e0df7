import math

import numpy as np
import pandas as pd
import pytest

from row_match import (
    ArrayTable,
    CancelToken,
    DataFrameTable,
    ErrorCartesianMatchEngine,
    IsotropicCartesianMatchEngine,
    LinkSetBuilder,
    MatchConfig,
    MatchConfigError,
    MatchPhase,
    RowMatcher,
    RowRef,
    SkyMatchEngine,
)


def _refs(links):
    return [[tuple(r) for r in link] for link in links]


def _brute_force_links(engine, tuples):
    b = LinkSetBuilder([len(tuples)])
    for i in range(len(tuples)):
        for j in range(i + 1, len(tuples)):
            score = engine.match_score(tuples[i], tuples[j])
            if score >= 0:
                b.add_pair(RowRef(0, i), RowRef(0, j), score)
    return b.build()


class _Recorder:
    def __init__(self):
        self.calls = []

    def update(self, phase, done, total):
        self.calls.append((phase, done, total))


def test_internal_match_finds_close_pair_only():
    table = ArrayTable([[0.0, 0.0], [0.5, 0.0], [5.0, 5.0]])
    res = RowMatcher(IsotropicCartesianMatchEngine(2, 1.0), [table]).find_internal_matches()
    assert res.phase is MatchPhase.DONE
    assert _refs(res.links) == [[(0, 0), (0, 1)]]
    assert res.links[0].score == pytest.approx(0.5)
    assert res.n_accepted == 1


def test_internal_match_links_everything_with_large_scale():
    table = ArrayTable([[0.0, 0.0], [0.5, 0.0], [5.0, 5.0]])
    res = RowMatcher(IsotropicCartesianMatchEngine(2, 10.0), [table]).find_internal_matches()
    assert _refs(res.links) == [[(0, 0), (0, 1), (0, 2)]]


def test_links_are_transitive_closures():
    # 0-1 and 1-2 match, 0-2 do not
    table = ArrayTable([[0.0], [0.9], [1.8], [10.0]])
    res = RowMatcher(IsotropicCartesianMatchEngine(1, 1.0), [table]).find_internal_matches()
    assert _refs(res.links) == [[(0, 0), (0, 1), (0, 2)]]
    assert [(p.ref1.row_index, p.ref2.row_index) for p in res.pairs] == [(0, 1), (1, 2)]


def test_internal_match_agrees_with_brute_force():
    rng = np.random.default_rng(0)
    pts = rng.uniform(0, 10, size=(400, 2))
    engine = IsotropicCartesianMatchEngine(2, 0.4, bin_factor=1.3)
    res = RowMatcher(engine, [ArrayTable(pts)], config=MatchConfig(chunk_size=37)).find_internal_matches()
    expected = _brute_force_links(engine, [tuple(p) for p in pts.tolist()])
    assert len(expected) > 0
    assert res.links == expected


def test_error_engine_match_agrees_with_brute_force():
    rng = np.random.default_rng(3)
    pts = np.column_stack([rng.uniform(0, 20, size=(300, 2)), rng.uniform(0.0, 0.6, size=300)])
    engine = ErrorCartesianMatchEngine(2, 0.3)
    res = RowMatcher(engine, [ArrayTable(pts)]).find_internal_matches()
    assert res.links == _brute_force_links(engine, [tuple(p) for p in pts.tolist()])


def test_worker_count_does_not_change_results():
    rng = np.random.default_rng(0)
    tables = [ArrayTable(rng.uniform(0, 5, size=(250, 2)), name=f"t{i}") for i in range(3)]
    engine = IsotropicCartesianMatchEngine(2, 0.3)
    serial = RowMatcher(engine, tables, config=MatchConfig(chunk_size=17)).find_group_matches()
    threaded = RowMatcher(engine, tables, config=MatchConfig(chunk_size=17, n_workers=4)).find_group_matches()
    assert len(serial.links) > 0
    assert serial.links == threaded.links
    assert serial.pairs == threaded.pairs
    assert [link.score for link in serial.links] == [link.score for link in threaded.links]


def test_rerunning_gives_identical_links():
    table = ArrayTable(np.random.default_rng(5).uniform(0, 3, size=(100, 3)))
    engine = IsotropicCartesianMatchEngine(3, 0.5)
    matcher = RowMatcher(engine, [table])
    first = matcher.find_internal_matches()
    with pytest.raises(MatchConfigError):
        matcher.find_internal_matches()
    matcher.reset()
    second = matcher.find_internal_matches()
    assert first.links == second.links


def test_cancel_before_run_returns_no_links():
    token = CancelToken()
    token.cancel()
    matcher = RowMatcher(IsotropicCartesianMatchEngine(2, 1.0), [ArrayTable([[0.0, 0.0], [0.1, 0.0]])], cancel=token)
    res = matcher.find_internal_matches()
    assert res.cancelled
    assert res.links is None
    assert matcher.phase is MatchPhase.CANCELLED


def test_cancel_during_candidate_scan():
    token = CancelToken()

    class _CancelOnScan:
        def update(self, phase, done, total):
            if phase == MatchPhase.CANDIDATE_SCAN.value:
                token.cancel()

    table = ArrayTable(np.random.default_rng(1).uniform(0, 1, size=(200, 2)))
    matcher = RowMatcher(
        IsotropicCartesianMatchEngine(2, 0.1),
        [table],
        config=MatchConfig(chunk_size=10, n_workers=2),
        progress=_CancelOnScan(),
        cancel=token,
    )
    res = matcher.find_internal_matches()
    assert res.phase is MatchPhase.CANCELLED
    assert res.links is None


def test_progress_reports_each_phase_to_completion():
    rec = _Recorder()
    table = ArrayTable(np.zeros((25, 2)))
    RowMatcher(
        IsotropicCartesianMatchEngine(2, 1.0), [table], config=MatchConfig(chunk_size=10), progress=rec
    ).find_internal_matches()
    phases = [c[0] for c in rec.calls]
    assert phases[0] == "binning"
    assert "candidate_scan" in phases
    assert ("binning", 25, 25) in rec.calls
    assert ("candidate_scan", 25, 25) in rec.calls
    for phase in ("binning", "candidate_scan"):
        done = [c[1] for c in rec.calls if c[0] == phase]
        assert done == sorted(done)


def test_unmatchable_rows_are_skipped_and_counted():
    df = pd.DataFrame({"x": [0.0, np.nan, 0.2], "y": [0.0, 0.0, None], "z": [0.0, 0.1, 0.1]})
    table = DataFrameTable(df, ["x", "z"], name="df")
    res = RowMatcher(IsotropicCartesianMatchEngine(2, 1.0), [table]).find_internal_matches()
    assert res.n_skipped == {0: 1}
    assert _refs(res.links) == [[(0, 0), (0, 2)]]


def test_width_mismatch_is_rejected():
    with pytest.raises(MatchConfigError):
        RowMatcher(IsotropicCartesianMatchEngine(3, 1.0), [ArrayTable([[0.0, 0.0]])])
    with pytest.raises(MatchConfigError):
        RowMatcher(IsotropicCartesianMatchEngine(2, 1.0), [])


def test_empty_table_gives_empty_links():
    table = ArrayTable(np.empty((0, 2)))
    res = RowMatcher(IsotropicCartesianMatchEngine(2, 1.0), [table]).find_internal_matches()
    assert res.phase is MatchPhase.DONE
    assert len(res.links) == 0


def test_pair_match_only_links_across_tables():
    t1 = ArrayTable([[0.0, 0.0], [0.1, 0.0]], name="a")
    t2 = ArrayTable([[0.2, 0.0], [8.0, 8.0]], name="b")
    res = RowMatcher(IsotropicCartesianMatchEngine(2, 0.5), [t1, t2], config=MatchConfig(use_bounds=False)).find_pair_matches()
    pairs = [(tuple(p.ref1), tuple(p.ref2)) for p in res.pairs]
    assert pairs == [((0, 0), (1, 0)), ((0, 1), (1, 0))]
    assert _refs(res.links) == [[(0, 0), (0, 1), (1, 0)]]


def test_pair_match_culls_rows_outside_bounds():
    t1 = ArrayTable([[0.0, 0.0], [0.2, 0.1]])
    t2 = ArrayTable([[0.5, 0.0], [100.0, 100.0]])
    engine = IsotropicCartesianMatchEngine(2, 1.0)
    res = RowMatcher(engine, [t1, t2]).find_pair_matches()
    assert res.n_excluded == {0: 0, 1: 1}
    assert _refs(res.links) == [[(0, 0), (0, 1), (1, 0)]]

    unbounded = RowMatcher(engine, [t1, t2], config=MatchConfig(use_bounds=False)).find_pair_matches()
    assert unbounded.links == res.links
    assert unbounded.n_excluded == {0: 0, 1: 0}


def test_group_match_ignores_same_table_pairs():
    t1 = ArrayTable([[0.0], [0.1]])
    t2 = ArrayTable([[5.0]])
    t3 = ArrayTable([[5.05], [20.0]])
    res = RowMatcher(IsotropicCartesianMatchEngine(1, 0.2), [t1, t2, t3]).find_group_matches()
    assert _refs(res.links) == [[(1, 0), (2, 0)]]


def test_multi_pair_match_only_uses_reference_table():
    ref = ArrayTable([[0.0]])
    a = ArrayTable([[0.3]])
    b = ArrayTable([[-0.3], [0.6]])
    engine = IsotropicCartesianMatchEngine(1, 0.5)
    res = RowMatcher(engine, [ref, a, b]).find_multi_pair_matches(0)
    # a0-b1 are within range of each other but only links via the reference count
    assert _refs(res.links) == [[(0, 0), (1, 0), (2, 0)]]
    assert all(p.ref1.table_index == 0 for p in res.pairs)


def test_sky_pair_match_across_ra_wrap():
    t1 = ArrayTable([[359.999, 10.0], [120.0, -30.0]])
    t2 = ArrayTable([[0.0005, 10.0], [120.0, -29.0]])
    res = RowMatcher(SkyMatchEngine(1.0 / 360.0), [t1, t2]).find_pair_matches()
    assert _refs(res.links) == [[(0, 0), (1, 0)]]
    assert math.isclose(res.score_scale, 1.0)


def test_invalid_indices_are_rejected():
    matcher = RowMatcher(IsotropicCartesianMatchEngine(1, 1.0), [ArrayTable([[0.0]])])
    with pytest.raises(MatchConfigError):
        matcher.find_internal_matches(3)
    with pytest.raises(MatchConfigError):
        matcher.find_pair_matches(0, 0)


class _CountingTable:
    def __init__(self, table):
        self._table = table
        self.name = table.name
        self.reads = 0

    @property
    def row_count(self):
        return self._table.row_count

    @property
    def tuple_width(self):
        return self._table.tuple_width

    def get_tuple(self, row):
        self.reads += 1
        return self._table.get_tuple(row)


def test_second_pair_run_fails_before_reading_rows():
    t1 = _CountingTable(ArrayTable([[0.0, 0.0], [0.2, 0.1]]))
    t2 = _CountingTable(ArrayTable([[0.5, 0.0]]))
    matcher = RowMatcher(IsotropicCartesianMatchEngine(2, 1.0), [t1, t2])
    matcher.find_pair_matches()
    t1.reads = t2.reads = 0
    with pytest.raises(MatchConfigError):
        matcher.find_pair_matches()
    assert (t1.reads, t2.reads) == (0, 0)


def test_cancelled_pair_run_skips_bounds_scan():
    token = CancelToken()
    token.cancel()
    t1 = _CountingTable(ArrayTable(np.zeros((50, 2))))
    t2 = _CountingTable(ArrayTable(np.ones((50, 2))))
    res = RowMatcher(IsotropicCartesianMatchEngine(2, 1.0), [t1, t2], cancel=token).find_pair_matches()
    assert res.phase is MatchPhase.CANCELLED
    assert res.links is None
    assert (t1.reads, t2.reads) == (0, 0)
