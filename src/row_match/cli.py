import argparse
import json
import logging
import sys
import threading
from dataclasses import asdict
from pathlib import Path

import pandas as pd

from . import __version__
from .config import MatchConfig, build_engine
from .errors import MatchConfigError
from .matcher import MatchResult, RowMatcher
from .modes import InternalAction, apply_internal_action, join_pairs, link_frame, select_links, select_pairs
from .progress import CancelToken, LoggingProgress, NullProgress, TqdmProgress
from .tables import DataFrameTable

EXIT_CONFIG = 2
EXIT_CANCELLED = 130


def _split_cols(text: str) -> list:
    return [c.strip() for c in str(text).split(",") if c.strip()]


def _add_engine_args(p):
    p.add_argument("--engine", type=str, default="cartesian", help="cartesian | anisotropic | error | sky | exact")
    p.add_argument("--scale", type=float, default=1.0, help="Match radius / rough error / max separation (deg)")
    p.add_argument("--scales", type=str, default=None, help="Comma-separated per-axis scales (anisotropic)")
    p.add_argument("--bin-factor", dest="bin_factor", type=float, default=1.0)
    p.add_argument("--workers", type=int, default=1)
    p.add_argument("--chunk-size", dest="chunk_size", type=int, default=10_000)
    p.add_argument("--timeout", type=float, default=None, help="Cancel the run after this many seconds")
    p.add_argument("--progress", choices=["bar", "log", "none"], default="bar")
    p.add_argument("--sep", type=str, default=",", help="Input/output CSV delimiter")
    p.add_argument("-v", "--verbose", action="store_true")


def _add_internal_parser(sub):
    p = sub.add_parser("internal", help="Find groups of matching rows within one table")
    p.add_argument("table", type=str, help="Path to input CSV")
    p.add_argument("--cols", type=str, required=True, help="Comma-separated tuple columns")
    p.add_argument("--action", type=str, default="identify", help="identify | keep0 | keep1 | wide")
    p.add_argument("--width", type=int, default=None, help="Maximum group size for --action wide")
    p.add_argument("--out", type=str, required=True, help="Output CSV")
    _add_engine_args(p)
    return p


def _add_pair_parser(sub):
    p = sub.add_parser("pair", help="Match rows between two tables")
    p.add_argument("table1", type=str)
    p.add_argument("table2", type=str)
    p.add_argument("--cols1", type=str, required=True, help="Comma-separated tuple columns of table1")
    p.add_argument("--cols2", type=str, default=None, help="Tuple columns of table2 (default: --cols1)")
    p.add_argument("--find", type=str, default="best", help="all | best | best1 | best2 | optimal")
    p.add_argument("--join", type=str, default="1and2", help="1and2 | 1or2 | all1 | all2 | 1not2 | 2not1 | 1xor2")
    p.add_argument("--no-bounds", dest="use_bounds", action="store_false", help="Do not cull rows by match bounds")
    p.add_argument("--out", type=str, required=True)
    _add_engine_args(p)
    return p


def _add_group_parser(sub):
    p = sub.add_parser("group", help="Group matching rows across N tables")
    p.add_argument("tables", nargs="+", help="Input CSV paths")
    p.add_argument("--cols", dest="cols", action="append", required=True,
                   help="Tuple columns; give once for all tables or once per table")
    p.add_argument("--multi", choices=["group", "pairs"], default="group",
                   help="group: all inter-table pairs; pairs: only pairs with the reference table")
    p.add_argument("--ref", type=int, default=0, help="Reference table index for --multi pairs")
    p.add_argument("--multimode", type=str, default="all", help="all | 1and1")
    p.add_argument("--out", type=str, required=True)
    _add_engine_args(p)
    return p


def _engine_config(args, n_cols: int) -> MatchConfig:
    name = str(args.engine).strip().lower()
    ndim = n_cols - 1 if name == "error" else n_cols
    scales = [float(s) for s in _split_cols(args.scales)] if args.scales else None
    return MatchConfig(
        engine=name,
        ndim=max(ndim, 1),
        scale=args.scale,
        scales=scales,
        bin_factor=args.bin_factor,
        n_workers=args.workers,
        chunk_size=args.chunk_size,
        use_bounds=getattr(args, "use_bounds", True),
    )


def _progress(args):
    if args.progress == "bar":
        return TqdmProgress(leave=False)
    if args.progress == "log":
        return LoggingProgress()
    return NullProgress()


def _run_with_timeout(run, args, cancel: CancelToken, progress=None) -> MatchResult:
    timer = None
    if args.timeout is not None:
        timer = threading.Timer(float(args.timeout), cancel.cancel)
        timer.daemon = True
        timer.start()
    try:
        return run()
    finally:
        if timer is not None:
            timer.cancel()
        close = getattr(progress, "close", None)
        if close is not None:
            close()


def _write_manifest(out: Path, command: str, cfg: MatchConfig, engine, inputs, result: MatchResult, extra: dict) -> Path:
    path = out.with_suffix(".run_manifest.json")
    payload = {
        "command": command,
        "row_match_version": __version__,
        "engine": str(engine),
        "config": asdict(cfg),
        "inputs": [str(p) for p in inputs],
        "n_rows": {str(k): v for k, v in result.n_rows.items()},
        "n_skipped": {str(k): v for k, v in result.n_skipped.items()},
        "n_excluded": {str(k): v for k, v in result.n_excluded.items()},
        "n_candidates": result.n_candidates,
        "n_accepted_pairs": result.n_accepted,
        "n_links": 0 if result.links is None else len(result.links),
        "elapsed_s": result.elapsed,
        **extra,
    }
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    return path


def _cmd_internal(args, cancel: CancelToken) -> int:
    df = pd.read_csv(args.table, sep=args.sep)
    cols = _split_cols(args.cols)
    cfg = _engine_config(args, len(cols))
    cfg.internal_action = InternalAction.parse(args.action).value
    engine = build_engine(cfg)
    table = DataFrameTable(df, cols, name=Path(args.table).stem)
    progress = _progress(args)
    matcher = RowMatcher(engine, [table], config=cfg, progress=progress, cancel=cancel)
    result = _run_with_timeout(matcher.find_internal_matches, args, cancel, progress)
    if result.cancelled:
        print("match cancelled", file=sys.stderr)
        return EXIT_CANCELLED

    sel = apply_internal_action(result.links, len(df), cfg.internal_action, width=args.width)
    base = df.reset_index(drop=True)
    if cfg.internal_action == "identify":
        out = base.assign(GroupID=sel["group_id"].array, GroupSize=sel["group_size"].array)
    elif cfg.internal_action in {"keep0", "keep1"}:
        out = base.iloc[sel["row"].to_numpy(dtype=int)]
    else:
        out = sel
    out_path = Path(args.out)
    out.to_csv(out_path, index=False, sep=args.sep)
    _write_manifest(out_path, "internal", cfg, engine, [args.table], result, {"n_output_rows": int(len(out))})
    print(f"wrote {out_path} with {len(out)} rows; {len(result.links)} match groups")
    return 0


def _side_frame(df: pd.DataFrame, idx: pd.Series, suffix: str) -> pd.DataFrame:
    labels = idx.fillna(-1).astype(int).to_numpy()
    return df.reset_index(drop=True).add_suffix(suffix).reindex(labels).reset_index(drop=True)


def _cmd_pair(args, cancel: CancelToken) -> int:
    df1 = pd.read_csv(args.table1, sep=args.sep)
    df2 = pd.read_csv(args.table2, sep=args.sep)
    cols1 = _split_cols(args.cols1)
    cols2 = _split_cols(args.cols2) if args.cols2 else cols1
    cfg = _engine_config(args, len(cols1))
    cfg.pair_mode = args.find
    cfg.join = args.join
    engine = build_engine(cfg)
    tables = [
        DataFrameTable(df1, cols1, name=Path(args.table1).stem),
        DataFrameTable(df2, cols2, name=Path(args.table2).stem),
    ]
    progress = _progress(args)
    matcher = RowMatcher(engine, tables, config=cfg, progress=progress, cancel=cancel)
    result = _run_with_timeout(matcher.find_pair_matches, args, cancel, progress)
    if result.cancelled:
        print("match cancelled", file=sys.stderr)
        return EXIT_CANCELLED

    pairs = select_pairs(result.pairs, cfg.pair_mode)
    joined = join_pairs(pairs, len(df1), len(df2), cfg.join)
    out = pd.concat(
        [
            joined,
            _side_frame(df1, joined["idx_1"], "_1"),
            _side_frame(df2, joined["idx_2"], "_2"),
        ],
        axis=1,
    )
    out_path = Path(args.out)
    out.to_csv(out_path, index=False, sep=args.sep)
    _write_manifest(
        out_path, "pair", cfg, engine, [args.table1, args.table2], result,
        {"n_selected_pairs": len(pairs), "n_output_rows": int(len(out))},
    )
    print(f"wrote {out_path} with {len(out)} rows; {len(pairs)} pairs ({cfg.pair_mode}, {cfg.join})")
    return 0


def _cmd_group(args, cancel: CancelToken) -> int:
    if len(args.tables) < 2:
        raise MatchConfigError("group needs at least two tables")
    dfs = [pd.read_csv(p, sep=args.sep) for p in args.tables]
    if len(args.cols) == 1:
        col_specs = [_split_cols(args.cols[0])] * len(dfs)
    elif len(args.cols) == len(dfs):
        col_specs = [_split_cols(c) for c in args.cols]
    else:
        raise MatchConfigError(f"--cols given {len(args.cols)} times for {len(dfs)} tables")
    cfg = _engine_config(args, len(col_specs[0]))
    cfg.multi_mode = args.multimode
    engine = build_engine(cfg)
    tables = [DataFrameTable(df, cols, name=Path(p).stem) for df, cols, p in zip(dfs, col_specs, args.tables)]
    progress = _progress(args)
    matcher = RowMatcher(engine, tables, config=cfg, progress=progress, cancel=cancel)
    if args.multi == "pairs":
        run = lambda: matcher.find_multi_pair_matches(args.ref)  # noqa: E731
    else:
        run = matcher.find_group_matches
    result = _run_with_timeout(run, args, cancel, progress)
    if result.cancelled:
        print("match cancelled", file=sys.stderr)
        return EXIT_CANCELLED

    links = select_links(result.links, cfg.multi_mode, n_tables=len(tables))
    out = link_frame(links)
    out["table_name"] = [tables[t].name for t in out["table"].to_numpy(dtype=int)]
    out_path = Path(args.out)
    out.to_csv(out_path, index=False, sep=args.sep)
    _write_manifest(out_path, "group", cfg, engine, args.tables, result, {"n_selected_links": len(links)})
    print(f"wrote {out_path} with {len(links)} groups; K={len(tables)} mode={cfg.multi_mode}")
    return 0


def main(argv=None):
    argv = argv if argv is not None else sys.argv[1:]
    ap = argparse.ArgumentParser(prog="row-match", description="Bin-based cross-matching of table rows")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="cmd", required=True)
    _add_internal_parser(sub)
    _add_pair_parser(sub)
    _add_group_parser(sub)
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(name)s: %(message)s",
    )
    if args.progress == "log" and not args.verbose:
        logging.getLogger("row_match").setLevel(logging.INFO)

    cancel = CancelToken()
    commands = {"internal": _cmd_internal, "pair": _cmd_pair, "group": _cmd_group}
    try:
        return commands[args.cmd](args, cancel)
    except MatchConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
