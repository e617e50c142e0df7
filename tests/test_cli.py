import argparse
import json

import pandas as pd

from row_match import CancelToken
from row_match.cli import _run_with_timeout
from row_match.cli import main as cli_main


def _write(tmp_path, name, frame):
    path = tmp_path / name
    frame.to_csv(path, index=False)
    return path


def test_internal_cli_identifies_groups_and_writes_manifest(tmp_path):
    src = _write(tmp_path, "points.csv", pd.DataFrame({"x": [0.0, 0.5, 5.0], "y": [0.0, 0.0, 5.0], "label": ["a", "b", "c"]}))
    out = tmp_path / "groups.csv"

    rc = cli_main(["internal", str(src), "--cols", "x,y", "--scale", "1", "--out", str(out), "--progress", "none"])

    assert rc == 0
    res = pd.read_csv(out)
    assert list(res.columns) == ["x", "y", "label", "GroupID", "GroupSize"]
    assert res["GroupID"].iloc[:2].tolist() == [1, 1]
    assert res["GroupID"].isna().tolist() == [False, False, True]

    manifest = json.loads((tmp_path / "groups.run_manifest.json").read_text())
    assert manifest["command"] == "internal"
    assert manifest["row_match_version"]
    assert manifest["engine"] == "2-d Cartesian"
    assert manifest["n_rows"] == {"0": 3}
    assert manifest["n_links"] == 1


def test_internal_cli_keep1(tmp_path):
    src = _write(tmp_path, "points.csv", pd.DataFrame({"x": [0.0, 0.5, 5.0, 0.2]}))
    out = tmp_path / "dedup.csv"
    rc = cli_main(["internal", str(src), "--cols", "x", "--action", "keep1", "--out", str(out), "--progress", "none"])
    assert rc == 0
    assert pd.read_csv(out)["x"].tolist() == [0.0, 5.0]


def test_pair_cli_joins_both_tables(tmp_path):
    a = _write(tmp_path, "a.csv", pd.DataFrame({"ra": [10.0, 20.0], "dec": [0.0, 0.0], "name": ["a0", "a1"]}))
    b = _write(tmp_path, "b.csv", pd.DataFrame({"ra": [10.0001, 50.0], "dec": [0.0, 0.0], "id": [7, 8]}))
    out = tmp_path / "pairs.csv"

    rc = cli_main(
        [
            "pair", str(a), str(b),
            "--cols1", "ra,dec",
            "--engine", "sky",
            "--scale", "0.001",
            "--join", "1or2",
            "--out", str(out),
            "--progress", "none",
        ]
    )

    assert rc == 0
    res = pd.read_csv(out)
    assert len(res) == 3
    assert res["name_1"].iloc[0] == "a0"
    assert res["id_2"].iloc[0] == 7
    manifest = json.loads((tmp_path / "pairs.run_manifest.json").read_text())
    assert manifest["command"] == "pair"
    assert manifest["n_selected_pairs"] == 1
    assert manifest["n_output_rows"] == 3


def test_group_cli_with_shared_columns(tmp_path):
    paths = [
        _write(tmp_path, f"t{i}.csv", pd.DataFrame({"x": [0.0 + 0.01 * i, 3.0 + i]}))
        for i in range(3)
    ]
    out = tmp_path / "groups.csv"
    rc = cli_main(
        ["group", *map(str, paths), "--cols", "x", "--scale", "0.1", "--multimode", "1and1", "--out", str(out), "--progress", "none"]
    )
    assert rc == 0
    res = pd.read_csv(out)
    assert res["group_id"].tolist() == [1, 1, 1]
    assert res["table_name"].tolist() == ["t0", "t1", "t2"]


def test_cli_reports_configuration_errors(tmp_path, capsys):
    src = _write(tmp_path, "points.csv", pd.DataFrame({"x": [0.0, 1.0]}))
    rc = cli_main(["internal", str(src), "--cols", "x", "--engine", "bogus", "--out", str(tmp_path / "o.csv"), "--progress", "none"])
    assert rc == 2
    assert "configuration error" in capsys.readouterr().err

    rc = cli_main(["internal", str(src), "--cols", "nope", "--out", str(tmp_path / "o.csv"), "--progress", "none"])
    assert rc == 2


class _ImmediateTimer:
    def __init__(self, interval, fn):
        self.fn = fn
        self.daemon = False

    def start(self):
        self.fn()

    def cancel(self):
        pass


def test_cli_timeout_cancels_run(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("row_match.cli.threading.Timer", _ImmediateTimer)
    src = _write(tmp_path, "points.csv", pd.DataFrame({"x": [0.0, 0.5, 5.0]}))
    out = tmp_path / "groups.csv"
    rc = cli_main(["internal", str(src), "--cols", "x", "--timeout", "0.01", "--out", str(out), "--progress", "none"])
    assert rc == 130
    assert "cancelled" in capsys.readouterr().err
    assert not out.exists()
    assert not (tmp_path / "groups.run_manifest.json").exists()


def test_group_cli_multi_pairs_uses_reference_table(tmp_path):
    paths = [
        _write(tmp_path, f"t{i}.csv", pd.DataFrame({"x": [0.08 * i]}))
        for i in range(3)
    ]
    out = tmp_path / "groups.csv"
    common = ["group", *map(str, paths), "--cols", "x", "--scale", "0.1", "--out", str(out), "--progress", "none"]

    assert cli_main(common) == 0
    assert pd.read_csv(out)["table"].tolist() == [0, 1, 2]

    assert cli_main(common + ["--multi", "pairs", "--ref", "0"]) == 0
    res = pd.read_csv(out)
    assert res["table"].tolist() == [0, 1]
    assert res["group_size"].tolist() == [2, 2]

    assert cli_main(common + ["--multi", "pairs", "--ref", "1"]) == 0
    assert pd.read_csv(out)["table"].tolist() == [0, 1, 2]


def test_progress_sink_is_closed_after_run():
    closed = []

    class _Sink:
        def update(self, phase, done, total):
            pass

        def close(self):
            closed.append(True)

    args = argparse.Namespace(timeout=None)
    assert _run_with_timeout(lambda: "done", args, CancelToken(), _Sink()) == "done"
    assert closed == [True]
