from __future__ import annotations

import csv
import json

import pytest
import yaml

from impm.main import _trace_path, main


def _write_config(tmp_path, d, name="cfg.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(d), encoding="utf-8")
    return str(path)


def _exit_code(argv):
    with pytest.raises(SystemExit) as ei:
        main(argv)
    return ei.value.code


def test_run_writes_outputs(base_config, tmp_path, capsys):
    base_config["output"] = {"metrics": str(tmp_path / "m.csv"), "dump": str(tmp_path / "p.dump")}
    cfg = _write_config(tmp_path, base_config)
    assert _exit_code(["run", cfg]) == 0
    out = capsys.readouterr().out
    assert "[impm startup]" in out and "[impm] done: steps=6" in out
    with open(tmp_path / "m.csv", "r", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["step"] for r in rows] == ["1", "3", "5"]
    man = json.loads((tmp_path / "p.dump.manifest.json").read_text(encoding="utf-8"))
    assert man["bounds"] == [[0.0, 2.0], [0.0, 1.0]]


def test_run_cli_overrides(base_config, tmp_path):
    cfg = _write_config(tmp_path, base_config)
    metrics = tmp_path / "override.csv"
    assert _exit_code(["run", cfg, "--nsteps", "2", "--metrics", str(metrics)]) == 0
    with open(metrics, "r", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["step"] for r in rows] == ["1"]


def test_run_local_ranks_with_trace(base_config, tmp_path):
    base_config["output"] = {"metrics": str(tmp_path / "m.csv"), "trace": str(tmp_path / "trace.csv")}
    cfg = _write_config(tmp_path, base_config)
    assert _exit_code(["run", cfg, "--comm", "local", "--ranks", "2", "--trace"]) == 0
    assert (tmp_path / "trace.rank0.csv").exists() and (tmp_path / "trace.rank1.csv").exists()
    with open(tmp_path / "m.csv", "r", encoding="utf-8") as f:
        assert len(list(csv.DictReader(f))) == 3


def test_run_then_resume(base_config, tmp_path, capsys):
    base_config["analysis"]["checkpoint_steps"] = 2
    base_config["analysis"]["checkpoint_dir"] = str(tmp_path / "ckpt")
    cfg = _write_config(tmp_path, base_config)
    assert _exit_code(["run", cfg, "--nsteps", "4"]) == 0
    assert (tmp_path / "ckpt" / "checkpoint.json").exists()
    capsys.readouterr()
    assert _exit_code(["run", cfg, "--resume"]) == 0
    out = capsys.readouterr().out
    assert "[impm resume] step=3" in out
    assert "start=4 resumed=True" in out


def test_bad_config_exits_2(base_config, tmp_path, capsys):
    base_config["analysis"]["bogus"] = 1
    cfg = _write_config(tmp_path, base_config)
    assert _exit_code(["run", cfg]) == 2
    assert "ConfigError" in capsys.readouterr().out


def test_failed_run_exits_2(base_config, tmp_path, capsys):
    base_config["mesh"]["constraints"] = []
    base_config["particles"][0]["velocity"] = [3000.0, 0.0]
    cfg = _write_config(tmp_path, base_config)
    assert _exit_code(["run", cfg]) == 2
    assert "phase=locate" in capsys.readouterr().out


def test_verify_serial_vs_local_ranks(base_config, tmp_path, capsys):
    cfg = _write_config(tmp_path, base_config)
    assert _exit_code(["verify", cfg, "--ranks", "2", "--steps", "4"]) == 0
    out = capsys.readouterr().out
    assert "[verify] ranks=2 steps=4 ok=True" in out


def test_plot_metrics(base_config, tmp_path):
    pytest.importorskip("matplotlib")
    base_config["output"] = {"metrics": str(tmp_path / "m.csv")}
    cfg = _write_config(tmp_path, base_config)
    assert _exit_code(["run", cfg]) == 0
    main(["plot", str(tmp_path / "m.csv"), str(tmp_path / "plots")])
    assert (tmp_path / "plots" / "E_kin.png").exists()
    assert (tmp_path / "plots" / "n_active.png").exists()
    assert not (tmp_path / "plots" / "step.png").exists()


def test_trace_path_suffix():
    assert _trace_path("out/t.csv", 0, 1) == "out/t.csv"
    assert _trace_path("out/t.csv", 2, 4) == "out/t.rank2.csv"
    assert _trace_path("trace", 1, 2) == "trace.rank1.csv"
