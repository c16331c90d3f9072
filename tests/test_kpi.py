"""KPI events and verbosity handling of the controller."""

from __future__ import annotations

import json
import logging

from conftest import between, graph_of, gtsam, make_solver, trajectory

from robust_pgo.params import OutlierRemovalMethod, RobustSolverParams, Verbosity
from robust_pgo.solver import RobustSolver
from robust_pgo_common.kpi_logging import KPILogger


def _events(path):
    with open(path, encoding="utf-8") as fh:
        return [json.loads(line) for line in fh if line.strip()]


def test_events_written_per_batch_and_optimization(tmp_path) -> None:
    path = tmp_path / "kpi.jsonl"
    kpi = KPILogger(extra_fields={"run": "t"}, log_path=str(path), emit_to_logger=False)
    params = RobustSolverParams(outlier_removal_method=OutlierRemovalMethod.NONE,
                                verbosity=Verbosity.QUIET)
    solver = RobustSolver(params, kpi=kpi)
    g, v = trajectory("a", 3)
    solver.update(g, v)
    solver.update(graph_of(between("a", 0, "a", 2, 2.0, 0.0)), gtsam.Values())
    solver.remove_last_loop_closure()
    solver.ignore_prefix("a")
    kpi.close()

    names = [e["event"] for e in _events(path)]
    assert names.count("batch_received") == 2
    assert names.count("optimization_start") == names.count("optimization_end") == 4
    assert "loop_closure_removed" in names and "prefix_ignored" in names
    first = _events(path)[0]
    assert first["run"] == "t"
    assert kpi.events_emitted == len(_events(path))
    assert first["factor_count"] == 3 and first["value_count"] == 3
    end = next(e for e in _events(path) if e["event"] == "optimization_end")
    assert end["error"] < 1e-8


def test_disabled_logger_writes_nothing(tmp_path) -> None:
    path = tmp_path / "kpi.jsonl"
    kpi = KPILogger(enabled=False, log_path=str(path))
    kpi.batch_received(1, 2, 3)
    kpi.close()
    assert path.read_text(encoding="utf-8") == ""


def test_verbose_announces_start(caplog) -> None:
    with caplog.at_level(logging.INFO, logger="robust_pgo.solver"):
        make_solver(verbosity=Verbosity.VERBOSE)
    assert "Starting RobustSolver." in caplog.text


def test_quiet_suppresses_update_lines(caplog) -> None:
    solver = make_solver(OutlierRemovalMethod.PCM2D, verbosity=Verbosity.QUIET)
    g, v = trajectory("a", 3)
    with caplog.at_level(logging.INFO):
        solver.update(g, v)
    assert "Update 1" not in caplog.text
    assert "PCM:" not in caplog.text


def test_update_verbosity_keeps_controller_summary_only(caplog) -> None:
    solver = make_solver(OutlierRemovalMethod.PCM2D, verbosity=Verbosity.UPDATE)
    g, v = trajectory("a", 3)
    with caplog.at_level(logging.INFO):
        solver.update(g, v)
    assert "Update 1" in caplog.text
    assert "PCM:" not in caplog.text
