"""Controller behaviour with no outlier strategy configured."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from conftest import (X, between, factor_key_list, graph_of, gtsam, make_solver, pose_xyt,
                      prior, trajectory, values_of)

from robust_pgo.params import OutlierRemovalMethod, Solver


def test_single_prior_update() -> None:
    solver = make_solver(OutlierRemovalMethod.NONE, Solver.GN)
    solver.update(graph_of(prior("a", 0, 1.0, 2.0)), values_of([(X("a", 0), 0.0, 0.0)]))
    assert solver.size() == 1
    assert solver.calculate_estimate().size() == 1
    assert solver.optimize_count == 1
    np.testing.assert_allclose(pose_xyt(solver.calculate_estimate(), X("a", 0)), [1.0, 2.0, 0.0],
                               atol=1e-6)


def test_accepted_graph_is_concatenation_of_batches() -> None:
    solver = make_solver()
    g1, v1 = trajectory("a", 3)
    g2 = graph_of(between("a", 2, "a", 3, 1.0, 0.0))
    v2 = values_of([(X("a", 3), 3.0, 0.0)])
    g3 = graph_of(between("a", 0, "a", 3, 3.0, 0.0), between("a", 3, "a", 4, 1.0, 0.0))
    v3 = values_of([(X("a", 4), 4.0, 0.0)])
    for g, v in ((g1, v1), (g2, v2), (g3, v3)):
        solver.update(g, v)
    expected = factor_key_list(g1) + factor_key_list(g2) + factor_key_list(g3)
    assert factor_key_list(solver.get_factors_unsafe()) == expected
    assert solver.optimize_count == 3


def test_existing_estimates_are_not_overwritten_by_later_batches() -> None:
    solver = make_solver()
    g, v = trajectory("a", 2)
    solver.update(g, v)
    before = pose_xyt(solver.calculate_estimate(), X("a", 1))
    stale = values_of([(X("a", 1), 50.0, 50.0), (X("a", 2), 2.0, 0.0)])
    solver.update(graph_of(between("a", 1, "a", 2, 1.0, 0.0)), stale)
    np.testing.assert_allclose(pose_xyt(solver.calculate_estimate(), X("a", 1)), before, atol=1e-6)


def test_force_update_always_optimizes_once() -> None:
    solver = make_solver()
    g, v = trajectory("a", 3)
    solver.force_update(g, v)
    assert solver.optimize_count == 1
    solver.force_update(gtsam.NonlinearFactorGraph(), gtsam.Values())
    assert solver.optimize_count == 2


def test_remove_last_loop_closure_removes_last_factor() -> None:
    solver = make_solver()
    g, v = trajectory("a", 4)
    solver.update(g, v)
    solver.update(graph_of(between("a", 0, "a", 3, 3.0, 0.0)), gtsam.Values())
    count = solver.optimize_count
    edge = solver.remove_last_loop_closure()
    assert edge is not None
    assert edge.keys() == (X("a", 0), X("a", 3))
    assert solver.size() == 4
    assert solver.optimize_count == count + 1


def test_remove_on_empty_graph_returns_none() -> None:
    solver = make_solver()
    assert solver.remove_last_loop_closure() is None
    assert solver.remove_last_loop_closure("a", "b") is None
    assert solver.optimize_count == 2


def test_remove_with_single_prefix_removes_nothing(caplog) -> None:
    solver = make_solver()
    g, v = trajectory("a", 4)
    solver.update(g, v)
    with caplog.at_level(logging.WARNING, logger="robust_pgo.solver"):
        assert solver.remove_last_loop_closure("a") is None
    assert "needs both robot prefixes" in caplog.text
    assert solver.size() == 4
    assert solver.optimize_count == 2


def test_prefix_operations_are_unsupported_but_not_fatal(caplog) -> None:
    solver = make_solver()
    g, v = trajectory("a", 3)
    solver.update(g, v)
    with caplog.at_level(logging.WARNING, logger="robust_pgo.solver"):
        solver.ignore_prefix("a")
        solver.revive_prefix("a")
        assert solver.get_ignored_prefixes() == set()
    assert "currently not implemented" in caplog.text
    assert solver.size() == 3
    assert solver.optimize_count == 3


def test_levenberg_marquardt_path() -> None:
    solver = make_solver(solver=Solver.LM)
    g, v = trajectory("a", 4)
    noisy = values_of([(X("a", i), i + 0.3, -0.2, 0.05) for i in range(4)])
    solver.update(g, noisy)
    est = solver.calculate_estimate()
    for i in range(4):
        np.testing.assert_allclose(pose_xyt(est, X("a", i)), [i, 0.0, 0.0], atol=1e-4)
    assert solver.error() == pytest.approx(0.0, abs=1e-6)
