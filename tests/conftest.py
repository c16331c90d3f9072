"""Shared pose-graph builders for the test suite (planar graphs, GN solver)."""

from __future__ import annotations

import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from robust_pgo.params import OutlierRemovalMethod, RobustSolverParams, Solver, Verbosity
from robust_pgo.solver import RobustSolver

SIGMAS = np.array([0.1, 0.1, 0.01])


def noise():
    return gtsam.noiseModel.Diagonal.Sigmas(SIGMAS)


def X(prefix: str, i: int) -> int:
    return gtsam.symbol(prefix, i)


def prior(prefix: str, i: int, x: float, y: float, th: float = 0.0):
    return gtsam.PriorFactorPose2(X(prefix, i), gtsam.Pose2(x, y, th), noise())


def between(p1: str, i: int, p2: str, j: int, dx: float, dy: float, dth: float = 0.0):
    return gtsam.BetweenFactorPose2(X(p1, i), X(p2, j), gtsam.Pose2(dx, dy, dth), noise())


def graph_of(*factors) -> "gtsam.NonlinearFactorGraph":
    g = gtsam.NonlinearFactorGraph()
    for f in factors:
        g.add(f)
    return g


def values_of(poses) -> "gtsam.Values":
    """poses: iterable of (key, x, y[, th])."""
    v = gtsam.Values()
    for item in poses:
        key, x, y = item[:3]
        th = item[3] if len(item) > 3 else 0.0
        v.insert(key, gtsam.Pose2(x, y, th))
    return v


def trajectory(prefix: str, n: int, y: float = 0.0, with_prior: bool = True):
    """Straight trajectory along +x: poses (i, y), exact unit odometry."""
    factors = [prior(prefix, 0, 0.0, y)] if with_prior else []
    factors += [between(prefix, i, prefix, i + 1, 1.0, 0.0) for i in range(n - 1)]
    vals = values_of((X(prefix, i), float(i), y) for i in range(n))
    return graph_of(*factors), vals


def factor_key_list(graph):
    return [tuple(int(k) for k in graph.at(i).keys()) for i in range(graph.size())]


def pose_xyt(values, key):
    p = values.atPose2(key)
    return np.array([p.x(), p.y(), p.theta()])


def make_solver(method=OutlierRemovalMethod.NONE, solver=Solver.GN, **kwargs) -> RobustSolver:
    params = RobustSolverParams(solver=solver, outlier_removal_method=method,
                                verbosity=kwargs.pop("verbosity", Verbosity.QUIET), **kwargs)
    return RobustSolver(params)
