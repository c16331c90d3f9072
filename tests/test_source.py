"""g2o replay through G2oBatchSource."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import gtsam, make_solver

from robust_pgo.batch import BatchBuilder
from robust_pgo.errors import BatchSourceError
from robust_pgo.keys import PRIOR, factor_kind, make_key
from robust_pgo.params import OutlierRemovalMethod
from robust_pgo.source import G2oBatchSource

INFO = "100 0 0 100 0 10000"

G2O_2D = "\n".join([
    "VERTEX_SE2 0 0 0 0",
    "VERTEX_SE2 1 1.1 0 0",
    "VERTEX_SE2 2 1.9 0.1 0",
    f"EDGE_SE2 0 1 1 0 0 {INFO}",
    f"EDGE_SE2 1 2 1 0 0 {INFO}",
]) + "\n"


@pytest.fixture
def g2o_file(tmp_path):
    path = tmp_path / "line.g2o"
    path.write_text(G2O_2D, encoding="utf-8")
    return str(path)


def test_batches_follow_file_order(g2o_file) -> None:
    with G2oBatchSource(g2o_file, is_3d=False, batch_size=2) as src:
        batches = list(src.iter_batches())
    assert [b.size() for b in batches] == [2, 1]
    first = list(batches[0].iter_factors())
    assert factor_kind(first[0]) == PRIOR
    assert batches[0].values.size() == 2
    assert batches[1].values.size() == 1


def test_without_anchor(g2o_file) -> None:
    with G2oBatchSource(g2o_file, is_3d=False, batch_size=10, anchor_trajectories=False) as src:
        batches = list(src.iter_batches())
    assert len(batches) == 1
    assert batches[0].size() == 2
    assert batches[0].values.size() == 3


def test_missing_file_and_bad_batch_size(tmp_path, g2o_file) -> None:
    with pytest.raises(BatchSourceError):
        G2oBatchSource(str(tmp_path / "nope.g2o"), is_3d=False)
    with pytest.raises(BatchSourceError):
        G2oBatchSource(g2o_file, is_3d=False, batch_size=0)


def test_replay_and_save(tmp_path, g2o_file) -> None:
    solver = make_solver(OutlierRemovalMethod.PCM2D, pcm_odom_threshold=5.0, pcm_lc_threshold=5.0)
    with G2oBatchSource(g2o_file, is_3d=False, batch_size=2) as src:
        for batch in src.iter_batches():
            solver.update_batch(batch)
    assert solver.size() == 3
    out = tmp_path / "out"
    solver.save_data(str(out))
    assert (out / "result.g2o").exists()
    assert (out / "loop_closures.csv").read_text(encoding="utf-8").startswith("key1,key2")
    graph, values = gtsam.readG2o(str(out / "result.g2o"), False)
    assert values.size() == 3


def test_builder_initialises_each_key_once() -> None:
    builder = BatchBuilder()
    a0, a1 = make_key("a", 0), make_key("a", 1)
    builder.add_prior(a0, gtsam.Pose2(0, 0, 0), np.diag([0.01, 0.01, 0.001]))
    odom = gtsam.BetweenFactorPose2(a0, a1, gtsam.Pose2(1, 0, 0), gtsam.noiseModel.Isotropic.Sigma(3, 0.1))
    builder.add_factor(odom, {a0: gtsam.Pose2(9, 9, 0), a1: gtsam.Pose2(1, 0, 0)})
    first = builder.pop_batch()
    assert first.size() == 2
    assert first.values.size() == 2
    assert first.values.atPose2(a0).x() == 0.0
    builder.add_factor(odom, {a1: gtsam.Pose2(5, 5, 0), make_key("a", 2): None})
    second = builder.pop_batch()
    assert second.size() == 1
    assert second.values.size() == 0
