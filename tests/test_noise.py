"""Noise models built from covariances."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import between

from robust_pgo.noise import factor_covariance, gaussian_from_covariance, make_spd


def test_make_spd_repairs_singular_covariance() -> None:
    cov = np.diag([1.0, 1.0, 0.0])
    fixed = make_spd(cov)
    np.linalg.cholesky(fixed)
    assert fixed[0, 0] == pytest.approx(1.0)


def test_gaussian_requires_pose_dimension() -> None:
    assert gaussian_from_covariance(np.eye(6) * 0.01).dim() == 6
    with pytest.raises(ValueError):
        gaussian_from_covariance(np.eye(4))


def test_factor_covariance_from_diagonal_model() -> None:
    cov = factor_covariance(between("a", 0, "a", 1, 1.0, 0.0), 3)
    np.testing.assert_allclose(cov, np.diag([0.01, 0.01, 0.0001]), atol=1e-12)
