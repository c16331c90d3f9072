"""Noise models for pose factors built from raw covariances."""
import logging

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

logger = logging.getLogger("robust_pgo.noise")

POSE_DIMS = (3, 6)  # Pose2, Pose3


def make_spd(cov: np.ndarray, eps: float = 1e-9, attempts: int = 8) -> np.ndarray:
    """Symmetrize and add diagonal jitter until Cholesky succeeds.

    Why: g2o exports occasionally carry nearly singular information blocks.
    """
    sym = np.array(cov, dtype=float)
    sym = 0.5 * (sym + sym.T)
    eye = np.eye(sym.shape[0])
    jitter = eps
    for _ in range(attempts):
        candidate = sym + eye * jitter
        try:
            np.linalg.cholesky(candidate)
            return candidate
        except np.linalg.LinAlgError:
            jitter *= 10.0
    logger.debug("Covariance still not SPD after %d attempts; jitter %g", attempts, jitter)
    return sym + eye * jitter


def gaussian_from_covariance(cov: np.ndarray):
    """Gaussian noise model for a Pose2 (3x3) or Pose3 (6x6) covariance."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    cov = np.asarray(cov, dtype=float)
    if cov.ndim != 2 or cov.shape[0] != cov.shape[1] or cov.shape[0] not in POSE_DIMS:
        raise ValueError(f"Expected a 3x3 or 6x6 covariance, got shape {cov.shape}")
    return gtsam.noiseModel.Gaussian.Covariance(np.array(make_spd(cov), dtype=np.float64, order="C"))


def factor_covariance(factor, dim: int) -> np.ndarray:
    """Covariance of a factor's noise model, falling back to sigmas, then identity.

    Robust (m-estimator) models expose no covariance; their sigmas are used.
    """
    noise = factor.noiseModel()
    try:
        cov = np.asarray(noise.covariance(), dtype=float)
        if cov.shape == (dim, dim):
            return cov
    except Exception:
        pass
    try:
        sigmas = np.asarray(noise.sigmas(), dtype=float)
        if sigmas.shape == (dim,):
            return np.diag(sigmas ** 2)
    except Exception:
        pass
    logger.debug("No usable covariance on factor %s; using identity", list(factor.keys()))
    return np.eye(dim)
