from typing import Dict, Optional
import logging
import math

try:
    import gtsam
except Exception:
    gtsam = None

from .errors import ConfigurationError
from .params import Solver

logger = logging.getLogger("robust_pgo.optimizer")


def _set(obj, prop: str, value, setter: Optional[str] = None) -> None:
    """Compat helper (some wheels expose properties, others setters)."""
    if hasattr(obj, prop):
        try:
            setattr(obj, prop, value); return
        except Exception:
            pass
    if setter and hasattr(obj, setter):
        getattr(obj, setter)(value)


def _translation_xyz(value) -> Optional[tuple]:
    """Return (x, y, z) of a Pose2/Pose3 value; planar poses get z = 0."""
    trans = value.translation()
    try:
        coords = [float(trans[i]) for i in range(len(trans))]
    except TypeError:
        coords = [float(trans.x()), float(trans.y())]
        if hasattr(trans, "z"):
            coords.append(float(trans.z()))
    while len(coords) < 3:
        coords.append(0.0)
    return coords[0], coords[1], coords[2]


def _pose_at(estimate: "gtsam.Values", key: int):
    for accessor in ("atPose3", "atPose2"):
        try:
            return getattr(estimate, accessor)(key)
        except Exception:
            continue
    return None


def update_translation_cache(cache: Dict[int, tuple], estimate: "gtsam.Values") -> float:
    """Update translation cache and return max Euclidean delta between estimates."""
    if gtsam is None or estimate is None:
        return 0.0
    max_delta = 0.0
    for key in list(estimate.keys()):
        pose = _pose_at(estimate, key)
        if pose is None:
            continue
        tx, ty, tz = _translation_xyz(pose)
        prev = cache.get(int(key))
        if prev is not None:
            delta = math.sqrt((tx - prev[0]) ** 2 + (ty - prev[1]) ** 2 + (tz - prev[2]) ** 2)
            if delta > max_delta:
                max_delta = delta
        cache[int(key)] = (tx, ty, tz)
    return max_delta


def run_optimizer(graph: "gtsam.NonlinearFactorGraph",
                  initial: "gtsam.Values",
                  solver: Solver,
                  debug: bool = False) -> "gtsam.Values":
    """Run LM or GN to convergence with the solver's default stopping policy.

    LM runs with diagonal damping enabled. Non-convergence is not detected
    here; the returned estimate is whatever the optimizer settled on.
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot optimize")
    if solver == Solver.LM:
        params = gtsam.LevenbergMarquardtParams()
        if debug:
            params.setVerbosityLM("SUMMARY")
            logger.info("Running LM")
        _set(params, "diagonalDamping", True, "setDiagonalDamping")
        return gtsam.LevenbergMarquardtOptimizer(graph, initial, params).optimize()
    if solver == Solver.GN:
        params = gtsam.GaussNewtonParams()
        if debug:
            params.setVerbosity("ERROR")
            logger.info("Running GN")
        return gtsam.GaussNewtonOptimizer(graph, initial, params).optimize()
    logger.error("Unsupported Solver %r", solver)
    raise ConfigurationError(f"Unsupported solver: {solver!r}")
