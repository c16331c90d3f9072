"""robust_pgo: robust incremental pose-graph optimisation back-end.

This package provides:
- Solver / outlier-removal / verbosity configuration
- The controller-owned accepted graph + estimate
- A Levenberg-Marquardt / Gauss-Newton optimizer wrapper
- The RobustSolver update + loop-closure lifecycle controller
- Diagnostics logs (log.txt / error.txt)
- Batch builders and g2o batch sources for replaying datasets

Design intent:
The controller only decides *when* to merge and re-optimize; the outlier
math lives behind one strategy interface (see robust_pgo_outlier) and the
numerical solve is delegated to GTSAM.
"""
__all__ = ["errors", "params", "models", "keys", "state", "optimizer",
           "solver", "diagnostics", "batch", "noise", "source"]
__version__ = "0.1.0"
