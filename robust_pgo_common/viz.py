from typing import Dict, Iterable, Optional, Tuple
import numpy as np

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt

from robust_pgo.keys import key_index, key_prefix


def _pose_xy(estimate, k) -> Optional[Tuple[float, float]]:
    for accessor in ("atPose3", "atPose2"):
        try:
            t = getattr(estimate, accessor)(k).translation()
        except Exception:
            continue
        return float(t[0]), float(t[1])
    return None


def extract_xy_per_robot(estimate) -> Dict[str, np.ndarray]:
    """Group pose translations by key prefix, ordered by key index."""
    by_robot: Dict[str, list] = {}
    for k in sorted(estimate.keys(), key=lambda x: (key_prefix(x), key_index(x))):
        xy = _pose_xy(estimate, k)
        if xy is not None:
            by_robot.setdefault(key_prefix(k), []).append(xy)
    return {rid: np.asarray(coords) for rid, coords in by_robot.items() if coords}


def _robot_label(rid: str) -> str:
    return rid if rid.isprintable() and rid.strip() else "robot"


def plot_trajectories_2d(estimate, path_png: str, loop_closures: Iterable[Tuple[int, int]] = ()):
    traj = extract_xy_per_robot(estimate)
    plt.figure(figsize=(8, 6))
    for rid, xy in traj.items():
        plt.plot(xy[:, 0], xy[:, 1], label=_robot_label(rid))
    for k1, k2 in loop_closures:
        p1, p2 = _pose_xy(estimate, k1), _pose_xy(estimate, k2)
        if p1 is None or p2 is None:
            continue
        plt.plot([p1[0], p2[0]], [p1[1], p2[1]], color="tab:red", linewidth=0.5, alpha=0.6)
    plt.axis('equal')
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    if traj:
        plt.legend()
    plt.title("Trajectories (XY)")
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()
