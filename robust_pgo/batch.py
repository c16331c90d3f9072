from typing import Dict, Optional, Set
import logging

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .keys import key_label
from .models import MeasurementBatch
from .noise import gaussian_from_covariance

logger = logging.getLogger("robust_pgo.batch")


class BatchBuilder:
    """Accumulates per-batch deltas (new factors + first-seen initial values).

    The solver keeps the accumulated graph; the builder only remembers
    which keys it has already handed out an initial value for, so a key is
    never initialised twice across batches.
    """

    def __init__(self):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build batches")
        self._batch_graph = gtsam.NonlinearFactorGraph()
        self._batch_values = gtsam.Values()
        self._values_seen: Set[int] = set()

    def ensure_init(self, key: int, initial) -> None:
        """Insert `initial` for `key` into the current batch if the key is new."""
        key = int(key)
        if key in self._values_seen:
            return
        if initial is None:
            logger.warning("Missing initialization for key %s; skipping value.", key_label(key))
            return
        self._values_seen.add(key)
        self._batch_values.insert(key, initial)

    def add_prior(self, key: int, pose, cov: np.ndarray) -> None:
        """Prior at `pose`, which also serves as the key's initial value."""
        self.ensure_init(key, pose)
        prior_cls = gtsam.PriorFactorPose3 if isinstance(pose, gtsam.Pose3) else gtsam.PriorFactorPose2
        self._batch_graph.add(prior_cls(int(key), pose, gaussian_from_covariance(cov)))

    def add_factor(self, factor, initial: Optional[Dict[int, object]] = None) -> None:
        """Add a prebuilt gtsam factor plus initial values for any of its keys."""
        for k, v in (initial or {}).items():
            self.ensure_init(k, v)
        self._batch_graph.add(factor)

    def pop_batch(self) -> MeasurementBatch:
        """Return the pending batch and reset deltas for the next one."""
        batch = MeasurementBatch(self._batch_graph, self._batch_values)
        self._batch_graph = gtsam.NonlinearFactorGraph()
        self._batch_values = gtsam.Values()
        return batch
