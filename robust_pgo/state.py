from typing import Iterable, List, Optional
import logging

try:
    import gtsam
except Exception:
    gtsam = None

from .models import MeasurementBatch

logger = logging.getLogger("robust_pgo.state")


class AcceptedState:
    """Everything accepted so far: an ordered factor list + the estimate.

    Owned by RobustSolver. Outlier strategies receive it for the duration of
    one call and must not keep a reference afterwards.

    Factors are held in a plain list and a fresh NonlinearFactorGraph is
    assembled on demand; removing from a gtsam graph leaves null slots.
    """

    def __init__(self):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot hold accepted state")
        self.factors: List = []
        self.values = gtsam.Values()

    def add_factors(self, factors: Iterable) -> int:
        n = 0
        for f in factors:
            self.factors.append(f)
            n += 1
        return n

    def add_values(self, values: "gtsam.Values") -> int:
        """Insert values whose key is not yet present; existing estimates win."""
        fresh = gtsam.Values(values)
        for key in list(fresh.keys()):
            if self.values.exists(key):
                fresh.erase(key)
        added = int(fresh.size())
        if added:
            self.values.insert(fresh)
        return added

    def merge(self, batch: MeasurementBatch) -> None:
        self.add_factors(batch.iter_factors())
        self.add_values(batch.values)

    def replace_factors(self, factors: Iterable) -> None:
        self.factors = list(factors)

    def pop_last_factor(self) -> Optional[object]:
        if not self.factors:
            return None
        return self.factors.pop()

    def set_values(self, values: "gtsam.Values") -> None:
        self.values = values

    def graph(self) -> "gtsam.NonlinearFactorGraph":
        g = gtsam.NonlinearFactorGraph()
        for f in self.factors:
            g.add(f)
        return g

    def error(self, values: Optional["gtsam.Values"] = None) -> float:
        if not self.factors:
            return 0.0
        return float(self.graph().error(values if values is not None else self.values))

    def size(self) -> int:
        return len(self.factors)

    def estimate(self) -> "gtsam.Values":
        return gtsam.Values(self.values)
