from dataclasses import dataclass, field
from typing import Any, List, Tuple

from .keys import key_prefix


@dataclass(frozen=True)
class MeasurementBatch:
    """New factors + initial estimates for the keys they introduce.

    Delivered once per update call; never mutated by the solver.
    """
    factors: "gtsam.NonlinearFactorGraph"
    values: "gtsam.Values"

    def size(self) -> int:
        return int(self.factors.size())

    def iter_factors(self):
        for i in range(self.factors.size()):
            f = self.factors.at(i)
            if f is not None:
                yield f


@dataclass(frozen=True)
class ObservationId:
    """Pair of robot prefixes involved in a loop closure.

    Order does not matter: ObservationId("a", "b") == ObservationId("b", "a").
    """
    id1: str
    id2: str

    def __post_init__(self):
        a, b = sorted((str(self.id1), str(self.id2)))
        object.__setattr__(self, "id1", a)
        object.__setattr__(self, "id2", b)

    @classmethod
    def from_keys(cls, key1: int, key2: int) -> "ObservationId":
        return cls(key_prefix(key1), key_prefix(key2))

    def is_multirobot(self) -> bool:
        return self.id1 != self.id2

    def __str__(self) -> str:
        return f"{self.id1}{self.id2}"


@dataclass
class Edge:
    """A removed (or reported) loop closure between two keys."""
    from_key: int
    to_key: int
    factor: Any = None

    def keys(self) -> Tuple[int, int]:
        return self.from_key, self.to_key


@dataclass
class RejectionStats:
    lc: int = 0
    good_lc: int = 0
    odom_consistent_lc: int = 0
    multirobot_lc: int = 0
    good_multirobot_lc: int = 0
    landmark_measurements: int = 0
    good_landmark_measurements: int = 0
    consistency_error: List[float] = field(default_factory=list)

    def as_row(self) -> List[int]:
        """Counters in log.txt column order (the error column is appended by the caller)."""
        return [self.lc, self.good_lc, self.odom_consistent_lc, self.multirobot_lc,
                self.good_multirobot_lc, self.landmark_measurements,
                self.good_landmark_measurements]

