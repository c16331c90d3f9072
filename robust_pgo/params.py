from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Set, Union
import logging

from .errors import ConfigurationError

logger = logging.getLogger("robust_pgo.params")


class Solver(str, Enum):
    LM = "lm"
    GN = "gn"


class OutlierRemovalMethod(str, Enum):
    NONE = "none"
    PCM2D = "pcm2d"
    PCM3D = "pcm3d"
    PCM_SIMPLE2D = "pcm-simple2d"
    PCM_SIMPLE3D = "pcm-simple3d"


class Verbosity(str, Enum):
    QUIET = "quiet"
    UPDATE = "update"
    VERBOSE = "verbose"


def _coerce(enum_cls, value, what: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        raise ConfigurationError(f"Undefined {what}: {value!r}") from None


def _lenient_verbosity(value) -> "Verbosity":
    try:
        return _coerce(Verbosity, value, "verbosity")
    except ConfigurationError:
        logger.warning("Unrecognized verbosity %r. Automatically setting to UPDATE.", value)
        return Verbosity.UPDATE


@dataclass
class RobustSolverParams:
    """Construction parameters for RobustSolver.

    The two threshold pairs are method specific:
      - pcm_odom_threshold / pcm_lc_threshold: squared Mahalanobis bounds
        used by the PCM variants (odometry check, pairwise check)
      - pcm_dist_trans_threshold / pcm_dist_rot_threshold: metres / radians
        used by the PCM-Simple variants
    special_symbols are key prefixes treated as landmarks.
    """
    solver: Solver = Solver.LM
    outlier_removal_method: OutlierRemovalMethod = OutlierRemovalMethod.PCM3D
    pcm_odom_threshold: float = 5.0
    pcm_lc_threshold: float = 5.0
    pcm_dist_trans_threshold: float = 0.05  # meters
    pcm_dist_rot_threshold: float = 0.005  # radians
    special_symbols: Set[str] = field(default_factory=set)
    verbosity: Verbosity = Verbosity.UPDATE

    def set_pcm_2d(self, odom_threshold: float, lc_threshold: float,
                   special_symbols: Iterable[str] = ()) -> None:
        self.outlier_removal_method = OutlierRemovalMethod.PCM2D
        self.pcm_odom_threshold = odom_threshold
        self.pcm_lc_threshold = lc_threshold
        self.special_symbols = set(special_symbols)

    def set_pcm_3d(self, odom_threshold: float, lc_threshold: float,
                   special_symbols: Iterable[str] = ()) -> None:
        self.outlier_removal_method = OutlierRemovalMethod.PCM3D
        self.pcm_odom_threshold = odom_threshold
        self.pcm_lc_threshold = lc_threshold
        self.special_symbols = set(special_symbols)

    def set_pcm_simple_2d(self, trans_threshold: float, rot_threshold: float,
                          special_symbols: Iterable[str] = ()) -> None:
        self.outlier_removal_method = OutlierRemovalMethod.PCM_SIMPLE2D
        self.pcm_dist_trans_threshold = trans_threshold
        self.pcm_dist_rot_threshold = rot_threshold
        self.special_symbols = set(special_symbols)

    def set_pcm_simple_3d(self, trans_threshold: float, rot_threshold: float,
                          special_symbols: Iterable[str] = ()) -> None:
        self.outlier_removal_method = OutlierRemovalMethod.PCM_SIMPLE3D
        self.pcm_dist_trans_threshold = trans_threshold
        self.pcm_dist_rot_threshold = rot_threshold
        self.special_symbols = set(special_symbols)

    def set_no_rejection(self, verbosity: Verbosity = Verbosity.UPDATE) -> None:
        self.outlier_removal_method = OutlierRemovalMethod.NONE
        self.verbosity = verbosity

    def validate(self) -> None:
        """Raise ConfigurationError for anything the solver cannot run with."""
        if not isinstance(self.solver, Solver):
            raise ConfigurationError(f"Unsupported solver: {self.solver!r}")
        if not isinstance(self.outlier_removal_method, OutlierRemovalMethod):
            raise ConfigurationError(
                f"Undefined outlier removal method: {self.outlier_removal_method!r}")
        if not isinstance(self.verbosity, Verbosity):
            logger.warning("Unrecognized verbosity %r. Automatically setting to UPDATE.", self.verbosity)
            self.verbosity = Verbosity.UPDATE
        for name in ("pcm_odom_threshold", "pcm_lc_threshold",
                     "pcm_dist_trans_threshold", "pcm_dist_rot_threshold"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {getattr(self, name)}")
        for sym in self.special_symbols:
            if not isinstance(sym, str) or len(sym) != 1:
                raise ConfigurationError(f"Special symbols must be single characters, got {sym!r}")

    @classmethod
    def from_strings(cls,
                     solver: Union[str, Solver] = "lm",
                     outlier_removal_method: Union[str, OutlierRemovalMethod] = "pcm3d",
                     verbosity: Union[str, Verbosity] = "update",
                     special_symbols: Optional[Iterable[str]] = None,
                     **thresholds) -> "RobustSolverParams":
        """Build params from CLI-style strings; unknown names raise ConfigurationError."""
        params = cls(
            solver=_coerce(Solver, solver, "solver"),
            outlier_removal_method=_coerce(OutlierRemovalMethod, outlier_removal_method,
                                           "outlier removal method"),
            verbosity=_lenient_verbosity(verbosity),
            special_symbols=set(special_symbols or ()),
        )
        for name, value in thresholds.items():
            if value is None:
                continue
            if not hasattr(params, name):
                raise ConfigurationError(f"Unknown solver parameter: {name}")
            setattr(params, name, float(value))
        params.validate()
        return params
