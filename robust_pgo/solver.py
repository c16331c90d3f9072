from typing import Dict, Optional, Set, TYPE_CHECKING
import logging
import os
import time

try:
    import gtsam
except Exception:
    gtsam = None

from .diagnostics import DiagnosticsLog
from .errors import ConfigurationError
from .keys import factor_keys, key_label
from .models import Edge, MeasurementBatch, ObservationId, RejectionStats
from .optimizer import run_optimizer, update_translation_cache
from .params import RobustSolverParams, Solver, Verbosity
from .state import AcceptedState
from robust_pgo_outlier import make_outlier_removal

if TYPE_CHECKING:
    from robust_pgo_common.kpi_logging import KPILogger

logger = logging.getLogger("robust_pgo.solver")


class GenericSolver:
    """Owns the accepted graph/estimate and the optimizer call.

    Without an outlier strategy every batch is merged as-is and every
    update re-optimizes.
    """

    def __init__(self,
                 solver: Solver = Solver.LM,
                 special_symbols=(),
                 kpi: Optional["KPILogger"] = None):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build solver")
        self.solver_type = solver
        self.special_symbols: Set[str] = set(special_symbols)
        self.debug = True
        self.optimize_count = 0
        self.kpi = kpi
        self._state = AcceptedState()
        self._translation_cache: Dict[int, tuple] = {}

    def set_quiet(self) -> None:
        self.debug = False

    def add_and_check_if_optimize(self, batch: MeasurementBatch) -> bool:
        self._state.merge(batch)
        return True

    def remove_last_factor(self) -> Optional[Edge]:
        factor = self._state.pop_last_factor()
        if factor is None:
            return None
        keys = factor_keys(factor)
        return Edge(keys[0], keys[-1], factor)

    def optimize(self) -> None:
        """Re-estimate every variable from the accepted graph (in place)."""
        self.optimize_count += 1
        opt_id = self.optimize_count
        graph = self._state.graph()
        if graph.size() == 0:
            logger.debug("Nothing to optimize (empty graph)")
            return
        if self.kpi:
            self.kpi.optimization_start(opt_id, graph.size(), self._state.values.size())
        start = time.perf_counter()
        result = run_optimizer(graph, self._state.values, self.solver_type, debug=self.debug)
        duration = time.perf_counter() - start
        self._state.set_values(result)
        max_delta = update_translation_cache(self._translation_cache, result)
        if self.kpi:
            self.kpi.optimization_end(
                opt_id,
                duration,
                updated_keys=int(result.size()),
                error=float(graph.error(result)),
                max_translation_delta=max_delta,
            )

    # accessors

    def get_factors_unsafe(self) -> "gtsam.NonlinearFactorGraph":
        return self._state.graph()

    def calculate_estimate(self) -> "gtsam.Values":
        return self._state.estimate()

    def size(self) -> int:
        return self._state.size()

    def error(self) -> float:
        return self._state.error()


class RobustSolver(GenericSolver):
    """Incremental robust pose-graph back-end.

    Batches go through the configured outlier strategy (or are merged
    unconditionally), re-optimization follows the strategy's signal, and
    loop closures can later be removed, ignored or revived per robot prefix.
    Every lifecycle call ends with a re-optimization.

    Not thread-safe: callers must serialise access to one instance.
    """

    def __init__(self, params: RobustSolverParams, kpi: Optional["KPILogger"] = None):
        params.validate()
        super().__init__(params.solver, params.special_symbols, kpi)
        self.params = params
        self.outlier_removal = make_outlier_removal(params)
        self._diagnostics: Optional[DiagnosticsLog] = None
        self._batch_id = 0
        self._quiet = False

        if params.verbosity == Verbosity.UPDATE:
            if self.outlier_removal:
                self.outlier_removal.set_quiet()
        elif params.verbosity == Verbosity.QUIET:
            if self.outlier_removal:
                self.outlier_removal.set_quiet()
            self.set_quiet()
        elif params.verbosity == Verbosity.VERBOSE:
            logger.info("Starting RobustSolver.")

    def set_quiet(self) -> None:
        super().set_quiet()
        self._quiet = True

    # ------------------------------------------------------------------ update

    def _merge(self, batch: MeasurementBatch) -> bool:
        self._batch_id += 1
        if self.kpi:
            self.kpi.batch_received(self._batch_id, batch.size(), int(batch.values.size()))
        if self.outlier_removal:
            return self.outlier_removal.remove_outliers(batch, self._state)
        return self.add_and_check_if_optimize(batch)

    def update_batch(self, batch: MeasurementBatch) -> None:
        do_optimize = self._merge(batch)
        if do_optimize:
            self.optimize()
        if not self._quiet:
            logger.info("Update %d: %d factors accepted in total, optimized=%s",
                        self._batch_id, self._state.size(), do_optimize)
        if self._diagnostics is not None:
            self._diagnostics.append(self.get_rejection_stats(), self._state.error())

    def update(self, factors: "gtsam.NonlinearFactorGraph", values: "gtsam.Values") -> None:
        self.update_batch(MeasurementBatch(factors, values))

    def force_update(self, factors: "gtsam.NonlinearFactorGraph", values: "gtsam.Values") -> None:
        """Merge like update() but always re-optimize; no diagnostics record."""
        self._merge(MeasurementBatch(factors, values))
        self.optimize()

    # --------------------------------------------------------------- lifecycle

    def remove_last_loop_closure(self, prefix_1: Optional[str] = None,
                                 prefix_2: Optional[str] = None) -> Optional[Edge]:
        """Remove the latest loop closure, optionally only between two robots.

        Both prefixes or neither; a single prefix removes nothing (warning).
        """
        obs_id = ObservationId(prefix_1, prefix_2) if prefix_1 is not None and prefix_2 is not None else None
        if (prefix_1 is None) != (prefix_2 is None):
            logger.warning("remove_last_loop_closure needs both robot prefixes or neither; got %r, %r",
                           prefix_1, prefix_2)
            removed = None
        elif self.outlier_removal:
            # removing a loop closure does not touch the estimate directly
            removed = self.outlier_removal.remove_last_loop_closure(self._state, obs_id)
        else:
            removed = self.remove_last_factor()
        if self.kpi:
            self.kpi.lifecycle(
                "loop_closure_removed",
                robots=str(obs_id) if obs_id else None,
                keys=[key_label(k) for k in removed.keys()] if removed else None,
            )
        self.optimize()
        return removed

    def ignore_prefix(self, prefix: str) -> None:
        if self.outlier_removal:
            self.outlier_removal.ignore_loop_closure_with_prefix(prefix, self._state)
        else:
            logger.warning("'ignore_prefix' currently not implemented for no outlier rejection case")
        if self.kpi:
            self.kpi.lifecycle("prefix_ignored", prefix=prefix)
        self.optimize()

    def revive_prefix(self, prefix: str) -> None:
        if self.outlier_removal:
            self.outlier_removal.revive_loop_closure_with_prefix(prefix, self._state)
        else:
            logger.warning("'revive_prefix' and 'ignore_prefix' currently not implemented "
                           "for no outlier rejection case")
        if self.kpi:
            self.kpi.lifecycle("prefix_revived", prefix=prefix)
        self.optimize()

    def get_ignored_prefixes(self) -> Set[str]:
        if self.outlier_removal:
            return self.outlier_removal.get_ignored_prefixes()
        logger.warning("'revive_prefix' and 'ignore_prefix' currently not implemented "
                       "for no outlier rejection case")
        return set()

    # ------------------------------------------------------ stats / persistence

    def get_rejection_stats(self) -> RejectionStats:
        if self.outlier_removal:
            return self.outlier_removal.get_rejection_stats()
        return RejectionStats()

    def enable_logging(self, path: str) -> None:
        """Start (and truncate) log.txt / error.txt under `path`."""
        self._diagnostics = DiagnosticsLog(path)
        self._diagnostics.initialize()

    def save_data(self, folder_path: str) -> None:
        os.makedirs(folder_path, exist_ok=True)
        g2o_file_path = os.path.join(folder_path, "result.g2o")
        gtsam.writeG2o(self._state.graph(), self._state.values, g2o_file_path)
        if self.outlier_removal:
            self.outlier_removal.save_data(folder_path)
        if not self._quiet:
            logger.info("Result written to %s", g2o_file_path)


def make_robust_solver(params: RobustSolverParams, kpi: Optional["KPILogger"] = None) -> RobustSolver:
    """Construct a RobustSolver, logging configuration faults before re-raising them."""
    try:
        return RobustSolver(params, kpi=kpi)
    except ConfigurationError as exc:
        logger.error("Invalid solver configuration: %s", exc)
        raise
