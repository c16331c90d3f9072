import argparse, os, json, logging
import sys
from typing import List, Optional

try:
    import gtsam
except Exception:  # pragma: no cover - CLI will fail later if bindings missing
    gtsam = None

from robust_pgo.errors import BatchSourceError, ConfigurationError
from robust_pgo.keys import LOOP_CLOSURE, factor_keys, factor_kind
from robust_pgo.params import RobustSolverParams
from robust_pgo.solver import RobustSolver, make_robust_solver
from robust_pgo.source import G2oBatchSource
from robust_pgo_common.kpi_logging import KPILogger
from robust_pgo_common.viz import plot_trajectories_2d

logger = logging.getLogger("robust_pgo.cli")


def parse_args(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(description="Replay a g2o pose graph through the robust incremental solver.")
    ap.add_argument("--g2o", required=True, help="Path to the .g2o dataset")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--2d", dest="is_3d", action="store_false", help="Dataset is planar (Pose2)")
    ap.add_argument("--solver", default="lm", help="Nonlinear solver: lm | gn")
    ap.add_argument("--outlier-removal", default="pcm3d",
                    help="none | pcm2d | pcm3d | pcm-simple2d | pcm-simple3d")
    ap.add_argument("--pcm-odom-threshold", type=float, default=None,
                    help="PCM odometry consistency threshold (squared Mahalanobis)")
    ap.add_argument("--pcm-lc-threshold", type=float, default=None,
                    help="PCM pairwise consistency threshold (squared Mahalanobis)")
    ap.add_argument("--pcm-trans-threshold", type=float, default=None,
                    help="PCM-Simple translation threshold [m]")
    ap.add_argument("--pcm-rot-threshold", type=float, default=None,
                    help="PCM-Simple rotation threshold [rad]")
    ap.add_argument("--special-symbols", default="",
                    help="Comma separated key prefixes treated as landmarks (e.g. 'l,L')")
    ap.add_argument("--verbosity", default="update", help="quiet | update | verbose")
    ap.add_argument("--batch-size", type=int, default=100, help="Factors per update batch")
    ap.add_argument("--no-anchor", dest="anchor", action="store_false",
                    help="Do not add a prior on the first pose of each trajectory")
    ap.add_argument("--enable-logging", action="store_true",
                    help="Write log.txt / error.txt diagnostics into the export path")
    ap.add_argument("--ignore-prefix", action="append", default=[],
                    help="Suppress loop closures touching this robot prefix after ingest (repeatable)")
    ap.add_argument("--force-final", action="store_true",
                    help="Run one last forced optimization after the final batch")
    ap.add_argument("--plot", action="store_true", help="Export an XY trajectory plot")
    ap.add_argument("--log", default="INFO", help="Logging level")
    return ap.parse_args(argv)


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def build_params(args) -> RobustSolverParams:
    specials = [s.strip() for s in args.special_symbols.split(",") if s.strip()]
    return RobustSolverParams.from_strings(
        solver=args.solver,
        outlier_removal_method=args.outlier_removal,
        verbosity=args.verbosity,
        special_symbols=specials,
        pcm_odom_threshold=args.pcm_odom_threshold,
        pcm_lc_threshold=args.pcm_lc_threshold,
        pcm_dist_trans_threshold=args.pcm_trans_threshold,
        pcm_dist_rot_threshold=args.pcm_rot_threshold,
    )


def export_stats_json(solver: RobustSolver, batches: int, out_path: str) -> None:
    stats = solver.get_rejection_stats()
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump({
            "batches": batches,
            "optimizations": solver.optimize_count,
            "accepted_factors": solver.size(),
            "final_error": solver.error(),
            "ignored_prefixes": sorted(solver.get_ignored_prefixes()),
            "rejection": {
                "lc": stats.lc,
                "good_lc": stats.good_lc,
                "odom_consistent_lc": stats.odom_consistent_lc,
                "multirobot_lc": stats.multirobot_lc,
                "good_multirobot_lc": stats.good_multirobot_lc,
                "landmark_measurements": stats.landmark_measurements,
                "good_landmark_measurements": stats.good_landmark_measurements,
            },
        }, f, indent=2)


def run(args) -> int:
    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)

    try:
        params = build_params(args)
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    kpi = KPILogger(extra_fields={"solver": params.solver.value,
                                  "outlier_removal": params.outlier_removal_method.value},
                    log_path=os.path.join(out_dir, "kpi_events.jsonl"),
                    emit_to_logger=False)
    with kpi:
        try:
            solver = make_robust_solver(params, kpi=kpi)
        except ConfigurationError:
            return 1
        if args.enable_logging:
            solver.enable_logging(out_dir)

        batches = 0
        try:
            with G2oBatchSource(args.g2o, is_3d=args.is_3d, batch_size=args.batch_size,
                                anchor_trajectories=args.anchor) as src:
                for batch in src.iter_batches():
                    solver.update_batch(batch)
                    batches += 1
        except BatchSourceError as exc:
            logger.error("Failed to read dataset: %s", exc)
            return 1

        for prefix in args.ignore_prefix:
            solver.ignore_prefix(prefix)
        if args.force_final:
            solver.force_update(gtsam.NonlinearFactorGraph(), gtsam.Values())

        solver.save_data(out_dir)
        export_stats_json(solver, batches, os.path.join(out_dir, "solver_stats.json"))

        print("=== Robust solver summary ===")
        print(f"Batches: {batches}, optimizations: {solver.optimize_count}")
        print(f"Accepted factors: {solver.size()}")
        print(f"Final graph error: {solver.error():.6f}")

        if args.plot:
            graph = solver.get_factors_unsafe()
            closures = []
            for i in range(graph.size()):
                f = graph.at(i)
                if f is not None and factor_kind(f, params.special_symbols) == LOOP_CLOSURE:
                    closures.append(tuple(factor_keys(f)))
            plot_trajectories_2d(solver.calculate_estimate(), os.path.join(out_dir, "trajectories_xy.png"),
                                 loop_closures=closures)
        print(f"Artifacts written to: {out_dir}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
