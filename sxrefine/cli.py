"""Command line front end running the refinement stages on synthetic data.

Usage examples:

- Predict reflections for one synthetic crystal:
    python -m sxrefine predict

- Refine the geometry of four perturbed crystals on two threads:
    python -m sxrefine refine --crystals 4 --threads 2

- Scale three crystals and write the crystal table:
    python -m sxrefine scale --csv crystals.csv
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

import numpy as np

from sxrefine.config import get_config_bundle
from sxrefine.debug_utils import configure_logging, enable_numba_logging
from sxrefine.errors import GlobalNonConvergence, HarnessError
from sxrefine.fitting.harness import refine_geometry_all, scale_all
from sxrefine.io.tables import crystal_table
from sxrefine.simulation.prediction import predict_to_res
from sxrefine.simulation.types import PredictionStatus
from sxrefine.utils.synthetic import make_crystal, make_scaling_dataset

logger = logging.getLogger(__name__)

DEFAULT_OSFS = (1.0, 1.2, 0.8)
DEFAULT_BFACS = (0.0, 5e-20, -3e-20)


def _write_table(crystals, path: Optional[str]) -> None:
    table = crystal_table(crystals)
    if path:
        table.to_csv(path, index=False)
        print(f"Wrote crystal table to {path}")
    else:
        print(table[["crystal", "osf", "bfac", "det_shift_x", "det_shift_y",
                     "profile_radius", "n_reflections", "flag"]].to_string(index=False))


def _cmd_predict(args: argparse.Namespace) -> int:
    bundle = get_config_bundle()
    crystal = make_crystal(np.random.default_rng(args.seed), with_peaks=False)
    result = predict_to_res(crystal, args.max_res, bundle.prediction)
    print(f"Predicted {len(result.reflections)} reflections")
    for status in PredictionStatus:
        print(f"  {status.name.lower():>18}: {result.counts[status]}")
    if result.truncated:
        print("  (stopped at the candidate cap)")
    return 0


def _cmd_refine(args: argparse.Namespace) -> int:
    bundle = get_config_bundle()
    rng = np.random.default_rng(args.seed)
    crystals = []
    for _ in range(args.crystals):
        crystal = make_crystal(rng)
        crystal.cell.reciprocal = crystal.cell.reciprocal * (1.0 + args.perturb)
        crystals.append(crystal)
    threads = args.threads or bundle.runtime.n_threads
    summary = refine_geometry_all(crystals, threads, bundle.geometry)
    print(f"Refined {summary.n_done - summary.n_failed} of {summary.n_crystals} crystals, "
          f"{summary.n_reflections} pairs, summed residual {summary.residual:e}")
    _write_table(crystals, args.csv)
    return 0 if summary.n_failed == 0 else 1


def _cmd_scale(args: argparse.Namespace) -> int:
    bundle = get_config_bundle()
    crystals, _ = make_scaling_dataset(DEFAULT_OSFS, DEFAULT_BFACS, seed=args.seed)
    threads = args.threads or bundle.runtime.n_threads
    summary = scale_all(crystals, threads, bundle.scaling)
    print(f"Log residual went from {summary.residual_before:e} to {summary.residual:e} "
          f"in {summary.n_macrocycles} macrocycles; mean B = {summary.mean_b:e}")
    _write_table(crystals, args.csv)
    if args.strict:
        try:
            summary.raise_for_convergence()
        except GlobalNonConvergence as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
    return 0


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--seed", type=int, default=0, help="Random seed for the synthetic data")
    parser.add_argument("--threads", type=int, default=None,
                        help="Worker threads (default from config)")
    parser.add_argument("--csv", default=None, help="Write the crystal table to this CSV file")


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Run sxrefine stages on synthetic data.")
    ap.add_argument("--log-level", default=None, help="Logging level (default from config)")
    subparsers = ap.add_subparsers(dest="command")

    predict_parser = subparsers.add_parser("predict", help="Predict reflections for one crystal.")
    predict_parser.add_argument("--seed", type=int, default=0, help="Random seed for the orientation")
    predict_parser.add_argument("--max-res", type=float, default=None,
                                help="Resolution limit in m^-1 (default from config)")
    predict_parser.set_defaults(func=_cmd_predict)

    refine_parser = subparsers.add_parser("refine", help="Refine crystal geometry against peaks.")
    _add_common(refine_parser)
    refine_parser.add_argument("--crystals", type=int, default=3, help="Number of crystals")
    refine_parser.add_argument("--perturb", type=float, default=1e-3,
                               help="Relative error applied to the starting cells")
    refine_parser.set_defaults(func=_cmd_refine)

    scale_parser = subparsers.add_parser("scale", help="Scale crystals against a merged reference.")
    _add_common(scale_parser)
    scale_parser.add_argument("--strict", action="store_true",
                              help="Exit with an error if scaling does not converge")
    scale_parser.set_defaults(func=_cmd_scale)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    ap = _build_parser()
    args = ap.parse_args(argv)

    bundle = get_config_bundle()
    configure_logging(args.log_level or bundle.runtime.log_level)
    enable_numba_logging()

    handler = getattr(args, "func", None)
    if handler is None:
        ap.print_help()
        return 0

    try:
        return handler(args)
    except HarnessError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
