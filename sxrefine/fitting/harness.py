"""Run per-crystal refinement tasks over a thread pool.

Every task owns one crystal for its whole duration and reads the shared
reference, which is not modified while the pool is running. Results are
folded into a :class:`MacrocycleContext` one completion at a time.
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from sxrefine.config.models import (
    GeometrySettings,
    PostRefinementSettings,
    ScalingSettings,
)
from sxrefine.errors import GlobalNonConvergence, HarnessError
from sxrefine.simulation.types import Crystal, PartialityModel, PRFlag

from .merge import ReferenceList, merge_intensities
from .post_refinement import post_refine, reference_residual
from .prediction_refinement import refine_prediction, refine_radius
from .scaling import scale_crystal, total_log_residual

logger = logging.getLogger(__name__)


@dataclass
class TaskResult:
    index: int
    ok: bool
    residual: float = float("nan")
    n_reflections: int = 0
    message: str = ""


@dataclass
class MacrocycleSummary:
    label: str
    n_crystals: int
    n_done: int
    n_failed: int
    n_reflections: int
    residual: float
    mean_b: float
    residual_before: float = float("nan")
    converged: bool = True
    n_macrocycles: int = 1

    def raise_for_convergence(self) -> None:
        if not self.converged:
            raise GlobalNonConvergence(
                f"{self.label}: no convergence after {self.n_macrocycles} macrocycles"
            )


class MacrocycleContext:
    """Shared, explicitly passed state of one pool run."""

    def __init__(
        self,
        crystals: Sequence[Crystal],
        reference: Optional[ReferenceList] = None,
        label: str = "Refining",
    ):
        self.crystals = crystals
        self.reference = reference
        self.label = label
        self.n_crystals = len(crystals)
        self.n_done = 0
        self.n_failed = 0
        self.n_reflections = 0
        self._residuals: Dict[int, float] = {}
        self._lock = threading.Lock()

    def record(self, result: TaskResult) -> None:
        with self._lock:
            self.n_done += 1
            if result.ok:
                self.n_reflections += result.n_reflections
                if not math.isnan(result.residual):
                    self._residuals[result.index] = result.residual
            else:
                self.n_failed += 1
            logger.info("%s: %d/%d crystals", self.label, self.n_done, self.n_crystals)

    @property
    def residual(self) -> float:
        # Summed in index order so the total does not depend on completion order.
        with self._lock:
            return math.fsum(self._residuals[i] for i in sorted(self._residuals))

    def summary(self) -> MacrocycleSummary:
        mean_b = math.fsum(cr.bfac for cr in self.crystals) / self.n_crystals
        return MacrocycleSummary(
            label=self.label,
            n_crystals=self.n_crystals,
            n_done=self.n_done,
            n_failed=self.n_failed,
            n_reflections=self.n_reflections,
            residual=self.residual,
            mean_b=mean_b,
        )


Task = Callable[[int, Crystal, MacrocycleContext], TaskResult]


def effective_threads(n_threads: int, n_crystals: int) -> int:
    """Worker count for a pool over ``n_crystals`` crystals."""

    if n_threads < 1:
        raise HarnessError(f"Thread count must be positive, got {n_threads}")
    return max(1, min(n_threads, n_crystals))


def _run_task(task: Task, ctx: MacrocycleContext, index: int) -> TaskResult:
    crystal = ctx.crystals[index]
    try:
        return task(index, crystal, ctx)
    except Exception as exc:  # a failing crystal must not take the pool down
        logger.warning("Crystal %d failed: %s", index, exc, exc_info=logger.isEnabledFor(logging.DEBUG))
        if crystal.flag == PRFlag.OK:
            crystal.flag = PRFlag.SOLVEFAIL
        crystal.add_note(f"{ctx.label}/error = {exc}")
        return TaskResult(index, False, message=str(exc))


def run_macrocycle(
    crystals: Sequence[Crystal],
    task: Task,
    n_threads: int = 1,
    reference: Optional[ReferenceList] = None,
    label: str = "Refining",
) -> MacrocycleSummary:
    """Run ``task`` once for every crystal and aggregate the results."""

    if not crystals:
        raise HarnessError("No crystals submitted")
    workers = effective_threads(n_threads, len(crystals))
    ctx = MacrocycleContext(crystals, reference, label)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_run_task, task, ctx, i) for i in range(len(crystals))]
        for future in as_completed(futures):
            ctx.record(future.result())

    summary = ctx.summary()
    logger.info(
        "%s: %d reflections, %d of %d crystals failed",
        label, summary.n_reflections, summary.n_failed, summary.n_crystals,
    )
    return summary


def refine_geometry_all(
    crystals: Sequence[Crystal],
    n_threads: int = 1,
    settings: Optional[GeometrySettings] = None,
) -> MacrocycleSummary:
    """Prediction refinement followed by profile-radius estimation."""

    settings = settings or GeometrySettings()

    def task(index: int, crystal: Crystal, ctx: MacrocycleContext) -> TaskResult:
        outcome = refine_prediction(crystal, settings)
        if not outcome.success:
            crystal.flag = PRFlag.EARLY
            crystal.add_note(f"predict_refine/failed = {outcome.reason.value}")
            return TaskResult(index, False, n_reflections=outcome.n_pairs,
                              message=outcome.reason.value)
        radius = refine_radius(crystal, settings)
        if not radius.success:
            crystal.add_note("predict_refine/radius_unchanged")
        return TaskResult(index, True, outcome.final_residual, outcome.n_pairs)

    return run_macrocycle(crystals, task, n_threads, label="Prediction refinement")


def scale_all(
    crystals: Sequence[Crystal],
    n_threads: int = 1,
    settings: Optional[ScalingSettings] = None,
    merge: Optional[Callable[[Sequence[Crystal]], ReferenceList]] = None,
) -> MacrocycleSummary:
    """Scale every crystal against a re-merged reference until the summed
    log residual stops changing.

    ``merge`` builds the reference from the crystals; by default
    :func:`~sxrefine.fitting.merge.merge_intensities` with the configured
    minimum redundancy.
    """

    settings = settings or ScalingSettings()
    if not crystals:
        raise HarnessError("No crystals submitted")
    if settings.max_macrocycles < 1:
        raise HarnessError("At least one scaling macrocycle is required")
    if merge is None:
        def merge(crs):
            return merge_intensities(crs, settings.min_redundancy)

    def task(index: int, crystal: Crystal, ctx: MacrocycleContext) -> TaskResult:
        outcome = scale_crystal(crystal, ctx.reference, settings)
        return TaskResult(index, outcome.success, outcome.residual, outcome.n_reflections,
                          "" if outcome.success else outcome.reason.value)

    new_res = math.inf
    summary = None
    first_before = float("nan")
    n_iter = 0
    converged = False
    while n_iter < settings.max_macrocycles:
        reference = merge(crystals)
        old_res = new_res
        bef_res, _ = total_log_residual(crystals, reference, settings)
        summary = run_macrocycle(crystals, task, n_threads, reference, label="Scaling")
        new_res, n_inc = total_log_residual(crystals, reference, settings)
        n_iter += 1
        if n_iter == 1:
            first_before = bef_res
        logger.info("%d reflections went into the scaling", summary.n_reflections)
        logger.info("Log residual went from %e to %e, %d crystals", bef_res, new_res, n_inc)
        logger.info("Mean B = %e", summary.mean_b)
        if math.isfinite(old_res) and abs(new_res - old_res) <= settings.tolerance * old_res + 1e-10:
            converged = True
            break

    if not converged:
        logger.error("Too many iterations - giving up!")

    summary.residual = new_res
    summary.residual_before = first_before
    summary.converged = converged
    summary.n_macrocycles = n_iter
    return summary


def post_refine_all(
    crystals: Sequence[Crystal],
    reference: ReferenceList,
    n_threads: int = 1,
    model=PartialityModel.GAUSSIAN,
    settings: Optional[PostRefinementSettings] = None,
) -> MacrocycleSummary:
    """Post-refine the orientation of every crystal against ``reference``."""

    settings = settings or PostRefinementSettings()

    def task(index: int, crystal: Crystal, ctx: MacrocycleContext) -> TaskResult:
        outcome = post_refine(crystal, ctx.reference, model, settings)
        if not outcome.success:
            return TaskResult(index, False, n_reflections=outcome.n_reflections,
                              message=outcome.reason.value)
        return TaskResult(index, True, outcome.residual_after, outcome.n_reflections)

    before = math.fsum(
        reference_residual(cr, reference, settings=settings)
        for cr in crystals if cr.flag == PRFlag.OK
    )
    summary = run_macrocycle(crystals, task, n_threads, reference, label="Post-refinement")
    summary.residual_before = before
    logger.info("Residual went from %e to %e", before, summary.residual)
    return summary
