"""Post-refinement of the crystal orientation against a merged reference.

Two rotation angles, about the laboratory x and y axes, are refined with a
Nelder-Mead simplex. The angles are handled in degrees so that the simplex
size tolerance and initial step read naturally.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np
from scipy import optimize

from sxrefine.config.models import GeometrySettings, PostRefinementSettings
from sxrefine.errors import FailureReason
from sxrefine.simulation.detector import twod_mapping
from sxrefine.simulation.partiality import calculate_partialities
from sxrefine.simulation.prediction import update_predictions
from sxrefine.simulation.types import Crystal, PartialityModel, PRFlag, Reflection

from .merge import ReferenceEntry, ReferenceList, usable_reflections

logger = logging.getLogger(__name__)


@dataclass
class PostRefinementOutcome:
    success: bool
    n_reflections: int
    angles_deg: Tuple[float, float] = (0.0, 0.0)
    objective_before: float = float("nan")
    objective_after: float = float("nan")
    residual_before: float = float("nan")
    residual_after: float = float("nan")
    free_residual_before: float = float("nan")
    free_residual_after: float = float("nan")
    applied: bool = False
    n_iterations: int = 0
    reason: Optional[FailureReason] = None


def reference_residual(
    crystal: Crystal,
    reference: ReferenceList,
    free: bool = False,
    settings: Optional[PostRefinementSettings] = None,
) -> float:
    """Weighted squared difference between observed and modelled partials.

    Each term is weighted by ``(s / 1e9)^2 / sigma^2``.
    """

    settings = settings or PostRefinementSettings()
    G = crystal.osf
    B = crystal.bfac
    dev = 0.0
    for refl, match in usable_reflections(crystal, reference, free=free,
                                          min_redundancy=settings.min_redundancy):
        if refl.sigma <= 0.0:
            continue
        s = crystal.cell.resolution(*refl.indices)
        fx = match.intensity * refl.partiality * math.exp(-B * s * s) / (G * refl.lorentz)
        dc = refl.intensity - fx
        w = (s / 1e9) ** 2 / refl.sigma**2
        dev += w * dc * dc
    return dev


def _observed(
    crystal: Crystal,
    reference: ReferenceList,
    settings: PostRefinementSettings,
) -> List[Tuple[Reflection, ReferenceEntry]]:
    return [
        (refl, match)
        for refl, match in usable_reflections(
            crystal, reference, min_redundancy=settings.min_redundancy
        )
        if refl.panel >= 0 and math.isfinite(refl.peak_fs) and math.isfinite(refl.peak_ss)
    ]


def orientation_objective(
    angles_deg,
    crystal: Crystal,
    observed: List[Tuple[Reflection, ReferenceEntry]],
    exc_weight: float = GeometrySettings().exc_weight,
) -> float:
    """Prediction residual of ``observed`` after rotating the crystal.

    The excitation error term is weighted by the reference intensity
    normalised to the strongest reflection. Neither ``crystal`` nor the
    observed reflections are modified.
    """

    ang1, ang2 = (math.radians(float(a)) for a in angles_deg)
    trial = Crystal(
        cell=crystal.cell.rotated_xy(ang1, ang2),
        image=crystal.image,
        det_shift_x=crystal.det_shift_x,
        det_shift_y=crystal.det_shift_y,
    )
    refls = [refl.copy() for refl, _ in observed]
    update_predictions(trial, refls)

    ih = np.array([match.intensity for _, match in observed])
    ih = ih / ih.max()
    detector = crystal.image.detector
    res = 0.0
    for refl, w in zip(refls, ih):
        panel = detector[refl.panel]
        xh, yh = twod_mapping(panel, refl.fs, refl.ss)
        xpk, ypk = twod_mapping(panel, refl.peak_fs, refl.peak_ss)
        res += exc_weight * w * refl.exerr**2 + (xh - xpk) ** 2 + (yh - ypk) ** 2
    return float(res)


def post_refine(
    crystal: Crystal,
    reference: ReferenceList,
    model: Union[PartialityModel, str] = PartialityModel.GAUSSIAN,
    settings: Optional[PostRefinementSettings] = None,
    exc_weight: float = GeometrySettings().exc_weight,
) -> PostRefinementOutcome:
    """Refine the orientation of ``crystal`` about the x and y axes.

    The rotation is kept only if it lowers the objective, after which the
    predictions and partialities of the crystal's reflections are updated.
    """

    settings = settings or PostRefinementSettings()
    observed = _observed(crystal, reference, settings)
    n = len(observed)
    if n < settings.min_reflections:
        crystal.flag = PRFlag.FEWREFL
        return PostRefinementOutcome(False, n, reason=FailureReason.FEW_REFLECTIONS)

    outcome = PostRefinementOutcome(True, n)
    outcome.residual_before = reference_residual(crystal, reference, False, settings)
    outcome.free_residual_before = reference_residual(crystal, reference, True, settings)
    logger.debug(
        "PR initial: dev = %10.5e, free dev = %10.5e",
        outcome.residual_before, outcome.free_residual_before,
    )

    x0 = np.zeros(2)
    step = settings.initial_step_deg
    simplex = np.array([[0.0, 0.0], [step, 0.0], [0.0, step]])
    outcome.objective_before = orientation_objective(x0, crystal, observed, exc_weight)
    result = optimize.minimize(
        orientation_objective,
        x0,
        args=(crystal, observed, exc_weight),
        method="Nelder-Mead",
        options={
            "maxiter": settings.max_iterations,
            "xatol": settings.size_tolerance,
            "fatol": np.inf,
            "initial_simplex": simplex,
        },
    )
    outcome.n_iterations = int(result.nit)
    outcome.objective_after = float(result.fun)

    if np.all(np.isfinite(result.x)) and result.fun < outcome.objective_before:
        a1, a2 = (float(a) for a in result.x)
        crystal.cell = crystal.cell.rotated_xy(math.radians(a1), math.radians(a2))
        update_predictions(crystal)
        calculate_partialities(crystal, model)
        outcome.angles_deg = (a1, a2)
        outcome.applied = True
    else:
        outcome.objective_after = outcome.objective_before

    outcome.residual_after = reference_residual(crystal, reference, False, settings)
    outcome.free_residual_after = reference_residual(crystal, reference, True, settings)
    logger.debug(
        "PR final: dev = %10.5e, free dev = %10.5e (%d iterations)",
        outcome.residual_after, outcome.free_residual_after, outcome.n_iterations,
    )
    return outcome
