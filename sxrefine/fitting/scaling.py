"""Scale factor and B factor refinement against a merged reference.

The model compares logarithms:
``log I_partial = -log G + log p - log L - B s^2 + log I_full``
with ``s = 1/2d``. The scale factor is refined through ``t = -log G``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Sequence

import numpy as np

from sxrefine.config.models import ScalingSettings
from sxrefine.errors import FailureReason
from sxrefine.simulation.types import Crystal, PRFlag, Reflection

from .linalg import accumulate_normal_equations, solve_svd
from .merge import ReferenceList, usable_reflections

logger = logging.getLogger(__name__)


class ScaleParam(IntEnum):
    OSF = 0
    BFAC = 1


NUM_SCALE_PARAMS = len(ScaleParam)


@dataclass
class ScaleOutcome:
    """Result of scaling one crystal."""

    success: bool
    n_reflections: int
    n_cycles: int
    residual: float
    reason: Optional[FailureReason] = None


def apply_scale_shift(crystal: Crystal, param: ScaleParam, shift: float) -> None:
    if param == ScaleParam.BFAC:
        crystal.bfac += shift
    elif param == ScaleParam.OSF:
        t = -math.log(crystal.osf) + shift
        crystal.osf = math.exp(-t)
    else:
        raise ValueError(f"No shift defined for parameter {param}")


def _log_terms(crystal: Crystal, pairs):
    """Return ``(delta, s)`` arrays for matched (reflection, reference) pairs."""

    G = crystal.osf
    B = crystal.bfac
    hkl = np.array([refl.indices for refl, _ in pairs], dtype=np.float64)
    s = crystal.cell.resolutions(hkl)
    I_partial = np.array([refl.intensity for refl, _ in pairs])
    p = np.array([refl.partiality for refl, _ in pairs])
    L = np.array([refl.lorentz for refl, _ in pairs])
    I_full = np.array([match.intensity for _, match in pairs])
    fx = -np.log(G) + np.log(p) - np.log(L) - B * s * s + np.log(I_full)
    return np.log(I_partial) - fx, s


def scale_iterate(
    crystal: Crystal,
    reference: ReferenceList,
    settings: Optional[ScalingSettings] = None,
) -> tuple[float, int]:
    """Run one Gauss-Newton step of the scale/B fit for ``crystal``.

    Returns ``(max_shift, n_reflections)``. Too few usable reflections set
    ``PRFlag.FEWREFL``; a failed solve sets ``PRFlag.SOLVEFAIL``. In both
    cases the crystal's parameters are left alone.
    """

    max_shift, nref, _ = _scale_step(crystal, reference, settings or ScalingSettings())
    return max_shift, nref


def _scale_step(crystal: Crystal, reference: ReferenceList, settings: ScalingSettings):
    pairs = usable_reflections(
        crystal, reference, free=False,
        min_redundancy=settings.min_redundancy, min_snr=settings.min_snr,
    )
    nref = len(pairs)
    if nref < NUM_SCALE_PARAMS:
        crystal.flag = PRFlag.FEWREFL
        return 0.0, nref, FailureReason.FEW_REFLECTIONS

    delta, s = _log_terms(crystal, pairs)
    gradients = np.empty((nref, NUM_SCALE_PARAMS))
    gradients[:, ScaleParam.OSF] = 1.0
    gradients[:, ScaleParam.BFAC] = -s * s

    # The fit residual here is the observed-minus-model delta, so the
    # accumulated vector is +sum(delta * gradient).
    M, v = accumulate_normal_equations(gradients, -delta)
    shifts = solve_svd(v, M)
    if shifts is None:
        crystal.flag = PRFlag.SOLVEFAIL
        return 0.0, nref, FailureReason.SOLVE_FAILURE

    for param in ScaleParam:
        apply_scale_shift(crystal, param, float(shifts[param]))
    return float(np.max(np.abs(shifts))), nref, None


def log_residual(
    crystal: Crystal,
    reference: ReferenceList,
    free: bool = False,
    settings: Optional[ScalingSettings] = None,
) -> float:
    """Sum of squared log deviations from the reference.

    ``free=True`` evaluates the free-flagged reflections instead of the
    working set.
    """

    settings = settings or ScalingSettings()
    pairs = usable_reflections(
        crystal, reference, free=free,
        min_redundancy=settings.min_redundancy, min_snr=settings.min_snr,
    )
    if not pairs:
        return 0.0
    delta, _ = _log_terms(crystal, pairs)
    return float(np.sum(delta * delta))


def scale_crystal(
    crystal: Crystal,
    reference: ReferenceList,
    settings: Optional[ScalingSettings] = None,
) -> ScaleOutcome:
    """Iterate the scale fit of one crystal until the log residual settles."""

    settings = settings or ScalingSettings()
    old_dev = log_residual(crystal, reference, settings=settings)
    nref = 0
    cycles = 0
    dev = old_dev
    while cycles < settings.max_cycles:
        _, nref, reason = _scale_step(crystal, reference, settings)
        cycles += 1
        if reason is not None:
            return ScaleOutcome(False, nref, cycles, dev, reason)
        dev = log_residual(crystal, reference, settings=settings)
        if abs(dev - old_dev) <= settings.tolerance * dev:
            break
        old_dev = dev
    return ScaleOutcome(True, nref, cycles, dev)


def total_log_residual(
    crystals: Sequence[Crystal],
    reference: ReferenceList,
    settings: Optional[ScalingSettings] = None,
) -> tuple[float, int]:
    """Summed log residual over unflagged crystals.

    Returns ``(total, n_included)``; crystals whose residual is NaN are
    skipped.
    """

    values = []
    for crystal in crystals:
        if crystal.flag != PRFlag.OK:
            continue
        r = log_residual(crystal, reference, settings=settings)
        if math.isnan(r):
            continue
        values.append(r)
    return math.fsum(values), len(values)


def linear_scale(
    reference: ReferenceList,
    reflections: Sequence[Reflection],
) -> Optional[float]:
    """Factor by which ``reflections`` should be multiplied to fit ``reference``.

    Weighted least squares through the origin with partiality weights.
    Returns ``None`` when fewer than two reflections are in common.
    """

    x, y, w = [], [], []
    n_seen = 0
    for refl in reflections:
        n_seen += 1
        match = reference.find(*refl.indices)
        if match is None:
            continue
        I1 = match.intensity
        I2 = refl.intensity
        if not (math.isfinite(I1) and math.isfinite(I2)):
            continue
        if I1 <= 0.0 or I2 <= 0.0 or refl.partiality <= 0.0:
            continue
        x.append(I2 / refl.partiality)
        y.append(I1)
        w.append(refl.partiality)

    if len(x) < 2:
        logger.error(
            "Not enough reflections for scaling (had %d, but %d remain)", n_seen, len(x)
        )
        return None

    x = np.asarray(x)
    y = np.asarray(y)
    w = np.asarray(w)
    G = float(np.sum(w * x * y) / np.sum(w * x * x))
    if not math.isfinite(G):
        logger.error("Scaling gave a non-finite factor (%d pairs)", len(x))
        return None
    return G


def scale_all_to_reference(crystals: Sequence[Crystal], reference: ReferenceList) -> int:
    """Set every crystal's scale factor by :func:`linear_scale`.

    B factors are reset to zero. Returns the number of crystals scaled.
    """

    n_ok = 0
    for i, crystal in enumerate(crystals):
        G = linear_scale(reference, crystal.reflections)
        if G is None:
            logger.error("Scaling failed for crystal %d", i)
            continue
        crystal.osf = G
        crystal.bfac = 0.0
        n_ok += 1
    logger.info("Scaled %d of %d crystals to the reference", n_ok, len(crystals))
    return n_ok
