"""Prediction refinement: least-squares fitting of the reciprocal basis and
detector shift to the observed peak positions, and profile-radius
estimation from the paired excitation errors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Sequence

import numpy as np

from sxrefine.config.models import GeometrySettings
from sxrefine.debug_utils import debug_print
from sxrefine.errors import FailureReason, InsufficientPairs, SolveFailure
from sxrefine.simulation.detector import panel_position, twod_mapping
from sxrefine.simulation.prediction import update_predictions
from sxrefine.simulation.types import Crystal, Reflection

from .linalg import accumulate_normal_equations, add_diagonal_damping, solve_svd
from .pairing import PairedReflection, pair_peaks

logger = logging.getLogger(__name__)


class GeometryParam(IntEnum):
    """Refined parameters, in the order of the normal-equation vector."""

    ASX = 0
    ASY = 1
    ASZ = 2
    BSX = 3
    BSY = 4
    BSZ = 5
    CSX = 6
    CSY = 7
    CSZ = 8
    DETX = 9
    DETY = 10


NUM_PARAMS = len(GeometryParam)
LATTICE_PARAMS = tuple(p for p in GeometryParam if p < GeometryParam.DETX)


@dataclass
class RefinementOutcome:
    """Result of one call to :func:`refine_prediction`."""

    success: bool
    n_pairs: int
    reason: Optional[FailureReason] = None
    initial_residual: float = float("nan")
    final_residual: float = float("nan")
    reflections: List[Reflection] = field(default_factory=list)


@dataclass
class RadiusOutcome:
    """Result of one call to :func:`refine_radius`."""

    success: bool
    n_pairs: int
    profile_radius: float = float("nan")
    reason: Optional[FailureReason] = None


def _pair_arrays(pairs: Sequence[PairedReflection]):
    hkl = np.array([rp.refl.indices for rp in pairs], dtype=np.float64)
    exerr = np.array([rp.refl.exerr for rp in pairs], dtype=np.float64)
    return hkl, exerr


def r_gradients(crystal: Crystal, pairs: Sequence[PairedReflection]) -> np.ndarray:
    """Gradients of the excitation error with respect to every parameter.

    Returns an ``(n_pairs, NUM_PARAMS)`` array. The detector shift does not
    change the excitation error.
    """

    hkl, _ = _pair_arrays(pairs)
    k = crystal.image.k
    q = crystal.cell.q_vectors(hkl)
    kout = q.copy()
    kout[:, 2] += k
    # dr/dq = -kout / |kout|
    dr_dq = -kout / np.linalg.norm(kout, axis=1, keepdims=True)

    grads = np.zeros((len(pairs), NUM_PARAMS))
    for row in range(3):
        for axis in range(3):
            grads[:, 3 * row + axis] = hkl[:, row] * dr_dq[:, axis]
    return grads


def _predicted_z(pairs: Sequence[PairedReflection], crystal: Crystal) -> np.ndarray:
    dx, dy = crystal.det_shift
    return np.array(
        [panel_position(rp.panel, rp.refl.fs, rp.refl.ss, dx, dy)[2] for rp in pairs],
        dtype=np.float64,
    )


def _position_gradients(crystal: Crystal, pairs: Sequence[PairedReflection], axis: int) -> np.ndarray:
    """Gradients of the lab-frame x (``axis=0``) or y (``axis=1``) position.

    The panel is treated as perpendicular to the beam at the lab z of the
    predicted spot, so that ``x = q_x zD / (q_z + k)``.
    """

    hkl, _ = _pair_arrays(pairs)
    k = crystal.image.k
    q = crystal.cell.q_vectors(hkl)
    zD = _predicted_z(pairs, crystal)
    kz = q[:, 2] + k

    grads = np.zeros((len(pairs), NUM_PARAMS))
    for row in range(3):
        grads[:, 3 * row + axis] = hkl[:, row] * zD / kz
        grads[:, 3 * row + 2] = -hkl[:, row] * q[:, axis] * zD / kz**2
    grads[:, GeometryParam.DETX if axis == 0 else GeometryParam.DETY] = -1.0
    return grads


def x_gradients(crystal: Crystal, pairs: Sequence[PairedReflection]) -> np.ndarray:
    return _position_gradients(crystal, pairs, 0)


def y_gradients(crystal: Crystal, pairs: Sequence[PairedReflection]) -> np.ndarray:
    return _position_gradients(crystal, pairs, 1)


def position_deviations(pairs: Sequence[PairedReflection], dx: float, dy: float):
    """Predicted minus observed lab x and y (m) for every pair."""

    xdev = np.empty(len(pairs))
    ydev = np.empty(len(pairs))
    for i, rp in enumerate(pairs):
        xh, yh = twod_mapping(rp.panel, rp.refl.fs, rp.refl.ss, dx, dy)
        xpk, ypk = twod_mapping(rp.panel, rp.peak.fs, rp.peak.ss, dx, dy)
        xdev[i] = xh - xpk
        ydev[i] = yh - ypk
    return xdev, ydev


def pred_residual(
    pairs: Sequence[PairedReflection],
    dx: float,
    dy: float,
    exc_weight: float = GeometrySettings().exc_weight,
) -> float:
    """Weighted sum of squared excitation errors and positional deviations."""

    if not pairs:
        return 0.0
    _, exerr = _pair_arrays(pairs)
    ih = np.array([rp.Ih for rp in pairs])
    xdev, ydev = position_deviations(pairs, dx, dy)
    res = np.sum(exc_weight * ih * exerr**2)
    res += np.sum(xdev**2)
    res += np.sum(ydev**2)
    return float(res)


def iterate(
    crystal: Crystal,
    pairs: Sequence[PairedReflection],
    settings: Optional[GeometrySettings] = None,
) -> np.ndarray:
    """Run one least-squares step and apply it to ``crystal``.

    The predictions of ``pairs`` must be current. Returns the applied
    shifts, ordered as :class:`GeometryParam`. Raises
    :class:`~sxrefine.errors.SolveFailure` if the equations cannot be
    solved, in which case the crystal is unchanged.
    """

    settings = settings or GeometrySettings()
    dx, dy = crystal.det_shift
    _, exerr = _pair_arrays(pairs)
    w = settings.exc_weight * np.array([rp.Ih for rp in pairs])
    xdev, ydev = position_deviations(pairs, dx, dy)

    M, v = accumulate_normal_equations(r_gradients(crystal, pairs), exerr, w)
    Mx, vx = accumulate_normal_equations(x_gradients(crystal, pairs), xdev)
    My, vy = accumulate_normal_equations(y_gradients(crystal, pairs), ydev)
    M += Mx + My
    v += vx + vy

    damping = np.full(NUM_PARAMS, settings.lattice_damping)
    damping[GeometryParam.DETX] = settings.detector_damping
    damping[GeometryParam.DETY] = settings.detector_damping
    M = add_diagonal_damping(M, damping)

    shifts = solve_svd(v, M)
    if shifts is None:
        raise SolveFailure("Failed to solve equations")

    # Ordering follows GeometryParam
    crystal.cell.reciprocal = crystal.cell.reciprocal + shifts[:9].reshape(3, 3)
    crystal.set_det_shift(
        dx + shifts[GeometryParam.DETX],
        dy + shifts[GeometryParam.DETY],
    )
    return shifts


def _normalise_intensities(pairs: Sequence[PairedReflection]) -> bool:
    max_I = max(rp.peak.intensity for rp in pairs)
    if max_I <= 0.0:
        return False
    for rp in pairs:
        rp.Ih = rp.peak.intensity / max_I if rp.peak.intensity > 0.0 else 0.0
    return True


def refine_prediction(crystal: Crystal, settings: Optional[GeometrySettings] = None) -> RefinementOutcome:
    """Refine the reciprocal basis and detector shift of ``crystal``.

    On success the final correspondence list is stored as the crystal's
    reflections and a ``predict_refine/final_residual`` note is added.
    On failure the detector shift is restored, and after a solve failure
    the reciprocal basis too.
    """

    settings = settings or GeometrySettings()
    pairs = pair_peaks(crystal, settings=settings)
    n = len(pairs)
    if n < settings.min_pairs:
        logger.debug("%s", InsufficientPairs(n, settings.min_pairs))
        return RefinementOutcome(False, n, FailureReason.INSUFFICIENT_PAIRS)

    orig_cell = crystal.cell.copy()
    orig_shift = crystal.det_shift

    if not _normalise_intensities(pairs):
        logger.error("All peaks negative?")
        return RefinementOutcome(False, n, FailureReason.NO_POSITIVE_PEAKS)

    refls = [rp.refl for rp in pairs]
    initial = pred_residual(pairs, *crystal.det_shift, settings.exc_weight)
    debug_print("predict_refine pairs:", n, "initial residual:", initial)

    for cycle in range(settings.max_cycles):
        update_predictions(crystal, refls)
        try:
            shifts = iterate(crystal, pairs, settings)
        except SolveFailure as exc:
            logger.warning("%s (cycle %d)", exc, cycle)
            crystal.cell = orig_cell
            crystal.set_det_shift(*orig_shift)
            return RefinementOutcome(False, n, FailureReason.SOLVE_FAILURE, initial)
        debug_print("predict_refine cycle", cycle, "shifts:", shifts)

    update_predictions(crystal, refls)
    final = pred_residual(pairs, *crystal.det_shift, settings.exc_weight)
    crystal.add_note("predict_refine/final_residual = %e" % final)
    debug_print("predict_refine final residual:", final)

    final_refls: List[Reflection] = []
    n_final = len(pair_peaks(crystal, final_refls, settings))
    if n_final < settings.min_pairs:
        crystal.set_det_shift(*orig_shift)
        return RefinementOutcome(False, n_final, FailureReason.INSUFFICIENT_PAIRS, initial, final)

    crystal.reflections = final_refls
    return RefinementOutcome(True, n_final, None, initial, final, list(final_refls))


def profile_radius_index(n_pairs: int) -> int:
    """Index of the order statistic used as the profile radius.

    Drops roughly the largest 2% of excitation errors, never going below
    index 2.
    """

    return max((n_pairs - 1) - n_pairs // 50, 2)


def refine_radius(crystal: Crystal, settings: Optional[GeometrySettings] = None) -> RadiusOutcome:
    """Estimate the profile radius from the paired excitation errors."""

    settings = settings or GeometrySettings()
    pairs = pair_peaks(crystal, settings=settings)
    n = len(pairs)
    if n < settings.min_radius_pairs:
        return RadiusOutcome(False, n, reason=FailureReason.INSUFFICIENT_PAIRS)

    errs = np.sort(np.abs([rp.refl.exerr for rp in pairs]))
    radius = float(errs[profile_radius_index(n)])
    crystal.profile_radius = radius
    return RadiusOutcome(True, n, radius)
