"""Correspondence between observed peaks and predicted reflections."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from sxrefine.config.models import GeometrySettings
from sxrefine.simulation.detector import transform_coords
from sxrefine.simulation.prediction import update_predictions
from sxrefine.simulation.types import Crystal, Panel, Peak, Reflection

logger = logging.getLogger(__name__)

# Fractional-index distance under which a peak counts as lying on the lattice.
LATTICE_AGREEMENT_TOLERANCE = 0.25


@dataclass
class PairedReflection:
    """One reflection tied to the peak it was matched with.

    ``Ih`` is the peak intensity normalised to the strongest pair, filled
    in by the geometry refiner.
    """

    refl: Reflection
    peak: Peak
    panel: Panel
    Ih: float = 0.0

    @property
    def exerr(self) -> float:
        return self.refl.exerr


def outlier_transition_index(abs_errors: Sequence[float], intercept: float) -> int:
    """Position of the transition from good pairs to outliers.

    ``abs_errors`` must be sorted in ascending order. For each ``i`` a line
    through ``intercept`` with slope ``|e_i| / i`` is drawn; the first ``i``
    beyond which no later error falls below that line is the cutoff.
    """

    errs = np.abs(np.asarray(abs_errors, dtype=np.float64))
    n = errs.size
    if n < 3:
        return n
    idx = np.arange(n, dtype=np.float64)
    for i in range(1, n - 1):
        grad = errs[i] / i
        later = errs[i + 1:] < intercept + grad * idx[i + 1:]
        if not later.any():
            return i
    return n


def check_outlier_transition(
    pairs: List[PairedReflection],
    intercept: float = GeometrySettings().outlier_intercept,
) -> int:
    """Sort ``pairs`` in place by absolute excitation error and return the
    number of pairs to keep."""

    if len(pairs) < 3:
        return len(pairs)
    pairs.sort(key=lambda rp: abs(rp.exerr))
    return outlier_transition_index([abs(rp.exerr) for rp in pairs], intercept)


def _fractional_indices(crystal: Crystal, dx: float, dy: float) -> Tuple[np.ndarray, np.ndarray]:
    """Fractional Miller indices of every peak of the crystal's image.

    Returns ``(hkl_frac, peak_numbers)``.
    """

    image = crystal.image
    if not image.peaks:
        return np.empty((0, 3)), np.empty(0, dtype=np.int64)

    panel_ids = np.array([pk.panel for pk in image.peaks], dtype=np.int64)
    fs = np.array([pk.fs for pk in image.peaks], dtype=np.float64)
    ss = np.array([pk.ss for pk in image.peaks], dtype=np.float64)
    q = np.empty((len(image.peaks), 3))
    for pn in np.unique(panel_ids):
        sel = panel_ids == pn
        q[sel] = transform_coords(image.detector[int(pn)], fs[sel], ss[sel], image.wavelength, dx, dy)

    # Real-space basis vectors as rows; q . a = h
    hkl_frac = q @ crystal.cell.real.T
    return hkl_frac, np.arange(len(image.peaks))


def pair_peaks(
    crystal: Crystal,
    reflist: Optional[List[Reflection]] = None,
    settings: Optional[GeometrySettings] = None,
) -> List[PairedReflection]:
    """Associate a reflection with each peak of the crystal's image which
    lies close to the Bragg condition.

    The accepted pairs are returned sorted by absolute excitation error.
    When ``reflist`` is given, copies of the accepted reflections are
    appended to it. The crystal itself is not modified.
    """

    settings = settings or GeometrySettings()
    image = crystal.image
    dx, dy = crystal.det_shift
    max_index = settings.max_index

    hkl_frac, peak_numbers = _fractional_indices(crystal, dx, dy)
    candidates: List[PairedReflection] = []
    for i in peak_numbers:
        peak = image.peaks[i]
        h, k, l = (int(v) for v in np.rint(hkl_frac[i]))
        if h == 0 and k == 0 and l == 0:
            continue
        if abs(h) >= max_index or abs(k) >= max_index or abs(l) >= max_index:
            logger.warning(
                "Peak %d (on panel %s at %.2f,%.2f) has indices too large for pairing (%d %d %d)",
                i, image.detector[peak.panel].name, peak.fs, peak.ss, h, k, l,
            )
            continue
        # The predicted position may fall off this panel; only its distance
        # from the peak matters here.
        refl = Reflection(h, k, l, panel=peak.panel, peak_fs=peak.fs, peak_ss=peak.ss)
        candidates.append(PairedReflection(refl, peak, image.detector[peak.panel]))

    if not candidates:
        return []

    update_predictions(crystal, [rp.refl for rp in candidates])

    limit = crystal.cell.lowest_reflection() / settings.mismatch_divisor
    best = {}
    for rp in candidates:
        refl_r = transform_coords(rp.panel, rp.refl.fs, rp.refl.ss, image.wavelength, dx, dy)
        pk_r = transform_coords(rp.panel, rp.peak.fs, rp.peak.ss, image.wavelength, dx, dy)
        dist = float(np.linalg.norm(refl_r - pk_r))
        if not np.isfinite(dist) or dist > limit:
            continue
        # Two peaks indexed as the same reflection: keep the closer one
        prev = best.get(rp.refl.indices)
        if prev is None or dist < prev[0]:
            best[rp.refl.indices] = (dist, rp)

    accepted = [rp for _, rp in best.values()]
    n_final = check_outlier_transition(accepted, settings.outlier_intercept)
    accepted = accepted[:n_final]

    if reflist is not None:
        reflist.extend(rp.refl.copy() for rp in accepted)
    return accepted


def peak_lattice_agreement(
    crystal: Crystal,
    tolerance: float = LATTICE_AGREEMENT_TOLERANCE,
) -> Tuple[float, float]:
    """Fraction of peaks lying within ``tolerance`` of a lattice point.

    Returns ``(fraction, score)`` where ``score`` sums ``1 - d^2`` over the
    agreeing peaks, ``d`` being the distance to the nearest integer indices.
    """

    hkl_frac, _ = _fractional_indices(crystal, *crystal.det_shift)
    if hkl_frac.shape[0] == 0:
        return 0.0, 0.0
    dev = hkl_frac - np.rint(hkl_frac)
    sane = np.all(np.abs(dev) < tolerance, axis=1)
    score = float(np.sum(1.0 - np.sum(dev[sane] ** 2, axis=1)))
    return float(sane.sum()) / hkl_frac.shape[0], score


def peak_sanity_check(crystal: Crystal) -> bool:
    """True if at least half of the peaks agree with the lattice."""

    fraction, _ = peak_lattice_agreement(crystal)
    return fraction >= 0.5
