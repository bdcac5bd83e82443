"""Reflection prediction by intersecting the Ewald volume with the lattice."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from math import sqrt
from typing import Optional, Sequence

import numpy as np
from numba import njit

from sxrefine.config.models import PredictionSettings

from .detector import intersect_panel, on_panel, project_to_panel
from .types import Crystal, PredictionStatus, Reflection

logger = logging.getLogger(__name__)


@njit
def _excitation_error(xl, yl, zl, k):
    """Distance from the lattice point to the sphere of radius ``k``."""
    return k - sqrt(xl * xl + yl * yl + (zl + k) * (zl + k))


@njit
def _scan_lattice(
    recip, kcen, klow, khigh, divergence, max_res, profile_cutoff,
    front_cutoff, panels, dx, dy, max_candidates,
):
    """
    Walk every (h, k, l) inside the resolution box and keep those whose
    lattice point lies in (or close to) the Ewald volume and lands on
    exactly one panel.

    Returns the accepted indices, detector positions, panel numbers and
    excitation errors, per-status rejection counts and a truncation flag.
    """
    asx = recip[0, 0]; asy = recip[0, 1]; asz = recip[0, 2]
    bsx = recip[1, 0]; bsy = recip[1, 1]; bsz = recip[1, 2]
    csx = recip[2, 0]; csy = recip[2, 1]; csz = recip[2, 2]

    hmax = int(max_res / sqrt(asx * asx + asy * asy + asz * asz))
    kmax = int(max_res / sqrt(bsx * bsx + bsy * bsy + bsz * bsz))
    lmax = int(max_res / sqrt(csx * csx + csy * csy + csz * csz))

    hkl = np.empty((max_candidates, 3), dtype=np.int64)
    pos = np.empty((max_candidates, 2), dtype=np.float64)
    pnl = np.empty(max_candidates, dtype=np.int64)
    exerr = np.empty(max_candidates, dtype=np.float64)
    counts = np.zeros(6, dtype=np.int64)
    n_panels = panels.shape[0]
    n = 0

    for h in range(-hmax, hmax + 1):
        for k in range(-kmax, kmax + 1):
            for l in range(-lmax, lmax + 1):

                if h == 0 and k == 0 and l == 0:
                    continue

                zl = h * asz + k * bsz + l * csz
                if zl > front_cutoff:
                    counts[1] += 1
                    continue
                xl = h * asx + k * bsx + l * csx
                yl = h * asy + k * bsy + l * csy

                ds = sqrt(xl * xl + yl * yl + zl * zl)
                if ds > max_res:
                    counts[2] += 1
                    continue

                rlow = _excitation_error(xl, yl, zl, klow)
                rhigh = _excitation_error(xl, yl, zl, khigh)
                cutoff = profile_cutoff + 0.5 * ds * divergence

                close = abs(rlow) < cutoff or abs(rhigh) < cutoff
                inside = (rlow < 0.0) != (rhigh < 0.0)
                if inside:
                    close = False
                if not (close or inside):
                    counts[3] += 1
                    continue

                n_found = 0
                found = -1
                found_fs = 0.0
                found_ss = 0.0
                for p in range(n_panels):
                    fs, ss, ok = intersect_panel(panels, p, xl, yl, zl + kcen, dx, dy)
                    if not ok:
                        continue
                    if not on_panel(panels, p, fs, ss):
                        continue
                    n_found += 1
                    found = p
                    found_fs = fs
                    found_ss = ss
                if n_found == 0:
                    counts[4] += 1
                    continue
                if n_found > 1:
                    counts[5] += 1
                    continue

                hkl[n, 0] = h
                hkl[n, 1] = k
                hkl[n, 2] = l
                pos[n, 0] = found_fs
                pos[n, 1] = found_ss
                pnl[n] = found
                exerr[n] = _excitation_error(xl, yl, zl, kcen)
                counts[0] += 1
                n += 1

                if n == max_candidates:
                    return hkl[:n], pos[:n], pnl[:n], exerr[:n], counts, n >= max_candidates

    return hkl[:n], pos[:n], pnl[:n], exerr[:n], counts, n >= max_candidates


@dataclass
class PredictionResult:
    reflections: list[Reflection]
    counts: dict[PredictionStatus, int]
    truncated: bool

    @property
    def n_ambiguous(self) -> int:
        return self.counts[PredictionStatus.AMBIGUOUS_PANEL]


def predict_to_res(
    crystal: Crystal,
    max_res: Optional[float] = None,
    settings: Optional[PredictionSettings] = None,
) -> PredictionResult:
    """Predict every reflection of ``crystal`` out to ``max_res`` (m^-1)."""

    settings = settings or PredictionSettings()
    image = crystal.image
    if max_res is None:
        max_res = settings.max_resolution

    lam = image.wavelength
    kcen = 1.0 / lam
    # "low" gives the largest Ewald sphere, "high" the smallest.
    klow = 1.0 / (lam - lam * image.bandwidth / 2.0)
    khigh = 1.0 / (lam + lam * image.bandwidth / 2.0)

    hkl, pos, pnl, exerr, counts, truncated = _scan_lattice(
        crystal.cell.reciprocal,
        kcen, klow, khigh,
        float(image.divergence),
        float(max_res),
        float(settings.profile_cutoff),
        float(settings.front_cutoff),
        image.detector.as_array(),
        float(crystal.det_shift_x), float(crystal.det_shift_y),
        int(settings.max_candidates),
    )

    if truncated:
        logger.warning(
            "Prediction stopped at the candidate cap (%d reflections)",
            settings.max_candidates,
        )

    reflections = [
        Reflection(
            int(hkl[i, 0]), int(hkl[i, 1]), int(hkl[i, 2]),
            panel=int(pnl[i]),
            fs=float(pos[i, 0]),
            ss=float(pos[i, 1]),
            exerr=float(exerr[i]),
        )
        for i in range(hkl.shape[0])
    ]
    status_counts = {status: int(counts[status]) for status in PredictionStatus}
    return PredictionResult(reflections, status_counts, bool(truncated))


def excitation_errors(q: np.ndarray, k: float) -> np.ndarray:
    """Excitation errors of (N, 3) reciprocal-lattice points at wavenumber ``k``."""

    q = np.asarray(q, dtype=np.float64).reshape(-1, 3)
    kout = q.copy()
    kout[:, 2] += k
    return k - np.linalg.norm(kout, axis=1)


def update_predictions(crystal: Crystal, reflections: Optional[Sequence[Reflection]] = None) -> None:
    """Recompute excitation error and detector position in place.

    Each reflection is projected onto the panel it was assigned to; the
    position is not bounds-checked, so a reflection may drift off its
    panel during refinement.
    """

    if reflections is None:
        reflections = crystal.reflections
    if not reflections:
        return

    image = crystal.image
    k = image.k
    dx, dy = crystal.det_shift
    hkl = np.array([r.indices for r in reflections], dtype=np.float64)
    q = crystal.cell.q_vectors(hkl)
    exerr = excitation_errors(q, k)
    kout = q.copy()
    kout[:, 2] += k

    panels = np.array([r.panel for r in reflections], dtype=np.int64)
    fs = np.full(len(reflections), np.nan)
    ss = np.full(len(reflections), np.nan)
    for pn in np.unique(panels):
        if pn < 0:
            continue
        sel = panels == pn
        fs[sel], ss[sel], _ = project_to_panel(image.detector[int(pn)], kout[sel], dx, dy)

    for i, refl in enumerate(reflections):
        refl.exerr = float(exerr[i])
        refl.fs = float(fs[i])
        refl.ss = float(ss[i])
