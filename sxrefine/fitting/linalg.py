"""Normal-equation assembly and the regularised SVD solve shared by the
geometry refiner and the scaling engine."""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from scipy import linalg

logger = logging.getLogger(__name__)

# Singular values smaller than this fraction of the largest are discarded.
SVD_RCOND = 1e-6


def accumulate_normal_equations(gradients, residuals, weights=None):
    """Return ``(M, v)`` for one block of residual terms.

    ``gradients`` is ``(n_terms, n_params)``. Each term contributes
    ``w g g^T`` to ``M`` and ``-w r g`` to ``v``.
    """

    g = np.asarray(gradients, dtype=np.float64)
    r = np.asarray(residuals, dtype=np.float64)
    if weights is None:
        w = np.ones_like(r)
    else:
        w = np.broadcast_to(np.asarray(weights, dtype=np.float64), r.shape)
    wg = g * w[:, None]
    M = g.T @ wg
    v = -(wg.T @ r)
    return M, v


def add_diagonal_damping(M: np.ndarray, damping) -> np.ndarray:
    """Return a copy of ``M`` with ``damping`` added to the diagonal."""

    out = np.array(M, dtype=np.float64, copy=True)
    out[np.diag_indices_from(out)] += np.asarray(damping, dtype=np.float64)
    return out


def solve_svd(v: np.ndarray, M: np.ndarray, rcond: float = SVD_RCOND) -> Optional[np.ndarray]:
    """Solve ``M x = v`` by singular value decomposition.

    The system is scaled by the inverse square root of the diagonal of
    ``M`` before decomposition so that parameters of very different
    magnitude (reciprocal lengths and metres) are treated evenly. Returns
    ``None`` when no usable solution exists. Non-finite components of the
    solution are set to zero.
    """

    M = np.asarray(M, dtype=np.float64)
    v = np.asarray(v, dtype=np.float64)
    if M.ndim != 2 or M.shape[0] != M.shape[1] or v.shape != (M.shape[0],):
        raise ValueError(f"incompatible shapes {M.shape} and {v.shape}")
    if not (np.all(np.isfinite(M)) and np.all(np.isfinite(v))):
        logger.debug("Normal equations contain non-finite entries")
        return None

    diag = np.diag(M).copy()
    scale = np.ones_like(diag)
    positive = diag > 0.0
    scale[positive] = 1.0 / np.sqrt(diag[positive])
    Ms = M * scale[:, None] * scale[None, :]
    vs = v * scale

    try:
        u, s, vt = linalg.svd(Ms)
    except (linalg.LinAlgError, ValueError) as exc:
        logger.debug("SVD failed: %s", exc)
        return None
    if s.size == 0 or not np.isfinite(s[0]) or s[0] <= 0.0:
        return None

    keep = s > rcond * s[0]
    s_inv = np.zeros_like(s)
    s_inv[keep] = 1.0 / s[keep]
    shifts = scale * (vt.T @ (s_inv * (u.T @ vs)))

    bad = ~np.isfinite(shifts)
    if np.any(bad):
        logger.debug("Clamping %d non-finite shift component(s) to zero", int(bad.sum()))
        shifts[bad] = 0.0
    return shifts
