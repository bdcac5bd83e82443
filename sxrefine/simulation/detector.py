"""Mapping between panel pixel coordinates, the laboratory frame and
reciprocal space.

The beam travels along +z and the crystal sits at the origin. A detector
shift ``(dx, dy)`` translates every panel within the laboratory x/y plane.
"""

from __future__ import annotations

import numpy as np
from numba import njit

from .types import Panel

# Column layout of ``Detector.as_array()``.
CNX, CNY, CNZ, FSX, FSY, FSZ, SSX, SSY, SSZ, PITCH, WIDTH, HEIGHT = range(12)


@njit
def intersect_panel(panels, p, ox, oy, oz, dx, dy):
    """
    Intersect the ray ``t * (ox, oy, oz)`` (t > 0) with the plane of panel
    ``p``. Returns ``(fs, ss, valid)``; the pixel coordinates are not
    bounds-checked.
    """
    pitch = panels[p, PITCH]
    fx = panels[p, FSX] * pitch
    fy = panels[p, FSY] * pitch
    fz = panels[p, FSZ] * pitch
    sx = panels[p, SSX] * pitch
    sy = panels[p, SSY] * pitch
    sz = panels[p, SSZ] * pitch
    cx = panels[p, CNX] * pitch + dx
    cy = panels[p, CNY] * pitch + dy
    cz = panels[p, CNZ] * pitch

    # Panel normal n = f x s
    nx = fy * sz - fz * sy
    ny = fz * sx - fx * sz
    nz = fx * sy - fy * sx
    denom = ox * nx + oy * ny + oz * nz
    if abs(denom) < 1e-300:
        return np.nan, np.nan, False
    t = (cx * nx + cy * ny + cz * nz) / denom
    if t <= 0.0:
        return np.nan, np.nan, False

    # c x s and f x c
    csx = cy * sz - cz * sy
    csy = cz * sx - cx * sz
    csz = cx * sy - cy * sx
    fcx = fy * cz - fz * cy
    fcy = fz * cx - fx * cz
    fcz = fx * cy - fy * cx
    fs = -(ox * csx + oy * csy + oz * csz) / denom
    ss = -(ox * fcx + oy * fcy + oz * fcz) / denom
    return fs, ss, True


@njit
def on_panel(panels, p, fs, ss):
    if fs < 0.0 or fs > panels[p, WIDTH]:
        return False
    return ss >= 0.0 and ss <= panels[p, HEIGHT]


def panel_position(panel: Panel, fs, ss, dx: float = 0.0, dy: float = 0.0) -> np.ndarray:
    """Laboratory coordinates (m) of pixel position(s) ``(fs, ss)``."""

    fs = np.asarray(fs, dtype=np.float64)
    ss = np.asarray(ss, dtype=np.float64)
    p = panel.pixel_pitch
    x = (fs * panel.fsx + ss * panel.ssx + panel.cnx) * p + dx
    y = (fs * panel.fsy + ss * panel.ssy + panel.cny) * p + dy
    z = (fs * panel.fsz + ss * panel.ssz + panel.cnz) * p
    return np.stack(np.broadcast_arrays(x, y, z), axis=-1)


def twod_mapping(panel: Panel, fs, ss, dx: float = 0.0, dy: float = 0.0):
    """In-plane laboratory x/y (m) of pixel position(s), including the shift."""

    pos = panel_position(panel, fs, ss, dx, dy)
    return pos[..., 0], pos[..., 1]


def transform_coords(panel: Panel, fs, ss, wavelength: float, dx: float = 0.0, dy: float = 0.0) -> np.ndarray:
    """Reciprocal-space vector(s) of the scattering seen at ``(fs, ss)``."""

    pos = panel_position(panel, fs, ss, dx, dy)
    k = 1.0 / wavelength
    norm = np.linalg.norm(pos, axis=-1, keepdims=True)
    q = pos / norm * k
    q[..., 2] -= k
    return q


def project_to_panel(panel: Panel, kout: np.ndarray, dx: float = 0.0, dy: float = 0.0):
    """Vectorised ray/panel intersection for an (N, 3) array of directions.

    Returns ``(fs, ss, valid)`` arrays; invalid rows hold NaN.
    """

    kout = np.asarray(kout, dtype=np.float64).reshape(-1, 3)
    p = panel.pixel_pitch
    f = np.array([panel.fsx, panel.fsy, panel.fsz]) * p
    s = np.array([panel.ssx, panel.ssy, panel.ssz]) * p
    c = np.array([panel.cnx * p + dx, panel.cny * p + dy, panel.cnz * p])
    normal = np.cross(f, s)
    denom = kout @ normal
    with np.errstate(divide="ignore", invalid="ignore"):
        t = np.dot(c, normal) / denom
        fs = -(kout @ np.cross(c, s)) / denom
        ss = -(kout @ np.cross(f, c)) / denom
    valid = np.isfinite(t) & (t > 0.0)
    fs = np.where(valid, fs, np.nan)
    ss = np.where(valid, ss, np.nan)
    return fs, ss, valid
