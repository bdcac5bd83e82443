"""Partiality models for predicted reflections."""

from __future__ import annotations

from typing import Union

import numpy as np

from .types import Crystal, PartialityModel


def gaussian_partiality(exerr, radius: float) -> np.ndarray:
    """Fraction of the reflection profile excited at excitation error ``exerr``."""

    exerr = np.asarray(exerr, dtype=np.float64)
    if radius <= 0.0:
        return np.where(exerr == 0.0, 1.0, 0.0)
    return np.exp(-(exerr**2) / (2.0 * radius**2))


def calculate_partialities(
    crystal: Crystal,
    model: Union[PartialityModel, str] = PartialityModel.GAUSSIAN,
) -> None:
    """Set partiality and Lorentz factor of every reflection of ``crystal``."""

    model = PartialityModel(model)
    refls = crystal.reflections
    if not refls:
        return

    if model is PartialityModel.UNITY:
        values = np.ones(len(refls))
    else:
        exerr = np.array([r.exerr for r in refls])
        values = gaussian_partiality(exerr, crystal.profile_radius)

    for refl, p in zip(refls, values):
        refl.partiality = float(p)
        refl.lorentz = 1.0
