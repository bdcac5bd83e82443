"""Deterministic synthetic data sets for demonstrations and tests.

Peaks are placed exactly where the true lattice predicts them, and partial
intensities follow the scaling model exactly, so that every refinement
stage has a known answer.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from sxrefine.config.models import PredictionSettings
from sxrefine.fitting.merge import ReferenceEntry, ReferenceList
from sxrefine.simulation.cell import UnitCell, random_rotation
from sxrefine.simulation.partiality import calculate_partialities
from sxrefine.simulation.prediction import predict_to_res
from sxrefine.simulation.types import (
    Crystal,
    Detector,
    DiffractionImage,
    Panel,
    PartialityModel,
    Peak,
)

DEFAULT_WAVELENGTH = 1.3e-10
DEFAULT_DISTANCE = 0.1
DEFAULT_CELL = (60.5e-10, 70.3e-10, 80.7e-10)

# A large cell seen on a close detector puts many lattice points within a
# narrow shell around the Ewald sphere.
ON_SPHERE_CELL = (200.5e-10, 230.3e-10, 260.7e-10)
ON_SPHERE_DISTANCE = 0.03
ON_SPHERE_MAX_EXERR = 3e4  # m^-1

HKL = Tuple[int, int, int]


def make_detector(
    distance: float = DEFAULT_DISTANCE,
    n_pixels: int = 1024,
    pixel_pitch: float = 75e-6,
    split: bool = False,
) -> Detector:
    """Flat detector perpendicular to the beam and centred on it.

    With ``split=True`` the area is divided into a left and a right panel.
    """

    cnz = distance / pixel_pitch
    half = n_pixels / 2.0
    if not split:
        return Detector((Panel("p0", -half, -half, cnz, pixel_pitch=pixel_pitch,
                               w=n_pixels, h=n_pixels),))
    w = n_pixels // 2
    return Detector((
        Panel("left", -half, -half, cnz, pixel_pitch=pixel_pitch, w=w, h=n_pixels),
        Panel("right", 0.0, -half, cnz, pixel_pitch=pixel_pitch, w=w, h=n_pixels),
    ))


def make_cell(
    lengths: Sequence[float] = DEFAULT_CELL,
    rotation: Optional[np.ndarray] = None,
) -> UnitCell:
    """Orthorhombic cell with the given axis lengths (m), optionally rotated."""

    a, b, c = lengths
    cell = UnitCell.from_parameters(a, b, c, np.pi / 2, np.pi / 2, np.pi / 2)
    if rotation is not None:
        cell = cell.rotated(rotation)
    return cell


def make_image(
    detector: Optional[Detector] = None,
    wavelength: float = DEFAULT_WAVELENGTH,
    bandwidth: float = 1e-3,
    divergence: float = 0.0,
    filename: str = "synthetic",
) -> DiffractionImage:
    return DiffractionImage(
        wavelength=wavelength,
        bandwidth=bandwidth,
        divergence=divergence,
        detector=detector or make_detector(),
        filename=filename,
    )


def simulate_peaks(
    crystal: Crystal,
    rng: np.random.Generator,
    settings: Optional[PredictionSettings] = None,
    max_peaks: Optional[int] = None,
    max_exerr: Optional[float] = None,
) -> List[Peak]:
    """Predict the crystal's reflections and attach a peak at each position.

    With ``max_exerr`` only reflections whose excitation error is at most
    that large (m^-1) get a peak, so that the peaks agree with the lattice
    in excitation error as well as in position. The peaks are stored on the
    crystal's image and returned.
    """

    result = predict_to_res(crystal, settings=settings)
    refls = result.reflections
    if max_exerr is not None:
        refls = [refl for refl in refls if abs(refl.exerr) <= max_exerr]
    if max_peaks is not None and len(refls) > max_peaks:
        keep = np.sort(rng.choice(len(refls), size=max_peaks, replace=False))
        refls = [refls[i] for i in keep]
    intensities = rng.uniform(100.0, 10000.0, size=len(refls))
    peaks = [
        Peak(refl.fs, refl.ss, float(i), refl.panel)
        for refl, i in zip(refls, intensities)
    ]
    crystal.image.peaks = tuple(peaks)
    return peaks


def make_crystal(
    rng: Optional[np.random.Generator] = None,
    rotation: Optional[np.ndarray] = None,
    lengths: Sequence[float] = DEFAULT_CELL,
    image: Optional[DiffractionImage] = None,
    with_peaks: bool = True,
    max_exerr: Optional[float] = None,
) -> Crystal:
    """A crystal in a random (or given) orientation, with exact peaks."""

    rng = rng or np.random.default_rng(0)
    if rotation is None:
        rotation = random_rotation(rng)
    crystal = Crystal(cell=make_cell(lengths, rotation), image=image or make_image())
    if with_peaks:
        simulate_peaks(crystal, rng, max_exerr=max_exerr)
    return crystal


def make_on_sphere_crystal(
    rng: Optional[np.random.Generator] = None,
    max_exerr: float = ON_SPHERE_MAX_EXERR,
) -> Crystal:
    """A crystal whose peaks all come from lattice points lying within
    ``max_exerr`` of the Ewald sphere.

    The geometry residual of such a crystal is close to zero at its true
    cell, so refinement started there has nothing to correct.
    """

    image = make_image(make_detector(distance=ON_SPHERE_DISTANCE))
    return make_crystal(rng, lengths=ON_SPHERE_CELL, image=image, max_exerr=max_exerr)


def true_intensities(hkls, rng: np.random.Generator) -> Dict[HKL, float]:
    """Random positive full intensities, one per distinct Miller index."""

    unique = sorted({tuple(int(i) for i in hkl) for hkl in hkls})
    values = rng.uniform(1000.0, 50000.0, size=len(unique))
    return dict(zip(unique, (float(v) for v in values)))


def attach_partials(
    crystal: Crystal,
    full: Dict[HKL, float],
    osf: float,
    bfac: float,
    model: PartialityModel = PartialityModel.GAUSSIAN,
    snr: float = 50.0,
) -> None:
    """Fill in partial intensities following the scaling model exactly.

    ``I = I_full * p * exp(-B s^2) / (G * L)``; sigma is ``I / snr``. The
    crystal itself keeps its own (unrefined) scale parameters.
    """

    calculate_partialities(crystal, model)
    for refl in crystal.reflections:
        s = crystal.cell.resolution(*refl.indices)
        I = full[refl.indices] * refl.partiality * np.exp(-bfac * s * s) / (osf * refl.lorentz)
        refl.intensity = float(I)
        refl.sigma = float(I / snr)
        refl.peak_fs = refl.fs
        refl.peak_ss = refl.ss


def make_scaling_dataset(
    osfs: Sequence[float],
    bfacs: Sequence[float],
    seed: int = 7,
    same_orientation: bool = True,
    model: PartialityModel = PartialityModel.GAUSSIAN,
    free_fraction: float = 0.0,
) -> Tuple[List[Crystal], ReferenceList]:
    """Crystals with known scale factors and B factors.

    Returns the crystals, reset to ``G = 1`` and ``B = 0``, and the true
    reference (with the redundancy of each reflection across the set).
    """

    if len(osfs) != len(bfacs):
        raise ValueError("osfs and bfacs must have the same length")
    rng = np.random.default_rng(seed)
    shared = random_rotation(rng)
    crystals = []
    for _ in osfs:
        rotation = shared if same_orientation else random_rotation(rng)
        crystal = make_crystal(rng, rotation=rotation, with_peaks=False)
        crystal.reflections = predict_to_res(crystal).reflections
        crystals.append(crystal)

    full = true_intensities(
        [refl.indices for cr in crystals for refl in cr.reflections], rng
    )
    counts: Dict[HKL, int] = {}
    for crystal, G, B in zip(crystals, osfs, bfacs):
        attach_partials(crystal, full, G, B, model)
        for refl in crystal.reflections:
            refl.free = bool(rng.random() < free_fraction)
            counts[refl.indices] = counts.get(refl.indices, 0) + 1

    reference = ReferenceList({
        hkl: ReferenceEntry(value, value / 100.0, counts[hkl]) for hkl, value in full.items()
    })
    return crystals, reference
