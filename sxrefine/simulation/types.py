"""Typed models for images, peaks, reflections and crystals."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Iterator

import numpy as np

from .cell import UnitCell


@dataclass(frozen=True)
class Panel:
    """One flat detector module.

    The laboratory position of pixel ``(fs, ss)`` is
    ``(cn + fs * fsv + ss * ssv) * pixel_pitch``, with ``cn`` the corner
    offset in pixels.
    """

    name: str
    cnx: float
    cny: float
    cnz: float
    fsx: float = 1.0
    fsy: float = 0.0
    fsz: float = 0.0
    ssx: float = 0.0
    ssy: float = 1.0
    ssz: float = 0.0
    pixel_pitch: float = 75e-6
    w: int = 1024
    h: int = 1024

    def as_row(self) -> list[float]:
        return [
            self.cnx, self.cny, self.cnz,
            self.fsx, self.fsy, self.fsz,
            self.ssx, self.ssy, self.ssz,
            self.pixel_pitch, float(self.w), float(self.h),
        ]


@dataclass(frozen=True)
class Detector:
    panels: tuple[Panel, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "panels", tuple(self.panels))
        if not self.panels:
            raise ValueError("a detector needs at least one panel")

    def __len__(self) -> int:
        return len(self.panels)

    def __iter__(self) -> Iterator[Panel]:
        return iter(self.panels)

    def __getitem__(self, index: int) -> Panel:
        return self.panels[index]

    def as_array(self) -> np.ndarray:
        """Panel geometry packed as an (n_panels, 12) float array."""
        return np.array([p.as_row() for p in self.panels], dtype=np.float64)


@dataclass(frozen=True)
class Peak:
    fs: float
    ss: float
    intensity: float
    panel: int = 0


@dataclass
class DiffractionImage:
    wavelength: float
    bandwidth: float
    divergence: float
    detector: Detector
    peaks: tuple[Peak, ...] = ()
    filename: str = ""

    def __post_init__(self) -> None:
        self.peaks = tuple(self.peaks)

    @property
    def k(self) -> float:
        return 1.0 / self.wavelength


@dataclass
class Reflection:
    h: int
    k: int
    l: int
    panel: int = -1
    fs: float = float("nan")
    ss: float = float("nan")
    exerr: float = 0.0
    intensity: float = 0.0
    sigma: float = 0.0
    partiality: float = 1.0
    lorentz: float = 1.0
    redundancy: int = 1
    free: bool = False
    peak_fs: float = float("nan")
    peak_ss: float = float("nan")

    @property
    def indices(self) -> tuple[int, int, int]:
        return (self.h, self.k, self.l)

    def copy(self) -> "Reflection":
        return copy.copy(self)


class PRFlag(IntEnum):
    OK = 0
    FEWREFL = 1
    SOLVEFAIL = 2
    EARLY = 3
    CC = 4
    BIGB = 5


_PRFLAG_TEXT = {
    PRFlag.OK: "OK",
    PRFlag.FEWREFL: "not enough reflections",
    PRFlag.SOLVEFAIL: "PR solve failed",
    PRFlag.EARLY: "early rejection",
    PRFlag.CC: "low CC",
    PRFlag.BIGB: "B too big",
}


def str_prflag(flag: PRFlag) -> str:
    return _PRFLAG_TEXT.get(flag, "Unknown flag")


class PredictionStatus(IntEnum):
    """Outcome of testing one lattice point during prediction."""

    ACCEPTED = 0
    IN_FRONT = 1
    BEYOND_RESOLUTION = 2
    NOT_EXCITED = 3
    NO_PANEL = 4
    AMBIGUOUS_PANEL = 5


@dataclass
class Crystal:
    cell: UnitCell
    image: DiffractionImage
    profile_radius: float = 0.005e9
    mosaicity: float = 0.0
    osf: float = 1.0
    bfac: float = 0.0
    det_shift_x: float = 0.0
    det_shift_y: float = 0.0
    reflections: list[Reflection] = field(default_factory=list)
    flag: PRFlag = PRFlag.OK
    notes: list[str] = field(default_factory=list)

    @property
    def det_shift(self) -> tuple[float, float]:
        return self.det_shift_x, self.det_shift_y

    def set_det_shift(self, dx: float, dy: float) -> None:
        self.det_shift_x = float(dx)
        self.det_shift_y = float(dy)

    def add_note(self, note: str) -> None:
        self.notes.append(note)

    @property
    def flag_reason(self) -> str:
        return str_prflag(self.flag)

    def copy(self) -> "Crystal":
        """Copy with an independent cell and reflection list; shares the image."""
        return Crystal(
            cell=self.cell.copy(),
            image=self.image,
            profile_radius=self.profile_radius,
            mosaicity=self.mosaicity,
            osf=self.osf,
            bfac=self.bfac,
            det_shift_x=self.det_shift_x,
            det_shift_y=self.det_shift_y,
            reflections=[r.copy() for r in self.reflections],
            flag=self.flag,
            notes=list(self.notes),
        )


class PartialityModel(str, Enum):
    UNITY = "unity"
    GAUSSIAN = "gaussian"
