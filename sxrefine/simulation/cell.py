"""Reciprocal-lattice bases and the geometric primitives built on them."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from math import cos, sin, sqrt

import numpy as np

# Every (h, k, l) with components in {-1, 0, 1} except the origin.
_UNIT_INDICES = np.array(
    [hkl for hkl in itertools.product((-1, 0, 1), repeat=3) if hkl != (0, 0, 0)],
    dtype=np.float64,
)


def rotation_xy(ang1: float, ang2: float) -> np.ndarray:
    """Return the matrix rotating by ``ang1`` about x, then ``ang2`` about y."""

    c1, s1 = cos(ang1), sin(ang1)
    c2, s2 = cos(ang2), sin(ang2)
    r_x = np.array([[1.0, 0.0, 0.0], [0.0, c1, s1], [0.0, -s1, c1]])
    r_y = np.array([[c2, 0.0, s2], [0.0, 1.0, 0.0], [-s2, 0.0, c2]])
    return r_y @ r_x


@dataclass
class UnitCell:
    """A crystal lattice stored as its reciprocal basis.

    ``reciprocal`` is a 3x3 array whose rows are a*, b* and c* in m^-1,
    expressed in the laboratory frame (beam along +z).
    """

    reciprocal: np.ndarray

    def __post_init__(self) -> None:
        arr = np.array(self.reciprocal, dtype=np.float64)
        if arr.shape != (3, 3):
            raise ValueError(f"reciprocal basis must be 3x3, got {arr.shape}")
        self.reciprocal = arr

    @classmethod
    def from_parameters(
        cls,
        a: float,
        b: float,
        c: float,
        alpha: float,
        beta: float,
        gamma: float,
    ) -> "UnitCell":
        """Build a cell from lengths (m) and angles (rad), with a along x."""

        ca, cb, cg = cos(alpha), cos(beta), cos(gamma)
        sg = sin(gamma)
        volume = sqrt(1.0 - ca**2 - cb**2 - cg**2 + 2.0 * ca * cb * cg)
        a_vec = np.array([a, 0.0, 0.0])
        b_vec = np.array([b * cg, b * sg, 0.0])
        c_vec = np.array([c * cb, c * (ca - cb * cg) / sg, c * volume / sg])
        return cls.from_real(np.vstack((a_vec, b_vec, c_vec)))

    @classmethod
    def from_real(cls, real: np.ndarray) -> "UnitCell":
        real = np.asarray(real, dtype=np.float64)
        return cls(np.linalg.inv(real).T)

    def copy(self) -> "UnitCell":
        return UnitCell(self.reciprocal.copy())

    @property
    def real(self) -> np.ndarray:
        """Real-space basis, rows a, b, c (m)."""
        return np.linalg.inv(self.reciprocal).T

    def parameters(self) -> tuple[float, float, float, float, float, float]:
        """Return ``(a, b, c, alpha, beta, gamma)`` in metres and radians."""

        a_vec, b_vec, c_vec = self.real
        a, b, c = (float(np.linalg.norm(v)) for v in (a_vec, b_vec, c_vec))
        alpha = float(np.arccos(np.dot(b_vec, c_vec) / (b * c)))
        beta = float(np.arccos(np.dot(a_vec, c_vec) / (a * c)))
        gamma = float(np.arccos(np.dot(a_vec, b_vec) / (a * b)))
        return a, b, c, alpha, beta, gamma

    def q_vectors(self, hkl: np.ndarray) -> np.ndarray:
        """Cartesian reciprocal-lattice points for an (N, 3) index array."""
        return np.asarray(hkl, dtype=np.float64).reshape(-1, 3) @ self.reciprocal

    def resolution(self, h: int, k: int, l: int) -> float:
        """Return 1/2d for one reflection."""
        q = h * self.reciprocal[0] + k * self.reciprocal[1] + l * self.reciprocal[2]
        return 0.5 * float(np.linalg.norm(q))

    def resolutions(self, hkl: np.ndarray) -> np.ndarray:
        return 0.5 * np.linalg.norm(self.q_vectors(hkl), axis=1)

    def lowest_reflection(self) -> float:
        """Smallest 1/d among the reflections with unit indices."""
        return float(np.min(np.linalg.norm(_UNIT_INDICES @ self.reciprocal, axis=1)))

    def rotated(self, matrix: np.ndarray) -> "UnitCell":
        """Return a copy with every basis vector rotated by ``matrix``."""
        return UnitCell(self.reciprocal @ np.asarray(matrix, dtype=np.float64).T)

    def rotated_xy(self, ang1: float, ang2: float) -> "UnitCell":
        return self.rotated(rotation_xy(ang1, ang2))


def random_rotation(rng: np.random.Generator) -> np.ndarray:
    """Uniformly distributed rotation matrix from a random unit quaternion."""

    q = rng.normal(size=4)
    w, x, y, z = q / np.linalg.norm(q)
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ]
    )
