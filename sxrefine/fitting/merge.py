"""Merged reference intensities shared by the scaling and post-refinement
stages."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from sxrefine.simulation.types import Crystal, PRFlag, Reflection

logger = logging.getLogger(__name__)

HKL = Tuple[int, int, int]


@dataclass(frozen=True)
class ReferenceEntry:
    intensity: float
    sigma: float
    redundancy: int


class ReferenceList(Mapping):
    """Read-only mapping of Miller indices to merged intensities."""

    def __init__(self, entries: Optional[Mapping] = None):
        self._entries: Dict[HKL, ReferenceEntry] = {}
        for hkl, entry in (entries or {}).items():
            if not isinstance(entry, ReferenceEntry):
                entry = ReferenceEntry(*entry)
            self._entries[tuple(int(i) for i in hkl)] = entry

    def __getitem__(self, hkl) -> ReferenceEntry:
        return self._entries[tuple(hkl)]

    def __iter__(self) -> Iterator[HKL]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def find(self, h: int, k: int, l: int) -> Optional[ReferenceEntry]:
        return self._entries.get((h, k, l))

    def __repr__(self) -> str:
        return f"ReferenceList({len(self)} reflections)"


def is_usable(
    refl: Reflection,
    match: Optional[ReferenceEntry],
    min_redundancy: int = 2,
    min_snr: float = 3.0,
) -> bool:
    """Whether a reflection can enter a log-space comparison with the reference.

    The reflection's free flag is not considered here.
    """

    if match is None:
        return False
    if refl.intensity <= min_snr * refl.sigma:
        return False
    if match.redundancy < min_redundancy:
        return False
    if match.intensity <= 0.0:
        return False
    return refl.partiality > 0.0


def usable_reflections(
    crystal: Crystal,
    reference: ReferenceList,
    free: bool = False,
    min_redundancy: int = 2,
    min_snr: float = 3.0,
) -> List[Tuple[Reflection, ReferenceEntry]]:
    """Reflections of ``crystal`` matched to the reference.

    With ``free=False`` only working (not free-flagged) reflections are
    returned, with ``free=True`` only the free ones.
    """

    out = []
    for refl in crystal.reflections:
        if refl.free != free:
            continue
        match = reference.find(*refl.indices)
        if is_usable(refl, match, min_redundancy, min_snr):
            out.append((refl, match))
    return out


def merge_intensities(crystals: Sequence[Crystal], min_redundancy: int = 1) -> ReferenceList:
    """Merge the partial intensities of all unflagged crystals.

    Each measurement is corrected for its crystal's scale factor, B factor,
    Lorentz factor and partiality, then averaged with the partiality as
    weight. Reflections measured fewer than ``min_redundancy`` times are
    left out.
    """

    sums: Dict[HKL, List[float]] = {}
    for crystal in crystals:
        if crystal.flag != PRFlag.OK:
            continue
        G = crystal.osf
        B = crystal.bfac
        for refl in crystal.reflections:
            p = refl.partiality
            if p <= 0.0 or not np.isfinite(refl.intensity):
                continue
            s = crystal.cell.resolution(*refl.indices)
            corr = G * refl.lorentz / p * np.exp(B * s * s)
            acc = sums.setdefault(refl.indices, [0.0, 0.0, 0.0, 0.0, 0])
            acc[0] += p
            acc[1] += p * refl.intensity * corr
            acc[2] += p * (refl.intensity * corr) ** 2
            acc[3] += (refl.sigma * corr) ** 2
            acc[4] += 1

    entries = {}
    for hkl, (wsum, wx, wxx, var, n) in sums.items():
        if n < min_redundancy:
            continue
        mean = wx / wsum
        if n > 1:
            spread = max(wxx / wsum - mean * mean, 0.0)
            sigma = np.sqrt(spread / n)
        else:
            sigma = np.sqrt(var)
        entries[hkl] = ReferenceEntry(float(mean), float(sigma), int(n))

    logger.debug("Merged %d reflections from %d crystals", len(entries), len(crystals))
    return ReferenceList(entries)
