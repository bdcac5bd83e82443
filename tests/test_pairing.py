import logging

import numpy as np
import pytest

from sxrefine.config.models import GeometrySettings
from sxrefine.fitting.pairing import (
    PairedReflection,
    check_outlier_transition,
    outlier_transition_index,
    pair_peaks,
    peak_lattice_agreement,
    peak_sanity_check,
)
from sxrefine.simulation.detector import transform_coords
from sxrefine.simulation.types import Peak, Reflection


@pytest.mark.parametrize("n", [0, 1, 2])
def test_outlier_transition_small_lists_unchanged(n: int) -> None:
    assert outlier_transition_index(np.linspace(1e5, 5e7, n), 1e6) == n


def test_outlier_transition_smooth_list_kept() -> None:
    errs = np.arange(20) * 2e5
    assert outlier_transition_index(errs, 1e6) == 20


def test_outlier_transition_cuts_at_jump() -> None:
    errs = np.concatenate([np.arange(10) * 1e5, [5e7, 6e7, 7e7]])
    assert outlier_transition_index(errs, 1e6) == 9


@pytest.mark.parametrize("seed", range(5))
def test_outlier_transition_never_exceeds_input(seed: int) -> None:
    rng = np.random.default_rng(seed)
    errs = np.sort(np.abs(rng.standard_cauchy(40)) * 1e6)
    assert 0 <= outlier_transition_index(errs, 1e6) <= 40


def test_check_outlier_transition_sorts_pairs(crystal) -> None:
    peak = Peak(0.0, 0.0, 1.0)
    panel = crystal.image.detector[0]
    exerrs = [3e5, -1e5, 2e5, 0.0, -4e5]
    pairs = [PairedReflection(Reflection(1, 0, i, exerr=e), peak, panel) for i, e in enumerate(exerrs)]

    assert check_outlier_transition(pairs) == 5
    assert [abs(rp.exerr) for rp in pairs] == sorted(abs(e) for e in exerrs)


def test_pair_peaks_accepts_exact_peaks(crystal) -> None:
    pairs = pair_peaks(crystal)
    assert len(pairs) == len(crystal.image.peaks)
    errs = [abs(rp.exerr) for rp in pairs]
    assert errs == sorted(errs)
    for rp in pairs:
        assert rp.refl.indices != (0, 0, 0)
        assert rp.refl.fs == pytest.approx(rp.peak.fs, abs=1e-6)
        assert rp.refl.ss == pytest.approx(rp.peak.ss, abs=1e-6)
        assert rp.refl.peak_fs == rp.peak.fs
    # Pairing leaves the crystal alone
    assert crystal.reflections == []


def test_pair_peaks_fills_caller_list_with_copies(crystal) -> None:
    out = []
    pairs = pair_peaks(crystal, out)
    assert len(out) == len(pairs)
    assert {r.indices for r in out} == {rp.refl.indices for rp in pairs}
    assert all(a is not rp.refl for a, rp in zip(out, pairs))


def test_duplicate_indices_keep_closer_peak(crystal) -> None:
    n_peaks = len(crystal.image.peaks)
    original = crystal.image.peaks[0]
    decoy = Peak(original.fs + 0.7, original.ss - 0.4, original.intensity, original.panel)
    crystal.image.peaks = (decoy,) + crystal.image.peaks

    pairs = pair_peaks(crystal)
    assert len(pairs) == n_peaks
    assert decoy not in [rp.peak for rp in pairs]
    assert original in [rp.peak for rp in pairs]


def _misplaced_peak(crystal, rp, lo, hi):
    """A copy of ``rp.peak`` moved so that it still indexes as ``rp.refl``
    but lies between ``lo`` and ``hi`` (m^-1) from the predicted position.

    Returns the new peak and its reciprocal-space distance.
    """
    image = crystal.image
    panel = rp.panel
    q_pred = transform_coords(panel, rp.refl.fs, rp.refl.ss, image.wavelength)
    for radius in np.arange(0.5, 40.0, 0.25):
        for angle in np.linspace(0.0, 2.0 * np.pi, 36, endpoint=False):
            fs = rp.peak.fs + radius * np.cos(angle)
            ss = rp.peak.ss + radius * np.sin(angle)
            if not (0.0 <= fs <= panel.w and 0.0 <= ss <= panel.h):
                continue
            q = transform_coords(panel, fs, ss, image.wavelength)
            if tuple(int(i) for i in np.rint(q @ crystal.cell.real.T)) != rp.refl.indices:
                continue
            dist = float(np.linalg.norm(q - q_pred))
            if lo < dist < hi:
                return Peak(fs, ss, rp.peak.intensity, rp.peak.panel), dist
    pytest.fail("no offset gives the requested distance")


def _replace_first_peak(crystal, lo_frac, hi_frac):
    limit = crystal.cell.lowest_reflection() / GeometrySettings().mismatch_divisor
    first = crystal.image.peaks[0]
    rp = next(rp for rp in pair_peaks(crystal) if rp.peak == first)
    moved, dist = _misplaced_peak(crystal, rp, lo_frac * limit, hi_frac * limit)
    crystal.image.peaks = (moved,) + crystal.image.peaks[1:]
    return rp.refl.indices, moved, dist


def test_gross_mismatch_is_dropped(crystal) -> None:
    peaks = crystal.image.peaks
    crystal.image.peaks = peaks[1:]
    without = {rp.refl.indices for rp in pair_peaks(crystal)}
    crystal.image.peaks = peaks

    hkl, moved, _ = _replace_first_peak(crystal, 1.1, 1.45)
    pairs = pair_peaks(crystal)
    assert {rp.refl.indices for rp in pairs} == without
    assert hkl not in without
    assert moved not in [rp.peak for rp in pairs]


def test_mismatch_just_under_limit_is_kept(crystal) -> None:
    everything = {rp.refl.indices for rp in pair_peaks(crystal)}
    hkl, moved, dist = _replace_first_peak(crystal, 0.9, 0.99)

    pairs = pair_peaks(crystal)
    assert {rp.refl.indices for rp in pairs} == everything
    assert next(rp.peak for rp in pairs if rp.refl.indices == hkl) == moved

    # The comparison is strict: a limit just below the distance drops the pair
    lowest = crystal.cell.lowest_reflection()
    above = GeometrySettings(mismatch_divisor=lowest / (dist * (1.0 + 1e-6)))
    below = GeometrySettings(mismatch_divisor=lowest / (dist * (1.0 - 1e-6)))
    assert hkl in {rp.refl.indices for rp in pair_peaks(crystal, settings=above)}
    assert hkl not in {rp.refl.indices for rp in pair_peaks(crystal, settings=below)}


def test_large_indices_are_skipped(crystal, caplog) -> None:
    settings = GeometrySettings(max_index=3)
    with caplog.at_level(logging.WARNING, logger="sxrefine.fitting.pairing"):
        pairs = pair_peaks(crystal, settings=settings)
    assert all(max(abs(i) for i in rp.refl.indices) < 3 for rp in pairs)
    assert "too large for pairing" in caplog.text


def test_no_peaks_gives_no_pairs(crystal) -> None:
    crystal.image.peaks = ()
    assert pair_peaks(crystal) == []
    assert peak_lattice_agreement(crystal) == (0.0, 0.0)


def test_peak_sanity_check(crystal) -> None:
    fraction, score = peak_lattice_agreement(crystal)
    assert fraction == pytest.approx(1.0)
    assert score == pytest.approx(len(crystal.image.peaks), rel=2e-2)
    assert peak_sanity_check(crystal)

    crystal.cell.reciprocal = crystal.cell.reciprocal * 1.37
    assert not peak_sanity_check(crystal)
