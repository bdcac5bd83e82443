import numpy as np
import pytest

from sxrefine.fitting.merge import (
    ReferenceEntry,
    ReferenceList,
    is_usable,
    merge_intensities,
    usable_reflections,
)
from sxrefine.simulation.types import PRFlag, Reflection
from sxrefine.utils.synthetic import make_scaling_dataset

OSFS = (1.0, 1.5)
BFACS = (0.0, 4e-20)


@pytest.fixture
def dataset():
    return make_scaling_dataset(OSFS, BFACS)


def test_reference_list_accepts_tuples() -> None:
    ref = ReferenceList({(1, 2, 3): (100.0, 5.0, 2), (0, 0, 1): ReferenceEntry(7.0, 1.0, 1)})
    assert len(ref) == 2
    assert ref.find(1, 2, 3) == ReferenceEntry(100.0, 5.0, 2)
    assert ref[(0, 0, 1)].intensity == 7.0
    assert ref.find(3, 2, 1) is None
    assert set(ref) == {(1, 2, 3), (0, 0, 1)}


@pytest.mark.parametrize(
    "refl, match, expected",
    [
        (Reflection(1, 0, 0, intensity=100.0, sigma=10.0), ReferenceEntry(50.0, 1.0, 2), True),
        (Reflection(1, 0, 0, intensity=100.0, sigma=10.0), None, False),
        (Reflection(1, 0, 0, intensity=30.0, sigma=10.0), ReferenceEntry(50.0, 1.0, 2), False),
        (Reflection(1, 0, 0, intensity=100.0, sigma=10.0), ReferenceEntry(50.0, 1.0, 1), False),
        (Reflection(1, 0, 0, intensity=100.0, sigma=10.0), ReferenceEntry(-5.0, 1.0, 3), False),
        (Reflection(1, 0, 0, intensity=100.0, sigma=10.0, partiality=0.0),
         ReferenceEntry(50.0, 1.0, 2), False),
    ],
)
def test_is_usable(refl, match, expected) -> None:
    assert is_usable(refl, match) is expected


def test_usable_reflections_split_by_free_flag() -> None:
    crystals, reference = make_scaling_dataset(OSFS, BFACS, free_fraction=0.3)
    crystal = crystals[0]
    work = usable_reflections(crystal, reference)
    free = usable_reflections(crystal, reference, free=True)
    assert work and free
    assert all(not refl.free for refl, _ in work)
    assert all(refl.free for refl, _ in free)
    assert len(work) + len(free) == len(crystal.reflections)


def test_merge_at_true_parameters_recovers_reference(dataset) -> None:
    crystals, truth = dataset
    for crystal, G, B in zip(crystals, OSFS, BFACS):
        crystal.osf = G
        crystal.bfac = B

    merged = merge_intensities(crystals)
    assert set(merged) == set(truth)
    for hkl, entry in merged.items():
        assert entry.intensity == pytest.approx(truth[hkl].intensity, rel=1e-9)
        assert entry.redundancy == truth[hkl].redundancy
        assert entry.sigma <= 1e-3 * entry.intensity


def test_merge_skips_flagged_crystals(dataset) -> None:
    crystals, _ = dataset
    crystals[1].flag = PRFlag.FEWREFL
    merged = merge_intensities(crystals)
    assert len(merged) == len({r.indices for r in crystals[0].reflections})
    assert all(entry.redundancy == 1 for entry in merged.values())
    # A single measurement carries its own propagated sigma
    refl = crystals[0].reflections[0]
    assert merged[refl.indices].sigma == pytest.approx(refl.sigma / refl.partiality)


def test_merge_minimum_redundancy(dataset) -> None:
    crystals, _ = dataset
    assert len(merge_intensities(crystals, min_redundancy=3)) == 0
    assert len(merge_intensities(crystals, min_redundancy=2)) > 0


def test_merge_ignores_zero_partiality(dataset) -> None:
    crystals, _ = dataset
    for crystal in crystals:
        for refl in crystal.reflections:
            refl.partiality = 0.0
    assert len(merge_intensities(crystals)) == 0


def test_merge_weights_by_partiality() -> None:
    from sxrefine.utils.synthetic import make_crystal

    crystal = make_crystal(np.random.default_rng(5), with_peaks=False)
    crystal.reflections = [
        Reflection(1, 2, 3, intensity=10.0, partiality=0.25, sigma=1.0),
        Reflection(1, 2, 3, intensity=30.0, partiality=0.75, sigma=1.0),
    ]
    merged = merge_intensities([crystal])
    # Corrected values are 40 each
    assert merged.find(1, 2, 3).intensity == pytest.approx(40.0)
    assert merged.find(1, 2, 3).redundancy == 2
