import math

import numpy as np
import pytest

from sxrefine.config.models import ScalingSettings
from sxrefine.errors import GlobalNonConvergence, HarnessError
from sxrefine.fitting.harness import (
    MacrocycleContext,
    MacrocycleSummary,
    TaskResult,
    effective_threads,
    post_refine_all,
    refine_geometry_all,
    run_macrocycle,
    scale_all,
)
from sxrefine.simulation.types import PRFlag
from sxrefine.utils.synthetic import make_crystal, make_scaling_dataset

OSFS = (1.0, 1.2, 0.8)
BFACS = (0.0, 5e-20, -3e-20)


def _ok_task(index, crystal, ctx):
    return TaskResult(index, True, residual=float(index), n_reflections=10)


@pytest.mark.parametrize("n_threads, n_crystals, expected", [(1, 5, 1), (2, 5, 2), (8, 3, 3)])
def test_effective_threads(n_threads, n_crystals, expected) -> None:
    assert effective_threads(n_threads, n_crystals) == expected


@pytest.mark.parametrize("n_threads", [0, -2])
def test_effective_threads_rejects_non_positive(n_threads) -> None:
    with pytest.raises(HarnessError):
        effective_threads(n_threads, 4)


def test_no_crystals_is_an_error() -> None:
    with pytest.raises(ValueError):
        run_macrocycle([], _ok_task)
    with pytest.raises(HarnessError):
        scale_all([])


def test_at_least_one_macrocycle_required() -> None:
    crystals, _ = make_scaling_dataset(OSFS, BFACS)
    with pytest.raises(HarnessError):
        scale_all(crystals, settings=ScalingSettings(max_macrocycles=0))


def test_run_macrocycle_aggregates() -> None:
    crystals = [make_crystal(np.random.default_rng(i), with_peaks=False) for i in range(4)]
    summary = run_macrocycle(crystals, _ok_task, n_threads=3, label="Counting")
    assert summary.label == "Counting"
    assert (summary.n_crystals, summary.n_done, summary.n_failed) == (4, 4, 0)
    assert summary.n_reflections == 40
    assert summary.residual == 6.0
    assert summary.mean_b == 0.0


def test_residual_independent_of_completion_order() -> None:
    crystals = [make_crystal(np.random.default_rng(i), with_peaks=False) for i in range(3)]
    values = [1e16, 1.0, -1e16]
    a = MacrocycleContext(crystals)
    b = MacrocycleContext(crystals)
    for i in (0, 1, 2):
        a.record(TaskResult(i, True, values[i]))
    for i in (2, 0, 1):
        b.record(TaskResult(i, True, values[i]))
    assert a.residual == b.residual == 1.0


def test_failing_task_is_isolated() -> None:
    crystals = [make_crystal(np.random.default_rng(i), with_peaks=False) for i in range(3)]

    def task(index, crystal, ctx):
        if index == 1:
            raise RuntimeError("boom")
        return _ok_task(index, crystal, ctx)

    summary = run_macrocycle(crystals, task, n_threads=2, label="Trial")
    assert summary.n_done == 3
    assert summary.n_failed == 1
    assert summary.residual == 2.0
    assert crystals[1].flag == PRFlag.SOLVEFAIL
    assert crystals[1].notes == ["Trial/error = boom"]
    assert crystals[0].flag == PRFlag.OK


def test_raise_for_convergence() -> None:
    summary = MacrocycleSummary("Scaling", 3, 3, 0, 100, 1.0, 0.0, converged=False, n_macrocycles=10)
    with pytest.raises(GlobalNonConvergence, match="10 macrocycles"):
        summary.raise_for_convergence()
    summary.converged = True
    summary.raise_for_convergence()


def test_scaling_against_true_reference() -> None:
    crystals, truth = make_scaling_dataset(OSFS, BFACS)
    summary = scale_all(crystals, n_threads=2, merge=lambda crs: truth)

    assert summary.converged
    assert summary.n_macrocycles == 2
    assert summary.n_failed == 0
    assert summary.residual == pytest.approx(0.0, abs=1e-10)
    assert summary.residual_before > summary.residual
    for crystal, G, B in zip(crystals, OSFS, BFACS):
        assert crystal.osf == pytest.approx(G, rel=1e-6)
        assert crystal.bfac == pytest.approx(B, abs=1e-24)


def test_self_merged_scaling_recovers_relative_parameters() -> None:
    crystals, _ = make_scaling_dataset(OSFS, BFACS)
    summary = scale_all(crystals, n_threads=3)

    assert summary.n_failed == 0
    assert 1 <= summary.n_macrocycles <= 10
    assert summary.residual < summary.residual_before
    # A self-merged reference fixes G and B only up to a common gauge
    for crystal, G, B in zip(crystals[1:], OSFS[1:], BFACS[1:]):
        assert crystal.osf / crystals[0].osf == pytest.approx(G / OSFS[0], rel=0.01)
        assert crystal.bfac - crystals[0].bfac == pytest.approx(B - BFACS[0], abs=1e-21)
    assert summary.mean_b == pytest.approx(np.mean([cr.bfac for cr in crystals]))


def test_thread_count_does_not_change_results() -> None:
    crystals, _ = make_scaling_dataset(OSFS, BFACS)
    serial = [cr.copy() for cr in crystals]
    pooled = [cr.copy() for cr in crystals]

    s1 = scale_all(serial, n_threads=1)
    s8 = scale_all(pooled, n_threads=8)

    assert [cr.osf for cr in serial] == [cr.osf for cr in pooled]
    assert [cr.bfac for cr in serial] == [cr.bfac for cr in pooled]
    assert s1.residual == s8.residual
    assert s1.n_macrocycles == s8.n_macrocycles


def test_refine_geometry_all_flags_failures() -> None:
    rng = np.random.default_rng(21)
    crystals = [make_crystal(rng) for _ in range(3)]
    for crystal in crystals:
        crystal.cell.reciprocal = crystal.cell.reciprocal * 1.0005
    crystals[2].image.peaks = ()

    summary = refine_geometry_all(crystals, n_threads=2)

    assert summary.n_done == 3
    assert summary.n_failed == 1
    assert crystals[2].flag == PRFlag.EARLY
    assert crystals[2].notes == ["predict_refine/failed = insufficient pairs"]
    for crystal in crystals[:2]:
        assert crystal.flag == PRFlag.OK
        assert crystal.reflections
        assert math.isfinite(crystal.profile_radius)
        assert crystal.profile_radius > 0.0
    assert math.isfinite(summary.residual)


def test_post_refine_all() -> None:
    crystals, reference = make_scaling_dataset(OSFS, BFACS, seed=5)
    for crystal, G, B in zip(crystals, OSFS, BFACS):
        crystal.osf = G
        crystal.bfac = B
    crystals[2].reflections = []

    summary = post_refine_all(crystals, reference, n_threads=2)

    assert summary.n_done == 3
    assert summary.n_failed == 1
    assert crystals[2].flag == PRFlag.FEWREFL
    assert math.isfinite(summary.residual_before)
    assert math.isfinite(summary.residual)
