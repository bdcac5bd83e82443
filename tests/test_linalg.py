import numpy as np
import pytest

from sxrefine.fitting.linalg import accumulate_normal_equations, add_diagonal_damping, solve_svd


def test_accumulate_normal_equations() -> None:
    g = np.array([[1.0, 2.0], [0.0, 3.0]])
    r = np.array([0.5, -1.0])
    M, v = accumulate_normal_equations(g, r, weights=[2.0, 1.0])
    np.testing.assert_allclose(M, [[2.0, 4.0], [4.0, 17.0]])
    np.testing.assert_allclose(v, [-1.0, 1.0])

    M1, _ = accumulate_normal_equations(g, r)
    np.testing.assert_allclose(M1, g.T @ g)


def test_damping_returns_copy() -> None:
    M = np.eye(3)
    damped = add_diagonal_damping(M, [1.0, 2.0, 3.0])
    np.testing.assert_allclose(np.diag(damped), [2.0, 3.0, 4.0])
    np.testing.assert_array_equal(M, np.eye(3))


def test_solve_matches_direct_solution() -> None:
    rng = np.random.default_rng(0)
    A = rng.normal(size=(4, 4))
    M = A @ A.T + 4.0 * np.eye(4)
    v = rng.normal(size=4)
    np.testing.assert_allclose(solve_svd(v, M), np.linalg.solve(M, v))


def test_solve_handles_disparate_scales() -> None:
    M = np.array([[1e18, 1e3], [1e3, 1e-2]])
    x = np.array([2e-9, 3.0])
    np.testing.assert_allclose(solve_svd(M @ x, M), x, rtol=1e-8)


def test_rank_deficient_gives_minimum_norm_solution() -> None:
    M = np.array([[1.0, 1.0], [1.0, 1.0]])
    np.testing.assert_allclose(solve_svd(np.array([2.0, 2.0]), M), [1.0, 1.0])


@pytest.mark.parametrize(
    "M, v",
    [
        (np.zeros((2, 2)), np.zeros(2)),
        (np.array([[1.0, np.nan], [0.0, 1.0]]), np.ones(2)),
        (np.eye(2), np.array([np.inf, 0.0])),
    ],
)
def test_unsolvable_returns_none(M, v) -> None:
    assert solve_svd(v, M) is None


def test_shape_mismatch_raises() -> None:
    with pytest.raises(ValueError):
        solve_svd(np.ones(3), np.eye(2))
