import numpy as np
import pytest

from sxrefine.simulation.detector import (
    intersect_panel,
    on_panel,
    panel_position,
    project_to_panel,
    transform_coords,
    twod_mapping,
)
from sxrefine.utils.synthetic import make_detector


@pytest.fixture
def detector():
    return make_detector()


def test_panel_position_centre(detector) -> None:
    panel = detector[0]
    pos = panel_position(panel, panel.w / 2, panel.h / 2)
    np.testing.assert_allclose(pos, [0.0, 0.0, 0.1], atol=1e-12)


def test_twod_mapping_includes_shift(detector) -> None:
    panel = detector[0]
    x0, y0 = twod_mapping(panel, 100.0, 200.0)
    x1, y1 = twod_mapping(panel, 100.0, 200.0, 1e-4, -2e-4)
    assert x1 - x0 == pytest.approx(1e-4)
    assert y1 - y0 == pytest.approx(-2e-4)


def test_transform_coords_lies_on_ewald_sphere(detector) -> None:
    lam = 1.3e-10
    q = transform_coords(detector[0], np.array([10.0, 500.0]), np.array([900.0, 20.0]), lam)
    k = 1.0 / lam
    kout = q + np.array([0.0, 0.0, k])
    np.testing.assert_allclose(np.linalg.norm(kout, axis=1), k, rtol=1e-12)


def test_projection_inverts_transform(detector) -> None:
    panel = detector[0]
    lam = 1.3e-10
    fs = np.array([12.5, 300.0, 1000.0])
    ss = np.array([700.0, 3.25, 512.0])
    q = transform_coords(panel, fs, ss, lam, 2e-4, 1e-4)
    kout = q + np.array([0.0, 0.0, 1.0 / lam])

    pfs, pss, valid = project_to_panel(panel, kout, 2e-4, 1e-4)
    assert valid.all()
    np.testing.assert_allclose(pfs, fs, atol=1e-6)
    np.testing.assert_allclose(pss, ss, atol=1e-6)


def test_compiled_intersection_matches_numpy(detector) -> None:
    panels = detector.as_array()
    kout = np.array([[1e8, -2e8, 7.6e9], [0.0, 0.0, -7.6e9]])
    fs, ss, valid = project_to_panel(detector[0], kout)

    f0, s0, ok0 = intersect_panel(panels, 0, *kout[0], 0.0, 0.0)
    assert ok0 and valid[0]
    assert f0 == pytest.approx(fs[0]) and s0 == pytest.approx(ss[0])
    assert on_panel(panels, 0, f0, s0)

    # Backwards ray never reaches the detector
    _, _, ok1 = intersect_panel(panels, 0, *kout[1], 0.0, 0.0)
    assert not ok1 and not valid[1]
    assert not on_panel(panels, 0, -1.0, 10.0)
