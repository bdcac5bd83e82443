import sys
from pathlib import Path

import numpy as np
import pytest

# Allow importing sxrefine from repository root
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sxrefine.config import clear_config_cache  # noqa: E402
from sxrefine.utils.synthetic import make_crystal, make_on_sphere_crystal  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def crystal():
    """A synthetic crystal whose image carries exact peaks."""
    cr = make_crystal(np.random.default_rng(3))
    assert len(cr.image.peaks) >= 40
    return cr


@pytest.fixture
def on_sphere_crystal():
    """A synthetic crystal whose peaks have near-zero excitation error."""
    cr = make_on_sphere_crystal(np.random.default_rng(3))
    assert len(cr.image.peaks) >= 40
    return cr
