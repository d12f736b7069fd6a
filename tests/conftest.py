import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
from rasterio.transform import from_origin

from spatial_intensity import PointPattern, Raster, SpatialWindow, simulate_inhomogeneous


GRID = 50
SIDE = 10.0


def _grid_centres():
    centres = (np.arange(GRID) + 0.5) * SIDE / GRID
    X, Y = np.meshgrid(centres, centres[::-1])
    return X, Y


@pytest.fixture
def window():
    return SpatialWindow.from_bounds(0, 0, SIDE, SIDE, unit="km")


@pytest.fixture
def transform():
    return from_origin(0, SIDE, SIDE / GRID, SIDE / GRID)


@pytest.fixture
def csr_pattern(window):
    rng = np.random.default_rng(1)
    return PointPattern(rng.uniform(0, SIDE, size=(400, 2)), window)


@pytest.fixture
def clustered_pattern(window):
    rng = np.random.default_rng(2)
    parents = rng.uniform(1, 9, size=(20, 2))
    children = np.repeat(parents, 20, axis=0) + rng.normal(0, 0.2, size=(400, 2))
    return PointPattern(np.clip(children, 0, SIDE), window)


@pytest.fixture
def covariates(transform):
    X, Y = _grid_centres()
    rng = np.random.default_rng(3)
    return {
        'Elevation': Raster(X, transform, 'Elevation'),
        'Forest': Raster(X + rng.normal(0, 0.1, X.shape), transform, 'Forest'),
        'Dist_Water': Raster(np.abs(Y - SIDE / 2), transform, 'Dist_Water'),
    }


@pytest.fixture
def gradient_pattern(window, transform):
    """Points from an intensity proportional to exp(0.3 x)."""
    X, _ = _grid_centres()
    surface = Raster(6.0 * np.exp(0.3 * (X - SIDE / 2)), transform, 'truth')
    return simulate_inhomogeneous(surface, window, n=600, rng=np.random.default_rng(4))


@pytest.fixture
def humped_pattern(window, transform):
    """Points from an intensity peaked in the middle of the x range."""
    X, _ = _grid_centres()
    surface = Raster(np.exp(-0.3 * (X - SIDE / 2) ** 2), transform, 'truth')
    return simulate_inhomogeneous(surface, window, n=600, rng=np.random.default_rng(5))
