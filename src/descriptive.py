"""
Descriptive statistics for a point pattern.

Covers the first look at the data before any modelling:

    - Raw intensity: points per unit area
    - Quadrat counts and the chi-square test of homogeneity
    - Kernel-smoothed intensity surfaces and likelihood cross-validated bandwidth
    - Covariate classification and per-class intensity

Zero-area policy: quadrat cells that do not overlap the window are masked and
excluded from every ratio. Intensity surfaces that must be strictly positive
(simulation, inhomogeneous summary functions) go through floor_intensity().
"""

import warnings
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from tqdm import tqdm

from scipy import ndimage
from scipy.spatial.distance import cdist
from scipy.stats import chi2

import shapely
from shapely.geometry import box

from .data import PointPattern, Raster, SpatialWindow


# =============================================================================
# RAW INTENSITY
# =============================================================================


def intensity(pattern: PointPattern) -> Dict[str, Any]:
    """
    Calculate the homogeneous intensity estimate lambda = n / |W|.

    The value is expressed in the pattern's current unit; rescale the pattern
    first (e.g. metres to kilometres) to change it.

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'n_points': Number of points
            - 'area': Window area
            - 'intensity': Points per unit area
            - 'unit': Length unit of the window
    """
    print("\n[METRIC] Calculating Intensity...")

    n = len(pattern)
    area = pattern.window.area
    lam = n / area
    unit = pattern.window.unit

    print(f"  → {n} points over {area:.4f} {unit}²")
    print(f"  → Intensity: {lam:.6g} points per {unit}²")

    return {
        'n_points': int(n),
        'area': float(area),
        'intensity': float(lam),
        'unit': unit
    }


# =============================================================================
# QUADRAT ANALYSIS
# =============================================================================


def quadrat_counts(pattern: PointPattern, nx: int = 3, ny: int = 3) -> Dict[str, Any]:
    """
    Count points in an nx × ny grid of quadrats over the window bounding box.

    Row 0 is the northern row. Each cell also reports the area of its
    intersection with the window; cells with zero window area are flagged
    invalid and must not be used as denominators.

    Args:
        pattern: Point pattern to count.
        nx: Number of columns (default: 3).
        ny: Number of rows (default: 3).

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'counts': (ny, nx) integer array of point counts
            - 'areas': (ny, nx) array of cell ∩ window areas
            - 'valid': (ny, nx) boolean mask of cells with positive area
            - 'x_edges', 'y_edges': Grid edges (y_edges descending)
            - 'total': Sum of counts (always equal to the number of points)

    Raises:
        ValueError: If nx or ny is not a positive integer.
    """
    if nx < 1 or ny < 1:
        raise ValueError("nx and ny must be positive")

    window = pattern.window
    xmin, ymin, xmax, ymax = window.bounds
    x_edges = np.linspace(xmin, xmax, nx + 1)
    y_edges = np.linspace(ymax, ymin, ny + 1)

    # Points on the far edges belong to the last row/column
    cols = np.clip(np.floor((pattern.x - xmin) / (xmax - xmin) * nx).astype(int), 0, nx - 1)
    rows = np.clip(np.floor((ymax - pattern.y) / (ymax - ymin) * ny).astype(int), 0, ny - 1)
    counts = np.zeros((ny, nx), dtype=int)
    np.add.at(counts, (rows, cols), 1)

    cells = [
        box(x_edges[j], y_edges[i + 1], x_edges[j + 1], y_edges[i])
        for i in range(ny) for j in range(nx)
    ]
    areas = shapely.area(shapely.intersection(np.array(cells), window.polygon)).reshape(ny, nx)
    valid = areas > 0

    stray = int(counts[~valid].sum())
    if stray:
        print(f"[WARNING] {stray} points fall in quadrats with zero window area")

    return {
        'counts': counts,
        'areas': areas,
        'valid': valid,
        'x_edges': x_edges,
        'y_edges': y_edges,
        'total': int(counts.sum())
    }


def quadrat_test(
    pattern: PointPattern,
    nx: int = 3,
    ny: int = 3,
    alternative: str = "two.sided"
) -> Dict[str, Any]:
    """
    Chi-square goodness-of-fit test of homogeneity using quadrat counts.

    Null hypothesis: intensity is constant over the window, so the expected
    count in a cell is proportional to its area inside the window.

    Formula:
        X² = Σ (observed - expected)² / expected,   df = valid cells - 1
        expected = n × (cell ∩ window area) / |W|

    Args:
        pattern: Point pattern to test.
        nx: Number of quadrat columns (default: 3).
        ny: Number of quadrat rows (default: 3).
        alternative: 'two.sided' (default), 'clustered' (upper tail: counts
                     more variable than Poisson) or 'regular' (lower tail).

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'statistic': Pearson X² statistic
            - 'df': Degrees of freedom
            - 'p_value': P-value for the chosen alternative
            - 'alternative': Alternative used
            - 'dispersion_index': X² / df, the variance-to-mean ratio of the
                                  counts for equal-area cells (1 under CSR)
            - 'observed', 'expected': Counts per valid cell
            - 'n_cells': Number of valid cells
            - 'quadrats': Output of quadrat_counts()

    Raises:
        ValueError: If the pattern is empty, alternative is unknown, or fewer
                    than two quadrats overlap the window.
    """
    print(f"\n[METRIC] Quadrat Test of Homogeneity ({nx}x{ny})...")

    if alternative not in ("two.sided", "clustered", "regular"):
        raise ValueError(f"Invalid alternative '{alternative}'. "
                         "Use 'two.sided', 'clustered' or 'regular'.")
    n = len(pattern)
    if n == 0:
        raise ValueError("Quadrat test needs at least one point")

    quadrats = quadrat_counts(pattern, nx, ny)
    valid = quadrats['valid']
    n_cells = int(valid.sum())
    if n_cells < 2:
        raise ValueError("Quadrat test needs at least two quadrats overlapping the window")

    observed = quadrats['counts'][valid].astype(float)
    expected = n * quadrats['areas'][valid] / pattern.window.area

    if np.any(expected < 5):
        warnings.warn("Some expected quadrat counts are below 5; "
                      "the chi-square approximation may be inaccurate")
        print("[WARNING] Some expected counts are below 5")

    statistic = float(np.sum((observed - expected) ** 2 / expected))
    df = n_cells - 1

    upper = chi2.sf(statistic, df)
    lower = chi2.cdf(statistic, df)
    if alternative == "clustered":
        p_value = upper
    elif alternative == "regular":
        p_value = lower
    else:
        p_value = min(1.0, 2 * min(upper, lower))

    dispersion = statistic / df

    print(f"  → X² = {statistic:.3f}, df = {df}")
    print(f"  → Index of dispersion: {dispersion:.3f}")
    print(f"  → P-value ({alternative}): {p_value:.4g}")

    return {
        'statistic': statistic,
        'df': int(df),
        'p_value': float(p_value),
        'alternative': alternative,
        'dispersion_index': float(dispersion),
        'observed': observed,
        'expected': expected,
        'n_cells': n_cells,
        'quadrats': quadrats
    }


# =============================================================================
# KERNEL INTENSITY
# =============================================================================


def _count_image(
    pattern: PointPattern, grid: Raster, weights: Optional[np.ndarray] = None
) -> np.ndarray:
    """Bin the points onto the grid, summing ``weights`` (default 1) per pixel."""
    # Every point lies in the window, so clipped indices only move points on
    # the east or south edge of the bounding box into the last column or row.
    rows, cols, _ = grid.rowcol(pattern.coords)
    values = 1.0 if weights is None else np.asarray(weights, dtype=float)
    counts = np.zeros(grid.shape)
    np.add.at(counts, (rows, cols), values)
    return counts


def kernel_intensity(
    pattern: PointPattern,
    sigma: float,
    resolution: Optional[float] = None,
    edge_correct: bool = True,
    weights: Optional[np.ndarray] = None
) -> Raster:
    """
    Gaussian kernel estimate of the intensity surface.

    The points are binned onto a pixel grid and convolved with an isotropic
    Gaussian of standard deviation ``sigma``. With ``edge_correct`` the result
    is divided by the kernel mass falling inside the window (uniform
    correction), which removes the downward bias near the boundary.

    Args:
        pattern: Point pattern to smooth.
        sigma: Kernel standard deviation in the pattern's units. Smaller
               values give rougher surfaces; there is no unique best choice.
        resolution: Pixel size. Defaults to 128 pixels along the longer side.
        edge_correct: Apply uniform edge correction (default: True).
        weights: Optional per-point weights (e.g. for residual smoothing).

    Returns:
        Raster: Intensity surface, NaN outside the window.

    Raises:
        ValueError: If sigma is not positive.
    """
    if sigma <= 0:
        raise ValueError("sigma must be positive")

    grid = Raster.blank_for_window(pattern.window, resolution, name="intensity")
    mask = grid.window_mask(pattern.window)
    sigma_px = sigma / grid.pixel_size[0]

    counts = _count_image(pattern, grid, weights)

    smoothed = ndimage.gaussian_filter(counts, sigma_px, mode='constant') / grid.pixel_area

    if edge_correct:
        edge = ndimage.gaussian_filter(mask.astype(float), sigma_px, mode='constant')
        with np.errstate(divide='ignore', invalid='ignore'):
            smoothed = np.where(edge > 0, smoothed / edge, np.nan)

    smoothed[~mask] = np.nan
    return grid.with_data(smoothed)


def bandwidth_likelihood_cv(
    pattern: PointPattern,
    sigmas: Optional[Sequence[float]] = None,
    n_sigmas: int = 16,
    resolution: Optional[float] = None,
    chunk_size: int = 500
) -> Dict[str, Any]:
    """
    Select a kernel bandwidth by likelihood cross-validation.

    For each candidate sigma the score is

        CV(σ) = Σᵢ log λ̂₋ᵢ(xᵢ) - ∫_W λ̂(u) du

    where λ̂₋ᵢ is the edge-corrected leave-one-out estimate at point i. The
    chosen sigma maximises CV over the candidate grid only; it is a
    reasonable default, not a unique optimum, and changing it visibly changes
    the smoothness of the surface.

    Args:
        pattern: Point pattern.
        sigmas: Candidate bandwidths. If None, ``n_sigmas`` values spaced
                geometrically from the smallest nearest-neighbour distance to
                half the window diameter.
        n_sigmas: Grid size when sigmas is None (default: 16).
        resolution: Pixel size for the integral and edge correction.
        chunk_size: Rows of the pairwise distance matrix held at once.

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'sigma': Selected bandwidth
            - 'sigmas': Candidate bandwidths
            - 'cv': CV score per candidate (-inf where a point had zero
                    leave-one-out intensity)

    Raises:
        ValueError: If the pattern has fewer than 2 points.
    """
    print("\n[METRIC] Selecting Kernel Bandwidth (likelihood cross-validation)...")

    n = len(pattern)
    if n < 2:
        raise ValueError("Bandwidth selection needs at least 2 points")

    coords = pattern.coords
    if sigmas is None:
        xmin, ymin, xmax, ymax = pattern.window.bounds
        diameter = np.hypot(xmax - xmin, ymax - ymin)
        d = cdist(coords[:min(n, 2000)], coords)
        d[d == 0] = np.inf
        lower = float(np.min(d))
        if not np.isfinite(lower):
            lower = diameter / 1000
        sigmas = np.geomspace(lower, diameter / 2, n_sigmas)
    sigmas = np.asarray(sigmas, dtype=float)

    # Squared distances are reused for every sigma, chunk by chunk
    loo = np.zeros((len(sigmas), n))
    for start in range(0, n, chunk_size):
        block = cdist(coords[start:start + chunk_size], coords, 'sqeuclidean')
        idx = np.arange(block.shape[0])
        block[idx, start + idx] = np.inf
        for s, sigma in enumerate(sigmas):
            k = np.exp(-block / (2 * sigma ** 2)) / (2 * np.pi * sigma ** 2)
            loo[s, start:start + chunk_size] = k.sum(axis=1)

    cv = np.full(len(sigmas), -np.inf)
    for s, sigma in enumerate(tqdm(sigmas, desc="Scoring bandwidths", unit="sigma")):
        surface = kernel_intensity(pattern, sigma, resolution=resolution)
        uncorrected = kernel_intensity(pattern, sigma, resolution=resolution, edge_correct=False)
        with np.errstate(divide='ignore', invalid='ignore'):
            edge = uncorrected.data / surface.data
        edge_at = uncorrected.with_data(edge).value_at(coords)
        edge_at = np.where(np.isfinite(edge_at) & (edge_at > 0), edge_at, 1.0)

        lam_loo = loo[s] / edge_at
        if np.all(lam_loo > 0):
            cv[s] = float(np.sum(np.log(lam_loo)) - surface.integral())

    best = int(np.argmax(cv))
    sigma = float(sigmas[best])

    print(f"  → Evaluated {len(sigmas)} bandwidths from {sigmas.min():.4g} to {sigmas.max():.4g}")
    print(f"  → Selected sigma: {sigma:.4g}")

    return {
        'sigma': sigma,
        'sigmas': sigmas,
        'cv': cv
    }


def floor_intensity(surface: Raster, floor: Optional[float] = None) -> Raster:
    """
    Make an intensity surface strictly positive inside the window.

    Values below ``floor`` are raised to it; NaN cells (outside the window or
    without data) stay NaN.

    Args:
        surface: Intensity surface.
        floor: Minimum value. Defaults to 1e-6 × the surface maximum.

    Raises:
        ValueError: If the surface has no positive values and no floor is given.
    """
    data = surface.data.copy()
    finite = np.isfinite(data)
    if floor is None:
        peak = np.max(data[finite]) if finite.any() else 0.0
        if peak <= 0:
            raise ValueError("Intensity surface has no positive values")
        floor = 1e-6 * peak
    if floor <= 0:
        raise ValueError("floor must be positive")

    n_floored = int(np.sum(finite & (data < floor)))
    if n_floored:
        print(f"[INFO] Raised {n_floored} pixels to intensity floor {floor:.3g}")
    data[finite & (data < floor)] = floor
    return surface.with_data(data)


# =============================================================================
# COVARIATE CLASSES
# =============================================================================


def classify_raster(
    raster: Raster,
    breaks: Optional[Sequence[float]] = None,
    n_classes: int = 4,
    window: Optional[SpatialWindow] = None
) -> Dict[str, Any]:
    """
    Bin a continuous covariate into discrete classes for map overlays.

    Args:
        raster: Covariate raster.
        breaks: Increasing class boundaries including both ends. If None,
                quantile breaks giving ``n_classes`` classes are used.
        n_classes: Number of quantile classes when breaks is None (default: 4).
        window: Restrict quantiles to pixels inside this window.

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'raster': Raster of class indices (0..k-1, -1 where missing)
            - 'breaks': Breaks used
            - 'labels': Interval label per class
    """
    values = raster.data
    if window is not None:
        values = raster.masked(window).data
    finite = np.isfinite(values)

    if breaks is None:
        if not finite.any():
            raise ValueError(f"Covariate '{raster.name}' has no finite values")
        breaks = np.unique(np.quantile(values[finite], np.linspace(0, 1, n_classes + 1)))
    breaks = np.asarray(breaks, dtype=float)
    if len(breaks) < 2 or np.any(np.diff(breaks) <= 0):
        raise ValueError("breaks must be strictly increasing with at least two values")

    classes = np.full(values.shape, -1.0)
    in_range = finite & (values >= breaks[0]) & (values <= breaks[-1])
    classes[in_range] = np.clip(
        np.digitize(values[in_range], breaks[1:-1], right=False), 0, len(breaks) - 2
    )

    labels = [f"[{breaks[i]:.4g}, {breaks[i + 1]:.4g}{']' if i == len(breaks) - 2 else ')'}"
              for i in range(len(breaks) - 1)]

    return {
        'raster': raster.with_data(classes, name=f"{raster.name}_class"),
        'breaks': breaks,
        'labels': labels
    }


def intensity_by_class(
    pattern: PointPattern, classified: Dict[str, Any]
) -> pd.DataFrame:
    """
    Count points and estimate intensity within each covariate class.

    Args:
        pattern: Point pattern.
        classified: Output of classify_raster().

    Returns:
        pd.DataFrame: One row per class with columns 'class', 'label',
        'count', 'area' and 'intensity'. Points on missing covariate cells are
        reported with a warning and left out.
    """
    class_raster: Raster = classified['raster']
    labels: List[str] = classified['labels']

    point_classes = class_raster.value_at(pattern.coords)
    unclassified = int(np.sum(~np.isfinite(point_classes) | (point_classes < 0)))
    if unclassified:
        print(f"[WARNING] {unclassified} points fall on missing covariate cells")

    mask = class_raster.window_mask(pattern.window)
    rows = []
    for k, label in enumerate(labels):
        count = int(np.sum(point_classes == k))
        area = float(np.sum(mask & (class_raster.data == k)) * class_raster.pixel_area)
        rows.append({
            'class': k,
            'label': label,
            'count': count,
            'area': area,
            'intensity': count / area if area > 0 else np.nan
        })

    return pd.DataFrame(rows)
