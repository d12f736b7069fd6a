"""
Second-moment summary functions and Monte Carlo envelopes.

Implements Ripley's K-function and the pair correlation function g(r), in
homogeneous and intensity-reweighted (inhomogeneous) form, together with
pointwise simulation envelopes under complete spatial randomness or an
inhomogeneous Poisson process.

Edge correction:
    Border (reduced-sample) correction is used throughout. At lag r, only
    points at least r away from the window boundary act as centres, so no
    circle used for counting leaves the window. This discards data at large
    lags, so the default lag range stops where the eroded window keeps a
    quarter of its area (a quarter of the shorter side for a square).

Formulas (border correction, B_r = {i : b_i ≥ r}):
    K(r) = Σ_{i∈B_r} Σ_{j≠i} 1(d_ij ≤ r) / (λ_i λ_j)  /  Σ_{i∈B_r} 1/λ_i
    g(r) = Σ_{i∈B_r} Σ_{j≠i} κ_h(r - d_ij) / (λ_i λ_j) / (2πr Σ_{i∈B_r} 1/λ_i)

With λ_i = n/|W| these reduce to the usual homogeneous estimators.
"""

import warnings
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from tqdm import tqdm

from scipy import ndimage
from scipy.spatial import KDTree

from .data import PointPattern, Raster, SpatialWindow
from .descriptive import floor_intensity


IntensityLike = Union[None, Raster, np.ndarray]


# =============================================================================
# HELPERS
# =============================================================================


def default_radii(
    window: SpatialWindow, n_radii: int = 50, keep_fraction: float = 0.25
) -> np.ndarray:
    """
    Lags from 0 to a maximum set by the window shape.

    rmax is the smaller of a quarter of the shorter bounding-box side and the
    depth at which the window, eroded by r, still holds ``keep_fraction`` of
    its area. For a square both agree; thin or ragged windows get a shorter
    range, so border-eligible centres remain at every lag.
    """
    xmin, ymin, xmax, ymax = window.bounds
    rmax = 0.25 * min(xmax - xmin, ymax - ymin)

    grid = Raster.blank_for_window(window)
    mask = grid.window_mask(window)
    if mask.any():
        X, Y = grid.pixel_centers()
        depth = window.boundary_distance(np.column_stack([X[mask], Y[mask]]))
        rmax = min(rmax, float(np.quantile(depth, 1.0 - keep_fraction)))
    return np.linspace(0.0, rmax, n_radii)


def fill_missing_nearest(surface: Raster) -> Raster:
    """
    Fill NaN pixels with the value of the nearest finite pixel.

    Points near the window edge can sit in pixels whose centre lies outside
    the window; this gives them the intensity of the adjacent interior pixel.
    """
    data = surface.data
    finite = np.isfinite(data)
    if finite.all():
        return surface
    if not finite.any():
        raise ValueError("Intensity surface has no finite values")
    idx = ndimage.distance_transform_edt(~finite, return_distances=False, return_indices=True)
    return surface.with_data(data[tuple(idx)])


def point_intensity(pattern: PointPattern, intensity: IntensityLike) -> np.ndarray:
    """
    Intensity value at every point of the pattern.

    Args:
        pattern: Point pattern.
        intensity: None for the homogeneous estimate n/|W|, a Raster surface,
                   or an array with one value per point.

    Raises:
        ValueError: If any value is missing or not strictly positive.
    """
    n = len(pattern)
    if intensity is None:
        return np.full(n, n / pattern.window.area)

    if isinstance(intensity, Raster):
        filled = fill_missing_nearest(intensity)
        rows, cols, _ = filled.rowcol(pattern.coords)
        values = filled.data[rows, cols]
    else:
        values = np.asarray(intensity, dtype=float)
        if values.shape != (n,):
            raise ValueError(f"Expected {n} intensity values, got shape {values.shape}")

    if np.any(~np.isfinite(values)) or np.any(values <= 0):
        raise ValueError("Intensity must be finite and positive at every point; "
                         "apply floor_intensity() to the surface first")
    return values


def _close_pairs(coords: np.ndarray, rmax: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Unordered pairs (i < j) closer than rmax and their distances."""
    if len(coords) < 2 or rmax <= 0:
        empty = np.zeros(0, dtype=int)
        return empty, empty, np.zeros(0)
    tree = KDTree(coords)
    pairs = tree.query_pairs(rmax, output_type='ndarray')
    if len(pairs) == 0:
        empty = np.zeros(0, dtype=int)
        return empty, empty, np.zeros(0)
    i, j = pairs[:, 0], pairs[:, 1]
    d = np.linalg.norm(coords[i] - coords[j], axis=1)
    return i, j, d


def _excursions(r: np.ndarray, flags: np.ndarray) -> List[Tuple[float, float]]:
    """Contiguous lag ranges where ``flags`` is True."""
    ranges = []
    start = None
    for k, flag in enumerate(flags):
        if flag and start is None:
            start = k
        elif not flag and start is not None:
            ranges.append((float(r[start]), float(r[k - 1])))
            start = None
    if start is not None:
        ranges.append((float(r[start]), float(r[-1])))
    return ranges


# =============================================================================
# SUMMARY FUNCTIONS
# =============================================================================


def k_function(
    pattern: PointPattern,
    radii: Optional[Sequence[float]] = None,
    intensity: IntensityLike = None
) -> Dict[str, Any]:
    """
    Border-corrected Ripley's K-function (homogeneous or inhomogeneous).

    K(r) > πr² indicates clustering at lag r, K(r) < πr² regularity. When an
    intensity surface is supplied each pair is weighted by 1/(λ_i λ_j), so the
    benchmark πr² applies after accounting for the varying intensity.

    Args:
        pattern: Point pattern (at least 2 points).
        radii: Lags to evaluate. Defaults to default_radii().
        intensity: None (homogeneous), a positive Raster or per-point values.

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'r': Lags
            - 'obs': Estimated K(r) (NaN where no point is far enough from the boundary)
            - 'theo': πr²
            - 'L': sqrt(K/π)
            - 'n_centres': Number of border-eligible centre points per lag
            - 'inhomogeneous': Whether an intensity was supplied

    Raises:
        ValueError: If the pattern has fewer than 2 points.
    """
    if len(pattern) < 2:
        raise ValueError("K-function needs at least 2 points")

    r = default_radii(pattern.window) if radii is None else np.asarray(radii, dtype=float)
    lam = point_intensity(pattern, intensity)
    b = pattern.window.boundary_distance(pattern.coords)
    i, j, d = _close_pairs(pattern.coords, float(np.max(r)))
    w = 1.0 / (lam[i] * lam[j])

    obs = np.full(len(r), np.nan)
    n_centres = np.zeros(len(r), dtype=int)
    for k, rk in enumerate(r):
        centres = b >= rk
        n_centres[k] = int(centres.sum())
        denom = np.sum(1.0 / lam[centres])
        if denom <= 0:
            continue
        close = d <= rk
        num = np.sum(w[close] * (centres[i[close]].astype(float) + centres[j[close]]))
        obs[k] = num / denom

    return {
        'r': r,
        'obs': obs,
        'theo': np.pi * r ** 2,
        'L': np.sqrt(obs / np.pi),
        'n_centres': n_centres,
        'inhomogeneous': intensity is not None
    }


def pair_correlation(
    pattern: PointPattern,
    radii: Optional[Sequence[float]] = None,
    intensity: IntensityLike = None,
    bandwidth: Optional[float] = None
) -> Dict[str, Any]:
    """
    Border-corrected pair correlation function g(r).

    g(r) = 1 under complete spatial randomness; g(r) > 1 indicates more pairs
    at distance r than expected (clustering), g(r) < 1 fewer (inhibition).
    Pair distances are smoothed with an Epanechnikov kernel of half-width h.

    Args:
        pattern: Point pattern (at least 2 points).
        radii: Lags to evaluate (r = 0 is dropped). Defaults to default_radii().
        intensity: None (homogeneous), a positive Raster or per-point values.
        bandwidth: Kernel half-width h. Defaults to Stoyan's rule 0.15/sqrt(λ̄).

    Returns:
        Dict[str, Any]: Dictionary containing 'r', 'obs', 'theo' (ones),
        'bandwidth', 'n_centres' and 'inhomogeneous'.

    Raises:
        ValueError: If the pattern has fewer than 2 points or bandwidth ≤ 0.
    """
    n = len(pattern)
    if n < 2:
        raise ValueError("Pair correlation needs at least 2 points")

    r = default_radii(pattern.window) if radii is None else np.asarray(radii, dtype=float)
    r = r[r > 0]
    if bandwidth is None:
        bandwidth = 0.15 / np.sqrt(n / pattern.window.area)
    if bandwidth <= 0:
        raise ValueError("bandwidth must be positive")

    lam = point_intensity(pattern, intensity)
    b = pattern.window.boundary_distance(pattern.coords)
    i, j, d = _close_pairs(pattern.coords, float(np.max(r)) + bandwidth)
    w = 1.0 / (lam[i] * lam[j])

    obs = np.full(len(r), np.nan)
    n_centres = np.zeros(len(r), dtype=int)
    for k, rk in enumerate(r):
        centres = b >= rk
        n_centres[k] = int(centres.sum())
        denom = np.sum(1.0 / lam[centres])
        if denom <= 0:
            continue
        t = (rk - d) / bandwidth
        near = np.abs(t) < 1
        kern = 0.75 * (1 - t[near] ** 2) / bandwidth
        num = np.sum(w[near] * kern * (centres[i[near]].astype(float) + centres[j[near]]))
        obs[k] = num / (2 * np.pi * rk * denom)

    return {
        'r': r,
        'obs': obs,
        'theo': np.ones(len(r)),
        'bandwidth': float(bandwidth),
        'n_centres': n_centres,
        'inhomogeneous': intensity is not None
    }


# =============================================================================
# SIMULATION
# =============================================================================


def simulate_csr(
    window: SpatialWindow, n: int, rng: Optional[np.random.Generator] = None
) -> PointPattern:
    """Uniform random pattern of exactly n points in the window (rejection sampling)."""
    if n < 0:
        raise ValueError("n must be non-negative")
    rng = rng or np.random.default_rng()
    xmin, ymin, xmax, ymax = window.bounds
    fraction = window.area / ((xmax - xmin) * (ymax - ymin))

    accepted = np.zeros((0, 2))
    while len(accepted) < n:
        batch = int((n - len(accepted)) / fraction * 1.2) + 10
        candidates = np.column_stack([
            rng.uniform(xmin, xmax, batch),
            rng.uniform(ymin, ymax, batch)
        ])
        accepted = np.vstack([accepted, candidates[window.contains(candidates)]])

    return PointPattern(accepted[:n], window)


def simulate_inhomogeneous(
    surface: Raster,
    window: SpatialWindow,
    n: Optional[int] = None,
    rng: Optional[np.random.Generator] = None
) -> PointPattern:
    """
    Sample a pattern from an intensity surface.

    Pixels inside the window are drawn with probability proportional to
    λ × pixel area and the point is placed uniformly within the pixel;
    points that land outside the window are redrawn.

    Args:
        surface: Non-negative intensity surface.
        window: Observation window.
        n: Fixed number of points. If None, n ~ Poisson(∫λ) (Poisson process).
        rng: Random generator.

    Raises:
        ValueError: If the surface has no positive mass inside the window.
    """
    rng = rng or np.random.default_rng()
    data = np.where(np.isfinite(surface.data), surface.data, 0.0)
    data = np.where(surface.window_mask(window), np.clip(data, 0, None), 0.0)
    mass = data.ravel() * surface.pixel_area
    total = mass.sum()
    if total <= 0:
        raise ValueError("Intensity surface has no positive mass inside the window")

    if n is None:
        n = int(rng.poisson(total))
    probs = mass / total
    dx, dy = surface.pixel_size
    ncols = surface.shape[1]

    accepted = np.zeros((0, 2))
    while len(accepted) < n:
        batch = n - len(accepted)
        cells = rng.choice(len(probs), size=batch, p=probs)
        rows, cols = np.divmod(cells, ncols)
        xs = surface.transform.c + (cols + rng.uniform(0, 1, batch)) * dx
        ys = surface.transform.f - (rows + rng.uniform(0, 1, batch)) * dy
        candidates = np.column_stack([xs, ys])
        accepted = np.vstack([accepted, candidates[window.contains(candidates)]])

    return PointPattern(accepted[:n], window)


# =============================================================================
# ENVELOPES
# =============================================================================


_STATISTICS = {
    'K': k_function,
    'pcf': pair_correlation
}


def envelope(
    pattern: PointPattern,
    statistic: str = "K",
    nsim: int = 19,
    rank: int = 1,
    intensity: Optional[Raster] = None,
    radii: Optional[Sequence[float]] = None,
    fix_n: bool = True,
    seed: Optional[int] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Pointwise Monte Carlo envelope for K(r) or g(r).

    The observed summary function is compared with ``nsim`` functions computed
    from simulated patterns. Without ``intensity`` the null model is complete
    spatial randomness; with it, patterns are drawn from the (floored)
    intensity surface and the inhomogeneous summary function is used for both
    the data and the simulations.

    With rank k the envelope is the k-th smallest and k-th largest simulated
    value at each lag, a two-sided pointwise test at significance
    α = 2k / (nsim + 1) (0.1 for nsim = 19, rank = 1). An observed curve above
    the envelope indicates significant clustering at that lag range, below it
    significant regularity.

    Args:
        pattern: Observed point pattern.
        statistic: 'K' or 'pcf' (default: 'K').
        nsim: Number of simulations (default: 19).
        rank: Envelope rank (default: 1).
        intensity: Optional intensity surface for the inhomogeneous null.
        radii: Lags to evaluate. Defaults to default_radii().
        fix_n: Simulate exactly n points (default) instead of a Poisson count.
        seed: Seed for reproducible simulations.
        **kwargs: Passed to the summary function (e.g. bandwidth for 'pcf').

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'statistic': Summary function name
            - 'r', 'obs', 'theo': Lags, observed and theoretical curves
            - 'lo', 'hi': Envelope bounds per lag
            - 'sim_curves': (nsim, len(r)) array of simulated curves
            - 'nsim', 'rank', 'alpha': Test settings and significance level
            - 'above', 'below': Lag ranges where obs leaves the envelope
            - 'null_model': 'csr' or 'inhomogeneous'

        Lags where the observed curve is undefined (no border-eligible
        centre) are dropped with a warning.

    Raises:
        ValueError: If statistic is unknown, rank is out of range or no lag
                    has border-eligible centres.
    """
    if statistic not in _STATISTICS:
        raise ValueError(f"Invalid statistic '{statistic}'. Use 'K' or 'pcf'.")
    if nsim < 1:
        raise ValueError("nsim must be at least 1")
    if rank < 1 or 2 * rank > nsim + 1:
        raise ValueError(f"rank must be between 1 and {(nsim + 1) // 2} for nsim={nsim}")

    null_model = 'csr' if intensity is None else 'inhomogeneous'
    print(f"\n[METRIC] Simulation Envelope ({statistic}, {null_model}, nsim={nsim}, rank={rank})...")

    func = _STATISTICS[statistic]
    window = pattern.window
    rng = np.random.default_rng(seed)
    r = default_radii(window) if radii is None else np.asarray(radii, dtype=float)

    surface = None
    if intensity is not None:
        surface = floor_intensity(fill_missing_nearest(intensity.masked(window)))
        surface = surface.masked(window)

    observed = func(pattern, radii=r, intensity=surface, **kwargs)
    keep = np.isfinite(observed['obs'])
    if not keep.any():
        raise ValueError("No lag has border-eligible centres; use shorter radii")
    if not keep.all():
        dropped = int((~keep).sum())
        warnings.warn(f"Dropped {dropped} lags with no point far enough from the window boundary")
        print(f"[WARNING] Dropped {dropped} lags without border-eligible centres")
    r = observed['r'][keep]

    sim_curves = np.zeros((nsim, len(r)))
    for s in tqdm(range(nsim), desc="Simulating patterns", unit="sim"):
        if surface is None:
            n = len(pattern) if fix_n else int(rng.poisson(len(pattern)))
            simulated = simulate_csr(window, max(n, 2), rng)
        else:
            simulated = simulate_inhomogeneous(
                surface, window, n=len(pattern) if fix_n else None, rng=rng
            )
            if len(simulated) < 2:
                simulated = simulate_inhomogeneous(surface, window, n=2, rng=rng)
        sim_curves[s] = func(simulated, radii=r, intensity=surface, **kwargs)['obs']

    ordered = np.sort(sim_curves, axis=0)
    lo = ordered[rank - 1]
    hi = ordered[nsim - rank]
    obs = observed['obs'][keep]
    alpha = 2 * rank / (nsim + 1)

    with np.errstate(invalid='ignore'):
        above = _excursions(r, obs > hi)
        below = _excursions(r, obs < lo)

    print(f"  → Significance level: {alpha:.3f}")
    print(f"  → Above envelope: {above if above else 'none'}")
    print(f"  → Below envelope: {below if below else 'none'}")

    return {
        'statistic': statistic,
        'r': r,
        'obs': obs,
        'theo': observed['theo'][keep],
        'lo': lo,
        'hi': hi,
        'sim_curves': sim_curves,
        'nsim': int(nsim),
        'rank': int(rank),
        'alpha': float(alpha),
        'above': above,
        'below': below,
        'null_model': null_model
    }
