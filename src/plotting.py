"""
Plots for each stage of the analysis.

Every function accepts an optional ``ax`` to draw into and an optional
``save_path``; it returns the matplotlib Figure so callers can adjust or
close it.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.axes import Axes
from matplotlib.figure import Figure

from .data import PointPattern, Raster, SpatialWindow


def _axes(ax: Optional[Axes], figsize=(6, 5)):
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure
    return fig, ax


def _finish(fig: Figure, save_path: Optional[Union[str, Path]]) -> Figure:
    fig.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"[INFO] Figure saved to: {save_path}")
    return fig


def _draw_window(ax: Axes, window: SpatialWindow) -> None:
    polygons = getattr(window.polygon, 'geoms', [window.polygon])
    for poly in polygons:
        x, y = poly.exterior.xy
        ax.plot(x, y, color='black', linewidth=1)


def _extent(raster: Raster):
    nrows, ncols = raster.shape
    t = raster.transform
    return (t.c, t.c + ncols * t.a, t.f + nrows * t.e, t.f)


# =============================================================================
# DESCRIPTIVE
# =============================================================================


def plot_pattern(
    pattern: PointPattern,
    ax: Optional[Axes] = None,
    title: Optional[str] = None,
    save_path: Optional[Union[str, Path]] = None
) -> Figure:
    """Scatter the points over the window outline."""
    fig, ax = _axes(ax)
    _draw_window(ax, pattern.window)
    ax.scatter(pattern.x, pattern.y, s=4, alpha=0.6, c='tab:blue')
    ax.set_aspect('equal')
    ax.set_title(title or f'Point Pattern (n={len(pattern)})')
    ax.set_xlabel(f'X ({pattern.window.unit})')
    ax.set_ylabel(f'Y ({pattern.window.unit})')
    return _finish(fig, save_path)


def plot_raster(
    raster: Raster,
    pattern: Optional[PointPattern] = None,
    ax: Optional[Axes] = None,
    cmap: str = 'viridis',
    log: bool = False,
    title: Optional[str] = None,
    save_path: Optional[Union[str, Path]] = None
) -> Figure:
    """
    Show a covariate or intensity surface, optionally with the points on top.

    Args:
        raster: Raster to draw (NaN cells are left blank).
        pattern: Optional point pattern to overlay.
        ax: Axes to draw into.
        cmap: Colour map name.
        log: Show log10 of the values (useful for intensity surfaces).
        title: Plot title (default: raster name).
        save_path: Optional output path.
    """
    fig, ax = _axes(ax)
    data = raster.data
    if log:
        with np.errstate(divide='ignore', invalid='ignore'):
            data = np.where(data > 0, np.log10(data), np.nan)

    image = ax.imshow(np.ma.masked_invalid(data), extent=_extent(raster), origin='upper', cmap=cmap)
    fig.colorbar(image, ax=ax, shrink=0.8, label=f"log10({raster.name})" if log else raster.name)
    if pattern is not None:
        _draw_window(ax, pattern.window)
        ax.scatter(pattern.x, pattern.y, s=2, c='white', edgecolors='none', alpha=0.7)
    ax.set_aspect('equal')
    ax.set_title(title or raster.name)
    return _finish(fig, save_path)


def plot_quadrats(
    pattern: PointPattern,
    quadrats: Dict[str, Any],
    ax: Optional[Axes] = None,
    save_path: Optional[Union[str, Path]] = None
) -> Figure:
    """Draw the quadrat grid with the count written in each valid cell."""
    fig, ax = _axes(ax)
    _draw_window(ax, pattern.window)
    ax.scatter(pattern.x, pattern.y, s=2, alpha=0.4, c='tab:blue')

    x_edges, y_edges = quadrats['x_edges'], quadrats['y_edges']
    for x in x_edges:
        ax.axvline(x, color='grey', linewidth=0.8)
    for y in y_edges:
        ax.axhline(y, color='grey', linewidth=0.8)

    counts, valid = quadrats['counts'], quadrats['valid']
    for i in range(counts.shape[0]):
        for j in range(counts.shape[1]):
            if valid[i, j]:
                ax.text((x_edges[j] + x_edges[j + 1]) / 2, (y_edges[i] + y_edges[i + 1]) / 2,
                        str(counts[i, j]), ha='center', va='center', fontsize=10,
                        color='darkred', fontweight='bold')
    ax.set_aspect('equal')
    ax.set_title(f'Quadrat Counts (total={quadrats["total"]})')
    return _finish(fig, save_path)


# =============================================================================
# SECOND MOMENT
# =============================================================================


def plot_envelope(
    result: Dict[str, Any],
    ax: Optional[Axes] = None,
    save_path: Optional[Union[str, Path]] = None
) -> Figure:
    """Observed summary function with its theoretical curve and simulation envelope."""
    fig, ax = _axes(ax)
    r = result['r']
    ax.fill_between(r, result['lo'], result['hi'], color='lightgrey',
                    label=f"Envelope ({result['nsim']} sims, α={result['alpha']:.2f})")
    ax.plot(r, result['theo'], 'r--', linewidth=1, label='Theoretical')
    ax.plot(r, result['obs'], 'k-', linewidth=2, label='Observed')

    name = 'K(r)' if result['statistic'] == 'K' else 'g(r)'
    prefix = 'Inhomogeneous ' if result['null_model'] == 'inhomogeneous' else ''
    ax.set_xlabel('Distance (r)')
    ax.set_ylabel(name)
    ax.set_title(f'{prefix}{name} with Simulation Envelope')
    ax.legend(loc='best', fontsize=8)
    ax.grid(True, alpha=0.3)
    return _finish(fig, save_path)


# =============================================================================
# COVARIATES AND MODELS
# =============================================================================


def plot_rhohat(
    result: Dict[str, Any],
    ax: Optional[Axes] = None,
    save_path: Optional[Union[str, Path]] = None
) -> Figure:
    """Estimated intensity against covariate value with its confidence band."""
    fig, ax = _axes(ax)
    ax.fill_between(result['z'], result['lo'], result['hi'], color='lightgrey', label='95% band')
    ax.plot(result['z'], result['rho'], 'k-', linewidth=2, label='ρ̂(z)')
    ax.axhline(result['reference'], color='red', linestyle='--', linewidth=1,
               label='Homogeneous intensity')
    ax.set_xlabel(result['covariate'])
    ax.set_ylabel('Intensity')
    ax.set_title(f"Intensity vs {result['covariate']}")
    ax.legend(loc='best', fontsize=8)
    ax.grid(True, alpha=0.3)
    return _finish(fig, save_path)


def plot_partial_residuals(
    result: Dict[str, Any],
    ax: Optional[Axes] = None,
    save_path: Optional[Union[str, Path]] = None
) -> Figure:
    """Smoothed partial residual against the fitted effect of the covariate."""
    fig, ax = _axes(ax)
    ax.fill_between(result['z'], result['lo'], result['hi'], color='lightgrey', label='95% band')
    ax.plot(result['z'], result['h'], 'k-', linewidth=2, label='Partial residual')
    ax.plot(result['z'], result['fitted'], 'r--', linewidth=1.5, label='Fitted effect')
    ax.set_xlabel(result['covariate'])
    ax.set_ylabel('Effect on log-intensity')
    ax.set_title(f"Partial Residuals: {result['covariate']}")
    ax.legend(loc='best', fontsize=8)
    ax.grid(True, alpha=0.3)
    return _finish(fig, save_path)


def plot_residual_field(
    result: Dict[str, Any],
    pattern: Optional[PointPattern] = None,
    ax: Optional[Axes] = None,
    save_path: Optional[Union[str, Path]] = None
) -> Figure:
    """Smoothed residual surface on a diverging scale centred at zero."""
    fig, ax = _axes(ax)
    raster: Raster = result['raster']
    limit = np.nanmax(np.abs(raster.data))
    image = ax.imshow(np.ma.masked_invalid(raster.data), extent=_extent(raster), origin='upper',
                      cmap='RdBu_r', vmin=-limit, vmax=limit)
    fig.colorbar(image, ax=ax, shrink=0.8, label='Smoothed raw residual')
    if pattern is not None:
        _draw_window(ax, pattern.window)
    ax.set_aspect('equal')
    ax.set_title(f"Residual Field (σ={result['sigma']:.3g})")
    return _finish(fig, save_path)
