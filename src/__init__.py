"""
Spatial Intensity - point-process intensity analysis for occurrence records.

This package provides tools for exploring a spatial point pattern inside a
polygonal window and modelling its intensity against environmental covariate
rasters (e.g. elevation, forest cover, human footprint, distance to water).

Main Classes:
    PointProcessAnalyzer: Runs every analysis stage and builds a report
    SpatialWindow, PointPattern, Raster: Input data containers
    QuadratureScheme, FittedPPM: Poisson point-process model fitting

Convenience Functions:
    analyze: Quick analysis with automatic report generation

Example:
    >>> from spatial_intensity import PointProcessAnalyzer, analyze
    >>>
    >>> # Using the class
    >>> analyzer = PointProcessAnalyzer(
    ...     window_path="bc_window.geojson",
    ...     points_path="eagles.csv",
    ...     covariate_stack_path="bc_covariates.tif",
    ...     unit_scale=1000, unit="km"
    ... )
    >>> summary_df, report = analyzer.generate_report()
    >>>
    >>> # Using the convenience function
    >>> summary_df, report = analyze(
    ...     window_path="bc_window.geojson",
    ...     points_path="eagles.csv",
    ...     output_path="results.json"
    ... )
"""

from .data import (
    PointPattern, Raster, SpatialWindow, load_covariate_stack, load_covariates
)
from .descriptive import (
    bandwidth_likelihood_cv, classify_raster, floor_intensity, intensity,
    intensity_by_class, kernel_intensity, quadrat_counts, quadrat_test
)
from .second_moment import (
    envelope, k_function, pair_correlation, simulate_csr, simulate_inhomogeneous
)
from .covariate_response import rhohat, rhohat_all
from .models import (
    FittedPPM, FittingWarning, QuadratureScheme, compare_models,
    covariate_correlation, fit_ppm, model_sequence, partial_residuals,
    residual_field
)
from .analyzer import PointProcessAnalyzer, analyze

__version__ = "0.1.0"
__all__ = [
    "PointProcessAnalyzer", "analyze",
    "SpatialWindow", "PointPattern", "Raster", "load_covariates", "load_covariate_stack",
    "intensity", "quadrat_counts", "quadrat_test", "kernel_intensity",
    "bandwidth_likelihood_cv", "floor_intensity", "classify_raster", "intensity_by_class",
    "k_function", "pair_correlation", "simulate_csr", "simulate_inhomogeneous", "envelope",
    "rhohat", "rhohat_all",
    "covariate_correlation", "QuadratureScheme", "FittedPPM", "FittingWarning",
    "fit_ppm", "compare_models", "model_sequence", "partial_residuals", "residual_field",
]
