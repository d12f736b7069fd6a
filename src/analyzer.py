"""
PointProcessAnalyzer: end-to-end point-process intensity analysis.

This module provides the PointProcessAnalyzer class, which runs the complete
workflow on a point pattern, its observation window and a set of covariate
rasters, and collects every result into a report.

The analysis is organized into five stages:
    - Descriptive: intensity, quadrat test, kernel intensity, covariate classes
    - Second moment: K and pair correlation envelopes (homogeneous and inhomogeneous)
    - Covariate response: rhohat curves and covariate correlation check
    - Models: sequence of log-linear Poisson models with LR tests and AIC
    - Diagnostics: partial residuals and smoothed residual field

Each stage returns plain result objects, so the fit → inspect → refit loop can
be scripted instead of read off plots.
"""

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from tqdm import tqdm

from .data import (
    PointPattern, Raster, SpatialWindow, load_covariate_stack, load_covariates
)
from .descriptive import (
    bandwidth_likelihood_cv, classify_raster, floor_intensity, intensity,
    intensity_by_class, kernel_intensity, quadrat_test
)
from .second_moment import envelope
from .covariate_response import rhohat_all
from .models import (
    FittedPPM, QuadratureScheme, covariate_correlation, model_sequence,
    partial_residuals, residual_field
)
from . import plotting


# =============================================================================
# SUMMARY HELPERS
# =============================================================================


def _envelope_measures(name: str, env: Dict[str, Any]) -> List[Tuple[str, float]]:
    """First lag and number of lag ranges outside the envelope (NaN if none)."""
    rows = []
    for side in ('above', 'below'):
        ranges = env[side]
        rows.append((f'{name}_first_{side}', float(ranges[0][0]) if ranges else np.nan))
        rows.append((f'{name}_ranges_{side}', float(len(ranges))))
    return rows


# =============================================================================
# CLASS DEFINITION
# =============================================================================


class PointProcessAnalyzer:
    """
    Runs the full intensity analysis for one point pattern.

    Inputs are a window polygon (GeoJSON), a CSV of point coordinates and
    covariate rasters given either as one file per covariate or as a single
    multi-band stack. Coordinates and raster grids can be rescaled on load,
    e.g. from metres to kilometres, so intensities are reported per km².

    Attributes:
        window_path (Path): GeoJSON window file.
        points_path (Path): CSV file of point coordinates.
        covariate_paths (Dict[str, Path]): Per-covariate raster files.
        covariate_stack_path (Path): Multi-band covariate raster.
        unit_scale (float): Input units per analysis unit (1000 for m → km).
        unit (str): Name of the analysis unit.
        formulas (Dict[str, str]): Candidate model formulas, simplest first.

    Example:
        >>> analyzer = PointProcessAnalyzer(
        ...     window_path="bc_window.geojson",
        ...     points_path="eagles.csv",
        ...     covariate_stack_path="bc_covariates.tif",
        ...     covariate_names=["Elevation", "Forest", "HFI", "Dist_Water"],
        ...     unit_scale=1000, unit="km",
        ...     formulas={
        ...         "null": "1",
        ...         "quadratic": "Elevation + I(Elevation**2) + Forest + HFI",
        ...         "spline": "bs(Elevation, df=5) + Forest + bs(HFI, df=4)",
        ...     },
        ... )
        >>> summary_df, report = analyzer.generate_report(output_path="eagles.json")
    """

    def __init__(
        self,
        window_path: str,
        points_path: str,
        covariate_paths: Optional[Dict[str, str]] = None,
        covariate_stack_path: Optional[str] = None,
        covariate_names: Optional[List[str]] = None,
        x_col: str = "X",
        y_col: str = "Y",
        unit_scale: float = 1.0,
        unit: str = "units",
        quadrat_grid: Tuple[int, int] = (3, 3),
        nsim: int = 19,
        sigma: Optional[float] = None,
        formulas: Optional[Dict[str, str]] = None,
        quadrature_stride: int = 1,
        seed: Optional[int] = None,
        figure_dir: Optional[str] = None
    ):
        """
        Initialize the analyzer and validate its inputs.

        Args:
            window_path: GeoJSON file with the window polygon(s).
            points_path: CSV file with point coordinates.
            covariate_paths: Mapping of covariate name to single-band raster.
            covariate_stack_path: Multi-band raster holding all covariates.
            covariate_names: Layer names for the stack (default: band descriptions).
            x_col: X column in the CSV (default: 'X').
            y_col: Y column in the CSV (default: 'Y').
            unit_scale: Input units per analysis unit (default: 1.0).
            unit: Name of the analysis unit (default: 'units').
            quadrat_grid: (nx, ny) quadrats for the homogeneity test.
            nsim: Simulations per envelope (default: 19).
            sigma: Kernel bandwidth in analysis units. If None it is chosen
                   by likelihood cross-validation.
            formulas: Candidate model formulas in order of complexity. If None,
                      an intercept-only model and an additive linear model in
                      all covariates are used.
            quadrature_stride: Covariate pixels per quadrature tile side.
            seed: Seed for the simulation envelopes.
            figure_dir: If given, every stage saves its figures here.

        Raises:
            FileNotFoundError: If any provided file path does not exist.
            ValueError: If a numeric setting is out of range or both covariate
                        inputs are given.
        """
        if unit_scale <= 0:
            raise ValueError("unit_scale must be positive")
        if nsim < 1:
            raise ValueError("nsim must be at least 1")
        if min(quadrat_grid) < 1:
            raise ValueError("quadrat_grid entries must be positive")
        if sigma is not None and sigma <= 0:
            raise ValueError("sigma must be positive")
        if covariate_paths and covariate_stack_path:
            raise ValueError("Give either covariate_paths or covariate_stack_path, not both")

        self.window_path = Path(window_path)
        self.points_path = Path(points_path)
        self.covariate_paths = {k: Path(v) for k, v in (covariate_paths or {}).items()}
        self.covariate_stack_path = Path(covariate_stack_path) if covariate_stack_path else None

        for path, name in [
            (self.window_path, "window"),
            (self.points_path, "points"),
            (self.covariate_stack_path, "covariate stack"),
            *[(p, f"covariate '{k}'") for k, p in self.covariate_paths.items()]
        ]:
            if path is not None and not path.exists():
                raise FileNotFoundError(f"{name} file not found: {path}")

        self.covariate_names = covariate_names
        self.x_col = x_col
        self.y_col = y_col
        self.unit_scale = unit_scale
        self.unit = unit
        self.quadrat_grid = tuple(quadrat_grid)
        self.nsim = nsim
        self.sigma = sigma
        self.formulas = formulas
        self.quadrature_stride = quadrature_stride
        self.seed = seed
        self.figure_dir = Path(figure_dir) if figure_dir else None
        if self.figure_dir is not None:
            self.figure_dir.mkdir(parents=True, exist_ok=True)

        # Cache for loaded data and shared intermediate results
        self._pattern: Optional[PointPattern] = None
        self._covariates: Optional[Dict[str, Raster]] = None
        self._kernel_surface: Optional[Raster] = None
        self._scheme: Optional[QuadratureScheme] = None
        self._models: Optional[Dict[str, FittedPPM]] = None

        print("=" * 60)
        print("PointProcessAnalyzer Initialized")
        print("=" * 60)
        print(f"  Window:      {self.window_path}")
        print(f"  Points:      {self.points_path}")
        if self.covariate_stack_path:
            print(f"  Covariates:  {self.covariate_stack_path} (stack)")
        else:
            print(f"  Covariates:  {list(self.covariate_paths) or 'Not provided'}")
        print(f"  Units:       1 {unit} = {unit_scale:g} input units")
        print(f"  Envelopes:   nsim={nsim}")
        print("=" * 60)

    @property
    def has_covariates(self) -> bool:
        return bool(self.covariate_paths) or self.covariate_stack_path is not None

    # =========================================================================
    # DATA LOADING
    # =========================================================================

    def _load_pattern(self) -> PointPattern:
        if self._pattern is None:
            raw_window = SpatialWindow.from_geojson(self.window_path)
            pattern = PointPattern.from_csv(
                self.points_path, raw_window, x_col=self.x_col, y_col=self.y_col
            )
            self._pattern = pattern.rescale(self.unit_scale, self.unit)
        return self._pattern

    def _load_covariates(self) -> Dict[str, Raster]:
        """
        Load and cache the covariate rasters in analysis units.

        Raises:
            ValueError: If no covariate input was provided.
        """
        if self._covariates is not None:
            return self._covariates

        if not self.has_covariates:
            raise ValueError("No covariates provided. Cannot compute covariate-based results.")

        if self.covariate_stack_path is not None:
            covariates = load_covariate_stack(self.covariate_stack_path, self.covariate_names)
        else:
            covariates = load_covariates(self.covariate_paths)

        self._covariates = {name: r.rescale(self.unit_scale) for name, r in covariates.items()}
        return self._covariates

    def _default_formulas(self) -> Dict[str, str]:
        if self.formulas:
            return dict(self.formulas)
        formulas = {'null': '1'}
        if self.has_covariates:
            formulas['linear'] = ' + '.join(self._load_covariates().keys())
        return formulas

    def _save_figure(self, fig, name: str) -> None:
        if self.figure_dir is not None:
            fig.savefig(self.figure_dir / f"{name}.png", dpi=150, bbox_inches='tight')
        plt.close(fig)

    # =========================================================================
    # STAGES
    # =========================================================================

    def describe(self) -> Dict[str, Any]:
        """
        Descriptive stage: intensity, quadrat test, kernel intensity and
        intensity per covariate class.

        Returns:
            Dict[str, Any]: Dictionary containing 'intensity', 'quadrat_test',
            'bandwidth' (None when sigma was fixed), 'sigma', 'kernel_surface'
            and 'class_intensity' (DataFrame per covariate, if available).
        """
        print("\n[STAGE] Descriptive exploration")
        pattern = self._load_pattern()

        results: Dict[str, Any] = {
            'intensity': intensity(pattern),
            'quadrat_test': quadrat_test(pattern, *self.quadrat_grid),
            'bandwidth': None,
        }

        sigma = self.sigma
        if sigma is None:
            results['bandwidth'] = bandwidth_likelihood_cv(pattern)
            sigma = results['bandwidth']['sigma']
        results['sigma'] = float(sigma)

        self._kernel_surface = kernel_intensity(pattern, sigma)
        results['kernel_surface'] = self._kernel_surface

        if self.has_covariates:
            results['class_intensity'] = {}
            for name, raster in self._load_covariates().items():
                classified = classify_raster(raster, window=pattern.window)
                results['class_intensity'][name] = intensity_by_class(pattern, classified)

        if self.figure_dir is not None:
            self._save_figure(plotting.plot_pattern(pattern), "pattern")
            self._save_figure(
                plotting.plot_quadrats(pattern, results['quadrat_test']['quadrats']), "quadrats")
            self._save_figure(
                plotting.plot_raster(self._kernel_surface, pattern, log=True), "kernel_intensity")

        return results

    def second_moment(self) -> Dict[str, Any]:
        """
        Second-moment stage: K and pcf envelopes under CSR and under the
        inhomogeneous Poisson process with the kernel intensity.

        Returns:
            Dict[str, Any]: Envelope results keyed 'K', 'pcf', 'K_inhom', 'pcf_inhom'.
        """
        print("\n[STAGE] Second-moment analysis")
        pattern = self._load_pattern()
        if self._kernel_surface is None:
            sigma = self.sigma or bandwidth_likelihood_cv(pattern)['sigma']
            self._kernel_surface = kernel_intensity(pattern, sigma)
        surface = floor_intensity(self._kernel_surface)

        results = {
            'K': envelope(pattern, 'K', nsim=self.nsim, seed=self.seed),
            'pcf': envelope(pattern, 'pcf', nsim=self.nsim, seed=self.seed),
            'K_inhom': envelope(pattern, 'K', nsim=self.nsim, intensity=surface, seed=self.seed),
            'pcf_inhom': envelope(pattern, 'pcf', nsim=self.nsim, intensity=surface, seed=self.seed),
        }

        if self.figure_dir is not None:
            for name, result in results.items():
                self._save_figure(plotting.plot_envelope(result), f"envelope_{name}")

        return results

    def covariate_response(self) -> Dict[str, Any]:
        """
        Covariate stage: pairwise correlation check and one rhohat curve per
        covariate.

        Returns:
            Dict[str, Any]: Dictionary with 'correlation' and 'rhohat'.
        """
        print("\n[STAGE] Covariate response")
        pattern = self._load_pattern()
        covariates = self._load_covariates()

        results: Dict[str, Any] = {'correlation': None}
        if len(covariates) > 1:
            results['correlation'] = covariate_correlation(covariates, pattern.window)
        results['rhohat'] = rhohat_all(pattern, covariates)

        if self.figure_dir is not None:
            for name, result in results['rhohat'].items():
                self._save_figure(plotting.plot_rhohat(result), f"rhohat_{name}")

        return results

    def fit_models(self) -> Dict[str, Any]:
        """
        Model stage: fit the candidate formulas on a shared quadrature scheme.

        Returns:
            Dict[str, Any]: Output of model_sequence() ('models' and 'table').
        """
        print("\n[STAGE] Model fitting")
        pattern = self._load_pattern()
        covariates = self._load_covariates() if self.has_covariates else {}

        self._scheme = QuadratureScheme.build(pattern, covariates, stride=self.quadrature_stride)
        results = model_sequence(self._scheme, self._default_formulas())
        self._models = results['models']

        print("\n" + results['table'].to_string(index=False))
        return results

    def diagnostics(self, model_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Diagnostic stage for one fitted model (default: the last candidate).

        Returns:
            Dict[str, Any]: Dictionary with 'model', 'partial_residuals'
            (one result per covariate) and 'residual_field'.

        Raises:
            KeyError: If model_name is not a fitted model.
        """
        print("\n[STAGE] Model diagnostics")
        if self._models is None:
            self.fit_models()
        if model_name is None:
            model_name = list(self._models)[-1]
        if model_name not in self._models:
            raise KeyError(f"Unknown model '{model_name}'. Fitted: {list(self._models)}")

        model = self._models[model_name]
        pattern = self._load_pattern()

        partial = {}
        for name in tqdm(self._scheme.covariate_names, desc="Partial residuals", unit="covariate"):
            partial[name] = partial_residuals(model, name)

        sigma = self.sigma
        if sigma is None:
            xmin, ymin, xmax, ymax = pattern.window.bounds
            sigma = 0.05 * min(xmax - xmin, ymax - ymin)
        field = residual_field(model, sigma)

        if self.figure_dir is not None:
            for name, result in partial.items():
                self._save_figure(plotting.plot_partial_residuals(result), f"parres_{name}")
            self._save_figure(plotting.plot_residual_field(field, pattern), "residual_field")

        return {
            'model': model_name,
            'partial_residuals': partial,
            'residual_field': field
        }

    # =========================================================================
    # REPORT GENERATION
    # =========================================================================

    def generate_report(
        self,
        output_path: Optional[str] = None
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Run every feasible stage and collect the results.

        Stages that need covariates are skipped when none were provided; a
        stage that raises is recorded as skipped with the error message and
        the remaining stages still run.

        Args:
            output_path: Optional path to save a JSON report. A summary CSV is
                         written next to it.

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]:
                - DataFrame with one row per key result
                - Dictionary with the full results (raw objects, not JSON-ready)
        """
        print("\n" + "=" * 60)
        print("GENERATING POINT PROCESS REPORT")
        print("=" * 60)

        report: Dict[str, Any] = {
            'metadata': {
                'window_path': str(self.window_path),
                'points_path': str(self.points_path),
                'covariate_paths': {k: str(v) for k, v in self.covariate_paths.items()},
                'covariate_stack_path': str(self.covariate_stack_path) if self.covariate_stack_path else None,
                'unit': self.unit,
                'unit_scale': self.unit_scale,
                'nsim': self.nsim,
                'seed': self.seed
            },
            'stages': {},
            'computed_stages': [],
            'skipped_stages': []
        }

        # (name, method, requires_covariates, summary extractor)
        stages_config: List[Tuple[str, Callable[[], Dict[str, Any]], bool,
                                  Callable[[Dict[str, Any]], List[Tuple[str, float]]]]] = [
            ('descriptive', self.describe, False, lambda r: [
                ('intensity', r['intensity']['intensity']),
                ('quadrat_p_value', r['quadrat_test']['p_value']),
                ('sigma', r['sigma']),
            ]),
            ('second_moment', self.second_moment, False, lambda r: [
                row for name, env in r.items() for row in _envelope_measures(name, env)
            ]),
            ('covariate_response', self.covariate_response, True, lambda r: [
                (f'rhohat_peak_{name}', float(res['z'][np.nanargmax(res['rho'])]))
                for name, res in r['rhohat'].items()
            ]),
            ('models', self.fit_models, False, lambda r: [
                (f'aic_{name}', model.aic) for name, model in r['models'].items()
            ]),
            ('diagnostics', self.diagnostics, False, lambda r: [
                (f'flat_fraction_{name}', res['flat_fraction'])
                for name, res in r['partial_residuals'].items()
            ] + [('residual_max', r['residual_field']['max'])]),
        ]

        summary_rows = []
        print(f"\nRunning {len(stages_config)} analysis stages...\n")

        for name, method, req_covariates, extract in stages_config:
            if req_covariates and not self.has_covariates:
                print(f"[SKIP] {name}: requires covariates")
                report['skipped_stages'].append({
                    'name': name,
                    'reason': "Missing: covariates"
                })
                continue

            try:
                result = method()
                report['stages'][name] = result
                report['computed_stages'].append(name)

                for key, value in extract(result):
                    summary_rows.append({
                        'stage': name,
                        'key_measure': key,
                        'value': float(value)
                    })

            except Exception as e:
                print(f"[ERROR] {name}: {e}")
                report['skipped_stages'].append({
                    'name': name,
                    'reason': str(e)
                })

        summary_df = pd.DataFrame(summary_rows, columns=['stage', 'key_measure', 'value'])

        print("\n" + "=" * 60)
        print("REPORT SUMMARY")
        print("=" * 60)
        print(f"Computed: {len(report['computed_stages'])} stages")
        print(f"Skipped: {len(report['skipped_stages'])} stages")
        print("\nKey Results:")
        print("-" * 40)
        for _, row in summary_df.iterrows():
            print(f"  {row['stage']:20s} {row['key_measure']:28s} = {row['value']:.6g}")
        print("=" * 60)

        if output_path is not None:
            output_path = Path(output_path)
            print(f"\nSaving report to: {output_path}")

            with open(output_path, 'w') as f:
                json.dump(to_serializable(report), f, indent=2)

            print("Report saved successfully!")

            csv_path = output_path.with_suffix('.csv')
            summary_df.to_csv(csv_path, index=False)
            print(f"Summary CSV saved to: {csv_path}")

        return summary_df, report


# =============================================================================
# SERIALIZATION
# =============================================================================


def to_serializable(obj: Any) -> Any:
    """Convert report contents (numpy, pandas, rasters, models) to JSON types."""
    if isinstance(obj, np.ndarray):
        return [to_serializable(v) for v in obj.tolist()]
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating, float)):
        return float(obj) if np.isfinite(obj) else None
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, pd.DataFrame):
        return to_serializable(obj.reset_index().to_dict(orient='records'))
    if isinstance(obj, Raster):
        finite = obj.data[np.isfinite(obj.data)]
        return {
            'name': obj.name,
            'shape': list(obj.shape),
            'pixel_size': list(obj.pixel_size),
            'min': float(finite.min()) if finite.size else None,
            'max': float(finite.max()) if finite.size else None
        }
    if isinstance(obj, FittedPPM):
        return to_serializable(obj.summary())
    if isinstance(obj, dict):
        return {str(k): to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_serializable(v) for v in obj]
    return obj


# =============================================================================
# MODULE-LEVEL CONVENIENCE FUNCTION
# =============================================================================


def analyze(
    window_path: str,
    points_path: str,
    covariate_paths: Optional[Dict[str, str]] = None,
    covariate_stack_path: Optional[str] = None,
    unit_scale: float = 1.0,
    unit: str = "units",
    formulas: Optional[Dict[str, str]] = None,
    seed: Optional[int] = None,
    output_path: Optional[str] = None
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Convenience function to run the full point-process analysis.

    This is a shortcut for creating a PointProcessAnalyzer and generating a
    report in a single function call.

    Returns:
        Tuple[pd.DataFrame, Dict[str, Any]]: Summary DataFrame and full report dict.

    Example:
        >>> from spatial_intensity import analyze
        >>> df, report = analyze(
        ...     window_path="bc_window.geojson",
        ...     points_path="eagles.csv",
        ...     covariate_stack_path="bc_covariates.tif",
        ...     unit_scale=1000, unit="km",
        ...     output_path="eagles.json"
        ... )
    """
    analyzer = PointProcessAnalyzer(
        window_path=window_path,
        points_path=points_path,
        covariate_paths=covariate_paths,
        covariate_stack_path=covariate_stack_path,
        unit_scale=unit_scale,
        unit=unit,
        formulas=formulas,
        seed=seed
    )

    return analyzer.generate_report(output_path=output_path)
