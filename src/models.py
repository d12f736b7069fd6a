"""
Log-linear Poisson point-process models fitted by maximum likelihood.

The intensity is modelled as

    log λ(u) = β₀ + Σ terms(Z₁(u), ..., Z_k(u))

where the terms are written as a patsy right-hand-side formula, e.g.
``"Elevation + I(Elevation**2) + bs(Forest, df=5)"``. Spline degrees of
freedom are part of the formula and are always chosen by the user; nothing in
this module selects them automatically.

Fitting uses the Berman-Turner device: the likelihood

    log L(β) = Σᵢ log λ(xᵢ) - ∫_W λ(u) du

is approximated on a quadrature scheme of data and dummy points with weights
wⱼ, which turns it into a weighted Poisson GLM with responses yⱼ = zⱼ / wⱼ
(zⱼ = 1 for data points, 0 for dummy points). The GLM is solved with
statsmodels.

Workflow:
    1. covariate_correlation()  - check collinearity before choosing terms
    2. QuadratureScheme.build() - one scheme shared by all candidate models
    3. fit_ppm() / model_sequence() - fit candidates
    4. compare_models()         - likelihood-ratio test and AIC
    5. partial_residuals(), residual_field() - diagnostics
"""

import re
import warnings
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from tqdm import tqdm

import patsy
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from scipy import ndimage
from scipy.stats import chi2, norm

from rasterio.transform import Affine

from .data import PointPattern, Raster, SpatialWindow
from .covariate_response import silverman_bandwidth, weighted_kernel_sum


class FittingWarning(UserWarning):
    """Numerical trouble while fitting a model (non-convergence, collinearity)."""


def _fitting_warning(message: str) -> None:
    print(f"[WARNING] {message}")
    warnings.warn(message, FittingWarning, stacklevel=3)


# =============================================================================
# COLLINEARITY CHECK
# =============================================================================


def covariate_correlation(
    covariates: Dict[str, Raster],
    window: SpatialWindow,
    method: str = "pearson",
    threshold: float = 0.7
) -> Dict[str, Any]:
    """
    Pairwise correlation of covariates over the pixels of the window.

    Run this before specifying a model: strongly correlated covariates make
    coefficient estimates unstable and hard to interpret.

    Args:
        covariates: Covariate rasters keyed by name.
        window: Window restricting the pixels used.
        method: 'pearson' or 'spearman' (default: 'pearson').
        threshold: Absolute correlation above which a pair is flagged.

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'matrix': Correlation matrix DataFrame
            - 'collinear': List of (name_a, name_b, r) pairs above threshold
            - 'n_pixels': Number of complete pixels used

    Raises:
        ValueError: If fewer than two covariates are given or method is invalid.
    """
    print(f"\n[METRIC] Covariate Correlation ({method})...")

    if method not in ("pearson", "spearman"):
        raise ValueError(f"Invalid method '{method}'. Use 'pearson' or 'spearman'.")
    if len(covariates) < 2:
        raise ValueError("Need at least two covariates")

    reference = next(iter(covariates.values()))
    mask = reference.window_mask(window)
    X, Y = reference.pixel_centers()
    xy = np.column_stack([X[mask], Y[mask]])

    frame = pd.DataFrame({name: raster.value_at(xy) for name, raster in covariates.items()})
    frame = frame.dropna()
    matrix = frame.corr(method=method)

    names = list(matrix.columns)
    collinear = []
    for a in range(len(names)):
        for b in range(a + 1, len(names)):
            r = float(matrix.iloc[a, b])
            if abs(r) >= threshold:
                collinear.append((names[a], names[b], r))
                print(f"[WARNING] {names[a]} and {names[b]} are strongly correlated (r={r:.3f})")

    print(f"  → {len(frame)} complete pixels, {len(collinear)} pairs above |r| ≥ {threshold}")

    return {
        'matrix': matrix,
        'collinear': collinear,
        'n_pixels': int(len(frame))
    }


# =============================================================================
# QUADRATURE
# =============================================================================


class QuadratureScheme:
    """
    Berman-Turner quadrature: data points plus a grid of dummy points.

    Dummy points sit at the centres of square tiles of ``stride`` × ``stride``
    covariate pixels whose centre lies inside the window. Each tile's area is
    shared equally among the data and dummy points that fall in it (counting
    weights). Covariate values are looked up at every quadrature point; points
    where any covariate is missing are dropped, so every model fitted on the
    scheme uses exactly the same points and nested models stay comparable.

    Attributes:
        data (pd.DataFrame): Columns 'x', 'y', 'is_data', 'weight' and one
                             column per covariate.
        pattern (PointPattern): The data pattern.
        window (SpatialWindow): Observation window.
        covariates (Dict[str, Raster]): Covariate rasters.
        grid (Raster): Pixel grid the dummy points were laid on.
        n_dropped_data (int): Data points dropped for missing covariates.
        n_dropped_dummy (int): Dummy points dropped for missing covariates.
    """

    def __init__(
        self,
        data: pd.DataFrame,
        pattern: PointPattern,
        window: SpatialWindow,
        covariates: Dict[str, Raster],
        grid: Raster,
        n_dropped_data: int = 0,
        n_dropped_dummy: int = 0
    ):
        self.data = data
        self.pattern = pattern
        self.window = window
        self.covariates = covariates
        self.grid = grid
        self.n_dropped_data = n_dropped_data
        self.n_dropped_dummy = n_dropped_dummy

    @property
    def n_data(self) -> int:
        return int(self.data['is_data'].sum())

    @property
    def n_dummy(self) -> int:
        return int((~self.data['is_data']).sum())

    @property
    def covariate_names(self) -> List[str]:
        return list(self.covariates.keys())

    @classmethod
    def build(
        cls,
        pattern: PointPattern,
        covariates: Optional[Dict[str, Raster]] = None,
        window: Optional[SpatialWindow] = None,
        stride: int = 1,
        n_pixels: int = 128
    ) -> "QuadratureScheme":
        """
        Build the quadrature scheme.

        Args:
            pattern: Data point pattern.
            covariates: Covariate rasters; the first one defines the dummy grid.
                        If None or empty, a grid of ``n_pixels`` along the
                        longer side of the window is used.
            window: Window (default: the pattern's window).
            stride: Pixels per tile side; larger values give fewer dummy points.
            n_pixels: Grid size when no covariates are supplied.

        Raises:
            ValueError: If stride is not positive or no data point survives.
        """
        if stride < 1:
            raise ValueError("stride must be a positive integer")

        window = window or pattern.window
        covariates = dict(covariates or {})
        if covariates:
            grid = next(iter(covariates.values()))
        else:
            grid = Raster.blank_for_window(window, n_pixels=n_pixels, name="grid")

        print(f"\n[INFO] Building quadrature scheme (stride={stride})...")

        t = grid.transform
        nrows = int(np.ceil(grid.shape[0] / stride))
        ncols = int(np.ceil(grid.shape[1] / stride))
        tiles = Raster(
            np.zeros((nrows, ncols)),
            Affine(t.a * stride, 0.0, t.c, 0.0, t.e * stride, t.f),
            name="tiles"
        )
        tile_area = tiles.pixel_area

        X, Y = tiles.pixel_centers()
        inside = tiles.window_mask(window)
        dummy_xy = np.column_stack([X[inside], Y[inside]])
        data_xy = pattern.coords

        xy = np.vstack([data_xy, dummy_xy])
        is_data = np.concatenate([np.ones(len(data_xy), bool), np.zeros(len(dummy_xy), bool)])

        rows, cols, _ = tiles.rowcol(xy)
        tile_id = rows * ncols + cols
        per_tile = np.bincount(tile_id, minlength=nrows * ncols)
        weight = tile_area / per_tile[tile_id]

        frame = pd.DataFrame({
            'x': xy[:, 0],
            'y': xy[:, 1],
            'is_data': is_data,
            'weight': weight
        })
        for name, raster in covariates.items():
            frame[name] = raster.value_at(xy)

        complete = frame[list(covariates.keys())].notna().all(axis=1).to_numpy()
        n_dropped_data = int(np.sum(~complete & is_data))
        n_dropped_dummy = int(np.sum(~complete & ~is_data))
        if n_dropped_data or n_dropped_dummy:
            fraction = (n_dropped_data + n_dropped_dummy) / len(frame)
            message = (f"Covariate values were missing at {fraction:.1%} of quadrature points "
                       f"({n_dropped_data} data, {n_dropped_dummy} dummy); they are excluded")
            print(f"[WARNING] {message}")
            warnings.warn(message, UserWarning, stacklevel=2)
        frame = frame[complete].reset_index(drop=True)

        if not frame['is_data'].any():
            raise ValueError("No data points with complete covariate values")

        print(f"  → {int(frame['is_data'].sum())} data points, "
              f"{int((~frame['is_data']).sum())} dummy points")

        return cls(frame, pattern, window, covariates, grid, n_dropped_data, n_dropped_dummy)


# =============================================================================
# FITTED MODEL
# =============================================================================


class FittedPPM:
    """
    A fitted log-linear Poisson point-process model.

    Instances are produced by fit_ppm() and never modified; refitting yields
    a new object.

    Attributes:
        formula (str): Right-hand side of the model formula.
        scheme (QuadratureScheme): Quadrature scheme the model was fitted on.
        result: statsmodels GLMResults.
        fit_warnings (List[str]): Warnings raised during fitting.
    """

    def __init__(
        self,
        formula: str,
        scheme: QuadratureScheme,
        result: Any,
        design: pd.DataFrame,
        fit_warnings: Optional[List[str]] = None
    ):
        self.formula = formula
        self.scheme = scheme
        self.result = result
        self._design = design
        self.design_info = design.design_info
        self.fit_warnings = fit_warnings or []

        eta = design.to_numpy() @ self.params.to_numpy()
        self._eta = eta
        is_data = scheme.data['is_data'].to_numpy()
        weight = scheme.data['weight'].to_numpy()
        self.loglik = float(np.sum(eta[is_data]) - np.sum(weight * np.exp(eta)))

    @property
    def params(self) -> pd.Series:
        return pd.Series(np.asarray(self.result.params), index=self._design.columns)

    @property
    def n_params(self) -> int:
        return int(self._design.shape[1])

    @property
    def aic(self) -> float:
        return -2.0 * self.loglik + 2.0 * self.n_params

    @property
    def bic(self) -> float:
        return -2.0 * self.loglik + np.log(self.scheme.n_data) * self.n_params

    @property
    def coefficients(self) -> pd.DataFrame:
        """Coefficient table with estimates, standard errors, z and p values."""
        ci = np.asarray(self.result.conf_int())
        return pd.DataFrame({
            'estimate': np.asarray(self.result.params),
            'std_error': np.asarray(self.result.bse),
            'z': np.asarray(self.result.tvalues),
            'p_value': np.asarray(self.result.pvalues),
            'ci_lower': ci[:, 0],
            'ci_upper': ci[:, 1]
        }, index=self._design.columns)

    def fitted_quadrature(self) -> np.ndarray:
        """Fitted intensity at every quadrature point."""
        return np.exp(self._eta)

    def _design_for(self, frame: pd.DataFrame) -> np.ndarray:
        """Design rows for new covariate values; rows with missing values give NaN."""
        frame = frame.copy()
        missing = np.zeros(len(frame), dtype=bool)
        for name in self.scheme.covariate_names + ['x', 'y']:
            if name not in frame:
                continue
            values = frame[name].to_numpy(dtype=float)
            missing |= ~np.isfinite(values)
            observed = self.scheme.data[name]
            # Spline bases are only defined inside the fitted covariate range
            frame[name] = np.clip(np.where(np.isfinite(values), values, observed.median()),
                                  observed.min(), observed.max())

        (design,) = patsy.build_design_matrices([self.design_info], frame)
        design = np.asarray(design, dtype=float)
        design[missing] = np.nan
        return design

    def predict(self, frame: pd.DataFrame) -> np.ndarray:
        """
        Predicted intensity for a table of covariate values.

        Args:
            frame: DataFrame with one column per covariate used by the model
                   (and 'x', 'y' if the formula uses coordinates).

        Returns:
            np.ndarray: Intensity per row; NaN where a covariate is missing.
        """
        return np.exp(self._design_for(frame) @ self.params.to_numpy())

    def predict_at(self, xy: np.ndarray) -> np.ndarray:
        """Predicted intensity at coordinates."""
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        frame = pd.DataFrame({'x': xy[:, 0], 'y': xy[:, 1]})
        for name, raster in self.scheme.covariates.items():
            frame[name] = raster.value_at(xy)
        return self.predict(frame)

    def predict_surface(self, grid: Optional[Raster] = None) -> Raster:
        """
        Predicted intensity surface over the window.

        Args:
            grid: Pixel grid to predict on (default: the quadrature grid).

        Returns:
            Raster: Intensity surface; NaN outside the window or where a
            covariate is missing.
        """
        grid = grid or self.scheme.grid
        mask = grid.window_mask(self.scheme.window)
        X, Y = grid.pixel_centers()
        surface = np.full(grid.shape, np.nan)
        surface[mask] = self.predict_at(np.column_stack([X[mask], Y[mask]]))
        return grid.with_data(surface, name="fitted_intensity")

    def effect(self, covariate: str, values: np.ndarray) -> np.ndarray:
        """
        Fitted contribution of one covariate to the log-intensity.

        Sums the model terms whose factors mention ``covariate``, evaluated at
        ``values`` with every other covariate held at its mean over the
        quadrature points. Returns zeros when the covariate is not in the model.

        Raises:
            KeyError: If the covariate is not part of the quadrature scheme.
        """
        if covariate not in self.scheme.data:
            raise KeyError(f"Unknown covariate '{covariate}'")

        values = np.asarray(values, dtype=float)
        pattern = re.compile(rf"\b{re.escape(covariate)}\b")
        columns = np.zeros(self.n_params, dtype=bool)
        for term in self.design_info.terms:
            if any(pattern.search(factor.code) for factor in term.factors):
                columns[self.design_info.slice(term)] = True
        if not columns.any():
            return np.zeros(len(values))

        means = self.scheme.data.mean(numeric_only=True)
        frame = pd.DataFrame({name: np.full(len(values), means[name])
                              for name in self.scheme.covariate_names + ['x', 'y']})
        frame[covariate] = values
        design = self._design_for(frame)
        return design[:, columns] @ self.params.to_numpy()[columns]

    def summary(self) -> Dict[str, Any]:
        """Plain-dict summary suitable for reports."""
        return {
            'formula': self.formula,
            'n_params': self.n_params,
            'loglik': self.loglik,
            'aic': self.aic,
            'bic': self.bic,
            'coefficients': self.coefficients.reset_index().rename(
                columns={'index': 'term'}).to_dict(orient='records'),
            'converged': bool(getattr(self.result, 'converged', True)),
            'warnings': list(self.fit_warnings)
        }

    def __repr__(self) -> str:
        return f"FittedPPM('{self.formula}', loglik={self.loglik:.3f}, aic={self.aic:.3f})"


def fit_ppm(
    scheme: QuadratureScheme,
    formula: str = "1",
    maxiter: int = 100,
    condition_limit: float = 1e8
) -> FittedPPM:
    """
    Fit a log-linear Poisson point-process model by maximum likelihood.

    Args:
        scheme: Quadrature scheme built from the pattern and covariates.
        formula: patsy right-hand-side formula (a leading '~' is allowed).
                 '1' fits the homogeneous (intercept-only) model.
        maxiter: Maximum IRLS iterations (default: 100).
        condition_limit: Condition number of the column-scaled design above
                         which a collinearity warning is issued.

    Returns:
        FittedPPM: The fitted model.

    Warns:
        FittingWarning: Non-convergence, rank-deficient or ill-conditioned
                        designs. The fit is still returned.

    Example:
        >>> scheme = QuadratureScheme.build(pattern, covariates)
        >>> null = fit_ppm(scheme, "1")
        >>> full = fit_ppm(scheme, "Elevation + I(Elevation**2) + bs(HFI, df=4)")
        >>> print(compare_models(null, full)['p_value'])
    """
    rhs = formula.strip()
    if rhs.startswith('~'):
        rhs = rhs[1:].strip()
    print(f"\n[MODEL] Fitting log λ ~ {rhs}")

    design = patsy.dmatrix(rhs, scheme.data, return_type='dataframe')
    weight = scheme.data['weight'].to_numpy()
    y = scheme.data['is_data'].to_numpy(dtype=float) / weight
    fit_warnings: List[str] = []

    matrix = design.to_numpy()
    if np.linalg.matrix_rank(matrix) < matrix.shape[1]:
        message = f"Design for '{rhs}' is rank deficient; terms are collinear"
        fit_warnings.append(message)
        _fitting_warning(message)
    else:
        norms = np.linalg.norm(matrix, axis=0)
        condition = np.linalg.cond(matrix / np.where(norms > 0, norms, 1.0))
        if condition > condition_limit:
            message = f"Design for '{rhs}' is ill-conditioned (condition number {condition:.3g})"
            fit_warnings.append(message)
            _fitting_warning(message)

    model = sm.GLM(y, design, family=sm.families.Poisson(), var_weights=weight)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        try:
            result = model.fit(maxiter=maxiter)
        except np.linalg.LinAlgError as e:
            message = f"IRLS failed for '{rhs}' ({e}); refitting with L-BFGS"
            fit_warnings.append(message)
            _fitting_warning(message)
            result = model.fit(method='lbfgs', maxiter=maxiter * 10)

    for w in caught:
        if issubclass(w.category, (ConvergenceWarning, RuntimeWarning)) or \
                'separation' in str(w.message).lower():
            message = f"{w.category.__name__} while fitting '{rhs}': {w.message}"
            fit_warnings.append(message)
            _fitting_warning(message)
        else:
            warnings.warn(w.message, w.category, stacklevel=2)

    if not getattr(result, 'converged', True):
        message = f"Fit for '{rhs}' did not converge in {maxiter} iterations"
        fit_warnings.append(message)
        _fitting_warning(message)

    fitted = FittedPPM(rhs, scheme, result, design, fit_warnings)
    print(f"  → {fitted.n_params} parameters, log-likelihood {fitted.loglik:.3f}, "
          f"AIC {fitted.aic:.3f}")
    return fitted


# =============================================================================
# MODEL COMPARISON
# =============================================================================


def _same_quadrature(a: QuadratureScheme, b: QuadratureScheme) -> bool:
    """True if both schemes hold the same points with the same weights."""
    if a is b:
        return True
    columns = ['x', 'y', 'is_data', 'weight']
    if len(a.data) != len(b.data):
        return False
    left = a.data[columns].reset_index(drop=True)
    right = b.data[columns].reset_index(drop=True)
    return left.equals(right)


def compare_models(
    simpler: FittedPPM, richer: FittedPPM, alpha: float = 0.05
) -> Dict[str, Any]:
    """
    Compare two nested models by likelihood-ratio test and AIC.

    The LR statistic 2(ℓ_richer - ℓ_simpler) is referred to a χ² distribution
    with df = difference in parameter count. AIC is lower-is-better; the sign
    of delta_aic = AIC_richer - AIC_simpler says which model it prefers.

    Args:
        simpler: The nested (smaller) model.
        richer: The larger model.
        alpha: Significance level for the LR decision (default: 0.05).

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'simpler', 'richer': Formulas
            - 'loglik_simpler', 'loglik_richer': Log-likelihoods
            - 'lr_statistic': LR statistic (never negative)
            - 'df': Degrees of freedom
            - 'p_value': χ² p-value
            - 'aic_simpler', 'aic_richer', 'delta_aic': Information criteria
            - 'preferred': 'richer' if delta_aic < 0, else 'simpler'
            - 'significant': p_value < alpha
            - 'consistent': Whether the LR decision and the AIC preference agree

    Raises:
        ValueError: If the models use different quadrature schemes or the
                    richer model does not have more parameters.
    """
    if not _same_quadrature(simpler.scheme, richer.scheme):
        raise ValueError("Models were fitted on different quadrature schemes")
    df = richer.n_params - simpler.n_params
    if df <= 0:
        raise ValueError("The richer model must have more parameters than the simpler one")

    raw = 2.0 * (richer.loglik - simpler.loglik)
    if raw < -1e-6 * max(1.0, abs(richer.loglik)):
        _fitting_warning(f"Richer model '{richer.formula}' has a lower log-likelihood than "
                         f"'{simpler.formula}'; the models may not be nested")
    lr = max(0.0, raw)
    p_value = float(chi2.sf(lr, df))
    delta_aic = richer.aic - simpler.aic
    significant = p_value < alpha
    preferred = 'richer' if delta_aic < 0 else 'simpler'

    print(f"\n[MODEL] {simpler.formula}  vs  {richer.formula}")
    print(f"  → LR = {lr:.3f}, df = {df}, p = {p_value:.4g}")
    print(f"  → ΔAIC = {delta_aic:.3f} (prefers {preferred})")

    return {
        'simpler': simpler.formula,
        'richer': richer.formula,
        'loglik_simpler': simpler.loglik,
        'loglik_richer': richer.loglik,
        'lr_statistic': float(lr),
        'df': int(df),
        'p_value': p_value,
        'aic_simpler': simpler.aic,
        'aic_richer': richer.aic,
        'delta_aic': float(delta_aic),
        'preferred': preferred,
        'significant': bool(significant),
        'consistent': bool(significant == (delta_aic < 0))
    }


def model_sequence(
    scheme: QuadratureScheme,
    formulas: Union[Sequence[str], Dict[str, str]]
) -> Dict[str, Any]:
    """
    Fit a sequence of candidate models and compare each with its predecessor.

    Args:
        scheme: Shared quadrature scheme.
        formulas: Formulas in order of increasing complexity, or a mapping of
                  model name to formula.

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'models': Dict of model name to FittedPPM
            - 'table': DataFrame with one row per model (formula, n_params,
                       loglik, aic, and LR test against the previous model
                       when it has fewer parameters)
    """
    if not isinstance(formulas, dict):
        formulas = {f"model_{k}": f for k, f in enumerate(formulas)}

    models: Dict[str, FittedPPM] = {}
    rows = []
    previous: Optional[FittedPPM] = None
    for name, formula in tqdm(formulas.items(), desc="Fitting models", unit="model"):
        model = fit_ppm(scheme, formula)
        models[name] = model
        row = {
            'model': name,
            'formula': model.formula,
            'n_params': model.n_params,
            'loglik': model.loglik,
            'aic': model.aic,
            'delta_aic': np.nan,
            'lr_statistic': np.nan,
            'df': np.nan,
            'p_value': np.nan
        }
        if previous is not None and previous.n_params < model.n_params:
            comparison = compare_models(previous, model)
            row.update({k: comparison[k] for k in ('delta_aic', 'lr_statistic', 'df', 'p_value')})
        rows.append(row)
        previous = model

    return {
        'models': models,
        'table': pd.DataFrame(rows)
    }


# =============================================================================
# DIAGNOSTICS
# =============================================================================


def partial_residuals(
    model: FittedPPM,
    covariate: str,
    n_grid: int = 128,
    bandwidth: Optional[float] = None,
    confidence: float = 0.95
) -> Dict[str, Any]:
    """
    Smoothed partial residuals for one covariate.

    Formula:
        h(z) = f̂(z) + log[ Σᵢ κ(z - zᵢ) / Σⱼ wⱼ λ̂(uⱼ) κ(z - zⱼ) ]

    where the first sum runs over data points and the second over all
    quadrature points. h(z) estimates the true effect of the covariate on
    the log-intensity. If the fitted term f̂ has the right form, the residual
    h - f̂ tracks zero; systematic departures suggest a missing curvature or
    spline term. For a covariate absent from the model f̂ = 0, so a flat h
    means the covariate has no effect left to explain.

    Args:
        model: Fitted model.
        covariate: Covariate name (must be in the model's quadrature scheme).
        n_grid: Number of covariate values evaluated (default: 128).
        bandwidth: Smoothing bandwidth; Silverman's rule on the data values
                   by default.
        confidence: Level of the pointwise band (default: 0.95).

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'covariate', 'z': Covariate name and evaluation values
            - 'h': Smoothed partial residual
            - 'fitted': Fitted effect f̂(z)
            - 'residual': h - f̂
            - 'lo', 'hi': Pointwise band around h
            - 'flat_fraction': Share of z where |residual| lies within the band
            - 'bandwidth': Bandwidth used

    Raises:
        KeyError: If the covariate is not in the quadrature scheme.
    """
    print(f"\n[DIAGNOSTIC] Partial residuals for '{covariate}' in '{model.formula}'...")

    data = model.scheme.data
    if covariate not in data:
        raise KeyError(f"Unknown covariate '{covariate}'")

    values = data[covariate].to_numpy(dtype=float)
    is_data = data['is_data'].to_numpy()
    mass = data['weight'].to_numpy() * model.fitted_quadrature()

    if bandwidth is None:
        bandwidth = silverman_bandwidth(values[is_data])

    dummy = values[~is_data] if (~is_data).any() else values
    z = np.linspace(dummy.min(), dummy.max(), n_grid)
    observed = weighted_kernel_sum(z, values[is_data], None, bandwidth)
    observed_sq = weighted_kernel_sum(z, values[is_data], None, bandwidth, power=2)
    expected = weighted_kernel_sum(z, values, mass, bandwidth)

    with np.errstate(divide='ignore', invalid='ignore'):
        log_ratio = np.log(observed / expected)
        se = np.sqrt(observed_sq) / observed

    fitted = model.effect(covariate, z)
    h = fitted + log_ratio
    residual = h - fitted

    crit = norm.ppf(0.5 + confidence / 2)
    finite = np.isfinite(residual) & np.isfinite(se)
    flat_fraction = float(np.mean(np.abs(residual[finite]) <= crit * se[finite])) if finite.any() else np.nan

    print(f"  → Bandwidth: {bandwidth:.4g}")
    print(f"  → Residual within band on {flat_fraction:.0%} of the covariate range")

    return {
        'covariate': covariate,
        'z': z,
        'h': h,
        'fitted': fitted,
        'residual': residual,
        'lo': h - crit * se,
        'hi': h + crit * se,
        'flat_fraction': flat_fraction,
        'bandwidth': float(bandwidth)
    }


def residual_field(
    model: FittedPPM,
    sigma: float,
    resolution: Optional[float] = None
) -> Dict[str, Any]:
    """
    Kernel-smoothed raw residual surface.

    Raw residuals put mass +1 at each data point and -wⱼ λ̂(uⱼ) at each
    quadrature point. Smoothing them gives a surface that is positive where
    the model under-predicts the number of points and negative where it
    over-predicts.

    Args:
        model: Fitted model.
        sigma: Smoothing bandwidth in window units.
        resolution: Pixel size (default: 128 pixels along the longer side).

    Returns:
        Dict[str, Any]: Dictionary containing:
            - 'raster': Smoothed residual Raster (NaN outside the window)
            - 'sigma': Bandwidth used
            - 'total': Sum of raw residuals (≈ 0 for models with an intercept)
            - 'min', 'max': Range of the smoothed field
            - 'max_location': (x, y) of the strongest under-prediction

    Raises:
        ValueError: If sigma is not positive.
    """
    if sigma <= 0:
        raise ValueError("sigma must be positive")
    print(f"\n[DIAGNOSTIC] Smoothed residual field (sigma={sigma:.4g})...")

    window = model.scheme.window
    data = model.scheme.data
    grid = Raster.blank_for_window(window, resolution, name="residuals")
    mask = grid.window_mask(window)

    xy = data[['x', 'y']].to_numpy()
    mass = np.where(data['is_data'].to_numpy(), 1.0, 0.0) - \
        data['weight'].to_numpy() * model.fitted_quadrature()

    rows, cols, _ = grid.rowcol(xy)
    raw = np.zeros(grid.shape)
    np.add.at(raw, (rows, cols), mass)

    sigma_px = sigma / grid.pixel_size[0]
    smoothed = ndimage.gaussian_filter(raw, sigma_px, mode='constant') / grid.pixel_area
    edge = ndimage.gaussian_filter(mask.astype(float), sigma_px, mode='constant')
    with np.errstate(divide='ignore', invalid='ignore'):
        smoothed = np.where(edge > 0, smoothed / edge, np.nan)
    smoothed[~mask] = np.nan

    raster = grid.with_data(smoothed)
    peak = np.unravel_index(np.nanargmax(smoothed), smoothed.shape)
    X, Y = grid.pixel_centers()

    summary = {
        'raster': raster,
        'sigma': float(sigma),
        'total': float(mass.sum()),
        'min': float(np.nanmin(smoothed)),
        'max': float(np.nanmax(smoothed)),
        'max_location': (float(X[peak]), float(Y[peak]))
    }

    print(f"  → Residual range: [{summary['min']:.4g}, {summary['max']:.4g}]")
    print(f"  → Largest under-prediction near {summary['max_location']}")
    return summary
