import numpy as np
import pandas as pd
import pytest

from spatial_intensity import (
    FittingWarning, QuadratureScheme, compare_models, covariate_correlation, fit_ppm,
    model_sequence, partial_residuals, residual_field, simulate_csr
)


@pytest.fixture
def gradient_scheme(gradient_pattern, covariates):
    return QuadratureScheme.build(gradient_pattern, covariates)


@pytest.fixture
def humped_scheme(humped_pattern, covariates):
    return QuadratureScheme.build(humped_pattern, covariates)


class TestCovariateCorrelation:
    def test_flags_collinear_pair(self, covariates, window):
        result = covariate_correlation(covariates, window)
        assert result['n_pixels'] == 2500
        assert result['matrix'].shape == (3, 3)
        flagged = {(a, b) for a, b, _ in result['collinear']}
        assert flagged == {('Elevation', 'Forest')}

    def test_spearman(self, covariates, window):
        result = covariate_correlation(covariates, window, method="spearman", threshold=0.99)
        assert result['matrix'].loc['Elevation', 'Dist_Water'] == pytest.approx(0.0, abs=1e-9)

    def test_invalid_input(self, covariates, window):
        with pytest.raises(ValueError):
            covariate_correlation(covariates, window, method="kendall")
        with pytest.raises(ValueError):
            covariate_correlation({'Elevation': covariates['Elevation']}, window)


class TestQuadratureScheme:
    def test_weights_cover_window(self, gradient_scheme, gradient_pattern):
        data = gradient_scheme.data
        assert gradient_scheme.n_data == len(gradient_pattern)
        assert gradient_scheme.n_dummy == 2500
        assert data['weight'].sum() == pytest.approx(100.0)
        assert (data['weight'] > 0).all()
        assert {'x', 'y', 'is_data', 'weight', 'Elevation', 'Forest', 'Dist_Water'} <= set(data)

    def test_stride_reduces_dummies(self, gradient_pattern, covariates):
        scheme = QuadratureScheme.build(gradient_pattern, covariates, stride=5)
        assert scheme.n_dummy == 100
        assert scheme.data['weight'].sum() == pytest.approx(100.0)

    def test_without_covariates(self, csr_pattern):
        scheme = QuadratureScheme.build(csr_pattern, n_pixels=20)
        assert scheme.n_dummy == 400
        assert scheme.covariate_names == []

    def test_missing_covariates_are_dropped(self, csr_pattern, covariates):
        data = covariates['Elevation'].data.copy()
        data[:, :10] = np.nan
        patched = dict(covariates, Elevation=covariates['Elevation'].with_data(data))

        with pytest.warns(UserWarning, match="missing"):
            scheme = QuadratureScheme.build(csr_pattern, patched)
        assert scheme.n_dropped_data == int(np.sum(csr_pattern.x < 2))
        assert scheme.n_dropped_dummy == 500
        assert scheme.data[scheme.covariate_names].notna().all().all()

    def test_invalid_stride(self, csr_pattern):
        with pytest.raises(ValueError):
            QuadratureScheme.build(csr_pattern, stride=0)


class TestFitting:
    def test_null_model_recovers_mean_intensity(self, gradient_scheme):
        n = gradient_scheme.n_data
        model = fit_ppm(gradient_scheme, "1")
        assert np.exp(model.params['Intercept']) == pytest.approx(n / 100.0, rel=1e-4)
        assert model.loglik == pytest.approx(n * np.log(n / 100.0) - n, rel=1e-6)
        assert model.n_params == 1
        assert model.aic == pytest.approx(-2 * model.loglik + 2)

    def test_linear_effect_recovered(self, gradient_scheme):
        model = fit_ppm(gradient_scheme, "~ Elevation")
        assert model.params['Elevation'] == pytest.approx(0.3, abs=0.1)
        table = model.coefficients
        assert list(table.columns) == ['estimate', 'std_error', 'z', 'p_value', 'ci_lower', 'ci_upper']
        assert table.loc['Elevation', 'p_value'] < 1e-6
        row = table.loc['Elevation']
        assert row['ci_lower'] < row['estimate'] < row['ci_upper']

    def test_prediction(self, gradient_scheme):
        model = fit_ppm(gradient_scheme, "Elevation")
        surface = model.predict_surface()
        assert surface.shape == (50, 50)
        assert np.all(surface.data > 0)
        assert surface.integral() == pytest.approx(gradient_scheme.n_data, rel=0.01)

        at = model.predict_at(np.array([[1.0, 5.0], [9.0, 5.0]]))
        assert at[1] > at[0]
        missing = model.predict(pd.DataFrame({'Elevation': [np.nan, 5.0]}))
        assert np.isnan(missing[0]) and missing[1] > 0

    def test_spline_formula(self, humped_scheme):
        model = fit_ppm(humped_scheme, "bs(Elevation, df=4)")
        assert model.n_params == 5
        effect = model.effect('Elevation', np.array([1.0, 5.0, 9.0]))
        assert effect[1] > effect[0] and effect[1] > effect[2]
        assert np.all(model.effect('Dist_Water', np.array([1.0, 2.0])) == 0)

    def test_prediction_outside_range_is_clipped(self, humped_scheme):
        model = fit_ppm(humped_scheme, "bs(Elevation, df=4)")
        inside = model.predict(pd.DataFrame({'Elevation': [9.9]}))
        outside = model.predict(pd.DataFrame({'Elevation': [25.0]}))
        np.testing.assert_allclose(outside, inside)

    def test_collinear_design_warns(self, gradient_pattern, covariates):
        doubled = dict(covariates, Elevation2=covariates['Elevation'])
        scheme = QuadratureScheme.build(gradient_pattern, doubled)
        with pytest.warns(FittingWarning, match="rank deficient"):
            model = fit_ppm(scheme, "Elevation + Elevation2")
        assert model.fit_warnings

    def test_summary(self, gradient_scheme):
        summary = fit_ppm(gradient_scheme, "Elevation + Dist_Water").summary()
        assert summary['formula'] == "Elevation + Dist_Water"
        assert summary['n_params'] == 3
        assert [row['term'] for row in summary['coefficients']] == ['Intercept', 'Elevation', 'Dist_Water']
        assert summary['converged']


class TestComparison:
    def test_covariate_effect_is_significant(self, gradient_scheme):
        null = fit_ppm(gradient_scheme, "1")
        linear = fit_ppm(gradient_scheme, "Elevation")
        result = compare_models(null, linear)

        assert result['lr_statistic'] >= 0
        assert result['loglik_richer'] >= result['loglik_simpler']
        assert result['df'] == 1
        assert result['significant']
        assert result['delta_aic'] < 0
        assert result['preferred'] == 'richer'
        assert result['consistent']

    def test_irrelevant_covariate(self, gradient_scheme):
        linear = fit_ppm(gradient_scheme, "Elevation")
        extra = fit_ppm(gradient_scheme, "Elevation + Dist_Water")
        result = compare_models(linear, extra)
        assert result['lr_statistic'] >= 0
        assert result['loglik_richer'] >= result['loglik_simpler'] - 1e-6

    def test_spline_beats_linear_for_humped_response(self, humped_scheme):
        linear = fit_ppm(humped_scheme, "Elevation")
        spline = fit_ppm(humped_scheme, "bs(Elevation, df=4)")
        result = compare_models(linear, spline)
        assert result['df'] == 3
        assert result['significant'] and result['delta_aic'] < 0

    def test_requires_more_parameters(self, gradient_scheme):
        linear = fit_ppm(gradient_scheme, "Elevation")
        with pytest.raises(ValueError):
            compare_models(linear, linear)

    def test_rejects_models_on_different_schemes(self, window, covariates):
        first = QuadratureScheme.build(simulate_csr(window, 300, np.random.default_rng(21)), covariates)
        second = QuadratureScheme.build(simulate_csr(window, 300, np.random.default_rng(22)), covariates)
        assert len(first.data) == len(second.data)
        with pytest.raises(ValueError, match="different quadrature schemes"):
            compare_models(fit_ppm(first, "1"), fit_ppm(second, "Elevation"))

    def test_accepts_identical_rebuilt_scheme(self, gradient_pattern, covariates, gradient_scheme):
        rebuilt = QuadratureScheme.build(gradient_pattern, covariates)
        result = compare_models(fit_ppm(gradient_scheme, "1"), fit_ppm(rebuilt, "Elevation"))
        assert result['df'] == 1

    def test_model_sequence(self, gradient_scheme):
        result = model_sequence(gradient_scheme, {
            'null': '1',
            'linear': 'Elevation',
            'full': 'Elevation + Dist_Water',
        })
        table = result['table']
        assert list(table['model']) == ['null', 'linear', 'full']
        assert np.isnan(table.loc[0, 'p_value'])
        assert table.loc[1, 'p_value'] < 1e-6
        assert (table['lr_statistic'].dropna() >= 0).all()
        assert set(result['models']) == {'null', 'linear', 'full'}

    def test_model_sequence_from_list(self, gradient_scheme):
        result = model_sequence(gradient_scheme, ['1', 'Elevation'])
        assert list(result['models']) == ['model_0', 'model_1']


class TestDiagnostics:
    def test_partial_residuals_flat_for_unrelated_covariate(self, gradient_scheme):
        model = fit_ppm(gradient_scheme, "Elevation")
        result = partial_residuals(model, 'Dist_Water')

        assert np.all(result['fitted'] == 0)
        z = result['z']
        central = (z > np.quantile(z, 0.1)) & (z < np.quantile(z, 0.9))
        assert np.nanmax(np.abs(result['residual'][central])) < 0.5

    def test_partial_residuals_flat_for_correct_form(self, gradient_scheme):
        model = fit_ppm(gradient_scheme, "Elevation")
        result = partial_residuals(model, 'Elevation')
        z = result['z']
        central = (z > 3) & (z < 8)
        assert np.nanmax(np.abs(result['residual'][central])) < 0.6
        np.testing.assert_allclose(np.diff(result['fitted']), model.params['Elevation'] * np.diff(z))

    def test_partial_residuals_reveal_curvature(self, humped_scheme):
        model = fit_ppm(humped_scheme, "Elevation")
        result = partial_residuals(model, 'Elevation')
        z, residual = result['z'], result['residual']
        centre = residual[np.argmin(np.abs(z - 5))]
        shoulder = residual[np.argmin(np.abs(z - 3))]
        assert centre - shoulder > 0.6

    def test_partial_residuals_unknown_covariate(self, gradient_scheme):
        model = fit_ppm(gradient_scheme, "1")
        with pytest.raises(KeyError):
            partial_residuals(model, 'HFI')

    def test_residual_field(self, gradient_scheme):
        model = fit_ppm(gradient_scheme, "1")
        result = residual_field(model, sigma=1.5)

        assert result['total'] == pytest.approx(0.0, abs=1e-3 * gradient_scheme.n_data)
        assert result['max_location'][0] > 5
        assert result['min'] < 0 < result['max']
        assert result['raster'].shape == (128, 128)

    def test_residual_field_invalid_sigma(self, gradient_scheme):
        model = fit_ppm(gradient_scheme, "1")
        with pytest.raises(ValueError):
            residual_field(model, sigma=0)
