import numpy as np
import pytest

from spatial_intensity import PointPattern, rhohat, rhohat_all
from spatial_intensity.covariate_response import silverman_bandwidth, weighted_kernel_sum


def test_silverman_bandwidth():
    values = np.random.default_rng(0).normal(0, 2, 1000)
    assert silverman_bandwidth(values) == pytest.approx(0.9 * 2 * 1000 ** -0.2, rel=0.15)
    with pytest.raises(ValueError):
        silverman_bandwidth(np.ones(10))


def test_binned_kernel_sum_matches_direct():
    rng = np.random.default_rng(1)
    values = rng.uniform(0, 10, 5000)
    grid = np.linspace(0, 10, 50)
    direct = weighted_kernel_sum(grid, values, None, 0.5)
    binned = weighted_kernel_sum(grid, values, None, 0.5, max_direct=100)
    np.testing.assert_allclose(binned, direct, rtol=1e-3)


class TestRhohat:
    def test_flat_under_csr(self, csr_pattern, covariates):
        result = rhohat(csr_pattern, covariates['Elevation'])
        assert result['reference'] == pytest.approx(4.0)
        assert result['n_used'] == len(csr_pattern)
        assert result['n_missing'] == 0

        central = (result['z'] > 1.5) & (result['z'] < 8.5)
        ratio = result['rho'][central] / result['reference']
        assert np.all((ratio > 0.6) & (ratio < 1.5))

    def test_increasing_for_gradient(self, gradient_pattern, covariates):
        result = rhohat(gradient_pattern, covariates['Elevation'])
        low = np.nanmean(result['rho'][result['z'] < 3])
        high = np.nanmean(result['rho'][result['z'] > 7])
        assert high > 3 * low
        assert np.all(result['lo'] <= result['rho'])
        assert np.all(result['rho'] <= result['hi'])

    def test_integrates_to_number_of_points(self, gradient_pattern, covariates):
        # ∫ρ̂(z) f(z) dz over the covariate distribution recovers n
        result = rhohat(gradient_pattern, covariates['Dist_Water'], n_grid=256)
        values = covariates['Dist_Water'].data.ravel()
        total = np.sum(np.interp(values, result['z'], result['rho'])) * covariates['Dist_Water'].pixel_area
        assert total == pytest.approx(len(gradient_pattern), rel=0.1)

    def test_missing_covariate_values(self, csr_pattern, covariates):
        data = covariates['Elevation'].data.copy()
        data[:, :10] = np.nan  # x < 2
        raster = covariates['Elevation'].with_data(data)

        result = rhohat(csr_pattern, raster)
        assert result['n_missing'] == int(np.sum(csr_pattern.x < 2))
        assert result['n_used'] + result['n_missing'] == len(csr_pattern)
        assert result['z'].min() >= 2

    def test_fixed_bandwidth(self, csr_pattern, covariates):
        result = rhohat(csr_pattern, covariates['Elevation'], bandwidth=0.8, n_grid=32)
        assert result['bandwidth'] == 0.8
        assert len(result['z']) == 32

    def test_too_few_points(self, window, covariates):
        with pytest.raises(ValueError):
            rhohat(PointPattern([[1, 1]], window), covariates['Elevation'])

    def test_all_covariates(self, csr_pattern, covariates):
        results = rhohat_all(csr_pattern, covariates, n_grid=16)
        assert set(results) == set(covariates)
        assert all(len(r['rho']) == 16 for r in results.values())
