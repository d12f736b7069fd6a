import numpy as np
import pytest
from shapely.geometry import box
from shapely.ops import unary_union

from spatial_intensity import (
    PointPattern, Raster, SpatialWindow, bandwidth_likelihood_cv, classify_raster,
    floor_intensity, intensity, intensity_by_class, kernel_intensity, quadrat_counts,
    quadrat_test, simulate_csr
)


@pytest.fixture
def l_window():
    return SpatialWindow(unary_union([box(0, 0, 10, 5), box(0, 5, 5, 10)]))


@pytest.fixture
def lattice_pattern(window):
    centres = (np.arange(20) + 0.5) * 0.5
    X, Y = np.meshgrid(centres, centres)
    return PointPattern(np.column_stack([X.ravel(), Y.ravel()]), window)


class TestIntensity:
    def test_points_per_unit_area(self):
        side = np.sqrt(948550.0)
        window = SpatialWindow.from_bounds(0, 0, side, side, unit="km")
        pattern = simulate_csr(window, 5000, np.random.default_rng(0))

        result = intensity(pattern)
        assert result['n_points'] == 5000
        assert result['area'] == pytest.approx(948550.0)
        assert result['intensity'] == pytest.approx(0.005271, abs=1e-6)
        assert result['unit'] == "km"

    def test_empty_pattern(self, window):
        assert intensity(PointPattern(np.zeros((0, 2)), window))['intensity'] == 0.0


class TestQuadrats:
    def test_counts_sum_to_n_for_any_grid(self, csr_pattern):
        for nx, ny in [(1, 1), (3, 3), (5, 2), (7, 4)]:
            result = quadrat_counts(csr_pattern, nx, ny)
            assert result['counts'].shape == (ny, nx)
            assert result['total'] == len(csr_pattern)

    def test_edge_points_are_counted(self, window):
        pattern = PointPattern([[0, 0], [10, 10], [10, 0]], window)
        counts = quadrat_counts(pattern, 2, 2)['counts']
        assert counts.sum() == 3
        assert counts[0, 1] == 1  # north-east corner
        assert counts[1, 0] == 1
        assert counts[1, 1] == 1

    def test_cells_outside_window_are_invalid(self, l_window):
        pattern = PointPattern([[1, 1], [8, 2], [2, 8]], l_window)
        result = quadrat_counts(pattern, 2, 2)
        assert result['valid'].tolist() == [[True, False], [True, True]]
        assert result['areas'][0, 1] == 0.0
        assert result['areas'].sum() == pytest.approx(l_window.area)

    def test_invalid_grid(self, csr_pattern):
        with pytest.raises(ValueError):
            quadrat_counts(csr_pattern, 0, 3)

    def test_csr_is_not_rejected(self, csr_pattern):
        result = quadrat_test(csr_pattern, 3, 3)
        assert result['df'] == 8
        assert result['observed'].sum() == pytest.approx(result['expected'].sum())
        assert result['p_value'] > 0.001

    def test_clustered_pattern_is_rejected(self, clustered_pattern):
        result = quadrat_test(clustered_pattern, 3, 3, alternative="clustered")
        assert result['p_value'] < 1e-6
        assert result['dispersion_index'] > 5

    def test_lattice_is_regular(self, lattice_pattern):
        result = quadrat_test(lattice_pattern, 4, 4, alternative="regular")
        assert result['statistic'] == pytest.approx(0.0)
        assert result['dispersion_index'] == pytest.approx(0.0)
        assert result['p_value'] < 0.01

    def test_l_window_uses_valid_cells_only(self, l_window):
        rng = np.random.default_rng(7)
        pattern = simulate_csr(l_window, 300, rng)
        result = quadrat_test(pattern, 2, 2)
        assert result['n_cells'] == 3
        assert result['df'] == 2

    def test_small_expected_counts_warn(self, window):
        pattern = PointPattern([[1, 1], [9, 9], [5, 5]], window)
        with pytest.warns(UserWarning, match="below 5"):
            quadrat_test(pattern, 3, 3)

    def test_invalid_alternative(self, csr_pattern):
        with pytest.raises(ValueError, match="alternative"):
            quadrat_test(csr_pattern, alternative="greater")


class TestKernelIntensity:
    def test_integrates_to_number_of_points(self, csr_pattern):
        corrected = kernel_intensity(csr_pattern, 1.0)
        uncorrected = kernel_intensity(csr_pattern, 1.0, edge_correct=False)

        assert corrected.integral() == pytest.approx(len(csr_pattern), rel=0.1)
        assert uncorrected.integral() < len(csr_pattern)
        assert np.nanmin(corrected.data) > 0

    def test_nan_outside_window(self, l_window):
        pattern = simulate_csr(l_window, 200, np.random.default_rng(8))
        surface = kernel_intensity(pattern, 1.0)
        values = surface.value_at(np.array([[8.0, 8.0], [2.0, 2.0]]))
        assert np.isnan(values[0])
        assert values[1] > 0

    def test_points_on_east_and_south_edges(self, window):
        for on_edge, just_inside in (([10.0, 5.0], [9.99, 5.0]), ([5.0, 0.0], [5.0, 0.01])):
            edge = kernel_intensity(PointPattern([on_edge], window), 1.0)
            inner = kernel_intensity(PointPattern([just_inside], window), 1.0)
            assert edge.integral() > 0.5
            np.testing.assert_allclose(edge.data, inner.data)

    def test_weights(self, csr_pattern):
        plain = kernel_intensity(csr_pattern, 1.0)
        doubled = kernel_intensity(csr_pattern, 1.0, weights=np.full(len(csr_pattern), 2.0))
        np.testing.assert_allclose(doubled.data, 2 * plain.data)

    def test_non_positive_sigma(self, csr_pattern):
        with pytest.raises(ValueError):
            kernel_intensity(csr_pattern, 0.0)

    def test_bandwidth_cv_prefers_small_sigma_for_clusters(self, clustered_pattern):
        result = bandwidth_likelihood_cv(clustered_pattern, sigmas=[0.25, 0.5, 1.0, 2.0, 4.0])
        assert result['sigma'] in result['sigmas']
        assert result['sigma'] <= 0.5
        assert np.argmax(result['cv']) == list(result['sigmas']).index(result['sigma'])

    def test_bandwidth_cv_default_grid(self, csr_pattern):
        result = bandwidth_likelihood_cv(csr_pattern, n_sigmas=8)
        assert len(result['sigmas']) == 8
        assert np.all(np.diff(result['sigmas']) > 0)
        assert result['sigmas'][-1] == pytest.approx(np.hypot(10, 10) / 2)
        assert np.isfinite(result['cv']).any()

    def test_bandwidth_cv_needs_two_points(self, window):
        with pytest.raises(ValueError):
            bandwidth_likelihood_cv(PointPattern([[1, 1]], window))


class TestFloorIntensity:
    def test_default_floor(self, transform):
        surface = Raster(np.array([[0.0, 1.0], [np.nan, 2.0]]), transform)
        floored = floor_intensity(surface)
        assert floored.data[0, 0] == pytest.approx(2e-6)
        assert np.isnan(floored.data[1, 0])
        assert floored.data[1, 1] == 2.0

    def test_explicit_floor(self, transform):
        surface = Raster(np.array([[0.0, 1.0]]), transform)
        assert floor_intensity(surface, 0.5).data.tolist() == [[0.5, 1.0]]

    def test_no_positive_values(self, transform):
        with pytest.raises(ValueError):
            floor_intensity(Raster(np.zeros((2, 2)), transform))


class TestCovariateClasses:
    def test_quantile_classes(self, covariates, window):
        result = classify_raster(covariates['Elevation'], window=window)
        classes = result['raster'].data
        assert len(result['breaks']) == 5
        assert len(result['labels']) == 4
        assert sorted(np.unique(classes)) == [0, 1, 2, 3]

    def test_missing_cells_get_no_class(self, covariates):
        data = covariates['Elevation'].data.copy()
        data[:5, :] = np.nan
        result = classify_raster(covariates['Elevation'].with_data(data), breaks=[0, 5, 10])
        assert np.all(result['raster'].data[:5, :] == -1)
        assert result['labels'] == ['[0, 5)', '[5, 10]']

    def test_invalid_breaks(self, covariates):
        with pytest.raises(ValueError):
            classify_raster(covariates['Elevation'], breaks=[5, 1])

    def test_intensity_rises_with_elevation(self, gradient_pattern, covariates):
        classified = classify_raster(covariates['Elevation'], window=gradient_pattern.window)
        table = intensity_by_class(gradient_pattern, classified)

        assert table['count'].sum() == len(gradient_pattern)
        assert table['area'].sum() == pytest.approx(100.0)
        assert table['intensity'].is_monotonic_increasing
