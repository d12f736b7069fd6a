import json

import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import Affine, from_origin

from spatial_intensity import (
    PointPattern, Raster, SpatialWindow, load_covariate_stack, load_covariates
)


def _write_tif(path, layers, transform, descriptions=None, nodata=-9999.0):
    height, width = layers[0].shape
    with rasterio.open(
        path, 'w', driver='GTiff', height=height, width=width, count=len(layers),
        dtype='float64', transform=transform, nodata=nodata
    ) as dst:
        for i, layer in enumerate(layers, start=1):
            dst.write(np.where(np.isnan(layer), nodata, layer), i)
            if descriptions:
                dst.set_band_description(i, descriptions[i - 1])


class TestSpatialWindow:
    def test_area_and_bounds(self, window):
        assert window.area == pytest.approx(100.0)
        assert window.bounds == (0.0, 0.0, 10.0, 10.0)

    def test_contains_counts_boundary_as_inside(self, window):
        inside = window.contains(np.array([[5, 5], [10, 10], [10.5, 5]]))
        assert inside.tolist() == [True, True, False]

    def test_boundary_distance(self, window):
        d = window.boundary_distance(np.array([[5, 5], [1, 4]]))
        np.testing.assert_allclose(d, [5.0, 1.0])

    def test_rescale(self, window):
        scaled = window.rescale(10, "dam")
        assert scaled.area == pytest.approx(1.0)
        assert scaled.unit == "dam"

    def test_rescale_rejects_non_positive(self, window):
        with pytest.raises(ValueError):
            window.rescale(0)

    def test_from_geojson_unions_features(self, tmp_path):
        features = [
            {'type': 'Feature', 'properties': {},
             'geometry': {'type': 'Polygon',
                          'coordinates': [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]]}},
            {'type': 'Feature', 'properties': {},
             'geometry': {'type': 'Polygon',
                          'coordinates': [[[1, 0], [2, 0], [2, 1], [1, 1], [1, 0]]]}},
        ]
        path = tmp_path / "window.geojson"
        path.write_text(json.dumps({'type': 'FeatureCollection', 'features': features}))

        window = SpatialWindow.from_geojson(path)
        assert window.area == pytest.approx(2.0)
        assert window.bounds == (0.0, 0.0, 2.0, 1.0)

    def test_from_geojson_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SpatialWindow.from_geojson(tmp_path / "nope.geojson")

    def test_from_geojson_without_polygons(self, tmp_path):
        path = tmp_path / "point.geojson"
        path.write_text(json.dumps({'type': 'Point', 'coordinates': [0, 0]}))
        with pytest.raises(ValueError):
            SpatialWindow.from_geojson(path)


class TestPointPattern:
    def test_rejects_points_outside_window(self, window):
        with pytest.raises(ValueError, match="outside"):
            PointPattern([[1, 1], [11, 1]], window)

    def test_coordinates_are_read_only(self, csr_pattern):
        with pytest.raises(ValueError):
            csr_pattern.coords[0, 0] = 0.0

    def test_rescale_keeps_points_inside(self, window):
        pattern = PointPattern([[0, 0], [10, 10], [3, 7]], window)
        scaled = pattern.rescale(1000, "Mm")
        assert len(scaled) == 3
        assert scaled.window.unit == "Mm"
        np.testing.assert_allclose(scaled.coords[2], [0.003, 0.007])

    def test_from_csv_drops_outside_and_missing(self, tmp_path, window):
        path = tmp_path / "points.csv"
        pd.DataFrame({
            'X': [1.0, 2.0, 50.0, None, 'bad'],
            'Y': [1.0, 2.0, 5.0, 3.0, 4.0],
            'species': ['eagle'] * 5
        }).to_csv(path, index=False)

        pattern = PointPattern.from_csv(path, window)
        assert len(pattern) == 2

    def test_from_csv_strict_mode_raises(self, tmp_path, window):
        path = tmp_path / "points.csv"
        pd.DataFrame({'X': [1.0, 50.0], 'Y': [1.0, 5.0]}).to_csv(path, index=False)
        with pytest.raises(ValueError):
            PointPattern.from_csv(path, window, drop_outside=False)

    def test_from_csv_custom_columns(self, tmp_path, window):
        path = tmp_path / "points.csv"
        pd.DataFrame({'lon': [1.0, 2.0], 'lat': [3.0, 4.0]}).to_csv(path, index=False)
        pattern = PointPattern.from_csv(path, window, x_col="lon", y_col="lat")
        np.testing.assert_allclose(pattern.y, [3.0, 4.0])

    def test_from_csv_missing_columns(self, tmp_path, window):
        path = tmp_path / "points.csv"
        pd.DataFrame({'a': [1.0], 'b': [2.0]}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="Missing coordinate columns"):
            PointPattern.from_csv(path, window)


class TestRaster:
    def test_value_at_and_missing(self, transform):
        data = np.arange(2500, dtype=float).reshape(50, 50)
        data[0, 0] = np.nan
        raster = Raster(data, transform, 'test')

        values = raster.value_at(np.array([[0.1, 9.9], [0.3, 9.9], [11.0, 5.0], [5.1, 4.9]]))
        assert np.isnan(values[0])
        assert values[1] == 1.0
        assert np.isnan(values[2])
        assert values[3] == data[25, 25]

    def test_pixel_geometry(self, transform):
        raster = Raster(np.zeros((50, 50)), transform)
        assert raster.pixel_size == pytest.approx((0.2, 0.2))
        assert raster.pixel_area == pytest.approx(0.04)
        X, Y = raster.pixel_centers()
        assert X[0, 0] == pytest.approx(0.1)
        assert Y[0, 0] == pytest.approx(9.9)

    def test_rotated_transform_rejected(self):
        with pytest.raises(ValueError):
            Raster(np.zeros((2, 2)), Affine(1, 0.5, 0, 0, -1, 2))

    def test_masked_sets_outside_to_nan(self, transform):
        raster = Raster(np.ones((50, 50)), transform)
        half = SpatialWindow.from_bounds(0, 0, 5, 10)
        masked = raster.masked(half)
        assert np.all(np.isnan(masked.data[:, 25:]))
        assert np.all(masked.data[:, :25] == 1.0)
        assert masked.integral() == pytest.approx(50.0)

    def test_rescale_grid(self):
        raster = Raster(np.ones((50, 50)), from_origin(0, 10000, 200, 200))
        scaled = raster.rescale(1000)
        assert scaled.pixel_size == pytest.approx((0.2, 0.2))
        assert scaled.transform.f == pytest.approx(10.0)
        np.testing.assert_array_equal(scaled.data, raster.data)

    def test_blank_for_window(self, window):
        grid = Raster.blank_for_window(window, n_pixels=64)
        assert grid.shape == (64, 64)
        assert np.all(np.isnan(grid.data))

    def test_from_file_nodata_becomes_nan(self, tmp_path, transform):
        layer = np.ones((50, 50))
        layer[10, 10] = np.nan
        path = tmp_path / "elev.tif"
        _write_tif(path, [layer], transform)

        raster = Raster.from_file(path)
        assert raster.name == "elev"
        assert np.isnan(raster.data[10, 10])
        assert np.nansum(raster.data) == 2499

    def test_from_file_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Raster.from_file(tmp_path / "nope.tif")


class TestCovariateLoading:
    def test_load_covariates(self, tmp_path, transform):
        _write_tif(tmp_path / "a.tif", [np.full((50, 50), 2.0)], transform)
        _write_tif(tmp_path / "b.tif", [np.full((50, 50), 3.0)], transform)

        covariates = load_covariates({'A': tmp_path / "a.tif", 'B': tmp_path / "b.tif"})
        assert list(covariates) == ['A', 'B']
        assert covariates['B'].name == 'B'
        assert np.all(covariates['B'].data == 3.0)

    def test_stack_uses_band_descriptions(self, tmp_path, transform):
        path = tmp_path / "stack.tif"
        _write_tif(path, [np.zeros((50, 50)), np.ones((50, 50))], transform,
                   descriptions=['Elevation', 'Forest'])

        covariates = load_covariate_stack(path)
        assert list(covariates) == ['Elevation', 'Forest']
        assert np.all(covariates['Forest'].data == 1.0)

    def test_stack_explicit_names(self, tmp_path, transform):
        path = tmp_path / "stack.tif"
        _write_tif(path, [np.zeros((50, 50)), np.ones((50, 50))], transform)

        assert list(load_covariate_stack(path, ['HFI', 'Dist_Water'])) == ['HFI', 'Dist_Water']
        with pytest.raises(ValueError):
            load_covariate_stack(path, ['only_one'])
