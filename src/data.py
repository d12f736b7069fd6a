"""
Data containers for point-process analysis.

This module provides the three inputs every downstream statistic works on:

    - SpatialWindow: the polygonal study region (immutable)
    - PointPattern: event locations inside the window (immutable)
    - Raster: a north-up pixel grid used for covariates and intensity surfaces

Covariates are handled as a plain ``Dict[str, Raster]`` keyed by layer name
(e.g. Elevation, Forest, HFI, Dist_Water). Missing raster values are stored as
NaN and are never silently replaced by zero.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

import shapely
from shapely import affinity
from shapely.geometry import shape, box, Polygon, MultiPolygon
from shapely.ops import unary_union

import rasterio
from rasterio.transform import Affine, from_origin


# =============================================================================
# SPATIAL WINDOW
# =============================================================================


class SpatialWindow:
    """
    Polygonal observation window bounding all valid coordinates.

    Attributes:
        polygon (Polygon | MultiPolygon): Window geometry.
        unit (str): Name of the length unit of the coordinates.

    Example:
        >>> window = SpatialWindow.from_geojson("bc_boundary.geojson", unit="m")
        >>> window_km = window.rescale(1000, "km")
        >>> print(f"Area: {window_km.area:.0f} km²")
    """

    def __init__(self, polygon: Union[Polygon, MultiPolygon], unit: str = "units"):
        if not isinstance(polygon, (Polygon, MultiPolygon)):
            raise ValueError("Window geometry must be a Polygon or MultiPolygon")
        if not polygon.is_valid:
            polygon = polygon.buffer(0)
        if polygon.area <= 0:
            raise ValueError("Window must have positive area")

        self._polygon = polygon
        self._unit = unit

    @property
    def polygon(self) -> Union[Polygon, MultiPolygon]:
        return self._polygon

    @property
    def unit(self) -> str:
        return self._unit

    @property
    def area(self) -> float:
        return float(self._polygon.area)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return tuple(float(b) for b in self._polygon.bounds)

    def contains(self, xy: np.ndarray) -> np.ndarray:
        """Vectorised point-in-window test (points on the boundary count as inside)."""
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        return shapely.intersects_xy(self._polygon, xy[:, 0], xy[:, 1])

    def boundary_distance(self, xy: np.ndarray) -> np.ndarray:
        """Distance from each point to the window boundary."""
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        if len(xy) == 0:
            return np.zeros(0)
        return shapely.distance(self._polygon.boundary, shapely.points(xy))

    def rescale(self, factor: float, unit: Optional[str] = None) -> "SpatialWindow":
        """
        Return a new window with coordinates divided by ``factor``.

        Args:
            factor: Number of current units per new unit (e.g. 1000 for m → km).
            unit: Name of the new unit.
        """
        if factor <= 0:
            raise ValueError("Rescale factor must be positive")
        scaled = affinity.scale(
            self._polygon, xfact=1.0 / factor, yfact=1.0 / factor, origin=(0, 0)
        )
        return SpatialWindow(scaled, unit=unit or self._unit)

    @classmethod
    def from_bounds(
        cls, xmin: float, ymin: float, xmax: float, ymax: float, unit: str = "units"
    ) -> "SpatialWindow":
        return cls(box(xmin, ymin, xmax, ymax), unit=unit)

    @classmethod
    def from_geojson(cls, path: Union[str, Path], unit: str = "units") -> "SpatialWindow":
        """
        Load the window from a GeoJSON file.

        All polygon features are unioned into a single window geometry.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file holds no polygon geometry.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"window file not found: {path}")

        print(f"[INFO] Loading window from {path}...")
        with open(path, 'r') as f:
            geojson_data = json.load(f)

        if geojson_data.get('type') == 'FeatureCollection':
            geometries = [feat.get('geometry') for feat in geojson_data.get('features', [])]
        elif geojson_data.get('type') == 'Feature':
            geometries = [geojson_data.get('geometry')]
        else:
            geometries = [geojson_data]

        polygons: List[Polygon] = []
        for geom in geometries:
            if geom is None:
                continue
            poly = shape(geom)
            if isinstance(poly, Polygon):
                polygons.append(poly)
            elif isinstance(poly, MultiPolygon):
                polygons.extend(poly.geoms)
            else:
                print(f"[WARNING] Skipping non-polygon geometry: {poly.geom_type}")

        if not polygons:
            raise ValueError(f"No polygon geometry found in {path}")

        window = cls(unary_union(polygons), unit=unit)
        print(f"[INFO] Window loaded: area={window.area:.4f} {unit}²")
        return window

    def __repr__(self) -> str:
        return f"SpatialWindow(area={self.area:.4g} {self._unit}², bounds={self.bounds})"


# =============================================================================
# POINT PATTERN
# =============================================================================


class PointPattern:
    """
    An unordered set of 2D event locations inside a SpatialWindow.

    The coordinate array is copied and made read-only on construction, so a
    pattern is never mutated after it is created.

    Raises:
        ValueError: If any point falls outside the window.
    """

    def __init__(self, coords: np.ndarray, window: SpatialWindow):
        coords = np.array(coords, dtype=float).reshape(-1, 2)
        if len(coords) and not np.all(window.contains(coords)):
            n_out = int(np.sum(~window.contains(coords)))
            raise ValueError(f"{n_out} points fall outside the window")
        coords.setflags(write=False)
        self._coords = coords
        self._window = window

    @property
    def coords(self) -> np.ndarray:
        return self._coords

    @property
    def window(self) -> SpatialWindow:
        return self._window

    @property
    def x(self) -> np.ndarray:
        return self._coords[:, 0]

    @property
    def y(self) -> np.ndarray:
        return self._coords[:, 1]

    def __len__(self) -> int:
        return len(self._coords)

    def rescale(self, factor: float, unit: Optional[str] = None) -> "PointPattern":
        """Return a new pattern (and window) in rescaled units."""
        if factor <= 0:
            raise ValueError("Rescale factor must be positive")
        return PointPattern(self._coords * (1.0 / factor), self._window.rescale(factor, unit))

    @classmethod
    def from_csv(
        cls,
        path: Union[str, Path],
        window: SpatialWindow,
        x_col: str = "X",
        y_col: str = "Y",
        drop_outside: bool = True
    ) -> "PointPattern":
        """
        Load point coordinates from a CSV table.

        Args:
            path: CSV file with at least two numeric columns.
            window: Window the points must fall in.
            x_col: Name of the x-coordinate column (default: 'X').
            y_col: Name of the y-coordinate column (default: 'Y').
            drop_outside: Drop points outside the window with a warning
                          (default). If False, raise instead.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the coordinate columns are missing, or points fall
                        outside the window and ``drop_outside`` is False.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"points file not found: {path}")

        print(f"[INFO] Loading points from {path}...")
        df = pd.read_csv(path)
        missing = [c for c in (x_col, y_col) if c not in df.columns]
        if missing:
            raise ValueError(f"Missing coordinate columns {missing}; found {list(df.columns)}")

        coords_df = df[[x_col, y_col]].apply(pd.to_numeric, errors='coerce')
        n_bad = int(coords_df.isna().any(axis=1).sum())
        if n_bad:
            print(f"[WARNING] Dropping {n_bad} rows with missing or non-numeric coordinates")
            coords_df = coords_df.dropna()

        coords = coords_df.to_numpy(dtype=float)
        inside = window.contains(coords)
        n_out = int(np.sum(~inside))
        if n_out:
            if not drop_outside:
                raise ValueError(f"{n_out} points fall outside the window")
            print(f"[WARNING] Dropping {n_out} points outside the window")
            coords = coords[inside]

        print(f"[INFO] Loaded {len(coords)} points")
        return cls(coords, window)

    def __repr__(self) -> str:
        return f"PointPattern(n={len(self)}, window={self._window!r})"


# =============================================================================
# RASTER
# =============================================================================


class Raster:
    """
    A north-up pixel grid mapping location to a scalar value.

    Used both for covariate layers and for derived intensity surfaces.
    Cells without data hold NaN.

    Attributes:
        data (np.ndarray): 2D float array, row 0 at the top (north).
        transform (Affine): Pixel-to-world affine transform (no rotation).
        name (str): Layer name.
    """

    def __init__(self, data: np.ndarray, transform: Affine, name: str = "raster"):
        data = np.array(data, dtype=float)
        if data.ndim != 2:
            raise ValueError("Raster data must be 2D")
        if transform.b != 0 or transform.d != 0:
            raise ValueError("Rotated raster transforms are not supported")
        self.data = data
        self.transform = transform
        self.name = name

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def pixel_size(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def pixel_area(self) -> float:
        dx, dy = self.pixel_size
        return dx * dy

    def pixel_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return (X, Y) arrays of pixel-centre coordinates, each shaped like ``data``."""
        nrows, ncols = self.data.shape
        cols = np.arange(ncols) + 0.5
        rows = np.arange(nrows) + 0.5
        xs = self.transform.c + cols * self.transform.a
        ys = self.transform.f + rows * self.transform.e
        return np.meshgrid(xs, ys)

    def rowcol(self, xy: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Map coordinates to pixel indices.

        Returns:
            Tuple of (rows, cols, inside) where ``inside`` flags points that
            fall on the grid. Indices for points off the grid are clipped and
            must be ignored.
        """
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        cols = np.floor((xy[:, 0] - self.transform.c) / self.transform.a).astype(int)
        rows = np.floor((xy[:, 1] - self.transform.f) / self.transform.e).astype(int)
        nrows, ncols = self.data.shape
        inside = (rows >= 0) & (rows < nrows) & (cols >= 0) & (cols < ncols)
        return np.clip(rows, 0, nrows - 1), np.clip(cols, 0, ncols - 1), inside

    def value_at(self, xy: np.ndarray) -> np.ndarray:
        """Look up values at coordinates; NaN off the grid or at missing cells."""
        rows, cols, inside = self.rowcol(xy)
        values = self.data[rows, cols].astype(float)
        values[~inside] = np.nan
        return values

    def window_mask(self, window: SpatialWindow) -> np.ndarray:
        """Boolean mask of pixels whose centre lies inside the window."""
        X, Y = self.pixel_centers()
        return shapely.intersects_xy(window.polygon, X.ravel(), Y.ravel()).reshape(self.shape)

    def masked(self, window: SpatialWindow) -> "Raster":
        """Copy of this raster with pixels outside the window set to NaN."""
        data = self.data.copy()
        data[~self.window_mask(window)] = np.nan
        return Raster(data, self.transform, self.name)

    def with_data(self, data: np.ndarray, name: Optional[str] = None) -> "Raster":
        """New raster on the same grid holding ``data``."""
        return Raster(data, self.transform, name or self.name)

    def rescale(self, factor: float) -> "Raster":
        """Rescale the grid coordinates (values are left unchanged)."""
        if factor <= 0:
            raise ValueError("Rescale factor must be positive")
        t = self.transform
        transform = Affine(t.a / factor, 0.0, t.c / factor, 0.0, t.e / factor, t.f / factor)
        return Raster(self.data.copy(), transform, self.name)

    def integral(self) -> float:
        """Sum of values times pixel area, ignoring NaN cells."""
        return float(np.nansum(self.data) * self.pixel_area)

    @classmethod
    def blank_for_window(
        cls, window: SpatialWindow, resolution: Optional[float] = None,
        n_pixels: int = 128, name: str = "raster"
    ) -> "Raster":
        """
        Create a NaN raster covering the window bounding box.

        Args:
            window: Window to cover.
            resolution: Pixel size. If None, the longer side of the bounding
                        box is split into ``n_pixels`` pixels.
            n_pixels: Pixels along the longer side when resolution is None.
        """
        xmin, ymin, xmax, ymax = window.bounds
        if resolution is None:
            resolution = max(xmax - xmin, ymax - ymin) / n_pixels
        if resolution <= 0:
            raise ValueError("resolution must be positive")
        ncols = max(1, int(np.ceil((xmax - xmin) / resolution)))
        nrows = max(1, int(np.ceil((ymax - ymin) / resolution)))
        transform = from_origin(xmin, ymax, resolution, resolution)
        return cls(np.full((nrows, ncols), np.nan), transform, name)

    @classmethod
    def from_file(
        cls, path: Union[str, Path], band: int = 1, name: Optional[str] = None
    ) -> "Raster":
        """
        Read one band of a raster file; nodata cells become NaN.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"raster file not found: {path}")

        with rasterio.open(path) as src:
            data = src.read(band).astype(np.float64)
            nodata = src.nodata
            if nodata is not None:
                data[data == nodata] = np.nan
            transform = src.transform

        return cls(data, transform, name or path.stem)

    def __repr__(self) -> str:
        return f"Raster(name={self.name!r}, shape={self.shape}, pixel_size={self.pixel_size})"


# =============================================================================
# COVARIATE LOADING
# =============================================================================


def load_covariates(paths: Dict[str, Union[str, Path]]) -> Dict[str, Raster]:
    """
    Load one single-band raster per covariate.

    Args:
        paths: Mapping of covariate name to raster file path.

    Returns:
        Dict[str, Raster]: Covariate rasters keyed by name.
    """
    covariates: Dict[str, Raster] = {}
    for name, path in paths.items():
        print(f"[INFO] Loading covariate '{name}' from {path}...")
        covariates[name] = Raster.from_file(path, name=name)
        n_missing = int(np.isnan(covariates[name].data).sum())
        print(f"[INFO] {name}: shape={covariates[name].shape}, missing cells={n_missing}")
    return covariates


def load_covariate_stack(
    path: Union[str, Path], names: Optional[List[str]] = None
) -> Dict[str, Raster]:
    """
    Load every band of a multi-band raster as a named covariate.

    Band names come from ``names`` when given, otherwise from the band
    descriptions stored in the file, falling back to ``band_<i>``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If ``names`` does not match the band count.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"covariate stack not found: {path}")

    print(f"[INFO] Loading covariate stack from {path}...")
    covariates: Dict[str, Raster] = {}
    with rasterio.open(path) as src:
        if names is not None and len(names) != src.count:
            raise ValueError(f"Expected {src.count} names, got {len(names)}")

        for i in range(1, src.count + 1):
            if names is not None:
                name = names[i - 1]
            else:
                name = src.descriptions[i - 1] or f"band_{i}"
            data = src.read(i).astype(np.float64)
            if src.nodata is not None:
                data[data == src.nodata] = np.nan
            covariates[name] = Raster(data, src.transform, name)

    print(f"[INFO] Loaded covariates: {list(covariates.keys())}")
    return covariates
