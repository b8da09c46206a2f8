"""Shared fixtures for the ward map tests.

Two square wards share an edge at lon 77.52:

    Ward A: 77.50-77.52 E, 12.90-12.92 N
    Ward B: 77.52-77.54 E, 12.90-12.92 N
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pytest
from rasterio.io import MemoryFile
from rasterio.transform import from_origin

from datasets import SCHOOLS, TREES, WARDS, FeatureCollection, parse_collection
from map_controller import ALL_DATASETS, MapController

WARD_A = (77.50, 12.90, 77.52, 12.92)
WARD_B = (77.52, 12.90, 77.54, 12.92)
FAR_AWAY_WARD = (77.70, 13.00, 77.72, 13.02)


def square(west: float, south: float, east: float, north: float) -> Dict[str, Any]:
    return {
        'type': 'Polygon',
        'coordinates': [[[west, south], [east, south], [east, north], [west, north], [west, south]]],
    }


def point(lon: float, lat: float) -> Dict[str, Any]:
    return {'type': 'Point', 'coordinates': [lon, lat]}


def feature(geometry: Dict[str, Any], **properties) -> Dict[str, Any]:
    return {'type': 'Feature', 'geometry': geometry, 'properties': properties}


def feature_collection(*features: Dict[str, Any]) -> Dict[str, Any]:
    return {'type': 'FeatureCollection', 'features': list(features)}


def tree(lon: float, lat: float, name: str, tree_id: int, ward_number: int = 1) -> Dict[str, Any]:
    return feature(point(lon, lat), TreeName=name, WardNumber=ward_number, KGISTreeID=tree_id)


def write_json(path: Path, payload: Dict[str, Any]) -> Path:
    path.write_text(json.dumps(payload))
    return path


def elevation_tiff(values: np.ndarray, west: float, north: float, cell: float,
                   crs: str = 'EPSG:4326', nodata: Optional[float] = -9999.0) -> bytes:
    """Encode a single-band float32 GeoTIFF in memory."""
    height, width = values.shape
    with MemoryFile() as memfile:
        with memfile.open(driver='GTiff', height=height, width=width, count=1, dtype='float32',
                          crs=crs, transform=from_origin(west, north, cell, cell), nodata=nodata) as dst:
            dst.write(values.astype('float32'), 1)
        return memfile.read()


class ManualScheduler:
    """Scheduler with a hand-driven clock, for debounce timing tests."""

    class Handle:
        def __init__(self, when: float, callback):
            self.when = when
            self.callback = callback
            self.cancelled = False

        def cancel(self):
            self.cancelled = True

    def __init__(self):
        self.now = 0.0
        self.timers: List['ManualScheduler.Handle'] = []

    def call_later(self, delay, callback):
        handle = self.Handle(self.now + delay, callback)
        self.timers.append(handle)
        return handle

    @property
    def active(self) -> List['ManualScheduler.Handle']:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = sorted((t for t in self.active if t.when <= target + 1e-9), key=lambda t: t.when)
            if not due:
                break
            handle = due[0]
            self.timers.remove(handle)
            self.now = handle.when
            handle.callback()
        self.now = target


@pytest.fixture
def wards_geojson() -> Dict[str, Any]:
    return feature_collection(
        feature(square(*WARD_A), KGISWardName='Ward A'),
        feature(square(*WARD_B), KGISWardName='Ward B'),
        feature(square(*FAR_AWAY_WARD), KGISWardName='Ward C'),
    )


@pytest.fixture
def trees_geojson() -> Dict[str, Any]:
    return feature_collection(
        tree(77.505, 12.905, "Mangifera Indica L.", 1),
        tree(77.506, 12.906, "Mangifera Indica L.", 2),
        tree(77.510, 12.915, "Thespesia Populnea", 3),
        tree(77.530, 12.910, "Pongamia Pinnata (L.) Pierre", 4, ward_number=2),
        tree(77.600, 12.950, "Samanea Saman (Jacq.) Merr.", 5, ward_number=9),
    )


@pytest.fixture
def schools_geojson() -> Dict[str, Any]:
    return feature_collection(
        # inside Ward A
        feature(point(77.508, 12.908), name="Government Higher Primary School"),
        # straddles the A/B edge
        feature(square(77.515, 12.905, 77.525, 12.915), name="Sacred Heart School"),
        # touches Ward A's west edge only
        feature(square(77.48, 12.90, 77.50, 12.92)),
        # inside Ward B
        feature(point(77.535, 12.915), name="Little Flower School"),
    )


@pytest.fixture
def wards(wards_geojson) -> FeatureCollection:
    return parse_collection(WARDS, wards_geojson)


@pytest.fixture
def trees(trees_geojson) -> FeatureCollection:
    return parse_collection(TREES, trees_geojson)


@pytest.fixture
def schools(schools_geojson) -> FeatureCollection:
    return parse_collection(SCHOOLS, schools_geojson)


@pytest.fixture
def dem_values() -> np.ndarray:
    """0.001 degree grid over wards A and B: 920 m in A, 940 m in B."""
    cols = np.arange(40)
    row = np.where(cols < 20, 920.0, 940.0)
    return np.tile(row, (20, 1))


@pytest.fixture
def dem_bytes(dem_values) -> bytes:
    return elevation_tiff(dem_values, west=77.50, north=12.92, cell=0.001)


@pytest.fixture
def data_files(tmp_path, wards_geojson, trees_geojson, schools_geojson, dem_bytes) -> Dict[str, Path]:
    elevation = tmp_path / "elevation.tif"
    elevation.write_bytes(dem_bytes)
    return {
        'wards': write_json(tmp_path / "wards.geojson", wards_geojson),
        'trees': write_json(tmp_path / "trees.geojson", trees_geojson),
        'schools': write_json(tmp_path / "schools.geojson", schools_geojson),
        'elevation': elevation,
    }


@pytest.fixture
def manual_scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def controller(data_files, manual_scheduler) -> MapController:
    """A controller with nothing loaded yet."""
    return MapController(files=data_files, scheduler=manual_scheduler, debounce_ms=200)


@pytest.fixture
def loaded_controller(controller) -> MapController:
    for name in ALL_DATASETS:
        assert controller.load_dataset(name)
    return controller
