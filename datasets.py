"""
GeoJSON datasets: feature model, attribute schemas and loaders.

Each dataset is a FeatureCollection in geographic lon/lat. Attributes are
validated against a pydantic schema at load time so a bad file fails fast
instead of surfacing as a missing property in the middle of a ward click.
"""
import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from shapely.errors import GEOSException
from shapely.geometry import mapping, shape
from shapely.geometry.base import BaseGeometry

from config import SCHOOL_NAME_FIELD, WARD_NAME_FIELD
from errors import DataLoadError, InvalidGeometryError, SchemaMismatchError

# Coordinate sanity bounds (geographic lon/lat only)
LAT_MIN, LAT_MAX = -90.0, 90.0
LON_MIN, LON_MAX = -180.0, 180.0

GEOGRAPHIC_CRS_NAMES = {
    'epsg:4326',
    'epsg::4326',
    'urn:ogc:def:crs:epsg::4326',
    'urn:ogc:def:crs:ogc:1.3:crs84',
    'ogc:crs84',
}


# ============================================================================
# Attribute schemas
# ============================================================================

class WardAttributes(BaseModel):
    model_config = ConfigDict(extra='allow')

    KGISWardName: str = Field(min_length=1)


class TreeAttributes(BaseModel):
    model_config = ConfigDict(extra='allow')

    TreeName: str
    WardNumber: Union[int, str]
    KGISTreeID: Union[int, str]


class SchoolAttributes(BaseModel):
    model_config = ConfigDict(extra='allow')

    name: Optional[str] = None


@dataclass(frozen=True)
class DatasetSchema:
    name: str
    attributes: Type[BaseModel]
    geometry_types: FrozenSet[str]
    unique_field: Optional[str] = None


WARDS = DatasetSchema('wards', WardAttributes, frozenset({'Polygon', 'MultiPolygon'}),
                      unique_field=WARD_NAME_FIELD)
TREES = DatasetSchema('trees', TreeAttributes, frozenset({'Point'}))
SCHOOLS = DatasetSchema('schools', SchoolAttributes, frozenset({'Point', 'Polygon', 'MultiPolygon'}))


# ============================================================================
# Feature model
# ============================================================================

@dataclass(frozen=True)
class Feature:
    geometry: BaseGeometry
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.properties, MappingProxyType):
            object.__setattr__(self, 'properties', MappingProxyType(dict(self.properties)))

    @property
    def geom_type(self) -> str:
        return self.geometry.geom_type

    def to_geojson(self) -> Dict[str, Any]:
        return {
            'type': 'Feature',
            'geometry': mapping(self.geometry),
            'properties': dict(self.properties),
        }


# eq=False keeps identity hashing: collections are used as cache keys
@dataclass(frozen=True, eq=False)
class FeatureCollection:
    name: str
    features: Tuple[Feature, ...]

    def __len__(self) -> int:
        return len(self.features)

    def __iter__(self) -> Iterator[Feature]:
        return iter(self.features)

    def __getitem__(self, index: int) -> Feature:
        return self.features[index]

    def geometries(self) -> List[BaseGeometry]:
        return [f.geometry for f in self.features]

    def to_geojson(self) -> Dict[str, Any]:
        return {
            'type': 'FeatureCollection',
            'features': [f.to_geojson() for f in self.features],
        }


def ward_name(ward: Feature) -> str:
    return ward.properties[WARD_NAME_FIELD]


def school_name(school: Feature) -> str:
    return school.properties.get(SCHOOL_NAME_FIELD) or "Unknown"


# ============================================================================
# Loading
# ============================================================================

def read_geojson(path: Union[str, Path], source: Optional[str] = None) -> Dict[str, Any]:
    """Read a GeoJSON file, turning every I/O or JSON failure into DataLoadError."""
    source = source or Path(path).name
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        raise DataLoadError(source, f"file not found at: {path}")
    except json.JSONDecodeError as e:
        raise DataLoadError(source, f"file is corrupted or invalid JSON: {str(e)}")
    except OSError as e:
        raise DataLoadError(source, f"could not read {path}: {str(e)}")


def _check_crs(schema: DatasetSchema, geojson: Dict[str, Any]) -> None:
    crs = geojson.get('crs')
    if not crs:
        return
    crs_name = str((crs.get('properties') or {}).get('name', '')).lower()
    if crs_name not in GEOGRAPHIC_CRS_NAMES:
        raise DataLoadError(schema.name, f"expected geographic lon/lat coordinates, got CRS '{crs_name}'")


def _check_bounds(schema: DatasetSchema, index: int, geometry: BaseGeometry) -> None:
    min_lon, min_lat, max_lon, max_lat = geometry.bounds
    if min_lat < LAT_MIN or max_lat > LAT_MAX:
        raise DataLoadError(schema.name, f"feature {index}: latitude values out of bounds [-90, 90]")
    if min_lon < LON_MIN or max_lon > LON_MAX:
        raise DataLoadError(schema.name, f"feature {index}: longitude values out of bounds [-180, 180]")


def parse_feature(schema: DatasetSchema, index: int, raw: Dict[str, Any]) -> Feature:
    raw_geometry = raw.get('geometry')
    if not raw_geometry:
        raise InvalidGeometryError(schema.name, index, "feature has no geometry")

    geom_type = raw_geometry.get('type')
    if geom_type not in schema.geometry_types:
        allowed = ', '.join(sorted(schema.geometry_types))
        raise InvalidGeometryError(schema.name, index, f"geometry type {geom_type} not allowed (expected {allowed})")

    try:
        geometry = shape(raw_geometry)
    except (GEOSException, ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
        raise InvalidGeometryError(schema.name, index, f"malformed {geom_type} geometry: {str(e)}")
    if geometry.is_empty:
        raise InvalidGeometryError(schema.name, index, f"empty {geom_type} geometry")
    _check_bounds(schema, index, geometry)

    properties = raw.get('properties') or {}
    try:
        schema.attributes.model_validate(properties)
    except ValidationError as e:
        first = e.errors()[0]
        location = '.'.join(str(part) for part in first['loc'])
        raise SchemaMismatchError(schema.name, f"feature {index}: {location}: {first['msg']}")

    return Feature(geometry=geometry, properties=properties)


def parse_collection(schema: DatasetSchema, geojson: Dict[str, Any]) -> FeatureCollection:
    """Validate a decoded GeoJSON document against a dataset schema."""
    if not isinstance(geojson, dict) or geojson.get('type') != 'FeatureCollection':
        raise DataLoadError(schema.name, "not a GeoJSON FeatureCollection")
    _check_crs(schema, geojson)

    features = tuple(parse_feature(schema, i, raw) for i, raw in enumerate(geojson.get('features') or []))

    if schema.unique_field:
        seen = set()
        for i, feature in enumerate(features):
            value = feature.properties[schema.unique_field]
            if value in seen:
                raise SchemaMismatchError(schema.name, f"feature {i}: duplicate {schema.unique_field} '{value}'")
            seen.add(value)

    return FeatureCollection(name=schema.name, features=features)


def load_collection(schema: DatasetSchema, path: Union[str, Path]) -> FeatureCollection:
    print(f"Loading {schema.name} from {path}...")
    collection = parse_collection(schema, read_geojson(path, source=schema.name))
    print(f"Loaded {len(collection):,} {schema.name} features")
    return collection


def load_wards(path: Union[str, Path]) -> FeatureCollection:
    return load_collection(WARDS, path)


def load_trees(path: Union[str, Path]) -> FeatureCollection:
    return load_collection(TREES, path)


def load_schools(path: Union[str, Path]) -> FeatureCollection:
    return load_collection(SCHOOLS, path)
