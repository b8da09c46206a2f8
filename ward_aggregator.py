"""
Ward-level aggregation: tree counts by type, school count and mean elevation.

Trees and point schools are assigned to wards with GeometryIndex.owners, so
a point on a shared edge is counted in the first ward (file order) whose
polygon covers it, never in two. Polygon schools are counted in every ward
whose area they share; touching a ward only along its boundary is not enough.
"""
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from config import TREE_NAME_FIELD
from datasets import Feature, FeatureCollection, ward_name
from elevation import ElevationRaster
from errors import DataNotReadyError
from geometry_index import GeometryIndex


@dataclass(frozen=True)
class WardSummary:
    ward_name: str
    tree_count_by_type: Dict[str, int] = field(default_factory=dict)
    school_count: int = 0
    elevation_mean: Optional[float] = None

    @property
    def tree_count(self) -> int:
        return sum(self.tree_count_by_type.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ward': self.ward_name,
            'tree_count_by_type': dict(self.tree_count_by_type),
            'tree_count': self.tree_count,
            'school_count': self.school_count,
            'elevation_mean': self.elevation_mean,
        }


class WardAggregator:
    """Summaries for the wards of one ward collection."""

    def __init__(self, wards: FeatureCollection):
        self.wards = wards
        self._ward_index = GeometryIndex(wards)
        self._positions = {ward_name(w): i for i, w in enumerate(wards)}
        # Per-collection caches; collections hash by identity
        self._owners: Dict[FeatureCollection, np.ndarray] = {}
        self._area_indexes: Dict[FeatureCollection, GeometryIndex] = {}
        self._lock = threading.Lock()

    def ward(self, name: str) -> Feature:
        return self.wards[self._positions[name]]

    def __contains__(self, name: str) -> bool:
        return name in self._positions

    def _point_owners(self, collection: FeatureCollection) -> np.ndarray:
        """Owning ward position for every Point feature, -1 for outside or non-points."""
        with self._lock:
            owners = self._owners.get(collection)
            if owners is None:
                point_idx = [i for i, f in enumerate(collection) if f.geom_type == 'Point']
                owners = np.full(len(collection), -1, dtype=np.int64)
                if point_idx:
                    owners[point_idx] = self._ward_index.owners([collection[i].geometry for i in point_idx])
                self._owners[collection] = owners
            return owners

    def _area_index(self, collection: FeatureCollection) -> GeometryIndex:
        with self._lock:
            index = self._area_indexes.get(collection)
            if index is None:
                areas = tuple(f for f in collection if f.geom_type != 'Point')
                index = GeometryIndex(FeatureCollection(name=collection.name, features=areas))
                self._area_indexes[collection] = index
            return index

    def summarize(self, ward: Feature, trees: Optional[FeatureCollection],
                  schools: Optional[FeatureCollection],
                  elevation: Optional[ElevationRaster] = None) -> WardSummary:
        missing = [name for name, collection in (('trees', trees), ('schools', schools)) if collection is None]
        if missing:
            raise DataNotReadyError(missing)

        name = ward_name(ward)
        if name not in self._positions:
            raise KeyError(f"Unknown ward: {name}")
        position = self._positions[name]

        tree_owners = self._point_owners(trees)
        names = [trees[i].properties[TREE_NAME_FIELD] for i in np.flatnonzero(tree_owners == position)]
        tree_count_by_type = dict(Counter(names).most_common())

        school_owners = self._point_owners(schools)
        point_schools = int(np.count_nonzero(school_owners == position))
        area_schools = len(self._area_index(schools).overlapping(ward.geometry))

        return WardSummary(
            ward_name=name,
            tree_count_by_type=tree_count_by_type,
            school_count=point_schools + area_schools,
            elevation_mean=elevation.zonal_mean(ward.geometry) if elevation is not None else None,
        )

    def summarize_all(self, trees: Optional[FeatureCollection], schools: Optional[FeatureCollection],
                      elevation: Optional[ElevationRaster] = None) -> pd.DataFrame:
        """One row per ward, in ward file order."""
        rows = []
        for ward in self.wards:
            summary = self.summarize(ward, trees, schools, elevation)
            top_tree = next(iter(summary.tree_count_by_type), '')
            rows.append({
                'ward': summary.ward_name,
                'trees': summary.tree_count,
                'tree_types': len(summary.tree_count_by_type),
                'top_tree': top_tree,
                'schools': summary.school_count,
                'elevation_mean': summary.elevation_mean,
            })
        return pd.DataFrame(rows, columns=['ward', 'trees', 'tree_types', 'top_tree', 'schools', 'elevation_mean'])
