"""Point-in-polygon and polygon intersection queries over a FeatureCollection."""
from typing import Sequence

import numpy as np
import shapely
from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree

from datasets import FeatureCollection


class GeometryIndex:
    """
    STRtree over the geometries of one collection.

    Boundary convention: a point on the edge of a polygon is inside it
    (``covers``). When several polygons cover the same point, ``owners``
    assigns it to the one that comes first in the collection, so a point
    on a shared edge belongs to exactly one polygon.
    """

    def __init__(self, collection: FeatureCollection):
        self.collection = collection
        self._geometries = np.asarray(collection.geometries(), dtype=object)
        self._tree = STRtree(self._geometries)

    def __len__(self) -> int:
        return len(self._geometries)

    def covered_by(self, region: BaseGeometry) -> np.ndarray:
        """Indices of features lying inside ``region``, boundary included."""
        return np.sort(self._tree.query(region, predicate='covers'))

    def overlapping(self, region: BaseGeometry) -> np.ndarray:
        """Indices of features whose interiors meet ``region``; touching only does not count."""
        candidates = self._tree.query(region, predicate='intersects')
        if len(candidates) == 0:
            return candidates
        touching = shapely.touches(self._geometries[candidates], region)
        return np.sort(candidates[~touching])

    def owners(self, points: Sequence[BaseGeometry]) -> np.ndarray:
        """For each point, the index of the first feature covering it, or -1."""
        points = np.asarray(points, dtype=object)
        owner = np.full(len(points), -1, dtype=np.int64)
        if len(points) == 0 or len(self) == 0:
            return owner

        point_idx, feature_idx = self._tree.query(points, predicate='covered_by')
        if len(point_idx) == 0:
            return owner

        order = np.lexsort((feature_idx, point_idx))
        point_idx = point_idx[order]
        feature_idx = feature_idx[order]
        _, first = np.unique(point_idx, return_index=True)
        owner[point_idx[first]] = feature_idx[first]
        return owner
