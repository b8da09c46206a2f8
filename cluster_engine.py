"""
Hierarchical point clustering for the tree layer.

Points are projected to unit Web Mercator and clustered greedily from the
deepest zoom upward: each zoom level is built from the level below it, so a
cluster at zoom z is always the union of clusters at zoom z + 1. A KD-tree is
kept per level and viewport queries are range searches against it.
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from config import (
    CLUSTER_EXTENT,
    CLUSTER_MAX_ZOOM,
    CLUSTER_MIN_POINTS,
    CLUSTER_MIN_ZOOM,
    CLUSTER_RADIUS,
)
from datasets import Feature, FeatureCollection
from errors import InvalidGeometryError

# west, south, east, north in degrees
BBox = Tuple[float, float, float, float]


def project_lng(lng):
    return np.asarray(lng, dtype=float) / 360.0 + 0.5


def project_lat(lat):
    sin = np.sin(np.radians(np.asarray(lat, dtype=float)))
    with np.errstate(divide='ignore'):
        y = 0.5 - 0.25 * np.log((1 + sin) / (1 - sin)) / np.pi
    return np.clip(y, 0.0, 1.0)


def unproject_x(x: float) -> float:
    return (x - 0.5) * 360.0


def unproject_y(y: float) -> float:
    y2 = math.radians(180.0 - y * 360.0)
    return 360.0 * math.atan(math.exp(y2)) / math.pi - 90.0


def abbreviate_count(count: int) -> str:
    if count >= 10000:
        return f"{round(count / 1000)}k"
    if count >= 1000:
        return f"{round(count / 100) / 10}k"
    return str(count)


@dataclass(frozen=True)
class Cluster:
    """A leaf (one tree, attributes passed through) or an aggregate of nearby trees."""
    lon: float
    lat: float
    point_count: int
    properties: Mapping[str, Any]
    cluster_id: Optional[int] = None

    @property
    def is_aggregate(self) -> bool:
        return self.cluster_id is not None

    def to_geojson(self) -> Dict[str, Any]:
        return {
            'type': 'Feature',
            'geometry': {'type': 'Point', 'coordinates': [self.lon, self.lat]},
            'properties': dict(self.properties),
        }


@dataclass
class _Level:
    xs: np.ndarray
    ys: np.ndarray
    counts: np.ndarray
    ids: np.ndarray
    tree: Optional[cKDTree] = None

    def __post_init__(self):
        if len(self.xs):
            self.tree = cKDTree(np.c_[self.xs, self.ys])

    def __len__(self) -> int:
        return len(self.xs)


class ClusterIndex:
    """Immutable cluster hierarchy over a collection of Point features."""

    def __init__(self, points: FeatureCollection, radius: float = CLUSTER_RADIUS,
                 extent: int = CLUSTER_EXTENT, min_zoom: int = CLUSTER_MIN_ZOOM,
                 max_zoom: int = CLUSTER_MAX_ZOOM, min_points: int = CLUSTER_MIN_POINTS):
        for i, feature in enumerate(points):
            if feature.geom_type != 'Point' or feature.geometry.is_empty:
                raise InvalidGeometryError(points.name, i, f"expected a Point, got {feature.geom_type}")

        self.points = points
        self.radius = radius
        self.extent = extent
        self.min_zoom = min_zoom
        self.max_zoom = max_zoom
        self.min_points = min_points

        n = len(points)
        lons = np.array([f.geometry.x for f in points], dtype=float)
        lats = np.array([f.geometry.y for f in points], dtype=float)

        # Cluster ids start after the point ids so the two never collide
        self._next_id = n
        self._children: Dict[int, List[int]] = {}
        self._levels: Dict[int, _Level] = {}

        level = _Level(project_lng(lons), project_lat(lats), np.ones(n, dtype=np.int64), np.arange(n, dtype=np.int64))
        self._levels[max_zoom + 1] = level
        for z in range(max_zoom, min_zoom - 1, -1):
            level = self._cluster(level, z)
            self._levels[z] = level

    def __len__(self) -> int:
        return len(self.points)

    def _cluster(self, prev: _Level, zoom: int) -> _Level:
        r = self.radius / (self.extent * 2 ** zoom)
        if len(prev) == 0:
            return _Level(prev.xs, prev.ys, prev.counts, prev.ids)

        neighbors = prev.tree.query_ball_point(np.c_[prev.xs, prev.ys], r)
        xs, ys = prev.xs.tolist(), prev.ys.tolist()
        counts, ids = prev.counts.tolist(), prev.ids.tolist()

        taken = [False] * len(xs)
        out_x, out_y, out_count, out_id = [], [], [], []

        for i in range(len(xs)):
            if taken[i]:
                continue
            taken[i] = True
            free = [j for j in neighbors[i] if not taken[j]]
            total = counts[i] + sum(counts[j] for j in free)

            if free and total >= self.min_points:
                wx = xs[i] * counts[i]
                wy = ys[i] * counts[i]
                cluster_id = self._next_id
                self._next_id += 1
                children = [ids[i]]
                for j in free:
                    taken[j] = True
                    wx += xs[j] * counts[j]
                    wy += ys[j] * counts[j]
                    children.append(ids[j])
                self._children[cluster_id] = children
                out_x.append(wx / total)
                out_y.append(wy / total)
                out_count.append(total)
                out_id.append(cluster_id)
            else:
                out_x.append(xs[i])
                out_y.append(ys[i])
                out_count.append(counts[i])
                out_id.append(ids[i])
                # Too few to form a cluster: neighbours carry over unmerged
                for j in free:
                    taken[j] = True
                    out_x.append(xs[j])
                    out_y.append(ys[j])
                    out_count.append(counts[j])
                    out_id.append(ids[j])

        return _Level(np.array(out_x, dtype=float), np.array(out_y, dtype=float),
                      np.array(out_count, dtype=np.int64), np.array(out_id, dtype=np.int64))

    def _limit_zoom(self, zoom: float) -> int:
        return max(self.min_zoom, min(int(math.floor(zoom)), self.max_zoom + 1))

    def get_clusters(self, bbox: Sequence[float], zoom: float) -> List[Cluster]:
        """Clusters at ``zoom`` whose representative point lies inside ``bbox``."""
        west, south, east, north = bbox
        min_lng = (west + 180) % 360 - 180
        min_lat = max(-90.0, min(90.0, south))
        max_lng = 180.0 if east == 180 else (east + 180) % 360 - 180
        max_lat = max(-90.0, min(90.0, north))

        if east - west >= 360:
            min_lng, max_lng = -180.0, 180.0
        elif min_lng > max_lng:
            # Viewport crosses the antimeridian
            eastern = self.get_clusters((min_lng, min_lat, 180.0, max_lat), zoom)
            western = self.get_clusters((-180.0, min_lat, max_lng, max_lat), zoom)
            return eastern + western

        level = self._levels[self._limit_zoom(zoom)]
        found = self._range(level,
                            float(project_lng(min_lng)), float(project_lat(max_lat)),
                            float(project_lng(max_lng)), float(project_lat(min_lat)))
        return [self._make_cluster(level, i) for i in found]

    def _range(self, level: _Level, x0: float, y0: float, x1: float, y1: float) -> List[int]:
        if level.tree is None:
            return []
        center = [(x0 + x1) / 2, (y0 + y1) / 2]
        half = max(x1 - x0, y1 - y0) / 2
        candidates = level.tree.query_ball_point(center, half * (1 + 1e-9) + 1e-12, p=np.inf)
        return sorted(i for i in candidates
                      if x0 <= level.xs[i] <= x1 and y0 <= level.ys[i] <= y1)

    def _make_cluster(self, level: _Level, i: int) -> Cluster:
        item_id = int(level.ids[i])
        if item_id < len(self.points):
            feature = self.points[item_id]
            return Cluster(lon=feature.geometry.x, lat=feature.geometry.y,
                           point_count=1, properties=feature.properties)

        count = int(level.counts[i])
        return Cluster(
            lon=unproject_x(float(level.xs[i])),
            lat=unproject_y(float(level.ys[i])),
            point_count=count,
            properties={
                'cluster': True,
                'cluster_id': item_id,
                'point_count': count,
                'point_count_abbreviated': abbreviate_count(count),
            },
            cluster_id=item_id,
        )

    def get_leaves(self, cluster_id: int) -> List[Feature]:
        """All tree features under an aggregate cluster."""
        if cluster_id not in self._children:
            raise KeyError(f"No cluster with id {cluster_id}")
        return list(self._iter_leaves(cluster_id))

    def _iter_leaves(self, item_id: int) -> Iterator[Feature]:
        if item_id < len(self.points):
            yield self.points[item_id]
            return
        for child in self._children[item_id]:
            yield from self._iter_leaves(child)


def build(points: FeatureCollection, **options) -> ClusterIndex:
    return ClusterIndex(points, **options)


def query(index: ClusterIndex, bbox: Sequence[float], zoom: float) -> List[Cluster]:
    return index.get_clusters(bbox, zoom)
