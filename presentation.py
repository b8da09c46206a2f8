"""
Presentation layer: turns cluster queries and ward summaries into what the
browser draws (marker specs, popups, tooltips, the pie chart and sidebar text).
"""
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import plotly.graph_objects as go
from markupsafe import escape

from cluster_engine import Cluster
from config import (
    CLUSTER_CLICK_ZOOM_STEP,
    CLUSTER_COLOR,
    DEFAULT_TREE_COLOR,
    PIE_COLORS,
    TREE_COLORS,
    TREE_ID_FIELD,
    TREE_NAME_FIELD,
    TREE_WARD_FIELD,
    WARD_STYLE,
)
from datasets import FeatureCollection, school_name, ward_name
from viewport import ViewportState
from ward_aggregator import WardSummary


def tree_color(tree_name: Optional[str]) -> str:
    return TREE_COLORS.get(tree_name, DEFAULT_TREE_COLOR)


def tree_popup(properties: Mapping[str, Any]) -> str:
    return (
        f"<b>Tree Name:</b> {escape(properties.get(TREE_NAME_FIELD, ''))}<br/>"
        f"<b>Ward Number:</b> {escape(properties.get(TREE_WARD_FIELD, ''))}<br/>"
        f"<b>Tree ID:</b> {escape(properties.get(TREE_ID_FIELD, ''))}"
    )


def cluster_marker(cluster: Cluster, zoom: int) -> Dict[str, Any]:
    """Circle-marker spec for one cluster at the zoom it was queried at."""
    if cluster.is_aggregate:
        count = cluster.point_count
        return {
            'type': 'cluster',
            'cluster_id': cluster.cluster_id,
            'lat': cluster.lat,
            'lon': cluster.lon,
            'count': count,
            'radius': math.sqrt(count) * 2,
            'color': CLUSTER_COLOR,
            'fillOpacity': 0.6,
            'tooltip': f"{count} trees",
            'flyTo': {'lat': cluster.lat, 'lon': cluster.lon, 'zoom': zoom + CLUSTER_CLICK_ZOOM_STEP},
        }
    return {
        'type': 'marker',
        'lat': cluster.lat,
        'lon': cluster.lon,
        'radius': 4,
        'color': tree_color(cluster.properties.get(TREE_NAME_FIELD)),
        'fillOpacity': 0.7,
        'popup': tree_popup(cluster.properties),
        'properties': dict(cluster.properties),
    }


def ward_layer(wards: FeatureCollection) -> Dict[str, Any]:
    """Ward boundaries as GeoJSON, each feature carrying its tooltip and style."""
    features = []
    for ward in wards:
        feature = ward.to_geojson()
        feature['properties']['tooltip'] = f"Ward_Name: {escape(ward_name(ward))}"
        features.append(feature)
    return {'type': 'FeatureCollection', 'features': features, 'style': dict(WARD_STYLE)}


def school_layer(schools: FeatureCollection) -> Dict[str, Any]:
    features = []
    for school in schools:
        feature = school.to_geojson()
        label = "School_info" if school.geom_type == 'Point' else "School Area"
        feature['properties']['popup'] = f"<b>{label}:</b> {escape(school_name(school))}"
        features.append(feature)
    return {'type': 'FeatureCollection', 'features': features}


def sidebar(summary: WardSummary) -> Dict[str, str]:
    if summary.elevation_mean is None:
        elevation = "Avg Elevation: n/a"
    else:
        elevation = f"Avg Elevation: {summary.elevation_mean:.2f} m"
    return {
        'wardInfo': f"Ward_Name: {summary.ward_name}",
        'schoolCount': f"Schools: {summary.school_count}",
        'elevation': elevation,
        'treeDist': f"Trees: {summary.tree_count}",
    }


class TreeTypeChart:
    """Tree-type pie chart; one figure per session, updated in place on every ward click."""

    def __init__(self):
        self.figure = go.Figure(go.Pie(
            labels=[],
            values=[],
            marker=dict(colors=PIE_COLORS),
            sort=False,
            textinfo='percent',
        ))
        self.figure.update_layout(
            template='plotly_white',
            showlegend=True,
            margin=dict(l=10, r=10, t=10, b=10),
            uirevision='tree-types',
        )
        self.revision = 0

    @property
    def labels(self) -> List[str]:
        return list(self.figure.data[0].labels or [])

    @property
    def values(self) -> List[int]:
        return list(self.figure.data[0].values or [])

    def update(self, distribution: Mapping[str, int]) -> None:
        self.figure.update_traces(labels=list(distribution.keys()), values=list(distribution.values()))
        self.revision += 1
        self.figure.update_layout(datarevision=self.revision)

    def to_dict(self) -> Dict[str, Any]:
        return json.loads(self.figure.to_json())


@dataclass
class ClusterFrame:
    """One rendered tree layer: everything the browser needs for a viewport."""
    version: int
    viewport: ViewportState
    markers: List[Dict[str, Any]] = field(default_factory=list)
    total_in_view: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'version': self.version,
            'clusters': self.markers,
            'total_in_view': self.total_in_view,
        }
        result.update(self.viewport.to_dict())
        return result


class Renderer:
    """The only component that shapes display output."""

    def __init__(self):
        self.chart = TreeTypeChart()
        self._frame_version = 0

    def render_clusters(self, clusters: List[Cluster], viewport: ViewportState) -> ClusterFrame:
        self._frame_version += 1
        return ClusterFrame(
            version=self._frame_version,
            viewport=viewport,
            markers=[cluster_marker(c, viewport.zoom) for c in clusters],
            total_in_view=sum(c.point_count for c in clusters),
        )

    def render_ward(self, summary: WardSummary) -> Dict[str, Any]:
        self.chart.update(summary.tree_count_by_type)
        return {
            'summary': summary.to_dict(),
            'sidebar': sidebar(summary),
            'chart': self.chart.to_dict(),
            'chart_revision': self.chart.revision,
        }
