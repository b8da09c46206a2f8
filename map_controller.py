"""
Application state and the controller that owns it.

Every dataset, derived index and rendered artefact lives in one AppState;
MapController is its only writer. Dataset loads run on a thread pool and the
debounce timer fires on its own thread, so mutation happens under one lock.
"""
import threading
from concurrent.futures import Executor, Future, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import pandas as pd

from cluster_engine import ClusterIndex, build
from config import DATASET_FILES, VIEWPORT_DEBOUNCE_MS
from datasets import Feature, FeatureCollection, load_schools, load_trees, load_wards
from elevation import ElevationRaster, load_elevation
from errors import DataLoadError, DataNotReadyError, InvalidGeometryError
from presentation import ClusterFrame, Renderer, school_layer, ward_layer
from viewport import BoundingBox, Scheduler, ViewportController, ViewportState
from ward_aggregator import WardAggregator, WardSummary

VECTOR_DATASETS = ('wards', 'trees', 'schools')
ALL_DATASETS = VECTOR_DATASETS + ('elevation',)

LOADERS = {
    'wards': load_wards,
    'trees': load_trees,
    'schools': load_schools,
    'elevation': load_elevation,
}


@dataclass
class AppState:
    wards: Optional[FeatureCollection] = None
    trees: Optional[FeatureCollection] = None
    schools: Optional[FeatureCollection] = None
    elevation: Optional[ElevationRaster] = None
    tree_index: Optional[ClusterIndex] = None
    aggregator: Optional[WardAggregator] = None
    tree_frame: Optional[ClusterFrame] = None
    selected_ward: Optional[WardSummary] = None
    load_errors: Dict[str, str] = field(default_factory=dict)

    def status(self, name: str) -> str:
        if getattr(self, name) is not None:
            return 'loaded'
        if name in self.load_errors:
            return 'failed'
        return 'pending'


class MapController:
    def __init__(self, files: Optional[Mapping[str, Union[str, Path]]] = None,
                 scheduler: Optional[Scheduler] = None,
                 debounce_ms: int = VIEWPORT_DEBOUNCE_MS,
                 cluster_options: Optional[Dict[str, Any]] = None):
        self.files = dict(DATASET_FILES if files is None else files)
        self.state = AppState()
        self.renderer = Renderer()
        self._cluster_options = cluster_options or {}
        self._lock = threading.RLock()
        self._frame_ready = threading.Condition(self._lock)
        self.viewport = ViewportController(self._render_clusters, scheduler, debounce_ms)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def start_loading(self, executor: Executor) -> List[Future]:
        """Load the vector datasets in parallel, then the elevation raster."""
        vector_jobs = [executor.submit(self.load_dataset, name) for name in VECTOR_DATASETS]

        def load_elevation_last() -> bool:
            wait(vector_jobs)
            return self.load_dataset('elevation')

        return vector_jobs + [executor.submit(load_elevation_last)]

    def load_dataset(self, name: str) -> bool:
        """Load one dataset; a failure leaves only that layer absent."""
        path = self.files.get(name)
        try:
            if path is None:
                raise DataLoadError(name, "no file configured")
            value = LOADERS[name](path)
            tree_index = build(value, **self._cluster_options) if name == 'trees' else None
            aggregator = WardAggregator(value) if name == 'wards' else None
        except (DataLoadError, InvalidGeometryError) as e:
            print(f"ERROR: {name} layer unavailable: {e}")
            with self._lock:
                self.state.load_errors[name] = str(e)
            return False

        with self._lock:
            setattr(self.state, name, value)
            self.state.load_errors.pop(name, None)
            if tree_index is not None:
                self.state.tree_index = tree_index
            if aggregator is not None:
                self.state.aggregator = aggregator

        if name == 'trees':
            self.viewport.refresh()
        return True

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Load status per dataset; vector layers also report their feature count once loaded."""
        with self._lock:
            result = {}
            for name in ALL_DATASETS:
                value = getattr(self.state, name)
                result[name] = {
                    'status': self.state.status(name),
                    'error': self.state.load_errors.get(name),
                    'features': len(value) if name in VECTOR_DATASETS and value is not None else None,
                }
            return result

    def _require_vector_layers(self) -> None:
        """Raise DataLoadError if a layer a ward summary needs has failed for good."""
        for name in VECTOR_DATASETS:
            if getattr(self.state, name) is None and name in self.state.load_errors:
                raise DataLoadError(name, self.state.load_errors[name])

    def _require(self, name: str):
        value = getattr(self.state, name)
        if value is None:
            if name in self.state.load_errors:
                raise DataLoadError(name, self.state.load_errors[name])
            raise DataNotReadyError([name])
        return value

    # ------------------------------------------------------------------
    # Static layers
    # ------------------------------------------------------------------

    def ward_layer(self) -> Dict[str, Any]:
        with self._lock:
            return ward_layer(self._require('wards'))

    def school_layer(self) -> Dict[str, Any]:
        with self._lock:
            return school_layer(self._require('schools'))

    # ------------------------------------------------------------------
    # Tree clusters
    # ------------------------------------------------------------------

    def viewport_changed(self, bbox: BoundingBox, zoom: int) -> None:
        self.viewport.viewport_changed(bbox, zoom)

    def _render_clusters(self, viewport: ViewportState) -> None:
        with self._lock:
            index = self.state.tree_index
            if index is None:
                return
            clusters = index.get_clusters(viewport.bbox.as_tuple(), viewport.zoom)
            self.state.tree_frame = self.renderer.render_clusters(clusters, viewport)
            self._frame_ready.notify_all()

    def wait_for_frame(self, after: int = 0, timeout: Optional[float] = None) -> Optional[ClusterFrame]:
        """The latest cluster frame newer than ``after``, waiting up to ``timeout`` seconds."""
        def is_newer() -> bool:
            frame = self.state.tree_frame
            return frame is not None and frame.version > after

        with self._frame_ready:
            self._frame_ready.wait_for(is_newer, timeout)
            return self.state.tree_frame if is_newer() else None

    def cluster_leaves(self, cluster_id: int) -> List[Feature]:
        with self._lock:
            # The index is published together with the trees themselves
            self._require('trees')
            return self.state.tree_index.get_leaves(cluster_id)

    # ------------------------------------------------------------------
    # Ward selection
    # ------------------------------------------------------------------

    def select_ward(self, name: str) -> Dict[str, Any]:
        """Summarise a ward and render its sidebar and chart."""
        with self._lock:
            state = self.state
            self._require_vector_layers()
            try:
                if state.aggregator is None:
                    missing = [n for n in VECTOR_DATASETS if getattr(state, n) is None]
                    raise DataNotReadyError(missing)
                ward = state.aggregator.ward(name)
                summary = state.aggregator.summarize(ward, state.trees, state.schools, state.elevation)
            except DataNotReadyError as e:
                print(f"WARNING: {e}")
                raise

            state.selected_ward = summary
            return self.renderer.render_ward(summary)

    def ward_stats(self) -> pd.DataFrame:
        with self._lock:
            state = self.state
            self._require_vector_layers()
            if state.aggregator is None:
                raise DataNotReadyError([n for n in VECTOR_DATASETS if getattr(state, n) is None])
            return state.aggregator.summarize_all(state.trees, state.schools, state.elevation)

    def elevation_file(self) -> Optional[Path]:
        path = self.files.get('elevation')
        if path is None or not Path(path).exists():
            return None
        return Path(path)
