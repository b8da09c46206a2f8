from flask import Blueprint, Flask, Response, current_app, jsonify, render_template, request, send_file
from flask_compress import Compress
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from config import (
    CLUSTER_CLICK_ZOOM_STEP,
    DEBUG,
    DEFAULT_TREE_COLOR,
    ELEVATION_DISPLAY,
    FRAME_WAIT_SECONDS,
    MAP_CENTER,
    MAP_ZOOM,
    PORT,
    TILE_URL,
    TREE_COLORS,
    VIEWPORT_DEBOUNCE_MS,
    WARD_STYLE,
)
from errors import DataLoadError, DataNotReadyError
from map_controller import MapController
from viewport import BoundingBox

bp = Blueprint('ward_map', __name__)


@bp.app_template_filter('number_format')  # type: ignore
def number_format(value: Union[int, float, str]) -> str:
    """Format number with thousands separator"""
    return "{:,}".format(int(value))


def get_controller() -> MapController:
    return current_app.extensions['ward_map']


# ============================================================================
# HELPER FUNCTIONS: Input Validation
# ============================================================================

def validate_and_parse_viewport(args: Mapping[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """
    Validate viewport parameters.

    Returns:
        tuple: (parsed dict with 'bbox' and 'zoom', error message str or None)
    """
    zoom_value = args.get('zoom')
    if zoom_value is None or zoom_value == '':
        return None, "Zoom level is required"
    try:
        zoom = int(zoom_value)
    except (TypeError, ValueError):
        return None, "Invalid zoom format - must be an integer"
    if not 0 <= zoom <= 24:
        return None, "Zoom level must be between 0 and 24"

    bounds_value = args.get('bounds')
    if not bounds_value:
        return None, "Bounds are required: west,south,east,north"
    try:
        if isinstance(bounds_value, str):
            bounds_parts = [float(b.strip()) for b in bounds_value.split(',')]
        else:
            bounds_parts = [float(b) for b in bounds_value]
    except (TypeError, ValueError):
        return None, "Invalid bounds format - must be numeric values"
    if len(bounds_parts) != 4:
        return None, "Bounds must contain exactly 4 values: west,south,east,north"
    if not all(math.isfinite(b) for b in bounds_parts):
        return None, "Bounds must be finite numbers"

    west, south, east, north = bounds_parts
    # Longitudes may exceed +/-180 when the map wraps; the cluster index normalises them
    if not (-90.0 <= south <= north <= 90.0):
        return None, "Invalid latitude bounds (expected -90 <= south <= north <= 90)"

    return {'bbox': BoundingBox(west, south, east, north), 'zoom': zoom}, None


def parse_non_negative_int(value: Optional[str], default: int) -> Optional[int]:
    if value is None or value == '':
        return default
    try:
        parsed = int(value)
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


def unavailable(e: Union[DataLoadError, DataNotReadyError]) -> Tuple[Response, int]:
    status = 'failed' if isinstance(e, DataLoadError) else 'pending'
    return jsonify({'error': str(e), 'status': status}), 503

# ============================================================================
# END OF HELPER FUNCTIONS
# ============================================================================

@bp.route('/')  # type: ignore
def index() -> str:
    """Map page"""
    controller = get_controller()
    trees = controller.state.trees
    return render_template('map.html',
                           total_trees=len(trees) if trees is not None else 0,
                           debounce_ms=VIEWPORT_DEBOUNCE_MS)

@bp.route('/api/config')  # type: ignore
def get_config() -> Response:
    """Return map settings shared with the browser"""
    return jsonify({
        'center': list(MAP_CENTER),
        'zoom': MAP_ZOOM,
        'tile_url': TILE_URL,
        'debounce_ms': VIEWPORT_DEBOUNCE_MS,
        'cluster_click_zoom_step': CLUSTER_CLICK_ZOOM_STEP,
        'tree_colors': TREE_COLORS,
        'default_tree_color': DEFAULT_TREE_COLOR,
        'ward_style': WARD_STYLE,
        'elevation': ELEVATION_DISPLAY,
    })

@bp.route('/api/status')  # type: ignore
def get_status() -> Response:
    """Return load status for every dataset"""
    return jsonify(get_controller().status())

@bp.route('/api/wards')  # type: ignore
def get_wards() -> Union[Response, Tuple[Response, int]]:
    """Return ward boundaries as GeoJSON"""
    try:
        return jsonify(get_controller().ward_layer())
    except (DataLoadError, DataNotReadyError) as e:
        return unavailable(e)

@bp.route('/api/schools')  # type: ignore
def get_schools() -> Union[Response, Tuple[Response, int]]:
    """Return schools as GeoJSON with popup text"""
    try:
        return jsonify(get_controller().school_layer())
    except (DataLoadError, DataNotReadyError) as e:
        return unavailable(e)

@bp.route('/api/viewport', methods=['POST'])  # type: ignore
def post_viewport() -> Tuple[Response, int]:
    """
    Record a pan/zoom event. Bursts of events are coalesced; the cluster
    layer for the last viewport is published through /api/clusters.

    Parameters (JSON body, form or query string):
    - zoom: Map zoom level (0-24)
    - bounds: Viewport bounds as "west,south,east,north" or a 4-item list
    """
    payload = request.get_json(silent=True)
    # Only a JSON object carries named parameters
    args = payload if isinstance(payload, dict) and payload else request.values
    parsed, error = validate_and_parse_viewport(args)
    if error:
        return jsonify({'error': error}), 400

    controller = get_controller()
    controller.viewport_changed(parsed['bbox'], parsed['zoom'])
    frame = controller.state.tree_frame
    return jsonify({
        'accepted': True,
        'version': frame.version if frame is not None else 0,
    }), 202

@bp.route('/api/clusters')  # type: ignore
def get_clusters() -> Union[Response, Tuple[Response, int], Tuple[str, int]]:
    """
    Return the latest tree cluster layer (long poll).

    Query parameters:
    - after: Only return a layer newer than this version (default 0)
    - wait: Seconds to wait for a newer layer (default 10, max 30)
    """
    after = parse_non_negative_int(request.args.get('after'), 0)
    if after is None:
        return jsonify({'error': "Invalid 'after' - must be a non-negative integer"}), 400
    try:
        wait = float(request.args.get('wait', FRAME_WAIT_SECONDS))
    except ValueError:
        return jsonify({'error': "Invalid 'wait' - must be a number of seconds"}), 400
    wait = max(0.0, min(wait, 30.0))

    frame = get_controller().wait_for_frame(after=after, timeout=wait)
    if frame is None:
        return '', 204
    return jsonify(frame.to_dict())

@bp.route('/api/clusters/<int:cluster_id>/leaves')  # type: ignore
def get_cluster_leaves(cluster_id: int) -> Union[Response, Tuple[Response, int]]:
    """Return the trees inside an aggregate cluster"""
    try:
        leaves = get_controller().cluster_leaves(cluster_id)
    except (DataLoadError, DataNotReadyError) as e:
        return unavailable(e)
    except KeyError:
        return jsonify({'error': 'Cluster not found'}), 404
    return jsonify({'type': 'FeatureCollection', 'features': [f.to_geojson() for f in leaves]})

@bp.route('/api/wards/<path:ward_name>/summary')  # type: ignore
def get_ward_summary(ward_name: str) -> Union[Response, Tuple[Response, int]]:
    """Return sidebar text, pie chart and counts for one ward"""
    try:
        return jsonify(get_controller().select_ward(ward_name))
    except DataLoadError as e:
        return unavailable(e)
    except DataNotReadyError as e:
        return jsonify({'error': str(e), 'missing': list(e.missing)}), 409
    except KeyError:
        return jsonify({'error': 'Ward not found'}), 404

@bp.route('/api/stats/by-ward')  # type: ignore
def get_stats_by_ward() -> Union[Response, Tuple[Response, int]]:
    """Return tree and school counts for every ward"""
    try:
        df = get_controller().ward_stats()
    except DataLoadError as e:
        return unavailable(e)
    except DataNotReadyError as e:
        return jsonify({'error': str(e), 'missing': list(e.missing)}), 409
    df = df.astype(object).where(df.notna(), None)
    return jsonify(df.to_dict(orient='records'))

@bp.route('/data/elevation.tif')  # type: ignore
def get_elevation_raster() -> Union[Response, Tuple[Response, int]]:
    """Serve the DEM as-is for the browser overlay"""
    path = get_controller().elevation_file()
    if path is None:
        return jsonify({'error': 'Elevation raster not available'}), 404
    return send_file(path, mimetype='image/tiff')


def create_app(controller: Optional[MapController] = None) -> Flask:
    """
    Build the Flask app around a map controller. Without one, a controller
    for the configured data files is created and starts loading in the
    background.
    """
    app = Flask(__name__)
    Compress(app)  # Enable gzip/brotli compression for all responses

    if controller is None:
        controller = MapController()
        executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='ward-map-load')
        controller.start_loading(executor)
        app.extensions['ward_map_executor'] = executor

    app.extensions['ward_map'] = controller
    app.register_blueprint(bp)
    return app


if __name__ == '__main__':
    print("\n" + "="*80)
    print("WARD MAP SERVER")
    print("="*80)
    print(f"\nStarting server at http://localhost:{PORT}")
    print(f"   Debug mode: {'ON' if DEBUG else 'OFF'}")
    print(f"   Press Ctrl+C to stop the server\n")
    print("="*80 + "\n")
    # The reloader would load every dataset twice
    create_app().run(debug=DEBUG, port=PORT, use_reloader=False, threaded=True)
