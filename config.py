"""Configuration for the ward map server (paths, map defaults, styling)."""
import os
from pathlib import Path

# Data files
DATA_DIR = Path(os.getenv('WARD_MAP_DATA_DIR', Path(__file__).parent / "data"))
WARD_FILE = DATA_DIR / "wards.geojson"
TREE_FILE = DATA_DIR / "trees.geojson"
SCHOOL_FILE = DATA_DIR / "schools.geojson"
# NASADEM 1-degree tile covering Bengaluru (12-13 N, 77-78 E)
ELEVATION_FILE = DATA_DIR / "NASADEM_HGT_n12e077_elevation.tif"

DATASET_FILES = {
    'wards': WARD_FILE,
    'trees': TREE_FILE,
    'schools': SCHOOL_FILE,
    'elevation': ELEVATION_FILE,
}

# Map defaults (Bengaluru)
MAP_CENTER = (12.9716, 77.5946)
MAP_ZOOM = 13
TILE_URL = "https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png"

# Tree clustering
CLUSTER_RADIUS = int(os.getenv('CLUSTER_RADIUS', 40))   # pixels
CLUSTER_EXTENT = 512                                     # tile extent in pixels
CLUSTER_MIN_ZOOM = 0
CLUSTER_MAX_ZOOM = int(os.getenv('CLUSTER_MAX_ZOOM', 18))
CLUSTER_MIN_POINTS = 2
CLUSTER_CLICK_ZOOM_STEP = 2

# Viewport changes closer together than this are coalesced
VIEWPORT_DEBOUNCE_MS = int(os.getenv('VIEWPORT_DEBOUNCE_MS', 200))

# Long-poll wait for a new cluster frame
FRAME_WAIT_SECONDS = 10.0

# Attribute names in the source GeoJSON
WARD_NAME_FIELD = 'KGISWardName'
TREE_NAME_FIELD = 'TreeName'
TREE_WARD_FIELD = 'WardNumber'
TREE_ID_FIELD = 'KGISTreeID'
SCHOOL_NAME_FIELD = 'name'

# Styling
TREE_COLORS = {
    "Mangifera Indica L.": "orange",
    "Thespesia Populnea": "green",
    "Acacia Nilotica (L.) Del. Subsp. Indica (Benth.) Brenan": "brown",
    "Albizia Lebbeck (L.) Benth.": "purple",
    "Pongamia Pinnata (L.) Pierre": "yellow",
    "Samanea Saman (Jacq.) Merr.": "red",
    "Bauhinia Racemosa Lam": "black",
}
DEFAULT_TREE_COLOR = "blue"
CLUSTER_COLOR = "#3388ff"
PIE_COLORS = ["green", "brown", "purple", "orange", "blue"]

WARD_STYLE = {
    'color': "#555",
    'weight': 1,
    'fillOpacity': 0.1,
}

ELEVATION_DISPLAY = {
    'band': 1,
    'name': "Elevation",
    'displayMin': 880,
    'displayMax': 970,
    'opacity': 0.6,
    'palette': ["#0000ff", "#00ffff", "#00ff00", "#ffff00", "#ff8000", "#ff0000"],
    'scale': "linear",
}

# Server
PORT = int(os.getenv('PORT', 5001))
DEBUG = os.getenv('FLASK_ENV', 'development') == 'development'
