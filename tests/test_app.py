"""Tests for the Flask routes."""

import pytest

from app import create_app, number_format, validate_and_parse_viewport
from map_controller import MapController

VIEWPORT = {'bounds': [77.50, 12.90, 77.54, 12.92], 'zoom': 13}


@pytest.fixture
def client(loaded_controller):
    app = create_app(loaded_controller)
    app.config['TESTING'] = True
    return app.test_client()


@pytest.fixture
def empty_client(controller):
    """Client over a controller that has not loaded anything."""
    return create_app(controller).test_client()


class TestValidation:

    def test_valid_string_bounds(self):
        parsed, error = validate_and_parse_viewport({'bounds': "77.5, 12.9, 77.54, 12.92", 'zoom': "13"})
        assert error is None
        assert parsed['zoom'] == 13
        assert parsed['bbox'].as_tuple() == (77.5, 12.9, 77.54, 12.92)

    @pytest.mark.parametrize("args,message", [
        ({'bounds': "77.5,12.9,77.54,12.92"}, "Zoom level is required"),
        ({'bounds': "77.5,12.9,77.54,12.92", 'zoom': "abc"}, "Invalid zoom format"),
        ({'bounds': "77.5,12.9,77.54,12.92", 'zoom': "40"}, "between 0 and 24"),
        ({'zoom': "13"}, "Bounds are required"),
        ({'bounds': "77.5,12.9,77.54", 'zoom': "13"}, "exactly 4 values"),
        ({'bounds': "a,b,c,d", 'zoom': "13"}, "numeric"),
        ({'bounds': "77.5,nan,77.54,12.92", 'zoom': "13"}, "finite"),
        ({'bounds': "77.5,12.92,77.54,12.90", 'zoom': "13"}, "latitude"),
    ])
    def test_rejected(self, args, message):
        parsed, error = validate_and_parse_viewport(args)
        assert parsed is None
        assert message in error

    def test_wrapped_longitudes_allowed(self):
        parsed, error = validate_and_parse_viewport({'bounds': [170, -10, 190, 10], 'zoom': 3})
        assert error is None


def test_number_format():
    assert number_format(1234567) == "1,234,567"
    assert number_format("42") == "42"


class TestPages:

    def test_index(self, client):
        response = client.get('/')
        assert response.status_code == 200
        assert b"<title>Ward Map</title>" in response.data
        assert b'<span id="tree-total">5</span> trees loaded' in response.data

    def test_index_before_loading(self, empty_client):
        response = empty_client.get('/')
        assert response.status_code == 200
        assert b'<span id="tree-total">0</span> trees loaded' in response.data

    def test_config(self, client):
        payload = client.get('/api/config').get_json()
        assert payload['debounce_ms'] == 200
        assert payload['cluster_click_zoom_step'] == 2
        assert len(payload['center']) == 2

    def test_status(self, client):
        payload = client.get('/api/status').get_json()
        assert payload['trees'] == {'status': 'loaded', 'error': None, 'features': 5}


class TestLayers:

    def test_wards(self, client):
        payload = client.get('/api/wards').get_json()
        assert payload['type'] == 'FeatureCollection'
        assert payload['features'][0]['properties']['tooltip'] == "Ward_Name: Ward A"

    def test_schools(self, client):
        payload = client.get('/api/schools').get_json()
        assert len(payload['features']) == 4

    def test_layer_pending(self, empty_client):
        response = empty_client.get('/api/wards')
        assert response.status_code == 503
        assert response.get_json()['status'] == 'pending'

    def test_layer_failed(self, controller, tmp_path):
        controller.files['schools'] = tmp_path / "missing.geojson"
        controller.load_dataset('schools')
        response = create_app(controller).test_client().get('/api/schools')
        assert response.status_code == 503
        assert response.get_json()['status'] == 'failed'


class TestClusters:

    def test_viewport_then_frame(self, client, manual_scheduler):
        response = client.post('/api/viewport', json=VIEWPORT)
        assert response.status_code == 202
        assert response.get_json() == {'accepted': True, 'version': 0}

        # nothing rendered until the debounce window closes
        assert client.get('/api/clusters?after=0&wait=0').status_code == 204

        manual_scheduler.advance(0.2)
        frame = client.get('/api/clusters?after=0&wait=0').get_json()
        assert frame['version'] == 1
        assert frame['zoom'] == 13
        assert frame['total_in_view'] == 4

        assert client.get('/api/clusters?after=1&wait=0').status_code == 204

    def test_viewport_as_form(self, client, manual_scheduler):
        response = client.post('/api/viewport', data={'bounds': "77.50,12.90,77.54,12.92", 'zoom': "13"})
        assert response.status_code == 202

    def test_invalid_viewport(self, client):
        response = client.post('/api/viewport', json={'bounds': [77.5, 12.9], 'zoom': 13})
        assert response.status_code == 400
        assert 'error' in response.get_json()

    @pytest.mark.parametrize("body", [[1, 2], "x", 13])
    def test_viewport_body_not_an_object(self, client, body):
        response = client.post('/api/viewport', json=body)
        assert response.status_code == 400
        assert response.get_json()['error'] == "Zoom level is required"
    @pytest.mark.parametrize("query", ["after=-1", "after=x", "wait=soon"])
    def test_invalid_poll(self, client, query):
        assert client.get(f'/api/clusters?{query}').status_code == 400

    def test_leaves(self, client, manual_scheduler):
        client.post('/api/viewport', json=VIEWPORT)
        manual_scheduler.advance(0.2)
        frame = client.get('/api/clusters?wait=0').get_json()
        cluster = next(m for m in frame['clusters'] if m['type'] == 'cluster')
        payload = client.get(f"/api/clusters/{cluster['cluster_id']}/leaves").get_json()
        assert len(payload['features']) == cluster['count']
        assert all(f['geometry']['type'] == 'Point' for f in payload['features'])

    def test_unknown_cluster(self, client):
        assert client.get('/api/clusters/999999/leaves').status_code == 404

    def test_leaves_before_load(self, empty_client):
        assert empty_client.get('/api/clusters/1/leaves').status_code == 503


class TestWardSummary:

    def test_summary(self, client):
        response = client.get('/api/wards/Ward%20A/summary')
        assert response.status_code == 200
        payload = response.get_json()
        assert payload['summary']['school_count'] == 2
        assert payload['sidebar']['treeDist'] == "Trees: 3"
        assert payload['chart']['data'][0]['labels'] == ["Mangifera Indica L.", "Thespesia Populnea"]

    def test_unknown_ward(self, client):
        assert client.get('/api/wards/Nowhere/summary').status_code == 404

    def test_not_ready(self, controller):
        controller.load_dataset('wards')
        response = create_app(controller).test_client().get('/api/wards/Ward%20A/summary')
        assert response.status_code == 409
        assert response.get_json()['missing'] == ['trees', 'schools']

    def test_stats_by_ward(self, client):
        rows = client.get('/api/stats/by-ward').get_json()
        assert [r['ward'] for r in rows] == ['Ward A', 'Ward B', 'Ward C']
        assert [r['trees'] for r in rows] == [3, 1, 0]
        assert rows[2]['elevation_mean'] is None

    def test_stats_not_ready(self, empty_client):
        assert empty_client.get('/api/stats/by-ward').status_code == 409

    def test_failed_trees(self, controller, tmp_path):
        """A tree layer that failed to load answers 503 rather than waiting forever."""
        controller.files['trees'] = tmp_path / "missing.geojson"
        for name in ('wards', 'trees', 'schools'):
            controller.load_dataset(name)
        client = create_app(controller).test_client()

        response = client.get('/api/wards/Ward%20A/summary')
        assert response.status_code == 503
        assert response.get_json()['status'] == 'failed'
        assert 'file not found' in response.get_json()['error']

        assert client.get('/api/stats/by-ward').status_code == 503
        assert client.get('/api/status').get_json()['trees']['status'] == 'failed'


class TestElevationRaster:

    def test_served(self, client, dem_bytes):
        response = client.get('/data/elevation.tif')
        assert response.status_code == 200
        assert response.mimetype == 'image/tiff'
        assert response.data == dem_bytes
        response.close()

    def test_missing(self, data_files, manual_scheduler):
        files = {k: v for k, v in data_files.items() if k != 'elevation'}
        app = create_app(MapController(files=files, scheduler=manual_scheduler))
        assert app.test_client().get('/data/elevation.tif').status_code == 404
