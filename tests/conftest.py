"""Shared fixtures for the route locator test suite.

Route geometries are built with pyproj so their geodesic lengths are
known exactly, and HTTP is faked with a MagicMock requests.Session
injected into FeatureServiceHTTPClient (no live network).
"""

from unittest.mock import MagicMock

import pytest
import requests
from pyproj import Geod

from featureservice_http import FeatureServiceHTTPClient
from locator_trace import clear_trace

GEOD = Geod(ellps="WGS84")
METERS_PER_MILE = 1609.344

LAYER_URL = "https://data.wsdot.wa.gov/arcgis/rest/services/Shared/StateRoutes/FeatureServer/0"


def make_path(start=(-122.0, 47.0), azimuth=0.0, miles=10.0, step_miles=2.0):
    """ArcGIS path of vertices every ``step_miles`` along a geodesic."""
    path = [list(start)]
    lon, lat = start
    travelled = 0.0
    while travelled < miles - 1e-9:
        step = min(step_miles, miles - travelled)
        lon, lat, _ = GEOD.fwd(lon, lat, azimuth, step * METERS_PER_MILE)
        path.append([lon, lat])
        travelled += step
    return path


def mock_response(status_code=200, json_data=None, text=""):
    """Create a mock requests.Response object."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.text = text
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("No JSON")
    return resp


def feature_set_json(features, geometry_type="esriGeometryPolyline", wkid=4326):
    return {
        "objectIdFieldName": "OBJECTID",
        "geometryType": geometry_type,
        "spatialReference": {"wkid": wkid, "latestWkid": wkid},
        "hasZ": False,
        "hasM": False,
        "fields": [{"name": "RouteID", "type": "esriFieldTypeString"}],
        "features": features,
    }


@pytest.fixture(autouse=True)
def _no_trace():
    """Every test starts and ends without a thread-local trace."""
    clear_trace()
    yield
    clear_trace()


@pytest.fixture()
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture()
def client(session):
    return FeatureServiceHTTPClient(session=session)


@pytest.fixture()
def ten_mile_path():
    return make_path(miles=10.0)


@pytest.fixture()
def twenty_mile_path():
    return make_path(miles=20.0)


@pytest.fixture()
def two_part_paths():
    first = make_path(start=(-122.0, 47.0), miles=4.0)
    second = make_path(start=(-121.9, 47.2), miles=3.0)
    return [first, second]
