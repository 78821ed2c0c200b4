"""Unit tests for feature_layer.py — layer URL validation and layer queries.

HTTP is faked through an injected requests.Session; assertions inspect
the query string each operation sends.
"""

from urllib.parse import parse_qs, urlsplit

import pytest
from shapely.geometry import Point

from conftest import LAYER_URL, feature_set_json, mock_response
from feature_layer import (
    FeatureService,
    FeatureServiceLayer,
    InvalidLayerUrl,
    RouteNotFound,
    get_all_features,
    get_feature_by_route_id,
    get_routes_near_point,
    validate_layer_url,
)
from featureservice_http import QueryError
from locator_config import LocatorConfig
from models import Feature, FeatureSet


def _sent(session):
    """(path, params) of the last GET issued on the mocked session."""
    parts = urlsplit(session.get.call_args[0][0])
    return parts.path, {k: v[0] for k, v in parse_qs(parts.query).items()}


ROUTE_FEATURE = {
    "attributes": {"RouteID": "009"},
    "geometry": {"paths": [[[-122.0, 47.0], [-122.0, 47.1]]]},
}


# =========================================================================
# Layer URL validation
# =========================================================================

class TestValidateLayerUrl:
    @pytest.mark.parametrize("url,expected", [
        ("https://host/path/FeatureServer/3/extra/stuff", "https://host/path/FeatureServer/3"),
        ("https://host/path/FeatureServer/3", "https://host/path/FeatureServer/3"),
        ("https://host/path/FeatureServer/0/query", "https://host/path/FeatureServer/0"),
        ("https://host/path/featureserver/12/", "https://host/path/featureserver/12"),
    ])
    def test_truncates_to_layer(self, url, expected):
        assert validate_layer_url(url) == expected

    @pytest.mark.parametrize("url", [
        "https://host/path/FeatureServer",
        "https://host/path/FeatureServer/",
        "https://host/path/MapServer/0",
        "FeatureServer/0",
        "",
    ])
    def test_rejects_non_layer_urls(self, url):
        with pytest.raises(InvalidLayerUrl) as exc_info:
            validate_layer_url(url)
        assert exc_info.value.url == url

    def test_invalid_url_is_value_error(self):
        with pytest.raises(ValueError):
            validate_layer_url("https://host/MapServer/0")


# =========================================================================
# Route lookup by ID
# =========================================================================

class TestGetFeatureByRouteId:
    def test_builds_where_clause_and_returns_first(self, session, client):
        second = dict(ROUTE_FEATURE, attributes={"RouteID": "009"})
        session.get.return_value = mock_response(200, feature_set_json([ROUTE_FEATURE, second]))

        feature = get_feature_by_route_id(LAYER_URL, "009", client=client)

        assert isinstance(feature, Feature)
        assert feature.attributes == {"RouteID": "009"}
        assert feature.geometry["paths"]
        path, params = _sent(session)
        assert path.endswith("/FeatureServer/0/query")
        assert params["where"] == "RouteID = '009'"
        assert params["outFields"] == "RouteID"
        assert params["fields"] == "RouteID"
        assert params["returnGeometry"] == "true"
        assert params["returnZ"] == "false"
        assert params["returnM"] == "false"
        assert params["f"] == "json"
        assert "outSR" not in params

    def test_custom_field_and_out_sr(self, session, client):
        session.get.return_value = mock_response(200, feature_set_json([ROUTE_FEATURE]))

        get_feature_by_route_id(
            LAYER_URL, "I-5", route_id_field="RTE_ID", out_sr=3857, return_m=True, client=client
        )

        _, params = _sent(session)
        assert params["where"] == "RTE_ID = 'I-5'"
        assert params["outSR"] == "3857"
        assert params["returnM"] == "true"

    def test_quotes_in_route_id_are_doubled(self, session, client):
        session.get.return_value = mock_response(200, feature_set_json([ROUTE_FEATURE]))

        get_feature_by_route_id(LAYER_URL, "O'Brien", client=client)

        _, params = _sent(session)
        assert params["where"] == "RouteID = 'O''Brien'"

    def test_no_match_raises_route_not_found(self, session, client):
        session.get.return_value = mock_response(200, feature_set_json([]))

        with pytest.raises(RouteNotFound) as exc_info:
            get_feature_by_route_id(LAYER_URL, "999", client=client)
        assert exc_info.value.route_id == "999"
        assert exc_info.value.route_id_field == "RouteID"

    def test_server_error_propagates(self, session, client):
        session.get.return_value = mock_response(
            200, {"error": {"code": 400, "message": "Invalid query", "details": []}}
        )

        with pytest.raises(QueryError, match="Invalid query"):
            get_feature_by_route_id(LAYER_URL, "009", client=client)


# =========================================================================
# Proximity search and bulk fetch
# =========================================================================

class TestGetRoutesNearPoint:
    def test_query_parameters(self, session, client):
        session.get.return_value = mock_response(200, feature_set_json([ROUTE_FEATURE]))

        result = get_routes_near_point(
            LAYER_URL, [-121.691053211689, 47.44456446804845], client=client
        )

        assert isinstance(result, FeatureSet)
        assert len(result) == 1
        _, params = _sent(session)
        assert params["geometry"] == "-121.691053211689,47.44456446804845"
        assert params["geometryType"] == "esriGeometryPoint"
        assert params["distance"] == "50"
        assert params["spatialRel"] == "esriSpatialRelIndexIntersects"
        assert params["units"] == "esriSRUnit_Foot"
        assert params["inSR"] == "4326"
        assert params["outSR"] == "4326"
        assert params["outFields"] == "RouteID"

    def test_accepts_shapely_point(self, session, client):
        session.get.return_value = mock_response(200, feature_set_json([]))

        get_routes_near_point(LAYER_URL, Point(-122.5, 47.25), distance=100, client=client)

        _, params = _sent(session)
        assert params["geometry"] == "-122.5,47.25"
        assert params["distance"] == "100"


class TestGetAllFeatures:
    def test_defaults(self, session, client):
        session.get.return_value = mock_response(200, feature_set_json([ROUTE_FEATURE]))

        result = get_all_features(LAYER_URL, client=client)

        assert result.geometry_type == "esriGeometryPolyline"
        _, params = _sent(session)
        assert params["outFields"] == "*"
        assert params["returnGeometry"] == "true"
        assert "outSR" not in params

    def test_field_list_joined(self, session, client):
        session.get.return_value = mock_response(200, feature_set_json([]))

        get_all_features(LAYER_URL, out_fields=["RouteID", "Name"], return_geometry=False, client=client)

        _, params = _sent(session)
        assert params["outFields"] == "RouteID,Name"
        assert params["returnGeometry"] == "false"


# =========================================================================
# FeatureServiceLayer / FeatureService
# =========================================================================

class TestFeatureServiceLayer:
    def test_url_is_truncated(self, client):
        layer = FeatureServiceLayer(LAYER_URL + "/query", client=client)
        assert layer.url == LAYER_URL

    def test_invalid_url_rejected(self, client):
        with pytest.raises(InvalidLayerUrl):
            FeatureServiceLayer("https://example.com/arcgis/rest/services", client=client)

    def test_setter_revalidates(self, client):
        layer = FeatureServiceLayer(LAYER_URL, client=client)
        with pytest.raises(InvalidLayerUrl):
            layer.url = "https://example.com/nothing"
        assert layer.url == LAYER_URL

    def test_uses_config_defaults(self, session, client):
        config = LocatorConfig(route_id_field="RTE", search_distance_ft=75)
        layer = FeatureServiceLayer(LAYER_URL, client=client, config=config)
        session.get.return_value = mock_response(200, feature_set_json([]))

        layer.get_routes_near_point([-122.0, 47.0])

        _, params = _sent(session)
        assert params["outFields"] == "RTE"
        assert params["distance"] == "75"

    def test_get_feature_by_route_id(self, session, client):
        layer = FeatureServiceLayer(LAYER_URL, client=client)
        session.get.return_value = mock_response(200, feature_set_json([ROUTE_FEATURE]))

        feature = layer.get_feature_by_route_id("009")

        assert feature.route_id() == "009"

    def test_get_all_features(self, session, client):
        layer = FeatureServiceLayer(LAYER_URL, client=client)
        session.get.return_value = mock_response(200, feature_set_json([ROUTE_FEATURE]))

        assert len(layer.get_all_features()) == 1


class TestFeatureService:
    def test_query_url(self, client):
        service = FeatureService("https://h/arcgis/rest/services/X/FeatureServer/", client=client)
        assert service.query_url == "https://h/arcgis/rest/services/X/FeatureServer/query"

    def test_query_forces_json(self, session, client):
        service = FeatureService("https://h/arcgis/rest/services/X/FeatureServer", client=client)
        session.get.return_value = mock_response(200, {"layers": []})

        result = service.query({"f": "html", "layerDefs": {"0": "1=1"}, "returnM": False})

        assert result == {"layers": []}
        path, params = _sent(session)
        assert path.endswith("/FeatureServer/query")
        assert params["f"] == "json"
        assert params["layerDefs"] == '{"0":"1=1"}'
        assert params["returnM"] == "false"
