"""
ArcGIS Feature Service layer queries.

Thin, per-operation wrappers over featureservice_http:
  - get_feature_by_route_id(): one route feature by its route ID
  - get_routes_near_point(): routes within a search tolerance of a point
  - get_all_features(): every feature of a layer

FeatureServiceLayer binds a validated layer URL (``.../FeatureServer/<n>``)
and the locator defaults; FeatureService issues service-level queries.
"""

import logging
import re
from typing import Any, Dict, Optional, Sequence, Union

from shapely.geometry import Point

from featureservice_http import (
    FeatureServiceHTTPClient,
    ensure_query_url,
    feature_service_query,
)
from locator_config import DEFAULT_CONFIG, LocatorConfig
from models import Feature, FeatureSet, RouteLocatorError

logger = logging.getLogger(__name__)

LAYER_URL_RE = re.compile(r".+/FeatureServer/\d+", re.IGNORECASE)


class InvalidLayerUrl(RouteLocatorError, ValueError):
    """Raised when a URL does not point at a Feature Service layer."""

    def __init__(self, url: Any):
        self.url = url
        super().__init__(f"Invalid Feature Service Layer URL: {url}")


class RouteNotFound(RouteLocatorError):
    """Raised when a route ID query matches no feature."""

    def __init__(self, route_id: str, route_id_field: str = "RouteID", url: Optional[str] = None):
        self.route_id = route_id
        self.route_id_field = route_id_field
        self.url = url
        super().__init__(f"No route found where {route_id_field} = '{route_id}'")


def validate_layer_url(url: str) -> str:
    """Return the ``<base>/FeatureServer/<n>`` prefix of ``url``.

    Anything after the layer number (e.g. "/query") is discarded.
    """
    match = LAYER_URL_RE.search(url) if isinstance(url, str) else None
    if not match:
        raise InvalidLayerUrl(url)
    return match.group(0)


def _route_id_where(route_id_field: str, route_id: str) -> str:
    # Single quotes are doubled per SQL string-literal rules
    return "{} = '{}'".format(route_id_field, str(route_id).replace("'", "''"))


def get_feature_by_route_id(
    url: str,
    route_id: str,
    route_id_field: str = "RouteID",
    out_sr: Optional[int] = None,
    return_z: bool = False,
    return_m: bool = False,
    client: Optional[FeatureServiceHTTPClient] = None,
) -> Feature:
    """
    Find a specific route feature by its route ID.

    Args:
        url: Feature service layer URL.
        route_id: Route ID to search for.
        route_id_field: The field that contains the unique route ID.
        out_sr: Output spatial reference WKID; None keeps the layer's own.
        return_z: Return Z coordinates?
        return_m: Return M coordinates?
        client: HTTP client to use; a fresh one if None.

    Returns:
        The first matching feature.

    Raises:
        RouteNotFound: the query returned no features.
        QueryError: the service returned an error payload.
    """
    search_params = {
        "where": _route_id_where(route_id_field, route_id),
        "fields": route_id_field,
        "returnGeometry": True,
        "outFields": route_id_field,
        "returnZ": return_z,
        "returnM": return_m,
        "outSR": out_sr,
        "f": "json",
    }
    data = feature_service_query(
        ensure_query_url(url), search_params, caller="route_by_id", client=client
    )
    feature_set = FeatureSet.from_json(data)
    if not feature_set.features:
        raise RouteNotFound(route_id, route_id_field, url)
    if len(feature_set.features) > 1:
        logger.debug(
            "%d features matched %s = '%s'; using the first",
            len(feature_set.features),
            route_id_field,
            route_id,
        )
    return feature_set.features[0]


def _point_param(point: Union[Point, Sequence[float]]) -> str:
    coords = (point.x, point.y) if isinstance(point, Point) else point
    return ",".join(str(n) for n in coords)


def get_routes_near_point(
    url: str,
    point: Union[Point, Sequence[float]],
    route_id_field: str = "RouteID",
    in_sr: int = 4326,
    out_sr: int = 4326,
    distance: float = 50,
    client: Optional[FeatureServiceHTTPClient] = None,
) -> FeatureSet:
    """
    Query a layer for routes within ``distance`` feet of a point.

    Args:
        url: Feature service layer URL.
        point: XY point coordinates, in ``in_sr``.
        route_id_field: Field returned for each route.
        in_sr: Input spatial reference WKID.
        out_sr: Output spatial reference WKID.
        distance: Search distance around the point, in feet.
        client: HTTP client to use; a fresh one if None.

    Returns:
        The route features within the search distance of the point.
    """
    search_params = {
        "geometry": _point_param(point),
        "geometryType": "esriGeometryPoint",
        "distance": distance,
        "spatialRel": "esriSpatialRelIndexIntersects",
        "units": "esriSRUnit_Foot",
        "outFields": route_id_field,
        "returnGeometry": True,
        "inSR": in_sr,
        "outSR": out_sr,
        "f": "json",
    }
    data = feature_service_query(
        ensure_query_url(url), search_params, caller="routes_near_point", client=client
    )
    return FeatureSet.from_json(data)


def get_all_features(
    url: str,
    out_sr: Optional[int] = None,
    out_fields: Union[str, Sequence[str]] = "*",
    return_geometry: bool = True,
    return_z: bool = False,
    return_m: bool = False,
    client: Optional[FeatureServiceHTTPClient] = None,
) -> FeatureSet:
    """Get all features from a feature service layer.

    ``out_fields`` may be a comma-separated string or a list of names.
    """
    search_params = {
        "outFields": out_fields if isinstance(out_fields, str) else ",".join(out_fields),
        "f": "json",
        "returnGeometry": return_geometry,
        "returnZ": return_z,
        "returnM": return_m,
        "outSR": out_sr,
    }
    data = feature_service_query(
        ensure_query_url(url), search_params, caller="all_features", client=client
    )
    return FeatureSet.from_json(data)


class FeatureServiceLayer:
    """
    One layer of an ArcGIS Server Feature Service.

    Usage:
        layer = FeatureServiceLayer(
            "https://data.wsdot.wa.gov/arcgis/rest/services/Shared/StateRoutes/FeatureServer/0"
        )
        segment = layer.find_route_segment("009", 0, 5)
    """

    def __init__(
        self,
        url: str,
        client: Optional[FeatureServiceHTTPClient] = None,
        config: LocatorConfig = DEFAULT_CONFIG,
    ):
        self.url = url
        self.config = config
        self.client = client if client is not None else FeatureServiceHTTPClient(config=config)

    @property
    def url(self) -> str:
        return self._url

    @url.setter
    def url(self, value: str):
        self._url = validate_layer_url(value)

    def get_routes_near_point(
        self,
        point: Union[Point, Sequence[float]],
        route_id_field: Optional[str] = None,
        in_sr: Optional[int] = None,
        out_sr: Optional[int] = None,
        distance: Optional[float] = None,
    ) -> FeatureSet:
        return get_routes_near_point(
            self.url,
            point,
            route_id_field=route_id_field or self.config.route_id_field,
            in_sr=in_sr if in_sr is not None else self.config.in_sr,
            out_sr=out_sr if out_sr is not None else self.config.out_sr,
            distance=distance if distance is not None else self.config.search_distance_ft,
            client=self.client,
        )

    def get_feature_by_route_id(
        self,
        route_id: str,
        route_id_field: Optional[str] = None,
        out_sr: Optional[int] = None,
        return_z: bool = False,
        return_m: bool = False,
    ) -> Feature:
        return get_feature_by_route_id(
            self.url,
            route_id,
            route_id_field=route_id_field or self.config.route_id_field,
            out_sr=out_sr,
            return_z=return_z,
            return_m=return_m,
            client=self.client,
        )

    def get_all_features(
        self,
        out_sr: Optional[int] = None,
        out_fields: Union[str, Sequence[str]] = "*",
        return_geometry: bool = True,
        return_z: bool = False,
        return_m: bool = False,
    ) -> FeatureSet:
        return get_all_features(
            self.url,
            out_sr=out_sr,
            out_fields=out_fields,
            return_geometry=return_geometry,
            return_z=return_z,
            return_m=return_m,
            client=self.client,
        )

    # Linear referencing (imported lazily; linear_referencing imports this module)

    def find_point_along_route(self, route_id: str, measure: float, **kwargs):
        from linear_referencing import find_point_along_route
        kwargs.setdefault("config", self.config)
        return find_point_along_route(self.url, route_id, measure, client=self.client, **kwargs)

    def find_route_segment(self, route_id: str, begin_measure: float, end_measure: float, **kwargs):
        from linear_referencing import find_route_segment
        kwargs.setdefault("config", self.config)
        return find_route_segment(
            self.url, route_id, begin_measure, end_measure, client=self.client, **kwargs
        )

    def find_route_location(
        self, route_id: str, begin_measure: float, end_measure: Optional[float] = None, **kwargs
    ):
        from linear_referencing import find_route_location
        kwargs.setdefault("config", self.config)
        return find_route_location(
            self.url, route_id, begin_measure, end_measure, client=self.client, **kwargs
        )

    def find_nearest_route(self, point: Union[Point, Sequence[float]], **kwargs):
        from linear_referencing import find_nearest_route
        kwargs.setdefault("config", self.config)
        return find_nearest_route(self.url, point, client=self.client, **kwargs)


class FeatureService:
    """A Feature Service root (``.../FeatureServer``) for service-level queries."""

    def __init__(self, url: str, client: Optional[FeatureServiceHTTPClient] = None):
        self.url = url.rstrip("/")
        self.client = client if client is not None else FeatureServiceHTTPClient()

    @property
    def query_url(self) -> str:
        return f"{self.url}/query"

    def query(self, query_info: Dict[str, Any]) -> Dict[str, Any]:
        """Run a multi-layer query; ``f`` is always forced to "json".

        Dict values such as ``layerDefs`` or ``geometry`` are sent as JSON.
        """
        params = dict(query_info)
        params["f"] = "json"
        return feature_service_query(
            self.query_url, params, caller="service_query", client=self.client
        )
