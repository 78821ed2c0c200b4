"""
Linear referencing along Feature Service routes.

Locates a point (one measure) or a sub-line (measure pair) along a
route's geometry, and finds which of several candidate routes lies
nearest a coordinate. Measures are distances from the start of the line
they are applied to, in miles unless ``units`` says otherwise.

Multi-part routes (MultiLine) follow two different policies:
  - Points: each part is tried in storage order with the measure taken
    from *that part's* start; the first part that yields a point wins.
    This is not a cumulative measure across parts and later parts are
    never consulted once one succeeds.
  - Segments: always NonContiguousRoute. A segment spanning a gap is not
    representable as one line and is never approximated.
"""

import logging
from typing import Any, Iterable, Optional, Sequence, Tuple, Union

from shapely.geometry import Point

from feature_layer import get_feature_by_route_id, get_routes_near_point
from featureservice_http import FeatureServiceHTTPClient
from locator_config import DEFAULT_CONFIG, LocatorConfig
from locator_trace import traced_stage
from models import Feature, FeatureSet, ResolvedLocation, RouteLocatorError
from route_geometry import (
    Line,
    MeasureOutOfRange,
    MultiLine,
    NormalizedGeometry,
    UnsupportedGeometryKind,
    normalize,
    point_along,
    point_to_line_distance,
    slice_along,
)

logger = logging.getLogger(__name__)


class NonContiguousRoute(RouteLocatorError):
    """Raised when a segment is requested on a route with disjoint parts."""

    def __init__(self, part_count: int, route_id: Optional[str] = None):
        self.part_count = part_count
        self.route_id = route_id
        label = f"Route {route_id}" if route_id is not None else "Route"
        super().__init__(f"Unsupported: {label} is not contiguous ({part_count} parts)")


class NoCandidates(RouteLocatorError):
    """Raised when a nearest-route search is given no features."""

    def __init__(self):
        super().__init__("Could not find nearest route feature: no candidates")


RouteInput = Union[Feature, NormalizedGeometry, dict]


def _normalize_route(route: RouteInput) -> NormalizedGeometry:
    raw = route.geometry if isinstance(route, Feature) else route
    with traced_stage("normalize"):
        return normalize(raw)


# =============================================================================
# Nearest-feature search
# =============================================================================

def nearest_route_feature(
    point: Union[Point, Sequence[float]],
    candidates: Union[FeatureSet, Iterable[Feature]],
    units: str = "miles",
) -> Tuple[Feature, float]:
    """
    Return the candidate feature closest to ``point`` and its distance.

    Typically fed the result of get_routes_near_point(). Ties keep the
    first feature seen.

    Raises:
        NoCandidates: ``candidates`` is empty.
        UnsupportedGeometryKind: a candidate is not a single line.
    """
    features = candidates.features if isinstance(candidates, FeatureSet) else candidates

    shortest: Optional[float] = None
    closest: Optional[Feature] = None
    with traced_stage("nearest_search"):
        for feature in features:
            normalized = normalize(feature.geometry)
            if isinstance(normalized, MultiLine):
                raise UnsupportedGeometryKind(
                    "MultiLineString",
                    "Distance to a multi-part candidate route is undefined",
                )
            distance = point_to_line_distance(point, normalized.line, units)
            if shortest is None or distance < shortest:
                shortest = distance
                closest = feature

    if shortest is None or closest is None:
        raise NoCandidates()
    return closest, shortest


# =============================================================================
# Resolution on a route geometry
# =============================================================================

def resolve_point(
    route: RouteInput,
    measure: float,
    units: str = "miles",
    route_id: Optional[str] = None,
) -> ResolvedLocation:
    """
    Point at ``measure`` along a route.

    A measure past the end of a single line resolves to its last vertex.

    Raises:
        MeasureOutOfRange: negative/non-finite measure on a single line.
        UnsupportedGeometryKind: non-line geometry, or no part of a
            multi-part route yielded a point.
    """
    normalized = _normalize_route(route)

    with traced_stage("resolve"):
        if isinstance(normalized, Line):
            point = point_along(normalized.line, measure, units)
            if point is None:
                raise MeasureOutOfRange(measure)
        elif isinstance(normalized, MultiLine):
            point = None
            for index, part in enumerate(normalized.parts):
                point = point_along(part, measure, units)
                if point is not None:
                    logger.debug(
                        "Measure %s resolved on part %d of %d",
                        measure, index + 1, len(normalized.parts),
                    )
                    break
            if point is None:
                raise UnsupportedGeometryKind(
                    "MultiLineString", "Unsupported geometry: no part yielded a point"
                )
        else:
            raise UnsupportedGeometryKind(type(normalized).__name__)

    return ResolvedLocation(
        kind="Point",
        geometry=point,
        route_id=route_id,
        measure=measure,
        units=units,
    )


def resolve_segment(
    route: RouteInput,
    begin_measure: float,
    end_measure: float,
    units: str = "miles",
    route_id: Optional[str] = None,
) -> ResolvedLocation:
    """
    Sub-line of a route between two measures.

    Raises:
        NonContiguousRoute: the route has more than one part.
        MeasureOutOfRange: see route_geometry.slice_along().
        UnsupportedGeometryKind: non-line geometry.
    """
    normalized = _normalize_route(route)

    with traced_stage("resolve"):
        if isinstance(normalized, Line):
            segment = slice_along(normalized.line, begin_measure, end_measure, units)
        elif isinstance(normalized, MultiLine):
            raise NonContiguousRoute(len(normalized.parts), route_id)
        else:
            raise UnsupportedGeometryKind(type(normalized).__name__)

    return ResolvedLocation(
        kind="LineString",
        geometry=segment,
        route_id=route_id,
        measure=begin_measure,
        end_measure=end_measure,
        units=units,
    )


# =============================================================================
# Route ID entry points (one query, then resolution)
# =============================================================================

def _fetch_route(
    layer_url: str,
    route_id: str,
    route_id_field: Optional[str],
    out_sr: Optional[int],
    client: Optional[FeatureServiceHTTPClient],
    config: LocatorConfig,
) -> Feature:
    with traced_stage("fetch_route"):
        return get_feature_by_route_id(
            layer_url,
            route_id,
            route_id_field=route_id_field or config.route_id_field,
            out_sr=out_sr if out_sr is not None else config.out_sr,
            client=client,
        )


def find_point_along_route(
    layer_url: str,
    route_id: str,
    measure: float,
    out_sr: Optional[int] = None,
    route_id_field: Optional[str] = None,
    units: Optional[str] = None,
    client: Optional[FeatureServiceHTTPClient] = None,
    config: LocatorConfig = DEFAULT_CONFIG,
) -> ResolvedLocation:
    """Fetch a route by ID and return the point at ``measure`` along it.

    ``out_sr`` defaults to the configured geographic WKID (4326) because
    measures are computed geodesically on longitude/latitude.
    """
    feature = _fetch_route(layer_url, route_id, route_id_field, out_sr, client, config)
    return resolve_point(feature, measure, units or config.measure_units, route_id=route_id)


def find_route_segment(
    layer_url: str,
    route_id: str,
    begin_measure: float,
    end_measure: float,
    out_sr: Optional[int] = None,
    route_id_field: Optional[str] = None,
    units: Optional[str] = None,
    client: Optional[FeatureServiceHTTPClient] = None,
    config: LocatorConfig = DEFAULT_CONFIG,
) -> ResolvedLocation:
    """Fetch a route by ID and return the sub-line between two measures."""
    feature = _fetch_route(layer_url, route_id, route_id_field, out_sr, client, config)
    return resolve_segment(
        feature, begin_measure, end_measure, units or config.measure_units, route_id=route_id
    )


def find_route_location(
    layer_url: str,
    route_id: str,
    begin_measure: float,
    end_measure: Optional[float] = None,
    **kwargs: Any,
) -> ResolvedLocation:
    """Point when only one measure is given (or both are equal), else a segment."""
    if end_measure is None or end_measure == begin_measure:
        return find_point_along_route(layer_url, route_id, begin_measure, **kwargs)
    return find_route_segment(layer_url, route_id, begin_measure, end_measure, **kwargs)


def find_nearest_route(
    layer_url: str,
    point: Union[Point, Sequence[float]],
    route_id_field: Optional[str] = None,
    in_sr: Optional[int] = None,
    out_sr: Optional[int] = None,
    distance: Optional[float] = None,
    units: Optional[str] = None,
    client: Optional[FeatureServiceHTTPClient] = None,
    config: LocatorConfig = DEFAULT_CONFIG,
) -> Tuple[Feature, float]:
    """Query routes near ``point`` and return the nearest one and its distance.

    ``distance`` is the search tolerance in feet; the returned distance
    is in ``units``.
    """
    with traced_stage("fetch_route"):
        candidates = get_routes_near_point(
            layer_url,
            point,
            route_id_field=route_id_field or config.route_id_field,
            in_sr=in_sr if in_sr is not None else config.in_sr,
            out_sr=out_sr if out_sr is not None else config.out_sr,
            distance=distance if distance is not None else config.search_distance_ft,
            client=client,
        )
    return nearest_route_feature(point, candidates, units or config.measure_units)
