"""
Route geometry normalization and geodesic line primitives.

normalize() turns whatever geometry a Feature Service returned into one
of two shapes, decided once and matched on everywhere downstream:

  - Line:      a single traversable LineString
  - MultiLine: an ordered tuple of disjoint LineString parts

A multi-part geometry with exactly one part collapses to Line. Parts of
a MultiLine are never merged, even when their endpoints touch.

The primitives below work on (longitude, latitude) coordinates on the
WGS84 ellipsoid via pyproj.Geod. Callers must request geometry in a
geographic spatial reference (e.g. outSR=4326) before measuring.

Limitations:
  - Point-to-line projection uses a local equirectangular frame per
    query point; distances are geodesic but the projected foot point is
    approximate for very long segments.
  - Segments crossing the antimeridian are not special-cased.
"""

import logging
import math
from bisect import bisect_right
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

from pyproj import Geod
from shapely.geometry import LineString, Point
from shapely.geometry.base import BaseGeometry

from models import RouteLocatorError

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

WGS84 = Geod(ellps="WGS84")

UNITS_TO_METERS = {
    "miles": 1609.344,
    "kilometers": 1000.0,
    "meters": 1.0,
    "feet": 0.3048,
}

# Slack allowed when a measure lands exactly on the computed line length.
LENGTH_TOLERANCE_M = 1e-6


# =============================================================================
# ERRORS
# =============================================================================

class UnsupportedGeometryKind(RouteLocatorError):
    """Raised when a geometry is not a line shape the resolver can use."""

    def __init__(self, kind: str, message: Optional[str] = None):
        self.kind = kind
        super().__init__(message or f"Unsupported geometry type: {kind}")


class MeasureOutOfRange(RouteLocatorError, ValueError):
    """Raised when a measure cannot be located on a line."""

    def __init__(self, measure: float, length: Optional[float] = None, message: Optional[str] = None):
        self.measure = measure
        self.length = length
        if message is None:
            message = f"Measure {measure} is outside the line"
            if length is not None:
                message += f" (length {length:.6f})"
        super().__init__(message)


# =============================================================================
# NORMALIZED GEOMETRY
# =============================================================================

@dataclass(frozen=True)
class Line:
    """A route that is one contiguous LineString."""
    line: LineString

    @property
    def kind(self) -> str:
        return "Line"


@dataclass(frozen=True)
class MultiLine:
    """A route made of disjoint LineString parts, in storage order."""
    parts: Tuple[LineString, ...]

    @property
    def kind(self) -> str:
        return "MultiLine"


NormalizedGeometry = Union[Line, MultiLine]


def _as_line(coords: Sequence[Sequence[float]]) -> LineString:
    """Build a 2D LineString, dropping Z/M ordinates."""
    xy = [(float(c[0]), float(c[1])) for c in coords]
    if len(xy) < 2:
        raise UnsupportedGeometryKind(
            "LineString", f"Line part has {len(xy)} vertex(es); at least 2 are required"
        )
    return LineString(xy)


def geometry_kind(raw: Any) -> str:
    """Classify ArcGIS JSON, GeoJSON-like dicts and shapely geometries."""
    if raw is None:
        return "empty"
    if isinstance(raw, BaseGeometry):
        return "empty" if raw.is_empty else raw.geom_type
    if not isinstance(raw, dict) or not raw:
        return "empty"
    if "paths" in raw:
        return "Polyline"
    if "type" in raw:
        return str(raw["type"])
    if "x" in raw and "y" in raw:
        return "Point"
    if "points" in raw:
        return "MultiPoint"
    if "rings" in raw:
        return "Polygon"
    if "xmin" in raw:
        return "Envelope"
    return "unknown"


def _line_parts(raw: Any) -> List[LineString]:
    kind = geometry_kind(raw)

    if kind == "LineString":
        if isinstance(raw, BaseGeometry):
            return [_as_line(raw.coords)]
        return [_as_line(raw.get("coordinates") or [])]

    if kind == "MultiLineString":
        if isinstance(raw, BaseGeometry):
            return [_as_line(part.coords) for part in raw.geoms]
        parts = raw.get("coordinates") or []
    elif kind == "Polyline":
        parts = raw.get("paths") or []
    else:
        raise UnsupportedGeometryKind(kind)

    if not parts:
        raise UnsupportedGeometryKind("empty", "Line geometry has no parts")
    return [_as_line(part) for part in parts]


def normalize(raw_geometry: Any) -> NormalizedGeometry:
    """
    Classify a route geometry as Line or MultiLine.

    Accepts ArcGIS JSON geometry (``{"paths": [...]}``), GeoJSON-like
    LineString/MultiLineString dicts, shapely line geometries, or an
    already normalized Line/MultiLine (returned as-is).

    Raises:
        UnsupportedGeometryKind: point, polygon, envelope, empty geometry,
            or a part with fewer than two vertices.
    """
    if isinstance(raw_geometry, (Line, MultiLine)):
        return raw_geometry

    parts = _line_parts(raw_geometry)
    if len(parts) == 1:
        return Line(parts[0])

    logger.debug("Route geometry has %d disjoint parts", len(parts))
    return MultiLine(tuple(parts))


# =============================================================================
# UNITS
# =============================================================================

def to_meters(distance: float, units: str = "miles") -> float:
    try:
        return distance * UNITS_TO_METERS[units]
    except KeyError:
        raise ValueError(
            f"Unsupported units {units!r}; expected one of {sorted(UNITS_TO_METERS)}"
        ) from None


def from_meters(meters: float, units: str = "miles") -> float:
    return meters / to_meters(1.0, units)


# =============================================================================
# GEODESIC HELPERS
# =============================================================================

def _xy(line: LineString) -> List[Tuple[float, float]]:
    return [(c[0], c[1]) for c in line.coords]


def _as_point(point: Union[Point, Sequence[float]]) -> Tuple[float, float]:
    if isinstance(point, Point):
        return (point.x, point.y)
    return (float(point[0]), float(point[1]))


def _cumulative_distances_m(coords: Sequence[Tuple[float, float]]) -> List[float]:
    """Element i is the geodesic distance (meters) from coords[0] to coords[i]."""
    distances = [0.0]
    for (x0, y0), (x1, y1) in zip(coords, coords[1:]):
        _, _, dist_m = WGS84.inv(x0, y0, x1, y1)
        distances.append(distances[-1] + dist_m)
    return distances


def _interpolate(
    coords: Sequence[Tuple[float, float]],
    cumulative: Sequence[float],
    distance_m: float,
) -> Tuple[float, float]:
    """Coordinate ``distance_m`` along the line, clamped to its ends."""
    if distance_m <= 0:
        return coords[0]
    if distance_m >= cumulative[-1]:
        return coords[-1]

    i = bisect_right(cumulative, distance_m) - 1
    remaining = distance_m - cumulative[i]
    if remaining == 0:
        return coords[i]

    (x0, y0), (x1, y1) = coords[i], coords[i + 1]
    azimuth, _, _ = WGS84.inv(x0, y0, x1, y1)
    x, y, _ = WGS84.fwd(x0, y0, azimuth, remaining)
    return (x, y)


def _nearest_point_on_segment(
    px: float, py: float,
    ax: float, ay: float,
    bx: float, by: float,
) -> Tuple[float, float]:
    """Return the closest point on segment A→B to point P.

    Vector projection in an equirectangular frame centred on P's
    latitude, so longitude and latitude differences are comparable.
    """
    k = math.cos(math.radians(py))
    abx = (bx - ax) * k
    aby = by - ay
    apx = (px - ax) * k
    apy = py - ay

    ab_dot_ab = abx * abx + aby * aby
    if ab_dot_ab == 0:
        # Degenerate segment (A == B)
        return (ax, ay)

    t = (apx * abx + apy * aby) / ab_dot_ab
    t = max(0.0, min(1.0, t))

    return (ax + t * (bx - ax), ay + t * (by - ay))


# =============================================================================
# LINE PRIMITIVES
# =============================================================================

def geodesic_length(line: LineString, units: str = "miles") -> float:
    """Geodesic length of a line in ``units``."""
    return from_meters(_cumulative_distances_m(_xy(line))[-1], units)


def point_to_line_distance(
    point: Union[Point, Sequence[float]],
    line: LineString,
    units: str = "miles",
) -> float:
    """Minimum geodesic distance from ``point`` to any segment of ``line``."""
    px, py = _as_point(point)
    coords = _xy(line)

    min_dist = float("inf")
    for (ax, ay), (bx, by) in zip(coords, coords[1:]):
        nx, ny = _nearest_point_on_segment(px, py, ax, ay, bx, by)
        _, _, dist_m = WGS84.inv(px, py, nx, ny)
        if dist_m < min_dist:
            min_dist = dist_m

    return from_meters(min_dist, units)


def point_along(line: LineString, distance: float, units: str = "miles") -> Optional[Point]:
    """
    Point ``distance`` from the start of ``line``, walking its vertices.

    A distance past the end of the line returns the last vertex.
    Returns None when the distance is negative or not finite.
    """
    if not math.isfinite(distance) or distance < 0:
        return None

    coords = _xy(line)
    cumulative = _cumulative_distances_m(coords)
    return Point(_interpolate(coords, cumulative, to_meters(distance, units)))


def slice_along(
    line: LineString,
    start: float,
    stop: float,
    units: str = "miles",
) -> LineString:
    """
    Sub-line of ``line`` between ``start`` and ``stop`` from its start.

    Vertices strictly between the two cut points are kept as-is. A stop
    past the end is clamped to the last vertex; start == stop gives a
    two-vertex line on a single position.

    Raises:
        MeasureOutOfRange: start or stop not finite, start < 0,
            stop < start, or start past the end of the line.
    """
    if not (math.isfinite(start) and math.isfinite(stop)):
        raise MeasureOutOfRange(start if not math.isfinite(start) else stop)
    if start < 0:
        raise MeasureOutOfRange(start, message=f"Start measure {start} is negative")
    if stop < start:
        raise MeasureOutOfRange(
            stop, message=f"Stop measure {stop} is before start measure {start}"
        )

    coords = _xy(line)
    cumulative = _cumulative_distances_m(coords)
    total_m = cumulative[-1]
    start_m = to_meters(start, units)
    stop_m = min(to_meters(stop, units), total_m)

    if start_m > total_m + LENGTH_TOLERANCE_M:
        raise MeasureOutOfRange(
            start,
            from_meters(total_m, units),
            f"Start position {start} {units} is beyond line "
            f"(length {from_meters(total_m, units):.6f} {units})",
        )

    sliced = [_interpolate(coords, cumulative, start_m)]
    sliced.extend(
        coords[i] for i in range(len(coords)) if start_m < cumulative[i] < stop_m
    )
    sliced.append(_interpolate(coords, cumulative, stop_m))
    return LineString(sliced)
