"""
Data model for Feature Service query results and resolved route locations.

Query responses are kept close to the ArcGIS REST JSON they came from:
a Feature holds its geometry in the service's native format and its
attributes as a plain dict. Nothing here is cached or persisted; every
object is built fresh per query/resolution call.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry

logger = logging.getLogger(__name__)


class RouteLocatorError(Exception):
    """Base class for every error raised by the route locator."""

    pass


@dataclass(frozen=True)
class SpatialReference:
    """ArcGIS spatial reference; wkid is None for WKT-only references."""
    wkid: Optional[int] = None
    latest_wkid: Optional[int] = None
    wkt: Optional[str] = None

    @classmethod
    def from_json(cls, obj: Optional[Dict[str, Any]]) -> Optional["SpatialReference"]:
        if not obj:
            return None
        return cls(
            wkid=obj.get("wkid"),
            latest_wkid=obj.get("latestWkid"),
            wkt=obj.get("wkt"),
        )


@dataclass
class Feature:
    """One query result row: native geometry plus attributes."""
    geometry: Optional[Dict[str, Any]]
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> "Feature":
        return cls(
            geometry=obj.get("geometry"),
            attributes=dict(obj.get("attributes") or {}),
        )

    def route_id(self, route_id_field: str = "RouteID") -> Optional[Any]:
        return self.attributes.get(route_id_field)


@dataclass
class FeatureSet:
    """Ordered features plus the layer-level metadata of a query response."""
    features: List[Feature] = field(default_factory=list)
    geometry_type: Optional[str] = None     # e.g. "esriGeometryPolyline"
    spatial_reference: Optional[SpatialReference] = None
    has_z: bool = False
    has_m: bool = False
    fields: List[Dict[str, Any]] = field(default_factory=list)
    object_id_field_name: Optional[str] = None

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> "FeatureSet":
        return cls(
            features=[Feature.from_json(f) for f in obj.get("features") or []],
            geometry_type=obj.get("geometryType"),
            spatial_reference=SpatialReference.from_json(obj.get("spatialReference")),
            has_z=bool(obj.get("hasZ", False)),
            has_m=bool(obj.get("hasM", False)),
            fields=list(obj.get("fields") or []),
            object_id_field_name=obj.get("objectIdFieldName"),
        )

    def __len__(self) -> int:
        return len(self.features)

    def __iter__(self) -> Iterator[Feature]:
        return iter(self.features)


@dataclass
class ResolvedLocation:
    """A point (single measure) or sub-line (measure pair) along a route."""
    kind: str                       # "Point" | "LineString"
    geometry: BaseGeometry
    route_id: Optional[str] = None
    measure: Optional[float] = None
    end_measure: Optional[float] = None
    units: str = "miles"

    def to_geojson(self) -> Dict[str, Any]:
        """GeoJSON Feature for the resolved geometry."""
        properties: Dict[str, Any] = {"units": self.units}
        if self.route_id is not None:
            properties["route_id"] = self.route_id
        if self.measure is not None:
            properties["measure"] = self.measure
        if self.end_measure is not None:
            properties["end_measure"] = self.end_measure
        return {
            "type": "Feature",
            "geometry": mapping(self.geometry),
            "properties": properties,
        }
