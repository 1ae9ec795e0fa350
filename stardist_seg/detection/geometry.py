"""
Polygon clean-up helpers shared by decoding, overlap resolution and
cell estimation.

Overlay operations (intersection with a mask, difference with a neighbor)
can return lines, points or collections; downstream code only wants
polygonal results.
"""

from typing import List, Optional

from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.validation import make_valid


def polygon_parts(geom: Optional[BaseGeometry]) -> List[Polygon]:
    """Non-empty Polygon parts of any geometry (recursing into collections)."""
    if geom is None or geom.is_empty:
        return []
    if geom.geom_type == 'Polygon':
        return [geom]
    if geom.geom_type in ('MultiPolygon', 'GeometryCollection'):
        parts = []
        for g in geom.geoms:
            parts.extend(polygon_parts(g))
        return parts
    return []


def ensure_polygonal(geom: Optional[BaseGeometry]) -> BaseGeometry:
    """
    Drop non-polygonal parts of a geometry.

    Parts that touch along an edge or overlap after an overlay are
    dissolved so the result is valid. Returns a Polygon, a MultiPolygon, or
    an empty Polygon.
    """
    parts = polygon_parts(geom)
    if not parts:
        return Polygon()
    result = parts[0] if len(parts) == 1 else MultiPolygon(parts)
    if result.is_valid:
        return result
    repaired = polygon_parts(make_valid(result))
    if not repaired:
        return Polygon()
    return unary_union(repaired)


def largest_polygon(geom: Optional[BaseGeometry]) -> Optional[Polygon]:
    """Largest Polygon part by area, or None if there is none."""
    parts = polygon_parts(geom)
    if not parts:
        return None
    return max(parts, key=lambda p: p.area)


__all__ = ['polygon_parts', 'ensure_polygonal', 'largest_polygon']
