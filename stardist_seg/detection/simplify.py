"""
Visvalingam-Whyatt polygon simplification.

Vertices are removed in order of increasing effective area (the area of the
triangle formed with their two neighbors) until every remaining vertex
contributes at least ``tolerance ** 2``. Rings keep at least 3 vertices.
"""

import heapq
from typing import List

import numpy as np
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry

from stardist_seg.detection.geometry import ensure_polygonal

MIN_RING_VERTICES = 3


def _triangle_area(p: np.ndarray, a: int, b: int, c: int) -> float:
    return 0.5 * abs((p[b, 0] - p[a, 0]) * (p[c, 1] - p[a, 1])
                     - (p[c, 0] - p[a, 0]) * (p[b, 1] - p[a, 1]))


def simplify_ring(coords: np.ndarray, tolerance: float) -> np.ndarray:
    """
    Simplify a closed ring.

    Args:
        coords: (n, 2) ring coordinates, first == last
        tolerance: Distance tolerance; vertices with effective area below
            ``tolerance ** 2`` are removed. <= 0 returns the input.

    Returns:
        Closed (m, 2) ring with m <= n
    """
    coords = np.asarray(coords, dtype=np.float64)
    if tolerance <= 0:
        return coords
    points = coords[:-1] if len(coords) > 1 and np.array_equal(coords[0], coords[-1]) else coords
    n = len(points)
    if n <= MIN_RING_VERTICES:
        return coords

    area_tolerance = tolerance * tolerance
    prev = [(i - 1) % n for i in range(n)]
    nxt = [(i + 1) % n for i in range(n)]
    version = [0] * n
    removed = [False] * n

    heap = [(_triangle_area(points, prev[i], i, nxt[i]), i, 0) for i in range(n)]
    heapq.heapify(heap)

    remaining = n
    while heap and remaining > MIN_RING_VERTICES:
        area, i, ver = heapq.heappop(heap)
        if removed[i] or ver != version[i]:
            continue
        if area >= area_tolerance:
            break
        removed[i] = True
        remaining -= 1
        a, b = prev[i], nxt[i]
        nxt[a] = b
        prev[b] = a
        for j in (a, b):
            version[j] += 1
            heapq.heappush(heap, (_triangle_area(points, prev[j], j, nxt[j]), j, version[j]))

    kept = points[[i for i in range(n) if not removed[i]]]
    return np.vstack([kept, kept[:1]])


def _simplify_polygon(poly: Polygon, tolerance: float) -> Polygon:
    shell = simplify_ring(np.asarray(poly.exterior.coords), tolerance)
    holes: List[np.ndarray] = []
    for interior in poly.interiors:
        ring = simplify_ring(np.asarray(interior.coords), tolerance)
        if len(ring) > MIN_RING_VERTICES:
            holes.append(ring)
    return Polygon(shell, holes)


def simplify_geometry(geom: BaseGeometry, tolerance: float) -> BaseGeometry:
    """
    Simplify a Polygon or MultiPolygon; other geometries are returned as-is.

    Invalid results are repaired with ``buffer(0)``, keeping only polygonal
    parts.
    """
    if tolerance <= 0 or geom.is_empty:
        return geom
    if geom.geom_type == 'Polygon':
        result = _simplify_polygon(geom, tolerance)
    elif geom.geom_type == 'MultiPolygon':
        result = MultiPolygon([_simplify_polygon(p, tolerance) for p in geom.geoms])
    else:
        return geom
    if not result.is_valid:
        result = ensure_polygonal(result.buffer(0))
    return result


__all__ = ['simplify_ring', 'simplify_geometry']
