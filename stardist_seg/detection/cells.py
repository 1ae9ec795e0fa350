"""
Nucleus-to-cell expansion.

A cell is approximated by growing its nucleus by a fixed distance,
optionally capped at a multiple of the nucleus size. Overlapping cells are
then cut back to their nucleus' territory: the region closer to it than to
any neighboring nucleus, from a Voronoi tessellation seeded on the nucleus
boundaries. Nuclei themselves are never given away.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import shapely
from shapely import STRtree, affinity
from shapely.errors import GEOSException
from shapely.geometry import MultiPoint, Polygon, box
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from stardist_seg.detection.geometry import ensure_polygonal
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

# Maximum spacing between Voronoi seeds along a nucleus boundary (pixels)
DEFAULT_SEED_SPACING = 1.0

# Seeds are rounded so boundary points shared by two nuclei compare equal
SEED_DECIMALS = 6


def estimate_cell_boundary(
    nucleus: BaseGeometry,
    distance: float,
    scale: Optional[float] = None,
) -> BaseGeometry:
    """
    Expand a nucleus to an approximate cell boundary.

    Args:
        nucleus: Nucleus polygon
        distance: Expansion distance in the nucleus' coordinate units
        scale: If > 1, the cell is also limited to the nucleus scaled by this
            factor about its centroid

    Returns:
        Cell geometry containing the nucleus
    """
    cell = nucleus.buffer(distance)
    if scale is not None and scale > 1:
        scaled = affinity.scale(nucleus, xfact=scale, yfact=scale, origin='centroid')
        cell = ensure_polygonal(cell.intersection(scaled)).union(nucleus)
    return cell


def _seeds(nucleus: BaseGeometry, spacing: float) -> np.ndarray:
    boundary = shapely.segmentize(nucleus.boundary, spacing)
    return np.unique(np.round(shapely.get_coordinates(boundary), SEED_DECIMALS), axis=0)


def boundary_seeds(
    nuclei: Sequence[BaseGeometry],
    seed_spacing: float = DEFAULT_SEED_SPACING,
) -> List[np.ndarray]:
    """
    Voronoi seeds spaced along each nucleus boundary.

    Points on the boundary of more than one nucleus are dropped, so every
    seed has a single owner whatever the order of the nuclei.

    Returns:
        One (n, 2) coordinate array per nucleus
    """
    if not nuclei:
        return []
    seed_sets = [_seeds(n, seed_spacing) for n in nuclei]
    points = np.vstack(seed_sets)
    owners = np.repeat(np.arange(len(seed_sets)), [len(s) for s in seed_sets])
    _, inverse, counts = np.unique(points, axis=0, return_inverse=True, return_counts=True)
    unique = counts[inverse.ravel()] == 1
    points, owners = points[unique], owners[unique]
    return np.split(points, np.searchsorted(owners, np.arange(1, len(seed_sets))))


def nucleus_territory(
    seeds: Sequence[np.ndarray],
    index: int,
    neighbors: Sequence[int],
    extent: BaseGeometry,
) -> BaseGeometry:
    """
    Part of ``extent`` closer to nucleus ``index`` than to its neighbors.

    Args:
        seeds: Per-nucleus seeds from ``boundary_seeds``
        index: Nucleus whose territory is wanted
        neighbors: Indices of the competing nuclei
        extent: Region to tessellate

    Returns:
        Polygonal territory, clipped to ``extent``
    """
    if len(seeds[index]) == 0:
        return Polygon()
    ids = [index] + [k for k in neighbors if k != index]
    points = np.vstack([seeds[k] for k in ids])
    owners = np.repeat(ids, [len(seeds[k]) for k in ids])

    faces = list(shapely.voronoi_polygons(MultiPoint(points), extend_to=extent).geoms)
    point_idx, face_idx = STRtree(faces).query(shapely.points(points), predicate='within')
    own = [faces[f] for p, f in zip(point_idx.tolist(), face_idx.tolist()) if owners[p] == index]
    return ensure_polygonal(extent.intersection(unary_union(own)))


@dataclass
class CellOverlapStats:
    n_pairs: int = 0
    n_errors: int = 0


def constrain_cell_overlaps(
    nuclei: Sequence[BaseGeometry],
    cells: Sequence[BaseGeometry],
    seed_spacing: float = DEFAULT_SEED_SPACING,
    stats: Optional[CellOverlapStats] = None,
) -> List[BaseGeometry]:
    """
    Remove overlaps between cells.

    Each cell that overlaps others is intersected with its nucleus'
    territory among the nuclei of those cells, then loses their nuclei and
    regains its own. Territories come from the original cells, so the
    result does not depend on the order of the input.

    Args:
        nuclei: Nucleus geometries (pairwise non-overlapping)
        cells: Cell geometries, each containing its nucleus

    Returns:
        New list of cell geometries
    """
    if stats is None:
        stats = CellOverlapStats()
    result = list(cells)
    if len(result) < 2:
        return result

    seeds = boundary_seeds(nuclei, seed_spacing)
    tree = STRtree(result)
    for i, cell in enumerate(cells):
        neighbors = []
        for j in tree.query(cell, predicate='intersects').tolist():
            if j == i or cell.touches(cells[j]):
                continue
            neighbors.append(j)
            if j > i:
                stats.n_pairs += 1
        if not neighbors:
            continue

        try:
            extent = box(*cell.bounds).buffer(seed_spacing, join_style='mitre')
            territory = nucleus_territory(seeds, i, neighbors, extent)
            others = unary_union([nuclei[j] for j in neighbors])
            constrained = cell.intersection(territory).difference(others).union(nuclei[i])
            result[i] = ensure_polygonal(constrained)
        except (GEOSException, ValueError) as e:
            logger.debug(f"Error constraining cell {i} against {len(neighbors)} neighbors: {e}")
            stats.n_errors += 1

    if stats.n_errors:
        logger.warning(f"Could not constrain {stats.n_errors} cells "
                       f"({stats.n_pairs} overlapping pairs)")
    return result


__all__ = [
    'DEFAULT_SEED_SPACING',
    'SEED_DECIMALS',
    'estimate_cell_boundary',
    'boundary_seeds',
    'nucleus_territory',
    'CellOverlapStats',
    'constrain_cell_overlaps',
]
