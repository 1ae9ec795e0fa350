"""
Decoding of StarDist predictions into candidate nuclei.

Every pixel whose probability reaches the threshold yields one star-convex
polygon: ray ``i`` points at angle ``2*pi*i/n_rays`` and its predicted
length places one vertex. Candidates are stored in a ``NucleusArena``.
"""

import math
from typing import Iterable, List, NamedTuple, Optional

import numpy as np
from shapely.errors import GEOSException
from shapely.geometry import Polygon
from shapely.geometry.base import BaseGeometry
from shapely.prepared import prep

from stardist_seg.models.adapter import RawPrediction
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

# Smallest ray length; shorter (or negative) predictions are clamped
MIN_RAY_LENGTH = 1e-3

UNCLASSIFIED = -1


class PotentialNucleus(NamedTuple):
    """Read-only view of one arena entry."""
    geometry: BaseGeometry
    probability: float
    classification: int
    full_area: float


class NucleusArena:
    """
    Flat store of candidate nuclei indexed by integer id.

    Geometries may be replaced during overlap resolution; the area each
    candidate had when it was decoded is kept in a separate table and never
    changes, including when entries are copied into another arena.
    """

    def __init__(self):
        self.geometries: List[BaseGeometry] = []
        self.probabilities: List[float] = []
        self.classifications: List[int] = []
        self._full_areas: List[float] = []

    def __len__(self) -> int:
        return len(self.geometries)

    def __iter__(self):
        for i in range(len(self)):
            yield self[i]

    def __getitem__(self, i: int) -> PotentialNucleus:
        return PotentialNucleus(self.geometries[i], self.probabilities[i],
                                self.classifications[i], self._full_areas[i])

    def __repr__(self) -> str:
        return f"NucleusArena(n={len(self)})"

    def add(self, geometry: BaseGeometry, probability: float,
            classification: int = UNCLASSIFIED, full_area: Optional[float] = None) -> int:
        """Add a candidate and return its id."""
        self.geometries.append(geometry)
        self.probabilities.append(float(probability))
        self.classifications.append(int(classification))
        self._full_areas.append(geometry.area if full_area is None else float(full_area))
        return len(self.geometries) - 1

    def full_area(self, i: int) -> float:
        return self._full_areas[i]

    def subset(self, ids: Iterable[int]) -> 'NucleusArena':
        """New arena holding the given entries (in that order)."""
        out = NucleusArena()
        for i in ids:
            out.add(self.geometries[i], self.probabilities[i],
                    self.classifications[i], self._full_areas[i])
        return out

    @classmethod
    def concatenate(cls, arenas: Iterable['NucleusArena']) -> 'NucleusArena':
        out = cls()
        for arena in arenas:
            out.geometries.extend(arena.geometries)
            out.probabilities.extend(arena.probabilities)
            out.classifications.extend(arena.classifications)
            out._full_areas.extend(arena._full_areas)
        return out


def ray_angles(n_rays: int):
    """(cos, sin) of the equally spaced ray directions."""
    theta = 2 * math.pi / n_rays * np.arange(n_rays)
    return np.cos(theta), np.sin(theta)


def _ring_coords(xs: np.ndarray, ys: np.ndarray) -> List[tuple]:
    coords = []
    last = None
    for coord in zip(xs.tolist(), ys.tolist()):
        if coord != last:
            coords.append(coord)
            last = coord
    return coords


def decode_nuclei(
    prediction: RawPrediction,
    threshold: float,
    downsample: float = 1.0,
    origin_x: float = 0.0,
    origin_y: float = 0.0,
    mask: Optional[BaseGeometry] = None,
    keep_classified_background: bool = False,
) -> NucleusArena:
    """
    Convert a raw prediction into candidate nuclei.

    Args:
        prediction: Probability, ray and optional classification rasters
        threshold: Minimum probability
        downsample: Downsample at which the tile was read
        origin_x, origin_y: Full-resolution coordinates of the top-left
            pixel of the tensor passed to the backend (including padding)
        mask: Candidates whose centroid lies outside (boundary counts as
            inside) are discarded
        keep_classified_background: Keep candidates classified as class 0

    Returns:
        Arena of candidates in raster order
    """
    prob = prediction.prob
    rays = prediction.rays
    classes = prediction.classes
    cos_a, sin_a = ray_angles(rays.shape[2])
    prepared_mask = prep(mask) if mask is not None else None

    arena = NucleusArena()
    ys, xs = np.nonzero(prob >= threshold)
    n_errors = 0
    for y, x in zip(ys.tolist(), xs.tolist()):
        r = rays[y, x].astype(np.float64)
        finite = np.isfinite(r)
        r = np.maximum(r[finite], MIN_RAY_LENGTH)
        vx = origin_x + (x * prediction.scale_x + r * cos_a[finite]) * downsample
        vy = origin_y + (y * prediction.scale_y + r * sin_a[finite]) * downsample

        coords = _ring_coords(vx, vy)
        if len(coords) < 3:
            continue
        if coords[0] != coords[-1]:
            coords.append(coords[0])
        elif len(coords) < 4:
            continue

        try:
            polygon = Polygon(coords)
            if prepared_mask is not None and not prepared_mask.intersects(polygon.centroid):
                continue
        except (GEOSException, ValueError) as e:
            n_errors += 1
            logger.debug(f"Error creating nucleus at ({x}, {y}): {e}")
            continue

        classification = UNCLASSIFIED
        if classes is not None:
            classification = int(np.argmax(classes[y, x]))
            if classification == 0 and not keep_classified_background:
                continue

        arena.add(polygon, float(prob[y, x]), classification)

    if n_errors:
        logger.warning(f"{n_errors} nuclei could not be created")
    return arena


def exclude_on_bounds(arena: NucleusArena, max_x: Optional[float],
                      max_y: Optional[float]) -> NucleusArena:
    """
    Drop candidates whose envelope reaches ``max_x`` or ``max_y``.

    Used at right/bottom tile edges shared with another tile, where the
    neighbor produces the untruncated nucleus. None disables a side.
    """
    keep = []
    for i, geom in enumerate(arena.geometries):
        _, _, gx, gy = geom.bounds
        if max_x is not None and gx >= max_x:
            continue
        if max_y is not None and gy >= max_y:
            continue
        keep.append(i)
    if len(keep) == len(arena):
        return arena
    return arena.subset(keep)


__all__ = [
    'MIN_RAY_LENGTH',
    'UNCLASSIFIED',
    'PotentialNucleus',
    'NucleusArena',
    'ray_angles',
    'decode_nuclei',
    'exclude_on_bounds',
]
