"""
Polygon non-maximum suppression for candidate nuclei.

Removes duplicates produced by neighboring pixels and by tile overlap.
Candidates are visited in descending probability order; each accepted
candidate trims every lower-ranked candidate it overlaps. A trimmed
candidate survives only if it is still a single polygon larger than half
of its originally decoded area.

Performance:
- One STRtree over all candidate envelopes. Geometries only ever shrink, so
  envelopes from the original geometries remain a superset for queries.
- When an accepted candidate has more than ``PREPARE_THRESHOLD`` neighbors,
  its prepared form is used for the intersection tests.
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from shapely import STRtree
from shapely.errors import GEOSException
from shapely.geometry.base import BaseGeometry
from shapely.prepared import prep

from stardist_seg.detection.geometry import polygon_parts
from stardist_seg.detection.nuclei import NucleusArena
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

PREPARE_THRESHOLD = 5

# Fraction of the original area a trimmed candidate must keep
MIN_REMAINING_FRACTION = 0.5

# Overlaps smaller than this fraction of the original area are ignored, so
# boundaries shared after trimming do not count as overlapping again
OVERLAP_TOLERANCE = 1e-6

_PENDING, _ACCEPTED, _SKIPPED = 0, 1, 2


@dataclass
class ResolveStats:
    """Counters from one resolution pass."""
    n_input: int = 0
    n_accepted: int = 0
    n_trimmed: int = 0
    n_skipped: int = 0
    n_errors: int = 0


def _trimmed(candidate: BaseGeometry, accepted: BaseGeometry,
             full_area: float) -> Optional[BaseGeometry]:
    """
    Candidate minus accepted.

    Returns the candidate itself if the overlap is negligible, and None if
    the remainder is too small or fragmented.
    """
    difference = candidate.difference(accepted)
    if candidate.area - difference.area <= full_area * OVERLAP_TOLERANCE:
        return candidate
    parts = polygon_parts(difference)
    if len(parts) != 1:
        return None
    remaining = parts[0]
    if remaining.area > full_area * MIN_REMAINING_FRACTION:
        return remaining
    return None


def resolve_overlaps(arena: NucleusArena, stats: Optional[ResolveStats] = None) -> NucleusArena:
    """
    Greedy polygon NMS over all candidates in an arena.

    Args:
        arena: Candidates; not modified
        stats: Optional counters, updated in place

    Returns:
        New arena with the accepted candidates (possibly trimmed), in
        descending probability order. Ties keep their input order.
    """
    if stats is None:
        stats = ResolveStats()
    n = len(arena)
    stats.n_input += n
    if n == 0:
        return NucleusArena()

    probabilities = np.asarray(arena.probabilities, dtype=np.float64)
    order = np.argsort(-probabilities, kind='stable')

    geometries = list(arena.geometries)
    tree = STRtree(geometries)
    state = np.full(n, _PENDING, dtype=np.int8)
    accepted_ids: List[int] = []
    n_errors = 0

    for i in order.tolist():
        if state[i] == _SKIPPED:
            continue
        state[i] = _ACCEPTED
        accepted_ids.append(i)
        accepted = geometries[i]

        neighbors = [j for j in tree.query(accepted).tolist() if state[j] == _PENDING]
        if not neighbors:
            continue
        test = prep(accepted) if len(neighbors) > PREPARE_THRESHOLD else accepted

        for j in neighbors:
            candidate = geometries[j]
            try:
                if not test.intersects(candidate):
                    continue
                remaining = _trimmed(candidate, accepted, arena.full_area(j))
            except (GEOSException, ValueError) as e:
                logger.debug(f"Error resolving overlap between candidates {i} and {j}: {e}")
                n_errors += 1
                state[j] = _SKIPPED
                continue
            if remaining is None:
                state[j] = _SKIPPED
            elif remaining is not candidate:
                geometries[j] = remaining
                stats.n_trimmed += 1

    stats.n_accepted += len(accepted_ids)
    stats.n_skipped += int(np.count_nonzero(state == _SKIPPED))
    stats.n_errors += n_errors
    if n_errors:
        n_skipped = int(np.count_nonzero(state == _SKIPPED))
        logger.warning(f"Skipped {n_errors} nucleus detection(s) due to errors "
                       f"in resolving overlaps ({n_errors / max(1, n_skipped) * 100:.1f}% "
                       f"of all skipped)")

    out = NucleusArena()
    for i in accepted_ids:
        out.add(geometries[i], arena.probabilities[i], arena.classifications[i],
                arena.full_area(i))
    return out


__all__ = [
    'PREPARE_THRESHOLD',
    'MIN_REMAINING_FRACTION',
    'OVERLAP_TOLERANCE',
    'ResolveStats',
    'resolve_overlaps',
]
