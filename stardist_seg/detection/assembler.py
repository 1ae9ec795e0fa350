"""
Conversion of resolved nuclei into final detection objects.

Each accepted nucleus is simplified, optionally expanded to a cell and
clipped to the ROI mask, then labelled and given its probability.
"""

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from shapely.errors import GEOSException
from shapely.geometry.base import BaseGeometry

from stardist_seg.detection.cells import (
    CellOverlapStats,
    constrain_cell_overlaps,
    estimate_cell_boundary,
)
from stardist_seg.detection.geometry import ensure_polygonal
from stardist_seg.detection.nuclei import NucleusArena, PotentialNucleus
from stardist_seg.detection.simplify import simplify_geometry
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

PROBABILITY_MEASUREMENT = "Detection probability"


@dataclass(frozen=True)
class FinalObject:
    """
    One detected nucleus, with its cell if expansion was requested.

    Attributes:
        nucleus: Nucleus polygon (full-resolution pixel coordinates)
        cell: Cell polygon containing the nucleus, or None
        classification: Label, or None
        class_index: Predicted class index (-1 if unclassified)
        probability: Detection probability
        measurements: Read-only name -> value mapping
    """
    nucleus: BaseGeometry
    cell: Optional[BaseGeometry] = None
    classification: Optional[str] = None
    class_index: int = -1
    probability: float = 0.0
    measurements: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        if not isinstance(self.measurements, MappingProxyType):
            object.__setattr__(self, 'measurements', MappingProxyType(dict(self.measurements)))

    @property
    def is_cell(self) -> bool:
        return self.cell is not None

    @property
    def geometry(self) -> BaseGeometry:
        """Outer boundary: the cell if present, else the nucleus."""
        return self.cell if self.cell is not None else self.nucleus

    def with_measurements(self, values: Mapping[str, float]) -> 'FinalObject':
        """Copy with extra measurements merged in."""
        merged = dict(self.measurements)
        merged.update(values)
        return replace(self, measurements=merged)


class ResultAssembler:
    """
    Turns accepted nuclei into FinalObjects.

    Args:
        simplify_distance: Simplification tolerance (<= 0 disables)
        cell_expansion: Expansion distance in full-resolution pixels
        cell_constrain_scale: Optional cap on cell size relative to nucleus
        mask: Parent geometry to clip to, or None
        classifications: Class index -> label
        global_class: Label used when no per-index label applies
        include_probability: Add the probability as a measurement
    """

    def __init__(
        self,
        simplify_distance: float = 1.4,
        cell_expansion: float = 0.0,
        cell_constrain_scale: Optional[float] = None,
        mask: Optional[BaseGeometry] = None,
        classifications: Optional[Dict[int, str]] = None,
        global_class: Optional[str] = None,
        include_probability: bool = False,
    ):
        self.simplify_distance = simplify_distance
        self.cell_expansion = cell_expansion
        self.cell_constrain_scale = cell_constrain_scale
        self.mask = mask
        self.classifications = classifications
        self.global_class = global_class
        self.include_probability = include_probability

    def label_for(self, class_index: int) -> Optional[str]:
        if self.classifications is None:
            return self.global_class
        return self.classifications.get(class_index, self.global_class)

    def _nucleus_and_cell(self, geometry: BaseGeometry):
        nucleus = simplify_geometry(geometry, self.simplify_distance)
        if self.cell_expansion <= 0:
            if self.mask is not None:
                nucleus = ensure_polygonal(nucleus.intersection(self.mask))
            return nucleus, None

        cell = estimate_cell_boundary(nucleus, self.cell_expansion, self.cell_constrain_scale)
        if self.mask is not None:
            cell = cell.intersection(self.mask)
            nucleus = ensure_polygonal(nucleus.intersection(cell))
        cell = ensure_polygonal(simplify_geometry(ensure_polygonal(cell), self.simplify_distance))
        if not cell.is_empty and not nucleus.is_empty and not cell.covers(nucleus):
            cell = ensure_polygonal(cell.union(nucleus))
        return nucleus, cell

    def convert(self, candidate: PotentialNucleus) -> Optional[FinalObject]:
        """Convert one nucleus; returns None if it ends up empty."""
        nucleus, cell = self._nucleus_and_cell(candidate.geometry)
        if cell is not None and cell.is_empty:
            logger.warning(f"Empty cell boundary at {candidate.geometry.centroid} will be skipped")
            return None
        if nucleus.is_empty:
            logger.warning(f"Empty nucleus at {candidate.geometry.centroid} will be skipped")
            return None

        measurements = {}
        if self.include_probability:
            measurements[PROBABILITY_MEASUREMENT] = candidate.probability

        return FinalObject(
            nucleus=nucleus,
            cell=cell,
            classification=self.label_for(candidate.classification),
            class_index=candidate.classification,
            probability=candidate.probability,
            measurements=measurements,
        )

    def _convert_safely(self, candidate: PotentialNucleus) -> Optional[FinalObject]:
        try:
            return self.convert(candidate)
        except (GEOSException, ValueError) as e:
            logger.warning(f"Error converting nucleus at {candidate.geometry.centroid}: {e}")
            return None

    def assemble(self, arena: NucleusArena, executor=None,
                 resolve_cell_overlaps: bool = True) -> List[FinalObject]:
        """
        Convert every nucleus in the arena, keeping arena order.

        Args:
            arena: Accepted nuclei
            executor: Optional ``concurrent.futures.Executor`` for conversion
            resolve_cell_overlaps: Split overlapping cells between nuclei
        """
        mapper = executor.map if executor is not None else map
        objects = [obj for obj in mapper(self._convert_safely, list(arena)) if obj is not None]

        if self.cell_expansion > 0 and resolve_cell_overlaps and len(objects) > 1:
            stats = CellOverlapStats()
            cells = constrain_cell_overlaps([o.nucleus for o in objects],
                                            [o.cell for o in objects], stats=stats)
            objects = [replace(o, cell=c) for o, c in zip(objects, cells)]
            logger.debug(f"Resolved {stats.n_pairs} cell overlaps")
        return objects


__all__ = ['PROBABILITY_MEASUREMENT', 'FinalObject', 'ResultAssembler']
