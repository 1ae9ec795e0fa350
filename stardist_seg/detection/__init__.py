"""
Polygon decoding, cell estimation and result assembly.

The detector itself lives in ``stardist_seg.detection.detector`` (also
exported from the top-level package).
"""

from .nuclei import NucleusArena, PotentialNucleus, decode_nuclei
from .simplify import simplify_geometry
from .cells import constrain_cell_overlaps, estimate_cell_boundary
from .assembler import FinalObject, ResultAssembler
from .measurements import ObjectMeasurer

__all__ = [
    'NucleusArena',
    'PotentialNucleus',
    'decode_nuclei',
    'simplify_geometry',
    'estimate_cell_boundary',
    'constrain_cell_overlaps',
    'FinalObject',
    'ResultAssembler',
    'ObjectMeasurer',
]
