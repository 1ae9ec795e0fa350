"""
Shape and intensity measurements for final objects.

Shape features come from the polygons; intensity features are computed on
pixels read from the image source at the detection downsample, for the
requested compartments:

- nucleus: the nucleus polygon
- cell: the cell polygon
- cytoplasm: cell minus nucleus
- membrane: a one-pixel line along the cell boundary

Measurement names follow "<Compartment>: <feature>", e.g.
"Nucleus: Area px^2" or "Cytoplasm: Channel 2: Mean".
"""

import math
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np
from shapely.geometry.base import BaseGeometry

from stardist_seg.detection.assembler import FinalObject
from stardist_seg.detection.geometry import largest_polygon, polygon_parts
from stardist_seg.preprocessing.ops import ImageOp, apply_ops
from stardist_seg.utils.config import COMPARTMENTS, INTENSITY_MEASUREMENTS
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

_STATISTICS = {
    'mean': np.mean,
    'median': np.median,
    'min': np.min,
    'max': np.max,
    'std': np.std,
}


def shape_features(geom: BaseGeometry, pixel_size: Optional[float] = None) -> Dict[str, float]:
    """
    Area, perimeter, circularity, solidity, eccentricity and max/min caliper diameters.

    Lengths are converted to calibrated units if ``pixel_size`` is given.
    """
    scale = pixel_size if pixel_size else 1.0
    unit = "µm" if pixel_size else "px"

    area = geom.area
    perimeter = geom.length
    hull = geom.convex_hull
    circularity = 4 * math.pi * area / (perimeter ** 2) if perimeter > 0 else 0.0
    solidity = area / hull.area if hull.area > 0 else 0.0

    rect = hull.minimum_rotated_rectangle
    if rect.geom_type == 'Polygon':
        xs, ys = rect.exterior.coords.xy
        sides = [math.hypot(xs[i + 1] - xs[i], ys[i + 1] - ys[i]) for i in range(2)]
        min_diameter, max_diameter = min(sides), max(sides)
    else:
        min_diameter, max_diameter = 0.0, rect.length

    # Eccentricity of the fitted ellipse: 0 = circle, 1 = line
    eccentricity = float('nan')
    outline = largest_polygon(geom)
    if outline is not None and len(outline.exterior.coords) >= 6:
        contour = np.asarray(outline.exterior.coords[:-1], dtype=np.float32).reshape(-1, 1, 2)
        try:
            (_, _), axes, _ = cv2.fitEllipse(contour)
            a, b = max(axes) / 2, min(axes) / 2
            if a > 0:
                eccentricity = float(np.sqrt(1 - (b / a) ** 2))
        except cv2.error as e:
            logger.debug(f"Could not fit ellipse: {e}")

    return {
        f"Area {unit}^2": area * scale * scale,
        f"Perimeter {unit}": perimeter * scale,
        "Circularity": min(1.0, circularity),
        "Solidity": solidity,
        "Eccentricity": eccentricity,
        f"Max diameter {unit}": max_diameter * scale,
        f"Min diameter {unit}": min_diameter * scale,
    }


def rasterize(geom: Optional[BaseGeometry], shape, origin_x: float, origin_y: float,
              downsample: float) -> np.ndarray:
    """Boolean mask of polygonal ``geom`` on a (h, w) grid."""
    mask = np.zeros(shape, dtype=np.uint8)
    for poly in polygon_parts(geom):
        def _pts(ring):
            xy = (np.asarray(ring.coords) - (origin_x, origin_y)) / downsample
            return np.round(xy).astype(np.int32).reshape(-1, 1, 2)
        cv2.fillPoly(mask, [_pts(poly.exterior)], 1)
        for interior in poly.interiors:
            cv2.fillPoly(mask, [_pts(interior)], 0)
    return mask.astype(bool)


def membrane_mask(cell: BaseGeometry, shape, origin_x: float, origin_y: float,
                  downsample: float) -> np.ndarray:
    mask = np.zeros(shape, dtype=np.uint8)
    for poly in polygon_parts(cell):
        xy = (np.asarray(poly.exterior.coords) - (origin_x, origin_y)) / downsample
        cv2.polylines(mask, [np.round(xy).astype(np.int32).reshape(-1, 1, 2)],
                      isClosed=True, color=1, thickness=1)
    return mask.astype(bool)


class ObjectMeasurer:
    """
    Adds measurements to final objects.

    Args:
        source: ImageSource for intensity measurements (None: shape only)
        downsample: Downsample to read pixels at
        pixel_size: Calibrated size of a full-resolution pixel, or None
        measure_shape: Add shape features for nucleus (and cell)
        statistics: Intensity statistics, subset of INTENSITY_MEASUREMENTS
        compartments: Subset of COMPARTMENTS
        channel_ops: Operations applied to pixels before measuring
            (e.g. color deconvolution)
    """

    def __init__(
        self,
        source=None,
        downsample: float = 1.0,
        pixel_size: Optional[float] = None,
        measure_shape: bool = False,
        statistics: Sequence[str] = (),
        compartments: Sequence[str] = COMPARTMENTS,
        channel_ops: Sequence[ImageOp] = (),
    ):
        unknown = [s for s in statistics if s not in INTENSITY_MEASUREMENTS]
        if unknown:
            raise ValueError(f"Unknown intensity measurements: {unknown}")
        unknown = [c for c in compartments if c not in COMPARTMENTS]
        if unknown:
            raise ValueError(f"Unknown compartments: {unknown}")
        self.source = source
        self.downsample = downsample
        self.pixel_size = pixel_size
        self.measure_shape = measure_shape
        self.statistics = list(statistics)
        self.compartments = list(compartments)
        self.channel_ops = list(channel_ops)

    @property
    def is_active(self) -> bool:
        return self.measure_shape or (self.source is not None and bool(self.statistics))

    def _intensity(self, obj: FinalObject) -> Dict[str, float]:
        minx, miny, maxx, maxy = obj.geometry.bounds
        x = int(math.floor(minx))
        y = int(math.floor(miny))
        w = int(math.ceil(maxx)) - x + 1
        h = int(math.ceil(maxy)) - y + 1
        x, y = max(0, x), max(0, y)
        w = min(w, self.source.width - x)
        h = min(h, self.source.height - y)
        if w <= 0 or h <= 0:
            return {}

        pixels = self.source.read_region(x, y, w, h, self.downsample)
        if self.channel_ops:
            pixels = apply_ops(pixels, self.channel_ops)
        grid = pixels.shape[:2]

        masks = {}
        nucleus = rasterize(obj.nucleus, grid, x, y, self.downsample)
        if 'nucleus' in self.compartments:
            masks['Nucleus'] = nucleus
        if obj.cell is not None:
            cell = rasterize(obj.cell, grid, x, y, self.downsample)
            if 'cell' in self.compartments:
                masks['Cell'] = cell
            if 'cytoplasm' in self.compartments:
                masks['Cytoplasm'] = cell & ~nucleus
            if 'membrane' in self.compartments:
                masks['Membrane'] = membrane_mask(obj.cell, grid, x, y, self.downsample)

        values = {}
        for name, mask in masks.items():
            for c in range(pixels.shape[2]):
                channel_pixels = pixels[:, :, c][mask]
                for stat in self.statistics:
                    key = f"{name}: Channel {c + 1}: {stat.capitalize()}"
                    values[key] = float(_STATISTICS[stat](channel_pixels)) if channel_pixels.size else float('nan')
        return values

    def measure(self, obj: FinalObject) -> FinalObject:
        """Return a copy of ``obj`` with measurements added."""
        values: Dict[str, float] = {}
        if self.measure_shape:
            for name, feat in shape_features(obj.nucleus, self.pixel_size).items():
                values[f"Nucleus: {name}"] = feat
            if obj.cell is not None:
                for name, feat in shape_features(obj.cell, self.pixel_size).items():
                    values[f"Cell: {name}"] = feat
                values["Nucleus/Cell area ratio"] = (obj.nucleus.area / obj.cell.area
                                                     if obj.cell.area > 0 else 0.0)
        if self.source is not None and self.statistics:
            values.update(self._intensity(obj))
        return obj.with_measurements(values)

    def measure_all(self, objects: List[FinalObject], executor=None) -> List[FinalObject]:
        """Measure every object; order is preserved."""
        if not self.is_active:
            return list(objects)
        mapper = executor.map if executor is not None else map
        return list(mapper(self.measure, objects))


__all__ = ['shape_features', 'rasterize', 'membrane_mask', 'ObjectMeasurer']
