"""
Tile scheduling.

The target region is covered by non-overlapping *core* tiles. Each tile
reads a *padded* request extending its core by ``padding * downsample``
full-resolution pixels on every side (clamped to the image), and is
responsible only for nuclei whose centroid falls inside its core (further
restricted by the ROI mask, if any).

All coordinates here are full-resolution image pixels.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

Rect = Tuple[int, int, int, int]


@dataclass(frozen=True)
class Tile:
    """
    One unit of tile work.

    Attributes:
        index: Position in the scheduling order
        core: (x, y, width, height) region this tile is responsible for
        padded: (x, y, width, height) region actually read
        downsample: Read downsample
        mask: Core rectangle intersected with the ROI mask; nuclei with a
            centroid outside it belong to another tile
    """
    index: int
    core: Rect
    padded: Rect
    downsample: float
    mask: BaseGeometry

    @property
    def padded_max_x(self) -> int:
        return self.padded[0] + self.padded[2]

    @property
    def padded_max_y(self) -> int:
        return self.padded[1] + self.padded[3]


def core_tile_size(tile_width: int, tile_height: int, padding: int,
                   downsample: float) -> Tuple[int, int]:
    """Core tile size in full-resolution pixels."""
    core_w = tile_width - 2 * padding
    core_h = tile_height - 2 * padding
    if core_w <= 0 or core_h <= 0:
        raise ValueError(
            f"Tile size {tile_width}x{tile_height} leaves no core region "
            f"with padding {padding}"
        )
    return (max(1, int(round(core_w * downsample))),
            max(1, int(round(core_h * downsample))))


def padded_request(core: Rect, padding: int, downsample: float,
                   image_width: int, image_height: int) -> Rect:
    """Expand a core rectangle by the padding, clamped to the image."""
    x, y, w, h = core
    x1 = max(0, int(round(x - downsample * padding)))
    y1 = max(0, int(round(y - downsample * padding)))
    x2 = min(image_width, int(round(x + w + downsample * padding)))
    y2 = min(image_height, int(round(y + h + downsample * padding)))
    return (x1, y1, x2 - x1, y2 - y1)


def plan_tiles(
    image_width: int,
    image_height: int,
    downsample: float = 1.0,
    tile_width: int = 1024,
    tile_height: int = 1024,
    padding: int = 32,
    bounds: Optional[Rect] = None,
    mask: Optional[BaseGeometry] = None,
) -> List[Tile]:
    """
    Cover a target region with tiles.

    Args:
        image_width, image_height: Full-resolution image size
        downsample: Detection downsample
        tile_width, tile_height: Tile size at the detection resolution,
            including padding on both sides
        padding: Halo in pixels at the detection resolution
        bounds: (x, y, width, height) to cover; defaults to the mask's
            bounding box, or the whole image
        mask: Optional ROI geometry; tiles whose core does not intersect it
            are discarded

    Returns:
        Tiles in row-major order
    """
    if bounds is None:
        if mask is not None and not mask.is_empty:
            minx, miny, maxx, maxy = mask.bounds
            bounds = (int(math.floor(minx)), int(math.floor(miny)),
                      int(math.ceil(maxx - math.floor(minx))),
                      int(math.ceil(maxy - math.floor(miny))))
        else:
            bounds = (0, 0, image_width, image_height)

    # Clip target bounds to the image
    bx1 = max(0, bounds[0])
    by1 = max(0, bounds[1])
    bx2 = min(image_width, bounds[0] + bounds[2])
    by2 = min(image_height, bounds[1] + bounds[3])
    if bx2 <= bx1 or by2 <= by1:
        logger.warning(f"Target bounds {bounds} do not overlap the image")
        return []

    step_w, step_h = core_tile_size(tile_width, tile_height, padding, downsample)

    tiles = []
    for y in range(by1, by2, step_h):
        for x in range(bx1, bx2, step_w):
            core = (x, y, min(step_w, bx2 - x), min(step_h, by2 - y))
            core_geom = box(core[0], core[1], core[0] + core[2], core[1] + core[3])
            if mask is not None:
                if not mask.intersects(core_geom):
                    continue
                tile_mask = mask.intersection(core_geom)
            else:
                tile_mask = core_geom
            padded = padded_request(core, padding, downsample, image_width, image_height)
            tiles.append(Tile(len(tiles), core, padded, downsample, tile_mask))

    logger.debug(f"Planned {len(tiles)} tiles of core size {step_w}x{step_h} "
                 f"over {bx2 - bx1}x{by2 - by1} at downsample {downsample:.3f}")
    return tiles


__all__ = ['Tile', 'core_tile_size', 'padded_request', 'plan_tiles']
