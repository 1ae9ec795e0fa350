"""
Whole-image ("global") normalization.

Statistics are computed once over a downsampled view of the full target
region and turned into a fixed per-channel affine transform, so every tile
is normalized identically and no seams appear between tiles.

Usage:
    from stardist_seg.preprocessing.normalization import GlobalNormalization

    norm = GlobalNormalization(percentiles=(0, 99.8), max_dimension=4096)
    ops = norm.create_ops(source, channel_ops, bounds=(x, y, w, h))
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from stardist_seg.preprocessing.ops import (
    EnsureType,
    ImageOp,
    Multiply,
    Subtract,
    apply_ops,
    mean_std,
    percentile_range,
)
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

Bounds = Tuple[int, int, int, int]


@dataclass(frozen=True)
class GlobalNormalization:
    """
    Settings for normalization based on the whole image (or ROI bounds).

    Attributes:
        percentiles: (min, max) percentiles mapped to 0 and 1. Ignored if
            ``zero_mean_unit_variance`` is True.
        zero_mean_unit_variance: Subtract the mean and divide by the std instead
        per_channel: Compute statistics per channel rather than jointly
        eps: Added to the denominator
        downsample: Fixed downsample for reading statistics; if None, derived
            from ``max_dimension``
        max_dimension: Largest width/height of the region read for statistics
    """
    percentiles: Tuple[float, float] = (0.0, 99.8)
    zero_mean_unit_variance: bool = False
    per_channel: bool = False
    eps: float = 0.0
    downsample: Optional[float] = None
    max_dimension: int = 2048

    def __post_init__(self):
        lo, hi = self.percentiles
        if not 0 <= lo < hi <= 100:
            raise ValueError(f"Invalid percentiles: {self.percentiles}")
        if self.downsample is not None and self.downsample <= 0:
            raise ValueError(f"Invalid downsample: {self.downsample}")
        if self.max_dimension <= 0:
            raise ValueError(f"Invalid max_dimension: {self.max_dimension}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'GlobalNormalization':
        d = dict(d)
        if 'percentiles' in d:
            d['percentiles'] = tuple(d['percentiles'])
        return cls(**d)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'percentiles': list(self.percentiles),
            'zero_mean_unit_variance': self.zero_mean_unit_variance,
            'per_channel': self.per_channel,
            'eps': self.eps,
            'downsample': self.downsample,
            'max_dimension': self.max_dimension,
        }

    def statistics_downsample(self, width: int, height: int) -> float:
        if self.downsample is not None:
            return float(self.downsample)
        return max(1.0, max(width, height) / float(self.max_dimension))

    def create_ops(self, source, channel_ops: Sequence[ImageOp],
                   bounds: Optional[Bounds] = None) -> List[ImageOp]:
        """
        Compute statistics and return the equivalent fixed operations.

        Args:
            source: ImageSource to read from
            channel_ops: Channel selection/transforms applied before statistics,
                exactly as they are applied to each tile
            bounds: (x, y, width, height) in full-resolution pixels; the whole
                image if None

        Returns:
            [Subtract(offsets), Multiply(1 / scales)]
        """
        if bounds is None:
            bounds = (0, 0, source.width, source.height)
        x, y, w, h = bounds
        downsample = self.statistics_downsample(w, h)
        logger.debug(f"Computing global normalization at downsample {downsample:.2f} "
                     f"for region {bounds}")

        pixels = source.read_region(x, y, w, h, downsample)
        pixels = apply_ops(pixels, [EnsureType('float32'), *channel_ops])

        if self.zero_mean_unit_variance:
            offset, scale = mean_std(pixels, self.per_channel)
            scale = scale + self.eps
        else:
            offset, scale = percentile_range(pixels, self.percentiles[0],
                                             self.percentiles[1], self.per_channel)
            scale = scale - offset + self.eps

        if np.any(scale == 0):
            logger.warning("Global normalization found a constant channel; "
                           "leaving its scale unchanged")
            scale = np.where(scale == 0, 1.0, scale)

        logger.debug(f"Global normalization offsets={offset.tolist()} scales={scale.tolist()}")
        return [
            Subtract(tuple(float(v) for v in offset)),
            Multiply(tuple(float(1.0 / v) for v in scale)),
        ]
