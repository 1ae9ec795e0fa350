"""
Random-access pixel sources.

The detector only needs to read a rectangular region at a given downsample.
Whole-slide readers live outside this package; anything implementing
``ImageSource`` can be passed to the detector.

Usage:
    from stardist_seg.io.image_source import ArrayImageSource

    source = ArrayImageSource(image, pixel_size=0.25)
    region = source.read_region(0, 0, 512, 512, downsample=2.0)  # (256, 256, c)
"""

from typing import Optional, Protocol, Tuple, runtime_checkable

import cv2
import numpy as np

from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class ImageSource(Protocol):
    """Minimal interface for a pixel source in full-resolution coordinates."""

    width: int
    height: int
    n_channels: int
    pixel_size: Optional[float]

    def read_region(self, x: int, y: int, width: int, height: int,
                    downsample: float = 1.0) -> np.ndarray:
        """Return the region as a (h, w, c) array at the given downsample."""
        ...


def downsampled_size(width: int, height: int, downsample: float) -> Tuple[int, int]:
    """Output (width, height) of a region read at ``downsample`` (at least 1 px)."""
    return (max(1, int(round(width / downsample))),
            max(1, int(round(height / downsample))))


class ArrayImageSource:
    """
    ImageSource backed by an in-memory numpy array.

    Args:
        image: (h, w) or (h, w, c) array
        pixel_size: Calibrated size of one full-resolution pixel (e.g. µm),
            or None if the image is uncalibrated
    """

    def __init__(self, image: np.ndarray, pixel_size: Optional[float] = None):
        image = np.asarray(image)
        if image.ndim == 2:
            image = image[:, :, np.newaxis]
        if image.ndim != 3:
            raise ValueError(f"Expected a 2D or 3D array, got shape {image.shape}")
        if pixel_size is not None and pixel_size <= 0:
            raise ValueError(f"Invalid pixel_size: {pixel_size}")
        self.image = image
        self.height, self.width, self.n_channels = image.shape
        self.pixel_size = pixel_size

    def __repr__(self) -> str:
        return (f"ArrayImageSource(width={self.width}, height={self.height}, "
                f"channels={self.n_channels}, dtype={self.image.dtype})")

    def read_region(self, x: int, y: int, width: int, height: int,
                    downsample: float = 1.0) -> np.ndarray:
        x1, y1 = max(0, int(x)), max(0, int(y))
        x2 = min(self.width, int(x) + int(width))
        y2 = min(self.height, int(y) + int(height))
        if x2 <= x1 or y2 <= y1:
            raise ValueError(
                f"Region ({x}, {y}, {width}, {height}) does not overlap image "
                f"of size {self.width}x{self.height}"
            )
        region = self.image[y1:y2, x1:x2].astype(np.float32)
        if downsample == 1.0:
            return region

        out_w, out_h = downsampled_size(x2 - x1, y2 - y1, downsample)
        channels = [
            cv2.resize(region[:, :, c], (out_w, out_h), interpolation=cv2.INTER_AREA)
            for c in range(region.shape[2])
        ]
        return np.stack(channels, axis=2)
