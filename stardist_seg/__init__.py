"""
StarDist nucleus detection for large microscopy images.

Runs a star-convex polygon prediction network over image tiles, decodes
per-pixel radial predictions into polygons, removes duplicates across
pixels and tile seams, and optionally expands nuclei into cells.

Usage:
    from stardist_seg import (
        ArrayImageSource, DetectionOptions, StarDistDetector, TorchBackend,
    )

    backend = TorchBackend(torch.jit.load("he_heavy_augment.pt"))
    options = DetectionOptions(threshold=0.5, pixel_size=0.5, cell_expansion=5.0)
    with StarDistDetector(backend, options) as detector:
        objects = detector.detect(ArrayImageSource(image, pixel_size=0.25))
"""

__version__ = "0.1.0"

from .errors import BackendError, StarDistSegError, TileProcessingError
from .utils.config import ConfigValidationError, DetectionOptions, load_config, save_config
from .io.image_source import ArrayImageSource, ImageSource
from .models.backend import CallableBackend, PredictionBackend
from .models.torch_backend import TorchBackend
from .preprocessing.normalization import GlobalNormalization
from .detection.assembler import FinalObject
from .detection.detector import StarDistDetector, detect

__all__ = [
    "__version__",
    "StarDistSegError",
    "BackendError",
    "TileProcessingError",
    "ConfigValidationError",
    "DetectionOptions",
    "load_config",
    "save_config",
    "ImageSource",
    "ArrayImageSource",
    "PredictionBackend",
    "CallableBackend",
    "TorchBackend",
    "GlobalNormalization",
    "FinalObject",
    "StarDistDetector",
    "detect",
]
