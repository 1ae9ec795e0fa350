"""
Inference adapter between tiles and a prediction backend.

Responsibilities:
- reflect-pad each tile so both spatial dimensions are multiples of 64
  (2^6, a generous bound on network pooling depth)
- convert the (h, w, c) tile into the backend's tensor layout and back
- split the output into probability, ray-distance and classification rasters
- detect half-resolution outputs (scale factor 2)

Calls into a backend that is not thread-safe are serialized with a lock.
"""

import math
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from stardist_seg.errors import BackendError, TileProcessingError
from stardist_seg.models.backend import LAYOUTS, PredictionBackend
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

PADDING_MULTIPLE = 64


@dataclass(frozen=True)
class Padding:
    """Pixels added on each side of a tile before inference."""
    x1: int = 0
    x2: int = 0
    y1: int = 0
    y2: int = 0

    @property
    def is_empty(self) -> bool:
        return self.x1 == self.x2 == self.y1 == self.y2 == 0


@dataclass
class RawPrediction:
    """
    Decoded backend output for one tile, all rasters channels-last.

    Attributes:
        prob: (h, w) object probability
        rays: (h, w, n_rays) radial distances in input pixels
        classes: (h, w, n_classes) classification scores, or None
        scale_x, scale_y: Input pixels per output pixel (1 or 2)
    """
    prob: np.ndarray
    rays: np.ndarray
    classes: Optional[np.ndarray] = None
    scale_x: float = 1.0
    scale_y: float = 1.0

    @property
    def n_rays(self) -> int:
        return self.rays.shape[2]

    @property
    def n_classes(self) -> int:
        return 0 if self.classes is None else self.classes.shape[2]


def pad_to_multiple(image: np.ndarray, multiple: int = PADDING_MULTIPLE) -> Tuple[np.ndarray, Padding]:
    """
    Reflect-pad an (h, w, c) image to a multiple of ``multiple``.

    Padding is split as evenly as possible, with any odd pixel on the
    right/bottom.
    """
    h, w = image.shape[:2]
    th = int(math.ceil(h / multiple)) * multiple
    tw = int(math.ceil(w / multiple)) * multiple
    if th == h and tw == w:
        return image, Padding()

    x1 = (tw - w) // 2
    y1 = (th - h) // 2
    padding = Padding(x1=x1, x2=tw - w - x1, y1=y1, y2=th - h - y1)
    # cv2 handles any border width with repeated reflection
    channels = [
        cv2.copyMakeBorder(np.ascontiguousarray(image[:, :, c]), padding.y1, padding.y2,
                           padding.x1, padding.x2, cv2.BORDER_REFLECT)
        for c in range(image.shape[2])
    ]
    return np.stack(channels, axis=2), padding


def to_layout(image: np.ndarray, layout: str) -> np.ndarray:
    """Convert an (h, w, c) image to a backend tensor."""
    if layout == 'yxc':
        return image
    if layout == 'byxc':
        return image[np.newaxis]
    if layout == 'cyx':
        return np.transpose(image, (2, 0, 1))
    if layout == 'bcyx':
        return np.transpose(image, (2, 0, 1))[np.newaxis]
    raise ValueError(f"Unknown layout {layout!r}; expected one of {LAYOUTS}")


def from_layout(tensor: np.ndarray, layout: str) -> np.ndarray:
    """Convert a backend output tensor to (h, w, c)."""
    tensor = np.asarray(tensor)
    if layout.startswith('b') and tensor.ndim == 4:
        if tensor.shape[0] != 1:
            raise BackendError(f"Expected a batch of 1, got shape {tensor.shape}")
        tensor = tensor[0]
    if tensor.ndim == 2:
        return tensor[:, :, np.newaxis]
    if tensor.ndim != 3:
        raise BackendError(f"Unexpected output shape {tensor.shape} for layout {layout!r}")
    if layout.endswith('c'):
        return tensor
    return np.transpose(tensor, (1, 2, 0))


def split_outputs(outputs: Dict[str, np.ndarray], n_classes: int = 0) -> RawPrediction:
    """
    Split (h, w, c) outputs into probability, rays and classifications.

    A single combined tensor is ordered probability, rays, then
    ``n_classes`` classification channels. With several tensors, the
    single-channel one is the probability, the one with most channels holds
    the rays and any other is the classification.
    """
    if not outputs:
        raise BackendError("Backend returned no outputs")

    if len(outputs) == 1:
        combined = next(iter(outputs.values()))
        n_channels = combined.shape[2]
        n_rays = n_channels - 1 - n_classes
        if n_rays < 3:
            raise BackendError(
                f"Output with {n_channels} channels cannot hold a probability, "
                f"{n_classes} classifications and at least 3 rays"
            )
        classes = combined[:, :, n_rays + 1:] if n_classes > 0 else None
        return RawPrediction(combined[:, :, 0], combined[:, :, 1:n_rays + 1], classes)

    prob = rays = classes = None
    for name, tensor in outputs.items():
        if tensor.shape[2] == 1:
            prob = tensor[:, :, 0]
        elif rays is None:
            rays = tensor
        elif tensor.shape[2] > rays.shape[2]:
            classes, rays = rays, tensor
        else:
            classes = tensor
    if prob is None or rays is None:
        shapes = {name: t.shape for name, t in outputs.items()}
        raise BackendError(f"Could not identify probability and ray outputs among {shapes}")
    return RawPrediction(prob, rays, classes)


def _round_scale(ratio: float) -> float:
    # Half rounds up; outputs larger than the input are read at scale 1
    return max(1.0, float(math.floor(ratio + 0.5)))


def detect_scale(input_width: int, input_height: int,
                 output_width: int, output_height: int) -> Tuple[float, float]:
    """Input-to-output scale factors, rounded; only 1 and 2 are expected."""
    if input_width <= 0 or input_height <= 0 or output_width <= 0 or output_height <= 0:
        raise TileProcessingError(
            f"Invalid prediction dimensions: input {input_width}x{input_height}, "
            f"output {output_width}x{output_height}"
        )
    scale_x = _round_scale(input_width / output_width)
    scale_y = _round_scale(input_height / output_height)
    if output_width > input_width or output_height > input_height:
        logger.warning(f"Prediction {output_width}x{output_height} is larger than its input "
                       f"{input_width}x{input_height}; using scale 1")
    elif scale_x != 1.0 or scale_y != 1.0:
        if scale_x != 2.0 or scale_y != 2.0:
            logger.warning(f"Unexpected prediction rescaling x={scale_x}, y={scale_y}")
        else:
            logger.debug(f"Prediction rescaling x={scale_x}, y={scale_y}")
    return scale_x, scale_y


class InferenceAdapter:
    """
    Run one preprocessed tile through a backend.

    Args:
        backend: Prediction backend
        layout: Tensor layout override; defaults to ``backend.layout``
        n_classes: Classification channels in a combined output tensor
    """

    def __init__(self, backend: PredictionBackend, layout: Optional[str] = None,
                 n_classes: int = 0):
        self.backend = backend
        self.layout = layout or getattr(backend, 'layout', 'yxc')
        if self.layout not in LAYOUTS:
            raise ValueError(f"Unknown layout {self.layout!r}; expected one of {LAYOUTS}")
        self.n_classes = n_classes
        self._lock = None if getattr(backend, 'thread_safe', False) else threading.Lock()

    def _call_backend(self, tensor: np.ndarray) -> Dict[str, np.ndarray]:
        inputs = {getattr(self.backend, 'input_name', 'input'): tensor}
        if self._lock is None:
            return self.backend.predict(inputs)
        with self._lock:
            return self.backend.predict(inputs)

    def predict(self, image: np.ndarray) -> Tuple[RawPrediction, Padding]:
        """
        Predict on an (h, w, c) float image.

        Returns:
            (prediction, padding) where padding was added before inference
        """
        padded, padding = pad_to_multiple(np.asarray(image, dtype=np.float32))
        in_h, in_w = padded.shape[:2]

        outputs = self._call_backend(to_layout(padded, self.layout))
        outputs = {name: from_layout(t, self.layout).astype(np.float32, copy=False)
                   for name, t in outputs.items()}
        prediction = split_outputs(outputs, self.n_classes)

        out_h, out_w = prediction.prob.shape[:2]
        prediction.scale_x, prediction.scale_y = detect_scale(in_w, in_h, out_w, out_h)
        return prediction, padding


def check_classification_count(n_configured: int, prediction: RawPrediction) -> bool:
    """
    Compare configured classifications against the prediction.

    A missing background entry is allowed (one fewer than predicted).
    Returns True if the counts are consistent.
    """
    n_available = prediction.n_classes
    if n_configured > n_available or n_configured < n_available - 1:
        logger.warning(f"{n_configured} classifications provided, "
                       f"{n_available} available in the prediction")
        return False
    logger.debug(f"{n_configured} classifications provided, "
                 f"{n_available} available in the prediction")
    return True


__all__ = [
    'PADDING_MULTIPLE',
    'Padding',
    'RawPrediction',
    'pad_to_multiple',
    'to_layout',
    'from_layout',
    'split_outputs',
    'detect_scale',
    'InferenceAdapter',
    'check_classification_count',
]
