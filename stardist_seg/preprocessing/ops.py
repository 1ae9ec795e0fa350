"""
Elementary image operations applied to a tile before prediction.

Each operation is a small frozen dataclass with a tag (used in JSON
configs) and a single ``apply`` method taking and returning a
channels-last ``(height, width, channels)`` array. A preprocessing chain
is just an ordered list of operations, applied strictly in order.

Usage:
    from stardist_seg.preprocessing.ops import (
        ExtractChannels, NormalizePercentile, apply_ops, op_from_dict,
    )

    ops = [ExtractChannels((0,)), NormalizePercentile(1, 99.8)]
    tensor = apply_ops(tile, ops)

    op = op_from_dict({"op": "normalize_percentile", "min_percentile": 1,
                       "max_percentile": 99.8})
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple, Type, Union

import cv2
import numpy as np
from scipy import ndimage
from skimage import color

from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

Values = Union[float, Tuple[float, ...]]

_OPS: Dict[str, Type['ImageOp']] = {}


def register_op(cls: Type['ImageOp']) -> Type['ImageOp']:
    """Class decorator adding an operation to the tag registry."""
    if cls.tag in _OPS:
        raise ValueError(f"Duplicate preprocessing op tag: {cls.tag}")
    _OPS[cls.tag] = cls
    return cls


def ensure_channels_last(image: np.ndarray) -> np.ndarray:
    """Return a 3D (h, w, c) view of a 2D or 3D image."""
    if image.ndim == 2:
        return image[:, :, np.newaxis]
    if image.ndim != 3:
        raise ValueError(f"Expected a 2D or 3D image, got shape {image.shape}")
    return image


def _channel_values(values: Values, n_channels: int) -> np.ndarray:
    """Broadcast a scalar or per-channel sequence to shape (1, 1, c)."""
    arr = np.atleast_1d(np.asarray(values, dtype=np.float64))
    if arr.size == 1:
        return arr.reshape(1, 1, 1)
    if arr.size != n_channels:
        raise ValueError(
            f"Expected 1 or {n_channels} values, got {arr.size}"
        )
    return arr.reshape(1, 1, n_channels)


class ImageOp(ABC):
    """Base class for a tagged preprocessing operation."""

    tag: ClassVar[str] = ''

    @abstractmethod
    def apply(self, image: np.ndarray) -> np.ndarray:
        """Apply the operation to a (h, w, c) image."""

    def to_dict(self) -> Dict[str, Any]:
        d = {'op': self.tag}
        for k, v in asdict(self).items():
            d[k] = list(v) if isinstance(v, tuple) else v
        return d


@register_op
@dataclass(frozen=True)
class EnsureType(ImageOp):
    tag: ClassVar[str] = 'ensure_type'
    dtype: str = 'float32'

    def apply(self, image):
        if image.dtype == np.dtype(self.dtype):
            return image
        return image.astype(self.dtype)


@register_op
@dataclass(frozen=True)
class ExtractChannels(ImageOp):
    """Select channels by 0-based index, in the given order."""
    tag: ClassVar[str] = 'extract_channels'
    channels: Tuple[int, ...] = (0,)

    def apply(self, image):
        n = image.shape[2]
        for c in self.channels:
            if c < 0 or c >= n:
                raise ValueError(f"Channel {c} out of range for image with {n} channels")
        return image[:, :, list(self.channels)]


# Stain matrices available by name (rows are stain OD vectors)
_STAIN_MATRICES = {
    'HE': color.hed_from_rgb,
    'HED': color.hed_from_rgb,
    'HDAB': color.hdx_from_rgb,
}


@register_op
@dataclass(frozen=True)
class ColorDeconvolve(ImageOp):
    """Color deconvolution of a brightfield RGB image into stain channels.

    ``stains`` is either a name from ``_STAIN_MATRICES`` or a 3x3 matrix
    (as nested tuples) mapping RGB optical densities to stains. The output
    holds the requested stain ``channels`` (0 = hematoxylin for HE/HDAB).
    """
    tag: ClassVar[str] = 'color_deconvolve'
    stains: Union[str, Tuple[Tuple[float, ...], ...]] = 'HE'
    channels: Tuple[int, ...] = (0,)
    max_value: float = 255.0

    def _matrix(self) -> np.ndarray:
        if isinstance(self.stains, str):
            try:
                return _STAIN_MATRICES[self.stains.upper()]
            except KeyError:
                raise ValueError(f"Unknown stains '{self.stains}', "
                                 f"expected one of {sorted(_STAIN_MATRICES)}") from None
        matrix = np.asarray(self.stains, dtype=np.float64)
        if matrix.shape != (3, 3):
            raise ValueError(f"Stain matrix must be 3x3, got {matrix.shape}")
        return matrix

    def apply(self, image):
        if image.shape[2] < 3:
            raise ValueError("Color deconvolution requires an RGB image")
        rgb = np.clip(image[:, :, :3].astype(np.float64) / self.max_value, 0, 1)
        stains = color.separate_stains(rgb, self._matrix())
        return stains[:, :, list(self.channels)].astype(np.float32)


@register_op
@dataclass(frozen=True)
class Add(ImageOp):
    tag: ClassVar[str] = 'add'
    values: Values = 0.0

    def apply(self, image):
        return image + _channel_values(self.values, image.shape[2]).astype(image.dtype)


@register_op
@dataclass(frozen=True)
class Subtract(ImageOp):
    tag: ClassVar[str] = 'subtract'
    values: Values = 0.0

    def apply(self, image):
        return image - _channel_values(self.values, image.shape[2]).astype(image.dtype)


@register_op
@dataclass(frozen=True)
class Multiply(ImageOp):
    tag: ClassVar[str] = 'multiply'
    values: Values = 1.0

    def apply(self, image):
        return image * _channel_values(self.values, image.shape[2]).astype(image.dtype)


@register_op
@dataclass(frozen=True)
class Divide(ImageOp):
    tag: ClassVar[str] = 'divide'
    values: Values = 1.0

    def apply(self, image):
        return image / _channel_values(self.values, image.shape[2]).astype(image.dtype)


@register_op
@dataclass(frozen=True)
class Clip(ImageOp):
    tag: ClassVar[str] = 'clip'
    min_value: float = 0.0
    max_value: float = 1.0

    def apply(self, image):
        return np.clip(image, self.min_value, self.max_value)


def percentile_range(image: np.ndarray, min_percentile: float, max_percentile: float,
                     per_channel: bool) -> Tuple[np.ndarray, np.ndarray]:
    """Low/high percentiles, per channel (shape (c,)) or jointly (shape (1,))."""
    image = ensure_channels_last(image)
    if per_channel:
        flat = image.reshape(-1, image.shape[2])
        lo = np.percentile(flat, min_percentile, axis=0)
        hi = np.percentile(flat, max_percentile, axis=0)
    else:
        lo = np.atleast_1d(np.percentile(image, min_percentile))
        hi = np.atleast_1d(np.percentile(image, max_percentile))
    return lo, hi


def mean_std(image: np.ndarray, per_channel: bool) -> Tuple[np.ndarray, np.ndarray]:
    """Mean and standard deviation, per channel (shape (c,)) or jointly."""
    image = ensure_channels_last(image)
    if per_channel:
        flat = image.reshape(-1, image.shape[2])
        return flat.mean(axis=0), flat.std(axis=0)
    return np.atleast_1d(image.mean()), np.atleast_1d(image.std())


def _safe_scale(denominator: np.ndarray) -> np.ndarray:
    denominator = np.asarray(denominator, dtype=np.float64)
    return np.where(denominator == 0, 1.0, denominator)


@register_op
@dataclass(frozen=True)
class NormalizePercentile(ImageOp):
    """Rescale so the min/max percentiles map to 0 and 1.

    Computed from the image passed to ``apply``, i.e. per tile when used as
    local preprocessing. Neighboring tiles are normalized independently,
    which can produce visible differences at tile seams.
    """
    tag: ClassVar[str] = 'normalize_percentile'
    min_percentile: float = 1.0
    max_percentile: float = 99.8
    per_channel: bool = True
    eps: float = 0.0

    def apply(self, image):
        lo, hi = percentile_range(image, self.min_percentile, self.max_percentile,
                                  self.per_channel)
        scale = _safe_scale(hi - lo + self.eps)
        n = lo.size
        out = (image - lo.reshape(1, 1, n)) / scale.reshape(1, 1, n)
        return out.astype(image.dtype, copy=False)


@register_op
@dataclass(frozen=True)
class NormalizeZeroMeanUnitVariance(ImageOp):
    tag: ClassVar[str] = 'normalize_zero_mean_unit_variance'
    per_channel: bool = True
    eps: float = 1e-6

    def apply(self, image):
        mean, std = mean_std(image, self.per_channel)
        scale = _safe_scale(std + self.eps)
        n = mean.size
        out = (image - mean.reshape(1, 1, n)) / scale.reshape(1, 1, n)
        return out.astype(image.dtype, copy=False)


@register_op
@dataclass(frozen=True)
class Sigmoid(ImageOp):
    tag: ClassVar[str] = 'sigmoid'

    def apply(self, image):
        return (1.0 / (1.0 + np.exp(-image))).astype(image.dtype, copy=False)


@register_op
@dataclass(frozen=True)
class Threshold(ImageOp):
    """Binarize: 1 where the value exceeds ``value``, else 0."""
    tag: ClassVar[str] = 'threshold'
    value: float = 0.5

    def apply(self, image):
        return (image > self.value).astype(np.float32)


@register_op
@dataclass(frozen=True)
class GaussianFilter(ImageOp):
    tag: ClassVar[str] = 'gaussian_filter'
    sigma: float = 1.0

    def apply(self, image):
        if self.sigma <= 0:
            return image
        src = image.astype(np.float32, copy=False)
        channels = [
            cv2.GaussianBlur(src[:, :, c], (0, 0), self.sigma, borderType=cv2.BORDER_REFLECT)
            for c in range(src.shape[2])
        ]
        return np.stack(channels, axis=2)


@register_op
@dataclass(frozen=True)
class MedianFilter(ImageOp):
    """Median filter with a square window of side ``2 * radius + 1``."""
    tag: ClassVar[str] = 'median_filter'
    radius: int = 1

    def apply(self, image):
        if self.radius <= 0:
            return image
        size = 2 * int(self.radius) + 1
        return ndimage.median_filter(image, size=(size, size, 1), mode='reflect')


def apply_ops(image: np.ndarray, ops: Sequence[ImageOp]) -> np.ndarray:
    """Apply operations in order to a 2D or 3D image; always returns (h, w, c)."""
    out = ensure_channels_last(np.asarray(image))
    for op in ops:
        out = ensure_channels_last(op.apply(out))
    return out


def _freeze(value):
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def op_from_dict(entry: Dict[str, Any]) -> ImageOp:
    """
    Create an operation from a ``{"op": tag, **params}`` dict.

    Raises:
        ValueError: For an unknown tag or unexpected parameters
    """
    params = dict(entry)
    tag = params.pop('op', None)
    if tag not in _OPS:
        raise ValueError(f"Unknown preprocessing op '{tag}', "
                         f"expected one of {sorted(_OPS)}")
    cls = _OPS[tag]
    allowed = {f.name for f in fields(cls)}
    unexpected = set(params) - allowed
    if unexpected:
        raise ValueError(f"Unexpected parameters for '{tag}': {sorted(unexpected)}")
    return cls(**{k: _freeze(v) for k, v in params.items()})


def ops_from_config(entries: Optional[Sequence[Union[Dict[str, Any], ImageOp]]]) -> List[ImageOp]:
    """Convert a list of op dicts (or ready-made ops) to operations."""
    if not entries:
        return []
    return [e if isinstance(e, ImageOp) else op_from_dict(e) for e in entries]


def list_ops() -> List[str]:
    """Tags of all available operations."""
    return sorted(_OPS)
