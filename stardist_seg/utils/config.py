"""
Configuration for StarDist nucleus detection.

Provides defaults, JSON config loading/saving, range validation and the
``DetectionOptions`` dataclass consumed by the detector.

Usage:
    from stardist_seg.utils.config import load_config, DetectionOptions

    # Defaults merged with /path/to/experiment/config.json, if present
    config = load_config('/path/to/experiment')
    options = DetectionOptions.from_config(config)

    # Or directly
    options = DetectionOptions(threshold=0.6, pixel_size=0.5, cell_expansion=5.0)
"""

import copy
import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from stardist_seg.utils.json_utils import NumpyEncoder as _NumpyEncoder
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)


DEFAULT_TILE_SIZE = 1024

# Compartments available for intensity measurements
COMPARTMENTS = ("nucleus", "cytoplasm", "membrane", "cell")

# Intensity statistics available for measurements
INTENSITY_MEASUREMENTS = ("mean", "median", "min", "max", "std")

DEFAULT_CONFIG: Dict[str, Any] = {
    # Detection
    "threshold": 0.5,
    "tile_width": DEFAULT_TILE_SIZE,
    "tile_height": DEFAULT_TILE_SIZE,
    "padding": 32,
    "pixel_size": None,
    "layout": None,

    # Input
    "channels": None,
    "channel_transforms": [],
    "global_normalization": None,
    "preprocessing": [],

    # Classification
    "n_classes": None,
    "classifications": None,
    "global_class": None,
    "keep_classified_background": False,

    # Output geometry
    "simplify_distance": 1.4,
    "cell_expansion": 0.0,
    "cell_constrain_scale": None,
    "ignore_cell_overlaps": False,
    "constrain_to_parent": True,

    # Measurements
    "include_probability": False,
    "measure_shape": False,
    "measure_intensity": [],
    "compartments": list(COMPARTMENTS),

    # Execution
    "n_threads": -1,
    "do_log": False,
    "show_progress": False,
}

# Validation constraints; None means unbounded on that side
_VALIDATION_RULES: Dict[str, Dict[str, Any]] = {
    "threshold": {"min": 0.0, "max": 1.0, "type": float},
    "tile_width": {"min": 16, "max": 16384, "type": int},
    "tile_height": {"min": 16, "max": 16384, "type": int},
    "padding": {"min": 0, "max": 4096, "type": int},
    "pixel_size": {"min": 1e-6, "max": None, "type": float},
    "simplify_distance": {"min": None, "max": 1000.0, "type": float},
    "cell_expansion": {"min": 0.0, "max": None, "type": float},
    "cell_constrain_scale": {"min": 0.0, "max": None, "type": float},
    "n_classes": {"min": 0, "max": 4096, "type": int},
    "n_threads": {"min": -1, "max": 1024, "type": int},
}

_LAYOUTS = ("yxc", "byxc", "cyx", "bcyx")


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


def _validate_range(
    value: Any,
    key: str,
    min_val: Optional[float],
    max_val: Optional[float],
    expected_type: type,
) -> List[str]:
    """
    Validate a single value against a type and an optional range.

    Returns:
        List of error messages (empty if valid)
    """
    if isinstance(value, bool):
        return [f"{key}: expected {expected_type.__name__}, got bool"]
    if expected_type == float:
        if not isinstance(value, (int, float)):
            return [f"{key}: expected numeric type, got {type(value).__name__}"]
        if not math.isfinite(value):
            return [f"{key}: value {value} is not finite"]
    elif not isinstance(value, expected_type):
        return [f"{key}: expected {expected_type.__name__}, got {type(value).__name__}"]

    if (min_val is not None and value < min_val) or (max_val is not None and value > max_val):
        lo = "-inf" if min_val is None else min_val
        hi = "inf" if max_val is None else max_val
        return [f"{key}: value {value} out of range [{lo}, {hi}]"]
    return []


def validate_config(
    config: Optional[Dict[str, Any]] = None,
    raise_on_error: bool = False,
) -> Dict[str, Union[bool, List[str]]]:
    """
    Validate a configuration dict against expected types and ranges.

    Args:
        config: Config dict (like DEFAULT_CONFIG). If None, validates DEFAULT_CONFIG.
        raise_on_error: If True, raise ConfigValidationError when invalid

    Returns:
        Dict with 'valid' (bool), 'errors' and 'warnings' (lists of str)

    Example:
        >>> result = validate_config({"threshold": 1.5})
        >>> result['errors']
        ['threshold: value 1.5 out of range [0.0, 1.0]']
    """
    if config is None:
        config = DEFAULT_CONFIG

    errors: List[str] = []
    warnings: List[str] = []

    for key, rule in _VALIDATION_RULES.items():
        value = config.get(key)
        if value is None:
            continue
        errors.extend(_validate_range(value, key, rule["min"], rule["max"], rule["type"]))

    padding = config.get("padding", DEFAULT_CONFIG["padding"])
    for key in ("tile_width", "tile_height"):
        size = config.get(key, DEFAULT_CONFIG[key])
        if isinstance(size, int) and isinstance(padding, int) and size - 2 * padding <= 0:
            errors.append(f"{key}: {size} leaves no core region with padding {padding}")

    layout = config.get("layout")
    if layout is not None and layout not in _LAYOUTS:
        errors.append(f"layout: expected one of {list(_LAYOUTS)}, got {layout!r}")

    scale = config.get("cell_constrain_scale")
    if isinstance(scale, (int, float)) and not isinstance(scale, bool) and 0 < scale <= 1:
        warnings.append(f"cell_constrain_scale: {scale} <= 1 has no effect")

    for name in config.get("measure_intensity") or []:
        if name not in INTENSITY_MEASUREMENTS:
            errors.append(f"measure_intensity: unknown measurement {name!r}")
    for name in config.get("compartments") or []:
        if name not in COMPARTMENTS:
            errors.append(f"compartments: unknown compartment {name!r}")

    classifications = config.get("classifications")
    if classifications is not None and not isinstance(classifications, dict):
        errors.append(f"classifications: expected dict, got {type(classifications).__name__}")

    if raise_on_error and errors:
        raise ConfigValidationError("; ".join(errors))

    return {"valid": not errors, "errors": errors, "warnings": warnings}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """
    Recursively merge override into base (in-place).

    Nested dicts are merged key by key; everything else is deep-copied over.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def load_config(
    experiment_dir: Union[str, Path],
    config_filename: str = "config.json",
) -> Dict[str, Any]:
    """
    Load configuration from an experiment directory, merged over DEFAULT_CONFIG.

    A missing file yields the defaults; an unreadable file is logged and ignored.
    """
    config_path = Path(experiment_dir) / config_filename
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                file_config = json.load(f)
            _deep_merge(config, file_config)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Could not load config from {config_path}: {e}")

    return config


def save_config(
    experiment_dir: Union[str, Path],
    config: Dict[str, Any],
    config_filename: str = "config.json",
) -> Path:
    """Save a configuration dict as JSON; returns the written path."""
    experiment_dir = Path(experiment_dir)
    experiment_dir.mkdir(parents=True, exist_ok=True)
    config_path = experiment_dir / config_filename
    with open(config_path, 'w') as f:
        json.dump(config, f, cls=_NumpyEncoder, indent=2)
    return config_path


@dataclass
class DetectionOptions:
    """
    All parameters of a detection run.

    Attributes:
        threshold: Minimum probability for a pixel to produce a nucleus
        tile_width, tile_height: Tile size (in pixels at the detection
            resolution) including padding on both sides
        padding: Halo in pixels added on every side of each tile
        pixel_size: Resolution to detect at, in the source's calibrated units;
            None for full resolution
        layout: Axes of the tensor expected by the backend; None uses the
            backend's own layout
        channels: 0-based channel indices to feed to the model
        channel_transforms: Extra channel ops (e.g. color deconvolution),
            applied after channel extraction and before normalization
        global_normalization: Whole-image normalization, or None
        preprocessing: Ordered per-tile operations
        n_classes: Number of classification channels in a combined output
            tensor; defaults to ``len(classifications)``
        classifications: Map of predicted class index to label
        global_class: Label for objects without a mapped classification
        keep_classified_background: Keep objects predicted as class 0
        simplify_distance: Visvalingam-Whyatt tolerance; <= 0 disables
        cell_expansion: Nucleus-to-cell expansion distance in calibrated
            units (pixels if the source is uncalibrated); 0 disables
        cell_constrain_scale: Cap cells at this multiple of the nucleus size
        ignore_cell_overlaps: Skip resolving overlaps between cells
        constrain_to_parent: Clip nuclei/cells to the ROI mask
        include_probability: Add the probability as a measurement
        measure_shape: Add shape measurements
        measure_intensity: Intensity statistics to measure
        compartments: Compartments for intensity measurements
        n_threads: Worker count; <= 0 means unrestricted, 1 runs serially
        do_log: Log progress at INFO rather than DEBUG
        show_progress: Show a tqdm progress bar over tiles
    """
    threshold: float = 0.5
    tile_width: int = DEFAULT_TILE_SIZE
    tile_height: int = DEFAULT_TILE_SIZE
    padding: int = 32
    pixel_size: Optional[float] = None
    layout: Optional[str] = None

    channels: Optional[Sequence[int]] = None
    channel_transforms: List[Any] = field(default_factory=list)
    global_normalization: Optional[Any] = None
    preprocessing: List[Any] = field(default_factory=list)

    n_classes: Optional[int] = None
    classifications: Optional[Dict[int, str]] = None
    global_class: Optional[str] = None
    keep_classified_background: bool = False

    simplify_distance: float = 1.4
    cell_expansion: float = 0.0
    cell_constrain_scale: Optional[float] = None
    ignore_cell_overlaps: bool = False
    constrain_to_parent: bool = True

    include_probability: bool = False
    measure_shape: bool = False
    measure_intensity: List[str] = field(default_factory=list)
    compartments: List[str] = field(default_factory=lambda: list(COMPARTMENTS))

    n_threads: int = -1
    do_log: bool = False
    show_progress: bool = False

    def __post_init__(self):
        validate_config(self.to_config(), raise_on_error=True)

    @property
    def tile_size(self) -> Tuple[int, int]:
        return self.tile_width, self.tile_height

    @property
    def n_classification_channels(self) -> int:
        if self.n_classes is not None:
            return self.n_classes
        return len(self.classifications) if self.classifications else 0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'DetectionOptions':
        """
        Build options from a config dict (e.g. from ``load_config``).

        ``preprocessing`` and ``channel_transforms`` are lists of
        ``{"op": tag, ...}`` dicts; ``global_normalization`` is a dict of
        GlobalNormalization fields; ``tile_size`` sets width and height.
        JSON string keys of ``classifications`` are converted to int.
        """
        # Local imports: preprocessing depends on utils
        from stardist_seg.preprocessing.normalization import GlobalNormalization
        from stardist_seg.preprocessing.ops import ops_from_config

        config = dict(config)
        tile_size = config.pop("tile_size", None)
        if tile_size is not None:
            config["tile_width"] = config["tile_height"] = int(tile_size)

        known = set(DEFAULT_CONFIG)
        unknown = set(config) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")

        kwargs = {k: v for k, v in config.items() if k in known}
        kwargs["preprocessing"] = ops_from_config(kwargs.get("preprocessing"))
        kwargs["channel_transforms"] = ops_from_config(kwargs.get("channel_transforms"))

        norm = kwargs.get("global_normalization")
        if isinstance(norm, dict):
            kwargs["global_normalization"] = GlobalNormalization.from_dict(norm)

        classifications = kwargs.get("classifications")
        if classifications:
            kwargs["classifications"] = {int(k): v for k, v in classifications.items()}

        return cls(**kwargs)

    def to_config(self) -> Dict[str, Any]:
        """Serializable dict view (inverse of ``from_config``)."""
        def _op_dict(op):
            return op.to_dict() if hasattr(op, "to_dict") else op

        norm = self.global_normalization
        return {
            "threshold": self.threshold,
            "tile_width": self.tile_width,
            "tile_height": self.tile_height,
            "padding": self.padding,
            "pixel_size": self.pixel_size,
            "layout": self.layout,
            "channels": list(self.channels) if self.channels is not None else None,
            "channel_transforms": [_op_dict(op) for op in self.channel_transforms],
            "global_normalization": norm.to_dict() if hasattr(norm, "to_dict") else norm,
            "preprocessing": [_op_dict(op) for op in self.preprocessing],
            "n_classes": self.n_classes,
            "classifications": dict(self.classifications) if self.classifications else None,
            "global_class": self.global_class,
            "keep_classified_background": self.keep_classified_background,
            "simplify_distance": self.simplify_distance,
            "cell_expansion": self.cell_expansion,
            "cell_constrain_scale": self.cell_constrain_scale,
            "ignore_cell_overlaps": self.ignore_cell_overlaps,
            "constrain_to_parent": self.constrain_to_parent,
            "include_probability": self.include_probability,
            "measure_shape": self.measure_shape,
            "measure_intensity": list(self.measure_intensity),
            "compartments": list(self.compartments),
            "n_threads": self.n_threads,
            "do_log": self.do_log,
            "show_progress": self.show_progress,
        }
