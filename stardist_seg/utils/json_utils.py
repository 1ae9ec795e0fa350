"""
JSON conversion for detection results.

Results mix numpy scalars and arrays, shapely geometries, read-only
measurement mappings and NaN measurements (e.g. an empty cytoplasm).
Everything is converted to plain JSON types, with NaN/Inf written as null
so that files stay strict JSON.
"""

import json
import math
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

import numpy as np
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry


def _finite_or_none(value: float):
    return None if (math.isnan(value) or math.isinf(value)) else value


def _to_native(obj):
    """Single-level conversion of non-JSON types; returns ``obj`` if unknown."""
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return _finite_or_none(float(obj))
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, BaseGeometry):
        return mapping(obj)
    if isinstance(obj, Mapping) and not isinstance(obj, dict):
        return dict(obj)
    return obj


class NumpyEncoder(json.JSONEncoder):
    """Encoder for numpy types, geometries and read-only mappings.

    Usage::

        json.dump(data, f, cls=NumpyEncoder)
    """

    def default(self, obj):
        native = _to_native(obj)
        if native is obj:
            return super().default(obj)
        return native


def sanitize_for_json(obj):
    """Recursively convert to JSON types, replacing NaN/Inf with None.

    Plain ``float('nan')`` never reaches ``JSONEncoder.default`` (it is
    written as the non-standard ``NaN`` token), so the structure is walked.
    """
    obj = _to_native(obj)
    if isinstance(obj, dict):
        return {k: sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [sanitize_for_json(v) for v in obj]
    if isinstance(obj, float):
        return _finite_or_none(obj)
    return obj


def atomic_json_dump(data, filepath, indent=None, sanitize=True):
    """Write JSON via a temp file in the target directory and ``os.replace``.

    The target either holds the complete new document or is left as it was.
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    if sanitize:
        data = sanitize_for_json(data)

    fd, tmp_path = tempfile.mkstemp(dir=filepath.parent, prefix=f".{filepath.name}.", suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, cls=NumpyEncoder, indent=indent, allow_nan=False)
        os.replace(tmp_path, filepath)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


__all__ = ['NumpyEncoder', 'sanitize_for_json', 'atomic_json_dump']
