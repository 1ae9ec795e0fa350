"""
Tile preprocessing: elementary image operations and whole-image normalization.
"""

from .ops import (
    ImageOp,
    EnsureType,
    ExtractChannels,
    ColorDeconvolve,
    Add,
    Subtract,
    Multiply,
    Divide,
    Clip,
    NormalizePercentile,
    NormalizeZeroMeanUnitVariance,
    Sigmoid,
    Threshold,
    GaussianFilter,
    MedianFilter,
    apply_ops,
    op_from_dict,
    ops_from_config,
    list_ops,
)
from .normalization import GlobalNormalization

__all__ = [
    'ImageOp',
    'EnsureType',
    'ExtractChannels',
    'ColorDeconvolve',
    'Add',
    'Subtract',
    'Multiply',
    'Divide',
    'Clip',
    'NormalizePercentile',
    'NormalizeZeroMeanUnitVariance',
    'Sigmoid',
    'Threshold',
    'GaussianFilter',
    'MedianFilter',
    'apply_ops',
    'op_from_dict',
    'ops_from_config',
    'list_ops',
    'GlobalNormalization',
]
