"""
Prediction backends and the inference adapter.

Provides:
- PredictionBackend contract, CallableBackend and TorchBackend
- InferenceAdapter: padding, tensor layouts, output splitting
"""

from .backend import CallableBackend, PredictionBackend
from .torch_backend import TorchBackend
from .adapter import InferenceAdapter, Padding, RawPrediction

__all__ = [
    'PredictionBackend',
    'CallableBackend',
    'TorchBackend',
    'InferenceAdapter',
    'Padding',
    'RawPrediction',
]
