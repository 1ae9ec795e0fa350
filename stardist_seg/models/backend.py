"""
Prediction backends.

A backend is a black box mapping named input tensors to named output
tensors. The detector never inspects the model itself; it only relies on
the contract below:

- ``predict({input_name: tensor}) -> {output_name: tensor}``
- ``layout`` names the axes of input and output tensors
  ('yxc', 'byxc', 'cyx' or 'bcyx')
- ``thread_safe`` is False unless concurrent ``predict`` calls are known to
  be safe; calls into unsafe backends are serialized by the caller
- ``close()`` releases held resources (e.g. accelerator memory)
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Union

import numpy as np

from stardist_seg.errors import BackendError
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

LAYOUTS = ('yxc', 'byxc', 'cyx', 'bcyx')

DEFAULT_INPUT_NAME = 'input'
DEFAULT_OUTPUT_NAME = 'output'


class PredictionBackend(ABC):
    """Base class for prediction backends."""

    input_name: str = DEFAULT_INPUT_NAME
    layout: str = 'byxc'
    thread_safe: bool = False

    @abstractmethod
    def predict(self, inputs: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """Run the model on named input tensors."""

    def close(self) -> None:
        """Release resources. The backend must not be used afterwards."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class CallableBackend(PredictionBackend):
    """
    Backend wrapping a plain function.

    The function receives the input tensor and returns either one array or
    a dict of named arrays.

    Args:
        fn: Prediction function
        layout: Axes of the input and output tensors
        thread_safe: Whether ``fn`` may be called concurrently
        input_name: Name under which the input is passed
    """

    def __init__(
        self,
        fn: Callable[[np.ndarray], Union[np.ndarray, Dict[str, np.ndarray]]],
        layout: str = 'yxc',
        thread_safe: bool = False,
        input_name: str = DEFAULT_INPUT_NAME,
    ):
        if layout not in LAYOUTS:
            raise ValueError(f"Unknown layout {layout!r}; expected one of {LAYOUTS}")
        self.fn = fn
        self.layout = layout
        self.thread_safe = thread_safe
        self.input_name = input_name

    def predict(self, inputs: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        if self.fn is None:
            raise BackendError("Backend has been closed")
        result = self.fn(inputs[self.input_name])
        if isinstance(result, dict):
            return {name: np.asarray(value) for name, value in result.items()}
        return {DEFAULT_OUTPUT_NAME: np.asarray(result)}

    def close(self) -> None:
        self.fn = None

    def __repr__(self) -> str:
        return f"CallableBackend(layout={self.layout!r}, thread_safe={self.thread_safe})"


__all__ = [
    'LAYOUTS',
    'DEFAULT_INPUT_NAME',
    'DEFAULT_OUTPUT_NAME',
    'PredictionBackend',
    'CallableBackend',
]
