"""
PyTorch prediction backend.

Wraps an already constructed ``torch.nn.Module`` whose forward pass takes a
(b, c, y, x) float tensor and returns a tensor, a tuple/list of tensors or a
dict of tensors. Loading the model is left to the caller.

Usage:
    from stardist_seg.models.torch_backend import TorchBackend

    backend = TorchBackend(model, device='cuda')
    with StarDistDetector(backend, options) as detector:
        objects = detector.detect(source)
"""

import gc
import threading
from typing import Dict, Optional, Union

import numpy as np
import torch

from stardist_seg.errors import BackendError
from stardist_seg.models.backend import DEFAULT_INPUT_NAME, DEFAULT_OUTPUT_NAME, PredictionBackend
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)


def get_device(device: Optional[Union[str, torch.device]] = None) -> torch.device:
    """Resolve a device, defaulting to CUDA when available."""
    if device is None:
        device = "cuda" if torch.cuda.is_available() else "cpu"
    return torch.device(device)


class TorchBackend(PredictionBackend):
    """
    Backend running a torch module in inference mode.

    Tensors are exchanged in 'bcyx' layout. CUDA execution is serialized
    (``thread_safe`` is False); CPU modules may declare otherwise.

    Args:
        module: Model to run; switched to eval mode
        device: Device to run on (default: CUDA if available)
        output_names: Names given to tuple/list outputs, in order
        thread_safe: Override for concurrent use
    """

    layout = 'bcyx'

    def __init__(
        self,
        module: torch.nn.Module,
        device: Optional[Union[str, torch.device]] = None,
        output_names: Optional[list] = None,
        thread_safe: Optional[bool] = None,
        input_name: str = DEFAULT_INPUT_NAME,
    ):
        self.device = get_device(device)
        self.module = module.to(self.device).eval()
        self.output_names = list(output_names) if output_names else None
        self.input_name = input_name
        if thread_safe is None:
            thread_safe = self.device.type == 'cpu'
        self.thread_safe = thread_safe
        self._close_lock = threading.Lock()
        logger.info(f"TorchBackend on {self.device} (thread_safe={self.thread_safe})")

    def _to_numpy(self, tensor) -> np.ndarray:
        return tensor.detach().float().cpu().numpy()

    def predict(self, inputs: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        if self.module is None:
            raise BackendError("Backend has been closed")
        x = torch.from_numpy(np.ascontiguousarray(inputs[self.input_name], dtype=np.float32))
        with torch.no_grad():
            output = self.module(x.to(self.device))

        if isinstance(output, torch.Tensor):
            return {DEFAULT_OUTPUT_NAME: self._to_numpy(output)}
        if isinstance(output, dict):
            return {name: self._to_numpy(t) for name, t in output.items()}
        if isinstance(output, (tuple, list)):
            names = self.output_names or [f"{DEFAULT_OUTPUT_NAME}{i}" for i in range(len(output))]
            if len(names) != len(output):
                raise BackendError(
                    f"Model returned {len(output)} outputs but {len(names)} names were given"
                )
            return {name: self._to_numpy(t) for name, t in zip(names, output)}
        raise BackendError(f"Unsupported model output type: {type(output).__name__}")

    def close(self) -> None:
        """Drop the module and free GPU memory."""
        with self._close_lock:
            if self.module is None:
                return
            logger.info("Releasing TorchBackend resources...")
            self.module = None
            gc.collect()
            if torch.cuda.is_available():
                torch.cuda.empty_cache()

    def __repr__(self) -> str:
        state = "closed" if self.module is None else type(self.module).__name__
        return f"TorchBackend({state}, device={self.device})"


__all__ = ['TorchBackend', 'get_device']
