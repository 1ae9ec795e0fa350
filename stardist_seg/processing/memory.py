"""
Memory monitoring utilities.

Reports RAM/GPU usage around detection runs and warns when the requested
number of concurrent tiles is unlikely to fit in available RAM.

Usage:
    from stardist_seg.processing.memory import check_worker_memory, log_memory_status

    log_memory_status("Before detection")
    check_worker_memory(n_workers=16, tile_width=1024, tile_height=1024, n_channels=3)
"""

import logging
import os
from typing import Dict

import psutil
import torch

from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)

# Rough multiple of the raw float32 tile size held per worker
# (input, padded tensor, prediction rasters, candidate polygons)
_TILE_MEMORY_FACTOR = 12


def estimate_tile_memory_gb(tile_width: int, tile_height: int, n_channels: int,
                            n_rays: int = 32) -> float:
    """Approximate peak memory (GB) of processing one tile."""
    pixels = tile_width * tile_height
    raw = pixels * (n_channels + n_rays + 1) * 4
    return raw * _TILE_MEMORY_FACTOR / (1024**3)


def check_worker_memory(
    n_workers: int,
    tile_width: int,
    tile_height: int,
    n_channels: int = 3,
) -> bool:
    """
    Warn if ``n_workers`` concurrent tiles may not fit in available RAM.

    Args:
        n_workers: Number of concurrent tile workers; <= 0 means one per CPU
        tile_width, tile_height: Padded tile size in pixels
        n_channels: Channels per tile

    Returns:
        True if the estimate fits
    """
    if n_workers <= 0:
        n_workers = os.cpu_count() or 1

    available_gb = psutil.virtual_memory().available / (1024**3)
    needed_gb = n_workers * estimate_tile_memory_gb(tile_width, tile_height, n_channels)
    if needed_gb > available_gb:
        logger.warning(
            f"{n_workers} workers may need ~{needed_gb:.1f} GB for tiles of "
            f"{tile_width}x{tile_height} but only {available_gb:.1f} GB RAM is available; "
            f"consider fewer threads or smaller tiles"
        )
        return False
    return True


def get_memory_usage() -> Dict[str, float]:
    """
    Get current memory usage statistics.

    Returns:
        Dict with RAM and (if CUDA is available) aggregate GPU memory info
    """
    mem = psutil.virtual_memory()
    result = {
        'ram_available_gb': mem.available / (1024**3),
        'ram_total_gb': mem.total / (1024**3),
        'ram_used_percent': mem.percent,
    }

    if torch.cuda.is_available():
        gpu_total = 0.0
        gpu_reserved = 0.0
        for gpu_id in range(torch.cuda.device_count()):
            gpu_total += torch.cuda.get_device_properties(gpu_id).total_memory / (1024**3)
            gpu_reserved += torch.cuda.memory_reserved(gpu_id) / (1024**3)
        result['gpu_total_gb'] = gpu_total
        result['gpu_reserved_gb'] = gpu_reserved
        result['gpu_available_gb'] = gpu_total - gpu_reserved

    return result


def log_memory_status(prefix: str = "", level: int = logging.INFO) -> None:
    """
    Log current memory usage.

    Args:
        prefix: Optional prefix for log message
        level: Logging level
    """
    usage = get_memory_usage()
    msg_parts = [
        f"RAM: {usage['ram_available_gb']:.1f}/{usage['ram_total_gb']:.1f} GB available"
    ]

    if 'gpu_available_gb' in usage:
        msg_parts.append(
            f"GPU: {usage['gpu_available_gb']:.1f}/{usage['gpu_total_gb']:.1f} GB available"
        )

    msg = " | ".join(msg_parts)
    if prefix:
        msg = f"{prefix}: {msg}"

    logger.log(level, msg)


__all__ = [
    'estimate_tile_memory_gb',
    'check_worker_memory',
    'get_memory_usage',
    'log_memory_status',
]
