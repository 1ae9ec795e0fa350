"""
Tile scheduling and processing.

Provides:
- Tile planning over a region/mask
- Per-tile detection with cancellation and executor dispatch
- Polygon non-maximum suppression
- Memory monitoring
"""

from .tiling import Tile, plan_tiles
from .deduplication import ResolveStats, resolve_overlaps
from .tile_processing import DiagnosticLatch, TileContext, process_tile, run_tiles
from .memory import check_worker_memory, get_memory_usage, log_memory_status

__all__ = [
    'Tile',
    'plan_tiles',
    'ResolveStats',
    'resolve_overlaps',
    'DiagnosticLatch',
    'TileContext',
    'process_tile',
    'run_tiles',
    'check_worker_memory',
    'get_memory_usage',
    'log_memory_status',
]
