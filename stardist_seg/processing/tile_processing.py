"""
Per-tile detection: read -> preprocess -> predict -> decode -> deduplicate.

Tiles are independent. The only shared state is the read-only inference
adapter, a cancellation event and a one-shot diagnostic latch; results are
returned in tile order so pooling is deterministic regardless of the order
in which tiles complete.

Usage:
    context = TileContext(source, adapter, ops, threshold=0.5, multi_tile=True)
    arenas = run_tiles(tiles, context, executor=pool, show_progress=True)
"""

import threading
from concurrent.futures import Executor, as_completed
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from tqdm import tqdm

from stardist_seg.detection.nuclei import NucleusArena, decode_nuclei, exclude_on_bounds
from stardist_seg.errors import TileProcessingError
from stardist_seg.models.adapter import InferenceAdapter, check_classification_count
from stardist_seg.preprocessing.ops import ImageOp, apply_ops
from stardist_seg.processing.deduplication import resolve_overlaps
from stardist_seg.processing.tiling import Tile
from stardist_seg.utils.logging import get_logger

logger = get_logger(__name__)


class DiagnosticLatch:
    """One-shot flag for diagnostics that should be reported once per run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._armed = True

    def consume(self) -> bool:
        """True for the first caller only."""
        with self._lock:
            armed, self._armed = self._armed, False
            return armed


@dataclass
class TileContext:
    """
    Everything a tile worker needs.

    Attributes:
        source: ImageSource to read from
        adapter: Inference adapter (backend calls serialized if needed)
        ops: Full preprocessing chain applied to each tile
        threshold: Minimum probability
        multi_tile: Whether other tiles exist (enables exclude-on-bounds)
        keep_classified_background: Keep class-0 candidates
        n_classifications: Configured classification count (0 if none)
        cancel_event: Set to stop processing
        first_run: Latch for first-tile diagnostics
    """
    source: object
    adapter: InferenceAdapter
    ops: Sequence[ImageOp] = ()
    threshold: float = 0.5
    multi_tile: bool = False
    keep_classified_background: bool = False
    n_classifications: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event)
    first_run: DiagnosticLatch = field(default_factory=DiagnosticLatch)


def process_tile(tile: Tile, context: TileContext) -> NucleusArena:
    """
    Detect and deduplicate nuclei within one tile.

    Raises:
        TileProcessingError: if the prediction is unusable for this tile
    """
    if context.cancel_event.is_set():
        return NucleusArena()

    px, py, pw, ph = tile.padded
    image = context.source.read_region(px, py, pw, ph, tile.downsample)
    image = apply_ops(image, context.ops)

    prediction, padding = context.adapter.predict(image)
    if context.cancel_event.is_set():
        return NucleusArena()

    if context.first_run.consume() and context.n_classifications > 0:
        check_classification_count(context.n_classifications, prediction)

    arena = decode_nuclei(
        prediction,
        threshold=context.threshold,
        downsample=tile.downsample,
        origin_x=px - tile.downsample * padding.x1,
        origin_y=py - tile.downsample * padding.y1,
        mask=tile.mask,
        keep_classified_background=context.keep_classified_background,
    )

    if context.multi_tile:
        # Image edges have no neighbor to produce the full nucleus
        max_x = tile.padded_max_x if tile.padded_max_x < context.source.width else None
        max_y = tile.padded_max_y if tile.padded_max_y < context.source.height else None
        arena = exclude_on_bounds(arena, max_x, max_y)

    return resolve_overlaps(arena)


def _run_tile(tile: Tile, context: TileContext) -> NucleusArena:
    if context.cancel_event.is_set():
        return NucleusArena()
    try:
        return process_tile(tile, context)
    except TileProcessingError as e:
        logger.error(f"Tile {tile.index} at {tile.core} failed: {e}")
    except OSError as e:
        logger.error(f"Could not read tile {tile.index} at {tile.padded}: {e}")
    return NucleusArena()


def run_tiles(
    tiles: Sequence[Tile],
    context: TileContext,
    executor: Optional[Executor] = None,
    show_progress: bool = False,
) -> List[NucleusArena]:
    """
    Process all tiles, serially or on an executor.

    On any exception (including KeyboardInterrupt) the cancel event is set
    and pending tiles are cancelled before re-raising.

    Returns:
        One arena per tile, in tile order
    """
    results: List[NucleusArena] = [NucleusArena() for _ in tiles]
    if not tiles:
        return results

    if executor is None:
        try:
            for i, tile in enumerate(tqdm(tiles, desc="Detecting nuclei", disable=not show_progress)):
                if context.cancel_event.is_set():
                    break
                results[i] = _run_tile(tile, context)
        except BaseException:
            context.cancel_event.set()
            raise
        return results

    futures = {executor.submit(_run_tile, tile, context): i for i, tile in enumerate(tiles)}
    try:
        for future in tqdm(as_completed(futures), total=len(futures),
                           desc="Detecting nuclei", disable=not show_progress):
            results[futures[future]] = future.result()
    except BaseException:
        context.cancel_event.set()
        for future in futures:
            future.cancel()
        raise
    return results


__all__ = ['DiagnosticLatch', 'TileContext', 'process_tile', 'run_tiles']
