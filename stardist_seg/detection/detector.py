"""
StarDist nucleus detection over large images.

Pipeline: plan tiles -> (per tile, in parallel) preprocess, predict, decode
and deduplicate -> pool and deduplicate across tiles -> simplify, expand to
cells, label -> measure.

Usage:
    from stardist_seg import ArrayImageSource, DetectionOptions, StarDistDetector
    from stardist_seg.preprocessing.ops import NormalizePercentile

    options = DetectionOptions(threshold=0.5, pixel_size=0.5, cell_expansion=5.0,
                               preprocessing=[NormalizePercentile(1, 99.8)])
    with StarDistDetector(backend, options) as detector:
        objects = detector.detect(ArrayImageSource(image, pixel_size=0.25))
"""

import logging
import math
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

from shapely.geometry.base import BaseGeometry

from stardist_seg.detection.assembler import FinalObject, ResultAssembler
from stardist_seg.detection.measurements import ObjectMeasurer
from stardist_seg.detection.nuclei import NucleusArena
from stardist_seg.errors import StarDistSegError
from stardist_seg.models.adapter import InferenceAdapter
from stardist_seg.models.backend import PredictionBackend
from stardist_seg.preprocessing.ops import EnsureType, ExtractChannels, ImageOp
from stardist_seg.processing.deduplication import ResolveStats, resolve_overlaps
from stardist_seg.processing.memory import check_worker_memory, log_memory_status
from stardist_seg.processing.tile_processing import TileContext, run_tiles
from stardist_seg.processing.tiling import plan_tiles
from stardist_seg.utils.config import DetectionOptions
from stardist_seg.utils.logging import ProcessingTimer, ProgressLog, get_logger, log_parameters

logger = get_logger(__name__)

Rect = Tuple[int, int, int, int]


class StarDistDetector:
    """
    Detects nuclei (and optionally cells) with a StarDist-style model.

    The detector owns its backend: call ``close()`` (or use it as a context
    manager) once no further detections will be run.

    Args:
        backend: Prediction backend
        options: Detection options (defaults if None)
    """

    def __init__(self, backend: PredictionBackend, options: Optional[DetectionOptions] = None):
        self.backend = backend
        self.options = options or DetectionOptions()
        self.adapter = InferenceAdapter(backend, layout=self.options.layout,
                                        n_classes=self.options.n_classification_channels)
        self._log = ProgressLog(logger, verbose=self.options.do_log)
        self._closed = False

    def __repr__(self) -> str:
        return f"StarDistDetector(backend={self.backend!r}, closed={self._closed})"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def close(self) -> None:
        """Release backend resources. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.backend.close()
        logger.debug("Detector closed")

    def detection_downsample(self, source) -> float:
        """Downsample at which tiles are read, from the requested pixel size."""
        requested = self.options.pixel_size
        if requested is None:
            return 1.0
        if not source.pixel_size:
            logger.warning(f"Pixel size {requested} requested but the image is uncalibrated; "
                           f"using full resolution")
            return 1.0
        return requested / source.pixel_size

    def expansion_pixels(self, source) -> float:
        """Cell expansion converted to full-resolution pixels."""
        if self.options.cell_expansion <= 0:
            return 0.0
        if source.pixel_size:
            return self.options.cell_expansion / source.pixel_size
        return self.options.cell_expansion

    def channel_ops(self) -> List[ImageOp]:
        ops: List[ImageOp] = []
        if self.options.channels is not None:
            ops.append(ExtractChannels(tuple(int(c) for c in self.options.channels)))
        ops.extend(self.options.channel_transforms)
        return ops

    def build_ops(self, source, bounds: Optional[Rect] = None) -> List[ImageOp]:
        """Full per-tile chain: channels, global normalization, preprocessing."""
        channel_ops = self.channel_ops()
        ops: List[ImageOp] = [EnsureType('float32'), *channel_ops]
        if self.options.global_normalization is not None:
            with ProcessingTimer(logger, "Global normalization", level=self._log.level):
                ops.extend(self.options.global_normalization.create_ops(source, channel_ops, bounds))
        ops.extend(self.options.preprocessing)
        if len(ops) > 1:
            ops.append(EnsureType('float32'))
        return ops

    def _assembler(self, source, mask: Optional[BaseGeometry]) -> ResultAssembler:
        opts = self.options
        return ResultAssembler(
            simplify_distance=opts.simplify_distance,
            cell_expansion=self.expansion_pixels(source),
            cell_constrain_scale=opts.cell_constrain_scale,
            mask=mask if opts.constrain_to_parent else None,
            classifications=opts.classifications,
            global_class=opts.global_class,
            include_probability=opts.include_probability,
        )

    def _measurer(self, source, downsample: float) -> ObjectMeasurer:
        opts = self.options
        return ObjectMeasurer(
            source=source,
            downsample=downsample,
            pixel_size=source.pixel_size,
            measure_shape=opts.measure_shape,
            statistics=opts.measure_intensity,
            compartments=opts.compartments,
            channel_ops=opts.channel_transforms,
        )

    def _create_executor(self, n_channels: int) -> Optional[Executor]:
        n_threads = self.options.n_threads
        if n_threads == 1:
            return None
        check_worker_memory(n_threads, self.options.tile_width, self.options.tile_height, n_channels)
        return ThreadPoolExecutor(max_workers=n_threads if n_threads > 0 else None,
                                  thread_name_prefix="stardist")

    def detect(
        self,
        source,
        region: Optional[Rect] = None,
        mask: Optional[BaseGeometry] = None,
        executor: Optional[Executor] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[FinalObject]:
        """
        Detect nuclei in a region of an image.

        Args:
            source: ImageSource to read from
            region: (x, y, width, height) in full-resolution pixels; defaults
                to the mask bounds or the whole image
            mask: Optional ROI geometry; only nuclei with a centroid inside
                are kept, and (with ``constrain_to_parent``) geometries are
                clipped to it
            executor: Executor for tiles, conversion and measurements. If
                None, one is created from ``options.n_threads`` (1 runs
                everything in the calling thread).
            cancel_event: Set from another thread to cancel; a cancelled run
                returns an empty list

        Returns:
            Final objects in descending probability order
        """
        if self._closed:
            raise StarDistSegError("Detector has been closed")
        if cancel_event is None:
            cancel_event = threading.Event()

        opts = self.options
        downsample = self.detection_downsample(source)
        tiles = plan_tiles(source.width, source.height, downsample,
                           opts.tile_width, opts.tile_height, opts.padding,
                           bounds=region, mask=mask)
        if not tiles:
            self._log("No tiles to process")
            return []

        log_parameters(logger, {
            'source': source,
            'region': region,
            'mask': mask,
            'downsample': round(downsample, 4),
            'tiles': len(tiles),
            'threshold': opts.threshold,
            'cell_expansion_px': round(self.expansion_pixels(source), 3),
        }, title="StarDist detection", level=logging.DEBUG)
        log_memory_status("Before detection", level=logging.DEBUG)

        norm_bounds = region
        if norm_bounds is None and mask is not None:
            minx, miny, maxx, maxy = mask.bounds
            x, y = int(math.floor(minx)), int(math.floor(miny))
            norm_bounds = (x, y, int(math.ceil(maxx)) - x, int(math.ceil(maxy)) - y)

        own_executor = None
        if executor is None:
            executor = own_executor = self._create_executor(source.n_channels)
        try:
            noun = "cells" if opts.cell_expansion > 0 else "nuclei"
            with ProcessingTimer(logger, "StarDist detection", level=self._log.level,
                                 noun=noun) as timer:
                objects = self._detect(source, tiles, downsample, norm_bounds, mask,
                                       executor, cancel_event)
                timer.count = len(objects)
            return objects
        except KeyboardInterrupt:
            cancel_event.set()
            logger.warning("Detection interrupted; no results returned")
            return []
        finally:
            if own_executor is not None:
                own_executor.shutdown(wait=True, cancel_futures=True)

    def _detect(self, source, tiles, downsample, norm_bounds, mask, executor,
                cancel_event) -> List[FinalObject]:
        opts = self.options
        context = TileContext(
            source=source,
            adapter=self.adapter,
            ops=self.build_ops(source, norm_bounds),
            threshold=opts.threshold,
            multi_tile=len(tiles) > 1,
            keep_classified_background=opts.keep_classified_background,
            n_classifications=len(opts.classifications) if opts.classifications else 0,
            cancel_event=cancel_event,
        )

        if len(tiles) > 1:
            self._log(f"Detecting nuclei for {len(tiles)} tiles")
        else:
            self._log("Detecting nuclei")
        arenas = run_tiles(tiles, context, executor, show_progress=opts.show_progress)
        if cancel_event.is_set():
            return []

        nuclei = NucleusArena.concatenate(arenas)
        if len(tiles) > 1:
            self._log("Resolving nucleus overlaps")
            stats = ResolveStats()
            nuclei = resolve_overlaps(nuclei, stats)
            logger.debug(f"Kept {stats.n_accepted} of {stats.n_input} nuclei "
                         f"({stats.n_trimmed} trimmed)")
        if cancel_event.is_set():
            return []

        assembler = self._assembler(source, mask)
        if assembler.cell_expansion > 0 and not opts.ignore_cell_overlaps:
            self._log("Resolving cell overlaps")
        objects = assembler.assemble(nuclei, executor,
                                     resolve_cell_overlaps=not opts.ignore_cell_overlaps)

        measurer = self._measurer(source, downsample)
        if measurer.is_active and objects:
            self._log("Making measurements")
            objects = measurer.measure_all(objects, executor)
        if cancel_event.is_set():
            return []

        return objects

    def detect_regions(
        self,
        source,
        masks: Sequence[BaseGeometry],
        executor: Optional[Executor] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[List[FinalObject]]:
        """
        Run ``detect`` once per ROI geometry, sharing one executor.

        Returns:
            One result list per mask; all empty if cancelled
        """
        if cancel_event is None:
            cancel_event = threading.Event()
        own_executor = None
        if executor is None:
            executor = own_executor = self._create_executor(source.n_channels)
        results = []
        try:
            for i, mask in enumerate(masks):
                self._log(f"Detecting in region {i + 1}/{len(masks)}")
                results.append(self.detect(source, mask=mask, executor=executor,
                                           cancel_event=cancel_event))
                if cancel_event.is_set():
                    return [[] for _ in masks]
        finally:
            if own_executor is not None:
                own_executor.shutdown(wait=True, cancel_futures=True)
        return results


def detect(
    backend: PredictionBackend,
    source,
    region: Optional[Rect] = None,
    mask: Optional[BaseGeometry] = None,
    options: Optional[DetectionOptions] = None,
    executor: Optional[Executor] = None,
    cancel_event: Optional[threading.Event] = None,
    close: bool = False,
) -> List[FinalObject]:
    """
    One-call detection.

    Args:
        close: Release the backend afterwards
    """
    detector = StarDistDetector(backend, options)
    try:
        return detector.detect(source, region=region, mask=mask,
                               executor=executor, cancel_event=cancel_event)
    finally:
        if close:
            detector.close()


__all__ = ['StarDistDetector', 'detect']
