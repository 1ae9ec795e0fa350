"""
End-to-end tests for StarDistDetector with a synthetic star-distance model.

The conftest backend turns bright disks into probability and ray rasters,
so each disk should come back as exactly one nucleus.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
from shapely.geometry import box

from conftest import DISK_CENTERS, DISK_RADIUS, draw_disks, star_model_predict
from stardist_seg import (
    ArrayImageSource,
    CallableBackend,
    DetectionOptions,
    StarDistDetector,
    StarDistSegError,
    detect,
)
from stardist_seg.detection.assembler import PROBABILITY_MEASUREMENT


def single_tile_options(**kwargs):
    params = dict(tile_width=256, tile_height=256, padding=16, n_threads=1)
    params.update(kwargs)
    return DetectionOptions(**params)


def two_tile_options(**kwargs):
    # Cores x in [0, 96) and [96, 192); the disk at x=96 straddles the seam
    params = dict(tile_width=128, tile_height=256, padding=16, n_threads=1)
    params.update(kwargs)
    return DetectionOptions(**params)


def centroids(objects):
    return sorted((round(o.nucleus.centroid.x, 1), round(o.nucleus.centroid.y, 1))
                  for o in objects)


def match_disks(objects, tolerance=3.0):
    """Each disk center matched by exactly one nucleus centroid."""
    found = [(o.nucleus.centroid.x, o.nucleus.centroid.y) for o in objects]
    for cx, cy in DISK_CENTERS:
        hits = [p for p in found if np.hypot(p[0] - cx, p[1] - cy) <= tolerance]
        assert len(hits) == 1, f"disk at ({cx}, {cy}) matched {len(hits)} nuclei"


class TestSingleTile:

    def test_finds_every_disk(self, disk_image, star_backend):
        with StarDistDetector(star_backend, single_tile_options()) as detector:
            objects = detector.detect(ArrayImageSource(disk_image))

        assert len(objects) == len(DISK_CENTERS)
        match_disks(objects)
        for obj in objects:
            assert obj.probability >= 0.5
            assert not obj.is_cell
            assert obj.nucleus.is_valid
            assert obj.nucleus.area == pytest.approx(np.pi * DISK_RADIUS ** 2, rel=0.5)

    def test_objects_sorted_by_probability(self, disk_image, star_backend):
        objects = detect(star_backend, ArrayImageSource(disk_image),
                         options=single_tile_options())
        probabilities = [o.probability for o in objects]
        assert probabilities == sorted(probabilities, reverse=True)

    def test_nuclei_do_not_overlap(self, star_backend):
        image = draw_disks(120, 80, [(40, 40), (52, 40)], DISK_RADIUS)
        objects = detect(star_backend, ArrayImageSource(image),
                         options=single_tile_options(simplify_distance=0))
        for i in range(len(objects)):
            for j in range(i + 1, len(objects)):
                assert objects[i].nucleus.intersection(objects[j].nucleus).area < 1e-6

    def test_empty_image(self, star_backend):
        source = ArrayImageSource(np.zeros((64, 64), dtype=np.float32))
        assert detect(star_backend, source, options=single_tile_options()) == []

    def test_threshold_filters_everything(self, disk_image):
        def weak(image):
            out = star_model_predict(image)
            out[:, :, 0] *= 0.4
            return out

        backend = CallableBackend(weak, layout='yxc')
        assert detect(backend, ArrayImageSource(disk_image), options=single_tile_options()) == []


class TestTiling:

    def test_seam_matches_single_tile(self, disk_image, star_backend):
        source = ArrayImageSource(disk_image)
        single = detect(star_backend, source, options=single_tile_options())
        tiled = detect(star_backend, source, options=two_tile_options())

        assert len(tiled) == len(single) == len(DISK_CENTERS)
        match_disks(tiled)
        for (ax, ay), (bx, by) in zip(centroids(single), centroids(tiled)):
            assert np.hypot(ax - bx, ay - by) <= 3.0

    def test_disk_on_image_edge_kept(self, star_backend):
        # The right tile's padded request ends at the image edge
        image = draw_disks(192, 128, [(30, 30), (188, 60)], DISK_RADIUS)
        objects = detect(star_backend, ArrayImageSource(image), options=two_tile_options())

        edge = [o for o in objects
                if o.nucleus.centroid.x > 175 and abs(o.nucleus.centroid.y - 60) < 4]
        assert len(objects) == 2
        assert len(edge) == 1

    def test_many_small_tiles(self, disk_image, star_backend):
        options = DetectionOptions(tile_width=64, tile_height=64, padding=16, n_threads=1)
        objects = detect(star_backend, ArrayImageSource(disk_image), options=options)
        assert len(objects) == len(DISK_CENTERS)
        match_disks(objects)

    def test_parallel_matches_serial(self, disk_image, star_backend):
        source = ArrayImageSource(disk_image)
        serial = detect(star_backend, source, options=two_tile_options(n_threads=1))
        parallel = detect(star_backend, source, options=two_tile_options(n_threads=-1))
        assert centroids(serial) == centroids(parallel)

    def test_external_executor(self, disk_image, star_backend):
        with ThreadPoolExecutor(max_workers=2) as pool:
            objects = detect(star_backend, ArrayImageSource(disk_image),
                             options=two_tile_options(), executor=pool)
        assert len(objects) == len(DISK_CENTERS)


class TestRegionAndMask:

    def test_mask_filters_by_centroid(self, disk_image, star_backend):
        mask = box(0, 0, 100, 128)
        objects = detect(star_backend, ArrayImageSource(disk_image), mask=mask,
                         options=single_tile_options())

        assert len(objects) == 3
        for obj in objects:
            assert mask.covers(obj.nucleus.centroid)
            assert mask.buffer(1e-6).covers(obj.nucleus)

    def test_region(self, disk_image, star_backend):
        objects = detect(star_backend, ArrayImageSource(disk_image), region=(120, 0, 72, 128),
                         options=single_tile_options())
        assert sorted(round(o.nucleus.centroid.x / 10) for o in objects) == [14, 15]

    def test_detect_regions(self, disk_image, star_backend):
        masks = [box(0, 0, 70, 128), box(120, 0, 192, 128)]
        with StarDistDetector(star_backend, single_tile_options()) as detector:
            results = detector.detect_regions(ArrayImageSource(disk_image), masks)
        assert [len(r) for r in results] == [2, 2]


class TestCells:

    def test_cells_contain_nuclei(self, disk_image, star_backend):
        objects = detect(star_backend, ArrayImageSource(disk_image),
                         options=single_tile_options(cell_expansion=4.0))
        assert len(objects) == len(DISK_CENTERS)
        for obj in objects:
            assert obj.is_cell
            assert obj.cell.buffer(1e-6).covers(obj.nucleus)
            assert obj.cell.area > obj.nucleus.area

    def test_expansion_uses_pixel_size(self, disk_image, star_backend):
        options = single_tile_options(cell_expansion=2.0)
        calibrated = detect(star_backend, ArrayImageSource(disk_image, pixel_size=0.5),
                            options=options)
        plain = detect(star_backend, ArrayImageSource(disk_image), options=options)
        assert (sum(o.cell.area for o in calibrated)
                > sum(o.cell.area for o in plain))

    def test_neighboring_cells_do_not_overlap(self, star_backend):
        image = draw_disks(120, 80, [(40, 40), (62, 40)], DISK_RADIUS)
        objects = detect(star_backend, ArrayImageSource(image),
                         options=single_tile_options(cell_expansion=6.0))
        assert len(objects) == 2
        assert objects[0].cell.intersection(objects[1].cell).area < 1e-3

    def test_ignore_cell_overlaps(self, star_backend):
        image = draw_disks(120, 80, [(40, 40), (62, 40)], DISK_RADIUS)
        objects = detect(star_backend, ArrayImageSource(image),
                         options=single_tile_options(cell_expansion=6.0,
                                                     ignore_cell_overlaps=True))
        assert objects[0].cell.intersection(objects[1].cell).area > 1.0


class TestLabelsAndMeasurements:

    def test_include_probability(self, disk_image, star_backend):
        objects = detect(star_backend, ArrayImageSource(disk_image),
                         options=single_tile_options(include_probability=True))
        for obj in objects:
            assert obj.measurements[PROBABILITY_MEASUREMENT] == obj.probability

    def test_global_class(self, disk_image, star_backend):
        objects = detect(star_backend, ArrayImageSource(disk_image),
                         options=single_tile_options(global_class='Nucleus'))
        assert {o.classification for o in objects} == {'Nucleus'}

    def test_classification_channels(self, disk_image):
        def classified(image):
            out = star_model_predict(image)
            h, w = out.shape[:2]
            classes = np.zeros((h, w, 3), dtype=np.float32)
            classes[:, :, 0] = 0.1
            classes[:, :120, 2] = 0.9
            classes[:, 120:, 1] = 0.9
            return np.concatenate([out, classes], axis=2)

        backend = CallableBackend(classified, layout='yxc')
        options = single_tile_options(n_classes=3, classifications={1: 'Stroma', 2: 'Tumor'})
        objects = detect(backend, ArrayImageSource(disk_image), options=options)

        assert len(objects) == len(DISK_CENTERS)
        for obj in objects:
            expected = 'Tumor' if obj.nucleus.centroid.x < 120 else 'Stroma'
            assert obj.classification == expected

    def test_shape_and_intensity(self, disk_image, star_backend):
        options = single_tile_options(cell_expansion=3.0, measure_shape=True,
                                      measure_intensity=['mean', 'max'])
        objects = detect(star_backend, ArrayImageSource(disk_image), options=options)

        for obj in objects:
            m = obj.measurements
            assert m['Nucleus: Area px^2'] == pytest.approx(obj.nucleus.area)
            assert 0 < m['Nucleus: Circularity'] <= 1
            assert 0 < m['Nucleus/Cell area ratio'] < 1
            assert 0.5 < m['Nucleus: Channel 1: Mean'] <= 1.0
            assert m['Cytoplasm: Channel 1: Mean'] < m['Nucleus: Channel 1: Mean']
            assert m['Cell: Channel 1: Max'] == 1.0

    def test_global_normalization_and_preprocessing(self, disk_image, star_backend):
        options = DetectionOptions.from_config({
            'tile_width': 128, 'tile_height': 256, 'padding': 16, 'n_threads': 1,
            'global_normalization': {'percentiles': [0, 100]},
            'preprocessing': [{'op': 'clip', 'min_value': 0, 'max_value': 1}],
        })
        objects = detect(star_backend, ArrayImageSource(disk_image * 200.0), options=options)
        assert len(objects) == len(DISK_CENTERS)


class TestLifecycle:

    def test_close_closes_backend(self, star_backend):
        detector = StarDistDetector(star_backend, single_tile_options())
        detector.close()
        detector.close()
        assert star_backend.fn is None

    def test_closed_detector_raises(self, disk_image, star_backend):
        detector = StarDistDetector(star_backend, single_tile_options())
        detector.close()
        with pytest.raises(StarDistSegError):
            detector.detect(ArrayImageSource(disk_image))

    def test_detect_close_flag(self, disk_image, star_backend):
        detect(star_backend, ArrayImageSource(disk_image), options=single_tile_options(),
               close=True)
        assert star_backend.fn is None

    def test_detector_reusable_until_closed(self, disk_image, star_backend):
        with StarDistDetector(star_backend, single_tile_options()) as detector:
            first = detector.detect(ArrayImageSource(disk_image))
            second = detector.detect(ArrayImageSource(disk_image))
        assert centroids(first) == centroids(second)


class TestCancellation:

    def test_cancelled_before_start(self, disk_image, star_backend):
        cancel = threading.Event()
        cancel.set()
        objects = detect(star_backend, ArrayImageSource(disk_image),
                         options=two_tile_options(), cancel_event=cancel)
        assert objects == []

    def test_cancelled_during_prediction(self, disk_image):
        cancel = threading.Event()

        def cancelling(image):
            cancel.set()
            return star_model_predict(image)

        backend = CallableBackend(cancelling, layout='yxc')
        objects = detect(backend, ArrayImageSource(disk_image),
                         options=two_tile_options(), cancel_event=cancel)
        assert objects == []

    def test_keyboard_interrupt_returns_empty(self, disk_image):
        def interrupted(image):
            raise KeyboardInterrupt

        backend = CallableBackend(interrupted, layout='yxc')
        objects = detect(backend, ArrayImageSource(disk_image), options=two_tile_options())
        assert objects == []

    def test_failed_tile_is_skipped(self, disk_image):
        calls = []

        def empty_output_once(image):
            calls.append(1)
            if len(calls) == 1:
                return np.zeros((0, 0, 33), dtype=np.float32)
            return star_model_predict(image)

        backend = CallableBackend(empty_output_once, layout='yxc')
        objects = detect(backend, ArrayImageSource(disk_image), options=two_tile_options())
        # The first tile's nuclei are lost; the rest are found
        assert 0 < len(objects) < len(DISK_CENTERS)
