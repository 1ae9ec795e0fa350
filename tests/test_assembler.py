"""
Tests for result assembly and measurements.
"""

import numpy as np
import pytest
from shapely.geometry import box

from stardist_seg.detection.assembler import (
    PROBABILITY_MEASUREMENT,
    FinalObject,
    ResultAssembler,
)
from stardist_seg.detection.measurements import ObjectMeasurer, rasterize, shape_features
from stardist_seg.detection.nuclei import NucleusArena
from stardist_seg.io.image_source import ArrayImageSource


@pytest.fixture
def arena(make_circle):
    arena = NucleusArena()
    arena.add(make_circle(20, 20, 6), 0.9, 1)
    arena.add(make_circle(60, 20, 6), 0.8, 2)
    arena.add(make_circle(100, 20, 6), 0.7, 5)
    return arena


class TestFinalObject:

    def test_measurements_read_only(self, make_circle):
        obj = FinalObject(nucleus=make_circle(0, 0, 3), measurements={'a': 1.0})
        with pytest.raises(TypeError):
            obj.measurements['b'] = 2.0

    def test_with_measurements_copies(self, make_circle):
        obj = FinalObject(nucleus=make_circle(0, 0, 3), measurements={'a': 1.0})
        updated = obj.with_measurements({'b': 2.0})
        assert dict(updated.measurements) == {'a': 1.0, 'b': 2.0}
        assert dict(obj.measurements) == {'a': 1.0}

    def test_geometry_prefers_cell(self, make_circle):
        nucleus = make_circle(0, 0, 3)
        assert FinalObject(nucleus=nucleus).geometry is nucleus
        cell = nucleus.buffer(2)
        assert FinalObject(nucleus=nucleus, cell=cell).geometry is cell


class TestResultAssembler:

    def test_nuclei_only(self, arena):
        objects = ResultAssembler().assemble(arena)
        assert len(objects) == 3
        assert all(not o.is_cell for o in objects)
        assert [o.probability for o in objects] == [0.9, 0.8, 0.7]

    def test_labels(self, arena):
        assembler = ResultAssembler(classifications={1: 'Tumor', 2: 'Stroma'},
                                    global_class='Other')
        labels = [o.classification for o in assembler.assemble(arena)]
        assert labels == ['Tumor', 'Stroma', 'Other']

    def test_no_labels(self, arena):
        assert {o.classification for o in ResultAssembler().assemble(arena)} == {None}

    def test_probability_measurement(self, arena):
        objects = ResultAssembler(include_probability=True).assemble(arena)
        assert objects[0].measurements[PROBABILITY_MEASUREMENT] == pytest.approx(0.9)

    def test_cells_clipped_to_mask(self, arena):
        mask = box(0, 0, 200, 24)
        objects = ResultAssembler(cell_expansion=5.0, mask=mask).assemble(arena)
        for obj in objects:
            assert obj.cell.bounds[3] <= 24 + 1e-9
            assert obj.cell.buffer(1e-6).covers(obj.nucleus)

    def test_nucleus_clipped_to_mask(self, arena):
        mask = box(0, 0, 200, 20)
        objects = ResultAssembler(mask=mask).assemble(arena)
        assert all(o.nucleus.bounds[3] <= 20 + 1e-9 for o in objects)

    def test_empty_result_skipped(self, arena):
        objects = ResultAssembler(mask=box(50, 0, 70, 40)).assemble(arena)
        assert len(objects) == 1

    def test_executor_preserves_order(self, arena):
        from concurrent.futures import ThreadPoolExecutor

        with ThreadPoolExecutor(max_workers=3) as pool:
            objects = ResultAssembler(cell_expansion=2.0).assemble(arena, pool)
        assert [o.class_index for o in objects] == [1, 2, 5]


class TestMeasurements:

    def test_shape_features_square(self):
        features = shape_features(box(0, 0, 10, 10))
        assert features['Area px^2'] == pytest.approx(100)
        assert features['Perimeter px'] == pytest.approx(40)
        assert features['Solidity'] == pytest.approx(1.0)
        assert features['Max diameter px'] == pytest.approx(10)
        assert features['Circularity'] == pytest.approx(np.pi / 4)

    def test_eccentricity(self, make_circle):
        from shapely import affinity

        ellipse = affinity.scale(make_circle(50, 50, 10), xfact=2.0, yfact=1.0)
        features = shape_features(ellipse)
        assert features['Eccentricity'] == pytest.approx(np.sqrt(0.75), abs=0.05)
        assert shape_features(make_circle(50, 50, 10))['Eccentricity'] < 0.2
        # Too few vertices to fit an ellipse
        assert np.isnan(shape_features(box(0, 0, 10, 10))['Eccentricity'])

    def test_shape_features_calibrated(self):
        features = shape_features(box(0, 0, 10, 10), pixel_size=0.5)
        assert features['Area µm^2'] == pytest.approx(25)
        assert features['Perimeter µm'] == pytest.approx(20)

    def test_rasterize(self):
        mask = rasterize(box(2, 2, 6, 6), (10, 10), 0, 0, 1.0)
        assert mask[4, 4]
        assert not mask[8, 8]

    def test_unknown_statistic(self):
        with pytest.raises(ValueError):
            ObjectMeasurer(statistics=['mode'])

    def test_inactive_without_requests(self, make_circle):
        measurer = ObjectMeasurer()
        obj = FinalObject(nucleus=make_circle(5, 5, 2))
        assert not measurer.is_active
        assert measurer.measure_all([obj]) == [obj]

    def test_intensity_per_compartment(self):
        image = np.zeros((40, 40), dtype=np.float32)
        image[10:30, 10:30] = 2.0
        image[15:25, 15:25] = 5.0
        obj = FinalObject(nucleus=box(15, 15, 25, 25), cell=box(10, 10, 30, 30))
        measurer = ObjectMeasurer(source=ArrayImageSource(image), statistics=['mean'],
                                  compartments=['nucleus', 'cytoplasm'])
        m = measurer.measure(obj).measurements

        assert m['Nucleus: Channel 1: Mean'] > 4.0
        assert m['Cytoplasm: Channel 1: Mean'] < 3.0
        assert 'Cell: Channel 1: Mean' not in m
