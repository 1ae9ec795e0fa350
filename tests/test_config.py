"""
Tests for stardist_seg/utils/config.py.
"""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from stardist_seg.preprocessing.normalization import GlobalNormalization
from stardist_seg.preprocessing.ops import NormalizePercentile
from stardist_seg.utils.config import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    DetectionOptions,
    load_config,
    save_config,
    validate_config,
)


class TestValidateConfig:

    def test_defaults_are_valid(self):
        result = validate_config()
        assert result['valid']
        assert result['errors'] == []

    def test_threshold_out_of_range(self):
        result = validate_config({'threshold': 1.5})
        assert not result['valid']
        assert result['errors'] == ['threshold: value 1.5 out of range [0.0, 1.0]']

    def test_wrong_type(self):
        result = validate_config({'tile_width': 512.5})
        assert any('tile_width' in e for e in result['errors'])

    def test_bool_rejected_for_numbers(self):
        assert not validate_config({'padding': True})['valid']

    def test_nan_rejected(self):
        assert not validate_config({'threshold': float('nan')})['valid']

    def test_padding_leaves_no_core(self):
        result = validate_config({'tile_width': 64, 'tile_height': 64, 'padding': 32})
        assert any('no core region' in e for e in result['errors'])

    def test_unknown_layout(self):
        assert not validate_config({'layout': 'xyz'})['valid']
        assert validate_config({'layout': 'bcyx'})['valid']

    def test_unknown_measurements(self):
        result = validate_config({'measure_intensity': ['mean', 'mode'],
                                  'compartments': ['nucleus', 'organelle']})
        assert len(result['errors']) == 2

    def test_small_constrain_scale_warns(self):
        result = validate_config({'cell_constrain_scale': 0.8})
        assert result['valid']
        assert result['warnings']

    def test_raise_on_error(self):
        with pytest.raises(ConfigValidationError, match='threshold'):
            validate_config({'threshold': -0.1}, raise_on_error=True)


class TestLoadSaveConfig:

    def test_missing_file_gives_defaults(self, temp_output_dir):
        assert load_config(temp_output_dir) == DEFAULT_CONFIG

    def test_defaults_not_shared(self, temp_output_dir):
        config = load_config(temp_output_dir)
        config['measure_intensity'].append('mean')
        assert DEFAULT_CONFIG['measure_intensity'] == []

    def test_file_overrides_defaults(self, temp_output_dir):
        (temp_output_dir / 'config.json').write_text(json.dumps({'threshold': 0.7}))
        config = load_config(temp_output_dir)
        assert config['threshold'] == 0.7
        assert config['padding'] == DEFAULT_CONFIG['padding']

    def test_invalid_json_ignored(self, temp_output_dir):
        (temp_output_dir / 'config.json').write_text('{not json')
        assert load_config(temp_output_dir) == DEFAULT_CONFIG

    def test_save_and_load(self, temp_output_dir):
        path = save_config(temp_output_dir / 'run', {'threshold': 0.6})
        assert path.exists()
        assert load_config(temp_output_dir / 'run')['threshold'] == 0.6


class TestDetectionOptions:

    def test_defaults(self):
        options = DetectionOptions()
        assert options.tile_size == (1024, 1024)
        assert options.n_classification_channels == 0

    def test_invalid_options_raise(self):
        with pytest.raises(ConfigValidationError):
            DetectionOptions(threshold=2.0)

    def test_classification_channels(self):
        assert DetectionOptions(classifications={0: 'bg', 1: 'Tumor'}).n_classification_channels == 2
        assert DetectionOptions(n_classes=4).n_classification_channels == 4

    def test_from_config(self):
        options = DetectionOptions.from_config({
            'tile_size': 512,
            'preprocessing': [{'op': 'normalize_percentile', 'min_percentile': 1,
                               'max_percentile': 99.8}],
            'global_normalization': {'percentiles': [0, 99]},
            'classifications': {'1': 'Tumor', '2': 'Stroma'},
            'unused_key': 1,
        })
        assert options.tile_size == (512, 512)
        assert options.preprocessing == [NormalizePercentile(1, 99.8)]
        assert options.global_normalization == GlobalNormalization(percentiles=(0, 99))
        assert options.classifications == {1: 'Tumor', 2: 'Stroma'}

    def test_round_trip_through_file(self, temp_output_dir):
        options = DetectionOptions(
            threshold=0.6,
            channels=[0],
            preprocessing=[NormalizePercentile(1, 99.8)],
            global_normalization=GlobalNormalization(percentiles=(1, 99)),
            classifications={1: 'Tumor'},
            cell_expansion=5.0,
        )
        save_config(temp_output_dir, options.to_config())
        restored = DetectionOptions.from_config(load_config(temp_output_dir))
        assert restored == options
