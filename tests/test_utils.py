"""
Unit tests for utility modules.

Tests the following modules:
- stardist_seg/utils/json_utils.py - numpy-safe JSON and atomic writes
- stardist_seg/utils/logging.py - logging setup and timing helpers

Run with: pytest tests/test_utils.py -v
"""

import json
import logging
import sys
from pathlib import Path
from unittest import TestCase

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))


# =============================================================================
# JSON UTILS TESTS
# =============================================================================

class TestNumpyEncoder(TestCase):

    def test_numpy_scalars_and_arrays(self):
        from stardist_seg.utils.json_utils import NumpyEncoder

        data = {'i': np.int64(3), 'f': np.float32(0.5), 'b': np.bool_(True),
                'a': np.arange(3)}
        decoded = json.loads(json.dumps(data, cls=NumpyEncoder))

        self.assertEqual(decoded, {'i': 3, 'f': 0.5, 'b': True, 'a': [0, 1, 2]})

    def test_numpy_nan_becomes_null(self):
        from stardist_seg.utils.json_utils import NumpyEncoder

        self.assertEqual(json.dumps(np.float32('nan'), cls=NumpyEncoder), 'null')


class TestSanitizeForJson(TestCase):

    def test_nested_nan_and_inf(self):
        from stardist_seg.utils.json_utils import sanitize_for_json

        result = sanitize_for_json({'a': [1.0, float('nan')], 'b': (float('inf'), 2)})

        self.assertEqual(result, {'a': [1.0, None], 'b': [None, 2]})

    def test_geometry_and_readonly_mapping(self):
        from types import MappingProxyType
        from shapely.geometry import box
        from stardist_seg.utils.json_utils import sanitize_for_json

        result = sanitize_for_json({'geometry': box(0, 0, 1, 1),
                                    'measurements': MappingProxyType({'m': np.float64('nan')})})

        self.assertEqual(result['geometry']['type'], 'Polygon')
        self.assertEqual(len(result['geometry']['coordinates'][0]), 5)
        self.assertIsInstance(result['geometry']['coordinates'][0][0], list)
        self.assertEqual(result['measurements'], {'m': None})

    def test_finite_values_unchanged(self):
        from stardist_seg.utils.json_utils import sanitize_for_json

        self.assertEqual(sanitize_for_json({'x': 1.5, 's': 'text'}), {'x': 1.5, 's': 'text'})


class TestAtomicJsonDump(TestCase):

    def test_writes_complete_file(self):
        import tempfile
        from stardist_seg.utils.json_utils import atomic_json_dump

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'nested' / 'out.json'
            atomic_json_dump({'value': float('nan'), 'n': np.int32(4)}, path)

            self.assertEqual(json.loads(path.read_text()), {'value': None, 'n': 4})
            self.assertEqual(list(path.parent.glob('*.tmp')), [])

    def test_failure_leaves_target_untouched(self):
        import tempfile
        from stardist_seg.utils.json_utils import atomic_json_dump

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'out.json'
            path.write_text('{"old": true}')

            with self.assertRaises(TypeError):
                atomic_json_dump({'bad': object()}, path)

            self.assertEqual(json.loads(path.read_text()), {'old': True})
            self.assertEqual(list(path.parent.glob('*.tmp')), [])


# =============================================================================
# LOGGING TESTS
# =============================================================================

class TestFormatDuration(TestCase):

    def test_units(self):
        from stardist_seg.utils.logging import format_duration

        self.assertEqual(format_duration(12.34), '12.3 seconds')
        self.assertEqual(format_duration(90), '1.5 minutes')
        self.assertEqual(format_duration(5400), '1.5 hours')


class TestProcessingTimer(TestCase):

    def test_logs_start_and_completion(self):
        from stardist_seg.utils.logging import ProcessingTimer, get_logger

        logger = get_logger('stardist_seg.tests.timer')
        with self.assertLogs(logger, level='INFO') as logs:
            with ProcessingTimer(logger, 'Tile detection') as timer:
                pass

        self.assertIsNotNone(timer.duration)
        self.assertIn('Starting: Tile detection', logs.output[0])
        self.assertIn('Completed: Tile detection', logs.output[1])

    def test_logs_failure_and_reraises(self):
        from stardist_seg.utils.logging import ProcessingTimer, get_logger

        logger = get_logger('stardist_seg.tests.timer')
        with self.assertLogs(logger, level='ERROR') as logs:
            with self.assertRaises(RuntimeError):
                with ProcessingTimer(logger, 'Tile detection'):
                    raise RuntimeError('boom')

        self.assertIn('Failed: Tile detection', logs.output[0])

    def test_reports_count(self):
        from stardist_seg.utils.logging import ProcessingTimer, get_logger

        logger = get_logger('stardist_seg.tests.timer')
        with self.assertLogs(logger, level='INFO') as logs:
            with ProcessingTimer(logger, 'StarDist detection', noun='nuclei') as timer:
                timer.count = 42

        self.assertIn('(42 nuclei)', logs.output[-1])


class TestProgressLog(TestCase):

    def test_level_follows_verbosity(self):
        from stardist_seg.utils.logging import ProgressLog, get_logger

        logger = get_logger('stardist_seg.tests.progress')
        self.assertEqual(ProgressLog(logger).level, logging.DEBUG)

        progress = ProgressLog(logger, verbose=True)
        with self.assertLogs(logger, level='INFO') as logs:
            progress('Resolving cell overlaps')

        self.assertEqual(logs.records[0].levelno, logging.INFO)
        self.assertEqual(logs.records[0].getMessage(), 'Resolving cell overlaps')


class TestLogParameters(TestCase):

    def test_long_values_summarized(self):
        from stardist_seg.utils.logging import get_logger, log_parameters
        from shapely.geometry import box

        logger = get_logger('stardist_seg.tests.params')
        with self.assertLogs(logger, level='INFO') as logs:
            log_parameters(logger, {'threshold': 0.5, 'channels': list(range(10)),
                                    'mask': box(0, 0, 10, 20)},
                           title='Detection')

        text = '\n'.join(logs.output)
        self.assertIn('threshold: 0.5', text)
        self.assertIn('channels: [10 items]', text)
        self.assertIn('mask: Polygon (0.0, 0.0, 10.0, 20.0)', text)


class TestSetupLogging(TestCase):

    def setUp(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level

    def tearDown(self):
        for handler in self.root.handlers:
            if handler not in self.saved_handlers:
                handler.close()
        self.root.handlers[:] = self.saved_handlers
        self.root.setLevel(self.saved_level)

    def test_log_file_created(self):
        import tempfile
        from stardist_seg.utils.logging import setup_logging

        with tempfile.TemporaryDirectory() as tmp:
            log_file = Path(tmp) / 'logs' / 'detect.log'
            setup_logging(level='DEBUG', log_file=log_file, console=False)
            logging.getLogger('stardist_seg.tests').debug('hello')
            for handler in self.root.handlers:
                handler.flush()

            self.assertIn('hello', log_file.read_text())
            self.assertEqual(self.root.level, logging.DEBUG)
