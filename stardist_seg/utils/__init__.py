"""
Utility modules for the detection pipeline.

Provides:
- Configuration management and validation
- Logging utilities
- JSON helpers and schema validation (requires pydantic)
"""

from .config import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    DetectionOptions,
    load_config,
    save_config,
    validate_config,
)

from .logging import (
    get_logger,
    setup_logging,
    log_parameters,
    ProcessingTimer,
    ProgressLog,
)

from .json_utils import (
    NumpyEncoder,
    atomic_json_dump,
    sanitize_for_json,
)

__all__ = [
    'DEFAULT_CONFIG',
    'ConfigValidationError',
    'DetectionOptions',
    'load_config',
    'save_config',
    'validate_config',
    'get_logger',
    'setup_logging',
    'log_parameters',
    'ProcessingTimer',
    'ProgressLog',
    'NumpyEncoder',
    'atomic_json_dump',
    'sanitize_for_json',
]
