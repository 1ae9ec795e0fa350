"""
Image input and detection output.

Provides:
- ImageSource protocol and an in-memory ArrayImageSource
- GeoJSON export/import of detections
"""

from .image_source import ArrayImageSource, ImageSource, downsampled_size
from .export import export_geojson, load_geojson, to_feature_collection

__all__ = [
    'ImageSource',
    'ArrayImageSource',
    'downsampled_size',
    'export_geojson',
    'load_geojson',
    'to_feature_collection',
]
