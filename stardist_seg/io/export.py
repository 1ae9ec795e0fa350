"""
GeoJSON export and import of detection results.

Each object becomes one Feature whose geometry is the cell (or the nucleus
if there is no cell); the nucleus of a cell is stored in
``properties.nucleus_geometry``. Files are written atomically and validated
against ``stardist_seg.utils.schemas.DetectionCollection`` on load.

Usage:
    from stardist_seg.io.export import export_geojson, load_geojson

    export_geojson(objects, "detections.geojson", metadata={"slide": "A1"})
    objects = load_geojson("detections.geojson")
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from shapely.geometry import shape

from stardist_seg.detection.assembler import FinalObject
from stardist_seg.utils.json_utils import atomic_json_dump, sanitize_for_json
from stardist_seg.utils.logging import get_logger
from stardist_seg.utils.schemas import DetectionCollection, validate_detection_file

logger = get_logger(__name__)


def object_to_feature(obj: FinalObject) -> Dict[str, Any]:
    """GeoJSON Feature dict; geometries are converted by ``sanitize_for_json``."""
    properties = {
        'object_type': 'cell' if obj.is_cell else 'detection',
        'classification': obj.classification,
        'class_index': obj.class_index,
        'probability': obj.probability,
        'measurements': obj.measurements,
    }
    if obj.is_cell:
        properties['nucleus_geometry'] = obj.nucleus
    return {
        'type': 'Feature',
        'geometry': obj.geometry,
        'properties': properties,
    }


def to_feature_collection(objects: Sequence[FinalObject],
                          metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a validated, JSON-ready FeatureCollection dict."""
    collection = {
        'type': 'FeatureCollection',
        'features': [object_to_feature(o) for o in objects],
    }
    if metadata is not None:
        collection['metadata'] = metadata
    collection = sanitize_for_json(collection)
    DetectionCollection.model_validate(collection)
    return collection


def export_geojson(objects: Sequence[FinalObject], path: Union[str, Path],
                   metadata: Optional[Dict[str, Any]] = None, indent: Optional[int] = None) -> Path:
    """Write objects to a GeoJSON file; returns the path."""
    path = Path(path)
    atomic_json_dump(to_feature_collection(objects, metadata), path, indent=indent)
    logger.info(f"Exported {len(objects)} objects to {path}")
    return path


def feature_to_object(feature) -> FinalObject:
    props = feature.properties
    geometry = shape(feature.geometry.model_dump())
    if props.object_type == 'cell':
        nucleus = shape(props.nucleus_geometry.model_dump())
        cell = geometry
    else:
        nucleus, cell = geometry, None
    return FinalObject(
        nucleus=nucleus,
        cell=cell,
        classification=props.classification,
        class_index=props.class_index,
        probability=props.probability,
        measurements={k: (float('nan') if v is None else v) for k, v in props.measurements.items()},
    )


def load_geojson(path: Union[str, Path]) -> List[FinalObject]:
    """Load objects written by ``export_geojson``."""
    collection = validate_detection_file(path)
    return [feature_to_object(f) for f in collection.features]


__all__ = ['object_to_feature', 'to_feature_collection', 'export_geojson',
           'feature_to_object', 'load_geojson']
