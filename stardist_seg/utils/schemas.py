"""
Schema validation for exported detection files.

Uses Pydantic for validation with clear error messages. Detections are
written as a GeoJSON FeatureCollection; each feature is one nucleus or cell.

Usage:
    from stardist_seg.utils.schemas import validate_detection_file

    collection = validate_detection_file("/path/to/detections.geojson")
    print(len(collection.features))
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


# =============================================================================
# Geometry
# =============================================================================

class GeoJSONGeometry(BaseModel):
    """Polygonal GeoJSON geometry."""
    type: Literal["Polygon", "MultiPolygon"]
    coordinates: List[Any]

    @field_validator('coordinates')
    @classmethod
    def validate_coordinates(cls, v: List[Any]) -> List[Any]:
        if not v:
            raise ValueError("Geometry has no coordinates")
        return v


# =============================================================================
# Features
# =============================================================================

class DetectionProperties(BaseModel):
    """Properties of one detected object."""
    model_config = ConfigDict(extra="allow")

    object_type: Literal["detection", "cell"]
    classification: Optional[str] = None
    class_index: int = -1
    probability: float = Field(..., ge=0.0, le=1.0)
    measurements: Dict[str, Optional[float]] = Field(default_factory=dict)
    nucleus_geometry: Optional[GeoJSONGeometry] = None


class DetectionFeature(BaseModel):
    """A GeoJSON Feature for one object; the geometry is the outer boundary."""
    type: Literal["Feature"] = "Feature"
    geometry: GeoJSONGeometry
    properties: DetectionProperties

    @model_validator(mode='after')
    def check_cell_nucleus(self) -> "DetectionFeature":
        if self.properties.object_type == "cell" and self.properties.nucleus_geometry is None:
            raise ValueError("Cell features require a nucleus_geometry")
        return self


class DetectionCollection(BaseModel):
    """Schema for exported detection files."""
    model_config = ConfigDict(extra="allow")

    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: List[DetectionFeature] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


# =============================================================================
# Validation Functions
# =============================================================================

def validate_json_file(
    file_path: Union[str, Path],
    schema: type[BaseModel],
    raise_on_error: bool = True,
) -> Optional[BaseModel]:
    """
    Validate a JSON file against a schema.

    Returns:
        Validated model instance, or None if validation fails and raise_on_error=False
    """
    file_path = Path(file_path)

    if not file_path.exists():
        if raise_on_error:
            raise FileNotFoundError(f"File not found: {file_path}")
        return None

    try:
        with open(file_path, 'r') as f:
            data = json.load(f)
        return schema.model_validate(data)

    except json.JSONDecodeError as e:
        if raise_on_error:
            raise ValueError(f"Invalid JSON in {file_path}: {e}") from e
        return None

    except ValidationError as e:
        if raise_on_error:
            raise ValueError(f"Validation failed for {file_path}: {e}") from e
        return None


def validate_detection_file(
    file_path: Union[str, Path],
    raise_on_error: bool = True,
) -> Optional[DetectionCollection]:
    """Validate an exported detections GeoJSON file."""
    return validate_json_file(file_path, DetectionCollection, raise_on_error)


__all__ = [
    'GeoJSONGeometry',
    'DetectionProperties',
    'DetectionFeature',
    'DetectionCollection',
    'validate_json_file',
    'validate_detection_file',
]
