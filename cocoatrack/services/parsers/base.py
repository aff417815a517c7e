"""
Contrat commun des parseurs de formats géospatiaux
"""
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional, Union

import pandas as pd
from shapely.geometry import MultiPolygon, mapping

from cocoatrack.core.errors import ErrorCode
from cocoatrack.models.import_file import ImportFileType
from cocoatrack.schemas.imports import ParseIssue
from cocoatrack.services import geometry_service

POLYGON_TYPES = ("Polygon", "MultiPolygon")

# Avertissement hors taxonomie : placemark / feature sans géométrie
EMPTY_GEOMETRY = "EMPTY_GEOMETRY"


def _issue(code: Union[ErrorCode, str], message: str, feature_index: Optional[int], details: dict) -> ParseIssue:
    if feature_index is not None:
        details.setdefault("feature_index", feature_index)
    return ParseIssue(
        code=code.value if isinstance(code, ErrorCode) else code,
        message=message,
        feature_index=feature_index,
        details=details,
    )


@dataclass
class RawFeature:
    """Couple (attributs, géométrie MultiPolygon) extrait du fichier source."""
    properties: dict[str, Any]
    geometry: Optional[dict[str, Any]]
    feature_index: int


@dataclass
class GeoParseResult:
    features: list[RawFeature] = field(default_factory=list)
    errors: list[ParseIssue] = field(default_factory=list)
    warnings: list[ParseIssue] = field(default_factory=list)
    available_fields: list[str] = field(default_factory=list)
    has_projection_info: bool = True

    def add_error(self, code: Union[ErrorCode, str], message: str, feature_index: Optional[int] = None, **details) -> None:
        self.errors.append(_issue(code, message, feature_index, details))

    def add_warning(self, code: Union[ErrorCode, str], message: str, feature_index: Optional[int] = None, **details) -> None:
        self.warnings.append(_issue(code, message, feature_index, details))

    def collect_fields(self) -> None:
        """Union ordonnée des clés d'attributs de toutes les features."""
        seen: dict[str, None] = {}
        for feature in self.features:
            for key in feature.properties:
                seen.setdefault(key, None)
        self.available_fields = list(seen)


def to_multipolygon(geometry: dict[str, Any]) -> dict[str, Any]:
    """MultiPolygon 2D, anneaux orientés : forme de sortie de tous les parseurs."""
    return geometry_service.normalize_ring_orientation(
        geometry_service.strip_z_dimension(geometry)
    )


def polygonal_mapping(geom) -> Optional[dict[str, Any]]:
    """
    Géométrie shapely lue par GeoPandas → GeoJSON surfacique, ou None.
    Une GeometryCollection (MultiGeometry KML mixte) ne garde que ses polygones.
    """
    if geom.geom_type in POLYGON_TYPES:
        return mapping(geom)
    if geom.geom_type != "GeometryCollection":
        return None
    polygons = []
    for part in geom.geoms:
        if part.geom_type == "Polygon":
            polygons.append(part)
        elif part.geom_type == "MultiPolygon":
            polygons.extend(part.geoms)
    return mapping(MultiPolygon(polygons)) if polygons else None


def json_scalar(value: Any) -> Any:
    """Valeur d'attribut → scalaire JSON (NaN → None, dates → ISO 8601)."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return None if pd.isna(value) else value.isoformat()
    if hasattr(value, "item"):
        # Scalaires numpy
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return value


class GeoParser(ABC):
    file_type: ImportFileType

    @abstractmethod
    def parse(self, content: bytes) -> GeoParseResult:
        """
        Parse le contenu brut du fichier.
        Lève une ParcelleError pour les échecs fataux (fichier illisible,
        composants manquants) ; les problèmes par feature vont dans le résultat.
        """


_REGISTRY: dict[ImportFileType, type[GeoParser]] = {}


def register(parser_cls: type[GeoParser]) -> type[GeoParser]:
    _REGISTRY[parser_cls.file_type] = parser_cls
    return parser_cls


def get_parser(file_type: ImportFileType) -> GeoParser:
    # Enregistrement des parseurs concrets
    from cocoatrack.services.parsers import geojson_parser, kml_parser, shapefile_parser  # noqa: F401

    try:
        return _REGISTRY[ImportFileType(file_type)]()
    except KeyError:
        raise ValueError(f"Aucun parseur pour le type {file_type}")
