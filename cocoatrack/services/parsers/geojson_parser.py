"""
Parseur GeoJSON — FeatureCollection, Feature ou Polygon/MultiPolygon nu

Aucune reprojection : les coordonnées sont supposées en WGS84 (RFC 7946).
"""
import json
import math
from typing import Any, Optional

from cocoatrack.core.errors import ErrorCode, validation_error
from cocoatrack.models.import_file import ImportFileType
from cocoatrack.services.parsers.base import (
    EMPTY_GEOMETRY, POLYGON_TYPES, GeoParser, GeoParseResult, RawFeature, register, to_multipolygon,
)

GEOJSON_TYPES = (
    "FeatureCollection", "Feature", "Point", "MultiPoint", "LineString",
    "MultiLineString", "Polygon", "MultiPolygon", "GeometryCollection",
)


def scalar_properties(properties: Optional[dict]) -> dict[str, Any]:
    """Sac d'attributs : valeurs scalaires, objets imbriqués sérialisés en JSON."""
    result: dict[str, Any] = {}
    for key, value in (properties or {}).items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, ensure_ascii=False)
        elif isinstance(value, float) and math.isnan(value):
            value = None
        result[str(key)] = value
    return result


def _ring_problem(ring: Any) -> Optional[str]:
    if not isinstance(ring, list):
        return "l'anneau doit être un tableau"
    if len(ring) < 4:
        return "un anneau doit compter au moins 4 positions"
    for position in ring:
        if not isinstance(position, list) or len(position) < 2:
            return "chaque position doit être [lng, lat]"
        for coord in position[:3]:
            if isinstance(coord, bool) or not isinstance(coord, (int, float)):
                return "les coordonnées doivent être numériques"
            if not math.isfinite(coord):
                return "coordonnées non finies"
    return None


def _polygon_problem(polygon: Any) -> Optional[str]:
    if not isinstance(polygon, list) or not polygon:
        return "un polygone doit compter au moins un anneau"
    for ring in polygon:
        problem = _ring_problem(ring)
        if problem:
            return problem
    return None


def coordinates_problem(geometry: dict) -> Optional[str]:
    """Contrôle structurel des coordonnées Polygon / MultiPolygon."""
    coordinates = geometry.get("coordinates")
    if not isinstance(coordinates, list):
        return "la géométrie doit porter un tableau \"coordinates\""
    if geometry["type"] == "Polygon":
        return _polygon_problem(coordinates)
    if not coordinates:
        return "un MultiPolygon doit compter au moins un polygone"
    for polygon in coordinates:
        problem = _polygon_problem(polygon)
        if problem:
            return problem
    return None


@register
class GeoJSONParser(GeoParser):
    file_type = ImportFileType.GEOJSON

    def parse(self, content: bytes) -> GeoParseResult:
        try:
            document = json.loads(content.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise validation_error("file", f"Syntaxe JSON invalide : {exc}")

        if not isinstance(document, dict):
            raise validation_error("file", "Le GeoJSON doit être un objet")
        geojson_type = document.get("type")
        if not geojson_type:
            raise validation_error("file", "Le GeoJSON doit avoir une propriété \"type\"")
        if geojson_type not in GEOJSON_TYPES:
            raise validation_error("file", f"Type GeoJSON invalide : {geojson_type}")

        # Seul un membre "crs" (GeoJSON 2008) affirme un système de coordonnées
        result = GeoParseResult(has_projection_info="crs" in document)

        if geojson_type == "FeatureCollection":
            raw_features = document.get("features")
            if not isinstance(raw_features, list):
                raise validation_error("features", "Une FeatureCollection doit avoir un tableau \"features\"")
        elif geojson_type == "Feature":
            raw_features = [document]
        elif geojson_type in POLYGON_TYPES:
            raw_features = [{"type": "Feature", "properties": {}, "geometry": document}]
        else:
            raise validation_error(
                "type",
                f"Type GeoJSON non supporté : {geojson_type}. Seuls Feature, FeatureCollection, Polygon et MultiPolygon sont acceptés",
            )

        for index, raw in enumerate(raw_features):
            feature = self._read_feature(raw, index, result)
            if feature is not None:
                result.features.append(feature)

        result.collect_fields()
        return result

    def _read_feature(self, raw: Any, index: int, result: GeoParseResult) -> Optional[RawFeature]:
        if not isinstance(raw, dict) or raw.get("type") != "Feature":
            result.add_error(ErrorCode.VALIDATION_ERROR, f"Feature {index} invalide : type \"Feature\" attendu", index)
            return None
        properties = raw.get("properties")
        if properties is not None and not isinstance(properties, dict):
            result.add_error(ErrorCode.VALIDATION_ERROR, f"Feature {index} : properties doit être un objet ou null", index)
            return None

        geometry = raw.get("geometry")
        if geometry is None:
            result.add_warning(EMPTY_GEOMETRY, f"Feature {index} sans géométrie", index, reason="empty geometry")
            return None
        if not isinstance(geometry, dict) or not geometry.get("type"):
            result.add_error(ErrorCode.VALIDATION_ERROR, f"Feature {index} : géométrie sans \"type\"", index)
            return None

        geom_type = geometry["type"]
        if geom_type not in POLYGON_TYPES:
            result.add_error(
                ErrorCode.UNSUPPORTED_GEOMETRY_TYPE,
                f"Feature {index} : type de géométrie non supporté ({geom_type}). Seuls Polygon et MultiPolygon sont acceptés",
                index,
                type=geom_type,
                expected=list(POLYGON_TYPES),
            )
            return None

        problem = coordinates_problem(geometry)
        if problem:
            result.add_error(ErrorCode.INVALID_GEOMETRY, f"Feature {index} : {problem}", index, reason=problem)
            return None

        return RawFeature(
            properties=scalar_properties(properties),
            geometry=to_multipolygon(geometry),
            feature_index=index,
        )
