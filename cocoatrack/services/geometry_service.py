"""
Service géométrique — validation, réparation, surface, centroïde et hash

Toutes les fonctions travaillent sur des mappings GeoJSON
({"type": "Polygon" | "MultiPolygon", "coordinates": ...}) et utilisent
Shapely 2.x en interne. Aucune ne lève d'exception sur une géométrie
malformée : les échecs sont signalés par la valeur de retour.
"""
import hashlib
import json
import math
from dataclasses import dataclass
from typing import Any, Optional

from pyproj import Geod
from pyproj.exceptions import GeodError
from shapely import is_valid, make_valid
from shapely.errors import ShapelyError
from shapely.geometry import GeometryCollection, MultiPolygon, Polygon, mapping, shape
from shapely.ops import unary_union
from shapely.validation import explain_validity

from cocoatrack.config import settings

GeoJSON = dict[str, Any]

WGS84_GEOD = Geod(ellps="WGS84")

_SHAPELY_ERRORS = (ShapelyError, ValueError, TypeError, IndexError, KeyError, AttributeError)


@dataclass
class RepairResult:
    """Résultat explicite d'une tentative de réparation."""
    ok: bool
    geometry: Optional[GeoJSON] = None
    reason: Optional[str] = None


@dataclass
class HashResult:
    ok: bool
    hash: Optional[str] = None
    reason: Optional[str] = None


# ── Normalisation ─────────────────────────────────────────────────────────────

def _as_lists(value):
    """Tuples Shapely → listes JSON, récursivement."""
    if isinstance(value, (list, tuple)):
        return [_as_lists(v) for v in value]
    return value


def normalize_to_multipolygon(geometry: GeoJSON) -> GeoJSON:
    """
    Polygon → MultiPolygon à un élément, MultiPolygon inchangé.
    Idempotent : normaliser deux fois donne le même résultat.
    """
    geom_type = geometry.get("type")
    coordinates = _as_lists(geometry.get("coordinates") or [])
    if geom_type == "Polygon":
        return {"type": "MultiPolygon", "coordinates": [coordinates]}
    if geom_type == "MultiPolygon":
        return {"type": "MultiPolygon", "coordinates": coordinates}
    raise ValueError(f"Type de géométrie non supporté : {geom_type}")


def _polygons(geometry: GeoJSON) -> list:
    if geometry.get("type") == "Polygon":
        return [geometry.get("coordinates") or []]
    return geometry.get("coordinates") or []


def _ring_is_clockwise(ring: list) -> bool:
    # Formule du lacet
    total = 0.0
    for (x1, y1, *_), (x2, y2, *_) in zip(ring, ring[1:]):
        total += (x2 - x1) * (y2 + y1)
    return total > 0


def _orient_rings(rings: list) -> list:
    oriented = []
    for index, ring in enumerate(rings):
        clockwise = _ring_is_clockwise(ring)
        if (index == 0 and clockwise) or (index > 0 and not clockwise):
            ring = list(reversed(ring))
        oriented.append(ring)
    return oriented


def normalize_ring_orientation(geometry: GeoJSON) -> GeoJSON:
    """Anneaux extérieurs anti-horaires, trous horaires (convention GeoJSON)."""
    multi = normalize_to_multipolygon(geometry)
    return {
        "type": "MultiPolygon",
        "coordinates": [_orient_rings(polygon) for polygon in multi["coordinates"]],
    }


def strip_z_dimension(geometry: GeoJSON) -> GeoJSON:
    """Supprime la composante Z : le stockage est strictement 2D."""
    def strip_ring(ring):
        return [list(position[:2]) for position in ring]

    if geometry.get("type") == "Polygon":
        return {"type": "Polygon", "coordinates": [strip_ring(r) for r in geometry.get("coordinates") or []]}
    return {
        "type": geometry.get("type"),
        "coordinates": [[strip_ring(r) for r in polygon] for polygon in geometry.get("coordinates") or []],
    }


# ── Contrôles ─────────────────────────────────────────────────────────────────

def is_empty_geometry(geometry: Optional[GeoJSON]) -> bool:
    if not geometry or not geometry.get("coordinates"):
        return True
    return all(not polygon or not polygon[0] for polygon in _polygons(geometry))


def _iter_positions(geometry: GeoJSON):
    for polygon in _polygons(geometry):
        for ring in polygon:
            for position in ring:
                yield position


def validate_coordinates(geometry: GeoJSON) -> tuple[bool, list[dict]]:
    """Retourne (valide, coordonnées hors de l'enveloppe WGS84)."""
    out_of_bounds = []
    for position in _iter_positions(geometry):
        lng, lat = position[0], position[1]
        if lng < -180 or lng > 180 or lat < -90 or lat > 90:
            out_of_bounds.append({"lng": lng, "lat": lat})
    return not out_of_bounds, out_of_bounds


def detect_projected_coordinates(geometry: GeoJSON) -> tuple[bool, Optional[list]]:
    """
    Heuristique : une coordonnée hors de ±180/±90 trahit un système projeté
    (UTM, Lambert…). Retourne (probable, coordonnée témoin).
    """
    for position in _iter_positions(geometry):
        lng, lat = position[0], position[1]
        if abs(lng) > 180 or abs(lat) > 90:
            return True, [lng, lat]
    return False, None


def is_valid_geometry(geometry: GeoJSON) -> bool:
    """Validité OGC (anneaux simples, sans auto-intersection)."""
    try:
        return bool(is_valid(shape(geometry)))
    except _SHAPELY_ERRORS:
        return False


def explain_invalidity(geometry: GeoJSON) -> str:
    try:
        return explain_validity(shape(geometry))
    except _SHAPELY_ERRORS as exc:
        return f"Géométrie illisible : {exc}"


# ── Réparation ────────────────────────────────────────────────────────────────

def _polygonal_part(geom) -> Optional[MultiPolygon]:
    """Ne conserve que les parties surfaciques d'un résultat make_valid."""
    if geom is None or geom.is_empty:
        return None
    if isinstance(geom, Polygon):
        return MultiPolygon([geom])
    if isinstance(geom, MultiPolygon):
        return geom
    if isinstance(geom, GeometryCollection):
        parts = [g for g in geom.geoms if isinstance(g, (Polygon, MultiPolygon)) and not g.is_empty]
        if not parts:
            return None
        merged = unary_union(parts)
        return _polygonal_part(merged)
    return None


def try_fix_geometry(geometry: GeoJSON) -> RepairResult:
    """
    Réparation best-effort : make_valid puis, à défaut, buffer(0).
    Un résultat vide ou non surfacique est un échec.
    """
    try:
        original = shape(geometry)
    except _SHAPELY_ERRORS as exc:
        return RepairResult(ok=False, reason=f"Géométrie illisible : {exc}")

    candidates = []
    try:
        candidates.append(make_valid(original))
    except _SHAPELY_ERRORS:
        pass
    try:
        candidates.append(original.buffer(0))
    except _SHAPELY_ERRORS:
        pass

    for candidate in candidates:
        polygonal = _polygonal_part(candidate)
        if polygonal is not None and polygonal.is_valid and polygonal.area > 0:
            fixed = normalize_ring_orientation(
                {"type": "MultiPolygon", "coordinates": _as_lists(mapping(polygonal)["coordinates"])}
            )
            return RepairResult(ok=True, geometry=fixed)

    return RepairResult(ok=False, reason=explain_invalidity(geometry))


# ── Mesures ───────────────────────────────────────────────────────────────────

def calculate_area_ha(geometry: GeoJSON) -> float:
    """Surface géodésique sur l'ellipsoïde WGS84, en hectares (4 décimales)."""
    try:
        area_m2, _ = WGS84_GEOD.geometry_area_perimeter(shape(geometry))
    except _SHAPELY_ERRORS + (GeodError,):
        return 0.0
    # Coordonnées hors ellipsoïde (données projetées) : surface non calculable
    if not math.isfinite(area_m2):
        return 0.0
    return round(abs(area_m2) / 10_000, 4)


def calculate_centroid(geometry: GeoJSON) -> dict[str, float]:
    """
    Point représentatif intérieur (point_on_surface) : contrairement au
    centroïde géométrique, il reste dans la parcelle même si elle est concave.
    """
    precision = settings.DISPLAY_COORDINATE_PRECISION
    try:
        geom = shape(geometry)
        point = geom.point_on_surface()
        if point.is_empty:
            point = geom.centroid
    except _SHAPELY_ERRORS:
        positions = list(_iter_positions(geometry))
        if not positions:
            return {"lat": 0.0, "lng": 0.0}
        lng = sum(p[0] for p in positions) / len(positions)
        lat = sum(p[1] for p in positions) / len(positions)
        return {"lat": round(lat, precision), "lng": round(lng, precision)}
    return {"lat": round(point.y, precision), "lng": round(point.x, precision)}


# ── Hash de contenu ───────────────────────────────────────────────────────────

def _first_position_key(rings_or_ring: list) -> tuple:
    first = rings_or_ring[0]
    return (first[0], first[1])


def normalize_for_hash(geometry: GeoJSON, precision: Optional[int] = None) -> GeoJSON:
    """
    Forme canonique pour le hash : MultiPolygon 2D, coordonnées arrondies,
    orientation normalisée, trous puis polygones triés par première coordonnée.
    """
    precision = settings.HASH_COORDINATE_PRECISION if precision is None else precision
    multi = strip_z_dimension(normalize_to_multipolygon(geometry))

    polygons = []
    for polygon in multi["coordinates"]:
        rounded = [[[round(c, precision) for c in position] for position in ring] for ring in polygon]
        exterior, *interiors = _orient_rings(rounded)
        interiors.sort(key=_first_position_key)
        polygons.append([exterior, *interiors])

    polygons.sort(key=lambda polygon: _first_position_key(polygon[0]))
    return {"type": "MultiPolygon", "coordinates": polygons}


def compute_feature_hash(geometry: GeoJSON) -> HashResult:
    """SHA-256 hexadécimal de la forme canonique. Ne lève jamais."""
    try:
        normalized = normalize_for_hash(geometry)
        payload = json.dumps(normalized, separators=(",", ":"))
    except (ValueError, TypeError, IndexError, KeyError, AttributeError) as exc:
        return HashResult(ok=False, reason=str(exc))
    return HashResult(ok=True, hash=hashlib.sha256(payload.encode("utf-8")).hexdigest())
