"""
Pipeline par feature — de la sortie brute d'un parseur aux ParsedFeature

Pour chaque feature, dans l'ordre :
1. géométrie vide → erreur INVALID_GEOMETRY, feature écartée
2. bornes WGS84 → avertissement LIKELY_PROJECTED_COORDINATES (sans .prj)
3. validité OGC → réparation ; échec → erreur INVALID_GEOMETRY, feature écartée
4. hash de contenu → échec = erreur VALIDATION_ERROR, feature écartée
5. surface, centroïde, libellé

La détection des doublons (étape 4 bis) nécessite la base : voir
`mark_duplicates`, appelé par l'orchestrateur après une requête groupée.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from cocoatrack.core.errors import ErrorCode, invalid_geometry
from cocoatrack.schemas.imports import Centroid, FeatureValidation, ParsedFeature, ParseIssue
from cocoatrack.services import geometry_service
from cocoatrack.services.parsers.base import GeoParseResult

LABEL_KEYS = ("name", "NAME", "label", "LABEL", "nom", "NOM", "description")


@dataclass
class PipelineResult:
    features: list[ParsedFeature] = field(default_factory=list)
    errors: list[ParseIssue] = field(default_factory=list)
    warnings: list[ParseIssue] = field(default_factory=list)

    @property
    def hashes(self) -> list[str]:
        return [f.feature_hash for f in self.features]


def extract_label(properties: dict[str, Any]) -> Optional[str]:
    """Premier attribut non vide parmi les variantes courantes de nom/libellé."""
    for key in LABEL_KEYS:
        value = properties.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _issue(code: ErrorCode, message: str, index: int, requires_confirmation=None, **details) -> ParseIssue:
    details.setdefault("feature_index", index)
    return ParseIssue(
        code=code.value,
        message=message,
        feature_index=index,
        details=details,
        requires_confirmation=requires_confirmation,
    )


def process_features(parsed: GeoParseResult) -> PipelineResult:
    result = PipelineResult(errors=list(parsed.errors), warnings=list(parsed.warnings))

    for raw in parsed.features:
        i = raw.feature_index
        geometry = raw.geometry
        feature_warnings: list[str] = []

        # ── 1. Géométrie vide ─────────────────────────────────────────────
        if geometry_service.is_empty_geometry(geometry):
            result.errors.append(ParseIssue.from_error(invalid_geometry("géométrie vide", i)))
            continue

        # ── 2. Bornes WGS84 ───────────────────────────────────────────────
        in_bounds, _ = geometry_service.validate_coordinates(geometry)
        if not in_bounds and not parsed.has_projection_info:
            likely, sample = geometry_service.detect_projected_coordinates(geometry)
            if likely:
                result.warnings.append(_issue(
                    ErrorCode.LIKELY_PROJECTED_COORDINATES,
                    f"Feature {i} : les coordonnées semblent projetées (pas en WGS84)",
                    i,
                    requires_confirmation=True,
                    sample_coord=sample,
                ))
                feature_warnings.append("Coordonnées probablement projetées (pas en WGS84)")

        # ── 3. Validité et réparation ─────────────────────────────────────
        geom_original_valid = True
        geom_fixed = None
        if not geometry_service.is_valid_geometry(geometry):
            geom_original_valid = False
            repair = geometry_service.try_fix_geometry(geometry)
            if not repair.ok:
                reason = repair.reason or "non réparable"
                result.errors.append(ParseIssue.from_error(invalid_geometry(reason, i)))
                continue
            geometry = geom_fixed = repair.geometry
            feature_warnings.append("Géométrie corrigée automatiquement")

        # ── 4. Hash ───────────────────────────────────────────────────────
        hashed = geometry_service.compute_feature_hash(geometry)
        if not hashed.ok:
            result.errors.append(_issue(
                ErrorCode.VALIDATION_ERROR,
                f"Feature {i} : échec du calcul du hash",
                i,
                reason=hashed.reason,
            ))
            continue

        # ── 5. Mesures et libellé ─────────────────────────────────────────
        result.features.append(ParsedFeature(
            temp_id=str(uuid.uuid4()),
            feature_index=i,
            label=extract_label(raw.properties),
            dbf_attributes=raw.properties,
            geom_geojson=geometry,
            geom_original_valid=geom_original_valid,
            geom_fixed=geom_fixed,
            area_ha=geometry_service.calculate_area_ha(geometry),
            centroid=Centroid(**geometry_service.calculate_centroid(geometry)),
            validation=FeatureValidation(ok=True, warnings=feature_warnings),
            feature_hash=hashed.hash,
        ))

    return result


def mark_duplicates(result: PipelineResult, existing: dict[str, uuid.UUID]) -> None:
    """
    Signale les features dont le hash existe déjà parmi les parcelles actives.
    Elles restent dans la liste (affichage) mais ne seront jamais créées.
    """
    for feature in result.features:
        existing_id = existing.get(feature.feature_hash)
        if existing_id is None:
            continue
        feature.is_duplicate = True
        feature.existing_parcelle_id = existing_id
        feature.validation.warnings.append(f"Doublon de la parcelle existante {existing_id}")
        result.warnings.append(_issue(
            ErrorCode.DUPLICATE_GEOMETRY,
            f"Feature {feature.feature_index} : géométrie déjà présente",
            feature.feature_index,
            existing_parcelle_id=str(existing_id),
        ))


def sort_by_hash(result: PipelineResult) -> None:
    """Ordre déterministe, stable entre deux parses du même fichier."""
    result.features.sort(key=lambda f: f.feature_hash)


def is_applicable(feature: ParsedFeature) -> bool:
    return feature.validation.ok and not feature.is_duplicate
