"""
Taxonomie d'erreurs du module parcelles — codes stables + détails structurés

Chaque erreur porte un code machine, un message lisible et un dictionnaire de
détails exploitable par l'UI (index de feature, extensions manquantes,
limite dépassée…).
"""
from enum import Enum as PyEnum
from typing import Any, Optional


class ErrorCode(str, PyEnum):
    # Import / fichiers
    SHAPEFILE_MISSING_REQUIRED = "SHAPEFILE_MISSING_REQUIRED"
    INVALID_GEOMETRY = "INVALID_GEOMETRY"
    UNSUPPORTED_GEOMETRY_TYPE = "UNSUPPORTED_GEOMETRY_TYPE"
    LIKELY_PROJECTED_COORDINATES = "LIKELY_PROJECTED_COORDINATES"
    MISSING_PRJ_ASSUMED_WGS84 = "MISSING_PRJ_ASSUMED_WGS84"
    DUPLICATE_GEOMETRY = "DUPLICATE_GEOMETRY"
    DUPLICATE_FILE = "DUPLICATE_FILE"
    IMPORT_ALREADY_APPLIED = "IMPORT_ALREADY_APPLIED"
    # Limites
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    # Général
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


DEFAULT_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.SHAPEFILE_MISSING_REQUIRED: "Composants Shapefile obligatoires manquants (.shp, .shx, .dbf)",
    ErrorCode.INVALID_GEOMETRY: "Géométrie invalide",
    ErrorCode.UNSUPPORTED_GEOMETRY_TYPE: "Type de géométrie non supporté. Seuls Polygon et MultiPolygon sont acceptés",
    ErrorCode.LIKELY_PROJECTED_COORDINATES: "Les coordonnées semblent projetées (pas en WGS84)",
    ErrorCode.MISSING_PRJ_ASSUMED_WGS84: "Fichier .prj absent, WGS84 (EPSG:4326) supposé",
    ErrorCode.DUPLICATE_GEOMETRY: "Une parcelle avec cette géométrie existe déjà",
    ErrorCode.DUPLICATE_FILE: "Ce fichier a déjà été importé",
    ErrorCode.IMPORT_ALREADY_APPLIED: "Cet import a déjà été appliqué",
    ErrorCode.LIMIT_EXCEEDED: "Limite dépassée",
    ErrorCode.VALIDATION_ERROR: "Erreur de validation",
    ErrorCode.NOT_FOUND: "Ressource introuvable",
    ErrorCode.UNAUTHORIZED: "Action non autorisée",
    ErrorCode.INTERNAL_ERROR: "Erreur interne",
}


class ParcelleError(Exception):
    """Erreur métier du pipeline d'import, sérialisable telle quelle vers l'API."""

    error_code = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        requires_confirmation: Optional[bool] = None,
        code: Optional[ErrorCode] = None,
    ):
        if code is not None:
            self.error_code = code
        self.message = message or DEFAULT_MESSAGES[self.error_code]
        self.details = details or {}
        self.requires_confirmation = requires_confirmation
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }
        if self.requires_confirmation is not None:
            payload["requires_confirmation"] = self.requires_confirmation
        return payload


class ShapefileMissingRequiredError(ParcelleError):
    error_code = ErrorCode.SHAPEFILE_MISSING_REQUIRED


class InvalidGeometryError(ParcelleError):
    error_code = ErrorCode.INVALID_GEOMETRY


class DuplicateFileError(ParcelleError):
    error_code = ErrorCode.DUPLICATE_FILE


class ImportAlreadyAppliedError(ParcelleError):
    error_code = ErrorCode.IMPORT_ALREADY_APPLIED


class LimitExceededError(ParcelleError):
    error_code = ErrorCode.LIMIT_EXCEEDED


class ValidationError(ParcelleError):
    error_code = ErrorCode.VALIDATION_ERROR


class NotFoundError(ParcelleError):
    error_code = ErrorCode.NOT_FOUND


class UnauthorizedError(ParcelleError):
    error_code = ErrorCode.UNAUTHORIZED


class InternalError(ParcelleError):
    error_code = ErrorCode.INTERNAL_ERROR
    reason: Optional[str] = None


# ── Fabriques ─────────────────────────────────────────────────────────────────

def shapefile_missing(missing: list[str]) -> ShapefileMissingRequiredError:
    return ShapefileMissingRequiredError(
        f"Composants Shapefile manquants : {', '.join(missing)}",
        {"missing": missing},
    )


def invalid_geometry(reason: str, feature_index: Optional[int] = None) -> InvalidGeometryError:
    details: dict[str, Any] = {"reason": reason}
    message = f"Géométrie invalide : {reason}"
    if feature_index is not None:
        details["feature_index"] = feature_index
        message = f"Feature {feature_index} : géométrie invalide ({reason})"
    return InvalidGeometryError(message, details)


def duplicate_file(existing_import_id: str) -> DuplicateFileError:
    return DuplicateFileError(details={"existing_import_id": existing_import_id})


def already_applied(import_id: str) -> ImportAlreadyAppliedError:
    return ImportAlreadyAppliedError(
        "Cet import a déjà été appliqué et ne peut pas être ré-appliqué",
        {"import_id": import_id},
    )


def limit_exceeded(limit: int, actual: int, resource: str) -> LimitExceededError:
    return LimitExceededError(
        f"Limite {resource} dépassée : maximum {limit}, reçu {actual}.",
        {"limit": limit, "actual": actual, "resource": resource},
    )


def validation_error(field: str, message: str) -> ValidationError:
    return ValidationError(message, {"field": field, "message": message})


def not_found(resource_type: str, resource_id: str) -> NotFoundError:
    return NotFoundError(
        f"{resource_type} introuvable",
        {"resource_type": resource_type, "id": resource_id},
    )


def unauthorized(message: Optional[str] = None) -> UnauthorizedError:
    return UnauthorizedError(message or "Non authentifié")


def internal_error(reason: Optional[str] = None) -> InternalError:
    """La raison reste dans les logs ; elle n'est jamais renvoyée au client."""
    exc = InternalError()
    exc.reason = reason
    return exc
