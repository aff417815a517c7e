"""
Schémas Pydantic — import de parcelles (rapport de parse, prévisualisation, application)
"""
import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from cocoatrack.core.errors import ParcelleError
from cocoatrack.models.import_file import ImportFileType, ImportStatus
from cocoatrack.models.parcelle import CERTIFICATIONS_WHITELIST, ConformityStatus


# ── Rapport de parse ──────────────────────────────────────────────────────────

class ParseIssue(BaseModel):
    code: str
    message: str
    feature_index: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict)
    requires_confirmation: Optional[bool] = None

    @classmethod
    def from_error(cls, exc: ParcelleError) -> "ParseIssue":
        return cls(
            code=exc.error_code.value,
            message=exc.message,
            feature_index=exc.details.get("feature_index"),
            details=exc.details,
        )


class ParseReport(BaseModel):
    nb_features: int = 0
    errors: list[ParseIssue] = Field(default_factory=list)
    warnings: list[ParseIssue] = Field(default_factory=list)


class Centroid(BaseModel):
    lat: float
    lng: float


class FeatureValidation(BaseModel):
    ok: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ParsedFeature(BaseModel):
    """Feature éphémère produite par le parse, consommée par l'application."""
    temp_id: str
    feature_index: int
    label: Optional[str] = None
    dbf_attributes: dict[str, Any] = Field(default_factory=dict)
    geom_geojson: dict[str, Any]
    geom_original_valid: bool = True
    geom_fixed: Optional[dict[str, Any]] = None
    area_ha: float = 0.0
    centroid: Centroid
    validation: FeatureValidation = Field(default_factory=FeatureValidation)
    feature_hash: str
    is_duplicate: bool = False
    existing_parcelle_id: Optional[uuid.UUID] = None


class ParseResult(BaseModel):
    import_file_id: uuid.UUID
    status: ImportStatus
    features: list[ParsedFeature]
    report: ParseReport
    available_fields: list[str]


# ── Fichier d'import ──────────────────────────────────────────────────────────

class ImportFileOut(BaseModel):
    id: uuid.UUID
    cooperative_id: Optional[uuid.UUID] = None
    planteur_id: Optional[uuid.UUID] = None
    filename: str
    file_type: ImportFileType
    file_sha256: str
    file_size_bytes: int
    import_status: ImportStatus
    failed_reason: Optional[str] = None
    parse_report: Optional[dict[str, Any]] = None
    nb_features: int
    nb_applied: int
    nb_skipped_duplicates: int
    created_by: uuid.UUID
    applied_by: Optional[uuid.UUID] = None
    applied_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ImportFileList(BaseModel):
    items: list[ImportFileOut]
    total: int
    limit: int
    offset: int


class DownloadUrlResponse(BaseModel):
    url: str
    expires_in: int


# ── Prévisualisation auto-create ──────────────────────────────────────────────

class PreviewRequest(BaseModel):
    planteur_name_field: str = Field(..., min_length=1)


class NewPlanteurPreview(BaseModel):
    name: str
    name_norm: str
    parcelle_count: int


class ExistingPlanteurPreview(BaseModel):
    id: uuid.UUID
    name: str
    parcelle_count: int


class AutoCreatePreview(BaseModel):
    new_planteurs: list[NewPlanteurPreview]
    existing_planteurs: list[ExistingPlanteurPreview]
    orphan_count: int


# ── Application ───────────────────────────────────────────────────────────────

class FieldMapping(BaseModel):
    label_field: Optional[str] = None
    code_field: Optional[str] = None
    village_field: Optional[str] = None
    conformity_status_field: Optional[str] = None


class ImportDefaults(BaseModel):
    conformity_status: ConformityStatus = ConformityStatus.INFORMATIONS_MANQUANTES
    certifications: list[str] = Field(default_factory=list)
    auto_detect_conformity: bool = False

    @field_validator("certifications")
    @classmethod
    def validate_certifications(cls, v):
        unknown = [c for c in v if c not in CERTIFICATIONS_WHITELIST]
        if unknown:
            raise ValueError(f"Certifications inconnues : {unknown}. Valeurs acceptées : {list(CERTIFICATIONS_WHITELIST)}")
        # Dédoublonnage en conservant l'ordre
        return list(dict.fromkeys(v))


class _ApplyBase(BaseModel):
    mapping: FieldMapping = Field(default_factory=FieldMapping)
    defaults: ImportDefaults = Field(default_factory=ImportDefaults)


class AssignMode(_ApplyBase):
    mode: Literal["assign"] = "assign"
    planteur_id: uuid.UUID


class OrphanMode(_ApplyBase):
    mode: Literal["orphan"] = "orphan"


class AutoCreateMode(_ApplyBase):
    mode: Literal["auto_create"] = "auto_create"
    planteur_name_field: str = Field(..., min_length=1)
    default_chef_planteur_id: Optional[uuid.UUID] = None


ApplyImportRequest = Annotated[
    Union[AssignMode, OrphanMode, AutoCreateMode],
    Field(discriminator="mode"),
]


class ApplyImportResult(BaseModel):
    import_file_id: uuid.UUID
    mode: str
    nb_applied: int
    nb_skipped: int
    created_ids: list[uuid.UUID]
    planteurs_created: int = 0
    planteurs_reused: int = 0
    orphans_created: int = 0
    recovered: bool = False
