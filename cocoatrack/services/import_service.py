"""
Orchestrateur d'import de parcelles

Workflow : upload → parse → (preview auto-create) → apply

- Le contexte appelant (utilisateur, coopérative) est passé explicitement à
  chaque opération.
- Le fichier `ImportFile` est le seul point de coordination : aucune prise de
  verrou, la sûreté repose sur des re-contrôles idempotents (statut, parcelles
  déjà rattachées à l'import) et sur les contraintes d'unicité de la base.
"""
import hashlib
import io
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cocoatrack.config import Settings, settings as default_settings
from cocoatrack.core.errors import (
    ErrorCode, ParcelleError, already_applied, duplicate_file, limit_exceeded,
    not_found, validation_error,
)
from cocoatrack.core.logging import log_event
from cocoatrack.core.security import validate_file_magic
from cocoatrack.core.storage import StorageBackend, build_storage_key, get_storage
from cocoatrack.models.import_file import ImportFile, ImportFileType, ImportStatus
from cocoatrack.models.parcelle import ConformityStatus, Parcelle, ParcelleSource
from cocoatrack.models.planteur import Planteur  # noqa: F401  (mapper Parcelle.planteur)
from cocoatrack.schemas.imports import (
    ApplyImportResult, AssignMode, AutoCreateMode, AutoCreatePreview, ExistingPlanteurPreview,
    NewPlanteurPreview, OrphanMode, ParsedFeature, ParseIssue, ParseReport, ParseResult,
)
from cocoatrack.services import geometry_service
from cocoatrack.services.conformity import detect_conformity_status, map_field_to_conformity_status
from cocoatrack.services.feature_pipeline import (
    is_applicable, mark_duplicates, process_features, sort_by_hash,
)
from cocoatrack.services.name_matching import normalize_name
from cocoatrack.services.parcelle_repository import InsertOutcome, ParcelleRepository
from cocoatrack.services.parsers.base import get_parser
from cocoatrack.services.planteur_registry import PlanteurRegistry

logger = logging.getLogger(__name__)

# Codes PARC-NNNN essayés par parcelle avant de l'ignorer
MAX_CODE_ATTEMPTS = 50

SOURCE_BY_FILE_TYPE: dict[ImportFileType, ParcelleSource] = {
    ImportFileType.SHAPEFILE_ZIP: ParcelleSource.SHAPEFILE,
    ImportFileType.KML: ParcelleSource.KML,
    ImportFileType.KMZ: ParcelleSource.KML,
    ImportFileType.GEOJSON: ParcelleSource.GEOJSON,
}


@dataclass
class ImportContext:
    """Identité de l'appelant, résolue par la couche API."""
    user_id: uuid.UUID
    cooperative_id: Optional[uuid.UUID] = None


@dataclass
class Analysis:
    features: list[ParsedFeature]
    report: ParseReport
    available_fields: list[str]


@dataclass
class _ApplyOutcome:
    created_ids: list[uuid.UUID] = field(default_factory=list)
    nb_skipped: int = 0
    planteurs_created: int = 0
    planteurs_reused: int = 0
    orphans_created: int = 0


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _mapped_code(feature: ParsedFeature, request) -> Optional[str]:
    """Code parcelle lu dans le champ mappé, None s'il est absent ou vide."""
    code_field = request.mapping.code_field
    value = feature.dbf_attributes.get(code_field) if code_field else None
    if value is None or str(value).strip() == "":
        return None
    return str(value)


def _owner_name(feature: ParsedFeature, field_name: str) -> Optional[str]:
    value = feature.dbf_attributes.get(field_name)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def group_by_owner(
    features: list[ParsedFeature], field_name: str
) -> tuple[dict[str, tuple[str, list[ParsedFeature]]], list[ParsedFeature], int]:
    """
    Regroupe les features applicables par nom normalisé (ordre de première
    apparition, donc ordre des hash). Retourne (groupes, orphelines, ignorées).
    """
    groups: dict[str, tuple[str, list[ParsedFeature]]] = {}
    orphans: list[ParsedFeature] = []
    skipped = 0
    for feature in features:
        if not is_applicable(feature):
            skipped += 1
            continue
        name = _owner_name(feature, field_name)
        if name is None:
            orphans.append(feature)
            continue
        name_norm = normalize_name(name)
        groups.setdefault(name_norm, (name, []))[1].append(feature)
    return groups, orphans, skipped


class ImportService:
    def __init__(
        self,
        db: AsyncSession,
        storage: Optional[StorageBackend] = None,
        config: Settings = default_settings,
    ):
        self.db = db
        self.storage = storage or get_storage()
        self.settings = config
        self.parcelles = ParcelleRepository(db)
        self.planteurs = PlanteurRegistry(db, batch_size=config.OWNER_LOOKUP_BATCH_SIZE)

    # ── Lecture ───────────────────────────────────────────────────────────

    def _scope_filter(self, ctx: ImportContext):
        if ctx.cooperative_id is None:
            coop_clause = ImportFile.cooperative_id.is_(None)
        else:
            coop_clause = ImportFile.cooperative_id == ctx.cooperative_id
        return or_(coop_clause, ImportFile.created_by == ctx.user_id)

    async def get_import(self, ctx: ImportContext, import_id: uuid.UUID) -> ImportFile:
        """Un import hors du périmètre de l'appelant est traité comme inexistant."""
        result = await self.db.execute(
            select(ImportFile).where(ImportFile.id == import_id, self._scope_filter(ctx))
        )
        import_file = result.scalar_one_or_none()
        if import_file is None:
            raise not_found("ImportFile", str(import_id))
        return import_file

    async def list_imports(
        self,
        ctx: ImportContext,
        status: Optional[ImportStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ImportFile], int]:
        query = select(ImportFile).where(self._scope_filter(ctx))
        if status is not None:
            query = query.where(ImportFile.import_status == status)

        total = (await self.db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
        result = await self.db.execute(
            query.order_by(ImportFile.created_at.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars()), total

    async def get_download_url(
        self, ctx: ImportContext, import_id: uuid.UUID, expires_in: Optional[int] = None
    ) -> str:
        import_file = await self.get_import(ctx, import_id)
        return await self.storage.get_url(
            import_file.storage_url, expires_in or self.settings.SIGNED_URL_EXPIRES_SECONDS
        )

    async def read_stored_file(self, ctx: ImportContext, key: str) -> tuple[ImportFile, bytes]:
        result = await self.db.execute(
            select(ImportFile)
            .where(ImportFile.storage_url == key, self._scope_filter(ctx))
            .order_by(ImportFile.created_at.desc())
        )
        import_file = result.scalars().first()
        if import_file is None:
            raise not_found("ImportFile", key)
        return import_file, await self.storage.read(key)

    # ── Upload ────────────────────────────────────────────────────────────

    def _resolve_file_type(self, filename: str) -> tuple[str, ImportFileType]:
        ext = Path(filename).suffix.lower().lstrip(".")
        if ext == "rar":
            raise validation_error(
                "file",
                "Les archives RAR ne sont pas supportées. Recompressez le shapefile au format .zip",
            )
        file_type = self.settings.ALLOWED_EXTENSIONS.get(ext)
        if file_type is None:
            accepted = ", ".join(f".{e}" for e in sorted(self.settings.ALLOWED_EXTENSIONS))
            raise validation_error("file", f"Extension .{ext} non supportée. Formats acceptés : {accepted}")
        return ext, ImportFileType(file_type)

    async def _find_live_duplicate(self, cooperative_id: Optional[uuid.UUID], sha256: str) -> Optional[uuid.UUID]:
        coop_clause = (
            ImportFile.cooperative_id.is_(None)
            if cooperative_id is None
            else ImportFile.cooperative_id == cooperative_id
        )
        result = await self.db.execute(
            select(ImportFile.id).where(
                coop_clause,
                ImportFile.file_sha256 == sha256,
                ImportFile.import_status != ImportStatus.FAILED,
            )
        )
        return result.scalars().first()

    async def upload(
        self,
        ctx: ImportContext,
        filename: str,
        content: bytes,
        planteur_id: Optional[uuid.UUID] = None,
    ) -> ImportFile:
        """
        Contrôles avant tout stockage : extension, taille, magic bytes, planteur,
        doublon (coopérative, sha256) parmi les imports non échoués.
        """
        started = time.perf_counter()
        ext, file_type = self._resolve_file_type(filename)

        if not content:
            raise validation_error("file", "Le fichier uploadé est vide")
        max_bytes = self.settings.max_import_file_size_bytes
        if len(content) > max_bytes:
            raise limit_exceeded(max_bytes, len(content), "file_size_bytes")
        if not validate_file_magic(content, ext):
            raise validation_error("file", "Le contenu du fichier ne correspond pas à son extension")

        if planteur_id is not None:
            planteur = await self.planteurs.get_in_scope(planteur_id, ctx.cooperative_id)
            if planteur is None:
                raise validation_error("planteur_id", "Planteur introuvable dans votre coopérative")

        sha256 = hashlib.sha256(content).hexdigest()
        existing_id = await self._find_live_duplicate(ctx.cooperative_id, sha256)
        if existing_id is not None:
            raise duplicate_file(str(existing_id))

        key = build_storage_key(str(ctx.cooperative_id) if ctx.cooperative_id else None, sha256, filename)
        await self.storage.save(io.BytesIO(content), key)

        import_file = ImportFile(
            cooperative_id=ctx.cooperative_id,
            planteur_id=planteur_id,
            filename=Path(filename).name,
            storage_url=key,
            file_type=file_type,
            file_sha256=sha256,
            file_size_bytes=len(content),
            import_status=ImportStatus.UPLOADED,
            nb_features=0,
            nb_applied=0,
            nb_skipped_duplicates=0,
            created_by=ctx.user_id,
        )
        self.db.add(import_file)
        try:
            await self.db.commit()
        except IntegrityError:
            # Upload concurrent du même fichier : l'index partiel a tranché
            await self.db.rollback()
            existing_id = await self._find_live_duplicate(ctx.cooperative_id, sha256)
            raise duplicate_file(str(existing_id) if existing_id else "")

        log_event(
            logger, f"Fichier importé : {import_file.filename}",
            event="import_uploaded", import_id=import_file.id, cooperative_id=ctx.cooperative_id,
            user_id=ctx.user_id, duration_ms=_elapsed_ms(started),
        )
        return import_file

    # ── Analyse (sans écriture) ───────────────────────────────────────────

    async def _analyze(self, import_file: ImportFile) -> Analysis:
        """
        Lecture du fichier stocké, parse du format, pipeline par feature et
        détection des doublons. Ne modifie rien : réutilisé par parse,
        preview et apply.
        """
        content = await self.storage.read(import_file.storage_url)
        parsed = get_parser(import_file.file_type).parse(content)

        ceiling = self.settings.MAX_FEATURES_PER_IMPORT
        if len(parsed.features) > ceiling:
            raise limit_exceeded(ceiling, len(parsed.features), "features")

        pipeline = process_features(parsed)
        existing = await self.parcelles.find_active_by_hashes(pipeline.hashes)
        mark_duplicates(pipeline, existing)
        sort_by_hash(pipeline)

        report = ParseReport(
            nb_features=len(pipeline.features),
            errors=pipeline.errors,
            warnings=pipeline.warnings,
        )
        return Analysis(features=pipeline.features, report=report, available_fields=parsed.available_fields)

    # ── Parse ─────────────────────────────────────────────────────────────

    async def _mark_failed(self, import_file: ImportFile, exc: ParcelleError, report: Optional[ParseReport] = None) -> None:
        if report is None:
            report = ParseReport(
                nb_features=int(exc.details.get("actual", 0)) if exc.error_code == ErrorCode.LIMIT_EXCEEDED else 0,
                errors=[ParseIssue.from_error(exc)],
            )
        import_file.import_status = ImportStatus.FAILED
        import_file.failed_reason = exc.message
        import_file.parse_report = report.model_dump(mode="json")
        import_file.nb_features = report.nb_features
        await self.db.commit()
        log_event(
            logger, f"Parse en échec : {exc.message}",
            level=logging.WARNING, event="import_parse_failed",
            import_id=import_file.id, cooperative_id=import_file.cooperative_id,
            error_code=exc.error_code.value,
        )

    async def parse(self, ctx: ImportContext, import_id: uuid.UUID) -> ParseResult:
        """Idempotent : un nouveau parse remplace le rapport précédent."""
        started = time.perf_counter()
        import_file = await self.get_import(ctx, import_id)

        if import_file.import_status == ImportStatus.APPLIED:
            raise already_applied(str(import_file.id))
        if import_file.import_status == ImportStatus.FAILED:
            raise validation_error(
                "import_status",
                "Cet import est en échec : téléversez à nouveau le fichier corrigé",
            )

        try:
            analysis = await self._analyze(import_file)
        except ParcelleError as exc:
            await self._mark_failed(import_file, exc)
            raise

        if not analysis.features:
            exc = validation_error("features", "Aucune géométrie polygonale valide dans le fichier")
            analysis.report.errors.append(
                ParseIssue.from_error(exc)
            )
            await self._mark_failed(import_file, exc, analysis.report)
            raise exc

        import_file.import_status = ImportStatus.PARSED
        import_file.failed_reason = None
        import_file.parse_report = analysis.report.model_dump(mode="json")
        import_file.nb_features = len(analysis.features)
        await self.db.commit()

        log_event(
            logger, f"Import analysé : {len(analysis.features)} features",
            event="import_parsed", import_id=import_file.id, cooperative_id=import_file.cooperative_id,
            user_id=ctx.user_id, duration_ms=_elapsed_ms(started),
        )
        return ParseResult(
            import_file_id=import_file.id,
            status=ImportStatus.PARSED,
            features=analysis.features,
            report=analysis.report,
            available_fields=analysis.available_fields,
        )

    # ── Prévisualisation auto-create ──────────────────────────────────────

    def _require_parsed(self, import_file: ImportFile, action: str) -> None:
        if import_file.import_status != ImportStatus.PARSED:
            status = ImportStatus(import_file.import_status).value
            raise validation_error(
                "import_status",
                f"L'import doit être au statut 'parsed' pour {action} (statut actuel : '{status}')",
            )

    def _require_field(self, analysis: Analysis, field_name: str) -> None:
        if field_name not in analysis.available_fields:
            raise validation_error(
                "planteur_name_field",
                f"Le champ '{field_name}' n'existe pas dans le fichier. "
                f"Champs disponibles : {', '.join(analysis.available_fields)}",
            )

    async def preview_auto_create(
        self, ctx: ImportContext, import_id: uuid.UUID, planteur_name_field: str
    ) -> AutoCreatePreview:
        if not planteur_name_field or not planteur_name_field.strip():
            raise validation_error("planteur_name_field", "Le champ contenant le nom du planteur est obligatoire")

        import_file = await self.get_import(ctx, import_id)
        self._require_parsed(import_file, "être prévisualisé")

        analysis = await self._analyze(import_file)
        self._require_field(analysis, planteur_name_field)

        groups, orphans, _ = group_by_owner(analysis.features, planteur_name_field)
        scope = import_file.cooperative_id
        existing = await self.planteurs.find_by_normalized_names(list(groups), scope)

        new_planteurs = []
        existing_planteurs = []
        for name_norm, (name, features) in groups.items():
            planteur = existing.get(name_norm)
            if planteur is not None:
                existing_planteurs.append(
                    ExistingPlanteurPreview(id=planteur.id, name=planteur.name, parcelle_count=len(features))
                )
            else:
                new_planteurs.append(
                    NewPlanteurPreview(name=name, name_norm=name_norm, parcelle_count=len(features))
                )

        new_planteurs.sort(key=lambda p: (p.name_norm, p.name))
        existing_planteurs.sort(key=lambda p: (normalize_name(p.name), p.name))
        return AutoCreatePreview(
            new_planteurs=new_planteurs,
            existing_planteurs=existing_planteurs,
            orphan_count=len(orphans),
        )

    # ── Application ───────────────────────────────────────────────────────

    async def _record_applied(
        self, import_file: ImportFile, ctx: ImportContext, result: ApplyImportResult
    ) -> None:
        import_file.import_status = ImportStatus.APPLIED
        import_file.nb_applied = result.nb_applied
        import_file.nb_skipped_duplicates = result.nb_skipped
        import_file.applied_by = ctx.user_id
        import_file.applied_at = datetime.utcnow()
        import_file.apply_result = result.model_dump(mode="json")
        await self.db.commit()

    async def _check_mode_preconditions(self, import_file: ImportFile, request) -> None:
        """Toute incohérence de périmètre rejette l'application avant écriture."""
        if isinstance(request, AssignMode):
            planteur = await self.planteurs.get_in_scope(request.planteur_id, import_file.cooperative_id)
            if planteur is None:
                raise validation_error(
                    "planteur_id",
                    "Planteur introuvable ou n'appartenant pas à la coopérative de l'import",
                )
        elif isinstance(request, AutoCreateMode) and request.default_chef_planteur_id is not None:
            chef = await self.planteurs.get_chef_in_scope(
                request.default_chef_planteur_id, import_file.cooperative_id
            )
            if chef is None:
                raise validation_error(
                    "default_chef_planteur_id",
                    "Chef planteur introuvable ou n'appartenant pas à la coopérative de l'import",
                )

    def _conformity_for(
        self, feature: ParsedFeature, request, owner_field: Optional[str]
    ) -> ConformityStatus:
        attrs = feature.dbf_attributes
        status_field = request.mapping.conformity_status_field
        if status_field and attrs.get(status_field) is not None:
            mapped = map_field_to_conformity_status(attrs[status_field])
            return mapped or request.defaults.conformity_status
        if request.defaults.auto_detect_conformity:
            return detect_conformity_status(attrs, owner_field, feature.area_ha, self.settings)
        return request.defaults.conformity_status

    def _build_parcelle(
        self,
        feature: ParsedFeature,
        request,
        import_file: ImportFile,
        user_id: uuid.UUID,
        planteur_id: Optional[uuid.UUID],
        code_counter: int,
        owner_field: Optional[str] = None,
    ) -> Parcelle:
        attrs: dict[str, Any] = feature.dbf_attributes
        mapping = request.mapping

        label = feature.label
        if mapping.label_field and attrs.get(mapping.label_field) is not None:
            label = str(attrs[mapping.label_field])

        code = None
        if planteur_id is not None:
            code = _mapped_code(feature, request) or f"PARC-{code_counter:04d}"

        village = None
        if mapping.village_field and attrs.get(mapping.village_field) is not None:
            village = str(attrs[mapping.village_field])

        geometry = geometry_service.strip_z_dimension(
            geometry_service.normalize_to_multipolygon(feature.geom_geojson)
        )
        return Parcelle(
            planteur_id=planteur_id,
            code=code,
            label=label,
            village=village,
            geometry=geometry,
            centroid_lat=feature.centroid.lat,
            centroid_lng=feature.centroid.lng,
            surface_hectares=feature.area_ha,
            feature_hash=feature.feature_hash,
            certifications=list(request.defaults.certifications),
            conformity_status=self._conformity_for(feature, request, owner_field),
            source=SOURCE_BY_FILE_TYPE[ImportFileType(import_file.file_type)],
            import_file_id=import_file.id,
            is_active=True,
            created_by=user_id,
        )

    async def _insert_features(
        self,
        features: list[ParsedFeature],
        request,
        import_file: ImportFile,
        ctx: ImportContext,
        outcome: _ApplyOutcome,
        planteur_id: Optional[uuid.UUID],
        owner_field: Optional[str] = None,
    ) -> int:
        """
        Insertion une à une. Un code PARC-NNNN déjà pris (saisie manuelle) est
        sauté et la parcelle retentée avec le suivant ; un code issu du mapping
        en conflit ignore la parcelle, comme un hash déjà actif.
        """
        counter = 1
        if planteur_id is not None:
            counter = await self.parcelles.count_for_planteur(planteur_id) + 1

        created = 0
        for feature in features:
            generated_code = planteur_id is not None and _mapped_code(feature, request) is None
            for _ in range(MAX_CODE_ATTEMPTS):
                parcelle = self._build_parcelle(
                    feature, request, import_file, ctx.user_id, planteur_id, counter, owner_field
                )
                inserted = await self.parcelles.insert_isolated(parcelle, feature.feature_index)
                if inserted == InsertOutcome.CODE_CONFLICT and generated_code:
                    counter += 1
                    continue
                break

            if inserted == InsertOutcome.CREATED:
                outcome.created_ids.append(parcelle.id)
                created += 1
                counter += 1
                continue
            outcome.nb_skipped += 1
            if inserted == InsertOutcome.CODE_CONFLICT:
                log_event(
                    logger, f"Parcelle ignorée : code {parcelle.code} déjà utilisé pour ce planteur",
                    level=logging.WARNING, event="parcelle_insert_skipped",
                    import_id=import_file.id, feature_index=feature.feature_index,
                )
        return created

    async def _apply_single_owner(
        self, features: list[ParsedFeature], request, import_file: ImportFile, ctx: ImportContext,
        planteur_id: Optional[uuid.UUID],
    ) -> _ApplyOutcome:
        outcome = _ApplyOutcome()
        applicable = [f for f in features if is_applicable(f)]
        outcome.nb_skipped += len(features) - len(applicable)
        created = await self._insert_features(applicable, request, import_file, ctx, outcome, planteur_id)
        if planteur_id is None:
            outcome.orphans_created = created
        return outcome

    async def _apply_auto_create(
        self, features: list[ParsedFeature], request: AutoCreateMode, import_file: ImportFile, ctx: ImportContext,
    ) -> _ApplyOutcome:
        outcome = _ApplyOutcome()
        field_name = request.planteur_name_field
        groups, orphans, skipped = group_by_owner(features, field_name)
        outcome.nb_skipped += skipped

        scope = import_file.cooperative_id
        existing = await self.planteurs.find_by_normalized_names(list(groups), scope)

        owner_ids: dict[str, uuid.UUID] = {}
        for name_norm, (name, group_features) in groups.items():
            planteur = existing.get(name_norm)
            if planteur is not None:
                owner_ids[name_norm] = planteur.id
                outcome.planteurs_reused += 1
                continue
            try:
                planteur, created = await self.planteurs.create_or_reuse(
                    name, scope, ctx.user_id, import_file.id, request.default_chef_planteur_id,
                )
            except IntegrityError as exc:
                # Planteur impossible à créer : toutes ses parcelles sont ignorées
                outcome.nb_skipped += len(group_features)
                log_event(
                    logger, f"Création du planteur '{name}' impossible : {exc.orig}",
                    level=logging.ERROR, event="planteur_create_failed",
                    import_id=import_file.id, cooperative_id=scope,
                )
                continue
            owner_ids[name_norm] = planteur.id
            if created:
                outcome.planteurs_created += 1
            else:
                outcome.planteurs_reused += 1

        for name_norm, (_, group_features) in groups.items():
            planteur_id = owner_ids.get(name_norm)
            if planteur_id is None:
                continue
            await self._insert_features(
                group_features, request, import_file, ctx, outcome, planteur_id, field_name
            )

        outcome.orphans_created = await self._insert_features(
            orphans, request, import_file, ctx, outcome, None, field_name
        )
        return outcome

    async def apply(self, ctx: ImportContext, import_id: uuid.UUID, request) -> ApplyImportResult:
        """
        Ordre des contrôles : import existant → déjà appliqué (résultat
        enregistré) → parcelles déjà rattachées (reprise) → statut 'parsed' →
        préconditions du mode → re-parse → insertions → mise à jour du statut.
        """
        started = time.perf_counter()
        import_file = await self.get_import(ctx, import_id)

        if import_file.import_status == ImportStatus.APPLIED:
            if import_file.apply_result:
                return ApplyImportResult.model_validate(import_file.apply_result)
            return ApplyImportResult(
                import_file_id=import_file.id,
                mode=request.mode,
                nb_applied=import_file.nb_applied,
                nb_skipped=import_file.nb_skipped_duplicates,
                created_ids=await self.parcelles.active_ids_for_import(import_file.id),
            )

        # Reprise : insertions validées mais mise à jour du statut perdue
        existing_ids = await self.parcelles.active_ids_for_import(import_file.id)
        if existing_ids:
            result = ApplyImportResult(
                import_file_id=import_file.id,
                mode=request.mode,
                nb_applied=len(existing_ids),
                nb_skipped=0,
                created_ids=existing_ids,
                recovered=True,
            )
            await self._record_applied(import_file, ctx, result)
            log_event(
                logger, f"Import repris : {len(existing_ids)} parcelles déjà créées",
                level=logging.WARNING, event="import_apply_recovered",
                import_id=import_file.id, cooperative_id=import_file.cooperative_id, user_id=ctx.user_id,
            )
            return result

        self._require_parsed(import_file, "être appliqué")
        await self._check_mode_preconditions(import_file, request)

        analysis = await self._analyze(import_file)

        if isinstance(request, AssignMode):
            outcome = await self._apply_single_owner(
                analysis.features, request, import_file, ctx, request.planteur_id
            )
        elif isinstance(request, OrphanMode):
            outcome = await self._apply_single_owner(analysis.features, request, import_file, ctx, None)
        elif isinstance(request, AutoCreateMode):
            self._require_field(analysis, request.planteur_name_field)
            outcome = await self._apply_auto_create(analysis.features, request, import_file, ctx)
        else:
            raise validation_error("mode", f"Mode d'application inconnu : {getattr(request, 'mode', None)}")

        # 1. Parcelles (et planteurs) créés
        await self.db.commit()

        # 2. Statut de l'import
        await self.db.refresh(import_file)
        result = ApplyImportResult(
            import_file_id=import_file.id,
            mode=request.mode,
            nb_applied=len(outcome.created_ids),
            nb_skipped=outcome.nb_skipped,
            created_ids=outcome.created_ids,
            planteurs_created=outcome.planteurs_created,
            planteurs_reused=outcome.planteurs_reused,
            orphans_created=outcome.orphans_created,
        )
        await self._record_applied(import_file, ctx, result)

        log_event(
            logger, f"Import appliqué ({request.mode}) : {result.nb_applied} créées, {result.nb_skipped} ignorées",
            event="import_applied", import_id=import_file.id, cooperative_id=import_file.cooperative_id,
            user_id=ctx.user_id, duration_ms=_elapsed_ms(started),
        )
        return result
