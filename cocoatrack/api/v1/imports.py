"""
API Import de parcelles — upload, parse, prévisualisation, application
"""
import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends, File, Form, Query, UploadFile
from fastapi.responses import Response

from cocoatrack.api.deps import get_import_context, get_import_service
from cocoatrack.models.import_file import ImportStatus
from cocoatrack.schemas.imports import (
    ApplyImportRequest, ApplyImportResult, AutoCreatePreview, DownloadUrlResponse,
    ImportFileList, ImportFileOut, ParseResult, PreviewRequest,
)
from cocoatrack.services.import_service import ImportContext, ImportService

router = APIRouter(prefix="/parcelles/import", tags=["Import parcelles"])


@router.post("/upload", response_model=ImportFileOut, status_code=201)
async def upload_import_file(
    file: Annotated[UploadFile, File(description="Shapefile (.zip), KML, KMZ ou GeoJSON")],
    planteur_id: Annotated[Optional[uuid.UUID], Form()] = None,
    ctx: ImportContext = Depends(get_import_context),
    service: ImportService = Depends(get_import_service),
):
    """
    Upload d'un fichier de parcelles (50 Mo max).
    Un même fichier ne peut être importé qu'une fois par coopérative.
    """
    content = await file.read()
    return await service.upload(ctx, file.filename or "unknown.bin", content, planteur_id)


@router.get("", response_model=ImportFileList)
async def list_import_files(
    status: Optional[ImportStatus] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: ImportContext = Depends(get_import_context),
    service: ImportService = Depends(get_import_service),
):
    items, total = await service.list_imports(ctx, status=status, limit=limit, offset=offset)
    return ImportFileList(items=items, total=total, limit=limit, offset=offset)


@router.get("/file", include_in_schema=False)
async def serve_local_file(
    key: str = Query(...),
    ctx: ImportContext = Depends(get_import_context),
    service: ImportService = Depends(get_import_service),
):
    """
    Téléchargement direct pour le backend local.
    En production S3, remplacé par des URL signées.
    """
    import_file, content = await service.read_stored_file(ctx, key)
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{import_file.filename}"'},
    )


@router.get("/{import_id}", response_model=ImportFileOut)
async def get_import_file(
    import_id: uuid.UUID,
    ctx: ImportContext = Depends(get_import_context),
    service: ImportService = Depends(get_import_service),
):
    return await service.get_import(ctx, import_id)


@router.get("/{import_id}/download-url", response_model=DownloadUrlResponse)
async def get_download_url(
    import_id: uuid.UUID,
    expires_in: Optional[int] = Query(None, ge=60, le=7 * 24 * 3600),
    ctx: ImportContext = Depends(get_import_context),
    service: ImportService = Depends(get_import_service),
):
    url = await service.get_download_url(ctx, import_id, expires_in)
    return DownloadUrlResponse(url=url, expires_in=expires_in or service.settings.SIGNED_URL_EXPIRES_SECONDS)


@router.post("/{import_id}/parse", response_model=ParseResult)
async def parse_import_file(
    import_id: uuid.UUID,
    ctx: ImportContext = Depends(get_import_context),
    service: ImportService = Depends(get_import_service),
):
    """Analyse le fichier : validation, réparation, hash et détection des doublons."""
    return await service.parse(ctx, import_id)


@router.post("/{import_id}/preview-auto-create", response_model=AutoCreatePreview)
async def preview_auto_create(
    import_id: uuid.UUID,
    payload: PreviewRequest,
    ctx: ImportContext = Depends(get_import_context),
    service: ImportService = Depends(get_import_service),
):
    """Planteurs qui seront créés ou réutilisés, et nombre de parcelles orphelines."""
    return await service.preview_auto_create(ctx, import_id, payload.planteur_name_field)


@router.post("/{import_id}/apply", response_model=ApplyImportResult)
async def apply_import_file(
    import_id: uuid.UUID,
    payload: Annotated[ApplyImportRequest, Body()],
    ctx: ImportContext = Depends(get_import_context),
    service: ImportService = Depends(get_import_service),
):
    """
    Crée les parcelles selon le mode choisi :
    - assign : toutes rattachées à un planteur existant
    - orphan : sans planteur, rattachées à l'import
    - auto_create : planteurs créés ou réutilisés d'après un champ d'attribut

    Ré-appliquer un import déjà appliqué renvoie le résultat enregistré.
    """
    return await service.apply(ctx, import_id, payload)
