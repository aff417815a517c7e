"""
Dépendances FastAPI — contexte appelant et service d'import
"""
import uuid
from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from cocoatrack.config import settings
from cocoatrack.core.database import get_db
from cocoatrack.core.errors import unauthorized
from cocoatrack.core.security import decode_token
from cocoatrack.core.storage import StorageBackend, get_storage
from cocoatrack.services.import_service import ImportContext, ImportService

bearer_scheme = HTTPBearer(auto_error=False)


def _parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if value in (None, ""):
        return None
    return uuid.UUID(str(value))


async def get_import_context(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
) -> ImportContext:
    if credentials is None:
        raise unauthorized("Token d'authentification manquant")
    try:
        payload = decode_token(credentials.credentials)
        user_id = _parse_uuid(payload.get("sub"))
        cooperative_id = _parse_uuid(payload.get(settings.COOPERATIVE_CLAIM))
    except (JWTError, ValueError):
        raise unauthorized("Token invalide ou expiré")
    if user_id is None:
        raise unauthorized("Token invalide ou expiré")
    return ImportContext(user_id=user_id, cooperative_id=cooperative_id)


def get_storage_backend() -> StorageBackend:
    return get_storage()


async def get_import_service(
    db: AsyncSession = Depends(get_db),
    storage: StorageBackend = Depends(get_storage_backend),
) -> ImportService:
    return ImportService(db, storage, settings)
