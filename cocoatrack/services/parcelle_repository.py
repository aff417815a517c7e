"""
Accès aux parcelles pour l'import : doublons, comptage, insertions isolées
"""
import logging
import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cocoatrack.core.logging import log_event
from cocoatrack.models.parcelle import Parcelle

logger = logging.getLogger(__name__)

# PostgreSQL cite le nom de la contrainte, SQLite les colonnes
CODE_CONFLICT_MARKERS = ("uq_parcelles_planteur_code", "parcelles.planteur_id, parcelles.code")


class InsertOutcome(str, Enum):
    CREATED = "created"
    CODE_CONFLICT = "code_conflict"
    CONFLICT = "conflict"


def is_code_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return any(marker in message for marker in CODE_CONFLICT_MARKERS)


class ParcelleRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_active_by_hashes(self, hashes: list[str]) -> dict[str, uuid.UUID]:
        """feature_hash → id de la parcelle active, en une seule requête."""
        if not hashes:
            return {}
        result = await self.db.execute(
            select(Parcelle.feature_hash, Parcelle.id).where(
                Parcelle.is_active.is_(True),
                Parcelle.feature_hash.in_(list(dict.fromkeys(hashes))),
            )
        )
        return {feature_hash: parcelle_id for feature_hash, parcelle_id in result.all()}

    async def active_ids_for_import(self, import_id: uuid.UUID) -> list[uuid.UUID]:
        result = await self.db.execute(
            select(Parcelle.id)
            .where(Parcelle.import_file_id == import_id, Parcelle.is_active.is_(True))
            .order_by(Parcelle.created_at, Parcelle.feature_hash)
        )
        return list(result.scalars())

    async def count_for_planteur(self, planteur_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(Parcelle).where(Parcelle.planteur_id == planteur_id)
        )
        return result.scalar_one()

    async def insert_isolated(self, parcelle: Parcelle, feature_index: Optional[int] = None) -> InsertOutcome:
        """
        Insère une parcelle dans son propre SAVEPOINT. Une violation de
        contrainte annule uniquement cette insertion. Un conflit sur
        (planteur, code) est distingué pour que l'appelant retente avec le
        code suivant ; tout autre conflit (hash actif) ignore la parcelle.
        """
        try:
            async with self.db.begin_nested():
                self.db.add(parcelle)
                await self.db.flush()
        except IntegrityError as exc:
            if is_code_conflict(exc):
                logger.debug("Code %s déjà pris pour le planteur %s", parcelle.code, parcelle.planteur_id)
                return InsertOutcome.CODE_CONFLICT
            log_event(
                logger, f"Parcelle ignorée (contrainte d'unicité) : {exc.orig}",
                level=logging.WARNING,
                event="parcelle_insert_skipped",
                import_id=parcelle.import_file_id,
                feature_index=feature_index,
            )
            return InsertOutcome.CONFLICT
        return InsertOutcome.CREATED
