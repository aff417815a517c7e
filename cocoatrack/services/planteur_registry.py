"""
Registre des planteurs — recherche par nom normalisé et création sûre en concurrence
"""
import logging
import secrets
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cocoatrack.core.logging import log_event
from cocoatrack.models.planteur import ChefPlanteur, Planteur
from cocoatrack.services.name_matching import chunked, normalize_name

logger = logging.getLogger(__name__)


def _same_scope(column, cooperative_id: Optional[uuid.UUID]):
    """Filtre de coopérative ; NULL ne s'égale pas à NULL en SQL."""
    if cooperative_id is None:
        return column.is_(None)
    return column == cooperative_id


def generate_planteur_code() -> str:
    return f"PLT-{secrets.token_hex(4).upper()}"


class PlanteurRegistry:
    def __init__(self, db: AsyncSession, batch_size: int = 20):
        self.db = db
        self.batch_size = batch_size

    async def get_in_scope(self, planteur_id: uuid.UUID, cooperative_id: Optional[uuid.UUID]) -> Optional[Planteur]:
        result = await self.db.execute(
            select(Planteur).where(
                Planteur.id == planteur_id,
                Planteur.is_active.is_(True),
                _same_scope(Planteur.cooperative_id, cooperative_id),
            )
        )
        return result.scalar_one_or_none()

    async def get_chef_in_scope(
        self, chef_planteur_id: uuid.UUID, cooperative_id: Optional[uuid.UUID]
    ) -> Optional[ChefPlanteur]:
        result = await self.db.execute(
            select(ChefPlanteur).where(
                ChefPlanteur.id == chef_planteur_id,
                ChefPlanteur.is_active.is_(True),
                _same_scope(ChefPlanteur.cooperative_id, cooperative_id),
            )
        )
        return result.scalar_one_or_none()

    async def find_by_normalized_names(
        self, names_norm: list[str], cooperative_id: Optional[uuid.UUID]
    ) -> dict[str, Planteur]:
        """name_norm → planteur actif, requêtes IN (...) par lots de `batch_size`."""
        found: dict[str, Planteur] = {}
        for batch in chunked(list(dict.fromkeys(names_norm)), self.batch_size):
            result = await self.db.execute(
                select(Planteur).where(
                    Planteur.is_active.is_(True),
                    Planteur.name_norm.in_(batch),
                    _same_scope(Planteur.cooperative_id, cooperative_id),
                )
            )
            for planteur in result.scalars():
                found[planteur.name_norm] = planteur
        return found

    async def create_or_reuse(
        self,
        name: str,
        cooperative_id: Optional[uuid.UUID],
        created_by: uuid.UUID,
        import_id: uuid.UUID,
        chef_planteur_id: Optional[uuid.UUID] = None,
    ) -> tuple[Planteur, bool]:
        """
        Crée un planteur marqué auto_created. Si un apply concurrent a créé le
        même nom entre-temps (violation d'unicité), le planteur existant est
        relu et réutilisé. Retourne (planteur, créé).
        """
        planteur = Planteur(
            name=name,
            code=generate_planteur_code(),
            cooperative_id=cooperative_id,
            chef_planteur_id=chef_planteur_id,
            auto_created=True,
            created_via_import_id=import_id,
            is_active=True,
            created_by=created_by,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(planteur)
                await self.db.flush()
        except IntegrityError:
            name_norm = normalize_name(name)
            existing = (await self.find_by_normalized_names([name_norm], cooperative_id)).get(name_norm)
            if existing is None:
                raise
            log_event(
                logger, "Planteur créé en concurrence, réutilisation",
                event="planteur_create_conflict", import_id=import_id, cooperative_id=cooperative_id,
            )
            return existing, False
        return planteur, True
