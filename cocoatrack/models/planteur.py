"""
Modèles SQLAlchemy — Planteurs & Chefs planteurs
"""
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Uuid, text
from sqlalchemy.orm import relationship, validates

from cocoatrack.core.database import Base
from cocoatrack.services.name_matching import normalize_name


class ChefPlanteur(Base):
    __tablename__ = "chef_planteurs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    cooperative_id = Column(Uuid, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    planteurs = relationship("Planteur", back_populates="chef_planteur")


class Planteur(Base):
    __tablename__ = "planteurs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    # Toujours dérivé de `name` : voir _sync_name_norm
    name_norm = Column(String(255), nullable=False)
    code = Column(String(50))
    cooperative_id = Column(Uuid, index=True)
    chef_planteur_id = Column(Uuid, ForeignKey("chef_planteurs.id"))

    # ── Création automatique depuis un import ─────────────────────────────
    auto_created = Column(Boolean, default=False, nullable=False)
    created_via_import_id = Column(Uuid)

    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(Uuid)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    chef_planteur = relationship("ChefPlanteur", back_populates="planteurs")
    parcelles = relationship("Parcelle", back_populates="planteur")

    __table_args__ = (
        Index(
            "uq_planteurs_coop_name_norm",
            "cooperative_id",
            "name_norm",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    @validates("name")
    def _sync_name_norm(self, key, value):
        self.name_norm = normalize_name(value)
        return value
