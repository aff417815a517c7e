"""
Modèles SQLAlchemy — Parcelles
"""
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, Enum, Float,
    ForeignKey, Index, String, UniqueConstraint, Uuid, text,
)
from sqlalchemy.orm import relationship

from cocoatrack.core.database import Base


class ConformityStatus(str, PyEnum):
    CONFORME = "conforme"
    NON_CONFORME = "non_conforme"
    EN_COURS = "en_cours"
    INFORMATIONS_MANQUANTES = "informations_manquantes"


class ParcelleSource(str, PyEnum):
    MANUAL = "manual"
    SHAPEFILE = "shapefile"
    KML = "kml"
    GEOJSON = "geojson"


CERTIFICATIONS_WHITELIST = (
    "rainforest_alliance",
    "utz",
    "fairtrade",
    "bio",
    "organic",
    "other",
)


class Parcelle(Base):
    __tablename__ = "parcelles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # NULL = parcelle orpheline (sans planteur)
    planteur_id = Column(Uuid, ForeignKey("planteurs.id"), index=True)
    code = Column(String(50))
    label = Column(String(255))
    village = Column(String(255))

    # ── Géométrie (GeoJSON MultiPolygon, EPSG:4326) ───────────────────────
    geometry = Column(JSON, nullable=False)
    centroid_lat = Column(Float, nullable=False)
    centroid_lng = Column(Float, nullable=False)
    surface_hectares = Column(Float, nullable=False)
    feature_hash = Column(String(64), index=True)

    # ── Métier ────────────────────────────────────────────────────────────
    certifications = Column(JSON, default=list, nullable=False)
    conformity_status = Column(
        Enum(ConformityStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32),
        default=ConformityStatus.INFORMATIONS_MANQUANTES,
        nullable=False,
    )
    source = Column(
        Enum(ParcelleSource, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        default=ParcelleSource.MANUAL,
        nullable=False,
    )
    import_file_id = Column(Uuid, ForeignKey("parcel_import_files.id"), index=True)

    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(Uuid)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    planteur = relationship("Planteur", back_populates="parcelles")

    __table_args__ = (
        UniqueConstraint("planteur_id", "code", name="uq_parcelles_planteur_code"),
        # Une parcelle orpheline doit toujours être rattachée à son import
        CheckConstraint(
            "planteur_id IS NOT NULL OR import_file_id IS NOT NULL",
            name="ck_parcelles_orphan_has_import",
        ),
        Index(
            "uq_parcelles_active_feature_hash",
            "feature_hash",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )
