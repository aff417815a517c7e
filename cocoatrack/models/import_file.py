"""
Modèles SQLAlchemy — Fichiers d'import de parcelles
"""
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON, BigInteger, Column, DateTime, Enum, ForeignKey,
    Index, Integer, String, Text, Uuid, text,
)

from cocoatrack.core.database import Base


class ImportFileType(str, PyEnum):
    SHAPEFILE_ZIP = "shapefile_zip"
    KML = "kml"
    KMZ = "kmz"
    GEOJSON = "geojson"


class ImportStatus(str, PyEnum):
    UPLOADED = "uploaded"
    PARSED = "parsed"
    APPLIED = "applied"
    FAILED = "failed"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ImportFile(Base):
    __tablename__ = "parcel_import_files"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    cooperative_id = Column(Uuid, index=True)
    # Planteur indiqué à l'upload (optionnel, mode assign)
    planteur_id = Column(Uuid, ForeignKey("planteurs.id"))

    # ── Fichier source ────────────────────────────────────────────────────
    filename = Column(String(500), nullable=False)
    storage_url = Column(String(1000), nullable=False)
    file_type = Column(
        Enum(ImportFileType, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
    )
    file_sha256 = Column(String(64), nullable=False)
    file_size_bytes = Column(BigInteger, nullable=False)

    # ── Cycle de vie ──────────────────────────────────────────────────────
    import_status = Column(
        Enum(ImportStatus, values_callable=_enum_values, native_enum=False, length=20),
        default=ImportStatus.UPLOADED,
        nullable=False,
        index=True,
    )
    failed_reason = Column(Text)
    parse_report = Column(JSON)                 # {nb_features, errors[], warnings[]}
    nb_features = Column(Integer, default=0, nullable=False)
    nb_applied = Column(Integer, default=0, nullable=False)
    nb_skipped_duplicates = Column(Integer, default=0, nullable=False)
    apply_result = Column(JSON)                 # Résultat rejoué sur ré-application

    # ── Traçabilité ───────────────────────────────────────────────────────
    created_by = Column(Uuid, nullable=False)
    applied_by = Column(Uuid)
    applied_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # Un même fichier ne peut être importé qu'une fois par coopérative (hors échecs)
        Index(
            "uq_parcel_import_files_coop_sha256",
            "cooperative_id",
            "file_sha256",
            unique=True,
            postgresql_where=text("import_status <> 'failed'"),
            sqlite_where=text("import_status <> 'failed'"),
        ),
    )
