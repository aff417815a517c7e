"""
Fixtures partagées — base SQLite async, stockage local, fabriques de fichiers SIG
"""
import io
import json
import uuid
import zipfile
from pathlib import Path

import geopandas as gpd
import pytest
from httpx import ASGITransport, AsyncClient
from shapely.geometry import shape
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cocoatrack.config import settings
from cocoatrack.core.database import Base
from cocoatrack.core.security import create_access_token
from cocoatrack.core.storage import LocalStorage
from cocoatrack.models import import_file, parcelle  # noqa: F401  (tables)
from cocoatrack.models.planteur import ChefPlanteur, Planteur
from cocoatrack.services.import_service import ImportContext, ImportService

# Parcelles de test autour de Daloa (Côte d'Ivoire)
BASE_LNG = -6.45
BASE_LAT = 6.88


def square_coords(lng: float, lat: float, size: float = 0.001) -> list:
    """Anneau carré anti-horaire, fermé."""
    return [[
        [lng, lat],
        [lng + size, lat],
        [lng + size, lat + size],
        [lng, lat + size],
        [lng, lat],
    ]]


def square_polygon(offset: int = 0, size: float = 0.001) -> dict:
    """Carré distinct par `offset` (décalage de 0.01° en longitude)."""
    return {"type": "Polygon", "coordinates": square_coords(BASE_LNG + offset * 0.01, BASE_LAT, size)}


def feature_collection(*features: tuple[dict, dict], **extra) -> bytes:
    document = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "properties": properties, "geometry": geometry}
            for geometry, properties in features
        ],
        **extra,
    }
    return json.dumps(document).encode("utf-8")


def build_shapefile_zip(
    directory: Path,
    records: list[dict],
    geometries: list[dict],
    crs="EPSG:4326",
    drop: tuple[str, ...] = (),
) -> bytes:
    """
    Écrit une couche avec GeoPandas puis la zippe. `crs=None` → pas de .prj ;
    `drop` retire des composants de l'archive (ex. (".dbf",)).
    """
    gdf = gpd.GeoDataFrame(records, geometry=[shape(g) for g in geometries], crs=crs)
    layer_dir = directory / f"layer_{uuid.uuid4().hex[:8]}"
    layer_dir.mkdir()
    gdf.to_file(layer_dir / "parcelles.shp", engine="fiona")

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for path in sorted(layer_dir.iterdir()):
            if path.suffix.lower() in drop:
                continue
            archive.write(path, arcname=f"export/{path.name}")
    return buffer.getvalue()


# ── Fabriques ─────────────────────────────────────────────────────────────────

@pytest.fixture
def square():
    return square_polygon


@pytest.fixture
def geojson():
    return feature_collection


@pytest.fixture
def shapefile_zip(tmp_path):
    def build(records, geometries, crs="EPSG:4326", drop=()):
        return build_shapefile_zip(tmp_path, records, geometries, crs=crs, drop=drop)
    return build


# ── Base de données ───────────────────────────────────────────────────────────

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cocoatrack.db'}")

    # SAVEPOINT sous SQLite : transactions pilotées par SQLAlchemy, pas par le driver
    @event.listens_for(engine.sync_engine, "connect")
    def _driver_autocommit(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "uploads"))


@pytest.fixture
def service(db_session, storage):
    return ImportService(db_session, storage, settings)


# ── Contexte appelant ─────────────────────────────────────────────────────────

@pytest.fixture
def cooperative_id():
    return uuid.uuid4()


@pytest.fixture
def ctx(cooperative_id):
    return ImportContext(user_id=uuid.uuid4(), cooperative_id=cooperative_id)


@pytest.fixture
def other_ctx():
    """Utilisateur d'une autre coopérative."""
    return ImportContext(user_id=uuid.uuid4(), cooperative_id=uuid.uuid4())


@pytest.fixture
async def planteur(db_session, cooperative_id):
    planteur = Planteur(name="Awa Traoré", code="PLT-AWA00001", cooperative_id=cooperative_id, is_active=True)
    db_session.add(planteur)
    await db_session.commit()
    return planteur


@pytest.fixture
async def chef_planteur(db_session, cooperative_id):
    chef = ChefPlanteur(name="Yao N'Guessan", cooperative_id=cooperative_id, is_active=True)
    db_session.add(chef)
    await db_session.commit()
    return chef


# ── API ───────────────────────────────────────────────────────────────────────

@pytest.fixture
async def client(session_factory, storage):
    from cocoatrack.api.deps import get_storage_backend
    from cocoatrack.core.database import get_db
    from cocoatrack.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage_backend] = lambda: storage
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(ctx):
    token = create_access_token(str(ctx.user_id), str(ctx.cooperative_id))
    return {"Authorization": f"Bearer {token}"}
