"""
Parseur Shapefile (archive zip)

1. Contrôle des composants obligatoires (.shp, .shx, .dbf) avant tout décodage
2. Extraction dans un répertoire temporaire puis lecture GeoPandas (moteur Fiona)
3. Reprojection en EPSG:4326 si un .prj est présent, sinon WGS84 supposé
"""
import io
import logging
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional

import geopandas as gpd
from fiona.errors import FionaError
from pyproj.exceptions import CRSError

from cocoatrack.core.errors import ErrorCode, shapefile_missing, validation_error
from cocoatrack.models.import_file import ImportFileType
from cocoatrack.services.parsers.base import (
    POLYGON_TYPES, GeoParser, GeoParseResult, RawFeature, json_scalar, polygonal_mapping, register,
    to_multipolygon,
)

logger = logging.getLogger(__name__)

REQUIRED_EXTENSIONS = (".shp", ".shx", ".dbf")
OPTIONAL_EXTENSIONS = (".prj", ".cpg")


def _members_by_extension(archive: zipfile.ZipFile) -> dict[str, list[str]]:
    members: dict[str, list[str]] = {}
    for name in archive.namelist():
        if name.endswith("/") or name.startswith("__MACOSX/"):
            continue
        suffix = PurePosixPath(name).suffix.lower()
        members.setdefault(suffix, []).append(name)
    return members


def _pick_component(candidates: list[str], stem: str) -> Optional[str]:
    """Composant de même nom de base que le .shp retenu, sinon le premier trouvé."""
    for name in candidates:
        if PurePosixPath(name).stem.lower() == stem:
            return name
    return candidates[0] if candidates else None


@register
class ShapefileParser(GeoParser):
    file_type = ImportFileType.SHAPEFILE_ZIP

    def parse(self, content: bytes) -> GeoParseResult:
        try:
            archive = zipfile.ZipFile(io.BytesIO(content))
        except zipfile.BadZipFile:
            raise validation_error("file", "Archive zip illisible")

        tmp_dir = Path(tempfile.mkdtemp(prefix="cocoatrack_shp_"))
        try:
            with archive:
                shp_path, has_prj = self._extract(archive, tmp_dir)
            gdf = self._read(shp_path)
            return self._to_result(gdf, has_prj)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    # ── Étape 1 : composants ──────────────────────────────────────────────

    def _extract(self, archive: zipfile.ZipFile, target: Path) -> tuple[Path, bool]:
        members = _members_by_extension(archive)
        missing = [ext for ext in REQUIRED_EXTENSIONS if not members.get(ext)]
        if missing:
            raise shapefile_missing(missing)

        stem = PurePosixPath(members[".shp"][0]).stem.lower()
        has_prj = False
        for ext in REQUIRED_EXTENSIONS + OPTIONAL_EXTENSIONS:
            member = _pick_component(members.get(ext, []), stem)
            if member is None:
                continue
            # Nom aplati : aucun chemin de l'archive n'est reproduit sur disque
            (target / f"layer{ext}").write_bytes(archive.read(member))
            has_prj = has_prj or ext == ".prj"
        return target / "layer.shp", has_prj

    # ── Étape 2 : lecture ─────────────────────────────────────────────────

    def _read(self, shp_path: Path) -> gpd.GeoDataFrame:
        try:
            try:
                return gpd.read_file(shp_path, engine="fiona")
            except UnicodeDecodeError:
                # DBF sans .cpg encodé en latin-1 (cas fréquent des exports terrain)
                logger.info("Relecture du DBF en latin-1", extra={"event": "shapefile_encoding_fallback"})
                return gpd.read_file(shp_path, engine="fiona", encoding="latin-1")
        except (FionaError, ValueError, OSError) as exc:
            raise validation_error("file", f"Shapefile illisible : {exc}")

    # ── Étape 3 : conversion ──────────────────────────────────────────────

    def _to_result(self, gdf: gpd.GeoDataFrame, has_prj: bool) -> GeoParseResult:
        result = GeoParseResult(has_projection_info=has_prj)

        if has_prj and gdf.crs is not None:
            try:
                if gdf.crs.to_epsg() != 4326:
                    gdf = gdf.to_crs(epsg=4326)
            except CRSError as exc:
                raise validation_error("file", f"Projection .prj non reconnue : {exc}")
        elif not has_prj:
            result.add_warning(
                ErrorCode.MISSING_PRJ_ASSUMED_WGS84,
                "Fichier .prj absent : coordonnées supposées en WGS84 (EPSG:4326)",
            )

        attribute_columns = [c for c in gdf.columns if c != gdf.geometry.name]
        result.available_fields = [str(c) for c in attribute_columns]

        for index, (_, row) in enumerate(gdf.iterrows()):
            geom = row[gdf.geometry.name]
            properties = {str(col): json_scalar(row[col]) for col in attribute_columns}

            if geom is None:
                result.add_error(
                    ErrorCode.INVALID_GEOMETRY,
                    f"Feature {index} : géométrie vide ou nulle",
                    index,
                    reason="empty geometry",
                )
                continue
            geometry = polygonal_mapping(geom)
            if geometry is None:
                result.add_error(
                    ErrorCode.UNSUPPORTED_GEOMETRY_TYPE,
                    f"Feature {index} : type de géométrie non supporté ({geom.geom_type}). Seuls Polygon et MultiPolygon sont acceptés",
                    index,
                    type=geom.geom_type,
                    expected=list(POLYGON_TYPES),
                )
                continue

            result.features.append(
                RawFeature(properties=properties, geometry=to_multipolygon(geometry), feature_index=index)
            )

        return result
